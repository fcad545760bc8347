import pytest

ME = {"X-User-Id": "me"}


def _seed(backend):
    backend.seed(
        "users",
        [
            {"id": "me", "full_name": "Maya"},
            {"id": "ana", "full_name": "Ana"},
            {"id": "bo", "full_name": "Bo"},
        ],
    )
    backend.seed("cities", {"id": 4, "name": "Porto", "country_code": "PT"})


@pytest.mark.asyncio
async def test_requires_authentication(api_client):
    resp = await api_client.get("/chat/conversations")

    assert resp.status_code == 401
    assert resp.json()["detail"] == "not_signed_in"


@pytest.mark.asyncio
async def test_direct_conversation_flow(api_client, backend):
    _seed(backend)

    started = await api_client.post("/chat/conversations/direct", json={"peer_id": "ana"}, headers=ME)
    assert started.status_code == 200
    conversation_id = started.json()["id"]

    again = await api_client.post("/chat/conversations/direct", json={"peer_id": "ana"}, headers=ME)
    assert again.json()["id"] == conversation_id

    sent = await api_client.post(
        f"/chat/conversations/{conversation_id}/messages",
        json={"content": "  hi Ana  "},
        headers=ME,
    )
    assert sent.status_code == 201
    assert sent.json()["content"] == "hi Ana"

    history = await api_client.get(f"/chat/conversations/{conversation_id}/messages", headers={"X-User-Id": "ana"})
    assert [item["content"] for item in history.json()["items"]] == ["hi Ana"]

    listing = await api_client.get("/chat/conversations", headers={"X-User-Id": "ana"})
    (item,) = listing.json()["items"]
    assert item["title"] == "Maya"
    assert item["last_message"] == "hi Ana"
    assert item["is_typing"] is False


@pytest.mark.asyncio
async def test_empty_message_rejected(api_client, backend):
    _seed(backend)
    started = await api_client.post("/chat/conversations/direct", json={"peer_id": "ana"}, headers=ME)

    resp = await api_client.post(
        f"/chat/conversations/{started.json()['id']}/messages",
        json={"content": "   "},
        headers=ME,
    )

    assert resp.status_code == 400
    assert resp.json()["detail"] == "empty_message"
    assert resp.json()["kind"] == "invalid"


@pytest.mark.asyncio
async def test_self_chat_and_missing_conversation(api_client, backend):
    _seed(backend)

    self_chat = await api_client.post("/chat/conversations/direct", json={"peer_id": "me"}, headers=ME)
    assert self_chat.status_code == 400
    assert self_chat.json()["detail"] == "cannot_chat_with_self"

    missing = await api_client.get("/chat/conversations/nope", headers=ME)
    assert missing.status_code == 404
    assert "request_id" in missing.json()


@pytest.mark.asyncio
async def test_non_participant_is_forbidden(api_client, backend):
    _seed(backend)
    started = await api_client.post("/chat/conversations/direct", json={"peer_id": "ana"}, headers=ME)

    resp = await api_client.get(
        f"/chat/conversations/{started.json()['id']}/messages",
        headers={"X-User-Id": "bo"},
    )

    assert resp.status_code == 403
    assert resp.json()["detail"] == "not_a_participant"


@pytest.mark.asyncio
async def test_city_and_label_groups(api_client, backend):
    _seed(backend)

    city = await api_client.post("/chat/groups/city", json={"city_id": 4}, headers=ME)
    assert city.status_code == 200
    assert city.json()["is_city_group"] is True

    label = await api_client.post("/chat/groups/label", json={"label": "Editors"}, headers=ME)
    assert label.json()["label"] == "editors"

    listing = await api_client.get("/chat/conversations", headers=ME)
    titles = sorted(item["title"] for item in listing.json()["items"])
    assert titles == ["Group: editors", "Porto"]


@pytest.mark.asyncio
async def test_attachment_upload(api_client, backend):
    _seed(backend)
    started = await api_client.post("/chat/conversations/direct", json={"peer_id": "ana"}, headers=ME)
    conversation_id = started.json()["id"]

    image = await api_client.post(
        f"/chat/conversations/{conversation_id}/attachments",
        files={"file": ("set.png", b"\x89PNG", "image/png")},
        headers=ME,
    )
    document = await api_client.post(
        f"/chat/conversations/{conversation_id}/attachments",
        files={"file": ("callsheet.pdf", b"%PDF", "application/pdf")},
        headers=ME,
    )

    assert image.status_code == 201
    assert image.json()["message_type"] == "media"
    assert image.json()["image_url"].startswith("memory://storage/chat-uploads/")
    assert document.json()["file_name"] == "callsheet.pdf"


@pytest.mark.asyncio
async def test_typing_hide_members_and_search(api_client, backend):
    _seed(backend)
    started = await api_client.post("/chat/conversations/direct", json={"peer_id": "ana"}, headers=ME)
    conversation_id = started.json()["id"]

    typing = await api_client.post(f"/chat/conversations/{conversation_id}/typing", headers=ME)
    assert typing.status_code == 202
    assert typing.json() == {"sent": True}

    members = await api_client.get(f"/chat/conversations/{conversation_id}/members", headers=ME)
    assert [member["id"] for member in members.json()] == ["ana", "me"]

    hidden = await api_client.post(f"/chat/conversations/{conversation_id}/hide", headers=ME)
    assert hidden.status_code == 204
    assert (await api_client.get("/chat/conversations", headers=ME)).json()["items"] == []

    shown = await api_client.delete(f"/chat/conversations/{conversation_id}/hide", headers=ME)
    assert shown.status_code == 204
    assert len((await api_client.get("/chat/conversations", headers=ME)).json()["items"]) == 1

    found = await api_client.get("/chat/users/search", params={"q": "a"}, headers=ME)
    assert [user["id"] for user in found.json()] == ["ana"]


@pytest.mark.asyncio
async def test_one_shot_actions_skip_history_and_realtime(api_client, backend, monkeypatch):
    _seed(backend)
    started = await api_client.post("/chat/conversations/direct", json={"peer_id": "ana"}, headers=ME)
    conversation_id = started.json()["id"]
    tables = []
    subscriptions = []
    original_table = backend.table

    def _recording(name):
        tables.append(name)
        return original_table(name)

    async def _no_subscribe(*args, **kwargs):
        subscriptions.append(args)
        raise AssertionError("unexpected subscription")

    monkeypatch.setattr(backend, "table", _recording)
    monkeypatch.setattr(backend, "subscribe", _no_subscribe)
    monkeypatch.setattr(backend, "on_broadcast", _no_subscribe)

    sent = await api_client.post(
        f"/chat/conversations/{conversation_id}/messages", json={"content": "quick"}, headers=ME
    )
    typing = await api_client.post(f"/chat/conversations/{conversation_id}/typing", headers=ME)
    members = await api_client.get(f"/chat/conversations/{conversation_id}/members", headers=ME)
    attached = await api_client.post(
        f"/chat/conversations/{conversation_id}/attachments",
        files={"file": ("notes.txt", b"x", "text/plain")},
        headers=ME,
    )

    assert [resp.status_code for resp in (sent, typing, members, attached)] == [201, 202, 200, 201]
    assert "messages" not in tables
    assert "conversation_hides" not in tables
    assert subscriptions == []


@pytest.mark.asyncio
async def test_one_shot_actions_refuse_non_participant(api_client, backend):
    _seed(backend)
    started = await api_client.post("/chat/conversations/direct", json={"peer_id": "ana"}, headers=ME)
    conversation_id = started.json()["id"]
    bo = {"X-User-Id": "bo"}

    typing = await api_client.post(f"/chat/conversations/{conversation_id}/typing", headers=bo)
    members = await api_client.get(f"/chat/conversations/{conversation_id}/members", headers=bo)

    assert typing.status_code == members.status_code == 403
    assert backend.broadcasts == []
