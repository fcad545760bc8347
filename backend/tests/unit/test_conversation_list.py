from datetime import timedelta

import pytest

from overlooked.domain.chat.conversations import ConversationListView
from overlooked.infra.errors import TransientFailure


def _view(backend, clock, user_id="me"):
    return ConversationListView(backend, user_id, now=clock, typing_window_seconds=2)


def _seed_people(backend):
    backend.seed(
        "users",
        [
            {"id": "me", "full_name": "Me"},
            {"id": "ana", "full_name": "Ana", "avatar_url": "https://cdn/ana.png"},
            {"id": "bo", "full_name": "Bo"},
        ],
    )
    backend.seed("cities", {"id": 5, "name": "Lisbon", "country_code": "PT"})


@pytest.mark.asyncio
async def test_refresh_orders_by_latest_activity_and_titles(backend, clock):
    _seed_people(backend)
    base = clock()
    backend.seed(
        "conversations",
        [
            {
                "id": "direct",
                "participant_ids": ["me", "ana"],
                "is_group": False,
                "last_message_content": "hey",
                "last_message_sent_at": base - timedelta(minutes=5),
                "created_at": base - timedelta(days=2),
            },
            {
                "id": "city",
                "participant_ids": ["me", "bo"],
                "is_group": True,
                "is_city_group": True,
                "city_id": 5,
                "label": "Lisbon",
                "last_message_content": "image:https://cdn/photo.jpg",
                "last_message_sent_at": base - timedelta(minutes=1),
                "created_at": base - timedelta(days=3),
            },
            {
                "id": "label",
                "participant_ids": ["me"],
                "is_group": True,
                "label": "film",
                "created_at": base - timedelta(days=1),
            },
            {
                "id": "not-mine",
                "participant_ids": ["ana", "bo"],
                "is_group": False,
                "created_at": base,
            },
        ],
    )

    items = await _view(backend, clock).refresh()

    assert [item.id for item in items] == ["city", "direct", "label"]
    city, direct, label = items
    assert city.title == "Lisbon"
    assert city.last_message == "[Photo]"
    assert city.flag_uri == "https://flagcdn.com/w80/pt.png"
    assert direct.title == "Ana"
    assert direct.avatar_url == "https://cdn/ana.png"
    assert label.title == "Group: film"
    assert label.last_message == "No messages yet"


@pytest.mark.asyncio
async def test_refresh_backfills_missing_last_message(backend, clock):
    _seed_people(backend)
    sent = clock() - timedelta(minutes=3)
    backend.seed(
        "conversations",
        {"id": "c1", "participant_ids": ["me", "ana"], "is_group": False, "created_at": clock() - timedelta(days=1)},
    )
    backend.seed(
        "messages",
        [
            {"id": "m1", "conversation_id": "c1", "sender_id": "ana", "content": "first", "sent_at": sent - timedelta(minutes=1)},
            {"id": "m2", "conversation_id": "c1", "sender_id": "ana", "content": "second", "sent_at": sent},
        ],
    )

    (item,) = await _view(backend, clock).refresh()

    assert item.last_message == "second"
    assert item.last_message_time == sent


@pytest.mark.asyncio
async def test_direct_conversation_without_peer_name_falls_back(backend, clock):
    backend.seed("conversations", {"id": "c1", "participant_ids": ["me", "ghost"], "is_group": False})

    (item,) = await _view(backend, clock).refresh()

    assert item.title == "Conversation"
    assert item.peer is None


@pytest.mark.asyncio
async def test_hidden_conversation_reappears_after_new_message(backend, clock):
    _seed_people(backend)
    backend.seed(
        "conversations",
        {
            "id": "c1",
            "participant_ids": ["me", "ana"],
            "is_group": False,
            "last_message_content": "old",
            "last_message_sent_at": clock() - timedelta(hours=1),
        },
    )
    view = _view(backend, clock)
    await view.refresh()

    await view.hide("c1")
    assert view.items == []
    assert await view.refresh() == []

    clock.advance(60)
    await backend.table("conversations").update(
        {"last_message_content": "back again", "last_message_sent_at": clock()}
    ).eq("id", "c1").execute()

    items = await view.refresh()
    assert [item.last_message for item in items] == ["back again"]


@pytest.mark.asyncio
async def test_unhide_restores_conversation(backend, clock):
    _seed_people(backend)
    backend.seed("conversations", {"id": "c1", "participant_ids": ["me", "ana"], "is_group": False})
    view = _view(backend, clock)
    await view.refresh()
    await view.hide("c1")

    await view.unhide("c1")

    assert [item.id for item in view.items] == ["c1"]
    assert backend.rows("conversation_hides") == []


@pytest.mark.asyncio
async def test_typing_indicator_counts_only_fresh_rows_from_others(backend, clock):
    _seed_people(backend)
    backend.seed(
        "conversations",
        [
            {"id": "fresh", "participant_ids": ["me", "ana"], "is_group": False},
            {"id": "stale", "participant_ids": ["me", "bo"], "is_group": False},
            {"id": "own", "participant_ids": ["me"], "is_group": True, "label": "solo"},
        ],
    )
    backend.seed(
        "typing_indicators",
        [
            {"conversation_id": "fresh", "user_id": "ana", "updated_at": clock() - timedelta(seconds=1)},
            {"conversation_id": "stale", "user_id": "bo", "updated_at": clock() - timedelta(seconds=30)},
            {"conversation_id": "own", "user_id": "me", "updated_at": clock()},
        ],
    )
    view = _view(backend, clock)

    await view.refresh()

    typing = {row["id"]: row["is_typing"] for row in view.snapshot()}
    assert typing == {"fresh": True, "stale": False, "own": False}

    clock.advance(5)
    assert {row["id"]: row["is_typing"] for row in view.snapshot()}["fresh"] is False


@pytest.mark.asyncio
async def test_failed_refresh_keeps_previous_list(backend, clock, monkeypatch):
    _seed_people(backend)
    backend.seed("conversations", {"id": "c1", "participant_ids": ["me", "ana"], "is_group": False})
    view = _view(backend, clock)
    await view.refresh()

    async def _boom(query):
        raise TransientFailure("database_unavailable")

    monkeypatch.setattr(backend, "execute", _boom)

    items = await view.refresh()

    assert [item.id for item in items] == ["c1"]
    assert view.last_error is not None
    assert view.last_error.reason == "database_unavailable"


@pytest.mark.asyncio
async def test_watch_patches_list_from_change_feed(backend, clock):
    _seed_people(backend)
    backend.seed(
        "conversations",
        [
            {
                "id": "c1",
                "participant_ids": ["me", "ana"],
                "is_group": False,
                "last_message_content": "older",
                "last_message_sent_at": clock() - timedelta(hours=2),
            },
            {
                "id": "c2",
                "participant_ids": ["me", "bo"],
                "is_group": False,
                "last_message_content": "newer",
                "last_message_sent_at": clock() - timedelta(hours=1),
            },
        ],
    )
    view = _view(backend, clock)
    pushes = []

    async def _listener(items):
        pushes.append([item.id for item in items])

    assert [item.id for item in await view.watch(_listener)] == ["c2", "c1"]

    await backend.insert(
        "messages",
        {"id": "m1", "conversation_id": "c1", "sender_id": "ana", "content": "ping", "sent_at": clock()},
    )
    assert [item.id for item in view.items] == ["c1", "c2"]
    assert view.items[0].last_message == "ping"

    await backend.insert(
        "conversations",
        {"id": "c3", "participant_ids": ["me", "ana", "bo"], "is_group": True, "label": "crew"},
    )
    assert "c3" in [item.id for item in view.items]

    await backend.table("conversations").delete().eq("id", "c2").execute()
    assert "c2" not in [item.id for item in view.items]
    assert pushes[-1] == [item.id for item in view.items]

    await view.close()
    await backend.insert(
        "conversations",
        {"id": "c4", "participant_ids": ["me", "bo"], "is_group": False},
    )
    assert "c4" not in [item.id for item in view.items]


@pytest.mark.asyncio
async def test_watch_ignores_other_users_conversations(backend, clock):
    _seed_people(backend)
    view = _view(backend, clock)
    await view.watch()

    await backend.insert("conversations", {"id": "x", "participant_ids": ["ana", "bo"], "is_group": False})

    assert view.items == []


@pytest.mark.asyncio
async def test_typing_change_feed_marks_conversation(backend, clock):
    _seed_people(backend)
    backend.seed("conversations", {"id": "c1", "participant_ids": ["me", "ana"], "is_group": False})
    view = _view(backend, clock)
    await view.watch()

    await backend.upsert(
        "typing_indicators",
        {"conversation_id": "c1", "user_id": "ana", "updated_at": clock()},
        on_conflict=("conversation_id", "user_id"),
    )

    assert view.snapshot()[0]["is_typing"] is True


@pytest.mark.asyncio
async def test_refresh_order_is_stable_and_breaks_ties_by_creation(backend, clock):
    _seed_people(backend)
    base = clock()
    tied_at = base - timedelta(minutes=10)
    backend.seed(
        "conversations",
        [
            {
                "id": "quiet",
                "participant_ids": ["me", "bo"],
                "is_group": False,
                "created_at": base - timedelta(hours=1),
            },
            {
                "id": "tie-older",
                "participant_ids": ["me"],
                "is_group": True,
                "label": "a",
                "last_message_content": "x",
                "last_message_sent_at": tied_at,
                "created_at": base - timedelta(days=5),
            },
            {
                "id": "latest",
                "participant_ids": ["me", "ana"],
                "is_group": False,
                "last_message_content": "y",
                "last_message_sent_at": base - timedelta(minutes=1),
                "created_at": base - timedelta(days=9),
            },
            {
                "id": "tie-newer",
                "participant_ids": ["me"],
                "is_group": True,
                "label": "b",
                "last_message_content": "z",
                "last_message_sent_at": tied_at,
                "created_at": base - timedelta(days=1),
            },
        ],
    )
    view = _view(backend, clock)

    first = [item.id for item in await view.refresh()]
    second = [item.id for item in await view.refresh()]

    assert first == ["latest", "tie-newer", "tie-older", "quiet"]
    assert second == first


@pytest.mark.asyncio
async def test_message_for_unknown_conversation_triggers_no_lookup(backend, clock, monkeypatch):
    _seed_people(backend)
    view = _view(backend, clock)
    await view.watch()
    tables = []
    original = backend.table

    def _recording(name):
        tables.append(name)
        return original(name)

    monkeypatch.setattr(backend, "table", _recording)

    await backend.insert(
        "messages",
        {"id": "m1", "conversation_id": "someone-else", "sender_id": "ana", "content": "hi", "sent_at": clock()},
    )

    assert "conversations" not in tables
    assert view.items == []


@pytest.mark.asyncio
async def test_watched_hidden_conversation_returns_on_new_message(backend, clock):
    _seed_people(backend)
    backend.seed(
        "conversations",
        {
            "id": "c1",
            "participant_ids": ["me", "ana"],
            "is_group": False,
            "last_message_content": "old",
            "last_message_sent_at": clock() - timedelta(hours=1),
        },
    )
    view = _view(backend, clock)
    await view.watch()
    await view.hide("c1")
    assert view.items == []

    clock.advance(60)
    await backend.insert(
        "messages",
        {"id": "m2", "conversation_id": "c1", "sender_id": "ana", "content": "still there?", "sent_at": clock()},
    )

    assert [(item.id, item.last_message) for item in view.items] == [("c1", "still there?")]
