import asyncio
from datetime import timedelta

import pytest

from overlooked.domain.chat.service import conversation_id_from_rpc
from overlooked.infra.errors import Forbidden, InvalidRequest, NotFound, NotSignedIn, TransientFailure


def _seed_users(backend):
    backend.seed(
        "users",
        [
            {"id": "me", "full_name": "Maya"},
            {"id": "ana", "full_name": "Ana Ortiz"},
            {"id": "bo", "full_name": "Bo Anders"},
        ],
    )


def test_conversation_id_from_rpc_shapes():
    assert conversation_id_from_rpc("abc") == "abc"
    assert conversation_id_from_rpc([{"join_city_group": "xyz"}]) == "xyz"
    assert conversation_id_from_rpc({"conversation_id": 12}) == "12"
    assert conversation_id_from_rpc({"unexpected": True}) is None
    assert conversation_id_from_rpc([]) is None
    assert conversation_id_from_rpc("  ") is None


@pytest.mark.asyncio
async def test_start_direct_reuses_existing_conversation(services, backend):
    _seed_users(backend)

    first = await services.chat.start_direct_conversation("me", "ana")
    second = await services.chat.start_direct_conversation("ana", "me")

    assert first.id == second.id
    assert len(backend.rows("conversations")) == 1
    assert set(first.participant_ids) == {"me", "ana"}


@pytest.mark.asyncio
async def test_start_direct_concurrent_calls_share_one_row(services, backend):
    _seed_users(backend)

    results = await asyncio.gather(
        services.chat.start_direct_conversation("me", "ana"),
        services.chat.start_direct_conversation("me", "ana"),
        services.chat.start_direct_conversation("ana", "me"),
    )

    assert len({conversation.id for conversation in results}) == 1
    assert len(backend.rows("conversations")) == 1
    assert len(services.chat._pair_locks) == 0


@pytest.mark.asyncio
async def test_start_direct_ignores_group_with_same_members(services, backend):
    _seed_users(backend)
    backend.seed("conversations", {"id": "grp", "participant_ids": ["me", "ana"], "is_group": True, "label": "duo"})

    conversation = await services.chat.start_direct_conversation("me", "ana")

    assert conversation.id != "grp"
    assert conversation.is_direct


@pytest.mark.asyncio
async def test_start_direct_validation(services, backend):
    _seed_users(backend)

    with pytest.raises(InvalidRequest) as self_chat:
        await services.chat.start_direct_conversation("me", "me")
    assert self_chat.value.reason == "cannot_chat_with_self"

    with pytest.raises(NotFound):
        await services.chat.start_direct_conversation("me", "ghost")

    with pytest.raises(NotSignedIn):
        await services.chat.start_direct_conversation("", "ana")


@pytest.mark.asyncio
async def test_start_direct_unhides_reused_conversation(services, backend, clock):
    _seed_users(backend)
    conversation = await services.chat.start_direct_conversation("me", "ana")
    await services.chat.hide_conversation("me", conversation.id)
    assert len(backend.rows("conversation_hides")) == 1

    await services.chat.start_direct_conversation("me", "ana")

    assert backend.rows("conversation_hides") == []


@pytest.mark.asyncio
async def test_join_city_group_creates_then_joins(services, backend):
    _seed_users(backend)
    backend.seed("cities", {"id": 3, "name": "Oslo", "country_code": "NO"})

    created = await services.chat.join_city_group("me", 3)
    joined = await services.chat.join_city_group("ana", 3)
    again = await services.chat.join_city_group("ana", 3)

    assert created.id == joined.id == again.id
    assert joined.is_city_group
    assert joined.label == "Oslo"
    assert joined.participant_ids == ("me", "ana")
    assert backend.rpc_calls[0] == ("join_city_group", {"city_id_input": 3, "p_user_id": "me"})


@pytest.mark.asyncio
async def test_join_city_group_without_id_is_transient(services, backend):
    async def _no_id(backend, **params):
        return None

    backend.register_rpc("join_city_group", _no_id)

    with pytest.raises(TransientFailure):
        await services.chat.join_city_group("me", 3)

    with pytest.raises(InvalidRequest):
        await services.chat.join_city_group("me", None)


@pytest.mark.asyncio
async def test_join_labelled_group_normalises_label(services, backend):
    _seed_users(backend)

    first = await services.chat.join_labelled_group("me", "  Film Club ")
    second = await services.chat.join_labelled_group("ana", "film club")

    assert first.id == second.id
    assert second.label == "film club"
    assert second.participant_ids == ("me", "ana")

    with pytest.raises(InvalidRequest):
        await services.chat.join_labelled_group("me", "   ")


@pytest.mark.asyncio
async def test_search_users_excludes_caller(services, backend):
    _seed_users(backend)

    results = await services.chat.search_users("me", "an")

    assert [profile.id for profile in results] == ["ana", "bo"]
    assert await services.chat.search_users("me", "  ") == []


@pytest.mark.asyncio
async def test_open_room_checks_participation(services, backend):
    _seed_users(backend)
    backend.seed("conversations", {"id": "c1", "participant_ids": ["ana", "bo"], "is_group": False})

    with pytest.raises(Forbidden):
        await services.chat.open_room("me", "c1")

    with pytest.raises(NotFound):
        await services.chat.open_room("me", "missing")

    room = await services.chat.open_room("ana", "c1")
    assert room.peer.id == "bo"
    await room.close()


@pytest.mark.asyncio
async def test_list_messages_in_order(services, backend, clock):
    _seed_users(backend)
    backend.seed("conversations", {"id": "c1", "participant_ids": ["me", "ana"], "is_group": False})
    backend.seed(
        "messages",
        [
            {"id": "b", "conversation_id": "c1", "sender_id": "ana", "content": "later", "sent_at": clock()},
            {"id": "a", "conversation_id": "c1", "sender_id": "me", "content": "earlier", "sent_at": clock() - timedelta(seconds=5)},
        ],
    )

    messages = await services.chat.list_messages("me", "c1")

    assert [message.content for message in messages] == ["earlier", "later"]
    with pytest.raises(Forbidden):
        await services.chat.list_messages("bo", "c1")


@pytest.mark.asyncio
async def test_list_conversations_raises_when_refresh_fails(services, backend, monkeypatch):
    async def _boom(query):
        raise TransientFailure("down")

    monkeypatch.setattr(backend, "execute", _boom)

    with pytest.raises(TransientFailure):
        await services.chat.list_conversations("me")
