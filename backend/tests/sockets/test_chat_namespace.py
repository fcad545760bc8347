from unittest.mock import AsyncMock

import pytest
import socketio

from overlooked.domain.chat.sockets import ChatNamespace
from overlooked.infra import jwt as jwt_helper
from overlooked.infra.errors import TransientFailure
from overlooked.settings import settings


def _scope_with_authorization(token: str) -> dict:
	return {
		"headers": [(b"authorization", f"Bearer {token}".encode())],
	}


def _namespace(services) -> ChatNamespace:
	server = socketio.AsyncServer(async_mode="asgi")
	namespace = ChatNamespace(services_factory=lambda: services)
	server.register_namespace(namespace)
	namespace.emit = AsyncMock()
	return namespace


def _emitted(namespace, event: str) -> list:
	return [call.args[1] for call in namespace.emit.await_args_list if call.args[0] == event]


def _seed(backend) -> None:
	backend.seed("users", [{"id": "me", "full_name": "Me"}, {"id": "ana", "full_name": "Ana"}])
	backend.seed("conversations", {"id": "c1", "participant_ids": ["me", "ana"], "is_group": False})


@pytest.mark.asyncio
async def test_connect_requires_credentials(services):
	namespace = _namespace(services)
	settings.environment = "production"

	with pytest.raises(ConnectionRefusedError):
		await namespace.trigger_event("connect", "sid-1", {"asgi.scope": {"headers": []}}, {"user_id": "me"})


@pytest.mark.asyncio
async def test_connect_with_bearer_token(services):
	namespace = _namespace(services)
	token = jwt_helper.encode_access({"sub": "me"})

	await namespace.trigger_event("connect", "sid-1", {"asgi.scope": _scope_with_authorization(token)}, None)

	assert _emitted(namespace, "chat:ack") == [{"ok": True, "user_id": "me"}]


@pytest.mark.asyncio
async def test_connect_rejects_bad_token(services):
	namespace = _namespace(services)

	with pytest.raises(ConnectionRefusedError):
		await namespace.trigger_event("connect", "sid-1", {"asgi.scope": _scope_with_authorization("garbage")}, None)


@pytest.mark.asyncio
async def test_list_watch_pushes_updates(services, backend):
	_seed(backend)
	namespace = _namespace(services)
	await namespace.trigger_event("connect", "sid-1", {"asgi.scope": {"headers": []}}, {"user_id": "me"})

	ack = await namespace.trigger_event("list_watch", "sid-1", {})

	assert ack["ok"] is True
	assert [item["id"] for item in ack["items"]] == ["c1"]

	await backend.insert("messages", {"id": "m1", "conversation_id": "c1", "sender_id": "ana", "content": "yo"})
	snapshots = _emitted(namespace, "list:snapshot")
	assert snapshots[-1]["items"][0]["last_message"] == "yo"

	await namespace.trigger_event("disconnect", "sid-1")
	count = len(_emitted(namespace, "list:snapshot"))
	await backend.insert("messages", {"id": "m2", "conversation_id": "c1", "sender_id": "ana", "content": "later"})
	assert len(_emitted(namespace, "list:snapshot")) == count


@pytest.mark.asyncio
async def test_room_join_send_and_typing(services, backend):
	_seed(backend)
	namespace = _namespace(services)
	await namespace.trigger_event("connect", "sid-1", {"asgi.scope": {"headers": []}}, {"user_id": "me"})

	joined = await namespace.trigger_event("room_join", "sid-1", {"conversation_id": "c1"})
	assert joined["ok"] is True
	assert joined["room"]["peer"]["full_name"] == "Ana"

	sent = await namespace.trigger_event("room_send", "sid-1", {"content": "  hello  "})
	assert sent["ok"] is True
	assert sent["message"]["content"] == "hello"
	assert [payload["content"] for payload in _emitted(namespace, "room:message")] == ["hello"]

	empty = await namespace.trigger_event("room_send", "sid-1", {"content": "   "})
	assert empty == {"ok": False, "reason": "empty_message"}

	await backend.broadcast("typing-c1", "typing", {"sender": "ana"})
	typing = _emitted(namespace, "room:typing")[-1]
	assert typing["user_id"] == "ana"
	assert typing["active"] == ["ana"]

	assert await namespace.trigger_event("typing", "sid-1", {}) == {"ok": True}
	assert backend.broadcasts[-1] == ("typing-c1", "typing", {"sender": "me"})

	assert await namespace.trigger_event("room_leave", "sid-1", {}) == {"ok": True}
	assert await namespace.trigger_event("room_send", "sid-1", {"content": "x"}) == {"ok": False, "reason": "no_room"}


@pytest.mark.asyncio
async def test_room_join_refuses_non_participant(services, backend):
	_seed(backend)
	namespace = _namespace(services)
	await namespace.trigger_event("connect", "sid-2", {"asgi.scope": {"headers": []}}, {"user_id": "stranger"})

	ack = await namespace.trigger_event("room_join", "sid-2", {"conversation_id": "c1"})

	assert ack == {"ok": False, "reason": "not_a_participant"}
	assert await namespace.trigger_event("room_join", "sid-2", {}) == {"ok": False, "reason": "conversation_required"}


@pytest.mark.asyncio
async def test_failed_send_retracts_optimistic_message(services, backend, monkeypatch):
	_seed(backend)
	namespace = _namespace(services)
	await namespace.trigger_event("connect", "sid-1", {"asgi.scope": {"headers": []}}, {"user_id": "me"})
	await namespace.trigger_event("room_join", "sid-1", {"conversation_id": "c1"})

	async def _fail(table, rows):
		raise TransientFailure("database_unavailable")

	monkeypatch.setattr(backend, "insert", _fail)

	ack = await namespace.trigger_event("room_send", "sid-1", {"content": "lost"})

	assert ack == {"ok": False, "reason": "database_unavailable", "draft": "lost"}
	(optimistic,) = _emitted(namespace, "room:message")
	assert _emitted(namespace, "room:message_removed") == [{"conversation_id": "c1", "id": optimistic["id"]}]
