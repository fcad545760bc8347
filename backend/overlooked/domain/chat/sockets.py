"""Socket.IO namespace streaming the conversation list and open rooms."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import socketio
from fastapi import HTTPException

from overlooked.domain.chat.conversations import ConversationListView
from overlooked.domain.chat.models import Conversation, Message
from overlooked.domain.chat.room import ConversationRoom
from overlooked.infra.auth import AuthenticatedUser, verify_access_jwt
from overlooked.infra.errors import DataAccessError
from overlooked.obs import logging as obs_logging
from overlooked.obs import metrics as obs_metrics
from overlooked.services import Services, get_services
from overlooked.settings import settings

logger = logging.getLogger(__name__)


def _header(scope: dict, name: str) -> Optional[str]:
	target = name.encode().lower()
	for key, value in scope.get("headers", []):
		if key.lower() == target:
			return value.decode()
	return None


@dataclass(slots=True)
class ChatSession:
	user: AuthenticatedUser
	list_view: Optional[ConversationListView] = None
	room: Optional[ConversationRoom] = None


class ChatNamespace(socketio.AsyncNamespace):
	"""One list view and at most one open room per connected client."""

	def __init__(self, services_factory: Callable[[], Services] = get_services) -> None:
		super().__init__("/chat")
		self._services_factory = services_factory
		self._sessions: Dict[str, ChatSession] = {}

	async def on_connect(self, sid: str, environ: dict, auth: Optional[dict] = None) -> None:
		obs_metrics.socket_connected(self.namespace)
		try:
			user = self._authorise(environ, auth)
		except (HTTPException, ValueError):
			obs_metrics.socket_disconnected(self.namespace)
			with obs_logging.log_context(sid=sid):
				logger.info("chat socket refused")
			raise ConnectionRefusedError("unauthorized") from None
		self._sessions[sid] = ChatSession(user=user)
		with obs_logging.log_context(sid=sid, user_id=user.id):
			logger.info("chat socket connected")
		await self.emit("chat:ack", {"ok": True, "user_id": user.id}, room=sid)

	async def on_disconnect(self, sid: str, reason: Any = None) -> None:
		obs_metrics.socket_disconnected(self.namespace)
		session = self._sessions.pop(sid, None)
		if session is None:
			return
		if session.room is not None:
			await session.room.close()
		if session.list_view is not None:
			await session.list_view.close()

	async def on_list_watch(self, sid: str, payload: dict | None = None) -> dict:
		obs_metrics.socket_event(self.namespace, "list_watch")
		session = self._session(sid)
		if session.list_view is None:
			view = self._services_factory().chat.list_view(session.user.id)

			async def push(_items: List[Any]) -> None:
				await self._emit_to(sid, "list:snapshot", {"items": view.snapshot()})

			session.list_view = view
			await view.watch(push)
		else:
			await session.list_view.refresh()
		view = session.list_view
		if view.last_error is not None and not view.loaded:
			return {"ok": False, "reason": view.last_error.reason}
		return {"ok": True, "items": view.snapshot()}

	async def on_room_join(self, sid: str, payload: dict) -> dict:
		obs_metrics.socket_event(self.namespace, "room_join")
		session = self._session(sid)
		conversation_id = str((payload or {}).get("conversation_id") or "")
		if not conversation_id:
			return {"ok": False, "reason": "conversation_required"}
		await self._close_room(session)
		try:
			room = await self._services_factory().chat.open_room(session.user.id, conversation_id)
		except DataAccessError as exc:
			with obs_logging.log_context(sid=sid, user_id=session.user.id, conversation_id=conversation_id):
				logger.info("chat room join rejected", extra={"reason": exc.reason})
			return {"ok": False, "reason": exc.reason}

		async def forward(kind: str, value: Any) -> None:
			await self._forward_room_event(sid, room, kind, value)

		room.add_listener(forward)
		session.room = room
		snapshot = room.snapshot()
		await self._emit_to(sid, "room:snapshot", snapshot)
		return {"ok": True, "room": snapshot}

	async def on_room_leave(self, sid: str, payload: dict | None = None) -> dict:
		obs_metrics.socket_event(self.namespace, "room_leave")
		await self._close_room(self._session(sid))
		return {"ok": True}

	async def on_typing(self, sid: str, payload: dict | None = None) -> dict:
		obs_metrics.socket_event(self.namespace, "typing")
		room = self._session(sid).room
		if room is None:
			return {"ok": False, "reason": "no_room"}
		draft = (payload or {}).get("draft")
		if draft is not None:
			await room.set_draft(str(draft))
			return {"ok": True}
		return {"ok": await room.signal_typing()}

	async def on_room_send(self, sid: str, payload: dict) -> dict:
		obs_metrics.socket_event(self.namespace, "room_send")
		room = self._session(sid).room
		if room is None:
			return {"ok": False, "reason": "no_room"}
		room.draft = str((payload or {}).get("content") or "")
		try:
			message = await room.send_text()
		except DataAccessError as exc:
			with obs_logging.log_context(sid=sid, conversation_id=room.conversation_id):
				logger.warning("chat socket send failed", extra={"reason": exc.reason, "kind": exc.kind.value})
			return {"ok": False, "reason": exc.reason, "draft": room.draft}
		if message is None:
			return {"ok": False, "reason": "empty_message"}
		return {"ok": True, "message": message.to_dict()}

	def _session(self, sid: str) -> ChatSession:
		session = self._sessions.get(sid)
		if session is None:
			raise ConnectionRefusedError("unauthenticated")
		return session

	async def _close_room(self, session: ChatSession) -> None:
		room, session.room = session.room, None
		if room is not None:
			await room.close()

	async def _forward_room_event(self, sid: str, room: ConversationRoom, kind: str, value: Any) -> None:
		if kind == "message" and isinstance(value, Message):
			await self._emit_to(sid, "room:message", value.to_dict())
		elif kind == "message_removed":
			await self._emit_to(sid, "room:message_removed", {"conversation_id": room.conversation_id, "id": value})
		elif kind == "typing":
			await self._emit_to(
				sid,
				"room:typing",
				{"conversation_id": room.conversation_id, "user_id": value, "active": room.typing.active()},
			)
		elif kind == "conversation" and isinstance(value, Conversation):
			await self._emit_to(sid, "room:conversation", value.to_dict())

	async def _emit_to(self, sid: str, event: str, payload: Any) -> None:
		obs_metrics.socket_event(self.namespace, event)
		await self.emit(event, payload, room=sid)

	def _authorise(self, environ: dict, auth: Optional[dict]) -> AuthenticatedUser:
		scope = environ.get("asgi.scope", environ)
		auth_payload = auth or environ.get("auth") or scope.get("auth") or {}
		token = auth_payload.get("token")
		if not token:
			auth_header = _header(scope, "authorization")
			if auth_header and auth_header.lower().startswith("bearer "):
				token = auth_header.split(" ", 1)[1]
		if token:
			return verify_access_jwt(str(token))
		if settings.is_dev():
			user_id = auth_payload.get("user_id") or auth_payload.get("userId") or _header(scope, "x-user-id")
			if user_id and str(user_id).strip():
				return AuthenticatedUser(id=str(user_id).strip())
		raise ValueError("missing_token")
