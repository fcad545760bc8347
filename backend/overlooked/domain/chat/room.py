"""A single open conversation: history, realtime, typing and sending."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Union

from overlooked.domain.chat import attachments
from overlooked.domain.chat.conversations import unhide_conversation
from overlooked.domain.chat.models import (
	CONVERSATION_COLUMNS,
	MESSAGE_COLUMNS,
	Conversation,
	Message,
	MessageLog,
	MessageType,
	PHOTO_PREVIEW,
	new_message_id,
)
from overlooked.domain.chat.typing_signals import TYPING_EVENT, TypingTracker, send_typing_signal, typing_channel
from overlooked.domain.discovery.models import City
from overlooked.domain.users import UserProfile, by_display_name, fetch_profiles
from overlooked.infra.backend import ChangeEvent, DataBackend, Filter, Subscription
from overlooked.infra.errors import DataAccessError, Forbidden, InvalidRequest
from overlooked.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

RoomListener = Callable[[str, Any], Awaitable[None]]


def _utcnow() -> datetime:
	return datetime.now(timezone.utc)


class RoomState(str, Enum):
	RESOLVING = "resolving"
	READY = "ready"
	MISSING = "missing"


class ConversationRoom:
	"""State for one conversation opened by one user.

	Listeners are called with ``("message", Message)``, ``("message_removed", id)``
	for an optimistic message whose send failed, ``("typing", user_id)`` or
	``("conversation", Conversation)``.
	"""

	def __init__(
		self,
		backend: DataBackend,
		user_id: str,
		*,
		now: Callable[[], datetime] = _utcnow,
		clock: Callable[[], float] = time.monotonic,
		typing_window_seconds: Optional[float] = None,
		id_factory: Callable[[], str] = new_message_id,
	) -> None:
		self._backend = backend
		self.user_id = user_id
		self._now = now
		self._id_factory = id_factory
		self.state = RoomState.RESOLVING
		self.conversation: Optional[Conversation] = None
		self.peer: Optional[UserProfile] = None
		self.city: Optional[City] = None
		self.messages = MessageLog()
		self.sender_names: Dict[str, str] = {}
		self.draft = ""
		self.typing = TypingTracker(typing_window_seconds, clock)
		self._subscriptions: List[Subscription] = []
		self._listeners: List[RoomListener] = []

	@property
	def conversation_id(self) -> Optional[str]:
		return self.conversation.id if self.conversation else None

	def add_listener(self, listener: RoomListener) -> None:
		self._listeners.append(listener)

	def snapshot(self) -> Dict[str, Any]:
		return {
			"state": self.state.value,
			"conversation": self.conversation.to_dict() if self.conversation else None,
			"peer": self.peer.to_dict() if self.peer else None,
			"city": self.city.to_dict() if self.city else None,
			"messages": [message.to_dict() for message in self.messages],
			"sender_names": dict(self.sender_names),
			"typing": self.typing.active(),
			"draft": self.draft,
		}

	# --- lifecycle -------------------------------------------------------------------------

	async def open(
		self,
		conversation_id: str,
		conversation: Union[Conversation, Mapping[str, Any], None] = None,
	) -> RoomState:
		self.state = RoomState.RESOLVING
		if isinstance(conversation, Mapping):
			conversation = Conversation.from_record(conversation)
		if conversation is None or conversation.id != conversation_id:
			row = await (
				self._backend.table("conversations")
				.select(CONVERSATION_COLUMNS)
				.eq("id", conversation_id)
				.maybe_single()
			)
			conversation = Conversation.from_record(row) if row else None
		if conversation is None:
			self.state = RoomState.MISSING
			return self.state
		try:
			conversation.validate()
		except InvalidRequest:
			logger.warning("refusing malformed direct conversation", extra={"conversation": conversation.id})
			self.state = RoomState.MISSING
			return self.state
		if not conversation.has_participant(self.user_id):
			self.state = RoomState.MISSING
			raise Forbidden("not_a_participant")
		self.conversation = conversation
		await unhide_conversation(self._backend, self.user_id, conversation.id)
		await self._resolve_header()
		await self._load_history()
		await self._resolve_sender_names(set(conversation.participant_ids))
		await self._subscribe()
		self.state = RoomState.READY
		return self.state

	def bind(self, conversation: Conversation) -> RoomState:
		"""Make the room ready for sending without loading history or subscribing."""
		if not conversation.has_participant(self.user_id):
			self.state = RoomState.MISSING
			raise Forbidden("not_a_participant")
		self.conversation = conversation
		self.state = RoomState.READY
		return self.state

	async def close(self) -> None:
		subscriptions, self._subscriptions = self._subscriptions, []
		for subscription in subscriptions:
			await subscription.close()
		self._listeners.clear()

	async def _resolve_header(self) -> None:
		conversation = self.conversation
		assert conversation is not None
		peer_id = conversation.peer_id(self.user_id)
		if peer_id:
			profiles = await fetch_profiles(self._backend, [peer_id])
			self.peer = profiles.get(peer_id)
		elif conversation.is_city_group and conversation.city_id is not None:
			row = await self._backend.table("cities").select("id, name, country_code").eq("id", conversation.city_id).maybe_single()
			self.city = City.from_record(row) if row else None

	async def _load_history(self) -> None:
		assert self.conversation is not None
		rows = await (
			self._backend.table("messages")
			.select(MESSAGE_COLUMNS)
			.eq("conversation_id", self.conversation.id)
			.order("sent_at")
			.execute()
		)
		for row in rows:
			self.messages.upsert(Message.from_record(row))

	async def _resolve_sender_names(self, extra_ids: Iterable[str] = ()) -> None:
		wanted = {message.sender_id for message in self.messages} | set(extra_ids)
		missing = [user_id for user_id in wanted if user_id and user_id not in self.sender_names]
		if not missing:
			return
		profiles = await fetch_profiles(self._backend, missing)
		for user_id, profile in profiles.items():
			self.sender_names[user_id] = profile.full_name or "Unknown"

	async def _subscribe(self) -> None:
		assert self.conversation is not None
		conversation_id = self.conversation.id
		self._subscriptions.append(
			await self._backend.subscribe(
				"messages",
				"INSERT",
				self._on_message,
				Filter("conversation_id", "eq", conversation_id),
			)
		)
		self._subscriptions.append(
			await self._backend.subscribe(
				"conversations",
				"UPDATE",
				self._on_conversation,
				Filter("id", "eq", conversation_id),
			)
		)
		self._subscriptions.append(
			await self._backend.on_broadcast(typing_channel(conversation_id), TYPING_EVENT, self._on_typing)
		)

	# --- realtime --------------------------------------------------------------------------

	async def _on_message(self, event: ChangeEvent) -> None:
		if event.new is None or self.conversation is None:
			return
		message = Message.from_record(event.new)
		if message.conversation_id != self.conversation.id:
			return
		obs_metrics.inc_realtime_event("room", event.table)
		if not self.messages.upsert(message):
			obs_metrics.inc_realtime_duplicate()
			return
		self.typing.clear(message.sender_id)
		if message.sender_id and message.sender_id not in self.sender_names:
			try:
				await self._resolve_sender_names({message.sender_id})
			except DataAccessError as exc:
				logger.warning("sender lookup failed", extra={"sender": message.sender_id, "error": exc.reason})
		await self._emit("message", message)

	async def _on_conversation(self, event: ChangeEvent) -> None:
		if event.new is None or self.conversation is None:
			return
		obs_metrics.inc_realtime_event("room", event.table)
		self.conversation = self.conversation.merge(event.new)
		await self._emit("conversation", self.conversation)

	async def _on_typing(self, payload: Dict[str, Any]) -> None:
		sender = str(payload.get("sender") or "")
		if not sender or sender == self.user_id:
			return
		self.typing.touch(sender)
		await self._emit("typing", sender)

	async def _emit(self, kind: str, value: Any) -> None:
		for listener in list(self._listeners):
			try:
				await listener(kind, value)
			except Exception:  # noqa: BLE001
				logger.exception("room listener failed", extra={"kind": kind})

	# --- composing and sending -------------------------------------------------------------

	async def set_draft(self, text: str) -> None:
		self.draft = text
		if text and self.state is RoomState.READY and self.conversation is not None:
			await send_typing_signal(self._backend, self.conversation.id, self.user_id, self._now())

	async def signal_typing(self) -> bool:
		if self.state is not RoomState.READY or self.conversation is None:
			return False
		return await send_typing_signal(self._backend, self.conversation.id, self.user_id, self._now())

	def _require_ready(self) -> Conversation:
		if self.state is not RoomState.READY or self.conversation is None:
			raise InvalidRequest("room_not_ready")
		return self.conversation

	async def send_text(self) -> Optional[Message]:
		"""Send the trimmed draft; an empty draft sends nothing."""
		self._require_ready()
		original = self.draft
		text = original.strip()
		if not text:
			return None
		self.draft = ""
		try:
			return await self._deliver(text, MessageType.TEXT, text)
		except DataAccessError:
			self.draft = original
			raise

	async def send_attachment(self, file_name: str, mime_type: Optional[str], data: bytes) -> Message:
		conversation = self._require_ready()
		if attachments.is_image(mime_type):
			sent_at = self._now()
			path = attachments.upload_path(
				conversation.id,
				self.user_id,
				sent_at,
				attachments.image_extension(mime_type, file_name),
			)
			await self._backend.storage.upload(
				attachments.CHAT_UPLOADS_BUCKET,
				path,
				data,
				content_type=str(mime_type),
				upsert=True,
			)
			url = self._backend.storage.public_url(attachments.CHAT_UPLOADS_BUCKET, path)
			return await self._deliver(attachments.image_content(url), MessageType.MEDIA, PHOTO_PREVIEW)
		marker = attachments.file_marker(file_name)
		return await self._deliver(marker, MessageType.TEXT, marker)

	async def _deliver(self, content: str, message_type: MessageType, preview: str) -> Message:
		conversation = self._require_ready()
		message = Message(
			id=self._id_factory(),
			conversation_id=conversation.id,
			sender_id=self.user_id,
			content=content,
			message_type=message_type,
			sent_at=self._now(),
		)
		self.messages.upsert(message)
		await self._emit("message", message)
		try:
			rows = await self._backend.insert("messages", message.to_record())
		except DataAccessError as exc:
			self.messages.remove(message.id)
			obs_metrics.inc_chat_send_failure()
			await self._emit("message_removed", message.id)
			logger.warning(
				"message send failed",
				extra={"conversation": conversation.id, "error": exc.reason},
			)
			raise
		stored = Message.from_record(rows[0]) if rows else message
		self.messages.upsert(stored)
		obs_metrics.inc_chat_send(message_type.value)
		try:
			await (
				self._backend.table("conversations")
				.update({"last_message_content": preview, "last_message_sent_at": stored.sent_at})
				.eq("id", conversation.id)
				.execute()
			)
		except DataAccessError as exc:
			logger.warning(
				"last message update failed",
				extra={"conversation": conversation.id, "error": exc.reason},
			)
		return stored

	async def members(self) -> List[UserProfile]:
		conversation = self._require_ready()
		profiles = await fetch_profiles(self._backend, conversation.participant_ids)
		return by_display_name(profiles.values())
