"""Conversation lifecycle: direct chats, groups, search and hiding."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, List, Mapping, Optional

from overlooked.domain.chat.conversations import (
	ConversationListView,
	hide_conversation,
	unhide_conversation,
)
from overlooked.domain.chat.models import CONVERSATION_COLUMNS, MESSAGE_COLUMNS, Conversation, Message
from overlooked.domain.chat.room import ConversationRoom, RoomState
from overlooked.domain.chat.typing_signals import send_typing_signal
from overlooked.domain.users import PROFILE_COLUMNS, UserProfile, by_display_name, fetch_profiles
from overlooked.infra.auth import require_signed_in
from overlooked.infra.backend import DataBackend
from overlooked.infra.errors import Forbidden, InvalidRequest, NotFound, TransientFailure
from overlooked.infra.locks import KeyedLocks
from overlooked.settings import settings

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
	return datetime.now(timezone.utc)


def conversation_id_from_rpc(result: Any) -> Optional[str]:
	"""``join_city_group`` may answer with a bare id or an object carrying one."""
	if isinstance(result, list):
		result = result[0] if result else None
	if isinstance(result, (str, int)) and str(result).strip():
		return str(result).strip()
	if isinstance(result, Mapping):
		for key in ("conversation_id", "id", "join_city_group"):
			value = result.get(key)
			if isinstance(value, (str, int)) and str(value).strip():
				return str(value).strip()
	return None


class ChatService:
	"""Chat operations that act on conversations as a whole."""

	def __init__(self, backend: DataBackend, *, now: Callable[[], datetime] = _utcnow) -> None:
		self._backend = backend
		self._now = now
		self._pair_locks = KeyedLocks()

	def _pair_lock(self, user_a: str, user_b: str):
		return self._pair_locks.hold((user_a, user_b) if user_a <= user_b else (user_b, user_a))

	# --- views ---------------------------------------------------------------------------------

	def list_view(self, user_id: str) -> ConversationListView:
		return ConversationListView(self._backend, require_signed_in(user_id), now=self._now)

	def room(self, user_id: str) -> ConversationRoom:
		return ConversationRoom(self._backend, require_signed_in(user_id), now=self._now)

	async def list_conversations(self, user_id: str) -> ConversationListView:
		view = self.list_view(user_id)
		await view.refresh()
		if view.last_error is not None:
			raise view.last_error
		return view

	async def open_room(self, user_id: str, conversation_id: str) -> ConversationRoom:
		room = self.room(user_id)
		if await room.open(conversation_id) is RoomState.MISSING:
			raise NotFound("conversation_not_found")
		return room

	# --- one-shot actions ------------------------------------------------------------------------

	async def _sender(self, user_id: str, conversation_id: str) -> ConversationRoom:
		conversation = await self.get_conversation(user_id, conversation_id)
		room = self.room(user_id)
		room.bind(conversation)
		return room

	async def send_text(self, user_id: str, conversation_id: str, content: str) -> Optional[Message]:
		room = await self._sender(user_id, conversation_id)
		room.draft = content
		return await room.send_text()

	async def send_attachment(
		self,
		user_id: str,
		conversation_id: str,
		file_name: str,
		mime_type: Optional[str],
		data: bytes,
	) -> Message:
		room = await self._sender(user_id, conversation_id)
		return await room.send_attachment(file_name, mime_type, data)

	async def signal_typing(self, user_id: str, conversation_id: str) -> bool:
		conversation = await self.get_conversation(user_id, conversation_id)
		return await send_typing_signal(self._backend, conversation.id, require_signed_in(user_id), self._now())

	async def members(self, user_id: str, conversation_id: str) -> List[UserProfile]:
		conversation = await self.get_conversation(user_id, conversation_id)
		profiles = await fetch_profiles(self._backend, conversation.participant_ids)
		return by_display_name(profiles.values())

	# --- conversations -------------------------------------------------------------------------

	async def get_conversation(self, user_id: str, conversation_id: str) -> Conversation:
		uid = require_signed_in(user_id)
		row = await self._backend.table("conversations").select(CONVERSATION_COLUMNS).eq("id", conversation_id).maybe_single()
		if row is None:
			raise NotFound("conversation_not_found")
		conversation = Conversation.from_record(row)
		if not conversation.has_participant(uid):
			raise Forbidden("not_a_participant")
		return conversation

	async def list_messages(self, user_id: str, conversation_id: str) -> List[Message]:
		conversation = await self.get_conversation(user_id, conversation_id)
		rows = await (
			self._backend.table("messages")
			.select(MESSAGE_COLUMNS)
			.eq("conversation_id", conversation.id)
			.order("sent_at")
			.order("id")
			.execute()
		)
		return [Message.from_record(row) for row in rows]

	async def start_direct_conversation(self, user_id: str, peer_id: str) -> Conversation:
		"""Reuse the 1:1 conversation for this pair or create it.

		Calls for the same pair are serialised so rapid repeats share one row.
		"""
		uid = require_signed_in(user_id)
		peer = (peer_id or "").strip()
		if not peer:
			raise InvalidRequest("peer_required")
		if peer == uid:
			raise InvalidRequest("cannot_chat_with_self")
		async with self._pair_lock(uid, peer):
			existing = await self._find_direct(uid, peer)
			if existing is not None:
				await unhide_conversation(self._backend, uid, existing.id)
				return existing
			peer_row = await self._backend.table("users").select("id").eq("id", peer).maybe_single()
			if peer_row is None:
				raise NotFound("user_not_found")
			candidate = Conversation(id="", participant_ids=(uid, peer), is_group=False)
			candidate.validate()
			rows = await self._backend.insert(
				"conversations",
				{
					"is_group": False,
					"is_city_group": False,
					"participant_ids": [uid, peer],
					"last_message_content": None,
					"last_message_sent_at": None,
				},
			)
			conversation = Conversation.from_record(rows[0])
			logger.info("direct conversation created", extra={"conversation": conversation.id})
			return conversation

	async def _find_direct(self, user_a: str, user_b: str) -> Optional[Conversation]:
		rows = await (
			self._backend.table("conversations")
			.select(CONVERSATION_COLUMNS)
			.eq("is_group", False)
			.contains("participant_ids", [user_a, user_b])
			.order("created_at")
			.execute()
		)
		for row in rows:
			conversation = Conversation.from_record(row)
			if set(conversation.participant_ids) == {user_a, user_b} and len(conversation.participant_ids) == 2:
				return conversation
		return None

	async def join_city_group(self, user_id: str, city_id: Any) -> Conversation:
		uid = require_signed_in(user_id)
		if city_id in (None, ""):
			raise InvalidRequest("city_required")
		result = await self._backend.rpc("join_city_group", {"city_id_input": city_id, "p_user_id": uid})
		conversation_id = conversation_id_from_rpc(result)
		if conversation_id is None:
			logger.warning("join_city_group returned no id", extra={"city": city_id})
			raise TransientFailure("city_group_unavailable")
		await unhide_conversation(self._backend, uid, conversation_id)
		row = await self._backend.table("conversations").select(CONVERSATION_COLUMNS).eq("id", conversation_id).maybe_single()
		if row is None:
			raise TransientFailure("city_group_unavailable")
		return Conversation.from_record(row)

	async def join_labelled_group(self, user_id: str, label: str) -> Conversation:
		uid = require_signed_in(user_id)
		normalised = (label or "").strip().lower()
		if not normalised:
			raise InvalidRequest("label_required")
		row = await (
			self._backend.table("conversations")
			.select(CONVERSATION_COLUMNS)
			.eq("is_group", True)
			.eq("is_city_group", False)
			.eq("label", normalised)
			.order("created_at")
			.maybe_single()
		)
		if row is None:
			rows = await self._backend.insert(
				"conversations",
				{
					"is_group": True,
					"is_city_group": False,
					"label": normalised,
					"participant_ids": [uid],
					"last_message_content": None,
					"last_message_sent_at": None,
				},
			)
			return Conversation.from_record(rows[0])
		conversation = Conversation.from_record(row)
		if not conversation.has_participant(uid):
			participants = [*conversation.participant_ids, uid]
			rows = await (
				self._backend.table("conversations")
				.update({"participant_ids": participants})
				.eq("id", conversation.id)
				.execute()
			)
			if rows:
				conversation = Conversation.from_record(rows[0])
		await unhide_conversation(self._backend, uid, conversation.id)
		return conversation

	async def search_users(self, user_id: str, query: str) -> List[UserProfile]:
		uid = require_signed_in(user_id)
		term = (query or "").strip()
		if not term:
			return []
		rows = await (
			self._backend.table("users")
			.select(PROFILE_COLUMNS)
			.ilike("full_name", f"%{term}%")
			.neq("id", uid)
			.order("full_name")
			.limit(settings.user_search_limit)
			.execute()
		)
		return [UserProfile.from_record(row) for row in rows]

	async def hide_conversation(self, user_id: str, conversation_id: str) -> None:
		conversation = await self.get_conversation(user_id, conversation_id)
		await hide_conversation(self._backend, require_signed_in(user_id), conversation.id, self._now())

	async def unhide_conversation(self, user_id: str, conversation_id: str) -> None:
		await unhide_conversation(self._backend, require_signed_in(user_id), conversation_id)
