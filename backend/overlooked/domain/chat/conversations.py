"""Per-user conversation list kept in sync with the change feed."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from overlooked.domain.chat.models import (
	CONVERSATION_COLUMNS,
	MESSAGE_COLUMNS,
	NO_MESSAGES_PLACEHOLDER,
	PHOTO_PREVIEW,
	Conversation,
	ConversationSummary,
	Message,
)
from overlooked.domain.chat.typing_signals import TYPING_INDICATORS_TABLE
from overlooked.domain.discovery.models import City, flag_uri
from overlooked.domain.users import UserProfile, fetch_profiles, parse_timestamp
from overlooked.infra.backend import ChangeEvent, DataBackend, Subscription
from overlooked.infra.errors import DataAccessError
from overlooked.obs import metrics as obs_metrics
from overlooked.settings import settings

logger = logging.getLogger(__name__)

HIDES_TABLE = "conversation_hides"

ListListener = Callable[[List[ConversationSummary]], Awaitable[None]]


def _utcnow() -> datetime:
	return datetime.now(timezone.utc)


def conversation_title(
	conversation: Conversation,
	peer: Optional[UserProfile],
	city: Optional[City],
) -> str:
	if conversation.is_direct:
		return (peer.full_name if peer and peer.full_name else None) or "Conversation"
	if conversation.is_city_group:
		return (city.name if city and city.name else None) or conversation.label or "City"
	return f"Group: {conversation.label}" if conversation.label else "Group Chat"


def last_message_text(content: Optional[str]) -> str:
	if not content:
		return NO_MESSAGES_PLACEHOLDER
	if content.startswith("image:"):
		return PHOTO_PREVIEW
	return content


async def hide_conversation(backend: DataBackend, user_id: str, conversation_id: str, now: datetime) -> None:
	"""Delete-for-me: the conversation stays hidden until a newer message arrives."""
	await backend.upsert(
		HIDES_TABLE,
		{"user_id": user_id, "conversation_id": conversation_id, "hidden_at": now},
		on_conflict=("user_id", "conversation_id"),
	)


async def unhide_conversation(backend: DataBackend, user_id: str, conversation_id: str) -> None:
	await backend.table(HIDES_TABLE).delete().eq("user_id", user_id).eq("conversation_id", conversation_id).execute()


def _visible(summary: ConversationSummary, hidden_at: Optional[datetime]) -> bool:
	if hidden_at is None:
		return True
	last = summary.last_message_time
	return last is not None and last > hidden_at


class ConversationListView:
	"""The signed-in user's conversations, newest activity first.

	``refresh()`` rebuilds the list from scratch; ``watch()`` then patches it
	in place from conversation and message change events. A failed refresh
	keeps the previous list.
	"""

	def __init__(
		self,
		backend: DataBackend,
		user_id: str,
		*,
		now: Callable[[], datetime] = _utcnow,
		typing_window_seconds: Optional[float] = None,
	) -> None:
		self._backend = backend
		self.user_id = user_id
		self._now = now
		self.typing_window_seconds = (
			settings.typing_expiry_seconds if typing_window_seconds is None else float(typing_window_seconds)
		)
		self._items: Dict[str, ConversationSummary] = {}
		self._hidden: Dict[str, datetime] = {}
		self._profiles: Dict[str, UserProfile] = {}
		self._cities: Dict[Any, City] = {}
		self._subscriptions: List[Subscription] = []
		self._listeners: List[ListListener] = []
		self._generation = 0
		self._applied_generation = 0
		self.last_error: Optional[DataAccessError] = None
		self.loaded = False

	# --- reads ---------------------------------------------------------------------------

	@property
	def items(self) -> List[ConversationSummary]:
		return sorted(self._items.values(), key=lambda item: item.sort_key())

	def snapshot(self) -> List[dict[str, Any]]:
		now = self._now()
		return [item.to_dict(now=now, window_seconds=self.typing_window_seconds) for item in self.items]

	def add_listener(self, listener: ListListener) -> None:
		self._listeners.append(listener)

	# --- full refresh ----------------------------------------------------------------------

	async def refresh(self) -> List[ConversationSummary]:
		self._generation += 1
		generation = self._generation
		try:
			summaries, hidden = await self._load()
		except DataAccessError as exc:
			self.last_error = exc
			obs_metrics.inc_list_refresh("failed")
			logger.warning(
				"conversation list refresh failed",
				extra={"user": self.user_id, "error": exc.reason},
			)
			return self.items
		if generation < self._applied_generation:
			return self.items
		self._applied_generation = generation
		self._hidden = hidden
		self._items = {summary.id: summary for summary in summaries if _visible(summary, hidden.get(summary.id))}
		self.last_error = None
		self.loaded = True
		obs_metrics.inc_list_refresh("ok")
		await self._notify()
		return self.items

	async def _load(self) -> tuple[List[ConversationSummary], Dict[str, datetime]]:
		rows = await (
			self._backend.table("conversations")
			.select(CONVERSATION_COLUMNS)
			.contains("participant_ids", [self.user_id])
			.order("last_message_sent_at", desc=True, nulls_first=False)
			.order("created_at", desc=True)
			.execute()
		)
		conversations = [Conversation.from_record(row) for row in rows]
		conversations = await self._backfill_last_messages(conversations)
		await self._resolve_related(conversations)
		typing = await self._load_typing([conversation.id for conversation in conversations])
		hidden = await self._load_hidden()
		summaries = [self._summarise(conversation, typing.get(conversation.id)) for conversation in conversations]
		return summaries, hidden

	async def _backfill_last_messages(self, conversations: List[Conversation]) -> List[Conversation]:
		missing = [c for c in conversations if not c.last_message_content or c.last_message_sent_at is None]
		if not missing:
			return conversations
		latest = await asyncio.gather(*(self._latest_message(c.id) for c in missing))
		patched: Dict[str, Conversation] = {}
		for conversation, message in zip(missing, latest):
			if message is None:
				continue
			patched[conversation.id] = conversation.merge(
				{"last_message_content": message.content, "last_message_sent_at": message.sent_at}
			)
		return [patched.get(c.id, c) for c in conversations]

	async def _latest_message(self, conversation_id: str) -> Optional[Message]:
		row = await (
			self._backend.table("messages")
			.select(MESSAGE_COLUMNS)
			.eq("conversation_id", conversation_id)
			.order("sent_at", desc=True)
			.maybe_single()
		)
		return Message.from_record(row) if row else None

	async def _resolve_related(self, conversations: Iterable[Conversation]) -> None:
		peer_ids = set()
		city_ids = set()
		for conversation in conversations:
			peer_id = conversation.peer_id(self.user_id)
			if peer_id and peer_id not in self._profiles:
				peer_ids.add(peer_id)
			if conversation.is_city_group and conversation.city_id is not None and conversation.city_id not in self._cities:
				city_ids.add(conversation.city_id)
		if peer_ids:
			self._profiles.update(await fetch_profiles(self._backend, peer_ids))
		if city_ids:
			rows = await self._backend.table("cities").select("id, name, country_code").in_("id", list(city_ids)).execute()
			for row in rows:
				city = City.from_record(row)
				self._cities[city.id] = city

	async def _load_typing(self, conversation_ids: List[str]) -> Dict[str, datetime]:
		"""One query for every listed conversation; only fresh rows from other users count."""
		if not conversation_ids:
			return {}
		now = self._now()
		cutoff = now - timedelta(seconds=self.typing_window_seconds)
		rows = await (
			self._backend.table(TYPING_INDICATORS_TABLE)
			.select("conversation_id, user_id, updated_at")
			.in_("conversation_id", conversation_ids)
			.neq("user_id", self.user_id)
			.gte("updated_at", cutoff)
			.execute()
		)
		latest: Dict[str, datetime] = {}
		for row in rows:
			updated_at = parse_timestamp(row.get("updated_at"))
			if updated_at is None or updated_at < cutoff:
				continue
			key = str(row["conversation_id"])
			if key not in latest or updated_at > latest[key]:
				latest[key] = updated_at
		return latest

	async def _load_hidden(self) -> Dict[str, datetime]:
		rows = await self._backend.table(HIDES_TABLE).select("conversation_id, hidden_at").eq("user_id", self.user_id).execute()
		hidden: Dict[str, datetime] = {}
		for row in rows:
			hidden_at = parse_timestamp(row.get("hidden_at"))
			if hidden_at is not None:
				hidden[str(row["conversation_id"])] = hidden_at
		return hidden

	def _summarise(self, conversation: Conversation, typing_seen_at: Optional[datetime] = None) -> ConversationSummary:
		peer_id = conversation.peer_id(self.user_id)
		peer = self._profiles.get(peer_id) if peer_id else None
		city = self._cities.get(conversation.city_id) if conversation.is_city_group else None
		return ConversationSummary(
			conversation=conversation,
			title=conversation_title(conversation, peer, city),
			avatar_url=peer.avatar_url if peer else None,
			flag_uri=flag_uri(city.country_code) if city else None,
			peer=peer,
			last_message=last_message_text(conversation.last_message_content),
			last_message_time=conversation.last_message_sent_at,
			typing_seen_at=typing_seen_at,
		)

	# --- local mutations -------------------------------------------------------------------

	async def hide(self, conversation_id: str) -> None:
		now = self._now()
		await hide_conversation(self._backend, self.user_id, conversation_id, now)
		self._hidden[conversation_id] = now
		if self._items.pop(conversation_id, None) is not None:
			await self._notify()

	async def unhide(self, conversation_id: str) -> None:
		await unhide_conversation(self._backend, self.user_id, conversation_id)
		if self._hidden.pop(conversation_id, None) is not None:
			await self._fetch_one(conversation_id)

	# --- realtime --------------------------------------------------------------------------

	async def watch(self, listener: Optional[ListListener] = None) -> List[ConversationSummary]:
		if listener is not None:
			self.add_listener(listener)
		if not self._subscriptions:
			self._subscriptions.append(await self._backend.subscribe("conversations", "*", self._on_conversation_change))
			self._subscriptions.append(await self._backend.subscribe("messages", "INSERT", self._on_message_insert))
			self._subscriptions.append(
				await self._backend.subscribe(TYPING_INDICATORS_TABLE, "*", self._on_typing_change)
			)
		if not self.loaded:
			await self.refresh()
		return self.items

	async def close(self) -> None:
		subscriptions, self._subscriptions = self._subscriptions, []
		for subscription in subscriptions:
			await subscription.close()
		self._listeners.clear()

	async def _on_conversation_change(self, event: ChangeEvent) -> None:
		obs_metrics.inc_realtime_event("conversation_list", event.table)
		record = event.record
		conversation_id = str(record.get("id") or "")
		if not conversation_id:
			return
		if event.event == "DELETE":
			if self._items.pop(conversation_id, None) is not None:
				await self._notify()
			return
		existing = self._items.get(conversation_id)
		conversation = existing.conversation.merge(record) if existing else Conversation.from_record(record)
		if not conversation.has_participant(self.user_id):
			if self._items.pop(conversation_id, None) is not None:
				await self._notify()
			return
		await self._upsert(conversation, typing_seen_at=existing.typing_seen_at if existing else None)

	async def _on_message_insert(self, event: ChangeEvent) -> None:
		if event.new is None:
			return
		obs_metrics.inc_realtime_event("conversation_list", event.table)
		message = Message.from_record(event.new)
		existing = self._items.get(message.conversation_id)
		if existing is None:
			# New conversations arrive through the conversations feed; only a
			# conversation this user hid needs a lookup to come back.
			if message.conversation_id in self._hidden:
				await self._fetch_one(message.conversation_id, newest=message)
			return
		current = existing.conversation.last_message_sent_at
		if current is not None and message.sent_at is not None and message.sent_at < current:
			return
		conversation = existing.conversation.merge(
			{"last_message_content": message.content, "last_message_sent_at": message.sent_at}
		)
		await self._upsert(conversation, typing_seen_at=existing.typing_seen_at)

	async def _on_typing_change(self, event: ChangeEvent) -> None:
		record = event.new
		if not record:
			return
		user_id = str(record.get("user_id") or "")
		conversation_id = str(record.get("conversation_id") or "")
		existing = self._items.get(conversation_id)
		if existing is None or user_id == self.user_id:
			return
		existing.typing_seen_at = parse_timestamp(record.get("updated_at")) or self._now()
		await self._notify()

	async def _fetch_one(self, conversation_id: str, newest: Optional[Message] = None) -> None:
		try:
			row = await (
				self._backend.table("conversations")
				.select(CONVERSATION_COLUMNS)
				.eq("id", conversation_id)
				.maybe_single()
			)
		except DataAccessError as exc:
			logger.warning("conversation fetch failed", extra={"conversation": conversation_id, "error": exc.reason})
			return
		if row is None:
			return
		conversation = Conversation.from_record(row)
		if not conversation.has_participant(self.user_id):
			return
		current = conversation.last_message_sent_at
		if newest is not None and (current is None or (newest.sent_at is not None and newest.sent_at > current)):
			conversation = conversation.merge(
				{"last_message_content": newest.content, "last_message_sent_at": newest.sent_at}
			)
		await self._upsert(conversation)

	async def _upsert(self, conversation: Conversation, typing_seen_at: Optional[datetime] = None) -> None:
		try:
			await self._resolve_related([conversation])
		except DataAccessError as exc:
			logger.warning("conversation peer lookup failed", extra={"conversation": conversation.id, "error": exc.reason})
		summary = self._summarise(conversation, typing_seen_at)
		if not _visible(summary, self._hidden.get(conversation.id)):
			return
		self._items[conversation.id] = summary
		await self._notify()

	async def _notify(self) -> None:
		items = self.items
		for listener in list(self._listeners):
			try:
				await listener(items)
			except Exception:  # noqa: BLE001
				logger.exception("conversation list listener failed")
