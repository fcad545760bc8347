"""Domain models for conversations and messages."""

from __future__ import annotations

import bisect
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

import ulid

from overlooked.domain.users import UserProfile, parse_timestamp
from overlooked.infra.errors import InvalidRequest

CONVERSATION_COLUMNS = (
	"id, label, is_group, is_city_group, city_id, participant_ids, "
	"last_message_content, last_message_sent_at, created_at"
)
MESSAGE_COLUMNS = "id, conversation_id, sender_id, content, message_type, sent_at"

IMAGE_PREFIX = "image:"
FILE_MARKER_PREFIX = "📎 File: "
PHOTO_PREVIEW = "[Photo]"
NO_MESSAGES_PLACEHOLDER = "No messages yet"

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class MessageType(str, Enum):
	TEXT = "text"
	MEDIA = "media"


def new_message_id() -> str:
	"""Time-ordered id generated before the insert so realtime echoes can be matched."""
	return str(ulid.new().uuid)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
	if value is not None and value.tzinfo is None:
		return value.replace(tzinfo=timezone.utc)
	return value


@dataclass(slots=True)
class Conversation:
	id: str
	participant_ids: Tuple[str, ...] = ()
	is_group: bool = False
	is_city_group: bool = False
	city_id: Optional[Any] = None
	label: Optional[str] = None
	last_message_content: Optional[str] = None
	last_message_sent_at: Optional[datetime] = None
	created_at: Optional[datetime] = None

	@classmethod
	def from_record(cls, record: Mapping[str, Any]) -> "Conversation":
		return cls(
			id=str(record["id"]),
			participant_ids=tuple(str(pid) for pid in (record.get("participant_ids") or ())),
			is_group=bool(record.get("is_group")),
			is_city_group=bool(record.get("is_city_group")),
			city_id=record.get("city_id"),
			label=record.get("label"),
			last_message_content=record.get("last_message_content"),
			last_message_sent_at=_aware(parse_timestamp(record.get("last_message_sent_at"))),
			created_at=_aware(parse_timestamp(record.get("created_at"))),
		)

	def merge(self, record: Mapping[str, Any]) -> "Conversation":
		"""Apply a partial change-feed row on top of this conversation."""
		updated = Conversation.from_record({**self.to_record(), **dict(record)})
		return replace(updated, id=self.id)

	def to_record(self) -> Dict[str, Any]:
		return {
			"id": self.id,
			"participant_ids": list(self.participant_ids),
			"is_group": self.is_group,
			"is_city_group": self.is_city_group,
			"city_id": self.city_id,
			"label": self.label,
			"last_message_content": self.last_message_content,
			"last_message_sent_at": self.last_message_sent_at,
			"created_at": self.created_at,
		}

	def to_dict(self) -> Dict[str, Any]:
		payload = self.to_record()
		payload["last_message_sent_at"] = self.last_message_sent_at.isoformat() if self.last_message_sent_at else None
		payload["created_at"] = self.created_at.isoformat() if self.created_at else None
		return payload

	@property
	def is_direct(self) -> bool:
		return not self.is_group

	def has_participant(self, user_id: str) -> bool:
		return user_id in self.participant_ids

	def peer_id(self, user_id: str) -> Optional[str]:
		"""The other participant of a 1:1 conversation."""
		if not self.is_direct:
			return None
		others = [pid for pid in self.participant_ids if pid != user_id]
		return others[0] if others else None

	def validate(self) -> None:
		if self.is_direct and len(set(self.participant_ids)) != 2:
			raise InvalidRequest("direct_conversation_needs_two_participants")


@dataclass(slots=True)
class Message:
	id: str
	conversation_id: str
	sender_id: str
	content: str
	message_type: MessageType = MessageType.TEXT
	sent_at: Optional[datetime] = None

	@classmethod
	def from_record(cls, record: Mapping[str, Any]) -> "Message":
		raw_type = record.get("message_type") or MessageType.TEXT.value
		try:
			message_type = MessageType(raw_type)
		except ValueError:
			message_type = MessageType.TEXT
		return cls(
			id=str(record["id"]),
			conversation_id=str(record["conversation_id"]),
			sender_id=str(record.get("sender_id") or ""),
			content=str(record.get("content") or ""),
			message_type=message_type,
			sent_at=_aware(parse_timestamp(record.get("sent_at"))),
		)

	def to_record(self) -> Dict[str, Any]:
		return {
			"id": self.id,
			"conversation_id": self.conversation_id,
			"sender_id": self.sender_id,
			"content": self.content,
			"message_type": self.message_type.value,
			"sent_at": self.sent_at,
		}

	def to_dict(self) -> Dict[str, Any]:
		payload = self.to_record()
		payload["sent_at"] = self.sent_at.isoformat() if self.sent_at else None
		payload["image_url"] = self.image_url
		payload["file_name"] = self.file_name
		return payload

	@property
	def image_url(self) -> Optional[str]:
		if self.content.startswith(IMAGE_PREFIX):
			return self.content[len(IMAGE_PREFIX):]
		return None

	@property
	def file_name(self) -> Optional[str]:
		if self.content.startswith(FILE_MARKER_PREFIX):
			return self.content[len(FILE_MARKER_PREFIX):]
		return None

	@property
	def preview(self) -> str:
		return PHOTO_PREVIEW if self.image_url is not None else self.content

	@property
	def sort_key(self) -> Tuple[datetime, str]:
		return (self.sent_at or _EPOCH, self.id)


class MessageLog:
	"""Messages keyed by id and ordered by ``(sent_at, id)``.

	Upserting the same id twice replaces the entry, so history loads, realtime
	echoes and optimistic sends can race without duplicating a message.
	"""

	def __init__(self) -> None:
		self._by_id: Dict[str, Message] = {}
		self._keys: List[Tuple[datetime, str]] = []

	def upsert(self, message: Message) -> bool:
		"""Insert or replace; returns True when the id was not present."""
		existing = self._by_id.get(message.id)
		if existing is not None:
			self._drop_key(existing)
		self._by_id[message.id] = message
		bisect.insort(self._keys, message.sort_key)
		return existing is None

	def remove(self, message_id: str) -> Optional[Message]:
		existing = self._by_id.pop(message_id, None)
		if existing is not None:
			self._drop_key(existing)
		return existing

	def _drop_key(self, message: Message) -> None:
		key = message.sort_key
		index = bisect.bisect_left(self._keys, key)
		if index < len(self._keys) and self._keys[index] == key:
			del self._keys[index]

	def get(self, message_id: str) -> Optional[Message]:
		return self._by_id.get(message_id)

	def last(self) -> Optional[Message]:
		if not self._keys:
			return None
		return self._by_id[self._keys[-1][1]]

	def messages(self) -> List[Message]:
		return [self._by_id[key[1]] for key in self._keys]

	def clear(self) -> None:
		self._by_id.clear()
		self._keys.clear()

	def __contains__(self, message_id: object) -> bool:
		return message_id in self._by_id

	def __len__(self) -> int:
		return len(self._by_id)

	def __iter__(self) -> Iterator[Message]:
		return iter(self.messages())


@dataclass(slots=True)
class ConversationSummary:
	"""One row of a user's conversation list."""

	conversation: Conversation
	title: str
	avatar_url: Optional[str] = None
	flag_uri: Optional[str] = None
	peer: Optional[UserProfile] = None
	last_message: str = NO_MESSAGES_PLACEHOLDER
	last_message_time: Optional[datetime] = None
	typing_seen_at: Optional[datetime] = None

	@property
	def id(self) -> str:
		return self.conversation.id

	def is_typing(self, now: datetime, window_seconds: float) -> bool:
		if self.typing_seen_at is None:
			return False
		return (now - self.typing_seen_at).total_seconds() < window_seconds

	def sort_key(self) -> Tuple[float, float, str]:
		# Descending by recency, then descending by creation, then id.
		last = self.last_message_time.timestamp() if self.last_message_time else float("-inf")
		created = self.conversation.created_at.timestamp() if self.conversation.created_at else float("-inf")
		return (-last, -created, self.id)

	def to_dict(self, *, now: datetime, window_seconds: float) -> Dict[str, Any]:
		return {
			"id": self.id,
			"title": self.title,
			"avatar_url": self.avatar_url,
			"flag_uri": self.flag_uri,
			"peer": self.peer.to_dict() if self.peer else None,
			"last_message": self.last_message,
			"last_message_time": self.last_message_time.isoformat() if self.last_message_time else None,
			"is_typing": self.is_typing(now, window_seconds),
			"conversation": self.conversation.to_dict(),
		}
