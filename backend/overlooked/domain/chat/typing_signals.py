"""Typing signals: broadcast events plus an indicator row for list views."""

from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Callable, Dict, List, Optional

from overlooked.infra.backend import DataBackend
from overlooked.infra.errors import DataAccessError
from overlooked.settings import settings

logger = logging.getLogger(__name__)

TYPING_EVENT = "typing"
TYPING_INDICATORS_TABLE = "typing_indicators"


def typing_channel(conversation_id: str) -> str:
	return f"typing-{conversation_id}"


class TypingTracker:
	"""Who is typing right now; each touch restarts that user's window."""

	def __init__(
		self,
		window_seconds: Optional[float] = None,
		clock: Callable[[], float] = time.monotonic,
	) -> None:
		self.window_seconds = settings.typing_expiry_seconds if window_seconds is None else float(window_seconds)
		self._clock = clock
		self._expires: Dict[str, float] = {}

	def touch(self, user_id: str) -> None:
		self._expires[user_id] = self._clock() + self.window_seconds

	def clear(self, user_id: str) -> None:
		self._expires.pop(user_id, None)

	def active(self) -> List[str]:
		now = self._clock()
		for user_id in [uid for uid, expires in self._expires.items() if expires <= now]:
			self._expires.pop(user_id, None)
		return sorted(self._expires)

	def is_typing(self, user_id: Optional[str] = None) -> bool:
		active = self.active()
		if user_id is None:
			return bool(active)
		return user_id in active


async def send_typing_signal(
	backend: DataBackend,
	conversation_id: str,
	user_id: str,
	now: datetime,
) -> bool:
	"""Broadcast and refresh the indicator row; failures are logged, never raised."""
	delivered = True
	try:
		await backend.broadcast(typing_channel(conversation_id), TYPING_EVENT, {"sender": user_id})
	except DataAccessError as exc:
		delivered = False
		logger.debug("typing broadcast failed", extra={"conversation": conversation_id, "error": exc.reason})
	try:
		await backend.upsert(
			TYPING_INDICATORS_TABLE,
			{"conversation_id": conversation_id, "user_id": user_id, "updated_at": now},
			on_conflict=("conversation_id", "user_id"),
		)
	except DataAccessError as exc:
		delivered = False
		logger.debug("typing indicator upsert failed", extra={"conversation": conversation_id, "error": exc.reason})
	return delivered
