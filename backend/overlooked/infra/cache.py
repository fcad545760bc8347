"""Small in-process TTL cache with an injectable clock."""

from __future__ import annotations

import time
from typing import Callable, Dict, Generic, Hashable, Optional, Tuple, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

Clock = Callable[[], float]


class TTLCache(Generic[K, V]):
	"""Key/value cache whose entries expire after ``ttl_seconds``.

	Expired entries are evicted lazily on access. The clock returns seconds
	(``time.monotonic`` by default) so tests can drive time explicitly.
	"""

	def __init__(self, ttl_seconds: float, clock: Optional[Clock] = None) -> None:
		if ttl_seconds <= 0:
			raise ValueError("ttl_seconds must be positive")
		self.ttl_seconds = float(ttl_seconds)
		self._clock: Clock = clock or time.monotonic
		self._entries: Dict[K, Tuple[float, V]] = {}

	def get(self, key: K, default: Optional[V] = None) -> Optional[V]:
		entry = self._entries.get(key)
		if entry is None:
			return default
		expires_at, value = entry
		if self._clock() >= expires_at:
			self._entries.pop(key, None)
			return default
		return value

	def set(self, key: K, value: V, ttl: Optional[float] = None) -> None:
		lifetime = self.ttl_seconds if ttl is None else float(ttl)
		if lifetime <= 0:
			self._entries.pop(key, None)
			return
		self._entries[key] = (self._clock() + lifetime, value)

	def invalidate(self, key: Optional[K] = None) -> None:
		if key is None:
			self._entries.clear()
		else:
			self._entries.pop(key, None)

	def __contains__(self, key: object) -> bool:
		return self.get(key) is not None  # type: ignore[arg-type]

	def __len__(self) -> int:
		now = self._clock()
		expired = [key for key, (expires_at, _) in self._entries.items() if now >= expires_at]
		for key in expired:
			self._entries.pop(key, None)
		return len(self._entries)
