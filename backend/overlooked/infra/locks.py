"""Per-key asyncio locks that are dropped once nobody holds or awaits them."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Hashable, Tuple


class KeyedLocks:
	def __init__(self) -> None:
		# key -> (lock, tasks holding or waiting on it)
		self._entries: Dict[Hashable, Tuple[asyncio.Lock, int]] = {}

	def __len__(self) -> int:
		return len(self._entries)

	@asynccontextmanager
	async def hold(self, key: Hashable) -> AsyncIterator[None]:
		lock, users = self._entries.get(key, (None, 0))
		if lock is None:
			lock = asyncio.Lock()
		self._entries[key] = (lock, users + 1)
		try:
			async with lock:
				yield
		finally:
			lock, users = self._entries[key]
			if users <= 1:
				del self._entries[key]
			else:
				self._entries[key] = (lock, users - 1)
