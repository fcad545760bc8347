"""Process-wide data backend selection."""

from __future__ import annotations

import logging
from typing import Optional

from overlooked.infra.backend import DataBackend
from overlooked.settings import settings

logger = logging.getLogger(__name__)

_backend: Optional[DataBackend] = None


def build_backend(kind: Optional[str] = None) -> DataBackend:
	selected = (kind or settings.data_backend or "memory").lower()
	if selected == "memory":
		from overlooked.infra.memory import InMemoryBackend, InMemoryObjectStore

		return InMemoryBackend(storage=InMemoryObjectStore(settings.storage_public_base_url))
	if selected == "postgres":
		from overlooked.infra.pg_backend import PostgresBackend
		from overlooked.infra.storage import S3ObjectStore

		return PostgresBackend(storage=S3ObjectStore())
	raise ValueError(f"unknown data backend: {selected}")


def get_backend() -> DataBackend:
	global _backend
	if _backend is None:
		_backend = build_backend()
		logger.info("data backend ready", extra={"backend": type(_backend).__name__})
	return _backend


def set_backend(backend: Optional[DataBackend]) -> None:
	global _backend
	_backend = backend


async def close_backend() -> None:
	global _backend
	if _backend is not None:
		await _backend.close()
		_backend = None
