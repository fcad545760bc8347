"""Redis connection management and pub/sub realtime transport.

Provides a stable proxy object so imports like
`from overlooked.infra.redis import redis_client` always reference the same proxy
instance. The underlying client can be swapped at runtime (e.g., to fakeredis
in tests) without breaking previously imported references.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict
from datetime import date, datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from overlooked.infra.backend import Subscription
from overlooked.infra.errors import TransientFailure
from overlooked.settings import settings

logger = logging.getLogger(__name__)

MessageHandler = Callable[[Dict[str, Any]], Awaitable[None]]

MAX_READER_BACKOFF = 30.0


class RedisProxy:
	"""Lightweight proxy that forwards attribute access to an underlying Redis client."""

	def __init__(self, client: redis.Redis):
		self._client: redis.Redis = client

	def set_client(self, client: redis.Redis) -> None:
		self._client = client

	@property
	def client(self) -> redis.Redis:
		return self._client

	def __getattr__(self, item):
		return getattr(self._client, item)


_real_client = redis.from_url(settings.redis_url, decode_responses=True)
redis_client: RedisProxy = RedisProxy(_real_client)


def set_redis_client(client: redis.Redis) -> None:
	redis_client.set_client(client)


def _json_default(value: Any) -> Any:
	if isinstance(value, (datetime, date)):
		return value.isoformat()
	return str(value)


def encode_payload(payload: Dict[str, Any]) -> str:
	return json.dumps(payload, default=_json_default, separators=(",", ":"))


class RedisRealtime:
	"""Fan-out of JSON messages over Redis pub/sub channels.

	One reader task serves every channel this process listens on; handlers are
	awaited in order and their failures are logged.
	"""

	def __init__(self, client: Optional[RedisProxy | redis.Redis] = None, *, poll_timeout: float = 1.0) -> None:
		self._client = client or redis_client
		self._poll_timeout = poll_timeout
		self._pubsub = None
		self._handlers: Dict[str, List[MessageHandler]] = defaultdict(list)
		self._task: Optional[asyncio.Task] = None
		self._lock = asyncio.Lock()

	async def publish(self, channel: str, payload: Dict[str, Any]) -> None:
		try:
			await self._client.publish(channel, encode_payload(payload))
		except (RedisError, OSError) as exc:
			raise TransientFailure("realtime_unavailable", detail=f"{channel}: {exc}") from exc

	async def listen(self, channel: str, handler: MessageHandler) -> Subscription:
		async with self._lock:
			if self._pubsub is None:
				self._pubsub = self._client.pubsub()
			if not self._handlers.get(channel):
				try:
					await self._pubsub.subscribe(channel)
				except (RedisError, OSError) as exc:
					raise TransientFailure("realtime_unavailable", detail=f"{channel}: {exc}") from exc
			self._handlers[channel].append(handler)
			if self._task is None or self._task.done():
				self._task = asyncio.create_task(self._reader(), name="redis-realtime-reader")

		async def _close() -> None:
			async with self._lock:
				handlers = self._handlers.get(channel, [])
				if handler in handlers:
					handlers.remove(handler)
				if not handlers and self._pubsub is not None:
					self._handlers.pop(channel, None)
					await self._pubsub.unsubscribe(channel)

		return Subscription(_close)

	async def dispatch(self, channel: str, raw: Any) -> None:
		try:
			payload = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
		except ValueError:
			logger.warning("realtime payload is not json", extra={"channel": channel})
			return
		for handler in list(self._handlers.get(channel, [])):
			try:
				await handler(payload)
			except Exception:  # noqa: BLE001 - listeners are isolated from each other
				logger.exception("realtime handler failed", extra={"channel": channel})

	async def _resubscribe(self) -> bool:
		"""Swap in a fresh pubsub connection subscribed to every live channel."""
		async with self._lock:
			stale, self._pubsub = self._pubsub, self._client.pubsub()
			if stale is not None:
				try:
					await stale.aclose()
				except (RedisError, OSError):
					logger.debug("stale pubsub close failed", exc_info=True)
			channels = list(self._handlers)
			try:
				if channels:
					await self._pubsub.subscribe(*channels)
			except (RedisError, OSError):
				logger.warning("realtime resubscribe failed", exc_info=True, extra={"channels": len(channels)})
				return False
		logger.info("realtime reader resubscribed", extra={"channels": len(channels)})
		return True

	async def _reader(self) -> None:
		backoff = self._poll_timeout
		while True:
			pubsub = self._pubsub
			if pubsub is None:
				return
			if not self._handlers:
				await asyncio.sleep(self._poll_timeout)
				continue
			try:
				message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=self._poll_timeout)
			except (RedisError, OSError):
				logger.warning("realtime reader lost its connection", exc_info=True, extra={"retry_in": backoff})
				while True:
					await asyncio.sleep(backoff)
					backoff = min(backoff * 2, MAX_READER_BACKOFF)
					if await self._resubscribe():
						break
				continue
			backoff = self._poll_timeout
			if not message or message.get("type") != "message":
				continue
			channel = message.get("channel")
			if isinstance(channel, bytes):
				channel = channel.decode()
			await self.dispatch(str(channel), message.get("data"))

	async def close(self) -> None:
		if self._task is not None:
			self._task.cancel()
			try:
				await self._task
			except asyncio.CancelledError:
				pass
			self._task = None
		if self._pubsub is not None:
			await self._pubsub.aclose()
			self._pubsub = None
		self._handlers.clear()
