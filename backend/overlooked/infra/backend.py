"""Data backend boundary: query builder, change feed, broadcast, RPC and blobs.

Domain code only talks to :class:`DataBackend`. Implementations live in
``overlooked.infra.memory`` (in-process) and ``overlooked.infra.pg_backend``
(asyncpg + Redis pub/sub + S3).
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from overlooked.infra.errors import NotFound

Row = Dict[str, Any]

FILTER_OPS = frozenset({"eq", "neq", "in", "contains", "ilike", "gte", "gt", "lt", "lte", "is_null"})
CHANGE_EVENTS = frozenset({"INSERT", "UPDATE", "DELETE", "*"})


def _comparable(left: Any, right: Any) -> tuple[Any, Any]:
	# Change-feed payloads that crossed a wire carry ISO strings for timestamps.
	if isinstance(left, datetime) and isinstance(right, str):
		return left, datetime.fromisoformat(right)
	if isinstance(left, str) and isinstance(right, datetime):
		return datetime.fromisoformat(left), right
	return left, right


def _like_to_regex(pattern: str) -> re.Pattern[str]:
	parts = [re.escape(chunk) for chunk in pattern.split("%")]
	return re.compile("^" + ".*".join(parts) + "$", re.IGNORECASE | re.DOTALL)


@dataclass(frozen=True, slots=True)
class Filter:
	column: str
	op: str
	value: Any = None

	def __post_init__(self) -> None:
		if self.op not in FILTER_OPS:
			raise ValueError(f"unsupported filter op: {self.op}")

	def matches(self, row: Mapping[str, Any]) -> bool:
		current = row.get(self.column)
		if self.op == "is_null":
			return (current is None) == bool(self.value if self.value is not None else True)
		if self.op == "eq":
			if current is None or self.value is None:
				return current is None and self.value is None
			left, right = _comparable(current, self.value)
			return left == right
		if self.op == "neq":
			if current is None:
				return False
			left, right = _comparable(current, self.value)
			return left != right
		if self.op == "in":
			return current in set(self.value or ())
		if self.op == "contains":
			wanted = self.value if isinstance(self.value, (list, tuple, set)) else [self.value]
			if not isinstance(current, (list, tuple, set)):
				return False
			return all(item in current for item in wanted)
		if self.op == "ilike":
			if current is None:
				return False
			return bool(_like_to_regex(str(self.value)).match(str(current)))
		if current is None or self.value is None:
			return False
		left, right = _comparable(current, self.value)
		if self.op == "gte":
			return left >= right
		if self.op == "gt":
			return left > right
		if self.op == "lt":
			return left < right
		return left <= right


@dataclass(frozen=True, slots=True)
class Order:
	column: str
	ascending: bool = True
	# None keeps the database default: nulls last ascending, nulls first descending.
	nulls_first: Optional[bool] = None

	@property
	def effective_nulls_first(self) -> bool:
		if self.nulls_first is None:
			return not self.ascending
		return self.nulls_first


@dataclass(slots=True)
class ChangeEvent:
	table: str
	event: str
	new: Optional[Row] = None
	old: Optional[Row] = None

	@property
	def record(self) -> Row:
		return self.new if self.new is not None else (self.old or {})

	def to_dict(self) -> dict[str, Any]:
		return {"table": self.table, "event": self.event, "new": self.new, "old": self.old}

	@classmethod
	def from_dict(cls, payload: Mapping[str, Any]) -> "ChangeEvent":
		return cls(
			table=str(payload["table"]),
			event=str(payload["event"]),
			new=payload.get("new"),
			old=payload.get("old"),
		)


ChangeHandler = Callable[[ChangeEvent], Awaitable[None]]
BroadcastHandler = Callable[[Dict[str, Any]], Awaitable[None]]


class Subscription:
	"""Handle for a change-feed or broadcast listener."""

	def __init__(self, closer: Callable[[], Awaitable[None]]) -> None:
		self._closer = closer
		self.closed = False

	async def close(self) -> None:
		if self.closed:
			return
		self.closed = True
		await self._closer()


@dataclass(slots=True)
class UploadSession:
	upload_id: str
	bucket: str
	path: str
	expires_at: datetime
	content_type: str = "application/octet-stream"
	parts: List[Dict[str, Any]] = field(default_factory=list)

	def to_dict(self) -> dict[str, Any]:
		return {
			"upload_id": self.upload_id,
			"bucket": self.bucket,
			"path": self.path,
			"expires_at": self.expires_at.isoformat(),
			"content_type": self.content_type,
		}


class ObjectStore(ABC):
	"""Blob storage addressed by bucket and path."""

	@abstractmethod
	async def upload(
		self,
		bucket: str,
		path: str,
		data: bytes,
		*,
		content_type: str = "application/octet-stream",
		upsert: bool = False,
	) -> str:
		"""Store ``data`` and return the stored path."""

	@abstractmethod
	def public_url(self, bucket: str, path: str) -> str:
		...

	@abstractmethod
	async def signed_url(self, bucket: str, path: str, expires_in: int) -> str:
		...

	@abstractmethod
	async def remove(self, bucket: str, paths: Sequence[str]) -> None:
		...

	@abstractmethod
	async def create_upload_session(
		self, bucket: str, path: str, *, content_type: str = "application/octet-stream"
	) -> UploadSession:
		...

	@abstractmethod
	async def upload_part(self, session: UploadSession, part_number: int, data: bytes) -> None:
		...

	@abstractmethod
	async def complete_upload(self, session: UploadSession) -> str:
		...


class Query:
	"""Chainable select/update/delete builder bound to one table."""

	def __init__(self, backend: "DataBackend", table: str) -> None:
		self._backend = backend
		self.table = table
		self.action = "select"
		self.columns = "*"
		self.filters: List[Filter] = []
		self.orders: List[Order] = []
		self.limit_count: Optional[int] = None
		self.offset = 0
		self.values: Optional[Row] = None

	def select(self, columns: str = "*") -> "Query":
		self.action = "select"
		self.columns = columns
		return self

	def update(self, values: Mapping[str, Any]) -> "Query":
		self.action = "update"
		self.values = dict(values)
		return self

	def delete(self) -> "Query":
		self.action = "delete"
		return self

	def where(self, column: str, op: str, value: Any = None) -> "Query":
		self.filters.append(Filter(column, op, value))
		return self

	def eq(self, column: str, value: Any) -> "Query":
		return self.where(column, "eq", value)

	def neq(self, column: str, value: Any) -> "Query":
		return self.where(column, "neq", value)

	def in_(self, column: str, values: Iterable[Any]) -> "Query":
		return self.where(column, "in", list(values))

	def contains(self, column: str, values: Iterable[Any]) -> "Query":
		return self.where(column, "contains", list(values))

	def ilike(self, column: str, pattern: str) -> "Query":
		return self.where(column, "ilike", pattern)

	def gte(self, column: str, value: Any) -> "Query":
		return self.where(column, "gte", value)

	def gt(self, column: str, value: Any) -> "Query":
		return self.where(column, "gt", value)

	def lt(self, column: str, value: Any) -> "Query":
		return self.where(column, "lt", value)

	def lte(self, column: str, value: Any) -> "Query":
		return self.where(column, "lte", value)

	def is_null(self, column: str, is_null: bool = True) -> "Query":
		return self.where(column, "is_null", is_null)

	def order(self, column: str, *, desc: bool = False, nulls_first: Optional[bool] = None) -> "Query":
		self.orders.append(Order(column, ascending=not desc, nulls_first=nulls_first))
		return self

	def limit(self, count: int) -> "Query":
		self.limit_count = max(0, int(count))
		return self

	def range(self, start: int, end: int) -> "Query":
		"""Inclusive row window, ``range(0, 9)`` yields the first ten rows."""
		self.offset = max(0, int(start))
		self.limit_count = max(0, int(end) - self.offset + 1)
		return self

	async def execute(self) -> List[Row]:
		return await self._backend.execute(self)

	async def single(self) -> Row:
		row = await self.maybe_single()
		if row is None:
			raise NotFound(f"{self.table}_not_found")
		return row

	async def maybe_single(self) -> Optional[Row]:
		if self.action == "select" and self.limit_count is None:
			self.limit_count = 1
		rows = await self.execute()
		return rows[0] if rows else None


class DataBackend(ABC):
	"""CRUD, change feed, broadcast, RPC and object storage."""

	storage: ObjectStore

	def table(self, name: str) -> Query:
		return Query(self, name)

	@abstractmethod
	async def execute(self, query: Query) -> List[Row]:
		...

	@abstractmethod
	async def insert(self, table: str, rows: Row | Sequence[Row]) -> List[Row]:
		...

	@abstractmethod
	async def upsert(
		self,
		table: str,
		rows: Row | Sequence[Row],
		*,
		on_conflict: Sequence[str],
	) -> List[Row]:
		...

	@abstractmethod
	async def rpc(self, name: str, params: Optional[Mapping[str, Any]] = None) -> Any:
		...

	@abstractmethod
	async def subscribe(
		self,
		table: str,
		event: str,
		handler: ChangeHandler,
		filter: Optional[Filter] = None,  # noqa: A002 (mirrors realtime api)
	) -> Subscription:
		...

	@abstractmethod
	async def broadcast(self, channel: str, event: str, payload: Mapping[str, Any]) -> None:
		...

	@abstractmethod
	async def on_broadcast(self, channel: str, event: str, handler: BroadcastHandler) -> Subscription:
		...

	async def close(self) -> None:
		return None


def as_rows(rows: Row | Sequence[Row]) -> List[Row]:
	if isinstance(rows, Mapping):
		return [dict(rows)]
	return [dict(row) for row in rows]


def event_matches(wanted: str, actual: str) -> bool:
	return wanted == "*" or wanted == actual
