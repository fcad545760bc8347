"""In-process data backend used by tests and local development."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from overlooked.infra.backend import (
	BroadcastHandler,
	ChangeEvent,
	ChangeHandler,
	DataBackend,
	Filter,
	ObjectStore,
	Order,
	Query,
	Row,
	Subscription,
	UploadSession,
	as_rows,
	event_matches,
)
from overlooked.infra.errors import BackendFailure, Conflict, InvalidRequest, NotFound

logger = logging.getLogger(__name__)

Procedure = Callable[..., Awaitable[Any]]

DEFAULT_UNIQUE: Dict[str, Tuple[Tuple[str, ...], ...]] = {
	"user_supports": (("supporter_id", "supported_id"),),
	"conversation_hides": (("user_id", "conversation_id"),),
	"user_votes": (("user_id", "submission_id"),),
}


def _now() -> datetime:
	return datetime.now(timezone.utc)


def _project(row: Row, columns: str) -> Row:
	if columns.strip() == "*":
		return dict(row)
	wanted = [part.strip() for part in columns.split(",") if part.strip()]
	return {name: row.get(name) for name in wanted}


def _sort_rows(rows: List[Row], orders: Sequence[Order]) -> List[Row]:
	for order in reversed(orders):
		present = [row for row in rows if row.get(order.column) is not None]
		missing = [row for row in rows if row.get(order.column) is None]
		present.sort(key=lambda row: row[order.column], reverse=not order.ascending)
		rows = missing + present if order.effective_nulls_first else present + missing
	return rows


@dataclass(slots=True)
class _ChangeListener:
	table: str
	event: str
	handler: ChangeHandler
	filter: Optional[Filter]


class InMemoryObjectStore(ObjectStore):
	"""Object store kept in a dict; records every removal."""

	def __init__(self, public_base_url: str = "memory://storage") -> None:
		self.public_base_url = public_base_url.rstrip("/")
		self.objects: Dict[Tuple[str, str], Tuple[bytes, str]] = {}
		self.removed: List[Tuple[str, str]] = []
		self.remove_calls: List[Tuple[str, Tuple[str, ...]]] = []
		self.signed_requests: List[Tuple[str, str, int]] = []
		self._sessions: Dict[str, UploadSession] = {}
		self._session_parts: Dict[str, Dict[int, bytes]] = {}

	async def upload(
		self,
		bucket: str,
		path: str,
		data: bytes,
		*,
		content_type: str = "application/octet-stream",
		upsert: bool = False,
	) -> str:
		await asyncio.sleep(0)
		key = (bucket, path)
		if key in self.objects and not upsert:
			raise Conflict("object_exists", detail=f"{bucket}/{path}")
		self.objects[key] = (bytes(data), content_type)
		return path

	def public_url(self, bucket: str, path: str) -> str:
		return f"{self.public_base_url}/{bucket}/{path}"

	async def signed_url(self, bucket: str, path: str, expires_in: int) -> str:
		await asyncio.sleep(0)
		if (bucket, path) not in self.objects:
			raise NotFound("object_not_found", detail=f"{bucket}/{path}")
		self.signed_requests.append((bucket, path, expires_in))
		token = uuid.uuid4().hex
		return f"{self.public_base_url}/{bucket}/{path}?token={token}&expires_in={expires_in}"

	async def remove(self, bucket: str, paths: Sequence[str]) -> None:
		await asyncio.sleep(0)
		self.remove_calls.append((bucket, tuple(paths)))
		for path in paths:
			self.objects.pop((bucket, path), None)
			self.removed.append((bucket, path))

	async def create_upload_session(
		self, bucket: str, path: str, *, content_type: str = "application/octet-stream"
	) -> UploadSession:
		await asyncio.sleep(0)
		session = UploadSession(
			upload_id=uuid.uuid4().hex,
			bucket=bucket,
			path=path,
			expires_at=_now() + timedelta(hours=1),
			content_type=content_type,
		)
		self._sessions[session.upload_id] = session
		self._session_parts[session.upload_id] = {}
		return session

	async def upload_part(self, session: UploadSession, part_number: int, data: bytes) -> None:
		await asyncio.sleep(0)
		parts = self._session_parts.get(session.upload_id)
		if parts is None:
			raise NotFound("upload_session_not_found")
		if part_number < 1:
			raise InvalidRequest("invalid_part_number")
		parts[part_number] = bytes(data)
		session.parts.append({"part_number": part_number, "size": len(data)})

	async def complete_upload(self, session: UploadSession) -> str:
		await asyncio.sleep(0)
		parts = self._session_parts.pop(session.upload_id, None)
		self._sessions.pop(session.upload_id, None)
		if parts is None:
			raise NotFound("upload_session_not_found")
		if not parts:
			raise InvalidRequest("upload_has_no_parts")
		data = b"".join(parts[number] for number in sorted(parts))
		self.objects[(session.bucket, session.path)] = (data, session.content_type)
		return session.path


class InMemoryBackend(DataBackend):
	"""Dict-of-rows backend with change feed, broadcast and RPC registry."""

	def __init__(
		self,
		*,
		unique: Optional[Mapping[str, Sequence[Sequence[str]]]] = None,
		storage: Optional[ObjectStore] = None,
		register_defaults: bool = True,
	) -> None:
		self.tables: Dict[str, List[Row]] = defaultdict(list)
		self._unique: Dict[str, Tuple[Tuple[str, ...], ...]] = dict(DEFAULT_UNIQUE)
		if unique is not None:
			self._unique.update({name: tuple(tuple(cols) for cols in constraint) for name, constraint in unique.items()})
		self._listeners: List[_ChangeListener] = []
		self._broadcast_handlers: Dict[Tuple[str, str], List[BroadcastHandler]] = defaultdict(list)
		self._procedures: Dict[str, Procedure] = {}
		self.rpc_calls: List[Tuple[str, Dict[str, Any]]] = []
		self.broadcasts: List[Tuple[str, str, Dict[str, Any]]] = []
		self.storage = storage or InMemoryObjectStore()
		if register_defaults:
			from overlooked.infra import procedures

			procedures.register_defaults(self)

	# --- seeding / inspection helpers -------------------------------------------------

	def seed(self, table: str, rows: Row | Sequence[Row]) -> List[Row]:
		"""Insert rows without dispatching change events."""
		stored = [self._prepare(table, row) for row in as_rows(rows)]
		self.tables[table].extend(stored)
		return [dict(row) for row in stored]

	def rows(self, table: str) -> List[Row]:
		return [dict(row) for row in self.tables.get(table, [])]

	def register_rpc(self, name: str, procedure: Procedure) -> None:
		self._procedures[name] = procedure

	# --- DataBackend ---------------------------------------------------------------------

	async def execute(self, query: Query) -> List[Row]:
		await asyncio.sleep(0)
		matched = [row for row in self.tables.get(query.table, []) if all(f.matches(row) for f in query.filters)]
		if query.action == "select":
			ordered = _sort_rows(list(matched), query.orders)
			if query.offset:
				ordered = ordered[query.offset:]
			if query.limit_count is not None:
				ordered = ordered[: query.limit_count]
			return [_project(row, query.columns) for row in ordered]
		if query.action == "update":
			values = query.values or {}
			changes: List[ChangeEvent] = []
			for row in matched:
				self._check_unique(query.table, {**row, **values}, ignore=row)
			for row in matched:
				old = dict(row)
				row.update(values)
				changes.append(ChangeEvent(query.table, "UPDATE", new=dict(row), old=old))
			await self._dispatch(changes)
			return [dict(change.new or {}) for change in changes]
		if query.action == "delete":
			table = self.tables.get(query.table, [])
			removed_ids = {id(row) for row in matched}
			self.tables[query.table] = [row for row in table if id(row) not in removed_ids]
			await self._dispatch([ChangeEvent(query.table, "DELETE", old=dict(row)) for row in matched])
			return [dict(row) for row in matched]
		raise BackendFailure("unsupported_action", detail=query.action)

	async def insert(self, table: str, rows: Row | Sequence[Row]) -> List[Row]:
		await asyncio.sleep(0)
		prepared = [self._prepare(table, row) for row in as_rows(rows)]
		pending: List[Row] = []
		for row in prepared:
			self._check_unique(table, row, extra=pending)
			pending.append(row)
		self.tables[table].extend(pending)
		await self._dispatch([ChangeEvent(table, "INSERT", new=dict(row)) for row in pending])
		return [dict(row) for row in pending]

	async def upsert(
		self,
		table: str,
		rows: Row | Sequence[Row],
		*,
		on_conflict: Sequence[str],
	) -> List[Row]:
		await asyncio.sleep(0)
		keys = tuple(on_conflict)
		stored: List[Row] = []
		changes: List[ChangeEvent] = []
		for incoming in as_rows(rows):
			existing = next(
				(row for row in self.tables.get(table, []) if all(row.get(k) == incoming.get(k) for k in keys)),
				None,
			)
			if existing is None:
				row = self._prepare(table, incoming)
				self._check_unique(table, row)
				self.tables[table].append(row)
				changes.append(ChangeEvent(table, "INSERT", new=dict(row)))
				stored.append(dict(row))
			else:
				old = dict(existing)
				existing.update(incoming)
				changes.append(ChangeEvent(table, "UPDATE", new=dict(existing), old=old))
				stored.append(dict(existing))
		await self._dispatch(changes)
		return stored

	async def rpc(self, name: str, params: Optional[Mapping[str, Any]] = None) -> Any:
		await asyncio.sleep(0)
		arguments = dict(params or {})
		self.rpc_calls.append((name, arguments))
		procedure = self._procedures.get(name)
		if procedure is None:
			raise NotFound("rpc_not_found", detail=name)
		return await procedure(self, **arguments)

	async def subscribe(
		self,
		table: str,
		event: str,
		handler: ChangeHandler,
		filter: Optional[Filter] = None,  # noqa: A002
	) -> Subscription:
		listener = _ChangeListener(table=table, event=event, handler=handler, filter=filter)
		self._listeners.append(listener)

		async def _close() -> None:
			if listener in self._listeners:
				self._listeners.remove(listener)

		return Subscription(_close)

	async def broadcast(self, channel: str, event: str, payload: Mapping[str, Any]) -> None:
		await asyncio.sleep(0)
		body = dict(payload)
		self.broadcasts.append((channel, event, body))
		for handler in list(self._broadcast_handlers.get((channel, event), [])):
			try:
				await handler(dict(body))
			except Exception:  # noqa: BLE001 - one bad listener must not break fan-out
				logger.exception("broadcast handler failed", extra={"channel": channel, "event": event})

	async def on_broadcast(self, channel: str, event: str, handler: BroadcastHandler) -> Subscription:
		key = (channel, event)
		self._broadcast_handlers[key].append(handler)

		async def _close() -> None:
			handlers = self._broadcast_handlers.get(key, [])
			if handler in handlers:
				handlers.remove(handler)

		return Subscription(_close)

	# --- internals -----------------------------------------------------------------------

	def _prepare(self, table: str, row: Row) -> Row:
		prepared = dict(row)
		prepared.setdefault("id", str(uuid.uuid4()))
		prepared.setdefault("created_at", _now())
		return prepared

	def _check_unique(self, table: str, row: Row, *, ignore: Optional[Row] = None, extra: Sequence[Row] = ()) -> None:
		for columns in self._unique.get(table, ()):
			key = tuple(row.get(column) for column in columns)
			for existing in [*self.tables.get(table, []), *extra]:
				if existing is ignore or existing is row:
					continue
				if tuple(existing.get(column) for column in columns) == key:
					raise Conflict("unique_violation", detail=f"{table}({', '.join(columns)})")
		if "id" in row:
			for existing in [*self.tables.get(table, []), *extra]:
				if existing is ignore or existing is row:
					continue
				if existing.get("id") == row["id"]:
					raise Conflict("unique_violation", detail=f"{table}(id)")

	async def _dispatch(self, changes: Sequence[ChangeEvent]) -> None:
		for change in changes:
			for listener in list(self._listeners):
				if listener.table != change.table or not event_matches(listener.event, change.event):
					continue
				if listener.filter is not None and not listener.filter.matches(change.record):
					continue
				try:
					await listener.handler(change)
				except Exception:  # noqa: BLE001 - one bad listener must not fail the write
					logger.exception(
						"change handler failed",
						extra={"table": change.table, "event": change.event},
					)
