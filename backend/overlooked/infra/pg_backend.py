"""Postgres data backend: asyncpg for rows, Redis pub/sub for realtime."""

from __future__ import annotations

import logging
import re
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import asyncpg

from overlooked.infra import postgres
from overlooked.infra.backend import (
	BroadcastHandler,
	ChangeEvent,
	ChangeHandler,
	DataBackend,
	Filter,
	ObjectStore,
	Query,
	Row,
	Subscription,
	as_rows,
	event_matches,
)
from overlooked.infra.errors import (
	BackendFailure,
	Conflict,
	DataAccessError,
	Forbidden,
	InvalidRequest,
	NotFound,
	TransientFailure,
)
from overlooked.infra.redis import RedisRealtime

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_COMPARISONS = {"gte": ">=", "gt": ">", "lt": "<", "lte": "<=", "neq": "<>", "ilike": "ILIKE"}

# Custom SQLSTATEs raised by the server procedures.
_PROCEDURE_STATES = {
	"P0002": NotFound,
	"42501": Forbidden,
	"22023": InvalidRequest,
}

# Rows procedures write, re-read after the call and published on the change feed.
# Each entry is (table, event, parameter holding the row id); None means the call result.
_PROCEDURE_CHANGES: Dict[str, Tuple[Tuple[str, str, Optional[str]], ...]] = {
	"join_city_group": (("conversations", "UPDATE", None),),
	"add_xp": (("users", "UPDATE", "p_user_id"),),
	"upgrade_tier": (("users", "UPDATE", "p_user_id"),),
	"downgrade_to_free": (("users", "UPDATE", "p_user_id"),),
	"delete_submission": (("submissions", "DELETE", "p_submission_id"),),
}


def quote_ident(name: str) -> str:
	if not _IDENTIFIER.match(name):
		raise InvalidRequest("invalid_identifier", detail=name)
	return f'"{name}"'


def _columns_sql(columns: str) -> str:
	if columns.strip() == "*":
		return "*"
	parts = [part.strip() for part in columns.split(",") if part.strip()]
	if not parts:
		return "*"
	return ", ".join(quote_ident(part) for part in parts)


class _Params:
	def __init__(self) -> None:
		self.values: List[Any] = []

	def add(self, value: Any) -> str:
		self.values.append(value)
		return f"${len(self.values)}"


def _filter_sql(item: Filter, params: _Params) -> str:
	column = quote_ident(item.column)
	if item.op == "is_null":
		wanted = True if item.value is None else bool(item.value)
		return f"{column} IS NULL" if wanted else f"{column} IS NOT NULL"
	if item.op == "eq":
		if item.value is None:
			return f"{column} IS NULL"
		return f"{column} = {params.add(item.value)}"
	if item.op == "in":
		return f"{column} = ANY({params.add(list(item.value or ()))})"
	if item.op == "contains":
		values = item.value if isinstance(item.value, (list, tuple, set)) else [item.value]
		return f"{column} @> {params.add(list(values))}"
	return f"{column} {_COMPARISONS[item.op]} {params.add(item.value)}"


def _where_sql(filters: Sequence[Filter], params: _Params) -> str:
	if not filters:
		return ""
	return " WHERE " + " AND ".join(_filter_sql(item, params) for item in filters)


def compile_query(query: Query) -> Tuple[str, List[Any]]:
	"""Render a select/update/delete query as parameterised SQL."""
	params = _Params()
	table = quote_ident(query.table)
	if query.action == "select":
		sql = f"SELECT {_columns_sql(query.columns)} FROM {table}"
		sql += _where_sql(query.filters, params)
		if query.orders:
			rendered = []
			for order in query.orders:
				direction = "ASC" if order.ascending else "DESC"
				nulls = "NULLS FIRST" if order.effective_nulls_first else "NULLS LAST"
				rendered.append(f"{quote_ident(order.column)} {direction} {nulls}")
			sql += " ORDER BY " + ", ".join(rendered)
		if query.limit_count is not None:
			sql += f" LIMIT {params.add(query.limit_count)}"
		if query.offset:
			sql += f" OFFSET {params.add(query.offset)}"
		return sql, params.values
	if query.action == "update":
		values = query.values or {}
		if not values:
			raise InvalidRequest("empty_update")
		assignments = ", ".join(f"{quote_ident(column)} = {params.add(value)}" for column, value in values.items())
		sql = f"UPDATE {table} SET {assignments}"
		sql += _where_sql(query.filters, params)
		return sql + " RETURNING *", params.values
	if query.action == "delete":
		sql = f"DELETE FROM {table}" + _where_sql(query.filters, params)
		return sql + " RETURNING *", params.values
	raise InvalidRequest("unsupported_action", detail=query.action)


def compile_insert(table: str, row: Mapping[str, Any], *, on_conflict: Optional[Sequence[str]] = None) -> Tuple[str, List[Any]]:
	if not row:
		raise InvalidRequest("empty_insert")
	params = _Params()
	columns = list(row.keys())
	column_sql = ", ".join(quote_ident(column) for column in columns)
	value_sql = ", ".join(params.add(row[column]) for column in columns)
	sql = f"INSERT INTO {quote_ident(table)} ({column_sql}) VALUES ({value_sql})"
	if on_conflict:
		target = ", ".join(quote_ident(column) for column in on_conflict)
		updates = [column for column in columns if column not in on_conflict]
		if updates:
			assignments = ", ".join(f"{quote_ident(column)} = EXCLUDED.{quote_ident(column)}" for column in updates)
			sql += f" ON CONFLICT ({target}) DO UPDATE SET {assignments}"
		else:
			# DO NOTHING would return no row; touch the key so RETURNING yields it.
			first = quote_ident(on_conflict[0])
			sql += f" ON CONFLICT ({target}) DO UPDATE SET {first} = EXCLUDED.{first}"
	return sql + " RETURNING *", params.values


def compile_rpc(name: str, params: Mapping[str, Any]) -> Tuple[str, List[Any]]:
	bound = _Params()
	arguments = ", ".join(f"{quote_ident(key)} => {bound.add(value)}" for key, value in params.items())
	return f"SELECT {quote_ident(name)}({arguments}) AS result", bound.values


def _translate(exc: Exception) -> DataAccessError:
	if isinstance(exc, asyncpg.UniqueViolationError):
		return Conflict("unique_violation", detail=getattr(exc, "constraint_name", None))
	if isinstance(exc, asyncpg.ForeignKeyViolationError):
		return InvalidRequest("foreign_key_violation", detail=getattr(exc, "constraint_name", None))
	if isinstance(exc, asyncpg.PostgresError):
		state = getattr(exc, "sqlstate", None)
		error_cls = _PROCEDURE_STATES.get(state or "")
		if error_cls is not None:
			return error_cls(str(getattr(exc, "message", "") or error_cls.reason))
		return BackendFailure("database_error", detail=state)
	if isinstance(exc, (OSError, asyncpg.InterfaceError)):
		return TransientFailure("database_unavailable", detail=str(exc))
	return BackendFailure("database_error", detail=str(exc))


def _change_channel(table: str) -> str:
	return f"changes:{table}"


def _broadcast_channel(channel: str, event: str) -> str:
	return f"broadcast:{channel}:{event}"


class PostgresBackend(DataBackend):
	"""Rows in Postgres; writes made through this backend are published on Redis."""

	def __init__(
		self,
		*,
		storage: ObjectStore,
		realtime: Optional[RedisRealtime] = None,
		pool_factory: Callable[[], Awaitable[asyncpg.pool.Pool]] = postgres.get_pool,
	) -> None:
		self.storage = storage
		self._realtime = realtime or RedisRealtime()
		self._pool_factory = pool_factory

	async def _fetch(self, sql: str, args: Sequence[Any]) -> List[Row]:
		pool = await self._pool_factory()
		try:
			async with pool.acquire() as conn:
				records = await conn.fetch(sql, *args)
		except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
			raise _translate(exc) from exc
		return [dict(record) for record in records]

	async def execute(self, query: Query) -> List[Row]:
		sql, args = compile_query(query)
		rows = await self._fetch(sql, args)
		if query.action == "update":
			await self._publish([ChangeEvent(query.table, "UPDATE", new=row) for row in rows])
		elif query.action == "delete":
			await self._publish([ChangeEvent(query.table, "DELETE", old=row) for row in rows])
		return rows

	async def insert(self, table: str, rows: Row | Sequence[Row]) -> List[Row]:
		stored = await self._write(table, as_rows(rows), on_conflict=None)
		await self._publish([ChangeEvent(table, "INSERT", new=row) for row in stored])
		return stored

	async def upsert(
		self,
		table: str,
		rows: Row | Sequence[Row],
		*,
		on_conflict: Sequence[str],
	) -> List[Row]:
		stored = await self._write(table, as_rows(rows), on_conflict=on_conflict)
		await self._publish([ChangeEvent(table, "UPDATE", new=row) for row in stored])
		return stored

	async def _write(self, table: str, rows: List[Row], *, on_conflict: Optional[Sequence[str]]) -> List[Row]:
		pool = await self._pool_factory()
		stored: List[Row] = []
		try:
			async with pool.acquire() as conn:
				async with conn.transaction():
					for row in rows:
						sql, args = compile_insert(table, row, on_conflict=on_conflict)
						record = await conn.fetchrow(sql, *args)
						if record is not None:
							stored.append(dict(record))
		except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
			raise _translate(exc) from exc
		return stored

	async def rpc(self, name: str, params: Optional[Mapping[str, Any]] = None) -> Any:
		arguments = dict(params or {})
		sql, args = compile_rpc(name, arguments)
		rows = await self._fetch(sql, args)
		result = rows[0]["result"] if rows else None
		await self._publish(await self._procedure_changes(name, arguments, result))
		return result

	async def _procedure_changes(self, name: str, arguments: Mapping[str, Any], result: Any) -> List[ChangeEvent]:
		changes: List[ChangeEvent] = []
		for table, event, key in _PROCEDURE_CHANGES.get(name, ()):
			row_id = result if key is None else arguments.get(key)
			if row_id is None:
				continue
			if event == "DELETE":
				changes.append(ChangeEvent(table, event, old={"id": row_id}))
				continue
			sql, args = compile_query(Query(self, table).select("*").eq("id", row_id))
			try:
				rows = await self._fetch(sql, args)
			except DataAccessError:
				logger.warning("procedure row reload failed", exc_info=True, extra={"procedure": name, "table": table})
				continue
			changes.extend(ChangeEvent(table, event, new=row) for row in rows)
		return changes

	async def subscribe(
		self,
		table: str,
		event: str,
		handler: ChangeHandler,
		filter: Optional[Filter] = None,  # noqa: A002
	) -> Subscription:
		async def _on_message(payload: Dict[str, Any]) -> None:
			change = ChangeEvent.from_dict(payload)
			if not event_matches(event, change.event):
				return
			if filter is not None and not filter.matches(change.record):
				return
			await handler(change)

		return await self._realtime.listen(_change_channel(table), _on_message)

	async def broadcast(self, channel: str, event: str, payload: Mapping[str, Any]) -> None:
		await self._realtime.publish(_broadcast_channel(channel, event), dict(payload))

	async def on_broadcast(self, channel: str, event: str, handler: BroadcastHandler) -> Subscription:
		return await self._realtime.listen(_broadcast_channel(channel, event), handler)

	async def _publish(self, changes: Sequence[ChangeEvent]) -> None:
		for change in changes:
			try:
				await self._realtime.publish(_change_channel(change.table), change.to_dict())
			except DataAccessError:
				logger.warning(
					"change publish failed",
					exc_info=True,
					extra={"table": change.table, "event": change.event},
				)

	async def close(self) -> None:
		await self._realtime.close()
		await postgres.close_pool()
