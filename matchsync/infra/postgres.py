"""AsyncPG-backed remote store: pool management, SQL compilation, change feed."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any, Optional

import asyncpg

from matchsync.infra.errors import (
	ConstraintViolation,
	InvalidQuery,
	ProcedureNotFound,
	StoreError,
	StoreUnavailable,
)
from matchsync.infra.query import Action, Disjunction, Filter, Op, Predicate, QuerySpec, TableQuery
from matchsync.infra.store import Channel, ChangeEvent, ChannelStatus
from matchsync.settings import Settings, settings as default_settings

logger = logging.getLogger(__name__)

_pool: Optional[asyncpg.pool.Pool] = None

_IDENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_COMPARATORS = {
	Op.EQ: "=",
	Op.NEQ: "<>",
	Op.GT: ">",
	Op.GTE: ">=",
	Op.LT: "<",
	Op.LTE: "<=",
}


async def init_pool(config: Settings | None = None) -> asyncpg.pool.Pool:
	global _pool
	if _pool is None:
		cfg = config or default_settings
		# Force 127.0.0.1 instead of localhost to avoid IPv6 issues on Windows
		dsn = cfg.postgres_url.replace("localhost", "127.0.0.1")
		_pool = await asyncpg.create_pool(
			dsn=dsn,
			min_size=cfg.postgres_min_pool_size,
			max_size=cfg.postgres_max_pool_size,
		)
	return _pool


def set_pool(pool: Optional[asyncpg.pool.Pool]) -> None:
	global _pool
	_pool = pool


async def get_pool() -> asyncpg.pool.Pool:
	if _pool is None:
		await init_pool()
	assert _pool is not None
	return _pool


async def close_pool() -> None:
	global _pool
	if _pool is not None:
		await _pool.close()
		_pool = None


def quote_ident(name: str) -> str:
	if not _IDENT_RE.match(name):
		raise InvalidQuery(detail=f"invalid identifier {name!r}")
	return f'"{name}"'


class _Params:
	def __init__(self) -> None:
		self.values: list[Any] = []

	def add(self, value: Any) -> str:
		self.values.append(value)
		return f"${len(self.values)}"


def _compile_predicate(predicate: Predicate, params: _Params) -> str:
	column = quote_ident(predicate.column)
	if predicate.op is Op.IS:
		if predicate.value is None:
			return f"{column} IS NULL"
		if predicate.value is True:
			return f"{column} IS TRUE"
		if predicate.value is False:
			return f"{column} IS FALSE"
		raise InvalidQuery(detail="is_() accepts None, True or False")
	if predicate.op is Op.IN:
		return f"{column} = ANY({params.add(list(predicate.value))})"
	if predicate.op is Op.NOT_IN:
		return f"NOT ({column} = ANY({params.add(list(predicate.value))}))"
	return f"{column} {_COMPARATORS[predicate.op]} {params.add(predicate.value)}"


def _compile_filter(item: Filter, params: _Params) -> str:
	if isinstance(item, Disjunction):
		groups = [
			"(" + " AND ".join(_compile_predicate(p, params) for p in group) + ")"
			for group in item.groups
		]
		return "(" + " OR ".join(groups) + ")"
	return _compile_predicate(item, params)


def _where(spec: QuerySpec, params: _Params) -> str:
	if not spec.filters:
		return ""
	return " WHERE " + " AND ".join(_compile_filter(f, params) for f in spec.filters)


def _columns(spec: QuerySpec) -> str:
	if spec.columns == ("*",):
		return "*"
	return ", ".join(quote_ident(c) for c in spec.columns)


def compile_query(spec: QuerySpec) -> tuple[str, list[Any]]:
	"""Translate a builder spec into parameterised SQL for asyncpg."""
	params = _Params()
	table = quote_ident(spec.table)
	if spec.action is Action.SELECT:
		sql = f"SELECT {_columns(spec)} FROM {table}{_where(spec, params)}"
		if spec.order:
			sql += " ORDER BY " + ", ".join(
				f"{quote_ident(column)} {'DESC' if desc else 'ASC'}" for column, desc in spec.order
			)
		if spec.limit is not None:
			sql += f" LIMIT {params.add(spec.limit)}"
		if spec.offset:
			sql += f" OFFSET {params.add(spec.offset)}"
		return sql, params.values
	if spec.action is Action.INSERT:
		rows = spec.values or []
		if not rows:
			raise InvalidQuery(detail="insert without rows")
		columns = list(rows[0].keys())
		if any(list(row.keys()) != columns for row in rows):
			raise InvalidQuery(detail="insert rows must share the same columns")
		tuples = [
			"(" + ", ".join(params.add(row[column]) for column in columns) + ")"
			for row in rows
		]
		column_sql = ", ".join(quote_ident(c) for c in columns)
		return f"INSERT INTO {table} ({column_sql}) VALUES {', '.join(tuples)} RETURNING *", params.values
	if not spec.filters:
		raise InvalidQuery(detail=f"{spec.action.value} without filters")
	if spec.action is Action.UPDATE:
		if not spec.values:
			raise InvalidQuery(detail="update without values")
		assignments = ", ".join(f"{quote_ident(k)} = {params.add(v)}" for k, v in spec.values.items())
		return f"UPDATE {table} SET {assignments}{_where(spec, params)} RETURNING *", params.values
	return f"DELETE FROM {table}{_where(spec, params)} RETURNING *", params.values


def compile_count(spec: QuerySpec) -> tuple[str, list[Any]]:
	params = _Params()
	return f"SELECT count(*) AS count FROM {quote_ident(spec.table)}{_where(spec, params)}", params.values


def compile_rpc(name: str, args: dict[str, Any]) -> tuple[str, list[Any]]:
	params = _Params()
	named = ", ".join(f"{quote_ident(k)} => {params.add(v)}" for k, v in args.items())
	return f"SELECT * FROM {quote_ident(name)}({named})", params.values


def translate_error(exc: BaseException) -> StoreError:
	if isinstance(exc, StoreError):
		return exc
	if isinstance(exc, asyncpg.exceptions.IntegrityConstraintViolationError):
		return ConstraintViolation(detail=str(exc))
	if isinstance(exc, asyncpg.exceptions.UndefinedFunctionError):
		return ProcedureNotFound(detail=str(exc))
	if isinstance(exc, asyncpg.exceptions.SyntaxOrAccessError):
		return InvalidQuery(detail=str(exc))
	if isinstance(exc, (OSError, asyncio.TimeoutError, asyncpg.exceptions.ConnectionDoesNotExistError, asyncpg.InterfaceError)):
		return StoreUnavailable(detail=str(exc))
	if isinstance(exc, asyncpg.PostgresError):
		return StoreError(detail=str(exc))
	return StoreUnavailable(detail=str(exc))


class PostgresChannel(Channel):
	def __init__(self, store: "PostgresStore", name: str) -> None:
		super().__init__(name)
		self._store = store

	async def _open(self) -> ChannelStatus:
		try:
			await asyncio.wait_for(self._store._attach(self), timeout=self._store.settings.realtime_subscribe_timeout_seconds)
		except asyncio.TimeoutError:
			logger.warning("realtime subscribe timed out", extra={"channel_name": self.name})
			return ChannelStatus.TIMED_OUT
		except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as exc:
			logger.error("realtime subscribe failed: %s", exc, extra={"channel_name": self.name})
			return ChannelStatus.CHANNEL_ERROR
		return ChannelStatus.SUBSCRIBED

	async def _close(self) -> None:
		await self._store._detach(self)


class PostgresStore:
	"""Remote store over an asyncpg pool.

	Change events arrive through `LISTEN` on `settings.realtime_notify_channel`;
	the database side publishes `{"schema", "table", "type", "record",
	"old_record"}` JSON payloads from row triggers. One listener connection is
	shared by every open channel.
	"""

	def __init__(self, pool: asyncpg.pool.Pool, *, config: Settings | None = None) -> None:
		self._pool = pool
		self.settings = config or default_settings
		self._channels: set[PostgresChannel] = set()
		self._listener: Optional[asyncpg.Connection] = None
		self._listener_lock = asyncio.Lock()

	@classmethod
	async def connect(cls, config: Settings | None = None) -> "PostgresStore":
		pool = await init_pool(config)
		return cls(pool, config=config)

	def table(self, name: str) -> TableQuery:
		return TableQuery(self, name)

	def channel(self, name: str) -> PostgresChannel:
		return PostgresChannel(self, name)

	async def run_query(self, spec: QuerySpec) -> list[dict]:
		sql, args = compile_query(spec)
		try:
			async with self._pool.acquire() as conn:
				rows = await conn.fetch(sql, *args)
		except Exception as exc:
			raise translate_error(exc) from exc
		return [dict(row) for row in rows]

	async def run_count(self, spec: QuerySpec) -> int:
		sql, args = compile_count(spec)
		try:
			async with self._pool.acquire() as conn:
				value = await conn.fetchval(sql, *args)
		except Exception as exc:
			raise translate_error(exc) from exc
		return int(value or 0)

	async def rpc(self, name: str, params: Optional[dict[str, Any]] = None) -> Any:
		sql, args = compile_rpc(name, dict(params or {}))
		try:
			async with self._pool.acquire() as conn:
				rows = await conn.fetch(sql, *args)
		except Exception as exc:
			raise translate_error(exc) from exc
		return [dict(row) for row in rows]

	async def upload(self, bucket: str, path: str, data: bytes, *, content_type: Optional[str] = None) -> str:
		base = (self.settings.storage_public_url or "").rstrip("/")
		if not base:
			raise InvalidQuery(detail="storage_public_url must be set to upload objects")
		try:
			async with self._pool.acquire() as conn:
				await conn.execute(
					"""
					INSERT INTO storage_objects (bucket, path, content_type, data)
					VALUES ($1, $2, $3, $4)
					ON CONFLICT (bucket, path) DO UPDATE SET content_type = EXCLUDED.content_type, data = EXCLUDED.data
					""",
					bucket,
					path,
					content_type,
					data,
				)
		except Exception as exc:
			raise translate_error(exc) from exc
		return f"{base}/{bucket}/{path}"

	async def _attach(self, channel: PostgresChannel) -> None:
		async with self._listener_lock:
			if self._listener is None:
				conn = await self._pool.acquire()
				try:
					await conn.add_listener(self.settings.realtime_notify_channel, self._on_notify)
				except BaseException:
					await self._pool.release(conn)
					raise
				self._listener = conn
			self._channels.add(channel)

	async def _detach(self, channel: PostgresChannel) -> None:
		async with self._listener_lock:
			if channel not in self._channels:
				return
			self._channels.discard(channel)
			if self._channels or self._listener is None:
				return
			conn, self._listener = self._listener, None
			try:
				await conn.remove_listener(self.settings.realtime_notify_channel, self._on_notify)
			finally:
				await self._pool.release(conn)

	def _on_notify(self, connection, pid, channel_name, payload) -> None:
		try:
			event = ChangeEvent.from_payload(json.loads(payload))
		except (ValueError, KeyError, TypeError):
			logger.warning("dropping malformed change payload", extra={"notify_channel": channel_name})
			return
		for channel in list(self._channels):
			channel.dispatch(event)
