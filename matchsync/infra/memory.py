"""In-process remote store used by tests and offline development."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional

import ulid

from matchsync.infra.errors import ConstraintViolation, InvalidQuery, ProcedureNotFound, StoreError
from matchsync.infra.query import Action, QuerySpec, TableQuery, matches_all
from matchsync.infra.store import Channel, ChangeEvent, ChangeType, ChannelStatus, Procedure

logger = logging.getLogger(__name__)

# Tables whose rows are unique on a column pair, mirroring the remote schema
_UNIQUE_PAIRS: dict[str, tuple[str, str]] = {
	"likes": ("liker_id", "liked_id"),
}


def _sort_key(value: Any) -> tuple:
	return (value is None, value)


class MemoryChannel(Channel):
	def __init__(self, store: "MemoryStore", name: str) -> None:
		super().__init__(name)
		self._store = store

	async def _open(self) -> ChannelStatus:
		self._store._channels.add(self)
		return ChannelStatus.SUBSCRIBED

	async def _close(self) -> None:
		self._store._channels.discard(self)


class MemoryStore:
	"""Tables held in dictionaries with synchronous change-feed fan-out.

	Every committed write publishes its change events to the subscribed
	channels before the write call returns, so a realtime echo can land in the
	cache ahead of the optimistic update of the mutation that caused it.
	"""

	def __init__(self) -> None:
		self._tables: dict[str, list[dict]] = defaultdict(list)
		self._channels: set[MemoryChannel] = set()
		self._objects: dict[tuple[str, str], bytes] = {}
		self._procedures: dict[str, Procedure] = {
			"delete_match_and_messages": self._delete_match_and_messages,
		}
		self._last_ts: Optional[datetime] = None
		self._lock = asyncio.Lock()
		self.calls: list[tuple[str, str]] = []

	# --- seeding / inspection helpers ---
	def seed(self, table: str, rows: Iterable[dict]) -> list[dict]:
		"""Insert rows without publishing change events."""
		stored = [self._prepare_row(table, dict(row)) for row in rows]
		self._tables[table].extend(stored)
		return [dict(row) for row in stored]

	def rows(self, table: str) -> list[dict]:
		return [dict(row) for row in self._tables.get(table, [])]

	@property
	def channels(self) -> list[MemoryChannel]:
		return list(self._channels)

	# --- client protocol ---
	def table(self, name: str) -> TableQuery:
		return TableQuery(self, name)

	def channel(self, name: str) -> MemoryChannel:
		return MemoryChannel(self, name)

	def register_procedure(self, name: str, procedure: Procedure) -> None:
		self._procedures[name] = procedure

	async def rpc(self, name: str, params: Optional[dict[str, Any]] = None) -> Any:
		procedure = self._procedures.get(name)
		if procedure is None:
			raise ProcedureNotFound(detail=name)
		self.calls.append(("rpc", name))
		return await procedure(dict(params or {}))

	async def upload(self, bucket: str, path: str, data: bytes, *, content_type: Optional[str] = None) -> str:
		self._objects[(bucket, path)] = bytes(data)
		return f"memory://{bucket}/{path}"

	def publish(self, event: ChangeEvent) -> None:
		for channel in list(self._channels):
			channel.dispatch(event)

	async def run_query(self, spec: QuerySpec) -> list[dict]:
		self.calls.append((spec.action.value, spec.table))
		async with self._lock:
			if spec.action is Action.SELECT:
				return self._select(spec)
			if spec.action is Action.INSERT:
				rows, events = self._insert(spec)
			elif spec.action is Action.UPDATE:
				rows, events = self._update(spec)
			else:
				rows, events = self._delete(spec)
		for event in events:
			self.publish(event)
		return rows

	async def run_count(self, spec: QuerySpec) -> int:
		self.calls.append(("count", spec.table))
		return len([row for row in self._tables.get(spec.table, []) if matches_all(spec.filters, row)])

	# --- internals ---
	def _now(self) -> datetime:
		now = datetime.now(timezone.utc)
		if self._last_ts is not None and now <= self._last_ts:
			now = self._last_ts + timedelta(microseconds=1)
		self._last_ts = now
		return now

	def _prepare_row(self, table: str, row: dict) -> dict:
		row.setdefault("id", str(ulid.new()))
		row.setdefault("created_at", self._now())
		pair = _UNIQUE_PAIRS.get(table)
		if pair is not None:
			for existing in self._tables.get(table, []):
				if all(existing.get(col) == row.get(col) for col in pair):
					raise ConstraintViolation(detail=f"duplicate {table} {pair}")
		if any(existing.get("id") == row["id"] for existing in self._tables.get(table, [])):
			raise ConstraintViolation(detail=f"duplicate {table}.id {row['id']}")
		return row

	def _project(self, row: dict, columns: tuple[str, ...]) -> dict:
		if columns == ("*",):
			return dict(row)
		return {column: row.get(column) for column in columns}

	def _select(self, spec: QuerySpec) -> list[dict]:
		rows = [row for row in self._tables.get(spec.table, []) if matches_all(spec.filters, row)]
		for column, desc in reversed(spec.order):
			rows.sort(key=lambda r, c=column: _sort_key(r.get(c)), reverse=desc)
		start = spec.offset or 0
		end = start + spec.limit if spec.limit is not None else None
		return [self._project(row, spec.columns) for row in rows[start:end]]

	def _insert(self, spec: QuerySpec) -> tuple[list[dict], list[ChangeEvent]]:
		if not spec.values:
			raise InvalidQuery(detail="insert without rows")
		prepared = []
		for row in spec.values:
			prepared.append(self._prepare_row(spec.table, dict(row)))
			self._tables[spec.table].append(prepared[-1])
		events = [ChangeEvent(table=spec.table, event_type=ChangeType.INSERT, new=dict(row)) for row in prepared]
		return [dict(row) for row in prepared], events

	def _update(self, spec: QuerySpec) -> tuple[list[dict], list[ChangeEvent]]:
		if not spec.filters:
			raise InvalidQuery(detail="update without filters")
		updated: list[dict] = []
		events: list[ChangeEvent] = []
		for row in self._tables.get(spec.table, []):
			if not matches_all(spec.filters, row):
				continue
			old = dict(row)
			row.update(spec.values or {})
			updated.append(dict(row))
			events.append(ChangeEvent(table=spec.table, event_type=ChangeType.UPDATE, new=dict(row), old=old))
		return updated, events

	def _delete(self, spec: QuerySpec) -> tuple[list[dict], list[ChangeEvent]]:
		if not spec.filters:
			raise InvalidQuery(detail="delete without filters")
		kept: list[dict] = []
		removed: list[dict] = []
		for row in self._tables.get(spec.table, []):
			(removed if matches_all(spec.filters, row) else kept).append(row)
		self._tables[spec.table] = kept
		events = [ChangeEvent(table=spec.table, event_type=ChangeType.DELETE, old=dict(row)) for row in removed]
		return [dict(row) for row in removed], events

	async def _delete_match_and_messages(self, params: dict[str, Any]) -> None:
		match_id = params.get("p_match_id")
		user_id = params.get("p_user_id")
		match = next((row for row in self._tables.get("matches", []) if row.get("id") == match_id), None)
		if match is None:
			return None
		if user_id not in (match.get("user1_id"), match.get("user2_id")):
			raise StoreError("forbidden", detail="user is not part of this match")
		await self.table("messages").delete().eq("match_id", match_id).execute()
		await self.table("matches").delete().eq("id", match_id).execute()
		return None
