"""Chainable relational query builder shared by every store backend.

The builder only records intent in a `QuerySpec`; backends decide how to run
it. `Predicate.matches` gives the same filters a client-side meaning so the
in-memory backend and change-feed filters evaluate rows exactly like SQL
would for the supported operators.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Optional, Protocol, Sequence, Union

from matchsync.infra.errors import InvalidQuery


class Op(str, Enum):
	EQ = "eq"
	NEQ = "neq"
	GT = "gt"
	GTE = "gte"
	LT = "lt"
	LTE = "lte"
	IN = "in"
	NOT_IN = "not_in"
	IS = "is"


class Action(str, Enum):
	SELECT = "select"
	INSERT = "insert"
	UPDATE = "update"
	DELETE = "delete"


def _compare(op: Op, left: Any, right: Any) -> bool:
	if left is None or right is None:
		return False
	try:
		if op is Op.GT:
			return left > right
		if op is Op.GTE:
			return left >= right
		if op is Op.LT:
			return left < right
		return left <= right
	except TypeError:
		return False


@dataclass(frozen=True, slots=True)
class Predicate:
	column: str
	op: Op
	value: Any = None

	def matches(self, row: dict) -> bool:
		current = row.get(self.column)
		if self.op is Op.EQ:
			return current is not None and current == self.value
		if self.op is Op.NEQ:
			# SQL semantics: NULL <> x is not true
			return current is not None and current != self.value
		if self.op is Op.IS:
			return current is self.value if self.value is None else current == self.value
		if self.op is Op.IN:
			return current is not None and current in self.value
		if self.op is Op.NOT_IN:
			return current is not None and current not in self.value
		return _compare(self.op, current, self.value)


@dataclass(frozen=True, slots=True)
class Disjunction:
	"""OR of AND-groups: `(a AND b) OR (c AND d)`."""

	groups: tuple[tuple[Predicate, ...], ...]

	def matches(self, row: dict) -> bool:
		return any(all(p.matches(row) for p in group) for group in self.groups)


Filter = Union[Predicate, Disjunction]


def eq(column: str, value: Any) -> Predicate:
	return Predicate(column, Op.EQ, value)


def neq(column: str, value: Any) -> Predicate:
	return Predicate(column, Op.NEQ, value)


def any_of(*groups: Union[Predicate, Sequence[Predicate]]) -> Disjunction:
	normalised: list[tuple[Predicate, ...]] = []
	for group in groups:
		if isinstance(group, Predicate):
			normalised.append((group,))
		else:
			items = tuple(group)
			if not items:
				raise InvalidQuery(detail="empty OR group")
			normalised.append(items)
	if not normalised:
		raise InvalidQuery(detail="or_() requires at least one group")
	return Disjunction(tuple(normalised))


def normalize_filters(value: Union[Filter, Iterable[Filter], None]) -> tuple[Filter, ...]:
	if value is None:
		return ()
	if isinstance(value, (Predicate, Disjunction)):
		return (value,)
	return tuple(value)


def matches_all(filters: Iterable[Filter], row: dict) -> bool:
	return all(f.matches(row) for f in filters)


@dataclass(slots=True)
class QuerySpec:
	table: str
	action: Action = Action.SELECT
	columns: tuple[str, ...] = ("*",)
	filters: list[Filter] = field(default_factory=list)
	order: list[tuple[str, bool]] = field(default_factory=list)
	limit: Optional[int] = None
	offset: Optional[int] = None
	values: Any = None
	maybe_single: bool = False


class QueryBackend(Protocol):
	async def run_query(self, spec: QuerySpec) -> list[dict]:
		...

	async def run_count(self, spec: QuerySpec) -> int:
		...


def _parse_columns(columns: Sequence[str]) -> tuple[str, ...]:
	parsed: list[str] = []
	for chunk in columns:
		parsed.extend(part.strip() for part in str(chunk).split(",") if part.strip())
	return tuple(parsed) or ("*",)


class TableQuery:
	"""PostgREST-flavoured builder: `store.table("likes").select("id").eq(...)`."""

	def __init__(self, backend: QueryBackend, table: str) -> None:
		self._backend = backend
		self.spec = QuerySpec(table=table)

	def select(self, *columns: str) -> "TableQuery":
		self.spec.action = Action.SELECT
		self.spec.columns = _parse_columns(columns or ("*",))
		return self

	def insert(self, rows: Union[dict, Sequence[dict]]) -> "TableQuery":
		self.spec.action = Action.INSERT
		self.spec.values = [dict(rows)] if isinstance(rows, dict) else [dict(r) for r in rows]
		return self

	def update(self, values: dict) -> "TableQuery":
		self.spec.action = Action.UPDATE
		self.spec.values = dict(values)
		return self

	def delete(self) -> "TableQuery":
		self.spec.action = Action.DELETE
		return self

	def _where(self, predicate: Filter) -> "TableQuery":
		self.spec.filters.append(predicate)
		return self

	def eq(self, column: str, value: Any) -> "TableQuery":
		return self._where(Predicate(column, Op.EQ, value))

	def neq(self, column: str, value: Any) -> "TableQuery":
		return self._where(Predicate(column, Op.NEQ, value))

	def gt(self, column: str, value: Any) -> "TableQuery":
		return self._where(Predicate(column, Op.GT, value))

	def gte(self, column: str, value: Any) -> "TableQuery":
		return self._where(Predicate(column, Op.GTE, value))

	def lt(self, column: str, value: Any) -> "TableQuery":
		return self._where(Predicate(column, Op.LT, value))

	def lte(self, column: str, value: Any) -> "TableQuery":
		return self._where(Predicate(column, Op.LTE, value))

	def in_(self, column: str, values: Iterable[Any]) -> "TableQuery":
		return self._where(Predicate(column, Op.IN, tuple(values)))

	def not_in(self, column: str, values: Iterable[Any]) -> "TableQuery":
		return self._where(Predicate(column, Op.NOT_IN, tuple(values)))

	def is_(self, column: str, value: Optional[bool]) -> "TableQuery":
		return self._where(Predicate(column, Op.IS, value))

	def or_(self, *groups: Union[Predicate, Sequence[Predicate]]) -> "TableQuery":
		return self._where(any_of(*groups))

	def order(self, column: str, *, desc: bool = False) -> "TableQuery":
		self.spec.order.append((column, desc))
		return self

	def limit(self, count: int) -> "TableQuery":
		if count < 0:
			raise InvalidQuery(detail="limit must be >= 0")
		self.spec.limit = count
		return self

	def range(self, start: int, end: int) -> "TableQuery":
		"""Inclusive row window, `range(0, 9)` returns the first ten rows."""
		if start < 0 or end < start - 1:
			raise InvalidQuery(detail=f"invalid range {start}..{end}")
		self.spec.offset = start
		self.spec.limit = end - start + 1
		return self

	def maybe_single(self) -> "TableQuery":
		self.spec.maybe_single = True
		return self

	async def execute(self) -> Any:
		rows = await self._backend.run_query(self.spec)
		if self.spec.maybe_single:
			return rows[0] if rows else None
		return rows

	async def count(self) -> int:
		if self.spec.action is not Action.SELECT:
			raise InvalidQuery(detail="count() is only valid for select queries")
		return await self._backend.run_count(self.spec)
