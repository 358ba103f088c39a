"""Remote store contract: change events, channels, and the client protocol."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Optional, Protocol, Union

from matchsync.infra.query import Filter, TableQuery, matches_all, normalize_filters

logger = logging.getLogger(__name__)

ANY_EVENT = "*"


class ChangeType(str, Enum):
	INSERT = "INSERT"
	UPDATE = "UPDATE"
	DELETE = "DELETE"


class ChannelStatus(str, Enum):
	"""Statuses reported by the transport to a channel's status callback."""

	SUBSCRIBED = "SUBSCRIBED"
	CHANNEL_ERROR = "CHANNEL_ERROR"
	TIMED_OUT = "TIMED_OUT"
	CLOSED = "CLOSED"


@dataclass(frozen=True, slots=True)
class ChangeEvent:
	table: str
	event_type: ChangeType
	new: dict = field(default_factory=dict)
	old: dict = field(default_factory=dict)
	schema: str = "public"
	committed_at: Optional[datetime] = None

	@property
	def record(self) -> dict:
		"""Row the event is about: the old image for deletes, the new one otherwise."""
		if self.event_type is ChangeType.DELETE:
			return self.old
		return self.new

	@classmethod
	def from_payload(cls, payload: dict) -> "ChangeEvent":
		return cls(
			table=str(payload["table"]),
			event_type=ChangeType(str(payload.get("type") or payload.get("eventType")).upper()),
			new=dict(payload.get("record") or payload.get("new") or {}),
			old=dict(payload.get("old_record") or payload.get("old") or {}),
			schema=str(payload.get("schema") or "public"),
		)


ChangeCallback = Callable[[ChangeEvent], None]
StatusCallback = Callable[[ChannelStatus], None]


@dataclass(frozen=True, slots=True)
class ChangeBinding:
	table: str
	callback: ChangeCallback
	event: str = ANY_EVENT
	schema: str = "public"
	filters: tuple[Filter, ...] = ()

	def accepts(self, event: ChangeEvent) -> bool:
		if event.table != self.table or event.schema != self.schema:
			return False
		if self.event != ANY_EVENT and self.event.upper() != event.event_type.value:
			return False
		return matches_all(self.filters, event.record)


class Channel:
	"""Named change-feed channel multiplexing several table bindings.

	Backends override `_open`/`_close`; dispatch, binding bookkeeping, and
	status reporting live here. Events are only delivered between a successful
	subscribe and the matching unsubscribe.
	"""

	def __init__(self, name: str) -> None:
		self.name = name
		self.bindings: list[ChangeBinding] = []
		self.status: Optional[ChannelStatus] = None
		self._status_callback: Optional[StatusCallback] = None
		self._active = False

	@property
	def active(self) -> bool:
		return self._active

	def on(
		self,
		table: str,
		callback: ChangeCallback,
		*,
		event: str = ANY_EVENT,
		schema: str = "public",
		filter: Union[Filter, Iterable[Filter], None] = None,  # noqa: A002 (mirror transport api)
	) -> "Channel":
		self.bindings.append(
			ChangeBinding(
				table=table,
				callback=callback,
				event=event,
				schema=schema,
				filters=normalize_filters(filter),
			)
		)
		return self

	async def subscribe(self, status_callback: Optional[StatusCallback] = None) -> "Channel":
		self._status_callback = status_callback
		status = await self._open()
		self._active = status is ChannelStatus.SUBSCRIBED
		self._report(status)
		return self

	async def unsubscribe(self) -> None:
		if self.status is ChannelStatus.CLOSED:
			return
		opened = self.status is not None
		self._active = False
		if opened:
			await self._close()
		self._report(ChannelStatus.CLOSED)

	def dispatch(self, event: ChangeEvent) -> None:
		if not self._active:
			return
		for binding in list(self.bindings):
			if not self._active:
				return
			if not binding.accepts(event):
				continue
			try:
				binding.callback(event)
			except Exception:
				# Remaining bindings still run after a handler error
				logger.exception("change handler failed", extra={"channel_name": self.name, "table": event.table})

	def fail(self, status: ChannelStatus = ChannelStatus.CHANNEL_ERROR) -> None:
		"""Transport-side failure after a successful subscribe."""
		self._active = False
		self._report(status)

	def _report(self, status: ChannelStatus) -> None:
		self.status = status
		if self._status_callback is not None:
			self._status_callback(status)

	async def _open(self) -> ChannelStatus:
		raise NotImplementedError

	async def _close(self) -> None:
		raise NotImplementedError


class RemoteStore(Protocol):
	def table(self, name: str) -> TableQuery:
		...

	async def rpc(self, name: str, params: Optional[dict[str, Any]] = None) -> Any:
		...

	def channel(self, name: str) -> Channel:
		...

	async def upload(self, bucket: str, path: str, data: bytes, *, content_type: Optional[str] = None) -> str:
		...


Procedure = Callable[[dict[str, Any]], Awaitable[Any]]
