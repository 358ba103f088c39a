"""Lifecycle wrapper around a transport channel.

    UNSUBSCRIBED -> SUBSCRIBING -> SUBSCRIBED -> ERROR | CLOSED | TIMED_OUT

Handlers only run while the channel is SUBSCRIBED. A degraded channel (ERROR,
TIMED_OUT) stops reconciling and is not reconnected here; cached data stays
servable until the owner reopens the scope.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Callable, Iterable, Union

from matchsync.infra.query import Filter
from matchsync.infra.store import ANY_EVENT, ChangeEvent, Channel, ChannelStatus, RemoteStore
from matchsync.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

Handler = Callable[[ChangeEvent], None]


class ChannelState(str, Enum):
	UNSUBSCRIBED = "unsubscribed"
	SUBSCRIBING = "subscribing"
	SUBSCRIBED = "subscribed"
	ERROR = "error"
	CLOSED = "closed"
	TIMED_OUT = "timed_out"


_FROM_TRANSPORT = {
	ChannelStatus.SUBSCRIBED: ChannelState.SUBSCRIBED,
	ChannelStatus.CHANNEL_ERROR: ChannelState.ERROR,
	ChannelStatus.TIMED_OUT: ChannelState.TIMED_OUT,
	ChannelStatus.CLOSED: ChannelState.CLOSED,
}

TERMINAL_STATES = frozenset({ChannelState.ERROR, ChannelState.CLOSED, ChannelState.TIMED_OUT})


class ManagedChannel:
	def __init__(self, store: RemoteStore, name: str, *, scope: str) -> None:
		self.name = name
		self.scope = scope
		self.state = ChannelState.UNSUBSCRIBED
		self.history: list[ChannelState] = [self.state]
		self._channel: Channel = store.channel(name)
		self._listeners: list[Callable[[ChannelState], None]] = []

	@property
	def active(self) -> bool:
		return self.state is ChannelState.SUBSCRIBED

	@property
	def degraded(self) -> bool:
		return self.state in (ChannelState.ERROR, ChannelState.TIMED_OUT)

	def on(
		self,
		table: str,
		handler: Handler,
		*,
		event: str = ANY_EVENT,
		filter: Union[Filter, Iterable[Filter], None] = None,  # noqa: A002
	) -> "ManagedChannel":
		self._channel.on(table, self._guard(handler), event=event, filter=filter)
		return self

	def add_listener(self, listener: Callable[[ChannelState], None]) -> None:
		self._listeners.append(listener)

	async def open(self) -> ChannelState:
		if self.state is not ChannelState.UNSUBSCRIBED:
			return self.state
		self._transition(ChannelState.SUBSCRIBING)
		await self._channel.subscribe(self._on_status)
		return self.state

	async def close(self) -> None:
		if self.state is ChannelState.CLOSED:
			return
		if self.state is ChannelState.UNSUBSCRIBED:
			self._transition(ChannelState.CLOSED)
			return
		await self._channel.unsubscribe()
		# Transports that skip the CLOSED report still end up closed
		if self.state is not ChannelState.CLOSED:
			self._transition(ChannelState.CLOSED)

	def _guard(self, handler: Handler) -> Handler:
		def _handle(event: ChangeEvent) -> None:
			if self.state is not ChannelState.SUBSCRIBED:
				return
			obs_metrics.realtime_event(event.table, event.event_type.value)
			handler(event)

		return _handle

	def _on_status(self, status: ChannelStatus) -> None:
		state = _FROM_TRANSPORT.get(status)
		if state is None:
			logger.warning("unknown channel status %s", status, extra={"channel_name": self.name})
			return
		self._transition(state)

	def _transition(self, state: ChannelState) -> None:
		previous = self.state
		if state is previous:
			return
		if previous in TERMINAL_STATES and state is not ChannelState.CLOSED:
			# Degraded channels only move on to CLOSED
			return
		self.state = state
		self.history.append(state)
		obs_metrics.channel_state(self.scope, state.value)
		if state is ChannelState.SUBSCRIBED:
			obs_metrics.channel_opened(self.scope)
		elif previous is ChannelState.SUBSCRIBED:
			obs_metrics.channel_closed(self.scope)
		log = logger.warning if state in (ChannelState.ERROR, ChannelState.TIMED_OUT) else logger.info
		log(
			"realtime channel %s",
			state.value,
			extra={"channel_name": self.name, "scope": self.scope, "previous": previous.value},
		)
		for listener in list(self._listeners):
			listener(state)
