"""Base class for mutation hooks: one remote write, then cache recipes."""

from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING, Any, Generic, Optional, TypeVar

from matchsync.domain.cache.exceptions import MissingIdentityError, MutationError, SyncError
from matchsync.infra.errors import StoreError
from matchsync.obs import metrics as obs_metrics

if TYPE_CHECKING:
	from matchsync.session import SyncSession

logger = logging.getLogger(__name__)

V = TypeVar("V")
R = TypeVar("R")


class MutationStatus(str, Enum):
	IDLE = "idle"
	PENDING = "pending"
	SUCCESS = "success"
	ERROR = "error"


class Mutation(Generic[V, R]):
	"""Runs `perform` and, when it succeeds, `on_success`.

	Failures are raised to the caller and never retried automatically. The
	variables of the last failed run stay available as `last_failed` so the
	caller can restore its input and call `retry()`.
	"""

	name = "mutation"

	def __init__(self, session: "SyncSession") -> None:
		self.session = session
		self.status = MutationStatus.IDLE
		self.data: Optional[R] = None
		self.error: Optional[BaseException] = None
		self.last_failed: Optional[V] = None

	@property
	def is_pending(self) -> bool:
		return self.status is MutationStatus.PENDING

	async def run(self, variables: V) -> R:
		self.status = MutationStatus.PENDING
		self.error = None
		try:
			result = await self.perform(variables)
		except SyncError as exc:
			self._failed(variables, exc)
			raise
		except StoreError as exc:
			self._failed(variables, exc)
			raise MutationError(self.name, exc) from exc
		self.data = result
		self.last_failed = None
		try:
			await self.on_success(result, variables)
		except Exception as exc:
			# Remote write succeeded; `last_failed` stays clear
			self.status = MutationStatus.ERROR
			self.error = exc
			obs_metrics.mutation(self.name, "cache_error")
			logger.exception("mutation cache update failed", extra={"mutation": self.name})
			raise
		self.status = MutationStatus.SUCCESS
		obs_metrics.mutation(self.name, "success")
		return result

	async def retry(self) -> R:
		if self.last_failed is None:
			raise SyncError("nothing_to_retry")
		return await self.run(self.last_failed)

	async def perform(self, variables: V) -> R:
		raise NotImplementedError

	async def on_success(self, result: R, variables: V) -> None:
		"""Cache recipes applied after the remote write succeeded."""

	def _failed(self, variables: V, exc: BaseException) -> None:
		self.status = MutationStatus.ERROR
		self.error = exc
		self.last_failed = variables
		obs_metrics.mutation(self.name, "error")
		logger.warning(
			"mutation failed: %s",
			exc,
			extra={"mutation": self.name, "reason": getattr(exc, "reason", None)},
		)


def require(value: Any, parameter: str) -> Any:
	"""Return `value`, or raise `MissingIdentityError` when it is empty."""
	if not value:
		raise MissingIdentityError(parameter)
	return value
