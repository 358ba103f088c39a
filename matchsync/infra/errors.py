"""Error taxonomy shared by the remote store backends."""

from __future__ import annotations


class StoreError(Exception):
	"""Base class for remote store failures."""

	reason: str = "store_error"
	retryable: bool = True

	def __init__(self, reason: str | None = None, *, detail: str | None = None) -> None:
		super().__init__(detail or reason or self.reason)
		if reason:
			self.reason = reason
		self.detail = detail


class StoreUnavailable(StoreError):
	"""Network or connection failure; safe to retry reads."""

	reason = "unavailable"
	retryable = True


class ConstraintViolation(StoreError):
	reason = "constraint_violation"
	retryable = False


class InvalidQuery(StoreError):
	reason = "invalid_query"
	retryable = False


class RecordNotFound(StoreError):
	reason = "not_found"
	retryable = False


class ProcedureNotFound(StoreError):
	reason = "procedure_not_found"
	retryable = False
