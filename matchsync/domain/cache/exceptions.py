"""Domain-level exceptions for the query cache and hooks."""

from __future__ import annotations


class SyncError(Exception):
	"""Base class for sync-layer errors."""

	reason: str = "unknown"
	retryable: bool = False

	def __init__(self, reason: str | None = None, *, detail: str | None = None) -> None:
		if reason:
			self.reason = reason
		super().__init__(f"{self.reason}: {detail}" if detail else self.reason)
		self.detail = detail


class MissingIdentityError(SyncError):
	"""A required identity parameter (user id, match id) is absent.

	Hooks treat this as their disabled state; it is never retried.
	"""

	reason = "missing_identity"

	def __init__(self, parameter: str) -> None:
		super().__init__(detail=parameter)
		self.parameter = parameter


class QueryNotRegistered(SyncError):
	reason = "query_not_registered"


class InvalidInput(SyncError):
	"""Mutation variables rejected before any remote call."""

	reason = "invalid_input"


class MutationError(SyncError):
	"""A mutation's remote write was rejected; never retried automatically."""

	reason = "mutation_failed"

	def __init__(self, name: str, cause: BaseException) -> None:
		super().__init__(detail=f"{name}: {cause}")
		self.name = name
		self.cause = cause


def is_retryable(exc: BaseException) -> bool:
	"""Validation-type failures set `retryable = False`; everything else is transient."""
	return bool(getattr(exc, "retryable", True))
