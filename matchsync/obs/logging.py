"""JSON log lines carrying the sync session context.

Context is bound per task with `bind_context` so every record emitted while a
session, user channel or conversation is being handled carries those ids
without each call site passing them as `extra`.
"""

from __future__ import annotations

import json
import logging
import random
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from matchsync.settings import settings

_LOGGER_NAME = "matchsync"

_CONTEXT: Dict[str, ContextVar[Optional[str]]] = {
	name: ContextVar(f"matchsync_{name}", default=None) for name in ("session_id", "user_id", "channel")
}

# Message bodies and profile text never reach the log stream
_REDACTED_KEYS = ("content", "bio", "password", "token", "secret", "authorization", "email")

_MAX_TEXT = 256
_MAX_ITEMS = 10
_ELLIPSIS = "…"

# Attributes every LogRecord carries; anything else arrived through `extra`
_RECORD_ATTRS = frozenset(logging.LogRecord("", logging.INFO, "", 0, "", (), None).__dict__) | {"message", "taskName"}


def bind_context(**fields: Optional[str]) -> Dict[str, Token]:
	"""Bind `session_id`, `user_id` and/or `channel` for the current task.

	None values are skipped. Returns the tokens for `reset_context`.
	"""
	tokens: Dict[str, Token] = {}
	for name, value in fields.items():
		if name not in _CONTEXT:
			raise TypeError(f"unknown log context field {name!r}")
		if value is not None:
			tokens[name] = _CONTEXT[name].set(value)
	return tokens


def reset_context(tokens: Dict[str, Token]) -> None:
	for name, token in tokens.items():
		_CONTEXT[name].reset(token)


def current_context() -> Dict[str, str]:
	return {name: var.get() for name, var in _CONTEXT.items() if var.get()}


def _shorten(value: Any) -> Any:
	if isinstance(value, str):
		return value if len(value) <= _MAX_TEXT else value[:_MAX_TEXT] + _ELLIPSIS
	if isinstance(value, dict):
		shown = {str(k): _field(str(k), v) for k, v in list(value.items())[:_MAX_ITEMS]}
		if len(value) > _MAX_ITEMS:
			shown[_ELLIPSIS] = f"+{len(value) - _MAX_ITEMS} keys"
		return shown
	if isinstance(value, (list, tuple, set, frozenset)):
		items = [_shorten(item) for item in list(value)[:_MAX_ITEMS]]
		if len(value) > _MAX_ITEMS:
			items.append(_ELLIPSIS)
		return items
	if value is None or isinstance(value, (bool, int, float)):
		return value
	return str(value)


def _field(key: str, value: Any) -> Any:
	if any(marker in key.lower() for marker in _REDACTED_KEYS):
		return "[redacted]"
	return _shorten(value)


class JSONLogFormatter(logging.Formatter):
	def format(self, record: logging.LogRecord) -> str:  # noqa: A003 (match logging api)
		payload: Dict[str, Any] = {
			"ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
			"level": record.levelname.lower(),
			"logger": record.name,
			"msg": record.getMessage(),
			"service": settings.service_name,
			"env": settings.environment,
			"commit": settings.git_commit,
		}
		payload.update(current_context())
		if record.exc_info:
			payload["exc_info"] = self.formatException(record.exc_info)
		for key, value in vars(record).items():
			if key not in _RECORD_ATTRS and key not in payload:
				payload[key] = _field(key, value)
		return json.dumps(payload, separators=(",", ":"), default=str)


class InfoSamplingFilter(logging.Filter):
	"""Keep a fraction of INFO records; other levels always pass."""

	def __init__(self, rate: Optional[float] = None) -> None:
		super().__init__()
		chosen = settings.obs_log_sampling_rate_info if rate is None else rate
		self.rate = max(0.0, min(1.0, chosen))

	def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
		if record.levelno != logging.INFO or self.rate >= 1.0:
			return True
		return random.random() < self.rate


def configure_logging(level: Optional[str] = None) -> logging.Logger:
	"""Install the JSON handler on the root logger, replacing an earlier one."""
	root = logging.getLogger()
	for handler in list(root.handlers):
		if getattr(handler, "_matchsync", False):
			root.removeHandler(handler)
	handler = logging.StreamHandler()
	handler._matchsync = True  # type: ignore[attr-defined]
	handler.setFormatter(JSONLogFormatter())
	handler.addFilter(InfoSamplingFilter())
	root.addHandler(handler)
	root.setLevel(level or settings.obs_log_level)
	return logging.getLogger(_LOGGER_NAME)
