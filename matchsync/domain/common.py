"""Row coercion helpers shared by the domain models."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable, Optional


def now() -> datetime:
	return datetime.now(timezone.utc)


def parse_ts(value: Any) -> Optional[datetime]:
	"""Accept datetimes from the database driver and ISO strings from change payloads."""
	if value is None or value == "":
		return None
	if isinstance(value, datetime):
		return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
	text = str(value)
	if text.endswith("Z"):
		text = text[:-1] + "+00:00"
	parsed = datetime.fromisoformat(text)
	return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def as_tuple(value: Optional[Iterable[Any]]) -> tuple:
	if not value:
		return ()
	if isinstance(value, str):
		return (value,)
	return tuple(value)
