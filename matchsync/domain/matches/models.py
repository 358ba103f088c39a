"""Match and message records."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping, Optional

from matchsync.domain.common import parse_ts
from matchsync.domain.discovery.models import Profile


@dataclass(frozen=True, slots=True)
class Message:
	id: str
	match_id: str
	sender_id: str
	content: str
	created_at: Optional[datetime] = None
	read_at: Optional[datetime] = None

	@classmethod
	def from_row(cls, row: Mapping[str, Any]) -> "Message":
		return cls(
			id=str(row["id"]),
			match_id=str(row["match_id"]),
			sender_id=str(row["sender_id"]),
			content=row.get("content") or "",
			created_at=parse_ts(row.get("created_at")),
			read_at=parse_ts(row.get("read_at")),
		)

	@property
	def is_read(self) -> bool:
		return self.read_at is not None


@dataclass(frozen=True, slots=True)
class LastMessage:
	match_id: str
	sender_id: str
	content: str
	created_at: Optional[datetime] = None

	@classmethod
	def from_row(cls, row: Mapping[str, Any]) -> "LastMessage":
		return cls(
			match_id=str(row["match_id"]),
			sender_id=str(row["sender_id"]),
			content=row.get("content") or "",
			created_at=parse_ts(row.get("created_at")),
		)


@dataclass(frozen=True, slots=True)
class Match:
	"""A match as seen by one viewer; `other_*` name the counterpart."""

	id: str
	user1_id: str
	user2_id: str
	created_at: Optional[datetime] = None
	other_user_id: Optional[str] = None
	other_profile: Optional[Profile] = None
	last_message: Optional[LastMessage] = None
	unread_count: Optional[int] = None

	@classmethod
	def from_row(cls, row: Mapping[str, Any]) -> "Match":
		return cls(
			id=str(row["id"]),
			user1_id=str(row["user1_id"]),
			user2_id=str(row["user2_id"]),
			created_at=parse_ts(row.get("created_at")),
		)

	@classmethod
	def for_viewer(
		cls,
		row: Mapping[str, Any],
		viewer_id: str,
		profiles: Optional[Mapping[str, Profile]] = None,
	) -> "Match":
		base = cls.from_row(row)
		other = base.user2_id if base.user1_id == viewer_id else base.user1_id
		return cls(
			id=base.id,
			user1_id=base.user1_id,
			user2_id=base.user2_id,
			created_at=base.created_at,
			other_user_id=other,
			other_profile=(profiles or {}).get(other),
		)

	def involves(self, user_id: str) -> bool:
		return user_id in (self.user1_id, self.user2_id)

	def concerns_profile(self, profile_id: str) -> bool:
		"""True when the viewer's counterpart in this match is `profile_id`."""
		if self.other_user_id == profile_id:
			return True
		return self.other_profile is not None and self.other_profile.id == profile_id
