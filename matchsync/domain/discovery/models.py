"""Profile records as the discovery views see them."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Mapping, Optional, Tuple

from matchsync.domain.common import as_tuple, parse_ts

LOCATION_HIDDEN = "Location hidden"

# Columns the optimized and paginated listings request from the privacy view
DISCOVERY_COLUMNS: Tuple[str, ...] = (
	"id",
	"first_name",
	"last_name",
	"age",
	"bio",
	"gender",
	"city",
	"state",
	"interests",
	"photos",
	"show_age",
	"show_location",
	"show_online",
	"created_at",
)


@dataclass(frozen=True, slots=True)
class Profile:
	id: str
	first_name: str = ""
	last_name: str = ""
	age: Optional[int] = None
	bio: Optional[str] = None
	gender: Optional[str] = None
	city: Optional[str] = None
	state: Optional[str] = None
	interests: Tuple[str, ...] = ()
	photos: Tuple[str, ...] = ()
	show_age: bool = True
	show_location: bool = True
	show_online: bool = True
	created_at: Optional[datetime] = None

	@classmethod
	def from_row(cls, row: Mapping[str, Any]) -> "Profile":
		return cls(**_profile_fields(row))

	@property
	def full_name(self) -> str:
		return f"{self.first_name} {self.last_name}".strip()


def _profile_fields(row: Mapping[str, Any]) -> dict[str, Any]:
	age = row.get("age")
	return {
		"id": str(row["id"]),
		"first_name": row.get("first_name") or "",
		"last_name": row.get("last_name") or "",
		"age": int(age) if age is not None else None,
		"bio": row.get("bio"),
		"gender": row.get("gender"),
		"city": row.get("city"),
		"state": row.get("state"),
		"interests": as_tuple(row.get("interests")),
		"photos": as_tuple(row.get("photos")),
		"show_age": bool(row.get("show_age", True)),
		"show_location": bool(row.get("show_location", True)),
		"show_online": bool(row.get("show_online", True)),
		"created_at": parse_ts(row.get("created_at")),
	}


@dataclass(frozen=True, slots=True)
class DiscoveryProfile(Profile):
	"""A candidate card. Visibility flags come from the privacy view; only the
	display strings are computed here."""

	display_name: str = ""
	display_location: str = LOCATION_HIDDEN

	@classmethod
	def from_row(cls, row: Mapping[str, Any], *, first_photo_only: bool = False) -> "DiscoveryProfile":
		fields = _profile_fields(row)
		if first_photo_only:
			fields["photos"] = fields["photos"][:1]
		profile = cls(**fields)
		return replace(
			profile,
			display_name=format_display_name(profile, show_age=profile.show_age),
			display_location=format_display_location(profile, show_location=profile.show_location),
		)


def format_display_name(profile: Profile, *, show_age: bool) -> str:
	if show_age and profile.age:
		return f"{profile.first_name} {profile.last_name}, {profile.age}"
	return f"{profile.first_name} {profile.last_name}"


def format_display_location(profile: Profile, *, show_location: bool) -> str:
	if show_location and profile.city and profile.state:
		return f"{profile.city}, {profile.state}"
	return LOCATION_HIDDEN


@dataclass(frozen=True, slots=True)
class Like:
	id: str
	liker_id: str
	liked_id: str
	created_at: Optional[datetime] = None

	@classmethod
	def from_row(cls, row: Mapping[str, Any]) -> "Like":
		return cls(
			id=str(row["id"]),
			liker_id=str(row["liker_id"]),
			liked_id=str(row["liked_id"]),
			created_at=parse_ts(row.get("created_at")),
		)


@dataclass(frozen=True, slots=True)
class LikedProfile:
	"""A like the viewer made, with the liked profile shown in full."""

	like: Like
	liked_profile: DiscoveryProfile

	@property
	def id(self) -> str:
		return self.like.id

	@classmethod
	def from_rows(cls, like_row: Mapping[str, Any], profile_row: Mapping[str, Any]) -> "LikedProfile":
		profile = DiscoveryProfile.from_row(profile_row)
		full = replace(
			profile,
			show_age=True,
			show_location=True,
			show_online=True,
			display_name=format_display_name(profile, show_age=True),
			display_location=format_display_location(profile, show_location=True),
		)
		return cls(like=Like.from_row(like_row), liked_profile=full)
