"""Discovery filter value object; part of every discovery query key."""

from __future__ import annotations

from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

EVERYONE = "everyone"


class DiscoveryFilter(BaseModel):
	model_config = ConfigDict(frozen=True)

	gender: Optional[str] = None
	age_range: Optional[Tuple[int, int]] = None
	state_filter: Optional[str] = None
	city_filter: Optional[str] = None
	interests: Tuple[str, ...] = Field(default_factory=tuple)

	@field_validator("gender", "state_filter", "city_filter")
	@classmethod
	def _blank_to_none(cls, value: Optional[str]) -> Optional[str]:
		if value is None:
			return None
		value = value.strip()
		return value or None

	@field_validator("interests", mode="before")
	@classmethod
	def _sorted_interests(cls, value):
		if value is None:
			return ()
		return tuple(sorted({str(item) for item in value}))

	@model_validator(mode="after")
	def _check_age_range(self) -> "DiscoveryFilter":
		if self.age_range is not None and self.age_range[0] > self.age_range[1]:
			raise ValueError("age_range minimum exceeds maximum")
		return self

	@property
	def gender_clause(self) -> Optional[str]:
		"""Gender to filter on; "everyone" means no gender filter."""
		if self.gender is None or self.gender.lower() == EVERYONE:
			return None
		return self.gender
