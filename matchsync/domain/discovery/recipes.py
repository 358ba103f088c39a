"""Cache recipes for discovery listings."""

from __future__ import annotations

from typing import Any, Optional

from matchsync.domain.cache.models import PagedData


def remove_profile(value: Any, profile_id: str) -> Optional[Any]:
	"""Filter `profile_id` out of a flat or paged listing; None when absent."""
	if isinstance(value, PagedData):
		result = value
		for index, page in enumerate(value.pages):
			kept = tuple(item for item in page.items if item.id != profile_id)
			if len(kept) != len(page.items):
				result = result.replace_page(index, page.with_items(kept, total_delta=len(kept) - len(page.items)))
		return None if result is value else result
	if not value:
		return None
	kept = tuple(item for item in value if item.id != profile_id)
	if len(kept) == len(value):
		return None
	return kept
