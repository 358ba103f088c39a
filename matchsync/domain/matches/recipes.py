"""Cache recipes for the message caches.

Every recipe is a pure function of the value current when it runs and is
keyed by message id, so applying the same change twice, in any order relative
to other changes, ends in the same state as applying it once. A recipe
returns None when the cached value already reflects the change; the cache
then leaves the entry untouched.

Paginated values are `PagedData` whose `pages[0]` holds the newest messages.
Each page is in chronological order on its own, so the whole conversation
reads pages last-to-first.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Iterable, Optional, Sequence

from matchsync.domain.cache.models import Page, PagedData
from matchsync.domain.matches.models import Message


def _contains(items: Iterable[Message], message_id: str) -> bool:
	return any(item.id == message_id for item in items)


# --- flat message list ---
def append_message(messages: Optional[Sequence[Message]], message: Message) -> Optional[tuple[Message, ...]]:
	if messages is None:
		return (message,)
	if _contains(messages, message.id):
		return None
	return (*messages, message)


def replace_message(messages: Optional[Sequence[Message]], message: Message) -> Optional[tuple[Message, ...]]:
	if not messages:
		return None
	changed = False
	updated = []
	for item in messages:
		if item.id == message.id and item != message:
			updated.append(message)
			changed = True
		else:
			updated.append(item)
	return tuple(updated) if changed else None


def remove_message(messages: Optional[Sequence[Message]], message_id: str) -> Optional[tuple[Message, ...]]:
	if not messages or not _contains(messages, message_id):
		return None
	return tuple(item for item in messages if item.id != message_id)


def stamp_read(messages: Optional[Sequence[Message]], read_at: datetime) -> Optional[tuple[Message, ...]]:
	"""Stamp `read_at` on every cached message that has none yet."""
	if not messages:
		return None
	changed = False
	updated = []
	for item in messages:
		if item.read_at is None:
			updated.append(replace(item, read_at=read_at))
			changed = True
		else:
			updated.append(item)
	return tuple(updated) if changed else None


# --- paginated messages ---
def initial_pages(message: Message) -> PagedData:
	page = Page(items=(message,), next_page=None, has_more=False, total_loaded=1)
	return PagedData(pages=(page,), page_params=(0,))


def append_to_pages(data: Optional[PagedData], message: Message) -> Optional[PagedData]:
	"""Add `message` to the newest page, or start a one-page collection."""
	if data is None or not data.pages:
		return initial_pages(message)
	if _contains(data.items(), message.id):
		return None
	newest = data.pages[0]
	return data.replace_page(0, newest.with_items((*newest.items, message), total_delta=1))


def replace_in_pages(data: Optional[PagedData], message: Message) -> Optional[PagedData]:
	if data is None or not data.pages:
		return None
	result = data
	for index, page in enumerate(data.pages):
		items = replace_message(page.items, message)
		if items is not None:
			result = result.replace_page(index, page.with_items(items))
	return None if result is data else result


def remove_from_pages(data: Optional[PagedData], message_id: str) -> Optional[PagedData]:
	"""Drop the message and decrement the running total of the page that held it."""
	if data is None or not data.pages:
		return None
	for index, page in enumerate(data.pages):
		items = remove_message(page.items, message_id)
		if items is not None:
			return data.replace_page(index, page.with_items(items, total_delta=-1))
	return None


def stamp_read_in_pages(data: Optional[PagedData], read_at: datetime) -> Optional[PagedData]:
	if data is None or not data.pages:
		return None
	result = data
	for index, page in enumerate(data.pages):
		items = stamp_read(page.items, read_at)
		if items is not None:
			result = result.replace_page(index, page.with_items(items))
	return None if result is data else result


def chronological(data: Optional[PagedData]) -> list[Message]:
	"""The loaded conversation oldest first."""
	if data is None:
		return []
	return [item for page in reversed(data.pages) for item in page.items]


def loaded_count(data: Optional[PagedData]) -> int:
	"""Messages actually held, as opposed to the per-page requested totals."""
	if data is None:
		return 0
	return sum(len(page.items) for page in data.pages)
