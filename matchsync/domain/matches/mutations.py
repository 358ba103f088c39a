"""Conversation mutations: sending messages and marking them read."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from matchsync.domain.cache import keys
from matchsync.domain.cache.exceptions import InvalidInput
from matchsync.domain.cache.mutation import Mutation, require
from matchsync.domain.common import now
from matchsync.domain.matches import recipes
from matchsync.domain.matches.models import Message

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 4000


@dataclass(frozen=True, slots=True)
class SendMessageInput:
	match_id: str
	content: str
	sender_id: str


@dataclass(frozen=True, slots=True)
class MarkReadInput:
	match_id: str
	user_id: str


@dataclass(frozen=True, slots=True)
class MarkReadResult:
	match_id: str
	user_id: str
	read_at: datetime
	updated: int


def apply_incoming_message(cache, match_id: str, message: Message) -> None:
	"""Append `message` to both conversation caches unless it is already there.

	Used for the local send and for the realtime echo of the same insert;
	whichever runs second changes nothing.
	"""
	cache.set(
		keys.match_messages_paginated_key(match_id),
		lambda old: recipes.append_to_pages(old, message),
	)
	cache.set(
		keys.match_messages_key(match_id),
		lambda old: recipes.append_message(old, message),
	)


class SendMessage(Mutation[SendMessageInput, Message]):
	name = "send_message"

	async def perform(self, variables: SendMessageInput) -> Message:
		match_id = require(variables.match_id, "match_id")
		sender_id = require(variables.sender_id, "sender_id")
		content = (variables.content or "").strip()
		if not content:
			raise InvalidInput(detail="empty message")
		if len(content) > MAX_MESSAGE_LENGTH:
			raise InvalidInput(detail="message too long")
		row = await (
			self.session.store.table("messages")
			.insert({"match_id": match_id, "sender_id": sender_id, "content": content})
			.maybe_single()
			.execute()
		)
		message = Message.from_row(row)
		logger.info("message sent", extra={"match_id": match_id, "message_id": message.id})
		return message

	async def on_success(self, result: Message, variables: SendMessageInput) -> None:
		apply_incoming_message(self.session.cache, result.match_id, result)
		# Match list previews show the last message
		self.session.cache.invalidate((keys.MATCHES,))


class MarkMessagesAsRead(Mutation[MarkReadInput, MarkReadResult]):
	name = "mark_messages_read"

	async def perform(self, variables: MarkReadInput) -> MarkReadResult:
		match_id = require(variables.match_id, "match_id")
		user_id = require(variables.user_id, "user_id")
		read_at = now()
		rows = await (
			self.session.store.table("messages")
			.update({"read_at": read_at})
			.eq("match_id", match_id)
			.neq("sender_id", user_id)
			.is_("read_at", None)
			.execute()
		)
		return MarkReadResult(match_id=match_id, user_id=user_id, read_at=read_at, updated=len(rows))

	async def on_success(self, result: MarkReadResult, variables: MarkReadInput) -> None:
		cache = self.session.cache
		# Locally every unread message is stamped; remotely only the other party's
		cache.set(
			keys.match_messages_key(result.match_id),
			lambda old: recipes.stamp_read(old, result.read_at),
		)
		cache.set(
			keys.match_messages_paginated_key(result.match_id),
			lambda old: recipes.stamp_read_in_pages(old, result.read_at),
		)
		cache.invalidate((keys.MATCHES,))
		cache.invalidate((keys.UNREAD_MESSAGE_COUNT,))
