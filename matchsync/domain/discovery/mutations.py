"""Like, unlike and pass."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from matchsync.domain.cache import keys
from matchsync.domain.cache.mutation import Mutation, require
from matchsync.domain.discovery.recipes import remove_profile
from matchsync.infra.errors import ConstraintViolation, StoreError
from matchsync.infra.query import eq

logger = logging.getLogger(__name__)

CASCADE_PROCEDURE = "delete_match_and_messages"


@dataclass(frozen=True, slots=True)
class LikeInput:
	profile_id: str
	user_id: str


@dataclass(frozen=True, slots=True)
class LikeResult:
	profile_id: str
	user_id: str
	created: bool


@dataclass(frozen=True, slots=True)
class UnlikeResult:
	profile_id: str
	user_id: str
	match_id: Optional[str] = None
	cascade_failed: bool = False


@dataclass(frozen=True, slots=True)
class PassInput:
	profile_id: str


def _invalidate_social(cache) -> None:
	cache.invalidate_family(keys.DISCOVERY_FAMILY)
	cache.invalidate((keys.MATCHES,))
	cache.invalidate((keys.LIKED_PROFILES,))


class LikeProfile(Mutation[LikeInput, LikeResult]):
	"""Creates the like edge once; liking again is a successful no-op."""

	name = "like_profile"

	async def perform(self, variables: LikeInput) -> LikeResult:
		profile_id = require(variables.profile_id, "profile_id")
		user_id = require(variables.user_id, "user_id")
		store = self.session.store
		existing = await store.table("likes").select("id").eq("liker_id", user_id).eq("liked_id", profile_id).execute()
		if existing:
			logger.info("like already exists", extra={"profile_id": profile_id})
			return LikeResult(profile_id=profile_id, user_id=user_id, created=False)
		try:
			await store.table("likes").insert({"liker_id": user_id, "liked_id": profile_id}).execute()
		except ConstraintViolation:
			# Lost a race with a concurrent like of the same profile
			logger.info("like created concurrently", extra={"profile_id": profile_id})
			return LikeResult(profile_id=profile_id, user_id=user_id, created=False)
		return LikeResult(profile_id=profile_id, user_id=user_id, created=True)

	async def on_success(self, result: LikeResult, variables: LikeInput) -> None:
		self.session.remove_discovered(result.profile_id)
		_invalidate_social(self.session.cache)


class UnlikeProfile(Mutation[LikeInput, UnlikeResult]):
	"""Removes the like edge, first deleting any match between the two users.

	The match cascade is best effort: when the procedure fails the failure is
	logged and the like edge is still deleted.
	"""

	name = "unlike_profile"

	async def perform(self, variables: LikeInput) -> UnlikeResult:
		profile_id = require(variables.profile_id, "profile_id")
		user_id = require(variables.user_id, "user_id")
		store = self.session.store
		matches = await (
			store.table("matches")
			.select("*")
			.or_(
				(eq("user1_id", user_id), eq("user2_id", profile_id)),
				(eq("user1_id", profile_id), eq("user2_id", user_id)),
			)
			.execute()
		)
		match_id = str(matches[0]["id"]) if matches else None
		cascade_failed = False
		if match_id is not None:
			try:
				await store.rpc(CASCADE_PROCEDURE, {"p_match_id": match_id, "p_user_id": user_id})
			except StoreError as exc:
				cascade_failed = True
				logger.error(
					"match cascade failed, continuing with unlike: %s",
					exc,
					extra={"match_id": match_id, "reason": exc.reason},
				)
		await store.table("likes").delete().eq("liker_id", user_id).eq("liked_id", profile_id).execute()
		return UnlikeResult(profile_id=profile_id, user_id=user_id, match_id=match_id, cascade_failed=cascade_failed)

	async def on_success(self, result: UnlikeResult, variables: LikeInput) -> None:
		_invalidate_social(self.session.cache)
		self.session.cache.invalidate((keys.CHECK_MATCH,))
		selected = self.session.selected_match
		if selected is not None and (selected.id == result.match_id or selected.concerns_profile(result.profile_id)):
			await self.session.select_match(None)


class PassProfile(Mutation[PassInput, str]):
	"""Client-side only: the passed profile is filtered out of every cached
	discovery listing. Nothing is persisted, so a refetch can bring it back."""

	name = "pass_profile"

	async def perform(self, variables: PassInput) -> str:
		return require(variables.profile_id, "profile_id")

	async def on_success(self, result: str, variables: PassInput) -> None:
		self.session.cache.set_family(keys.DISCOVERY_FAMILY, lambda old: remove_profile(old, result))
		self.session.remove_discovered(result)
