"""Challenge submissions, deletion and film playback."""

from __future__ import annotations

import logging
import mimetypes
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, List, Optional, Set, Tuple

import ulid

from overlooked.domain.membership.service import MembershipService
from overlooked.domain.submissions.models import (
	FILMS_BUCKET,
	SUBMISSION_COLUMNS,
	SUBMISSIONS_TABLE,
	VOTES_TABLE,
	FeaturedSort,
	Submission,
	VoteResult,
	extract_youtube_id,
	month_window,
	normalise_streak,
	video_upload_path,
)
from overlooked.domain.xp.models import XPReason
from overlooked.domain.xp.service import XPService
from overlooked.infra.auth import require_signed_in
from overlooked.infra.backend import DataBackend, UploadSession
from overlooked.infra.cache import TTLCache
from overlooked.infra.errors import Conflict, DataAccessError, Forbidden, InvalidRequest, NotFound
from overlooked.infra.locks import KeyedLocks
from overlooked.obs import metrics as obs_metrics
from overlooked.settings import settings

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
	return datetime.now(timezone.utc)


def signed_url_cache() -> TTLCache[Tuple[str, str], str]:
	ttl = settings.signed_url_ttl_seconds - settings.signed_url_cache_margin_seconds
	return TTLCache(max(ttl, 1))


class SubmissionService:
	def __init__(
		self,
		backend: DataBackend,
		membership: MembershipService,
		xp: XPService,
		*,
		url_cache: Optional[TTLCache[Tuple[str, str], str]] = None,
		now: Callable[[], datetime] = _utcnow,
	) -> None:
		self._backend = backend
		self._membership = membership
		self._xp = xp
		self._url_cache = url_cache if url_cache is not None else signed_url_cache()
		self._now = now
		self._vote_locks = KeyedLocks()

	async def submit_to_challenge(
		self,
		user_id: Optional[str],
		*,
		title: str,
		word: str,
		youtube_url: str,
	) -> Submission:
		uid = require_signed_in(user_id)
		title, word, youtube_url = (title or "").strip(), (word or "").strip(), (youtube_url or "").strip()
		if not title or not word or not youtube_url:
			raise InvalidRequest("fields_required")
		gate = await self._membership.can_submit(uid)
		if not gate.allowed:
			raise Forbidden(gate.reason.value if gate.reason else "forbidden")
		if extract_youtube_id(youtube_url) is None:
			raise InvalidRequest("invalid_youtube_url")
		duplicates = await (
			self._backend.table(SUBMISSIONS_TABLE).select("id").eq("youtube_url", youtube_url).limit(1).execute()
		)
		if duplicates:
			raise Conflict("duplicate_submission")
		rows = await self._backend.insert(
			SUBMISSIONS_TABLE,
			{"user_id": uid, "title": title, "word": word, "youtube_url": youtube_url},
		)
		submission = Submission.from_record(rows[0])
		await self._membership.record_submission(uid)
		await self._xp.award_best_effort(uid, XPReason.CHALLENGE_SUBMISSION)
		logger.info("challenge submission created", extra={"user": uid})
		return submission

	async def list_user_submissions(self, user_id: str) -> List[Submission]:
		rows = await (
			self._backend.table(SUBMISSIONS_TABLE)
			.select(SUBMISSION_COLUMNS)
			.eq("user_id", user_id)
			.order("created_at", desc=True)
			.execute()
		)
		return [Submission.from_record(row) for row in rows]

	async def list_featured(
		self,
		sort: FeaturedSort | str = FeaturedSort.NEWEST,
		*,
		limit: Optional[int] = None,
	) -> List[Submission]:
		try:
			order = FeaturedSort(sort)
		except ValueError as exc:
			raise InvalidRequest("invalid_sort", detail=str(sort)) from exc
		query = self._backend.table(SUBMISSIONS_TABLE).select(SUBMISSION_COLUMNS)
		if order is FeaturedSort.MOST_VOTED:
			query = query.order("votes", desc=True).order("created_at", desc=True)
		elif order is FeaturedSort.LEAST_VOTED:
			query = query.order("votes").order("created_at", desc=True)
		elif order is FeaturedSort.OLDEST:
			query = query.order("created_at")
		else:
			query = query.order("created_at", desc=True)
		rows = await query.order("id").limit(limit or settings.featured_limit).execute()
		return [Submission.from_record(row) for row in rows]

	async def vote(self, user_id: Optional[str], submission_id: Any) -> VoteResult:
		"""Toggle the caller's vote on a submission.

		A new vote spends one of this month's ``votes_per_month`` and earns XP;
		voting again withdraws it, which returns the allowance when the vote was
		cast this month. Owners cannot vote on their own work.
		"""
		uid = require_signed_in(user_id)
		submission = await self.get_submission(submission_id)
		if submission.user_id == uid:
			obs_metrics.inc_submission_vote("own")
			raise Forbidden("cannot_vote_own_submission")
		async with self._vote_locks.hold(uid):
			existing = await (
				self._backend.table(VOTES_TABLE)
				.select("id")
				.eq("user_id", uid)
				.eq("submission_id", submission.id)
				.execute()
			)
			if existing:
				await self._backend.table(VOTES_TABLE).delete().eq("user_id", uid).eq("submission_id", submission.id).execute()
				voted = False
			else:
				if await self._votes_this_month(uid) >= settings.votes_per_month:
					obs_metrics.inc_submission_vote("capped")
					raise Forbidden("no_votes_left")
				try:
					await self._backend.insert(
						VOTES_TABLE,
						{"user_id": uid, "submission_id": submission.id, "voted_at": self._now()},
					)
				except Conflict as exc:
					raise Conflict("already_voted") from exc
				voted = True
			votes = await self._sync_vote_count(submission.id)
			left = max(settings.votes_per_month - await self._votes_this_month(uid), 0)
		obs_metrics.inc_submission_vote("cast" if voted else "withdrawn")
		if voted:
			await self._xp.award_best_effort(uid, XPReason.VOTE_SUBMISSION)
		return VoteResult(submission_id=submission.id, voted=voted, votes=votes, votes_left=left)

	async def votes_left(self, user_id: Optional[str]) -> int:
		uid = require_signed_in(user_id)
		return max(settings.votes_per_month - await self._votes_this_month(uid), 0)

	async def voted_ids(self, user_id: Optional[str], submission_ids: Iterable[Any]) -> Set[str]:
		wanted = [submission_id for submission_id in submission_ids if submission_id is not None]
		if not user_id or not wanted:
			return set()
		rows = await (
			self._backend.table(VOTES_TABLE)
			.select("submission_id")
			.eq("user_id", user_id)
			.in_("submission_id", wanted)
			.execute()
		)
		return {str(row["submission_id"]) for row in rows}

	async def _votes_this_month(self, user_id: str) -> int:
		start, end = month_window(self._now())
		rows = await (
			self._backend.table(VOTES_TABLE)
			.select("id")
			.eq("user_id", user_id)
			.gte("voted_at", start)
			.lt("voted_at", end)
			.execute()
		)
		return len(rows)

	async def _sync_vote_count(self, submission_id: Any) -> int:
		# Recounted from the vote rows so concurrent voters cannot drift the total.
		rows = await self._backend.table(VOTES_TABLE).select("id").eq("submission_id", submission_id).execute()
		await self._backend.table(SUBMISSIONS_TABLE).update({"votes": len(rows)}).eq("id", submission_id).execute()
		return len(rows)

	async def get_submission(self, submission_id: Any) -> Submission:
		row = await (
			self._backend.table(SUBMISSIONS_TABLE).select(SUBMISSION_COLUMNS).eq("id", submission_id).maybe_single()
		)
		if row is None:
			raise NotFound("submission_not_found")
		return Submission.from_record(row)

	async def delete_submission(self, user_id: Optional[str], submission_id: Any) -> Submission:
		"""Delete through the server procedure, then clean up stored files.

		Storage cleanup is best effort: once the row is gone a failed removal is
		logged and counted, never raised.
		"""
		uid = require_signed_in(user_id)
		submission = await self.get_submission(submission_id)
		if submission.user_id != uid:
			raise Forbidden("not_submission_owner")
		await self._backend.rpc("delete_submission", {"p_submission_id": submission.id, "p_user_id": uid})
		paths = submission.stored_objects()
		if paths:
			try:
				await self._backend.storage.remove(FILMS_BUCKET, paths)
			except DataAccessError as exc:
				obs_metrics.inc_storage_cleanup_failure(FILMS_BUCKET)
				logger.warning(
					"submission storage cleanup failed",
					extra={"bucket": FILMS_BUCKET, "error": exc.reason},
				)
			for path in paths:
				self._url_cache.invalidate((FILMS_BUCKET, path))
		return submission

	async def playback_url(self, path: str) -> str:
		"""Signed URL for a private film, reused until shortly before it expires."""
		if not path:
			raise InvalidRequest("path_required")
		key = (FILMS_BUCKET, path)
		cached = self._url_cache.get(key)
		if cached is not None:
			return cached
		url = await self._backend.storage.signed_url(FILMS_BUCKET, path, settings.signed_url_ttl_seconds)
		self._url_cache.set(key, url)
		return url

	async def begin_video_upload(
		self,
		user_id: Optional[str],
		file_name: Optional[str] = None,
		*,
		content_type: str = "video/mp4",
	) -> UploadSession:
		uid = require_signed_in(user_id)
		if file_name:
			content_type = mimetypes.guess_type(file_name)[0] or content_type
		path = video_upload_path(str(ulid.new()))
		session = await self._backend.storage.create_upload_session(FILMS_BUCKET, path, content_type=content_type)
		logger.info("video upload started", extra={"user": uid, "path": path})
		return session

	async def monthly_streak(self, user_id: Optional[str]) -> int:
		if not user_id:
			return 0
		result = await self._backend.rpc("get_monthly_submission_streak", {"p_user_id": user_id})
		return normalise_streak(result)
