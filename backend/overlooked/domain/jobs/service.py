"""Posting, closing and applying to jobs."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional

from overlooked.domain.jobs.models import (
	APPLICATIONS_TABLE,
	JOB_COLUMNS,
	JOBS_TABLE,
	AlreadyApplied,
	Application,
	Job,
	JobDraft,
	JobType,
)
from overlooked.domain.membership.service import MembershipService
from overlooked.domain.users import fetch_profiles
from overlooked.domain.xp.models import XPReason
from overlooked.domain.xp.service import XPService
from overlooked.infra.auth import require_signed_in
from overlooked.infra.backend import DataBackend
from overlooked.infra.errors import Conflict, Forbidden, InvalidRequest, NotFound
from overlooked.infra.locks import KeyedLocks
from overlooked.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
	return datetime.now(timezone.utc)


class JobService:
	def __init__(
		self,
		backend: DataBackend,
		membership: MembershipService,
		xp: XPService,
		*,
		now: Callable[[], datetime] = _utcnow,
	) -> None:
		self._backend = backend
		self._membership = membership
		self._xp = xp
		self._now = now
		self._apply_locks = KeyedLocks()

	async def list_open_jobs(
		self,
		*,
		city_id: Optional[Any] = None,
		role_id: Optional[Any] = None,
		paid: Optional[bool] = None,
		include_remote: bool = True,
	) -> List[Job]:
		query = self._backend.table(JOBS_TABLE).select(JOB_COLUMNS).eq("is_closed", False)
		if paid is not None:
			query = query.eq("type", (JobType.PAID if paid else JobType.FREE).value)
		if city_id is not None:
			query = query.eq("city_id", city_id)
		if role_id is not None:
			query = query.eq("role_id", role_id)
		if not include_remote:
			query = query.eq("remote", False)
		rows = await query.order("created_at", desc=True).execute()
		return [Job.from_record(row) for row in rows]

	async def list_my_jobs(self, user_id: Optional[str]) -> List[Job]:
		uid = require_signed_in(user_id)
		rows = await (
			self._backend.table(JOBS_TABLE)
			.select(JOB_COLUMNS)
			.eq("user_id", uid)
			.eq("is_closed", False)
			.order("created_at", desc=True)
			.execute()
		)
		return [Job.from_record(row) for row in rows]

	async def get_job(self, job_id: Any) -> Job:
		row = await self._backend.table(JOBS_TABLE).select(JOB_COLUMNS).eq("id", job_id).maybe_single()
		if row is None:
			raise NotFound("job_not_found")
		return Job.from_record(row)

	async def post_job(self, user_id: Optional[str], draft: JobDraft) -> Job:
		uid = require_signed_in(user_id)
		if draft.role_id is None:
			raise InvalidRequest("role_required")
		if draft.city_id is None and not draft.remote:
			raise InvalidRequest("city_required")
		rows = await self._backend.insert(JOBS_TABLE, draft.to_record(uid))
		job = Job.from_record(rows[0])
		logger.info("job posted", extra={"user": uid})
		await self._xp.award_best_effort(uid, XPReason.JOB_POSTED)
		return job

	async def close_job(self, user_id: Optional[str], job_id: Any) -> Job:
		uid = require_signed_in(user_id)
		job = await self.get_job(job_id)
		if job.user_id != uid:
			raise Forbidden("not_job_owner")
		if job.is_closed:
			return job
		rows = await (
			self._backend.table(JOBS_TABLE)
			.update({"is_closed": True, "closed_at": self._now()})
			.eq("id", job.id)
			.eq("user_id", uid)
			.execute()
		)
		return Job.from_record(rows[0]) if rows else job

	async def has_applied(self, user_id: Optional[str], job_id: Any) -> bool:
		if not user_id:
			return False
		row = await (
			self._backend.table(APPLICATIONS_TABLE)
			.select("id")
			.eq("job_id", job_id)
			.eq("applicant_id", user_id)
			.maybe_single()
		)
		return row is not None

	async def apply(self, user_id: Optional[str], job_id: Any) -> Application:
		"""Create the single application for ``(job, user)``.

		The existence check and insert run under a per-pair lock, so concurrent
		applies from this process produce one row; a uniqueness conflict from the
		store is reported the same way.
		"""
		uid = require_signed_in(user_id)
		job = await self.get_job(job_id)
		if job.is_closed:
			raise InvalidRequest("job_closed")
		if job.user_id == uid:
			raise InvalidRequest("cannot_apply_to_own_job")
		gate = await self._membership.can_apply(uid, job.is_paid)
		if not gate.allowed:
			obs_metrics.inc_job_application("gated")
			raise Forbidden(gate.reason.value if gate.reason else "forbidden")
		async with self._apply_locks.hold((str(job.id), uid)):
			if await self.has_applied(uid, job.id):
				obs_metrics.inc_job_application("duplicate")
				raise AlreadyApplied()
			try:
				rows = await self._backend.insert(
					APPLICATIONS_TABLE,
					{"job_id": job.id, "applicant_id": uid, "applied_at": self._now()},
				)
			except Conflict as exc:
				obs_metrics.inc_job_application("duplicate")
				raise AlreadyApplied() from exc
		obs_metrics.inc_job_application("created")
		await self._xp.award_best_effort(uid, XPReason.JOB_APPLIED)
		return Application.from_record(rows[0])

	async def applicants(self, user_id: Optional[str], job_id: Any) -> List[Application]:
		uid = require_signed_in(user_id)
		job = await self.get_job(job_id)
		if job.user_id != uid:
			raise Forbidden("not_job_owner")
		rows = await (
			self._backend.table(APPLICATIONS_TABLE)
			.select("id, job_id, applicant_id, applied_at")
			.eq("job_id", job.id)
			.order("applied_at")
			.execute()
		)
		applications = [Application.from_record(row) for row in rows]
		profiles = await fetch_profiles(self._backend, [application.applicant_id for application in applications])
		for application in applications:
			application.applicant = profiles.get(application.applicant_id)
		return applications
