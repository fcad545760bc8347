"""Tier resolution, submission quotas and membership gates."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from overlooked.domain.membership.models import (
	CanApplyResult,
	CanSubmitResult,
	GateReason,
	SubmissionQuota,
	SubscriptionStatus,
	Tier,
	effective_tier,
	month_key,
)
from overlooked.domain.users import parse_timestamp
from overlooked.infra.backend import DataBackend
from overlooked.infra.cache import TTLCache
from overlooked.infra.errors import NotFound
from overlooked.obs import metrics as obs_metrics
from overlooked.settings import settings

logger = logging.getLogger(__name__)

TIER_COLUMNS = "tier, is_premium, premium_access_expires_at"


def _utcnow() -> datetime:
	return datetime.now(timezone.utc)


class MembershipService:
	"""Effective tier per user, cached briefly and invalidated on tier changes."""

	def __init__(
		self,
		backend: DataBackend,
		*,
		cache: Optional[TTLCache[str, Tier]] = None,
		now: Callable[[], datetime] = _utcnow,
	) -> None:
		self._backend = backend
		self._cache: TTLCache[str, Tier] = cache if cache is not None else TTLCache(settings.membership_cache_ttl_seconds)
		self._now = now

	async def get_tier(self, user_id: Optional[str], *, force: bool = False) -> Optional[Tier]:
		"""Signed-out callers have no tier; lookup failures propagate."""
		if not user_id:
			return None
		if not force:
			cached = self._cache.get(user_id)
			if cached is not None:
				obs_metrics.inc_membership_cache("hit")
				return cached
		obs_metrics.inc_membership_cache("miss")
		row = await self._backend.table("users").select(TIER_COLUMNS).eq("id", user_id).single()
		tier = effective_tier(
			row.get("tier"),
			row.get("is_premium"),
			row.get("premium_access_expires_at"),
			self._now(),
		)
		self._cache.set(user_id, tier)
		return tier

	async def get_tier_or_free(self, user_id: Optional[str], *, force: bool = False) -> Tier:
		return await self.get_tier(user_id, force=force) or Tier.FREE

	def invalidate(self, user_id: Optional[str] = None) -> None:
		self._cache.invalidate(user_id)

	async def submission_quota(self, user_id: Optional[str]) -> Optional[SubmissionQuota]:
		if not user_id:
			return None
		tier = await self.get_tier_or_free(user_id)
		row = await (
			self._backend.table("submission_quotas")
			.select("submissions_used")
			.eq("user_id", user_id)
			.eq("month_start", month_key(self._now()))
			.maybe_single()
		)
		used = int((row or {}).get("submissions_used") or 0)
		return SubmissionQuota.compute(tier, used)

	async def record_submission(self, user_id: str) -> int:
		"""Bump this month's usage counter and return the new value."""
		month_start = month_key(self._now())
		row = await (
			self._backend.table("submission_quotas")
			.select("submissions_used")
			.eq("user_id", user_id)
			.eq("month_start", month_start)
			.maybe_single()
		)
		used = int((row or {}).get("submissions_used") or 0) + 1
		await self._backend.upsert(
			"submission_quotas",
			{"user_id": user_id, "month_start": month_start, "submissions_used": used},
			on_conflict=("user_id", "month_start"),
		)
		return used

	async def can_submit(self, user_id: Optional[str]) -> CanSubmitResult:
		quota = await self.submission_quota(user_id)
		if quota is None:
			return CanSubmitResult(allowed=False, reason=GateReason.NOT_LOGGED_IN, remaining=0)
		if quota.limit == 0:
			return CanSubmitResult(allowed=False, reason=GateReason.TIER_TOO_LOW, remaining=0)
		if quota.remaining <= 0:
			return CanSubmitResult(allowed=False, reason=GateReason.NO_SUBMISSIONS_LEFT, remaining=0)
		return CanSubmitResult(allowed=True, reason=None, remaining=quota.remaining)

	async def can_apply(self, user_id: Optional[str], is_paid_job: bool) -> CanApplyResult:
		tier = await self.get_tier(user_id)
		if tier is None:
			return CanApplyResult(allowed=False, reason=GateReason.NOT_LOGGED_IN)
		if not is_paid_job or tier is Tier.PRO:
			return CanApplyResult(allowed=True, reason=None)
		return CanApplyResult(allowed=False, reason=GateReason.TIER_TOO_LOW)

	async def has_workshop_access(self, user_id: Optional[str], product_id: str) -> bool:
		if not user_id:
			return False
		result = await self._backend.rpc(
			"has_workshop_access",
			{"p_user_id": user_id, "p_product_id": product_id},
		)
		return bool(result)

	async def subscription_status(self, user_id: str) -> SubscriptionStatus:
		row = await (
			self._backend.table("users")
			.select("tier, is_premium, premium_access_expires_at, subscription_status, grandfathered")
			.eq("id", user_id)
			.maybe_single()
		)
		if row is None:
			raise NotFound("user_not_found")
		tier = effective_tier(row.get("tier"), row.get("is_premium"), row.get("premium_access_expires_at"), self._now())
		return SubscriptionStatus(
			tier=tier,
			stored_tier=row.get("tier") or Tier.FREE.value,
			is_premium=bool(row.get("is_premium")),
			premium_access_expires_at=parse_timestamp(row.get("premium_access_expires_at")),
			subscription_status=row.get("subscription_status"),
			grandfathered=bool(row.get("grandfathered")),
		)

	async def upgrade(self, user_id: str) -> Tier:
		await self._backend.rpc("upgrade_tier", {"p_user_id": user_id})
		self.invalidate(user_id)
		logger.info("membership upgraded", extra={"user": user_id})
		return await self.get_tier_or_free(user_id, force=True)

	async def downgrade(self, user_id: str) -> Tier:
		await self._backend.rpc("downgrade_to_free", {"p_user_id": user_id})
		self.invalidate(user_id)
		logger.info("membership downgraded", extra={"user": user_id})
		return await self.get_tier_or_free(user_id, force=True)
