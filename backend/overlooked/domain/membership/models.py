"""Membership tiers, quotas and gate results."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional

from overlooked.domain.users import parse_timestamp


class Tier(str, Enum):
	FREE = "free"
	PRO = "pro"


TIER_SUBMISSION_LIMITS = {
	Tier.FREE: 0,
	Tier.PRO: 2,
}


class GateReason(str, Enum):
	NOT_LOGGED_IN = "not_logged_in"
	TIER_TOO_LOW = "tier_too_low"
	NO_SUBMISSIONS_LEFT = "no_submissions_left"


def premium_still_active(expires_at: Any, now: datetime) -> bool:
	"""True only for a parsable expiry strictly in the future."""
	parsed = parse_timestamp(expires_at)
	if parsed is None:
		return False
	if parsed.tzinfo is None:
		parsed = parsed.replace(tzinfo=timezone.utc)
	return parsed > now


def effective_tier(
	stored_tier: Optional[str],
	is_premium: Any,
	premium_access_expires_at: Any,
	now: datetime,
) -> Tier:
	"""Pro when any signal says so: stored tier, premium flag, or unexpired access."""
	if (stored_tier or Tier.FREE.value) == Tier.PRO.value:
		return Tier.PRO
	if bool(is_premium):
		return Tier.PRO
	if premium_still_active(premium_access_expires_at, now):
		return Tier.PRO
	return Tier.FREE


def month_key(now: datetime) -> str:
	return date(now.year, now.month, 1).isoformat()


@dataclass(slots=True)
class SubmissionQuota:
	tier: Tier
	limit: int
	used: int
	remaining: int

	@classmethod
	def compute(cls, tier: Tier, used: int) -> "SubmissionQuota":
		limit = TIER_SUBMISSION_LIMITS[tier]
		used = max(0, int(used))
		return cls(tier=tier, limit=limit, used=used, remaining=max(0, limit - used))

	def to_dict(self) -> dict[str, Any]:
		return {"tier": self.tier.value, "limit": self.limit, "used": self.used, "remaining": self.remaining}


@dataclass(slots=True)
class CanSubmitResult:
	allowed: bool
	reason: Optional[GateReason]
	remaining: int

	def to_dict(self) -> dict[str, Any]:
		return {
			"allowed": self.allowed,
			"reason": self.reason.value if self.reason else None,
			"remaining": self.remaining,
		}


@dataclass(slots=True)
class CanApplyResult:
	allowed: bool
	reason: Optional[GateReason]

	def to_dict(self) -> dict[str, Any]:
		return {"allowed": self.allowed, "reason": self.reason.value if self.reason else None}


@dataclass(slots=True)
class SubscriptionStatus:
	tier: Tier
	stored_tier: str
	is_premium: bool
	premium_access_expires_at: Optional[datetime]
	subscription_status: Optional[str]
	grandfathered: bool

	def to_dict(self) -> dict[str, Any]:
		return {
			"tier": self.tier.value,
			"stored_tier": self.stored_tier,
			"is_premium": self.is_premium,
			"premium_access_expires_at": (
				self.premium_access_expires_at.isoformat() if self.premium_access_expires_at else None
			),
			"subscription_status": self.subscription_status,
			"grandfathered": self.grandfathered,
		}
