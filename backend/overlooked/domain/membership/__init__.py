"""Membership domain exports."""

from .models import GateReason, Tier, effective_tier  # noqa: F401
from .service import MembershipService  # noqa: F401
