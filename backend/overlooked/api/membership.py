"""Membership tier, quota and gate endpoints."""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query

from overlooked.infra.auth import AuthenticatedUser, get_current_user, get_optional_user
from overlooked.services import Services, get_services

router = APIRouter(prefix="/membership", tags=["membership"])


def _uid(user: Optional[AuthenticatedUser]) -> Optional[str]:
	return user.id if user else None


@router.get("/tier")
async def tier_endpoint(
	force: bool = Query(default=False),
	auth_user: Optional[AuthenticatedUser] = Depends(get_optional_user),
	services: Services = Depends(get_services),
) -> Dict[str, Any]:
	tier = await services.membership.get_tier(_uid(auth_user), force=force)
	return {"tier": tier.value if tier else None}


@router.get("/quota")
async def quota_endpoint(
	auth_user: AuthenticatedUser = Depends(get_current_user),
	services: Services = Depends(get_services),
) -> Dict[str, Any]:
	quota = await services.membership.submission_quota(auth_user.id)
	return quota.to_dict() if quota else {}


@router.get("/can-submit")
async def can_submit_endpoint(
	auth_user: Optional[AuthenticatedUser] = Depends(get_optional_user),
	services: Services = Depends(get_services),
) -> Dict[str, Any]:
	result = await services.membership.can_submit(_uid(auth_user))
	return result.to_dict()


@router.get("/can-apply")
async def can_apply_endpoint(
	paid: bool = Query(default=False),
	auth_user: Optional[AuthenticatedUser] = Depends(get_optional_user),
	services: Services = Depends(get_services),
) -> Dict[str, Any]:
	result = await services.membership.can_apply(_uid(auth_user), paid)
	return result.to_dict()


@router.get("/workshop/{product_id}")
async def workshop_access_endpoint(
	product_id: str,
	auth_user: Optional[AuthenticatedUser] = Depends(get_optional_user),
	services: Services = Depends(get_services),
) -> Dict[str, Any]:
	allowed = await services.membership.has_workshop_access(_uid(auth_user), product_id)
	return {"product_id": product_id, "has_access": allowed}


@router.get("/subscription")
async def subscription_endpoint(
	auth_user: AuthenticatedUser = Depends(get_current_user),
	services: Services = Depends(get_services),
) -> Dict[str, Any]:
	status = await services.membership.subscription_status(auth_user.id)
	return status.to_dict()


@router.post("/upgrade")
async def upgrade_endpoint(
	auth_user: AuthenticatedUser = Depends(get_current_user),
	services: Services = Depends(get_services),
) -> Dict[str, Any]:
	tier = await services.membership.upgrade(auth_user.id)
	return {"tier": tier.value}


@router.post("/downgrade")
async def downgrade_endpoint(
	auth_user: AuthenticatedUser = Depends(get_current_user),
	services: Services = Depends(get_services),
) -> Dict[str, Any]:
	tier = await services.membership.downgrade(auth_user.id)
	return {"tier": tier.value}
