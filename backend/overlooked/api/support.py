"""Support ("follow") endpoints."""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, status

from overlooked.infra.auth import AuthenticatedUser, get_current_user, get_optional_user
from overlooked.services import Services, get_services

router = APIRouter(prefix="/support", tags=["support"])


@router.post("/{target_id}", status_code=status.HTTP_201_CREATED)
async def support_endpoint(
	target_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	services: Services = Depends(get_services),
) -> Dict[str, Any]:
	support = await services.support.support(auth_user.id, target_id)
	return support.to_dict()


@router.delete("/{target_id}", status_code=status.HTTP_204_NO_CONTENT)
async def unsupport_endpoint(
	target_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	services: Services = Depends(get_services),
) -> None:
	await services.support.unsupport(auth_user.id, target_id)


@router.get("/{other_id}/status")
async def status_endpoint(
	other_id: str,
	auth_user: Optional[AuthenticatedUser] = Depends(get_optional_user),
	services: Services = Depends(get_services),
) -> Dict[str, Any]:
	result = await services.support.status(auth_user.id if auth_user else None, other_id)
	return {"status": result.value}


@router.get("/{user_id}/supporting")
async def supporting_endpoint(user_id: str, services: Services = Depends(get_services)) -> Dict[str, Any]:
	edges = await services.support.supporting(user_id)
	return {"items": [edge.to_dict() for edge in edges]}


@router.get("/{user_id}/supporters")
async def supporters_endpoint(user_id: str, services: Services = Depends(get_services)) -> Dict[str, Any]:
	edges = await services.support.supporters(user_id)
	return {"items": [edge.to_dict() for edge in edges]}
