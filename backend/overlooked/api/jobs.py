"""Job board endpoints."""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, status

from overlooked.domain.jobs.schemas import JobCreateRequest
from overlooked.infra.auth import AuthenticatedUser, get_current_user, get_optional_user
from overlooked.services import Services, get_services

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.get("")
async def list_jobs_endpoint(
	city_id: Optional[int] = Query(default=None),
	role_id: Optional[int] = Query(default=None),
	paid: Optional[bool] = Query(default=None),
	include_remote: bool = Query(default=True),
	services: Services = Depends(get_services),
) -> Dict[str, Any]:
	jobs = await services.jobs.list_open_jobs(
		city_id=city_id,
		role_id=role_id,
		paid=paid,
		include_remote=include_remote,
	)
	return {"items": [job.to_dict() for job in jobs]}


@router.post("", status_code=status.HTTP_201_CREATED)
async def post_job_endpoint(
	payload: JobCreateRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	services: Services = Depends(get_services),
) -> Dict[str, Any]:
	job = await services.jobs.post_job(auth_user.id, payload.to_draft())
	return job.to_dict()


@router.get("/mine")
async def my_jobs_endpoint(
	auth_user: AuthenticatedUser = Depends(get_current_user),
	services: Services = Depends(get_services),
) -> Dict[str, Any]:
	jobs = await services.jobs.list_my_jobs(auth_user.id)
	return {"items": [job.to_dict() for job in jobs]}


@router.post("/{job_id}/close")
async def close_job_endpoint(
	job_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	services: Services = Depends(get_services),
) -> Dict[str, Any]:
	job = await services.jobs.close_job(auth_user.id, job_id)
	return job.to_dict()


@router.get("/{job_id}/applied")
async def has_applied_endpoint(
	job_id: str,
	auth_user: Optional[AuthenticatedUser] = Depends(get_optional_user),
	services: Services = Depends(get_services),
) -> Dict[str, Any]:
	applied = await services.jobs.has_applied(auth_user.id if auth_user else None, job_id)
	return {"applied": applied}


@router.post("/{job_id}/apply", status_code=status.HTTP_201_CREATED)
async def apply_endpoint(
	job_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	services: Services = Depends(get_services),
) -> Dict[str, Any]:
	application = await services.jobs.apply(auth_user.id, job_id)
	return application.to_dict()


@router.get("/{job_id}/applicants")
async def applicants_endpoint(
	job_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	services: Services = Depends(get_services),
) -> Dict[str, Any]:
	applications = await services.jobs.applicants(auth_user.id, job_id)
	return {"items": [application.to_dict() for application in applications]}
