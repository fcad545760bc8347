"""Challenge submission and film playback endpoints."""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, status

from overlooked.domain.submissions.models import FeaturedSort
from overlooked.domain.submissions.schemas import SubmissionCreateRequest, VideoUploadRequest
from overlooked.infra.auth import AuthenticatedUser, get_current_user, get_optional_user
from overlooked.services import Services, get_services

router = APIRouter(prefix="/submissions", tags=["submissions"])


@router.post("", status_code=status.HTTP_201_CREATED)
async def submit_endpoint(
	payload: SubmissionCreateRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	services: Services = Depends(get_services),
) -> Dict[str, Any]:
	submission = await services.submissions.submit_to_challenge(
		auth_user.id,
		title=payload.title,
		word=payload.word,
		youtube_url=payload.youtube_url,
	)
	return submission.to_dict()


@router.get("/featured")
async def featured_endpoint(
	sort: FeaturedSort = Query(default=FeaturedSort.NEWEST),
	limit: Optional[int] = Query(default=None, ge=1, le=200),
	auth_user: Optional[AuthenticatedUser] = Depends(get_optional_user),
	services: Services = Depends(get_services),
) -> Dict[str, Any]:
	submissions = await services.submissions.list_featured(sort, limit=limit)
	voted = await services.submissions.voted_ids(
		auth_user.id if auth_user else None,
		[submission.id for submission in submissions],
	)
	return {
		"sort": sort.value,
		"items": [{**submission.to_dict(), "voted": str(submission.id) in voted} for submission in submissions],
	}


@router.get("/votes/left")
async def votes_left_endpoint(
	auth_user: AuthenticatedUser = Depends(get_current_user),
	services: Services = Depends(get_services),
) -> Dict[str, Any]:
	return {"votes_left": await services.submissions.votes_left(auth_user.id)}


@router.post("/{submission_id}/vote")
async def vote_endpoint(
	submission_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	services: Services = Depends(get_services),
) -> Dict[str, Any]:
	result = await services.submissions.vote(auth_user.id, submission_id)
	return result.to_dict()


@router.get("/users/{user_id}")
async def list_user_submissions_endpoint(user_id: str, services: Services = Depends(get_services)) -> Dict[str, Any]:
	submissions = await services.submissions.list_user_submissions(user_id)
	return {"items": [submission.to_dict() for submission in submissions]}


@router.get("/users/{user_id}/streak")
async def streak_endpoint(user_id: str, services: Services = Depends(get_services)) -> Dict[str, Any]:
	return {"user_id": user_id, "streak": await services.submissions.monthly_streak(user_id)}


@router.delete("/{submission_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_submission_endpoint(
	submission_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	services: Services = Depends(get_services),
) -> None:
	await services.submissions.delete_submission(auth_user.id, submission_id)


@router.get("/playback")
async def playback_endpoint(
	path: str = Query(..., min_length=1),
	auth_user: AuthenticatedUser = Depends(get_current_user),
	services: Services = Depends(get_services),
) -> Dict[str, Any]:
	return {"url": await services.submissions.playback_url(path)}


@router.post("/uploads", status_code=status.HTTP_201_CREATED)
async def begin_upload_endpoint(
	payload: VideoUploadRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	services: Services = Depends(get_services),
) -> Dict[str, Any]:
	session = await services.submissions.begin_video_upload(auth_user.id, payload.file_name)
	return session.to_dict()
