from fastapi import APIRouter, Depends

from overlooked.infra.auth import AuthenticatedUser, get_current_user
from overlooked.services import Services, get_services

router = APIRouter(prefix="/xp", tags=["xp"])


@router.get("/me")
async def my_progress(
	current_user: AuthenticatedUser = Depends(get_current_user),
	services: Services = Depends(get_services),
):
	"""
	Get the signed-in user's XP, level and progress to the next level.
	"""
	progress = await services.xp.get_progress(current_user.id)
	return progress.to_dict()


@router.get("/users/{user_id}")
async def user_progress(user_id: str, services: Services = Depends(get_services)):
	progress = await services.xp.get_progress(user_id)
	return progress.to_dict()
