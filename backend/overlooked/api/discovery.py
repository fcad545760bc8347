"""City search and city directory endpoints."""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query

from overlooked.domain.chat.schemas import ConversationResponse
from overlooked.infra.auth import AuthenticatedUser, get_current_user
from overlooked.services import Services, get_services

router = APIRouter(prefix="/discovery", tags=["discovery"])


@router.get("/cities")
async def search_cities_endpoint(
	q: str = Query(default="", max_length=80),
	selected_id: Optional[int] = Query(default=None),
	services: Services = Depends(get_services),
) -> Dict[str, Any]:
	cities = await services.discovery.search_cities(q, selected_id)
	return {"items": [city.to_dict() for city in cities]}


@router.get("/cities/{city_id}")
async def city_directory_endpoint(
	city_id: int,
	services: Services = Depends(get_services),
) -> Dict[str, Any]:
	directory = await services.discovery.city_directory(city_id)
	return directory.to_dict()


@router.post("/cities/{city_id}/join", response_model=ConversationResponse)
async def join_city_chat_endpoint(
	city_id: int,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	services: Services = Depends(get_services),
) -> ConversationResponse:
	conversation = await services.discovery.join_city_chat(auth_user.id, city_id)
	return ConversationResponse.from_model(conversation)
