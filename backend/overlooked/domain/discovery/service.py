"""City search, city directory and city chat entry."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, List, Optional

from overlooked.domain.chat.models import Conversation
from overlooked.domain.chat.service import ChatService
from overlooked.domain.discovery.models import City, CityDirectory
from overlooked.domain.discovery.ranking import rank_cities
from overlooked.domain.users import PROFILE_COLUMNS, UserProfile
from overlooked.infra.backend import DataBackend
from overlooked.infra.errors import NotFound
from overlooked.settings import settings

logger = logging.getLogger(__name__)

CITY_COLUMNS = "id, name, country_code"
DIRECTORY_JOB_COLUMNS = "id, user_id, role_id, city_id, description, type, remote, created_at"


class DiscoveryService:
	def __init__(self, backend: DataBackend, chat: ChatService) -> None:
		self._backend = backend
		self._chat = chat

	async def search_cities(self, term: str, selected_id: Optional[Any] = None) -> List[City]:
		"""Substring search ranked exact > prefix > substring; short terms return nothing."""
		cleaned = (term or "").strip()
		if len(cleaned) < settings.city_search_min_chars:
			return []
		rows = await (
			self._backend.table("cities")
			.select(CITY_COLUMNS)
			.ilike("name", f"%{cleaned}%")
			.limit(settings.city_search_limit)
			.execute()
		)
		cities = [City.from_record(row) for row in rows]
		return rank_cities(cities, cleaned, selected_id)

	async def get_city(self, city_id: Any) -> City:
		row = await self._backend.table("cities").select(CITY_COLUMNS).eq("id", city_id).maybe_single()
		if row is None:
			raise NotFound("city_not_found")
		return City.from_record(row)

	async def city_directory(self, city_id: Any) -> CityDirectory:
		city = await self.get_city(city_id)
		user_rows, job_rows = await asyncio.gather(
			self._backend.table("users").select(PROFILE_COLUMNS).eq("city_id", city.id).order("full_name").execute(),
			self._backend.table("jobs")
			.select(DIRECTORY_JOB_COLUMNS)
			.eq("city_id", city.id)
			.eq("is_closed", False)
			.order("created_at", desc=True)
			.execute(),
		)
		return CityDirectory(
			city=city,
			creatives=[UserProfile.from_record(row) for row in user_rows],
			jobs=[dict(row) for row in job_rows],
		)

	async def join_city_chat(self, user_id: str, city_id: Any) -> Conversation:
		return await self._chat.join_city_group(user_id, city_id)
