"""Supporting other creatives."""

from __future__ import annotations

import logging
from typing import List, Optional

from overlooked.domain.support.models import SUPPORTS_TABLE, Support, SupportEdge, SupportStatus
from overlooked.domain.users import fetch_profiles
from overlooked.infra.auth import require_signed_in
from overlooked.infra.backend import DataBackend
from overlooked.infra.errors import Conflict, InvalidRequest, NotFound

logger = logging.getLogger(__name__)


class SupportService:
	def __init__(self, backend: DataBackend) -> None:
		self._backend = backend

	async def support(self, user_id: Optional[str], target_id: str) -> Support:
		uid = require_signed_in(user_id)
		if not target_id:
			raise InvalidRequest("target_required")
		if uid == target_id:
			raise InvalidRequest("cannot_support_self")
		try:
			rows = await self._backend.insert(SUPPORTS_TABLE, {"supporter_id": uid, "supported_id": target_id})
		except Conflict as exc:
			raise Conflict("already_supporting") from exc
		logger.info("support created", extra={"user": uid})
		return Support.from_record(rows[0])

	async def unsupport(self, user_id: Optional[str], target_id: str) -> None:
		uid = require_signed_in(user_id)
		rows = await (
			self._backend.table(SUPPORTS_TABLE)
			.delete()
			.eq("supporter_id", uid)
			.eq("supported_id", target_id)
			.execute()
		)
		if not rows:
			raise NotFound("not_supporting")

	async def status(self, user_id: Optional[str], other_id: str) -> SupportStatus:
		if not user_id or not other_id:
			return SupportStatus.NONE
		supporting = await (
			self._backend.table(SUPPORTS_TABLE)
			.select("supporter_id")
			.eq("supporter_id", user_id)
			.eq("supported_id", other_id)
			.maybe_single()
		)
		if supporting is not None:
			return SupportStatus.SUPPORTING
		supported_by = await (
			self._backend.table(SUPPORTS_TABLE)
			.select("supporter_id")
			.eq("supporter_id", other_id)
			.eq("supported_id", user_id)
			.maybe_single()
		)
		if supported_by is not None:
			return SupportStatus.SUPPORTED_BY
		return SupportStatus.NONE

	async def supporting(self, user_id: str) -> List[SupportEdge]:
		"""Users ``user_id`` supports, newest first."""
		return await self._edges("supporter_id", "supported_id", user_id)

	async def supporters(self, user_id: str) -> List[SupportEdge]:
		"""Users supporting ``user_id``, newest first."""
		return await self._edges("supported_id", "supporter_id", user_id)

	async def _edges(self, own_column: str, other_column: str, user_id: str) -> List[SupportEdge]:
		rows = await (
			self._backend.table(SUPPORTS_TABLE)
			.select("supporter_id, supported_id, created_at")
			.eq(own_column, user_id)
			.order("created_at", desc=True)
			.execute()
		)
		supports = [Support.from_record(row) for row in rows]
		other_ids = [getattr(support, other_column) for support in supports]
		profiles = await fetch_profiles(self._backend, other_ids)
		return [
			SupportEdge(user_id=other_id, profile=profiles.get(other_id), since=support.created_at)
			for support, other_id in zip(supports, other_ids)
		]
