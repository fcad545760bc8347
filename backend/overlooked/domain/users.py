"""Shared user profile model and batch lookups."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional

from overlooked.infra.backend import DataBackend

PROFILE_COLUMNS = "id, full_name, avatar_url, city_id, main_role_id, level"


def parse_timestamp(value: Any) -> Optional[datetime]:
	"""Accept datetimes or ISO-8601 strings; anything unparsable is None."""
	if value is None:
		return None
	if isinstance(value, datetime):
		return value
	if isinstance(value, str) and value.strip():
		text = value.strip()
		if text.endswith("Z"):
			text = text[:-1] + "+00:00"
		try:
			return datetime.fromisoformat(text)
		except ValueError:
			return None
	return None


@dataclass(slots=True)
class UserProfile:
	id: str
	full_name: Optional[str] = None
	avatar_url: Optional[str] = None
	city_id: Optional[Any] = None
	main_role_id: Optional[Any] = None
	level: Optional[int] = None

	@classmethod
	def from_record(cls, record: Mapping[str, Any]) -> "UserProfile":
		return cls(
			id=str(record["id"]),
			full_name=record.get("full_name"),
			avatar_url=record.get("avatar_url"),
			city_id=record.get("city_id"),
			main_role_id=record.get("main_role_id"),
			level=record.get("level"),
		)

	def to_dict(self) -> dict[str, Any]:
		return {
			"id": self.id,
			"full_name": self.full_name,
			"avatar_url": self.avatar_url,
			"city_id": self.city_id,
			"main_role_id": self.main_role_id,
			"level": self.level,
		}


async def fetch_profiles(backend: DataBackend, user_ids: Iterable[str]) -> Dict[str, UserProfile]:
	"""Resolve many users with a single ``in`` query."""
	wanted = sorted({str(user_id) for user_id in user_ids if user_id})
	if not wanted:
		return {}
	rows = await backend.table("users").select(PROFILE_COLUMNS).in_("id", wanted).execute()
	return {str(row["id"]): UserProfile.from_record(row) for row in rows}


def by_display_name(profiles: Iterable[UserProfile]) -> List[UserProfile]:
	"""Named users first, case-insensitively by name, then by id."""
	return sorted(
		profiles,
		key=lambda profile: (profile.full_name is None, (profile.full_name or "").casefold(), profile.id),
	)
