"""Support ("follow") graph models."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Optional

from overlooked.domain.users import UserProfile, parse_timestamp

SUPPORTS_TABLE = "user_supports"


class SupportStatus(str, Enum):
	NONE = "none"
	SUPPORTING = "supporting"
	SUPPORTED_BY = "supported_by"


@dataclass(slots=True)
class Support:
	supporter_id: str
	supported_id: str
	created_at: Optional[datetime] = None

	@classmethod
	def from_record(cls, record: Mapping[str, Any]) -> "Support":
		return cls(
			supporter_id=str(record["supporter_id"]),
			supported_id=str(record["supported_id"]),
			created_at=parse_timestamp(record.get("created_at")),
		)

	def to_dict(self) -> dict[str, Any]:
		return {
			"supporter_id": self.supporter_id,
			"supported_id": self.supported_id,
			"created_at": self.created_at.isoformat() if self.created_at else None,
		}


@dataclass(slots=True)
class SupportEdge:
	"""One row of a supporters/supporting list with the other user's profile."""

	user_id: str
	profile: Optional[UserProfile]
	since: Optional[datetime]

	def to_dict(self) -> dict[str, Any]:
		return {
			"user_id": self.user_id,
			"full_name": self.profile.full_name if self.profile else None,
			"avatar_url": self.profile.avatar_url if self.profile else None,
			"since": self.since.isoformat() if self.since else None,
		}
