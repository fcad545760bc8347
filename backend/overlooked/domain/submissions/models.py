"""Challenge submissions and video references."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, List, Mapping, Optional, Tuple

from overlooked.domain.users import parse_timestamp

SUBMISSIONS_TABLE = "submissions"
SUBMISSION_COLUMNS = "id, user_id, title, word, youtube_url, storage_path, thumbnail_url, votes, created_at"
FILMS_BUCKET = "films"
STREAK_KEYS = ("streak", "get_monthly_submission_streak")
VOTES_TABLE = "user_votes"

_YOUTUBE_ID = re.compile(
	r"(?:youtube\.com/(?:[^/]+/.+/|(?:v|embed|shorts)/|.*[?&]v=)|youtu\.be/)([^\"&?/\s]{11})"
)


def extract_youtube_id(url: Optional[str]) -> Optional[str]:
	"""Eleven-character video id from any common YouTube link form."""
	if not url:
		return None
	match = _YOUTUBE_ID.search(url.strip())
	return match.group(1) if match else None


def video_upload_path(video_id: str) -> str:
	return f"uploads/{video_id}/source.mp4"


def normalise_streak(value: Any) -> int:
	"""The streak procedure may answer with a number, a string, a row list or an object."""
	if isinstance(value, list):
		value = value[0] if value else None
	if isinstance(value, Mapping):
		for key in STREAK_KEYS:
			candidate = value.get(key)
			if isinstance(candidate, (int, float)) and not isinstance(candidate, bool):
				value = candidate
				break
		else:
			return 0
	if isinstance(value, bool):
		return 0
	if isinstance(value, (int, float)):
		return int(value) if math.isfinite(value) else 0
	if isinstance(value, str):
		try:
			return int(value.strip())
		except ValueError:
			return 0
	return 0


@dataclass(slots=True)
class Submission:
	id: Any
	user_id: str
	title: Optional[str] = None
	word: Optional[str] = None
	youtube_url: Optional[str] = None
	storage_path: Optional[str] = None
	thumbnail_url: Optional[str] = None
	votes: int = 0
	created_at: Optional[datetime] = None

	@classmethod
	def from_record(cls, record: Mapping[str, Any]) -> "Submission":
		return cls(
			id=record["id"],
			user_id=str(record["user_id"]),
			title=record.get("title"),
			word=record.get("word"),
			youtube_url=record.get("youtube_url"),
			storage_path=record.get("storage_path"),
			thumbnail_url=record.get("thumbnail_url"),
			votes=int(record.get("votes") or 0),
			created_at=parse_timestamp(record.get("created_at")),
		)

	@property
	def youtube_id(self) -> Optional[str]:
		return extract_youtube_id(self.youtube_url)

	def stored_objects(self) -> List[str]:
		"""Paths in the films bucket owned by this submission."""
		paths: List[str] = []
		for value in (self.storage_path, self.thumbnail_url):
			if value and "://" not in value and value not in paths:
				paths.append(value)
		return paths

	def to_dict(self) -> dict[str, Any]:
		return {
			"id": self.id,
			"user_id": self.user_id,
			"title": self.title,
			"word": self.word,
			"youtube_url": self.youtube_url,
			"youtube_id": self.youtube_id,
			"storage_path": self.storage_path,
			"thumbnail_url": self.thumbnail_url,
			"votes": self.votes,
			"created_at": self.created_at.isoformat() if self.created_at else None,
		}


class FeaturedSort(str, Enum):
	NEWEST = "newest"
	OLDEST = "oldest"
	MOST_VOTED = "most_voted"
	LEAST_VOTED = "least_voted"


def month_window(now: datetime) -> Tuple[datetime, datetime]:
	"""Start of ``now``'s calendar month and start of the next one, same timezone."""
	start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
	if start.month == 12:
		return start, start.replace(year=start.year + 1, month=1)
	return start, start.replace(month=start.month + 1)


@dataclass(slots=True)
class VoteResult:
	submission_id: Any
	voted: bool
	votes: int
	votes_left: int

	def to_dict(self) -> dict[str, Any]:
		return {
			"submission_id": self.submission_id,
			"voted": self.voted,
			"votes": self.votes,
			"votes_left": self.votes_left,
		}
