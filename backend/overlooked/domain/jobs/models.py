"""Job postings and applications."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Optional

from overlooked.domain.users import UserProfile, parse_timestamp
from overlooked.infra.errors import Conflict

JOBS_TABLE = "jobs"
APPLICATIONS_TABLE = "applications"
JOB_COLUMNS = (
	"id, user_id, role_id, city_id, description, type, currency, rate, amount, time, "
	"remote, is_closed, closed_at, created_at"
)


class JobType(str, Enum):
	PAID = "Paid"
	FREE = "Free"


class AlreadyApplied(Conflict):
	reason = "already_applied"


@dataclass(slots=True)
class Job:
	id: Any
	user_id: str
	role_id: Optional[Any] = None
	city_id: Optional[Any] = None
	description: Optional[str] = None
	type: JobType = JobType.FREE
	currency: Optional[str] = None
	rate: Optional[str] = None
	amount: Optional[str] = None
	time: Optional[str] = None
	remote: bool = False
	is_closed: bool = False
	closed_at: Optional[datetime] = None
	created_at: Optional[datetime] = None

	@classmethod
	def from_record(cls, record: Mapping[str, Any]) -> "Job":
		try:
			job_type = JobType(record.get("type") or JobType.FREE.value)
		except ValueError:
			job_type = JobType.FREE
		return cls(
			id=record["id"],
			user_id=str(record["user_id"]),
			role_id=record.get("role_id"),
			city_id=record.get("city_id"),
			description=record.get("description"),
			type=job_type,
			currency=record.get("currency"),
			rate=record.get("rate"),
			amount=record.get("amount"),
			time=record.get("time"),
			remote=bool(record.get("remote")),
			is_closed=bool(record.get("is_closed")),
			closed_at=parse_timestamp(record.get("closed_at")),
			created_at=parse_timestamp(record.get("created_at")),
		)

	@property
	def is_paid(self) -> bool:
		return self.type is JobType.PAID

	def compensation(self) -> Optional[str]:
		"""``€300 • per day`` style label for paid jobs."""
		if not self.is_paid:
			return None
		label = f"{self.currency or ''}{self.amount or ''}"
		if self.rate:
			label = f"{label} • {self.rate}"
		return label or None

	def to_dict(self) -> dict[str, Any]:
		return {
			"id": self.id,
			"user_id": self.user_id,
			"role_id": self.role_id,
			"city_id": self.city_id,
			"description": self.description,
			"type": self.type.value,
			"currency": self.currency,
			"rate": self.rate,
			"amount": self.amount,
			"time": self.time,
			"remote": self.remote,
			"is_closed": self.is_closed,
			"closed_at": self.closed_at.isoformat() if self.closed_at else None,
			"created_at": self.created_at.isoformat() if self.created_at else None,
			"compensation": self.compensation(),
		}


@dataclass(slots=True)
class JobDraft:
	role_id: Any
	description: Optional[str] = None
	city_id: Optional[Any] = None
	type: JobType = JobType.FREE
	currency: Optional[str] = None
	rate: Optional[str] = None
	amount: Optional[str] = None
	time: Optional[str] = None
	remote: bool = False

	def to_record(self, owner_id: str) -> dict[str, Any]:
		paid = self.type is JobType.PAID
		return {
			"user_id": owner_id,
			"role_id": self.role_id,
			"city_id": self.city_id,
			"description": self.description,
			"type": self.type.value,
			"currency": self.currency if paid else None,
			"rate": self.rate if paid else None,
			"amount": self.amount if paid else None,
			"time": self.time,
			"remote": bool(self.remote),
			"is_closed": False,
		}


@dataclass(slots=True)
class Application:
	id: Any
	job_id: Any
	applicant_id: str
	applied_at: Optional[datetime] = None
	applicant: Optional[UserProfile] = field(default=None)

	@classmethod
	def from_record(cls, record: Mapping[str, Any]) -> "Application":
		return cls(
			id=record.get("id"),
			job_id=record["job_id"],
			applicant_id=str(record["applicant_id"]),
			applied_at=parse_timestamp(record.get("applied_at")),
		)

	def to_dict(self) -> dict[str, Any]:
		return {
			"id": self.id,
			"job_id": self.job_id,
			"applicant_id": self.applicant_id,
			"applied_at": self.applied_at.isoformat() if self.applied_at else None,
			"applicant": self.applicant.to_dict() if self.applicant else None,
		}
