"""Pydantic schemas for the jobs API."""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field

from overlooked.domain.jobs.models import JobDraft, JobType


class JobCreateRequest(BaseModel):
	role_id: Any = Field(..., description="Creative role the job is for")
	description: Optional[str] = Field(default=None, max_length=4000)
	city_id: Optional[Any] = None
	type: JobType = JobType.FREE
	currency: Optional[str] = Field(default=None, max_length=8)
	rate: Optional[str] = Field(default=None, max_length=40)
	amount: Optional[str] = Field(default=None, max_length=40)
	time: Optional[str] = Field(default=None, max_length=120)
	remote: bool = False

	def to_draft(self) -> JobDraft:
		return JobDraft(
			role_id=self.role_id,
			description=self.description,
			city_id=self.city_id,
			type=self.type,
			currency=self.currency,
			rate=self.rate,
			amount=self.amount,
			time=self.time,
			remote=self.remote,
		)
