"""Pydantic schemas for the submissions API."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field


class SubmissionCreateRequest(BaseModel):
	title: str = Field(..., min_length=1, max_length=200)
	word: str = Field(..., min_length=1, max_length=80)
	youtube_url: str = Field(..., min_length=1, max_length=500)


class VideoUploadRequest(BaseModel):
	file_name: Optional[str] = Field(default=None, max_length=255)
