"""Attachment helpers for chat messages."""

from __future__ import annotations

import mimetypes
from datetime import datetime
from typing import Optional

from overlooked.domain.chat.models import FILE_MARKER_PREFIX, IMAGE_PREFIX

CHAT_UPLOADS_BUCKET = "chat-uploads"

_IMAGE_EXTENSIONS = {
	"image/jpeg": "jpg",
	"image/jpg": "jpg",
	"image/png": "png",
	"image/webp": "webp",
	"image/gif": "gif",
	"image/heic": "heic",
}


def is_image(mime_type: Optional[str]) -> bool:
	return bool(mime_type) and str(mime_type).lower().startswith("image/")


def image_extension(mime_type: Optional[str], file_name: Optional[str] = None) -> str:
	mime = (mime_type or "").lower()
	if mime in _IMAGE_EXTENSIONS:
		return _IMAGE_EXTENSIONS[mime]
	if file_name and "." in file_name:
		suffix = file_name.rsplit(".", 1)[-1].lower()
		if suffix.isalnum():
			return suffix
	guessed = mimetypes.guess_extension(mime) if mime else None
	return guessed.lstrip(".") if guessed else "jpg"


def upload_path(conversation_id: str, user_id: str, at: datetime, extension: str) -> str:
	"""``<conversation>/<user>/<epoch ms>.<ext>`` inside the chat uploads bucket."""
	millis = int(at.timestamp() * 1000)
	return f"{conversation_id}/{user_id}/{millis}.{extension}"


def image_content(url: str) -> str:
	return f"{IMAGE_PREFIX}{url}"


def file_marker(file_name: str) -> str:
	name = (file_name or "").strip() or "file"
	return f"{FILE_MARKER_PREFIX}{name}"
