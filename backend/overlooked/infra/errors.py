"""Error hierarchy shared by the data-access layer and domain services."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
	NOT_SIGNED_IN = "not_signed_in"
	NOT_FOUND = "not_found"
	CONFLICT = "conflict"
	FORBIDDEN = "forbidden"
	INVALID = "invalid"
	TRANSIENT = "transient"
	BACKEND = "backend"


class DataAccessError(Exception):
	"""Base class for every failure surfaced by backends and services."""

	kind: ErrorKind = ErrorKind.BACKEND
	reason: str = "backend_error"

	def __init__(self, reason: str | None = None, *, detail: str | None = None) -> None:
		super().__init__(detail or reason or self.reason)
		if reason:
			self.reason = reason
		self.detail = detail


class NotSignedIn(DataAccessError):
	kind = ErrorKind.NOT_SIGNED_IN
	reason = "not_signed_in"


class NotFound(DataAccessError):
	kind = ErrorKind.NOT_FOUND
	reason = "not_found"


class Conflict(DataAccessError):
	kind = ErrorKind.CONFLICT
	reason = "conflict"


class Forbidden(DataAccessError):
	kind = ErrorKind.FORBIDDEN
	reason = "forbidden"


class InvalidRequest(DataAccessError):
	kind = ErrorKind.INVALID
	reason = "invalid"


class TransientFailure(DataAccessError):
	"""The operation may succeed when retried later."""

	kind = ErrorKind.TRANSIENT
	reason = "transient"


class BackendFailure(DataAccessError):
	kind = ErrorKind.BACKEND
	reason = "backend_error"
