"""Authentication helpers for FastAPI endpoints and domain services.

Bearer JWTs are always honoured; ``X-User-Id`` headers are accepted only in
development and test environments.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from overlooked.infra import jwt as jwt_helper
from overlooked.infra.errors import NotSignedIn
from overlooked.settings import settings


@dataclass(slots=True)
class AuthenticatedUser:
	id: str
	email: Optional[str] = None
	role: str = "authenticated"
	session_id: Optional[str] = None


_bearer_scheme = HTTPBearer(auto_error=False)


def verify_access_jwt(token: str) -> AuthenticatedUser:
	try:
		payload = jwt_helper.decode_access(token)
	except Exception:
		raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_token")
	email = payload.get("email")
	session_id = payload.get("session_id") or payload.get("sid")
	return AuthenticatedUser(
		id=str(payload["sub"]).strip(),
		email=str(email) if email else None,
		role=str(payload.get("role") or "authenticated"),
		session_id=str(session_id) if session_id else None,
	)


async def get_current_user(
	x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
	credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> AuthenticatedUser:
	"""Resolve the authenticated user or fail with 401."""
	if credentials and credentials.scheme.lower() == "bearer":
		return verify_access_jwt(credentials.credentials)
	if settings.is_dev() and x_user_id:
		return AuthenticatedUser(id=x_user_id.strip())
	raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="not_signed_in")


async def get_optional_user(
	x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
	credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> Optional[AuthenticatedUser]:
	if credentials and credentials.scheme.lower() == "bearer":
		return verify_access_jwt(credentials.credentials)
	if settings.is_dev() and x_user_id:
		return AuthenticatedUser(id=x_user_id.strip())
	return None


def require_signed_in(user: Union[AuthenticatedUser, str, None]) -> str:
	"""Return the caller's user id or raise :class:`NotSignedIn`."""
	if isinstance(user, AuthenticatedUser):
		user = user.id
	if not user or not str(user).strip():
		raise NotSignedIn()
	return str(user).strip()
