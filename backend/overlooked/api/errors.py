"""Global error handlers ensuring request_id is included in JSON responses."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from overlooked.infra.errors import DataAccessError, ErrorKind
from overlooked.obs import logging as obs_logging

logger = logging.getLogger(__name__)

STATUS_BY_KIND = {
	ErrorKind.NOT_SIGNED_IN: 401,
	ErrorKind.NOT_FOUND: 404,
	ErrorKind.CONFLICT: 409,
	ErrorKind.FORBIDDEN: 403,
	ErrorKind.INVALID: 400,
	ErrorKind.TRANSIENT: 503,
	ErrorKind.BACKEND: 502,
}


def get_request_id(request: Request, default: str = "unknown") -> str:
	rid = getattr(request.state, "request_id", None) or obs_logging.current_request_id()
	return rid or default


def install_error_handlers(app: FastAPI) -> None:
	@app.exception_handler(DataAccessError)
	async def data_access_handler(request: Request, exc: DataAccessError):  # type: ignore[override]
		rid = get_request_id(request)
		status_code = STATUS_BY_KIND.get(exc.kind, 500)
		if status_code >= 500:
			logger.warning("data access failure", extra={"reason": exc.reason, "kind": exc.kind.value})
		payload = {"detail": exc.reason, "kind": exc.kind.value, "request_id": rid}
		return JSONResponse(status_code=status_code, content=payload, headers={"X-Request-Id": rid})

	@app.exception_handler(StarletteHTTPException)
	async def http_exc_handler(request: Request, exc: StarletteHTTPException):  # type: ignore[override]
		rid = get_request_id(request)
		payload = {"detail": exc.detail, "request_id": rid}
		return JSONResponse(status_code=exc.status_code, content=payload, headers=getattr(exc, "headers", None))

	@app.exception_handler(RequestValidationError)
	async def validation_exc_handler(request: Request, exc: RequestValidationError):  # type: ignore[override]
		rid = get_request_id(request)
		payload = {"detail": "validation_error", "errors": jsonable_encoder(exc.errors()), "request_id": rid}
		return JSONResponse(status_code=422, content=payload)
