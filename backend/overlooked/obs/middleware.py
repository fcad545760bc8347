"""Request middleware: request ids, latency metrics and one log line per request."""

from __future__ import annotations

import time
from uuid import uuid4

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from overlooked.obs import logging as obs_logging
from overlooked.obs import metrics
from overlooked.settings import settings

REQUEST_ID_HEADER = "X-Request-Id"
# Probes are counted but not logged.
QUIET_PATHS = frozenset({"/health/live", "/health/ready", "/metrics"})


def _route_template(request: Request) -> str:
	route = request.scope.get("route")
	return getattr(route, "path", None) or request.url.path


class ObservabilityMiddleware(BaseHTTPMiddleware):
	def __init__(self, app, *, enabled: bool = True) -> None:
		super().__init__(app)
		self._enabled = enabled
		self._logger = obs_logging.get_logger("overlooked.http")

	async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
		if not settings.obs_enabled or not self._enabled:
			return await call_next(request)

		request_id = request.headers.get(REQUEST_ID_HEADER) or uuid4().hex
		request.state.request_id = request_id
		start = time.perf_counter()
		status_code = 500
		with obs_logging.log_context(request_id=request_id, user_id=request.headers.get("X-User-Id")):
			try:
				response = await call_next(request)
				status_code = response.status_code
			except Exception:
				self._logger.exception("http_request_error", extra={"method": request.method, "path": request.url.path})
				raise
			finally:
				# The route is only resolved once the router has run.
				route = _route_template(request)
				elapsed = time.perf_counter() - start
				metrics.observe_request(route, request.method, status_code, elapsed)
				if request.url.path not in QUIET_PATHS:
					self._logger.info(
						"http_request",
						extra={
							"route": route,
							"method": request.method,
							"status": status_code,
							"latency_ms": round(elapsed * 1000, 3),
						},
					)
		response.headers.setdefault(REQUEST_ID_HEADER, request_id)
		return response


def install(app, *, enabled: bool = True) -> None:
	app.add_middleware(ObservabilityMiddleware, enabled=enabled)
