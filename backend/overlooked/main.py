"""FastAPI application entrypoint."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import socketio
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from overlooked.api import chat, discovery, jobs, membership, ops, submissions, support, xp
from overlooked.api.errors import install_error_handlers
from overlooked.domain.chat.sockets import ChatNamespace
from overlooked.infra import postgres
from overlooked.infra.providers import close_backend, get_backend
from overlooked.obs import init as obs_init
from overlooked.services import set_services
from overlooked.settings import settings

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
	if settings.data_backend == "postgres":
		await postgres.init_pool()
	backend = get_backend()
	logger.info("overlooked api starting", extra={"backend": type(backend).__name__})
	try:
		yield
	finally:
		set_services(None)
		await close_backend()


app = FastAPI(title="Overlooked API", lifespan=lifespan)
install_error_handlers(app)

allow_origins = list(getattr(settings, "cors_allow_origins", []))
if not allow_origins:
	allow_origins = ["http://localhost:8081", "http://localhost:19006"] if settings.is_dev() else []

# Starlette disallows wildcard '*' with allow_credentials=True.
if "*" in allow_origins and not settings.is_dev():
	allow_origins = [origin for origin in allow_origins if origin != "*"]

app.add_middleware(
	CORSMiddleware,
	allow_origins=allow_origins,
	allow_credentials=True,
	allow_methods=["*"],
	allow_headers=["*"],
)

sio = socketio.AsyncServer(async_mode="asgi", cors_allowed_origins=allow_origins)
sio.register_namespace(ChatNamespace())
socket_app = socketio.ASGIApp(sio, other_asgi_app=app)
obs_init(app)

app.include_router(chat.router, tags=["chat"])
app.include_router(discovery.router, tags=["discovery"])
app.include_router(membership.router, tags=["membership"])
app.include_router(support.router, tags=["support"])
app.include_router(jobs.router, tags=["jobs"])
app.include_router(submissions.router, tags=["submissions"])
app.include_router(xp.router, tags=["xp"])
app.include_router(ops.router, tags=["ops"])
