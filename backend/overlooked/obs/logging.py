"""JSON log records carrying request, user and chat context."""

from __future__ import annotations

import json
import logging
import random
from contextlib import contextmanager
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Mapping, Optional

from overlooked.settings import settings

_LOGGER_NAME = "overlooked"

# Context fields copied onto every record, in output order.
CONTEXT_FIELDS = ("request_id", "route", "user_id", "sid", "conversation_id")
_CONTEXT: Dict[str, ContextVar[Optional[str]]] = {
	name: ContextVar(f"obs_{name}", default=None) for name in CONTEXT_FIELDS
}

# Message text, drafts and credentials never reach the log stream.
_REDACTED_KEYS = ("token", "secret", "authorization", "password", "email", "content", "draft", "caption")

_MAX_STRING_LENGTH = 256
_MAX_COLLECTION_ITEMS = 10

# Attributes every LogRecord has; anything else came from ``extra=``.
_STANDARD_ATTRS = frozenset(logging.LogRecord("", 0, "", 0, "", None, None).__dict__) | {"message", "asctime"}


def bind_context(**fields: Optional[str]) -> Dict[str, Token]:
	"""Set the given context fields and return tokens for ``reset_context``."""
	tokens: Dict[str, Token] = {}
	for name, value in fields.items():
		if value is None:
			continue
		var = _CONTEXT.get(name)
		if var is None:
			raise KeyError(f"unknown log context field: {name}")
		tokens[name] = var.set(str(value))
	return tokens


def reset_context(tokens: Mapping[str, Token]) -> None:
	for name, token in tokens.items():
		_CONTEXT[name].reset(token)


@contextmanager
def log_context(**fields: Optional[str]) -> Iterator[None]:
	tokens = bind_context(**fields)
	try:
		yield
	finally:
		reset_context(tokens)


def current_request_id() -> Optional[str]:
	return _CONTEXT["request_id"].get()


def context_snapshot() -> Dict[str, str]:
	snapshot: Dict[str, str] = {}
	for name in CONTEXT_FIELDS:
		value = _CONTEXT[name].get()
		if value:
			snapshot[name] = value
	return snapshot


def _scrub(value: Any) -> Any:
	if isinstance(value, str):
		return value if len(value) <= _MAX_STRING_LENGTH else f"{value[:_MAX_STRING_LENGTH]}…"
	if isinstance(value, Mapping):
		items = list(value.items())
		scrubbed = {str(key): _scrub_field(str(key), nested) for key, nested in items[:_MAX_COLLECTION_ITEMS]}
		if len(items) > _MAX_COLLECTION_ITEMS:
			scrubbed["…"] = f"+{len(items) - _MAX_COLLECTION_ITEMS} keys"
		return scrubbed
	if isinstance(value, (list, tuple, set, frozenset)):
		values = [_scrub(item) for item in value]
		if len(values) > _MAX_COLLECTION_ITEMS:
			values = values[:_MAX_COLLECTION_ITEMS] + ["…"]
		return values
	return value


def _scrub_field(key: str, value: Any) -> Any:
	lowered = key.lower()
	if any(marker in lowered for marker in _REDACTED_KEYS):
		return "[redacted]"
	return _scrub(value)


class JSONLogFormatter(logging.Formatter):
	"""One JSON object per line: base fields, bound context, then ``extra`` fields."""

	def format(self, record: logging.LogRecord) -> str:  # noqa: A003 (match logging api)
		payload: Dict[str, Any] = {
			"ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
			"level": record.levelname.lower(),
			"msg": record.getMessage(),
			"logger": record.name,
			"service": settings.service_name,
			"env": settings.environment,
			"commit": settings.git_commit,
		}
		payload.update(context_snapshot())
		if record.exc_info:
			payload["exc_info"] = self.formatException(record.exc_info)
		for key, value in record.__dict__.items():
			if key in _STANDARD_ATTRS or key in payload:
				continue
			payload[key] = _scrub_field(key, value)
		return json.dumps(payload, separators=(",", ":"), default=str)


class InfoSamplingFilter(logging.Filter):
	"""Sample info records at ``obs_log_sampling_rate_info``; other levels always pass."""

	def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
		if record.levelno != logging.INFO:
			return True
		rate = max(0.0, min(1.0, settings.obs_log_sampling_rate_info))
		return rate >= 1.0 or random.random() < rate


def configure_logging() -> logging.Logger:
	root = logging.getLogger()
	root.handlers.clear()
	handler = logging.StreamHandler()
	handler.setFormatter(JSONLogFormatter())
	handler.addFilter(InfoSamplingFilter())
	root.addHandler(handler)
	root.setLevel(settings.obs_log_level)
	return logging.getLogger(_LOGGER_NAME)


def get_logger(name: Optional[str] = None) -> logging.Logger:
	return logging.getLogger(name or _LOGGER_NAME)
