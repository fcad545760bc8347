"""Central registry for Prometheus metrics used across the backend."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram


REQUEST_COUNTER = Counter(
	"overlooked_http_requests_total",
	"Total HTTP requests processed",
	["route", "method", "status"],
)

REQUEST_LATENCY = Histogram(
	"overlooked_http_request_duration_seconds",
	"HTTP request latency in seconds",
	["route", "method"],
	buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0),
)

SOCKET_CLIENTS = Gauge(
	"overlooked_socketio_clients",
	"Active Socket.IO clients per namespace",
	["namespace"],
)

SOCKET_EVENTS = Counter(
	"overlooked_socketio_events_total",
	"Socket.IO events emitted per namespace",
	["namespace", "event"],
)

CHAT_MESSAGES_SENT = Counter(
	"overlooked_chat_messages_sent_total",
	"Chat messages persisted",
	["kind"],
)

CHAT_SEND_FAILURES = Counter(
	"overlooked_chat_send_failures_total",
	"Chat message inserts that failed",
)

REALTIME_EVENTS = Counter(
	"overlooked_realtime_events_total",
	"Change-feed events applied to in-memory views",
	["view", "table"],
)

REALTIME_DUPLICATES = Counter(
	"overlooked_realtime_duplicates_total",
	"Realtime message events already present in a room",
)

CONVERSATION_LIST_REFRESH = Counter(
	"overlooked_conversation_list_refresh_total",
	"Conversation list full refreshes",
	["result"],
)

MEMBERSHIP_CACHE = Counter(
	"overlooked_membership_cache_total",
	"Membership tier cache lookups",
	["result"],
)

JOB_APPLICATIONS = Counter(
	"overlooked_job_applications_total",
	"Job application attempts",
	["result"],
)

SUBMISSION_VOTES = Counter(
	"overlooked_submission_votes_total",
	"Submission vote toggles",
	["result"],
)

STORAGE_CLEANUP_FAILURES = Counter(
	"overlooked_storage_cleanup_failures_total",
	"Best-effort storage removals that failed",
	["bucket"],
)

XP_GRANT_FAILURES = Counter(
	"overlooked_xp_grant_failures_total",
	"Best-effort XP grants that failed",
	["reason"],
)


def observe_request(route: str, method: str, status: int, elapsed_seconds: float) -> None:
	REQUEST_COUNTER.labels(route=route, method=method, status=str(status)).inc()
	REQUEST_LATENCY.labels(route=route, method=method).observe(elapsed_seconds)


def socket_connected(namespace: str) -> None:
	SOCKET_CLIENTS.labels(namespace=namespace).inc()


def socket_disconnected(namespace: str) -> None:
	SOCKET_CLIENTS.labels(namespace=namespace).dec()


def socket_event(namespace: str, event: str) -> None:
	SOCKET_EVENTS.labels(namespace=namespace, event=event).inc()


def inc_chat_send(kind: str) -> None:
	CHAT_MESSAGES_SENT.labels(kind=kind).inc()


def inc_chat_send_failure() -> None:
	CHAT_SEND_FAILURES.inc()


def inc_realtime_event(view: str, table: str) -> None:
	REALTIME_EVENTS.labels(view=view, table=table).inc()


def inc_realtime_duplicate() -> None:
	REALTIME_DUPLICATES.inc()


def inc_list_refresh(result: str) -> None:
	CONVERSATION_LIST_REFRESH.labels(result=result).inc()


def inc_membership_cache(result: str) -> None:
	MEMBERSHIP_CACHE.labels(result=result).inc()


def inc_job_application(result: str) -> None:
	JOB_APPLICATIONS.labels(result=result).inc()


def inc_submission_vote(result: str) -> None:
	SUBMISSION_VOTES.labels(result=result).inc()


def inc_storage_cleanup_failure(bucket: str) -> None:
	STORAGE_CLEANUP_FAILURES.labels(bucket=bucket).inc()


def inc_xp_grant_failure(reason: str) -> None:
	XP_GRANT_FAILURES.labels(reason=reason).inc()
