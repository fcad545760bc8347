"""Process-wide service container wired to the active data backend."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Tuple

from overlooked.domain.chat.service import ChatService
from overlooked.domain.discovery.service import DiscoveryService
from overlooked.domain.jobs.service import JobService
from overlooked.domain.membership.models import Tier
from overlooked.domain.membership.service import MembershipService
from overlooked.domain.submissions.service import SubmissionService
from overlooked.domain.support.service import SupportService
from overlooked.domain.xp.service import XPService
from overlooked.infra.backend import DataBackend
from overlooked.infra.cache import TTLCache
from overlooked.infra.providers import get_backend


def _utcnow() -> datetime:
	return datetime.now(timezone.utc)


@dataclass(slots=True)
class Services:
	backend: DataBackend
	chat: ChatService
	discovery: DiscoveryService
	membership: MembershipService
	support: SupportService
	jobs: JobService
	submissions: SubmissionService
	xp: XPService


def build_services(
	backend: DataBackend,
	*,
	now: Callable[[], datetime] = _utcnow,
	membership_cache: Optional[TTLCache[str, Tier]] = None,
	url_cache: Optional[TTLCache[Tuple[str, str], str]] = None,
) -> Services:
	xp = XPService(backend)
	membership = MembershipService(backend, cache=membership_cache, now=now)
	chat = ChatService(backend, now=now)
	return Services(
		backend=backend,
		chat=chat,
		discovery=DiscoveryService(backend, chat),
		membership=membership,
		support=SupportService(backend),
		jobs=JobService(backend, membership, xp, now=now),
		submissions=SubmissionService(backend, membership, xp, url_cache=url_cache, now=now),
		xp=xp,
	)


_services: Optional[Services] = None


def get_services() -> Services:
	global _services
	if _services is None:
		_services = build_services(get_backend())
	return _services


def set_services(services: Optional[Services]) -> None:
	global _services
	_services = services
