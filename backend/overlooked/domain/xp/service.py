"""XP grants and level progress."""

from __future__ import annotations

import logging
from typing import Optional

from overlooked.domain.xp.models import (
    DEFAULT_BANNER_COLOR,
    DEFAULT_LEVEL_TITLE,
    XP_AMOUNTS,
    XPProgress,
    XPReason,
    level_progress,
)
from overlooked.infra.backend import DataBackend
from overlooked.infra.errors import DataAccessError, NotFound
from overlooked.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)


class XPService:
    """Grants XP through the ``add_xp`` server procedure."""

    def __init__(self, backend: DataBackend) -> None:
        self._backend = backend

    async def grant(self, user_id: Optional[str], amount: int, reason: str) -> bool:
        """Return False when there is nothing to grant; backend failures propagate."""
        if not user_id or not amount:
            return False
        await self._backend.rpc(
            "add_xp",
            {"p_user_id": user_id, "p_amount": int(amount), "p_reason": reason},
        )
        return True

    async def award(self, user_id: Optional[str], reason: XPReason) -> bool:
        return await self.grant(user_id, XP_AMOUNTS[reason], reason.value)

    async def award_best_effort(self, user_id: Optional[str], reason: XPReason) -> bool:
        try:
            return await self.award(user_id, reason)
        except DataAccessError as exc:
            obs_metrics.inc_xp_grant_failure(reason.value)
            logger.warning(
                "xp grant failed",
                extra={"user": user_id, "reason": reason.value, "error": exc.reason},
            )
            return False

    async def get_progress(self, user_id: str) -> XPProgress:
        row = await (
            self._backend.table("users")
            .select("id, xp, level, level_title, banner_color")
            .eq("id", user_id)
            .maybe_single()
        )
        if row is None:
            raise NotFound("user_not_found")
        xp = int(row.get("xp") or 0)
        level = int(row.get("level") or 1)
        return XPProgress(
            user_id=str(row["id"]),
            xp=xp,
            level=level,
            level_title=row.get("level_title") or DEFAULT_LEVEL_TITLE,
            banner_color=row.get("banner_color") or DEFAULT_BANNER_COLOR,
            progress=level_progress(xp, level),
        )
