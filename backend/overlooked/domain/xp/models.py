"""Domain models for XP and levels."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class XPReason(str, Enum):
    CHALLENGE_SUBMISSION = "challenge_submission"
    CHALLENGE_WIN = "challenge_win"
    JOB_POSTED = "job_posted"
    JOB_APPLIED = "job_applied"
    VOTE_SUBMISSION = "vote_submission"


XP_AMOUNTS = {
    XPReason.CHALLENGE_SUBMISSION: 300,
    XPReason.CHALLENGE_WIN: 500,
    XPReason.JOB_POSTED: 100,
    XPReason.JOB_APPLIED: 50,
    XPReason.VOTE_SUBMISSION: 5,
}

# Each level is a flat 500 XP apart; titles/banners are owned by the database.
XP_PER_LEVEL = 500
DEFAULT_LEVEL_TITLE = "Background Pixel"
DEFAULT_BANNER_COLOR = "#FFEDE4"


@dataclass(slots=True)
class LevelProgress:
    level: int
    next_level: int
    current_level_min_xp: int
    next_level_min_xp: int
    progress: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "level": self.level,
            "next_level": self.next_level,
            "current_level_min_xp": self.current_level_min_xp,
            "next_level_min_xp": self.next_level_min_xp,
            "progress": self.progress,
        }


def level_progress(xp: int, level: int) -> LevelProgress:
    """Progress from the start of ``level`` to the start of the next one, clamped to [0, 1]."""
    safe_level = level if level > 0 else 1
    current_min = (safe_level - 1) * XP_PER_LEVEL
    next_min = safe_level * XP_PER_LEVEL
    span = (next_min - current_min) or 1
    raw = (xp - current_min) / span
    return LevelProgress(
        level=safe_level,
        next_level=safe_level + 1,
        current_level_min_xp=current_min,
        next_level_min_xp=next_min,
        progress=max(0.0, min(1.0, raw)),
    )


@dataclass(slots=True)
class XPProgress:
    user_id: str
    xp: int
    level: int
    level_title: str
    banner_color: str
    progress: LevelProgress

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "xp": self.xp,
            "level": self.level,
            "level_title": self.level_title,
            "banner_color": self.banner_color,
            **{key: value for key, value in self.progress.to_dict().items() if key != "level"},
        }
