"""Server procedures for the in-memory backend.

Deployments define these as SQL functions (see ``infra/migrations``); the
in-memory versions keep the same names, parameters and return shapes.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import TYPE_CHECKING, Any, Optional

from overlooked.infra.errors import Forbidden, InvalidRequest, NotFound

if TYPE_CHECKING:  # pragma: no cover
	from overlooked.infra.memory import InMemoryBackend

XP_PER_LEVEL = 500
CASCADE_TABLES = ("user_votes", "submission_comments")


async def join_city_group(backend: "InMemoryBackend", city_id_input: Any, p_user_id: str) -> str:
	if city_id_input in (None, "") or not p_user_id:
		raise InvalidRequest("city_and_user_required")
	existing = await (
		backend.table("conversations")
		.select("*")
		.eq("is_city_group", True)
		.eq("city_id", city_id_input)
		.order("created_at")
		.maybe_single()
	)
	if existing is None:
		city = await backend.table("cities").select("id, name").eq("id", city_id_input).maybe_single()
		rows = await backend.insert(
			"conversations",
			{
				"is_group": True,
				"is_city_group": True,
				"city_id": city_id_input,
				"label": (city or {}).get("name"),
				"participant_ids": [p_user_id],
				"last_message_content": None,
				"last_message_sent_at": None,
			},
		)
		return str(rows[0]["id"])
	participants = list(existing.get("participant_ids") or [])
	if p_user_id not in participants:
		participants.append(p_user_id)
		await backend.table("conversations").update({"participant_ids": participants}).eq("id", existing["id"]).execute()
	return str(existing["id"])


async def add_xp(backend: "InMemoryBackend", p_user_id: str, p_amount: int, p_reason: Optional[str] = None) -> int:
	user = await backend.table("users").select("id, xp, level").eq("id", p_user_id).maybe_single()
	if user is None:
		raise NotFound("user_not_found")
	xp = int(user.get("xp") or 0) + int(p_amount)
	level = max(int(user.get("level") or 1), 1 + xp // XP_PER_LEVEL)
	await backend.table("users").update({"xp": xp, "level": level}).eq("id", p_user_id).execute()
	await backend.insert("xp_events", {"user_id": p_user_id, "amount": int(p_amount), "reason": p_reason})
	return xp


async def has_workshop_access(backend: "InMemoryBackend", p_user_id: str, p_product_id: str) -> bool:
	rows = await (
		backend.table("workshop_purchases")
		.select("id")
		.eq("user_id", p_user_id)
		.eq("product_id", p_product_id)
		.limit(1)
		.execute()
	)
	return bool(rows)


async def delete_submission(backend: "InMemoryBackend", p_submission_id: str, p_user_id: str) -> bool:
	submission = await backend.table("submissions").select("id, user_id").eq("id", p_submission_id).maybe_single()
	if submission is None:
		raise NotFound("submission_not_found")
	if submission.get("user_id") != p_user_id:
		raise Forbidden("not_submission_owner")
	for table in CASCADE_TABLES:
		await backend.table(table).delete().eq("submission_id", p_submission_id).execute()
	await backend.table("submissions").delete().eq("id", p_submission_id).execute()
	return True


async def upgrade_tier(backend: "InMemoryBackend", p_user_id: str) -> bool:
	rows = await backend.table("users").update({"tier": "pro", "is_premium": True}).eq("id", p_user_id).execute()
	if not rows:
		raise NotFound("user_not_found")
	return True


async def downgrade_to_free(backend: "InMemoryBackend", p_user_id: str) -> bool:
	rows = await (
		backend.table("users")
		.update({"tier": "free", "is_premium": False, "premium_access_expires_at": None})
		.eq("id", p_user_id)
		.execute()
	)
	if not rows:
		raise NotFound("user_not_found")
	return True


def _month_index(value: Any) -> Optional[int]:
	if isinstance(value, str):
		try:
			value = datetime.fromisoformat(value)
		except ValueError:
			return None
	if isinstance(value, (datetime, date)):
		return value.year * 12 + value.month - 1
	return None


async def get_monthly_submission_streak(backend: "InMemoryBackend", p_user_id: str) -> int:
	"""Consecutive months with a submission, ending this month or last month."""
	rows = await backend.table("submissions").select("created_at").eq("user_id", p_user_id).execute()
	months = {index for index in (_month_index(row.get("created_at")) for row in rows) if index is not None}
	if not months:
		return 0
	now = datetime.now(timezone.utc)
	cursor = now.year * 12 + now.month - 1
	if cursor not in months:
		cursor -= 1
	streak = 0
	while cursor in months:
		streak += 1
		cursor -= 1
	return streak


def register_defaults(backend: "InMemoryBackend") -> None:
	backend.register_rpc("join_city_group", join_city_group)
	backend.register_rpc("add_xp", add_xp)
	backend.register_rpc("has_workshop_access", has_workshop_access)
	backend.register_rpc("delete_submission", delete_submission)
	backend.register_rpc("upgrade_tier", upgrade_tier)
	backend.register_rpc("downgrade_to_free", downgrade_to_free)
	backend.register_rpc("get_monthly_submission_streak", get_monthly_submission_streak)
