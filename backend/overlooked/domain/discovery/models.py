"""City models and flag helpers."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional

from overlooked.domain.users import UserProfile

FLAG_CDN_URL = "https://flagcdn.com/w80/{code}.png"
_REGIONAL_INDICATOR_OFFSET = 127397


def flag_emoji(country_code: Optional[str]) -> str:
	if not country_code:
		return ""
	code = country_code.strip().upper()
	if len(code) != 2 or not code.isalpha():
		return ""
	return "".join(chr(_REGIONAL_INDICATOR_OFFSET + ord(char)) for char in code)


def flag_uri(country_code: Optional[str]) -> Optional[str]:
	if not country_code or not country_code.strip():
		return None
	return FLAG_CDN_URL.format(code=country_code.strip().lower())


@dataclass(slots=True)
class City:
	id: Any
	name: str
	country_code: Optional[str] = None

	@classmethod
	def from_record(cls, record: Mapping[str, Any]) -> "City":
		return cls(
			id=record["id"],
			name=str(record.get("name") or ""),
			country_code=record.get("country_code"),
		)

	@property
	def label(self) -> str:
		flag = flag_emoji(self.country_code)
		parts = [part for part in (flag, self.name) if part]
		label = " ".join(parts)
		return f"{label}, {self.country_code}" if self.country_code else label

	def to_dict(self) -> dict[str, Any]:
		return {
			"id": self.id,
			"name": self.name,
			"country_code": self.country_code,
			"label": self.label,
			"flag_uri": flag_uri(self.country_code),
		}


@dataclass(slots=True)
class CityDirectory:
	city: City
	creatives: List[UserProfile] = field(default_factory=list)
	jobs: List[dict[str, Any]] = field(default_factory=list)

	def to_dict(self) -> dict[str, Any]:
		return {
			"city": self.city.to_dict(),
			"creatives": [user.to_dict() for user in self.creatives],
			"jobs": list(self.jobs),
		}
