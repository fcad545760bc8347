"""Ranking helpers for city search."""

from __future__ import annotations

from typing import Any, Iterable, List, Optional, Tuple

from overlooked.domain.discovery.models import City

EXACT = 0
PREFIX = 1
SUBSTRING = 2
OTHER = 3


def match_score(name: str, term: str) -> int:
	"""Lower is better: exact, then prefix, then substring, then anything else."""
	folded = name.casefold()
	needle = term.strip().casefold()
	if not needle:
		return OTHER
	if folded == needle:
		return EXACT
	if folded.startswith(needle):
		return PREFIX
	if needle in folded:
		return SUBSTRING
	return OTHER


def _sort_key(city: City, term: str) -> Tuple[int, str, str, str]:
	# str(id) keeps the key total when ids mix ints and strings.
	return (match_score(city.name, term), city.name.casefold(), city.name, str(city.id))


def rank_cities(cities: Iterable[City], term: str, selected_id: Optional[Any] = None) -> List[City]:
	"""Order cities by match quality with the selected city pinned first."""
	ranked = sorted(cities, key=lambda city: _sort_key(city, term))
	if selected_id is None:
		return ranked
	pinned = [city for city in ranked if city.id == selected_id]
	if not pinned:
		return ranked
	return pinned[:1] + [city for city in ranked if city is not pinned[0]]
