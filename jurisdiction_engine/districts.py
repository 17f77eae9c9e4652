"""District boundary resolver — congressional, state senate, state assembly.

Strategies, most authoritative first:
  1. Polygon: ZCTA overlap (or point-in-polygon) against district boundaries
  2. Reference table (pre-computed ZIP → district, with declared alternates)
  3. Districts reported by the geocoder
The primary district comes from the first strategy that yields a valid number.
Every other valid number seen for the chamber becomes an alternate.
"""

import logging
from collections import Counter
from typing import Dict, Iterable, List, Optional, Tuple

from .models import CHAMBERS, DistrictSet, GeocodedZip
from .reference import ReferenceEntry

logger = logging.getLogger(__name__)

# House apportionment after the 2020 census (118th/119th Congress)
CONGRESSIONAL_SEATS = {
    "AL": 7, "AK": 1, "AZ": 9, "AR": 4, "CA": 52, "CO": 8, "CT": 5, "DE": 1,
    "DC": 1, "FL": 28, "GA": 14, "HI": 2, "ID": 2, "IL": 17, "IN": 9, "IA": 4,
    "KS": 4, "KY": 6, "LA": 6, "ME": 2, "MD": 8, "MA": 9, "MI": 13, "MN": 8,
    "MS": 4, "MO": 8, "MT": 2, "NE": 3, "NV": 4, "NH": 2, "NJ": 12, "NM": 3,
    "NY": 26, "NC": 14, "ND": 1, "OH": 15, "OK": 5, "OR": 6, "PA": 17, "RI": 2,
    "SC": 7, "SD": 1, "TN": 9, "TX": 38, "UT": 4, "VT": 1, "VA": 11, "WA": 10,
    "WV": 2, "WI": 8, "WY": 1,
}

# Legislative district counts (not seat counts) for states with state-level coverage data
STATE_LEGISLATIVE_DISTRICTS = {
    "CA": {"state_senate": 40, "state_assembly": 80},
    "CO": {"state_senate": 35, "state_assembly": 65},
    "FL": {"state_senate": 40, "state_assembly": 120},
    "IL": {"state_senate": 59, "state_assembly": 118},
    "MA": {"state_senate": 40, "state_assembly": 160},
    "NY": {"state_senate": 63, "state_assembly": 150},
    "TX": {"state_senate": 31, "state_assembly": 150},
    "WA": {"state_senate": 49, "state_assembly": 49},
}

_STRATEGY_LABELS = {
    "polygon": "boundary polygons",
    "table": "reference table",
    "geocoder": "geocoder",
}


def seat_count(state: str, chamber: str) -> Optional[int]:
    """Number of districts for a state's chamber, or None when unknown."""
    if chamber == "congressional":
        return CONGRESSIONAL_SEATS.get(state)
    return STATE_LEGISLATIVE_DISTRICTS.get(state, {}).get(chamber)


def normalize_district(state: str, chamber: str, number: Optional[int]) -> Optional[int]:
    """Return the district number if it exists in the state, else None.

    At-large states report district 0 (or 1); both normalise to 1.
    """
    if number is None:
        return None
    seats = seat_count(state, chamber)
    if seats == 1 and number in (0, 1):
        return 1
    if number <= 0:
        return None
    if seats is not None and number > seats:
        return None
    return number


class DistrictResolver:
    """Resolves a ZIP's districts from boundary polygons, the reference table and the geocoder."""

    def __init__(self, index=None):
        self.index = index
        self.strategy_hits: Counter = Counter()
        self.unresolved_count = 0

    def resolve_districts(
        self,
        zip_code: str,
        state: str,
        point: Optional[Tuple[float, float]] = None,
        entry: Optional[ReferenceEntry] = None,
        geocoded: Optional[GeocodedZip] = None,
        chambers: Iterable[str] = CHAMBERS,
    ) -> DistrictSet:
        result = DistrictSet()
        for chamber in chambers:
            strategies = self._candidates(zip_code, state, chamber, point, entry, geocoded)
            self._settle(result, state, chamber, strategies)
        return result

    def _candidates(self, zip_code, state, chamber, point, entry, geocoded) -> List[Tuple[str, List[int]]]:
        strategies = []
        polygon = self._polygon_candidates(zip_code, state, chamber, point)
        if polygon:
            strategies.append(("polygon", polygon))
        if entry is not None and entry.state == state:
            table = [n for n in (entry.district(chamber),) if n is not None]
            table += list(entry.alternates_for(chamber))
            if table:
                strategies.append(("table", table))
        if geocoded is not None and geocoded.state == state:
            reported = list(geocoded.districts(chamber))
            if reported:
                strategies.append(("geocoder", reported))
        return strategies

    def _polygon_candidates(self, zip_code, state, chamber, point) -> List[int]:
        if self.index is None or not self.index.is_loaded:
            return []
        overlaps = [r for r in self.index.zip_overlaps(zip_code, chamber) if not r["state"] or r["state"] == state]
        if overlaps:
            return [r["district"] for r in overlaps]
        if point is None:
            return []
        lat, lon = point
        hits = [r for r in self.index.query_point(lat, lon, chamber) if not r["state"] or r["state"] == state]
        return [r["district"] for r in hits]

    def _settle(self, result: DistrictSet, state: str, chamber: str, strategies: List[Tuple[str, List[int]]]):
        primary: Optional[int] = None
        primary_source = ""
        alternates: List[int] = []
        firsts: Dict[str, int] = {}
        rejected: List[int] = []

        for source, numbers in strategies:
            for raw in numbers:
                number = normalize_district(state, chamber, raw)
                if number is None:
                    rejected.append(raw)
                    continue
                firsts.setdefault(source, number)
                if primary is None:
                    primary, primary_source = number, source
                elif number != primary and number not in alternates:
                    alternates.append(number)

        if rejected:
            logger.warning(f"{chamber}: ignoring out-of-range district(s) {rejected} for {state}")
            result.notes.append(f"Ignored invalid {chamber} district(s) {rejected}")

        if primary is None:
            self.unresolved_count += 1
            result.unresolved.append(chamber)
            result.notes.append(f"Unresolved {chamber} district")
            return

        setattr(result, chamber, primary)
        result.sources[chamber] = primary_source
        self.strategy_hits[primary_source] += 1
        if alternates:
            result.alternates[chamber] = tuple(alternates)

        disagreeing = {s: n for s, n in firsts.items() if n != primary}
        if disagreeing:
            detail = ", ".join(f"{_STRATEGY_LABELS[s]} says {n}" for s, n in disagreeing.items())
            result.notes.append(
                f"{chamber} sources disagree: {_STRATEGY_LABELS[primary_source]} says {primary}, {detail}"
            )

    @property
    def stats(self) -> dict:
        return {
            "primary_by_strategy": dict(self.strategy_hits),
            "unresolved": self.unresolved_count,
            "boundaries_loaded": bool(self.index is not None and self.index.is_loaded),
            "layer_counts": self.index.layer_counts if self.index is not None else {},
        }
