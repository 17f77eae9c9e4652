"""Static reference tables — the single authoritative ZIP table.

One versioned JSON dataset replaces the per-service lookup maps: ZIP entries
(county, incorporated city, districts), the place registry used by the
classifier, military / tribal special areas, and the SCF-prefix county
defaults used by the fallback path. Loaded once into a read-only hash index;
duplicate ZIP keys anywhere in the file are rejected at load time.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple

from .exceptions import ReferenceDataError
from .models import CHAMBERS, JurisdictionType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReferenceEntry:
    zip_code: str
    state: str
    county: str
    jurisdiction_type: JurisdictionType
    city: Optional[str] = None
    place_name: Optional[str] = None
    secondary_counties: Tuple[str, ...] = ()
    po_box: bool = False
    congressional: Optional[int] = None
    state_senate: Optional[int] = None
    state_assembly: Optional[int] = None
    alternates: Mapping[str, Tuple[int, ...]] = field(default_factory=dict)
    lat: Optional[float] = None
    lon: Optional[float] = None

    def district(self, chamber: str) -> Optional[int]:
        return getattr(self, chamber)

    def alternates_for(self, chamber: str) -> Tuple[int, ...]:
        return tuple(self.alternates.get(chamber, ()))

    @property
    def has_districts(self) -> bool:
        return any(self.district(c) is not None for c in CHAMBERS)


@dataclass(frozen=True)
class PlaceRecord:
    name: str
    state: str
    county: str
    jurisdiction_type: JurisdictionType


@dataclass(frozen=True)
class SpecialArea:
    name: str
    jurisdiction_type: JurisdictionType
    state: str
    county: str
    zips: frozenset = frozenset()


def _reject_duplicates(pairs):
    seen = {}
    for key, value in pairs:
        if key in seen:
            raise ValueError(f"duplicate key '{key}'")
        seen[key] = value
    return seen


def _district_value(zip_code: str, chamber: str, raw) -> Optional[int]:
    if raw is None:
        return None
    if isinstance(raw, bool) or not isinstance(raw, int):
        raise ValueError(f"{zip_code}: {chamber} must be an integer, got {raw!r}")
    return raw


class ReferenceDataset:
    """Immutable, versioned ZIP reference table."""

    def __init__(
        self,
        version: str,
        entries: Dict[str, ReferenceEntry],
        places: Dict[str, Tuple[PlaceRecord, ...]] = None,
        special_areas: Tuple[SpecialArea, ...] = (),
        prefix_defaults: Dict[str, Tuple[str, str]] = None,
        path: str = "",
    ):
        self.version = version
        self.path = path
        self._entries = MappingProxyType(dict(entries))
        self._places = MappingProxyType(dict(places or {}))
        self._special_areas = tuple(special_areas)
        self._prefix_defaults = MappingProxyType(dict(prefix_defaults or {}))
        self._special_by_zip = MappingProxyType(
            {z: area for area in self._special_areas for z in area.zips}
        )

    @classmethod
    def load(cls, path: Path) -> "ReferenceDataset":
        """Load and validate the dataset. Raises ReferenceDataError on any defect."""
        path = Path(path)
        if not path.exists():
            raise ReferenceDataError(str(path), "file not found")
        try:
            with open(path) as f:
                raw = json.load(f, object_pairs_hook=_reject_duplicates)
        except (json.JSONDecodeError, ValueError) as e:
            raise ReferenceDataError(str(path), str(e)) from e

        try:
            dataset = cls._from_raw(raw, str(path))
        except (KeyError, TypeError, ValueError) as e:
            raise ReferenceDataError(str(path), str(e)) from e

        logger.info(
            f"Reference: loaded {len(dataset)} ZIPs, "
            f"{sum(len(p) for p in dataset._places.values())} places, "
            f"{len(dataset._prefix_defaults)} prefix defaults (version {dataset.version})"
        )
        return dataset

    @classmethod
    def _from_raw(cls, raw: dict, path: str) -> "ReferenceDataset":
        version = str(raw["version"])
        entries = {}
        for zip_code, rec in raw.get("zips", {}).items():
            if len(zip_code) != 5 or not zip_code.isdigit():
                raise ValueError(f"bad ZIP key '{zip_code}'")
            entries[zip_code] = cls._parse_entry(zip_code, rec)

        places: Dict[str, Tuple[PlaceRecord, ...]] = {}
        for state, recs in raw.get("places", {}).items():
            places[state] = tuple(
                PlaceRecord(
                    name=r["name"],
                    state=state,
                    county=r["county"],
                    jurisdiction_type=JurisdictionType(r.get("type", "incorporated_city")),
                )
                for r in recs
            )

        special = tuple(
            SpecialArea(
                name=a["name"],
                jurisdiction_type=JurisdictionType(a["type"]),
                state=a["state"],
                county=a["county"],
                zips=frozenset(a.get("zips", [])),
            )
            for a in raw.get("special_areas", [])
        )

        prefix_defaults = {}
        for prefix, rec in raw.get("prefix_defaults", {}).items():
            if len(prefix) != 3 or not prefix.isdigit():
                raise ValueError(f"bad prefix key '{prefix}'")
            prefix_defaults[prefix] = (rec["state"], rec["county"])

        return cls(version, entries, places, special, prefix_defaults, path)

    @staticmethod
    def _parse_entry(zip_code: str, rec: dict) -> ReferenceEntry:
        if not rec.get("state") or not rec.get("county"):
            raise ValueError(f"{zip_code}: state and county are required")
        jtype = JurisdictionType(rec.get("type", "incorporated_city"))
        city = rec.get("city")
        if (jtype == JurisdictionType.INCORPORATED_CITY) != (city is not None):
            raise ValueError(f"{zip_code}: city must be set exactly when type is incorporated_city")

        alternates = {}
        for chamber, nums in (rec.get("alternates") or {}).items():
            if chamber not in CHAMBERS:
                raise ValueError(f"{zip_code}: unknown chamber '{chamber}'")
            alternates[chamber] = tuple(_district_value(zip_code, chamber, n) for n in nums)

        return ReferenceEntry(
            zip_code=zip_code,
            state=rec["state"],
            county=rec["county"],
            jurisdiction_type=jtype,
            city=city,
            place_name=rec.get("place_name") or city,
            secondary_counties=tuple(rec.get("secondary_counties", [])),
            po_box=bool(rec.get("po_box", False)),
            congressional=_district_value(zip_code, "congressional", rec.get("congressional")),
            state_senate=_district_value(zip_code, "state_senate", rec.get("state_senate")),
            state_assembly=_district_value(zip_code, "state_assembly", rec.get("state_assembly")),
            alternates=MappingProxyType(alternates),
            lat=rec.get("lat"),
            lon=rec.get("lon"),
        )

    def lookup(self, zip_code: str) -> Optional[ReferenceEntry]:
        return self._entries.get(zip_code)

    def prefix_default(self, zip_code: str) -> Optional[Tuple[str, str]]:
        """(state, county) guess for the ZIP's 3-digit prefix, or None."""
        return self._prefix_defaults.get(zip_code[:3])

    def places_for(self, state: str) -> Tuple[PlaceRecord, ...]:
        return self._places.get(state, ())

    def special_area_for_zip(self, zip_code: str) -> Optional[SpecialArea]:
        return self._special_by_zip.get(zip_code)

    def special_areas_for(self, state: str) -> Tuple[SpecialArea, ...]:
        return tuple(a for a in self._special_areas if a.state == state)

    def zips_for_district(self, chamber: str, number: int, state: Optional[str] = None) -> List[str]:
        """Reverse lookup: ZIPs whose primary or alternate district matches."""
        if chamber not in CHAMBERS:
            raise ValueError(f"Unknown chamber '{chamber}'")
        matches = []
        for zip_code, entry in self._entries.items():
            if state and entry.state != state:
                continue
            if entry.district(chamber) == number or number in entry.alternates_for(chamber):
                matches.append(zip_code)
        return sorted(matches)

    def coverage(self) -> dict:
        by_state: Dict[str, int] = {}
        with_districts = 0
        for entry in self._entries.values():
            by_state[entry.state] = by_state.get(entry.state, 0) + 1
            if entry.has_districts:
                with_districts += 1
        return {
            "version": self.version,
            "zips": len(self._entries),
            "zips_with_districts": with_districts,
            "by_state": dict(sorted(by_state.items())),
            "prefix_defaults": len(self._prefix_defaults),
        }

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, zip_code: str) -> bool:
        return zip_code in self._entries
