"""Jurisdiction classifier — incorporated city vs unincorporated, CDP, military, tribal.

Classification order:
  1. Reference entry (explicit type, human-curated)
  2. Special areas (military bases, tribal land) by ZIP, then by name
  3. Place registry: fuzzy match of the postal/geocoder city name
  4. Naming patterns ("City of …" vs "Unincorporated …", "… CDP")
  5. Default: a specific city name is assumed incorporated (low confidence),
     no name at all is an unincorporated county area
"""

import logging
import re
from typing import List, Optional

from rapidfuzz import fuzz

from .models import JurisdictionInfo, JurisdictionLevel, JurisdictionType
from .reference import ReferenceDataset, ReferenceEntry

logger = logging.getLogger(__name__)

_INCORPORATED_PREFIX = re.compile(r"^(City of |Town of |Village of |Municipality of )", re.IGNORECASE)
_UNINCORPORATED_INDICATORS = ("unincorporated", "cdp", "census designated place", "county area", "rural")

_SUPPRESSES_MUNICIPAL = (JurisdictionType.MILITARY_BASE, JurisdictionType.TRIBAL_LAND)


def _clean_name(name: str) -> str:
    return re.sub(r"\s+", " ", (name or "").strip())


def _county_key(county: str) -> str:
    return re.sub(r"\s+county$", "", (county or "").strip().lower())


class JurisdictionClassifier:
    """Decides incorporation status and the municipal tier for a ZIP."""

    def __init__(self, reference: ReferenceDataset, city_match_threshold: int = 90):
        self.reference = reference
        self.city_match_threshold = city_match_threshold

    def classify(
        self,
        zip_code: str,
        county: str,
        state: str,
        city_hint: Optional[str] = None,
        entry: Optional[ReferenceEntry] = None,
    ) -> JurisdictionInfo:
        if entry is not None:
            return self._from_entry(entry)

        area = self.reference.special_area_for_zip(zip_code)
        if area is not None and area.state == state:
            return self._special(area.name, area.jurisdiction_type, county or area.county, "special_area")

        name = _clean_name(city_hint or "")
        if not name:
            return self._county_area(county, 0.3, "default", f"Area in {county} (jurisdiction unknown)")

        # Special areas by name (e.g. geocoder city "Camp Pendleton North")
        for area in self.reference.special_areas_for(state):
            area_name = area.name.lower()
            if name.lower().startswith(area_name) or fuzz.token_sort_ratio(area_name, name.lower()) >= self.city_match_threshold:
                return self._special(area.name, area.jurisdiction_type, county or area.county, "special_area")

        place_rec = self._match_place(name, state, county)
        if place_rec is not None:
            same_county = _county_key(place_rec.county) == _county_key(county)
            confidence = 0.95 if same_county else 0.85
            notes = []
            if not same_county:
                notes.append(f"{place_rec.name} is registered in {place_rec.county}, ZIP county is {county}")
            if place_rec.jurisdiction_type == JurisdictionType.INCORPORATED_CITY:
                return JurisdictionInfo(
                    is_incorporated=True,
                    city=place_rec.name,
                    jurisdiction_type=JurisdictionType.INCORPORATED_CITY,
                    county=county,
                    place_name=place_rec.name,
                    notes=notes,
                    confidence=confidence,
                    method="registry",
                )
            return JurisdictionInfo(
                is_incorporated=False,
                city=None,
                jurisdiction_type=place_rec.jurisdiction_type,
                county=county,
                place_name=place_rec.name,
                notes=notes + [f"{place_rec.name} is an unincorporated community governed by {county}"],
                confidence=confidence,
                method="registry",
            )

        if _INCORPORATED_PREFIX.match(name):
            city = _INCORPORATED_PREFIX.sub("", name)
            return JurisdictionInfo(
                is_incorporated=True,
                city=city,
                jurisdiction_type=JurisdictionType.INCORPORATED_CITY,
                county=county,
                place_name=city,
                notes=["Likely incorporated city based on naming pattern"],
                confidence=0.7,
                method="pattern",
            )

        lowered = name.lower()
        if any(ind in lowered for ind in _UNINCORPORATED_INDICATORS) or "county" in lowered:
            info = self._county_area(county, 0.6, "pattern", f"Unincorporated area in {county}")
            info.place_name = name
            return info

        logger.debug(f"Classifier: assuming '{name}' ({zip_code}) is incorporated")
        return JurisdictionInfo(
            is_incorporated=True,
            city=name,
            jurisdiction_type=JurisdictionType.INCORPORATED_CITY,
            county=county,
            place_name=name,
            notes=["Incorporation status assumed from postal city name"],
            confidence=0.5,
            method="assumed",
        )

    def _from_entry(self, entry: ReferenceEntry) -> JurisdictionInfo:
        notes: List[str] = []
        jtype = entry.jurisdiction_type
        area = self.reference.special_area_for_zip(entry.zip_code)
        if area is not None and jtype not in _SUPPRESSES_MUNICIPAL:
            jtype = area.jurisdiction_type
            notes.append(f"ZIP lies within {area.name}")

        if entry.po_box:
            notes.append(f"PO-box-only ZIP; mapped to delivery city {entry.city or entry.place_name or entry.county}")
        if entry.secondary_counties:
            notes.append(
                f"ZIP spans {', '.join((entry.county,) + entry.secondary_counties)}; "
                f"{entry.county} holds the majority of residents"
            )

        if jtype in _SUPPRESSES_MUNICIPAL:
            info = self._special(
                entry.place_name or (area.name if area else entry.county), jtype, entry.county, "reference"
            )
            info.secondary_counties = list(entry.secondary_counties)
            info.notes = notes + info.notes
            return info

        incorporated = jtype == JurisdictionType.INCORPORATED_CITY
        return JurisdictionInfo(
            is_incorporated=incorporated,
            city=entry.city if incorporated else None,
            jurisdiction_type=jtype,
            county=entry.county,
            place_name=entry.place_name,
            secondary_counties=list(entry.secondary_counties),
            notes=notes,
            confidence=1.0,
            method="reference",
        )

    def _match_place(self, name: str, state: str, county: str):
        """Best registry match for name in state, preferring the same county on ties."""
        best = None
        for place in self.reference.places_for(state):
            score = fuzz.token_sort_ratio(name.lower(), place.name.lower())
            if score < self.city_match_threshold:
                continue
            same_county = _county_key(place.county) == _county_key(county)
            key = (score, same_county)
            if best is None or key > best[0]:
                best = (key, place)
        return best[1] if best else None

    @staticmethod
    def _special(name: str, jtype: JurisdictionType, county: str, method: str) -> JurisdictionInfo:
        label = "military installation" if jtype == JurisdictionType.MILITARY_BASE else "tribal land"
        return JurisdictionInfo(
            is_incorporated=False,
            city=None,
            jurisdiction_type=jtype,
            county=county,
            place_name=name,
            notes=[f"{name} is a {label}; no municipal officials"],
            confidence=0.95 if method != "reference" else 1.0,
            method=method,
        )

    @staticmethod
    def _county_area(county: str, confidence: float, method: str, note: str) -> JurisdictionInfo:
        return JurisdictionInfo(
            is_incorporated=False,
            city=None,
            jurisdiction_type=JurisdictionType.UNINCORPORATED_AREA,
            county=county,
            place_name=None,
            notes=[note],
            confidence=confidence,
            method=method,
        )


def area_description(info) -> dict:
    """User-facing title and description for the ZIP's local government."""
    jtype = info.jurisdiction_type
    if jtype == JurisdictionType.INCORPORATED_CITY:
        return {
            "title": f"City of {info.city}",
            "description": f"{info.city} has its own city government and council members.",
        }
    if jtype == JurisdictionType.CENSUS_DESIGNATED_PLACE:
        return {
            "title": f"{info.place_name} (Unincorporated)",
            "description": (
                f"{info.place_name} is a census-designated place without city government. "
                f"Local services are provided by {info.county}."
            ),
        }
    if jtype == JurisdictionType.MILITARY_BASE:
        return {
            "title": info.place_name or "Military Installation",
            "description": "Federal military installation. County and state officials represent residents.",
        }
    if jtype == JurisdictionType.TRIBAL_LAND:
        return {
            "title": info.place_name or "Tribal Land",
            "description": "Tribal land governed by its tribal government alongside county and state officials.",
        }
    return {
        "title": f"Unincorporated {info.county}",
        "description": f"This area is governed directly by the {info.county} Board of Supervisors.",
    }


def applicable_levels(info, level: JurisdictionLevel) -> List[str]:
    """Government tiers whose representatives apply to the ZIP."""
    if level == JurisdictionLevel.FEDERAL_ONLY:
        return ["federal"]
    levels = ["federal", "state", "county"]
    if level == JurisdictionLevel.FULL_COVERAGE and info.is_incorporated:
        levels.append("municipal")
    return levels
