"""Data models for the jurisdiction engine."""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple


CHAMBERS = ("congressional", "state_senate", "state_assembly")


class Source(str, Enum):
    STATIC_TABLE = "STATIC_TABLE"
    GEOCODER = "GEOCODER"
    FALLBACK_DEFAULT = "FALLBACK_DEFAULT"


class JurisdictionLevel(str, Enum):
    FULL_COVERAGE = "FULL_COVERAGE"   # federal + state + county + municipal
    COUNTY_ONLY = "COUNTY_ONLY"       # federal + state + county, no municipal officials
    FEDERAL_ONLY = "FEDERAL_ONLY"     # state outside full coverage


class JurisdictionType(str, Enum):
    INCORPORATED_CITY = "incorporated_city"
    UNINCORPORATED_AREA = "unincorporated_area"
    CENSUS_DESIGNATED_PLACE = "census_designated_place"
    MILITARY_BASE = "military_base"
    TRIBAL_LAND = "tribal_land"


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


@dataclass
class GeocodedZip:
    """Validated geocoder output for one ZIP."""

    zip_code: str
    lat: float
    lon: float
    confidence: float
    city: str = ""
    county: str = ""
    state: str = ""
    provider: str = ""
    # District numbers ordered by share of the ZIP, largest first
    congressional: List[int] = field(default_factory=list)
    state_senate: List[int] = field(default_factory=list)
    state_assembly: List[int] = field(default_factory=list)

    def districts(self, chamber: str) -> List[int]:
        return getattr(self, chamber)


@dataclass
class DistrictSet:
    congressional: Optional[int] = None
    state_senate: Optional[int] = None
    state_assembly: Optional[int] = None
    alternates: Dict[str, Tuple[int, ...]] = field(default_factory=dict)
    sources: Dict[str, str] = field(default_factory=dict)
    unresolved: List[str] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)

    @property
    def multi_district(self) -> bool:
        return any(self.alternates.values())

    def primary(self, chamber: str) -> Optional[int]:
        return getattr(self, chamber)


@dataclass
class JurisdictionInfo:
    is_incorporated: bool
    city: Optional[str]
    jurisdiction_type: JurisdictionType
    county: str
    place_name: Optional[str] = None
    secondary_counties: List[str] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)
    confidence: float = 1.0
    method: str = "reference"

    @property
    def has_local_representatives(self) -> bool:
        return self.is_incorporated


@dataclass(frozen=True)
class ZipLookupResult:
    """Resolved jurisdiction bundle for one ZIP. Never mutated; use ``replace``."""

    zip_code: str
    county: str
    state: str
    source: Source
    data_quality_score: float
    jurisdiction_level: JurisdictionLevel
    jurisdiction_type: JurisdictionType
    city: Optional[str] = None
    is_incorporated: bool = False
    place_name: Optional[str] = None
    congressional_district: Optional[int] = None
    state_senate_district: Optional[int] = None
    state_assembly_district: Optional[int] = None
    multi_district: bool = False
    alternate_districts: Dict[str, Tuple[int, ...]] = field(default_factory=dict)
    secondary_counties: Tuple[str, ...] = ()
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    message: Optional[str] = None
    notes: Tuple[str, ...] = ()
    revision: int = 0
    dataset_version: str = ""
    resolved_at: str = field(default_factory=utc_now)

    def __post_init__(self):
        if not self.county or not self.state:
            raise ValueError(f"ZipLookupResult for {self.zip_code} requires county and state")
        if self.is_incorporated != (self.city is not None):
            raise ValueError(f"ZipLookupResult for {self.zip_code}: is_incorporated must match city presence")
        if self.multi_district and not any(self.alternate_districts.values()):
            raise ValueError(f"ZipLookupResult for {self.zip_code}: multi_district without alternates")

    @property
    def low_confidence(self) -> bool:
        return self.data_quality_score < 0.5

    def district(self, chamber: str) -> Optional[int]:
        return getattr(self, f"{chamber}_district")

    def with_changes(self, **changes) -> "ZipLookupResult":
        return replace(self, **changes)

    def to_dict(self) -> dict:
        """Serialize to dict for JSON output."""
        return {
            "zip_code": self.zip_code,
            "city": self.city,
            "county": self.county,
            "state": self.state,
            "place_name": self.place_name,
            "congressional_district": self.congressional_district,
            "state_senate_district": self.state_senate_district,
            "state_assembly_district": self.state_assembly_district,
            "jurisdiction_level": self.jurisdiction_level.value,
            "jurisdiction_type": self.jurisdiction_type.value,
            "is_incorporated": self.is_incorporated,
            "multi_district": self.multi_district,
            "alternate_districts": {k: list(v) for k, v in self.alternate_districts.items()},
            "secondary_counties": list(self.secondary_counties),
            "latitude": self.latitude,
            "longitude": self.longitude,
            "data_quality_score": round(self.data_quality_score, 3),
            "low_confidence": self.low_confidence,
            "source": self.source.value,
            "message": self.message,
            "notes": list(self.notes),
            "revision": self.revision,
            "dataset_version": self.dataset_version,
            "resolved_at": self.resolved_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ZipLookupResult":
        """Reconstruct a result from ``to_dict`` output."""
        return cls(
            zip_code=data["zip_code"],
            city=data.get("city"),
            county=data["county"],
            state=data["state"],
            place_name=data.get("place_name"),
            congressional_district=data.get("congressional_district"),
            state_senate_district=data.get("state_senate_district"),
            state_assembly_district=data.get("state_assembly_district"),
            jurisdiction_level=JurisdictionLevel(data["jurisdiction_level"]),
            jurisdiction_type=JurisdictionType(data["jurisdiction_type"]),
            is_incorporated=data.get("is_incorporated", False),
            multi_district=data.get("multi_district", False),
            alternate_districts={
                k: tuple(v) for k, v in (data.get("alternate_districts") or {}).items()
            },
            secondary_counties=tuple(data.get("secondary_counties") or ()),
            latitude=data.get("latitude"),
            longitude=data.get("longitude"),
            data_quality_score=data["data_quality_score"],
            source=Source(data["source"]),
            message=data.get("message"),
            notes=tuple(data.get("notes") or ()),
            revision=data.get("revision", 0),
            dataset_version=data.get("dataset_version", ""),
            resolved_at=data.get("resolved_at", ""),
        )
