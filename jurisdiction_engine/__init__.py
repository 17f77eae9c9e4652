"""ZIP-to-Jurisdiction Resolution Engine — ZIP code to city, county, state and legislative districts."""

from .config import Config
from .engine import ResolutionEngine, normalize_zip
from .exceptions import (
    GeocoderError,
    GeocoderNoMatch,
    GeocoderRateLimited,
    GeocoderUnavailable,
    InvalidZipFormat,
    JurisdictionEngineError,
    OutOfCoverageArea,
    ReferenceDataError,
    ResolutionUnavailable,
    ZipNotRecognized,
)
from .models import JurisdictionLevel, JurisdictionType, Source, ZipLookupResult

__all__ = [
    "Config",
    "ResolutionEngine",
    "normalize_zip",
    "ZipLookupResult",
    "Source",
    "JurisdictionLevel",
    "JurisdictionType",
    "JurisdictionEngineError",
    "InvalidZipFormat",
    "ZipNotRecognized",
    "OutOfCoverageArea",
    "ReferenceDataError",
    "ResolutionUnavailable",
    "GeocoderError",
    "GeocoderNoMatch",
    "GeocoderRateLimited",
    "GeocoderUnavailable",
]
