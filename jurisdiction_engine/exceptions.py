"""Exception hierarchy for the jurisdiction engine.

Only input errors, the opt-in coverage rejection and ResolutionUnavailable
ever escape ``ResolutionEngine.resolve``. Geocoder errors are raised by the
adapter and recovered inside the engine; ResolutionUnavailable is raised only
when that recovery has nothing left to fall back on.
"""

from typing import Optional


class JurisdictionEngineError(Exception):
    """Base exception for all jurisdiction engine errors."""


class InvalidZipFormat(JurisdictionEngineError):
    """Input is not a 5-digit ZIP code (after stripping any ZIP+4 suffix)."""

    code = "INVALID_ZIP_FORMAT"

    def __init__(self, zip_code: str, message: str = "Invalid ZIP code format. Expected 5 digits."):
        self.zip_code = zip_code
        self.message = message
        super().__init__(f"{message} Got: '{zip_code}'")


class ZipNotRecognized(InvalidZipFormat):
    """Syntactically valid ZIP that no source can place in a county."""

    code = "ZIP_NOT_FOUND"

    def __init__(self, zip_code: str):
        super().__init__(zip_code, "ZIP code not recognized.")


class OutOfCoverageArea(JurisdictionEngineError):
    """ZIP resolves to a state the engine is configured to reject."""

    code = "OUT_OF_COVERAGE"

    def __init__(self, zip_code: str, state: str, message: str):
        self.zip_code = zip_code
        self.state = state
        self.message = message
        super().__init__(f"{message} (ZIP {zip_code} is in {state})")


class ResolutionUnavailable(JurisdictionEngineError):
    """ZIP is outside the prefix defaults and the geocoder is down, paused or rate limited.

    Retriable: the same ZIP may resolve once the geocoder is back.
    """

    code = "GEOCODER_UNAVAILABLE"

    def __init__(self, zip_code: str, state: str, retry_after: Optional[float] = None):
        self.zip_code = zip_code
        self.state = state
        self.retry_after = retry_after
        self.message = "ZIP lookup is temporarily unavailable. Please try again shortly."
        super().__init__(f"{self.message} (ZIP {zip_code}, {state})")


class ReferenceDataError(JurisdictionEngineError):
    """The bundled reference dataset is missing, malformed, or inconsistent."""

    def __init__(self, path: str, detail: str):
        self.path = path
        super().__init__(f"Invalid reference dataset at {path}: {detail}")


class GeocoderError(JurisdictionEngineError):
    """Base class for upstream geocoding failures."""

    def __init__(self, provider: str, zip_code: str, detail: str = ""):
        self.provider = provider
        self.zip_code = zip_code
        self.detail = detail
        super().__init__(f"{provider} geocoder failed for {zip_code}: {detail}")


class GeocoderRateLimited(GeocoderError):
    """Provider returned 429 / over-quota."""

    def __init__(self, provider: str, zip_code: str, retry_after: Optional[float] = None):
        self.retry_after = retry_after
        detail = "rate limited"
        if retry_after:
            detail += f" (retry after {retry_after:.0f}s)"
        super().__init__(provider, zip_code, detail)


class GeocoderUnavailable(GeocoderError):
    """Network error, timeout, 5xx, or a response that failed validation."""


class GeocoderNoMatch(GeocoderError):
    """Provider does not know the ZIP."""
