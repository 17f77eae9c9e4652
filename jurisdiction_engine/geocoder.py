"""ZIP geocoding — pluggable: Geocodio (districts included) or Google (API keys required).

Every adapter validates the provider response before returning it and fails
closed: a response with missing or ill-typed fields, coordinates outside the
US, or a different ZIP than the one requested never reaches the engine.
"""

import logging
import time
from abc import ABC, abstractmethod
from typing import List, Optional

import requests

from .exceptions import GeocoderNoMatch, GeocoderRateLimited, GeocoderUnavailable
from .models import GeocodedZip
from .zip_ranges import normalize_state

logger = logging.getLogger(__name__)

# (min_lat, min_lon, max_lat, max_lon)
US_BOUNDING_BOXES = {
    "conus": (24.4, -125.0, 49.5, -66.9),
    "alaska": (51.0, -180.0, 71.5, -129.9),
    "hawaii": (18.9, -160.3, 22.3, -154.8),
}


def in_us_bounds(lat: float, lon: float) -> bool:
    for min_lat, min_lon, max_lat, max_lon in US_BOUNDING_BOXES.values():
        if min_lat <= lat <= max_lat and min_lon <= lon <= max_lon:
            return True
    return False


def _coerce_coordinate(value, provider: str, zip_code: str, name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise GeocoderUnavailable(provider, zip_code, f"invalid {name}: {value!r}")
    return float(value)


def _coerce_text(value, provider: str, zip_code: str, name: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise GeocoderUnavailable(provider, zip_code, f"invalid {name}: {value!r}")
    return value.strip()


class Geocoder(ABC):
    name = "geocoder"

    @abstractmethod
    def geocode(self, zip_code: str) -> GeocodedZip:
        """Geocode a 5-digit ZIP to centroid + components (+ districts when available).

        Raises GeocoderNoMatch, GeocoderRateLimited or GeocoderUnavailable.
        """
        ...


class HttpGeocoder(Geocoder):
    """Shared request loop: hard timeout, bounded retries with exponential backoff."""

    BASE_URL = ""

    def __init__(self, timeout: float = 5.0, max_retries: int = 2, max_wait: float = 10.0,
                 backoff_base: float = 0.5):
        self.timeout = timeout
        self.max_retries = max_retries
        self.max_wait = max_wait
        self.backoff_base = backoff_base

    def _get_json(self, params: dict, zip_code: str) -> dict:
        last_error = ""
        for attempt in range(self.max_retries + 1):
            try:
                t0 = time.time()
                resp = requests.get(self.BASE_URL, params=params, timeout=self.timeout)
                elapsed_ms = int((time.time() - t0) * 1000)
            except (requests.Timeout, requests.ConnectionError) as e:
                last_error = f"{type(e).__name__}: {e}"
                self._backoff(attempt, zip_code, last_error)
                continue
            except requests.RequestException as e:
                raise GeocoderUnavailable(self.name, zip_code, str(e)) from e

            if resp.status_code == 429:
                retry_after = self._retry_after(resp)
                if attempt < self.max_retries and retry_after is not None and retry_after <= self.max_wait:
                    logger.warning(f"{self.name}: rate limited for {zip_code}, retrying in {retry_after:.0f}s")
                    time.sleep(retry_after)
                    continue
                raise GeocoderRateLimited(self.name, zip_code, retry_after)
            if resp.status_code >= 500:
                last_error = f"HTTP {resp.status_code}"
                self._backoff(attempt, zip_code, last_error)
                continue
            if resp.status_code in (404, 422):
                raise GeocoderNoMatch(self.name, zip_code, f"HTTP {resp.status_code}")
            if resp.status_code >= 400:
                raise GeocoderUnavailable(self.name, zip_code, f"HTTP {resp.status_code}")

            try:
                data = resp.json()
            except ValueError as e:
                raise GeocoderUnavailable(self.name, zip_code, "response is not JSON") from e
            if not isinstance(data, dict):
                raise GeocoderUnavailable(self.name, zip_code, "unexpected response shape")
            logger.debug(f"{self.name}: {zip_code} answered in {elapsed_ms}ms")
            return data

        raise GeocoderUnavailable(
            self.name, zip_code, f"gave up after {self.max_retries + 1} attempts ({last_error})"
        )

    def _backoff(self, attempt: int, zip_code: str, error: str):
        if attempt >= self.max_retries:
            return
        wait = self.backoff_base * (2 ** attempt)
        logger.warning(f"{self.name} attempt {attempt + 1} for {zip_code} failed: {error}. Retrying in {wait:.1f}s...")
        time.sleep(wait)

    @staticmethod
    def _retry_after(resp) -> Optional[float]:
        value = resp.headers.get("Retry-After")
        if value is None:
            return None
        try:
            return float(value)
        except ValueError:
            return None


class GeocodioGeocoder(HttpGeocoder):
    """Geocodio postal-code geocoding with congressional + state legislative fields."""

    name = "geocodio"
    BASE_URL = "https://api.geocod.io/v1.7/geocode"

    def __init__(self, api_key: str, current_congress: int = 119, **kwargs):
        if not api_key:
            raise ValueError("Geocodio geocoder requires an API key")
        super().__init__(**kwargs)
        self.api_key = api_key
        self.current_congress = current_congress

    def geocode(self, zip_code: str) -> GeocodedZip:
        params = {
            "postal_code": zip_code,
            "fields": "cd,stateleg",
            "api_key": self.api_key,
        }
        data = self._get_json(params, zip_code)

        results = data.get("results")
        if not isinstance(results, list):
            raise GeocoderUnavailable(self.name, zip_code, "missing results list")
        if not results:
            raise GeocoderNoMatch(self.name, zip_code, "no results")

        try:
            best = max(results, key=lambda r: r.get("accuracy") or 0)
        except (AttributeError, TypeError) as e:
            raise GeocoderUnavailable(self.name, zip_code, "malformed results") from e
        return self._parse_result(best, zip_code)

    def _parse_result(self, best: dict, zip_code: str) -> GeocodedZip:
        loc = best.get("location")
        comps = best.get("address_components")
        if not isinstance(loc, dict) or not isinstance(comps, dict):
            raise GeocoderUnavailable(self.name, zip_code, "missing location or address_components")

        lat = _coerce_coordinate(loc.get("lat"), self.name, zip_code, "lat")
        lon = _coerce_coordinate(loc.get("lng"), self.name, zip_code, "lng")
        if not in_us_bounds(lat, lon):
            raise GeocoderUnavailable(self.name, zip_code, f"coordinates ({lat}, {lon}) outside US")

        returned_zip = _coerce_text(comps.get("zip"), self.name, zip_code, "zip")
        if returned_zip and returned_zip[:5] != zip_code:
            raise GeocoderNoMatch(self.name, zip_code, f"provider answered for {returned_zip}")

        raw_state = _coerce_text(comps.get("state"), self.name, zip_code, "state")
        state = normalize_state(raw_state)
        if not state:
            raise GeocoderUnavailable(self.name, zip_code, f"unknown state {raw_state!r}")
        city = _coerce_text(comps.get("city"), self.name, zip_code, "city")
        county = _coerce_text(comps.get("county"), self.name, zip_code, "county")

        accuracy = best.get("accuracy", 0.0)
        if isinstance(accuracy, bool) or not isinstance(accuracy, (int, float)):
            raise GeocoderUnavailable(self.name, zip_code, f"invalid accuracy {accuracy!r}")

        fields = best.get("fields") or {}
        if not isinstance(fields, dict):
            raise GeocoderUnavailable(self.name, zip_code, "fields is not an object")
        stateleg = fields.get("state_legislative_districts") or {}
        if not isinstance(stateleg, dict):
            raise GeocoderUnavailable(self.name, zip_code, "state_legislative_districts is not an object")

        result = GeocodedZip(
            zip_code=zip_code,
            lat=lat,
            lon=lon,
            confidence=max(0.0, min(1.0, float(accuracy))),
            city=city,
            county=county,
            state=state,
            provider=self.name,
            congressional=self._district_numbers(
                fields.get("congressional_districts") or [], zip_code, congressional=True
            ),
            state_senate=self._district_numbers(stateleg.get("senate") or [], zip_code),
            state_assembly=self._district_numbers(stateleg.get("house") or [], zip_code),
        )
        logger.debug(
            f"Geocodio: {zip_code} -> ({result.lat}, {result.lon}) {result.city}, {result.state} "
            f"cd={result.congressional} sd={result.state_senate} ad={result.state_assembly}"
        )
        return result

    def _district_numbers(self, districts: list, zip_code: str, congressional: bool = False) -> List[int]:
        """District numbers ordered by proportion of the ZIP, current Congress only."""
        if not isinstance(districts, list):
            raise GeocoderUnavailable(self.name, zip_code, "district list is not an array")
        ranked = []
        for d in districts:
            if not isinstance(d, dict):
                raise GeocoderUnavailable(self.name, zip_code, "district entry is not an object")
            if congressional and not self._is_current_congress(d):
                continue
            try:
                number = int(str(d.get("district_number")).strip())
                proportion = float(d.get("proportion", 1.0))
            except (TypeError, ValueError) as e:
                raise GeocoderUnavailable(self.name, zip_code, f"bad district entry {d!r}") from e
            ranked.append((proportion, number))
        ranked.sort(key=lambda p: -p[0])
        return [n for _, n in ranked]

    def _is_current_congress(self, district: dict) -> bool:
        numbers = district.get("congress_numbers")
        if isinstance(numbers, list):
            return self.current_congress in numbers
        label = district.get("congress_number")
        if label is None:
            return True
        digits = "".join(ch for ch in str(label) if ch.isdigit())
        return digits == str(self.current_congress)


class GoogleGeocoder(HttpGeocoder):
    """Google Maps geocoder restricted to a US postal code. No district data."""

    name = "google"
    BASE_URL = "https://maps.googleapis.com/maps/api/geocode/json"

    def __init__(self, api_key: str, **kwargs):
        if not api_key:
            raise ValueError("Google geocoder requires an API key")
        super().__init__(**kwargs)
        self.api_key = api_key

    def geocode(self, zip_code: str) -> GeocodedZip:
        params = {
            "components": f"postal_code:{zip_code}|country:US",
            "key": self.api_key,
        }
        data = self._get_json(params, zip_code)

        status = data.get("status", "")
        if status == "ZERO_RESULTS":
            raise GeocoderNoMatch(self.name, zip_code, status)
        if status == "OVER_QUERY_LIMIT":
            raise GeocoderRateLimited(self.name, zip_code)
        if status != "OK":
            raise GeocoderUnavailable(self.name, zip_code, status or "missing status")

        results = data.get("results")
        if not isinstance(results, list):
            raise GeocoderUnavailable(self.name, zip_code, "missing results list")
        if not results:
            raise GeocoderNoMatch(self.name, zip_code, "no results")

        best = results[0]
        if not isinstance(best, dict):
            raise GeocoderUnavailable(self.name, zip_code, "result is not an object")
        geometry = best.get("geometry")
        loc = geometry.get("location") if isinstance(geometry, dict) else None
        if not isinstance(loc, dict):
            raise GeocoderUnavailable(self.name, zip_code, "missing geometry.location")
        lat = _coerce_coordinate(loc.get("lat"), self.name, zip_code, "lat")
        lon = _coerce_coordinate(loc.get("lng"), self.name, zip_code, "lng")
        if not in_us_bounds(lat, lon):
            raise GeocoderUnavailable(self.name, zip_code, f"coordinates ({lat}, {lon}) outside US")

        # Map Google location_type to confidence
        confidence_map = {
            "ROOFTOP": 0.98,
            "RANGE_INTERPOLATED": 0.90,
            "GEOMETRIC_CENTER": 0.80,
            "APPROXIMATE": 0.60,
        }
        location_type = geometry.get("location_type")
        confidence = confidence_map.get(location_type, 0.70) if isinstance(location_type, str) else 0.70

        address_components = best.get("address_components") or []
        if not isinstance(address_components, list):
            raise GeocoderUnavailable(self.name, zip_code, "address_components is not an array")

        components = {}
        for comp in address_components:
            if not isinstance(comp, dict) or not isinstance(comp.get("types", []), list):
                raise GeocoderUnavailable(self.name, zip_code, f"bad address component {comp!r}")
            types = comp.get("types", [])
            long_name = _coerce_text(comp.get("long_name"), self.name, zip_code, "long_name")
            short_name = _coerce_text(comp.get("short_name"), self.name, zip_code, "short_name")
            if "locality" in types:
                components["city"] = long_name
            elif "postal_town" in types and "city" not in components:
                components["city"] = long_name
            elif "administrative_area_level_1" in types:
                components["state"] = short_name
            elif "postal_code" in types:
                components["zip_code"] = long_name
            elif "administrative_area_level_2" in types:
                components["county"] = long_name

        returned_zip = components.get("zip_code", "")
        if returned_zip and returned_zip[:5] != zip_code:
            raise GeocoderNoMatch(self.name, zip_code, f"provider answered for {returned_zip}")
        state = normalize_state(components.get("state", ""))
        if not state:
            raise GeocoderUnavailable(self.name, zip_code, "missing state component")

        result = GeocodedZip(
            zip_code=zip_code,
            lat=lat,
            lon=lon,
            confidence=confidence,
            city=components.get("city", ""),
            county=components.get("county", ""),
            state=state,
            provider=self.name,
        )
        logger.debug(f"Google geocoder: {zip_code} -> ({result.lat}, {result.lon})")
        return result


class ChainedGeocoder(Geocoder):
    """Primary → fallback chain. Falls back on any primary failure."""

    name = "chained"

    def __init__(self, primary: Geocoder, fallback: Geocoder):
        self.primary = primary
        self.fallback = fallback
        self.primary_hits = 0
        self.fallback_hits = 0
        self.total_misses = 0

    def geocode(self, zip_code: str) -> GeocodedZip:
        try:
            result = self.primary.geocode(zip_code)
            self.primary_hits += 1
            return result
        except (GeocoderNoMatch, GeocoderUnavailable, GeocoderRateLimited) as e:
            logger.debug(f"Primary geocoder failed for {zip_code}: {e}")
        try:
            result = self.fallback.geocode(zip_code)
        except (GeocoderNoMatch, GeocoderUnavailable, GeocoderRateLimited):
            self.total_misses += 1
            raise
        self.fallback_hits += 1
        logger.debug(f"Fallback geocoder matched: {zip_code}")
        return result

    @property
    def stats(self) -> dict:
        total = self.primary_hits + self.fallback_hits + self.total_misses
        return {
            "total": total,
            "primary_hits": self.primary_hits,
            "fallback_hits": self.fallback_hits,
            "total_misses": self.total_misses,
            "primary_rate": f"{self.primary_hits / total * 100:.1f}%" if total else "N/A",
            "fallback_rate": f"{self.fallback_hits / total * 100:.1f}%" if total else "N/A",
        }


def create_geocoder(
    geocoder_type: str = "geocodio",
    geocodio_api_key: str = "",
    google_api_key: str = "",
    **kwargs,
) -> Optional[Geocoder]:
    """Factory function to create a geocoder instance.

    Args:
        geocoder_type: "geocodio" (default), "google", or "chained" (Geocodio + Google fallback)
        geocodio_api_key / google_api_key: keys for the respective providers
        kwargs: timeout, max_retries, max_wait, current_congress

    Returns None when no usable key is configured; the engine then resolves
    from the reference table and prefix defaults only.
    """
    congress = kwargs.pop("current_congress", 119)
    if geocoder_type == "chained" and geocodio_api_key and google_api_key:
        return ChainedGeocoder(
            GeocodioGeocoder(geocodio_api_key, current_congress=congress, **kwargs),
            GoogleGeocoder(google_api_key, **kwargs),
        )
    if geocoder_type == "google" and google_api_key:
        return GoogleGeocoder(google_api_key, **kwargs)
    if geocodio_api_key:
        return GeocodioGeocoder(geocodio_api_key, current_congress=congress, **kwargs)
    if google_api_key:
        return GoogleGeocoder(google_api_key, **kwargs)
    logger.warning("No geocoder API key configured; geocoding disabled")
    return None
