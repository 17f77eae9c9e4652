"""ResolutionEngine — orchestrates cache, corrections, reference table, geocoding, districts, classification and scoring."""

import logging
import re
import threading
import time
from collections import Counter
from typing import Iterable, List, Optional, Tuple, Union

from .cache import JurisdictionCache
from .classifier import JurisdictionClassifier
from .config import Config
from .corrections import Correction, CorrectionsStore, validate_fields
from .districts import DistrictResolver
from .exceptions import (
    GeocoderError,
    GeocoderNoMatch,
    GeocoderRateLimited,
    InvalidZipFormat,
    JurisdictionEngineError,
    OutOfCoverageArea,
    ResolutionUnavailable,
    ZipNotRecognized,
)
from .geocoder import Geocoder, create_geocoder
from .models import CHAMBERS, GeocodedZip, JurisdictionInfo, JurisdictionLevel, Source, ZipLookupResult
from .postgis_spatial import PostGISDistrictIndex
from .reference import ReferenceDataset
from .scorer import FALLBACK_MESSAGE, LOW_CONFIDENCE_MESSAGE, QualityScorer
from .singleflight import SingleFlight
from .spatial_index import DistrictBoundaryIndex
from .zip_ranges import state_for_prefix, state_name

logger = logging.getLogger(__name__)

_ZIP_PATTERN = re.compile(r"^(\d{5})(?:-?\d{4})?$")

# Sentinel: build the geocoder from config (None means geocoding disabled)
_FROM_CONFIG = object()


def normalize_zip(raw) -> str:
    """Return the 5-digit ZIP, stripping a ZIP+4 suffix. Raises InvalidZipFormat."""
    text = "" if raw is None else str(raw).strip()
    match = _ZIP_PATTERN.match(text)
    if not match:
        raise InvalidZipFormat(text)
    return match.group(1)


class ResolutionEngine:
    """
    ZIP-to-jurisdiction resolution engine.

    Takes a ZIP code and returns county, state, incorporated city (or
    unincorporated status), congressional / state senate / state assembly
    districts, a jurisdiction level and a data-quality score. Sources in
    priority order: manual corrections, the reference table, the geocoder,
    then ZIP-prefix defaults.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        geocoder: Union[Geocoder, None, object] = _FROM_CONFIG,
        reference: Optional[ReferenceDataset] = None,
        boundary_index=None,
        use_cache: bool = True,
    ):
        self.config = config or Config()

        logger.info("Initializing ResolutionEngine...")
        t0 = time.time()

        # Reference table (single authoritative dataset)
        self.reference = reference or ReferenceDataset.load(self.config.reference_file)

        # District boundaries: PostGIS if available, else in-memory geopandas
        if boundary_index is None:
            boundary_index = self._build_boundary_index()
        self.boundary_index = boundary_index
        self.districts = DistrictResolver(boundary_index)

        self.classifier = JurisdictionClassifier(self.reference, self.config.city_match_threshold)
        self.scorer = QualityScorer()

        # Geocoder
        if geocoder is _FROM_CONFIG:
            geocoder = create_geocoder(
                self.config.geocoder_type,
                geocodio_api_key=self.config.geocodio_api_key,
                google_api_key=self.config.google_api_key,
                timeout=self.config.geocoder_timeout,
                max_retries=self.config.geocoder_max_retries,
                max_wait=self.config.geocoder_max_wait,
                current_congress=self.config.current_congress,
            )
        self.geocoder: Optional[Geocoder] = geocoder

        # Priority 0: manual corrections (highest priority)
        self.corrections = CorrectionsStore(self.config.corrections_db, self.config.corrections_file)

        # Cache
        self.cache: Optional[JurisdictionCache] = None
        if use_cache:
            self.cache = JurisdictionCache(self.config.cache_db, self.config.memory_cache_size)
            self.cache.invalidate_other_versions(self.reference.version)

        self.single_flight = SingleFlight()
        self._full_coverage = {s.upper() for s in self.config.full_coverage_states}

        # Geocoder circuit breaker: pause after consecutive failures or a rate limit
        self._geocoder_lock = threading.Lock()
        self._geocoder_failures = 0
        self._geocoder_paused_until = 0.0

        self._counters: Counter = Counter()
        self._counter_lock = threading.Lock()

        elapsed = time.time() - t0
        logger.info(
            f"ResolutionEngine ready in {elapsed:.1f}s: "
            f"reference={len(self.reference)} ZIPs (v{self.reference.version}), "
            f"geocoder={self.geocoder.name if self.geocoder else 'disabled'}, "
            f"boundaries={'loaded' if boundary_index is not None and boundary_index.is_loaded else 'none'}, "
            f"cache={self.cache.size if self.cache else 'disabled'}"
        )

    def _build_boundary_index(self):
        if self.config.postgis_url:
            index = PostGISDistrictIndex(self.config.postgis_url, self.config.min_overlap_share)
            if index.is_loaded:
                return index
            logger.warning("PostGIS unavailable, falling back to in-memory district index")
        if not self.config.load_boundaries:
            return None
        index = DistrictBoundaryIndex(self.config)
        index.load_all()
        return index if index.is_loaded else None

    def _bump(self, name: str, n: int = 1):
        with self._counter_lock:
            self._counters[name] += n

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve(self, zip_code: str, use_cache: bool = True) -> ZipLookupResult:
        """
        Resolve a ZIP code to its jurisdiction bundle.

        1. Normalise (strip ZIP+4, require 5 digits)
        2. Cache check
        3. Single-flight: concurrent misses for one ZIP share one resolution
        4. Corrections → reference table → geocoder → prefix fallback
        5. Districts + classification, coverage policy, score
        6. Cache and return

        Raises InvalidZipFormat (including ZipNotRecognized) and, under the
        "reject" coverage policy, OutOfCoverageArea. ResolutionUnavailable is
        raised for a ZIP with no prefix default while the geocoder is down.
        """
        zip5 = normalize_zip(zip_code)
        self._bump("lookups")

        if use_cache and self.cache is not None:
            cached = self.cache.get(zip5)
            if cached is not None:
                logger.debug(f"Cache hit for {zip5}")
                self._enforce_coverage(zip5, cached.state)
                return cached

        return self.single_flight.do(zip5, lambda: self._resolve_uncached(zip5, use_cache))

    def _resolve_uncached(self, zip5: str, use_cache: bool) -> ZipLookupResult:
        t0 = time.time()

        # Another leader may have finished between our cache miss and taking the flight
        if use_cache and self.cache is not None:
            cached = self.cache.get(zip5)
            if cached is not None:
                self._enforce_coverage(zip5, cached.state)
                return cached

        reference = self.reference
        notes: List[str] = []
        revision = 0

        # Priority 0: corrections overlay the reference entry
        entry = reference.lookup(zip5)
        correction = self.corrections.lookup(zip5)
        if correction is not None:
            try:
                entry = correction.apply(entry)
                revision = correction.revision
                notes.extend(correction.notes)
            except ValueError as e:
                logger.warning(f"Ignoring correction for {zip5}: {e}")

        geocoded: Optional[GeocodedZip] = None
        point: Optional[Tuple[float, float]] = None
        city_hint: Optional[str] = None

        if entry is not None:
            # Priority 1: reference table
            source = Source.STATIC_TABLE
            state, county = entry.state, entry.county
            if entry.lat is not None and entry.lon is not None:
                point = (entry.lat, entry.lon)
        else:
            # Priority 2: geocoder
            geocoded, degraded = self._geocode(zip5, notes)
            if geocoded is not None and geocoded.county:
                source = Source.GEOCODER
                state, county = geocoded.state, geocoded.county
                point = (geocoded.lat, geocoded.lon)
                city_hint = geocoded.city
            else:
                if geocoded is not None:
                    notes.append(f"{geocoded.provider} returned no county for {zip5}")
                    geocoded = None
                # Priority 3: ZIP-prefix defaults
                source = Source.FALLBACK_DEFAULT
                state, county = self._fallback_location(zip5, geocoder_degraded=degraded)
                self._bump("fallbacks")

        self._enforce_coverage(zip5, state)
        covered = state in self._full_coverage

        if point is None and self.boundary_index is not None and self.boundary_index.is_loaded:
            point = self.boundary_index.zcta_point(zip5)

        chambers = CHAMBERS if covered else ("congressional",)
        districts = self.districts.resolve_districts(
            zip5, state, point=point, entry=entry, geocoded=geocoded, chambers=chambers
        )
        info = self.classifier.classify(zip5, county, state, city_hint=city_hint, entry=entry)

        level = self._jurisdiction_level(covered, source, info)
        score = self.scorer.score(
            source, districts, info,
            geocoder_accuracy=geocoded.confidence if geocoded is not None else None,
        )

        message = None
        if source == Source.FALLBACK_DEFAULT:
            message = FALLBACK_MESSAGE
        elif not covered:
            message = f"{state_name(state)} is outside full coverage; federal representatives only"
        elif score < 0.5:
            message = LOW_CONFIDENCE_MESSAGE

        result = ZipLookupResult(
            zip_code=zip5,
            city=info.city,
            county=county,
            state=state,
            place_name=info.place_name,
            congressional_district=districts.congressional,
            state_senate_district=districts.state_senate if covered else None,
            state_assembly_district=districts.state_assembly if covered else None,
            jurisdiction_level=level,
            jurisdiction_type=info.jurisdiction_type,
            is_incorporated=info.is_incorporated,
            multi_district=districts.multi_district,
            alternate_districts=dict(districts.alternates),
            secondary_counties=tuple(info.secondary_counties),
            latitude=round(point[0], 6) if point else None,
            longitude=round(point[1], 6) if point else None,
            data_quality_score=score,
            source=source,
            message=message,
            notes=tuple(notes + districts.notes + info.notes),
            revision=revision,
            dataset_version=reference.version,
        )

        if use_cache and self.cache is not None:
            self.cache.set(zip5, result, self._ttl_seconds(source))

        elapsed_ms = int((time.time() - t0) * 1000)
        logger.info(
            f"Resolve {zip5} -> {result.city or result.place_name or 'unincorporated'}, "
            f"{result.county}, {result.state} cd={result.congressional_district} "
            f"sd={result.state_senate_district} ad={result.state_assembly_district} "
            f"[{source.value} {score:.2f}] ({elapsed_ms}ms)"
        )
        return result

    def _geocode(self, zip5: str, notes: List[str]) -> Tuple[Optional[GeocodedZip], bool]:
        """Call the geocoder unless paused. Never raises for upstream failures.

        Returns (result, degraded); degraded is True when the geocoder was
        paused, rate limited or unavailable rather than answering.
        """
        if self.geocoder is None:
            return None, False
        with self._geocoder_lock:
            paused_for = self._geocoder_paused_until - time.time()
        if paused_for > 0:
            self._bump("geocoder_skipped")
            notes.append("Geocoder temporarily paused; resolved without it")
            return None, True

        self._bump("geocoder_calls")
        try:
            result = self.geocoder.geocode(zip5)
        except GeocoderNoMatch as e:
            logger.info(f"Geocoder has no match for {zip5}: {e}")
            self._geocoder_succeeded()
            return None, False
        except GeocoderRateLimited as e:
            self._bump("geocoder_failures")
            pause = e.retry_after or self.config.geocoder_cooldown_seconds
            with self._geocoder_lock:
                self._geocoder_paused_until = max(self._geocoder_paused_until, time.time() + pause)
            logger.warning(f"Geocoder rate limited on {zip5}; pausing for {pause:.0f}s")
            notes.append("Geocoder rate limited; resolved without it")
            return None, True
        except GeocoderError as e:
            self._bump("geocoder_failures")
            self._geocoder_failed()
            logger.warning(f"Geocoder unavailable for {zip5}: {e}")
            notes.append("Geocoder unavailable; resolved without it")
            return None, True
        self._geocoder_succeeded()
        return result, False

    def _geocoder_failed(self):
        """Track consecutive failures and pause the geocoder if threshold reached."""
        with self._geocoder_lock:
            self._geocoder_failures += 1
            if self._geocoder_failures >= self.config.geocoder_failure_threshold:
                self._geocoder_paused_until = time.time() + self.config.geocoder_cooldown_seconds
                logger.warning(
                    f"Geocoder circuit breaker: paused for {self.config.geocoder_cooldown_seconds}s "
                    f"after {self._geocoder_failures} consecutive failures"
                )
                self._geocoder_failures = 0

    def _geocoder_succeeded(self):
        with self._geocoder_lock:
            self._geocoder_failures = 0

    def reset_geocoder_circuit(self):
        """Resume geocoder use immediately (e.g., after fixing an API key)."""
        with self._geocoder_lock:
            self._geocoder_failures = 0
            self._geocoder_paused_until = 0.0

    def _fallback_location(self, zip5: str, geocoder_degraded: bool = False) -> Tuple[str, str]:
        """(state, county) from a special area listing the ZIP, else the ZIP prefix.

        Raises ResolutionUnavailable when the prefix names a state but has no
        county default and the geocoder could not be asked; otherwise
        ZipNotRecognized.
        """
        state = state_for_prefix(zip5)
        area = self.reference.special_area_for_zip(zip5)
        if area is not None and area.state == state:
            return area.state, area.county
        default = self.reference.prefix_default(zip5)
        if state is not None and default is not None and default[0] == state:
            return default
        if geocoder_degraded and state is not None:
            with self._geocoder_lock:
                paused_for = self._geocoder_paused_until - time.time()
            retry_after = paused_for if paused_for > 0 else None
            logger.warning(f"Cannot place {zip5} ({state}) in a county while the geocoder is down")
            raise ResolutionUnavailable(zip5, state, retry_after)
        logger.info(f"No source can place {zip5} in a county")
        raise ZipNotRecognized(zip5)

    def _enforce_coverage(self, zip5: str, state: str):
        if state in self._full_coverage or self.config.out_of_coverage_policy != "reject":
            return
        names = " / ".join(state_name(s) for s in sorted(self._full_coverage)) or "Supported"
        raise OutOfCoverageArea(zip5, state, f"{names} ZIP codes only")

    @staticmethod
    def _jurisdiction_level(covered: bool, source: Source, info: JurisdictionInfo) -> JurisdictionLevel:
        if not covered:
            return JurisdictionLevel.FEDERAL_ONLY
        if source == Source.FALLBACK_DEFAULT or not info.is_incorporated:
            return JurisdictionLevel.COUNTY_ONLY
        return JurisdictionLevel.FULL_COVERAGE

    def _ttl_seconds(self, source: Source) -> int:
        if source == Source.FALLBACK_DEFAULT:
            return self.config.fallback_ttl_minutes * 60
        return self.config.cache_ttl_days * 86400

    # ------------------------------------------------------------------
    # Batch, invalidation, corrections, reference reload
    # ------------------------------------------------------------------

    def resolve_many(
        self, zip_codes: Iterable[str], use_cache: bool = True
    ) -> List[Tuple[str, Union[ZipLookupResult, JurisdictionEngineError]]]:
        """
        Batch resolve with progress logging.

        Returns (input, result) pairs; input errors are returned in place of
        the result rather than raised.
        """
        zip_codes = list(zip_codes)
        results = []
        total = len(zip_codes)
        for i, raw in enumerate(zip_codes, 1):
            try:
                results.append((raw, self.resolve(raw, use_cache=use_cache)))
            except JurisdictionEngineError as e:
                results.append((raw, e))
            if i % 100 == 0 or i == total:
                logger.info(f"Batch progress: {i}/{total}")
        return results

    def invalidate(
        self,
        zip_code: Optional[str] = None,
        state: Optional[str] = None,
        chamber: Optional[str] = None,
        district: Optional[int] = None,
    ) -> int:
        """Drop cached results by ZIP, by state, or by district (optionally within a state)."""
        if self.cache is None:
            return 0
        if zip_code:
            return self.cache.invalidate(normalize_zip(zip_code))
        if chamber and district is not None:
            return self.cache.invalidate_district(chamber, int(district), state.upper() if state else None)
        if state:
            return self.cache.invalidate_state(state.upper())
        raise ValueError("invalidate() needs zip_code, state, or chamber and district")

    def clear_cache(self) -> int:
        return self.cache.clear() if self.cache is not None else 0

    def apply_correction(
        self, zip_code: str, fields: dict, note: str = "", corrected_by: str = "admin"
    ) -> ZipLookupResult:
        """Record a manual correction, invalidate the ZIP and return the re-resolved result."""
        zip5 = normalize_zip(zip_code)
        validate_fields(fields)

        # Dry-run the merged correction so an inconsistent one is never stored
        existing = self.corrections.lookup(zip5)
        merged = dict(existing.fields) if existing else {}
        merged.update(fields)
        Correction(zip_code=zip5, fields=merged).apply(self.reference.lookup(zip5))

        self.corrections.record(zip5, fields, note=note, corrected_by=corrected_by)
        if self.cache is not None:
            self.cache.invalidate(zip5)
        result = self.resolve(zip5)
        logger.info(f"Correction applied to {zip5} (revision {result.revision})")
        return result

    def reload_reference(self, path=None) -> str:
        """Swap in a new reference dataset; cached results from other versions are dropped."""
        dataset = ReferenceDataset.load(path or self.config.reference_file)
        self.reference = dataset
        self.classifier.reference = dataset
        dropped = self.cache.invalidate_other_versions(dataset.version) if self.cache is not None else 0
        logger.info(f"Reference reloaded: version {dataset.version}, {dropped} cached results dropped")
        return dataset.version

    def zip_codes_for_district(self, chamber: str, number: int, state: Optional[str] = None) -> List[str]:
        """ZIPs in the reference table whose primary or alternate district matches."""
        return self.reference.zips_for_district(chamber, number, state.upper() if state else None)

    @property
    def stats(self) -> dict:
        with self._counter_lock:
            counters = dict(self._counters)
        with self._geocoder_lock:
            paused_for = max(0.0, self._geocoder_paused_until - time.time())
        geocoder_stats = {
            "provider": self.geocoder.name if self.geocoder else None,
            "calls": counters.get("geocoder_calls", 0),
            "failures": counters.get("geocoder_failures", 0),
            "skipped_while_paused": counters.get("geocoder_skipped", 0),
            "paused_for_seconds": round(paused_for, 1),
        }
        if self.geocoder is not None and hasattr(self.geocoder, "stats"):
            geocoder_stats["chain"] = self.geocoder.stats
        return {
            "lookups": counters.get("lookups", 0),
            "fallbacks": counters.get("fallbacks", 0),
            "single_flight_collapsed": self.single_flight.collapsed,
            "cache": self.cache.stats if self.cache is not None else None,
            "geocoder": geocoder_stats,
            "districts": self.districts.stats,
            "reference": self.reference.coverage(),
            "corrections": len(self.corrections.zip_codes()),
            "full_coverage_states": sorted(self._full_coverage),
        }

    def close(self):
        if self.cache is not None:
            self.cache.close()
