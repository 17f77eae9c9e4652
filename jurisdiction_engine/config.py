"""Configuration for the jurisdiction engine."""

import os
from dataclasses import dataclass, field
from pathlib import Path


_ROOT = Path(__file__).parent.parent
_DATA = Path(__file__).parent / "data"


@dataclass
class Config:
    # Reference data (bundled)
    reference_file: Path = _DATA / "reference_zips.json"
    corrections_file: Path = _ROOT / "data" / "corrections" / "zip_corrections.json"
    corrections_db: Path = _ROOT / "data" / "corrections.db"

    # District boundary shapefiles (Census TIGER/Line, optional)
    congressional_shp: Path = _ROOT / "boundaries" / "tl_2024_us_cd119.shp"
    state_senate_shp: Path = _ROOT / "boundaries" / "tl_2024_06_sldu.shp"
    state_assembly_shp: Path = _ROOT / "boundaries" / "tl_2024_06_sldl.shp"
    zcta_shp: Path = _ROOT / "boundaries" / "tl_2020_us_zcta520.shp"
    load_boundaries: bool = True
    postgis_url: str = ""

    # Cache
    cache_db: Path = _ROOT / "data" / "jurisdiction_cache.db"
    memory_cache_size: int = 5000
    cache_ttl_days: int = 30
    fallback_ttl_minutes: int = 15  # 0 = never cache FALLBACK_DEFAULT results

    # Geocoder
    geocoder_type: str = "geocodio"  # "geocodio", "google", or "chained" (Geocodio + Google fallback)
    geocodio_api_key: str = ""
    google_api_key: str = ""
    geocoder_timeout: float = 5.0
    geocoder_max_retries: int = 2
    geocoder_max_wait: float = 10.0  # cap on Retry-After we are willing to sleep through
    current_congress: int = 119
    geocoder_failure_threshold: int = 3
    geocoder_cooldown_seconds: int = 300

    # Coverage
    full_coverage_states: list = field(default_factory=lambda: ["CA"])
    out_of_coverage_policy: str = "federal_only"  # "federal_only" or "reject"

    # Spatial
    target_crs: str = "EPSG:4326"  # WGS84 for lat/lon queries
    area_crs: str = "EPSG:5070"    # CONUS Albers equal-area for km² / overlap shares
    min_overlap_share: float = 0.02  # ignore ZCTA/district slivers below 2%

    # Classifier
    city_match_threshold: int = 90

    @classmethod
    def from_env(cls, **overrides) -> "Config":
        """Build a Config from environment variables, then apply keyword overrides."""
        env = os.environ
        kwargs = {}
        if env.get("GEOCODIO_API_KEY"):
            kwargs["geocodio_api_key"] = env["GEOCODIO_API_KEY"]
        if env.get("GOOGLE_API_KEY"):
            kwargs["google_api_key"] = env["GOOGLE_API_KEY"]
        if env.get("GEOCODER_TYPE"):
            kwargs["geocoder_type"] = env["GEOCODER_TYPE"]
        if env.get("POSTGIS_URL"):
            kwargs["postgis_url"] = env["POSTGIS_URL"]
        if env.get("JURISDICTION_CACHE_DB"):
            kwargs["cache_db"] = Path(env["JURISDICTION_CACHE_DB"])
        if env.get("REFERENCE_FILE"):
            kwargs["reference_file"] = Path(env["REFERENCE_FILE"])
        if env.get("CACHE_TTL_DAYS"):
            kwargs["cache_ttl_days"] = int(env["CACHE_TTL_DAYS"])
        if env.get("FULL_COVERAGE_STATES"):
            kwargs["full_coverage_states"] = [
                s.strip().upper() for s in env["FULL_COVERAGE_STATES"].split(",") if s.strip()
            ]
        if env.get("OUT_OF_COVERAGE_POLICY"):
            kwargs["out_of_coverage_policy"] = env["OUT_OF_COVERAGE_POLICY"].lower()
        if env.get("SKIP_BOUNDARIES", "").lower() in ("1", "true", "yes"):
            kwargs["load_boundaries"] = False
        kwargs.update(overrides)
        return cls(**kwargs)
