"""Shared fixtures: isolated config paths, a scripted geocoder, and a ready engine."""

import threading

import pytest

from jurisdiction_engine.config import Config
from jurisdiction_engine.engine import ResolutionEngine
from jurisdiction_engine.exceptions import GeocoderNoMatch
from jurisdiction_engine.geocoder import Geocoder
from jurisdiction_engine.models import GeocodedZip


class FakeGeocoder(Geocoder):
    """Geocoder double: answers from a dict, or raises a queued error."""

    name = "fake"

    def __init__(self, answers=None, delay=0.0):
        self.answers = dict(answers or {})
        self.errors = []
        self.calls = []
        self.delay = delay
        self._lock = threading.Lock()

    def geocode(self, zip_code: str) -> GeocodedZip:
        with self._lock:
            self.calls.append(zip_code)
            error = self.errors.pop(0) if self.errors else None
        if self.delay:
            threading.Event().wait(self.delay)
        if error is not None:
            raise error
        if zip_code not in self.answers:
            raise GeocoderNoMatch(self.name, zip_code, "unknown")
        return self.answers[zip_code]


def geocoded(zip_code, city="Rancho Cordova", county="Sacramento County", state="CA",
             lat=38.59, lon=-121.30, confidence=0.9, **districts):
    return GeocodedZip(
        zip_code=zip_code, lat=lat, lon=lon, confidence=confidence,
        city=city, county=county, state=state, provider="fake",
        congressional=districts.get("congressional", [7]),
        state_senate=districts.get("state_senate", [6]),
        state_assembly=districts.get("state_assembly", [8]),
    )


@pytest.fixture
def config(tmp_path):
    return Config(
        cache_db=tmp_path / "cache.db",
        corrections_db=tmp_path / "corrections.db",
        corrections_file=tmp_path / "zip_corrections.json",
        load_boundaries=False,
        postgis_url="",
    )


@pytest.fixture
def fake_geocoder():
    return FakeGeocoder({"95670": geocoded("95670")})


@pytest.fixture
def engine(config, fake_geocoder):
    eng = ResolutionEngine(config, geocoder=fake_geocoder)
    yield eng
    eng.close()
