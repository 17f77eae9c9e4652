"""Tests for the two-tier result cache."""

import time
from unittest.mock import patch

import pytest

from jurisdiction_engine.cache import JurisdictionCache, MemoryCache, district_tags
from jurisdiction_engine.models import JurisdictionLevel, JurisdictionType, Source, ZipLookupResult


def _result(zip_code="95814", state="CA", cd=7, sd=6, ad=7, alternates=None, version="2025.1"):
    return ZipLookupResult(
        zip_code=zip_code,
        city="Sacramento",
        county="Sacramento County",
        state=state,
        source=Source.STATIC_TABLE,
        data_quality_score=1.0,
        jurisdiction_level=JurisdictionLevel.FULL_COVERAGE,
        jurisdiction_type=JurisdictionType.INCORPORATED_CITY,
        is_incorporated=True,
        congressional_district=cd,
        state_senate_district=sd,
        state_assembly_district=ad,
        multi_district=bool(alternates),
        alternate_districts=alternates or {},
        dataset_version=version,
    )


@pytest.fixture
def cache(tmp_path):
    c = JurisdictionCache(tmp_path / "cache.db", memory_size=100)
    yield c
    c.close()


class TestMemoryCache:
    def test_lru_eviction(self):
        mem = MemoryCache(max_entries=2)
        far = time.time() + 60
        mem.set("a", _result("95814"), far)
        mem.set("b", _result("95815"), far)
        mem.get("a")
        mem.set("c", _result("95816"), far)
        assert mem.get("b") is None
        assert mem.get("a") is not None
        assert mem.get("c") is not None

    def test_expiry(self):
        mem = MemoryCache()
        mem.set("a", _result(), time.time() - 1)
        assert mem.get("a") is None
        assert len(mem) == 0


class TestJurisdictionCache:
    def test_round_trip_through_sqlite(self, cache, tmp_path):
        cache.set("95818", _result("95818", ad=9, alternates={"state_assembly": (7,)}), ttl_seconds=60)
        cache.memory.clear()

        cached = cache.get("95818")
        assert cached.state_assembly_district == 9
        assert cached.alternate_districts == {"state_assembly": (7,)}
        assert cached.multi_district
        assert cache.stats["hits"] == 1
        assert cache.stats["memory_hits"] == 0

        # second read is served from memory
        cache.get("95818")
        assert cache.stats["memory_hits"] == 1

    def test_shared_between_instances(self, cache, tmp_path):
        cache.set("95814", _result(), ttl_seconds=60)
        other = JurisdictionCache(tmp_path / "cache.db")
        try:
            assert other.get("95814").city == "Sacramento"
        finally:
            other.close()

    def test_ttl_expiry(self, cache):
        now = time.time()
        with patch("jurisdiction_engine.cache.time.time", return_value=now):
            cache.set("95814", _result(), ttl_seconds=10)
        with patch("jurisdiction_engine.cache.time.time", return_value=now + 11):
            assert cache.get("95814") is None
            assert cache.clear_expired() == 1
        assert cache.size == 0

    def test_zero_ttl_not_cached(self, cache):
        cache.set("95814", _result(), ttl_seconds=0)
        assert cache.get("95814") is None
        assert cache.size == 0

    def test_invalidate_zip(self, cache):
        cache.set("95814", _result(), ttl_seconds=60)
        assert cache.invalidate("95814") == 1
        assert cache.get("95814") is None

    def test_invalidate_state(self, cache):
        cache.set("95814", _result(), ttl_seconds=60)
        cache.set("10001", _result("10001", state="NY", cd=12, sd=None, ad=None), ttl_seconds=60)
        assert cache.invalidate_state("CA") == 1
        assert cache.get("95814") is None
        assert cache.get("10001") is not None

    def test_invalidate_district_matches_alternates(self, cache):
        cache.set("95814", _result(ad=7), ttl_seconds=60)
        cache.set("95818", _result("95818", ad=9, alternates={"state_assembly": (7,)}), ttl_seconds=60)
        cache.set("95825", _result("95825", ad=8), ttl_seconds=60)
        # "|ad:7|" must not match ad 70-79
        cache.set("92602", _result("92602", cd=47, sd=37, ad=74), ttl_seconds=60)

        assert cache.invalidate_district("state_assembly", 7) == 2
        assert cache.get("95814") is None
        assert cache.get("95818") is None
        assert cache.get("95825") is not None
        assert cache.get("92602") is not None

    def test_invalidate_district_within_state(self, cache):
        cache.set("95814", _result(cd=7), ttl_seconds=60)
        cache.set("60601", _result("60601", state="IL", cd=7, sd=None, ad=None), ttl_seconds=60)
        assert cache.invalidate_district("congressional", 7, state="IL") == 1
        assert cache.get("95814") is not None

    def test_invalidate_other_versions(self, cache):
        cache.set("95814", _result(version="2024.2"), ttl_seconds=60)
        cache.set("95815", _result("95815", version="2025.1"), ttl_seconds=60)
        assert cache.invalidate_other_versions("2025.1") == 1
        assert cache.get("95814") is None
        assert cache.get("95815") is not None

    def test_clear(self, cache):
        cache.set("95814", _result(), ttl_seconds=60)
        cache.set("95815", _result("95815"), ttl_seconds=60)
        assert cache.clear() == 2
        assert cache.size == 0
        assert len(cache.memory) == 0

    def test_unknown_chamber(self, cache):
        with pytest.raises(ValueError):
            cache.invalidate_district("city_council", 1)


def test_district_tags():
    tags = district_tags(_result("95818", ad=9, alternates={"state_assembly": (7,)}))
    assert tags == "|cd:7|sd:6|ad:9|ad:7|"
