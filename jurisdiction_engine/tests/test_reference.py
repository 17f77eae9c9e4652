"""Tests for the bundled reference dataset and its loader."""

import json

import pytest

from jurisdiction_engine.config import Config
from jurisdiction_engine.exceptions import ReferenceDataError
from jurisdiction_engine.models import JurisdictionType
from jurisdiction_engine.reference import ReferenceDataset


@pytest.fixture(scope="module")
def dataset():
    return ReferenceDataset.load(Config().reference_file)


def _write(tmp_path, payload):
    path = tmp_path / "ref.json"
    path.write_text(payload if isinstance(payload, str) else json.dumps(payload))
    return path


class TestBundledDataset:
    def test_loads_with_version(self, dataset):
        assert dataset.version == "2025.1"
        assert len(dataset) > 50

    def test_sacramento_entry(self, dataset):
        entry = dataset.lookup("95814")
        assert entry.city == "Sacramento"
        assert entry.county == "Sacramento County"
        assert entry.state == "CA"
        assert (entry.congressional, entry.state_senate, entry.state_assembly) == (7, 6, 7)

    def test_multi_district_entry(self, dataset):
        entry = dataset.lookup("95818")
        assert entry.state_assembly == 9
        assert entry.alternates_for("state_assembly") == (7,)
        assert entry.alternates_for("congressional") == ()

    def test_cdp_has_no_city(self, dataset):
        entry = dataset.lookup("90022")
        assert entry.city is None
        assert entry.place_name == "East Los Angeles"
        assert entry.jurisdiction_type == JurisdictionType.CENSUS_DESIGNATED_PLACE

    def test_every_entry_has_state_and_county(self, dataset):
        for zip_code in ("95814", "90210", "10001", "82001", "02108"):
            entry = dataset.lookup(zip_code)
            assert entry.state and entry.county

    def test_unknown_zip(self, dataset):
        assert dataset.lookup("99999") is None
        assert "99999" not in dataset
        assert "95814" in dataset

    def test_prefix_default(self, dataset):
        assert dataset.prefix_default("95670") == ("CA", "Sacramento County")
        assert dataset.prefix_default("99999") is None

    def test_special_area_by_zip(self, dataset):
        area = dataset.special_area_for_zip("92055")
        assert area.name == "Camp Pendleton"
        assert area.jurisdiction_type == JurisdictionType.MILITARY_BASE

    def test_reverse_district_lookup_includes_alternates(self, dataset):
        zips = dataset.zips_for_district("state_assembly", 7, "CA")
        assert "95814" in zips
        assert "95818" in zips
        assert zips == sorted(zips)

    def test_reverse_lookup_rejects_unknown_chamber(self, dataset):
        with pytest.raises(ValueError):
            dataset.zips_for_district("city_council", 1)

    def test_coverage(self, dataset):
        cov = dataset.coverage()
        assert cov["version"] == "2025.1"
        assert cov["by_state"]["CA"] > 40
        assert cov["zips_with_districts"] == cov["zips"]


class TestLoaderValidation:
    def test_missing_file(self, tmp_path):
        with pytest.raises(ReferenceDataError, match="file not found"):
            ReferenceDataset.load(tmp_path / "nope.json")

    def test_duplicate_zip_rejected(self, tmp_path):
        raw = (
            '{"version": "x", "zips": {'
            '"95814": {"state": "CA", "county": "Sacramento County", "city": "Sacramento"},'
            '"95814": {"state": "CA", "county": "Yolo County", "city": "Davis"}}}'
        )
        with pytest.raises(ReferenceDataError, match="duplicate key '95814'"):
            ReferenceDataset.load(_write(tmp_path, raw))

    def test_missing_county_rejected(self, tmp_path):
        path = _write(tmp_path, {"version": "x", "zips": {"95814": {"state": "CA", "city": "Sacramento"}}})
        with pytest.raises(ReferenceDataError, match="state and county are required"):
            ReferenceDataset.load(path)

    def test_city_requires_incorporated_type(self, tmp_path):
        path = _write(tmp_path, {"version": "x", "zips": {
            "90022": {"state": "CA", "county": "Los Angeles County", "city": "East Los Angeles",
                      "type": "census_designated_place"},
        }})
        with pytest.raises(ReferenceDataError, match="city must be set"):
            ReferenceDataset.load(path)

    def test_non_integer_district_rejected(self, tmp_path):
        path = _write(tmp_path, {"version": "x", "zips": {
            "95814": {"state": "CA", "county": "Sacramento County", "city": "Sacramento", "congressional": "7"},
        }})
        with pytest.raises(ReferenceDataError, match="must be an integer"):
            ReferenceDataset.load(path)

    def test_bad_zip_key_rejected(self, tmp_path):
        path = _write(tmp_path, {"version": "x", "zips": {
            "9581": {"state": "CA", "county": "Sacramento County", "city": "Sacramento"},
        }})
        with pytest.raises(ReferenceDataError, match="bad ZIP key"):
            ReferenceDataset.load(path)

    def test_unknown_alternate_chamber_rejected(self, tmp_path):
        path = _write(tmp_path, {"version": "x", "zips": {
            "95814": {"state": "CA", "county": "Sacramento County", "city": "Sacramento",
                      "alternates": {"city_council": [3]}},
        }})
        with pytest.raises(ReferenceDataError, match="unknown chamber"):
            ReferenceDataset.load(path)

    def test_entries_are_read_only(self, tmp_path):
        path = _write(tmp_path, {"version": "x", "zips": {
            "95814": {"state": "CA", "county": "Sacramento County", "city": "Sacramento"},
        }})
        dataset = ReferenceDataset.load(path)
        with pytest.raises(TypeError):
            dataset._entries["95815"] = dataset.lookup("95814")
