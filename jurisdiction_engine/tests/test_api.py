"""Tests for the FastAPI service (engine injected, lifespan not run)."""

import pytest
from fastapi.testclient import TestClient

import api
from jurisdiction_engine.exceptions import GeocoderRateLimited


@pytest.fixture
def client(engine, monkeypatch):
    monkeypatch.setattr(api, "engine", engine)
    return TestClient(api.app)


class TestHealth:
    def test_loaded(self, client):
        body = client.get("/health").json()
        assert body["status"] == "ok"
        assert body["engine_loaded"] is True
        assert body["dataset_version"] == "2025.1"

    def test_loading(self, monkeypatch):
        monkeypatch.setattr(api, "engine", None)
        client = TestClient(api.app)
        assert client.get("/health").json()["status"] == "loading"
        assert client.get("/verify-zip", params={"zip": "95814"}).status_code == 503


class TestVerifyZip:
    def test_get(self, client):
        resp = client.get("/verify-zip", params={"zip": "95814"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["valid"] is True
        assert body["city"] == "Sacramento"
        assert body["county"] == "Sacramento County"
        assert body["jurisdiction_level"] == "FULL_COVERAGE"
        assert body["local_government"]["title"] == "City of Sacramento"
        assert body["government_levels"] == ["federal", "state", "county", "municipal"]

    def test_post_camel_case(self, client):
        resp = client.post("/verify-zip", json={"zipCode": "90210"})
        assert resp.status_code == 200
        assert resp.json()["city"] == "Beverly Hills"

    def test_post_snake_case(self, client):
        resp = client.post("/verify-zip", json={"zip_code": "95818"})
        assert resp.json()["multi_district"] is True

    def test_invalid_format(self, client):
        resp = client.get("/verify-zip", params={"zip": "ABCDE"})
        assert resp.status_code == 400
        assert resp.json() == {
            "valid": False,
            "error": "INVALID_ZIP_FORMAT",
            "message": "Invalid ZIP code format. Expected 5 digits.",
        }

    def test_over_long_input_is_invalid_format(self, client):
        resp = client.get("/verify-zip", params={"zip": "95814-12345678"})
        assert resp.status_code == 400
        assert resp.json()["valid"] is False
        assert resp.json()["error"] == "INVALID_ZIP_FORMAT"

    def test_geocoder_outage_is_retriable(self, client, fake_geocoder):
        fake_geocoder.errors.append(GeocoderRateLimited("fake", "75201", retry_after=30))
        resp = client.get("/verify-zip", params={"zip": "75201"})
        assert resp.status_code == 503
        assert resp.json()["error"] == "GEOCODER_UNAVAILABLE"
        assert 1 <= int(resp.headers["Retry-After"]) <= 30

    def test_not_recognized(self, client):
        resp = client.post("/verify-zip", json={"zipCode": "99999"})
        assert resp.status_code == 404
        assert resp.json()["error"] == "ZIP_NOT_FOUND"
        assert resp.json()["message"] == "ZIP code not recognized."

    def test_out_of_coverage_rejected(self, client, engine):
        engine.config.out_of_coverage_policy = "reject"
        resp = client.get("/verify-zip", params={"zip": "10001"})
        assert resp.status_code == 422
        assert resp.json()["error"] == "OUT_OF_COVERAGE"
        assert resp.json()["message"] == "California ZIP codes only"

    def test_out_of_coverage_federal_only(self, client):
        body = client.get("/verify-zip", params={"zip": "10001"}).json()
        assert body["valid"] is True
        assert body["jurisdiction_level"] == "FEDERAL_ONLY"
        assert body["government_levels"] == ["federal"]


class TestBatch:
    def test_mixed_batch(self, client):
        resp = client.post("/verify-zip/batch", json={"zipCodes": ["95814", "ABCDE", "90210"]})
        assert resp.status_code == 200
        body = resp.json()
        assert body["total"] == 3
        assert body["valid"] == 2
        assert body["results"][1] == {
            "input": "ABCDE",
            "valid": False,
            "error": "INVALID_ZIP_FORMAT",
            "message": "Invalid ZIP code format. Expected 5 digits.",
        }

    def test_empty_batch(self, client):
        assert client.post("/verify-zip/batch", json={"zipCodes": []}).status_code == 400

    def test_batch_limit(self, client):
        resp = client.post("/verify-zip/batch", json={"zipCodes": ["95814"] * 101})
        assert resp.status_code == 422


class TestAdmin:
    def test_invalidate_state(self, client):
        client.get("/verify-zip", params={"zip": "95814"})
        resp = client.post("/admin/invalidate", json={"state": "CA"})
        assert resp.json() == {"invalidated": 1}

    def test_invalidate_all(self, client):
        client.get("/verify-zip", params={"zip": "95814"})
        client.get("/verify-zip", params={"zip": "90210"})
        assert client.post("/admin/invalidate", json={"all": True}).json() == {"invalidated": 2}

    def test_invalidate_without_target(self, client):
        assert client.post("/admin/invalidate", json={}).status_code == 400

    def test_correction(self, client):
        resp = client.post("/admin/corrections", json={
            "zip_code": "95814",
            "fields": {"state_assembly": 8},
            "note": "Boundary fix",
            "corrected_by": "ops",
        })
        assert resp.status_code == 200
        assert resp.json()["state_assembly_district"] == 8
        assert resp.json()["revision"] == 1

    def test_bad_correction(self, client):
        resp = client.post("/admin/corrections", json={"zip_code": "95814", "fields": {"mayor": "x"}})
        assert resp.status_code == 400

    def test_reload_reference(self, client):
        resp = client.post("/admin/reload-reference", json={})
        assert resp.json()["dataset_version"] == "2025.1"

    def test_reload_reference_bad_path(self, client, tmp_path):
        resp = client.post("/admin/reload-reference", json={"path": str(tmp_path / "missing.json")})
        assert resp.status_code == 400


class TestReporting:
    def test_district_zip_codes(self, client):
        body = client.get("/districts/state_assembly/9", params={"state": "ca"}).json()
        assert body["state"] == "CA"
        assert "95818" in body["zip_codes"]

    def test_unknown_chamber(self, client):
        assert client.get("/districts/city_council/1").status_code == 400

    def test_stats(self, client):
        client.get("/verify-zip", params={"zip": "95814"})
        body = client.get("/stats").json()
        assert body["lookups"] == 1
        assert body["reference"]["version"] == "2025.1"
