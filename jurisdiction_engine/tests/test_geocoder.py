"""Tests for the geocoder adapters (HTTP layer mocked)."""

from unittest.mock import MagicMock, patch

import pytest
import requests

from jurisdiction_engine.exceptions import GeocoderNoMatch, GeocoderRateLimited, GeocoderUnavailable
from jurisdiction_engine.geocoder import (
    ChainedGeocoder,
    GeocodioGeocoder,
    GoogleGeocoder,
    create_geocoder,
    in_us_bounds,
)

from .conftest import FakeGeocoder, geocoded


def _response(status=200, payload=None, headers=None):
    resp = MagicMock()
    resp.status_code = status
    resp.headers = headers or {}
    if isinstance(payload, Exception):
        resp.json.side_effect = payload
    else:
        resp.json.return_value = payload
    return resp


def _geocodio_payload(zip_code="95670", lat=38.59, lng=-121.30, state="CA", accuracy=1, fields=None):
    return {
        "results": [{
            "address_components": {
                "city": "Rancho Cordova", "county": "Sacramento County",
                "state": state, "zip": zip_code, "country": "US",
            },
            "location": {"lat": lat, "lng": lng},
            "accuracy": accuracy,
            "fields": fields if fields is not None else {
                "congressional_districts": [
                    {"district_number": 3, "proportion": 0.3, "congress_number": "119th"},
                    {"district_number": 7, "proportion": 0.7, "congress_number": "119th"},
                    {"district_number": 6, "proportion": 1.0, "congress_number": "118th"},
                ],
                "state_legislative_districts": {
                    "senate": [{"district_number": "6", "proportion": 1}],
                    "house": [{"district_number": "8", "proportion": 1}],
                },
            },
        }],
    }


@pytest.fixture
def sleep():
    with patch("jurisdiction_engine.geocoder.time.sleep") as mocked:
        yield mocked


@pytest.fixture
def get():
    with patch("jurisdiction_engine.geocoder.requests.get") as mocked:
        yield mocked


class TestBounds:
    def test_conus_alaska_hawaii(self):
        assert in_us_bounds(38.58, -121.49)
        assert in_us_bounds(61.2, -149.9)
        assert in_us_bounds(21.3, -157.8)

    def test_outside(self):
        assert not in_us_bounds(51.5, -0.12)
        assert not in_us_bounds(0.0, 0.0)


class TestGeocodio:
    def test_parses_location_and_districts(self, get, sleep):
        get.return_value = _response(payload=_geocodio_payload())
        result = GeocodioGeocoder("key").geocode("95670")

        assert result.state == "CA"
        assert result.county == "Sacramento County"
        assert result.city == "Rancho Cordova"
        assert result.confidence == 1.0
        # largest share first, previous Congress dropped
        assert result.congressional == [7, 3]
        assert result.state_senate == [6]
        assert result.state_assembly == [8]

        params = get.call_args.kwargs["params"]
        assert params["postal_code"] == "95670"
        assert params["fields"] == "cd,stateleg"
        assert get.call_args.kwargs["timeout"] == 5.0

    def test_full_state_name_normalised(self, get, sleep):
        get.return_value = _response(payload=_geocodio_payload(state="California"))
        assert GeocodioGeocoder("key").geocode("95670").state == "CA"

    def test_empty_results_is_no_match(self, get, sleep):
        get.return_value = _response(payload={"results": []})
        with pytest.raises(GeocoderNoMatch):
            GeocodioGeocoder("key").geocode("95670")

    def test_other_zip_is_no_match(self, get, sleep):
        get.return_value = _response(payload=_geocodio_payload(zip_code="95671"))
        with pytest.raises(GeocoderNoMatch):
            GeocodioGeocoder("key").geocode("95670")

    def test_coordinates_outside_us_rejected(self, get, sleep):
        get.return_value = _response(payload=_geocodio_payload(lat=51.5, lng=-0.12))
        with pytest.raises(GeocoderUnavailable, match="outside US"):
            GeocodioGeocoder("key").geocode("95670")

    def test_string_coordinates_rejected(self, get, sleep):
        get.return_value = _response(payload=_geocodio_payload(lat="38.59"))
        with pytest.raises(GeocoderUnavailable, match="invalid lat"):
            GeocodioGeocoder("key").geocode("95670")

    def test_missing_results_key_rejected(self, get, sleep):
        get.return_value = _response(payload={"error": "oops"})
        with pytest.raises(GeocoderUnavailable):
            GeocodioGeocoder("key").geocode("95670")

    @pytest.mark.parametrize("component, value", [("city", 123), ("county", ["Sacramento"]), ("state", 6)])
    def test_non_string_components_rejected(self, get, sleep, component, value):
        payload = _geocodio_payload()
        payload["results"][0]["address_components"][component] = value
        get.return_value = _response(payload=payload)
        with pytest.raises(GeocoderUnavailable, match=f"invalid {component}"):
            GeocodioGeocoder("key").geocode("95670")

    def test_non_json_rejected(self, get, sleep):
        get.return_value = _response(payload=ValueError("not json"))
        with pytest.raises(GeocoderUnavailable, match="not JSON"):
            GeocodioGeocoder("key").geocode("95670")

    def test_retries_server_errors_then_succeeds(self, get, sleep):
        get.side_effect = [_response(status=503), _response(payload=_geocodio_payload())]
        result = GeocodioGeocoder("key", max_retries=2).geocode("95670")
        assert result.state == "CA"
        assert get.call_count == 2
        sleep.assert_called_once_with(0.5)

    def test_gives_up_after_retries(self, get, sleep):
        get.side_effect = requests.Timeout("slow")
        with pytest.raises(GeocoderUnavailable, match="gave up after 3 attempts"):
            GeocodioGeocoder("key", max_retries=2).geocode("95670")
        assert get.call_count == 3
        assert [c.args[0] for c in sleep.call_args_list] == [0.5, 1.0]

    def test_rate_limit_with_short_retry_after_is_retried(self, get, sleep):
        get.side_effect = [
            _response(status=429, headers={"Retry-After": "2"}),
            _response(payload=_geocodio_payload()),
        ]
        assert GeocodioGeocoder("key").geocode("95670").state == "CA"
        sleep.assert_called_once_with(2.0)

    def test_rate_limit_with_long_retry_after_raises(self, get, sleep):
        get.return_value = _response(status=429, headers={"Retry-After": "120"})
        with pytest.raises(GeocoderRateLimited) as exc:
            GeocodioGeocoder("key").geocode("95670")
        assert exc.value.retry_after == 120.0
        sleep.assert_not_called()

    def test_client_errors(self, get, sleep):
        get.return_value = _response(status=422)
        with pytest.raises(GeocoderNoMatch):
            GeocodioGeocoder("key").geocode("95670")
        get.return_value = _response(status=403)
        with pytest.raises(GeocoderUnavailable):
            GeocodioGeocoder("key").geocode("95670")

    def test_requires_key(self):
        with pytest.raises(ValueError):
            GeocodioGeocoder("")


class TestGoogle:
    @staticmethod
    def _payload(status="OK", zip_code="95670", lat=38.59, lng=-121.30):
        return {
            "status": status,
            "results": [{
                "address_components": [
                    {"long_name": "Rancho Cordova", "short_name": "Rancho Cordova", "types": ["locality"]},
                    {"long_name": "Sacramento County", "short_name": "Sacramento County",
                     "types": ["administrative_area_level_2"]},
                    {"long_name": "California", "short_name": "CA", "types": ["administrative_area_level_1"]},
                    {"long_name": zip_code, "short_name": zip_code, "types": ["postal_code"]},
                ],
                "geometry": {"location": {"lat": lat, "lng": lng}, "location_type": "APPROXIMATE"},
            }] if status == "OK" else [],
        }

    def test_parses_components(self, get, sleep):
        get.return_value = _response(payload=self._payload())
        result = GoogleGeocoder("key").geocode("95670")
        assert (result.city, result.county, result.state) == ("Rancho Cordova", "Sacramento County", "CA")
        assert result.confidence == 0.60
        assert result.congressional == []
        assert get.call_args.kwargs["params"]["components"] == "postal_code:95670|country:US"

    def test_status_mapping(self, get, sleep):
        get.return_value = _response(payload=self._payload(status="ZERO_RESULTS"))
        with pytest.raises(GeocoderNoMatch):
            GoogleGeocoder("key").geocode("95670")
        get.return_value = _response(payload=self._payload(status="OVER_QUERY_LIMIT"))
        with pytest.raises(GeocoderRateLimited):
            GoogleGeocoder("key").geocode("95670")
        get.return_value = _response(payload=self._payload(status="REQUEST_DENIED"))
        with pytest.raises(GeocoderUnavailable):
            GoogleGeocoder("key").geocode("95670")

    def test_other_zip_is_no_match(self, get, sleep):
        get.return_value = _response(payload=self._payload(zip_code="95742"))
        with pytest.raises(GeocoderNoMatch):
            GoogleGeocoder("key").geocode("95670")

    @pytest.mark.parametrize("geometry", ["oops", {"location": "oops"}, None])
    def test_malformed_geometry_rejected(self, get, sleep, geometry):
        payload = self._payload()
        payload["results"][0]["geometry"] = geometry
        get.return_value = _response(payload=payload)
        with pytest.raises(GeocoderUnavailable, match="geometry.location"):
            GoogleGeocoder("key").geocode("95670")

    @pytest.mark.parametrize("components", [
        ["oops"],
        [{"long_name": "Rancho Cordova", "types": "locality"}],
    ])
    def test_malformed_address_components_rejected(self, get, sleep, components):
        payload = self._payload()
        payload["results"][0]["address_components"] = components
        get.return_value = _response(payload=payload)
        with pytest.raises(GeocoderUnavailable, match="bad address component"):
            GoogleGeocoder("key").geocode("95670")

    def test_non_string_component_name_rejected(self, get, sleep):
        payload = self._payload()
        payload["results"][0]["address_components"][0]["long_name"] = 42
        get.return_value = _response(payload=payload)
        with pytest.raises(GeocoderUnavailable, match="invalid long_name"):
            GoogleGeocoder("key").geocode("95670")

    def test_results_not_a_list_rejected(self, get, sleep):
        get.return_value = _response(payload={"status": "OK", "results": {"geometry": {}}})
        with pytest.raises(GeocoderUnavailable, match="missing results list"):
            GoogleGeocoder("key").geocode("95670")

    def test_non_object_result_rejected(self, get, sleep):
        get.return_value = _response(payload={"status": "OK", "results": ["oops"]})
        with pytest.raises(GeocoderUnavailable):
            GoogleGeocoder("key").geocode("95670")


class TestChainedGeocoder:
    def test_falls_back_on_primary_failure(self):
        primary = FakeGeocoder()
        primary.errors.append(GeocoderUnavailable("fake", "95670", "down"))
        fallback = FakeGeocoder({"95670": geocoded("95670")})
        chain = ChainedGeocoder(primary, fallback)

        assert chain.geocode("95670").county == "Sacramento County"
        assert chain.stats["fallback_hits"] == 1
        assert chain.stats["primary_hits"] == 0

    def test_raises_when_both_fail(self):
        chain = ChainedGeocoder(FakeGeocoder(), FakeGeocoder())
        with pytest.raises(GeocoderNoMatch):
            chain.geocode("95670")
        assert chain.stats["total_misses"] == 1


class TestFactory:
    def test_no_keys_disables_geocoding(self):
        assert create_geocoder("geocodio") is None

    def test_geocodio_default(self):
        geocoder = create_geocoder("geocodio", geocodio_api_key="k", current_congress=118, timeout=2.0)
        assert isinstance(geocoder, GeocodioGeocoder)
        assert geocoder.current_congress == 118
        assert geocoder.timeout == 2.0

    def test_google_when_only_google_key(self):
        assert isinstance(create_geocoder("geocodio", google_api_key="g"), GoogleGeocoder)

    def test_chained(self):
        geocoder = create_geocoder("chained", geocodio_api_key="k", google_api_key="g")
        assert isinstance(geocoder, ChainedGeocoder)
