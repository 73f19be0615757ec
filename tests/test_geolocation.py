"""
Tests for the geolocation resolver.
"""

import os
import sys
import threading
from unittest.mock import MagicMock, patch

import pytest
import requests

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from geolocation import GeoResolver, is_private_ip, parse_geo_item


def geo_item(ip, country="Germany", city="Berlin"):
    return {
        "status": "success",
        "query": ip,
        "country": country,
        "countryCode": "DE",
        "city": city,
        "regionName": "Berlin",
        "timezone": "Europe/Berlin",
        "lat": 52.52,
        "lon": 13.40,
    }


def echo_batch(url, json=None, timeout=None):
    """Fake ip-api batch endpoint resolving every IP."""
    response = MagicMock()
    response.json.return_value = [geo_item(entry["query"]) for entry in json]
    return response


def public_ips(count):
    return [f"8.8.{i // 250}.{i % 250 + 1}" for i in range(count)]


class TestIsPrivateIp:
    @pytest.mark.parametrize("ip", [
        "10.0.0.5", "172.16.0.1", "172.31.255.255", "192.168.1.1",
        "127.0.0.1", "169.254.10.10", "0.0.0.0", "not-an-ip", "",
    ])
    def test_private(self, ip):
        assert is_private_ip(ip)

    @pytest.mark.parametrize("ip", ["8.8.8.8", "172.32.0.1", "192.190.136.37"])
    def test_public(self, ip):
        assert not is_private_ip(ip)


class TestParseGeoItem:
    def test_success(self):
        geo = parse_geo_item(geo_item("8.8.8.8"))
        assert geo.country == "Germany"
        assert geo.country_code == "DE"
        assert geo.latitude == 52.52

    def test_fail_status(self):
        assert parse_geo_item({"status": "fail", "query": "8.8.8.8"}) is None

    def test_missing_coordinates(self):
        item = geo_item("8.8.8.8")
        del item["lat"]
        assert parse_geo_item(item) is None

    def test_non_finite_coordinates(self):
        item = geo_item("8.8.8.8")
        item["lat"] = float("nan")
        assert parse_geo_item(item) is None

        item = geo_item("8.8.8.8")
        item["lon"] = float("inf")
        assert parse_geo_item(item) is None

    def test_defaults_for_blank_fields(self):
        item = geo_item("8.8.8.8", country="", city=None)
        geo = parse_geo_item(item)
        assert geo.country == "Unknown"
        assert geo.city == "Unknown"


class TestGeoResolver:
    def test_private_ip_never_queried(self, mock_session):
        resolver = GeoResolver(session=mock_session)

        assert resolver.resolve(["10.0.0.5"]) == {"10.0.0.5": None}
        mock_session.post.assert_not_called()
        assert resolver.is_cached("10.0.0.5")

    def test_resolves_and_caches(self, mock_session):
        mock_session.post.side_effect = echo_batch
        resolver = GeoResolver(session=mock_session)

        first = resolver.resolve(["8.8.8.8"])
        second = resolver.resolve(["8.8.8.8"])

        assert first["8.8.8.8"].city == "Berlin"
        assert second == first
        assert mock_session.post.call_count == 1
        assert mock_session.post.call_args.kwargs["json"] == [{"query": "8.8.8.8"}]
        assert resolver.cache_stats() == {"total": 1, "with_location": 1, "without_location": 0}

    def test_not_found_is_cached(self, mock_session):
        response = MagicMock()
        response.json.return_value = [{"status": "fail", "query": "8.8.8.8"}]
        mock_session.post.return_value = response
        resolver = GeoResolver(session=mock_session)

        assert resolver.resolve(["8.8.8.8"]) == {"8.8.8.8": None}
        resolver.resolve(["8.8.8.8"])
        assert mock_session.post.call_count == 1
        assert resolver.stats["ips_not_found"] == 1

    def test_batches_of_configured_size(self, mock_session):
        mock_session.post.side_effect = echo_batch
        resolver = GeoResolver(batch_size=100, batch_delay=0, session=mock_session)

        results = resolver.resolve(public_ips(250))

        assert len(results) == 250
        sizes = [len(c.kwargs["json"]) for c in mock_session.post.call_args_list]
        assert sizes == [100, 100, 50]

    @patch("geolocation.time.sleep")
    def test_delay_between_batches(self, mock_sleep, mock_session):
        mock_session.post.side_effect = echo_batch
        resolver = GeoResolver(batch_size=10, batch_delay=1.5, session=mock_session)

        resolver.resolve(public_ips(25))

        assert mock_sleep.call_count == 2
        mock_sleep.assert_called_with(1.5)

    def test_failed_batch_cached_as_none(self, mock_session):
        mock_session.post.side_effect = requests.ConnectionError("down")
        resolver = GeoResolver(session=mock_session)

        results = resolver.resolve(["8.8.8.8", "1.1.1.1"])

        assert results == {"8.8.8.8": None, "1.1.1.1": None}
        assert resolver.is_cached("8.8.8.8")
        assert resolver.stats["batches_failed"] == 1
        resolver.resolve(["8.8.8.8"])
        assert mock_session.post.call_count == 1

    def test_non_list_response_fails_batch(self, mock_session):
        response = MagicMock()
        response.json.return_value = {"message": "rate limited"}
        mock_session.post.return_value = response
        resolver = GeoResolver(session=mock_session)

        assert resolver.resolve(["8.8.8.8"]) == {"8.8.8.8": None}
        assert resolver.stats["batches_failed"] == 1

    def test_cancel_leaves_remaining_uncached(self, mock_session):
        mock_session.post.side_effect = echo_batch
        resolver = GeoResolver(batch_size=2, batch_delay=5.0, session=mock_session)
        cancel = threading.Event()
        cancel.set()

        ips = public_ips(4)
        results = resolver.resolve(ips, cancel_event=cancel)

        assert mock_session.post.call_count == 1
        assert set(results) == set(ips)
        assert results[ips[2]] is None
        assert not resolver.is_cached(ips[2])
        assert resolver.is_cached(ips[0])

    def test_uncached_ips(self, mock_session):
        mock_session.post.side_effect = echo_batch
        resolver = GeoResolver(session=mock_session)
        resolver.resolve(["8.8.8.8"])

        assert resolver.uncached_ips(["8.8.8.8", "1.1.1.1", "10.0.0.1", "1.1.1.1"]) == ["1.1.1.1"]

    def test_clear_cache(self, mock_session):
        resolver = GeoResolver(session=mock_session)
        resolver.resolve(["10.0.0.1"])
        resolver.clear_cache()
        assert resolver.cache_stats()["total"] == 0

    def test_invalid_batch_size(self, mock_session):
        with pytest.raises(ValueError):
            GeoResolver(batch_size=101, session=mock_session)
