"""
pNode Crawler - Geolocation Resolver

Resolves pNode IPs to geographic locations using the ip-api.com batch
endpoint (free tier: up to 100 IPs per call, rate limited).

- Private, loopback, link-local and malformed addresses resolve to None
  without a network call.
- Results, including "not found", are cached for the life of the process.
- A batch that fails as a whole caches None for all of its IPs, so a
  persistent outage does not cause a retry storm every cycle.
"""

import ipaddress
import logging
import math
import threading
import time
from typing import Any

import requests

from crawler_config import DEFAULT_GEO_BATCH_URL
from crawler_errors import GeoBatchError
from node_models import GeoLocation

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 100

_PRIVATE_V4_NETWORKS = [
    ipaddress.IPv4Network("10.0.0.0/8"),
    ipaddress.IPv4Network("172.16.0.0/12"),
    ipaddress.IPv4Network("192.168.0.0/16"),
    ipaddress.IPv4Network("127.0.0.0/8"),
    ipaddress.IPv4Network("169.254.0.0/16"),
    ipaddress.IPv4Network("0.0.0.0/32"),
]


def is_private_ip(ip: str) -> bool:
    """True for addresses that must never be sent to the geo service."""
    try:
        addr = ipaddress.ip_address(ip.strip())
    except ValueError:
        return True

    if isinstance(addr, ipaddress.IPv4Address):
        return any(addr in network for network in _PRIVATE_V4_NETWORKS)
    return addr.is_private or addr.is_loopback or addr.is_link_local or addr.is_unspecified


def parse_geo_item(item: dict[str, Any]) -> GeoLocation | None:
    """Convert one ip-api response item into a GeoLocation, or None."""
    if item.get("status") != "success":
        return None
    lat, lon = item.get("lat"), item.get("lon")
    if lat is None or lon is None:
        return None
    try:
        latitude, longitude = float(lat), float(lon)
    except OverflowError:
        return None
    if not (math.isfinite(latitude) and math.isfinite(longitude)):
        return None
    return GeoLocation(
        latitude=latitude,
        longitude=longitude,
        country=item.get("country") or "Unknown",
        country_code=item.get("countryCode") or "XX",
        city=item.get("city") or "Unknown",
        region=item.get("regionName"),
        timezone=item.get("timezone"),
    )


class GeoResolver:
    """Cached, batched, rate-limited IP geolocation."""

    def __init__(
        self,
        batch_url: str = DEFAULT_GEO_BATCH_URL,
        batch_size: int = MAX_BATCH_SIZE,
        batch_delay: float = 1.5,
        timeout: float = 10.0,
        session: requests.Session | None = None,
    ):
        if not 1 <= batch_size <= MAX_BATCH_SIZE:
            raise ValueError(f"batch_size must be between 1 and {MAX_BATCH_SIZE}")
        self.batch_url = batch_url
        self.batch_size = batch_size
        self.batch_delay = batch_delay
        self.timeout = timeout
        self.session = session or requests.Session()

        self._cache: dict[str, GeoLocation | None] = {}
        self._lock = threading.Lock()

        self.stats = {
            "batches_sent": 0,
            "batches_failed": 0,
            "ips_resolved": 0,
            "ips_not_found": 0,
        }

    # =========================================================================
    # Cache
    # =========================================================================

    def get_cached(self, ip: str) -> GeoLocation | None:
        with self._lock:
            return self._cache.get(ip)

    def is_cached(self, ip: str) -> bool:
        with self._lock:
            return ip in self._cache

    def uncached_ips(self, ips: list[str]) -> list[str]:
        """IPs that would need a network lookup."""
        with self._lock:
            return [ip for ip in dict.fromkeys(ips) if ip not in self._cache and not is_private_ip(ip)]

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()
        logger.info("Geolocation cache cleared")

    def cache_stats(self) -> dict[str, int]:
        with self._lock:
            with_location = sum(1 for geo in self._cache.values() if geo is not None)
            return {
                "total": len(self._cache),
                "with_location": with_location,
                "without_location": len(self._cache) - with_location,
            }

    def _store(self, ip: str, geo: GeoLocation | None) -> None:
        with self._lock:
            self._cache[ip] = geo

    # =========================================================================
    # Resolution
    # =========================================================================

    def resolve(
        self,
        ips: list[str],
        cancel_event: threading.Event | None = None,
    ) -> dict[str, GeoLocation | None]:
        """
        Resolve IPs to locations.

        Every requested IP appears in the result. IPs left unresolved because
        the cancel event fired map to None but are not cached.
        """
        results: dict[str, GeoLocation | None] = {}
        pending: list[str] = []

        for ip in dict.fromkeys(ips):
            with self._lock:
                if ip in self._cache:
                    results[ip] = self._cache[ip]
                    continue
            if is_private_ip(ip):
                self._store(ip, None)
                results[ip] = None
                continue
            pending.append(ip)

        if not pending:
            return results

        logger.info(f"Resolving geolocation for {len(pending)} IPs")

        batches = [pending[i:i + self.batch_size] for i in range(0, len(pending), self.batch_size)]
        for index, batch in enumerate(batches):
            if index > 0 and self.batch_delay > 0:
                if cancel_event is not None:
                    if cancel_event.wait(self.batch_delay):
                        logger.info("Geolocation cancelled, leaving remaining IPs unresolved")
                        break
                else:
                    time.sleep(self.batch_delay)

            try:
                found = self._lookup_batch(batch)
            except GeoBatchError as e:
                self.stats["batches_failed"] += 1
                logger.warning(f"Batch geolocation failed for {len(batch)} IPs: {e}")
                found = {}

            for ip in batch:
                geo = found.get(ip)
                self._store(ip, geo)
                results[ip] = geo
                if geo is None:
                    self.stats["ips_not_found"] += 1
                else:
                    self.stats["ips_resolved"] += 1

        for ip in pending:
            results.setdefault(ip, None)

        logger.info(f"Resolved {len(results)} IPs, {self.cache_stats()['total']} cached")
        return results

    def _lookup_batch(self, batch: list[str]) -> dict[str, GeoLocation | None]:
        """POST one batch to the geo service. Raises GeoBatchError."""
        self.stats["batches_sent"] += 1
        try:
            response = self.session.post(
                self.batch_url,
                json=[{"query": ip} for ip in batch],
                timeout=self.timeout,
            )
            response.raise_for_status()
            items = response.json()
        except (requests.RequestException, ValueError) as e:
            raise GeoBatchError(f"Geo batch request failed: {type(e).__name__}", cause=e) from e

        if not isinstance(items, list):
            raise GeoBatchError(f"Geo batch response must be a list, got {type(items).__name__}")

        found: dict[str, GeoLocation | None] = {}
        for item in items:
            if not isinstance(item, dict) or not item.get("query"):
                continue
            try:
                found[item["query"]] = parse_geo_item(item)
            except (TypeError, ValueError) as e:
                logger.debug(f"Unparseable geo item for {item.get('query')}: {e}")
                found[item["query"]] = None
        return found

    def close(self) -> None:
        self.session.close()
