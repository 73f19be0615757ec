"""
pNode Crawler - Node Store

The consolidated, queryable picture of every known pNode, keyed by IP.

Concurrency model:
- One writer: the sync engine's active cycle (single-flight guarantees
  there is never more than one).
- Any number of readers on any thread.
- Nodes are immutable. Every write builds a complete new Node and swaps it
  into the map under the lock, so a reader sees either the prior node or
  the updated one, never a mix. Readers copy a snapshot of the values under
  the same short lock and then work lock-free.

Status transitions, evaluated once per cycle per node:

    prior      this cycle                               new
    any        stats present                            online
    any        probe found the host unreachable         offline
    online     no stats, still listed in the directory  degraded
    other      no stats                                 unknown
"""

import dataclasses
import logging
import threading
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import health_scoring
from formatting import format_bytes, format_uptime, node_id_for_ip
from node_models import (
    HealthGrade,
    Node,
    NodeSearchFilter,
    NodeStatus,
    NodeUpdate,
    SyncStatus,
)

logger = logging.getLogger(__name__)

BYTES_PER_GB = 1024 ** 3


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _avg(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


class NodeStore:
    """In-memory node registry: single writer, many readers."""

    def __init__(self, clock: Callable[[], datetime] = _utcnow):
        self._clock = clock
        self._nodes: dict[str, Node] = {}
        self._lock = threading.RLock()

        self._sync_status = SyncStatus.IDLE
        self._last_sync: datetime | None = None
        self._sync_count = 0
        self._started_at = clock()

    # =========================================================================
    # Writes
    # =========================================================================

    @staticmethod
    def resolve_status(prior: NodeStatus | None, update: NodeUpdate) -> NodeStatus:
        """Apply the per-cycle status transition table."""
        if update.stats is not None:
            return NodeStatus.ONLINE
        if update.explicitly_offline:
            return NodeStatus.OFFLINE
        if prior == NodeStatus.ONLINE and update.in_directory:
            return NodeStatus.DEGRADED
        return NodeStatus.UNKNOWN

    def upsert(self, ip: str, address: str, update: NodeUpdate) -> Node:
        """
        Create or replace the node for an IP from this cycle's observations.

        Identity fields (version, pubkey, peer-reported timestamp, geo) take
        the new value when present and otherwise keep the previous one, so a
        noisy cycle never regresses them to None. Stats fall back to the last
        known telemetry, but derived metrics come only from this cycle's stats.
        last_seen only advances while the node is online.
        """
        with self._lock:
            existing = self._nodes.get(ip)
            now = self._clock()
            status = self.resolve_status(existing.status if existing else None, update)
            stats = update.stats or (existing.stats if existing else None)

            node = Node(
                id=node_id_for_ip(ip),
                ip=ip,
                address=address,
                pubkey=update.pubkey or (existing.pubkey if existing else None),
                version=update.version or (existing.version if existing else None),
                status=status,
                first_seen=existing.first_seen if existing and existing.first_seen else now,
                last_seen=now if status == NodeStatus.ONLINE else (existing.last_seen if existing else None),
                last_seen_timestamp=(
                    update.last_seen_timestamp
                    if update.last_seen_timestamp is not None
                    else (existing.last_seen_timestamp if existing else None)
                ),
                stats=stats,
                derived=health_scoring.score(update.stats, status),
                geo=update.geo or (existing.geo if existing else None),
                has_public_rpc=update.stats is not None,
            )
            self._nodes[ip] = node
            return node

    def mark_offline(self, ip: str) -> Node | None:
        """Force a node offline (score 0). Returns the new node, if any."""
        with self._lock:
            node = self._nodes.get(ip)
            if node is None:
                return None
            node = self._with_status(node, NodeStatus.OFFLINE)
            self._nodes[ip] = node
            return node

    def mark_absent_unknown(self, current_ips: set[str]) -> int:
        """Demote online nodes missing from this cycle's directory to unknown."""
        demoted = 0
        with self._lock:
            for ip, node in list(self._nodes.items()):
                if ip not in current_ips and node.status == NodeStatus.ONLINE:
                    self._nodes[ip] = self._with_status(node, NodeStatus.UNKNOWN)
                    demoted += 1
        if demoted:
            logger.info(f"Marked {demoted} absent nodes unknown")
        return demoted

    def remove_stale(self, retention_days: float) -> int:
        """
        Delete non-online nodes not seen within the retention window.

        Nodes that were never online age from their first_seen. Online nodes
        are never removed. Returns the number of removed nodes.
        """
        threshold = self._clock() - timedelta(days=retention_days)
        removed = 0
        with self._lock:
            for ip, node in list(self._nodes.items()):
                if node.status == NodeStatus.ONLINE:
                    continue
                reference = node.last_seen or node.first_seen
                if reference is None or reference < threshold:
                    del self._nodes[ip]
                    removed += 1

        if removed:
            logger.info(f"Removed {removed} stale nodes")
        return removed

    def clear(self) -> None:
        """Drop every node and reset sync bookkeeping."""
        with self._lock:
            self._nodes.clear()
            self._last_sync = None
            self._sync_count = 0
        logger.info("Store cleared")

    def _with_status(self, node: Node, status: NodeStatus) -> Node:
        return dataclasses.replace(
            node,
            status=status,
            derived=health_scoring.score(node.stats, status),
            has_public_rpc=node.has_public_rpc and status == NodeStatus.ONLINE,
        )

    # =========================================================================
    # Sync bookkeeping
    # =========================================================================

    def set_sync_status(self, status: SyncStatus) -> None:
        with self._lock:
            self._sync_status = status
            if status == SyncStatus.IDLE:
                self._last_sync = self._clock()
                self._sync_count += 1

    def get_sync_state(self) -> dict[str, Any]:
        with self._lock:
            return {
                "status": self._sync_status.value,
                "last_sync": self._last_sync.isoformat() if self._last_sync else None,
                "sync_count": self._sync_count,
                "uptime_seconds": int((self._clock() - self._started_at).total_seconds()),
            }

    # =========================================================================
    # Reads
    # =========================================================================

    def get_all_nodes(self) -> list[Node]:
        with self._lock:
            return list(self._nodes.values())

    def get_node(self, ip: str) -> Node | None:
        with self._lock:
            return self._nodes.get(ip)

    def nodes_by_status(self, status: NodeStatus) -> list[Node]:
        return [n for n in self.get_all_nodes() if n.status == status]

    def size(self) -> int:
        with self._lock:
            return len(self._nodes)

    def search(self, flt: NodeSearchFilter) -> list[Node]:
        """Nodes matching every set field of the filter."""
        results = self.get_all_nodes()

        def contains(value: str | None, needle: str) -> bool:
            return bool(value) and needle.lower() in value.lower()

        if flt.country:
            results = [n for n in results if n.geo and contains(n.geo.country, flt.country)]
        if flt.city:
            results = [n for n in results if n.geo and contains(n.geo.city, flt.city)]
        if flt.version:
            results = [n for n in results if contains(n.version, flt.version)]
        if flt.status is not None:
            results = [n for n in results if n.status == flt.status]
        if flt.min_health_score is not None:
            results = [n for n in results if n.health_score >= flt.min_health_score]
        if flt.max_health_score is not None:
            results = [n for n in results if n.health_score <= flt.max_health_score]
        if flt.min_ram_gb is not None:
            results = [n for n in results if (n.stats.ram_total if n.stats else 0) >= flt.min_ram_gb * BYTES_PER_GB]
        if flt.max_ram_gb is not None:
            results = [n for n in results if (n.stats.ram_total if n.stats else 0) <= flt.max_ram_gb * BYTES_PER_GB]
        if flt.min_cpu_percent is not None:
            results = [n for n in results if (n.stats.cpu_percent if n.stats else 0) >= flt.min_cpu_percent]
        if flt.max_cpu_percent is not None:
            results = [n for n in results if (n.stats.cpu_percent if n.stats else 0) <= flt.max_cpu_percent]
        if flt.has_stats is not None:
            results = [n for n in results if n.has_public_rpc == flt.has_stats]

        return results

    def calculate_network_stats(self) -> dict[str, Any]:
        """Aggregate summary, performance, storage, traffic and distribution."""
        nodes = self.get_all_nodes()
        by_status = {status: [n for n in nodes if n.status == status] for status in NodeStatus}
        online = by_status[NodeStatus.ONLINE]
        reporting = [n for n in online if n.stats is not None]

        online_percent = len(online) / len(nodes) * 100 if nodes else 0.0
        avg_health = _avg([n.health_score for n in online])

        summary = {
            "total_nodes": len(nodes),
            "online_nodes": len(online),
            "offline_nodes": len(by_status[NodeStatus.OFFLINE]),
            "unknown_nodes": len(by_status[NodeStatus.UNKNOWN]),
            "degraded_nodes": len(by_status[NodeStatus.DEGRADED]),
            "online_percent": round(online_percent, 1),
            "network_score": round(online_percent * 0.5 + avg_health * 0.5),
            "unique_countries": len({n.geo.country for n in nodes if n.geo and n.geo.country}),
            "unique_versions": len({n.version for n in nodes if n.version}),
        }

        avg_uptime = _avg([n.stats.uptime for n in reporting])
        max_uptime = max((n.stats.uptime for n in reporting), default=0)
        performance = {
            "avg_cpu_percent": round(_avg([n.stats.cpu_percent for n in reporting]), 2),
            "avg_ram_percent": round(_avg([n.derived.ram_usage_percent for n in reporting if n.derived]), 2),
            "avg_health_score": round(avg_health),
            "avg_uptime_seconds": round(avg_uptime),
            "avg_uptime_human": format_uptime(avg_uptime),
            "max_uptime_seconds": max_uptime,
            "max_uptime_human": format_uptime(max_uptime),
        }

        total_ram = sum(n.stats.ram_total for n in reporting)
        used_ram = sum(n.stats.ram_used for n in reporting)
        storage = {
            "total_ram_bytes": total_ram,
            "used_ram_bytes": used_ram,
            "total_ram_human": format_bytes(total_ram),
            "used_ram_human": format_bytes(used_ram),
            "ram_utilization_percent": round(used_ram / total_ram * 100, 2) if total_ram > 0 else 0,
            "total_pages": sum(n.stats.total_pages for n in nodes if n.stats),
            "nodes_reporting": len(reporting),
        }

        sent = sum(n.stats.packets_sent for n in nodes if n.stats)
        received = sum(n.stats.packets_received for n in nodes if n.stats)
        total_uptime = sum(n.stats.uptime for n in reporting)
        traffic = {
            "total_packets_sent": sent,
            "total_packets_received": received,
            "total_packets": sent + received,
            "avg_packets_per_second": round((sent + received) / total_uptime, 2) if total_uptime > 0 else 0,
            "total_active_streams": sum(n.stats.active_streams for n in nodes if n.stats),
        }

        versions: dict[str, int] = {}
        countries: dict[str, int] = {}
        for n in nodes:
            version = n.version or "Unknown"
            versions[version] = versions.get(version, 0) + 1
            if n.geo and n.geo.country:
                countries[n.geo.country] = countries.get(n.geo.country, 0) + 1

        health = {grade.value: 0 for grade in HealthGrade}
        for n in online:
            health[health_scoring.health_grade(n.health_score).value] += 1

        distribution = {
            "versions": versions,
            "countries": countries,
            "status": {status.value: len(group) for status, group in by_status.items()},
            "health": health,
        }

        sync_state = self.get_sync_state()
        return {
            "summary": summary,
            "performance": performance,
            "storage": storage,
            "traffic": traffic,
            "distribution": distribution,
            "last_sync": sync_state["last_sync"],
            "sync_status": sync_state["status"],
        }

    def get_network_averages(self) -> dict[str, float]:
        performance = self.calculate_network_stats()["performance"]
        return {
            "cpu_percent": performance["avg_cpu_percent"],
            "ram_percent": performance["avg_ram_percent"],
            "uptime_seconds": performance["avg_uptime_seconds"],
            "health_score": performance["avg_health_score"],
        }

    def get_map_markers(self) -> list[dict[str, Any]]:
        """Located nodes as map markers."""
        return [
            {
                "ip": n.ip,
                "lat": n.geo.latitude,
                "lng": n.geo.longitude,
                "status": n.status.value,
                "health_score": n.health_score,
                "country": n.geo.country,
                "city": n.geo.city,
            }
            for n in self.get_all_nodes()
            if n.geo is not None
        ]
