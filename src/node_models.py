"""
pNode Crawler - Data Model

Wire records received from the network (Pod, NodeStats), enrichment data
(GeoLocation, DerivedMetrics) and the consolidated Node that the store holds.

Wire records are parsed through explicit from_dict() functions that either
return a fully-typed value or raise a named error; optional numeric fields
are substituted with their defaults rather than guessed at.
"""

import math
from dataclasses import dataclass, field, fields
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from crawler_errors import ProbeSchemaError
from formatting import extract_ip

# =============================================================================
# Enums
# =============================================================================


class NodeStatus(Enum):
    """Liveness status of a pNode as seen by the crawler."""
    ONLINE = "online"
    OFFLINE = "offline"
    DEGRADED = "degraded"
    UNKNOWN = "unknown"


class HealthGrade(Enum):
    """Grade derived from a health score (thresholds 80/60/40/20)."""
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"
    CRITICAL = "critical"


class SyncStatus(Enum):
    """Sync orchestrator state."""
    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"


# =============================================================================
# Parsing helpers
# =============================================================================


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_finite(value: int | float) -> bool:
    try:
        return math.isfinite(value)
    except OverflowError:
        return False


def _optional_str(data: dict[str, Any], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"{key} must be a string, got {type(value).__name__}")
    return value


def _optional_number(data: dict[str, Any], key: str) -> float | None:
    value = data.get(key)
    if value is None:
        return None
    if not _is_number(value):
        raise ValueError(f"{key} must be a number, got {type(value).__name__}")
    return value


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


# =============================================================================
# Wire records
# =============================================================================


@dataclass(frozen=True)
class Pod:
    """A peer record as reported by the bootstrap node's get-pods call."""
    address: str
    version: str | None = None
    pubkey: str | None = None
    last_seen_timestamp: float | None = None

    @property
    def ip(self) -> str:
        return extract_ip(self.address)

    @classmethod
    def from_dict(cls, data: Any) -> "Pod":
        """Parse a pod record. Raises ValueError on a shape mismatch."""
        if not isinstance(data, dict):
            raise ValueError(f"pod must be an object, got {type(data).__name__}")
        address = data.get("address")
        if not isinstance(address, str):
            raise ValueError("pod address must be a string")
        return cls(
            address=address,
            version=_optional_str(data, "version"),
            pubkey=_optional_str(data, "pubkey"),
            last_seen_timestamp=_optional_number(data, "last_seen_timestamp"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "version": self.version,
            "pubkey": self.pubkey,
            "last_seen_timestamp": self.last_seen_timestamp,
        }


@dataclass(frozen=True)
class NodeStats:
    """
    Live telemetry returned by a pNode's get-stats call.

    Every counter defaults to zero when the node leaves it out; only a value
    of the wrong type is treated as a schema error.
    """
    # Hardware
    cpu_percent: float = 0
    ram_used: int = 0
    ram_total: int = 0

    # System
    uptime: int = 0
    last_updated: float | None = None

    # Network activity
    packets_sent: int = 0
    packets_received: int = 0
    active_streams: int = 0

    # Storage
    total_pages: int = 0
    total_bytes: int = 0
    file_size: int = 0
    current_index: int = 0

    # Disk metrics (only some nodes report these)
    disk_total: int | None = None
    disk_used: int | None = None
    disk_free: int | None = None

    @property
    def total_packets(self) -> int:
        return self.packets_sent + self.packets_received

    @classmethod
    def from_dict(cls, data: Any) -> "NodeStats":
        """Coerce a get-stats result, raising ProbeSchemaError on mismatch."""
        if not isinstance(data, dict):
            raise ProbeSchemaError(
                f"stats result must be an object, got {type(data).__name__}"
            )

        values = {}
        for f in fields(cls):
            raw = data.get(f.name)
            if raw is None:
                continue
            if not _is_number(raw):
                raise ProbeSchemaError(
                    f"stats field {f.name} must be a number, got {type(raw).__name__}",
                    field=f.name,
                )
            if not _is_finite(raw):
                raise ProbeSchemaError(
                    f"stats field {f.name} must be a finite number",
                    field=f.name,
                )
            values[f.name] = raw
        return cls(**values)

    def to_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass(frozen=True)
class GeoLocation:
    """Geographic location of an IP address."""
    latitude: float
    longitude: float
    country: str = "Unknown"
    country_code: str = "XX"
    city: str = "Unknown"
    region: str | None = None
    timezone: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "country": self.country,
            "country_code": self.country_code,
            "city": self.city,
            "region": self.region,
            "timezone": self.timezone,
        }


@dataclass(frozen=True)
class DerivedMetrics:
    """Display and comparison metrics computed from a node's stats."""
    ram_usage_percent: float
    storage_utilization_percent: float | None
    uptime_human: str
    packets_per_second: float
    health_score: int
    health_grade: HealthGrade

    def to_dict(self) -> dict[str, Any]:
        return {
            "ram_usage_percent": self.ram_usage_percent,
            "storage_utilization_percent": self.storage_utilization_percent,
            "uptime_human": self.uptime_human,
            "packets_per_second": self.packets_per_second,
            "health_score": self.health_score,
            "health_grade": self.health_grade.value,
        }


# =============================================================================
# Consolidated node
# =============================================================================


@dataclass(frozen=True)
class Node:
    """
    The consolidated view of one pNode, keyed by IP.

    Nodes are immutable; the store publishes changes by replacing the whole
    value for an IP, so readers never observe a half-updated node.
    """
    id: str
    ip: str
    address: str
    pubkey: str | None = None
    version: str | None = None
    status: NodeStatus = NodeStatus.UNKNOWN
    first_seen: datetime | None = None
    last_seen: datetime | None = None
    last_seen_timestamp: float | None = None
    stats: NodeStats | None = None
    derived: DerivedMetrics | None = None
    geo: GeoLocation | None = None
    has_public_rpc: bool = False

    @property
    def is_online(self) -> bool:
        return self.status in (NodeStatus.ONLINE, NodeStatus.DEGRADED)

    @property
    def health_score(self) -> int:
        return self.derived.health_score if self.derived else 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "ip": self.ip,
            "address": self.address,
            "pubkey": self.pubkey,
            "version": self.version,
            "status": self.status.value,
            "is_online": self.is_online,
            "has_public_rpc": self.has_public_rpc,
            "first_seen": _isoformat(self.first_seen),
            "last_seen": _isoformat(self.last_seen),
            "last_seen_timestamp": self.last_seen_timestamp,
            "stats": self.stats.to_dict() if self.stats else None,
            "derived": self.derived.to_dict() if self.derived else None,
            "geo": self.geo.to_dict() if self.geo else None,
        }


@dataclass
class NodeUpdate:
    """Per-cycle observations for one IP, handed to NodeStore.upsert()."""
    version: str | None = None
    pubkey: str | None = None
    last_seen_timestamp: float | None = None
    stats: NodeStats | None = None
    geo: GeoLocation | None = None
    explicitly_offline: bool = False
    in_directory: bool = True


@dataclass
class NodeSearchFilter:
    """Filter accepted by NodeStore.search(). Unset fields match everything."""
    country: str | None = None
    status: NodeStatus | None = None
    min_health_score: float | None = None
    max_health_score: float | None = None
    min_ram_gb: float | None = None
    max_ram_gb: float | None = None
    min_cpu_percent: float | None = None
    max_cpu_percent: float | None = None
    version: str | None = None
    city: str | None = None
    has_stats: bool | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "NodeSearchFilter":
        """Build a filter from loosely typed input such as query parameters."""
        kwargs: dict[str, Any] = {}
        for f in fields(cls):
            raw = data.get(f.name)
            if raw is None or raw == "":
                continue
            if f.name == "status":
                kwargs[f.name] = raw if isinstance(raw, NodeStatus) else NodeStatus(str(raw).lower())
            elif f.name == "has_stats":
                kwargs[f.name] = raw if isinstance(raw, bool) else str(raw).lower() in ("1", "true", "yes")
            elif f.name in ("country", "version", "city"):
                kwargs[f.name] = str(raw)
            else:
                kwargs[f.name] = float(raw)
        return cls(**kwargs)


@dataclass
class CycleResult:
    """Outcome of one sync cycle."""
    success: bool
    skipped: bool = False
    cancelled: bool = False
    total_pods: int = 0
    unique_ips: int = 0
    online_count: int = 0
    offline_count: int = 0
    removed_count: int = 0
    duration_ms: float = 0.0
    completed_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "skipped": self.skipped,
            "cancelled": self.cancelled,
            "total_pods": self.total_pods,
            "unique_ips": self.unique_ips,
            "online_count": self.online_count,
            "offline_count": self.offline_count,
            "removed_count": self.removed_count,
            "duration_ms": round(self.duration_ms, 1),
            "completed_at": self.completed_at.isoformat(),
            "error": self.error,
        }
