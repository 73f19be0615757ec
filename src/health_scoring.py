"""
pNode Crawler - Health Scoring

Computes a 0-100 composite health score for a pNode from its telemetry.

Components (weights must total 1.0):
- CPU (0.25): lower usage scores higher
- RAM (0.20): lower usage scores higher
- Uptime (0.25): longer uptime scores higher
- Network activity (0.10): active streams and packet volume
- Reachability (0.20): fixed bonus for answering at all

Offline and unknown nodes always score 0.
"""

import math
from dataclasses import dataclass
from typing import Any

from formatting import clamp, format_uptime
from node_models import DerivedMetrics, HealthGrade, NodeStats, NodeStatus

# (upper bound inclusive, score); the last entry is the fallback
CPU_BANDS = [(30, 100), (50, 85), (70, 65), (85, 40), (95, 20)]
CPU_FLOOR = 5

RAM_BANDS = [(50, 100), (70, 80), (85, 55), (95, 30)]
RAM_FLOOR = 10

# (minimum hours, score)
UPTIME_BANDS = [(168, 100), (72, 85), (24, 65), (6, 45), (1, 25)]
UPTIME_FLOOR = 10

NETWORK_BASE = 50
NETWORK_STREAM_BONUS = 20
NETWORK_PACKET_THRESHOLDS = (100, 1_000, 10_000)
NETWORK_PACKET_BONUS = 10

REACHABILITY_SCORE = 100

GRADE_THRESHOLDS = [
    (80, HealthGrade.EXCELLENT),
    (60, HealthGrade.GOOD),
    (40, HealthGrade.FAIR),
    (20, HealthGrade.POOR),
]

COMPARISON_BAND = 5


@dataclass(frozen=True)
class HealthWeights:
    cpu: float = 0.25
    ram: float = 0.20
    uptime: float = 0.25
    network: float = 0.10
    online: float = 0.20

    def __post_init__(self):
        total = self.cpu + self.ram + self.uptime + self.network + self.online
        if not math.isclose(total, 1.0, abs_tol=1e-9):
            raise ValueError(f"Health weights must total 1.0, got {total}")


DEFAULT_WEIGHTS = HealthWeights()


def cpu_score(cpu_percent: float) -> int:
    for upper, score in CPU_BANDS:
        if cpu_percent <= upper:
            return score
    return CPU_FLOOR


def ram_usage_percent(stats: NodeStats) -> float:
    if stats.ram_total <= 0:
        return 0.0
    return stats.ram_used / stats.ram_total * 100


def ram_score(ram_percent: float) -> int:
    for upper, score in RAM_BANDS:
        if ram_percent <= upper:
            return score
    return RAM_FLOOR


def uptime_score(uptime_seconds: float) -> int:
    hours = uptime_seconds / 3600
    for minimum, score in UPTIME_BANDS:
        if hours >= minimum:
            return score
    return UPTIME_FLOOR


def network_score(active_streams: int, total_packets: int) -> int:
    score = NETWORK_BASE
    if active_streams > 0:
        score += NETWORK_STREAM_BONUS
    for threshold in NETWORK_PACKET_THRESHOLDS:
        if total_packets > threshold:
            score += NETWORK_PACKET_BONUS
    return min(score, 100)


def health_grade(score: float) -> HealthGrade:
    for threshold, grade in GRADE_THRESHOLDS:
        if score >= threshold:
            return grade
    return HealthGrade.CRITICAL


def calculate_health_score(
    stats: NodeStats | None,
    status: NodeStatus,
    weights: HealthWeights = DEFAULT_WEIGHTS,
) -> int:
    """Composite health score, an integer in [0, 100]."""
    if status in (NodeStatus.OFFLINE, NodeStatus.UNKNOWN) or stats is None:
        return 0

    weighted = (
        cpu_score(stats.cpu_percent) * weights.cpu
        + ram_score(ram_usage_percent(stats)) * weights.ram
        + uptime_score(stats.uptime) * weights.uptime
        + network_score(stats.active_streams, stats.total_packets) * weights.network
        + REACHABILITY_SCORE * weights.online
    )
    return int(clamp(round(weighted), 0, 100))


def storage_utilization_percent(stats: NodeStats) -> float | None:
    """Disk used / disk capacity, when the node reports disk metrics."""
    if not stats.disk_total or stats.disk_used is None:
        return None
    return round(clamp(stats.disk_used / stats.disk_total * 100, 0, 100), 2)


def score(
    stats: NodeStats | None,
    status: NodeStatus,
    weights: HealthWeights = DEFAULT_WEIGHTS,
) -> DerivedMetrics | None:
    """
    Derive display metrics and the health score for a node.

    Returns None when there are no stats to derive anything from.
    """
    if stats is None:
        return None

    health = calculate_health_score(stats, status, weights)
    packets_per_second = stats.total_packets / stats.uptime if stats.uptime > 0 else 0.0

    return DerivedMetrics(
        ram_usage_percent=round(ram_usage_percent(stats), 2),
        storage_utilization_percent=storage_utilization_percent(stats),
        uptime_human=format_uptime(stats.uptime),
        packets_per_second=round(packets_per_second, 2),
        health_score=health,
        health_grade=health_grade(health),
    )


def compare_to_network_average(node_score: float, network_avg_score: float) -> dict[str, Any]:
    """Place a node's score above, at, or below the network average."""
    diff = node_score - network_avg_score
    if diff > COMPARISON_BAND:
        position = "above"
    elif diff < -COMPARISON_BAND:
        position = "below"
    else:
        position = "at"
    return {"status": position, "diff": round(diff)}
