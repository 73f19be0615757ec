"""
pNode Crawler - Formatting Utilities

Human-readable formatting for bytes and uptimes, plus helpers for
deriving IPs and node ids from pNode network addresses ("ip:port").
"""

import math


def format_bytes(num_bytes: float, decimals: int = 2) -> str:
    """Format a byte count as a human readable string (e.g. "1.50 GB")."""
    if num_bytes == 0:
        return "0 B"
    if num_bytes < 0 or not math.isfinite(num_bytes):
        return "Invalid"

    sizes = ["B", "KB", "MB", "GB", "TB", "PB", "EB"]
    value = float(num_bytes)
    i = 0
    while value >= 1024 and i < len(sizes) - 1:
        value /= 1024
        i += 1
    return f"{value:.{decimals}f} {sizes[i]}"


def format_uptime(seconds: float | None) -> str:
    """
    Format an uptime in seconds as "3d 12h", "5h 20m" or "< 1m".

    Minutes are only shown for uptimes shorter than a day. Missing,
    non-positive and non-finite values render as "N/A".
    """
    if not seconds or not math.isfinite(seconds) or seconds <= 0:
        return "N/A"

    seconds = int(seconds)
    days = seconds // 86400
    hours = (seconds % 86400) // 3600
    minutes = (seconds % 3600) // 60

    parts = []
    if days > 0:
        parts.append(f"{days}d")
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0 and days == 0:
        parts.append(f"{minutes}m")

    return " ".join(parts) if parts else "< 1m"


def extract_ip(address: str | None) -> str:
    """Extract the IP from an address like "192.190.136.37:9001"."""
    if not address:
        return ""
    return address.strip().split(":")[0]


def node_id_for_ip(ip: str) -> str:
    """Deterministic node id derived from its IP."""
    return f"node-{ip.replace('.', '-')}"


def clamp(value: float, low: float, high: float) -> float:
    return min(max(value, low), high)
