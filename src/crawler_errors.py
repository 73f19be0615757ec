"""
pNode Crawler - Exception Hierarchy

Every failure the crawler can encounter while talking to the network has a
named exception here. Only DirectoryError is fatal to a sync cycle; the
probe and geolocation errors are isolated to a single peer or batch.
"""

from typing import Any


class CrawlerError(Exception):
    """
    Base exception for crawler errors.

    Carries the component that raised it and the underlying cause so the
    error can be logged as structured data.
    """

    component = "crawler"

    def __init__(self, message: str, cause: Exception | None = None, **details: Any):
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.details = details
        if cause is not None:
            self.__cause__ = cause

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        result = {
            "error_type": type(self).__name__,
            "component": self.component,
            "message": self.message,
            "details": self.details,
        }
        if self.cause is not None:
            result["cause"] = {
                "type": type(self.cause).__name__,
                "message": str(self.cause),
            }
        return result

    def __str__(self) -> str:
        base = f"[{self.component}] {self.message}"
        if self.cause is not None:
            base += f" (caused by: {self.cause})"
        return base


class RpcError(CrawlerError):
    """A JSON-RPC response carried an error object."""

    component = "prpc"

    def __init__(self, code: int | None, message: str, url: str = ""):
        super().__init__(f"pRPC error {code}: {message}", url=url)
        self.code = code


class DirectoryError(CrawlerError):
    """The bootstrap directory could not be fetched or failed validation."""

    component = "directory"


class ProbeError(CrawlerError):
    """Base class for per-peer stats probe failures."""

    component = "prober"


class ProbeTransportError(ProbeError):
    """Transient transport failure (timeout, reset, 5xx). Retryable."""


class ProbeTerminalError(ProbeError):
    """The host is definitively down (refused, unreachable, not found)."""


class ProbeSchemaError(ProbeError):
    """The peer answered but its stats did not match the expected shape."""


class GeoBatchError(CrawlerError):
    """A geolocation batch lookup failed as a whole."""

    component = "geo"
