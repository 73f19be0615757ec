"""
pNode Crawler - Stats Prober

Fetches live telemetry from each pNode with a get-stats JSON-RPC call to
http://{ip}:{stats_port}/rpc.

Failure handling:
- Connection refused, host/network unreachable and name-not-found are
  terminal: the host is down, retrying only burns the timeout budget.
- Timeouts, resets and HTTP errors are transient and retried under the
  probe's RetryPolicy (2 attempts, linear 500ms backoff by default).
- A response that does not match the stats shape is a schema failure. The
  node answered, so it is reported as "invalid" rather than unreachable,
  and it is not retried.
"""

import errno
import logging
import socket
import threading
import time
from collections.abc import Iterator
from dataclasses import dataclass
from enum import Enum

import requests

from crawler_errors import (
    ProbeSchemaError,
    ProbeTerminalError,
    ProbeTransportError,
    RpcError,
)
from node_models import NodeStats
from prpc_client import PrpcClient, build_session
from retry import RetryCancelled, RetryPolicy, RetryStats, linear_backoff, retry_call
from worker_pool import WorkerPool

logger = logging.getLogger(__name__)

DEFAULT_STATS_PORT = 6000
DEFAULT_TIMEOUT = 3.0
DEFAULT_CONCURRENCY = 30

_TERMINAL_ERRNOS = {errno.ECONNREFUSED, errno.EHOSTUNREACH, errno.ENETUNREACH}
_TERMINAL_MESSAGES = (
    "connection refused",
    "no route to host",
    "network is unreachable",
    "name or service not known",
    "nodename nor servname",
    "failed to resolve",
)


class ProbeOutcome(Enum):
    """How a probe ended."""
    OK = "ok"
    INVALID = "invalid"          # answered, but nothing usable
    UNREACHABLE = "unreachable"  # transport failure after retries, or terminal
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ProbeResult:
    """Stats plus the outcome of probing one IP."""
    ip: str
    outcome: ProbeOutcome
    stats: NodeStats | None = None
    attempts: int = 0
    error: str | None = None

    @property
    def explicitly_offline(self) -> bool:
        return self.outcome == ProbeOutcome.UNREACHABLE


def _iter_causes(error: BaseException) -> Iterator[BaseException]:
    """Walk an exception and everything it wraps (args, reason, causes)."""
    seen: set[int] = set()
    stack = [error]
    while stack:
        current = stack.pop()
        if current is None or id(current) in seen:
            continue
        seen.add(id(current))
        yield current
        stack.extend(arg for arg in getattr(current, "args", ()) if isinstance(arg, BaseException))
        reason = getattr(current, "reason", None)
        if isinstance(reason, BaseException):
            stack.append(reason)
        stack.append(current.__cause__)
        stack.append(current.__context__)


def is_terminal_transport_error(error: BaseException) -> bool:
    """True if a transport error means the host is definitively down."""
    if isinstance(error, requests.Timeout):
        return False

    for cause in _iter_causes(error):
        if isinstance(cause, (ConnectionRefusedError, socket.gaierror)):
            return True
        if isinstance(cause, OSError) and cause.errno in _TERMINAL_ERRNOS:
            return True

    message = str(error).lower()
    return any(marker in message for marker in _TERMINAL_MESSAGES)


class StatsProber:
    """Probes pNodes for their get-stats telemetry."""

    def __init__(
        self,
        stats_port: int = DEFAULT_STATS_PORT,
        timeout: float = DEFAULT_TIMEOUT,
        concurrency: int = DEFAULT_CONCURRENCY,
        retry_policy: RetryPolicy | None = None,
        client: PrpcClient | None = None,
    ):
        self.stats_port = stats_port
        self.timeout = timeout
        self.concurrency = concurrency
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=2,
            backoff=linear_backoff(0.5),
            retryable_exceptions=(ProbeTransportError,),
        )
        self.client = client or PrpcClient(build_session(pool_maxsize=concurrency), timeout=timeout)
        self.pool = WorkerPool(concurrency, name="stats-probe")

    def stats_url(self, ip: str) -> str:
        return f"http://{ip}:{self.stats_port}/rpc"

    def _fetch_once(self, ip: str) -> NodeStats:
        """One get-stats attempt, with transport errors classified."""
        url = self.stats_url(ip)
        try:
            result = self.client.call(url, "get-stats", [], timeout=self.timeout)
        except RpcError as e:
            raise ProbeSchemaError(f"{ip} returned an RPC error", cause=e, ip=ip) from e
        except requests.RequestException as e:
            if isinstance(e, ValueError):
                # requests' JSONDecodeError: the node answered with garbage
                raise ProbeSchemaError(f"{ip} returned a non-JSON body", cause=e, ip=ip) from e
            if is_terminal_transport_error(e):
                raise ProbeTerminalError(f"{ip} is unreachable", cause=e, ip=ip) from e
            raise ProbeTransportError(f"{ip} probe failed: {type(e).__name__}", cause=e, ip=ip) from e
        except ValueError as e:
            raise ProbeSchemaError(f"{ip} returned a malformed response", cause=e, ip=ip) from e
        except OSError as e:
            if is_terminal_transport_error(e):
                raise ProbeTerminalError(f"{ip} is unreachable", cause=e, ip=ip) from e
            raise ProbeTransportError(f"{ip} probe failed: {type(e).__name__}", cause=e, ip=ip) from e

        return NodeStats.from_dict(result)

    def probe_detailed(self, ip: str, cancel_event: threading.Event | None = None) -> ProbeResult:
        """Probe one IP and report how it went. Never raises for peer failures."""
        attempts = RetryStats()
        try:
            stats = retry_call(
                self._fetch_once,
                self.retry_policy,
                args=(ip,),
                cancel_event=cancel_event,
                stats=attempts,
            )
            return ProbeResult(ip, ProbeOutcome.OK, stats=stats, attempts=attempts.attempts)

        except ProbeSchemaError as e:
            logger.debug(f"Stats validation failed for {ip}: {e.message}")
            return ProbeResult(ip, ProbeOutcome.INVALID, attempts=attempts.attempts, error=e.message)

        except ProbeTerminalError as e:
            logger.debug(f"Node unreachable: {ip}")
            return ProbeResult(ip, ProbeOutcome.UNREACHABLE, attempts=attempts.attempts, error=e.message)

        except ProbeTransportError as e:
            logger.debug(f"Failed to get stats for {ip} after {attempts.attempts} attempts")
            return ProbeResult(ip, ProbeOutcome.UNREACHABLE, attempts=attempts.attempts, error=e.message)

        except RetryCancelled:
            return ProbeResult(ip, ProbeOutcome.CANCELLED, attempts=attempts.attempts)

    def probe(self, ip: str) -> NodeStats | None:
        """Stats for one IP, or None if the probe produced nothing usable."""
        return self.probe_detailed(ip).stats

    def probe_many(
        self,
        ips: list[str],
        cancel_event: threading.Event | None = None,
        deadline: float | None = None,
    ) -> dict[str, ProbeResult]:
        """
        Probe many IPs with bounded concurrency.

        IPs that did not finish before the deadline or cancellation are left
        out of the result.
        """
        started = time.monotonic()
        pooled = self.pool.map(
            lambda ip: self.probe_detailed(ip, cancel_event),
            ips,
            deadline=deadline,
            cancel_event=cancel_event,
        )

        results = {
            ip: result for ip, result in pooled.results.items()
            if result.outcome != ProbeOutcome.CANCELLED
        }
        for ip, error in pooled.errors.items():
            logger.error(f"Unexpected probe failure for {ip}: {error}")

        ok = sum(1 for r in results.values() if r.outcome == ProbeOutcome.OK)
        logger.info(
            f"Probed {len(results)}/{len(ips)} nodes in {time.monotonic() - started:.1f}s "
            f"({ok} responded with stats)"
        )
        return results

    def close(self) -> None:
        self.client.close()
