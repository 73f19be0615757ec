"""
pNode Crawler - Sync Engine

Runs the periodic crawl that keeps the NodeStore current:

1. Fetch the pod list from the bootstrap directory
2. Deduplicate pods to one record per IP
3. Resolve geolocation for uncached IPs, concurrently with
4. Probing every IP for stats with bounded concurrency
5. Upsert every peer into the store
6. Demote online nodes that left the directory to unknown
7. Remove stale nodes

Cycles are single-flight: a cycle requested while another is running is
skipped, never queued. Each cycle carries a cancel event and a deadline.
At the deadline, unfinished probes are abandoned and the cycle publishes
what it has. stop() cancels the cycle instead: nothing is written to the
store and the cycle is reported as cancelled.
"""

import logging
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any

from crawler_config import CrawlerConfig
from crawler_errors import DirectoryError, ProbeTransportError
from geolocation import GeoResolver
from monitoring import LoggingContext, MetricsCollector
from monitoring import metrics as default_metrics
from node_models import CycleResult, GeoLocation, NodeStatus, NodeUpdate, SyncStatus
from node_store import NodeStore
from pod_dedup import deduplicate_pods
from prpc_client import DirectoryClient
from retry import RetryPolicy, linear_backoff
from stats_prober import StatsProber

logger = logging.getLogger(__name__)


class SyncEngine:
    """Drives sync cycles against a NodeStore, on demand or on a schedule."""

    def __init__(
        self,
        store: NodeStore,
        config: CrawlerConfig | None = None,
        directory: DirectoryClient | None = None,
        prober: StatsProber | None = None,
        geo: GeoResolver | None = None,
        metrics: MetricsCollector | None = None,
    ):
        self.store = store
        self.config = config or CrawlerConfig()
        cfg = self.config

        self.directory = directory or DirectoryClient(cfg.bootstrap_url, timeout=cfg.directory_timeout)
        self.prober = prober or StatsProber(
            stats_port=cfg.stats_port,
            timeout=cfg.rpc_timeout,
            concurrency=cfg.stats_concurrency,
            retry_policy=RetryPolicy(
                max_attempts=cfg.stats_max_attempts,
                backoff=linear_backoff(cfg.stats_backoff),
                retryable_exceptions=(ProbeTransportError,),
            ),
        )
        self.geo = geo or GeoResolver(
            batch_url=cfg.geo_batch_url,
            batch_size=cfg.geo_batch_size,
            batch_delay=cfg.geo_batch_delay,
            timeout=cfg.geo_timeout,
        )
        self.metrics = metrics or default_metrics

        self._cycle_lock = threading.Lock()
        self._cancel_event: threading.Event | None = None
        self._stop_event = threading.Event()
        self._scheduler_thread: threading.Thread | None = None
        self._status = SyncStatus.IDLE
        self._last_result: CycleResult | None = None

    # =========================================================================
    # State
    # =========================================================================

    @property
    def status(self) -> SyncStatus:
        return self._status

    @property
    def last_result(self) -> CycleResult | None:
        return self._last_result

    @property
    def is_running(self) -> bool:
        """True while the scheduler thread is alive."""
        return self._scheduler_thread is not None and self._scheduler_thread.is_alive()

    def get_sync_config(self) -> dict[str, Any]:
        return {
            "interval_seconds": self.config.sync_interval,
            "initial_delay_seconds": self.config.initial_sync_delay,
            "cycle_timeout_seconds": self.config.cycle_timeout,
            "stale_retention_days": self.config.stale_retention_days,
            "bootstrap_url": self.config.bootstrap_url,
            "scheduler_running": self.is_running,
            "status": self._status.value,
            "last_result": self._last_result.to_dict() if self._last_result else None,
        }

    def _set_status(self, status: SyncStatus) -> None:
        self._status = status
        self.store.set_sync_status(status)

    # =========================================================================
    # Cycle
    # =========================================================================

    def trigger_sync_now(self) -> CycleResult:
        """Run one cycle on the caller's thread (skipped if one is running)."""
        return self.run_cycle()

    def run_cycle(self) -> CycleResult:
        """Run one complete sync cycle."""
        if not self._cycle_lock.acquire(blocking=False):
            logger.info("Sync already in progress, skipping")
            self.metrics.increment("sync_cycles_total", labels={"result": "skipped"})
            return CycleResult(success=False, skipped=True)

        cancel_event = threading.Event()
        self._cancel_event = cancel_event
        try:
            with LoggingContext(cycle_id=f"c-{uuid.uuid4().hex[:8]}"):
                result = self._run_locked(cancel_event)
        finally:
            self._cancel_event = None
            self._cycle_lock.release()

        self._last_result = result
        if result.success:
            outcome = "success"
        elif result.cancelled:
            outcome = "cancelled"
        else:
            outcome = "error"
        self.metrics.increment("sync_cycles_total", labels={"result": outcome})
        self.metrics.timing("sync_cycle_duration_ms", result.duration_ms)
        return result

    def _run_locked(self, cancel_event: threading.Event) -> CycleResult:
        started = time.monotonic()
        self._set_status(SyncStatus.SYNCING)
        logger.info("Starting sync cycle")

        try:
            pods = self.directory.get_pods()
        except DirectoryError as e:
            logger.error(f"Sync cycle aborted, directory unavailable: {e}")
            return self._fail(str(e), started)

        try:
            return self._process_pods(pods, cancel_event, started)
        except Exception as e:
            logger.exception(f"Sync cycle failed: {e}")
            return self._fail(f"{type(e).__name__}: {e}", started)

    def _process_pods(self, pods, cancel_event: threading.Event, started: float) -> CycleResult:
        unique = deduplicate_pods(pods)
        ips = list(unique)
        deadline = started + self.config.cycle_timeout
        logger.info(f"Found {len(pods)} pods, {len(ips)} unique IPs")

        with ThreadPoolExecutor(max_workers=1, thread_name_prefix="geo") as geo_executor:
            geo_future = geo_executor.submit(self.geo.resolve, self.geo.uncached_ips(ips), cancel_event)
            probes = self.prober.probe_many(ips, cancel_event=cancel_event, deadline=deadline)
            # Until geolocation is awaited, only stop() sets the cancel event.
            stopped = cancel_event.is_set()
            if not stopped:
                self._await_geo(geo_future, deadline, cancel_event)

        if stopped:
            logger.warning(
                f"Sync cycle cancelled with {len(probes)}/{len(ips)} probes finished, store left unchanged"
            )
            return self._fail("Sync cycle cancelled", started, cancelled=True)

        if time.monotonic() >= deadline:
            logger.warning(f"Cycle deadline of {self.config.cycle_timeout:.0f}s reached, continuing with partial results")

        online_count = 0
        for ip, pod in unique.items():
            probe = probes.get(ip)
            update = NodeUpdate(
                version=pod.version,
                pubkey=pod.pubkey,
                last_seen_timestamp=pod.last_seen_timestamp,
                stats=probe.stats if probe else None,
                geo=self.geo.get_cached(ip),
                explicitly_offline=probe.explicitly_offline if probe else False,
                in_directory=True,
            )
            node = self.store.upsert(ip, pod.address, update)
            if node.status == NodeStatus.ONLINE:
                online_count += 1
            self.metrics.increment(
                "probe_results_total",
                labels={"outcome": probe.outcome.value if probe else "timeout"},
            )

        self.store.mark_absent_unknown(set(ips))
        removed = self.store.remove_stale(self.config.stale_retention_days)

        self._set_status(SyncStatus.IDLE)
        self._record_gauges()

        result = CycleResult(
            success=True,
            total_pods=len(pods),
            unique_ips=len(ips),
            online_count=online_count,
            offline_count=len(ips) - online_count,
            removed_count=removed,
            duration_ms=(time.monotonic() - started) * 1000,
        )
        success_rate = online_count / len(ips) * 100 if ips else 0.0
        logger.info(
            f"Sync cycle complete in {result.duration_ms / 1000:.1f}s: "
            f"{online_count}/{len(ips)} online ({success_rate:.1f}%), {removed} removed"
        )
        return result

    def _await_geo(
        self,
        future: Future,
        deadline: float,
        cancel_event: threading.Event,
    ) -> dict[str, GeoLocation | None]:
        """Wait for the geolocation worker, cancelling it at the deadline."""
        try:
            resolved = future.result(timeout=max(deadline - time.monotonic(), 0))
        except FutureTimeout:
            logger.warning("Geolocation did not finish before the cycle deadline")
            cancel_event.set()
            return {}
        except Exception as e:
            logger.exception(f"Geolocation failed: {e}")
            return {}

        for geo in resolved.values():
            self.metrics.increment("geo_lookups_total", labels={"result": "found" if geo else "not_found"})
        return resolved

    def _fail(self, error: str, started: float, cancelled: bool = False) -> CycleResult:
        self._set_status(SyncStatus.ERROR)
        return CycleResult(
            success=False,
            cancelled=cancelled,
            error=error,
            duration_ms=(time.monotonic() - started) * 1000,
        )

    def _record_gauges(self) -> None:
        nodes = self.store.get_all_nodes()
        self.metrics.set_gauge("nodes_total", len(nodes))
        self.metrics.set_gauge("nodes_online", sum(1 for n in nodes if n.status == NodeStatus.ONLINE))
        self.metrics.set_gauge("nodes_offline", sum(1 for n in nodes if n.status == NodeStatus.OFFLINE))

    # =========================================================================
    # Scheduler
    # =========================================================================

    def start(self) -> None:
        """Start the background scheduler (initial delay, then every interval)."""
        if self.is_running:
            return

        self._stop_event.clear()
        self._scheduler_thread = threading.Thread(
            target=self._scheduler_loop,
            name="sync-scheduler",
            daemon=True,
        )
        self._scheduler_thread.start()
        logger.info(
            f"Sync scheduler started: first cycle in {self.config.initial_sync_delay:.0f}s, "
            f"then every {self.config.sync_interval:.0f}s"
        )

    def stop(self, timeout: float | None = None) -> None:
        """Stop the scheduler and cancel any in-flight cycle."""
        self._stop_event.set()
        cancel_event = self._cancel_event
        if cancel_event is not None:
            cancel_event.set()
        if self._scheduler_thread is not None:
            self._scheduler_thread.join(timeout)
            self._scheduler_thread = None
        logger.info("Sync scheduler stopped")

    def _scheduler_loop(self) -> None:
        if self._stop_event.wait(self.config.initial_sync_delay):
            return

        interval = self.config.sync_interval
        next_run = time.monotonic()
        while not self._stop_event.is_set():
            try:
                self.run_cycle()
            except Exception as e:
                logger.exception(f"Scheduled sync cycle raised: {e}")

            # Fixed period measured from cycle starts; ticks that fell inside
            # a long cycle are dropped, not queued.
            next_run += interval
            now = time.monotonic()
            if next_run <= now:
                missed = int((now - next_run) // interval) + 1
                logger.debug(f"Sync cycle overran its interval, skipping {missed} tick(s)")
                next_run += missed * interval

            if self._stop_event.wait(next_run - now):
                break

    def close(self) -> None:
        """Stop the scheduler and release HTTP sessions."""
        self.stop()
        self.directory.close()
        self.prober.close()
        self.geo.close()
