"""
Tests for the sync engine: cycle flow, failure handling, single-flight
and the background scheduler.
"""

import os
import sys
import threading
import time
from unittest.mock import MagicMock, patch

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from crawler_config import CrawlerConfig
from crawler_errors import DirectoryError, ProbeTransportError
from monitoring.metrics import MetricsCollector
from node_models import GeoLocation, NodeStatus, Pod, SyncStatus
from retry import RetryPolicy
from stats_prober import ProbeOutcome, ProbeResult, StatsProber
from sync_engine import SyncEngine

BERLIN = GeoLocation(latitude=52.52, longitude=13.40, country="Germany", country_code="DE", city="Berlin")


def pods_for(*ips):
    return [Pod(address=f"{ip}:9001", version="0.7.0", pubkey=f"key-{ip}") for ip in ips]


class FakeProber:
    """Returns a fixed outcome per IP; IPs not listed get no result."""

    def __init__(self, outcomes=None):
        self.outcomes = outcomes or {}
        self.calls = []

    def probe_many(self, ips, cancel_event=None, deadline=None):
        self.calls.append(list(ips))
        return {ip: self.outcomes[ip] for ip in ips if ip in self.outcomes}

    def close(self):
        pass


class SlowProber(FakeProber):
    """Finishes only the listed IPs, then blocks until the deadline."""

    def probe_many(self, ips, cancel_event=None, deadline=None):
        finished = super().probe_many(ips, cancel_event=cancel_event, deadline=deadline)
        time.sleep(max(deadline - time.monotonic(), 0))
        return finished


def ok(ip, stats):
    return ProbeResult(ip, ProbeOutcome.OK, stats=stats, attempts=1)


def unreachable(ip):
    return ProbeResult(ip, ProbeOutcome.UNREACHABLE, attempts=2, error="refused")


def invalid(ip):
    return ProbeResult(ip, ProbeOutcome.INVALID, attempts=1, error="bad shape")


@pytest.fixture
def directory():
    directory = MagicMock()
    directory.get_pods.return_value = pods_for("1.1.1.1", "2.2.2.2", "3.3.3.3")
    return directory


@pytest.fixture
def geo():
    geo = MagicMock()
    geo.uncached_ips.side_effect = lambda ips: list(ips)
    geo.resolve.side_effect = lambda ips, cancel_event=None: {ip: None for ip in ips}
    geo.get_cached.side_effect = lambda ip: BERLIN if ip == "1.1.1.1" else None
    return geo


@pytest.fixture
def collector():
    return MetricsCollector()


@pytest.fixture
def config():
    return CrawlerConfig(initial_sync_delay=0.0, sync_interval=0.05, cycle_timeout=5.0)


def make_engine(store, config, directory, prober, geo, collector):
    return SyncEngine(store, config, directory=directory, prober=prober, geo=geo, metrics=collector)


class TestRunCycle:
    def test_successful_cycle(self, store, config, directory, geo, collector, node_stats):
        prober = FakeProber({
            "1.1.1.1": ok("1.1.1.1", node_stats),
            "2.2.2.2": unreachable("2.2.2.2"),
            "3.3.3.3": invalid("3.3.3.3"),
        })
        engine = make_engine(store, config, directory, prober, geo, collector)

        result = engine.run_cycle()

        assert result.success
        assert not result.skipped
        assert result.total_pods == 3
        assert result.unique_ips == 3
        assert result.online_count == 1
        assert result.offline_count == 2
        assert engine.status == SyncStatus.IDLE
        assert engine.last_result is result

        assert store.get_node("1.1.1.1").status == NodeStatus.ONLINE
        assert store.get_node("1.1.1.1").geo == BERLIN
        assert store.get_node("1.1.1.1").pubkey == "key-1.1.1.1"
        assert store.get_node("2.2.2.2").status == NodeStatus.OFFLINE
        assert store.get_node("3.3.3.3").status == NodeStatus.UNKNOWN
        assert store.get_sync_state()["sync_count"] == 1

    def test_geo_resolves_uncached_ips_with_cancel_event(self, store, config, directory, geo, collector):
        engine = make_engine(store, config, directory, FakeProber(), geo, collector)
        engine.run_cycle()

        geo.uncached_ips.assert_called_once_with(["1.1.1.1", "2.2.2.2", "3.3.3.3"])
        args = geo.resolve.call_args.args
        assert args[0] == ["1.1.1.1", "2.2.2.2", "3.3.3.3"]
        assert isinstance(args[1], threading.Event)

    def test_duplicate_pods_probed_once(self, store, config, directory, geo, collector):
        directory.get_pods.return_value = pods_for("1.1.1.1") + pods_for("1.1.1.1")
        prober = FakeProber()
        result = make_engine(store, config, directory, prober, geo, collector).run_cycle()

        assert result.total_pods == 2
        assert result.unique_ips == 1
        assert prober.calls == [["1.1.1.1"]]

    def test_directory_failure_aborts_cycle(self, store, config, directory, geo, collector):
        directory.get_pods.side_effect = DirectoryError("bootstrap unreachable")
        prober = FakeProber()
        engine = make_engine(store, config, directory, prober, geo, collector)

        result = engine.run_cycle()

        assert not result.success
        assert "bootstrap unreachable" in result.error
        assert engine.status == SyncStatus.ERROR
        assert store.get_sync_state()["status"] == "error"
        assert store.size() == 0
        assert prober.calls == []
        assert collector.get_counter("sync_cycles_total", {"result": "error"}) == 1

    def test_unexpected_error_marks_error(self, store, config, directory, geo, collector):
        prober = MagicMock()
        prober.probe_many.side_effect = RuntimeError("pool exploded")
        engine = make_engine(store, config, directory, prober, geo, collector)

        result = engine.run_cycle()

        assert not result.success
        assert "RuntimeError" in result.error
        assert engine.status == SyncStatus.ERROR

    def test_geo_failure_does_not_fail_cycle(self, store, config, directory, geo, collector, node_stats):
        geo.resolve.side_effect = RuntimeError("geo down")
        prober = FakeProber({"1.1.1.1": ok("1.1.1.1", node_stats)})

        result = make_engine(store, config, directory, prober, geo, collector).run_cycle()

        assert result.success
        assert result.online_count == 1

    def test_recovers_after_error(self, store, config, directory, geo, collector, node_stats):
        directory.get_pods.side_effect = [DirectoryError("down"), pods_for("1.1.1.1")]
        prober = FakeProber({"1.1.1.1": ok("1.1.1.1", node_stats)})
        engine = make_engine(store, config, directory, prober, geo, collector)

        assert not engine.run_cycle().success
        assert engine.run_cycle().success
        assert engine.status == SyncStatus.IDLE

    def test_metrics_recorded(self, store, config, directory, geo, collector, node_stats):
        prober = FakeProber({"1.1.1.1": ok("1.1.1.1", node_stats), "2.2.2.2": unreachable("2.2.2.2")})
        make_engine(store, config, directory, prober, geo, collector).run_cycle()

        assert collector.get_counter("sync_cycles_total", {"result": "success"}) == 1
        assert collector.get_counter("probe_results_total", {"outcome": "ok"}) == 1
        assert collector.get_counter("probe_results_total", {"outcome": "unreachable"}) == 1
        assert collector.get_counter("probe_results_total", {"outcome": "timeout"}) == 1
        assert collector.get_counter("geo_lookups_total", {"result": "not_found"}) == 3
        assert collector.get_gauge("nodes_total") == 3
        assert collector.get_gauge("nodes_online") == 1
        assert collector.get_gauge("nodes_offline") == 1
        assert collector.get_histogram("sync_cycle_duration_ms").count == 1


class TestPeerIsolation:
    @pytest.mark.parametrize("bad_value", [float("inf"), float("nan")])
    def test_non_finite_telemetry_does_not_abort_cycle(
        self, store, config, directory, geo, collector, stats_payload, bad_value
    ):
        def fake_call(url, method, params, timeout=None):
            if "2.2.2.2" in url:
                return {"cpu_percent": 10, "uptime": bad_value}
            return stats_payload

        client = MagicMock()
        client.call.side_effect = fake_call
        prober = StatsProber(
            concurrency=4,
            retry_policy=RetryPolicy(max_attempts=1, retryable_exceptions=(ProbeTransportError,)),
            client=client,
        )
        engine = make_engine(store, config, directory, prober, geo, collector)

        result = engine.run_cycle()

        assert result.success
        assert result.online_count == 2
        assert store.size() == 3
        assert store.get_node("1.1.1.1").status == NodeStatus.ONLINE
        assert store.get_node("2.2.2.2").status == NodeStatus.UNKNOWN
        assert store.get_node("3.3.3.3").status == NodeStatus.ONLINE
        assert collector.get_counter("probe_results_total", {"outcome": "invalid"}) == 1


class TestDeadlineAndCancellation:
    def test_deadline_publishes_partial_results(self, store, directory, geo, collector, node_stats):
        config = CrawlerConfig(initial_sync_delay=0.0, cycle_timeout=0.3)
        everyone_ok = FakeProber({ip: ok(ip, node_stats) for ip in ("1.1.1.1", "2.2.2.2", "3.3.3.3")})
        engine = make_engine(store, config, directory, everyone_ok, geo, collector)
        assert engine.run_cycle().success

        engine.prober = SlowProber({"1.1.1.1": ok("1.1.1.1", node_stats)})
        geo_cancelled = []

        def slow_resolve(ips, cancel_event=None):
            geo_cancelled.append(cancel_event.wait(5))
            return {}

        geo.resolve.side_effect = slow_resolve
        directory.get_pods.return_value = pods_for("1.1.1.1", "2.2.2.2")
        store.remove_stale = MagicMock(wraps=store.remove_stale)

        result = engine.run_cycle()

        assert result.success
        assert not result.cancelled
        assert result.duration_ms >= 300
        assert geo_cancelled == [True]
        assert store.get_node("1.1.1.1").status == NodeStatus.ONLINE
        assert store.get_node("2.2.2.2").status == NodeStatus.DEGRADED
        assert store.get_node("3.3.3.3").status == NodeStatus.UNKNOWN
        store.remove_stale.assert_called_once_with(config.stale_retention_days)

    def test_stop_mid_cycle_leaves_store_untouched(self, store, config, directory, geo, collector, node_stats):
        prober = FakeProber({ip: ok(ip, node_stats) for ip in ("1.1.1.1", "2.2.2.2", "3.3.3.3")})
        engine = make_engine(store, config, directory, prober, geo, collector)
        assert engine.run_cycle().success
        before = {n.ip: n for n in store.get_all_nodes()}

        def stop_then_return_nothing(ips, cancel_event=None, deadline=None):
            engine.stop()
            return {}

        engine.prober = MagicMock()
        engine.prober.probe_many.side_effect = stop_then_return_nothing
        directory.get_pods.return_value = pods_for("1.1.1.1")

        result = engine.run_cycle()

        assert not result.success
        assert result.cancelled
        assert engine.status == SyncStatus.ERROR
        assert {n.ip: n for n in store.get_all_nodes()} == before
        assert store.get_node("2.2.2.2").status == NodeStatus.ONLINE
        assert store.get_sync_state()["sync_count"] == 1
        assert collector.get_counter("sync_cycles_total", {"result": "cancelled"}) == 1
        assert collector.get_counter("sync_cycles_total", {"result": "error"}) == 0


class TestCycleProperties:
    def test_idempotent(self, store, config, directory, geo, collector, node_stats):
        prober = FakeProber({"1.1.1.1": ok("1.1.1.1", node_stats), "2.2.2.2": unreachable("2.2.2.2")})
        engine = make_engine(store, config, directory, prober, geo, collector)

        engine.run_cycle()
        first = {n.ip: (n.status, n.health_score) for n in store.get_all_nodes()}
        engine.run_cycle()
        second = {n.ip: (n.status, n.health_score) for n in store.get_all_nodes()}

        assert first == second
        assert store.size() == 3

    def test_node_missing_from_directory_becomes_unknown(self, store, config, directory, geo, collector, node_stats):
        prober = FakeProber({ip: ok(ip, node_stats) for ip in ("1.1.1.1", "2.2.2.2", "3.3.3.3")})
        engine = make_engine(store, config, directory, prober, geo, collector)
        engine.run_cycle()

        directory.get_pods.return_value = pods_for("1.1.1.1", "2.2.2.2")
        engine.run_cycle()

        assert store.get_node("3.3.3.3").status == NodeStatus.UNKNOWN
        assert store.get_node("3.3.3.3").health_score == 0

    def test_listed_node_without_stats_becomes_degraded(self, store, config, directory, geo, collector, node_stats):
        prober = FakeProber({ip: ok(ip, node_stats) for ip in ("1.1.1.1", "2.2.2.2", "3.3.3.3")})
        engine = make_engine(store, config, directory, prober, geo, collector)
        engine.run_cycle()

        prober.outcomes["2.2.2.2"] = invalid("2.2.2.2")
        engine.run_cycle()

        node = store.get_node("2.2.2.2")
        assert node.status == NodeStatus.DEGRADED
        assert node.stats == node_stats


class TestSingleFlight:
    def test_concurrent_cycle_is_skipped(self, store, config, directory, geo, collector):
        entered = threading.Event()
        release = threading.Event()
        pods = pods_for("1.1.1.1")

        def blocking_get_pods():
            entered.set()
            release.wait(5)
            return pods

        directory.get_pods.side_effect = blocking_get_pods
        engine = make_engine(store, config, directory, FakeProber(), geo, collector)

        worker = threading.Thread(target=engine.run_cycle)
        worker.start()
        try:
            assert entered.wait(5)
            assert engine.status == SyncStatus.SYNCING
            skipped = engine.trigger_sync_now()
        finally:
            release.set()
            worker.join(5)

        assert skipped.skipped
        assert not skipped.success
        assert directory.get_pods.call_count == 1
        assert engine.last_result.success
        assert collector.get_counter("sync_cycles_total", {"result": "skipped"}) == 1


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def monotonic(self):
        return self.now


class RecordingStopEvent:
    """Advances the fake clock on wait() and reports a stop after `stop_after` waits."""

    def __init__(self, clock, stop_after):
        self.clock = clock
        self.stop_after = stop_after
        self.waits = []

    def is_set(self):
        return False

    def wait(self, timeout):
        self.waits.append(timeout)
        self.clock.now += timeout
        return len(self.waits) >= self.stop_after


class TestScheduler:
    def test_runs_repeatedly_until_stopped(self, store, config, directory, geo, collector):
        engine = make_engine(store, config, directory, FakeProber(), geo, collector)

        engine.start()
        try:
            deadline = time.monotonic() + 5
            while directory.get_pods.call_count < 2 and time.monotonic() < deadline:
                time.sleep(0.01)
            assert engine.is_running
        finally:
            engine.stop(timeout=5)

        assert directory.get_pods.call_count >= 2
        assert not engine.is_running

    def test_fixed_period_between_cycle_starts(self, store, directory, geo, collector):
        config = CrawlerConfig(initial_sync_delay=0.0, sync_interval=1.0)
        engine = make_engine(store, config, directory, FakeProber(), geo, collector)
        clock = FakeClock()
        durations = iter([0.5, 2.5, 0.2])
        starts = []

        def fake_cycle():
            starts.append(clock.now)
            clock.now += next(durations)

        engine.run_cycle = fake_cycle
        engine._stop_event = RecordingStopEvent(clock, stop_after=4)

        with patch("sync_engine.time", clock):
            engine._scheduler_loop()

        # The overrunning second cycle swallows the tick at t=2 and t=3.
        assert starts == pytest.approx([0.0, 1.0, 4.0])
        assert engine._stop_event.waits == pytest.approx([0.0, 0.5, 0.5, 0.8])

    def test_stop_during_initial_delay(self, store, directory, geo, collector):
        config = CrawlerConfig(initial_sync_delay=60.0)
        engine = make_engine(store, config, directory, FakeProber(), geo, collector)

        engine.start()
        engine.stop(timeout=5)

        directory.get_pods.assert_not_called()

    def test_start_is_idempotent(self, store, config, directory, geo, collector):
        engine = make_engine(store, config, directory, FakeProber(), geo, collector)
        engine.start()
        thread = engine._scheduler_thread
        try:
            engine.start()
            assert engine._scheduler_thread is thread
        finally:
            engine.stop(timeout=5)

    def test_get_sync_config(self, store, config, directory, geo, collector):
        engine = make_engine(store, config, directory, FakeProber(), geo, collector)
        data = engine.get_sync_config()

        assert data["interval_seconds"] == 0.05
        assert data["scheduler_running"] is False
        assert data["status"] == "idle"
        assert data["last_result"] is None
