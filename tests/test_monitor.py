import time

import pytest

from egresskit.metrics import Registry
from egresskit.monitor import (
    MIN_KILL_DURATION,
    CPUCostConfig,
    InsufficientCPUError,
    Monitor,
    PsutilCPUStats,
    ResourceExhaustedError,
)
from egresskit.types import RequestType, StartEgressRequest


class FakeCPUStats:
    def __init__(self, total, idle=None):
        self.total = float(total)
        self.idle = float(total if idle is None else idle)

    def num_cpu(self):
        return self.total

    def cpu_idle(self):
        return self.idle


def make_costs(**overrides):
    values = dict(
        room_composite_cpu_cost=3.0,
        audio_room_composite_cpu_cost=1.0,
        web_cpu_cost=3.0,
        audio_web_cpu_cost=1.0,
        participant_cpu_cost=2.0,
        track_composite_cpu_cost=2.0,
        track_cpu_cost=1.0,
        max_cpu_utilization=0.8,
    )
    values.update(overrides)
    return CPUCostConfig(**values)


def make_monitor(total=8, idle=None, **overrides):
    return Monitor(make_costs(**overrides), FakeCPUStats(total, idle), Registry())


def req(egress_id, request_type=RequestType.TRACK, audio_only=False):
    return StartEgressRequest(egress_id, request_type, audio_only)


def test_check_cpu_config_rejects_too_few_cpus():
    monitor = make_monitor(total=0.5)
    with pytest.raises(InsufficientCPUError):
        monitor.check_cpu_config()


def test_check_cpu_config_accepts_partial_capacity():
    monitor = make_monitor(total=2)
    monitor.check_cpu_config()
    assert monitor.can_accept_request(req("a", RequestType.ROOM_COMPOSITE)) is False


def test_cpu_load_percentage():
    monitor = make_monitor(total=4, idle=1)
    assert monitor.get_cpu_load() == 75.0


def test_idle_node_uses_total_capacity():
    monitor = make_monitor(total=3)
    assert monitor.can_accept_request(req("a", RequestType.ROOM_COMPOSITE)) is True
    assert monitor.can_accept_request(req("b", RequestType.ROOM_COMPOSITE, audio_only=True)) is True
    small = make_monitor(total=2.5)
    assert small.can_accept_request(req("a", RequestType.ROOM_COMPOSITE)) is False
    assert small.can_accept_request(req("b", RequestType.ROOM_COMPOSITE, audio_only=True)) is True


def test_accept_request_reserves_cpu():
    monitor = make_monitor(total=4)
    monitor.accept_request(req("a", RequestType.ROOM_COMPOSITE))
    assert monitor.request_count == 1
    assert monitor.can_accept_request(req("b", RequestType.TRACK)) is False
    with pytest.raises(ResourceExhaustedError):
        monitor.accept_request(req("b", RequestType.TRACK))
    assert monitor.request_count == 1


def test_abort_releases_reservation():
    monitor = make_monitor(total=4)
    monitor.accept_request(req("a", RequestType.ROOM_COMPOSITE))
    monitor.egress_aborted(req("a", RequestType.ROOM_COMPOSITE))
    assert monitor.request_count == 0
    assert monitor.can_accept_request(req("b", RequestType.ROOM_COMPOSITE)) is True


def test_pending_hold_expires():
    monitor = Monitor(make_costs(), FakeCPUStats(4), Registry(), cpu_hold_duration=0.05)
    monitor.accept_request(req("a", RequestType.ROOM_COMPOSITE))
    assert monitor.can_accept_request(req("b", RequestType.TRACK)) is False
    deadline = time.monotonic() + 2
    while time.monotonic() < deadline and not monitor.can_accept_request(req("b")):
        time.sleep(0.02)
    assert monitor.can_accept_request(req("b", RequestType.TRACK)) is True


def test_usage_is_tracked_and_reported_on_end():
    monitor = make_monitor(total=8)
    monitor.accept_request(req("a"))
    monitor.update_pid("a", 100)
    monitor.update_egress_stats(8.0, {100: 1.0})
    monitor.update_egress_stats(8.0, {100: 2.0, 999: 5.0})
    average, maximum = monitor.egress_ended(req("a"))
    assert average == 1.5
    assert maximum == 2.0
    assert monitor.request_count == 0


def test_ended_without_process_returns_zero():
    monitor = make_monitor(total=8)
    monitor.accept_request(req("a"))
    assert monitor.egress_ended(req("a")) == (0.0, 0.0)


def test_kill_after_sustained_overload():
    killed = []
    monitor = make_monitor(total=8)
    monitor._kill_process = lambda egress_id, usage: killed.append((egress_id, usage))
    monitor.accept_request(req("a"))
    monitor.accept_request(req("b"))
    monitor.update_pid("a", 1)
    monitor.update_pid("b", 2)
    for _ in range(MIN_KILL_DURATION - 1):
        monitor.update_egress_stats(0.0, {1: 3.0, 2: 2.0})
    assert killed == []
    monitor.update_egress_stats(0.0, {1: 3.0, 2: 2.0})
    assert killed == [("a", 3.0)]


def test_no_kill_with_single_request():
    killed = []
    monitor = make_monitor(total=8)
    monitor._kill_process = lambda egress_id, usage: killed.append(egress_id)
    monitor.accept_request(req("a"))
    monitor.update_pid("a", 1)
    for _ in range(MIN_KILL_DURATION * 2):
        monitor.update_egress_stats(0.0, {1: 7.0})
    assert killed == []


def test_kill_threshold_raised_by_high_utilization_cap():
    killed = []
    monitor = make_monitor(total=100, max_cpu_utilization=0.96)
    monitor._kill_process = lambda egress_id, usage: killed.append(egress_id)
    monitor.accept_request(req("a"))
    monitor.accept_request(req("b"))
    monitor.update_pid("a", 1)
    for _ in range(MIN_KILL_DURATION * 2):
        monitor.update_egress_stats(3.0, {1: 50.0})
    assert killed == []


def test_start_registers_metrics_and_counts_requests():
    registry = Registry()
    monitor = Monitor(make_costs(), FakeCPUStats(8), registry)
    monitor.start("node", "cluster", lambda: 1.0, lambda: 1.0, lambda: 0.0, lambda e, u: None)
    monitor.egress_started(req("a"))
    assert monitor.request_gauge.value({"type": "track"}) == 1
    text = registry.render()
    assert "livekit_egress_available" in text
    assert "livekit_egress_is_disabled" in text
    monitor.accept_request(req("a"))
    monitor.egress_ended(req("a"))
    assert monitor.request_gauge.value({"type": "track"}) == 0


def test_start_rejects_insufficient_cpu():
    monitor = Monitor(make_costs(), FakeCPUStats(0.5), Registry())
    with pytest.raises(InsufficientCPUError):
        monitor.start("node", "cluster", lambda: 1.0, lambda: 1.0, lambda: 0.0, lambda e, u: None)


def test_psutil_stats_sample():
    samples = []
    stats = PsutilCPUStats(lambda idle, usage: samples.append((idle, usage)))
    usage = stats.sample()
    assert stats.num_cpu() >= 1
    assert 0 <= stats.cpu_idle() <= stats.num_cpu()
    assert samples == [(stats.cpu_idle(), usage)]
    assert all(value >= 0 for value in usage.values())