"""CPU accounting for egress requests: admission control, usage tracking and overload kills."""

from __future__ import annotations

import logging
import math
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Protocol

import psutil

from egresskit.metrics import DEFAULT_REGISTRY, GaugeFunc, GaugeVec, Registry
from egresskit.types import RequestType, StartEgressRequest

logger = logging.getLogger(__name__)

CPU_HOLD_DURATION = 30.0
DEFAULT_KILL_THRESHOLD = 0.95
MIN_KILL_DURATION = 10
MIN_RECOMMENDED_CPU = 3.0


class ResourceExhaustedError(Exception):
    """The node has no CPU left for the request."""

    def __init__(self, message: str = "not enough CPU") -> None:
        super().__init__(message)


class InsufficientCPUError(Exception):
    """The machine has fewer CPUs than the cheapest egress type needs."""

    def __init__(self, message: str = "not enough cpu") -> None:
        super().__init__(message)


@dataclass
class CPUCostConfig:
    """CPUs each kind of egress is expected to use, and the utilisation cap."""

    room_composite_cpu_cost: float
    audio_room_composite_cpu_cost: float
    web_cpu_cost: float
    audio_web_cpu_cost: float
    participant_cpu_cost: float
    track_composite_cpu_cost: float
    track_cpu_cost: float
    max_cpu_utilization: float

    def cost_of(self, req: StartEgressRequest) -> float:
        """CPUs reserved for a request of this kind."""
        match req.request_type:
            case RequestType.ROOM_COMPOSITE:
                return (
                    self.audio_room_composite_cpu_cost
                    if req.audio_only
                    else self.room_composite_cpu_cost
                )
            case RequestType.WEB:
                return self.audio_web_cpu_cost if req.audio_only else self.web_cpu_cost
            case RequestType.PARTICIPANT:
                return self.participant_cpu_cost
            case RequestType.TRACK_COMPOSITE:
                return self.track_composite_cpu_cost
            case RequestType.TRACK:
                return self.track_cpu_cost
        return 0.0

    def requirements(self) -> list[float]:
        return sorted(
            (
                self.room_composite_cpu_cost,
                self.audio_room_composite_cpu_cost,
                self.web_cpu_cost,
                self.audio_web_cpu_cost,
                self.participant_cpu_cost,
                self.track_composite_cpu_cost,
                self.track_cpu_cost,
            )
        )


class CPUStats(Protocol):
    def num_cpu(self) -> float: ...

    def cpu_idle(self) -> float: ...


class PsutilCPUStats:
    """Samples idle CPU and the usage of each child process tree, in CPUs."""

    def __init__(
        self,
        on_sample: Callable[[float, dict[int, float]], None] | None = None,
        interval: float = 1.0,
        root_pid: int | None = None,
    ) -> None:
        self._on_sample = on_sample
        self._interval = interval
        self._root = psutil.Process(root_pid)
        self._num_cpu = float(psutil.cpu_count() or 1)
        self._idle = self._num_cpu
        self._procs: dict[int, psutil.Process] = {}
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        psutil.cpu_times_percent(interval=None)

    def num_cpu(self) -> float:
        return self._num_cpu

    def cpu_idle(self) -> float:
        """Idle capacity at the last sample, in CPUs."""
        return self._idle

    def sample(self) -> dict[int, float]:
        """Take one sample, report it to the callback and return usage per child pid."""
        idle_percent = psutil.cpu_times_percent(interval=None).idle
        self._idle = idle_percent / 100 * self._num_cpu

        usage: dict[int, float] = {}
        seen: set[int] = set()
        try:
            children = self._root.children()
        except psutil.Error:
            children = []
        for child in children:
            try:
                tree = [child, *child.children(recursive=True)]
            except psutil.Error:
                continue
            total = 0.0
            for proc in tree:
                cached = self._procs.get(proc.pid)
                if cached is None or cached != proc:
                    cached = proc
                    self._procs[proc.pid] = proc
                seen.add(proc.pid)
                try:
                    total += cached.cpu_percent(interval=None) / 100
                except psutil.Error:
                    pass
            usage[child.pid] = total

        for pid in set(self._procs) - seen:
            del self._procs[pid]

        if self._on_sample is not None:
            self._on_sample(self._idle, usage)
        return usage

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="cpu-stats", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None

    def _run(self) -> None:
        while not self._stop_event.wait(self._interval):
            try:
                self.sample()
            except Exception:
                logger.exception("cpu sampling failed")


@dataclass
class _ProcessStats:
    egress_id: str
    pending_usage: float = 0.0
    last_usage: float = 0.0
    allowed_usage: float = 0.0
    total_cpu: float = 0.0
    cpu_counter: int = 0
    max_cpu: float = 0.0

    @property
    def reserved(self) -> float:
        return max(self.pending_usage, self.last_usage)


class Monitor:
    """Decides whether the node can take a request and watches running egress CPU."""

    def __init__(
        self,
        cpu_cost_config: CPUCostConfig,
        cpu_stats: CPUStats | None = None,
        registry: Registry | None = None,
        cpu_hold_duration: float = CPU_HOLD_DURATION,
    ) -> None:
        self.cpu_cost_config = cpu_cost_config
        self.cpu_stats = cpu_stats
        self.registry = registry if registry is not None else DEFAULT_REGISTRY
        self.cpu_hold_duration = cpu_hold_duration

        self.cpu_load_gauge: GaugeVec | None = None
        self.request_gauge: GaugeVec | None = None

        self._lock = threading.Lock()
        self._requests = 0
        self._high_cpu_duration = 0
        self._kill_process: Callable[[str, float], None] | None = None
        self._pending: dict[str, _ProcessStats] = {}
        self._proc_stats: dict[int, _ProcessStats] = {}

    @property
    def request_count(self) -> int:
        with self._lock:
            return self._requests

    def start(
        self,
        node_id: str,
        cluster_id: str,
        is_idle: Callable[[], float],
        can_accept_request: Callable[[], float],
        is_disabled: Callable[[], float],
        kill_process: Callable[[str, float], None],
    ) -> None:
        """Begin sampling, validate the cost config and register node metrics."""
        self._kill_process = kill_process

        sampler: PsutilCPUStats | None = None
        if self.cpu_stats is None:
            sampler = PsutilCPUStats(self.update_egress_stats)
            self.cpu_stats = sampler

        try:
            self.check_cpu_config()
        except InsufficientCPUError:
            if sampler is not None:
                sampler.stop()
            raise

        labels = {"node_id": node_id, "cluster_id": cluster_id}
        common = {"namespace": "livekit", "subsystem": "egress", "const_labels": labels}
        node_available = GaugeFunc("available", "", is_idle, **common)
        can_accept = GaugeFunc("can_accept_request", "", can_accept_request, **common)
        disabled = GaugeFunc("is_disabled", "", is_disabled, **common)
        self.cpu_load_gauge = GaugeVec(
            "cpu_load",
            "",
            [],
            namespace="livekit",
            subsystem="node",
            const_labels={"node_id": node_id, "node_type": "EGRESS", "cluster_id": cluster_id},
        )
        self.request_gauge = GaugeVec("requests", "", ["type"], **common)

        self.registry.register(
            node_available, can_accept, disabled, self.cpu_load_gauge, self.request_gauge
        )

        if sampler is not None:
            sampler.start()

    def _stats(self) -> CPUStats:
        if self.cpu_stats is None:
            raise RuntimeError("monitor has no cpu stats source")
        return self.cpu_stats

    def check_cpu_config(self) -> None:
        """Raise InsufficientCPUError if no egress type fits on this machine."""
        requirements = self.cpu_cost_config.requirements()
        cheapest, dearest = requirements[0], requirements[-1]
        recommended = max(dearest, MIN_RECOMMENDED_CPU)
        available = self._stats().num_cpu()

        if available < cheapest:
            logger.error(
                "not enough cpu: minimumCpu=%s recommended=%s available=%s",
                cheapest, recommended, available,
            )
            raise InsufficientCPUError()

        if available < dearest:
            logger.error(
                "not enough cpu for some egress types: minimumCpu=%s recommended=%s available=%s",
                dearest, recommended, available,
            )

        logger.info("cpu available: %f max cost: %f", available, dearest)

    def get_cpu_load(self) -> float:
        """Busy CPU as a percentage of the whole machine."""
        stats = self._stats()
        total = stats.num_cpu()
        return (total - stats.cpu_idle()) / total * 100

    def update_pid(self, egress_id: str, pid: int) -> None:
        """Move a pending egress onto its handler process id."""
        with self._lock:
            ps = self._pending.pop(egress_id, None)
            if ps is None:
                return
            existing = self._proc_stats.get(pid)
            if existing is not None:
                ps.max_cpu = existing.max_cpu
                ps.total_cpu = existing.total_cpu
                ps.cpu_counter = existing.cpu_counter
            self._proc_stats[pid] = ps

    def update_egress_stats(self, idle: float, usage: Mapping[int, float]) -> None:
        """Record one CPU sample; kill the worst offender after sustained overload."""
        load = 1 - idle / self._stats().num_cpu()
        if self.cpu_load_gauge is not None:
            self.cpu_load_gauge.set({}, load)

        victim: tuple[str, float] | None = None
        with self._lock:
            max_usage = 0.0
            max_egress = ""
            for pid, cpu_usage in usage.items():
                ps = self._proc_stats.get(pid)
                if ps is None:
                    continue
                ps.last_usage = cpu_usage
                ps.total_cpu += cpu_usage
                ps.cpu_counter += 1
                if cpu_usage > ps.max_cpu:
                    ps.max_cpu = cpu_usage
                if cpu_usage > ps.allowed_usage and cpu_usage > max_usage:
                    max_usage = cpu_usage
                    max_egress = ps.egress_id

            kill_threshold = DEFAULT_KILL_THRESHOLD
            max_utilization = self.cpu_cost_config.max_cpu_utilization
            if kill_threshold <= max_utilization:
                kill_threshold = (1 + max_utilization) / 2

            if load > kill_threshold:
                logger.warning("high cpu usage: load=%s requests=%s", load, self._requests)
                if self._requests > 1:
                    self._high_cpu_duration += 1
                    if self._high_cpu_duration < MIN_KILL_DURATION:
                        return
                    victim = (max_egress, max_usage)

            self._high_cpu_duration = 0

        if victim is not None and self._kill_process is not None:
            self._kill_process(*victim)

    def can_accept_request(self, req: StartEgressRequest) -> bool:
        with self._lock:
            return self._can_accept_locked(req)

    def _can_accept_locked(self, req: StartEgressRequest) -> bool:
        total = self._stats().num_cpu()
        pending = used = 0.0
        if self._requests == 0:
            available = total
        else:
            pending = sum(ps.reserved for ps in self._pending.values())
            used = sum(ps.reserved for ps in self._proc_stats.values())
            available = total * self.cpu_cost_config.max_cpu_utilization - pending - used

        required = self.cpu_cost_config.cost_of(req)
        accept = available >= required
        logger.debug(
            "cpu check: total=%s pending=%s used=%s required=%s available=%s "
            "activeRequests=%s canAccept=%s",
            total, pending, used, required, available, self._requests, accept,
        )
        return accept

    def accept_request(self, req: StartEgressRequest) -> None:
        """Reserve CPU for a request, or raise ResourceExhaustedError."""
        with self._lock:
            if not self._can_accept_locked(req):
                raise ResourceExhaustedError()
            self._requests += 1

            hold = self.cpu_cost_config.cost_of(req)
            ps = _ProcessStats(egress_id=req.egress_id, pending_usage=hold, allowed_usage=hold)

            def release() -> None:
                ps.pending_usage = 0.0

            timer = threading.Timer(self.cpu_hold_duration, release)
            timer.daemon = True
            timer.start()
            self._pending[req.egress_id] = ps

    def egress_started(self, req: StartEgressRequest) -> None:
        if self.request_gauge is not None:
            self.request_gauge.add({"type": str(req.request_type)}, 1)

    def egress_ended(self, req: StartEgressRequest) -> tuple[float, float]:
        """Release the request and return its (average, maximum) CPU usage."""
        with self._lock:
            if self.request_gauge is not None:
                self.request_gauge.sub({"type": str(req.request_type)}, 1)

            self._pending.pop(req.egress_id, None)
            self._requests -= 1

            for pid, ps in self._proc_stats.items():
                if ps.egress_id == req.egress_id:
                    del self._proc_stats[pid]
                    average = ps.total_cpu / ps.cpu_counter if ps.cpu_counter else math.nan
                    return average, ps.max_cpu
            return 0.0, 0.0

    def egress_aborted(self, req: StartEgressRequest) -> None:
        with self._lock:
            self._pending.pop(req.egress_id, None)
            self._requests -= 1