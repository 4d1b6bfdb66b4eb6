"""Metric collectors, a registry with text exposition, and per-handler upload metrics."""

from __future__ import annotations

import bisect
import math
import threading
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from itertools import accumulate

DEFAULT_BUCKETS: tuple[float, ...] = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10)

UPLOAD_RESPONSE_TIME_BUCKETS: tuple[float, ...] = (
    10, 20, 50, 100, 200, 500, 1000, 2000, 5000, 10000, 15000, 20000, 30000,
)


@dataclass
class MetricSample:
    """One exposed value with its full label set."""

    name: str
    labels: dict[str, str] = field(default_factory=dict)
    value: float = 0.0


@dataclass
class MetricFamily:
    """All samples sharing a metric name."""

    name: str
    type: str = "untyped"
    help: str = ""
    samples: list[MetricSample] = field(default_factory=list)


def _fq_name(namespace: str, subsystem: str, name: str) -> str:
    return "_".join(part for part in (namespace, subsystem, name) if part)


def _format_value(value: float) -> str:
    value = float(value)
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if value.is_integer() and abs(value) < 1e15:
        return str(int(value))
    return repr(value)


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def _escape_help(text: str) -> str:
    return text.replace("\\", "\\\\").replace("\n", "\\n")


class _Collector:
    kind = "untyped"

    def __init__(
        self,
        name: str,
        help: str,
        *,
        const_labels: Mapping[str, str] | None = None,
        namespace: str = "",
        subsystem: str = "",
    ) -> None:
        self.name = _fq_name(namespace, subsystem, name)
        if not self.name:
            raise ValueError("metric name must not be empty")
        self.help = help
        self.const_labels = {k: str(v) for k, v in (const_labels or {}).items()}
        self._lock = threading.Lock()

    @property
    def _key(self) -> tuple[str, tuple[tuple[str, str], ...]]:
        return self.name, tuple(sorted(self.const_labels.items()))

    def _family(self, samples: list[MetricSample]) -> MetricFamily | None:
        if not samples:
            return None
        return MetricFamily(self.name, self.kind, self.help, samples)


class _LabeledCollector(_Collector):
    def __init__(
        self,
        name: str,
        help: str,
        label_names: Iterable[str],
        *,
        const_labels: Mapping[str, str] | None = None,
        namespace: str = "",
        subsystem: str = "",
    ) -> None:
        super().__init__(
            name, help, const_labels=const_labels, namespace=namespace, subsystem=subsystem
        )
        self.label_names = tuple(label_names)
        if len(set(self.label_names)) != len(self.label_names):
            raise ValueError(f"duplicate label names for {self.name}")
        overlap = set(self.label_names) & set(self.const_labels)
        if overlap:
            raise ValueError(f"labels {sorted(overlap)} are both variable and constant")

    def _label_values(self, labels: Mapping[str, str]) -> tuple[str, ...]:
        if set(labels) != set(self.label_names):
            raise ValueError(
                f"{self.name} expects labels {sorted(self.label_names)}, got {sorted(labels)}"
            )
        return tuple(str(labels[name]) for name in self.label_names)

    def _sample_labels(self, values: tuple[str, ...], **extra: str) -> dict[str, str]:
        return {**self.const_labels, **dict(zip(self.label_names, values)), **extra}


class CounterVec(_LabeledCollector):
    """Monotonic counters keyed by label values."""

    kind = "counter"

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._values: dict[tuple[str, ...], float] = {}

    def inc(self, labels: Mapping[str, str], amount: float = 1.0) -> None:
        """Add a non-negative amount to the counter for these labels."""
        if amount < 0:
            raise ValueError("counter cannot decrease")
        key = self._label_values(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + amount

    def value(self, labels: Mapping[str, str]) -> float:
        key = self._label_values(labels)
        with self._lock:
            return self._values.get(key, 0.0)

    def _collect(self) -> MetricFamily | None:
        with self._lock:
            items = sorted(self._values.items())
        return self._family(
            [MetricSample(self.name, self._sample_labels(k), v) for k, v in items]
        )


class GaugeVec(_LabeledCollector):
    """Gauges keyed by label values."""

    kind = "gauge"

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._values: dict[tuple[str, ...], float] = {}

    def add(self, labels: Mapping[str, str], amount: float = 1.0) -> None:
        key = self._label_values(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + amount

    def sub(self, labels: Mapping[str, str], amount: float = 1.0) -> None:
        self.add(labels, -amount)

    def set(self, labels: Mapping[str, str], value: float) -> None:
        key = self._label_values(labels)
        with self._lock:
            self._values[key] = float(value)

    def value(self, labels: Mapping[str, str]) -> float:
        key = self._label_values(labels)
        with self._lock:
            return self._values.get(key, 0.0)

    def _collect(self) -> MetricFamily | None:
        with self._lock:
            items = sorted(self._values.items())
        return self._family(
            [MetricSample(self.name, self._sample_labels(k), v) for k, v in items]
        )


@dataclass
class _HistogramState:
    counts: list[int]
    total: float = 0.0
    count: int = 0


class HistogramVec(_LabeledCollector):
    """Histograms with fixed upper bounds, keyed by label values."""

    kind = "histogram"

    def __init__(
        self,
        name: str,
        help: str,
        label_names: Iterable[str],
        buckets: Sequence[float] | None = None,
        **kwargs,
    ) -> None:
        super().__init__(name, help, label_names, **kwargs)
        if "le" in self.label_names or "le" in self.const_labels:
            raise ValueError('"le" is reserved for histogram buckets')
        bounds = [float(b) for b in (DEFAULT_BUCKETS if buckets is None else buckets)]
        if bounds and math.isinf(bounds[-1]) and bounds[-1] > 0:
            bounds.pop()
        if any(later <= earlier for earlier, later in zip(bounds, bounds[1:])):
            raise ValueError("histogram buckets must be strictly increasing")
        self.buckets = tuple(bounds)
        self._states: dict[tuple[str, ...], _HistogramState] = {}

    def observe(self, labels: Mapping[str, str], value: float) -> None:
        """Record one observation."""
        key = self._label_values(labels)
        index = bisect.bisect_left(self.buckets, value)
        with self._lock:
            state = self._states.setdefault(
                key, _HistogramState([0] * (len(self.buckets) + 1))
            )
            state.counts[index] += 1
            state.total += value
            state.count += 1

    def bucket_counts(self, labels: Mapping[str, str]) -> dict[float, int]:
        """Cumulative counts per upper bound, ending with +inf."""
        key = self._label_values(labels)
        with self._lock:
            state = self._states.get(key)
            counts = list(state.counts) if state else [0] * (len(self.buckets) + 1)
        return dict(zip((*self.buckets, math.inf), accumulate(counts)))

    def _collect(self) -> MetricFamily | None:
        with self._lock:
            items = sorted(
                (k, list(s.counts), s.total, s.count) for k, s in self._states.items()
            )
        samples: list[MetricSample] = []
        for key, counts, total, count in items:
            for bound, cumulative in zip((*self.buckets, math.inf), accumulate(counts)):
                samples.append(
                    MetricSample(
                        f"{self.name}_bucket",
                        self._sample_labels(key, le=_format_value(bound)),
                        float(cumulative),
                    )
                )
            samples.append(MetricSample(f"{self.name}_sum", self._sample_labels(key), total))
            samples.append(
                MetricSample(f"{self.name}_count", self._sample_labels(key), float(count))
            )
        return self._family(samples)


class GaugeFunc(_Collector):
    """A gauge whose value is read from a function at collection time."""

    kind = "gauge"

    def __init__(
        self,
        name: str,
        help: str,
        function: Callable[[], float],
        *,
        const_labels: Mapping[str, str] | None = None,
        namespace: str = "",
        subsystem: str = "",
    ) -> None:
        super().__init__(
            name, help, const_labels=const_labels, namespace=namespace, subsystem=subsystem
        )
        self._function = function

    def value(self) -> float:
        return float(self._function())

    def _collect(self) -> MetricFamily | None:
        return self._family([MetricSample(self.name, dict(self.const_labels), self.value())])


Collector = CounterVec | GaugeVec | HistogramVec | GaugeFunc


class Registry:
    """Holds collectors and exposes their current values."""

    def __init__(self) -> None:
        self._collectors: dict[tuple, Collector] = {}
        self._lock = threading.Lock()

    def register(self, *collectors: Collector) -> None:
        """Register collectors; a name with the same constant labels may appear only once."""
        with self._lock:
            keys = [c._key for c in collectors]
            seen = set(self._collectors)
            for key in keys:
                if key in seen:
                    raise ValueError(f"duplicate metrics collector registration: {key[0]}")
                seen.add(key)
            self._collectors.update(zip(keys, collectors))

    def gather(self) -> list[MetricFamily]:
        """Current families sorted by name; collectors without values are left out."""
        with self._lock:
            collectors = list(self._collectors.values())
        families: dict[str, MetricFamily] = {}
        for collector in collectors:
            family = collector._collect()
            if family is None:
                continue
            existing = families.get(family.name)
            if existing is None:
                families[family.name] = family
            elif existing.type != family.type:
                raise ValueError(f"metric {family.name} collected with conflicting types")
            else:
                existing.samples.extend(family.samples)
        return [families[name] for name in sorted(families)]

    def render(self) -> str:
        """The gathered families in the text exposition format."""
        lines: list[str] = []
        for family in self.gather():
            if family.help:
                lines.append(f"# HELP {family.name} {_escape_help(family.help)}")
            lines.append(f"# TYPE {family.name} {family.type}")
            for sample in family.samples:
                labels = ",".join(
                    f'{k}="{_escape_label(v)}"' for k, v in sorted(sample.labels.items())
                )
                label_text = f"{{{labels}}}" if labels else ""
                lines.append(f"{sample.name}{label_text} {_format_value(sample.value)}")
        return "\n".join(lines) + "\n" if lines else ""


DEFAULT_REGISTRY = Registry()


class HandlerMonitor:
    """Upload and backup-storage metrics for one egress handler."""

    def __init__(
        self,
        node_id: str,
        cluster_id: str,
        egress_id: str,
        registry: Registry | None = None,
    ) -> None:
        self.registry = registry if registry is not None else DEFAULT_REGISTRY
        constant_labels = {"node_id": node_id, "cluster_id": cluster_id, "egress_id": egress_id}

        # type: file, manifest, segment, liveplaylist, playlist; status: success, failure
        self.uploads_counter = CounterVec(
            "pipeline_uploads",
            "Number of uploads per pipeline with type and status labels",
            ["type", "status"],
            const_labels=constant_labels,
            namespace="livekit",
            subsystem="egress",
        )
        self.uploads_response_time = HistogramVec(
            "pipline_upload_response_time_ms",
            "A histogram of latencies for upload requests in milliseconds.",
            ["type", "status"],
            UPLOAD_RESPONSE_TIME_BUCKETS,
            const_labels=constant_labels,
            namespace="livekit",
            subsystem="egress",
        )
        self.backup_counter = CounterVec(
            "backup_storage_writes",
            "number of writes to backup storage location by output type",
            ["output_type"],
            const_labels=constant_labels,
            namespace="livekit",
            subsystem="egress",
        )
        self.registry.register(
            self.uploads_counter, self.uploads_response_time, self.backup_counter
        )

    def _record_upload(self, upload_type: str, status: str, elapsed: float) -> None:
        labels = {"type": upload_type, "status": status}
        self.uploads_counter.inc(labels, 1)
        self.uploads_response_time.observe(labels, elapsed)

    def inc_upload_count_success(self, upload_type: str, elapsed: float) -> None:
        self._record_upload(upload_type, "success", elapsed)

    def inc_upload_count_failure(self, upload_type: str, elapsed: float) -> None:
        self._record_upload(upload_type, "failure", elapsed)

    def inc_backup_storage_writes(self, output_type: str) -> None:
        self.backup_counter.inc({"output_type": output_type}, 1)

    def _register_channel_gauge(
        self,
        name: str,
        help: str,
        node_id: str,
        cluster_id: str,
        egress_id: str,
        channel_size_function: Callable[[], float],
    ) -> GaugeFunc:
        gauge = GaugeFunc(
            name,
            help,
            channel_size_function,
            const_labels={"node_id": node_id, "cluster_id": cluster_id, "egress_id": egress_id},
            namespace="livekit",
            subsystem="egress",
        )
        self.registry.register(gauge)
        return gauge

    def register_segments_channel_size_gauge(
        self,
        node_id: str,
        cluster_id: str,
        egress_id: str,
        channel_size_function: Callable[[], float],
    ) -> GaugeFunc:
        return self._register_channel_gauge(
            "segments_uploads_channel_size",
            "number of segment uploads pending in channel",
            node_id,
            cluster_id,
            egress_id,
            channel_size_function,
        )

    def register_playlist_channel_size_gauge(
        self,
        node_id: str,
        cluster_id: str,
        egress_id: str,
        channel_size_function: Callable[[], float],
    ) -> GaugeFunc:
        return self._register_channel_gauge(
            "playlist_uploads_channel_size",
            "number of playlist updates pending in channel",
            node_id,
            cluster_id,
            egress_id,
            channel_size_function,
        )