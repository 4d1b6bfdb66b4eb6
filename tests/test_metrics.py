import math

import pytest

from egresskit.metrics import (
    UPLOAD_RESPONSE_TIME_BUCKETS,
    CounterVec,
    GaugeFunc,
    GaugeVec,
    HandlerMonitor,
    HistogramVec,
    MetricFamily,
    Registry,
)


def _family(registry, name) -> MetricFamily:
    return next(f for f in registry.gather() if f.name == name)


def test_counter_accumulates_per_label_set():
    counter = CounterVec("uploads", "help", ["type"])
    counter.inc({"type": "file"}, 2.5)
    counter.inc({"type": "file"}, 1.5)
    counter.inc({"type": "segment"})
    assert counter.value({"type": "file"}) == 2.5 + 1.5
    assert counter.value({"type": "segment"}) == 1.0
    assert counter.value({"type": "manifest"}) == 0.0


def test_counter_rejects_negative_amount():
    counter = CounterVec("uploads", "help", ["type"])
    with pytest.raises(ValueError):
        counter.inc({"type": "file"}, -1)


@pytest.mark.parametrize("labels", [{}, {"type": "file", "extra": "x"}, {"status": "ok"}])
def test_labels_must_match_exactly(labels):
    counter = CounterVec("uploads", "help", ["type"])
    with pytest.raises(ValueError):
        counter.inc(labels)


def test_name_joins_namespace_and_subsystem():
    counter = CounterVec("pipeline_uploads", "h", [], namespace="livekit", subsystem="egress")
    assert counter.name == "livekit_egress_pipeline_uploads"


def test_gauge_add_sub_set():
    gauge = GaugeVec("requests", "help", ["type"])
    gauge.add({"type": "web"}, 3)
    gauge.sub({"type": "web"}, 1)
    assert gauge.value({"type": "web"}) == 3 - 1
    gauge.set({"type": "web"}, 7.5)
    assert gauge.value({"type": "web"}) == 7.5


def test_gauge_func_reads_function_each_time():
    readings = [4.0, 9.0]
    gauge = GaugeFunc("pending", "help", lambda: readings.pop(0))
    assert gauge.value() == 4.0
    assert gauge.value() == 9.0


def test_histogram_cumulative_buckets():
    hist = HistogramVec("latency", "help", ["type"], [10, 20])
    hist.observe({"type": "file"}, 5)
    hist.observe({"type": "file"}, 15)
    assert hist.bucket_counts({"type": "file"}) == {10.0: 1, 20.0: 2, math.inf: 2}


def test_histogram_bound_is_inclusive():
    hist = HistogramVec("latency", "help", [], [10, 20])
    hist.observe({}, 10)
    counts = hist.bucket_counts({})
    assert counts[10.0] == counts[math.inf]


@pytest.mark.parametrize("buckets", [[10, 10], [20, 10]])
def test_histogram_rejects_unsorted_buckets(buckets):
    with pytest.raises(ValueError):
        HistogramVec("latency", "help", [], buckets)


def test_histogram_rejects_le_label():
    with pytest.raises(ValueError):
        HistogramVec("latency", "help", ["le"])


def test_histogram_sum_and_count_samples():
    registry = Registry()
    hist = HistogramVec("latency", "help", [], [10, 20])
    registry.register(hist)
    hist.observe({}, 5)
    hist.observe({}, 15)
    samples = {s.name: s.value for s in _family(registry, "latency").samples if "le" not in s.labels}
    assert samples["latency_sum"] == 5 + 15
    assert samples["latency_count"] == len([5, 15])


def test_registry_rejects_duplicates_but_allows_distinct_const_labels():
    registry = Registry()
    registry.register(CounterVec("c", "h", [], const_labels={"egress_id": "a"}))
    registry.register(CounterVec("c", "h", [], const_labels={"egress_id": "b"}))
    with pytest.raises(ValueError):
        registry.register(CounterVec("c", "h", [], const_labels={"egress_id": "a"}))


def test_gather_sorted_and_skips_empty():
    registry = Registry()
    empty = CounterVec("zzz_unused", "h", ["k"])
    gauge = GaugeVec("bbb", "h", ["k"])
    registry.register(empty, gauge, GaugeFunc("aaa", "h", lambda: 1.0))
    gauge.set({"k": "v"}, 2.0)
    names = [f.name for f in registry.gather()]
    assert names == sorted(names)
    assert empty.name not in names
    assert gauge.name in names


def test_render_text_format():
    registry = Registry()
    counter = CounterVec("requests_seen", "help text", ["kind"])
    registry.register(counter)
    counter.inc({"kind": 'a"b'}, 2.0)
    lines = registry.render().splitlines()
    assert "# HELP requests_seen help text" in lines
    assert "# TYPE requests_seen counter" in lines
    assert 'requests_seen{kind="a\\"b"} 2' in lines


def test_handler_monitor_records_uploads():
    registry = Registry()
    monitor = HandlerMonitor("node", "cluster", "EG_1", registry=registry)
    monitor.inc_upload_count_success("file", 120.0)
    monitor.inc_upload_count_failure("segment", 60.0)

    success = {"type": "file", "status": "success"}
    failure = {"type": "segment", "status": "failure"}
    assert monitor.uploads_counter.value(success) == 1.0
    assert monitor.uploads_counter.value(failure) == 1.0
    assert monitor.uploads_response_time.bucket_counts(success)[200.0] == 1
    assert monitor.uploads_response_time.bucket_counts(success)[100.0] == 0
    assert set(monitor.uploads_response_time.buckets) == set(UPLOAD_RESPONSE_TIME_BUCKETS)

    family = _family(registry, monitor.uploads_counter.name)
    assert all(s.labels["egress_id"] == "EG_1" for s in family.samples)


def test_handler_monitor_backup_writes():
    registry = Registry()
    monitor = HandlerMonitor("node", "cluster", "EG_2", registry=registry)
    monitor.inc_backup_storage_writes("file")
    monitor.inc_backup_storage_writes("file")
    assert monitor.backup_counter.value({"output_type": "file"}) == 1.0 + 1.0


def test_handler_monitor_duplicate_registration_fails():
    registry = Registry()
    HandlerMonitor("node", "cluster", "EG_3", registry=registry)
    HandlerMonitor("node", "cluster", "EG_4", registry=registry)
    with pytest.raises(ValueError):
        HandlerMonitor("node", "cluster", "EG_3", registry=registry)


def test_handler_monitor_channel_gauges():
    registry = Registry()
    monitor = HandlerMonitor("node", "cluster", "EG_5", registry=registry)
    segments = monitor.register_segments_channel_size_gauge("node", "cluster", "EG_5", lambda: 4.0)
    playlist = monitor.register_playlist_channel_size_gauge("node", "cluster", "EG_5", lambda: 2.0)

    seg_family = _family(registry, segments.name)
    assert seg_family.samples[0].value == 4.0
    assert seg_family.samples[0].labels["egress_id"] == "EG_5"
    assert _family(registry, playlist.name).samples[0].value == 2.0
    with pytest.raises(ValueError):
        monitor.register_segments_channel_size_gauge("node", "cluster", "EG_5", lambda: 0.0)