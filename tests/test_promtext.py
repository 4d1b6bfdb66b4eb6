import pytest

from egresskit.metrics import CounterVec, GaugeFunc, HistogramVec, MetricFamily, MetricSample, Registry
from egresskit.promtext import (
    MetricsParseError,
    apply_default_label,
    deserialize_metrics,
    parse_metrics_text,
)

SAMPLE_TEXT = """\
# HELP requests_total Total requests.
# TYPE requests_total counter
requests_total{method="get",code="200"} 1027 1395066363000
requests_total{method="post",code="400"} 3

# A plain comment line
temperature 21.5
"""


def test_parse_worked_example():
    families = parse_metrics_text(SAMPLE_TEXT)
    assert list(families) == ["requests_total", "temperature"]
    requests = families["requests_total"]
    assert requests.type == "counter"
    assert requests.help == "Total requests."
    assert requests.samples == [
        MetricSample("requests_total", {"method": "get", "code": "200"}, 1027.0),
        MetricSample("requests_total", {"method": "post", "code": "400"}, 3.0),
    ]
    assert families["temperature"].type == "untyped"
    assert families["temperature"].samples[0].value == 21.5


def test_histogram_samples_grouped_under_base_name():
    text = """\
# TYPE latency histogram
latency_bucket{le="1"} 2
latency_bucket{le="+Inf"} 3
latency_sum 4.5
latency_count 3
"""
    families = parse_metrics_text(text)
    assert list(families) == ["latency"]
    names = [s.name for s in families["latency"].samples]
    assert names == ["latency_bucket", "latency_bucket", "latency_sum", "latency_count"]
    assert families["latency"].samples[1].labels == {"le": "+Inf"}


def test_label_escapes_and_special_values():
    text = 'm{path="a\\\\b",quote="say \\"hi\\"",nl="x\\ny"} +Inf\nn NaN\n'
    families = parse_metrics_text(text)
    sample = families["m"].samples[0]
    assert sample.labels == {"path": "a\\b", "quote": 'say "hi"', "nl": "x\ny"}
    assert sample.value == float("inf")
    value = families["n"].samples[0].value
    assert value != value


def test_family_without_samples_dropped():
    assert parse_metrics_text("# HELP foo nothing\n# TYPE foo gauge\n") == {}


def test_empty_text():
    assert parse_metrics_text("") == {}


@pytest.mark.parametrize(
    "text",
    [
        "# TYPE foo counter\n# TYPE foo gauge\nfoo 1\n",
        "# TYPE foo sometype\nfoo 1\n",
        "foo 1\n# TYPE foo counter\n",
        "# HELP foo a\n# HELP foo b\nfoo 1\n",
        "foo{bar=baz} 1\n",
        "foo{bar=\"baz\" 1\n",
        "foo not_a_number\n",
        "foo 1 2 3\n",
        "foo-1 2\n",
        "foo 1_0\n",
        "foo{a=\"1\",a=\"2\"} 1\n",
        "foo\n",
        "# TYPE h histogram\nh_bucket 1\n",
        'foo{a="\\x"} 1\n',
    ],
)
def test_invalid_text_raises(text):
    with pytest.raises(MetricsParseError):
        parse_metrics_text(text)


def test_parse_error_reports_line_number():
    with pytest.raises(MetricsParseError) as info:
        parse_metrics_text("ok 1\nbad value\n")
    assert info.value.line_number == 2


def test_round_trip_through_registry_render():
    registry = Registry()
    counter = CounterVec("uploads", "Upload count", ["type"], const_labels={"node_id": "n1"})
    histogram = HistogramVec("latency_ms", "Latency.", ["type"], [10, 100])
    gauge = GaugeFunc("queue", "Queue size", lambda: 7)
    registry.register(counter, histogram, gauge)
    counter.inc({"type": "file"}, 2)
    counter.inc({"type": "segment"}, 1)
    histogram.observe({"type": "file"}, 5)
    histogram.observe({"type": "file"}, 50)
    histogram.observe({"type": "file"}, 500)

    parsed = parse_metrics_text(registry.render())
    assert list(parsed.values()) == registry.gather()


def test_apply_default_label_keeps_existing():
    families = {
        "a": MetricFamily(
            "a",
            "gauge",
            samples=[
                MetricSample("a", {"egress_id": "EG_other"}, 1.0),
                MetricSample("a", {"x": "y"}, 2.0),
            ],
        )
    }
    apply_default_label("EG_1", families)
    labels = [s.labels for s in families["a"].samples]
    assert labels == [{"egress_id": "EG_other"}, {"x": "y", "egress_id": "EG_1"}]


def test_apply_default_label_accepts_iterable():
    family = MetricFamily("b", samples=[MetricSample("b", {}, 0.0)])
    apply_default_label("EG_2", [family])
    assert family.samples[0].labels == {"egress_id": "EG_2"}


def test_deserialize_metrics_labels_every_sample():
    families = deserialize_metrics("EG_abc", SAMPLE_TEXT)
    assert [f.name for f in families] == ["requests_total", "temperature"]
    assert all(
        sample.labels["egress_id"] == "EG_abc" for f in families for sample in f.samples
    )
    assert families[0].samples[0].labels["method"] == "get"


def test_deserialize_metrics_invalid_text_yields_nothing():
    assert deserialize_metrics("EG_abc", "this is { not metrics\n") == []


def test_deserialize_metrics_empty_text():
    assert deserialize_metrics("EG_abc", "") == []