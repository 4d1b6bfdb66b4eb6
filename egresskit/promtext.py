"""Parsing of the metrics text exposition format, and labelling of handler metrics."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from egresskit.metrics import MetricFamily, MetricSample

logger = logging.getLogger(__name__)

EGRESS_ID_LABEL = "egress_id"

_METRIC_TYPES = frozenset({"counter", "gauge", "histogram", "summary", "untyped"})
_METRIC_NAME_RE = re.compile(r"[a-zA-Z_:][a-zA-Z0-9_:]*")
_LABEL_NAME_RE = re.compile(r"[a-zA-Z_][a-zA-Z0-9_]*")
_ESCAPES = {"\\": "\\", "n": "\n", '"': '"'}


class MetricsParseError(ValueError):
    """The text is not valid metrics exposition format."""

    def __init__(self, line_number: int, reason: str) -> None:
        super().__init__(f"line {line_number}: {reason}")
        self.line_number = line_number
        self.reason = reason


@dataclass
class _FamilyState:
    family: MetricFamily
    has_help: bool = False
    has_type: bool = False
    has_samples: bool = False
    label_sets: set = field(default_factory=set)


def _unescape(text: str, allowed: str, line_number: int) -> str:
    out: list[str] = []
    chars = iter(text)
    for char in chars:
        if char != "\\":
            out.append(char)
            continue
        escaped = next(chars, None)
        if escaped is None or escaped not in allowed:
            raise MetricsParseError(line_number, "invalid escape sequence")
        out.append(_ESCAPES[escaped])
    return "".join(out)


def _skip_blanks(line: str, pos: int) -> int:
    while pos < len(line) and line[pos] in " \t":
        pos += 1
    return pos


def _parse_labels(line: str, pos: int, line_number: int) -> tuple[dict[str, str], int]:
    """Parse a label block starting just after '{'; return labels and the index after '}'."""
    labels: dict[str, str] = {}
    while True:
        pos = _skip_blanks(line, pos)
        if pos < len(line) and line[pos] == "}":
            return labels, pos + 1
        match = _LABEL_NAME_RE.match(line, pos)
        if match is None:
            raise MetricsParseError(line_number, "invalid label name")
        name = match.group()
        pos = _skip_blanks(line, match.end())
        if pos >= len(line) or line[pos] != "=":
            raise MetricsParseError(line_number, f"expected '=' after label name {name}")
        pos = _skip_blanks(line, pos + 1)
        if pos >= len(line) or line[pos] != '"':
            raise MetricsParseError(line_number, f"expected '\"' to start value of {name}")
        pos += 1
        start = pos
        while pos < len(line) and line[pos] != '"':
            pos += 2 if line[pos] == "\\" else 1
        if pos >= len(line):
            raise MetricsParseError(line_number, f"unterminated value for label {name}")
        if name in labels:
            raise MetricsParseError(line_number, f"duplicate label {name}")
        labels[name] = _unescape(line[start:pos], '\\n"', line_number)
        pos = _skip_blanks(line, pos + 1)
        if pos < len(line) and line[pos] == ",":
            pos += 1
        elif pos < len(line) and line[pos] == "}":
            return labels, pos + 1
        else:
            raise MetricsParseError(line_number, "expected ',' or '}' after label value")


def _parse_value(token: str, line_number: int) -> float:
    if "_" in token:
        raise MetricsParseError(line_number, f"invalid value {token!r}")
    try:
        return float(token)
    except ValueError:
        raise MetricsParseError(line_number, f"invalid value {token!r}") from None


def _parse_sample(line: str, line_number: int) -> MetricSample:
    match = _METRIC_NAME_RE.match(line)
    if match is None:
        raise MetricsParseError(line_number, "invalid metric name")
    name = match.group()
    pos = _skip_blanks(line, match.end())
    labels: dict[str, str] = {}
    if pos < len(line) and line[pos] == "{":
        labels, pos = _parse_labels(line, pos + 1, line_number)
    rest = line[pos:]
    if not rest[:1].isspace():
        raise MetricsParseError(line_number, "expected whitespace before value")
    tokens = rest.split()
    if not 1 <= len(tokens) <= 2:
        raise MetricsParseError(line_number, "expected a value and an optional timestamp")
    value = _parse_value(tokens[0], line_number)
    if len(tokens) == 2:
        try:
            int(tokens[1])
        except ValueError:
            raise MetricsParseError(line_number, f"invalid timestamp {tokens[1]!r}") from None
    return MetricSample(name, labels, value)


class _Parser:
    def __init__(self) -> None:
        self.states: dict[str, _FamilyState] = {}

    def state(self, name: str) -> _FamilyState:
        state = self.states.get(name)
        if state is None:
            state = self.states[name] = _FamilyState(MetricFamily(name))
        return state

    def comment(self, line: str, line_number: int) -> None:
        parts = line[1:].lstrip().split(None, 2)
        if not parts or parts[0] not in ("HELP", "TYPE"):
            return
        keyword = parts[0]
        if len(parts) < 2:
            raise MetricsParseError(line_number, f"{keyword} without metric name")
        name = parts[1]
        if not _METRIC_NAME_RE.fullmatch(name):
            raise MetricsParseError(line_number, f"invalid metric name {name!r}")
        state = self.state(name)
        text = parts[2].strip() if len(parts) > 2 else ""
        if keyword == "HELP":
            if state.has_help:
                raise MetricsParseError(line_number, f"second HELP line for metric {name}")
            state.family.help = _unescape(text, "\\n", line_number)
            state.has_help = True
            return
        if state.has_type:
            raise MetricsParseError(line_number, f"second TYPE line for metric {name}")
        if state.has_samples:
            raise MetricsParseError(line_number, f"TYPE line for {name} after its samples")
        if text not in _METRIC_TYPES:
            raise MetricsParseError(line_number, f"unknown metric type {text!r}")
        state.family.type = text
        state.has_type = True

    def family_for(self, sample_name: str) -> _FamilyState:
        if sample_name in self.states:
            return self.states[sample_name]
        for suffix, kinds in (
            ("_bucket", ("histogram",)),
            ("_sum", ("histogram", "summary")),
            ("_count", ("histogram", "summary")),
        ):
            if sample_name.endswith(suffix):
                base = self.states.get(sample_name[: -len(suffix)])
                if base is not None and base.family.type in kinds:
                    return base
        return self.state(sample_name)

    def sample(self, line: str, line_number: int) -> None:
        sample = _parse_sample(line, line_number)
        state = self.family_for(sample.name)
        family = state.family
        is_base = sample.name == family.name
        if family.type == "histogram":
            if is_base:
                raise MetricsParseError(line_number, f"histogram {family.name} needs a suffix")
            if sample.name.endswith("_bucket") and "le" not in sample.labels:
                raise MetricsParseError(line_number, "histogram bucket without 'le' label")
        elif family.type == "summary" and is_base and "quantile" not in sample.labels:
            raise MetricsParseError(line_number, "summary sample without 'quantile' label")
        key = (sample.name, tuple(sorted(sample.labels.items())))
        if key in state.label_sets:
            raise MetricsParseError(line_number, f"duplicate sample for {sample.name}")
        state.label_sets.add(key)
        family.samples.append(sample)
        state.has_samples = True


def parse_metrics_text(text: str) -> dict[str, MetricFamily]:
    """Parse exposition text into families by name; families without samples are dropped."""
    parser = _Parser()
    for line_number, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line:
            continue
        if line.startswith("#"):
            parser.comment(line, line_number)
        else:
            parser.sample(line, line_number)
    return {
        name: state.family for name, state in parser.states.items() if state.family.samples
    }


def apply_default_label(
    egress_id: str, families: Mapping[str, MetricFamily] | Iterable[MetricFamily]
) -> None:
    """Add an egress_id label to every sample that does not already have one."""
    members = families.values() if isinstance(families, Mapping) else families
    for family in members:
        for sample in family.samples:
            sample.labels.setdefault(EGRESS_ID_LABEL, egress_id)


def deserialize_metrics(egress_id: str, text: str) -> list[MetricFamily]:
    """Families parsed from a handler's metrics, labelled with its egress id.

    Text that cannot be parsed is logged and yields no families.
    """
    try:
        families = parse_metrics_text(text)
    except MetricsParseError as exc:
        logger.warning("failed to parse metrics from handler: %s (egress_id %s)", exc, egress_id)
        return []
    apply_default_label(egress_id, families)
    return list(families.values())