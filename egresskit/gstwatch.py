"""Interpretation of GStreamer bus messages and log lines for a running egress pipeline."""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum, IntEnum
from typing import Any, Protocol

logger = logging.getLogger(__name__)
gst_logger = logging.getLogger(f"{__name__}.gst")

# watch errors
MSG_CLOCK_PROBLEM = "GStreamer error: clock problem."
MSG_STREAMING_NOT_NEGOTIATED = "streaming stopped, reason not-negotiated (-4)"
MSG_MUXER = ":muxer"

ELEMENT_GST_RTMP2_SINK = "GstRtmp2Sink"
ELEMENT_GST_APP_SRC = "GstAppSrc"
ELEMENT_SPLIT_MUX_SINK = "GstSplitMuxSink"

# watched element messages
MSG_FIRST_SAMPLE_METADATA = "FirstSampleMetadata"
MSG_FRAGMENT_OPENED = "splitmuxsink-fragment-opened"
MSG_FRAGMENT_CLOSED = "splitmuxsink-fragment-closed"
MSG_GST_MULTI_FILE_SINK = "GstMultiFileSink"

FRAGMENT_LOCATION = "location"
FRAGMENT_RUNNING_TIME = "running-time"
MULTI_FILE_SINK_FILENAME = "filename"
MULTI_FILE_SINK_TIMESTAMP = "timestamp"
FIRST_SAMPLE_START_DATE = "StartDate"

# common gst errors
MSG_WRONG_THREAD = "Called from wrong thread"

# common gst warnings
MSG_KEYFRAME = (
    "Could not request a keyframe. Files may not split at the exact location they should"
)
MSG_LATENCY_QUERY = "Latency query failed"
MSG_TAPS = "can't find exact taps"
MSG_INPUT_DISAPPEARED = "Can't copy metadata because input buffer disappeared"

# common gst fixmes
MSG_STREAM_START = (
    "stream-start event without group-id. "
    "Consider implementing group-id handling in the upstream elements"
)
MSG_CREATING_STREAM = (
    "Creating random stream-id, consider implementing a deterministic way of creating a stream-id"
)
MSG_AGGREGATE_SUBCLASS = (
    "Subclass should call gst_aggregator_selected_samples() from its aggregate implementation."
)

PIPELINE_NAME = "pipeline"
STATE_PLAYING = "playing"
APP_SOURCE_PREFIX = "app_"
MULTI_FILE_SINK_PREFIX = "multifilesink_"


class DebugLevel(IntEnum):
    NONE = 0
    ERROR = 1
    WARNING = 2
    FIXME = 3
    INFO = 4
    DEBUG = 5
    LOG = 6
    TRACE = 7
    MEMDUMP = 9


class MessageType(Enum):
    EOS = "eos"
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"
    STATE_CHANGED = "state-changed"
    ELEMENT = "element"
    LATENCY = "latency"


_LEVEL_NAMES: dict[DebugLevel, str] = {
    DebugLevel.NONE: "none",
    DebugLevel.ERROR: "error",
    DebugLevel.WARNING: "warning",
    DebugLevel.FIXME: "fixme",
    DebugLevel.INFO: "info",
    DebugLevel.DEBUG: "debug",
}

_IGNORED: dict[DebugLevel, frozenset[str]] = {
    DebugLevel.ERROR: frozenset({MSG_WRONG_THREAD}),
    DebugLevel.WARNING: frozenset(
        {MSG_KEYFRAME, MSG_LATENCY_QUERY, MSG_TAPS, MSG_INPUT_DISAPPEARED}
    ),
    DebugLevel.FIXME: frozenset(
        {MSG_STREAM_START, MSG_CREATING_STREAM, MSG_AGGREGATE_SUBCLASS}
    ),
}


@dataclass
class GstError:
    """An error or warning posted on the bus, with its debug string."""

    message: str
    debug_string: str = ""

    def __str__(self) -> str:
        return self.message


@dataclass
class GstMessage:
    """A bus message: its type, the name of the element that posted it and its payload."""

    type: MessageType
    source: str = ""
    error: GstError | None = None
    old_state: str | None = None
    new_state: str | None = None
    structure_name: str | None = None
    structure: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DebugInfo:
    """Element class, element name and message taken from a debug string."""

    element: str
    name: str
    message: str


class GstPipelineError(Exception):
    """A fatal pipeline failure."""

    def __init__(self, cause: object) -> None:
        super().__init__(str(cause))
        self.cause = cause


class SinkNotFoundError(Exception):
    """A message named a sink the pipeline does not have."""

    def __init__(self, message: str = "sink not found") -> None:
        super().__init__(message)


def format_gst_log(
    level: DebugLevel | int, file: str, function: str, line: int, message: str
) -> tuple[str, str] | None:
    """The (message, caller) pair to log for a GStreamer log line, or None if it is noise."""
    try:
        level = DebugLevel(level)
    except ValueError:
        level_name = "log"
    else:
        if message in _IGNORED.get(level, frozenset()):
            return None
        level_name = _LEVEL_NAMES.get(level, "log")

    if function:
        text = f"[gst {level_name}] {function}: {message}"
    else:
        text = f"[gst {level_name}] {message}"
    return text, f"{file}:{line}"


# file.c(line): method_name (): /GstPipeline:pipeline/GstBin:bin_name/GstElement:element_name:\nError message
_DEBUG_INFO_RE = re.compile(
    r"(?s)(.*?)GstPipeline:pipeline/GstBin:(.*?)/(.*?):([^:]*)(:\n)?(.*)"
)


def parse_debug_info(debug_string: str) -> DebugInfo:
    """Split a debug string into element class, element name and message."""
    match = _DEBUG_INFO_RE.search(debug_string)
    if match is None:
        raise ValueError(f"unrecognised debug info: {debug_string!r}")
    return DebugInfo(element=match[3], name=match[4], message=match[6])


def _field(structure: Mapping[str, Any], key: str) -> Any:
    try:
        return structure[key]
    except KeyError:
        raise GstPipelineError(f"missing field {key}") from None


def _string_field(structure: Mapping[str, Any], key: str, what: str) -> str:
    value = _field(structure, key)
    if not isinstance(value, str):
        raise GstPipelineError(f"invalid type for {what}")
    return value


def _uint_field(structure: Mapping[str, Any], key: str, what: str) -> int:
    value = _field(structure, key)
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        raise GstPipelineError(f"invalid type for {what}")
    return value


def get_segment_params(structure: Mapping[str, Any]) -> tuple[str, int]:
    """Location and running time of a split-mux fragment."""
    location = _string_field(structure, FRAGMENT_LOCATION, "location")
    running_time = _uint_field(structure, FRAGMENT_RUNNING_TIME, "time")
    return location, running_time


def get_first_sample_metadata(structure: Mapping[str, Any]) -> datetime:
    """Wall-clock start date, in UTC, of the first sample."""
    value = _field(structure, FIRST_SAMPLE_START_DATE)
    if not isinstance(value, int) or isinstance(value, bool):
        raise GstPipelineError("invalid type for start date")
    epoch = datetime(1970, 1, 1, tzinfo=timezone.utc)
    return epoch + timedelta(microseconds=value // 1000)


def get_image_information(structure: Mapping[str, Any]) -> tuple[str, int]:
    """Filename and timestamp of an image written by a multi-file sink."""
    filename = _string_field(structure, MULTI_FILE_SINK_FILENAME, "location")
    timestamp = _uint_field(structure, MULTI_FILE_SINK_TIMESTAMP, "time")
    return filename, timestamp


class _StreamBin(Protocol):
    def maybe_reset_stream(self, name: str, error: GstError) -> bool: ...

    def get_stream_url(self, name: str) -> str: ...


class _SDKSource(Protocol):
    def stream_stopped(self, name: str) -> None: ...

    def playing(self, name: str) -> None: ...

    def get_started_at(self) -> int: ...


class _SegmentSink(Protocol):
    def update_start_date(self, start_date: datetime) -> None: ...

    def fragment_opened(self, location: str, running_time: int) -> None: ...

    def fragment_closed(self, location: str, running_time: int) -> None: ...


class _ImageSink(Protocol):
    id: str

    def new_image(self, location: str, timestamp: int) -> None: ...


class _Timer(Protocol):
    def cancel(self) -> None: ...


class PipelineWatcher:
    """Reacts to bus messages: stops on EOS, recovers what it can, reports fatal errors."""

    def __init__(
        self,
        *,
        on_error: Callable[[Exception], None],
        stop_pipeline: Callable[[], None],
        eos_sent: Callable[[], bool] = lambda: False,
        stream_bin: _StreamBin | None = None,
        remove_sink: Callable[[str, GstError], None] | None = None,
        source: _SDKSource | None = None,
        segment_sink: _SegmentSink | None = None,
        image_sinks: Iterable[_ImageSink] = (),
        update_start_time: Callable[[int], None] | None = None,
        eos_timer: _Timer | None = None,
        upload_debug_files: Callable[[], None] | None = None,
        enable_profiling: bool = False,
        pipeline_name: str = PIPELINE_NAME,
    ) -> None:
        self.on_error = on_error
        self.stop_pipeline = stop_pipeline
        self.eos_sent = eos_sent
        self.stream_bin = stream_bin
        self.remove_sink = remove_sink
        self.source = source
        self.segment_sink = segment_sink
        self.image_sinks = list(image_sinks)
        self.update_start_time = update_start_time
        self.eos_timer = eos_timer
        self.upload_debug_files = upload_debug_files
        self.enable_profiling = enable_profiling
        self.pipeline_name = pipeline_name
        self._playing = False
        self._playing_lock = threading.Lock()

    def handle_message(self, message: GstMessage) -> bool:
        """Handle one bus message; False means stop watching."""
        if message.type is MessageType.EOS:
            logger.info("EOS received")
            if self.eos_timer is not None:
                self.eos_timer.cancel()
            self.stop_pipeline()
            return False

        try:
            if message.type is MessageType.WARNING:
                self.handle_warning(self._require_error(message))
            elif message.type is MessageType.ERROR:
                self.handle_error(self._require_error(message))
            elif message.type is MessageType.STATE_CHANGED:
                self.handle_state_changed(message)
            elif message.type is MessageType.ELEMENT:
                self.handle_element(message)
        except Exception as exc:
            if self.enable_profiling and self.upload_debug_files is not None:
                self.upload_debug_files()
            self.on_error(exc)
            return False
        return True

    @staticmethod
    def _require_error(message: GstMessage) -> GstError:
        if message.error is None:
            raise GstPipelineError(f"{message.type.value} message without error")
        return message.error

    def handle_warning(self, error: GstError) -> None:
        """Log a warning; a clock problem is fatal."""
        info = parse_debug_info(error.debug_string)
        if error.message == MSG_CLOCK_PROBLEM:
            logger.error("%s: %s (element %s)", error, info.message, info.element)
            raise GstPipelineError(error)
        logger.warning("%s: %s (element %s)", error.message, info.message, info.element)

    def handle_error(self, error: GstError) -> None:
        """Recover from an error where possible, otherwise raise GstPipelineError."""
        info = parse_debug_info(error.debug_string)
        name = info.name

        if info.element == ELEMENT_GST_RTMP2_SINK:
            self._handle_rtmp_error(name, error)
            return

        if info.element == ELEMENT_GST_APP_SRC:
            if info.message == MSG_STREAMING_NOT_NEGOTIATED and self.source is not None:
                logger.debug("streaming stopped: %s", name)
                self.source.stream_stopped(name)
                return

        elif info.element == ELEMENT_SPLIT_MUX_SINK:
            # splitmuxsink fails if EOS arrives before any media reached the muxer
            if info.message == MSG_MUXER and self.eos_sent():
                logger.debug("GstSplitMuxSink failure after sending EOS")
                return

        logger.error("%s: %s (element %s)", error, info.message, name)
        raise GstPipelineError(error)

    def _handle_rtmp_error(self, name: str, error: GstError) -> None:
        parts = name.split("_")
        if len(parts) < 2 or self.stream_bin is None:
            raise GstPipelineError(error)
        stream_name = parts[1]

        if not self.eos_sent():
            try:
                if self.stream_bin.maybe_reset_stream(stream_name, error):
                    return
            except Exception:
                logger.exception("failed to reset stream")

        try:
            url = self.stream_bin.get_stream_url(stream_name)
        except Exception:
            logger.warning("rtmp output not found: %s", stream_name)
            raise

        if self.remove_sink is None:
            raise GstPipelineError(error)
        self.remove_sink(url, error)

    def handle_state_changed(self, message: GstMessage) -> None:
        """Note when the pipeline or an app source starts playing."""
        if message.new_state != STATE_PLAYING:
            return

        source_name = message.source
        if source_name == self.pipeline_name:
            with self._playing_lock:
                if self._playing:
                    return
                self._playing = True
            logger.info("pipeline playing")
            if self.update_start_time is not None and self.source is not None:
                self.update_start_time(self.source.get_started_at())
        elif source_name.startswith(APP_SOURCE_PREFIX):
            track = source_name[len(APP_SOURCE_PREFIX):]
            logger.info("%s playing", track)
            if self.source is not None:
                self.source.playing(track)

    def handle_element(self, message: GstMessage) -> None:
        """Forward segment and image events to their sinks."""
        name = message.structure_name
        structure = message.structure

        if name == MSG_FIRST_SAMPLE_METADATA:
            start_date = get_first_sample_metadata(structure)
            logger.debug("received FirstSampleMetadata message: %s", start_date)
            self._segment_sink().update_start_date(start_date)

        elif name == MSG_FRAGMENT_OPENED:
            location, running_time = get_segment_params(structure)
            self._segment_sink().fragment_opened(location, running_time)

        elif name == MSG_FRAGMENT_CLOSED:
            location, running_time = get_segment_params(structure)
            self._segment_sink().fragment_closed(location, running_time)

        elif name == MSG_GST_MULTI_FILE_SINK:
            location, timestamp = get_image_information(structure)
            logger.debug(
                "received GstMultiFileSink message: location=%s timestamp=%s source=%s",
                location, timestamp, message.source,
            )
            self._image_sink(message.source).new_image(location, timestamp)

    def _segment_sink(self) -> _SegmentSink:
        if self.segment_sink is None:
            raise SinkNotFoundError()
        return self.segment_sink

    def _image_sink(self, element_name: str) -> _ImageSink:
        sink_id = element_name[len(MULTI_FILE_SINK_PREFIX):]
        for sink in self.image_sinks:
            if sink.id == sink_id:
                return sink
        raise SinkNotFoundError()