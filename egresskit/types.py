"""Egress request, codec and container types, with their compatibility tables."""

from __future__ import annotations

from collections.abc import Collection, Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Hashable, TypeVar, Union

K = TypeVar("K", bound=Hashable)


class _StrEnum(str, Enum):
    """String enum whose str() is its value."""

    def __str__(self) -> str:
        return str(self.value)


class RequestType(_StrEnum):
    ROOM_COMPOSITE = "room_composite"
    WEB = "web"
    PARTICIPANT = "participant"
    TRACK_COMPOSITE = "track_composite"
    TRACK = "track"


class SourceType(_StrEnum):
    WEB = "web"
    SDK = "sdk"


class EgressType(_StrEnum):
    STREAM = "stream"
    WEBSOCKET = "websocket"
    FILE = "file"
    SEGMENTS = "segments"
    IMAGES = "images"


class MimeType(_StrEnum):
    AAC = "audio/aac"
    OPUS = "audio/opus"
    RAW_AUDIO = "audio/x-raw"
    H264 = "video/h264"
    VP8 = "video/vp8"
    VP9 = "video/vp9"
    JPEG = "image/jpeg"
    RAW_VIDEO = "video/x-raw"


class Profile(_StrEnum):
    BASELINE = "baseline"
    MAIN = "main"
    HIGH = "high"


class OutputType(_StrEnum):
    UNKNOWN_FILE = ""
    RAW = "audio/x-raw"
    OGG = "audio/ogg"
    IVF = "video/x-ivf"
    MP4 = "video/mp4"
    TS = "video/mp2t"
    WEBM = "video/webm"
    JPEG = "image/jpeg"
    RTMP = "rtmp"
    HLS = "application/x-mpegurl"
    JSON = "application/json"
    BLOB = "application/octet-stream"


FILE_EXTENSION_RAW = ".raw"
FILE_EXTENSION_OGG = ".ogg"
FILE_EXTENSION_IVF = ".ivf"
FILE_EXTENSION_MP4 = ".mp4"
FILE_EXTENSION_TS = ".ts"
FILE_EXTENSION_WEBM = ".webm"
FILE_EXTENSION_M3U8 = ".m3u8"
FILE_EXTENSION_JPEG = ".jpeg"


@dataclass
class StartEgressRequest:
    """A request to start an egress: its id, kind and request body."""

    egress_id: str
    request_type: RequestType
    audio_only: bool = False
    request: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.request_type = RequestType(self.request_type)


DEFAULT_AUDIO_CODECS: dict[OutputType, MimeType] = {
    OutputType.RAW: MimeType.RAW_AUDIO,
    OutputType.OGG: MimeType.OPUS,
    OutputType.MP4: MimeType.AAC,
    OutputType.TS: MimeType.AAC,
    OutputType.WEBM: MimeType.OPUS,
    OutputType.RTMP: MimeType.AAC,
    OutputType.HLS: MimeType.AAC,
}

DEFAULT_VIDEO_CODECS: dict[OutputType, MimeType] = {
    OutputType.IVF: MimeType.VP8,
    OutputType.MP4: MimeType.H264,
    OutputType.TS: MimeType.H264,
    OutputType.WEBM: MimeType.VP8,
    OutputType.RTMP: MimeType.H264,
    OutputType.HLS: MimeType.H264,
}

FILE_EXTENSIONS: frozenset[str] = frozenset(
    {
        FILE_EXTENSION_RAW,
        FILE_EXTENSION_OGG,
        FILE_EXTENSION_IVF,
        FILE_EXTENSION_MP4,
        FILE_EXTENSION_TS,
        FILE_EXTENSION_WEBM,
        FILE_EXTENSION_M3U8,
        FILE_EXTENSION_JPEG,
    }
)

FILE_EXTENSION_FOR_OUTPUT_TYPE: dict[OutputType, str] = {
    OutputType.RAW: FILE_EXTENSION_RAW,
    OutputType.OGG: FILE_EXTENSION_OGG,
    OutputType.IVF: FILE_EXTENSION_IVF,
    OutputType.MP4: FILE_EXTENSION_MP4,
    OutputType.TS: FILE_EXTENSION_TS,
    OutputType.WEBM: FILE_EXTENSION_WEBM,
    OutputType.HLS: FILE_EXTENSION_M3U8,
    OutputType.JPEG: FILE_EXTENSION_JPEG,
}

CODEC_COMPATIBILITY: dict[OutputType, frozenset[MimeType]] = {
    OutputType.RAW: frozenset({MimeType.RAW_AUDIO}),
    OutputType.OGG: frozenset({MimeType.OPUS}),
    OutputType.IVF: frozenset({MimeType.VP8, MimeType.VP9}),
    OutputType.MP4: frozenset({MimeType.AAC, MimeType.OPUS, MimeType.H264}),
    OutputType.TS: frozenset({MimeType.AAC, MimeType.OPUS, MimeType.H264}),
    OutputType.WEBM: frozenset({MimeType.OPUS, MimeType.VP8, MimeType.VP9}),
    OutputType.RTMP: frozenset({MimeType.AAC, MimeType.H264}),
    OutputType.HLS: frozenset({MimeType.AAC, MimeType.H264}),
    OutputType.UNKNOWN_FILE: frozenset(
        {MimeType.AAC, MimeType.OPUS, MimeType.H264, MimeType.VP8, MimeType.VP9}
    ),
}

ALL_OUTPUT_AUDIO_CODECS: frozenset[MimeType] = frozenset(
    {MimeType.AAC, MimeType.OPUS, MimeType.RAW_AUDIO}
)
ALL_OUTPUT_VIDEO_CODECS: frozenset[MimeType] = frozenset({MimeType.H264})

AUDIO_ONLY_FILE_OUTPUT_TYPES: tuple[OutputType, ...] = (OutputType.OGG, OutputType.MP4)
VIDEO_ONLY_FILE_OUTPUT_TYPES: tuple[OutputType, ...] = (OutputType.MP4,)
AUDIO_VIDEO_FILE_OUTPUT_TYPES: tuple[OutputType, ...] = (OutputType.MP4,)

TRACK_OUTPUT_TYPES: dict[MimeType, OutputType] = {
    MimeType.OPUS: OutputType.OGG,
    MimeType.H264: OutputType.MP4,
    MimeType.VP8: OutputType.WEBM,
    MimeType.VP9: OutputType.WEBM,
}

CodecSet = Union[Collection[MimeType], Mapping[MimeType, bool]]


def _present(items: Iterable[K] | Mapping[K, bool]) -> set[K]:
    """Members of a set-like collection, or the keys of a mapping whose value is true."""
    if isinstance(items, Mapping):
        return {key for key, flag in items.items() if flag}
    return set(items)


def is_output_type_compatible_with_codecs(output_type: OutputType, codecs: CodecSet) -> bool:
    """Whether the container accepts at least one of the given codecs."""
    supported = CODEC_COMPATIBILITY.get(output_type, frozenset())
    return any(codec in supported for codec in _present(codecs))


def get_output_type_compatible_with_codecs(
    types: Iterable[OutputType],
    audio_codecs: CodecSet | None,
    video_codecs: CodecSet | None,
) -> OutputType:
    """The first output type that accepts both codec sets; None skips a check."""
    for output_type in types:
        if audio_codecs is not None and not is_output_type_compatible_with_codecs(
            output_type, audio_codecs
        ):
            continue
        if video_codecs is not None and not is_output_type_compatible_with_codecs(
            output_type, video_codecs
        ):
            continue
        return output_type
    return OutputType.UNKNOWN_FILE


def get_map_intersection(map_a: Iterable[K] | Mapping[K, bool], map_b: Iterable[K] | Mapping[K, bool]) -> set[K]:
    """The keys of map_a that are present (and true) in map_b."""
    present_b = _present(map_b)
    return {key for key in map_a if key in present_b}