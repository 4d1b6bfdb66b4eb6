import pytest

from egresskit.types import (
    CODEC_COMPATIBILITY,
    FILE_EXTENSION_FOR_OUTPUT_TYPE,
    FILE_EXTENSIONS,
    TRACK_OUTPUT_TYPES,
    MimeType,
    OutputType,
    RequestType,
    StartEgressRequest,
    get_map_intersection,
    get_output_type_compatible_with_codecs,
    is_output_type_compatible_with_codecs,
)


def test_get_map_intersection():
    codecs: dict[MimeType, bool] = {}

    res = get_map_intersection(codecs, CODEC_COMPATIBILITY[OutputType.UNKNOWN_FILE])
    assert res == set()

    codecs[MimeType.H264] = True
    res = get_map_intersection(codecs, CODEC_COMPATIBILITY[OutputType.OGG])
    assert res == set()

    codecs[MimeType.VP8] = True
    res = get_map_intersection(codecs, CODEC_COMPATIBILITY[OutputType.MP4])
    assert res == {MimeType.H264}


def test_get_output_types_compatible_with_codecs():
    output_types: list[OutputType] = []
    audio_codecs: dict[MimeType, bool] = {}
    video_codecs: dict[MimeType, bool] = {}

    res = get_output_type_compatible_with_codecs(output_types, audio_codecs, video_codecs)
    assert res == ""

    output_types += [OutputType.OGG, OutputType.MP4]
    res = get_output_type_compatible_with_codecs(output_types, audio_codecs, video_codecs)
    assert res == ""

    audio_codecs[MimeType.AAC] = True
    output_types.append(OutputType.MP4)
    res = get_output_type_compatible_with_codecs(output_types, audio_codecs, video_codecs)
    assert res == ""

    video_codecs[MimeType.VP8] = True
    output_types.append(OutputType.MP4)
    res = get_output_type_compatible_with_codecs(output_types, audio_codecs, video_codecs)
    assert res == ""

    video_codecs[MimeType.H264] = True
    output_types.append(OutputType.MP4)
    res = get_output_type_compatible_with_codecs(output_types, audio_codecs, video_codecs)
    assert res == OutputType.MP4


def test_none_codec_set_skips_check():
    res = get_output_type_compatible_with_codecs(
        [OutputType.OGG, OutputType.MP4], {MimeType.OPUS}, None
    )
    assert res is OutputType.OGG


def test_false_mapping_values_are_ignored():
    assert not is_output_type_compatible_with_codecs(OutputType.OGG, {MimeType.OPUS: False})
    assert is_output_type_compatible_with_codecs(OutputType.OGG, {MimeType.OPUS: True})


def test_unknown_output_type_is_incompatible():
    assert not is_output_type_compatible_with_codecs(OutputType.JSON, [MimeType.H264])


@pytest.mark.parametrize("mime, output", sorted(TRACK_OUTPUT_TYPES.items()))
def test_track_output_types_accept_their_codec(mime, output):
    assert is_output_type_compatible_with_codecs(output, [mime])


def test_file_extensions_cover_mapping():
    assert set(FILE_EXTENSION_FOR_OUTPUT_TYPE.values()) <= FILE_EXTENSIONS
    assert FILE_EXTENSION_FOR_OUTPUT_TYPE[OutputType.HLS] == ".m3u8"


def test_enum_string_values():
    assert str(OutputType.HLS) == "application/x-mpegurl"
    assert MimeType("video/vp8") is MimeType.VP8


def test_start_egress_request_coerces_type():
    req = StartEgressRequest("EG_test", "track")
    assert req.request_type is RequestType.TRACK
    with pytest.raises(ValueError):
        StartEgressRequest("EG_test", "bogus")