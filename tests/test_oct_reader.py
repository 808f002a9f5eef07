import struct

import numpy as np
import pytest

from octvolavg.errors import CancellationRequested, DecodeError
from octvolavg.helpers.cancellation import CancellationToken
from octvolavg.helpers.oct_reader import (
    FrameTimestamp,
    OCTReader,
    Volume,
    VolumeHeader,
    decode_oct,
    lookup_header_record,
    read_oct
)
from octvolavg.helpers.oct_writer import DEFAULT_MAGIC, encode_key, encode_oct, encode_record


def _container(header_records, frames=b"", version=104):
    parts = [DEFAULT_MAGIC, struct.pack("<H", version), encode_key("FRAMEHEADER"), b"\x00" * 4]
    parts += [encode_record(key, payload) for key, payload in header_records]
    return b"".join(parts) + frames


def _int(value):
    return struct.pack("<i", value)


def test_round_trip_preserves_header_and_samples(make_volume):
    header = VolumeHeader(
        version=104, description="OD macula", x_min=-1.5, x_max=1.5, x_caption="mm",
        scan_type=2, scan_depth=2.1, scan_length=6.0, scan_angle=0.25,
        frames_per_volume=3, doppler_flag=True, config="cfg=1",
    )
    volume = make_volume(width=7, height=4, depth=3, doppler=True, timestamps=True, header=header)

    decoded = decode_oct(encode_oct(volume), name="rt")

    assert decoded.name == "rt"
    assert decoded.shape == (7, 4, 3)
    assert decoded.header.frame_count == 3
    assert decoded.header.line_count == 7
    assert decoded.header.line_length == 4
    assert decoded.header.description == "OD macula"
    assert decoded.header.x_max == 1.5
    assert decoded.header.x_caption == "mm"
    assert decoded.header.scan_type == 2
    assert decoded.header.scan_angle == 0.25
    assert decoded.header.doppler_flag is True
    assert decoded.header.config == "cfg=1"
    assert decoded.header.magic == DEFAULT_MAGIC
    for original, frame in zip(volume.frames, decoded.frames):
        np.testing.assert_array_equal(frame.intensity, original.intensity)
        np.testing.assert_array_equal(frame.doppler, original.doppler)
        assert frame.timestamp == original.timestamp


def test_samples_are_rotated_left():
    samples = np.array([[1, 2, 3], [4, 5, 6]], dtype="<u2")
    frames = encode_key("FRAMEDATA") + b"\x00" * 4 + encode_record("FRAMESAMPLES", samples.tobytes())
    data = _container(
        [("FRAMECOUNT", _int(1)), ("LINECOUNT", _int(2)), ("LINELENGTH", _int(3))],
        frames,
    )

    volume = decode_oct(data)

    np.testing.assert_array_equal(volume.frames[0].intensity, [[3, 6], [2, 5], [1, 4]])
    assert volume.frames[0].width == 2
    assert volume.frames[0].height == 3


def test_frame_datetime_words_and_padding():
    words = struct.pack("<8h", 2013, 2, 1, 11, 9, 30, 15, 999)
    samples = np.arange(4, dtype="<u2").tobytes()
    frames = (encode_key("FRAMEDATA") + b"\x00" * 4
              + encode_record("FRAMEDATETIME", words + b"\xff" * 8)
              + encode_record("FRAMETIMESTAMP", b"\x01" * 8)
              + encode_record("FRAMESAMPLES", samples))
    data = _container(
        [("FRAMECOUNT", _int(1)), ("LINECOUNT", _int(2)), ("LINELENGTH", _int(2))],
        frames,
    )

    frame = decode_oct(data).frames[0]

    assert frame.timestamp == FrameTimestamp(2013, 2, 1, 11, 9, 30, 15, 999)


def test_subframe_keys_are_gated_on_version_105():
    assert lookup_header_record("SUBFRAMES", 104) is None
    assert lookup_header_record("SUBFRAMES", 105)[0] == "sub_frames"
    assert lookup_header_record("LINECOUNT", 1)[0] == "line_count"
    assert lookup_header_record("BOGUS", 105) is None


def test_subframe_key_ends_header_before_version_105():
    volume = Volume(header=VolumeHeader(version=104, description="early stop"), frames=())
    data = encode_oct(volume, extra_header_records=[("SUBFRAMES", _int(4)), ("SCANTYPE", _int(9))])

    decoded = decode_oct(data)

    assert decoded.header.description == "early stop"
    assert decoded.header.sub_frames == 0
    # records after the unrecognized key are never reached
    assert decoded.header.scan_type == 0
    assert decoded.depth == 0


def test_subframe_keys_decoded_for_version_105(make_volume):
    header = VolumeHeader(version=105, sub_frames=2, sub_frame_lines=12, sub_frame_offsets=b"\x01\x02")
    volume = make_volume(depth=2, header=header)

    decoded = decode_oct(encode_oct(volume))

    assert decoded.header.version == 105
    assert decoded.header.sub_frames == 2
    assert decoded.header.sub_frame_lines == 12
    assert decoded.header.sub_frame_offsets == b"\x01\x02"
    assert "Sub Frames: 2" in decoded.header.summary()


def test_subframe_key_before_frames_fails_outside_version_105(make_volume):
    volume = make_volume(depth=1)
    data = encode_oct(volume, version=104, extra_header_records=[("SUBFRAMES", _int(4))])

    with pytest.raises(DecodeError) as excinfo:
        decode_oct(data)

    assert excinfo.value.expected == "FRAMEDATA"
    assert excinfo.value.found == "SUBFRAMES"


def test_truncated_container_raises(make_volume):
    data = encode_oct(make_volume(depth=2))

    with pytest.raises(DecodeError) as excinfo:
        decode_oct(data[:-3], source="cut.OCT")

    assert excinfo.value.source == "cut.OCT"
    assert excinfo.value.offset is not None
    assert "cut.OCT" in str(excinfo.value)


def test_missing_frame_header_key():
    data = DEFAULT_MAGIC + struct.pack("<H", 104) + encode_key("NOTHEADER") + b"\x00" * 4

    with pytest.raises(DecodeError) as excinfo:
        decode_oct(data)

    assert excinfo.value.expected == "FRAMEHEADER"
    assert excinfo.value.found == "NOTHEADER"
    assert excinfo.value.offset == 6


def test_unexpected_magic_number(make_volume):
    data = encode_oct(make_volume(depth=1))

    with pytest.raises(DecodeError):
        OCTReader(expected_magic=b"\x00\x00\x00\x00").decode(data)

    assert OCTReader(expected_magic=DEFAULT_MAGIC).decode(data).depth == 1


def test_sample_length_must_match_header():
    frames = encode_key("FRAMEDATA") + b"\x00" * 4 + encode_record("FRAMESAMPLES", b"\x00" * 10)
    data = _container(
        [("FRAMECOUNT", _int(1)), ("LINECOUNT", _int(4)), ("LINELENGTH", _int(4))],
        frames,
    )

    with pytest.raises(DecodeError) as excinfo:
        decode_oct(data)

    assert excinfo.value.expected == 32
    assert excinfo.value.found == 10


def test_frame_without_samples_raises():
    frames = encode_key("FRAMEDATA") + b"\x00" * 4 + encode_record("FRAMELINES", _int(2))
    data = _container(
        [("FRAMECOUNT", _int(1)), ("LINECOUNT", _int(2)), ("LINELENGTH", _int(2))],
        frames,
    )

    with pytest.raises(DecodeError, match="no FRAMESAMPLES"):
        decode_oct(data)


def test_frames_with_zero_line_length_raise():
    data = _container([("FRAMECOUNT", _int(2)), ("LINECOUNT", _int(3)), ("LINELENGTH", _int(0))])

    with pytest.raises(DecodeError):
        decode_oct(data)


def test_length_field_beyond_data_raises():
    data = _container([("FRAMECOUNT", _int(0))]) + encode_key("DESCRIPTION") + _int(1000) + b"short"

    with pytest.raises(DecodeError, match="truncated"):
        decode_oct(data)


@pytest.mark.parametrize("trailing", [
    b"\x00\x00",
    b"\xff\x00\x00\x00END",
    b"\xfe\xff\xff\xff",
    struct.pack("<i", 4) + b"JUNK" + b"\x01\x02",
])
def test_trailing_bytes_after_last_frame_are_ignored(make_volume, trailing):
    volume = make_volume(depth=2)

    decoded = decode_oct(encode_oct(volume) + trailing)

    assert decoded.depth == 2
    np.testing.assert_array_equal(decoded.frames[1].intensity, volume.frames[1].intensity)


def test_trailing_bytes_after_empty_header_are_ignored():
    data = _container([("FRAMECOUNT", _int(0)), ("LINECOUNT", _int(2))]) + b"\x07"

    decoded = decode_oct(data)

    assert decoded.header.line_count == 2
    assert decoded.depth == 0


def test_short_tail_before_missing_frame_raises(make_volume):
    data = encode_oct(make_volume(depth=2))
    single = encode_oct(make_volume(depth=1))
    # header claims two frames but only one follows
    truncated = data[:len(single)] + b"\x00\x00"

    with pytest.raises(DecodeError):
        decode_oct(truncated)


def test_read_names_volume_after_file(tmp_path, make_volume):
    path = tmp_path / "P01_OD_V_1.OCT"
    path.write_bytes(encode_oct(make_volume(depth=2)))

    volume = read_oct(path)

    assert volume.name == "P01_OD_V_1"
    assert OCTReader().read_header(path).frame_count == 2


def test_missing_file_raises_decode_error(tmp_path):
    with pytest.raises(DecodeError) as excinfo:
        read_oct(tmp_path / "missing.OCT")

    assert excinfo.value.source.endswith("missing.OCT")
    assert isinstance(excinfo.value.__cause__, OSError)


def test_decode_honours_cancellation(make_volume):
    token = CancellationToken()
    token.cancel()

    with pytest.raises(CancellationRequested):
        decode_oct(encode_oct(make_volume(depth=2)), token=token)


def test_frame_duration_uses_millisecond_rollover(make_volume):
    volume = make_volume(depth=4, timestamps=True)
    frames = []
    for frame, ms in zip(volume.frames, [100, 150, 990, 20]):
        ts = frame.timestamp
        frames.append(type(frame)(index=frame.index, intensity=frame.intensity,
                                  timestamp=FrameTimestamp(ts.year, ts.month, ts.day_of_week, ts.day,
                                                           ts.hour, ts.minute, ts.second, ms)))
    volume = Volume(header=volume.header, frames=tuple(frames))

    # 50, 840 and 1000 - 990
    assert volume.frame_duration_ms == pytest.approx(300.0)
    assert make_volume(depth=3).frame_duration_ms is None


def test_from_stack_and_to_stack():
    stack = np.arange(2 * 3 * 4, dtype=np.uint16).reshape(2, 3, 4) + 1

    volume = Volume.from_stack(stack, name="stack")

    assert volume.shape == (3, 2, 4)
    assert volume.header.frame_count == 4
    np.testing.assert_array_equal(volume.to_stack(dtype=np.uint16), stack)
    assert volume.to_stack().dtype == np.float32


def test_frames_are_read_only(make_volume):
    frame = decode_oct(encode_oct(make_volume(depth=1))).frames[0]

    with pytest.raises(ValueError):
        frame.intensity[0, 0] = 1
