"""
Bioptigen OCT Container Writer

Encodes a Volume back into the .OCT container layout understood by
oct_reader. Used to build synthetic containers and to re-export cropped
volumes in the instrument's own format.
"""

import struct
from dataclasses import replace
from typing import Iterable, Optional, Tuple

import numpy as np

from .oct_reader import (
    DOPPLER_SAMPLES_KEY,
    FRAME_DATA_KEY,
    FRAME_DATETIME_KEY,
    FRAME_HEADER_KEY,
    FRAME_LINES_KEY,
    FRAME_SAMPLES_KEY,
    HEADER_RECORDS,
    SAMPLE_DTYPE,
    Frame,
    Volume,
    VolumeHeader,
    _flag,
    _float64,
    _int32,
    _raw,
    _text,
)

DEFAULT_MAGIC = b"\x96\x96\xff\xff"

_ENCODERS = {
    _int32: lambda value: struct.pack("<i", int(value)),
    _float64: lambda value: struct.pack("<d", float(value)),
    _text: lambda value: str(value).encode("latin-1"),
    _flag: lambda value: struct.pack("<i", 1 if value else 0),
    _raw: bytes,
}


def encode_key(key: str) -> bytes:
    raw = key.encode("latin-1")
    return struct.pack("<i", len(raw)) + raw


def encode_record(key: str, payload: bytes) -> bytes:
    """Length-prefixed key, 4-byte payload length, payload."""
    return encode_key(key) + struct.pack("<i", len(payload)) + payload


def header_records(header: VolumeHeader) -> Iterable[Tuple[str, bytes]]:
    """
    Yield (key, payload) for every header field valid for the header's format
    version, in the canonical key order.
    """
    for key, (field_name, decoder, required_version) in HEADER_RECORDS.items():
        if required_version is not None and header.version != required_version:
            continue
        yield key, _ENCODERS[decoder](getattr(header, field_name))


def _samples_payload(grid: np.ndarray) -> bytes:
    # undo the left rotation applied on read: back to line_count x line_length
    samples = np.rot90(np.asarray(grid), k=-1)
    return np.ascontiguousarray(samples).astype(SAMPLE_DTYPE).tobytes()


def encode_frame(frame: Frame) -> bytes:
    parts = [encode_key(FRAME_DATA_KEY), b"\x00" * 4]
    if frame.timestamp is not None:
        ts = frame.timestamp
        parts.append(encode_record(
            FRAME_DATETIME_KEY,
            struct.pack("<8h", ts.year, ts.month, ts.day_of_week, ts.day,
                        ts.hour, ts.minute, ts.second, ts.millisecond),
        ))
    parts.append(encode_record(FRAME_LINES_KEY, struct.pack("<i", frame.width)))
    parts.append(encode_record(FRAME_SAMPLES_KEY, _samples_payload(frame.intensity)))
    if frame.doppler is not None:
        doppler = _samples_payload(frame.doppler)
        # readers skip the declared payload and then read the samples
        parts.append(encode_record(DOPPLER_SAMPLES_KEY, doppler) + doppler)
    return b"".join(parts)


def encode_oct(volume: Volume,
               magic: bytes = DEFAULT_MAGIC,
               version: Optional[int] = None,
               extra_header_records: Iterable[Tuple[str, bytes]] = ()) -> bytes:
    """
    Encode a Volume as an .OCT container.

    Args:
        volume: Volume to encode; frame count and line dimensions in the
                header are taken from the frames
        magic: 4-byte magic number
        version: Format version override (default: volume.header.version)
        extra_header_records: (key, payload) pairs appended after the regular
                header records, e.g. sub-frame keys

    Returns:
        Container bytes
    """
    if len(magic) != 4:
        raise ValueError(f"magic number must be 4 bytes, got {len(magic)}")

    header = volume.header
    if version is not None:
        header = replace(header, version=version)
    header = replace(header, frame_count=volume.depth)
    if volume.frames:
        header = replace(header, line_count=volume.width, line_length=volume.height)

    parts = [magic, struct.pack("<H", header.version), encode_key(FRAME_HEADER_KEY), b"\x00" * 4]
    for key, payload in header_records(header):
        parts.append(encode_record(key, payload))
    for key, payload in extra_header_records:
        parts.append(encode_record(key, payload))
    for frame in volume.frames:
        parts.append(encode_frame(frame))
    return b"".join(parts)


def write_oct(volume: Volume, path, **kwargs):
    """Encode a Volume and write it to path."""
    with open(path, "wb") as f:
        f.write(encode_oct(volume, **kwargs))
