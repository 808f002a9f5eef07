"""
Bioptigen OCT Container Reader

Decodes the key/length/value ".OCT" container written by Bioptigen
spectral-domain OCT systems into a typed Volume (header metadata plus one
Frame per B-scan).

Layout (all multi-byte numbers little-endian):
- 4-byte magic number, 2-byte format version
- length-prefixed key "FRAMEHEADER", 4-byte record-count placeholder
- header records: key, 4-byte payload length, payload
- frame_count frame blocks: key "FRAMEDATA", 4-byte placeholder, then
  per-frame records (FRAMEDATETIME, FRAMETIMESTAMP, FRAMELINES,
  FRAMESAMPLES, DOPPLERSAMPLES)

Both record loops end on the first key they do not recognize, and that key
is left unread so the next loop can pick it up. Bytes too short to hold a
key end a loop the same way, so trailing data after the last frame is
ignored. Sub-frame header keys are only recognized for format version 105.
"""

import logging
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Optional, Tuple, Union

import numpy as np

from ..errors import DecodeError
from .cancellation import CancellationToken, check_cancelled

logger = logging.getLogger(__name__)

FRAME_HEADER_KEY = "FRAMEHEADER"
FRAME_DATA_KEY = "FRAMEDATA"
FRAME_DATETIME_KEY = "FRAMEDATETIME"
FRAME_TIMESTAMP_KEY = "FRAMETIMESTAMP"
FRAME_LINES_KEY = "FRAMELINES"
FRAME_SAMPLES_KEY = "FRAMESAMPLES"
DOPPLER_SAMPLES_KEY = "DOPPLERSAMPLES"

SUBFRAME_FORMAT_VERSION = 105

SAMPLE_DTYPE = np.dtype("<u2")

# Keys are space/NUL padded; strip everything up to and including ' '
_PADDING = "".join(chr(c) for c in range(0x21))


@dataclass(frozen=True)
class VolumeHeader:
    """Scan metadata decoded from the FRAMEHEADER block."""

    version: int = 0
    frame_count: int = 0
    line_count: int = 0
    line_length: int = 0
    sample_format: int = 0
    description: str = ""
    x_min: float = 0.0
    x_max: float = 0.0
    x_caption: str = ""
    y_min: float = 0.0
    y_max: float = 0.0
    y_caption: str = ""
    scan_type: int = 0
    scan_depth: float = 0.0
    scan_length: float = 0.0
    az_scan_length: float = 0.0
    el_scan_length: float = 0.0
    object_distance: float = 0.0
    scan_angle: float = 0.0
    frames_per_volume: int = 0
    scans: int = 0
    frames: int = 0
    doppler_flag: bool = False
    config: str = ""
    sub_frames_flag: int = 0
    sub_frames: int = 0
    sub_frame_lines: int = 0
    sub_frame_offsets: bytes = b""
    sub_frame_radii: bytes = b""
    magic: bytes = b""

    def summary(self) -> str:
        """Multi-line, human readable description of the header."""
        lines = [
            f"Format Version: {self.version}",
            f"Frame Count: {self.frame_count}",
            f"Line Count: {self.line_count}",
            f"Line Length: {self.line_length}",
            f"Description: {self.description}",
            f"Scan Type: {self.scan_type}",
            f"XMin: {self.x_min}",
            f"XMax: {self.x_max}",
            f"X Caption: {self.x_caption}",
            f"YMin: {self.y_min}",
            f"YMax: {self.y_max}",
            f"Y Caption: {self.y_caption}",
            f"Scan Depth: {self.scan_depth}",
            f"Scan Length: {self.scan_length}",
            f"Az Scan Length: {self.az_scan_length}",
            f"El Scan Length: {self.el_scan_length}",
            f"Scan Angle: {self.scan_angle}",
            f"Doppler Flag: {int(self.doppler_flag)}",
        ]
        if self.version == SUBFRAME_FORMAT_VERSION:
            lines.append(f"Sub Frames: {self.sub_frames}")
            lines.append(f"Sub Frame Lines: {self.sub_frame_lines}")
        return "\n".join(lines)


@dataclass(frozen=True)
class FrameTimestamp:
    """Windows SYSTEMTIME stored with every frame."""

    year: int
    month: int
    day_of_week: int
    day: int
    hour: int
    minute: int
    second: int
    millisecond: int


@dataclass(frozen=True, eq=False)
class Frame:
    """
    One B-scan of a volume.

    The intensity grid is stored the way it is displayed: the line_count x
    line_length sample block rotated 90 degrees left, i.e. shape
    (line_length, line_count) as (rows, columns). Arrays are read-only views.
    """

    index: int
    intensity: np.ndarray
    doppler: Optional[np.ndarray] = None
    timestamp: Optional[FrameTimestamp] = None

    def __post_init__(self):
        intensity = np.asarray(self.intensity)
        if intensity.ndim != 2 or intensity.size == 0:
            raise ValueError(f"frame {self.index}: sample grid must be a non-empty 2D array, got shape {intensity.shape}")
        intensity = intensity.view()
        intensity.flags.writeable = False
        object.__setattr__(self, "intensity", intensity)

        if self.doppler is not None:
            doppler = np.asarray(self.doppler)
            if doppler.shape != intensity.shape:
                raise ValueError(
                    f"frame {self.index}: Doppler grid shape {doppler.shape} "
                    f"doesn't match intensity shape {intensity.shape}"
                )
            doppler = doppler.view()
            doppler.flags.writeable = False
            object.__setattr__(self, "doppler", doppler)

    @property
    def height(self) -> int:
        return self.intensity.shape[0]

    @property
    def width(self) -> int:
        return self.intensity.shape[1]


@dataclass(frozen=True, eq=False)
class Volume:
    """A decoded 3D scan: header plus frames in file order."""

    header: VolumeHeader
    frames: Tuple[Frame, ...]
    name: str = ""

    def __post_init__(self):
        frames = tuple(self.frames)
        if frames:
            first_shape = frames[0].intensity.shape
            for frame in frames[1:]:
                if frame.intensity.shape != first_shape:
                    raise ValueError(
                        f"volume {self.name!r}: frame {frame.index} has shape "
                        f"{frame.intensity.shape}, expected {first_shape}"
                    )
        object.__setattr__(self, "frames", frames)

    @property
    def width(self) -> int:
        return self.frames[0].width if self.frames else 0

    @property
    def height(self) -> int:
        return self.frames[0].height if self.frames else 0

    @property
    def depth(self) -> int:
        return len(self.frames)

    @property
    def shape(self) -> Tuple[int, int, int]:
        """(width, height, depth)"""
        return self.width, self.height, self.depth

    @property
    def has_doppler(self) -> bool:
        return bool(self.frames) and all(f.doppler is not None for f in self.frames)

    def to_stack(self, dtype=np.float32) -> np.ndarray:
        """
        Stack the intensity grids into a (Y, X, Z) array.

        Args:
            dtype: Output dtype (default float32, ready for registration)

        Returns:
            New array of shape (height, width, depth)
        """
        return np.stack([f.intensity for f in self.frames], axis=2).astype(dtype)

    def doppler_stack(self, dtype=np.float32) -> Optional[np.ndarray]:
        if not self.has_doppler:
            return None
        return np.stack([f.doppler for f in self.frames], axis=2).astype(dtype)

    @property
    def frame_duration_ms(self) -> Optional[float]:
        """
        Mean time between consecutive frames from their millisecond fields.

        Assumes a frame takes less than one second: when the millisecond
        value rolls over, the difference is taken as 1000 - previous.
        """
        millis = [f.timestamp.millisecond for f in self.frames if f.timestamp is not None]
        if len(millis) < 2:
            return None
        diffs = []
        for previous, current in zip(millis, millis[1:]):
            if current < previous:
                diffs.append(1000 - previous)
            else:
                diffs.append(current - previous)
        return sum(diffs) / len(diffs)

    @classmethod
    def from_stack(cls, stack: np.ndarray, name: str = "", header: Optional[VolumeHeader] = None) -> "Volume":
        """
        Wrap a (Y, X, Z) array as a Volume (e.g. a stack read from TIFF).

        A minimal header is synthesized when none is given.
        """
        stack = np.asarray(stack)
        if stack.ndim != 3:
            raise ValueError(f"expected a 3D (Y, X, Z) stack, got shape {stack.shape}")
        height, width, depth = stack.shape
        if header is None:
            header = VolumeHeader(frame_count=depth, line_count=width, line_length=height)
        frames = tuple(Frame(index=z, intensity=np.array(stack[:, :, z])) for z in range(depth))
        return cls(header=header, frames=frames, name=name)


class _ByteCursor:
    """Forward-only reader over an in-memory container with bounds checks."""

    def __init__(self, data, source=None):
        self._data = memoryview(data).cast("B")
        self.offset = 0
        self.source = source

    @property
    def remaining(self) -> int:
        return len(self._data) - self.offset

    def _require(self, size, what):
        if size < 0:
            raise DecodeError(f"negative length for {what}", self.source, self.offset,
                              expected="a non-negative length", found=size)
        if size > self.remaining:
            raise DecodeError(f"truncated {what}", self.source, self.offset,
                              expected=f"{size} bytes", found=f"{self.remaining} bytes")

    def read(self, size, what="data") -> bytes:
        self._require(size, what)
        chunk = self._data[self.offset:self.offset + size].tobytes()
        self.offset += size
        return chunk

    def skip(self, size, what="data"):
        self._require(size, what)
        self.offset += size

    def read_int32(self, what="integer") -> int:
        return struct.unpack("<i", self.read(4, what))[0]

    def peek_key(self, lenient=False) -> Optional[Tuple[str, int]]:
        """
        Look at the next length-prefixed key without consuming it.

        Args:
            lenient: Report bytes that cannot hold a key (short length field,
                     negative or oversize key length) as an empty key instead
                     of raising DecodeError

        Returns:
            (key, record size in bytes) or None at the end of the data
        """
        if self.remaining == 0:
            return None
        start = self.offset
        if lenient:
            if self.remaining < 4:
                return "", 0
            length = struct.unpack_from("<i", self._data, start)[0]
            if length < 0 or length > self.remaining - 4:
                return "", 0
        try:
            length = self.read_int32("key length")
            key = self.read(length, "key").decode("latin-1").strip(_PADDING)
        finally:
            self.offset = start
        return key, 4 + length

    def read_key(self) -> str:
        peeked = self.peek_key()
        if peeked is None:
            raise DecodeError("unexpected end of data while reading a key", self.source, self.offset)
        key, size = peeked
        self.offset += size
        return key


def _int32(payload):
    if len(payload) < 4:
        raise ValueError(f"need 4 bytes for an integer, got {len(payload)}")
    return struct.unpack_from("<i", payload)[0]


def _float64(payload):
    if len(payload) < 8:
        raise ValueError(f"need 8 bytes for a double, got {len(payload)}")
    return struct.unpack_from("<d", payload)[0]


def _text(payload):
    return payload.decode("latin-1").strip(_PADDING)


def _flag(payload):
    return _int32(payload) != 0


def _raw(payload):
    return bytes(payload)


# key -> (VolumeHeader field, payload decoder, required format version)
HEADER_RECORDS: Dict[str, Tuple[str, Callable, Optional[int]]] = {
    "FRAMECOUNT": ("frame_count", _int32, None),
    "LINECOUNT": ("line_count", _int32, None),
    "LINELENGTH": ("line_length", _int32, None),
    "SAMPLEFORMAT": ("sample_format", _int32, None),
    "DESCRIPTION": ("description", _text, None),
    "XMIN": ("x_min", _float64, None),
    "XMAX": ("x_max", _float64, None),
    "XCAPTION": ("x_caption", _text, None),
    "YMIN": ("y_min", _float64, None),
    "YMAX": ("y_max", _float64, None),
    "YCAPTION": ("y_caption", _text, None),
    "SCANTYPE": ("scan_type", _int32, None),
    "SCANDEPTH": ("scan_depth", _float64, None),
    "SCANLENGTH": ("scan_length", _float64, None),
    "AZSCANLENGTH": ("az_scan_length", _float64, None),
    "ELSCANLENGTH": ("el_scan_length", _float64, None),
    "OBJECTDISTANCE": ("object_distance", _float64, None),
    "SCANANGLE": ("scan_angle", _float64, None),
    "FRAMESPERVOLUME": ("frames_per_volume", _int32, None),
    "SCANS": ("scans", _int32, None),
    "FRAMES": ("frames", _int32, None),
    "DOPPLERFLAG": ("doppler_flag", _flag, None),
    "CONFIG": ("config", _text, None),
    "SUBFRAMESFLAG": ("sub_frames_flag", _int32, SUBFRAME_FORMAT_VERSION),
    "SUBFRAMES": ("sub_frames", _int32, SUBFRAME_FORMAT_VERSION),
    "SUBFRAMELINES": ("sub_frame_lines", _int32, SUBFRAME_FORMAT_VERSION),
    "SUBFRAMEOFFSETS": ("sub_frame_offsets", _raw, SUBFRAME_FORMAT_VERSION),
    "SUBFRAMERADII": ("sub_frame_radii", _raw, SUBFRAME_FORMAT_VERSION),
}


def lookup_header_record(key, version):
    """
    Find the decode step for a header key.

    Returns:
        (field name, decoder) or None when the key is not a header record
        for this format version; None ends the header block.
    """
    entry = HEADER_RECORDS.get(key)
    if entry is None:
        return None
    field_name, decoder, required_version = entry
    if required_version is not None and version != required_version:
        return None
    return field_name, decoder


@dataclass
class _FrameRecord:
    index: int
    timestamp: Optional[FrameTimestamp] = None
    intensity: Optional[np.ndarray] = None
    doppler: Optional[np.ndarray] = None


def _sample_grid(raw, header):
    samples = np.frombuffer(raw, dtype=SAMPLE_DTYPE).reshape(header.line_count, header.line_length)
    # row j, column k of the stream is pixel (k, j); the grid is then rotated left
    return np.ascontiguousarray(np.rot90(samples)).astype(np.uint16)


def _sample_bytes(header):
    return header.line_count * header.line_length * SAMPLE_DTYPE.itemsize


def _read_frame_datetime(cursor, length, header, record):
    if length < 16:
        raise DecodeError(f"{FRAME_DATETIME_KEY} payload too short in frame {record.index}",
                          cursor.source, cursor.offset, expected="at least 16 bytes", found=length)
    record.timestamp = FrameTimestamp(*struct.unpack("<8h", cursor.read(16, FRAME_DATETIME_KEY)))
    cursor.skip(length - 16, f"{FRAME_DATETIME_KEY} padding")


def _skip_frame_record(cursor, length, header, record):
    cursor.skip(length, "frame record payload")


def _read_frame_samples(cursor, length, header, record):
    expected = _sample_bytes(header)
    if length != expected:
        raise DecodeError(f"{FRAME_SAMPLES_KEY} length doesn't match the header dimensions in frame {record.index}",
                          cursor.source, cursor.offset, expected=expected, found=length)
    record.intensity = _sample_grid(cursor.read(expected, FRAME_SAMPLES_KEY), header)


def _read_doppler_samples(cursor, length, header, record):
    # the declared payload is skipped before the samples are read
    cursor.skip(length, f"{DOPPLER_SAMPLES_KEY} payload")
    record.doppler = _sample_grid(cursor.read(_sample_bytes(header), DOPPLER_SAMPLES_KEY), header)


FRAME_RECORDS: Dict[str, Callable] = {
    FRAME_DATETIME_KEY: _read_frame_datetime,
    FRAME_TIMESTAMP_KEY: _skip_frame_record,
    FRAME_LINES_KEY: _skip_frame_record,
    FRAME_SAMPLES_KEY: _read_frame_samples,
    DOPPLER_SAMPLES_KEY: _read_doppler_samples,
}


class OCTReader:
    """
    Reads Bioptigen .OCT containers.

    Decoding is all-or-nothing: any inconsistency raises DecodeError and no
    partial Volume is returned.
    """

    def __init__(self, expected_magic: Optional[bytes] = None):
        """
        Args:
            expected_magic: If given, the 4-byte magic number must match it
        """
        self.expected_magic = expected_magic

    def read(self, path: Union[str, Path], token: Optional[CancellationToken] = None) -> Volume:
        """
        Read and decode a file. The Volume is named after the file stem.

        Args:
            path: Path to the .OCT file
            token: Optional cancellation token, polled once per frame

        Returns:
            Decoded Volume
        """
        path = Path(path)
        return self.decode(self._read_bytes(path), source=str(path), name=path.stem, token=token)

    def read_header(self, path: Union[str, Path]) -> VolumeHeader:
        path = Path(path)
        header, _ = self._decode_header_block(_ByteCursor(self._read_bytes(path), str(path)))
        return header

    def decode(self, data, source=None, name="", token: Optional[CancellationToken] = None) -> Volume:
        """
        Decode an in-memory container.

        Args:
            data: bytes-like container contents
            source: Identifier used in error messages
            name: Name for the resulting Volume
            token: Optional cancellation token, polled once per frame

        Returns:
            Decoded Volume
        """
        cursor = _ByteCursor(data, source)
        header, cursor = self._decode_header_block(cursor)

        frames = []
        for index in range(header.frame_count):
            check_cancelled(token, f"decoding frame {index + 1} of {header.frame_count}")
            frames.append(self._decode_frame(cursor, header, index))

        if cursor.remaining:
            logger.debug(f"{source}: {cursor.remaining} trailing bytes after the last frame")

        return Volume(header=header, frames=tuple(frames), name=name)

    @staticmethod
    def _read_bytes(path):
        try:
            return path.read_bytes()
        except OSError as ex:
            raise DecodeError(f"failed to read file ({ex.strerror or ex})", source=str(path)) from ex

    def _decode_header_block(self, cursor):
        magic = cursor.read(4, "magic number")
        if self.expected_magic is not None and magic != self.expected_magic:
            raise DecodeError("unexpected magic number", cursor.source, 0,
                              expected=self.expected_magic, found=magic)
        version = struct.unpack("<H", cursor.read(2, "format version"))[0]

        key_offset = cursor.offset
        key = cursor.read_key()
        if key != FRAME_HEADER_KEY:
            raise DecodeError("missing frame header", cursor.source, key_offset,
                              expected=FRAME_HEADER_KEY, found=key)
        cursor.skip(4, "record count placeholder")

        values = {"version": version, "magic": magic}
        while True:
            peeked = cursor.peek_key(lenient=True)
            if peeked is None:
                break
            key, key_size = peeked
            entry = lookup_header_record(key, version)
            if entry is None:
                logger.debug(f"{cursor.source}: header ends at key {key!r} (offset {cursor.offset})")
                break

            field_name, decoder = entry
            cursor.skip(key_size, key)
            length = cursor.read_int32(f"{key} payload length")
            payload_offset = cursor.offset
            payload = cursor.read(length, f"{key} payload")
            try:
                values[field_name] = decoder(payload)
            except ValueError as ex:
                raise DecodeError(f"invalid {key} payload ({ex})", cursor.source, payload_offset) from ex
            logger.debug(f"{cursor.source}: {key} = {values[field_name]!r}")

        header = VolumeHeader(**values)
        if header.frame_count < 0:
            raise DecodeError("negative frame count", cursor.source, cursor.offset,
                              expected="frame count >= 0", found=header.frame_count)
        if header.frame_count > 0 and (header.line_count <= 0 or header.line_length <= 0):
            raise DecodeError("frames present but line dimensions are not positive", cursor.source, cursor.offset,
                              expected="line count and line length > 0",
                              found=(header.line_count, header.line_length))
        return header, cursor

    def _decode_frame(self, cursor, header, index):
        key_offset = cursor.offset
        key = cursor.read_key()
        if key != FRAME_DATA_KEY:
            raise DecodeError(f"frame {index} does not start with a frame data record", cursor.source,
                              key_offset, expected=FRAME_DATA_KEY, found=key)
        cursor.skip(4, "frame record placeholder")

        record = _FrameRecord(index=index)
        while True:
            peeked = cursor.peek_key(lenient=True)
            if peeked is None:
                break
            key, key_size = peeked
            handler = FRAME_RECORDS.get(key)
            if handler is None:
                break
            cursor.skip(key_size, key)
            length = cursor.read_int32(f"{key} payload length")
            handler(cursor, length, header, record)

        if record.intensity is None:
            raise DecodeError(f"frame {index} has no {FRAME_SAMPLES_KEY} record", cursor.source, cursor.offset)

        return Frame(index=index, intensity=record.intensity, doppler=record.doppler, timestamp=record.timestamp)


def read_oct(path, token: Optional[CancellationToken] = None) -> Volume:
    """Read an .OCT file with default settings."""
    return OCTReader().read(path, token=token)


def decode_oct(data, source=None, name="", token: Optional[CancellationToken] = None) -> Volume:
    """Decode an in-memory .OCT container with default settings."""
    return OCTReader().decode(data, source=source, name=name, token=token)
