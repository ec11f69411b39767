"""
Minimal ISO-BMFF (fragmented MP4) box helpers.

Provides:
- Box navigation over in-memory data (read_box / iter_boxes / find_box)
- Box navigation over file objects without loading mdat payloads
- Box builders used when rewriting fragments
- Parsers for the fragment boxes that carry timing (tfhd, tfdt, trun, mdhd)
  and the Smooth Streaming tfxd / tfrf UUID extensions
"""

import struct
from dataclasses import dataclass
from typing import BinaryIO, Iterator, Optional, Union

Buffer = Union[bytes, bytearray, memoryview]

# Smooth Streaming fragment extension boxes
TFXD_UUID = bytes.fromhex("6d1d9b0542d544e680e2141daff757b2")
TFRF_UUID = bytes.fromhex("d4807ef2ca3946958e5426cb9e46a79f")

_COPY_CHUNK = 1024 * 1024


def read_box(data: Buffer, offset: int) -> Optional[tuple[bytes, int, int, memoryview]]:
    """
    Read a single box at the given offset.

    Returns:
        Tuple of (box_type, box_size, header_size, box_body) or None if no complete box remains.
    """
    if offset + 8 > len(data):
        return None

    size, box_type = struct.unpack_from(">I4s", data, offset)
    header_size = 8

    if size == 1:  # Extended size
        if offset + 16 > len(data):
            return None
        size = struct.unpack_from(">Q", data, offset + 8)[0]
        header_size = 16
    elif size == 0:  # Box extends to end of data
        size = len(data) - offset

    if size < header_size or offset + size > len(data):
        return None

    body = memoryview(data)[offset + header_size : offset + size]
    return box_type, size, header_size, body


def iter_boxes(data: Buffer) -> Iterator[tuple[bytes, memoryview]]:
    """Iterate over all sibling boxes in the data, yielding (box_type, box_body)."""
    offset = 0
    while offset < len(data):
        result = read_box(data, offset)
        if result is None:
            break
        box_type, size, _, body = result
        yield box_type, body
        offset += size


def find_box(data: Buffer, box_type: bytes) -> Optional[memoryview]:
    """Find the first sibling box of the given type and return its body."""
    for found_type, body in iter_boxes(data):
        if found_type == box_type:
            return body
    return None


def find_nested_box(data: Buffer, *path: bytes) -> Optional[memoryview]:
    """Follow a path of box types (e.g. b"trak", b"mdia", b"mdhd") and return the last body."""
    current: Optional[memoryview] = memoryview(data)
    for box_type in path:
        if current is None:
            return None
        current = find_box(current, box_type)
    return current


def find_uuid_box(data: Buffer, user_type: bytes) -> Optional[memoryview]:
    """Find a ``uuid`` box with the given 16 byte extended type; returns the body after the extended type."""
    for box_type, body in iter_boxes(data):
        if box_type == b"uuid" and bytes(body[:16]) == user_type:
            return body[16:]
    return None


def build_box(box_type: bytes, payload: Buffer) -> bytes:
    """Build a box with a 32-bit size header."""
    return struct.pack(">I4s", len(payload) + 8, box_type) + bytes(payload)


def build_full_box(box_type: bytes, version: int, flags: int, payload: Buffer) -> bytes:
    """Build a full box (version + 24-bit flags) around the payload."""
    return build_box(box_type, struct.pack(">I", (version << 24) | (flags & 0xFFFFFF)) + bytes(payload))


def build_uuid_box(user_type: bytes, payload: Buffer) -> bytes:
    return build_box(b"uuid", user_type + bytes(payload))


# =============================================================================
# File-object navigation
# =============================================================================


@dataclass(slots=True)
class BoxHeader:
    """Header of a top-level box read from a file object."""

    box_type: bytes
    offset: int
    size: int
    header_size: int

    @property
    def body_size(self) -> int:
        return self.size - self.header_size


def iter_file_boxes(f: BinaryIO) -> Iterator[BoxHeader]:
    """
    Iterate over the top-level boxes of a file object.

    The file position is left at the start of each box body when a header is
    yielded; callers may read the body or not, iteration seeks to the next box.
    """
    f.seek(0, 2)
    file_size = f.tell()
    offset = 0
    while offset + 8 <= file_size:
        f.seek(offset)
        header = f.read(8)
        size, box_type = struct.unpack(">I4s", header)
        header_size = 8
        if size == 1:
            size = struct.unpack(">Q", f.read(8))[0]
            header_size = 16
        elif size == 0:
            size = file_size - offset
        if size < header_size or offset + size > file_size:
            raise ValueError(f"Truncated {box_type!r} box at offset {offset}")
        yield BoxHeader(box_type, offset, size, header_size)
        offset += size


def read_box_body(f: BinaryIO, header: BoxHeader) -> bytes:
    f.seek(header.offset + header.header_size)
    return f.read(header.body_size)


def copy_box(src: BinaryIO, dst: BinaryIO, header: BoxHeader) -> None:
    """Copy a whole box (header included) from ``src`` to ``dst`` in bounded chunks."""
    src.seek(header.offset)
    remaining = header.size
    while remaining:
        chunk = src.read(min(_COPY_CHUNK, remaining))
        if not chunk:
            raise ValueError(f"Unexpected end of file inside {header.box_type!r} box")
        dst.write(chunk)
        remaining -= len(chunk)


# =============================================================================
# Timing parsers
# =============================================================================


def parse_mdhd_timescale(data: Buffer) -> int:
    """Parse the timescale of a Media Header (mdhd) body."""
    if len(data) < 24:
        return 0
    version = data[0]
    offset = 20 if version == 1 else 12
    return struct.unpack_from(">I", data, offset)[0]


def parse_tkhd_track_id(data: Buffer) -> int:
    version = data[0]
    offset = 20 if version == 1 else 12
    return struct.unpack_from(">I", data, offset)[0]


def parse_trex_track_id(data: Buffer) -> int:
    return struct.unpack_from(">I", data, 4)[0]


@dataclass(slots=True)
class TrackFragmentHeader:
    track_id: int
    default_sample_duration: int = 0


def parse_tfhd(data: Buffer) -> TrackFragmentHeader:
    """Parse a Track Fragment Header (tfhd) body."""
    flags = struct.unpack_from(">I", data, 0)[0] & 0xFFFFFF
    header = TrackFragmentHeader(track_id=struct.unpack_from(">I", data, 4)[0])
    offset = 8
    if flags & 0x000001:  # base-data-offset-present
        offset += 8
    if flags & 0x000002:  # sample-description-index-present
        offset += 4
    if flags & 0x000008 and offset + 4 <= len(data):  # default-sample-duration-present
        header.default_sample_duration = struct.unpack_from(">I", data, offset)[0]
    return header


def parse_tfdt(data: Buffer) -> int:
    """Parse the base media decode time of a Track Fragment Decode Time (tfdt) body."""
    if data[0] == 1:
        return struct.unpack_from(">Q", data, 4)[0]
    return struct.unpack_from(">I", data, 4)[0]


def tfdt_body(decode_time: int) -> bytes:
    """Body of a version 1 tfdt box."""
    return struct.pack(">IQ", 1 << 24, decode_time)


def build_tfdt(decode_time: int) -> bytes:
    return build_box(b"tfdt", tfdt_body(decode_time))


def parse_tfxd(data: Buffer) -> tuple[int, int]:
    """Parse a Smooth tfxd body (after the extended type) into (absolute time, duration)."""
    if data[0] == 1:
        return struct.unpack_from(">QQ", data, 4)
    return struct.unpack_from(">II", data, 4)


def build_tfxd(time: int, duration: int) -> bytes:
    return build_uuid_box(TFXD_UUID, struct.pack(">IQQ", 1 << 24, time, duration))


def parse_trun_durations(data: Buffer, default_duration: int = 0) -> list[int]:
    """Parse the per-sample durations of a Track Fragment Run (trun) body."""
    flags, sample_count = struct.unpack_from(">II", data, 0)
    flags &= 0xFFFFFF
    offset = 8
    if flags & 0x000001:  # data-offset-present
        offset += 4
    if flags & 0x000004:  # first-sample-flags-present
        offset += 4

    durations = []
    for _ in range(sample_count):
        duration = default_duration
        if flags & 0x000100:  # sample-duration-present
            duration = struct.unpack_from(">I", data, offset)[0]
            offset += 4
        if flags & 0x000200:  # sample-size-present
            offset += 4
        if flags & 0x000400:  # sample-flags-present
            offset += 4
        if flags & 0x000800:  # sample-composition-time-offset-present
            offset += 4
        durations.append(duration)
    return durations


def shift_trun_data_offset(data: Buffer, delta: int) -> bytes:
    """Return a trun body whose data offset (when present) is moved by ``delta`` bytes."""
    trun = bytearray(data)
    flags = struct.unpack_from(">I", trun, 0)[0] & 0xFFFFFF
    if flags & 0x000001:
        current = struct.unpack_from(">i", trun, 8)[0]
        struct.pack_into(">i", trun, 8, current + delta)
    return bytes(trun)


@dataclass(slots=True)
class FragmentTiming:
    """Timing of one track fragment (traf) in its track's time scale."""

    track_id: int
    decode_time: Optional[int]
    duration: int


def parse_traf_timing(traf: Buffer) -> FragmentTiming:
    """Extract track id, decode time (tfdt, else Smooth tfxd) and total duration of a traf body."""
    tfhd = parse_tfhd(find_box(traf, b"tfhd"))
    decode_time = None
    tfxd_duration = 0
    tfdt = find_box(traf, b"tfdt")
    tfxd = find_uuid_box(traf, TFXD_UUID)
    if tfdt is not None:
        decode_time = parse_tfdt(tfdt)
    if tfxd is not None:
        tfxd_time, tfxd_duration = parse_tfxd(tfxd)
        if decode_time is None:
            decode_time = tfxd_time

    duration = 0
    for box_type, body in iter_boxes(traf):
        if box_type == b"trun":
            duration += sum(parse_trun_durations(body, tfhd.default_sample_duration))
    return FragmentTiming(tfhd.track_id, decode_time, duration or tfxd_duration)


def parse_moof_timing(moof: Buffer) -> list[FragmentTiming]:
    return [parse_traf_timing(body) for box_type, body in iter_boxes(moof) if box_type == b"traf"]
