"""
Fragmented MP4 rewriting for live-archive reconstruction.

Live archives are stored as Smooth Streaming fragments: every moof carries the
fragment's absolute time in a tfxd UUID box (and look-ahead tfrf boxes) instead
of a standard tfdt. The functions here stream the top-level boxes of a file and
rewrite only the moof boxes, so mdat payloads are copied in bounded chunks and
never held in memory.

- fix_live_video: in-place tfxd -> tfdt conversion
- process_live_audio: drop audio preceding the video origin and make decode times contiguous
- transmux_smooth: demultiplex one track of a multi-track fragmented file

All functions are synchronous; callers run them with ``asyncio.to_thread``.
"""

import logging
import os
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional

from media_repackager.utils.mp4_utils import (
    TFRF_UUID,
    TFXD_UUID,
    build_box,
    copy_box,
    find_box,
    iter_boxes,
    iter_file_boxes,
    parse_moof_timing,
    parse_tfxd,
    parse_tkhd_track_id,
    parse_trex_track_id,
    read_box_body,
    shift_trun_data_offset,
    tfdt_body,
)

if TYPE_CHECKING:
    from media_repackager.packager.reconstruct import SyncState

logger = logging.getLogger(__name__)

# Boxes indexing byte positions of the original file; stale once fragments are rewritten.
_INDEX_BOXES = (b"mfra", b"sidx")


class TransmuxError(Exception):
    """Raised when a fragmented file cannot be rewritten."""


@dataclass
class AudioRewrite:
    """Outcome of aligning a live-archive audio track to the video origin."""

    first_decode_time: Optional[int] = None
    has_discontinuities: bool = False
    fragments: int = 0
    dropped_fragments: int = 0


# =============================================================================
# moof rewriting
# =============================================================================


def _normalize_traf(traf: memoryview, decode_time: Optional[int] = None) -> list[tuple[bytes, memoryview | bytes]]:
    """
    Return the child boxes of a traf with Smooth extensions replaced by a tfdt.

    The tfdt is placed right after the tfhd. When ``decode_time`` is None the
    existing tfdt (or else the tfxd time) is kept.
    """
    children = list(iter_boxes(traf))
    tfdt = next((body for box_type, body in children if box_type == b"tfdt"), None)

    if decode_time is None and tfdt is None:
        tfxd = next(
            (body[16:] for box_type, body in children if box_type == b"uuid" and bytes(body[:16]) == TFXD_UUID),
            None,
        )
        if tfxd is not None:
            decode_time = parse_tfxd(tfxd)[0]

    result = []
    for box_type, body in children:
        if box_type == b"uuid" and bytes(body[:16]) in (TFXD_UUID, TFRF_UUID):
            continue
        if box_type == b"tfdt" and decode_time is not None:
            continue
        result.append((box_type, body))
        if box_type == b"tfhd" and decode_time is not None:
            result.append((b"tfdt", tfdt_body(decode_time)))
    return result


def _rebuild_moof(
    moof: memoryview, old_size: int, rewrite_traf: Callable[[memoryview], list[tuple[bytes, memoryview | bytes]]]
) -> bytes:
    """
    Rebuild a moof from rewritten trafs.

    trun data offsets are relative to the start of the moof, so when the moof
    changes size the offsets move by the same amount to keep pointing into the
    following mdat.
    """
    children = [
        (box_type, rewrite_traf(body) if box_type == b"traf" else None, body) for box_type, body in iter_boxes(moof)
    ]

    def assemble(delta: int) -> bytes:
        payload = bytearray()
        for box_type, traf_children, body in children:
            if traf_children is None:
                payload += build_box(box_type, body)
                continue
            traf = bytearray()
            for child_type, child_body in traf_children:
                if child_type == b"trun" and delta:
                    child_body = shift_trun_data_offset(child_body, delta)
                traf += build_box(child_type, child_body)
            payload += build_box(b"traf", traf)
        return build_box(b"moof", payload)

    rebuilt = assemble(0)
    delta = len(rebuilt) - old_size
    return assemble(delta) if delta else rebuilt


def fix_live_video(path: str) -> int:
    """
    Rewrite a reconstructed live-archive video file in place so that every
    fragment carries a standard tfdt box.

    Returns:
        int: Number of fragments rewritten.
    """
    temp_path = f"{path}.fix"
    fixed = 0
    try:
        with open(path, "rb") as src, open(temp_path, "wb") as dst:
            for header in iter_file_boxes(src):
                if header.box_type == b"moof":
                    moof = memoryview(read_box_body(src, header))
                    rebuilt = _rebuild_moof(moof, header.size, _normalize_traf)
                    if rebuilt != build_box(b"moof", moof):
                        fixed += 1
                    dst.write(rebuilt)
                elif header.box_type in _INDEX_BOXES:
                    continue
                else:
                    copy_box(src, dst, header)
        os.replace(temp_path, path)
    except ValueError as e:
        raise TransmuxError(f"Cannot fix live video {path}: {e}") from e
    finally:
        if os.path.exists(temp_path):
            os.remove(temp_path)

    logger.debug(f"Fixed {fixed} fragments of {path}")
    return fixed


def process_live_audio(source: str, destination: str, sync_state: "SyncState") -> AudioRewrite:
    """
    Align a reconstructed live-archive audio file to the video timeline.

    Fragments ending at or before the video origin (expressed in the audio
    time scale) are dropped together with their mdat. Decode times of the kept
    fragments are rewritten so each fragment starts where the previous one
    ended; any gap or overlap in the source marks the result as discontinuous.
    """
    origin = sync_state.video_start_time_in_audio_time_scale
    result = AudioRewrite()
    expected: Optional[int] = None
    skip_mdat = False

    try:
        with open(source, "rb") as src, open(destination, "wb") as dst:
            for header in iter_file_boxes(src):
                if header.box_type == b"moof":
                    moof = memoryview(read_box_body(src, header))
                    timings = parse_moof_timing(moof)
                    if not timings:
                        raise TransmuxError(f"Fragment at offset {header.offset} of {source} has no track fragment")
                    timing = timings[0]
                    decode_time = timing.decode_time if timing.decode_time is not None else (expected or 0)

                    if timing.duration and decode_time + timing.duration <= origin:
                        result.dropped_fragments += 1
                        skip_mdat = True
                        continue

                    if expected is None:
                        new_time = decode_time
                        result.first_decode_time = decode_time
                    else:
                        new_time = expected
                        if decode_time != expected:
                            result.has_discontinuities = True
                    expected = new_time + timing.duration

                    dst.write(_rebuild_moof(moof, header.size, lambda traf: _normalize_traf(traf, new_time)))
                    result.fragments += 1
                    skip_mdat = False
                elif header.box_type == b"mdat":
                    if skip_mdat:
                        skip_mdat = False
                        continue
                    copy_box(src, dst, header)
                elif header.box_type in _INDEX_BOXES:
                    continue
                else:
                    copy_box(src, dst, header)
    except ValueError as e:
        raise TransmuxError(f"Cannot process live audio {source}: {e}") from e

    if result.has_discontinuities:
        logger.warning(f"Discontinuities detected while aligning audio {source}")
    logger.debug(
        f"Aligned {result.fragments} audio fragments of {source} to origin {origin}, "
        f"dropped {result.dropped_fragments}"
    )
    return result


# =============================================================================
# Smooth demultiplexing
# =============================================================================


def _filter_moov(moov: memoryview, track_id: int) -> bytes:
    payload = bytearray()
    found = False
    for box_type, body in iter_boxes(moov):
        if box_type == b"trak":
            tkhd = find_box(body, b"tkhd")
            if tkhd is None or parse_tkhd_track_id(tkhd) != track_id:
                continue
            found = True
        elif box_type == b"mvex":
            mvex = bytearray()
            for child_type, child_body in iter_boxes(body):
                if child_type == b"trex" and parse_trex_track_id(child_body) != track_id:
                    continue
                mvex += build_box(child_type, child_body)
            payload += build_box(b"mvex", mvex)
            continue
        payload += build_box(box_type, body)

    if not found:
        raise TransmuxError(f"Track {track_id} not found in moov")
    return build_box(b"moov", payload)


def transmux_smooth(source: str, destination: str, track_id: int) -> int:
    """
    Demultiplex one track of a multi-track fragmented (smooth) file.

    Returns:
        int: Number of fragments written.

    Raises:
        TransmuxError: If the track is missing, a fragment interleaves several
            tracks, or the file is not fragmented.
    """
    fragments = 0
    keep_mdat = False
    try:
        with open(source, "rb") as src, open(destination, "wb") as dst:
            for header in iter_file_boxes(src):
                if header.box_type == b"moov":
                    dst.write(_filter_moov(memoryview(read_box_body(src, header)), track_id))
                elif header.box_type == b"moof":
                    track_ids = {t.track_id for t in parse_moof_timing(memoryview(read_box_body(src, header)))}
                    keep_mdat = track_ids == {track_id}
                    if keep_mdat:
                        copy_box(src, dst, header)
                        fragments += 1
                    elif track_id in track_ids:
                        raise TransmuxError(
                            f"Fragment at offset {header.offset} of {source} interleaves tracks {sorted(track_ids)}"
                        )
                elif header.box_type == b"mdat":
                    if keep_mdat:
                        copy_box(src, dst, header)
                    keep_mdat = False
                elif header.box_type in _INDEX_BOXES:
                    continue
                else:
                    copy_box(src, dst, header)
    except ValueError as e:
        raise TransmuxError(f"Cannot demultiplex {source}: {e}") from e

    if not fragments:
        raise TransmuxError(f"No fragments of track {track_id} found in {source}")
    logger.debug(f"Demultiplexed {fragments} fragments of track {track_id} from {source} to {destination}")
    return fragments
