"""
WebVTT helpers used for live-archive captions.

Captions of a live archive are timed from the start of the recording, while
the reconstructed video starts at its first fragment. Shifting every cue by
the video start offset realigns them. Multi-file caption tracks carry TTML
documents in their fragments; ttml_to_cues converts them to WebVTT cues.
"""

import logging
import re
from dataclasses import dataclass, replace
from typing import Union

import aiofiles
import xmltodict

logger = logging.getLogger(__name__)

WEBVTT_HEADER = "WEBVTT"

_TIMING_LINE = re.compile(r"^\s*(\S+)\s+-->\s+(\S+)(.*)$")
_CLOCK_TIME = re.compile(r"^(?:(\d+):)?(\d{1,2}):(\d{2})(?:[.,](\d{1,3}))?$")
_TTML_CLOCK_TIME = re.compile(r"^(\d+):(\d{2}):(\d{2})(?:\.(\d+))?(?::(\d+))?$")
_TTML_OFFSET_TIME = re.compile(r"^(\d+(?:\.\d+)?)(h|m|s|ms|t)$")


class CaptionFormatError(Exception):
    """Raised when a caption document cannot be parsed."""


@dataclass(frozen=True)
class Cue:
    """A WebVTT cue; times are in milliseconds."""

    start_ms: int
    end_ms: int
    text: str
    identifier: str = ""
    settings: str = ""


def parse_timestamp(value: str) -> int:
    """Parse a WebVTT timestamp (``HH:MM:SS.mmm`` or ``MM:SS.mmm``) into milliseconds."""
    match = _CLOCK_TIME.match(value.strip())
    if not match:
        raise CaptionFormatError(f"Invalid timestamp {value!r}")
    hours, minutes, seconds, fraction = match.groups()
    millis = int((fraction or "0").ljust(3, "0"))
    return ((int(hours or 0) * 60 + int(minutes)) * 60 + int(seconds)) * 1000 + millis


def format_timestamp(ms: int) -> str:
    """Format milliseconds as ``HH:MM:SS.mmm``."""
    ms = max(ms, 0)
    hours, rest = divmod(ms, 3_600_000)
    minutes, rest = divmod(rest, 60_000)
    seconds, millis = divmod(rest, 1000)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}.{millis:03d}"


def parse_vtt(content: str) -> tuple[str, list[Cue]]:
    """
    Parse a WebVTT document.

    Returns:
        tuple[str, list[Cue]]: The header block (``WEBVTT`` line plus any
        metadata and NOTE/STYLE blocks preceding the first cue) and the cues.
    """
    content = content.lstrip("\ufeff").replace("\r\n", "\n").replace("\r", "\n")
    if not content.startswith(WEBVTT_HEADER):
        raise CaptionFormatError("Missing WEBVTT header")

    blocks = re.split(r"\n{2,}", content.strip("\n"))
    header_blocks = [blocks[0]]
    cues = []
    for block in blocks[1:]:
        lines = block.split("\n")
        timing_index = next((i for i, line in enumerate(lines) if "-->" in line), None)
        if timing_index is None or timing_index > 1:
            # NOTE, STYLE and REGION blocks before the first cue belong to the header.
            if not cues:
                header_blocks.append(block)
            continue
        match = _TIMING_LINE.match(lines[timing_index])
        if not match:
            raise CaptionFormatError(f"Invalid cue timing line {lines[timing_index]!r}")
        start, end, cue_settings = match.groups()
        cues.append(
            Cue(
                start_ms=parse_timestamp(start),
                end_ms=parse_timestamp(end),
                text="\n".join(lines[timing_index + 1 :]),
                identifier=lines[0] if timing_index == 1 else "",
                settings=cue_settings.strip(),
            )
        )
    return "\n\n".join(header_blocks), cues


def format_cue(cue: Cue) -> str:
    """Format one cue block, without the separating blank line."""
    timing = f"{format_timestamp(cue.start_ms)} --> {format_timestamp(cue.end_ms)}"
    if cue.settings:
        timing = f"{timing} {cue.settings}"
    lines = ([cue.identifier] if cue.identifier else []) + [timing]
    if cue.text:
        lines.append(cue.text)
    return "\n".join(lines)


def format_vtt(cues: list[Cue], header: str = WEBVTT_HEADER) -> str:
    return "\n\n".join([header] + [format_cue(cue) for cue in cues]) + "\n"


def shift_cues(cues: list[Cue], offset_ms: int) -> list[Cue]:
    """Shift every cue by ``offset_ms``; times that would become negative are clamped at zero."""
    return [
        replace(cue, start_ms=max(cue.start_ms + offset_ms, 0), end_ms=max(cue.end_ms + offset_ms, 0)) for cue in cues
    ]


async def adjust_vtt_timestamps(source: str, destination: str, offset_ms: int) -> int:
    """
    Write ``source`` to ``destination`` with every cue shifted by ``offset_ms``.

    Returns:
        int: Number of cues written.
    """
    async with aiofiles.open(source, "r", encoding="utf-8-sig") as f:
        header, cues = parse_vtt(await f.read())
    shifted = shift_cues(cues, offset_ms)
    async with aiofiles.open(destination, "w", encoding="utf-8") as f:
        await f.write(format_vtt(shifted, header))
    logger.debug(f"Shifted {len(cues)} cues of {source} by {offset_ms} ms")
    return len(shifted)


# =============================================================================
# TTML
# =============================================================================


def parse_ttml_time(value: str, tick_rate: int = 10_000_000, frame_rate: int = 30) -> int:
    """Parse a TTML clock time or offset time into milliseconds."""
    value = value.strip()
    match = _TTML_CLOCK_TIME.match(value)
    if match:
        hours, minutes, seconds, fraction, frames = match.groups()
        ms = ((int(hours) * 60 + int(minutes)) * 60 + int(seconds)) * 1000
        if fraction:
            ms += int(round(float(f"0.{fraction}") * 1000))
        if frames:
            ms += int(frames) * 1000 // frame_rate
        return ms

    match = _TTML_OFFSET_TIME.match(value)
    if not match:
        raise CaptionFormatError(f"Invalid TTML time expression {value!r}")
    amount, metric = match.groups()
    if metric == "t":
        return int(amount.split(".")[0]) * 1000 // tick_rate
    factor = {"h": 3_600_000, "m": 60_000, "s": 1000, "ms": 1}[metric]
    return int(round(float(amount) * factor))


def _text_of(node) -> str:
    """Flatten the mixed content of a TTML paragraph; ``br`` elements become line breaks."""
    if node is None:
        return ""
    if isinstance(node, str):
        return node
    if isinstance(node, list):
        return "\n".join(_text_of(item) for item in node)
    parts = []
    for key, value in node.items():
        if key == "#text":
            parts.append(value)
        elif key.split(":")[-1] == "br":
            parts.append("\n")
        elif key.split(":")[-1] == "span":
            parts.append(_text_of(value))
    return "".join(parts).strip()


def _find_paragraphs(node) -> list[dict]:
    paragraphs = []
    if isinstance(node, list):
        for item in node:
            paragraphs.extend(_find_paragraphs(item))
    elif isinstance(node, dict):
        for key, value in node.items():
            if key.startswith("@") or key == "#text":
                continue
            if key.split(":")[-1] == "p":
                paragraphs.extend(value if isinstance(value, list) else [value])
            else:
                paragraphs.extend(_find_paragraphs(value))
    return paragraphs


def ttml_to_cues(document: Union[str, bytes]) -> list[Cue]:
    """Convert the timed paragraphs of a TTML document to WebVTT cues."""
    try:
        root = xmltodict.parse(document, process_namespaces=False)
    except Exception as e:
        raise CaptionFormatError(f"Invalid TTML document: {e}") from e

    tt = next(iter(root.values()))
    tick_rate = int(tt.get("@ttp:tickRate", 10_000_000)) if isinstance(tt, dict) else 10_000_000
    frame_rate = int(tt.get("@ttp:frameRate", 30)) if isinstance(tt, dict) else 30

    cues = []
    for paragraph in _find_paragraphs(tt):
        if isinstance(paragraph, str) or "@begin" not in paragraph:
            continue
        start = parse_ttml_time(paragraph["@begin"], tick_rate, frame_rate)
        if "@end" in paragraph:
            end = parse_ttml_time(paragraph["@end"], tick_rate, frame_rate)
        elif "@dur" in paragraph:
            end = start + parse_ttml_time(paragraph["@dur"], tick_rate, frame_rate)
        else:
            continue
        text = _text_of({k: v for k, v in paragraph.items() if not k.startswith("@")})
        if text:
            cues.append(Cue(start_ms=start, end_ms=end, text=text))
    return cues
