"""Track selection and input/output name planning for one packaging run."""

import logging
from dataclasses import dataclass, field
from typing import Optional

from media_repackager.const import DASH_MANIFEST, HLS_MANIFEST, MEDIA_FILE, VTT_FILE
from media_repackager.schemas import ClientManifest, Manifest, TextTrack, Track

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InputPlan:
    """
    Ordered mapping from input identifier to the tracks read from that input.

    Entries are sorted by identifier. Every selected track appears in exactly
    one entry; several tracks share an entry when they are multiplexed in one
    legacy container.
    """

    entries: tuple[tuple[str, tuple[Track, ...]], ...] = field(default_factory=tuple)

    @property
    def inputs(self) -> list[str]:
        return [name for name, _ in self.entries]

    def items(self):
        return iter(self.entries)

    def tracks_for(self, name: str) -> tuple[Track, ...]:
        for entry_name, tracks in self.entries:
            if entry_name == name:
                return tracks
        raise KeyError(name)

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self):
        return iter(self.inputs)


def select_tracks(manifest: Manifest, client_manifest: Optional[ClientManifest] = None) -> list[Track]:
    """
    Select the tracks of the manifest to package, keeping manifest order.

    Audio and video tracks are always selected. Text tracks are selected only
    when they can be turned into WebVTT captions; live-archive multi-file text
    tracks without a matching caption stream in the client manifest are
    excluded.
    """
    selected = []
    for track in manifest.tracks:
        if isinstance(track, TextTrack) and not track.is_caption_candidate(manifest, client_manifest):
            logger.debug(f"Skipping unsupported text track {track!r} of {manifest.file_name}")
            continue
        selected.append(track)
    return selected


def input_name(track: Track) -> str:
    """
    Resolve the input identifier of a selected track.

    Raises:
        ValueError: If a single-file text track has no .vtt source and not
            exactly one transcript source.
    """
    if isinstance(track, TextTrack):
        if track.is_multi_file:
            return f"{track.source}{VTT_FILE}"
        if track.source.endswith(VTT_FILE):
            return track.source
        sources = track.transcript_sources
        if len(sources) != 1:
            raise ValueError(f"Text track {track.source} must declare exactly one transcript source, found {len(sources)}")
        return sources[0]
    return f"{track.source}{MEDIA_FILE}" if track.is_multi_file else track.source


def build_input_plan(selected_tracks: list[Track], manifest: Manifest) -> tuple[InputPlan, list[str]]:
    """
    Group the selected tracks by input and assign deterministic output names.

    Outputs are ``<asset base name>_<selection index><ext>`` with ``.vtt`` for
    text tracks and ``.mp4`` otherwise.

    Returns:
        tuple[InputPlan, list[str]]: The input plan and the output names, one per selected track.
    """
    grouped: dict[str, list[Track]] = {}
    for track in selected_tracks:
        grouped.setdefault(input_name(track), []).append(track)

    plan = InputPlan(entries=tuple((name, tuple(grouped[name])) for name in sorted(grouped)))
    outputs = [
        f"{manifest.base_name}_{index}{VTT_FILE if isinstance(track, TextTrack) else MEDIA_FILE}"
        for index, track in enumerate(selected_tracks)
    ]
    return plan, outputs


def manifest_names(manifest: Manifest) -> list[str]:
    return [f"{manifest.base_name}{DASH_MANIFEST}", f"{manifest.base_name}{HLS_MANIFEST}"]
