"""
Live-archive reconstruction.

Turns every entry of an input plan into local artifacts in the working
directory. Reconstruction is a two-phase protocol:

1. Multi-file video tracks are reassembled (and optionally fixed up); this
   produces the SyncState carrying the video timing origin.
2. Every other entry runs concurrently. Audio alignment and caption
   adjustment take the SyncState from phase 1 as an argument.

Staged inputs live in ``<working_dir>/input/``, final artifacts directly in
``<working_dir>/``.
"""

import asyncio
import logging
import os
from dataclasses import dataclass, field, replace
from typing import Awaitable, Optional

import aiofiles.os

from media_repackager.const import INPUT_DIRECTORY, VTT_FILE
from media_repackager.remuxer.media_source import MultiFileSource, ObjectSource, ReconstructionError
from media_repackager.remuxer.transmuxer import fix_live_video, process_live_audio, transmux_smooth
from media_repackager.schemas import AssetDetails, StreamType, Track
from media_repackager.utils.vtt_utils import adjust_vtt_timestamps

from .tracks import InputPlan

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncState:
    """Cross-track timing origin of one live-archive packaging run."""

    video_start_time: int
    video_time_scale: int
    video_start_time_in_audio_time_scale: int = 0
    audio_start_time: int = 0
    audio_time_scale: int = 0
    audio_has_discontinuities: bool = False

    def __post_init__(self):
        if self.video_time_scale <= 0:
            raise ValueError(f"Invalid video time scale {self.video_time_scale}")


def rescale_time(value: int, from_scale: int, to_scale: int) -> int:
    """Convert ``value`` between time scales, rounding to the nearest tick (halves up)."""
    if from_scale <= 0:
        raise ValueError(f"Invalid time scale {from_scale}")
    return (value * to_scale + from_scale // 2) // from_scale


def caption_offset_ms(sync_state: SyncState) -> int:
    return sync_state.video_start_time * 1000 // sync_state.video_time_scale


def is_smooth_input(input_name: str, tracks: tuple[Track, ...]) -> bool:
    """Whether an input of a smooth asset is a fragmented container to demultiplex, not a plain caption file."""
    return len(tracks) > 1 or not input_name.endswith(VTT_FILE)


def smooth_track_file(input_name: str, track: Track, tracks: tuple[Track, ...]) -> str:
    """File name of one track demultiplexed from a shared smooth input."""
    if len(tracks) == 1:
        return input_name
    stem, ext = os.path.splitext(input_name)
    return f"{stem}_{track.track_id}{ext}"


@dataclass(frozen=True)
class ReconstructOptions:
    process_live_video: bool = False
    process_live_audio: bool = False
    process_live_vtt: bool = False
    transmuxed_smooth: bool = False

    @classmethod
    def for_asset(cls, asset_details: AssetDetails, input_plan: InputPlan, settings) -> "ReconstructOptions":
        """
        Derive the options of one run.

        Live-archive processing follows the settings for live archives only. A
        non-live asset whose tracks share one input is a multiplexed smooth
        file and is demultiplexed per track.
        """
        live = asset_details.manifest.is_live_archive
        return cls(
            process_live_video=live and settings.process_live_video,
            process_live_audio=live and settings.process_live_audio,
            process_live_vtt=live and settings.process_live_vtt,
            transmuxed_smooth=not live and any(len(tracks) > 1 for _, tracks in input_plan.items()),
        )


@dataclass
class ReconstructResult:
    artifacts: dict[str, list[str]] = field(default_factory=dict)  # Input name -> local artifact paths.
    sync_state: Optional[SyncState] = None


async def _run_all(coros: list[Awaitable]) -> list:
    """Run coroutines concurrently; the first failure cancels the rest and propagates."""
    tasks = [asyncio.ensure_future(coro) for coro in coros]
    if not tasks:
        return []
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        for task in done:
            if task.exception() is not None:
                raise task.exception()
        return [task.result() for task in tasks]
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


class Reconstructor:
    """Reconstructs the inputs of one asset into a per-asset working directory."""

    def __init__(self, asset_details: AssetDetails, working_dir: str, options: ReconstructOptions):
        self.asset_details = asset_details
        self.working_dir = working_dir
        self.input_dir = os.path.join(working_dir, INPUT_DIRECTORY)
        self.options = options

    @property
    def _container(self):
        return self.asset_details.container

    def _multi_file_source(self, track: Track) -> MultiFileSource:
        return MultiFileSource(
            self._container, track, self.asset_details.client_manifest, self.asset_details.decrypt_info
        )

    def _object_source(self, name: str) -> ObjectSource:
        return ObjectSource(self._container, name, self.asset_details.decrypt_info)

    def _requires_sync_state(self, sync_state: Optional[SyncState], input_name: str) -> SyncState:
        if sync_state is None:
            raise ReconstructionError(
                f"Input {input_name} of asset {self.asset_details.asset_name} needs the video timing "
                f"but the asset has no multi-file video track"
            )
        return sync_state

    # Phase 1

    async def reconstruct_video(self, input_name: str, tracks: tuple[Track, ...]) -> SyncState:
        """Reassemble a multi-file video track and return the timing origin it defines."""
        source = self._multi_file_source(tracks[0])
        sync_state = SyncState(video_start_time=source.start_time, video_time_scale=source.time_scale)
        path = os.path.join(self.working_dir, input_name)
        await source.download(path)
        if self.options.process_live_video:
            await asyncio.to_thread(fix_live_video, path)
        logger.info(
            f"Reconstructed video {input_name} of {self.asset_details.asset_name}: "
            f"start {sync_state.video_start_time} at time scale {sync_state.video_time_scale}"
        )
        return sync_state

    # Phase 2

    async def reconstruct_audio(self, input_name: str, tracks: tuple[Track, ...], sync_state: SyncState) -> SyncState:
        """Reassemble a multi-file audio track aligned to the video origin of ``sync_state``."""
        source = self._multi_file_source(tracks[0])
        sync_state = replace(
            sync_state,
            video_start_time_in_audio_time_scale=rescale_time(
                sync_state.video_start_time, sync_state.video_time_scale, source.time_scale
            ),
            audio_start_time=source.start_time,
            audio_time_scale=source.time_scale,
        )
        path = os.path.join(self.working_dir, input_name)
        if not self.options.process_live_audio:
            await source.download(path)
            return sync_state

        staged = os.path.join(self.input_dir, input_name)
        await source.download(staged)
        rewrite = await asyncio.to_thread(process_live_audio, staged, path, sync_state)
        logger.info(
            f"Aligned audio {input_name} of {self.asset_details.asset_name} to "
            f"{sync_state.video_start_time_in_audio_time_scale} at time scale {sync_state.audio_time_scale}"
        )
        return replace(sync_state, audio_has_discontinuities=rewrite.has_discontinuities)

    async def download_multi_file(self, input_name: str, tracks: tuple[Track, ...]) -> str:
        """Concatenate the fragments of a multi-file track as they are."""
        path = os.path.join(self.working_dir, input_name)
        await self._multi_file_source(tracks[0]).download(path)
        return path

    async def adjust_caption(self, input_name: str, sync_state: SyncState) -> str:
        """Shift the staged caption file by the video start offset into its final path."""
        staged = os.path.join(self.input_dir, input_name)
        path = os.path.join(self.working_dir, input_name)
        offset_ms = caption_offset_ms(sync_state)
        await adjust_vtt_timestamps(staged, path, offset_ms)
        logger.info(f"Adjusted captions {input_name} of {self.asset_details.asset_name} by {offset_ms} ms")
        return path

    async def download_smooth(self, input_name: str, tracks: tuple[Track, ...]) -> list[str]:
        """Download a shared smooth file once and demultiplex every track from it."""
        staged = os.path.join(self.input_dir, input_name)
        await self._object_source(input_name).download(staged)

        paths = [os.path.join(self.working_dir, smooth_track_file(input_name, track, tracks)) for track in tracks]
        await _run_all(
            [asyncio.to_thread(transmux_smooth, staged, path, track.track_id) for track, path in zip(tracks, paths)]
        )
        return paths

    async def download_plain(self, input_name: str, sync_state: Optional[SyncState] = None) -> str:
        if self.options.process_live_vtt and input_name.endswith(VTT_FILE):
            sync_state = self._requires_sync_state(sync_state, input_name)
            await self._object_source(input_name).download(os.path.join(self.input_dir, input_name))
            return await self.adjust_caption(input_name, sync_state)

        path = os.path.join(self.working_dir, input_name)
        await self._object_source(input_name).download(path)
        return path

    async def _reconstruct_entry(
        self, input_name: str, tracks: tuple[Track, ...], sync_state: Optional[SyncState]
    ) -> tuple[list[str], Optional[SyncState]]:
        if len(tracks) == 1 and tracks[0].is_multi_file:
            track = tracks[0]
            if track.type == StreamType.AUDIO and (sync_state is not None or self.options.process_live_audio):
                audio_state = await self.reconstruct_audio(
                    input_name, tracks, self._requires_sync_state(sync_state, input_name)
                )
                return [os.path.join(self.working_dir, input_name)], audio_state
            return [await self.download_multi_file(input_name, tracks)], None
        if self.options.transmuxed_smooth and is_smooth_input(input_name, tracks):
            return await self.download_smooth(input_name, tracks), None
        return [await self.download_plain(input_name, sync_state)], None

    async def reconstruct(self, input_plan: InputPlan) -> ReconstructResult:
        await aiofiles.os.makedirs(self.input_dir, exist_ok=True)
        result = ReconstructResult()

        video_entries = [
            (name, tracks)
            for name, tracks in input_plan.items()
            if len(tracks) == 1 and tracks[0].is_multi_file and tracks[0].type == StreamType.VIDEO
        ]
        for name, tracks in video_entries:
            sync_state = await self.reconstruct_video(name, tracks)
            result.sync_state = result.sync_state or sync_state
            result.artifacts[name] = [os.path.join(self.working_dir, name)]

        video_names = {name for name, _ in video_entries}
        others = [(name, tracks) for name, tracks in input_plan.items() if name not in video_names]
        outcomes = await _run_all(
            [self._reconstruct_entry(name, tracks, result.sync_state) for name, tracks in others]
        )
        for (name, _), (paths, audio_state) in zip(others, outcomes):
            result.artifacts[name] = paths
            if audio_state is not None:
                result.sync_state = audio_state

        logger.debug(f"Reconstructed {len(result.artifacts)} inputs of {self.asset_details.asset_name}")
        return result


async def reconstruct(
    input_plan: InputPlan, asset_details: AssetDetails, working_dir: str, options: ReconstructOptions
) -> ReconstructResult:
    return await Reconstructor(asset_details, working_dir, options).reconstruct(input_plan)
