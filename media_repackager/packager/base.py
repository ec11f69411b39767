import asyncio
import logging
import os
from abc import ABC, abstractmethod
from contextlib import AsyncExitStack
from typing import Optional, Sequence

from media_repackager.configs import Settings
from media_repackager.const import VTT_FILE
from media_repackager.remuxer.media_source import MediaSource, MultiFileSource, ObjectSource
from media_repackager.schemas import AssetDetails, Track
from media_repackager.utils.pipes import SourcePipe
from media_repackager.utils.process import run_process

from .reconstruct import (
    ReconstructOptions,
    ReconstructResult,
    Reconstructor,
    SyncState,
    is_smooth_input,
    smooth_track_file,
)
from .tracks import build_input_plan, manifest_names, select_tracks

logger = logging.getLogger(__name__)


async def run_packager(command: str, arguments: Sequence[str], *, cwd: Optional[str] = None) -> bool:
    """
    Run a packaging tool and report whether it succeeded.

    A non-zero exit is logged by the process runner and returned as False.
    Failing to start the tool raises ProcessStartError.
    """
    result = await run_process(command, arguments, cwd=cwd)
    return result.success


class BasePackager(ABC):
    """
    Base class for packagers driving an external packaging tool over one asset.

    On construction the tracks to package are selected, grouped into an input
    plan and given deterministic output names. Inputs are then either
    reconstructed into the working directory (``download_inputs``) or streamed
    to the tool through named pipes (``get_input_pipes``).
    """

    def __init__(
        self,
        asset_details: AssetDetails,
        working_dir: str,
        settings: Settings,
        options: Optional[ReconstructOptions] = None,
    ):
        self.asset_details = asset_details
        self.working_dir = working_dir
        self.settings = settings

        manifest = asset_details.manifest
        self.selected_tracks: list[Track] = select_tracks(manifest, asset_details.client_manifest)
        self.input_plan, self.outputs = build_input_plan(self.selected_tracks, manifest)
        self.inputs = self.input_plan.inputs
        self.manifests = manifest_names(manifest)
        self.options = options or ReconstructOptions.for_asset(asset_details, self.input_plan, settings)
        self.sync_state: Optional[SyncState] = None

    @property
    def command(self) -> str:
        return self.settings.packager_path

    @property
    def use_pipe_for_input(self) -> bool:
        """Inputs can be streamed only when none needs a local rewrite before packaging."""
        if not self.settings.use_pipes:
            return False
        options = self.options
        if options.transmuxed_smooth or options.process_live_video or options.process_live_audio:
            return False
        if options.process_live_vtt and any(name.endswith(VTT_FILE) for name in self.inputs):
            return False
        return all(len(tracks) == 1 for _, tracks in self.input_plan.items())

    def track_inputs(self) -> list[str]:
        """Input file of every selected track, relative to the working directory."""
        files = []
        for track in self.selected_tracks:
            for name, tracks in self.input_plan.items():
                if track in tracks:
                    if self.options.transmuxed_smooth and is_smooth_input(name, tracks):
                        name = smooth_track_file(name, track, tracks)
                    files.append(name)
                    break
        return files

    def _source_for(self, name: str, tracks: tuple[Track, ...]) -> MediaSource:
        details = self.asset_details
        if len(tracks) == 1 and tracks[0].is_multi_file:
            return MultiFileSource(details.container, tracks[0], details.client_manifest, details.decrypt_info)
        return ObjectSource(details.container, name, details.decrypt_info)

    async def download_inputs(self) -> ReconstructResult:
        result = await Reconstructor(self.asset_details, self.working_dir, self.options).reconstruct(self.input_plan)
        self.sync_state = result.sync_state
        return result

    def get_input_pipes(self) -> list[SourcePipe]:
        return [
            SourcePipe(
                os.path.join(self.working_dir, name),
                self._source_for(name, tracks),
                self.settings.pipe_buffer_chunks,
            )
            for name, tracks in self.input_plan.items()
        ]

    def output_files(self) -> list[str]:
        """Files of the working directory to upload once packaging succeeded."""
        return list(self.outputs) + list(self.manifests)

    @abstractmethod
    def build_arguments(self, inputs: Sequence[str], outputs: Sequence[str], manifests: Sequence[str]) -> list[str]:
        """Build the tool's argument list; ``inputs`` and ``outputs`` hold one entry per selected track."""
        pass

    async def run(self, inputs: Sequence[str], outputs: Sequence[str], manifests: Sequence[str]) -> bool:
        return await run_packager(self.command, self.build_arguments(inputs, outputs, manifests), cwd=self.working_dir)

    async def package(self) -> bool:
        """Stage or stream the inputs and run the packaging tool; returns the tool's success."""
        if not self.use_pipe_for_input:
            await self.download_inputs()
            return await self.run(self.track_inputs(), self.outputs, self.manifests)

        async with AsyncExitStack() as stack:
            pipes = [await stack.enter_async_context(pipe) for pipe in self.get_input_pipes()]
            feeders = [asyncio.create_task(pipe.run()) for pipe in pipes]
            try:
                success = await self.run(self.track_inputs(), self.outputs, self.manifests)
                if success:
                    await asyncio.gather(*feeders)
                return success
            finally:
                for feeder in feeders:
                    if not feeder.done():
                        feeder.cancel()
                await asyncio.gather(*feeders, return_exceptions=True)
