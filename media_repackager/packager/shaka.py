import os
from typing import Sequence

from media_repackager.const import HLS_MANIFEST
from media_repackager.schemas import StreamType

from .base import BasePackager


class ShakaPackager(BasePackager):
    """Packages the selected tracks into DASH and HLS with Shaka Packager."""

    def stream_descriptor(self, track, input_file: str, output: str) -> str:
        playlist = f"{os.path.splitext(output)[0]}{HLS_MANIFEST}"
        descriptor = f"in={input_file},stream={track.type.value},output={output},playlist_name={playlist}"
        if track.type == StreamType.AUDIO:
            descriptor += f",hls_group_id=audio,hls_name={track.track_name}"
        elif track.type == StreamType.TEXT:
            descriptor += f",hls_group_id=text,hls_name={track.track_name}"
        return descriptor

    def output_files(self) -> list[str]:
        playlists = [f"{os.path.splitext(output)[0]}{HLS_MANIFEST}" for output in self.outputs]
        return list(self.outputs) + playlists + list(self.manifests)

    def build_arguments(self, inputs: Sequence[str], outputs: Sequence[str], manifests: Sequence[str]) -> list[str]:
        if not (len(inputs) == len(outputs) == len(self.selected_tracks)):
            raise ValueError(
                f"Expected one input and output per selected track, got {len(inputs)} inputs and {len(outputs)} outputs"
            )
        dash_manifest, hls_manifest = manifests
        arguments = [
            self.stream_descriptor(track, input_file, output)
            for track, input_file, output in zip(self.selected_tracks, inputs, outputs)
        ]
        arguments += [
            "--segment_duration",
            str(self.settings.segment_duration),
            "--mpd_output",
            dash_manifest,
            "--hls_master_playlist_output",
            hls_manifest,
        ]
        return arguments
