import os
from enum import Enum
from typing import Any, ClassVar, Optional

from pydantic import BaseModel, ConfigDict, Field

from media_repackager.const import (
    CAPTION_SUBTYPE,
    DEFAULT_TIME_SCALE,
    FRAGMENT_HEADER,
    LIVE_ARCHIVE_FORMAT,
    TRANSCRIPT_SOURCE,
    VTT_FILE,
)


class StreamType(str, Enum):
    VIDEO = "video"
    AUDIO = "audio"
    TEXT = "text"


class TrackParameter(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    value: str


class Track(BaseModel):
    """
    A track declared by the server manifest.

    ``source`` is either an object name (``video.ismv``) or, for tracks recorded
    as many fragment objects, the fragment-name stem (no extension).
    """

    model_config = ConfigDict(frozen=True)

    type: ClassVar[StreamType]

    source: str
    parameters: tuple[TrackParameter, ...] = ()

    def get_parameter(self, name: str) -> Optional[str]:
        return next((p.value for p in self.parameters if p.name == name), None)

    @property
    def track_id(self) -> int:
        value = self.get_parameter("trackID")
        return int(value) if value else 1

    @property
    def track_name(self) -> str:
        return self.get_parameter("trackName") or self.type.value

    @property
    def is_multi_file(self) -> bool:
        return not os.path.splitext(self.source)[1]

    def __repr__(self):
        return f"<{self.__class__.__name__} source={self.source!r} id={self.track_id}>"


class VideoTrack(Track):
    type: ClassVar[StreamType] = StreamType.VIDEO


class AudioTrack(Track):
    type: ClassVar[StreamType] = StreamType.AUDIO


class TextTrack(Track):
    type: ClassVar[StreamType] = StreamType.TEXT

    @property
    def transcript_sources(self) -> list[str]:
        return [p.value for p in self.parameters if p.name == TRANSCRIPT_SOURCE]

    def is_caption_candidate(self, manifest: "Manifest", client_manifest: Optional["ClientManifest"]) -> bool:
        """Whether this text track can be packaged as WebVTT captions."""
        if manifest.is_live_archive:
            if self.source.endswith(VTT_FILE):
                return True
            # Multi-file text tracks are only usable when the client manifest lists their fragments.
            return self.is_multi_file and client_manifest is not None and client_manifest.has_caption_stream(self.track_name)
        return not self.is_multi_file and (self.source.endswith(VTT_FILE) or bool(self.transcript_sources))


TRACK_TYPES: dict[str, type[Track]] = {
    "video": VideoTrack,
    "audio": AudioTrack,
    "textstream": TextTrack,
    "text": TextTrack,
}


class Manifest(BaseModel):
    """Server manifest of an asset: the ordered tracks plus the asset format."""

    model_config = ConfigDict(frozen=True)

    file_name: str
    format: str = ""
    tracks: tuple[Track, ...] = ()

    @property
    def is_live_archive(self) -> bool:
        return self.format == LIVE_ARCHIVE_FORMAT

    @property
    def base_name(self) -> str:
        return os.path.splitext(os.path.basename(self.file_name))[0]


class Chunk(BaseModel):
    model_config = ConfigDict(frozen=True)

    t: Optional[int] = None  # Start time; defaults to the end of the previous chunk.
    d: Optional[int] = None  # Duration in the stream time scale.
    r: int = 1  # Number of consecutive fragments sharing this duration.


class ClientStream(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: StreamType
    name: str
    sub_type: str = ""
    time_scale: int = DEFAULT_TIME_SCALE
    chunks: tuple[Chunk, ...] = ()

    def fragment_times(self) -> list[int]:
        """Expand the chunk run list into absolute fragment start times."""
        times = []
        current = 0
        for chunk in self.chunks:
            if chunk.t is not None:
                current = chunk.t
            for _ in range(max(chunk.r, 1)):
                times.append(current)
                current += chunk.d or 0
        return times

    @property
    def start_time(self) -> int:
        times = self.fragment_times()
        return times[0] if times else 0

    def fragment_names(self, source: str) -> list[str]:
        """Object names composing a multi-file track, initialization header first."""
        return [f"{source}/{FRAGMENT_HEADER}"] + [f"{source}/{t:019d}" for t in self.fragment_times()]


class ClientManifest(BaseModel):
    """Fragment index of a live-archive asset."""

    model_config = ConfigDict(frozen=True)

    time_scale: int = DEFAULT_TIME_SCALE
    streams: tuple[ClientStream, ...] = ()

    def has_caption_stream(self, name: str) -> bool:
        return any(
            stream.type == StreamType.TEXT and stream.sub_type == CAPTION_SUBTYPE and stream.name == name
            for stream in self.streams
        )

    def get_stream(self, track: Track) -> Optional[ClientStream]:
        """Find the stream entry holding the fragments of a track."""
        candidates = [s for s in self.streams if s.type == track.type]
        if track.type == StreamType.TEXT:
            candidates = [s for s in candidates if s.sub_type == CAPTION_SUBTYPE]
        named = next((s for s in candidates if s.name == track.track_name), None)
        if named or track.type == StreamType.TEXT:
            return named
        return candidates[0] if len(candidates) == 1 else None


class DecryptInfo(BaseModel):
    """Storage encryption material of an asset."""

    model_config = ConfigDict(frozen=True)

    key: bytes = Field(..., description="AES-128 content key.")
    initialization_vectors: dict[str, bytes] = Field(
        default_factory=dict, description="Per-object 8 byte initialization vectors keyed by object name."
    )
    default_iv: Optional[bytes] = Field(None, description="IV used for objects without an explicit entry.")

    def iv_for(self, name: str) -> Optional[bytes]:
        return self.initialization_vectors.get(name, self.default_iv)


class AssetDetails(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    asset_name: str
    container: Any  # ObjectContainer holding the asset objects.
    manifest: Manifest
    client_manifest: Optional[ClientManifest] = None
    decrypt_info: Optional[DecryptInfo] = None


class MigrationStatus(str, Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


class AssetMigrationResult(BaseModel):
    asset_name: str
    status: MigrationStatus
    output_path: Optional[str] = None
    manifest_name: Optional[str] = None
    error: Optional[str] = None
