import os

import pytest

from media_repackager.packager.reconstruct import (
    ReconstructOptions,
    Reconstructor,
    SyncState,
    caption_offset_ms,
    reconstruct,
    rescale_time,
    smooth_track_file,
)
from media_repackager.packager.tracks import build_input_plan, select_tracks
from media_repackager.remuxer.media_source import ReconstructionError
from media_repackager.schemas import AudioTrack, VideoTrack
from media_repackager.utils.mp4_utils import iter_boxes, parse_moof_timing
from media_repackager.utils.vtt_utils import parse_vtt

from .assets import (
    AUDIO_FRAGMENT,
    AUDIO_TIME_SCALE,
    CAPTIONS_VTT,
    VIDEO_START,
    VIDEO_TIME_SCALE,
    asset_details_for,
    build_live_asset,
    build_vod_asset,
)
from .mp4_builders import fragment_samples, top_level_types, traf_children, traf_track_ids

LIVE_OPTIONS = ReconstructOptions(process_live_video=True, process_live_audio=True, process_live_vtt=True)


def _plan(details):
    plan, _ = build_input_plan(select_tracks(details.manifest, details.client_manifest), details.manifest)
    return plan


def test_rescale_video_start_to_audio_time_scale():
    assert rescale_time(VIDEO_START, VIDEO_TIME_SCALE, AUDIO_TIME_SCALE) == 5


def test_rescale_rounds_halves_up():
    assert rescale_time(1, 2, 1) == 1
    assert rescale_time(3, 10, 1) == 0
    assert rescale_time(5, 10, 1) == 1
    assert rescale_time(0, 10_000_000, 48_000) == 0

    with pytest.raises(ValueError):
        rescale_time(1, 0, 1)


def test_sync_state_requires_time_scale():
    with pytest.raises(ValueError):
        SyncState(video_start_time=0, video_time_scale=0)


def test_caption_offset():
    assert caption_offset_ms(SyncState(video_start_time=25_000_000, video_time_scale=VIDEO_TIME_SCALE)) == 2500


def test_smooth_track_file_names():
    video = VideoTrack(source="movie.ismv")
    audio = AudioTrack(source="movie.ismv")
    assert smooth_track_file("movie.ismv", video, (video,)) == "movie.ismv"
    assert smooth_track_file("movie.ismv", audio, (video, audio)) == "movie_1.ismv"


@pytest.mark.asyncio
async def test_reconstruct_live_asset(live_asset, working_dir):
    plan = _plan(live_asset)

    result = await reconstruct(plan, live_asset, working_dir, LIVE_OPTIONS)

    assert set(result.artifacts) == {"audio.mp4", "captions.vtt", "video.mp4"}
    assert result.sync_state.video_start_time == VIDEO_START
    assert result.sync_state.video_time_scale == VIDEO_TIME_SCALE
    assert result.sync_state.video_start_time_in_audio_time_scale == 5
    assert result.sync_state.audio_time_scale == AUDIO_TIME_SCALE
    assert not result.sync_state.audio_has_discontinuities

    video = open(os.path.join(working_dir, "video.mp4"), "rb").read()
    assert top_level_types(video) == [b"ftyp", b"moov", b"moof", b"mdat", b"moof", b"mdat"]
    assert all(children == [b"tfhd", b"tfdt", b"trun"] for children in traf_children(video))
    assert fragment_samples(video)[0] == bytes([0x10]) * 32 + bytes([0x20]) * 48

    audio = open(os.path.join(working_dir, "audio.mp4"), "rb").read()
    assert traf_track_ids(audio) == [2, 2]
    decode_times = [parse_moof_timing(body)[0].decode_time for t, body in iter_boxes(audio) if t == b"moof"]
    assert decode_times == [0, AUDIO_FRAGMENT]
    assert os.path.exists(os.path.join(working_dir, "input", "audio.mp4"))

    with open(os.path.join(working_dir, "captions.vtt")) as f:
        _, cues = parse_vtt(f.read())
    assert [(c.start_ms, c.end_ms, c.text) for c in cues] == [(1000, 2000, "Live caption")]


@pytest.mark.asyncio
async def test_video_runs_before_audio_and_captions(live_vtt_asset, working_dir):
    calls = []

    class RecordingReconstructor(Reconstructor):
        async def reconstruct_video(self, input_name, tracks):
            sync_state = await super().reconstruct_video(input_name, tracks)
            calls.append(("video", sync_state))
            return sync_state

        async def reconstruct_audio(self, input_name, tracks, sync_state):
            calls.append(("audio", sync_state))
            return await super().reconstruct_audio(input_name, tracks, sync_state)

        async def adjust_caption(self, input_name, sync_state):
            calls.append(("captions", sync_state))
            return await super().adjust_caption(input_name, sync_state)

    await RecordingReconstructor(live_vtt_asset, working_dir, LIVE_OPTIONS).reconstruct(_plan(live_vtt_asset))

    assert calls[0][0] == "video"
    assert sorted(name for name, _ in calls[1:]) == ["audio", "captions"]
    video_state = calls[0][1]
    assert all(state.video_start_time == video_state.video_start_time == VIDEO_START for _, state in calls)


@pytest.mark.asyncio
async def test_audio_with_synthetic_sync_state(live_asset, working_dir):
    reconstructor = Reconstructor(live_asset, working_dir, LIVE_OPTIONS)
    os.makedirs(reconstructor.input_dir)
    audio = next(t for t in live_asset.manifest.tracks if t.source == "audio")
    # Video starting exactly at the end of the first audio fragment.
    sync_state = SyncState(video_start_time=20_000_000, video_time_scale=VIDEO_TIME_SCALE)

    state = await reconstructor.reconstruct_audio("audio.mp4", (audio,), sync_state)

    assert state.video_start_time_in_audio_time_scale == AUDIO_FRAGMENT
    assert state.audio_start_time == 0
    data = open(os.path.join(working_dir, "audio.mp4"), "rb").read()
    assert top_level_types(data) == [b"ftyp", b"moov", b"moof", b"mdat"]


@pytest.mark.asyncio
async def test_vtt_captions_are_shifted_by_video_start(tmp_path, working_dir):
    root = build_live_asset(tmp_path / "asset", captions="vtt")
    details = asset_details_for(root)
    reconstructor = Reconstructor(details, working_dir, LIVE_OPTIONS)
    os.makedirs(reconstructor.input_dir)
    sync_state = SyncState(video_start_time=5_000_000, video_time_scale=VIDEO_TIME_SCALE)

    path = await reconstructor.download_plain("captions.vtt", sync_state)

    with open(path) as f:
        _, cues = parse_vtt(f.read())
    assert [(c.start_ms, c.end_ms) for c in cues] == [(1500, 3000), (3500, 4500)]


@pytest.mark.asyncio
async def test_audio_without_video_fails(tmp_path, working_dir):
    details = asset_details_for(build_live_asset(tmp_path / "asset", with_video=False, captions="none"))

    with pytest.raises(ReconstructionError, match="no multi-file video track"):
        await reconstruct(_plan(details), details, working_dir, LIVE_OPTIONS)


@pytest.mark.asyncio
async def test_missing_fragment_fails_without_partial_files(tmp_path, working_dir):
    missing = f"audio/{AUDIO_FRAGMENT:019d}"
    details = asset_details_for(build_live_asset(tmp_path / "asset", missing=(missing,)))

    with pytest.raises(ReconstructionError, match=missing):
        await reconstruct(_plan(details), details, working_dir, LIVE_OPTIONS)

    leftovers = [name for _, _, files in os.walk(working_dir) for name in files if name.endswith(".part")]
    assert leftovers == []
    assert not os.path.exists(os.path.join(working_dir, "audio.mp4"))


@pytest.mark.asyncio
async def test_live_processing_disabled_copies_fragments(live_asset, working_dir):
    result = await reconstruct(_plan(live_asset), live_asset, working_dir, ReconstructOptions())

    video = open(os.path.join(working_dir, "video.mp4"), "rb").read()
    assert b"tfdt" not in b"".join(b"".join(children) for children in traf_children(video))
    assert result.sync_state.video_start_time == VIDEO_START


@pytest.mark.asyncio
async def test_smooth_input_is_demultiplexed(smooth_asset, working_dir):
    plan = _plan(smooth_asset)
    options = ReconstructOptions.for_asset(smooth_asset, plan, _Settings())
    assert options.transmuxed_smooth

    result = await reconstruct(plan, smooth_asset, working_dir, options)

    paths = result.artifacts["movie.ismv"]
    assert [os.path.basename(p) for p in paths] == ["movie_1.ismv", "movie_2.ismv"]
    assert traf_track_ids(open(paths[0], "rb").read()) == [1, 1]
    assert traf_track_ids(open(paths[1], "rb").read()) == [2, 2]
    assert result.sync_state is None


@pytest.mark.asyncio
async def test_smooth_asset_captions_are_downloaded_as_they_are(tmp_path, working_dir):
    details = asset_details_for(build_vod_asset(tmp_path / "asset", smooth=True, smooth_captions=True))
    plan = _plan(details)
    options = ReconstructOptions.for_asset(details, plan, _Settings())
    assert options.transmuxed_smooth

    result = await reconstruct(plan, details, working_dir, options)

    assert [os.path.basename(p) for p in result.artifacts["movie.ismv"]] == ["movie_1.ismv", "movie_2.ismv"]
    assert result.artifacts["c.vtt"] == [os.path.join(working_dir, "c.vtt")]
    with open(os.path.join(working_dir, "c.vtt")) as f:
        assert f.read() == CAPTIONS_VTT


@pytest.mark.asyncio
async def test_audio_without_video_is_copied_when_processing_is_disabled(tmp_path, working_dir):
    details = asset_details_for(build_live_asset(tmp_path / "asset", with_video=False, captions="none"))

    result = await reconstruct(_plan(details), details, working_dir, ReconstructOptions())

    assert set(result.artifacts) == {"audio.mp4"}
    assert result.sync_state is None
    audio = open(os.path.join(working_dir, "audio.mp4"), "rb").read()
    assert top_level_types(audio) == [b"ftyp", b"moov", b"moof", b"mdat", b"moof", b"mdat"]
    assert traf_track_ids(audio) == [2, 2]


class _Settings:
    process_live_video = True
    process_live_audio = True
    process_live_vtt = True


def test_options_for_live_and_vod_assets(live_asset, vod_asset):
    live = ReconstructOptions.for_asset(live_asset, _plan(live_asset), _Settings())
    vod = ReconstructOptions.for_asset(vod_asset, _plan(vod_asset), _Settings())

    assert live == LIVE_OPTIONS
    assert vod == ReconstructOptions()
