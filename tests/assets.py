"""Builders for asset containers laid out the way the live-ingest pipeline stores them."""

from pathlib import Path
from typing import Optional

from media_repackager.drm.decrypter import StorageDecrypter
from media_repackager.manifests import parse_client_manifest, parse_manifest
from media_repackager.schemas import AssetDetails, DecryptInfo
from media_repackager.storage import LocalContainer

from .mp4_builders import box, fragment, init_segment

VIDEO_TIME_SCALE = 10_000_000
AUDIO_TIME_SCALE = 48_000
VIDEO_START = 1000
VIDEO_FRAGMENT = 20_000_000
AUDIO_FRAGMENT = 96_000

TTML = """<?xml version="1.0" encoding="utf-8"?>
<tt xmlns="http://www.w3.org/ns/ttml" xmlns:ttp="http://www.w3.org/ns/ttml#parameter" ttp:tickRate="10000000">
  <body><div>
    <p begin="{begin}" end="{end}">{text}</p>
  </div></body>
</tt>"""

CAPTIONS_VTT = """WEBVTT

00:00:01.000 --> 00:00:02.500
Hello

cue-2
00:00:03.000 --> 00:00:04.000 align:start
World
"""


def server_manifest(entries: list[str], live: bool = True) -> str:
    formats = '<meta name="formats" content="vod-fragblob"/>' if live else ""
    return (
        '<?xml version="1.0" encoding="utf-8"?>'
        '<smil xmlns="http://www.w3.org/2001/SMIL20/Language">'
        f"<head>{formats}</head><body><switch>{''.join(entries)}</switch></body></smil>"
    )


def track_element(tag: str, src: str, track_id: int, track_name: str, extra: str = "") -> str:
    return (
        f'<{tag} src="{src}"><param name="trackID" value="{track_id}" valuetype="data"/>'
        f'<param name="trackName" value="{track_name}" valuetype="data"/>{extra}</{tag}>'
    )


def client_manifest(with_captions: bool = True) -> str:
    captions = (
        '<StreamIndex Type="text" Subtype="SUBT" Name="textstream_eng" TimeScale="10000000">'
        '<c t="0" d="20000000"/></StreamIndex>'
        if with_captions
        else ""
    )
    return (
        '<?xml version="1.0" encoding="utf-8"?>'
        '<SmoothStreamingMedia MajorVersion="2" MinorVersion="2" TimeScale="10000000" IsLive="TRUE">'
        f'<StreamIndex Type="video" Name="video" TimeScale="{VIDEO_TIME_SCALE}">'
        f'<c t="{VIDEO_START}" d="{VIDEO_FRAGMENT}" r="2"/></StreamIndex>'
        f'<StreamIndex Type="audio" Name="audio" TimeScale="{AUDIO_TIME_SCALE}">'
        f'<c t="0" d="{AUDIO_FRAGMENT}"/><c d="{AUDIO_FRAGMENT}"/></StreamIndex>'
        f"{captions}</SmoothStreamingMedia>"
    )


def _write(root: Path, name: str, data: bytes, decrypt_info: Optional[DecryptInfo]) -> None:
    path = root.joinpath(*name.split("/"))
    path.parent.mkdir(parents=True, exist_ok=True)
    if decrypt_info is not None:
        data = StorageDecrypter(decrypt_info.key, decrypt_info.iv_for(name)).decrypt(data)
    path.write_bytes(data)


def video_fragments() -> list[tuple[int, bytes]]:
    return [
        (
            VIDEO_START + i * VIDEO_FRAGMENT,
            fragment(
                1,
                [bytes([0x10 + i]) * 32, bytes([0x20 + i]) * 48],
                [VIDEO_FRAGMENT // 2] * 2,
                tfxd_time=VIDEO_START + i * VIDEO_FRAGMENT,
                tfrf=True,
            ),
        )
        for i in range(2)
    ]


def audio_fragments() -> list[tuple[int, bytes]]:
    return [
        (
            i * AUDIO_FRAGMENT,
            fragment(2, [bytes([0x30 + i]) * 24] * 2, [AUDIO_FRAGMENT // 2] * 2, tfxd_time=i * AUDIO_FRAGMENT),
        )
        for i in range(2)
    ]


def caption_fragment(begin: str, end: str, text: str) -> bytes:
    moof = box(b"moof", box(b"mfhd", bytes(8)))
    return moof + box(b"mdat", TTML.format(begin=begin, end=end, text=text).encode())


def build_live_asset(
    root: Path,
    *,
    captions: str = "fragments",
    with_video: bool = True,
    decrypt_info: Optional[DecryptInfo] = None,
    missing: tuple[str, ...] = (),
) -> Path:
    """
    Write a live-archive asset into ``root``.

    ``captions`` is "fragments" (multi-file TTML text track), "vtt" (single
    captions.vtt object) or "none".
    """
    root.mkdir(parents=True, exist_ok=True)
    entries = []
    objects: dict[str, bytes] = {}

    if with_video:
        entries.append(track_element("video", "video", 1, "video"))
        objects["video/header"] = init_segment([(1, VIDEO_TIME_SCALE)])
        for t, data in video_fragments():
            objects[f"video/{t:019d}"] = data

    entries.append(track_element("audio", "audio", 2, "audio"))
    objects["audio/header"] = init_segment([(2, AUDIO_TIME_SCALE)])
    for t, data in audio_fragments():
        objects[f"audio/{t:019d}"] = data

    if captions == "fragments":
        entries.append(track_element("textstream", "captions", 3, "textstream_eng"))
        objects["captions/header"] = b""
        objects[f"captions/{0:019d}"] = caption_fragment("00:00:01.000", "00:00:02.000", "Live caption")
    elif captions == "vtt":
        entries.append(track_element("textstream", "captions.vtt", 3, "textstream_eng"))
        objects["captions.vtt"] = CAPTIONS_VTT.encode()

    (root / "asset.ism").write_text(server_manifest(entries))
    (root / "asset.ismc").write_text(client_manifest(with_captions=captions == "fragments"))
    for name, data in objects.items():
        if name not in missing:
            _write(root, name, data, decrypt_info)
    return root


def build_vod_asset(root: Path, *, smooth: bool = False, smooth_captions: bool = False) -> Path:
    """
    Write a non-live asset: separate video/audio objects plus captions, or one
    smooth file multiplexing video and audio when ``smooth`` is set. A smooth
    asset also gets a c.vtt caption track when ``smooth_captions`` is set.
    """
    root.mkdir(parents=True, exist_ok=True)
    if smooth:
        data = init_segment([(1, VIDEO_TIME_SCALE), (2, AUDIO_TIME_SCALE)])
        data += fragment(1, [b"\x01" * 16], [VIDEO_FRAGMENT], decode_time=0)
        data += fragment(2, [b"\x02" * 8], [AUDIO_FRAGMENT], decode_time=0)
        data += fragment(1, [b"\x03" * 16], [VIDEO_FRAGMENT], decode_time=VIDEO_FRAGMENT)
        data += fragment(2, [b"\x04" * 8], [AUDIO_FRAGMENT], decode_time=AUDIO_FRAGMENT)
        data += box(b"mfra", bytes(8))
        (root / "movie.ismv").write_bytes(data)
        entries = [
            track_element("video", "movie.ismv", 1, "video"),
            track_element("audio", "movie.ismv", 2, "audio"),
        ]
        if smooth_captions:
            (root / "c.vtt").write_text(CAPTIONS_VTT)
            entries.append(track_element("textstream", "c.vtt", 3, "textstream_eng"))
    else:
        (root / "v.ismv").write_bytes(init_segment([(1, VIDEO_TIME_SCALE)]) + fragment(1, [b"v" * 8], [1000], 0))
        (root / "a.ismv").write_bytes(init_segment([(2, AUDIO_TIME_SCALE)]) + fragment(2, [b"a" * 8], [1000], 0))
        (root / "c.vtt").write_text(CAPTIONS_VTT)
        entries = [
            track_element("video", "v.ismv", 1, "video"),
            track_element("audio", "a.ismv", 2, "audio"),
            track_element("textstream", "c.vtt", 3, "textstream_eng"),
        ]
    (root / "asset.ism").write_text(server_manifest(entries, live=False))
    return root


def asset_details_for(root: Path, asset_name: str = "asset", decrypt_info: Optional[DecryptInfo] = None) -> AssetDetails:
    """Parse the manifests written by the builders above without going through storage."""
    manifest = parse_manifest("asset.ism", (root / "asset.ism").read_text())
    client = parse_client_manifest((root / "asset.ismc").read_text()) if manifest.is_live_archive else None
    return AssetDetails(
        asset_name=asset_name,
        container=LocalContainer(root),
        manifest=manifest,
        client_manifest=client,
        decrypt_info=decrypt_info,
    )
