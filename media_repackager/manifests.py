import logging
import os
from typing import Optional, Union

import xmltodict

from media_repackager.const import CLIENT_MANIFEST, DEFAULT_TIME_SCALE, SERVER_MANIFEST
from media_repackager.schemas import (
    AssetDetails,
    Chunk,
    ClientManifest,
    ClientStream,
    DecryptInfo,
    Manifest,
    StreamType,
    TRACK_TYPES,
    TrackParameter,
)
from media_repackager.storage import ObjectContainer, read_object

logger = logging.getLogger(__name__)


class ManifestError(Exception):
    """Raised when an asset manifest is missing or malformed."""


def _as_list(value) -> list:
    if value is None:
        return []
    return value if isinstance(value, list) else [value]


def _switch_elements(content: Union[str, bytes]) -> list[tuple[str, dict]]:
    """Children of smil/body/switch as (tag, element) pairs, in document order."""
    elements = []

    def collect(path, item):
        if [name for name, _ in path[:3]] == ["smil", "body", "switch"]:
            elements.append((path[-1][0], item or {}))
        return True

    xmltodict.parse(content, item_depth=4, item_callback=collect)
    return elements


def parse_manifest(file_name: str, content: Union[str, bytes]) -> Manifest:
    """Parses a SMIL server manifest (.ism) into a Manifest, tracks in document order."""
    try:
        smil = xmltodict.parse(content)["smil"]
        elements = _switch_elements(content)
    except Exception as e:
        raise ManifestError(f"Invalid server manifest {file_name}: {e}") from e

    manifest_format = ""
    for meta in _as_list((smil.get("head") or {}).get("meta")):
        if meta.get("@name") == "formats":
            manifest_format = meta.get("@content", "")

    tracks = []
    for tag, element in elements:
        track_type = TRACK_TYPES.get(tag)
        if track_type is None:
            continue
        parameters = tuple(
            TrackParameter(name=param["@name"], value=param.get("@value", ""))
            for param in _as_list(element.get("param"))
        )
        tracks.append(track_type(source=element["@src"], parameters=parameters))

    return Manifest(file_name=file_name, format=manifest_format, tracks=tuple(tracks))


def parse_client_manifest(content: Union[str, bytes]) -> ClientManifest:
    """Parses a Smooth Streaming client manifest (.ismc) into a ClientManifest."""
    try:
        media = xmltodict.parse(content)["SmoothStreamingMedia"]
    except Exception as e:
        raise ManifestError(f"Invalid client manifest: {e}") from e

    time_scale = int(media.get("@TimeScale", DEFAULT_TIME_SCALE))
    streams = []
    for index in _as_list(media.get("StreamIndex")):
        try:
            stream_type = StreamType(index["@Type"].lower())
        except ValueError:
            logger.debug(f"Skipping stream index of unknown type {index.get('@Type')}")
            continue
        chunks = tuple(
            Chunk(
                t=int(c["@t"]) if "@t" in c else None,
                d=int(c["@d"]) if "@d" in c else None,
                r=int(c.get("@r", 1)),
            )
            for c in _as_list(index.get("c"))
        )
        streams.append(
            ClientStream(
                type=stream_type,
                sub_type=index.get("@Subtype", ""),
                name=index.get("@Name", stream_type.value),
                time_scale=int(index.get("@TimeScale", time_scale)),
                chunks=chunks,
            )
        )
    return ClientManifest(time_scale=time_scale, streams=tuple(streams))


async def load_asset_details(
    container: ObjectContainer,
    asset_name: Optional[str] = None,
    decrypt_info: Optional[DecryptInfo] = None,
) -> AssetDetails:
    """
    Locate and parse the manifests of the asset stored in ``container``.

    Raises:
        ManifestError: If the container holds no server manifest, or a live
            archive has no client manifest.
    """
    names = await container.list_objects()
    server_manifests = [n for n in names if n.endswith(SERVER_MANIFEST) and "/" not in n]
    if not server_manifests:
        raise ManifestError(f"No {SERVER_MANIFEST} manifest found in container {container.name}")

    manifest_name = server_manifests[0]
    manifest = parse_manifest(manifest_name, await read_object(container, manifest_name))

    client_manifest = None
    if manifest.is_live_archive:
        base = os.path.splitext(manifest_name)[0]
        client_names = [n for n in names if n.endswith(CLIENT_MANIFEST) and "/" not in n]
        client_name = next((n for n in client_names if n == f"{base}{CLIENT_MANIFEST}"), None) or next(
            iter(client_names), None
        )
        if client_name is None:
            raise ManifestError(f"Live archive {manifest_name} in {container.name} has no client manifest")
        client_manifest = parse_client_manifest(await read_object(container, client_name))

    logger.debug(f"Loaded manifest {manifest_name} with {len(manifest.tracks)} tracks from {container.name}")
    return AssetDetails(
        asset_name=asset_name or container.name,
        container=container,
        manifest=manifest,
        client_manifest=client_manifest,
        decrypt_info=decrypt_info,
    )
