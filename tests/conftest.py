"""
Pytest configuration for the repackager tests.

Assets are written into temporary directories and read back through
LocalContainer. Overrides for the settings can be placed in the .env file at
the project root.
"""

import os
import stat
import sys
from pathlib import Path

import pytest
from dotenv import load_dotenv

from media_repackager.configs import Settings
from media_repackager.schemas import AssetDetails

from .assets import asset_details_for, build_live_asset, build_vod_asset

# Load .env file from project root
project_root = Path(__file__).parent.parent
load_dotenv(project_root / ".env")


def pytest_configure(config):
    """Configure pytest-asyncio mode."""
    config.addinivalue_line("markers", "asyncio: mark test as async")
    config.addinivalue_line("markers", "fifo: test needs named pipes")


FAKE_PACKAGER = """#!{python}
import os
import sys

# Writes every output and playlist named by the stream descriptors, then the manifests.
arguments = sys.argv[1:]
for argument in arguments:
    if argument.startswith("in="):
        fields = dict(item.split("=", 1) for item in argument.split(","))
        if not os.path.exists(fields["in"]):
            sys.stderr.write("missing input " + fields["in"] + "\\n")
            sys.exit(3)
        with open(fields["in"], "rb") as src, open(fields["output"], "wb") as dst:
            dst.write(src.read())
        with open(fields["playlist_name"], "w") as playlist:
            playlist.write("#EXTM3U\\n")
for flag in ("--mpd_output", "--hls_master_playlist_output"):
    with open(arguments[arguments.index(flag) + 1], "w") as manifest:
        manifest.write(flag + "\\n")
print("packaged", len(arguments))
"""


@pytest.fixture
def make_settings(tmp_path):
    """Factory fixture returning Settings rooted in the test's temporary directory."""

    def _make(**overrides) -> Settings:
        values = {"working_dir": str(tmp_path / "work"), "delete_working_dir": False}
        values.update(overrides)
        return Settings(**values)

    return _make


@pytest.fixture
def fake_packager(tmp_path) -> str:
    """An executable script standing in for the packaging tool."""
    path = tmp_path / "fake-packager"
    path.write_text(FAKE_PACKAGER.format(python=sys.executable))
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)


@pytest.fixture
def live_asset(tmp_path) -> AssetDetails:
    return asset_details_for(build_live_asset(tmp_path / "source" / "asset"))


@pytest.fixture
def live_vtt_asset(tmp_path) -> AssetDetails:
    return asset_details_for(build_live_asset(tmp_path / "source" / "asset", captions="vtt"))


@pytest.fixture
def vod_asset(tmp_path) -> AssetDetails:
    return asset_details_for(build_vod_asset(tmp_path / "source" / "asset"))


@pytest.fixture
def smooth_asset(tmp_path) -> AssetDetails:
    return asset_details_for(build_vod_asset(tmp_path / "source" / "asset", smooth=True))


@pytest.fixture
def working_dir(tmp_path) -> str:
    path = tmp_path / "work"
    path.mkdir()
    return str(path)


def pytest_collection_modifyitems(config, items):
    if hasattr(os, "mkfifo"):
        return
    skip_fifo = pytest.mark.skip(reason="named pipes are not available on this platform")
    for item in items:
        if "fifo" in item.keywords:
            item.add_marker(skip_fifo)
