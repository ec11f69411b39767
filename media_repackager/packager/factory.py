from enum import Enum
from typing import Dict, Optional, Type

from media_repackager.configs import Settings, settings as default_settings
from media_repackager.schemas import AssetDetails

from .base import BasePackager
from .reconstruct import ReconstructOptions
from .shaka import ShakaPackager


class PackagerType(str, Enum):
    SHAKA = "shaka"


class PackagerFactory:
    """Factory for creating packagers."""

    _packagers: Dict[PackagerType, Type[BasePackager]] = {
        PackagerType.SHAKA: ShakaPackager,
    }

    @classmethod
    def get_packager(
        cls,
        kind: PackagerType,
        asset_details: AssetDetails,
        working_dir: str,
        settings: Settings,
        options: Optional[ReconstructOptions] = None,
    ) -> BasePackager:
        """Get a packager instance of the given kind for one asset."""
        packager_class = cls._packagers.get(PackagerType(kind))
        if not packager_class:
            raise ValueError(f"Unsupported packager: {kind}")
        return packager_class(asset_details, working_dir, settings, options)


def get_packager(
    kind: PackagerType | str,
    asset_details: AssetDetails,
    working_dir: str,
    settings: Optional[Settings] = None,
    options: Optional[ReconstructOptions] = None,
) -> BasePackager:
    return PackagerFactory.get_packager(kind, asset_details, working_dir, settings or default_settings, options)
