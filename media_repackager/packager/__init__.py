"""
Packaging of one asset.

- tracks: track selection and input/output name planning
- reconstruct: two-phase live-archive reconstruction (video, then audio and captions)
- base: BasePackager and run_packager
- shaka: Shaka Packager stream descriptors and options
- factory: packager lookup by PackagerType
"""

from .factory import PackagerFactory, PackagerType, get_packager
from .reconstruct import ReconstructOptions, ReconstructResult, Reconstructor, SyncState, reconstruct
from .tracks import InputPlan, build_input_plan, manifest_names, select_tracks

__all__ = [
    "InputPlan",
    "PackagerFactory",
    "PackagerType",
    "ReconstructOptions",
    "ReconstructResult",
    "Reconstructor",
    "SyncState",
    "build_input_plan",
    "get_packager",
    "manifest_names",
    "reconstruct",
    "select_tracks",
]
