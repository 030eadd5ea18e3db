from xr_buildkit.models.build import BuildRequest, BuildResult, BuildState, BuildStatus
from xr_buildkit.models.framework import FrameworkKind

__all__ = [
    "BuildRequest",
    "BuildResult",
    "BuildState",
    "BuildStatus",
    "FrameworkKind",
]
