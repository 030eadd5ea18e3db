"""xr-buildkit: build pipeline and hot reload for AI-authored 3D/XR scene code."""

__version__ = "0.1.0"

from xr_buildkit.analyzer import BuildAnalysis, BuildAnalyzer, BuildGrade, BuildTrends, Trend
from xr_buildkit.backends.base import BuildBackend
from xr_buildkit.backends.factory import BuildBackendFactory
from xr_buildkit.config import BuildKitSettings
from xr_buildkit.events import EventBus
from xr_buildkit.hot_reload import HotReloadConfig, HotReloadScheduler
from xr_buildkit.manager import BuildManager
from xr_buildkit.models import BuildRequest, BuildResult, BuildState, BuildStatus, FrameworkKind

__all__ = [
    "BuildAnalysis",
    "BuildAnalyzer",
    "BuildBackend",
    "BuildBackendFactory",
    "BuildGrade",
    "BuildKitSettings",
    "BuildManager",
    "BuildRequest",
    "BuildResult",
    "BuildState",
    "BuildStatus",
    "BuildTrends",
    "EventBus",
    "FrameworkKind",
    "HotReloadConfig",
    "HotReloadScheduler",
    "Trend",
]
