"""Build analysis: grade, size breakdown, optimization estimates, trends.

Dependency sizes, optimization savings, the per-phase time split and the
memory figure are heuristics, not measured from the bundle. Every object that
carries them has ``estimated = True`` so callers can label them as such.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from enum import Enum

import structlog

from xr_buildkit.models.build import BuildResult
from xr_buildkit.models.framework import FrameworkKind

log = structlog.get_logger(__name__)

TREND_WINDOW = 10
TREND_MIN_ENTRIES = 3
TREND_THRESHOLD = 0.1
RECOMMENDATION_WINDOW = 5


class BuildGrade(Enum):
    EXCELLENT = "A+"
    GOOD = "B+"
    FAIR = "C+"
    NEEDS_IMPROVEMENT = "D"

    @property
    def description(self) -> str:
        return _GRADE_DESCRIPTIONS[self]

    @property
    def is_poor(self) -> bool:
        return self in (BuildGrade.FAIR, BuildGrade.NEEDS_IMPROVEMENT)

    @classmethod
    def for_build(cls, build_time: float, bundle_size_kb: float) -> BuildGrade:
        """First matching tier wins; both limits are strict."""
        if build_time < 1.0 and bundle_size_kb < 100:
            return cls.EXCELLENT
        if build_time < 2.0 and bundle_size_kb < 200:
            return cls.GOOD
        if build_time < 5.0 and bundle_size_kb < 500:
            return cls.FAIR
        return cls.NEEDS_IMPROVEMENT


_GRADE_DESCRIPTIONS = {
    BuildGrade.EXCELLENT: "Excellent - Fast builds, small bundles",
    BuildGrade.GOOD: "Good - Solid performance",
    BuildGrade.FAIR: "Fair - Room for improvement",
    BuildGrade.NEEDS_IMPROVEMENT: "Needs Improvement - Consider optimization",
}


class Trend(Enum):
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"

    @property
    def description(self) -> str:
        return self.value.capitalize()


@dataclass(frozen=True)
class DependencyInfo:
    name: str
    size: int
    version: str | None = None
    is_vendor: bool = True
    estimated: bool = True

    @property
    def size_kb(self) -> float:
        return self.size / 1024


@dataclass(frozen=True)
class OptimizationReport:
    minification_savings: int
    dead_code_elimination_savings: int
    treeshaking_savings: int
    compression_ratio: float
    suggestions: list[str] = field(default_factory=list)
    estimated: bool = True

    @property
    def total_savings(self) -> int:
        return (
            self.minification_savings
            + self.dead_code_elimination_savings
            + self.treeshaking_savings
        )

    @property
    def total_savings_kb(self) -> float:
        return self.total_savings / 1024


@dataclass(frozen=True)
class PerformanceMetrics:
    parse_time: float
    transform_time: float
    bundle_time: float
    write_time: float
    memory_usage: int
    estimated: bool = True

    @property
    def total_time(self) -> float:
        return self.parse_time + self.transform_time + self.bundle_time + self.write_time


@dataclass(frozen=True)
class BuildAnalysis:
    framework: FrameworkKind
    success: bool
    build_time: float  # seconds
    bundle_size: int  # bytes
    dependencies: list[DependencyInfo]
    warnings: list[str]
    optimization: OptimizationReport
    performance: PerformanceMetrics

    @property
    def bundle_size_kb(self) -> float:
        return self.bundle_size / 1024

    @property
    def grade(self) -> BuildGrade:
        return BuildGrade.for_build(self.build_time, self.bundle_size_kb)


@dataclass(frozen=True)
class BuildTrends:
    average_build_time: float
    average_bundle_size: int
    build_time_trend: Trend
    bundle_size_trend: Trend
    recent_builds: list[BuildAnalysis]

    @property
    def average_bundle_size_kb(self) -> float:
        return self.average_bundle_size / 1024


# Approximate vendor payload per framework (name, bytes, version).
_VENDOR_DEPENDENCIES: dict[FrameworkKind, tuple[tuple[str, int, str], ...]] = {
    FrameworkKind.REACT_THREE_FIBER: (
        ("react", 10737, "18.2.0"),
        ("react-dom", 131882, "18.2.0"),
        ("three", 1272972, "r160"),
        ("@react-three/fiber", 50000, "8.15+"),
        ("@react-three/drei", 80000, "9.88+"),
    ),
    FrameworkKind.REACTYLON: (
        ("react", 10737, "18.2.0"),
        ("react-dom", 131882, "18.2.0"),
        ("@babylonjs/core", 2000000, "6.0+"),
        ("reactylon", 120000, "1.0+"),
    ),
    FrameworkKind.BABYLON: (("@babylonjs/core", 2000000, "6.0+"),),
    FrameworkKind.AFRAME: (("aframe", 800000, "1.4+"),),
}


def vendor_dependencies(framework: FrameworkKind) -> list[DependencyInfo]:
    return [
        DependencyInfo(name=name, size=size, version=version)
        for name, size, version in _VENDOR_DEPENDENCIES[framework]
    ]


def estimate_optimization(result: BuildResult) -> OptimizationReport:
    """Assumes the unminified bundle is about 2.5x the reported size."""
    size = result.bytes
    unminified = int(size * 2.5)

    suggestions = []
    if size > 500_000:
        suggestions.append("Consider code splitting for large bundles")
    if size > 200_000:
        suggestions.append("Enable minification to reduce bundle size")
    if not result.warnings and size > 100_000:
        suggestions.append("Consider dynamic imports for rarely used features")
    if result.warnings:
        suggestions.append("Review warnings for potential optimizations")

    return OptimizationReport(
        minification_savings=unminified - size,
        dead_code_elimination_savings=int(size * 0.1),
        treeshaking_savings=int(size * 0.05),
        compression_ratio=unminified / size if size else 0.0,
        suggestions=suggestions,
    )


def estimate_performance(result: BuildResult) -> PerformanceMetrics:
    total = result.duration_ms / 1000
    return PerformanceMetrics(
        parse_time=total * 0.2,
        transform_time=total * 0.4,
        bundle_time=total * 0.3,
        write_time=total * 0.1,
        memory_usage=result.bytes * 3,
    )


def compute_trend(values: list[float]) -> Trend:
    """Compare the mean of the first half with the mean of the second half."""
    if len(values) < TREND_MIN_ENTRIES:
        return Trend.STABLE
    half = len(values) // 2
    first = sum(values[:half]) / half
    last = sum(values[-half:]) / half
    if first == 0:
        return Trend.STABLE
    change = (last - first) / first
    if change > TREND_THRESHOLD:
        return Trend.INCREASING
    if change < -TREND_THRESHOLD:
        return Trend.DECREASING
    return Trend.STABLE


class BuildAnalyzer:
    """Analyzes build results and keeps a bounded FIFO history of the analyses."""

    def __init__(self, history_size: int = 50) -> None:
        self._history: deque[BuildAnalysis] = deque(maxlen=history_size)

    @property
    def history(self) -> list[BuildAnalysis]:
        return list(self._history)

    def analyze(self, result: BuildResult, framework: FrameworkKind) -> BuildAnalysis:
        analysis = BuildAnalysis(
            framework=framework,
            success=result.success,
            build_time=result.duration_ms / 1000,
            bundle_size=result.bytes,
            dependencies=vendor_dependencies(framework),
            warnings=list(result.warnings),
            optimization=estimate_optimization(result),
            performance=estimate_performance(result),
        )
        self._history.append(analysis)
        log.info(
            "analysis.recorded",
            grade=analysis.grade.value,
            build_time=round(analysis.build_time, 3),
            bundle_kb=round(analysis.bundle_size_kb, 1),
            history=len(self._history),
        )
        return analysis

    def trends(self) -> BuildTrends:
        if len(self._history) < TREND_MIN_ENTRIES:
            return BuildTrends(
                average_build_time=0.0,
                average_bundle_size=0,
                build_time_trend=Trend.STABLE,
                bundle_size_trend=Trend.STABLE,
                recent_builds=list(self._history),
            )

        recent = list(self._history)[-TREND_WINDOW:]
        times = [a.build_time for a in recent]
        sizes = [a.bundle_size for a in recent]
        return BuildTrends(
            average_build_time=sum(times) / len(recent),
            average_bundle_size=sum(sizes) // len(recent),
            build_time_trend=compute_trend(times),
            bundle_size_trend=compute_trend([float(s) for s in sizes]),
            recent_builds=recent,
        )

    def recommendations(self) -> list[str]:
        recent = list(self._history)[-RECOMMENDATION_WINDOW:]
        if not recent:
            return []

        average_size = sum(a.bundle_size for a in recent) / len(recent)
        average_time = sum(a.build_time for a in recent) / len(recent)

        recommendations = []
        if average_size > 300_000:
            recommendations.append("Bundle size is large - consider code splitting")
        if average_time > 3.0:
            recommendations.append("Build time is slow - enable caching or use the native worker")
        poor = sum(1 for a in recent if a.grade.is_poor)
        if poor / len(recent) > 0.5:
            recommendations.append(
                "Build performance needs attention - review optimization settings"
            )
        return recommendations

    def clear(self) -> None:
        self._history.clear()
