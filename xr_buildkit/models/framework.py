"""Framework registry: which scene frameworks need a build step and how."""

from __future__ import annotations

from enum import Enum


class FrameworkKind(Enum):
    """Scene framework. The value is the wire id shared with both bridges."""

    BABYLON = "babylon"
    AFRAME = "aFrame"
    REACT_THREE_FIBER = "reactThreeFiber"
    REACTYLON = "reactylon"

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]

    @property
    def requires_build(self) -> bool:
        """False means the source is injected directly without compilation."""
        return self in _BUILD_FRAMEWORKS

    @property
    def uses_jsx(self) -> bool:
        return self in _BUILD_FRAMEWORKS

    @property
    def code_language(self) -> str:
        return "typescript" if self in _BUILD_FRAMEWORKS else "javascript"

    @property
    def entry_file_name(self) -> str:
        return "index.tsx" if self in _BUILD_FRAMEWORKS else "index.js"

    @classmethod
    def parse(cls, value: str) -> FrameworkKind:
        """Accept a wire id ("reactThreeFiber") or enum name ("react_three_fiber")."""
        needle = value.strip().lower().replace("-", "_")
        for kind in cls:
            if needle in (kind.value.lower(), kind.name.lower()):
                return kind
        raise ValueError(f"Unknown framework: {value!r}")


_BUILD_FRAMEWORKS = frozenset({FrameworkKind.REACT_THREE_FIBER, FrameworkKind.REACTYLON})

_DISPLAY_NAMES: dict[FrameworkKind, str] = {
    FrameworkKind.BABYLON: "Babylon.js",
    FrameworkKind.AFRAME: "A-Frame",
    FrameworkKind.REACT_THREE_FIBER: "React Three Fiber",
    FrameworkKind.REACTYLON: "Reactylon",
}
