"""Line, mark, color and scale kinds.

Built-in kinds are closed enums. A description file can register more under
``[global]`` (``define_line: name, display text, payload``); those become
:class:`CustomKind` values in the per-description :class:`KindRegistry`.
Curves that do not choose a kind get the next one of the category's
auto-cycle.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Union

from benchgraph.errors import UnresolvedReferenceError


class LineKind(Enum):
    SOLID = "solid"
    DASHED = "dashed"
    DOTTED = "dotted"
    DASHDOT = "dashdot"
    NONE = "none"


class MarkKind(Enum):
    NONE = "none"
    CIRCLE = "circle"
    SQUARE = "square"
    TRIANGLE = "triangle"
    DIAMOND = "diamond"
    CROSS = "cross"
    PLUS = "plus"
    STAR = "star"


class ColorKind(Enum):
    BLACK = "black"
    RED = "red"
    GREEN = "green"
    BLUE = "blue"
    MAGENTA = "magenta"
    CYAN = "cyan"
    ORANGE = "orange"
    BROWN = "brown"
    GRAY = "gray"


class ScaleKind(Enum):
    LINEAR = "linear"
    LOG = "log"
    LOG2 = "log2"


class StyleKind(Enum):
    LINES = "lines"
    POINTS = "points"
    LINESPOINTS = "linespoints"
    BARS = "bars"
    HBARS = "hbars"

    @property
    def is_bar(self) -> bool:
        return self in (StyleKind.BARS, StyleKind.HBARS)


@dataclass(frozen=True)
class CustomKind:
    category: str
    name: str
    display: str
    payload: str


Kind = Union[LineKind, MarkKind, ColorKind, ScaleKind, CustomKind]

CATEGORIES: dict[str, type[Enum]] = {
    "line": LineKind,
    "mark": MarkKind,
    "color": ColorKind,
    "scale": ScaleKind,
}

# display text, gnuplot payload
_BUILTIN: dict[Enum, tuple[str, str]] = {
    LineKind.SOLID: ("solid", "dt 1"),
    LineKind.DASHED: ("dashed", "dt 2"),
    LineKind.DOTTED: ("dotted", "dt 3"),
    LineKind.DASHDOT: ("dash-dot", "dt 4"),
    LineKind.NONE: ("no line", ""),
    MarkKind.NONE: ("no mark", ""),
    MarkKind.CIRCLE: ("circle", "pt 7"),
    MarkKind.SQUARE: ("square", "pt 5"),
    MarkKind.TRIANGLE: ("triangle", "pt 9"),
    MarkKind.DIAMOND: ("diamond", "pt 13"),
    MarkKind.CROSS: ("cross", "pt 2"),
    MarkKind.PLUS: ("plus", "pt 1"),
    MarkKind.STAR: ("star", "pt 3"),
    ColorKind.BLACK: ("black", 'lc rgb "black"'),
    ColorKind.RED: ("red", 'lc rgb "red"'),
    ColorKind.GREEN: ("green", 'lc rgb "dark-green"'),
    ColorKind.BLUE: ("blue", 'lc rgb "blue"'),
    ColorKind.MAGENTA: ("magenta", 'lc rgb "magenta"'),
    ColorKind.CYAN: ("cyan", 'lc rgb "dark-cyan"'),
    ColorKind.ORANGE: ("orange", 'lc rgb "orange"'),
    ColorKind.BROWN: ("brown", 'lc rgb "brown"'),
    ColorKind.GRAY: ("gray", 'lc rgb "gray"'),
    ScaleKind.LINEAR: ("linear", ""),
    ScaleKind.LOG: ("logarithmic", "10"),
    ScaleKind.LOG2: ("logarithmic (base 2)", "2"),
}

_AUTO_CYCLE: dict[str, list[Enum]] = {
    "line": [LineKind.SOLID, LineKind.DASHED, LineKind.DOTTED, LineKind.DASHDOT],
    "mark": [MarkKind.CIRCLE, MarkKind.SQUARE, MarkKind.TRIANGLE, MarkKind.DIAMOND,
             MarkKind.CROSS, MarkKind.PLUS, MarkKind.STAR],
    "color": [ColorKind.RED, ColorKind.BLUE, ColorKind.GREEN, ColorKind.MAGENTA,
              ColorKind.CYAN, ColorKind.ORANGE, ColorKind.BROWN, ColorKind.BLACK],
    "scale": [ScaleKind.LINEAR],
}

AUTO = "auto"


def kind_name(kind: Kind) -> str:
    return kind.name if isinstance(kind, CustomKind) else kind.value


def display_text(kind: Kind) -> str:
    if isinstance(kind, CustomKind):
        return kind.display
    return _BUILTIN[kind][0]


def payload(kind: Kind) -> str:
    """Renderer-specific text (gnuplot syntax) for *kind*."""
    if isinstance(kind, CustomKind):
        return kind.payload
    return _BUILTIN[kind][1]


class KindRegistry:
    """Maps kind names to built-in or user-registered kinds, per category."""

    def __init__(self) -> None:
        self._custom: dict[str, dict[str, CustomKind]] = {c: {} for c in CATEGORIES}

    def define(self, category: str, name: str, display: str = "", payload_text: str = "") -> CustomKind:
        if category not in CATEGORIES:
            raise UnresolvedReferenceError(f"unknown kind category {category!r}")
        key = name.strip().lower()
        kind = CustomKind(category, key, display or key, payload_text)
        self._custom[category][key] = kind
        return kind

    def resolve(self, category: str, name: str) -> Kind:
        if category not in CATEGORIES:
            raise UnresolvedReferenceError(f"unknown kind category {category!r}")
        key = name.strip().lower()
        if key in self._custom[category]:
            return self._custom[category][key]
        try:
            return CATEGORIES[category](key)
        except ValueError:
            known = ", ".join(self.names(category))
            raise UnresolvedReferenceError(
                f"unknown {category} kind {name!r} (known: {known})"
            ) from None

    def auto(self, category: str, n: int) -> Kind:
        cycle = _AUTO_CYCLE[category]
        return cycle[n % len(cycle)]

    def names(self, category: str) -> list[str]:
        builtin = [k.value for k in CATEGORIES[category]]
        return builtin + sorted(self._custom[category])
