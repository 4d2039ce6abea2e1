"""Geometry model: the renderer-neutral result of laying out a graph."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterator

from benchgraph.describe.kinds import Kind, ScaleKind, StyleKind


@dataclass(frozen=True)
class GeometryPoint:
    curve_id: int
    raw_x: Any
    raw_y: Any
    x: float
    y: float
    low: float | None = None
    high: float | None = None

    def as_tuple(self) -> tuple[Any, ...]:
        return (self.curve_id, self.raw_x, self.raw_y, self.x, self.y, self.low, self.high)


@dataclass
class AxisGeometry:
    name: str
    label: str = ""
    type: str = "numeric"
    scale: Kind = ScaleKind.LINEAR
    categories: list[str] = field(default_factory=list)
    # (plotted coordinate, label) for category axes
    ticks: list[tuple[float, str]] = field(default_factory=list)
    min: float | None = None
    max: float | None = None
    base: float = 0.0
    group_width: int = 1

    @property
    def is_category(self) -> bool:
        return self.type == "category"


@dataclass
class CurveGeometry:
    curve_id: int
    label: str
    bench: str
    style: StyleKind
    line: Kind
    mark: Kind
    color: Kind
    value_axis: str = "y"
    marktext: str = ""
    points: list[GeometryPoint] = field(default_factory=list)


@dataclass
class GraphGeometry:
    title: str
    x: AxisGeometry
    y: AxisGeometry
    legend: str = ""
    errorbars: bool = False
    grid: bool = False
    curves: list[CurveGeometry] = field(default_factory=list)

    def points(self) -> Iterator[GeometryPoint]:
        for curve in self.curves:
            yield from curve.points


@dataclass
class GeometryModel:
    graphs: list[GraphGeometry] = field(default_factory=list)
    separator: str = ":"
    source: str = ""

    def points(self) -> Iterator[GeometryPoint]:
        for graph in self.graphs:
            yield from graph.points()
