"""Curve Geometry Engine.

Turns a :class:`BoundGraph` into a :class:`GraphGeometry`. The same layout
feeds every renderer, so axis mapping, bar-group offsets, normalization,
accumulation and stacking are computed here and nowhere else.

Per point the adjustments compose in a fixed order::

    aggregated value -> category/offset placement -> normalization
                     -> accumulation -> stacking
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from benchgraph.describe.binder import BoundGraph, CurveData
from benchgraph.describe.tree import Axis, Curve, Graph
from benchgraph.errors import GraphError
from benchgraph.geometry.aggregate import DEFAULT_CONFIDENCE, Aggregate, aggregate
from benchgraph.geometry.model import (
    AxisGeometry,
    CurveGeometry,
    GeometryPoint,
    GraphGeometry,
)
from benchgraph.store.names import normalize_number

logger = logging.getLogger(__name__)

GROUP_PADDING = 4


# ── Helpers ──────────────────────────────────────────────────────

def _number(value: Any) -> int | float | None:
    try:
        return normalize_number(value)
    except (TypeError, ValueError):
        return None


def natural_key(value: Any) -> tuple:
    """Numbers first in numeric order, then everything else as text."""
    number = _number(value)
    if number is not None:
        return (0, number, "")
    return (1, 0, str(value))


def position_key(value: Any) -> Any:
    """Equality key for positions: ``1``, ``1.0`` and ``"1"`` coincide."""
    number = _number(value)
    return number if number is not None else str(value)


def category_text(value: Any) -> str:
    number = _number(value)
    if number is not None:
        return str(number)
    return str(value)


# ── Series ───────────────────────────────────────────────────────

@dataclass(eq=False)
class _Series:
    """One CurveData reduced to aggregated (position, value, low, high) rows."""
    curve: Curve
    data: CurveData
    bench_index: int
    bench_name: str
    first_of_curve: bool
    rows: list[tuple[Any, Aggregate]] = field(default_factory=list)

    @property
    def drawn(self) -> bool:
        return not self.curve.has("skip")


def _reduce(series: _Series, confidence: float) -> None:
    buckets = series.data.buckets(series.curve.position_axis)
    name = series.curve.aggregation
    for pos in sorted(buckets, key=natural_key):
        for triple in aggregate(name, buckets[pos], confidence):
            series.rows.append((pos, triple))


# ── Engine ───────────────────────────────────────────────────────

class GeometryEngine:
    """Lays out bound graphs. Stateless between graphs.

    *confidence* applies to graphs without a ``confidence`` key of their own.
    """

    def __init__(self, confidence: float = DEFAULT_CONFIDENCE) -> None:
        self.confidence = confidence

    def layout(self, bound: BoundGraph) -> GraphGeometry:
        graph = bound.graph
        confidence = graph.confidence if graph.confidence is not None else self.confidence

        series: list[_Series] = []
        for bench_index, bench in enumerate(bound.benches):
            for bound_curve in bench.curves:
                for n, data in enumerate(bound_curve.data):
                    s = _Series(bound_curve.curve, data, bench_index, bench.benchmark.name, n == 0)
                    _reduce(s, confidence)
                    series.append(s)

        geometry = GraphGeometry(
            title=graph.title,
            x=self._axis(graph.x),
            y=self._axis(graph.y),
            legend=graph.legend,
            errorbars=graph.has("errorbars"),
            grid=graph.has("grid"),
        )
        categories = {
            "x": self._categories(graph.x, series),
            "y": self._categories(graph.y, series),
        }
        offsets = {
            "x": self._offsets(graph.x, series),
            "y": self._offsets(graph.y, series),
        }
        for name, axis_geometry in (("x", geometry.x), ("y", geometry.y)):
            cats = categories[name]
            if cats is None:
                continue
            axis_geometry.categories = list(cats)
            gw = offsets[name][0]
            axis_geometry.group_width = gw
            skip = max(graph.axis(name).skip, 1)
            axis_geometry.ticks = [
                (float(pos * gw), label)
                for label, pos in cats.items()
                if (pos - 1) % skip == 0
            ]

        placed = [self._place(graph, s, categories, offsets) for s in series]
        if graph.has("normalize"):
            self._normalize(graph, series, placed)
        for s, points in zip(series, placed):
            if s.curve.has("accum"):
                self._accumulate(s, points)
        if graph.has("stack"):
            self._stack(graph, series, placed)

        curve_id = 0
        for s, points in zip(series, placed):
            if not s.drawn:
                continue
            curve_id += 1
            curve = s.curve
            geometry.curves.append(CurveGeometry(
                curve_id=curve_id,
                label=s.data.label,
                bench=s.bench_name,
                style=curve.style,
                line=curve.line,
                mark=curve.mark,
                color=curve.color,
                value_axis=curve.value_axis,
                marktext=s.data.marktext,
                points=[p.freeze(curve_id) for p in points],
            ))
        logger.debug("Laid out graph %r: %d curve(s), %d point(s)",
                     graph.title, len(geometry.curves), sum(1 for _ in geometry.points()))
        return geometry

    def layout_all(self, bound_graphs: Iterable[BoundGraph]) -> list[GraphGeometry]:
        return [self.layout(b) for b in bound_graphs]

    # ── Axes ─────────────────────────────────────────────────────

    @staticmethod
    def _axis(axis: Axis) -> AxisGeometry:
        return AxisGeometry(
            name=axis.name,
            label=axis.label,
            type=axis.type,
            scale=axis.scale,
            min=axis.min,
            max=axis.max,
            base=axis.base,
        )

    @staticmethod
    def _categories(axis: Axis, series: list[_Series]) -> dict[str, int] | None:
        """Label -> 1-based position: configured labels first, then observed ones
        in first-seen order over the drawn curves (each curve in sorted order)."""
        if not axis.is_category:
            return None
        labels: dict[str, int] = {}
        for label in axis.categories:
            labels.setdefault(label, len(labels) + 1)
        for s in series:
            if not s.drawn:
                continue
            for pos, triple in s.rows:
                raw = pos if s.curve.position_axis == axis.name else triple.value
                labels.setdefault(category_text(raw), len(labels) + 1)
        return labels

    @staticmethod
    def _offsets(axis: Axis, series: list[_Series]) -> tuple[int, dict[int, int]]:
        """(group width, id(series) -> offset) for bar groups along *axis*."""
        if not (axis.offset and axis.is_category):
            return 1, {}
        members = [
            s for s in series
            if s.drawn
            and s.curve.style.is_bar
            and s.curve.position_axis == axis.name
            and not s.curve.has("nogroup")
        ]
        n = len(members)
        base = n // 2
        return n + GROUP_PADDING, {id(s): i - base for i, s in enumerate(members)}

    # ── Placement ────────────────────────────────────────────────

    def _coordinate(
        self,
        graph: Graph,
        axis_name: str,
        raw: Any,
        s: _Series,
        categories: dict[str, dict[str, int] | None],
        offsets: dict[str, tuple[int, dict[int, int]]],
    ) -> float:
        cats = categories[axis_name]
        if cats is not None:
            pos = cats.get(category_text(raw))
            if pos is None:
                # only hidden (skip) curves see categories that were not mapped
                return 0.0
            gw, by_series = offsets[axis_name]
            return float(pos * gw + by_series.get(id(s), 0))
        number = _number(raw)
        if number is None:
            raise GraphError(
                f"graph {graph.title or '(untitled)'}: curve {s.data.label!r} has "
                f"non-numeric value {raw!r} on numeric {axis_name} axis"
            )
        return float(number)

    def _place(self, graph, s: _Series, categories, offsets) -> list[_Point]:
        pos_axis = s.curve.position_axis
        value_axis = s.curve.value_axis
        numeric_value = categories[value_axis] is None
        points = []
        for pos, triple in s.rows:
            p = _Point(key=position_key(pos), numeric=numeric_value)
            p.coord[pos_axis] = self._coordinate(graph, pos_axis, pos, s, categories, offsets)
            p.coord[value_axis] = self._coordinate(graph, value_axis, triple.value, s, categories, offsets)
            p.raw[pos_axis] = pos
            p.raw[value_axis] = triple.value
            p.value_axis = value_axis
            if numeric_value:
                p.low = _number(triple.low)
                p.high = _number(triple.high)
            points.append(p)
        return points

    # ── Normalization, accumulation, stacking ─────────────────────

    def _normalize(self, graph: Graph, series: list[_Series], placed: list[list[_Point]]) -> None:
        by_bench: dict[int, list[int]] = {}
        for i, s in enumerate(series):
            by_bench.setdefault(s.bench_index, []).append(i)

        for bench_index, indices in by_bench.items():
            base_curves = {id(series[i].curve): series[i].curve for i in indices
                           if series[i].curve.has("base")}
            if len(base_curves) > 1:
                raise GraphError(
                    f"bench {series[indices[0]].bench_name}: more than one curve has option 'base'"
                )
            if not base_curves:
                logger.warning(
                    "normalize: bench %s has no curve with option 'base', values left as they are",
                    series[indices[0]].bench_name,
                )
                continue
            base_index = next(i for i in indices if series[i].curve.has("base") and series[i].first_of_curve)
            divisors: dict[Any, float] = {}
            for p in placed[base_index]:
                if p.numeric:
                    divisors.setdefault(p.key, p.coord[p.value_axis])

            for i in indices:
                if series[i].curve.has("base"):
                    continue
                for p in placed[i]:
                    if not p.numeric:
                        continue
                    divisor = divisors.get(p.key)
                    if not divisor:
                        fallback = graph.axis(p.value_axis).base
                        p.coord[p.value_axis] = fallback
                        p.low = p.high = None
                        continue
                    p.coord[p.value_axis] /= divisor
                    if p.low is not None:
                        p.low /= divisor
                    if p.high is not None:
                        p.high /= divisor

    @staticmethod
    def _accumulate(s: _Series, points: list[_Point]) -> None:
        total = 0.0
        for p in points:
            if not p.numeric:
                continue
            p.shift(total)
            total = p.coord[p.value_axis]

    @staticmethod
    def _stack(graph: Graph, series: list[_Series], placed: list[list[_Point]]) -> None:
        sums: dict[tuple[int, str, Any], float] = {}
        for s, points in zip(series, placed):
            if not s.drawn or s.curve.has("no_stack"):
                continue
            for p in points:
                if not p.numeric:
                    continue
                k = (s.bench_index, s.curve.position_axis, p.key)
                p.shift(sums.get(k, 0.0))
                sums[k] = p.coord[p.value_axis]


@dataclass(eq=False)
class _Point:
    """Mutable point while adjustments are applied."""
    key: Any
    numeric: bool
    value_axis: str = "y"
    raw: dict[str, Any] = field(default_factory=dict)
    coord: dict[str, float] = field(default_factory=dict)
    low: float | None = None
    high: float | None = None

    def shift(self, amount: float) -> None:
        self.coord[self.value_axis] += amount
        if self.low is not None:
            self.low += amount
        if self.high is not None:
            self.high += amount

    def freeze(self, curve_id: int) -> GeometryPoint:
        return GeometryPoint(
            curve_id=curve_id,
            raw_x=self.raw["x"],
            raw_y=self.raw["y"],
            x=self.coord["x"],
            y=self.coord["y"],
            low=self.low,
            high=self.high,
        )


def layout(bound: BoundGraph, confidence: float = DEFAULT_CONFIDENCE) -> GraphGeometry:
    return GeometryEngine(confidence).layout(bound)
