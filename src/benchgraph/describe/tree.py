"""Descriptor tree: Graph → BenchSelection → Curve.

Each node owns its children in a list; children reach their parent through
a weak reference, so the tree has no strong reference cycle.

:func:`build_graphs` turns a parsed :class:`Description` into graphs after
loading the ``[global]`` sections into the :class:`EvaluationContext`.
"""

from __future__ import annotations

import logging
import weakref
from dataclasses import dataclass, field
from typing import Any

from benchgraph.describe.context import EvaluationContext, split_assignment
from benchgraph.describe.expression import parse_template, render_template
from benchgraph.describe.kinds import AUTO, Kind, ScaleKind, StyleKind
from benchgraph.describe.parser import Description, Item, Section, split_list
from benchgraph.errors import (
    BenchGraphError,
    DescriptionError,
    DescriptionSyntaxError,
)

logger = logging.getLogger(__name__)

REQUIRED_KEYS = {
    "graph": ("xtype", "ytype"),
    "bench": ("name",),
    "curve": ("xval", "yval"),
}

DEFAULT_AGGREGATION = "none"
DEFAULT_STYLE = StyleKind.LINESPOINTS


@dataclass
class Axis:
    name: str
    type: str = "numeric"
    label: str = ""
    scale: Kind = ScaleKind.LINEAR
    categories: list[str] = field(default_factory=list)
    skip: int = 1
    min: float | None = None
    max: float | None = None
    base: float = 0.0
    offset: bool = False

    @property
    def is_category(self) -> bool:
        return self.type == "category"


class _Child:
    """Weak back-reference to the owning node."""

    _parent: Any = None

    def _set_parent(self, parent: Any) -> None:
        self._parent = weakref.ref(parent)

    @property
    def parent(self) -> Any:
        return self._parent() if self._parent is not None else None


@dataclass(eq=False)
class Curve(_Child):
    section: Section
    index: int
    xval: Item
    yval: Item
    label: Item | None = None
    marktext: Item | None = None
    filters: list[Item] = field(default_factory=list)
    sql: list[Item] = field(default_factory=list)
    aggr: str | None = None
    style: StyleKind = DEFAULT_STYLE
    line: Kind | None = None
    mark: Kind | None = None
    color: Kind | None = None
    iterate: list[str] = field(default_factory=list)
    flags: set[str] = field(default_factory=set)

    @property
    def bench(self) -> BenchSelection:
        return self.parent

    @property
    def aggregation(self) -> str:
        """Curve ``aggr`` overrides the graph's, default ``none``."""
        if self.aggr:
            return self.aggr
        graph = self.bench.graph if self.bench is not None else None
        if graph is not None and graph.aggr:
            return graph.aggr
        return DEFAULT_AGGREGATION

    @property
    def value_axis(self) -> str:
        return "x" if self.style is StyleKind.HBARS else "y"

    @property
    def position_axis(self) -> str:
        return "y" if self.style is StyleKind.HBARS else "x"

    def has(self, flag: str) -> bool:
        return flag in self.flags


@dataclass(eq=False)
class BenchSelection(_Child):
    section: Section
    index: int
    name: str
    name_item: Item
    label: str = ""
    filters: list[Item] = field(default_factory=list)
    sql: list[Item] = field(default_factory=list)
    include_outliers: bool = False
    curves: list[Curve] = field(default_factory=list)

    @property
    def graph(self) -> Graph:
        return self.parent

    def add_curve(self, curve: Curve) -> None:
        curve._set_parent(self)
        self.curves.append(curve)


@dataclass(eq=False)
class Graph:
    section: Section
    title: str = ""
    legend: str = ""
    aggr: str | None = None
    confidence: float | None = None
    flags: set[str] = field(default_factory=set)
    x: Axis = field(default_factory=lambda: Axis("x"))
    y: Axis = field(default_factory=lambda: Axis("y"))
    benches: list[BenchSelection] = field(default_factory=list)

    def add_bench(self, bench: BenchSelection) -> None:
        bench._set_parent(self)
        self.benches.append(bench)

    def axis(self, name: str) -> Axis:
        return self.x if name == "x" else self.y

    def has(self, flag: str) -> bool:
        return flag in self.flags

    @property
    def curves(self) -> list[Curve]:
        return [c for b in self.benches for c in b.curves]


# ── Building ─────────────────────────────────────────────────────

def _positioned(item: Item | Section, fn, *args):
    try:
        return fn(*args)
    except DescriptionError:
        raise
    except BenchGraphError as e:
        label = f"{item.key}: " if isinstance(item, Item) else ""
        raise DescriptionError(f"{label}{e}", item.line, item.source) from e


def load_globals(desc: Description, ctx: EvaluationContext) -> None:
    """Register env defaults, calculated variables, functions and kinds."""
    for section in desc.of_kind("global"):
        for item in section.items:
            if item.key == "env":
                name, value = _positioned(item, split_assignment, item.value)
                ctx.define_env(name, value)
            elif item.key == "calc":
                name, text = _positioned(item, split_assignment, item.value)
                ctx.define_calc(name, text)
            elif item.key == "function":
                _positioned(item, ctx.define_function, item.value)
            elif item.key.startswith("define_"):
                parts = [p.strip() for p in item.value.split(",", 2)]
                parts += [""] * (3 - len(parts))
                _positioned(item, ctx.kinds.define, item.key[len("define_"):], *parts)
            else:
                ctx.settings[item.key] = ctx.substitute_env(item.value)


def render_text(ctx: EvaluationContext, item: Item | None, default: str = "") -> str:
    """Render a graph/bench level text item (environment and calculated variables only)."""
    if item is None:
        return default

    def run() -> str:
        return render_template(parse_template(ctx.substitute_env(item.value)), ctx.row_scope())

    return _positioned(item, run)


def _require(section: Section) -> None:
    for key in REQUIRED_KEYS.get(section.kind, ()):
        if section.get(key) is None:
            raise DescriptionSyntaxError(
                f"[{section.kind}] is missing required key {key!r}",
                section.line, section.source,
            )


def _float(section: Section, key: str) -> float | None:
    value = section.value(key)
    return float(value) if value is not None else None


def _kind(ctx: EvaluationContext, section: Section, category: str, key: str, auto_index: int) -> Kind:
    item = section.get(key)
    if item is None or item.value.strip().lower() == AUTO:
        return ctx.kinds.auto(category, auto_index)
    return _positioned(item, ctx.kinds.resolve, category, ctx.substitute_env(item.value))


def _build_axis(ctx: EvaluationContext, section: Section, name: str) -> Axis:
    axis = Axis(name)
    axis.type = section.value(f"{name}type", "numeric").lower()
    axis.label = render_text(ctx, section.get(f"{name}label"))
    scale = section.get(f"{name}scale")
    if scale is not None:
        axis.scale = _positioned(scale, ctx.kinds.resolve, "scale", scale.value)
    categories = section.get(f"{name}category")
    if categories is not None:
        axis.categories = split_list(ctx.substitute_env(categories.value), ",")
    axis.skip = int(section.value(f"{name}skip", "1"))
    axis.min = _float(section, f"{name}min")
    axis.max = _float(section, f"{name}max")
    axis.base = _float(section, f"{name}base") or 0.0
    axis.offset = f"{name}offset" in section.flags()
    return axis


def _build_graph(ctx: EvaluationContext, section: Section) -> Graph:
    _require(section)
    graph = Graph(section)
    graph.title = render_text(ctx, section.get("title"))
    graph.legend = render_text(ctx, section.get("legend"))
    graph.aggr = section.value("aggr")
    graph.confidence = _float(section, "confidence")
    graph.flags = section.flags()
    graph.x = _build_axis(ctx, section, "x")
    graph.y = _build_axis(ctx, section, "y")
    return graph


def _build_bench(ctx: EvaluationContext, section: Section, index: int) -> BenchSelection:
    _require(section)
    name_item = section.get("name")
    name = ctx.substitute_env(name_item.value).strip()
    return BenchSelection(
        section=section,
        index=index,
        name=name,
        name_item=name_item,
        label=render_text(ctx, section.get("label"), name),
        filters=section.all("filter"),
        sql=section.all("sql"),
        include_outliers="outliers" in section.flags(),
    )


def _build_curve(ctx: EvaluationContext, section: Section, graph: Graph, index: int) -> Curve:
    _require(section)
    style_text = section.value("style")
    curve = Curve(
        section=section,
        index=index,
        xval=section.get("xval"),
        yval=section.get("yval"),
        label=section.get("label"),
        marktext=section.get("marktext"),
        filters=section.all("filter"),
        sql=section.all("sql"),
        aggr=section.value("aggr"),
        style=StyleKind(style_text.lower()) if style_text else DEFAULT_STYLE,
        line=_kind(ctx, section, "line", "line", index),
        mark=_kind(ctx, section, "mark", "mark", index),
        color=_kind(ctx, section, "color", "color", index),
        flags=section.flags(),
    )
    iterate = section.get("iterate")
    if iterate is not None:
        curve.iterate = [v.lstrip("$").strip("{}") for v in split_list(iterate.value)]
    if curve.has("accum") and graph.axis(curve.position_axis).is_category:
        item = next(i for i in section.all("options")
                    if "accum" in (f.lower() for f in split_list(i.value)))
        raise section.error("option 'accum' needs a numeric position axis", item)
    return curve


def build_graphs(desc: Description, ctx: EvaluationContext) -> list[Graph]:
    """Build the descriptor trees of every ``[graph]`` in *desc*."""
    load_globals(desc, ctx)
    graphs: list[Graph] = []
    graph: Graph | None = None
    bench: BenchSelection | None = None
    curve_index = 0

    for section in desc.sections:
        if section.kind == "global":
            continue
        if section.kind == "graph":
            graph = _build_graph(ctx, section)
            graphs.append(graph)
            bench = None
            curve_index = 0
        elif section.kind == "bench":
            if graph is None:
                raise DescriptionSyntaxError(
                    "[bench] must follow a [graph] section", section.line, section.source
                )
            bench = _build_bench(ctx, section, len(graph.benches))
            graph.add_bench(bench)
        elif section.kind == "curve":
            if bench is None:
                raise DescriptionSyntaxError(
                    "[curve] must follow a [bench] section", section.line, section.source
                )
            bench.add_curve(_build_curve(ctx, section, graph, curve_index))
            curve_index += 1

    for g in graphs:
        for b in g.benches:
            if not b.curves:
                raise DescriptionSyntaxError(
                    f"[bench] {b.name} has no [curve]", b.section.line, b.section.source
                )
    if not graphs:
        raise DescriptionError(f"{desc.source}: no [graph] section")
    logger.debug("Built %d graph(s) with %d curve(s)",
                 len(graphs), sum(len(g.curves) for g in graphs))
    return graphs
