"""Binder — run the queries behind a descriptor tree.

For every curve the binder

  1. checks that every column reference names a field of the benchmark,
  2. compiles bench and curve filters into one store predicate,
  3. expands ``iterate`` into the cartesian product of the distinct values
     of the listed fields (right-most field varies fastest),
  4. selects the matching rows (outliers excluded unless requested), and
  5. evaluates ``xval``/``yval`` per row into a :class:`CurveData`.

Labels and mark texts are rendered once per CurveData from its first row.
"""

from __future__ import annotations

import itertools
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Mapping

from benchgraph.describe.context import EvaluationContext, RowScope
from benchgraph.describe.expression import (
    Node,
    column_refs,
    compile_sql,
    evaluate,
    parse_expression,
    parse_template,
    render_template,
)
from benchgraph.describe.parser import Item
from benchgraph.describe.tree import BenchSelection, Curve, Graph
from benchgraph.errors import BenchGraphError, DescriptionError, UnresolvedReferenceError
from benchgraph.store.benchstore import Benchmark, BenchmarkStore, Field, Predicate
from benchgraph.store.names import canonical_name, field_column

logger = logging.getLogger(__name__)

_SQL_COLUMN = re.compile(r"\$\{([^}]*)\}|\$([A-Za-z_][A-Za-z0-9_]*)")


# ── Bound data ───────────────────────────────────────────────────

@dataclass(eq=False)
class CurveData:
    """Points of one concrete curve instance.

    ``by_x`` maps each x value to its y values and ``by_y`` the reverse, so
    aggregation can run along either axis.
    """
    curve: Curve
    instance: tuple[tuple[str, Any], ...] = ()
    label: str = ""
    marktext: str = ""
    rows: int = 0
    by_x: dict[Any, list[Any]] = field(default_factory=dict)
    by_y: dict[Any, list[Any]] = field(default_factory=dict)

    def add(self, x: Any, y: Any) -> None:
        self.by_x.setdefault(x, []).append(y)
        self.by_y.setdefault(y, []).append(x)
        self.rows += 1

    def buckets(self, position_axis: str) -> dict[Any, list[Any]]:
        return self.by_x if position_axis == "x" else self.by_y

    @property
    def empty(self) -> bool:
        return self.rows == 0


@dataclass(eq=False)
class BoundCurve:
    curve: Curve
    data: list[CurveData] = field(default_factory=list)


@dataclass(eq=False)
class BoundBench:
    selection: BenchSelection
    benchmark: Benchmark
    curves: list[BoundCurve] = field(default_factory=list)


@dataclass(eq=False)
class BoundGraph:
    graph: Graph
    benches: list[BoundBench] = field(default_factory=list)


# ── Scopes ───────────────────────────────────────────────────────

class _LabelScope(RowScope):
    """Row scope where fields absent from the row (no matching data) read as None."""

    def column(self, name: str) -> Any:
        return self.row.get(canonical_name(name))


def _raise_at(item: Item, e: BenchGraphError) -> DescriptionError:
    if isinstance(e, DescriptionError) and e.line is not None:
        return e
    cls = UnresolvedReferenceError if isinstance(e, UnresolvedReferenceError) else DescriptionError
    message = e.message if isinstance(e, DescriptionError) else str(e)
    return cls(f"{item.key}: {message}", item.line, item.source)


# ── Binder ───────────────────────────────────────────────────────

class Binder:
    def __init__(self, store: BenchmarkStore, ctx: EvaluationContext) -> None:
        self.store = store
        self.ctx = ctx

    def bind(self, graph: Graph) -> BoundGraph:
        bound = BoundGraph(graph)
        for selection in graph.benches:
            bound.benches.append(self.bind_bench(selection))
        return bound

    def bind_bench(self, selection: BenchSelection) -> BoundBench:
        item = selection.name_item
        try:
            benchmark = self.store.find_benchmark(selection.name)
        except BenchGraphError as e:
            raise _raise_at(item, e) from e
        if benchmark is None:
            raise UnresolvedReferenceError(
                f"unknown benchmark {selection.name!r}", item.line, item.source
            )
        fields = {f.name: f for f in self.store.fields(benchmark)}
        where = self._predicate(selection.filters, selection.sql, fields)
        bound = BoundBench(selection, benchmark)
        for curve in selection.curves:
            bound.curves.append(self.bind_curve(curve, benchmark, fields, where))
        return bound

    # ── Predicates ───────────────────────────────────────────────

    def _column_resolver(self, fields: Mapping[str, Field], item: Item):
        def resolve(name: str) -> str:
            try:
                cname = canonical_name(name)
            except BenchGraphError:
                cname = None
            if cname not in fields:
                raise UnresolvedReferenceError(
                    f"{item.key}: ${name} is not a field of this benchmark",
                    item.line, item.source,
                )
            return '"' + field_column(cname) + '"'
        return resolve

    def _predicate(self, filters: list[Item], sql: list[Item], fields: Mapping[str, Field]) -> Predicate:
        parts = []
        for item in filters:
            resolve = self._column_resolver(fields, item)
            try:
                node = parse_expression(self.ctx.substitute_env(item.value))
                text, params = compile_sql(node, resolve, lambda n: self.ctx.calc_value(n.name))
            except BenchGraphError as e:
                raise _raise_at(item, e) from e
            parts.append(Predicate(text, params))
        for item in sql:
            resolve = self._column_resolver(fields, item)
            try:
                raw = self.ctx.substitute_env(item.value)
            except BenchGraphError as e:
                raise _raise_at(item, e) from e
            text = _SQL_COLUMN.sub(lambda m: resolve((m.group(1) or m.group(2)).strip()), raw)
            parts.append(Predicate(text))
        return Predicate.all_of(parts)

    # ── Formulas ─────────────────────────────────────────────────

    def _formula(self, item: Item, fields: Mapping[str, Field]) -> Node:
        try:
            node = parse_expression(self.ctx.substitute_env(item.value))
        except BenchGraphError as e:
            raise _raise_at(item, e) from e
        self._check_columns(item, column_refs(node), fields)
        return node

    def _template(self, item: Item | None, fields: Mapping[str, Field]) -> list[Node] | None:
        if item is None:
            return None
        try:
            parts = parse_template(self.ctx.substitute_env(item.value), fields, _fold)
        except BenchGraphError as e:
            raise _raise_at(item, e) from e
        refs = [n for p in parts for n in column_refs(p)]
        self._check_columns(item, refs, fields)
        return parts

    def _check_columns(self, item: Item, names: list[str], fields: Mapping[str, Field]) -> None:
        resolve = self._column_resolver(fields, item)
        for name in names:
            resolve(name)

    # ── Curves ───────────────────────────────────────────────────

    def bind_curve(
        self,
        curve: Curve,
        benchmark: Benchmark,
        fields: Mapping[str, Field],
        bench_where: Predicate,
    ) -> BoundCurve:
        xnode = self._formula(curve.xval, fields)
        ynode = self._formula(curve.yval, fields)
        label = self._template(curve.label, fields)
        marktext = self._template(curve.marktext, fields)
        where = bench_where & self._predicate(curve.filters, curve.sql, fields)
        include_outliers = curve.bench.include_outliers or curve.has("outliers")

        iterate = []
        for name in curve.iterate:
            try:
                cname = canonical_name(name)
            except BenchGraphError:
                cname = name
            if cname not in fields:
                item = curve.section.get("iterate")
                raise UnresolvedReferenceError(
                    f"iterate: ${name} is not a field of {benchmark.name}",
                    item.line, item.source,
                )
            iterate.append(cname)

        if iterate:
            value_sets = [
                self.store.distinct_values(benchmark, n, where, include_outliers)
                for n in iterate
            ]
            combinations = list(itertools.product(*value_sets))
            if not combinations:
                logger.debug("iterate over %s matched no rows", ", ".join(iterate))
                combinations = [()]
                iterate = []
        else:
            combinations = [()]

        bound = BoundCurve(curve)
        for combo in combinations:
            instance = tuple(zip(iterate, combo))
            pred = where & Predicate.all_of(Predicate.equals(n, v) for n, v in instance)
            data = CurveData(curve, instance)
            first: dict[str, Any] | None = None
            for row in self.store.select(benchmark, pred, include_outliers=include_outliers):
                if first is None:
                    first = row
                scope = self.ctx.row_scope(row, allow_functions=True)
                x = self._evaluate(curve.xval, xnode, scope)
                y = self._evaluate(curve.yval, ynode, scope)
                if x is None or y is None:
                    continue
                data.add(x, y)
            self._finish_labels(data, curve, benchmark, fields, first, label, marktext)
            bound.data.append(data)
            logger.debug("Curve %d %s: %d rows", curve.index, data.label, data.rows)
        return bound

    def _evaluate(self, item: Item, node: Node, scope: RowScope) -> Any:
        try:
            return evaluate(node, scope)
        except BenchGraphError as e:
            raise _raise_at(item, e) from e

    def _finish_labels(
        self,
        data: CurveData,
        curve: Curve,
        benchmark: Benchmark,
        fields: Mapping[str, Field],
        first: dict[str, Any] | None,
        label: list[Node] | None,
        marktext: list[Node] | None,
    ) -> None:
        row = {name: None for name in fields}
        row.update(dict(data.instance))
        if first is not None:
            row.update(first)
        scope = _LabelScope(self.ctx, row, allow_functions=True)
        if label is not None:
            data.label = self._render(curve.label, label, scope)
        else:
            data.label = curve.bench.label or benchmark.name
            if data.instance:
                data.label += " " + " ".join(f"{n}={_text(v)}" for n, v in data.instance)
        if marktext is not None:
            data.marktext = self._render(curve.marktext, marktext, scope)

    def _render(self, item: Item, parts: list[Node], scope: RowScope) -> str:
        try:
            return render_template(parts, scope)
        except BenchGraphError as e:
            raise _raise_at(item, e) from e


def _fold(name: str) -> str:
    try:
        return canonical_name(name)
    except BenchGraphError:
        return ""


def _text(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)
