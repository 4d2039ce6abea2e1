"""Gnuplot script renderer.

The script is self-contained: every curve's points go into an inline data
block (``$G1C1 << EOD``) and one ``plot`` command draws them with the
curve's style, line, mark and color payloads.
"""

from __future__ import annotations

from benchgraph.describe.kinds import ScaleKind, StyleKind, payload
from benchgraph.geometry.model import AxisGeometry, CurveGeometry, GeometryModel, GraphGeometry
from benchgraph.render.rawdata import format_value

BAR_WIDTH = 0.8


def quote(text: str) -> str:
    return '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'


def _axis_lines(axis: AxisGeometry) -> list[str]:
    n = axis.name
    lines = []
    if axis.label:
        lines.append(f"set {n}label {quote(axis.label)}")
    scale = payload(axis.scale)
    if axis.scale is not ScaleKind.LINEAR and scale:
        lines.append(f"set logscale {n} {scale}")
    if axis.min is not None or axis.max is not None:
        lo = format_value(axis.min) if axis.min is not None else "*"
        hi = format_value(axis.max) if axis.max is not None else "*"
        lines.append(f"set {n}range [{lo}:{hi}]")
    if axis.is_category:
        tics = ", ".join(f"{quote(label)} {format_value(pos)}" for pos, label in axis.ticks)
        lines.append(f"set {n}tics ({tics})")
    return lines


def _data_name(graph_index: int, curve: CurveGeometry) -> str:
    return f"$G{graph_index}C{curve.curve_id}"


def _data_block(name: str, curve: CurveGeometry, errorbars: bool) -> list[str]:
    lines = [f"{name} << EOD"]
    for p in curve.points:
        row = [format_value(p.x), format_value(p.y)]
        if errorbars and p.low is not None and p.high is not None:
            row += [format_value(p.low), format_value(p.high)]
        lines.append(" ".join(row))
    lines.append("EOD")
    return lines


def _has_errors(curve: CurveGeometry) -> bool:
    return any(p.low is not None and p.high is not None for p in curve.points)


def _plot_spec(name: str, curve: CurveGeometry, errorbars: bool) -> str:
    errors = errorbars and _has_errors(curve)
    half = BAR_WIDTH / 2
    if curve.style is StyleKind.HBARS:
        using = f"using (0):2:(0):1:($2-{half}):($2+{half})"
        with_ = "boxxyerror"
    elif curve.style is StyleKind.BARS:
        using = "using 1:2:3:4" if errors else "using 1:2"
        with_ = "boxerrorbars" if errors else "boxes"
    else:
        using = "using 1:2:3:4" if errors else "using 1:2"
        with_ = {
            StyleKind.LINES: "yerrorlines" if errors else "lines",
            StyleKind.POINTS: "yerrorbars" if errors else "points",
            StyleKind.LINESPOINTS: "yerrorlines" if errors else "linespoints",
        }[curve.style]
    parts = [name, using, "with", with_, "title", quote(curve.label)]
    for kind in (curve.line, curve.mark, curve.color):
        text = payload(kind)
        if text:
            parts.append(text)
    return " ".join(parts)


def graph_script(graph: GraphGeometry, graph_index: int = 1) -> list[str]:
    lines = [f"# graph {graph_index}"]
    if graph.title:
        lines.append(f"set title {quote(graph.title)}")
    else:
        lines.append("unset title")
    lines += _axis_lines(graph.x)
    lines += _axis_lines(graph.y)
    legend = graph.legend.strip()
    if legend.lower() == "off":
        lines.append("unset key")
    elif legend:
        lines.append(f"set key {legend}")
    if graph.grid:
        lines.append("set grid")
    if any(c.style.is_bar for c in graph.curves):
        lines.append(f"set boxwidth {BAR_WIDTH} absolute")
        lines.append("set style fill solid 0.5 border")

    specs = []
    for curve in graph.curves:
        name = _data_name(graph_index, curve)
        lines += _data_block(name, curve, graph.errorbars)
        specs.append(_plot_spec(name, curve, graph.errorbars))
    if specs:
        lines.append("plot " + ", \\\n     ".join(specs))
    return lines


def render(model: GeometryModel) -> str:
    lines = ["# generated by benchgraph", "reset"]
    if model.source:
        lines[0] += f" from {model.source}"
    multiplot = len(model.graphs) > 1
    if multiplot:
        lines.append(f"set multiplot layout {len(model.graphs)},1")
    for i, graph in enumerate(model.graphs, start=1):
        lines += graph_script(graph, i)
    if multiplot:
        lines.append("unset multiplot")
    return "\n".join(lines) + "\n"
