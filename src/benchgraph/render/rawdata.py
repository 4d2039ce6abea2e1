"""Delimited raw data: one line per plotted point.

Each line holds ``curve:rawx:rawy:plotx:ploty`` and, when the graph shows
error bars, ``:low:high``. Graphs are separated by an empty line.
"""

from __future__ import annotations

import math
from typing import Any

from benchgraph.geometry.model import GeometryModel, GeometryPoint, GraphGeometry


def format_value(value: Any) -> str:
    """Text for a raw or plotted value; integral floats print without ``.0``."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return str(int(value))
    if isinstance(value, float):
        if math.isfinite(value) and value.is_integer():
            return str(int(value))
        return repr(value)
    return str(value)


def point_line(point: GeometryPoint, separator: str = ":", errorbars: bool = False) -> str:
    fields = [
        str(point.curve_id),
        format_value(point.raw_x),
        format_value(point.raw_y),
        format_value(point.x),
        format_value(point.y),
    ]
    if errorbars and point.low is not None and point.high is not None:
        fields += [format_value(point.low), format_value(point.high)]
    return separator.join(fields)


def graph_lines(graph: GraphGeometry, separator: str = ":") -> list[str]:
    return [point_line(p, separator, graph.errorbars) for p in graph.points()]


def render(model: GeometryModel, separator: str | None = None) -> str:
    sep = separator if separator is not None else model.separator
    blocks = ["\n".join(graph_lines(g, sep)) for g in model.graphs]
    text = "\n\n".join(blocks)
    return text + "\n" if text else ""
