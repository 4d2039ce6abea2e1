"""XML plot document.

::

    <plots source="...">
      <graphset>
        <graph title="..." legend="..." errorbars="0" grid="0">
          <axis name="x" label="..." type="category" scale="linear" ...>
            <category position="5" label="read"/>
          </axis>
          <axis name="y" .../>
          <curve id="1" label="..." bench="IOR" style="bars" ...>
            <point rawx="read" rawy="100" x="5" y="100" low=".." high=".."/>
          </curve>
        </graph>
      </graphset>
    </plots>
"""

from __future__ import annotations

import xml.etree.ElementTree as ET

from benchgraph.describe.kinds import display_text, kind_name
from benchgraph.geometry.model import AxisGeometry, CurveGeometry, GeometryModel, GraphGeometry
from benchgraph.render.rawdata import format_value


def _flag(value: bool) -> str:
    return "1" if value else "0"


def _axis_element(parent: ET.Element, axis: AxisGeometry) -> ET.Element:
    el = ET.SubElement(parent, "axis", {
        "name": axis.name,
        "label": axis.label,
        "type": axis.type,
        "scale": kind_name(axis.scale),
        "base": format_value(axis.base),
    })
    if axis.min is not None:
        el.set("min", format_value(axis.min))
    if axis.max is not None:
        el.set("max", format_value(axis.max))
    if axis.is_category:
        el.set("groupwidth", str(axis.group_width))
        for position, label in axis.ticks:
            ET.SubElement(el, "category", {"position": format_value(position), "label": label})
    return el


def _curve_element(parent: ET.Element, curve: CurveGeometry, errorbars: bool) -> ET.Element:
    el = ET.SubElement(parent, "curve", {
        "id": str(curve.curve_id),
        "label": curve.label,
        "bench": curve.bench,
        "style": curve.style.value,
        "line": kind_name(curve.line),
        "mark": kind_name(curve.mark),
        "color": kind_name(curve.color),
        "colortext": display_text(curve.color),
        "valueaxis": curve.value_axis,
    })
    if curve.marktext:
        el.set("marktext", curve.marktext)
    for p in curve.points:
        attrs = {
            "rawx": format_value(p.raw_x),
            "rawy": format_value(p.raw_y),
            "x": format_value(p.x),
            "y": format_value(p.y),
        }
        if errorbars and p.low is not None and p.high is not None:
            attrs["low"] = format_value(p.low)
            attrs["high"] = format_value(p.high)
        ET.SubElement(el, "point", attrs)
    return el


def graph_element(parent: ET.Element, graph: GraphGeometry) -> ET.Element:
    el = ET.SubElement(parent, "graph", {
        "title": graph.title,
        "legend": graph.legend,
        "errorbars": _flag(graph.errorbars),
        "grid": _flag(graph.grid),
    })
    _axis_element(el, graph.x)
    _axis_element(el, graph.y)
    for curve in graph.curves:
        _curve_element(el, curve, graph.errorbars)
    return el


def build_tree(model: GeometryModel) -> ET.Element:
    root = ET.Element("plots")
    if model.source:
        root.set("source", model.source)
    graphset = ET.SubElement(root, "graphset")
    for graph in model.graphs:
        graph_element(graphset, graph)
    return root


def render(model: GeometryModel) -> str:
    root = build_tree(model)
    ET.indent(root)
    return '<?xml version="1.0" encoding="UTF-8"?>\n' + ET.tostring(root, encoding="unicode") + "\n"
