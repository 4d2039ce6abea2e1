"""Parse -> bind -> lay out -> render.

:func:`evaluate` runs one description against a store and returns the
geometry model; :func:`render` formats it. Each call gets its own
:class:`EvaluationContext`, so nothing leaks between descriptions.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Mapping

from benchgraph.describe.binder import Binder
from benchgraph.describe.context import EvaluationContext
from benchgraph.describe.parser import Description, parse_file, parse_text
from benchgraph.describe.tree import build_graphs
from benchgraph.errors import BenchGraphError
from benchgraph.geometry.aggregate import DEFAULT_CONFIDENCE
from benchgraph.geometry.engine import GeometryEngine
from benchgraph.geometry.model import GeometryModel
from benchgraph.render import gnuplot, rawdata, xmlplot
from benchgraph.store.benchstore import BenchmarkStore

logger = logging.getLogger(__name__)

RENDERERS: dict[str, Callable[[GeometryModel], str]] = {
    "data": rawdata.render,
    "xml": xmlplot.render,
    "gnuplot": gnuplot.render,
}


def evaluate(
    description: Description | str | Path,
    store: BenchmarkStore,
    overrides: Mapping[str, str] | None = None,
    *,
    environ: Mapping[str, str] | None = None,
    separator: str = ":",
    confidence: float = DEFAULT_CONFIDENCE,
) -> GeometryModel:
    """Evaluate *description* (parsed, or a file path) against *store*.

    *overrides* take precedence over the OS environment and the file's
    ``env`` defaults. A ``separator`` item in ``[global]`` wins over
    *separator*. *confidence* is used by graphs that set none.
    """
    desc = description if isinstance(description, Description) else parse_file(description)
    ctx = EvaluationContext(overrides, environ)
    graphs = build_graphs(desc, ctx)
    binder = Binder(store, ctx)
    engine = GeometryEngine(confidence)
    model = GeometryModel(
        separator=ctx.settings.get("separator") or separator,
        source=desc.source,
    )
    for graph in graphs:
        model.graphs.append(engine.layout(binder.bind(graph)))
    logger.info("Evaluated %s: %d graph(s)", desc.source, len(model.graphs))
    return model


def evaluate_text(
    text: str,
    store: BenchmarkStore,
    overrides: Mapping[str, str] | None = None,
    *,
    source: str = "<description>",
    base_dir: str | Path | None = None,
    allow_include: bool = True,
    **kwargs,
) -> GeometryModel:
    return evaluate(parse_text(text, source, base_dir, allow_include), store, overrides, **kwargs)


def render(model: GeometryModel, fmt: str = "data") -> str:
    renderer = RENDERERS.get(fmt)
    if renderer is None:
        raise BenchGraphError(f"unknown output format {fmt!r} (known: {', '.join(RENDERERS)})")
    return renderer(model)
