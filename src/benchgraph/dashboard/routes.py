"""Dashboard API routes — register on an aiohttp app.

Read-only JSON over the store and the geometry engine:
  - GET  /api/benchmarks          benchmark list with experiment counts
  - GET  /api/benchmarks/{name}   fields, indices and counts of one benchmark
  - POST /api/geometry            evaluate a description (request body)
"""
from __future__ import annotations

import dataclasses
import json
import logging
from enum import Enum
from typing import Any

from aiohttp import web

from benchgraph import pipeline
from benchgraph.errors import BenchGraphError, DescriptionError, UnknownNameError
from benchgraph.store.benchstore import BenchmarkStore

logger = logging.getLogger(__name__)

STORE_KEY = web.AppKey("store", BenchmarkStore)


def _json_default(obj):
    if isinstance(obj, Enum):
        return obj.value
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return dataclasses.asdict(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def _dumps(obj):
    return json.dumps(obj, default=_json_default)


def _error(status: int, message: str) -> web.Response:
    return web.json_response({"error": message}, status=status)


def setup_dashboard(app: web.Application, store: BenchmarkStore) -> None:
    """Register dashboard routes on *app*."""
    app[STORE_KEY] = store
    app.router.add_get("/api/benchmarks", _api_benchmarks)
    app.router.add_get("/api/benchmarks/{name}", _api_benchmark)
    app.router.add_post("/api/geometry", _api_geometry)
    logger.info("Dashboard API enabled at /api")


def create_app(store: BenchmarkStore) -> web.Application:
    app = web.Application()
    setup_dashboard(app, store)
    return app


# ── Benchmarks ───────────────────────────────────────────────

async def _api_benchmarks(request: web.Request) -> web.Response:
    store = request.app[STORE_KEY]
    benches = []
    for b in store.list_benchmarks():
        benches.append({
            "name": b.name,
            "description": b.description,
            "experiments": store.count_experiments(b),
            "outliers": store.count_experiments(b) - store.count_experiments(b, include_outliers=False),
        })
    return web.json_response({"benchmarks": benches}, dumps=_dumps)


async def _api_benchmark(request: web.Request) -> web.Response:
    store = request.app[STORE_KEY]
    try:
        b = store.get_benchmark(request.match_info["name"])
    except UnknownNameError as e:
        return _error(404, str(e))
    except BenchGraphError as e:
        return _error(400, str(e))
    fields: list[dict[str, Any]] = [
        {
            "name": f.name,
            "numeric": f.numeric,
            "key": f.is_key,
            "position": f.position,
            "description": f.description,
        }
        for f in store.fields(b)
    ]
    indices = [{"name": i.name, "fields": list(i.fields)} for i in store.list_indices(b)]
    return web.json_response({
        "name": b.name,
        "description": b.description,
        "view": b.view,
        "fields": fields,
        "indices": indices,
        "experiments": store.count_experiments(b),
    }, dumps=_dumps)


# ── Geometry ─────────────────────────────────────────────────

async def _api_geometry(request: web.Request) -> web.Response:
    store = request.app[STORE_KEY]
    text = await request.text()
    if not text.strip():
        return _error(400, "empty description")
    overrides = {k: v for k, v in request.query.items()}
    try:
        # request text sees only its query overrides and may not read files
        model = pipeline.evaluate_text(
            text, store, overrides, source="<request>", allow_include=False, environ={},
        )
    except DescriptionError as e:
        return _error(400, str(e))
    except BenchGraphError as e:
        return _error(422, str(e))
    return web.json_response(dataclasses.asdict(model), dumps=_dumps)
