"""Aggregation functions: reduce one bucket of raw values to (value, low, high).

``none`` keeps every value (one triple per input); all others produce a
single triple. ``low``/``high`` carry the error range used for error bars:
min/max for ``avg`` and ``median``, the confidence interval for ``ci``,
and the value itself otherwise.
"""

from __future__ import annotations

import logging
import math
from typing import Any, Callable, NamedTuple, Sequence

import numpy as np
from scipy import stats

from benchgraph.errors import GraphError
from benchgraph.store.names import normalize_number

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE = 0.95


class Aggregate(NamedTuple):
    value: Any
    low: Any
    high: Any


def _flat(value: Any) -> Aggregate:
    return Aggregate(value, value, value)


def _try_numbers(values: Sequence[Any]) -> list[float | int] | None:
    numbers = []
    for v in values:
        try:
            n = normalize_number(v)
        except (TypeError, ValueError):
            return None
        if n is None:
            return None
        numbers.append(n)
    return numbers


def _numbers(name: str, values: Sequence[Any]) -> list[float | int]:
    numbers = _try_numbers(values)
    if numbers is None:
        raise GraphError(f"aggregation {name!r} needs numeric values, got {list(values)[:5]!r}")
    return numbers


def _clean(x: Any) -> Any:
    """numpy scalar -> plain Python number; integral floats become int."""
    if isinstance(x, np.generic):
        x = x.item()
    if isinstance(x, float) and math.isfinite(x) and x.is_integer():
        return int(x)
    return x


def _stdev(numbers: Sequence[float]) -> float:
    if len(numbers) < 2:
        return 0.0
    return float(np.std(np.asarray(numbers, dtype=float), ddof=1))


def confidence_half_width(numbers: Sequence[float], confidence: float = DEFAULT_CONFIDENCE) -> float:
    """Half width of the Student-t confidence interval of the mean (0 if undefined)."""
    n = len(numbers)
    if n < 2:
        return 0.0
    s = _stdev(numbers)
    t = stats.t.ppf((1.0 + confidence) / 2.0, n - 1)
    if not math.isfinite(t):
        return 0.0
    return float(t * s / math.sqrt(n))


# ── Aggregations ─────────────────────────────────────────────────

def agg_none(values, confidence):
    return [_flat(v) for v in values]


def agg_count(values, confidence):
    return [_flat(len(values))]


def agg_sum(values, confidence):
    return [_flat(_clean(sum(_numbers("sum", values))))]


def _extreme(values: Sequence[Any], pick: Callable) -> Any:
    numbers = _try_numbers(values)
    if numbers is not None:
        return pick(numbers)
    return pick(str(v) for v in values)


def agg_max(values, confidence):
    return [_flat(_extreme(values, max))]


def agg_min(values, confidence):
    return [_flat(_extreme(values, min))]


def agg_rng(values, confidence):
    numbers = _numbers("rng", values)
    return [_flat(_clean(max(numbers) - min(numbers)))]


def agg_avg(values, confidence):
    numbers = _numbers("avg", values)
    mean = float(np.mean(numbers))
    return [Aggregate(_clean(mean), min(numbers), max(numbers))]


def agg_median(values, confidence):
    numbers = _numbers("median", values)
    return [Aggregate(_clean(float(np.median(numbers))), min(numbers), max(numbers))]


def agg_stdev(values, confidence):
    return [_flat(_stdev(_numbers("stdev", values)))]


def agg_cv(values, confidence):
    numbers = _numbers("cv", values)
    mean = float(np.mean(numbers))
    if mean == 0:
        return [_flat(0.0)]
    return [_flat(_stdev(numbers) / mean)]


def _mean_ci(name: str, values: Sequence[Any], confidence: float) -> tuple[float, float]:
    numbers = _numbers(name, values)
    return float(np.mean(numbers)), confidence_half_width(numbers, confidence)


def agg_ci(values, confidence):
    mean, h = _mean_ci("ci", values, confidence)
    return [Aggregate(_clean(mean), mean - h, mean + h)]


def agg_ci_min(values, confidence):
    mean, h = _mean_ci("ci_min", values, confidence)
    return [_flat(mean - h)]


def agg_ci_max(values, confidence):
    mean, h = _mean_ci("ci_max", values, confidence)
    return [_flat(mean + h)]


def agg_delta(values, confidence):
    _, h = _mean_ci("delta", values, confidence)
    return [_flat(h)]


AGGREGATIONS: dict[str, Callable[[Sequence[Any], float], list[Aggregate]]] = {
    "none": agg_none,
    "count": agg_count,
    "sum": agg_sum,
    "max": agg_max,
    "min": agg_min,
    "rng": agg_rng,
    "avg": agg_avg,
    "median": agg_median,
    "stdev": agg_stdev,
    "cv": agg_cv,
    "ci": agg_ci,
    "ci_min": agg_ci_min,
    "ci_max": agg_ci_max,
    "delta": agg_delta,
}


def aggregate(name: str, values: Sequence[Any], confidence: float = DEFAULT_CONFIDENCE) -> list[Aggregate]:
    """Reduce *values* with aggregation *name*. An empty bucket gives no triples."""
    fn = AGGREGATIONS.get(name)
    if fn is None:
        raise GraphError(f"unknown aggregation {name!r}")
    if not values:
        return []
    return fn(values, confidence)
