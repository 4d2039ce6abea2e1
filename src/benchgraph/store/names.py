"""Name canonicalization, experiment identity encoding and wide-table naming."""

from __future__ import annotations

import math
import re
from typing import Any, Sequence
from urllib.parse import quote

from benchgraph.errors import SchemaError

_NON_NAME = re.compile(r"[^A-Z0-9]+")

# Fixed wide-table columns (no underscore prefix, cannot clash with fields)
BENCH_COLUMN = "BENCH"
EXP_COLUMN = "EXP"
OUTLIER_COLUMN = "OUT"

IDENTITY_SEPARATOR = ","


def canonical_name(name: str) -> str:
    """Fold *name* to the restricted upper-case character set.

    ``"bytes-per sec"`` and ``"Bytes_Per_Sec"`` both become ``BYTES_PER_SEC``.
    """
    if not isinstance(name, str):
        raise SchemaError(f"name must be a string, got {type(name).__name__}")
    folded = _NON_NAME.sub("_", name.strip().upper()).strip("_")
    if not folded:
        raise SchemaError(f"invalid name {name!r}: no usable characters")
    if not folded[0].isalpha():
        raise SchemaError(f"invalid name {name!r}: must start with a letter")
    return folded


def view_table(bench_name: str) -> str:
    return f"{bench_name}_VIEW"


def field_column(field_name: str) -> str:
    return f"_{field_name}"


def index_name(bench_name: str, index_id: int) -> str:
    return f"{view_table(bench_name)}_IDX_{index_id}"


def normalize_number(value: Any) -> float | int | None:
    """Parse *value* as a number; integral values come back as ``int``.

    Returns None for None and empty strings. Raises ValueError otherwise.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = str(value).strip()
        if not text:
            return None
        number = float(text)
    if math.isfinite(number) and number == int(number) and abs(number) < 2**63:
        return int(number)
    return number


def normalize_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def encode_identity(values: Sequence[Any]) -> str:
    """Encode ordered key values into one identity string.

    Each value is percent-escaped, so the separator never occurs inside a
    value and the encoding is reversible.
    """
    parts = []
    for v in values:
        if isinstance(v, float):
            v = repr(v)
        parts.append(quote(str(v), safe=""))
    return IDENTITY_SEPARATOR.join(parts)
