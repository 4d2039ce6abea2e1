"""Graph-description parser.

A description is a sequence of sections::

    [global]
    env: SCALE = 1024
    calc: MB = %SCALE * %SCALE

    [graph]
    title: IOR bandwidth
    xtype: numeric
    ytype: numeric

    [bench]
    name: IOR
    filter: $OPERATION == "read"

    [curve]
    xval: $NODES
    yval: $BANDWIDTH / @MB
    aggr: avg

Lines ending in ``\\`` continue on the next line. ``#`` and ``;`` start
comment lines. ``include "other.desc"`` splices another file in place
(relative paths resolve against the including file). ``[end]`` stops
parsing. Items before the first header belong to ``[global]``.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator

from benchgraph.describe.kinds import StyleKind
from benchgraph.errors import DescriptionError, DescriptionSyntaxError
from benchgraph.geometry.aggregate import AGGREGATIONS

logger = logging.getLogger(__name__)

SECTION_KINDS = ("global", "graph", "bench", "curve", "end")

_HEADER = re.compile(r"^\[\s*([A-Za-z_]+)\s*\]$")
_ITEM = re.compile(r"^([A-Za-z_][A-Za-z0-9_]*)\s*:\s*(.*)$", re.DOTALL)
_INCLUDE = re.compile(r"""^include\s*:?\s*(?:"([^"]+)"|'([^']+)')\s*$""", re.IGNORECASE)
_ASSIGN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*\s*=")
_FUNCTION = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*\s*\([^)]*\)\s*=\s*\S")
_COLUMN_LIST = re.compile(r"^\$\{?[^\s,{}$]+\}?$")


# ── Syntax checks (return an error message or None) ─────────────

def _one_of(*allowed: str) -> Callable[[str], str | None]:
    def check(value: str) -> str | None:
        if value.strip().lower() not in allowed:
            return f"must be one of {', '.join(allowed)}"
        return None
    return check


def _flags(*allowed: str) -> Callable[[str], str | None]:
    def check(value: str) -> str | None:
        bad = [f for f in split_list(value) if f.lower() not in allowed]
        if bad:
            return f"unknown option {bad[0]!r} (allowed: {', '.join(allowed)})"
        return None
    return check


def _number(value: str) -> str | None:
    try:
        float(value)
    except ValueError:
        return "must be a number"
    return None


def _positive_int(value: str) -> str | None:
    if not value.strip().isdigit() or int(value) < 1:
        return "must be a positive integer"
    return None


def _fraction(value: str) -> str | None:
    if _number(value) or not 0.0 < float(value) < 1.0:
        return "must be a number between 0 and 1"
    return None


def _assignment(value: str) -> str | None:
    if not _ASSIGN.match(value):
        return "must have the form NAME = value"
    return None


def _function(value: str) -> str | None:
    if not _FUNCTION.match(value):
        return "must have the form name(arg, ...) = expression"
    return None


def _definition(value: str) -> str | None:
    if not split_list(value, ","):
        return "must have the form name, display text, payload"
    return None


def _columns(value: str) -> str | None:
    items = split_list(value)
    if not items or not all(_COLUMN_LIST.match(i) for i in items):
        return "must be a list of column references ($NAME)"
    return None


def split_list(value: str, sep: str | None = None) -> list[str]:
    """Split a comma and/or whitespace separated list."""
    if sep is None:
        return [p for p in re.split(r"[\s,]+", value.strip()) if p]
    return [p.strip() for p in value.split(sep) if p.strip()]


@dataclass(frozen=True)
class KeySpec:
    multiple: bool = False
    check: Callable[[str], str | None] | None = None


_AXIS_TYPE = _one_of("numeric", "category")
_AGGR = _one_of(*AGGREGATIONS)

SECTION_KEYS: dict[str, dict[str, KeySpec]] = {
    "global": {
        "env": KeySpec(True, _assignment),
        "calc": KeySpec(True, _assignment),
        "function": KeySpec(True, _function),
        "define_line": KeySpec(True, _definition),
        "define_mark": KeySpec(True, _definition),
        "define_color": KeySpec(True, _definition),
        "define_scale": KeySpec(True, _definition),
        "separator": KeySpec(),
    },
    "graph": {
        "title": KeySpec(),
        "xlabel": KeySpec(),
        "ylabel": KeySpec(),
        "xtype": KeySpec(check=_AXIS_TYPE),
        "ytype": KeySpec(check=_AXIS_TYPE),
        "xscale": KeySpec(),
        "yscale": KeySpec(),
        "xcategory": KeySpec(),
        "ycategory": KeySpec(),
        "xskip": KeySpec(check=_positive_int),
        "yskip": KeySpec(check=_positive_int),
        "xmin": KeySpec(check=_number),
        "xmax": KeySpec(check=_number),
        "ymin": KeySpec(check=_number),
        "ymax": KeySpec(check=_number),
        "xbase": KeySpec(check=_number),
        "ybase": KeySpec(check=_number),
        "legend": KeySpec(),
        "aggr": KeySpec(check=_AGGR),
        "confidence": KeySpec(check=_fraction),
        "options": KeySpec(True, _flags(
            "xoffset", "yoffset", "stack", "normalize", "grid", "errorbars")),
    },
    "bench": {
        "name": KeySpec(),
        "label": KeySpec(),
        "filter": KeySpec(True),
        "sql": KeySpec(True),
        "options": KeySpec(True, _flags("outliers")),
    },
    "curve": {
        "xval": KeySpec(),
        "yval": KeySpec(),
        "label": KeySpec(),
        "marktext": KeySpec(),
        "filter": KeySpec(True),
        "sql": KeySpec(True),
        "aggr": KeySpec(check=_AGGR),
        "style": KeySpec(check=_one_of(*(s.value for s in StyleKind))),
        "line": KeySpec(),
        "mark": KeySpec(),
        "color": KeySpec(),
        "iterate": KeySpec(check=_columns),
        "options": KeySpec(True, _flags(
            "base", "no_stack", "accum", "skip", "nogroup", "outliers")),
    },
}


# ── Parse tree ───────────────────────────────────────────────────

@dataclass
class Item:
    key: str
    value: str
    line: int
    source: str


@dataclass
class Section:
    kind: str
    line: int
    source: str
    items: list[Item] = field(default_factory=list)

    def get(self, key: str) -> Item | None:
        for item in self.items:
            if item.key == key:
                return item
        return None

    def value(self, key: str, default: str | None = None) -> str | None:
        item = self.get(key)
        return item.value if item is not None else default

    def all(self, key: str) -> list[Item]:
        return [i for i in self.items if i.key == key]

    def flags(self) -> set[str]:
        return {f.lower() for item in self.all("options") for f in split_list(item.value)}

    def error(self, message: str, item: Item | None = None) -> DescriptionError:
        where = item or self
        return DescriptionError(message, where.line, where.source)


@dataclass
class Description:
    source: str
    sections: list[Section] = field(default_factory=list)

    def of_kind(self, kind: str) -> list[Section]:
        return [s for s in self.sections if s.kind == kind]


# ── Line reading ─────────────────────────────────────────────────

@dataclass(frozen=True)
class _Line:
    text: str
    line: int
    source: str


def _physical_lines(
    text: str, source: str, base_dir: Path, stack: tuple[str, ...], allow_include: bool = True
) -> Iterator[_Line]:
    for number, raw in enumerate(text.splitlines(), start=1):
        m = _INCLUDE.match(raw.strip())
        if m is None:
            yield _Line(raw.rstrip("\r"), number, source)
            continue
        if not allow_include:
            raise DescriptionSyntaxError("include is not allowed here", number, source)
        target = Path(m.group(1) or m.group(2)).expanduser()
        if not target.is_absolute():
            target = base_dir / target
        target = target.resolve()
        if str(target) in stack:
            raise DescriptionSyntaxError(f"recursive include of {target}", number, source)
        try:
            included = target.read_text(encoding="utf-8")
        except OSError as e:
            raise DescriptionSyntaxError(
                f"cannot include {target}: {e.strerror or e}", number, source
            ) from None
        logger.debug("Including %s from %s:%d", target, source, number)
        yield from _physical_lines(included, str(target), target.parent, stack + (str(target),))


def _logical_lines(lines: Iterator[_Line]) -> Iterator[_Line]:
    pending: list[str] = []
    first: _Line | None = None
    for ln in lines:
        stripped = ln.text.strip()
        if not pending and (not stripped or stripped[0] in "#;"):
            continue
        if first is None:
            first = ln
        if stripped.endswith("\\"):
            pending.append(stripped[:-1].strip())
            continue
        pending.append(stripped)
        yield _Line(" ".join(p for p in pending if p), first.line, first.source)
        pending = []
        first = None
    if pending and first is not None:
        yield _Line(" ".join(p for p in pending if p), first.line, first.source)


# ── Entry points ─────────────────────────────────────────────────

def parse_text(
    text: str,
    source: str = "<description>",
    base_dir: str | Path | None = None,
    allow_include: bool = True,
) -> Description:
    """Parse description *text*. Includes resolve against *base_dir* (default: cwd).

    With *allow_include* false an ``include`` line is a syntax error.
    """
    base = Path(base_dir) if base_dir is not None else Path.cwd()
    stack = (str(Path(source).resolve()),) if source and not source.startswith("<") else ()
    lines = _logical_lines(_physical_lines(text, source, base, stack, allow_include))
    return _parse_lines(lines, source)


def parse_file(path: str | Path) -> Description:
    p = Path(path)
    try:
        text = p.read_text(encoding="utf-8")
    except OSError as e:
        raise DescriptionError(f"cannot read description {p}: {e.strerror or e}") from None
    return parse_text(text, str(p), p.resolve().parent)


def _parse_lines(lines: Iterator[_Line], source: str) -> Description:
    desc = Description(source)
    current: Section | None = None

    for ln in lines:
        header = _HEADER.match(ln.text)
        if header is not None:
            kind = header.group(1).lower()
            if kind not in SECTION_KINDS:
                raise DescriptionSyntaxError(f"unknown section [{kind}]", ln.line, ln.source)
            if kind == "end":
                break
            current = Section(kind, ln.line, ln.source)
            desc.sections.append(current)
            continue

        item = _ITEM.match(ln.text)
        if item is None:
            raise DescriptionSyntaxError(f"malformed line {ln.text!r}", ln.line, ln.source)
        if current is None:
            current = Section("global", ln.line, ln.source)
            desc.sections.append(current)

        key, value = item.group(1).lower(), item.group(2).strip()
        specs = SECTION_KEYS[current.kind]
        spec = specs.get(key)
        if spec is None:
            raise DescriptionSyntaxError(
                f"unknown key {key!r} in [{current.kind}]", ln.line, ln.source
            )
        if not spec.multiple and current.get(key) is not None:
            raise DescriptionSyntaxError(
                f"duplicate key {key!r} in [{current.kind}]", ln.line, ln.source
            )
        if spec.check is not None:
            problem = spec.check(value)
            if problem:
                raise DescriptionSyntaxError(f"{key}: {problem}", ln.line, ln.source)
        current.items.append(Item(key, value, ln.line, ln.source))

    logger.debug("Parsed %d sections from %s", len(desc.sections), source)
    return desc
