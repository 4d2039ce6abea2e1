"""EvaluationContext — variables, functions and kinds of one description run.

A context is built per description-file invocation and passed through
parsing, binding and rendering. Nothing here is process-global.

Environment variables are looked up in this order:

  1. explicit per-invocation overrides
  2. the process environment
  3. ``env:`` defaults from the description's ``[global]`` section
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from typing import Any, Mapping, Sequence

from benchgraph.describe.expression import (
    CalcRef,
    Node,
    Scope,
    evaluate,
    longest_known,
    parse_expression,
    walk,
)
from benchgraph.describe.kinds import KindRegistry
from benchgraph.errors import ExpressionError, UnresolvedReferenceError
from benchgraph.store.names import canonical_name

logger = logging.getLogger(__name__)

MAX_CALL_DEPTH = 64

_ENV_REF = re.compile(r"\\%|%\{([^}]*)\}|%([A-Za-z_][A-Za-z0-9_]*)")
_FUNCTION_DEF = re.compile(
    r"^\s*([A-Za-z_][A-Za-z0-9_]*)\s*\(\s*([^)]*)\)\s*=\s*(.+)$", re.DOTALL
)
_ASSIGNMENT = re.compile(r"^\s*([A-Za-z_][A-Za-z0-9_]*)\s*=\s*(.*)$", re.DOTALL)
_PARAM = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass(frozen=True)
class CalculatedVariable:
    name: str
    text: str


@dataclass(frozen=True)
class NamedFunction:
    name: str
    params: tuple[str, ...]
    text: str
    body: Node


def split_assignment(value: str) -> tuple[str, str]:
    """Split ``NAME = text`` (used by ``env:`` and ``calc:`` items)."""
    m = _ASSIGNMENT.match(value)
    if m is None:
        raise ExpressionError(f"expected 'NAME = value', got {value!r}")
    return m.group(1), m.group(2).strip()


class EvaluationContext:
    def __init__(
        self,
        overrides: Mapping[str, str] | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.overrides: dict[str, str] = dict(overrides or {})
        self.environ: Mapping[str, str] = os.environ if environ is None else environ
        self.defaults: dict[str, str] = {}
        self.calculated: dict[str, CalculatedVariable] = {}
        self.functions: dict[str, NamedFunction] = {}
        self.kinds = KindRegistry()
        self.settings: dict[str, str] = {}
        self._depth = 0

    # ── Environment variables ────────────────────────────────────

    def define_env(self, name: str, value: str) -> None:
        """Register a file-scoped default (lowest precedence)."""
        self.defaults[name] = value

    def lookup_env(self, name: str) -> str | None:
        for namespace in (self.overrides, self.environ, self.defaults):
            if name in namespace:
                return namespace[name]
        return None

    def _env_known(self, name: str) -> bool:
        return any(name in ns for ns in (self.overrides, self.environ, self.defaults))

    def substitute_env(self, text: str) -> str:
        """Replace ``%NAME`` and ``%{NAME}`` with environment values.

        A bare name resolves to its longest defined prefix; a bare name with
        no defined prefix stays as written (so printf formats like ``%d``
        survive). An undefined braced name is an error. ``\\%`` is a literal
        percent sign.
        """
        out: list[str] = []
        pos = 0
        for m in _ENV_REF.finditer(text):
            out.append(text[pos:m.start()])
            pos = m.end()
            if m.group() == "\\%":
                out.append("%")
            elif m.group(1) is not None:
                name = m.group(1).strip()
                value = self.lookup_env(name)
                if value is None:
                    raise UnresolvedReferenceError(f"undefined environment variable {name!r}")
                out.append(value)
            else:
                bare = m.group(2)
                name = longest_known(bare, _EnvNames(self))
                if name is None:
                    out.append(m.group())
                else:
                    out.append(self.lookup_env(name) or "")
                    out.append(bare[len(name):])
        out.append(text[pos:])
        return "".join(out)

    # ── Calculated variables ─────────────────────────────────────

    def define_calc(self, name: str, text: str) -> None:
        self.calculated[name] = CalculatedVariable(name, text)

    def calc_value(self, name: str) -> Any:
        """Evaluate calculated variable *name*. Not memoized: environment
        changes between references are seen."""
        var = self.calculated.get(name)
        if var is None:
            raise UnresolvedReferenceError(f"undefined calculated variable @{name}")
        node = parse_expression(self.substitute_env(var.text))
        if any(isinstance(n, CalcRef) for n in walk(node)):
            raise ExpressionError(
                f"calculated variable @{name} may not reference other calculated variables"
            )
        return evaluate(node, Scope())

    # ── Named functions ──────────────────────────────────────────

    def define_function(self, definition: str) -> NamedFunction:
        """Register ``name(a, b) = expression``."""
        m = _FUNCTION_DEF.match(definition)
        if m is None:
            raise ExpressionError(f"expected 'name(args) = expression', got {definition!r}")
        name, raw_params, text = m.group(1), m.group(2), m.group(3).strip()
        params = tuple(p.strip() for p in raw_params.split(",") if p.strip())
        for p in params:
            if not _PARAM.match(p):
                raise ExpressionError(f"invalid parameter name {p!r} in function {name}")
        if len(set(params)) != len(params):
            raise ExpressionError(f"duplicate parameter in function {name}")
        fn = NamedFunction(name, params, text, parse_expression(self.substitute_env(text)))
        self.functions[name] = fn
        return fn

    def call_function(self, name: str, args: Sequence[Any], caller: Scope) -> Any:
        fn = self.functions.get(name)
        if fn is None:
            raise UnresolvedReferenceError(f"undefined function &{name}")
        if len(args) != len(fn.params):
            raise ExpressionError(
                f"&{name} takes {len(fn.params)} arguments, {len(args)} given"
            )
        if self._depth >= MAX_CALL_DEPTH:
            raise ExpressionError(f"call depth exceeded in &{name}")
        self._depth += 1
        try:
            return evaluate(fn.body, FunctionScope(caller, dict(zip(fn.params, args))))
        finally:
            self._depth -= 1

    # ── Scopes ───────────────────────────────────────────────────

    def row_scope(self, row: Mapping[str, Any] | None = None, allow_functions: bool = False) -> RowScope:
        return RowScope(self, row or {}, allow_functions)


class _EnvNames:
    """Container view over all environment namespaces for longest-match lookup."""

    def __init__(self, ctx: EvaluationContext) -> None:
        self._ctx = ctx

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self._ctx._env_known(name)

    def __iter__(self):
        seen = set(self._ctx.overrides) | set(self._ctx.environ) | set(self._ctx.defaults)
        return iter(seen)

    def __len__(self) -> int:
        return len(set(self._ctx.overrides) | set(self._ctx.environ) | set(self._ctx.defaults))


class RowScope(Scope):
    """Resolves column references against one result row."""

    def __init__(self, ctx: EvaluationContext, row: Mapping[str, Any], allow_functions: bool) -> None:
        self.ctx = ctx
        self.row = row
        self.allow_functions = allow_functions

    def column(self, name: str) -> Any:
        key = canonical_name(name)
        if key not in self.row:
            raise UnresolvedReferenceError(f"unknown column ${name}")
        return self.row[key]

    def calc(self, name: str) -> Any:
        return self.ctx.calc_value(name)

    def call(self, name: str, args: Sequence[Any]) -> Any:
        if not self.allow_functions:
            return super().call(name, args)
        return self.ctx.call_function(name, args, self)


class FunctionScope(Scope):
    """Function body scope: parameters by name, other calls through the registry."""

    def __init__(self, caller: Scope, params: Mapping[str, Any]) -> None:
        self.caller = caller
        self.params = params

    def param(self, name: str) -> Any:
        if name not in self.params:
            raise UnresolvedReferenceError(f"unknown parameter {name!r}")
        return self.params[name]

    def column(self, name: str) -> Any:
        return self.caller.column(name)

    def calc(self, name: str) -> Any:
        return self.caller.calc(name)

    def call(self, name: str, args: Sequence[Any]) -> Any:
        return self.caller.call(name, args)
