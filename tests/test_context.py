"""Tests for the evaluation context: environment, calculated variables, functions, kinds."""

import pytest

from benchgraph.describe.context import EvaluationContext, split_assignment
from benchgraph.describe.expression import evaluate, parse_expression
from benchgraph.describe.kinds import ColorKind, CustomKind, LineKind, MarkKind, display_text, payload
from benchgraph.errors import ExpressionError, UnresolvedReferenceError


@pytest.fixture
def ctx():
    return EvaluationContext(environ={})


def run(ctx, text, row=None):
    return evaluate(parse_expression(ctx.substitute_env(text)),
                    ctx.row_scope(row or {}, allow_functions=True))


# ── Environment variables ────────────────────────────────────────

class TestEnvironment:
    def test_precedence(self):
        ctx = EvaluationContext({"RUN": "override"}, environ={"RUN": "os", "HOST": "os"})
        ctx.define_env("RUN", "file")
        ctx.define_env("HOST", "file")
        ctx.define_env("USER", "file")
        assert ctx.lookup_env("RUN") == "override"
        assert ctx.lookup_env("HOST") == "os"
        assert ctx.lookup_env("USER") == "file"
        assert ctx.lookup_env("NOPE") is None

    def test_substitute_forms(self, ctx):
        ctx.define_env("SCALE", "1024")
        assert ctx.substitute_env("%SCALE * 2") == "1024 * 2"
        assert ctx.substitute_env("%{SCALE}*2") == "1024*2"

    def test_longest_match(self, ctx):
        ctx.define_env("N", "1")
        ctx.define_env("NODES", "16")
        assert ctx.substitute_env("%NODES") == "16"
        assert ctx.substitute_env("%NODESX") == "16X"
        assert ctx.substitute_env("%Nx") == "1x"

    def test_unknown_bare_name_stays(self, ctx):
        assert ctx.substitute_env("format('%d MB', 1)") == "format('%d MB', 1)"

    def test_unknown_braced_name_fails(self, ctx):
        with pytest.raises(UnresolvedReferenceError, match="MISSING"):
            ctx.substitute_env("%{MISSING}")

    def test_escaped_percent(self, ctx):
        ctx.define_env("A", "x")
        assert ctx.substitute_env("100\\%A") == "100%A"


# ── Calculated variables ─────────────────────────────────────────

class TestCalculated:
    def test_lazy_not_memoized(self):
        overrides = {}
        ctx = EvaluationContext(overrides, environ={})
        ctx.define_env("SCALE", "2")
        ctx.define_calc("DOUBLE", "%SCALE * 2")
        assert ctx.calc_value("DOUBLE") == 4
        ctx.overrides["SCALE"] = "10"
        assert ctx.calc_value("DOUBLE") == 20

    def test_not_transitive(self, ctx):
        ctx.define_calc("A", "1")
        ctx.define_calc("B", "@A + 1")
        with pytest.raises(ExpressionError, match="other calculated variables"):
            ctx.calc_value("B")

    def test_undefined(self, ctx):
        with pytest.raises(UnresolvedReferenceError, match="@X"):
            ctx.calc_value("X")

    def test_used_in_expression(self, ctx):
        ctx.define_calc("MB", "1024 * 1024")
        assert run(ctx, "$BYTES / @MB", {"BYTES": 2 * 1024 * 1024}) == 2

    def test_split_assignment(self):
        assert split_assignment("MB = 1024 * 1024") == ("MB", "1024 * 1024")
        with pytest.raises(ExpressionError):
            split_assignment("no assignment")


# ── Named functions ──────────────────────────────────────────────

class TestFunctions:
    def test_define_and_call(self, ctx):
        ctx.define_function("per_node(total, n) = total / n")
        assert run(ctx, "&per_node($BW, $NODES)", {"BW": 400, "NODES": 4}) == 100

    def test_functions_call_functions(self, ctx):
        ctx.define_function("double(x) = x * 2")
        ctx.define_function("quad(x) = &double(&double(x))")
        assert run(ctx, "&quad(3)") == 12

    def test_body_sees_columns(self, ctx):
        ctx.define_function("scaled(f) = $V * f")
        assert run(ctx, "&scaled(3)", {"V": 2}) == 6

    def test_arity(self, ctx):
        ctx.define_function("f(a) = a")
        with pytest.raises(ExpressionError, match="takes 1 arguments, 2 given"):
            run(ctx, "&f(1, 2)")

    def test_recursion_is_bounded(self, ctx):
        ctx.define_function("loop(x) = &loop(x)")
        with pytest.raises(ExpressionError, match="call depth"):
            run(ctx, "&loop(1)")

    def test_not_callable_outside_value_formulas(self, ctx):
        ctx.define_function("f(a) = a")
        scope = ctx.row_scope({}, allow_functions=False)
        with pytest.raises(ExpressionError, match="not allowed"):
            evaluate(parse_expression("&f(1)"), scope)

    def test_bad_definitions(self, ctx):
        with pytest.raises(ExpressionError):
            ctx.define_function("f = 1")
        with pytest.raises(ExpressionError, match="duplicate"):
            ctx.define_function("f(a, a) = a")

    def test_undefined(self, ctx):
        with pytest.raises(UnresolvedReferenceError, match="&nope"):
            run(ctx, "&nope(1)")


# ── Kinds ────────────────────────────────────────────────────────

class TestKinds:
    def test_builtin(self, ctx):
        assert ctx.kinds.resolve("color", "Red") is ColorKind.RED
        assert payload(LineKind.DASHED) == "dt 2"
        assert display_text(MarkKind.CIRCLE) == "circle"

    def test_custom(self, ctx):
        kind = ctx.kinds.define("color", "Teal", "teal blue", 'lc rgb "#008080"')
        assert ctx.kinds.resolve("color", "teal") == kind
        assert isinstance(kind, CustomKind)
        assert payload(kind) == 'lc rgb "#008080"'
        assert "teal" in ctx.kinds.names("color")

    def test_unknown(self, ctx):
        with pytest.raises(UnresolvedReferenceError, match="unknown mark kind"):
            ctx.kinds.resolve("mark", "hexagon")

    def test_auto_cycle(self, ctx):
        assert ctx.kinds.auto("color", 0) is ColorKind.RED
        assert ctx.kinds.auto("color", 8) is ColorKind.RED
        assert ctx.kinds.auto("line", 1) is LineKind.DASHED
