"""Expression language used by value formulas, filters and calculated variables.

Grammar (lowest to highest precedence)::

    expr     := or
    or       := and ('or' and)*
    and      := not ('and' not)*
    not      := 'not' not | compare
    compare  := sum (('==' | '!=' | '<' | '<=' | '>' | '>=') sum)?
              | sum 'not'? 'in' '(' expr (',' expr)* ')'
    sum      := term (('+' | '-') term)*
    term     := unary (('*' | '/' | '//') unary)*
    unary    := ('-' | '+') unary | power
    power    := primary ('**' unary)?
    primary  := NUMBER | STRING | 'true' | 'false' | 'none'
              | '$' NAME | '${' TEXT '}'            column of the current row
              | '@' NAME | '@{' TEXT '}'            calculated variable
              | '&' NAME '(' args ')'               named function
              | NAME '(' args ')'                   built-in function
              | NAME                                function parameter
              | '(' expr ')'

Expressions are parsed into a small AST and either evaluated against a
:class:`Scope` or compiled into an SQL predicate. Nothing is handed to
Python's own ``eval``.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Any, Callable, Collection, Iterator, Sequence

from benchgraph.errors import ExpressionError, UnresolvedReferenceError
from benchgraph.store.names import normalize_number

# ── AST ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class ColumnRef:
    name: str


@dataclass(frozen=True)
class CalcRef:
    name: str


@dataclass(frozen=True)
class Param:
    name: str


@dataclass(frozen=True)
class Call:
    name: str
    args: tuple[Any, ...]
    user: bool = False


@dataclass(frozen=True)
class Unary:
    op: str
    operand: Any


@dataclass(frozen=True)
class Binary:
    op: str
    left: Any
    right: Any


@dataclass(frozen=True)
class InList:
    operand: Any
    items: tuple[Any, ...]
    negate: bool = False


Node = Any

# ── Tokenizer ────────────────────────────────────────────────────

_NAME = r"[A-Za-z_][A-Za-z0-9_]*"
_TOKEN = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<number>(?:\d+\.\d*|\.\d+|\d+)(?:[eE][+-]?\d+)?)
  | (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
  | (?P<ref>[$@&](?:\{[^}]*\}|""" + _NAME + r"""))
  | (?P<name>""" + _NAME + r""")
  | (?P<op>\*\*|//|==|!=|<=|>=|<|>|\+|-|\*|/|\(|\)|,)
    """,
    re.VERBOSE,
)

_KEYWORDS = {"and", "or", "not", "in", "true", "false", "none"}
_ESCAPES = {"n": "\n", "t": "\t", "\\": "\\", "'": "'", '"': '"'}


@dataclass(frozen=True)
class Token:
    kind: str
    text: str
    pos: int


def _unquote(text: str) -> str:
    body = text[1:-1]
    return re.sub(r"\\(.)", lambda m: _ESCAPES.get(m.group(1), m.group(1)), body)


def tokenize(text: str) -> list[Token]:
    tokens: list[Token] = []
    pos = 0
    while pos < len(text):
        m = _TOKEN.match(text, pos)
        if m is None:
            raise ExpressionError(f"unexpected character {text[pos]!r} in {text!r}")
        kind = m.lastgroup
        if kind == "name" and m.group().lower() in _KEYWORDS:
            kind = "keyword"
        if kind != "ws":
            tokens.append(Token(kind, m.group(), pos))
        pos = m.end()
    tokens.append(Token("end", "", len(text)))
    return tokens


def _ref_name(token_text: str) -> str:
    body = token_text[1:]
    if body.startswith("{"):
        body = body[1:-1].strip()
        if not body:
            raise ExpressionError(f"empty reference {token_text!r}")
    return body


# ── Parser ───────────────────────────────────────────────────────

_COMPARE = {"==", "!=", "<", "<=", ">", ">="}


class _Parser:
    def __init__(self, text: str) -> None:
        self.text = text
        self.tokens = tokenize(text)
        self.i = 0

    def peek(self) -> Token:
        return self.tokens[self.i]

    def next(self) -> Token:
        tok = self.tokens[self.i]
        self.i += 1
        return tok

    def accept(self, *texts: str) -> Token | None:
        tok = self.peek()
        if tok.kind in ("op", "keyword") and tok.text.lower() in texts:
            self.i += 1
            return tok
        return None

    def expect(self, text: str) -> None:
        if self.accept(text) is None:
            tok = self.peek()
            found = tok.text or "end of expression"
            raise ExpressionError(f"expected {text!r} but found {found!r} in {self.text!r}")

    def parse(self) -> Node:
        node = self.or_()
        if self.peek().kind != "end":
            raise ExpressionError(f"unexpected {self.peek().text!r} in {self.text!r}")
        return node

    def or_(self) -> Node:
        node = self.and_()
        while self.accept("or"):
            node = Binary("or", node, self.and_())
        return node

    def and_(self) -> Node:
        node = self.not_()
        while self.accept("and"):
            node = Binary("and", node, self.not_())
        return node

    def not_(self) -> Node:
        if self.accept("not"):
            return Unary("not", self.not_())
        return self.compare()

    def compare(self) -> Node:
        node = self.sum()
        tok = self.peek()
        if tok.kind == "op" and tok.text in _COMPARE:
            self.next()
            return Binary(tok.text, node, self.sum())
        negate = False
        if tok.kind == "keyword" and tok.text.lower() == "not":
            after = self.tokens[self.i + 1]
            if after.kind == "keyword" and after.text.lower() == "in":
                self.next()
                negate = True
        if self.accept("in"):
            self.expect("(")
            items = [self.or_()]
            while self.accept(","):
                items.append(self.or_())
            self.expect(")")
            return InList(node, tuple(items), negate)
        return node

    def sum(self) -> Node:
        node = self.term()
        while True:
            tok = self.accept("+", "-")
            if tok is None:
                return node
            node = Binary(tok.text, node, self.term())

    def term(self) -> Node:
        node = self.unary()
        while True:
            tok = self.accept("*", "/", "//")
            if tok is None:
                return node
            node = Binary(tok.text, node, self.unary())

    def unary(self) -> Node:
        tok = self.accept("-", "+")
        if tok is not None:
            return Unary(tok.text, self.unary())
        return self.power()

    def power(self) -> Node:
        node = self.primary()
        if self.accept("**"):
            return Binary("**", node, self.unary())
        return node

    def args(self) -> tuple[Node, ...]:
        self.expect("(")
        if self.accept(")"):
            return ()
        items = [self.or_()]
        while self.accept(","):
            items.append(self.or_())
        self.expect(")")
        return tuple(items)

    def primary(self) -> Node:
        tok = self.next()
        if tok.kind == "number":
            return Literal(normalize_number(tok.text))
        if tok.kind == "string":
            return Literal(_unquote(tok.text))
        if tok.kind == "keyword":
            word = tok.text.lower()
            if word in ("true", "false"):
                return Literal(word == "true")
            if word == "none":
                return Literal(None)
        if tok.kind == "ref":
            sigil, name = tok.text[0], _ref_name(tok.text)
            if sigil == "$":
                return ColumnRef(name)
            if sigil == "@":
                return CalcRef(name)
            return Call(name, self.args(), user=True)
        if tok.kind == "name":
            if self.peek().text == "(":
                return Call(tok.text, self.args())
            return Param(tok.text)
        if tok.kind == "op" and tok.text == "(":
            node = self.or_()
            self.expect(")")
            return node
        found = tok.text or "end of expression"
        raise ExpressionError(f"unexpected {found!r} in {self.text!r}")


def parse_expression(text: str) -> Node:
    """Parse *text* into an expression tree."""
    if not text or not text.strip():
        raise ExpressionError("empty expression")
    return _Parser(text).parse()


def walk(node: Node) -> Iterator[Node]:
    yield node
    if isinstance(node, Call):
        for a in node.args:
            yield from walk(a)
    elif isinstance(node, Unary):
        yield from walk(node.operand)
    elif isinstance(node, Binary):
        yield from walk(node.left)
        yield from walk(node.right)
    elif isinstance(node, InList):
        yield from walk(node.operand)
        for item in node.items:
            yield from walk(item)


def column_refs(node: Node) -> list[str]:
    return [n.name for n in walk(node) if isinstance(n, ColumnRef)]


# ── Values ───────────────────────────────────────────────────────

def to_number(value: Any) -> int | float:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    try:
        number = normalize_number(value)
    except (TypeError, ValueError):
        number = None
    if number is None:
        raise ExpressionError(f"{value!r} is not a number")
    return number


def _is_numeric(value: Any) -> bool:
    try:
        to_number(value)
    except ExpressionError:
        return False
    return value is not None


def _format(template: Any, *args: Any) -> str:
    try:
        return str(template) % tuple(args)
    except (TypeError, ValueError) as e:
        raise ExpressionError(f"format({template!r}): {e}") from None


def _round(value: Any, digits: Any = 0) -> int | float:
    result = round(to_number(value), int(to_number(digits)))
    return normalize_number(result)


BUILTINS: dict[str, Callable[..., Any]] = {
    "abs": lambda x: abs(to_number(x)),
    "min": lambda *xs: min(to_number(x) for x in xs),
    "max": lambda *xs: max(to_number(x) for x in xs),
    "round": _round,
    "int": lambda x: int(to_number(x)),
    "float": lambda x: float(to_number(x)),
    "str": lambda x: "" if x is None else str(x),
    "len": lambda x: len(str(x)),
    "lower": lambda x: str(x).lower(),
    "upper": lambda x: str(x).upper(),
    "format": _format,
    "log": lambda x, base=math.e: math.log(to_number(x), to_number(base)),
    "log2": lambda x: math.log2(to_number(x)),
    "log10": lambda x: math.log10(to_number(x)),
    "sqrt": lambda x: math.sqrt(to_number(x)),
    "pow": lambda x, y: to_number(x) ** to_number(y),
    "floor": lambda x: math.floor(to_number(x)),
    "ceil": lambda x: math.ceil(to_number(x)),
    "cond": lambda c, a, b: a if c else b,
}


# ── Evaluation ───────────────────────────────────────────────────

class Scope:
    """Name resolution for :func:`evaluate`. Subclasses enable what they support."""

    def column(self, name: str) -> Any:
        raise ExpressionError(f"column reference ${name} is not allowed here")

    def calc(self, name: str) -> Any:
        raise ExpressionError(f"calculated variable @{name} is not allowed here")

    def call(self, name: str, args: Sequence[Any]) -> Any:
        raise ExpressionError(f"named function &{name} is not allowed here")

    def param(self, name: str) -> Any:
        raise UnresolvedReferenceError(f"unknown name {name!r}")


def _compare(op: str, left: Any, right: Any) -> bool:
    if op in ("==", "!="):
        if _is_numeric(left) and _is_numeric(right):
            equal = to_number(left) == to_number(right)
        else:
            equal = left == right
        return equal if op == "==" else not equal
    if left is None or right is None:
        return False
    if _is_numeric(left) and _is_numeric(right):
        left, right = to_number(left), to_number(right)
    else:
        left, right = str(left), str(right)
    if op == "<":
        return left < right
    if op == "<=":
        return left <= right
    if op == ">":
        return left > right
    return left >= right


def _arith(op: str, left: Any, right: Any) -> Any:
    if op == "+" and (isinstance(left, str) or isinstance(right, str)):
        if not (_is_numeric(left) and _is_numeric(right)):
            return ("" if left is None else str(left)) + ("" if right is None else str(right))
    a, b = to_number(left), to_number(right)
    try:
        if op == "+":
            return a + b
        if op == "-":
            return a - b
        if op == "*":
            return a * b
        if op == "/":
            result = a / b
            if isinstance(result, float) and math.isfinite(result) and result.is_integer():
                return int(result)
            return result
        if op == "//":
            return a // b
        return a ** b
    except ZeroDivisionError:
        raise ExpressionError("division by zero") from None
    except OverflowError:
        raise ExpressionError(f"numeric overflow in {left!r} {op} {right!r}") from None


def evaluate(node: Node, scope: Scope) -> Any:
    """Evaluate *node* with names resolved through *scope*."""
    if isinstance(node, Literal):
        return node.value
    if isinstance(node, ColumnRef):
        return scope.column(node.name)
    if isinstance(node, CalcRef):
        return scope.calc(node.name)
    if isinstance(node, Param):
        return scope.param(node.name)
    if isinstance(node, Call):
        args = [evaluate(a, scope) for a in node.args]
        if node.user:
            return scope.call(node.name, args)
        fn = BUILTINS.get(node.name.lower())
        if fn is None:
            raise UnresolvedReferenceError(f"unknown function {node.name!r}")
        try:
            return fn(*args)
        except TypeError as e:
            raise ExpressionError(f"{node.name}(): {e}") from None
        except ValueError as e:
            raise ExpressionError(f"{node.name}(): {e}") from None
    if isinstance(node, Unary):
        value = evaluate(node.operand, scope)
        if node.op == "not":
            return not value
        number = to_number(value)
        return -number if node.op == "-" else number
    if isinstance(node, Binary):
        if node.op == "and":
            return bool(evaluate(node.left, scope)) and bool(evaluate(node.right, scope))
        if node.op == "or":
            return bool(evaluate(node.left, scope)) or bool(evaluate(node.right, scope))
        left = evaluate(node.left, scope)
        right = evaluate(node.right, scope)
        if node.op in _COMPARE:
            return _compare(node.op, left, right)
        return _arith(node.op, left, right)
    if isinstance(node, InList):
        value = evaluate(node.operand, scope)
        found = any(_compare("==", value, evaluate(i, scope)) for i in node.items)
        return not found if node.negate else found
    raise ExpressionError(f"cannot evaluate {node!r}")


# ── SQL compilation ──────────────────────────────────────────────

_SQL_OPS = {"==": "=", "!=": "<>", "<": "<", "<=": "<=", ">": ">", ">=": ">=",
            "+": "+", "-": "-", "*": "*", "/": "/", "and": "AND", "or": "OR"}
_SQL_FUNCS = {"abs": "abs", "lower": "lower", "upper": "upper", "len": "length",
              "round": "round", "min": "min", "max": "max"}


def compile_sql(
    node: Node,
    column: Callable[[str], str],
    constant: Callable[[Node], Any] | None = None,
) -> tuple[str, tuple[Any, ...]]:
    """Compile *node* into an SQL fragment with ``?`` parameters.

    *column* maps a column reference to a quoted wide-table column name (and
    raises for unknown fields). *constant* evaluates nodes that do not
    depend on the row, such as calculated variables.
    """
    params: list[Any] = []

    def emit(n: Node) -> str:
        if isinstance(n, Literal):
            if n.value is None:
                return "NULL"
            params.append(int(n.value) if isinstance(n.value, bool) else n.value)
            return "?"
        if isinstance(n, ColumnRef):
            return column(n.name)
        if isinstance(n, CalcRef):
            if constant is None:
                raise ExpressionError(f"calculated variable @{n.name} is not allowed here")
            params.append(constant(n))
            return "?"
        if isinstance(n, Param):
            raise UnresolvedReferenceError(f"unknown name {n.name!r}")
        if isinstance(n, Call):
            if n.user:
                raise ExpressionError(f"named function &{n.name} cannot be used in a filter")
            fn = _SQL_FUNCS.get(n.name.lower())
            if fn is None:
                raise ExpressionError(f"function {n.name}() cannot be used in a filter")
            return f"{fn}({', '.join(emit(a) for a in n.args)})"
        if isinstance(n, Unary):
            if n.op == "not":
                return f"(NOT {emit(n.operand)})"
            return f"({n.op}{emit(n.operand)})"
        if isinstance(n, Binary):
            if n.op == "//":
                return f"CAST(({emit(n.left)}) / ({emit(n.right)}) AS INTEGER)"
            if n.op == "**":
                raise ExpressionError("'**' cannot be used in a filter")
            if n.op in ("==", "!=") and isinstance(n.right, Literal) and n.right.value is None:
                return f"({emit(n.left)} IS {'NOT ' if n.op == '!=' else ''}NULL)"
            return f"({emit(n.left)} {_SQL_OPS[n.op]} {emit(n.right)})"
        if isinstance(n, InList):
            operand = emit(n.operand)
            items = ", ".join(emit(i) for i in n.items)
            return f"({operand} {'NOT IN' if n.negate else 'IN'} ({items}))"
        raise ExpressionError(f"cannot compile {n!r}")

    sql = emit(node)
    return sql, tuple(params)


# ── Text templates ───────────────────────────────────────────────

def longest_known(name: str, known: Collection[str], fold: Callable[[str], str] = str) -> str | None:
    """Return the longest prefix of *name* that is in *known* (after *fold*)."""
    for end in range(len(name), 0, -1):
        if fold(name[:end]) in known:
            return name[:end]
    return None


_BARE = re.compile(_NAME)


def _matching_brace(text: str, start: int) -> int:
    """Index of the ``}`` closing the ``{`` at *start*, skipping quoted strings."""
    depth = 0
    quote = ""
    i = start
    while i < len(text):
        ch = text[i]
        if quote:
            if ch == "\\":
                i += 1
            elif ch == quote:
                quote = ""
        elif ch in "'\"":
            quote = ch
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i
        i += 1
    raise ExpressionError(f"unterminated '{{' in {text!r}")


def parse_template(
    text: str,
    columns: Collection[str] | None = None,
    fold: Callable[[str], str] = str,
) -> list[Node]:
    """Split label-style text into literal strings and expression nodes.

    ``$NAME``/``${NAME}`` and ``@NAME``/``@{NAME}`` are references, ``{expr}``
    embeds an expression, a backslash escapes the next character. Bare column
    names use the longest prefix found in *columns* when it is given.
    """
    parts: list[Node] = []
    buf: list[str] = []
    i = 0

    def flush() -> None:
        if buf:
            parts.append(Literal("".join(buf)))
            buf.clear()

    while i < len(text):
        ch = text[i]
        if ch == "\\" and i + 1 < len(text):
            buf.append(text[i + 1])
            i += 2
            continue
        if ch == "{":
            end = _matching_brace(text, i)
            flush()
            parts.append(parse_expression(text[i + 1:end]))
            i = end + 1
            continue
        if ch in "$@" and i + 1 < len(text):
            if text[i + 1] == "{":
                end = text.find("}", i)
                if end < 0:
                    raise ExpressionError(f"unterminated reference in {text!r}")
                name = text[i + 2:end].strip()
                i = end + 1
            else:
                m = _BARE.match(text, i + 1)
                if m is None:
                    buf.append(ch)
                    i += 1
                    continue
                name = m.group()
                if ch == "$" and columns is not None:
                    name = longest_known(name, columns, fold) or name
                i = i + 1 + len(name)
            flush()
            parts.append(ColumnRef(name) if ch == "$" else CalcRef(name))
            continue
        buf.append(ch)
        i += 1
    flush()
    return parts


def render_template(parts: Sequence[Node], scope: Scope) -> str:
    out = []
    for part in parts:
        value = evaluate(part, scope)
        if value is None:
            continue
        if isinstance(value, float) and value.is_integer():
            value = int(value)
        out.append(str(value))
    return "".join(out)
