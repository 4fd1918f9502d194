"""Formula parser: tokenizer + recursive descent into an immutable tree.

Grammar::

    expr   := term (('+' | '-') term)*
    term   := unary (('*' | '/') unary)*
    unary  := ('-' | '+') unary | power
    power  := atom ('^' unary)?
    atom   := NUMBER | NAME | CELL | NAME '(' args? ')' | '(' expr ')'
    args   := arg ((',' | ';') arg)*
    arg    := expr | CELL ':' CELL          (ranges only inside SUM/MIN/MAX/AVERAGE)

``NAME`` is a variable name, ``CELL`` a row field address ``#<row_id>.<L|S|V>``.
Numbers always use a dot as decimal separator.  ``parse()`` never raises:
every failure comes back as a :class:`ParseError` carrying the offset.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Any, Union

from metrepro._utils import parse_number
from metrepro.calc._functions import RANGE_FUNCTIONS, arity, is_supported
from metrepro.calc._values import Dimension, ParseFailure

# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<number>(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?)
  | (?P<cell>\#(?P<row>[A-Za-z0-9_-]+)\.(?P<field>[A-Za-z]+))
  | (?P<name>[^\W\d]\w*)
  | (?P<op>[-+*/^(),;:])
    """,
    re.VERBOSE,
)

_NAME_RE = re.compile(r"^[^\W\d]\w*$")


def is_valid_name(name: str) -> bool:
    """Variable names are identifiers: a letter or ``_`` then word characters."""
    return bool(_NAME_RE.match(name))


@dataclass(frozen=True)
class _Token:
    type: str  # number | cell | name | op | end
    text: str
    offset: int
    value: Any = None


class _SyntaxError(Exception):
    def __init__(self, offset: int, message: str) -> None:
        super().__init__(message)
        self.offset = offset
        self.message = message


def _tokenize(text: str) -> list[_Token]:
    tokens: list[_Token] = []
    pos = 0
    length = len(text)
    while pos < length:
        m = _TOKEN_RE.match(text, pos)
        if m is None:
            raise _SyntaxError(pos, f"Unexpected character {text[pos]!r}")
        kind = m.lastgroup
        if kind == "field" or kind == "row":
            kind = "cell"
        if kind == "number":
            number = float(m.group())
            if not math.isfinite(number):
                raise _SyntaxError(pos, f"Number {m.group()!r} is out of range")
            tokens.append(_Token("number", m.group(), pos, number))
        elif kind == "cell":
            field_text = m.group("field")
            try:
                field = Dimension.parse(field_text)
            except ValueError:
                raise _SyntaxError(
                    m.start("field"), f"Unknown field {field_text!r} (expected L, S or V)"
                ) from None
            tokens.append(_Token("cell", m.group(), pos, (m.group("row"), field)))
        elif kind == "name":
            tokens.append(_Token("name", m.group(), pos))
        elif kind == "op":
            tokens.append(_Token("op", m.group(), pos))
        pos = m.end()
    tokens.append(_Token("end", "", length))
    return tokens


# ---------------------------------------------------------------------------
# Expression tree
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Number:
    value: float
    offset: int = 0


@dataclass(frozen=True)
class VarRef:
    name: str
    offset: int = 0


@dataclass(frozen=True)
class CellRef:
    row_id: str
    field: Dimension
    offset: int = 0

    @property
    def key(self) -> str:
        return cell_key(self.row_id, self.field)


@dataclass(frozen=True)
class RangeRef:
    start: CellRef
    end: CellRef
    offset: int = 0

    @property
    def field(self) -> Dimension:
        return self.start.field

    def __str__(self) -> str:
        return f"{self.start.key}:{self.end.key}"


@dataclass(frozen=True)
class Unary:
    op: str
    operand: Node
    offset: int = 0


@dataclass(frozen=True)
class Binary:
    op: str
    left: Node
    right: Node
    offset: int = 0


@dataclass(frozen=True)
class Call:
    name: str
    args: tuple[Node, ...]
    offset: int = 0


Node = Union[Number, VarRef, CellRef, RangeRef, Unary, Binary, Call]


def cell_key(row_id: str, field: Dimension | str) -> str:
    """Canonical id of a row field: ``#r1.L``."""
    return f"#{row_id}.{Dimension.parse(field).value}"


_CELL_KEY_RE = re.compile(r"^#([A-Za-z0-9_-]+)\.([LSVlsv])$")


def parse_cell_key(key: str) -> tuple[str, Dimension] | None:
    """``"#r1.L"`` -> ``("r1", Dimension.L)``; None for anything else."""
    m = _CELL_KEY_RE.match(key)
    if m is None:
        return None
    return m.group(1), Dimension.parse(m.group(2))


@dataclass(frozen=True)
class Expression:
    """A parsed formula with its reference sets, in order of appearance."""

    text: str
    root: Node
    names: tuple[str, ...] = ()
    cells: tuple[CellRef, ...] = ()
    ranges: tuple[RangeRef, ...] = ()


@dataclass(frozen=True)
class ParseError:
    text: str
    offset: int
    message: str

    def __str__(self) -> str:
        return f"{self.message} at offset {self.offset}"

    def to_exception(self, reference: str | None = None) -> ParseFailure:
        return ParseFailure(str(self), reference, self.offset)


# ---------------------------------------------------------------------------
# Recursive descent
# ---------------------------------------------------------------------------


class _Parser:
    def __init__(self, text: str) -> None:
        self.text = text
        self.tokens = _tokenize(text)
        self.pos = 0
        self.names: list[str] = []
        self.cells: list[CellRef] = []
        self.ranges: list[RangeRef] = []

    @property
    def current(self) -> _Token:
        return self.tokens[self.pos]

    def _peek(self, ahead: int = 1) -> _Token:
        idx = min(self.pos + ahead, len(self.tokens) - 1)
        return self.tokens[idx]

    def _advance(self) -> _Token:
        tok = self.tokens[self.pos]
        if tok.type != "end":
            self.pos += 1
        return tok

    def _is_op(self, *ops: str) -> bool:
        return self.current.type == "op" and self.current.text in ops

    def _expect(self, op: str) -> _Token:
        if not self._is_op(op):
            tok = self.current
            found = "end of formula" if tok.type == "end" else repr(tok.text)
            raise _SyntaxError(tok.offset, f"Expected {op!r}, found {found}")
        return self._advance()

    def parse(self) -> Expression:
        if self.current.type == "end":
            raise _SyntaxError(0, "Empty formula")
        root = self._expr()
        tok = self.current
        if tok.type != "end":
            if tok.type == "op" and tok.text == ")":
                raise _SyntaxError(tok.offset, "Unbalanced parenthesis: unexpected ')'")
            raise _SyntaxError(tok.offset, f"Unexpected {tok.text!r}")
        return Expression(
            text=self.text,
            root=root,
            names=tuple(dict.fromkeys(self.names)),
            cells=tuple(dict.fromkeys(self.cells)),
            ranges=tuple(dict.fromkeys(self.ranges)),
        )

    def _expr(self) -> Node:
        node = self._term()
        while self._is_op("+", "-"):
            op = self._advance()
            node = Binary(op.text, node, self._term(), op.offset)
        return node

    def _term(self) -> Node:
        node = self._unary()
        while self._is_op("*", "/"):
            op = self._advance()
            node = Binary(op.text, node, self._unary(), op.offset)
        return node

    def _unary(self) -> Node:
        if self._is_op("-", "+"):
            op = self._advance()
            return Unary(op.text, self._unary(), op.offset)
        return self._power()

    def _power(self) -> Node:
        base = self._atom()
        if self._is_op("^"):
            op = self._advance()
            return Binary("^", base, self._unary(), op.offset)
        return base

    def _atom(self) -> Node:
        tok = self.current
        if tok.type == "number":
            self._advance()
            return Number(tok.value, tok.offset)
        if tok.type == "cell":
            if self._peek().type == "op" and self._peek().text == ":":
                raise _SyntaxError(
                    self._peek().offset,
                    "A range is only allowed as an argument of "
                    + "/".join(sorted(RANGE_FUNCTIONS)),
                )
            return self._cell()
        if tok.type == "name":
            if self._peek().type == "op" and self._peek().text == "(":
                return self._call()
            self._advance()
            self.names.append(tok.text)
            return VarRef(tok.text, tok.offset)
        if self._is_op("("):
            self._advance()
            if self._is_op(")"):
                raise _SyntaxError(self.current.offset, "Empty parentheses")
            node = self._expr()
            if self.current.type == "end":
                raise _SyntaxError(tok.offset, "Unbalanced parenthesis: missing ')'")
            self._expect(")")
            return node
        if tok.type == "end":
            raise _SyntaxError(tok.offset, "Unexpected end of formula")
        raise _SyntaxError(tok.offset, f"Unexpected {tok.text!r}")

    def _cell(self) -> CellRef:
        tok = self._advance()
        row_id, field = tok.value
        ref = CellRef(row_id, field, tok.offset)
        self.cells.append(ref)
        return ref

    def _call(self) -> Call:
        name_tok = self._advance()
        name = name_tok.text.upper()
        if not is_supported(name):
            raise _SyntaxError(name_tok.offset, f"Unknown function {name_tok.text!r}")
        open_tok = self._expect("(")
        args: list[Node] = []
        if not self._is_op(")"):
            while True:
                args.append(self._arg(name))
                if self._is_op(",", ";"):
                    self._advance()
                    continue
                break
        if self.current.type == "end":
            raise _SyntaxError(open_tok.offset, "Unbalanced parenthesis: missing ')'")
        self._expect(")")
        low, high = arity(name)
        if len(args) < low or (high is not None and len(args) > high):
            expected = str(low) if low == high else f"{low}..{'n' if high is None else high}"
            raise _SyntaxError(
                name_tok.offset, f"{name} expects {expected} argument(s), got {len(args)}"
            )
        return Call(name, tuple(args), name_tok.offset)

    def _arg(self, func: str) -> Node:
        tok = self.current
        nxt = self._peek()
        if tok.type == "cell" and nxt.type == "op" and nxt.text == ":":
            if func not in RANGE_FUNCTIONS:
                raise _SyntaxError(nxt.offset, f"{func} does not accept a range")
            start = self._cell()
            self._advance()  # ':'
            if self.current.type != "cell":
                raise _SyntaxError(self.current.offset, "Expected a cell address after ':'")
            end = self._cell()
            if start.field is not end.field:
                raise _SyntaxError(end.offset, "Both ends of a range must use the same field")
            # Range ends are tracked as ranges, not as single cells
            self.cells.remove(start)
            self.cells.remove(end)
            rng = RangeRef(start, end, start.offset)
            self.ranges.append(rng)
            return rng
        return self._expr()


def parse(text: str) -> Expression | ParseError:
    """Parse a formula.  Pure and total: returns a ParseError instead of raising."""
    body = text.strip()
    lead = len(text) - len(text.lstrip())
    if body.startswith("="):
        body = body[1:]
        lead += 1
    try:
        # Offsets are reported against the caller's text
        expr = _Parser(" " * lead + body).parse()
    except _SyntaxError as exc:
        return ParseError(text, exc.offset, exc.message)
    except RecursionError:
        return ParseError(text, 0, "Formula is nested too deeply")
    return Expression(text, expr.root, expr.names, expr.cells, expr.ranges)


# ---------------------------------------------------------------------------
# Definitions: what a row field or a variable holds
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Definition:
    """Raw definition of a row field or variable: empty, literal or formula."""

    text: str = ""
    literal: float | None = None
    expression: Expression | None = None

    @property
    def is_empty(self) -> bool:
        return self.literal is None and self.expression is None

    @property
    def is_formula(self) -> bool:
        return self.expression is not None

    def serialize(self) -> str | float | None:
        if self.expression is not None:
            return self.text
        return self.literal


EMPTY_DEFINITION = Definition()


def parse_definition(raw: str | float | int | Definition | None) -> Definition | ParseError:
    """Classify a user entry: blank -> empty, plain number -> literal, else formula."""
    if isinstance(raw, Definition):
        return raw
    if raw is None:
        return EMPTY_DEFINITION
    if isinstance(raw, str) and not raw.strip():
        return EMPTY_DEFINITION
    literal = parse_number(raw)
    if literal is not None:
        return Definition(str(raw).strip(), literal=literal)
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        return ParseError(str(raw), 0, f"Number {raw!r} is out of range")
    if not isinstance(raw, str):
        return ParseError(str(raw), 0, f"Unsupported definition {raw!r}")
    result = parse(raw)
    if isinstance(result, ParseError):
        return result
    return Definition(raw.strip(), expression=result)
