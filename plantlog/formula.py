"""Formula engine for calculated quality-template fields.

Supports: +, -, *, /, parentheses, numeric literals (unary minus folded into
the literal), field refs {fieldId} (row scope) and {header.fieldId} (header scope).

No eval(): formulas are user-authored, so they go through a hand-rolled
tokenizer and recursive-descent parser that accept nothing beyond that grammar.

Error codes carried by the exceptions:
  #SYNTAX: unrecognised character or malformed expression
  #REF:    reference to a field that does not exist in its scope

Runtime evaluation never raises: a missing dependency, a malformed expression
or a non-finite result all come back as None ("unresolved").
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Iterator, List, Mapping, NamedTuple, Optional, Sequence

logger = logging.getLogger(__name__)


# ── Error types ───────────────────────────────────────────────────

class FormulaError(Exception):
    """Base for all formula errors. `code` is a short machine-readable tag."""
    code: str = "#ERROR"

    def __init__(self, message: str = "", code: str | None = None):
        super().__init__(message)
        if code is not None:
            self.code = code

class FormulaSyntaxError(FormulaError):
    code = "#SYNTAX"

class TokenizeError(FormulaSyntaxError):
    pass

class ParseError(FormulaSyntaxError):
    pass

class UnknownFieldReference(FormulaError):
    code = "#REF"

    def __init__(self, ref: "FieldRef"):
        super().__init__(f"unknown {ref.scope.value} field: {ref.token}")
        self.scope = ref.scope
        self.field_id = ref.field_id


# ── Field references ──────────────────────────────────────────────

_FIELD_REF_RE = re.compile(r'\{(header\.)?([A-Za-z_][A-Za-z0-9_]*)\}')

# Marker substituted for a reference with no usable value.
UNRESOLVED_MARKER = "NaN"


class RefScope(str, Enum):
    ROW = "row"
    HEADER = "header"


@dataclass(frozen=True)
class FieldRef:
    scope: RefScope
    field_id: str

    @property
    def token(self) -> str:
        """Render back to formula text: {id} or {header.id}."""
        if self.scope is RefScope.HEADER:
            return "{header.%s}" % self.field_id
        return "{%s}" % self.field_id

    @classmethod
    def from_match(cls, m: re.Match) -> "FieldRef":
        scope = RefScope.HEADER if m.group(1) else RefScope.ROW
        return cls(scope, m.group(2))


def iter_field_refs(formula: str) -> Iterator[FieldRef]:
    """Yield every reference in textual order (duplicates included)."""
    for m in _FIELD_REF_RE.finditer(formula or ""):
        yield FieldRef.from_match(m)


class FieldDependencies(NamedTuple):
    row_fields: List[str]
    header_fields: List[str]


def extract_field_dependencies(formula: str) -> FieldDependencies:
    """Split the ids a raw formula references into row and header scope.

    Order is first occurrence; repeats are dropped.
    """
    row_fields: List[str] = []
    header_fields: List[str] = []
    for ref in iter_field_refs(formula):
        bucket = header_fields if ref.scope is RefScope.HEADER else row_fields
        if ref.field_id not in bucket:
            bucket.append(ref.field_id)
    return FieldDependencies(row_fields, header_fields)


def format_number(value: float) -> str:
    """Plain decimal text for a float, never exponent notation.

    The tokenizer only reads digits and '.', so 1e-07 has to become 0.0000001.
    """
    return format(Decimal(repr(value)), "f")


def substitute_refs(formula: str, header_values: Mapping[str, float],
                    row_values: Mapping[str, float]) -> str:
    """Replace each reference with its value, or NaN when it has none."""
    def _replace(m: re.Match) -> str:
        ref = FieldRef.from_match(m)
        source = header_values if ref.scope is RefScope.HEADER else row_values
        val = source.get(ref.field_id)
        if val is None or isinstance(val, bool):
            return UNRESOLVED_MARKER
        try:
            val = float(val)
        except (TypeError, ValueError):
            return UNRESOLVED_MARKER
        if not math.isfinite(val):
            return UNRESOLVED_MARKER
        # Padded so a ref never glues onto an adjacent literal ("2{a}" stays two numbers).
        text = format_number(val)
        return f" ({text}) " if text.startswith('-') else f" {text} "

    return _FIELD_REF_RE.sub(_replace, formula)


# ── Tokenizer ─────────────────────────────────────────────────────

class TokenKind(str, Enum):
    NUMBER = "number"
    OP = "op"
    LPAREN = "lparen"
    RPAREN = "rparen"


class Token(NamedTuple):
    kind: TokenKind
    value: object = None

    def is_op(self, *ops: str) -> bool:
        return self.kind is TokenKind.OP and self.value in ops


_DIGITS = "0123456789"
_OPERATORS = "+-*/"


def _read_number(text: str, pos: int) -> tuple[float, int]:
    start = pos
    dot_count = 0
    while pos < len(text) and (text[pos] in _DIGITS or text[pos] == '.'):
        if text[pos] == '.':
            dot_count += 1
            if dot_count > 1:
                raise TokenizeError(f"Invalid number at pos {start}")
        pos += 1
    literal = text[start:pos]
    if not literal or literal == '.':
        raise TokenizeError(f"Expected number at pos {start}")
    return float(literal), pos


def tokenize(expr: str) -> List[Token]:
    """Turn a substituted expression into NUMBER / OP / LPAREN / RPAREN tokens.

    A '-' at the start, after '(' or after another operator is unary and is
    folded into the literal that follows it ("-(2)" is not a literal and fails).
    """
    tokens: List[Token] = []
    pos = 0
    while pos < len(expr):
        ch = expr[pos]
        if ch.isspace():
            pos += 1
            continue
        if ch == '(':
            tokens.append(Token(TokenKind.LPAREN))
            pos += 1
            continue
        if ch == ')':
            tokens.append(Token(TokenKind.RPAREN))
            pos += 1
            continue
        if ch in _OPERATORS:
            prev = tokens[-1] if tokens else None
            if ch == '-' and (prev is None or prev.kind in (TokenKind.LPAREN, TokenKind.OP)):
                pos += 1
                while pos < len(expr) and expr[pos].isspace():
                    pos += 1
                value, pos = _read_number(expr, pos)
                tokens.append(Token(TokenKind.NUMBER, -value))
                continue
            tokens.append(Token(TokenKind.OP, ch))
            pos += 1
            continue
        if ch in _DIGITS or ch == '.':
            value, pos = _read_number(expr, pos)
            tokens.append(Token(TokenKind.NUMBER, value))
            continue
        raise TokenizeError(f"Unexpected '{ch}' at pos {pos}")
    return tokens


# ── Parser (recursive descent over tokens) ────────────────────────

def _divide(a: float, b: float) -> float:
    """IEEE float division: x/0 is +-inf, 0/0 is nan. Never raises."""
    if b != 0:
        return a / b
    if a == 0 or math.isnan(a):
        return math.nan
    return math.copysign(math.inf, a) * math.copysign(1.0, b)


class _Parser:
    """expr = term (('+'|'-') term)* ; term = factor (('*'|'/') factor)* ;
    factor = NUMBER | '(' expr ')'."""
    __slots__ = ('tokens', 'pos', 'depth')

    MAX_DEPTH = 64

    def __init__(self, tokens: Sequence[Token]):
        self.tokens = tokens
        self.pos = 0
        self.depth = 0

    def _peek(self) -> Optional[Token]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _eat(self) -> Token:
        if self.pos >= len(self.tokens):
            raise ParseError("Unexpected end of expression")
        tok = self.tokens[self.pos]
        self.pos += 1
        return tok

    def _factor(self) -> float:
        tok = self._peek()
        if tok is None:
            raise ParseError("Unexpected end of expression")
        if tok.kind is TokenKind.NUMBER:
            self._eat()
            return tok.value
        if tok.kind is TokenKind.LPAREN:
            self._eat()
            self.depth += 1
            if self.depth > self.MAX_DEPTH:
                raise ParseError("Expression nested too deeply")
            val = self._expr()
            self.depth -= 1
            closing = self._peek()
            if closing is None or closing.kind is not TokenKind.RPAREN:
                raise ParseError("Expected ')'")
            self._eat()
            return val
        raise ParseError(f"Unexpected token {tok.kind.value} at {self.pos}")

    def _term(self) -> float:
        left = self._factor()
        while self._peek() is not None and self._peek().is_op('*', '/'):
            op = self._eat().value
            right = self._factor()
            left = left * right if op == '*' else _divide(left, right)
        return left

    def _expr(self) -> float:
        left = self._term()
        while self._peek() is not None and self._peek().is_op('+', '-'):
            op = self._eat().value
            right = self._term()
            left = left + right if op == '+' else left - right
        return left

    def parse(self) -> float:
        result = self._expr()
        if self.pos != len(self.tokens):
            raise ParseError(f"Unexpected trailing token at {self.pos}")
        return result


def parse(tokens: Sequence[Token]) -> Optional[float]:
    """Evaluate a token stream. None for any malformed expression."""
    try:
        return _Parser(tokens).parse()
    except ParseError:
        return None


# ── Formula evaluation ────────────────────────────────────────────

@dataclass(frozen=True)
class FormulaContext:
    header_values: Mapping[str, float]
    row_values: Mapping[str, float]

    @classmethod
    def coerce(cls, context) -> "FormulaContext":
        """Accept a FormulaContext, None, or a dict keyed headerValues/rowValues
        (or header_values/row_values)."""
        if isinstance(context, FormulaContext):
            return context
        if context is None:
            return cls({}, {})
        header = context.get("headerValues", context.get("header_values")) or {}
        row = context.get("rowValues", context.get("row_values")) or {}
        return cls(header, row)


def evaluate_formula(formula: str, context=None) -> Optional[float]:
    """Evaluate *formula* against the given header/row values.

    Returns a finite float, or None when a referenced field has no value, the
    expression is malformed, or the result is not finite.
    """
    ctx = FormulaContext.coerce(context)
    resolved = substitute_refs(formula or "", ctx.header_values, ctx.row_values)
    if UNRESOLVED_MARKER in resolved:
        return None
    try:
        result = _Parser(tokenize(resolved)).parse()
    except FormulaError as e:
        logger.debug("Formula %r did not evaluate: %s", formula, e)
        return None
    if not math.isfinite(result):
        return None
    return result


# ── Validation ────────────────────────────────────────────────────

@dataclass(frozen=True)
class FormulaValidation:
    valid: bool
    error: Optional[str] = None

    def to_dict(self) -> dict:
        out = {"valid": self.valid}
        if self.error is not None:
            out["error"] = self.error
        return out


# Dry-run value for every reference during validation.
PLACEHOLDER_VALUE = 1.0


def check_formula(formula: str, available_row_field_ids, available_header_field_ids) -> None:
    """Raising form of validate_formula.

    UnknownFieldReference for the first reference missing from its scope
    (row refs are checked before header refs), FormulaSyntaxError when the
    dry run does not tokenize or parse. A dry run that only divides by zero
    is fine.
    """
    row_ids = set(available_row_field_ids)
    header_ids = set(available_header_field_ids)
    deps = extract_field_dependencies(formula)
    for field_id in deps.row_fields:
        if field_id not in row_ids:
            raise UnknownFieldReference(FieldRef(RefScope.ROW, field_id))
    for field_id in deps.header_fields:
        if field_id not in header_ids:
            raise UnknownFieldReference(FieldRef(RefScope.HEADER, field_id))

    placeholders = {field_id: PLACEHOLDER_VALUE for field_id in deps.row_fields}
    header_placeholders = {field_id: PLACEHOLDER_VALUE for field_id in deps.header_fields}
    dry_run = substitute_refs(formula or "", header_placeholders, placeholders)
    _Parser(tokenize(dry_run)).parse()


def validate_formula(formula: str, available_row_field_ids, available_header_field_ids) -> FormulaValidation:
    try:
        check_formula(formula, available_row_field_ids, available_header_field_ids)
    except UnknownFieldReference as e:
        return FormulaValidation(False, str(e))
    except FormulaSyntaxError:
        return FormulaValidation(False, "invalid formula syntax")
    return FormulaValidation(True)
