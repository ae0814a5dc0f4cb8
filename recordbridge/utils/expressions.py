"""Restricted formula and condition evaluation.

Formulas are arithmetic over numeric literals and field references::

    employeePreTax * 0.05
    (source.grossPay - source.preTaxDeductions) / 2

Conditions compare one source field with one literal::

    source.status == "TERMINATED"
    hoursWorked > 1000

Both grammars are tokenised with anchored regular expressions and parsed by
hand into small trees. Nothing here calls eval/exec/compile, resolves
attributes, or invokes functions: a field reference can only ever become a
Decimal supplied by the caller's resolver.
"""

import numbers
import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, localcontext
from functools import lru_cache
from typing import Any, Callable, List, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict

from config import settings
from ..models import ConditionOperator, RoundingPolicy

class ExpressionError(ValueError):
    """Raised when a formula or condition is rejected or cannot be evaluated"""
    pass

class ConditionSyntaxError(ExpressionError):
    """Raised when a condition is not of the form `field <op> literal`"""
    pass

# ---------------------------------------------------------------------------
# Formula tree
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Number:
    value: Decimal

@dataclass(frozen=True)
class FieldRef:
    name: str
    source_only: bool = False

@dataclass(frozen=True)
class UnaryOp:
    op: str
    operand: Any

@dataclass(frozen=True)
class BinaryOp:
    op: str
    left: Any
    right: Any

Node = Union[Number, FieldRef, UnaryOp, BinaryOp]

SOURCE_NAMESPACE = "source"

# Everything a formula may contain before tokenising
_FORMULA_CHARS_RE = re.compile(r"[A-Za-z0-9_.+\-*/()\s]*")

_FORMULA_TOKEN_RE = re.compile(
    r"""
    (?P<number>[0-9]+(?:\.[0-9]+)?|\.[0-9]+)
    | (?P<field>[A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z_][A-Za-z0-9_]*)?)
    | (?P<op>[-+*/])
    | (?P<lparen>\()
    | (?P<rparen>\))
    | (?P<ws>\s+)
    """,
    re.VERBOSE,
)

Token = Tuple[str, str, int]

def _check_length(text: str, kind: str):
    if len(text) > settings.max_expression_length:
        raise ExpressionError(
            f"{kind} exceeds maximum length of {settings.max_expression_length} characters"
        )

def _tokenise(formula: str) -> List[Token]:
    """Split a formula into (kind, text, position) tokens"""
    if not _FORMULA_CHARS_RE.fullmatch(formula):
        bad = next(ch for ch in formula if not _FORMULA_CHARS_RE.fullmatch(ch))
        raise ExpressionError(f"Formula contains disallowed character {bad!r}")

    tokens: List[Token] = []
    pos = 0
    while pos < len(formula):
        match = _FORMULA_TOKEN_RE.match(formula, pos)
        if not match:
            raise ExpressionError(
                f"Unrecognised token in formula at position {pos}: '{formula[pos:pos + 10]}'"
            )
        if match.lastgroup != "ws":
            tokens.append((match.lastgroup, match.group(0), pos))
        pos = match.end()
    return tokens

class _FormulaParser:
    """Recursive descent parser producing a formula tree.

    Grammar::

        expr   := term (("+" | "-") term)*
        term   := factor (("*" | "/") factor)*
        factor := ("+" | "-") factor | NUMBER | FIELD | "(" expr ")"
    """

    def __init__(self, tokens: List[Token], max_depth: int):
        self.tokens = tokens
        self.max_depth = max_depth

    def parse(self) -> Node:
        if not self.tokens:
            raise ExpressionError("Formula is empty")
        node, pos = self._parse_expr(0, 0)
        if pos != len(self.tokens):
            kind, text, offset = self.tokens[pos]
            raise ExpressionError(f"Unexpected token '{text}' at position {offset}")
        return node

    def _peek(self, pos: int) -> Optional[Token]:
        return self.tokens[pos] if pos < len(self.tokens) else None

    def _parse_expr(self, pos: int, depth: int) -> Tuple[Node, int]:
        left, pos = self._parse_term(pos, depth)
        token = self._peek(pos)
        while token and token[0] == "op" and token[1] in "+-":
            right, pos = self._parse_term(pos + 1, depth)
            left = BinaryOp(token[1], left, right)
            token = self._peek(pos)
        return left, pos

    def _parse_term(self, pos: int, depth: int) -> Tuple[Node, int]:
        left, pos = self._parse_factor(pos, depth)
        token = self._peek(pos)
        while token and token[0] == "op" and token[1] in "*/":
            right, pos = self._parse_factor(pos + 1, depth)
            left = BinaryOp(token[1], left, right)
            token = self._peek(pos)
        return left, pos

    def _parse_factor(self, pos: int, depth: int) -> Tuple[Node, int]:
        if depth > self.max_depth:
            raise ExpressionError(f"Formula nesting exceeds maximum depth of {self.max_depth}")

        token = self._peek(pos)
        if token is None:
            raise ExpressionError("Unexpected end of formula")
        kind, text, offset = token

        if kind == "op" and text in "+-":
            operand, pos = self._parse_factor(pos + 1, depth + 1)
            return UnaryOp(text, operand), pos
        if kind == "number":
            return Number(Decimal(text)), pos + 1
        if kind == "field":
            return _field_ref(text, offset), pos + 1
        if kind == "lparen":
            node, pos = self._parse_expr(pos + 1, depth + 1)
            closing = self._peek(pos)
            if closing is None or closing[0] != "rparen":
                raise ExpressionError(f"Missing closing parenthesis for '(' at position {offset}")
            return node, pos + 1
        raise ExpressionError(f"Unexpected token '{text}' at position {offset}")

def _field_ref(text: str, offset: int) -> FieldRef:
    if "." not in text:
        return FieldRef(text)
    namespace, name = text.split(".", 1)
    if namespace != SOURCE_NAMESPACE:
        raise ExpressionError(f"Unknown field namespace '{namespace}' at position {offset}")
    return FieldRef(name, source_only=True)

@lru_cache(maxsize=1024)
def parse_formula(formula: str) -> Node:
    """Parse and validate a formula, raising ExpressionError if it is rejected"""
    if not isinstance(formula, str):
        raise ExpressionError("Formula must be a string")
    _check_length(formula, "Formula")
    return _FormulaParser(_tokenise(formula), settings.max_expression_depth).parse()

def formula_fields(formula: str) -> List[str]:
    """Field names referenced by a formula, in order of first appearance"""
    names: List[str] = []
    stack = [parse_formula(formula)]
    while stack:
        node = stack.pop()
        if isinstance(node, FieldRef):
            if node.name not in names:
                names.append(node.name)
        elif isinstance(node, UnaryOp):
            stack.append(node.operand)
        elif isinstance(node, BinaryOp):
            stack.extend([node.right, node.left])
    return names

def _apply_operator(op: str, left: Decimal, right: Decimal) -> Decimal:
    if op == "+":
        return left + right
    if op == "-":
        return left - right
    if op == "*":
        return left * right
    return left / right

def evaluate_formula(formula: str, resolve: Callable[[FieldRef], Decimal]) -> Decimal:
    """Evaluate a formula, resolving each field reference through `resolve`.

    The tree is walked with an explicit stack so evaluation cost is linear in
    the (length-bounded) formula and never recurses.
    """
    tree = parse_formula(formula)
    values: List[Decimal] = []
    stack: List[Tuple[Node, bool]] = [(tree, False)]

    try:
        with localcontext() as ctx:
            ctx.prec = 28
            while stack:
                node, expanded = stack.pop()
                if isinstance(node, Number):
                    values.append(node.value)
                elif isinstance(node, FieldRef):
                    values.append(resolve(node))
                elif not expanded:
                    stack.append((node, True))
                    if isinstance(node, BinaryOp):
                        stack.append((node.right, False))
                        stack.append((node.left, False))
                    else:
                        stack.append((node.operand, False))
                elif isinstance(node, UnaryOp):
                    operand = values.pop()
                    values.append(-operand if node.op == "-" else +operand)
                else:
                    right = values.pop()
                    left = values.pop()
                    values.append(_apply_operator(node.op, left, right))
    except ArithmeticError as e:
        raise ExpressionError(f"Formula evaluation failed: {e.__class__.__name__}") from e

    return values[0]

# ---------------------------------------------------------------------------
# Numeric helpers
# ---------------------------------------------------------------------------

_NUMERIC_TEXT_RE = re.compile(r"[+-]?(?:[0-9]+(?:\.[0-9]*)?|\.[0-9]+)(?:[eE][+-]?[0-9]+)?")

def to_decimal(value: Any) -> Optional[Decimal]:
    """Coerce a record value to a finite Decimal, or None if it is not numeric"""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        number = value
    elif isinstance(value, numbers.Number):
        number = Decimal(str(value))
    elif isinstance(value, str):
        text = value.strip()
        if not _NUMERIC_TEXT_RE.fullmatch(text):
            return None
        try:
            number = Decimal(text)
        except InvalidOperation:
            return None
    else:
        return None
    return number if number.is_finite() else None

def apply_rounding(value: Decimal, rounding: RoundingPolicy) -> Decimal:
    if rounding == RoundingPolicy.CENTS:
        return value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    if rounding == RoundingPolicy.DOLLARS:
        return value.quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return value

def to_python_number(value: Decimal) -> Union[int, float]:
    """Integral results become int, everything else float"""
    if value == value.to_integral_value():
        return int(value)
    return float(value)

# ---------------------------------------------------------------------------
# Conditions
# ---------------------------------------------------------------------------

_CONDITION_RE = re.compile(
    r"""
    \s*
    (?:source\.)?(?P<field>[A-Za-z_][A-Za-z0-9_]*)
    \s*(?P<op>===|==|!==|!=|>|<)\s*
    (?P<literal>
        "[^"\\]*"
        | '[^'\\]*'
        | -?[0-9]+(?:\.[0-9]+)?
        | [A-Za-z_][A-Za-z0-9_]*
    )
    \s*
    """,
    re.VERBOSE,
)

_OPERATOR_ALIASES = {
    "==": ConditionOperator.EQUALS,
    "===": ConditionOperator.EQUALS,
    "!=": ConditionOperator.NOT_EQUALS,
    "!==": ConditionOperator.NOT_EQUALS,
    ">": ConditionOperator.GREATER_THAN,
    "<": ConditionOperator.LESS_THAN,
}

_KEYWORD_LITERALS = {"true": True, "false": False, "null": None}

def as_text(value: Any) -> str:
    """Text form of a record value as written in source files"""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)

class Condition(BaseModel):
    """A typed `field <op> literal` comparison against a source record"""

    model_config = ConfigDict(frozen=True)

    field: str
    operator: ConditionOperator
    value: Union[bool, int, float, str, None] = None

    def evaluate(self, record: Mapping[str, Any]) -> bool:
        actual = record.get(self.field)

        if self.operator in (ConditionOperator.EQUALS, ConditionOperator.NOT_EQUALS):
            equal = self._matches(actual)
            return equal if self.operator == ConditionOperator.EQUALS else not equal

        number = to_decimal(actual)
        if number is None:
            return False
        literal = to_decimal(self.value)
        if self.operator == ConditionOperator.GREATER_THAN:
            return number > literal
        return number < literal

    def _matches(self, actual: Any) -> bool:
        if actual is None or self.value is None:
            return actual is None and self.value is None
        if isinstance(self.value, (int, float)) and not isinstance(self.value, bool):
            # unquoted numeric literals compare by value, everything else as text
            left = to_decimal(actual)
            if left is not None:
                return left == to_decimal(self.value)
        return as_text(actual) == as_text(self.value)

    def __str__(self) -> str:
        literal = f'"{self.value}"' if isinstance(self.value, str) else as_text(self.value)
        if self.value is None:
            literal = "null"
        return f"{SOURCE_NAMESPACE}.{self.field} {self.operator.value} {literal}"

def _parse_literal(text: str) -> Union[bool, int, float, str, None]:
    if text[0] in "\"'":
        return text[1:-1]
    if text in _KEYWORD_LITERALS:
        return _KEYWORD_LITERALS[text]
    if re.fullmatch(r"-?[0-9]+", text):
        return int(text)
    if re.fullmatch(r"-?[0-9]+\.[0-9]+", text):
        return float(text)
    return text

@lru_cache(maxsize=1024)
def parse_condition(condition: str) -> Condition:
    """Parse a condition string into a typed Condition"""
    if not isinstance(condition, str):
        raise ConditionSyntaxError("Condition must be a string")
    if len(condition) > settings.max_expression_length:
        raise ConditionSyntaxError(
            f"Condition exceeds maximum length of {settings.max_expression_length} characters"
        )

    match = _CONDITION_RE.fullmatch(condition)
    if not match:
        raise ConditionSyntaxError(f"Unsupported condition: {condition!r}")

    operator = _OPERATOR_ALIASES[match.group("op")]
    value = _parse_literal(match.group("literal"))
    if operator in (ConditionOperator.GREATER_THAN, ConditionOperator.LESS_THAN):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConditionSyntaxError(
                f"Operator '{match.group('op')}' requires a numeric literal: {condition!r}"
            )

    return Condition(field=match.group("field"), operator=operator, value=value)
