"""
Condition Expressions

A small boolean expression language evaluated without dynamic code execution:

    ${execution.formData.fields.value} > 10000 and not (deal.stage == "Lost")
    node("router_1").selectedRoute in ["high", "medium"]

Supported:
- literals: numbers, quoted strings, true/false/null, [list, of, literals]
- references: ${path}, node("id").path, bare dotted paths
- comparisons: == != < <= > >= in, not in, contains
- connectives: and/or/not (also && || !) and parentheses

Structured conditions ``[{field, operator, value}]`` share the same
comparison table.
"""

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from ..exceptions import ConfigurationError


class ExpressionSyntaxError(ConfigurationError):
    """Raised when a condition expression cannot be parsed."""

    def __init__(self, message: str, expression: str, position: Optional[int] = None):
        self.expression = expression
        self.position = position
        details = {"expression": expression}
        if position is not None:
            details["position"] = position
        super().__init__(message, details=details)


# =============================================================================
# AST
# =============================================================================


@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class ListLiteral:
    items: Tuple["Expression", ...]


@dataclass(frozen=True)
class Reference:
    path: str


@dataclass(frozen=True)
class Compare:
    operator: str
    left: "Expression"
    right: "Expression"


@dataclass(frozen=True)
class BoolOp:
    operator: str  # "and" | "or"
    operands: Tuple["Expression", ...]


@dataclass(frozen=True)
class Not:
    operand: "Expression"


Expression = Union[Literal, ListLiteral, Reference, Compare, BoolOp, Not]


# =============================================================================
# Comparison table
# =============================================================================

OPERATOR_ALIASES = {
    "$eq": "==",
    "$ne": "!=",
    "$gt": ">",
    "$gte": ">=",
    "$lt": "<",
    "$lte": "<=",
    "$in": "in",
    "$contains": "contains",
    "not in": "not_in",
}

_NUMERIC_PATTERN = re.compile(r"^\s*-?\d+(\.\d+)?\s*$")


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str) and _NUMERIC_PATTERN.match(value):
        return float(value)
    return None


def _coerce_pair(actual: Any, expected: Any) -> Tuple[Any, Any]:
    """Compare numeric strings as numbers when the other side is numeric."""
    if isinstance(actual, str) != isinstance(expected, str):
        a, e = _as_number(actual), _as_number(expected)
        if a is not None and e is not None:
            return a, e
    return actual, expected


def compare(actual: Any, operator: str, expected: Any = None) -> bool:
    """Apply a comparison operator; type mismatches evaluate to False."""
    op = OPERATOR_ALIASES.get(operator, operator)
    try:
        if op in ("==", "!=", "<", ">", "<=", ">="):
            actual, expected = _coerce_pair(actual, expected)
        if op == "==":
            return actual == expected
        if op == "!=":
            return actual != expected
        if op in ("<", ">", "<=", ">="):
            if actual is None or expected is None:
                return False
            if op == "<":
                return actual < expected
            if op == ">":
                return actual > expected
            if op == "<=":
                return actual <= expected
            return actual >= expected
        if op == "in":
            return expected is not None and actual in expected
        if op == "not_in":
            return expected is None or actual not in expected
        if op == "contains":
            return actual is not None and expected in actual
        if op == "is_none":
            return actual is None
        if op == "is_not_none":
            return actual is not None
        if op == "is_true":
            return actual is True
        if op == "is_false":
            return actual is False
    except (TypeError, ValueError):
        return False
    return False


SUPPORTED_OPERATORS = frozenset(
    ["==", "!=", "<", ">", "<=", ">=", "in", "not_in", "contains",
     "is_none", "is_not_none", "is_true", "is_false"]
) | frozenset(OPERATOR_ALIASES)


# =============================================================================
# Tokenizer
# =============================================================================

_TOKEN_SPEC = [
    ("WS", r"\s+"),
    ("REF", r"\$\{[^}]*\}"),
    ("NODE", r"""node\(\s*(?:"[^"]*"|'[^']*')\s*\)(?:\.[A-Za-z_]\w*|\[\d+\])*"""),
    ("STRING", r'"(?:[^"\\]|\\.)*"|\'(?:[^\'\\]|\\.)*\''),
    ("NUMBER", r"-?\d+(?:\.\d+)?"),
    ("OP", r"==|!=|<=|>=|<|>|&&|\|\||!"),
    ("LPAREN", r"\("),
    ("RPAREN", r"\)"),
    ("LBRACKET", r"\["),
    ("RBRACKET", r"\]"),
    ("COMMA", r","),
    ("NAME", r"[A-Za-z_]\w*(?:\.[A-Za-z_]\w*|\[\d+\])*"),
]
_TOKEN_PATTERN = re.compile("|".join(f"(?P<{name}>{pattern})" for name, pattern in _TOKEN_SPEC))

_KEYWORD_LITERALS = {"true": True, "false": False, "null": None, "none": None}

Token = Tuple[str, str, int]


def tokenize(expression: str) -> List[Token]:
    tokens: List[Token] = []
    position = 0
    while position < len(expression):
        match = _TOKEN_PATTERN.match(expression, position)
        if not match:
            raise ExpressionSyntaxError(
                f"Unexpected character {expression[position]!r}", expression, position
            )
        kind = match.lastgroup
        if kind != "WS":
            tokens.append((kind, match.group(), position))
        position = match.end()
    return tokens


# =============================================================================
# Parser
# =============================================================================


class _Parser:
    """Recursive-descent parser producing an Expression tree."""

    def __init__(self, expression: str):
        self.expression = expression
        self.tokens = tokenize(expression)
        self.index = 0

    def _peek(self, offset: int = 0) -> Optional[Token]:
        i = self.index + offset
        return self.tokens[i] if i < len(self.tokens) else None

    def _advance(self) -> Token:
        token = self._peek()
        if token is None:
            raise ExpressionSyntaxError("Unexpected end of expression", self.expression)
        self.index += 1
        return token

    def _is_keyword(self, token: Optional[Token], *words: str) -> bool:
        return token is not None and token[0] == "NAME" and token[1].lower() in words

    def _error(self, message: str, token: Optional[Token]) -> ExpressionSyntaxError:
        return ExpressionSyntaxError(message, self.expression, token[2] if token else None)

    def parse(self) -> Expression:
        if not self.tokens:
            raise ExpressionSyntaxError("Empty expression", self.expression)
        node = self._or()
        trailing = self._peek()
        if trailing is not None:
            raise self._error(f"Unexpected token {trailing[1]!r}", trailing)
        return node

    def _or(self) -> Expression:
        operands = [self._and()]
        while True:
            token = self._peek()
            if self._is_keyword(token, "or") or (token and token[0] == "OP" and token[1] == "||"):
                self._advance()
                operands.append(self._and())
            else:
                break
        return operands[0] if len(operands) == 1 else BoolOp("or", tuple(operands))

    def _and(self) -> Expression:
        operands = [self._not()]
        while True:
            token = self._peek()
            if self._is_keyword(token, "and") or (token and token[0] == "OP" and token[1] == "&&"):
                self._advance()
                operands.append(self._not())
            else:
                break
        return operands[0] if len(operands) == 1 else BoolOp("and", tuple(operands))

    def _not(self) -> Expression:
        token = self._peek()
        if self._is_keyword(token, "not") and not self._is_keyword(self._peek(1), "in"):
            self._advance()
            return Not(self._not())
        if token and token[0] == "OP" and token[1] == "!":
            self._advance()
            return Not(self._not())
        return self._comparison()

    def _comparison(self) -> Expression:
        left = self._operand()
        token = self._peek()
        operator = None
        if token and token[0] == "OP" and token[1] in ("==", "!=", "<", "<=", ">", ">="):
            operator = token[1]
            self._advance()
        elif self._is_keyword(token, "in", "contains"):
            operator = token[1].lower()
            self._advance()
        elif self._is_keyword(token, "not") and self._is_keyword(self._peek(1), "in"):
            operator = "not_in"
            self._advance()
            self._advance()
        if operator is None:
            return left
        return Compare(operator, left, self._operand())

    def _operand(self) -> Expression:
        token = self._advance()
        kind, text, _ = token
        if kind == "LPAREN":
            inner = self._or()
            closing = self._advance()
            if closing[0] != "RPAREN":
                raise self._error("Expected ')'", closing)
            return inner
        if kind == "LBRACKET":
            items: List[Expression] = []
            if self._peek() and self._peek()[0] == "RBRACKET":
                self._advance()
                return ListLiteral(tuple(items))
            while True:
                items.append(self._operand())
                separator = self._advance()
                if separator[0] == "RBRACKET":
                    return ListLiteral(tuple(items))
                if separator[0] != "COMMA":
                    raise self._error("Expected ',' or ']'", separator)
        if kind == "STRING":
            body = text[1:-1]
            return Literal(re.sub(r"\\(.)", r"\1", body))
        if kind == "NUMBER":
            return Literal(float(text) if "." in text else int(text))
        if kind == "REF":
            return Reference(text[2:-1])
        if kind == "NODE":
            return Reference(text)
        if kind == "NAME":
            lowered = text.lower()
            if lowered in _KEYWORD_LITERALS:
                return Literal(_KEYWORD_LITERALS[lowered])
            if lowered in ("and", "or", "not", "in", "contains"):
                raise self._error(f"Unexpected keyword {text!r}", token)
            return Reference(text)
        raise self._error(f"Unexpected token {text!r}", token)


@lru_cache(maxsize=512)
def parse_expression(expression: str) -> Expression:
    """Parse (and cache) a condition expression."""
    return _Parser(expression).parse()


# =============================================================================
# Evaluation
# =============================================================================

Resolver = Callable[[str], Any]


def _value_of(node: Expression, resolve: Resolver) -> Any:
    if isinstance(node, Literal):
        return node.value
    if isinstance(node, ListLiteral):
        return [_value_of(item, resolve) for item in node.items]
    if isinstance(node, Reference):
        return resolve(node.path)
    return _truth(node, resolve)


def _truth(node: Expression, resolve: Resolver) -> bool:
    if isinstance(node, Compare):
        return compare(_value_of(node.left, resolve), node.operator, _value_of(node.right, resolve))
    if isinstance(node, BoolOp):
        if node.operator == "and":
            return all(_truth(operand, resolve) for operand in node.operands)
        return any(_truth(operand, resolve) for operand in node.operands)
    if isinstance(node, Not):
        return not _truth(node.operand, resolve)
    return bool(_value_of(node, resolve))


def evaluate_expression(expression: Union[str, Expression], resolve: Resolver) -> bool:
    """
    Evaluate a condition expression to a boolean.

    Args:
        expression: Expression text or a parsed tree
        resolve: Callback resolving a reference path to a value

    Raises:
        ExpressionSyntaxError: If the expression cannot be parsed
    """
    tree = parse_expression(expression.strip()) if isinstance(expression, str) else expression
    return _truth(tree, resolve)


def evaluate_conditions(conditions: Sequence[Dict[str, Any]], resolve: Resolver) -> bool:
    """
    Evaluate structured conditions; all must hold.

    Each condition is ``{"field": path, "operator": op, "value": expected}``.
    """
    for condition in conditions:
        operator = condition.get("operator", "==")
        if operator not in SUPPORTED_OPERATORS:
            raise ConfigurationError(f"Unsupported condition operator: {operator}")
        field = condition.get("field")
        if not field:
            raise ConfigurationError("Condition is missing 'field'")
        if not compare(resolve(field), operator, condition.get("value")):
            return False
    return True
