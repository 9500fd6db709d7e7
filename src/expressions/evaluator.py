"""Safe evaluation of boolean condition expressions."""

import math
import re
from typing import Any

import structlog

from core.errors import ExpressionError
from core.variables import MISSING, lookup

from .tokenizer import COMPARISON_OPERATORS, Token, TokenKind, sanitize, tokenize

logger = structlog.get_logger()


def is_truthy(value: Any) -> bool:
    """JavaScript truthiness: containers are always truthy."""
    if value is MISSING or value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0 and not (isinstance(value, float) and math.isnan(value))
    if isinstance(value, str):
        return value != ""
    return True


def _to_primitive(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return ",".join(_to_string(item) for item in value)
    if isinstance(value, dict):
        return "[object Object]"
    return value


def _to_string(value: Any) -> str:
    if value is MISSING or value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (list, tuple, dict)):
        return _to_primitive(value)
    return str(value)


_DECIMAL = re.compile(r"[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?")
_INFINITY = re.compile(r"[+-]?Infinity")
_RADIX_LITERAL = re.compile(r"0([xXoObB])([0-9a-fA-F]+)")
_RADIX = {"x": 16, "o": 8, "b": 2}


def _int_to_float(value: int) -> float:
    try:
        return float(value)
    except OverflowError:
        return math.inf if value > 0 else -math.inf


def _string_to_number(text: str) -> float:
    """``Number(text)``: no underscores, ``Infinity`` spelled out, 0x/0o/0b prefixes."""
    text = text.strip()
    if not text:
        return 0.0
    if _DECIMAL.fullmatch(text):
        return float(text)
    if _INFINITY.fullmatch(text):
        return -math.inf if text.startswith("-") else math.inf
    match = _RADIX_LITERAL.fullmatch(text)
    if match:
        try:
            return _int_to_float(int(match.group(2), _RADIX[match.group(1).lower()]))
        except ValueError:
            return math.nan
    return math.nan


def _to_number(value: Any) -> float:
    if value is MISSING:
        return math.nan
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, int):
        return _int_to_float(value)
    if isinstance(value, float):
        return value
    if isinstance(value, str):
        return _string_to_number(value)
    return _to_number(_to_primitive(value)) if isinstance(value, (list, tuple)) else math.nan


def loose_equals(left: Any, right: Any) -> bool:
    """JavaScript abstract equality (``==``)."""
    left_nullish = left is MISSING or left is None
    right_nullish = right is MISSING or right is None
    if left_nullish or right_nullish:
        return left_nullish and right_nullish

    left_object = isinstance(left, (list, tuple, dict))
    right_object = isinstance(right, (list, tuple, dict))
    if left_object and right_object:
        return left is right
    if left_object:
        left = _to_primitive(left)
    if right_object:
        right = _to_primitive(right)

    if isinstance(left, str) and isinstance(right, str):
        return left == right

    return _to_number(left) == _to_number(right)


def compare(left: Any, right: Any, op: str) -> bool:
    """Relational comparison: strings compare lexicographically, else numerically."""
    left = _to_primitive(left)
    right = _to_primitive(right)

    if isinstance(left, str) and isinstance(right, str):
        a, b = left, right
    else:
        a, b = _to_number(left), _to_number(right)
        if math.isnan(a) or math.isnan(b):
            return False

    if op == "<":
        return a < b
    if op == ">":
        return a > b
    if op == "<=":
        return a <= b
    return a >= b


class ExpressionEvaluator:
    """
    Evaluates condition strings against a variable bag.

    Grammar, lowest precedence first: ``||``, ``&&``, one comparison
    (``== != < > <= >=``), unary ``!``, parenthesized group or single operand.
    Nothing in an expression is ever executed as code.
    """

    def evaluate(self, expression: str, variables: dict[str, Any]) -> bool:
        """Evaluate expression to a bool. Failures are logged and yield False."""
        try:
            if not isinstance(expression, str):
                raise ExpressionError(f"Expression must be a string, got {type(expression).__name__}")
            tokens = tokenize(sanitize(expression))
            if not tokens:
                raise ExpressionError("Empty expression", expression)
            result = is_truthy(self._evaluate_or(tokens, variables, expression))
        except ExpressionError as e:
            logger.warning(
                "expression_evaluation_failed",
                expression=expression,
                reason=e.message,
            )
            return False
        except (ValueError, TypeError, ArithmeticError, RecursionError) as e:
            logger.warning(
                "expression_evaluation_failed",
                expression=expression,
                reason=str(e),
            )
            return False

        logger.debug("expression_evaluated", expression=expression, result=result)
        return result

    def _evaluate_or(self, tokens: list[Token], variables: dict[str, Any], source: str) -> Any:
        value: Any = False
        for part in self._split(tokens, "||", source):
            value = self._evaluate_and(part, variables, source)
            if is_truthy(value):
                return value
        return value

    def _evaluate_and(self, tokens: list[Token], variables: dict[str, Any], source: str) -> Any:
        value: Any = True
        for part in self._split(tokens, "&&", source):
            value = self._evaluate_comparison(part, variables, source)
            if not is_truthy(value):
                return value
        return value

    def _evaluate_comparison(self, tokens: list[Token], variables: dict[str, Any], source: str) -> Any:
        depth = 0
        position = None
        for index, token in enumerate(tokens):
            if token.is_operator("("):
                depth += 1
            elif token.is_operator(")"):
                depth -= 1
            elif depth == 0 and token.is_operator(*COMPARISON_OPERATORS):
                if position is not None:
                    raise ExpressionError("Chained comparisons are not supported", source)
                position = index

        if position is None:
            return self._evaluate_operand(tokens, variables, source)

        op = tokens[position].value
        left = self._evaluate_operand(tokens[:position], variables, source)
        right = self._evaluate_operand(tokens[position + 1:], variables, source)

        if op == "==":
            return loose_equals(left, right)
        if op == "!=":
            return not loose_equals(left, right)
        return compare(left, right, op)

    def _evaluate_operand(self, tokens: list[Token], variables: dict[str, Any], source: str) -> Any:
        if not tokens:
            raise ExpressionError("Missing operand", source)

        first = tokens[0]
        if first.is_operator("!"):
            return not is_truthy(self._evaluate_operand(tokens[1:], variables, source))

        if first.is_operator("(") and self._closing_index(tokens, source) == len(tokens) - 1:
            return self._evaluate_or(tokens[1:-1], variables, source)

        if len(tokens) != 1:
            raise ExpressionError(f"Unexpected token {tokens[1].value!r}", source)

        return self._resolve(first, variables, source)

    def _resolve(self, token: Token, variables: dict[str, Any], source: str) -> Any:
        if token.kind is TokenKind.VARIABLE:
            return lookup(variables, token.value)
        if token.kind is TokenKind.OPERATOR:
            raise ExpressionError(f"Unexpected operator {token.value!r}", source)
        return token.value

    def _closing_index(self, tokens: list[Token], source: str) -> int:
        depth = 0
        for index, token in enumerate(tokens):
            if token.is_operator("("):
                depth += 1
            elif token.is_operator(")"):
                depth -= 1
                if depth == 0:
                    return index
        raise ExpressionError("Unbalanced parentheses", source)

    def _split(self, tokens: list[Token], op: str, source: str) -> list[list[Token]]:
        """Split tokens on a logical operator outside parentheses."""
        parts: list[list[Token]] = [[]]
        depth = 0
        for token in tokens:
            if token.is_operator("("):
                depth += 1
            elif token.is_operator(")"):
                depth -= 1
                if depth < 0:
                    raise ExpressionError("Unbalanced parentheses", source)

            if depth == 0 and token.is_operator(op):
                parts.append([])
            else:
                parts[-1].append(token)

        if depth != 0:
            raise ExpressionError("Unbalanced parentheses", source)
        if any(not part for part in parts):
            raise ExpressionError(f"Missing operand for {op!r}", source)
        return parts


_default_evaluator = ExpressionEvaluator()


def evaluate(expression: str, variables: dict[str, Any]) -> bool:
    """Evaluate with a shared stateless evaluator."""
    return _default_evaluator.evaluate(expression, variables)
