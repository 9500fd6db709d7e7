"""Sanitizer and scanner for condition expressions."""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any

from core.errors import ExpressionError


# Rejected anywhere in the expression, case-insensitively
DENY_LIST = (
    "function", "eval", "constructor", "prototype", "window", "document",
    "process", "require", "import", "export", "__proto__", "this",
    "settimeout", "setinterval", "fetch", "xmlhttprequest", "websocket",
    "localstorage", "sessionstorage", "indexeddb", "navigator", "location",
    "history", "script", "__",
)

# Rejected only as whole identifiers
DENY_WORDS = re.compile(
    r"\b(lambda|exec|compile|globals|locals|getattr|setattr|builtins|subprocess)\b",
    re.IGNORECASE,
)

ALLOWED_CHARS = re.compile(r"^[A-Za-z0-9\s.\[\]\"'<>=!&|()_-]+$")

TWO_CHAR_OPERATORS = ("==", "!=", "<=", ">=", "&&", "||")
ONE_CHAR_OPERATORS = ("<", ">", "!", "(", ")")
COMPARISON_OPERATORS = ("==", "!=", "<", ">", "<=", ">=")

_NUMBER = re.compile(r"\d+(\.\d+)?")
_IDENTIFIER_START = re.compile(r"[A-Za-z_]")
_IDENTIFIER_CHAR = re.compile(r"[A-Za-z0-9_.\-]")


class TokenKind(Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    NULL = "null"
    VARIABLE = "variable"
    OPERATOR = "operator"


@dataclass(frozen=True)
class Token:
    kind: TokenKind
    value: Any

    def is_operator(self, *symbols: str) -> bool:
        return self.kind is TokenKind.OPERATOR and (not symbols or self.value in symbols)


def sanitize(expression: str) -> str:
    """Reject code-execution keywords and unexpected characters."""
    lowered = expression.lower()
    for word in DENY_LIST:
        if word in lowered:
            raise ExpressionError(f"Forbidden keyword in expression: {word}", expression)

    match = DENY_WORDS.search(expression)
    if match:
        raise ExpressionError(
            f"Forbidden keyword in expression: {match.group(1).lower()}", expression
        )

    if not ALLOWED_CHARS.match(expression):
        raise ExpressionError("Invalid characters in expression", expression)

    return expression.strip()


def tokenize(expression: str) -> list[Token]:
    """
    Scan an expression into tokens.

    Quoted strings may contain operator characters. Two-character operators are
    matched before single-character ones. Identifiers may carry dotted and
    bracketed path segments (``items[0].id``).
    """
    tokens: list[Token] = []
    i = 0
    length = len(expression)

    while i < length:
        char = expression[i]

        if char.isspace():
            i += 1
            continue

        if char in ("'", '"'):
            end = expression.find(char, i + 1)
            if end == -1:
                raise ExpressionError("Unterminated string literal", expression)
            tokens.append(Token(TokenKind.STRING, expression[i + 1:end]))
            i = end + 1
            continue

        pair = expression[i:i + 2]
        if pair in TWO_CHAR_OPERATORS:
            tokens.append(Token(TokenKind.OPERATOR, pair))
            i += 2
            continue

        if char in ONE_CHAR_OPERATORS:
            tokens.append(Token(TokenKind.OPERATOR, char))
            i += 1
            continue

        # A leading minus is a sign only where an operand is expected
        signed = (
            char == "-"
            and i + 1 < length
            and expression[i + 1].isdigit()
            and (not tokens or (tokens[-1].kind is TokenKind.OPERATOR and tokens[-1].value != ")"))
        )
        if char.isdigit() or signed:
            match = _NUMBER.match(expression, i + 1 if signed else i)
            end = match.end()
            if end < length and (expression[end] == "." or _IDENTIFIER_START.match(expression[end])):
                raise ExpressionError(f"Malformed number at position {i}", expression)
            text = expression[i:end]
            tokens.append(Token(TokenKind.NUMBER, float(text) if "." in text else int(text)))
            i = end
            continue

        if _IDENTIFIER_START.match(char):
            end = _scan_identifier(expression, i)
            word = expression[i:end]
            if word == "true" or word == "false":
                tokens.append(Token(TokenKind.BOOLEAN, word == "true"))
            elif word == "null":
                tokens.append(Token(TokenKind.NULL, None))
            else:
                tokens.append(Token(TokenKind.VARIABLE, word))
            i = end
            continue

        raise ExpressionError(f"Unexpected character {char!r} at position {i}", expression)

    return tokens


def _scan_identifier(expression: str, start: int) -> int:
    i = start
    while i < len(expression):
        char = expression[i]
        if _IDENTIFIER_CHAR.match(char):
            i += 1
        elif char == "[":
            close = expression.find("]", i)
            if close == -1:
                raise ExpressionError("Unterminated index in variable path", expression)
            i = close + 1
        else:
            break
    return i
