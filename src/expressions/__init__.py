"""Condition expression language."""

from .evaluator import ExpressionEvaluator, evaluate, is_truthy, loose_equals
from .tokenizer import Token, TokenKind, sanitize, tokenize

__all__ = [
    "ExpressionEvaluator",
    "evaluate",
    "is_truthy",
    "loose_equals",
    "Token",
    "TokenKind",
    "sanitize",
    "tokenize",
]
