"""Variable bag lookup and ``{{name}}`` interpolation."""

import json
import re
from typing import Any


class _Missing:
    """Marker for a name with no binding in the variable bag."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING = _Missing()

REFERENCE_PATTERN = re.compile(r"\{\{([^}]+)\}\}")
_BRACKET_PATTERN = re.compile(r"\[\s*['\"]?([^\]'\"]*)['\"]?\s*\]")


def lookup(variables: dict[str, Any], name: str) -> Any:
    """
    Resolve a variable name against the bag.

    A literal key wins; otherwise the name is walked as a path
    (``contact.email``, ``items.0``, ``items[0].id``). Returns MISSING when
    nothing is bound.
    """
    if name in variables:
        return variables[name]

    path = _BRACKET_PATTERN.sub(r".\1", name).strip(".")
    if "." not in path:
        return MISSING

    return _navigate_path(variables, path.split("."))


def _navigate_path(data: Any, path: list[str]) -> Any:
    """Navigate a dot-separated path in data."""
    current = data
    for part in path:
        if isinstance(current, dict):
            if part not in current:
                return MISSING
            current = current[part]
        elif isinstance(current, (list, tuple)):
            try:
                index = int(part)
            except ValueError:
                return MISSING
            if not 0 <= index < len(current):
                return MISSING
            current = current[index]
        else:
            return MISSING

    return current


def stringify(value: Any) -> str:
    """Render a bound value for partial substitution into a string."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def interpolate(value: Any, variables: dict[str, Any]) -> Any:
    """
    Replace ``{{name}}`` references in value, recursing through lists and dicts.

    A string that is exactly one reference yields the bound value itself so
    lists and objects survive. Unresolved references are left verbatim.
    """
    if isinstance(value, str):
        whole = REFERENCE_PATTERN.fullmatch(value)
        if whole:
            bound = lookup(variables, whole.group(1).strip())
            return value if bound is MISSING else bound

        def replace(match: re.Match) -> str:
            bound = lookup(variables, match.group(1).strip())
            if bound is MISSING:
                return match.group(0)
            return stringify(bound)

        return REFERENCE_PATTERN.sub(replace, value)
    elif isinstance(value, dict):
        return {k: interpolate(v, variables) for k, v in value.items()}
    elif isinstance(value, list):
        return [interpolate(v, variables) for v in value]
    return value
