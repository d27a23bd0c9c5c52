"""
Value coercion rules and built-in functions for expressions.

Coercion follows the hosted CI expression language:
    - Truthiness: false, 0, -0, '', null and NaN are falsy, everything else
      (including empty arrays and objects) is truthy.
    - Loose equality: strings compare case-insensitively; values of different
      types are converted to numbers first; NaN never equals anything; arrays
      and objects are equal only when they are the same instance.
    - String conversion: null → '', booleans → 'true'/'false', integral
      numbers without a trailing '.0'.
"""

import json
import math
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any


class FilteredArray(list):
    """Result of an object filter (``a.*``); property access maps over it."""


def is_number(value: Any) -> bool:  # noqa: ANN401
    return isinstance(value, int | float) and not isinstance(value, bool)


def to_number(value: Any) -> float:  # noqa: ANN401
    """Convert a value to a number for comparisons (NaN when not convertible)."""
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if is_number(value):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0.0
        try:
            if text.lower().startswith(("0x", "-0x")):
                return float(int(text, 16))
            return float(text)
        except ValueError:
            return math.nan
    return math.nan


def is_truthy(value: Any) -> bool:  # noqa: ANN401
    if value is None or value is False:
        return False
    if is_number(value):
        return not (value == 0 or math.isnan(value))
    if isinstance(value, str):
        return value != ""
    return True


def to_string(value: Any) -> str:  # noqa: ANN401
    """Convert a value to its interpolated string form."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if math.isnan(value):
            return "NaN"
        if math.isinf(value):
            return "Infinity" if value > 0 else "-Infinity"
        if value.is_integer():
            return str(int(value))
        return repr(value)
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str):
        return value
    return to_json(value)


def _category(value: Any) -> str:  # noqa: ANN401
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if is_number(value):
        return "number"
    if isinstance(value, str):
        return "string"
    return "object"


def loose_equals(left: Any, right: Any) -> bool:  # noqa: ANN401
    left_kind, right_kind = _category(left), _category(right)

    if left_kind == right_kind:
        if left_kind == "string":
            return left.casefold() == right.casefold()
        if left_kind == "number":
            return not (math.isnan(left) or math.isnan(right)) and left == right
        if left_kind == "object":
            return left is right
        return left == right

    if "object" in (left_kind, right_kind):
        return False

    left_num, right_num = to_number(left), to_number(right)
    if math.isnan(left_num) or math.isnan(right_num):
        return False
    return left_num == right_num


def compare(operator: str, left: Any, right: Any) -> bool:  # noqa: ANN401
    """Ordering comparison (<, <=, >, >=)."""
    if isinstance(left, str) and isinstance(right, str):
        a: Any = left.casefold()
        b: Any = right.casefold()
    else:
        a, b = to_number(left), to_number(right)
        if math.isnan(a) or math.isnan(b):
            return False

    if operator == "<":
        return a < b
    if operator == "<=":
        return a <= b
    if operator == ">":
        return a > b
    return a >= b


def to_json(value: Any) -> str:  # noqa: ANN401
    return json.dumps(_plain(value), indent=2)


def _plain(value: Any) -> Any:  # noqa: ANN401
    """Unwrap context mappings so json can serialize them."""
    if isinstance(value, Mapping):
        return {str(k): _plain(v) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [_plain(v) for v in value]
    return value


# =============================================================================
# Built-in functions
# =============================================================================


def fn_contains(search: Any, item: Any) -> bool:  # noqa: ANN401
    if isinstance(search, list | tuple):
        return any(loose_equals(element, item) for element in search)
    return to_string(item).casefold() in to_string(search).casefold()


def fn_starts_with(search: Any, prefix: Any) -> bool:  # noqa: ANN401
    return to_string(search).casefold().startswith(to_string(prefix).casefold())


def fn_ends_with(search: Any, suffix: Any) -> bool:  # noqa: ANN401
    return to_string(search).casefold().endswith(to_string(suffix).casefold())


_FORMAT_TOKEN = re.compile(r"\{\{|\}\}|\{(\d+)\}|[{}]")


def fn_format(template: Any, *args: Any) -> str:  # noqa: ANN401
    """format('Hello {0}', name); '{{' and '}}' escape literal braces."""
    text = to_string(template)

    def replace(match: re.Match[str]) -> str:
        token = match.group(0)
        if token == "{{":
            return "{"
        if token == "}}":
            return "}"
        if match.group(1) is None:
            raise ValueError(f"unbalanced brace in format string '{text}'")
        index = int(match.group(1))
        if index >= len(args):
            raise ValueError(f"format string '{text}' references argument {index}")
        return to_string(args[index])

    return _FORMAT_TOKEN.sub(replace, text)


def fn_join(array: Any, separator: Any = ",") -> str:  # noqa: ANN401
    if isinstance(array, list | tuple):
        return to_string(separator).join(to_string(item) for item in array)
    return to_string(array)


def fn_from_json(value: Any) -> Any:  # noqa: ANN401
    text = to_string(value)
    if not text.strip():
        raise ValueError("fromJSON requires a non-empty string")
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise ValueError(f"fromJSON could not parse input: {e.msg}") from e


@dataclass(frozen=True)
class FunctionSpec:
    """Arity and implementation of a built-in function."""

    name: str
    min_args: int
    max_args: int
    impl: Callable[..., Any] | None = None  # None for status functions


STATUS_FUNCTIONS = frozenset({"success", "failure", "always", "cancelled"})

FUNCTIONS: dict[str, FunctionSpec] = {
    spec.name.lower(): spec
    for spec in (
        FunctionSpec("success", 0, 0),
        FunctionSpec("failure", 0, 0),
        FunctionSpec("always", 0, 0),
        FunctionSpec("cancelled", 0, 0),
        FunctionSpec("contains", 2, 2, fn_contains),
        FunctionSpec("startsWith", 2, 2, fn_starts_with),
        FunctionSpec("endsWith", 2, 2, fn_ends_with),
        FunctionSpec("format", 1, 255, fn_format),
        FunctionSpec("join", 1, 2, fn_join),
        FunctionSpec("toJSON", 1, 1, to_json),
        FunctionSpec("fromJSON", 1, 1, fn_from_json),
    )
}
