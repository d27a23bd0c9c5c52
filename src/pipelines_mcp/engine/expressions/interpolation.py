"""
``${{ }}`` template handling and ``if:`` condition preparation.

Templates:
    "deploy ${{ needs.build.outputs.version }} to ${{ inputs.target }}"

Each segment is evaluated and converted to a string. The closing ``}}`` is
searched for outside single-quoted string literals, so
``${{ format('{{0}}', x) }}`` is one segment.

Conditions:
    An ``if:`` may be written with or without the ``${{ }}`` wrapper. A
    condition that does not call success(), failure(), always() or cancelled()
    is implicitly ``success() && (<condition>)``; an absent condition is
    ``success()``.
"""

from dataclasses import dataclass
from functools import lru_cache

from ..exceptions import ExpressionSyntaxError
from .context import ExpressionContext
from .evaluator import evaluate
from .functions import is_truthy, to_string
from .parser import Binary, Call, ParsedExpression, parse

OPEN = "${{"
CLOSE = "}}"


@dataclass(frozen=True)
class Segment:
    """Literal text or an embedded expression."""

    text: str
    is_expression: bool


@lru_cache(maxsize=1024)
def split_template(template: str) -> tuple[Segment, ...]:
    """
    Split a template into literal and expression segments.

    Raises:
        ExpressionSyntaxError: If a ``${{`` is never closed
    """
    segments: list[Segment] = []
    pos = 0

    while True:
        start = template.find(OPEN, pos)
        if start == -1:
            if pos < len(template):
                segments.append(Segment(template[pos:], False))
            break

        if start > pos:
            segments.append(Segment(template[pos:start], False))

        end = _find_close(template, start + len(OPEN))
        if end == -1:
            raise ExpressionSyntaxError(template, "unterminated '${{'", position=start)

        inner = template[start + len(OPEN) : end].strip()
        segments.append(Segment(inner, True))
        pos = end + len(CLOSE)

    return tuple(segments)


def _find_close(template: str, pos: int) -> int:
    in_string = False
    while pos < len(template):
        char = template[pos]
        if char == "'":
            in_string = not in_string  # '' escapes toggle twice
        elif not in_string and template.startswith(CLOSE, pos):
            return pos
        pos += 1
    return -1


def template_expressions(template: str) -> list[ParsedExpression]:
    """Parse every expression in a template (used for load-time validation)."""
    return [parse(seg.text) for seg in split_template(template) if seg.is_expression]


def interpolate(template: str, context: ExpressionContext) -> str:
    """Evaluate every ``${{ }}`` segment and join the result as a string."""
    if OPEN not in template:
        return template

    parts: list[str] = []
    for segment in split_template(template):
        if segment.is_expression:
            parts.append(to_string(evaluate(segment.text, context)))
        else:
            parts.append(segment.text)
    return "".join(parts)


@lru_cache(maxsize=1024)
def parse_condition(condition: str | None) -> ParsedExpression:
    """
    Prepare an ``if:`` value for evaluation.

    Returns:
        ParsedExpression whose root includes the implicit ``success() &&``
        when the condition does not use a status function
    """
    if condition is None or not str(condition).strip():
        return ParsedExpression(source="success()", root=Call("success", ()))

    source = str(condition).strip()
    if source.startswith(OPEN) and source.endswith(CLOSE):
        segments = split_template(source)
        if len(segments) == 1 and segments[0].is_expression:
            source = segments[0].text

    parsed = parse(source)
    if parsed.uses_status_function():
        return parsed
    return ParsedExpression(source=source, root=Binary("&&", Call("success", ()), parsed.root))


def evaluate_condition(
    condition: str | ParsedExpression | None, context: ExpressionContext
) -> bool:
    """Evaluate an ``if:`` condition to a boolean.

    A ParsedExpression from parse_condition() is evaluated as is.
    """
    if not isinstance(condition, ParsedExpression):
        condition = parse_condition(condition)
    return is_truthy(evaluate(condition, context))
