"""Expression language for ``if:`` conditions and ``${{ }}`` interpolation.

Example:
    >>> from pipelines_mcp.engine.expressions import ExpressionContext, NeedsEntry
    >>> ctx = ExpressionContext(needs={"build": NeedsEntry("success", {"version": "1.2"})})
    >>> interpolate("v${{ needs.build.outputs.version }}", ctx)
    'v1.2'
    >>> evaluate_condition("needs.build.result == 'success'", ctx)
    True
"""

from .context import ContextObject, ExpressionContext, NeedsEntry, StatusSnapshot, StepEntry
from .evaluator import evaluate
from .functions import is_truthy, loose_equals, to_string
from .interpolation import (
    evaluate_condition,
    interpolate,
    parse_condition,
    split_template,
    template_expressions,
)
from .parser import ParsedExpression, parse

__all__ = [
    # Context
    "ContextObject",
    "ExpressionContext",
    "NeedsEntry",
    "StatusSnapshot",
    "StepEntry",
    # Parsing
    "ParsedExpression",
    "parse",
    "parse_condition",
    "split_template",
    "template_expressions",
    # Evaluation
    "evaluate",
    "evaluate_condition",
    "interpolate",
    "is_truthy",
    "loose_equals",
    "to_string",
]
