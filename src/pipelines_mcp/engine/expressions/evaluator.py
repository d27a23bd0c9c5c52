"""AST evaluation against an ExpressionContext."""

from collections.abc import Mapping
from typing import Any

from ..exceptions import ExpressionEvaluationError
from .context import ContextObject, ExpressionContext
from .functions import FUNCTIONS, FilteredArray, compare, is_number, is_truthy, loose_equals
from .parser import Binary, Call, ContextRef, Filter, Index, Literal, Node, Not, ParsedExpression
from .parser import Property as PropertyNode
from .parser import parse


def evaluate(expression: str | ParsedExpression, context: ExpressionContext) -> Any:  # noqa: ANN401
    """
    Evaluate an expression to a value.

    Args:
        expression: Expression source (without ``${{ }}``) or a parsed expression
        context: Evaluation context snapshot

    Returns:
        The resulting value (str, number, bool, None, list or mapping)

    Raises:
        ExpressionSyntaxError: If the source cannot be parsed
        ExpressionEvaluationError: If evaluation fails
    """
    parsed = parse(expression) if isinstance(expression, str) else expression
    return _Evaluator(parsed.source, context).visit(parsed.root)


class _Evaluator:
    def __init__(self, source: str, context: ExpressionContext):
        self.source = source
        self.context = context

    def visit(self, node: Node) -> Any:  # noqa: ANN401
        if isinstance(node, Literal):
            return node.value
        if isinstance(node, ContextRef):
            return self.context.namespace(node.name, self.source)
        if isinstance(node, PropertyNode):
            return self._property(self.visit(node.target), node.name)
        if isinstance(node, Index):
            return self._index(self.visit(node.target), self.visit(node.index))
        if isinstance(node, Filter):
            return self._filter(self.visit(node.target))
        if isinstance(node, Not):
            return not is_truthy(self.visit(node.operand))
        if isinstance(node, Binary):
            return self._binary(node)
        if isinstance(node, Call):
            return self._call(node)
        raise ExpressionEvaluationError(self.source, f"unsupported node {type(node).__name__}")

    def _property(self, target: Any, name: str) -> Any:  # noqa: ANN401
        if isinstance(target, FilteredArray):
            mapped = FilteredArray()
            for item in target:
                value = self._property(item, name)
                if value is not None:
                    mapped.append(value)
            return mapped
        if isinstance(target, ContextObject):
            return target.lookup(name, self.source)
        if isinstance(target, Mapping):
            if name in target:
                return target[name]
            folded = name.casefold()
            for key, value in target.items():
                if str(key).casefold() == folded:
                    return value
        return None

    def _index(self, target: Any, index: Any) -> Any:  # noqa: ANN401
        if isinstance(target, list | tuple):
            if is_number(index) and float(index).is_integer():
                position = int(index)
                if 0 <= position < len(target):
                    return target[position]
            return None
        if isinstance(target, Mapping) and isinstance(index, str):
            return self._property(target, index)
        return None

    def _filter(self, target: Any) -> FilteredArray:  # noqa: ANN401
        if isinstance(target, Mapping):
            return FilteredArray(target.values())
        if isinstance(target, list | tuple):
            return FilteredArray(target)
        return FilteredArray()

    def _binary(self, node: Binary) -> Any:  # noqa: ANN401
        left = self.visit(node.left)

        # Short-circuit: return the deciding operand, not a bool
        if node.op == "&&":
            return self.visit(node.right) if is_truthy(left) else left
        if node.op == "||":
            return left if is_truthy(left) else self.visit(node.right)

        right = self.visit(node.right)
        if node.op == "==":
            return loose_equals(left, right)
        if node.op == "!=":
            return not loose_equals(left, right)
        return compare(node.op, left, right)

    def _call(self, node: Call) -> Any:  # noqa: ANN401
        status = self.context.status
        if node.name == "always":
            return True
        if node.name == "cancelled":
            return status.cancelled
        if node.name == "success":
            return status.succeeded and not status.failed and not status.cancelled
        if node.name == "failure":
            return status.failed

        spec = FUNCTIONS[node.name]
        args = [self.visit(arg) for arg in node.args]
        assert spec.impl is not None
        try:
            return spec.impl(*args)
        except (ValueError, TypeError) as e:
            raise ExpressionEvaluationError(self.source, f"{spec.name}(): {e}") from e
