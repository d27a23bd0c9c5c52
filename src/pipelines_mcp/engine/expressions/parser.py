"""
Recursive-descent parser producing an immutable expression AST.

Precedence, lowest to highest:
    ||   &&   == !=   < <= > >=   !   property/index/filter access

Function names are validated (and arity-checked) at parse time, so an unknown
function is a syntax error raised while the workflow is loaded rather than
halfway through a run.
"""

from __future__ import annotations

import math
from collections.abc import Iterator
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from ..exceptions import ExpressionSyntaxError
from .functions import FUNCTIONS, STATUS_FUNCTIONS
from .lexer import Token, TokenKind, tokenize


class Node:
    """Base class for AST nodes."""

    def children(self) -> tuple[Node, ...]:
        return ()


@dataclass(frozen=True)
class Literal(Node):
    value: Any


@dataclass(frozen=True)
class ContextRef(Node):
    """Top-level context name (github, needs, steps, ...)."""

    name: str


@dataclass(frozen=True)
class Property(Node):
    target: Node
    name: str

    def children(self) -> tuple[Node, ...]:
        return (self.target,)


@dataclass(frozen=True)
class Index(Node):
    target: Node
    index: Node

    def children(self) -> tuple[Node, ...]:
        return (self.target, self.index)


@dataclass(frozen=True)
class Filter(Node):
    """Object filter: ``target.*`` or ``target[*]``."""

    target: Node

    def children(self) -> tuple[Node, ...]:
        return (self.target,)


@dataclass(frozen=True)
class Call(Node):
    name: str  # canonical lower-case function name
    args: tuple[Node, ...]

    def children(self) -> tuple[Node, ...]:
        return self.args


@dataclass(frozen=True)
class Not(Node):
    operand: Node

    def children(self) -> tuple[Node, ...]:
        return (self.operand,)


@dataclass(frozen=True)
class Binary(Node):
    """Comparison or logical operator."""

    op: str
    left: Node
    right: Node

    def children(self) -> tuple[Node, ...]:
        return (self.left, self.right)


def walk(node: Node) -> Iterator[Node]:
    """Depth-first iteration over a node and its descendants."""
    yield node
    for child in node.children():
        yield from walk(child)


@dataclass(frozen=True)
class ParsedExpression:
    """A parsed expression together with its source text."""

    source: str
    root: Node

    def function_names(self) -> set[str]:
        return {node.name for node in walk(self.root) if isinstance(node, Call)}

    def uses_status_function(self) -> bool:
        """True if success(), failure(), always() or cancelled() appears."""
        return bool(self.function_names() & STATUS_FUNCTIONS)

    def tolerates_cancellation(self) -> bool:
        """True if the expression can be true after the run was cancelled."""
        return bool(self.function_names() & {"always", "cancelled"})

    def references(self, context: str) -> set[str]:
        """
        Names dereferenced directly below a top-level context.

        Example:
            parse("secrets.TOKEN && needs.build.result").references("secrets")
            # {'TOKEN'}
        """
        names: set[str] = set()
        for node in walk(self.root):
            if isinstance(node, Property) and isinstance(node.target, ContextRef):
                if node.target.name == context:
                    names.add(node.name)
            elif (
                isinstance(node, Index)
                and isinstance(node.target, ContextRef)
                and node.target.name == context
                and isinstance(node.index, Literal)
                and isinstance(node.index.value, str)
            ):
                names.add(node.index.value)
        return names


class _Parser:
    """Single-use parser over a token list."""

    def __init__(self, source: str):
        self.source = source
        self.tokens = tokenize(source)
        self.pos = 0

    def parse(self) -> Node:
        if self._peek().kind == TokenKind.END:
            raise ExpressionSyntaxError(self.source, "expression is empty", position=0)
        node = self._parse_or()
        token = self._peek()
        if token.kind != TokenKind.END:
            raise self._error(token, f"unexpected '{token.value}'")
        return node

    # -- helpers --------------------------------------------------------------

    def _peek(self) -> Token:
        return self.tokens[self.pos]

    def _advance(self) -> Token:
        token = self.tokens[self.pos]
        self.pos += 1
        return token

    def _match_operator(self, *operators: str) -> str | None:
        token = self._peek()
        if token.kind == TokenKind.OPERATOR and token.value in operators:
            self.pos += 1
            return token.value
        return None

    def _expect(self, kind: TokenKind, description: str) -> Token:
        token = self._peek()
        if token.kind != kind:
            found = token.value or "end of expression"
            raise self._error(token, f"expected {description}, found '{found}'")
        return self._advance()

    def _error(self, token: Token, reason: str) -> ExpressionSyntaxError:
        return ExpressionSyntaxError(self.source, reason, position=token.position)

    # -- grammar --------------------------------------------------------------

    def _parse_or(self) -> Node:
        node = self._parse_and()
        while self._match_operator("||"):
            node = Binary("||", node, self._parse_and())
        return node

    def _parse_and(self) -> Node:
        node = self._parse_equality()
        while self._match_operator("&&"):
            node = Binary("&&", node, self._parse_equality())
        return node

    def _parse_equality(self) -> Node:
        node = self._parse_comparison()
        while op := self._match_operator("==", "!="):
            node = Binary(op, node, self._parse_comparison())
        return node

    def _parse_comparison(self) -> Node:
        node = self._parse_unary()
        while op := self._match_operator("<", "<=", ">", ">="):
            node = Binary(op, node, self._parse_unary())
        return node

    def _parse_unary(self) -> Node:
        if self._match_operator("!"):
            return Not(self._parse_unary())
        return self._parse_postfix()

    def _parse_postfix(self) -> Node:
        node = self._parse_primary()
        while True:
            token = self._peek()
            if token.kind == TokenKind.DOT:
                self._advance()
                name = self._peek()
                if name.kind == TokenKind.STAR:
                    self._advance()
                    node = Filter(node)
                elif name.kind in (TokenKind.IDENT, TokenKind.KEYWORD):
                    self._advance()
                    node = Property(node, name.value)
                else:
                    raise self._error(name, "expected property name after '.'")
            elif token.kind == TokenKind.LBRACKET:
                self._advance()
                if self._peek().kind == TokenKind.STAR:
                    self._advance()
                    node = Filter(node)
                else:
                    node = Index(node, self._parse_or())
                self._expect(TokenKind.RBRACKET, "']'")
            else:
                return node

    def _parse_primary(self) -> Node:
        token = self._advance()

        if token.kind == TokenKind.NUMBER:
            return Literal(_parse_number(token.value))
        if token.kind == TokenKind.STRING:
            return Literal(token.value)
        if token.kind == TokenKind.KEYWORD:
            return Literal(_KEYWORD_VALUES[token.value])
        if token.kind == TokenKind.LPAREN:
            node = self._parse_or()
            self._expect(TokenKind.RPAREN, "')'")
            return node
        if token.kind == TokenKind.IDENT:
            if self._peek().kind == TokenKind.LPAREN:
                return self._parse_call(token)
            return ContextRef(token.value.lower())

        found = token.value or "end of expression"
        raise self._error(token, f"unexpected '{found}'")

    def _parse_call(self, name_token: Token) -> Node:
        spec = FUNCTIONS.get(name_token.value.lower())
        if spec is None:
            raise self._error(name_token, f"unknown function '{name_token.value}'")

        self._expect(TokenKind.LPAREN, "'('")
        args: list[Node] = []
        if self._peek().kind != TokenKind.RPAREN:
            args.append(self._parse_or())
            while self._peek().kind == TokenKind.COMMA:
                self._advance()
                args.append(self._parse_or())
        self._expect(TokenKind.RPAREN, "')'")

        if not spec.min_args <= len(args) <= spec.max_args:
            expected = (
                str(spec.min_args)
                if spec.min_args == spec.max_args
                else f"{spec.min_args}-{spec.max_args}"
            )
            raise self._error(
                name_token,
                f"function '{spec.name}' expects {expected} argument(s), got {len(args)}",
            )
        return Call(spec.name.lower(), tuple(args))


_KEYWORD_VALUES: dict[str, Any] = {
    "true": True,
    "false": False,
    "null": None,
    "NaN": math.nan,
    "Infinity": math.inf,
}


def _parse_number(text: str) -> int | float:
    negative = text.startswith("-")
    body = text[1:] if negative else text
    if body == "Infinity":
        value: int | float = math.inf
    elif body[:2].lower() == "0x":
        value = int(body, 16)
    elif any(c in body for c in ".eE"):
        value = float(body)
    else:
        value = int(body)
    return -value if negative else value


@lru_cache(maxsize=2048)
def parse(source: str) -> ParsedExpression:
    """
    Parse an expression (without the ``${{ }}`` wrapper).

    Results are cached; the AST is immutable so sharing is safe.

    Raises:
        ExpressionSyntaxError: If the expression is malformed
    """
    return ParsedExpression(source=source, root=_Parser(source).parse())
