"""Tokenizer for ``${{ }}`` expressions."""

import re
from dataclasses import dataclass
from enum import Enum

from ..exceptions import ExpressionSyntaxError


class TokenKind(Enum):
    """Token categories produced by the tokenizer."""

    NUMBER = "number"
    STRING = "string"
    IDENT = "ident"
    KEYWORD = "keyword"  # true, false, null, NaN, Infinity
    OPERATOR = "operator"  # == != < <= > >= && || !
    DOT = "dot"
    STAR = "star"
    COMMA = "comma"
    LPAREN = "lparen"
    RPAREN = "rparen"
    LBRACKET = "lbracket"
    RBRACKET = "rbracket"
    END = "end"


@dataclass(frozen=True)
class Token:
    """Single token with its source offset."""

    kind: TokenKind
    value: str
    position: int


KEYWORDS = frozenset({"true", "false", "null", "NaN", "Infinity"})

_IDENT = re.compile(r"[A-Za-z_][A-Za-z0-9_-]*")
_NUMBER = re.compile(
    r"-?(?:0[xX][0-9a-fA-F]+|(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?|Infinity)"
)
_OPERATORS = ("==", "!=", "<=", ">=", "&&", "||", "<", ">", "!")
_PUNCTUATION = {
    ".": TokenKind.DOT,
    "*": TokenKind.STAR,
    ",": TokenKind.COMMA,
    "(": TokenKind.LPAREN,
    ")": TokenKind.RPAREN,
    "[": TokenKind.LBRACKET,
    "]": TokenKind.RBRACKET,
}
# Tokens after which a '-' starts a negative number literal
_VALUE_END = frozenset(
    {TokenKind.NUMBER, TokenKind.STRING, TokenKind.IDENT, TokenKind.KEYWORD,
     TokenKind.RPAREN, TokenKind.RBRACKET, TokenKind.STAR}
)


def tokenize(expression: str) -> list[Token]:
    """
    Split an expression into tokens.

    Strings are single-quoted with ``''`` as the escape for a literal quote.
    Identifiers may contain dashes (``steps.build-app.outputs``).

    Args:
        expression: Expression source without the ``${{ }}`` wrapper

    Returns:
        Tokens terminated by a single END token

    Raises:
        ExpressionSyntaxError: On unterminated strings or unexpected characters
    """
    tokens: list[Token] = []
    pos = 0
    length = len(expression)

    while pos < length:
        char = expression[pos]

        if char.isspace():
            pos += 1
            continue

        if char == "'":
            value, end = _read_string(expression, pos)
            tokens.append(Token(TokenKind.STRING, value, pos))
            pos = end
            continue

        if char == '"':
            raise ExpressionSyntaxError(
                expression, "strings must use single quotes", position=pos
            )

        after_value = bool(tokens) and tokens[-1].kind in _VALUE_END
        starts_number = char.isdigit() or (
            char in "-." and not after_value and pos + 1 < length
            and (expression[pos + 1].isdigit() or expression[pos + 1] in ".I")
        )
        if starts_number:
            match = _NUMBER.match(expression, pos)
            if match is None:
                raise ExpressionSyntaxError(expression, f"unexpected '{char}'", position=pos)
            tokens.append(Token(TokenKind.NUMBER, match.group(0), pos))
            pos = match.end()
            continue

        match = _IDENT.match(expression, pos)
        if match:
            word = match.group(0)
            kind = TokenKind.KEYWORD if word in KEYWORDS else TokenKind.IDENT
            tokens.append(Token(kind, word, pos))
            pos = match.end()
            continue

        operator = next((op for op in _OPERATORS if expression.startswith(op, pos)), None)
        if operator is not None:
            tokens.append(Token(TokenKind.OPERATOR, operator, pos))
            pos += len(operator)
            continue

        if char in _PUNCTUATION:
            tokens.append(Token(_PUNCTUATION[char], char, pos))
            pos += 1
            continue

        raise ExpressionSyntaxError(expression, f"unexpected character '{char}'", position=pos)

    tokens.append(Token(TokenKind.END, "", length))
    return tokens


def _read_string(expression: str, start: int) -> tuple[str, int]:
    """Read a single-quoted string starting at ``start``; returns (value, next offset)."""
    pos = start + 1
    parts: list[str] = []

    while pos < len(expression):
        char = expression[pos]
        if char == "'":
            if expression.startswith("''", pos):
                parts.append("'")
                pos += 2
                continue
            return "".join(parts), pos + 1
        parts.append(char)
        pos += 1

    raise ExpressionSyntaxError(expression, "unterminated string literal", position=start)
