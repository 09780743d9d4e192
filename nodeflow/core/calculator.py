"""Arithmetic parser for the `calculate` transform.

Parses expressions like:
- "{price} * {quantity}"
- "({subtotal} + {shipping}) * 1.2"
- "-{balance} / 2"

The grammar is deliberately tiny: numbers, + - * / ( ), unary sign and
{placeholder} references resolved against the current context. There are no
names, calls, attribute access or string operations, so an expression can
never execute code.

    expr   := term (("+" | "-") term)*
    term   := factor (("*" | "/") factor)*
    factor := ("+" | "-") factor | NUMBER | PLACEHOLDER | "(" expr ")"
"""

import math
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any

from nodeflow.core.errors import ExpressionError
from nodeflow.core.expressions import to_number

# Maximum expression length to prevent abuse
MAX_EXPRESSION_LENGTH = 500

Number = int | float


class TokenType(Enum):
    """Token types for lexical analysis"""

    NUMBER = auto()
    PLACEHOLDER = auto()
    PLUS = auto()
    MINUS = auto()
    STAR = auto()
    SLASH = auto()
    LPAREN = auto()
    RPAREN = auto()
    EOF = auto()


_SINGLE_CHAR_TOKENS = {
    "+": TokenType.PLUS,
    "-": TokenType.MINUS,
    "*": TokenType.STAR,
    "/": TokenType.SLASH,
    "(": TokenType.LPAREN,
    ")": TokenType.RPAREN,
}


@dataclass
class Token:
    """A lexical token"""

    type: TokenType
    value: Any
    position: int

    def __repr__(self) -> str:
        return f"Token({self.type.name}, {self.value!r}, pos={self.position})"


class Lexer:
    """Tokenize arithmetic expressions"""

    def __init__(self, text: str):
        self.text = text
        self.pos = 0

    def _current(self) -> str | None:
        return self.text[self.pos] if self.pos < len(self.text) else None

    def _read_number(self) -> Token:
        start = self.pos
        has_decimal = False
        while (char := self._current()) is not None and (char.isdigit() or char == "."):
            if char == ".":
                if has_decimal:
                    raise ExpressionError(f"Invalid number format at position {self.pos}")
                has_decimal = True
            self.pos += 1

        literal = self.text[start : self.pos]
        if literal == ".":
            raise ExpressionError(f"Invalid number at position {start}")
        value: Number = float(literal) if has_decimal else int(literal)
        return Token(TokenType.NUMBER, value, start)

    def _read_placeholder(self) -> Token:
        start = self.pos
        end = self.text.find("}", start)
        if end == -1:
            raise ExpressionError(f"Unterminated placeholder at position {start}")
        name = self.text[start + 1 : end].strip()
        if not name or not all(part.replace("_", "").isalnum() for part in name.split(".")):
            raise ExpressionError(f"Invalid placeholder '{{{name}}}' at position {start}")
        self.pos = end + 1
        return Token(TokenType.PLACEHOLDER, name, start)

    def tokenize(self) -> list[Token]:
        tokens: list[Token] = []
        while (char := self._current()) is not None:
            if char.isspace():
                self.pos += 1
            elif char.isdigit() or char == ".":
                tokens.append(self._read_number())
            elif char == "{":
                tokens.append(self._read_placeholder())
            elif char in _SINGLE_CHAR_TOKENS:
                tokens.append(Token(_SINGLE_CHAR_TOKENS[char], char, self.pos))
                self.pos += 1
            else:
                raise ExpressionError(f"Unexpected character '{char}' at position {self.pos}")
        tokens.append(Token(TokenType.EOF, None, self.pos))
        return tokens


class Parser:
    """Recursive-descent evaluator over the token stream.

    Evaluates while parsing; the grammar is small enough that a separate AST
    buys nothing.
    """

    def __init__(self, tokens: list[Token], resolve: Callable[[str], Any]):
        self.tokens = tokens
        self.index = 0
        self.resolve = resolve

    @property
    def current(self) -> Token:
        return self.tokens[self.index]

    def _advance(self) -> Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def parse(self) -> Number:
        value = self._expr()
        if self.current.type != TokenType.EOF:
            raise ExpressionError(
                f"Unexpected '{self.current.value}' at position {self.current.position}"
            )
        return value

    def _expr(self) -> Number:
        value = self._term()
        while self.current.type in (TokenType.PLUS, TokenType.MINUS):
            op = self._advance()
            right = self._term()
            value = self._apply(op, value, right)
        return value

    def _term(self) -> Number:
        value = self._factor()
        while self.current.type in (TokenType.STAR, TokenType.SLASH):
            op = self._advance()
            right = self._factor()
            value = self._apply(op, value, right)
        return value

    def _apply(self, op: Token, left: Number, right: Number) -> Number:
        try:
            if op.type == TokenType.PLUS:
                return left + right
            if op.type == TokenType.MINUS:
                return left - right
            if op.type == TokenType.STAR:
                return left * right
            if right == 0:
                raise ExpressionError(f"Division by zero at position {op.position}")
            return left / right
        except OverflowError as e:
            raise ExpressionError(f"Result out of range at position {op.position}") from e

    def _factor(self) -> Number:
        token = self.current

        if token.type in (TokenType.PLUS, TokenType.MINUS):
            self._advance()
            operand = self._factor()
            return -operand if token.type == TokenType.MINUS else operand

        if token.type == TokenType.NUMBER:
            self._advance()
            return token.value

        if token.type == TokenType.PLACEHOLDER:
            self._advance()
            return self._resolve_placeholder(token)

        if token.type == TokenType.LPAREN:
            self._advance()
            value = self._expr()
            if self.current.type != TokenType.RPAREN:
                raise ExpressionError(f"Expected ')' at position {self.current.position}")
            self._advance()
            return value

        if token.type == TokenType.EOF:
            raise ExpressionError("Unexpected end of expression")
        raise ExpressionError(f"Unexpected '{token.value}' at position {token.position}")

    def _resolve_placeholder(self, token: Token) -> Number:
        raw = self.resolve(token.value)
        if raw is None:
            raise ExpressionError(f"Placeholder '{{{token.value}}}' is not set")
        number = to_number(raw)
        if number is None:
            raise ExpressionError(
                f"Placeholder '{{{token.value}}}' is not numeric: {raw!r}"
            )
        return number


def evaluate_arithmetic(expression: str, resolve: Callable[[str], Any]) -> Number:
    """Evaluate an arithmetic expression.

    Args:
        expression: Expression text with optional {placeholder} references
        resolve: Callback mapping a placeholder name to its context value

    Returns:
        The numeric result. Integral floats collapse to int so "6 / 2" gives 3.

    Raises:
        ExpressionError: On syntax errors, unresolved or non-numeric
            placeholders, division by zero and results out of float range
    """
    if not expression or not expression.strip():
        raise ExpressionError("Expression cannot be empty")
    if len(expression) > MAX_EXPRESSION_LENGTH:
        raise ExpressionError(
            f"Expression too long ({len(expression)} chars, max {MAX_EXPRESSION_LENGTH})"
        )

    tokens = Lexer(expression).tokenize()
    result = Parser(tokens, resolve).parse()
    if isinstance(result, float) and not math.isfinite(result):
        raise ExpressionError("Result out of range")
    if isinstance(result, float) and result.is_integer():
        return int(result)
    return result
