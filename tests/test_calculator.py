"""Tests for the arithmetic parser behind the calculate transform."""

from __future__ import annotations

import pytest

from nodeflow.core.calculator import (
    MAX_EXPRESSION_LENGTH,
    Lexer,
    TokenType,
    evaluate_arithmetic,
)
from nodeflow.core.errors import ExpressionError


def _resolver(values: dict):
    return lambda name: values.get(name)


class TestLexer:
    """Tests for tokenization."""

    def test_tokenizes_operators_numbers_and_placeholders(self):
        tokens = Lexer("({a} + 2.5) * 3").tokenize()
        types = [t.type for t in tokens]
        assert types == [
            TokenType.LPAREN,
            TokenType.PLACEHOLDER,
            TokenType.PLUS,
            TokenType.NUMBER,
            TokenType.RPAREN,
            TokenType.STAR,
            TokenType.NUMBER,
            TokenType.EOF,
        ]
        assert tokens[1].value == "a"
        assert tokens[3].value == 2.5

    def test_rejects_names(self):
        """Bare identifiers are not part of the grammar."""
        with pytest.raises(ExpressionError, match="Unexpected character"):
            Lexer("__import__").tokenize()

    def test_rejects_double_decimal_point(self):
        with pytest.raises(ExpressionError, match="Invalid number"):
            Lexer("1.2.3").tokenize()

    def test_rejects_unterminated_placeholder(self):
        with pytest.raises(ExpressionError, match="Unterminated"):
            Lexer("{price * 2").tokenize()


class TestEvaluateArithmetic:
    """Tests for expression evaluation."""

    @pytest.mark.parametrize(
        "expression,expected",
        [
            ("1 + 2", 3),
            ("2 + 3 * 4", 14),
            ("(2 + 3) * 4", 20),
            ("10 - 4 - 3", 3),
            ("7 / 2", 3.5),
            ("6 / 2", 3),
            ("-5 + 2", -3),
            ("--4", 4),
            ("0.1 * 10", 1),
        ],
    )
    def test_literals(self, expression, expected):
        assert evaluate_arithmetic(expression, _resolver({})) == expected

    def test_placeholders_resolve_against_context(self):
        result = evaluate_arithmetic("{price} * {qty}", _resolver({"price": 2.5, "qty": 4}))
        assert result == 10
        assert isinstance(result, int)

    def test_numeric_string_placeholder(self):
        assert evaluate_arithmetic("{n} + 1", _resolver({"n": "41"})) == 42

    def test_dotted_placeholder(self):
        values = {"order.total": 100}
        assert evaluate_arithmetic("{order.total} / 4", _resolver(values)) == 25

    def test_missing_placeholder_raises(self):
        with pytest.raises(ExpressionError, match="not set"):
            evaluate_arithmetic("{missing} + 1", _resolver({}))

    def test_non_numeric_placeholder_raises(self):
        with pytest.raises(ExpressionError, match="not numeric"):
            evaluate_arithmetic("{name} + 1", _resolver({"name": "Ada"}))

    def test_division_by_zero_raises(self):
        with pytest.raises(ExpressionError, match="Division by zero"):
            evaluate_arithmetic("1 / ({x} - {x})", _resolver({"x": 3}))

    def test_empty_expression_raises(self):
        with pytest.raises(ExpressionError, match="empty"):
            evaluate_arithmetic("   ", _resolver({}))

    def test_too_long_expression_raises(self):
        expression = "1+" * (MAX_EXPRESSION_LENGTH // 2) + "1"
        with pytest.raises(ExpressionError, match="too long"):
            evaluate_arithmetic(expression, _resolver({}))

    @pytest.mark.parametrize("expression", ["1 +", "(1 + 2", "1 2", "* 3", "()"])
    def test_syntax_errors_raise(self, expression):
        with pytest.raises(ExpressionError):
            evaluate_arithmetic(expression, _resolver({}))

    def test_float_overflow_raises_expression_error(self):
        """A huge JSON integer divided into a float is out of range, not a crash."""
        with pytest.raises(ExpressionError, match="out of range"):
            evaluate_arithmetic("{x} / 3", _resolver({"x": 10**400}))

    def test_mixed_overflow_in_multiplication(self):
        with pytest.raises(ExpressionError, match="out of range"):
            evaluate_arithmetic("{x} * 1.5", _resolver({"x": 10**400}))

    def test_infinite_float_result_raises(self):
        with pytest.raises(ExpressionError, match="out of range"):
            evaluate_arithmetic("{x} * {x}", _resolver({"x": 1e200}))

    def test_large_integers_stay_exact(self):
        assert evaluate_arithmetic("{x} + 1", _resolver({"x": 10**30})) == 10**30 + 1
