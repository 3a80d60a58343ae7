"""条件表达式求值器测试"""

import pytest
from taskmaster.engine.conditions import (
    ConditionSyntaxError,
    evaluate_condition,
    evaluate_conditions,
    parse_condition,
    validate_condition,
)

CONTEXT = {
    "guests": 120,
    "venue": {"city": "Lisbon", "capacity": 150},
    "approved": True,
    "tags": ["vip", "outdoor"],
    "steps": {"book": "completed", "notify": "skipped"},
}


class TestEvaluate:
    @pytest.mark.parametrize(
        "expression,expected",
        [
            ("guests > 100", True),
            ("guests >= 121", False),
            ("venue.city == 'Lisbon'", True),
            ('venue.city != "Porto"', True),
            ("guests < venue.capacity", True),
            ("approved", True),
            ("not approved", False),
            ("!approved || guests > 10", True),
            ("approved and guests > 200", False),
            ("approved && (guests > 200 or venue.capacity == 150)", True),
            ("'vip' in tags", True),
            ("'indoor' not in tags", True),
            ("steps.book == 'completed'", True),
            ("steps.notify == 'completed'", False),
            ("approved == TRUE", True),
            ("missing == null", True),
            ("-1 < 0", True),
            ("1.5 <= 1.5", True),
        ],
    )
    def test_expressions(self, expression, expected):
        assert evaluate_condition(expression, CONTEXT) is expected

    def test_missing_name_ordered_comparison_is_false(self):
        """不存在的名称为 None，有序比较结果为 False"""
        assert evaluate_condition("missing > 1", CONTEXT) is False
        assert evaluate_condition("missing.deep.path == 1", CONTEXT) is False

    def test_incompatible_types_are_false(self):
        assert evaluate_condition("venue.city > 3", CONTEXT) is False

    def test_literal_false_string_is_not_special(self):
        """包含 false 字样的字符串按真实语义求值"""
        assert evaluate_condition("venue.city != 'false'", CONTEXT) is True

    def test_unparseable_condition_is_false(self):
        assert evaluate_condition("guests >", CONTEXT) is False
        assert evaluate_condition("guests @ 3", CONTEXT) is False

    def test_conditions_all_must_hold(self):
        assert evaluate_conditions([], CONTEXT) is True
        assert evaluate_conditions(["approved", "guests > 100"], CONTEXT) is True
        assert evaluate_conditions(["approved", "guests > 500"], CONTEXT) is False


class TestParse:
    def test_ast_shape(self):
        assert parse_condition("a.b == 1") == ("cmp", "==", ("name", ("a", "b")), ("lit", 1))

    @pytest.mark.parametrize("expression", ["", "(a", "a ==", "a b", "== 1"])
    def test_syntax_errors(self, expression):
        with pytest.raises(ConditionSyntaxError):
            parse_condition(expression)

    def test_validate_reports_problem(self):
        assert validate_condition("guests > 1") is None
        assert "parenthesis" in validate_condition("(guests > 1")
