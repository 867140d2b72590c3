"""Testes do avaliador de condições (AST fechada, avaliação total)."""
from __future__ import annotations

import json
from datetime import timedelta

import pytest

from policy_engine.core.conditions import ConditionContext, ConditionEvaluator, parse_condition
from policy_engine.core.errors import ConditionEvaluationFailed
from policy_engine.tests.factories import IP, NOW


def _context(**kwargs) -> ConditionContext:
    values = {
        "user_id": "user-1",
        "group_id": "group-1",
        "resource": "reports",
        "action": "export",
        "ip_address": IP,
        "now": NOW,
        "claims": {"department": "finance", "roles": ["auditor", "viewer"], "org": {"tier": "gold"}},
        "attributes": {"classification": "internal"},
    }
    values.update(kwargs)
    return ConditionContext(**values)


evaluator = ConditionEvaluator()


@pytest.mark.parametrize("expression", [None, "", "  ", "{}", "null", "[]", {}])
def test_empty_expressions_are_satisfied(expression):
    assert evaluator.evaluate(expression, _context()) is True


@pytest.mark.parametrize(
    "expression,expected",
    [
        ({"op": "eq", "attribute": "claims.department", "value": "finance"}, True),
        ({"op": "eq", "attribute": "claims.department", "value": "sales"}, False),
        ({"op": "eq", "attribute": "claims.missing", "value": None}, False),
        ({"op": "eq", "attribute": "resource", "value": "reports"}, True),
        ({"op": "eq", "attribute": "classification", "value": "internal"}, True),
        ({"op": "in", "attribute": "claims.roles", "values": ["auditor"]}, True),
        ({"op": "in", "attribute": "action", "values": ["read", "write"]}, False),
        ({"op": "has_claim", "claim": "org.tier"}, True),
        ({"op": "has_claim", "claim": "roles", "value": "viewer"}, True),
        ({"op": "has_claim", "claim": "mfa"}, False),
    ],
)
def test_leaf_conditions(expression, expected):
    assert evaluator.evaluate(expression, _context()) is expected


def test_boolean_composition():
    expression = {
        "op": "and",
        "conditions": [
            {"op": "eq", "attribute": "claims.department", "value": "finance"},
            {
                "op": "or",
                "conditions": [
                    {"op": "has_claim", "claim": "mfa"},
                    {"op": "not", "condition": {"op": "eq", "attribute": "action", "value": "delete"}},
                ],
            },
        ],
    }

    assert evaluator.evaluate(json.dumps(expression), _context()) is True
    assert evaluator.evaluate(json.dumps(expression), _context(action="delete")) is False


class TestTimeWindow:
    def test_work_hours_and_days(self):
        expression = {"op": "time_window", "work_hours": "09:00-18:00", "work_days": ["Monday", "tue"]}

        assert evaluator.evaluate(expression, _context()) is True
        assert evaluator.evaluate(expression, _context(now=NOW + timedelta(hours=5))) is False
        assert evaluator.evaluate(expression, _context(now=NOW + timedelta(days=2))) is False

    def test_window_crossing_midnight(self):
        expression = {"op": "time_window", "work_hours": "22:00-06:00"}

        assert evaluator.evaluate(expression, _context()) is False
        assert evaluator.evaluate(expression, _context(now=NOW + timedelta(hours=9))) is True
        assert evaluator.evaluate(expression, _context(now=NOW + timedelta(hours=15))) is True

    def test_absolute_validity_is_half_open(self):
        expression = {
            "op": "time_window",
            "valid_from": NOW.isoformat(),
            "valid_until": (NOW + timedelta(hours=1)).isoformat(),
        }

        assert evaluator.evaluate(expression, _context(now=NOW - timedelta(seconds=1))) is False
        assert evaluator.evaluate(expression, _context(now=NOW)) is True
        assert evaluator.evaluate(expression, _context(now=NOW + timedelta(hours=1))) is False


class TestIpRange:
    def test_allowed_and_blocked_networks(self):
        allowed = {"op": "ip_range", "allowed": ["10.0.0.0/8"]}
        blocked = {"op": "ip_range", "allowed": ["10.0.0.0/8"], "blocked": [f"{IP}/32"]}

        assert evaluator.evaluate(allowed, _context()) is True
        assert evaluator.evaluate(allowed, _context(ip_address="192.168.1.1")) is False
        assert evaluator.evaluate(blocked, _context()) is False

    def test_missing_or_malformed_address_fails(self):
        expression = {"op": "ip_range", "allowed": ["10.0.0.0/8"]}

        assert evaluator.evaluate(expression, _context(ip_address=None)) is False
        assert evaluator.evaluate(expression, _context(ip_address="not-an-ip")) is False


class TestUnparseable:
    @pytest.mark.parametrize(
        "expression",
        [
            "{not json",
            '{"op": "regex", "attribute": "user_id"}',
            '{"op": "eq"}',
            '{"op": "and", "conditions": []}',
            '{"op": "time_window", "work_hours": "9h-18h"}',
            '{"op": "ip_range", "allowed": ["10.0.0.0/33"]}',
            '{"op": "eq", "attribute": "x", "value": 1, "extra": true}',
        ],
    )
    def test_invalid_expression_is_never_satisfied(self, expression):
        assert evaluator.evaluate(expression, _context()) is None
        assert evaluator.is_satisfied(expression, _context()) is False

    def test_parse_condition_raises(self):
        with pytest.raises(ConditionEvaluationFailed):
            parse_condition('{"op": "unknown"}')

    def test_parse_condition_accepts_dict(self):
        condition = parse_condition({"op": "eq", "attribute": "user_id", "value": "user-1"})

        assert condition.op == "eq"
        assert condition.holds(_context()) is True
