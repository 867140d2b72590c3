"""Expressões de condição de grants e políticas.

As condições chegam como JSON (coluna ``conditions``/``rules``) e são
validadas como uma AST fechada, discriminada pelo campo ``op``::

    {"op": "and", "conditions": [
        {"op": "eq", "attribute": "claims.department", "value": "finance"},
        {"op": "time_window", "work_hours": "09:00-18:00", "work_days": ["mon", "fri"]}
    ]}

Expressões vazias (``""``, ``{}``, ``null``) são sempre satisfeitas.
Expressões que não validam nunca são satisfeitas: o avaliador registra o
problema e devolve ``None``/``False`` em vez de propagar o erro.
"""

from __future__ import annotations

import ipaddress
import json
from datetime import datetime, time, timezone
from functools import lru_cache
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from policy_engine.core.errors import ConditionEvaluationFailed
from policy_engine.core.logging import get_logger

logger = get_logger(__name__)

_ABSENT = object()
_WEEKDAYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")
_EMPTY_EXPRESSIONS = {"", "{}", "null", "[]"}


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _dig(payload: dict[str, Any], path: str) -> Any:
    current: Any = payload
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return _ABSENT
        current = current[part]
    return current


class ConditionContext(BaseModel):
    """Contexto de avaliação: quem pede, de onde, o quê e quando."""

    model_config = ConfigDict(frozen=True)

    user_id: str | None = None
    group_id: str | None = None
    resource: str | None = None
    action: str | None = None
    ip_address: str | None = None
    device_id: str | None = None
    now: datetime
    claims: dict[str, Any] = Field(default_factory=dict)
    attributes: dict[str, Any] = Field(default_factory=dict)

    def lookup(self, path: str) -> Any:
        """Resolve ``claims.x``, ``attributes.x`` ou um campo do contexto."""
        head, _, rest = path.partition(".")
        if head == "claims" and rest:
            return _dig(self.claims, rest)
        if head == "attributes" and rest:
            return _dig(self.attributes, rest)
        if not rest and head in _CONTEXT_FIELDS:
            return getattr(self, head)
        return _dig(self.attributes, path)


_CONTEXT_FIELDS = {"user_id", "group_id", "resource", "action", "ip_address", "device_id"}


# ── Nós da AST ─────────────────────────────────────────────────────────────


class _Node(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    def holds(self, context: ConditionContext) -> bool:  # pragma: no cover - abstrato
        raise NotImplementedError


class EqCondition(_Node):
    op: Literal["eq"]
    attribute: str
    value: Any = None

    def holds(self, context: ConditionContext) -> bool:
        actual = context.lookup(self.attribute)
        return actual is not _ABSENT and actual == self.value


class InCondition(_Node):
    op: Literal["in"]
    attribute: str
    values: list[Any]

    def holds(self, context: ConditionContext) -> bool:
        actual = context.lookup(self.attribute)
        if actual is _ABSENT:
            return False
        if isinstance(actual, list):
            return any(item in self.values for item in actual)
        return actual in self.values


class HasClaimCondition(_Node):
    op: Literal["has_claim"]
    claim: str
    value: Any = None

    def holds(self, context: ConditionContext) -> bool:
        actual = _dig(context.claims, self.claim)
        if actual is _ABSENT:
            return False
        if self.value is None:
            return True
        if isinstance(actual, list):
            return self.value in actual
        return actual == self.value


class AndCondition(_Node):
    op: Literal["and"]
    conditions: list[Condition] = Field(min_length=1)

    def holds(self, context: ConditionContext) -> bool:
        return all(condition.holds(context) for condition in self.conditions)


class OrCondition(_Node):
    op: Literal["or"]
    conditions: list[Condition] = Field(min_length=1)

    def holds(self, context: ConditionContext) -> bool:
        return any(condition.holds(context) for condition in self.conditions)


class NotCondition(_Node):
    op: Literal["not"]
    condition: Condition

    def holds(self, context: ConditionContext) -> bool:
        return not self.condition.holds(context)


class TimeWindowCondition(_Node):
    """Janela de horário (UTC), dias da semana e intervalo absoluto."""

    op: Literal["time_window"]
    work_hours: str | None = None
    work_days: list[str] | None = None
    valid_from: datetime | None = None
    valid_until: datetime | None = None

    @field_validator("work_hours")
    @classmethod
    def _validate_hours(cls, value: str | None) -> str | None:
        if value is not None:
            _parse_hours(value)
        return value

    @field_validator("work_days")
    @classmethod
    def _validate_days(cls, value: list[str] | None) -> list[str] | None:
        if value is None:
            return None
        days = [str(day).strip().lower()[:3] for day in value]
        unknown = [day for day in days if day not in _WEEKDAYS]
        if unknown:
            raise ValueError(f"dias inválidos: {unknown}")
        return days

    def holds(self, context: ConditionContext) -> bool:
        now = _as_utc(context.now)
        if self.valid_from is not None and now < _as_utc(self.valid_from):
            return False
        if self.valid_until is not None and now >= _as_utc(self.valid_until):
            return False
        if self.work_days is not None and _WEEKDAYS[now.weekday()] not in self.work_days:
            return False
        if self.work_hours is not None:
            start, end = _parse_hours(self.work_hours)
            current = now.time().replace(tzinfo=None)
            if start <= end:
                return start <= current < end
            # Janela que atravessa a meia-noite (ex.: 22:00-06:00).
            return current >= start or current < end
        return True


class IpRangeCondition(_Node):
    op: Literal["ip_range"]
    allowed: list[str] = Field(default_factory=list)
    blocked: list[str] = Field(default_factory=list)

    @field_validator("allowed", "blocked")
    @classmethod
    def _validate_networks(cls, value: list[str]) -> list[str]:
        for network in value:
            ipaddress.ip_network(network, strict=False)
        return value

    def holds(self, context: ConditionContext) -> bool:
        if not context.ip_address:
            return False
        try:
            address = ipaddress.ip_address(context.ip_address)
        except ValueError:
            return False

        if any(address in ipaddress.ip_network(net, strict=False) for net in self.blocked):
            return False
        if not self.allowed:
            return True
        return any(address in ipaddress.ip_network(net, strict=False) for net in self.allowed)


def _parse_hours(value: str) -> tuple[time, time]:
    try:
        start_raw, end_raw = value.split("-", 1)
        start = time.fromisoformat(start_raw.strip())
        end = time.fromisoformat(end_raw.strip())
    except ValueError as exc:
        raise ValueError(f"work_hours deve seguir HH:MM-HH:MM: {value!r}") from exc
    return start, end


Condition = Annotated[
    Union[
        EqCondition,
        InCondition,
        HasClaimCondition,
        AndCondition,
        OrCondition,
        NotCondition,
        TimeWindowCondition,
        IpRangeCondition,
    ],
    Field(discriminator="op"),
]

for _model in (AndCondition, OrCondition, NotCondition):
    _model.model_rebuild()

_CONDITION_ADAPTER = TypeAdapter(Condition)


def is_empty_expression(expression: str | dict | None) -> bool:
    if expression is None:
        return True
    if isinstance(expression, dict):
        return not expression
    return expression.strip() in _EMPTY_EXPRESSIONS


@lru_cache(maxsize=2048)
def _parse_json(expression: str) -> Condition:
    try:
        return _CONDITION_ADAPTER.validate_json(expression)
    except ValidationError as exc:
        raise ConditionEvaluationFailed(
            "expressão de condição inválida",
            expression=expression[:200],
            error_count=exc.error_count(),
        ) from exc


def parse_condition(expression: str | dict) -> Condition:
    """Valida a expressão e devolve a AST (``ConditionEvaluationFailed`` se inválida)."""
    if isinstance(expression, dict):
        expression = json.dumps(expression, sort_keys=True, default=str)
    return _parse_json(expression)


class ConditionEvaluator:
    """Avaliador total de condições sobre um ``ConditionContext``."""

    def evaluate(self, expression: str | dict | None, context: ConditionContext) -> bool | None:
        """True/False quando avaliável; ``None`` quando a expressão não faz parse."""
        if is_empty_expression(expression):
            return True
        try:
            condition = parse_condition(expression)
        except ConditionEvaluationFailed as exc:
            logger.warning("condition_unparseable", **exc.to_log())
            return None

        try:
            return bool(condition.holds(context))
        except (TypeError, ValueError) as exc:
            logger.warning("condition_evaluation_failed", op=condition.op, error=str(exc))
            return None

    def is_satisfied(self, expression: str | dict | None, context: ConditionContext) -> bool:
        """Condição não avaliável nunca é satisfeita."""
        return self.evaluate(expression, context) is True
