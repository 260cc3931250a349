"""
Condition evaluator — used by the Step Executor for ``condition`` steps.

Supported condition types:
  has_tag        subject carries the tag (read-only tag store lookup)
  tags           several tags under one tag_match mode:
                 any_include | all_include | any_exclude | all_exclude
                 (no tag ids at all passes)
  custom_field   compare a subject field with eq | neq | contains | gt | lt
  all            a list of rules combined with AND (an empty list fails)

Field lookup supports nested dot-notation (e.g. ``visits.last_month``)
and searches the subject's custom fields before its top-level attributes.
"""
from __future__ import annotations

import operator as op
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional

from core.errors import MissingParameter, ParameterError, UnknownConditionType
from models.schemas import ConditionConfig, SubjectContext, TagMatch

if TYPE_CHECKING:
    from channels.base import TagStore


def _to_number(value: Any) -> float:
    if isinstance(value, bool) or value is None:
        raise ValueError(f"not numeric: {value!r}")
    return float(value)


def _as_text(value: Any) -> str:
    return "" if value is None else str(value)


def _numeric(fn):
    def compare(a: Any, b: Any) -> bool:
        try:
            return fn(_to_number(a), _to_number(b))
        except (TypeError, ValueError):
            return False
    return compare


OPERATORS: dict[str, Any] = {
    "eq": lambda a, b: _as_text(a) == _as_text(b),
    "neq": lambda a, b: _as_text(a) != _as_text(b),
    "contains": lambda a, b: _as_text(b) in _as_text(a),
    "gt": _numeric(op.gt),
    "lt": _numeric(op.lt),
}


def get_nested_value(data: dict, field: str) -> Any:
    """Get a value from nested dict using dot notation. e.g. 'visits.count'"""
    current = data
    for part in field.split("."):
        if isinstance(current, dict):
            current = current.get(part)
        else:
            return None
    return current


def lookup_field(context: SubjectContext, field: str) -> Any:
    value = get_nested_value(context.custom_fields, field)
    if value is None:
        value = get_nested_value(context.snapshot(), field)
    return value


@dataclass
class ConditionResult:
    passed: bool
    error: Optional[ParameterError] = None

    def __bool__(self) -> bool:
        return self.passed and self.error is None


def compare_field(condition: ConditionConfig, context: SubjectContext) -> bool:
    """Evaluate a ``custom_field`` condition. Raises on missing parameters."""
    if not condition.field_name:
        raise MissingParameter("condition field name missing")
    if not condition.operator:
        raise MissingParameter(f"condition operator missing (field={condition.field_name})")
    fn = OPERATORS.get(condition.operator)
    if fn is None:
        raise ParameterError(
            f"unsupported condition operator={condition.operator} (field={condition.field_name})"
        )
    return fn(lookup_field(context, condition.field_name), condition.value)


async def match_tags(condition: ConditionConfig, context: SubjectContext,
                     tag_store: "TagStore") -> bool:
    tag_ids = condition.tag_ids or ([condition.tag_id] if condition.tag_id is not None else [])
    if not tag_ids:
        return True
    present = [await tag_store.has_tag(context.subject_id, tag_id) for tag_id in tag_ids]

    if condition.tag_match == TagMatch.ANY_INCLUDE:
        return any(present)
    if condition.tag_match == TagMatch.ALL_INCLUDE:
        return all(present)
    if condition.tag_match == TagMatch.ANY_EXCLUDE:
        return not any(present)
    return not all(present)


async def evaluate(
    condition: ConditionConfig,
    context: SubjectContext,
    tag_store: "TagStore",
) -> ConditionResult:
    """Evaluate one condition. Never raises for parameter problems; they
    come back as ``ConditionResult.error``."""
    try:
        if condition.condition_type == "has_tag":
            if condition.tag_id is None:
                raise MissingParameter("condition tag id missing")
            present = await tag_store.has_tag(context.subject_id, condition.tag_id)
            return ConditionResult(passed=bool(present))

        if condition.condition_type == "tags":
            return ConditionResult(passed=await match_tags(condition, context, tag_store))

        if condition.condition_type == "custom_field":
            return ConditionResult(passed=compare_field(condition, context))

        if condition.condition_type == "all":
            if not condition.rules:
                return ConditionResult(passed=False)
            for rule in condition.rules:
                result = await evaluate(rule, context, tag_store)
                if not result:
                    return result
            return ConditionResult(passed=True)

        raise UnknownConditionType(
            f"unknown condition type: {condition.condition_type}"
        )
    except ParameterError as e:
        return ConditionResult(passed=False, error=e)
