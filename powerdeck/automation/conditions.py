"""Condition evaluation for automation rules.

``evaluate_conditions()`` is a pure function: it reads an immutable
``EvaluationContext`` and returns an ``EvaluationResult`` with a trace of
every condition it looked at. It performs no I/O and keeps no state, so
cycles for different devices can call it concurrently.

Trace format
------------
Each trace entry is ``"<path>: <description>"`` where *path* is the dotted
child index from the root group, e.g.::

    0: SOC (45) between 20 and 80
    1: Group (OR)
    1.0: Time (23:30) between 22:00 and 06:00

All children of a group are evaluated and recorded, including those after
the first failing child of an ``AND``.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from datetime import datetime, tzinfo
from typing import Any, Callable

from powerdeck.automation.models import (
    MAX_CONDITION_DEPTH,
    ComparisonOp,
    ConditionError,
    ConditionGroup,
    DayOfWeek,
    DayOfWeekCondition,
    DayOp,
    EvaluationContext,
    EventCondition,
    EventType,
    GroupOperator,
    MetricCondition,
    MetricField,
    TimeCondition,
    TimeOp,
)

LOW_BATTERY_SOC = 20
FULL_BATTERY_SOC = 100

_DAY_TAGS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")  # datetime.weekday() order

_HHMM = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")

_FIELD_LABELS: dict[str, str] = {
    MetricField.SOC: "SOC",
    MetricField.TEMPERATURE: "Temperature",
    MetricField.AC_INPUT_WATTS: "AC Input",
    MetricField.SOLAR_INPUT_WATTS: "Solar Input",
    MetricField.AC_OUTPUT_WATTS: "AC Output",
    MetricField.DC_OUTPUT_WATTS: "DC Output",
    MetricField.TOTAL_INPUT_WATTS: "Total Input",
    MetricField.TOTAL_OUTPUT_WATTS: "Total Output",
}

_OP_FUNCS: dict[str, Callable[[float, float], bool]] = {
    ComparisonOp.GT: lambda a, b: a > b,
    ComparisonOp.LT: lambda a, b: a < b,
    ComparisonOp.GE: lambda a, b: a >= b,
    ComparisonOp.LE: lambda a, b: a <= b,
    ComparisonOp.EQ: lambda a, b: a == b,
}


@dataclass
class EvaluationResult:
    matches: bool
    matched_paths: list[str] = field(default_factory=list)
    failed_paths: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class _Settings:
    tz: tzinfo | None
    max_depth: int
    low_battery_soc: float
    full_battery_soc: float


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def evaluate_conditions(
    group: ConditionGroup,
    ctx: EvaluationContext,
    *,
    tz: tzinfo | None = None,
    max_depth: int = MAX_CONDITION_DEPTH,
    low_battery_soc: float = LOW_BATTERY_SOC,
    full_battery_soc: float = FULL_BATTERY_SOC,
) -> EvaluationResult:
    """Evaluate a rule's condition tree against *ctx*.

    Parameters
    ----------
    group:
        Root condition group of the rule.
    ctx:
        Metrics, evaluation time and (optionally) the previous cycle's metrics.
    tz:
        Zone used for ``time`` and ``dayOfWeek`` conditions. ``None`` uses
        the zone attached to ``ctx.current_time`` (or local time if naive).
    max_depth:
        Nesting cap; deeper trees raise ``ConditionError``.

    Raises ``ConditionError`` on unknown condition kinds or malformed values.
    """
    settings = _Settings(tz, max_depth, low_battery_soc, full_battery_soc)
    result = EvaluationResult(matches=False)
    result.matches = _evaluate_group(group, ctx, settings, "", 1, result)
    return result


def validate_conditions(
    group: Any,
    max_depth: int = MAX_CONDITION_DEPTH,
) -> list[str]:
    """Validate the structure of a condition tree before it is stored.

    Returns a list of error strings. Empty list means valid.
    """
    errors: list[str] = []
    if not isinstance(group, ConditionGroup):
        return [f"Conditions must be a group, got {type(group).__name__}"]
    _validate_group(group, "conditions", 1, max_depth, errors)
    return errors


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------

def _evaluate_group(
    group: ConditionGroup,
    ctx: EvaluationContext,
    settings: _Settings,
    path: str,
    depth: int,
    result: EvaluationResult,
) -> bool:
    if depth > settings.max_depth:
        raise ConditionError(f"Condition tree deeper than {settings.max_depth} levels")
    if group.operator not in (GroupOperator.AND, GroupOperator.OR):
        raise ConditionError(f"Unknown group operator '{group.operator}'")

    outcomes: list[bool] = []
    for i, cond in enumerate(group.conditions):
        child_path = f"{path}.{i}" if path else str(i)
        if isinstance(cond, ConditionGroup):
            ok = _evaluate_group(cond, ctx, settings, child_path, depth + 1, result)
            description = f"Group ({cond.operator})"
        else:
            handler = _HANDLERS.get(type(cond))
            if handler is None:
                raise ConditionError(f"Unknown condition type {type(cond).__name__}")
            ok, description = handler(cond, ctx, settings)
        outcomes.append(ok)
        entry = f"{child_path}: {description}"
        (result.matched_paths if ok else result.failed_paths).append(entry)

    if group.operator == GroupOperator.AND:
        return all(outcomes)
    return any(outcomes)


def _number(value: Any, what: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise ConditionError(f"{what} must be a finite number, got {value!r}")
    return value


def _pair(value: Any, what: str) -> tuple[Any, Any]:
    if not isinstance(value, (list, tuple)) or len(value) != 2:
        raise ConditionError(f"{what} must be a [low, high] pair, got {value!r}")
    return value[0], value[1]


def _eval_metric(
    cond: MetricCondition, ctx: EvaluationContext, settings: _Settings,
) -> tuple[bool, str]:
    current = ctx.metrics.metric(cond.field)
    label = _FIELD_LABELS.get(cond.field, cond.field)

    if cond.op == ComparisonOp.BETWEEN:
        low, high = _pair(cond.value, "between value")
        low, high = _number(low, "between low"), _number(high, "between high")
        return low <= current <= high, f"{label} ({current}) between {low} and {high}"

    op_func = _OP_FUNCS.get(cond.op)
    if op_func is None:
        raise ConditionError(f"Unknown metric operator '{cond.op}'")
    threshold = _number(cond.value, "metric value")
    # "==" is exact; derived float totals may never match.
    return op_func(current, threshold), f"{label} ({current}) {cond.op} {threshold}"


def _to_minutes(hhmm: Any) -> int:
    m = _HHMM.match(hhmm) if isinstance(hhmm, str) else None
    if m is None:
        raise ConditionError(f"Time must be 'HH:MM', got {hhmm!r}")
    return int(m.group(1)) * 60 + int(m.group(2))


def _local(ctx: EvaluationContext, settings: _Settings) -> datetime:
    if settings.tz is None:
        return ctx.current_time
    if ctx.current_time.tzinfo is None:
        return ctx.current_time.astimezone().astimezone(settings.tz)
    return ctx.current_time.astimezone(settings.tz)


def _eval_time(
    cond: TimeCondition, ctx: EvaluationContext, settings: _Settings,
) -> tuple[bool, str]:
    now = _local(ctx, settings)
    current = now.hour * 60 + now.minute
    now_str = f"{now.hour:02d}:{now.minute:02d}"

    if cond.op == TimeOp.EQUALS:
        return current == _to_minutes(cond.value), f"Time ({now_str}) equals {cond.value}"

    if cond.op == TimeOp.BETWEEN:
        start_str, end_str = _pair(cond.value, "time window")
        start, end = _to_minutes(start_str), _to_minutes(end_str)
        if start <= end:
            ok = start <= current <= end
        else:
            # Window wraps through midnight, e.g. 22:00-06:00
            ok = current >= start or current <= end
        return ok, f"Time ({now_str}) between {start_str} and {end_str}"

    raise ConditionError(f"Unknown time operator '{cond.op}'")


def _eval_day(
    cond: DayOfWeekCondition, ctx: EvaluationContext, settings: _Settings,
) -> tuple[bool, str]:
    today = _DAY_TAGS[_local(ctx, settings).weekday()]
    days = list(cond.value)
    days_str = ", ".join(days)

    if cond.op == DayOp.IN:
        return today in days, f"Day ({today}) in [{days_str}]"
    if cond.op == DayOp.NOT_IN:
        return today not in days, f"Day ({today}) not in [{days_str}]"
    raise ConditionError(f"Unknown day operator '{cond.op}'")


def _eval_event(
    cond: EventCondition, ctx: EvaluationContext, settings: _Settings,
) -> tuple[bool, str]:
    metrics, previous = ctx.metrics, ctx.previous_metrics
    event = cond.event_type

    if event == EventType.ERROR:
        return metrics.has_error, f"Device has error: {metrics.has_error}"

    if event in (EventType.ONLINE, EventType.OFFLINE):
        # Transitions need a previous snapshot; on cold start nothing fires.
        if previous is None:
            return False, f"Device {event}: no previous metrics"
        if event == EventType.ONLINE:
            ok = metrics.online and not previous.online
            return ok, f"Device just came online: {ok}"
        ok = previous.online and not metrics.online
        return ok, f"Device just went offline: {ok}"

    if event == EventType.LOW_BATTERY:
        ok = metrics.soc <= settings.low_battery_soc
        return ok, f"Low battery ({metrics.soc}%): {ok}"

    if event == EventType.FULL_BATTERY:
        ok = metrics.soc >= settings.full_battery_soc
        return ok, f"Full battery ({metrics.soc}%): {ok}"

    raise ConditionError(f"Unknown event type '{event}'")


_HANDLERS: dict[type, Callable[[Any, EvaluationContext, _Settings], tuple[bool, str]]] = {
    MetricCondition: _eval_metric,
    TimeCondition: _eval_time,
    DayOfWeekCondition: _eval_day,
    EventCondition: _eval_event,
}


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def _validate_group(
    group: ConditionGroup,
    prefix: str,
    depth: int,
    max_depth: int,
    errors: list[str],
) -> None:
    if depth > max_depth:
        errors.append(f"{prefix}: nesting deeper than {max_depth} levels")
        return
    if group.operator not in {op.value for op in GroupOperator}:
        errors.append(f"{prefix}: unknown group operator '{group.operator}'")
    if not group.conditions:
        errors.append(f"{prefix}: group must contain at least one condition")

    for i, cond in enumerate(group.conditions):
        p = f"{prefix}[{i}]"
        if isinstance(cond, ConditionGroup):
            _validate_group(cond, p, depth + 1, max_depth, errors)
        elif isinstance(cond, MetricCondition):
            _validate_metric(cond, p, errors)
        elif isinstance(cond, TimeCondition):
            _validate_time(cond, p, errors)
        elif isinstance(cond, DayOfWeekCondition):
            valid_days = {d.value for d in DayOfWeek}
            if cond.op not in {op.value for op in DayOp}:
                errors.append(f"{p}: unknown day operator '{cond.op}'")
            if not cond.value:
                errors.append(f"{p}: day list must not be empty")
            bad = [d for d in cond.value if d not in valid_days]
            if bad:
                errors.append(f"{p}: unknown days {bad}. Valid: {sorted(valid_days)}")
        elif isinstance(cond, EventCondition):
            valid_events = {e.value for e in EventType}
            if cond.event_type not in valid_events:
                errors.append(
                    f"{p}: unknown event type '{cond.event_type}'. "
                    f"Valid: {sorted(valid_events)}"
                )
        else:
            errors.append(f"{p}: unknown condition type {type(cond).__name__}")


def _validate_metric(cond: MetricCondition, prefix: str, errors: list[str]) -> None:
    valid_fields = {f.value for f in MetricField}
    if cond.field not in valid_fields:
        errors.append(f"{prefix}: unknown metric field '{cond.field}'")
    if cond.op not in {op.value for op in ComparisonOp}:
        errors.append(f"{prefix}: unknown metric operator '{cond.op}'")
        return
    try:
        if cond.op == ComparisonOp.BETWEEN:
            low, high = _pair(cond.value, "between value")
            if _number(low, "between low") > _number(high, "between high"):
                errors.append(f"{prefix}: between range [{low}, {high}] is reversed")
        else:
            _number(cond.value, "metric value")
    except ConditionError as exc:
        errors.append(f"{prefix}: {exc}")


def _validate_time(cond: TimeCondition, prefix: str, errors: list[str]) -> None:
    try:
        if cond.op == TimeOp.EQUALS:
            _to_minutes(cond.value)
        elif cond.op == TimeOp.BETWEEN:
            start, end = _pair(cond.value, "time window")
            _to_minutes(start)
            _to_minutes(end)
        else:
            errors.append(f"{prefix}: unknown time operator '{cond.op}'")
    except ConditionError as exc:
        errors.append(f"{prefix}: {exc}")
