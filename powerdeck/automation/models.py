"""Data model shared by the automation engine.

Rules are authored by the management UI and stored as JSON; every type
here round-trips through ``to_dict()`` / ``from_dict()`` using the same
camelCase keys the UI sends.

Rule layout
-----------
{
    "id": 7,
    "name": "Night charge",
    "deviceId": null,                  # null = every device
    "enabled": true,
    "conditions": {                    # ConditionGroup
        "operator": "AND",
        "conditions": [
            {"type": "time", "op": "between", "value": ["22:00", "06:00"]},
            {"type": "metric", "field": "soc", "op": "<", "value": 50}
        ]
    },
    "actions": [
        {"type": "setChargingPower", "params": {"watts": 1200}}
    ],
    "cooldownSeconds": 300,
    "priority": 0
}
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Union

# Nesting cap for condition groups; the root group is level 1.
MAX_CONDITION_DEPTH = 32


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class RuleValidationError(ValueError):
    """A rule or action failed validation and must not be stored or run."""

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "invalid rule")


class ConditionError(ValueError):
    """A condition tree could not be evaluated (unknown kind, bad value, too deep)."""


class RuleNotFoundError(LookupError):
    """No rule exists with the requested id."""


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class GroupOperator(str, Enum):
    """Boolean combinator of a condition group."""
    AND = "AND"
    OR = "OR"


class MetricField(str, Enum):
    """Fields of ``DeviceMetrics`` a metric condition may read."""
    SOC = "soc"
    TEMPERATURE = "temperature"
    AC_INPUT_WATTS = "acInputWatts"
    SOLAR_INPUT_WATTS = "solarInputWatts"
    AC_OUTPUT_WATTS = "acOutputWatts"
    DC_OUTPUT_WATTS = "dcOutputWatts"
    TOTAL_INPUT_WATTS = "totalInputWatts"
    TOTAL_OUTPUT_WATTS = "totalOutputWatts"


class ComparisonOp(str, Enum):
    """Operators for metric conditions."""
    GT = ">"
    LT = "<"
    GE = ">="
    LE = "<="
    EQ = "=="
    BETWEEN = "between"


class TimeOp(str, Enum):
    BETWEEN = "between"
    EQUALS = "equals"


class DayOp(str, Enum):
    IN = "in"
    NOT_IN = "notIn"


class DayOfWeek(str, Enum):
    MON = "mon"
    TUE = "tue"
    WED = "wed"
    THU = "thu"
    FRI = "fri"
    SAT = "sat"
    SUN = "sun"


class EventType(str, Enum):
    """Device events a rule can react to."""
    ERROR = "error"               # Level-triggered: fires every cycle while the device reports an error
    OFFLINE = "offline"           # Edge: online -> offline
    ONLINE = "online"             # Edge: offline -> online
    LOW_BATTERY = "lowBattery"
    FULL_BATTERY = "fullBattery"


class ActionType(str, Enum):
    """Supported rule actions."""
    SET_AC_OUTPUT = "setAcOutput"
    SET_DC_OUTPUT = "setDcOutput"
    SET_CHARGING_POWER = "setChargingPower"
    SET_MAX_CHARGE_SOC = "setMaxChargeSoc"
    SET_MIN_DISCHARGE_SOC = "setMinDischargeSoc"
    SEND_NOTIFICATION = "sendNotification"


# Rules saved before notifications were transport-agnostic
_LEGACY_ACTION_TYPES: dict[str, str] = {
    "sendSlackNotification": ActionType.SEND_NOTIFICATION.value,
}


# ---------------------------------------------------------------------------
# Conditions
# ---------------------------------------------------------------------------

@dataclass
class MetricCondition:
    """Compare one metric against a threshold or an inclusive range.

    Examples
    --------
    SOC below 20:
        MetricCondition(field="soc", op="<", value=20)

    Solar input between 100 and 400 W:
        MetricCondition(field="solarInputWatts", op="between", value=[100, 400])
    """
    field: str                        # MetricField value
    op: str                           # ComparisonOp value
    value: float | list[float]        # [low, high] for "between"

    kind: ClassVar[str] = "metric"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.kind, "field": self.field, "op": self.op, "value": self.value}

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> MetricCondition:
        return cls(field=d["field"], op=d["op"], value=d["value"])


@dataclass
class TimeCondition:
    """Compare the wall-clock time of day ("HH:MM")."""
    op: str                           # TimeOp value
    value: str | list[str]            # ["HH:MM", "HH:MM"] for "between"

    kind: ClassVar[str] = "time"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.kind, "op": self.op, "value": self.value}

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> TimeCondition:
        return cls(op=d["op"], value=d["value"])


@dataclass
class DayOfWeekCondition:
    op: str                           # DayOp value
    value: list[str] = field(default_factory=list)  # DayOfWeek values

    kind: ClassVar[str] = "dayOfWeek"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.kind, "op": self.op, "value": list(self.value)}

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> DayOfWeekCondition:
        return cls(op=d["op"], value=list(d.get("value", [])))


@dataclass
class EventCondition:
    event_type: str                   # EventType value

    kind: ClassVar[str] = "event"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.kind, "eventType": self.event_type}

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> EventCondition:
        return cls(event_type=d["eventType"])


SingleCondition = Union[MetricCondition, TimeCondition, DayOfWeekCondition, EventCondition]

_CONDITION_TYPES: dict[str, type] = {
    MetricCondition.kind: MetricCondition,
    TimeCondition.kind: TimeCondition,
    DayOfWeekCondition.kind: DayOfWeekCondition,
    EventCondition.kind: EventCondition,
}


@dataclass
class ConditionGroup:
    """AND/OR over an ordered list of conditions and nested groups."""
    operator: str = GroupOperator.AND.value
    conditions: list[ConditionGroup | SingleCondition] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "operator": self.operator,
            "conditions": [c.to_dict() for c in self.conditions],
        }

    @classmethod
    def from_dict(
        cls,
        d: dict[str, Any],
        *,
        max_depth: int = MAX_CONDITION_DEPTH,
        _depth: int = 1,
    ) -> ConditionGroup:
        if _depth > max_depth:
            raise ConditionError(f"Condition tree deeper than {max_depth} levels")
        return cls(
            operator=d["operator"],
            conditions=[
                condition_from_dict(c, max_depth=max_depth, _depth=_depth + 1)
                for c in d.get("conditions", [])
            ],
        )


def condition_from_dict(
    d: dict[str, Any],
    *,
    max_depth: int = MAX_CONDITION_DEPTH,
    _depth: int = 1,
) -> ConditionGroup | SingleCondition:
    """Parse one entry of a condition list (a nested group or a single condition).

    *_depth* is the nesting level the entry would occupy. Raises
    ``ConditionError`` for entries that are neither kind and for groups
    nested deeper than *max_depth*.
    """
    if not isinstance(d, dict):
        raise ConditionError(f"Condition must be an object, got {type(d).__name__}")
    if "operator" in d:
        return ConditionGroup.from_dict(d, max_depth=max_depth, _depth=_depth)
    cls = _CONDITION_TYPES.get(d.get("type", ""))
    if cls is None:
        raise ConditionError(f"Unknown condition type '{d.get('type')}'")
    try:
        return cls.from_dict(d)
    except KeyError as exc:
        raise ConditionError(f"Condition '{d.get('type')}' is missing {exc}") from exc


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------

@dataclass
class RuleAction:
    """An action to execute when rule conditions are met.

    Examples
    --------
    Turn off AC output:
        RuleAction(type="setAcOutput", params={"enabled": False})

    Notify:
        RuleAction(type="sendNotification", params={"message": "{device} at {soc}%"})
    """
    type: str                                       # ActionType value
    params: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "params": dict(self.params)}

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> RuleAction:
        action_type = d["type"]
        return cls(
            type=_LEGACY_ACTION_TYPES.get(action_type, action_type),
            params=dict(d.get("params") or {}),
        )


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------

@dataclass
class AutomationRule:
    """A named automation unit pairing a condition tree with ordered actions.

    ``device_id=None`` makes the rule global: it is checked against every
    device's telemetry. The engine only ever changes ``last_triggered_at``.
    """
    rule_id: int
    name: str
    conditions: ConditionGroup
    actions: list[RuleAction] = field(default_factory=list)
    description: str = ""
    device_id: int | None = None
    enabled: bool = True
    cooldown_seconds: int = 300
    priority: int = 0
    created_at: str = ""
    updated_at: str = ""
    last_triggered_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.rule_id,
            "name": self.name,
            "description": self.description,
            "deviceId": self.device_id,
            "enabled": self.enabled,
            "conditions": self.conditions.to_dict(),
            "actions": [a.to_dict() for a in self.actions],
            "cooldownSeconds": self.cooldown_seconds,
            "priority": self.priority,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "lastTriggeredAt": self.last_triggered_at,
        }

    @classmethod
    def from_dict(
        cls,
        d: dict[str, Any],
        *,
        max_condition_depth: int = MAX_CONDITION_DEPTH,
    ) -> AutomationRule:
        return cls(
            rule_id=d["id"],
            name=d.get("name", ""),
            description=d.get("description") or "",
            device_id=d.get("deviceId"),
            enabled=d.get("enabled", True),
            conditions=ConditionGroup.from_dict(d["conditions"], max_depth=max_condition_depth),
            actions=[RuleAction.from_dict(a) for a in d.get("actions", [])],
            cooldown_seconds=d.get("cooldownSeconds", 300),
            priority=d.get("priority", 0),
            created_at=d.get("createdAt", ""),
            updated_at=d.get("updatedAt", ""),
            last_triggered_at=d.get("lastTriggeredAt"),
        )

    def applies_to(self, device_id: int) -> bool:
        """True for global rules and rules scoped to *device_id*."""
        return self.device_id is None or self.device_id == device_id


# ---------------------------------------------------------------------------
# Telemetry
# ---------------------------------------------------------------------------

@dataclass
class DeviceMetrics:
    """Normalized telemetry snapshot for one device.

    The totals are derived from their channels and cannot be set directly.
    """
    device_id: int
    serial_number: str
    online: bool = True
    soc: float = 0
    temperature: float = 0
    ac_input_watts: float = 0
    solar_input_watts: float = 0
    ac_output_watts: float = 0
    dc_output_watts: float = 0
    error_codes: list[int] = field(default_factory=list)

    @property
    def total_input_watts(self) -> float:
        return self.ac_input_watts + self.solar_input_watts

    @property
    def total_output_watts(self) -> float:
        return self.ac_output_watts + self.dc_output_watts

    @property
    def has_error(self) -> bool:
        return bool(self.error_codes)

    def metric(self, name: str) -> float:
        """Return the value of a ``MetricField`` by its wire name."""
        attr = _METRIC_ATTRS.get(name)
        if attr is None:
            raise ConditionError(f"Unknown metric field '{name}'")
        return getattr(self, attr)

    def to_dict(self) -> dict[str, Any]:
        return {
            "deviceId": self.device_id,
            "serialNumber": self.serial_number,
            "online": self.online,
            "soc": self.soc,
            "temperature": self.temperature,
            "acInputWatts": self.ac_input_watts,
            "solarInputWatts": self.solar_input_watts,
            "acOutputWatts": self.ac_output_watts,
            "dcOutputWatts": self.dc_output_watts,
            "totalInputWatts": self.total_input_watts,
            "totalOutputWatts": self.total_output_watts,
            "hasError": self.has_error,
            "errorCodes": list(self.error_codes),
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> DeviceMetrics:
        # Totals and hasError in the input are ignored; they are always derived.
        return cls(
            device_id=d["deviceId"],
            serial_number=d["serialNumber"],
            online=d.get("online", True),
            soc=d.get("soc", 0),
            temperature=d.get("temperature", 0),
            ac_input_watts=d.get("acInputWatts", 0),
            solar_input_watts=d.get("solarInputWatts", 0),
            ac_output_watts=d.get("acOutputWatts", 0),
            dc_output_watts=d.get("dcOutputWatts", 0),
            error_codes=list(d.get("errorCodes", [])),
        )


_METRIC_ATTRS: dict[str, str] = {
    MetricField.SOC.value: "soc",
    MetricField.TEMPERATURE.value: "temperature",
    MetricField.AC_INPUT_WATTS.value: "ac_input_watts",
    MetricField.SOLAR_INPUT_WATTS.value: "solar_input_watts",
    MetricField.AC_OUTPUT_WATTS.value: "ac_output_watts",
    MetricField.DC_OUTPUT_WATTS.value: "dc_output_watts",
    MetricField.TOTAL_INPUT_WATTS.value: "total_input_watts",
    MetricField.TOTAL_OUTPUT_WATTS.value: "total_output_watts",
}


@dataclass(frozen=True)
class EvaluationContext:
    """Everything a condition tree is evaluated against, fixed for one pass."""
    metrics: DeviceMetrics
    current_time: datetime
    previous_metrics: DeviceMetrics | None = None


# ---------------------------------------------------------------------------
# Execution records
# ---------------------------------------------------------------------------

@dataclass
class ActionExecutionResult:
    """Outcome of one dispatched action."""
    action: RuleAction
    success: bool
    response: dict[str, Any] | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "type": self.action.type,
            "params": dict(self.action.params),
            "success": self.success,
        }
        if self.response is not None:
            d["response"] = self.response
        if self.error is not None:
            d["error"] = self.error
        return d


@dataclass(frozen=True)
class ExecutionLog:
    """One record per rule trigger (or per failed rule evaluation)."""
    rule_id: int
    rule_name: str
    device_id: int
    device_serial: str
    trigger_details: dict[str, Any]
    actions_executed: list[dict[str, Any]]
    success: bool
    error_message: str | None
    execution_time_ms: int
    timestamp: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "ruleId": self.rule_id,
            "ruleName": self.rule_name,
            "deviceId": self.device_id,
            "deviceSerial": self.device_serial,
            "triggerDetails": self.trigger_details,
            "actionsExecuted": self.actions_executed,
            "success": self.success,
            "errorMessage": self.error_message,
            "executionTimeMs": self.execution_time_ms,
            "timestamp": self.timestamp,
        }
