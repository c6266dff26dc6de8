"""Rule action validation and execution.

Actions are dispatched to two effectors, both remote and fallible:

- ``DeviceControlClient``: switches outputs and changes charge settings
  on the device that produced the telemetry.
- ``NotificationClient``: delivers a chat message.

Parameter ranges
----------------
==================== ============== ==========================
Action               Param          Valid values
==================== ============== ==========================
setAcOutput          enabled        bool
setDcOutput          enabled        bool
setChargingPower     watts          200 – 2900
setMaxChargeSoc      maxSoc         50 – 100
setMinDischargeSoc   minSoc         0 – 30
sendNotification     message        non-empty string
                     channel        optional string
==================== ============== ==========================

The same checks run when a rule is saved (``validate_rule``) and again
right before each action is dispatched.

Usage
-----
>>> executor = ActionExecutor(device_client, notifier, timeout=10.0)
>>> results = await executor.execute_actions(rule.actions, metrics, rule.name)
>>> all(r.success for r in results)
"""

from __future__ import annotations

import abc
import math
import re
from typing import Any, Awaitable, Callable

from loguru import logger

from powerdeck.automation.conditions import MAX_CONDITION_DEPTH, validate_conditions
from powerdeck.automation.models import (
    ActionExecutionResult,
    ActionType,
    AutomationRule,
    DeviceMetrics,
    RuleAction,
)
from powerdeck.automation.resilience import DEFAULT_TIMEOUT, call_with_timeout

CHARGING_POWER_RANGE = (200, 2900)
MAX_CHARGE_SOC_RANGE = (50, 100)
MIN_DISCHARGE_SOC_RANGE = (0, 30)

_NUMERIC_PARAMS: dict[str, tuple[str, tuple[float, float]]] = {
    ActionType.SET_CHARGING_POWER: ("watts", CHARGING_POWER_RANGE),
    ActionType.SET_MAX_CHARGE_SOC: ("maxSoc", MAX_CHARGE_SOC_RANGE),
    ActionType.SET_MIN_DISCHARGE_SOC: ("minSoc", MIN_DISCHARGE_SOC_RANGE),
}


# ---------------------------------------------------------------------------
# Effector interfaces
# ---------------------------------------------------------------------------

class DeviceControlClient(abc.ABC):
    """Sends control commands to a device. Each method raises on a non-success response."""

    @abc.abstractmethod
    async def set_ac_output(self, serial_number: str, enabled: bool) -> None:
        ...

    @abc.abstractmethod
    async def set_dc_output(self, serial_number: str, enabled: bool) -> None:
        ...

    @abc.abstractmethod
    async def set_charging_power(self, serial_number: str, watts: int) -> None:
        ...

    @abc.abstractmethod
    async def set_max_charge_soc(self, serial_number: str, max_soc: int) -> None:
        ...

    @abc.abstractmethod
    async def set_min_discharge_soc(self, serial_number: str, min_soc: int) -> None:
        ...


class NotificationClient(abc.ABC):
    """Delivers chat notifications."""

    @abc.abstractmethod
    async def send(self, message: str, channel: str | None = None) -> None:
        """Send *message*.

        Returns without sending when no endpoint is configured or the
        integration is disabled. Raises on transport failure.
        """
        ...


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def _is_number(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def validate_action(action: RuleAction) -> list[str]:
    """Validate one action's type and parameters.

    Returns a list of error strings. Empty list means valid.
    """
    errors: list[str] = []
    params = action.params if isinstance(action.params, dict) else {}
    if not isinstance(action.params, dict):
        errors.append(f"{action.type}: params must be an object")

    if action.type in (ActionType.SET_AC_OUTPUT, ActionType.SET_DC_OUTPUT):
        if not isinstance(params.get("enabled"), bool):
            errors.append(
                f"{action.type}: 'enabled' must be bool, "
                f"got {type(params.get('enabled')).__name__}"
            )

    elif action.type in _NUMERIC_PARAMS:
        name, (lo, hi) = _NUMERIC_PARAMS[action.type]
        value = params.get(name)
        if not _is_number(value):
            errors.append(
                f"{action.type}: '{name}' must be a finite number, got {value!r}"
            )
        elif value < lo or value > hi:
            errors.append(f"{action.type}: '{name}' {value} out of range [{lo}, {hi}]")

    elif action.type == ActionType.SEND_NOTIFICATION:
        message = params.get("message")
        if not isinstance(message, str) or not message:
            errors.append(f"{action.type}: 'message' must be a non-empty string")
        channel = params.get("channel")
        if channel is not None and not isinstance(channel, str):
            errors.append(f"{action.type}: 'channel' must be a string")

    else:
        valid = sorted(a.value for a in ActionType)
        errors.append(f"Unknown action type '{action.type}'. Valid: {valid}")

    return errors


def validate_actions(actions: list[RuleAction]) -> list[str]:
    """Validate an action list (must be non-empty)."""
    if not actions:
        return ["Rule must have at least one action"]
    errors: list[str] = []
    for i, action in enumerate(actions):
        errors.extend(f"Action[{i}]: {e}" for e in validate_action(action))
    return errors


def validate_rule(
    rule: AutomationRule,
    max_condition_depth: int = MAX_CONDITION_DEPTH,
) -> list[str]:
    """Validate a complete rule before it is stored.

    Returns a list of error strings. Empty list means valid.
    """
    errors: list[str] = []

    if not rule.name or not rule.name.strip():
        errors.append("Rule must have a name")

    errors.extend(validate_conditions(rule.conditions, max_condition_depth))
    errors.extend(validate_actions(rule.actions))

    if not _is_number(rule.cooldown_seconds) or rule.cooldown_seconds < 0:
        errors.append(f"Cooldown must be non-negative, got {rule.cooldown_seconds}")

    return errors


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------

_PLACEHOLDER = re.compile(r"\{(\w+)\}")


def _fmt(value: float) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def format_notification(template: str, metrics: DeviceMetrics, rule_name: str) -> str:
    """Substitute ``{placeholder}`` names with values from *metrics*.

    Supported: {device}, {soc}, {temperature}, {acInput}, {solarInput},
    {acOutput}, {dcOutput}, {totalInput}, {totalOutput}, {rule}, {online}.
    Unknown placeholders are left as written.
    """
    values = {
        "device": metrics.serial_number,
        "soc": _fmt(metrics.soc),
        "temperature": _fmt(metrics.temperature),
        "acInput": _fmt(metrics.ac_input_watts),
        "solarInput": _fmt(metrics.solar_input_watts),
        "acOutput": _fmt(metrics.ac_output_watts),
        "dcOutput": _fmt(metrics.dc_output_watts),
        "totalInput": _fmt(metrics.total_input_watts),
        "totalOutput": _fmt(metrics.total_output_watts),
        "rule": rule_name,
        "online": "Online" if metrics.online else "Offline",
    }
    return _PLACEHOLDER.sub(lambda m: values.get(m.group(1), m.group(0)), template)


def describe_action(action: RuleAction) -> str:
    """Human-readable name of an action, used in logs."""
    p = action.params if isinstance(action.params, dict) else {}
    if action.type == ActionType.SET_AC_OUTPUT:
        return f"Set AC Output: {'ON' if p.get('enabled') else 'OFF'}"
    if action.type == ActionType.SET_DC_OUTPUT:
        return f"Set DC Output: {'ON' if p.get('enabled') else 'OFF'}"
    if action.type == ActionType.SET_CHARGING_POWER:
        return f"Set Charging Power: {p.get('watts')}W"
    if action.type == ActionType.SET_MAX_CHARGE_SOC:
        return f"Set Max Charge SOC: {p.get('maxSoc')}%"
    if action.type == ActionType.SET_MIN_DISCHARGE_SOC:
        return f"Set Min Discharge SOC: {p.get('minSoc')}%"
    if action.type == ActionType.SEND_NOTIFICATION:
        return "Send Notification"
    return f"Unknown Action ({action.type})"


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------

class ActionExecutor:
    """Runs a rule's actions one after another against the effectors.

    Actions run strictly in declaration order, each awaited before the next
    starts. A failing action is recorded and the next one still runs.
    """

    def __init__(
        self,
        device_client: DeviceControlClient,
        notifier: NotificationClient,
        *,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self._device = device_client
        self._notifier = notifier
        self._timeout = timeout

    async def execute_actions(
        self,
        actions: list[RuleAction],
        metrics: DeviceMetrics,
        rule_name: str,
    ) -> list[ActionExecutionResult]:
        """Execute *actions* in order. Always returns one result per action."""
        results: list[ActionExecutionResult] = []
        for action in actions:
            result = await self.execute_action(action, metrics, rule_name)
            results.append(result)
            if result.success:
                logger.info(
                    f"[Actions] rule '{rule_name}' on {metrics.serial_number}: "
                    f"{describe_action(action)} ok"
                )
            else:
                logger.warning(
                    f"[Actions] rule '{rule_name}' on {metrics.serial_number}: "
                    f"{describe_action(action)} failed: {result.error}"
                )
        return results

    async def execute_action(
        self,
        action: RuleAction,
        metrics: DeviceMetrics,
        rule_name: str,
    ) -> ActionExecutionResult:
        """Validate and dispatch a single action, never raising for effector errors."""
        errors = validate_action(action)
        if errors:
            return ActionExecutionResult(action=action, success=False, error="; ".join(errors))

        try:
            response = await self._dispatch(action, metrics, rule_name)
        except Exception as exc:
            return ActionExecutionResult(
                action=action, success=False, error=str(exc) or type(exc).__name__,
            )
        return ActionExecutionResult(action=action, success=True, response=response)

    async def _dispatch(
        self,
        action: RuleAction,
        metrics: DeviceMetrics,
        rule_name: str,
    ) -> dict[str, Any]:
        serial = metrics.serial_number
        p = action.params

        if action.type == ActionType.SEND_NOTIFICATION:
            message = format_notification(p["message"], metrics, rule_name)
            await self._call(self._notifier.send, message, p.get("channel"), label="notification")
            return {"messageSent": message}

        calls: dict[str, tuple[Callable[..., Awaitable[None]], str]] = {
            ActionType.SET_AC_OUTPUT: (self._device.set_ac_output, "enabled"),
            ActionType.SET_DC_OUTPUT: (self._device.set_dc_output, "enabled"),
            ActionType.SET_CHARGING_POWER: (self._device.set_charging_power, "watts"),
            ActionType.SET_MAX_CHARGE_SOC: (self._device.set_max_charge_soc, "maxSoc"),
            ActionType.SET_MIN_DISCHARGE_SOC: (self._device.set_min_discharge_soc, "minSoc"),
        }
        fn, param = calls[action.type]
        await self._call(fn, serial, p[param], label=f"{action.type} {serial}")
        return {param: p[param]}

    async def _call(self, fn: Callable[..., Awaitable[Any]], *args: Any, label: str) -> Any:
        return await call_with_timeout(fn, *args, timeout=self._timeout, label=label)
