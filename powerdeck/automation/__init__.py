"""Rule engine that turns device telemetry into commands and notifications.

Devices report a ``DeviceMetrics`` snapshot once per polling cycle; the
``RuleProcessor`` checks every applicable rule against it and runs the
actions of the rules that match.
"""

from powerdeck.automation.actions import ActionExecutor, DeviceControlClient, NotificationClient
from powerdeck.automation.engine import RuleProcessor, RuleTestResult, create_processor
from powerdeck.automation.metrics import build_device_metrics
from powerdeck.automation.models import (
    AutomationRule,
    ConditionError,
    ConditionGroup,
    DeviceMetrics,
    ExecutionLog,
    RuleAction,
    RuleNotFoundError,
    RuleValidationError,
)
from powerdeck.automation.store import JsonRuleStore, LogSink, MemoryLogSink, RuleStore

__all__ = [
    "ActionExecutor",
    "AutomationRule",
    "ConditionError",
    "ConditionGroup",
    "DeviceControlClient",
    "DeviceMetrics",
    "ExecutionLog",
    "JsonRuleStore",
    "LogSink",
    "MemoryLogSink",
    "NotificationClient",
    "RuleAction",
    "RuleNotFoundError",
    "RuleProcessor",
    "RuleStore",
    "RuleTestResult",
    "RuleValidationError",
    "build_device_metrics",
    "create_processor",
]
