"""Rule processor: one pass of every applicable rule per telemetry snapshot.

Architecture
------------
- The ingestion loop calls ``process_device_automation(metrics)`` once per
  device per polling cycle (or ``dispatch(metrics)`` to run it as its own
  task so a slow device command never holds up other devices).
- Rules come from a ``RuleStore`` already filtered to the device and to
  enabled rules, in the store's order.
- Each rule is isolated: cooldown gate → condition evaluation → actions →
  cooldown + last-triggered update → execution log. An exception in one
  rule is logged as a failed execution and the next rule still runs.
- The previous snapshot per device (for online/offline transitions) and the
  per-rule cooldowns are owned by the processor instance.

Usage
-----
>>> processor = RuleProcessor(store, log_sink, ActionExecutor(device_client, notifier))
>>> metrics = build_device_metrics(1, "R331ZEB4ZEA0012", True, raw_quota)
>>> await processor.process_device_automation(metrics)
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable
from zoneinfo import ZoneInfo

from loguru import logger

from powerdeck.automation.actions import (
    ActionExecutor,
    DeviceControlClient,
    NotificationClient,
)
from powerdeck.automation.conditions import EvaluationResult, evaluate_conditions
from powerdeck.automation.cooldown import CooldownStatus, CooldownTracker
from powerdeck.automation.models import (
    AutomationRule,
    DeviceMetrics,
    EvaluationContext,
    ExecutionLog,
    RuleAction,
    RuleNotFoundError,
)
from powerdeck.automation.resilience import supervised_task
from powerdeck.automation.store import JsonRuleStore, LogSink, MemoryLogSink, RuleStore
from powerdeck.config.schema import AutomationConfig


@dataclass
class RuleTestResult:
    """Outcome of a dry run: what would happen, with nothing executed."""
    matches: bool
    matched_paths: list[str] = field(default_factory=list)
    failed_paths: list[str] = field(default_factory=list)
    would_execute: list[RuleAction] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "matches": self.matches,
            "matchedConditions": list(self.matched_paths),
            "failedConditions": list(self.failed_paths),
            "wouldExecute": [a.to_dict() for a in self.would_execute],
        }


class RuleProcessor:
    """Evaluates automation rules against device telemetry and runs their actions."""

    def __init__(
        self,
        store: RuleStore,
        log_sink: LogSink,
        executor: ActionExecutor,
        *,
        cooldowns: CooldownTracker | None = None,
        config: AutomationConfig | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._log_sink = log_sink
        self._executor = executor
        self._clock = clock
        self._cooldowns = cooldowns or CooldownTracker(clock=clock)
        self._config = config or AutomationConfig()
        self._tz = ZoneInfo(self._config.timezone) if self._config.timezone else None
        self._previous: dict[str, DeviceMetrics] = {}  # serial_number → last snapshot

    @property
    def cooldowns(self) -> CooldownTracker:
        return self._cooldowns

    # -- entry points --------------------------------------------------------

    async def process_device_automation(self, metrics: DeviceMetrics) -> None:
        """Run every applicable rule once for *metrics*.

        Returns after all actions and logs of this cycle have completed.
        Never raises for rule, action, store or log failures.
        """
        try:
            if not self._config.enabled:
                return
            try:
                rules = await self._store.get_applicable_rules(metrics.device_id)
            except Exception as exc:
                logger.error(
                    f"[Automation] failed to load rules for device {metrics.device_id}: {exc}"
                )
                return
            if not rules:
                return

            ctx = self._context(metrics)
            for rule in rules:
                if not rule.applies_to(metrics.device_id):
                    logger.debug(
                        f"[Automation] rule {rule.rule_id} is scoped to device "
                        f"{rule.device_id}, skipping for {metrics.device_id}"
                    )
                    continue
                await self._process_rule_isolated(rule, ctx)
        finally:
            # Replaced on every call, including cycles where rules failed.
            self._previous[metrics.serial_number] = replace(
                metrics, error_codes=list(metrics.error_codes),
            )

    def dispatch(self, metrics: DeviceMetrics) -> asyncio.Task:
        """Start ``process_device_automation`` as a background task for one device."""
        return supervised_task(
            self.process_device_automation(metrics),
            name=f"automation-{metrics.serial_number}",
        )

    async def test_rule(self, rule_id: int, metrics: DeviceMetrics) -> RuleTestResult:
        """Evaluate one rule against *metrics* without side effects.

        No effector is called and neither cooldowns, logs nor the
        previous-metrics cache change. Raises ``RuleNotFoundError`` for an
        unknown id and ``ConditionError`` for a tree that cannot be evaluated.
        """
        rule = await self._store.get_by_id(rule_id)
        if rule is None:
            raise RuleNotFoundError(f"Rule not found: {rule_id}")

        result = self._evaluate(rule, self._context(metrics))
        return RuleTestResult(
            matches=result.matches,
            matched_paths=result.matched_paths,
            failed_paths=result.failed_paths,
            would_execute=list(rule.actions) if result.matches else [],
        )

    # -- cooldown management -------------------------------------------------

    def cooldown_status(self, rule_id: int, cooldown_seconds: float) -> CooldownStatus:
        return self._cooldowns.status(rule_id, cooldown_seconds)

    def clear_cooldown(self, rule_id: int) -> bool:
        return self._cooldowns.clear(rule_id)

    def clear_all_cooldowns(self) -> None:
        self._cooldowns.clear_all()

    # -- previous metrics ----------------------------------------------------

    def previous_metrics(self, serial_number: str) -> DeviceMetrics | None:
        return self._previous.get(serial_number)

    def forget_device(self, serial_number: str) -> None:
        """Drop the cached snapshot, e.g. when a device is removed."""
        self._previous.pop(serial_number, None)

    # -- internals -----------------------------------------------------------

    def _context(self, metrics: DeviceMetrics) -> EvaluationContext:
        now = self._clock()
        current_time = (
            datetime.fromtimestamp(now, tz=self._tz)
            if self._tz is not None
            else datetime.fromtimestamp(now).astimezone()
        )
        return EvaluationContext(
            metrics=metrics,
            current_time=current_time,
            previous_metrics=self._previous.get(metrics.serial_number),
        )

    def _evaluate(self, rule: AutomationRule, ctx: EvaluationContext) -> EvaluationResult:
        return evaluate_conditions(
            rule.conditions,
            ctx,
            tz=self._tz,
            max_depth=self._config.max_condition_depth,
            low_battery_soc=self._config.low_battery_soc,
            full_battery_soc=self._config.full_battery_soc,
        )

    async def _process_rule_isolated(self, rule: AutomationRule, ctx: EvaluationContext) -> None:
        started = self._clock()
        try:
            await self._process_rule(rule, ctx)
        except Exception as exc:
            logger.error(f"[Automation] error processing rule {rule.rule_id} ({rule.name}): {exc}")
            await self._append_log(
                rule,
                ctx,
                trigger_details={"error": "Rule processing failed"},
                actions_executed=[],
                success=False,
                error_message=str(exc) or type(exc).__name__,
                elapsed=self._clock() - started,
            )

    async def _process_rule(self, rule: AutomationRule, ctx: EvaluationContext) -> None:
        if self._cooldowns.is_in_cooldown(rule.rule_id, rule.cooldown_seconds, self._clock()):
            logger.debug(
                f"[Automation] rule {rule.rule_id} skipped (cooldown: "
                f"{self._cooldowns.remaining(rule.rule_id, rule.cooldown_seconds)}s left)"
            )
            return

        result = self._evaluate(rule, ctx)
        if not result.matches:
            return

        serial = ctx.metrics.serial_number
        logger.info(
            f"[Automation] rule '{rule.name}' ({rule.rule_id}) FIRED for device {serial}, "
            f"matched {result.matched_paths}"
        )

        started = self._clock()
        action_results = await self._executor.execute_actions(
            rule.actions, ctx.metrics, rule.name,
        )
        finished = self._clock()

        success = all(r.success for r in action_results)
        errors = [r.error for r in action_results if not r.success and r.error]

        # A partial failure still counts as a trigger.
        self._cooldowns.record_trigger(rule.rule_id, finished)
        await self._mark_triggered(rule, finished)

        metrics = ctx.metrics
        await self._append_log(
            rule,
            ctx,
            trigger_details={
                "matchedConditions": result.matched_paths,
                "metrics": {
                    "soc": metrics.soc,
                    "temperature": metrics.temperature,
                    "acInputWatts": metrics.ac_input_watts,
                    "solarInputWatts": metrics.solar_input_watts,
                    "acOutputWatts": metrics.ac_output_watts,
                    "dcOutputWatts": metrics.dc_output_watts,
                },
                "time": ctx.current_time.isoformat(),
            },
            actions_executed=[r.to_dict() for r in action_results],
            success=success,
            error_message="; ".join(errors) if errors else None,
            elapsed=finished - started,
        )
        logger.info(
            f"[Automation] rule '{rule.name}' ({rule.rule_id}) completed, success={success}"
        )

    async def _mark_triggered(self, rule: AutomationRule, ts: float) -> None:
        try:
            await self._store.mark_triggered(
                rule.rule_id, datetime.fromtimestamp(ts, tz=timezone.utc),
            )
        except Exception as exc:
            logger.error(f"[Automation] failed to mark rule {rule.rule_id} triggered: {exc}")

    async def _append_log(
        self,
        rule: AutomationRule,
        ctx: EvaluationContext,
        *,
        trigger_details: dict[str, Any],
        actions_executed: list[dict[str, Any]],
        success: bool,
        error_message: str | None,
        elapsed: float,
    ) -> None:
        record = ExecutionLog(
            rule_id=rule.rule_id,
            rule_name=rule.name,
            device_id=ctx.metrics.device_id,
            device_serial=ctx.metrics.serial_number,
            trigger_details=trigger_details,
            actions_executed=actions_executed,
            success=success,
            error_message=error_message,
            execution_time_ms=max(0, round(elapsed * 1000)),
            timestamp=datetime.fromtimestamp(self._clock(), tz=timezone.utc).isoformat(),
        )
        try:
            await self._log_sink.append_execution_log(record)
        except Exception as exc:
            logger.error(f"[Automation] failed to write execution log for rule {rule.rule_id}: {exc}")


def create_processor(
    config: AutomationConfig,
    device_client: DeviceControlClient,
    notifier: NotificationClient,
    *,
    clock: Callable[[], float] = time.time,
) -> tuple[RuleProcessor, JsonRuleStore, MemoryLogSink]:
    """Wire a processor with the built-in JSON rule store and in-memory log sink."""
    store = JsonRuleStore(config.rules_path or None, max_condition_depth=config.max_condition_depth)
    store.load()
    log_sink = MemoryLogSink(max_records=config.log_buffer_size)
    executor = ActionExecutor(device_client, notifier, timeout=config.action_timeout_seconds)
    processor = RuleProcessor(store, log_sink, executor, config=config, clock=clock)
    return processor, store, log_sink
