"""Tests for powerdeck.automation.engine: per-device rule processing."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from powerdeck.automation.actions import (
    ActionExecutor,
    DeviceControlClient,
    NotificationClient,
)
from powerdeck.automation.engine import RuleProcessor, create_processor
from powerdeck.automation.models import (
    AutomationRule,
    ConditionError,
    ConditionGroup,
    DeviceMetrics,
    EventCondition,
    MetricCondition,
    RuleAction,
    RuleNotFoundError,
    TimeCondition,
)
from powerdeck.automation.store import JsonRuleStore, MemoryLogSink
from powerdeck.config.schema import AutomationConfig


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class FakeDeviceClient(DeviceControlClient):
    def __init__(self):
        self.set_ac_output = AsyncMock()
        self.set_dc_output = AsyncMock()
        self.set_charging_power = AsyncMock()
        self.set_max_charge_soc = AsyncMock()
        self.set_min_discharge_soc = AsyncMock()

    async def set_ac_output(self, serial_number, enabled): ...
    async def set_dc_output(self, serial_number, enabled): ...
    async def set_charging_power(self, serial_number, watts): ...
    async def set_max_charge_soc(self, serial_number, max_soc): ...
    async def set_min_discharge_soc(self, serial_number, min_soc): ...


class FakeNotifier(NotificationClient):
    def __init__(self):
        self.send = AsyncMock()

    async def send(self, message, channel=None): ...


class _Clock:
    def __init__(self, now: float):
        self.now = now

    def __call__(self) -> float:
        return self.now


# 2024-06-05 12:00:00 UTC, a Wednesday
NOON = datetime(2024, 6, 5, 12, 0, tzinfo=timezone.utc).timestamp()


def _metrics(device_id: int = 1, serial: str = "DP-0001", **overrides) -> DeviceMetrics:
    values = dict(device_id=device_id, serial_number=serial, online=True, soc=15)
    values.update(overrides)
    return DeviceMetrics(**values)


def _rule(rule_id: int = 0, **overrides) -> AutomationRule:
    values = dict(
        rule_id=rule_id,
        name=f"rule-{rule_id}",
        conditions=ConditionGroup("AND", [MetricCondition("soc", "<", 20)]),
        actions=[RuleAction("setAcOutput", {"enabled": False})],
        cooldown_seconds=60,
    )
    values.update(overrides)
    return AutomationRule(**values)


class Harness:
    def __init__(self, config: AutomationConfig | None = None):
        self.clock = _Clock(NOON)
        self.device = FakeDeviceClient()
        self.notifier = FakeNotifier()
        self.store = JsonRuleStore()
        self.logs = MemoryLogSink()
        self.processor = RuleProcessor(
            self.store,
            self.logs,
            ActionExecutor(self.device, self.notifier, timeout=1.0),
            config=config or AutomationConfig(timezone="UTC"),
            clock=self.clock,
        )

    async def add(self, **overrides) -> AutomationRule:
        return await self.store.add_rule(_rule(**overrides))


# ===========================================================================
# process_device_automation
# ===========================================================================

class TestProcessDeviceAutomation:
    @pytest.mark.asyncio
    async def test_matching_rule_fires(self):
        h = Harness()
        rule = await h.add()
        await h.processor.process_device_automation(_metrics())

        h.device.set_ac_output.assert_awaited_once_with("DP-0001", False)
        [log] = h.logs.query()
        assert log.rule_id == rule.rule_id
        assert log.device_serial == "DP-0001"
        assert log.success is True
        assert log.error_message is None
        assert log.trigger_details["matchedConditions"] == ["0: SOC (15) < 20"]
        assert log.trigger_details["metrics"]["soc"] == 15
        assert log.trigger_details["time"].startswith("2024-06-05T12:00:00")
        assert log.actions_executed == [{
            "type": "setAcOutput",
            "params": {"enabled": False},
            "success": True,
            "response": {"enabled": False},
        }]
        assert h.store.get_rule(rule.rule_id).last_triggered_at.startswith("2024-06-05T12:00:00")

    @pytest.mark.asyncio
    async def test_non_matching_rule_is_silent(self):
        h = Harness()
        await h.add()
        await h.processor.process_device_automation(_metrics(soc=80))
        h.device.set_ac_output.assert_not_awaited()
        assert len(h.logs) == 0
        assert len(h.processor.cooldowns) == 0

    @pytest.mark.asyncio
    async def test_cooldown_blocks_second_cycle(self):
        h = Harness()
        rule = await h.add()
        await h.processor.process_device_automation(_metrics())

        h.clock.now = NOON + 30
        await h.processor.process_device_automation(_metrics())
        assert h.device.set_ac_output.await_count == 1
        assert h.processor.cooldown_status(rule.rule_id, 60).remaining_seconds == 30

        h.clock.now = NOON + 61
        await h.processor.process_device_automation(_metrics())
        assert h.device.set_ac_output.await_count == 2
        assert len(h.logs) == 2

    @pytest.mark.asyncio
    async def test_clear_cooldown(self):
        h = Harness()
        rule = await h.add()
        await h.processor.process_device_automation(_metrics())
        assert h.processor.clear_cooldown(rule.rule_id) is True
        await h.processor.process_device_automation(_metrics())
        assert h.device.set_ac_output.await_count == 2

        h.processor.clear_all_cooldowns()
        assert len(h.processor.cooldowns) == 0

    @pytest.mark.asyncio
    async def test_partial_failure_still_triggers(self):
        h = Harness()
        h.device.set_ac_output.side_effect = RuntimeError("device unreachable")
        rule = await h.add(actions=[
            RuleAction("setAcOutput", {"enabled": False}),
            RuleAction("sendNotification", {"message": "{device} low: {soc}%"}),
        ])
        await h.processor.process_device_automation(_metrics())

        h.notifier.send.assert_awaited_once_with("DP-0001 low: 15%", None)
        [log] = h.logs.query()
        assert log.success is False
        assert log.error_message == "device unreachable"
        assert [a["success"] for a in log.actions_executed] == [False, True]
        assert h.processor.cooldowns.is_in_cooldown(rule.rule_id, 60)
        assert h.store.get_rule(rule.rule_id).last_triggered_at is not None

    @pytest.mark.asyncio
    async def test_error_messages_joined(self):
        h = Harness()
        h.device.set_ac_output.side_effect = RuntimeError("a")
        h.device.set_dc_output.side_effect = RuntimeError("b")
        await h.add(actions=[
            RuleAction("setAcOutput", {"enabled": False}),
            RuleAction("setDcOutput", {"enabled": False}),
        ])
        await h.processor.process_device_automation(_metrics())
        assert h.logs.query()[0].error_message == "a; b"

    @pytest.mark.asyncio
    async def test_scope_isolation(self):
        h = Harness()
        await h.add(device_id=1, name="one")
        await h.add(device_id=2, name="two")
        await h.add(device_id=None, name="global")

        await h.processor.process_device_automation(_metrics(device_id=1))
        names = sorted(log.rule_name for log in h.logs.query())
        assert names == ["global", "one"]

    @pytest.mark.asyncio
    async def test_foreign_rule_from_store_is_skipped(self):
        h = Harness()
        foreign = _rule(rule_id=9, device_id=2)
        h.processor._store = AsyncMock()
        h.processor._store.get_applicable_rules.return_value = [foreign]
        await h.processor.process_device_automation(_metrics(device_id=1))
        h.device.set_ac_output.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_disabled_rule_ignored(self):
        h = Harness()
        await h.add(enabled=False)
        await h.processor.process_device_automation(_metrics())
        h.device.set_ac_output.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_engine_disabled(self):
        h = Harness(AutomationConfig(enabled=False))
        await h.add()
        await h.processor.process_device_automation(_metrics())
        h.device.set_ac_output.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_priority_order(self):
        h = Harness()
        calls: list[str] = []
        h.notifier.send.side_effect = lambda msg, ch: calls.append(msg)
        await h.add(name="low", priority=1, actions=[RuleAction("sendNotification", {"message": "low"})])
        await h.add(name="high", priority=5, actions=[RuleAction("sendNotification", {"message": "high"})])
        await h.processor.process_device_automation(_metrics())
        assert calls == ["high", "low"]

    @pytest.mark.asyncio
    async def test_failing_rule_does_not_stop_siblings(self):
        h = Harness()
        bad = await h.add(name="bad")
        await h.add(name="good")
        # Corrupt the stored tree after validation
        bad.conditions.conditions.append(MetricCondition("voltage", ">", 1))

        await h.processor.process_device_automation(_metrics())

        h.device.set_ac_output.assert_awaited_once()
        logs = {log.rule_name: log for log in h.logs.query()}
        assert logs["good"].success is True
        assert logs["bad"].success is False
        assert logs["bad"].trigger_details == {"error": "Rule processing failed"}
        assert logs["bad"].actions_executed == []
        assert "voltage" in logs["bad"].error_message

    @pytest.mark.asyncio
    async def test_store_failure_is_swallowed(self):
        h = Harness()
        h.processor._store = AsyncMock()
        h.processor._store.get_applicable_rules.side_effect = OSError("db down")
        await h.processor.process_device_automation(_metrics())
        assert len(h.logs) == 0
        # Snapshot cached even though the cycle failed
        assert h.processor.previous_metrics("DP-0001") is not None

    @pytest.mark.asyncio
    async def test_mark_triggered_failure_is_swallowed(self):
        h = Harness()
        await h.add()
        with patch.object(h.store, "mark_triggered", AsyncMock(side_effect=OSError("disk full"))):
            await h.processor.process_device_automation(_metrics())
        [log] = h.logs.query()
        assert log.success is True

    @pytest.mark.asyncio
    async def test_log_failure_is_swallowed(self):
        h = Harness()
        rule = await h.add()
        with patch.object(h.logs, "append_execution_log", AsyncMock(side_effect=OSError("x"))):
            await h.processor.process_device_automation(_metrics())
        h.device.set_ac_output.assert_awaited_once()
        assert h.processor.cooldowns.is_in_cooldown(rule.rule_id, 60)

    @pytest.mark.asyncio
    async def test_time_condition_uses_configured_zone(self):
        h = Harness(AutomationConfig(timezone="Asia/Tokyo"))
        # 12:00 UTC is 21:00 in Tokyo
        await h.add(conditions=ConditionGroup("AND", [
            TimeCondition("between", ["20:00", "22:00"]),
        ]))
        await h.processor.process_device_automation(_metrics())
        h.device.set_ac_output.assert_awaited_once()


# ===========================================================================
# Previous-metrics cache and transition events
# ===========================================================================

class TestTransitions:
    @pytest.mark.asyncio
    async def test_online_edge(self):
        h = Harness()
        await h.add(
            cooldown_seconds=0,
            conditions=ConditionGroup("AND", [EventCondition("online")]),
        )
        # Cold start: no previous snapshot, nothing fires
        await h.processor.process_device_automation(_metrics(online=True))
        assert len(h.logs) == 0

        await h.processor.process_device_automation(_metrics(online=False))
        await h.processor.process_device_automation(_metrics(online=True))
        assert len(h.logs) == 1

        await h.processor.process_device_automation(_metrics(online=True))
        assert len(h.logs) == 1

    @pytest.mark.asyncio
    async def test_offline_edge(self):
        h = Harness()
        await h.add(
            cooldown_seconds=0,
            conditions=ConditionGroup("AND", [EventCondition("offline")]),
        )
        await h.processor.process_device_automation(_metrics(online=True))
        await h.processor.process_device_automation(_metrics(online=False))
        assert len(h.logs) == 1

    @pytest.mark.asyncio
    async def test_cache_keyed_by_serial(self):
        h = Harness()
        await h.processor.process_device_automation(_metrics(serial="A", online=False))
        assert h.processor.previous_metrics("A").online is False
        assert h.processor.previous_metrics("B") is None

    @pytest.mark.asyncio
    async def test_cached_snapshot_is_a_copy(self):
        h = Harness()
        m = _metrics(error_codes=[1])
        await h.processor.process_device_automation(m)
        m.error_codes.append(2)
        assert h.processor.previous_metrics("DP-0001").error_codes == [1]

    @pytest.mark.asyncio
    async def test_forget_device(self):
        h = Harness()
        await h.processor.process_device_automation(_metrics())
        h.processor.forget_device("DP-0001")
        assert h.processor.previous_metrics("DP-0001") is None


# ===========================================================================
# test_rule (dry run)
# ===========================================================================

class TestDryRun:
    @pytest.mark.asyncio
    async def test_match_reports_actions(self):
        h = Harness()
        rule = await h.add()
        result = await h.processor.test_rule(rule.rule_id, _metrics())

        assert result.matches is True
        assert result.would_execute == rule.actions
        assert result.to_dict()["wouldExecute"] == [
            {"type": "setAcOutput", "params": {"enabled": False}},
        ]
        h.device.set_ac_output.assert_not_awaited()
        assert len(h.logs) == 0
        assert len(h.processor.cooldowns) == 0
        assert h.processor.previous_metrics("DP-0001") is None
        assert h.store.get_rule(rule.rule_id).last_triggered_at is None

    @pytest.mark.asyncio
    async def test_no_match(self):
        h = Harness()
        rule = await h.add()
        result = await h.processor.test_rule(rule.rule_id, _metrics(soc=90))
        assert result.matches is False
        assert result.would_execute == []
        assert result.failed_paths == ["0: SOC (90) < 20"]

    @pytest.mark.asyncio
    async def test_ignores_cooldown_and_enabled(self):
        h = Harness()
        rule = await h.add(enabled=False)
        h.processor.cooldowns.record_trigger(rule.rule_id, NOON)
        result = await h.processor.test_rule(rule.rule_id, _metrics())
        assert result.matches is True

    @pytest.mark.asyncio
    async def test_unknown_rule(self):
        h = Harness()
        with pytest.raises(RuleNotFoundError):
            await h.processor.test_rule(404, _metrics())

    @pytest.mark.asyncio
    async def test_bad_tree_raises(self):
        h = Harness()
        rule = await h.add()
        rule.conditions.operator = "XOR"
        with pytest.raises(ConditionError):
            await h.processor.test_rule(rule.rule_id, _metrics())


# ===========================================================================
# dispatch / create_processor
# ===========================================================================

class TestDispatch:
    @pytest.mark.asyncio
    async def test_devices_processed_concurrently(self):
        h = Harness()
        await h.add(cooldown_seconds=0)
        tasks = [
            h.processor.dispatch(_metrics(device_id=i, serial=f"DP-{i}"))
            for i in range(1, 4)
        ]
        await asyncio.gather(*tasks)
        assert h.device.set_ac_output.await_count == 3
        assert tasks[0].get_name() == "automation-DP-1"


class TestCreateProcessor:
    @pytest.mark.asyncio
    async def test_wires_components(self, tmp_path: Path):
        rules_path = tmp_path / "automation_rules.json"
        rules_path.write_text(json.dumps({"rules": [_rule(rule_id=3).to_dict()]}))
        device, notifier = FakeDeviceClient(), FakeNotifier()

        processor, store, logs = create_processor(
            AutomationConfig(rules_path=str(rules_path), timezone="UTC", log_buffer_size=5),
            device,
            notifier,
            clock=_Clock(NOON),
        )
        assert store.rule_count == 1

        await processor.process_device_automation(_metrics())
        device.set_ac_output.assert_awaited_once()
        assert len(logs) == 1

        saved = json.loads(rules_path.read_text())
        assert saved["rules"][0]["lastTriggeredAt"].startswith("2024-06-05T12:00:00")
