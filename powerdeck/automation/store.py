"""Rule storage and execution-log interfaces, plus small built-in backends.

The engine depends only on the abstract ``RuleStore`` and ``LogSink``.
Two reference backends ship with the package:

- ``JsonRuleStore`` keeps rules in a JSON file (or only in memory when no
  path is given) and validates every rule before it is saved.
- ``MemoryLogSink`` keeps the most recent execution logs in a ring buffer.

Usage
-----
>>> store = JsonRuleStore(path="automation_rules.json")
>>> store.load()
>>> rule = await store.add_rule(AutomationRule(rule_id=0, name="...", ...))
>>> rules = await store.get_applicable_rules(device_id=1)
"""

from __future__ import annotations

import abc
import asyncio
import json
import os
import time
from collections import deque
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from loguru import logger

from powerdeck.automation.actions import validate_rule
from powerdeck.automation.conditions import MAX_CONDITION_DEPTH
from powerdeck.automation.models import (
    AutomationRule,
    ConditionError,
    ConditionGroup,
    ExecutionLog,
    RuleAction,
    RuleValidationError,
)

_UNSET: Any = object()


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Interfaces
# ---------------------------------------------------------------------------

class RuleStore(abc.ABC):
    """Read access to rules plus the one write the engine performs."""

    @abc.abstractmethod
    async def get_applicable_rules(self, device_id: int) -> list[AutomationRule]:
        """Enabled rules scoped to *device_id* plus enabled global rules, in processing order."""
        ...

    @abc.abstractmethod
    async def get_by_id(self, rule_id: int) -> AutomationRule | None:
        ...

    @abc.abstractmethod
    async def mark_triggered(self, rule_id: int, timestamp: datetime) -> None:
        ...


class LogSink(abc.ABC):
    """Append-only destination for execution logs."""

    @abc.abstractmethod
    async def append_execution_log(self, record: ExecutionLog) -> None:
        ...


# ---------------------------------------------------------------------------
# JSON-file rule store
# ---------------------------------------------------------------------------

class JsonRuleStore(RuleStore):
    """Rule store persisted to a JSON file.

    Persistence
    -----------
    Rules load once via ``load()`` and every mutation writes the whole file
    through a temp file + ``os.replace``. With ``path=None`` nothing is
    written.

    Ordering
    --------
    ``get_applicable_rules`` returns rules by descending priority, then id.
    """

    def __init__(
        self,
        path: str | Path | None = None,
        *,
        max_condition_depth: int = MAX_CONDITION_DEPTH,
    ):
        self._path = Path(path) if path else None
        self._max_depth = max_condition_depth
        self._rules: dict[int, AutomationRule] = {}  # rule_id → rule
        self._lock = asyncio.Lock()

    # -- persistence ---------------------------------------------------------

    def load(self) -> None:
        """Load rules from disk. Missing file → empty rule set.

        Rules that cannot be parsed or fail ``validate_rule`` are skipped
        with a warning; the remaining rules still load.
        """
        if self._path is None:
            return
        if not self._path.exists():
            logger.debug(f"[RuleStore] no file at {self._path}, starting with no rules")
            return

        try:
            text = self._path.read_text(encoding="utf-8").strip()
            if not text:
                logger.debug(f"[RuleStore] empty file at {self._path}, starting fresh")
                return
            data = json.loads(text)
            for d in data.get("rules", []):
                try:
                    rule = AutomationRule.from_dict(d, max_condition_depth=self._max_depth)
                    errors = validate_rule(rule, self._max_depth)
                except (KeyError, TypeError, AttributeError, ConditionError) as exc:
                    logger.warning(f"[RuleStore] skipping malformed rule: {exc}")
                    continue
                if errors:
                    logger.warning(
                        f"[RuleStore] skipping invalid rule {rule.rule_id}: {'; '.join(errors)}"
                    )
                    continue
                self._rules[rule.rule_id] = rule
            logger.info(f"[RuleStore] loaded {len(self._rules)} rules from {self._path}")
        except (json.JSONDecodeError, OSError, AttributeError) as exc:
            logger.error(f"[RuleStore] failed to load {self._path}: {exc}")

    async def _commit(self, rule_id: int, rule: AutomationRule | None) -> None:
        """Store *rule* under *rule_id* (``None`` removes it).

        The file is written first; on a failed write the in-memory rules
        stay as they were.
        """
        async with self._lock:
            rules = dict(self._rules)
            if rule is None:
                rules.pop(rule_id, None)
            else:
                rules[rule_id] = rule
            self._save_sync(rules)
            self._rules = rules

    def _save_sync(self, rules: dict[int, AutomationRule]) -> None:
        """Synchronous save. Raises ``OSError`` after logging when the write fails."""
        if self._path is None:
            return
        data = {
            "version": 1,
            "updated_at": time.time(),
            "rules": [r.to_dict() for r in rules.values()],
        }
        tmp = self._path.with_suffix(".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
            os.replace(str(tmp), str(self._path))
        except OSError as exc:
            logger.error(f"[RuleStore] failed to save {self._path}: {exc}")
            raise

    def _check(self, rule: AutomationRule) -> None:
        errors = validate_rule(rule, self._max_depth)
        if errors:
            raise RuleValidationError(errors)

    # -- CRUD ----------------------------------------------------------------

    async def add_rule(self, rule: AutomationRule) -> AutomationRule:
        """Validate and add a rule. ``rule_id <= 0`` assigns the next free id.

        Raises ``RuleValidationError`` for invalid rules, ``ValueError``
        if the id is taken and ``OSError`` if the file cannot be written.
        Returns the stored rule.
        """
        self._check(rule)
        rule_id = rule.rule_id
        if rule_id <= 0:
            rule_id = max(self._rules, default=0) + 1
        elif rule_id in self._rules:
            raise ValueError(f"Rule {rule_id} already exists")
        now = _utcnow_iso()
        stored = replace(rule, rule_id=rule_id, created_at=rule.created_at or now, updated_at=now)
        await self._commit(rule_id, stored)
        logger.info(f"[RuleStore] added rule {rule_id} ({stored.name})")
        return stored

    async def update_rule(
        self,
        rule_id: int,
        *,
        name: str | None = None,
        description: str | None = None,
        device_id: int | None = _UNSET,
        enabled: bool | None = None,
        conditions: ConditionGroup | None = None,
        actions: list[RuleAction] | None = None,
        cooldown_seconds: int | None = None,
        priority: int | None = None,
    ) -> AutomationRule | None:
        """Update fields of an existing rule. Returns the updated rule or None.

        The updated rule is validated as a whole before anything changes;
        pass ``device_id=None`` to make a rule global.
        """
        rule = self._rules.get(rule_id)
        if rule is None:
            return None

        changes: dict[str, Any] = {}
        if name is not None:
            changes["name"] = name
        if description is not None:
            changes["description"] = description
        if device_id is not _UNSET:
            changes["device_id"] = device_id
        if enabled is not None:
            changes["enabled"] = enabled
        if conditions is not None:
            changes["conditions"] = conditions
        if actions is not None:
            changes["actions"] = actions
        if cooldown_seconds is not None:
            changes["cooldown_seconds"] = cooldown_seconds
        if priority is not None:
            changes["priority"] = priority

        updated = replace(rule, **changes, updated_at=_utcnow_iso())
        self._check(updated)
        await self._commit(rule_id, updated)
        logger.info(f"[RuleStore] updated rule {rule_id}")
        return updated

    async def remove_rule(self, rule_id: int) -> bool:
        """Remove a rule. Returns True if it existed."""
        if rule_id not in self._rules:
            return False
        await self._commit(rule_id, None)
        logger.info(f"[RuleStore] removed rule {rule_id}")
        return True

    async def enable_rule(self, rule_id: int) -> bool:
        """Enable a rule. Returns True if the rule exists."""
        return await self._set_enabled(rule_id, True)

    async def disable_rule(self, rule_id: int) -> bool:
        """Disable a rule. Returns True if the rule exists."""
        return await self._set_enabled(rule_id, False)

    async def _set_enabled(self, rule_id: int, enabled: bool) -> bool:
        rule = self._rules.get(rule_id)
        if rule is None:
            return False
        await self._commit(rule_id, replace(rule, enabled=enabled, updated_at=_utcnow_iso()))
        return True

    def get_rule(self, rule_id: int) -> AutomationRule | None:
        """Look up a rule by ID."""
        return self._rules.get(rule_id)

    def list_rules(self) -> list[AutomationRule]:
        """Return all rules, enabled or not, in processing order."""
        return sorted(self._rules.values(), key=lambda r: (-r.priority, r.rule_id))

    @property
    def rule_count(self) -> int:
        return len(self._rules)

    # -- RuleStore -----------------------------------------------------------

    async def get_applicable_rules(self, device_id: int) -> list[AutomationRule]:
        return [r for r in self.list_rules() if r.enabled and r.applies_to(device_id)]

    async def get_by_id(self, rule_id: int) -> AutomationRule | None:
        return self._rules.get(rule_id)

    async def mark_triggered(self, rule_id: int, timestamp: datetime) -> None:
        rule = self._rules.get(rule_id)
        if rule is None:
            return
        await self._commit(rule_id, replace(rule, last_triggered_at=timestamp.isoformat()))


# ---------------------------------------------------------------------------
# In-memory log sink
# ---------------------------------------------------------------------------

class MemoryLogSink(LogSink):
    """Keeps the newest ``max_records`` execution logs.

    Uses ``collections.deque`` with ``maxlen`` so the oldest record is
    dropped automatically when full.
    """

    def __init__(self, max_records: int = 1000):
        self._records: deque[ExecutionLog] = deque(maxlen=max_records)

    async def append_execution_log(self, record: ExecutionLog) -> None:
        self._records.append(record)

    def query(
        self,
        *,
        rule_id: int | None = None,
        device_id: int | None = None,
        limit: int | None = None,
    ) -> list[ExecutionLog]:
        """Return matching records, newest first."""
        out = [
            r for r in reversed(self._records)
            if (rule_id is None or r.rule_id == rule_id)
            and (device_id is None or r.device_id == device_id)
        ]
        return out[:limit] if limit is not None else out

    def clear(self) -> None:
        self._records.clear()

    def __len__(self) -> int:
        return len(self._records)
