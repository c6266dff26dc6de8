"""Per-rule cooldown tracking.

A rule that fired at ``t`` stays in cooldown until ``t + cooldown_seconds``.
State lives in memory only; a restart forgets all cooldowns.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Callable

from loguru import logger


@dataclass
class CooldownStatus:
    in_cooldown: bool
    remaining_seconds: int = 0

    def to_dict(self) -> dict:
        d: dict = {"inCooldown": self.in_cooldown}
        if self.in_cooldown:
            d["remainingSeconds"] = self.remaining_seconds
        return d


class CooldownTracker:
    """Maps rule id to the Unix timestamp of its last trigger."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._last: dict[int, float] = {}

    def record_trigger(self, rule_id: int, now: float | None = None) -> None:
        self._last[rule_id] = self._clock() if now is None else now

    def last_triggered(self, rule_id: int) -> float | None:
        return self._last.get(rule_id)

    def remaining(
        self,
        rule_id: int,
        cooldown_seconds: float,
        now: float | None = None,
    ) -> int:
        """Seconds (rounded up) until the rule may fire again; 0 when idle."""
        last = self._last.get(rule_id)
        if last is None:
            return 0
        now = self._clock() if now is None else now
        left = cooldown_seconds - (now - last)
        if left <= 0:
            return 0
        return math.ceil(left)

    def is_in_cooldown(
        self,
        rule_id: int,
        cooldown_seconds: float,
        now: float | None = None,
    ) -> bool:
        return self.remaining(rule_id, cooldown_seconds, now) > 0

    def status(
        self,
        rule_id: int,
        cooldown_seconds: float,
        now: float | None = None,
    ) -> CooldownStatus:
        left = self.remaining(rule_id, cooldown_seconds, now)
        return CooldownStatus(in_cooldown=left > 0, remaining_seconds=left)

    def clear(self, rule_id: int) -> bool:
        """Forget a rule's last trigger. Returns True if it had one."""
        if self._last.pop(rule_id, None) is None:
            return False
        logger.debug(f"[Cooldown] cleared rule {rule_id}")
        return True

    def clear_all(self) -> None:
        count = len(self._last)
        self._last.clear()
        logger.debug(f"[Cooldown] cleared {count} rule cooldowns")

    def __len__(self) -> int:
        return len(self._last)
