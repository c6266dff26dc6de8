"""Merge authoritative device state with optimistic local edits.

When a user flips a switch the UI shows the new value immediately and
records a ``PendingCommand``. Server snapshots (WebSocket pushes or polls)
keep arriving with the old value until the device has applied the
command; those stale values must not overwrite what the user just did.

Merge rules per incoming field
------------------------------
- pending entry, same value      → confirmed: accept, drop the entry
- pending entry, different value → suppressed: keep the optimistic value
- no pending entry               → accept

Pending entries expire after ``ttl`` seconds (default 10). Expiry is
checked lazily whenever a device's update is merged; there is no timer.
Pending commands only filter incoming values; they never change what is
sent to the server.

Usage
-----
>>> reconciler = DeviceStateReconciler(ttl=10.0)
>>> reconciler.replace_state("R331...", {"acOutEnabled": False, "soc": 80})
>>> reconciler.issue_command("R331...", "acOutEnabled", True)
>>> reconciler.merge_server_update("R331...", {"acOutEnabled": False})  # suppressed
>>> reconciler.state("R331...")["acOutEnabled"]
True
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from loguru import logger

from powerdeck.config.schema import ClientConfig

DEFAULT_PENDING_TTL = 10.0


@dataclass
class PendingCommand:
    """An optimistic value awaiting server confirmation."""
    field: str
    value: Any
    expires_at: float  # Unix timestamp

    def expired(self, now: float) -> bool:
        return now >= self.expires_at


class DeviceStateReconciler:
    """Holds UI-side device state and the pending-command ledger."""

    def __init__(
        self,
        *,
        ttl: float = DEFAULT_PENDING_TTL,
        clock: Callable[[], float] = time.time,
    ):
        self._ttl = ttl
        self._clock = clock
        self._state: dict[str, dict[str, Any]] = {}                   # device → field → value
        self._pending: dict[str, dict[str, PendingCommand]] = {}      # device → field → command

    @classmethod
    def from_config(
        cls,
        config: ClientConfig,
        clock: Callable[[], float] = time.time,
    ) -> DeviceStateReconciler:
        return cls(ttl=config.pending_command_ttl_seconds, clock=clock)

    # -- local commands ------------------------------------------------------

    def issue_command(self, device_id: str, field: str, value: Any) -> PendingCommand:
        """Apply *value* optimistically and remember it as pending.

        A new command for the same field replaces the previous pending one.
        """
        cmd = PendingCommand(field=field, value=value, expires_at=self._clock() + self._ttl)
        ledger = self._pending.setdefault(device_id, {})
        ledger.pop(field, None)  # re-insert so ledger order follows issue order
        ledger[field] = cmd
        self._state.setdefault(device_id, {})[field] = value
        return cmd

    def rollback_command(self, device_id: str, field: str, previous_value: Any) -> None:
        """Undo an optimistic edit whose request failed."""
        self._drop_pending(device_id, field)
        self._state.setdefault(device_id, {})[field] = previous_value

    # -- server updates ------------------------------------------------------

    def replace_state(self, device_id: str, fields: Mapping[str, Any]) -> None:
        """Install a full snapshot, e.g. on first load. Clears pending commands."""
        self._state[device_id] = dict(fields)
        self._pending.pop(device_id, None)

    def merge_server_update(self, device_id: str, server_fields: Mapping[str, Any]) -> None:
        """Merge an authoritative snapshot, respecting unexpired pending commands."""
        self._purge_expired(device_id)
        state = self._state.setdefault(device_id, {})
        ledger = self._pending.get(device_id, {})

        for field, value in server_fields.items():
            pending = ledger.get(field)
            if pending is None:
                state[field] = value
            elif pending.value == value:
                state[field] = value
                self._drop_pending(device_id, field)
                logger.debug(f"[Reconciler] {device_id}.{field} confirmed ({value!r})")
            else:
                logger.debug(
                    f"[Reconciler] {device_id}.{field} server={value!r} suppressed, "
                    f"pending={pending.value!r}"
                )

    # -- queries -------------------------------------------------------------

    def state(self, device_id: str) -> dict[str, Any]:
        """Current UI state for a device (a copy)."""
        return dict(self._state.get(device_id, {}))

    def pending_fields(self, device_id: str) -> list[str]:
        """Fields with a pending command, in issue order. Expired entries are not purged here."""
        return list(self._pending.get(device_id, {}))

    def pending_command(self, device_id: str, field: str) -> PendingCommand | None:
        return self._pending.get(device_id, {}).get(field)

    # -- internals -----------------------------------------------------------

    def _purge_expired(self, device_id: str) -> None:
        ledger = self._pending.get(device_id)
        if not ledger:
            return
        now = self._clock()
        for field in [f for f, cmd in ledger.items() if cmd.expired(now)]:
            logger.debug(f"[Reconciler] {device_id}.{field} pending command expired")
            del ledger[field]
        if not ledger:
            del self._pending[device_id]

    def _drop_pending(self, device_id: str, field: str) -> None:
        ledger = self._pending.get(device_id)
        if ledger is None:
            return
        ledger.pop(field, None)
        if not ledger:
            del self._pending[device_id]
