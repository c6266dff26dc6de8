"""Helpers for processes that display device state (dashboards, UIs)."""

from powerdeck.client.reconciler import DeviceStateReconciler, PendingCommand

__all__ = ["DeviceStateReconciler", "PendingCommand"]
