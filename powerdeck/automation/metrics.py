"""Map raw vendor telemetry into ``DeviceMetrics``.

Raw quota payloads use dotted module keys (``pd.soc``, ``inv.inputWatts``,
``bmsMaster.errCode`` ...). All key names live in the tables below.
"""

from __future__ import annotations

from typing import Any, Mapping

from loguru import logger

from powerdeck.automation.models import DeviceMetrics

# First key present wins.
FIELD_SOURCES: dict[str, tuple[str, ...]] = {
    "soc": ("pd.soc", "bmsMaster.soc"),
    "temperature": ("bmsMaster.temp", "pd.pv2DcChgPowerTemp"),
    "ac_input_watts": ("inv.inputWatts",),
    "solar_input_watts": ("mppt.inWatts",),
    "ac_output_watts": ("inv.outputWatts",),
    "dc_output_watts": ("mppt.outWatts",),
}

# Battery management, inverter and MPPT subsystems, in that order.
ERROR_SOURCES: tuple[str, ...] = ("bmsMaster.errCode", "inv.errCode", "mppt.faultCode")


def _to_number(value: Any, key: str) -> float:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    try:
        number = float(value)
    except (TypeError, ValueError):
        logger.debug(f"[Metrics] ignoring non-numeric {key}={value!r}")
        return 0
    return int(number) if number.is_integer() else number


def _first(raw: Mapping[str, Any], keys: tuple[str, ...]) -> float:
    for key in keys:
        value = raw.get(key)
        if value is not None:
            return _to_number(value, key)
    return 0


def collect_error_codes(raw: Mapping[str, Any]) -> list[int]:
    """Return the non-zero subsystem error codes in subsystem order."""
    codes: list[int] = []
    for key in ERROR_SOURCES:
        code = _to_number(raw.get(key) or 0, key)
        if code:
            codes.append(int(code))
    return codes


def build_device_metrics(
    device_id: int,
    serial_number: str,
    online: bool,
    raw: Mapping[str, Any],
) -> DeviceMetrics:
    """Build a normalized snapshot from a raw quota payload.

    Missing or non-numeric fields read as 0. Totals are derived by
    ``DeviceMetrics`` itself.
    """
    values = {name: _first(raw, keys) for name, keys in FIELD_SOURCES.items()}
    return DeviceMetrics(
        device_id=device_id,
        serial_number=serial_number,
        online=online,
        error_codes=collect_error_codes(raw),
        **values,
    )
