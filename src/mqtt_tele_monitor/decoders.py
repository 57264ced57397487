"""Per-category payload decoders.

Each ``decode_*`` function takes the raw payload bytes (plus whatever the
classifier captured) and returns an :data:`~mqtt_tele_monitor.models.Outcome`.
None of them raise: broker statistics and Last Will payloads that do not
parse are *dropped*, device-state documents that do not parse are *failed*
with a readable reason.

Device ``Uptime`` values use Tasmota's ``<days>T<hh>:<mm>:<ss>`` encoding,
handled by :func:`parse_uptime` / :func:`format_uptime`.
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

import humanize
import orjson

from mqtt_tele_monitor.models import (
    ConnectivityState,
    DeviceState,
    Dropped,
    Failed,
    Outcome,
    Rendered,
)

UINT64_MAX = 2**64 - 1
INT64_MIN, INT64_MAX = -(2**63), 2**63 - 1
INT32_MIN, INT32_MAX = -(2**31), 2**31 - 1

_UNSIGNED_RE = re.compile(rb"[0-9]+")
_SIGNED_RE = re.compile(rb"-?[0-9]+")
_UPTIME_RE = re.compile(r"([0-9]+)T([0-9]{2}):([0-9]{2}):([0-9]{2})")


class DecodeError(Exception):
    """Base class for device-state decoding errors."""


class DocumentError(DecodeError):
    """The payload is not a usable device-state JSON document."""


class DurationError(DecodeError):
    """The ``Uptime`` value is null or not in ``<days>T<hh>:<mm>:<ss>`` form."""


# ── duration encoding ───────────────────────────────────────────────


def parse_uptime(value: Optional[str]) -> timedelta:
    """Parse a Tasmota uptime string such as ``"3T01:02:03"``.

    Raises
    ------
    DurationError
        If *value* is ``None``, not a string, or not in the exact format.
    """
    if value is None:
        raise DurationError("Uptime value was null")
    if not isinstance(value, str):
        raise DurationError(f"Uptime value must be a string, got {type(value).__name__}")

    match = _UPTIME_RE.fullmatch(value)
    if match is None:
        raise DurationError(f"Uptime value {value!r} is not in the format dThh:mm:ss")

    day_digits = match.group(1).lstrip("0") or "0"
    # timedelta tops out at 999999999 days
    if len(day_digits) > 9:
        raise DurationError(f"Uptime value {value[:32]!r}... is too large")
    days = int(day_digits)
    hours, minutes, seconds = (int(g) for g in match.groups()[1:])
    if hours > 23 or minutes > 59 or seconds > 59:
        raise DurationError(f"Uptime value {value!r} has an out-of-range component")
    try:
        return timedelta(days=days, hours=hours, minutes=minutes, seconds=seconds)
    except OverflowError as exc:
        raise DurationError(f"Uptime value {value!r} is too large") from exc


def format_uptime(value: timedelta) -> str:
    """Inverse of :func:`parse_uptime`; fractional seconds are discarded."""
    if value < timedelta(0):
        raise ValueError("Uptime cannot be negative")
    hours, rest = divmod(value.seconds, 3600)
    minutes, seconds = divmod(rest, 60)
    return f"{value.days}T{hours:02d}:{minutes:02d}:{seconds:02d}"


# ── broker statistics ───────────────────────────────────────────────


def decode_message_count(topic: str, payload: bytes) -> Outcome:
    """Render an unsigned message counter with thousands separators."""
    if _UNSIGNED_RE.fullmatch(payload) is None:
        return Dropped(f"not an unsigned integer: {_preview(payload)}")
    value = _bounded_int(payload, 0, UINT64_MAX)
    if value is None:
        return Dropped(f"message count out of range: {_preview(payload)}")
    return Rendered(f"{topic}: {value:,} messages")


def decode_byte_count(topic: str, payload: bytes) -> Outcome:
    """Render a signed byte counter as a binary-scaled size."""
    if _SIGNED_RE.fullmatch(payload) is None:
        return Dropped(f"not an integer: {_preview(payload)}")
    value = _bounded_int(payload, INT64_MIN, INT64_MAX)
    if value is None:
        return Dropped(f"byte count out of range: {_preview(payload)}")
    return Rendered(f"{topic}: {humanize.naturalsize(value, binary=True)}")


def _bounded_int(digits: bytes, low: int, high: int) -> Optional[int]:
    """Convert already-validated ASCII *digits*; ``None`` if outside [low, high]."""
    negative = digits.startswith(b"-")
    significant = digits.lstrip(b"-").lstrip(b"0") or b"0"
    # No 64-bit value needs more than 20 significant digits.
    if len(significant) > 20:
        return None
    value = -int(significant) if negative else int(significant)
    return value if low <= value <= high else None


# ── device telemetry ────────────────────────────────────────────────


def decode_last_will(device: str, payload: bytes) -> Outcome:
    """Render a Last Will (connectivity) message."""
    text = payload.decode("utf-8", errors="replace")
    try:
        state = ConnectivityState(text)
    except ValueError:
        return Dropped(f"unknown LWT value for {device}: {text!r}")
    return Rendered(f"LWT for {device} is {state.value}")


def decode_device_state(device: str, payload: bytes) -> Outcome:
    """Decode a ``STATE`` document and render it with a field dump."""
    try:
        state = parse_device_state(payload)
    except DecodeError as exc:
        return Failed(str(exc))
    if state is None:
        return Dropped(f"null STATE document for {device}")
    return Rendered(render_device_state(device, state))


def decode_raw(topic: str, payload: bytes) -> Outcome:
    """Fallback: show the payload as text, replacing invalid UTF-8."""
    return Rendered(f"{topic}: {payload.decode('utf-8', errors='replace')}")


# ── device state document ───────────────────────────────────────────


def parse_device_state(payload: bytes) -> Optional[DeviceState]:
    """Parse a Tasmota ``STATE`` JSON document.

    Unknown keys are ignored and missing keys keep the
    :class:`DeviceState` defaults.  Returns ``None`` for a literal JSON
    ``null``.

    Raises
    ------
    DocumentError
        If the payload is not a JSON object or a field has the wrong type.
    DurationError
        If ``Uptime`` is present but null or malformed.
    """
    try:
        doc = orjson.loads(payload)
    except orjson.JSONDecodeError as exc:
        raise DocumentError(f"Invalid JSON document: {exc}") from exc

    if doc is None:
        return None
    if not isinstance(doc, dict):
        raise DocumentError(
            f"Expected a JSON object for device state, got {type(doc).__name__}"
        )

    values: dict[str, Any] = {}
    for key, (attr, convert) in _STATE_FIELDS.items():
        if key in doc:
            values[attr] = convert(key, doc[key])
    return DeviceState(**values)


def render_device_state(device: str, state: DeviceState) -> str:
    """Header line followed by one ``Name: value`` line per field."""
    lines = [f"{_general_datetime(state.time)} {device} DeviceState"]
    for key, attr in _DUMP_ORDER:
        lines.append(f"  {key}: {_dump_value(getattr(state, attr))}")
    return "\n".join(lines)


def _general_datetime(value: datetime) -> str:
    """Short date and time, e.g. ``1/15/2024 3:04 PM``."""
    hour = value.hour % 12 or 12
    meridiem = "AM" if value.hour < 12 else "PM"
    return f"{value.month}/{value.day}/{value.year} {hour}:{value.minute:02d} {meridiem}"


def _dump_value(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, datetime):
        return value.isoformat(sep=" ")
    if isinstance(value, timedelta):
        return format_uptime(value)
    if isinstance(value, (dict, list)):
        return orjson.dumps(value).decode()
    return str(value)


def _to_datetime(key: str, value: Any) -> datetime:
    if not isinstance(value, str):
        raise DocumentError(f"The JSON value for {key!r} could not be converted to a date/time")
    try:
        return datetime.fromisoformat(value)
    except ValueError as exc:
        raise DocumentError(f"The JSON value for {key!r} is not a valid date/time: {value!r}") from exc


def _to_uptime(key: str, value: Any) -> timedelta:
    return parse_uptime(value)


def _int_converter(low: int, high: int) -> Callable[[str, Any], int]:
    def convert(key: str, value: Any) -> int:
        # bool is an int subclass
        if type(value) is not int:
            raise DocumentError(f"The JSON value for {key!r} could not be converted to an integer")
        if not low <= value <= high:
            raise DocumentError(f"The JSON value for {key!r} is out of range: {value}")
        return value

    return convert


def _to_optional_str(key: str, value: Any) -> Optional[str]:
    if value is not None and not isinstance(value, str):
        raise DocumentError(f"The JSON value for {key!r} could not be converted to a string")
    return value


def _passthrough(key: str, value: Any) -> Any:
    return value


# JSON key → (DeviceState attribute, converter)
_STATE_FIELDS: dict[str, tuple[str, Callable[[str, Any], Any]]] = {
    "Time": ("time", _to_datetime),
    "Uptime": ("uptime", _to_uptime),
    "UptimeSec": ("uptime_seconds", _int_converter(0, UINT64_MAX)),
    "Heap": ("heap_free", _int_converter(INT32_MIN, INT32_MAX)),
    "SleepMode": ("sleep_mode", _to_optional_str),
    "Sleep": ("sleep_value", _int_converter(INT32_MIN, INT32_MAX)),
    "LoadAvg": ("load_average", _int_converter(INT32_MIN, INT32_MAX)),
    "MqttCount": ("mqtt_reconnect_count", _int_converter(INT32_MIN, INT32_MAX)),
    "Berry": ("berry", _passthrough),
}

_DUMP_ORDER = [(key, attr) for key, (attr, _) in _STATE_FIELDS.items()]


def _preview(payload: bytes, limit: int = 64) -> str:
    text = payload[:limit].decode("utf-8", errors="replace")
    return repr(text) + ("…" if len(payload) > limit else "")
