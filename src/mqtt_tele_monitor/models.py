"""Dataclass models for classified topics, decoded payloads and outcomes.

Every model is immutable; nothing produced for one message survives into
the next.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional, Union


class Category(enum.Enum):
    """Closed set of message shapes the classifier can yield."""

    BROKER_MESSAGE_COUNT = "broker_message_count"
    BROKER_BYTE_COUNT = "broker_byte_count"
    DEVICE_TELEMETRY = "device_telemetry"
    UNCLASSIFIED = "unclassified"


class TelemetryKind(enum.Enum):
    """Sub-kind of a ``DEVICE_TELEMETRY`` message, keyed by info type."""

    LAST_WILL = "LWT"
    DEVICE_STATE = "STATE"
    OTHER_TELEMETRY = "other"


class ConnectivityState(enum.Enum):
    """Last Will payloads published by Tasmota devices."""

    Online = "Online"
    Offline = "Offline"


@dataclass(frozen=True)
class Classification:
    """Result of classifying a topic.

    ``device`` and ``info_type`` are only set for ``DEVICE_TELEMETRY``.
    """

    category: Category
    topic: str
    device: Optional[str] = None
    info_type: Optional[str] = None

    @property
    def telemetry_kind(self) -> Optional[TelemetryKind]:
        if self.category is not Category.DEVICE_TELEMETRY:
            return None
        if self.info_type == TelemetryKind.LAST_WILL.value:
            return TelemetryKind.LAST_WILL
        if self.info_type == TelemetryKind.DEVICE_STATE.value:
            return TelemetryKind.DEVICE_STATE
        return TelemetryKind.OTHER_TELEMETRY


@dataclass(frozen=True)
class DeviceState:
    """A Tasmota ``tele/<device>/STATE`` report.

    ``uptime`` and ``uptime_seconds`` come from separate payload fields and
    are not checked against each other.
    """

    time: datetime = datetime.min
    uptime: timedelta = timedelta(0)
    uptime_seconds: int = 0
    heap_free: int = 0
    sleep_mode: Optional[str] = None
    sleep_value: int = 0
    load_average: int = 0
    mqtt_reconnect_count: int = 0
    berry: Any = None


@dataclass(frozen=True)
class Rendered:
    """A message decoded successfully into printable text."""

    text: str


@dataclass(frozen=True)
class Dropped:
    """A message deliberately producing no output."""

    reason: str


@dataclass(frozen=True)
class Failed:
    """A message whose decoding failed; ``reason`` is shown to the user."""

    reason: str


Outcome = Union[Rendered, Dropped, Failed]
