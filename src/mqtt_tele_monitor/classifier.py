"""Classify MQTT topics into message categories.

Classification pipeline (first match wins)::

    topic
      │
      ├─ $SYS/broker/.../messages/...  → BROKER_MESSAGE_COUNT
      ├─ $SYS/broker/.../bytes/...     → BROKER_BYTE_COUNT
      ├─ tele/<prefix…>/<info_type>    → DEVICE_TELEMETRY(device, info_type)
      └─ anything else                 → UNCLASSIFIED
"""

from __future__ import annotations

import functools
import re

from mqtt_tele_monitor.models import Category, Classification

DEFAULT_DEVICE_PREFIX = "tasmota_"

MESSAGE_COUNT_TOPICS = frozenset({
    "$SYS/broker/publish/messages/received",
    "$SYS/broker/publish/messages/sent",
    "$SYS/broker/messages/sent",
    "$SYS/broker/messages/received",
})

BYTE_COUNT_TOPICS = frozenset({
    "$SYS/broker/publish/bytes/received",
    "$SYS/broker/publish/bytes/sent",
    "$SYS/broker/bytes/sent",
    "$SYS/broker/bytes/received",
})


@functools.lru_cache(maxsize=8)
def telemetry_pattern(device_prefix: str = DEFAULT_DEVICE_PREFIX) -> re.Pattern:
    """Return the compiled ``tele/<device>/<info_type>`` pattern for *device_prefix*."""
    return re.compile(
        r"tele/(?P<device>" + re.escape(device_prefix) + r"[^/]+)/(?P<info_type>[^/]+)"
    )


def classify(topic: str, device_prefix: str = DEFAULT_DEVICE_PREFIX) -> Classification:
    """Classify a single topic.

    Parameters
    ----------
    topic:
        The topic the message was published on.
    device_prefix:
        Leading token every telemetry device name must start with.

    Returns
    -------
    Classification
        Never raises; unknown topics classify as ``UNCLASSIFIED``.
    """
    if topic in MESSAGE_COUNT_TOPICS:
        return Classification(Category.BROKER_MESSAGE_COUNT, topic)
    if topic in BYTE_COUNT_TOPICS:
        return Classification(Category.BROKER_BYTE_COUNT, topic)

    match = telemetry_pattern(device_prefix).fullmatch(topic)
    if match is not None:
        return Classification(
            Category.DEVICE_TELEMETRY,
            topic,
            device=match.group("device"),
            info_type=match.group("info_type"),
        )

    return Classification(Category.UNCLASSIFIED, topic)
