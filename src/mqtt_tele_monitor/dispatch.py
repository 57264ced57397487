"""Route one inbound ``(topic, payload)`` pair through classify → decode.

:func:`handle` is pure: the same pair always yields the same
:data:`~mqtt_tele_monitor.models.Outcome`.  :class:`Dispatcher` binds the
configured device prefix and logs drops and failures; it still holds no
per-message state.
"""

from __future__ import annotations

import logging

from mqtt_tele_monitor import decoders
from mqtt_tele_monitor.classifier import DEFAULT_DEVICE_PREFIX, classify
from mqtt_tele_monitor.models import (
    Category,
    Dropped,
    Failed,
    Outcome,
    TelemetryKind,
)

logger = logging.getLogger(__name__)


def handle(
    topic: str,
    payload: bytes,
    device_prefix: str = DEFAULT_DEVICE_PREFIX,
) -> Outcome:
    """Classify *topic* and decode *payload* accordingly.

    Parameters
    ----------
    topic:
        Topic the message arrived on.
    payload:
        Raw message body.
    device_prefix:
        Device-family prefix used by the telemetry topic pattern.

    Returns
    -------
    Rendered
        Text to print.
    Dropped
        Broker counters or LWT payloads that do not parse.
    Failed
        Device-state documents that do not parse; ``reason`` is user-visible.
    """
    payload = bytes(payload)
    result = classify(topic, device_prefix)

    if result.category is Category.BROKER_MESSAGE_COUNT:
        return decoders.decode_message_count(topic, payload)
    if result.category is Category.BROKER_BYTE_COUNT:
        return decoders.decode_byte_count(topic, payload)

    kind = result.telemetry_kind
    if kind is TelemetryKind.LAST_WILL:
        return decoders.decode_last_will(result.device, payload)
    if kind is TelemetryKind.DEVICE_STATE:
        return decoders.decode_device_state(result.device, payload)

    return decoders.decode_raw(topic, payload)


class Dispatcher:
    """Configured :func:`handle` with logging of non-rendered outcomes."""

    def __init__(self, device_prefix: str = DEFAULT_DEVICE_PREFIX) -> None:
        self._device_prefix = device_prefix

    def __call__(self, topic: str, payload: bytes) -> Outcome:
        return self.dispatch(topic, payload)

    def dispatch(self, topic: str, payload: bytes) -> Outcome:
        outcome = handle(topic, payload, self._device_prefix)
        if isinstance(outcome, Dropped):
            logger.debug("Dropped message on %s: %s", topic, outcome.reason)
        elif isinstance(outcome, Failed):
            logger.warning("Failed to decode message on %s: %s", topic, outcome.reason)
        return outcome
