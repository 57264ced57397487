"""Output sink: decoded lines on stdout.

StdoutSink
    Encodes each outcome to UTF-8 and writes it to ``sys.stdout.buffer`` as
    one ``write`` call under a lock, so lines from different threads never
    interleave.  ``Dropped`` outcomes produce nothing; ``Failed`` outcomes
    are written as a visible note.
"""

from __future__ import annotations

import logging
import sys
import threading

from mqtt_tele_monitor.models import Failed, Outcome, Rendered

logger = logging.getLogger(__name__)


class StdoutSink:
    """Write decoded messages to stdout, one outcome per write."""

    def __init__(self) -> None:
        self._lock = threading.Lock()

    def emit(self, outcome: Outcome) -> bool:
        """Write *outcome* if it has anything to show.

        Returns
        -------
        bool
            True when a line was written.
        """
        if isinstance(outcome, Rendered):
            text = outcome.text
        elif isinstance(outcome, Failed):
            text = f"Error: {outcome.reason}"
        else:
            return False
        self.write((text + "\n").encode("utf-8", errors="replace"))
        return True

    def write(self, data: bytes) -> None:
        """Write *data* to ``sys.stdout.buffer``.

        Raises
        ------
        BrokenPipeError
            If the stdout consumer has gone away.
        """
        with self._lock:
            try:
                sys.stdout.buffer.write(data)
                sys.stdout.buffer.flush()
            except BrokenPipeError:
                logger.warning("stdout broken — consumer likely exited")
                raise

    def close(self) -> None:
        """No-op for stdout."""
