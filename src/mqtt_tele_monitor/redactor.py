"""Scrub broker credentials from log output.

The resolved config is walked once at startup; every string value whose key
matches one of ``logging.redact_patterns`` (shell globs, case-insensitive)
is treated as a secret.  :class:`SecretRedactingFilter` is attached to each
log handler and replaces those values with ``[REDACTED]``.
"""

from __future__ import annotations

import fnmatch
import logging
from typing import Any, Iterable

REDACTED = "[REDACTED]"


class SecretRedactingFilter(logging.Filter):
    """Replace known secret values in the rendered log message."""

    def __init__(self, secret_values: Iterable[str] | None = None) -> None:
        super().__init__()
        # Longest first so a secret containing another is replaced whole.
        self._secrets = sorted(
            {s for s in (secret_values or []) if s and len(s) > 1},
            key=len,
            reverse=True,
        )

    @property
    def secrets(self) -> list[str]:
        return list(self._secrets)

    def filter(self, record: logging.LogRecord) -> bool:
        if self._secrets:
            message = record.getMessage()
            redacted = self.redact(message)
            if redacted != message:
                record.msg = redacted
                record.args = None
        return True

    def redact(self, text: str) -> str:
        for secret in self._secrets:
            text = text.replace(secret, REDACTED)
        return text


def collect_secret_values(config_dict: dict[str, Any], patterns: list[str] | None = None) -> list[str]:
    """Return string values in *config_dict* whose keys match *patterns*."""
    if not patterns:
        return []
    lowered = [p.lower() for p in patterns]
    found: list[str] = []

    def walk(obj: Any) -> None:
        if isinstance(obj, dict):
            for key, val in obj.items():
                if isinstance(val, str) and any(fnmatch.fnmatch(key.lower(), p) for p in lowered):
                    found.append(val)
                walk(val)
        elif isinstance(obj, (list, tuple)):
            for item in obj:
                walk(item)

    walk(config_dict)
    return found
