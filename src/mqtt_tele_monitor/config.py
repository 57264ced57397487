"""Configuration loading, environment-variable interpolation, and validation.

Resolution order for ``${VAR}`` placeholders:
    CLI overrides → environment variables → encrypted secrets → raw config value.

``${VAR}`` (no default) raises if unresolvable.
``${VAR:-default}`` falls back to *default*.

Without a config file the built-in :data:`DEFAULT_RAW_CONFIG` is used, so
the broker host can come straight from ``MQTT_SERVER`` in the environment
or the secrets store.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import jsonschema
import orjson

from mqtt_tele_monitor.classifier import DEFAULT_DEVICE_PREFIX

logger = logging.getLogger(__name__)

_VAR_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-(.*?))?\}")

_SCHEMA_PATH = Path(__file__).resolve().parent.parent.parent / "config" / "config.schema.json"

DEFAULT_SUBSCRIPTIONS = ["$SYS/#", "tele/#"]

DEFAULT_RAW_CONFIG: dict[str, Any] = {
    "broker": {
        "host": "${MQTT_SERVER:-localhost}",
        "username": "${MQTT_USERNAME:-}",
        "password": "${MQTT_PASSWORD:-}",
    },
}


@dataclass
class ReconnectConfig:
    """Reconnect delay bounds handed to paho."""

    initial_delay_ms: int = 1000
    max_delay_ms: int = 60000


@dataclass
class TlsConfig:
    """Optional TLS settings for the broker connection."""

    enabled: bool = False
    ca_cert: str = ""
    insecure: bool = False


@dataclass
class BrokerConfig:
    """MQTT broker connection settings."""

    host: str = "localhost"
    port: int = 1883
    client_id: str = "mqtt-tele-monitor"
    keepalive: int = 60
    username: str = ""
    password: str = ""
    subscriptions: list[str] = field(default_factory=lambda: list(DEFAULT_SUBSCRIPTIONS))
    tls: TlsConfig = field(default_factory=TlsConfig)
    reconnect: ReconnectConfig = field(default_factory=ReconnectConfig)


@dataclass
class DecoderConfig:
    """Classifier / decoder settings."""

    device_prefix: str = DEFAULT_DEVICE_PREFIX


@dataclass
class LogFileConfig:
    """Optional log file output settings.

    When ``enabled`` is True the application writes operational logs to a
    rotating file in addition to stderr.
    """

    enabled: bool = False
    path: str = "/var/log/mqtt-tele-monitor/app.log"
    max_size_bytes: int = 10485760   # 10 MB
    backup_count: int = 5


@dataclass
class LoggingConfig:
    """Logging settings."""

    level: str = "info"
    format: str = "json"
    file: LogFileConfig = field(default_factory=LogFileConfig)
    redact_patterns: list[str] = field(
        default_factory=lambda: ["*password*", "*secret*", "*token*"]
    )


@dataclass
class AppConfig:
    """Top-level application configuration."""

    broker: BrokerConfig = field(default_factory=BrokerConfig)
    decoder: DecoderConfig = field(default_factory=DecoderConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _interpolate_value(
    value: str,
    overrides: dict[str, str] | None = None,
    secrets: dict[str, str] | None = None,
) -> str:
    """Replace ``${VAR}`` / ``${VAR:-default}`` in *value*."""

    def _replacer(match: re.Match) -> str:
        var_name = match.group(1)
        default = match.group(2)  # None when no ``:-`` present

        # 1. CLI overrides
        if overrides and var_name in overrides:
            return overrides[var_name]
        # 2. Environment variables
        env_val = os.environ.get(var_name)
        if env_val is not None:
            return env_val
        # 3. Encrypted secrets
        if secrets and var_name in secrets:
            return secrets[var_name]
        # 4. Default
        if default is not None:
            return default

        raise ValueError(
            f"Required variable ${{{var_name}}} is not set in environment, "
            f"CLI overrides, or encrypted secrets"
        )

    return _VAR_RE.sub(_replacer, value)


def _walk_and_interpolate(
    obj: Any,
    overrides: dict[str, str] | None = None,
    secrets: dict[str, str] | None = None,
) -> Any:
    """Recursively interpolate all string values in a JSON-like structure."""
    if isinstance(obj, str):
        return _interpolate_value(obj, overrides, secrets)
    if isinstance(obj, dict):
        return {k: _walk_and_interpolate(v, overrides, secrets) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_walk_and_interpolate(item, overrides, secrets) for item in obj]
    return obj


def _pick(cls: type, raw: dict[str, Any]) -> dict[str, Any]:
    """Keep only the keys of *raw* that are fields of dataclass *cls*."""
    return {k: raw[k] for k in raw if k in cls.__dataclass_fields__}


def _dict_to_config(raw: dict[str, Any]) -> AppConfig:
    """Convert a raw dict into a typed :class:`AppConfig`."""
    broker_raw = dict(raw.get("broker", {}))
    tls_raw = broker_raw.pop("tls", {})
    reconnect_raw = broker_raw.pop("reconnect", {})
    decoder_raw = raw.get("decoder", {})
    logging_raw = dict(raw.get("logging", {}))
    log_file_raw = logging_raw.pop("file", {})

    return AppConfig(
        broker=BrokerConfig(
            tls=TlsConfig(**_pick(TlsConfig, tls_raw)),
            reconnect=ReconnectConfig(**_pick(ReconnectConfig, reconnect_raw)),
            **_pick(BrokerConfig, broker_raw),
        ),
        decoder=DecoderConfig(**_pick(DecoderConfig, decoder_raw)),
        logging=LoggingConfig(
            file=LogFileConfig(**_pick(LogFileConfig, log_file_raw)),
            **_pick(LoggingConfig, logging_raw),
        ),
    )


def load_config(
    path: str | Path | None = None,
    overrides: dict[str, str] | None = None,
    secrets: dict[str, str] | None = None,
    schema_path: str | Path | None = None,
) -> AppConfig:
    """Load, interpolate, validate, and return the application config.

    Parameters
    ----------
    path:
        Filesystem path to ``config.json``.  ``None`` uses
        :data:`DEFAULT_RAW_CONFIG`.
    overrides:
        CLI-supplied variable overrides.
    secrets:
        Values from the encrypted secrets file.
    schema_path:
        Path to the JSON Schema file.  Defaults to
        ``config/config.schema.json`` relative to the project root.

    Returns
    -------
    AppConfig
        Fully resolved and validated configuration.

    Raises
    ------
    ValueError
        If a required ``${VAR}`` cannot be resolved.
    jsonschema.ValidationError
        If the config fails schema validation.
    """
    if path is None:
        raw: dict[str, Any] = DEFAULT_RAW_CONFIG
    else:
        raw = orjson.loads(Path(path).read_bytes())

    interpolated = _walk_and_interpolate(raw, overrides=overrides, secrets=secrets)

    # --- schema validation ---
    sp = Path(schema_path) if schema_path else _SCHEMA_PATH
    if sp.exists():
        schema = orjson.loads(sp.read_bytes())
        jsonschema.validate(instance=interpolated, schema=schema)
        logger.debug("Config passed schema validation")
    else:
        logger.warning("Schema file not found at %s — skipping validation", sp)

    return _dict_to_config(interpolated)
