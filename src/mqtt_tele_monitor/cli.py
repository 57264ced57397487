"""Click CLI for the MQTT telemetry monitor.

Entry point registered in ``pyproject.toml`` as ``mqtt-tele-monitor``.

Subcommands::

    mqtt-tele-monitor -s broker.lan          # subscribe and print decoded messages
    mqtt-tele-monitor decode TOPIC PAYLOAD   # decode one message offline
    mqtt-tele-monitor secrets init           # create encrypted secrets file
    mqtt-tele-monitor secrets set KEY        # store a secret
    mqtt-tele-monitor secrets list           # list secret names
    mqtt-tele-monitor secrets rekey          # re-encrypt with a new key
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Optional

import click
import orjson

from mqtt_tele_monitor import __version__
from mqtt_tele_monitor.classifier import DEFAULT_DEVICE_PREFIX
from mqtt_tele_monitor.config import AppConfig, LogFileConfig, load_config
from mqtt_tele_monitor.connection import BrokerConnection
from mqtt_tele_monitor.dispatch import Dispatcher, handle
from mqtt_tele_monitor.models import Failed, Rendered
from mqtt_tele_monitor.output import StdoutSink
from mqtt_tele_monitor.redactor import SecretRedactingFilter, collect_secret_values

logger = logging.getLogger("mqtt_tele_monitor")

DEFAULT_CONFIG = "/etc/mqtt-tele-monitor/config.json"
DEFAULT_SECRETS_FILE = "/etc/mqtt-tele-monitor/.secrets.enc"
DRY_RUN_MESSAGES = 5


# ── structured JSON log formatter ───────────────────────────────────


class _JsonFormatter(logging.Formatter):
    """Emit log records as single-line JSON to stderr."""

    def format(self, record: logging.LogRecord) -> str:
        obj = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname.lower(),
            "logger": record.name,
            "event": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0] is not None:
            obj["exception"] = self.formatException(record.exc_info)
        return orjson.dumps(obj).decode()


_TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _setup_logging(
    level: str,
    fmt: str = "json",
    secret_values: list[str] | None = None,
    log_file_config: Optional[LogFileConfig] = None,
) -> None:
    """Configure the root logger on stderr + optional file + redaction."""
    root = logging.getLogger()
    level_name = "WARNING" if level.lower() == "warn" else level.upper()
    root.setLevel(getattr(logging, level_name, logging.INFO))

    formatter = _JsonFormatter() if fmt == "json" else logging.Formatter(_TEXT_FORMAT)

    # stdout carries decoded messages, logs go to stderr
    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(formatter)
    root.addHandler(stderr_handler)

    if log_file_config and log_file_config.enabled:
        from logging.handlers import RotatingFileHandler

        log_dir = Path(log_file_config.path).parent
        log_dir.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            filename=log_file_config.path,
            maxBytes=log_file_config.max_size_bytes,
            backupCount=log_file_config.backup_count,
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    redactor = SecretRedactingFilter(secret_values)
    for handler in root.handlers:
        handler.addFilter(redactor)


def _secrets_file() -> str:
    return os.environ.get("MQTT_MONITOR_SECRETS_FILE", DEFAULT_SECRETS_FILE)


# ── main CLI group ──────────────────────────────────────────────────


@click.group(invoke_without_command=True)
@click.option("-s", "--server", default=None, help="Broker host name (overrides config).")
@click.option("-p", "--port", type=int, default=None, help="Broker port (overrides config).")
@click.option("-c", "--config", "config_path", default=None,
              help="Config file path.")
@click.option("--log-level", default=None,
              type=click.Choice(["debug", "info", "warn", "error"]),
              help="Log verbosity.")
@click.option("--dry-run", is_flag=True,
              help=f"Exit after {DRY_RUN_MESSAGES} messages.")
@click.option("--validate-config", "validate_only", is_flag=True,
              help="Validate config and exit.")
@click.version_option(__version__)
@click.pass_context
def main(
    ctx: click.Context,
    server: Optional[str],
    port: Optional[int],
    config_path: Optional[str],
    log_level: Optional[str],
    dry_run: bool,
    validate_only: bool,
) -> None:
    """Subscribe to broker statistics and Tasmota telemetry and print them decoded."""
    if ctx.invoked_subcommand is not None:
        return  # defer to subcommand

    # --- resolve config path ---
    cfg_path = config_path or os.environ.get("MQTT_MONITOR_CONFIG")
    if cfg_path is None and Path(DEFAULT_CONFIG).exists():
        cfg_path = DEFAULT_CONFIG

    # --- build overrides ---
    overrides: dict[str, str] = {}
    if server:
        overrides["MQTT_SERVER"] = server

    # --- load encrypted secrets if key file is available ---
    secrets_dict: dict[str, str] = {}
    key_file = os.environ.get("MQTT_MONITOR_KEY_FILE")
    secrets_file = _secrets_file()
    if key_file and Path(key_file).exists() and Path(secrets_file).exists():
        from mqtt_tele_monitor.secrets import load_secrets
        secrets_dict = load_secrets(secrets_file, key_file)

    # --- load + validate config ---
    try:
        cfg = load_config(cfg_path, overrides=overrides, secrets=secrets_dict)
    except Exception as exc:
        click.echo(f"Config error: {exc}", err=True)
        raise SystemExit(1) from exc

    if server:
        cfg.broker.host = server
    if port:
        cfg.broker.port = port

    effective_level = (
        log_level
        or os.environ.get("MQTT_MONITOR_LOG_LEVEL")
        or cfg.logging.level
    )

    # --- setup logging with secret redaction ---
    secret_values = collect_secret_values(asdict(cfg), cfg.logging.redact_patterns)
    _setup_logging(effective_level, cfg.logging.format, secret_values, cfg.logging.file)

    if validate_only:
        click.echo("Configuration is valid.", err=True)
        raise SystemExit(0)

    logger.info(
        "Starting mqtt-tele-monitor %s (broker=%s:%d, subscriptions=%s)",
        __version__,
        cfg.broker.host,
        cfg.broker.port,
        ", ".join(cfg.broker.subscriptions),
    )

    asyncio.run(_run_pipeline(cfg, dry_run))


# ── async pipeline ──────────────────────────────────────────────────


async def _run_pipeline(
    cfg: AppConfig,
    dry_run: bool,
    conn: Optional[BrokerConnection] = None,
    sink: Optional[StdoutSink] = None,
) -> int:
    """Bridge paho's thread into asyncio, then classify → decode → print in order.

    Returns the number of messages processed.
    """
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()

    conn = conn or BrokerConnection(cfg.broker)
    sink = sink or StdoutSink()
    dispatcher = Dispatcher(cfg.decoder.device_prefix)

    def _enqueue(topic: str, payload: bytes) -> None:
        loop.call_soon_threadsafe(queue.put_nowait, (topic, payload))

    # Attach the handler before connecting so queued messages are not lost.
    conn.on_message(_enqueue)
    for topic_filter in cfg.broker.subscriptions:
        conn.subscribe(topic_filter)

    # --- signal handling ---
    def _handle_signal() -> None:
        logger.info("Received shutdown signal")
        queue.put_nowait(None)

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, _handle_signal)
        except (NotImplementedError, RuntimeError):
            pass  # Windows, or not on the main thread

    conn.start()

    message_count = 0
    try:
        while True:
            item = await queue.get()
            if item is None:
                break

            topic, payload = item
            try:
                outcome = dispatcher(topic, payload)
            except Exception as exc:
                # One bad message must not stop the ones behind it.
                logger.exception("Unhandled error decoding message on %s", topic)
                outcome = Failed(f"{type(exc).__name__}: {exc}")
            try:
                sink.emit(outcome)
            except BrokenPipeError:
                break

            message_count += 1
            if dry_run and message_count >= DRY_RUN_MESSAGES:
                logger.info("Dry run complete — received %d messages", message_count)
                break
    finally:
        conn.stop()
        sink.close()
        logger.info("Pipeline shut down (processed %d messages)", message_count)

    return message_count


# ── decode subcommand ───────────────────────────────────────────────


@main.command("decode")
@click.argument("topic")
@click.argument("payload", required=False)
@click.option("--prefix", "device_prefix", default=DEFAULT_DEVICE_PREFIX, show_default=True,
              help="Device-family prefix for tele/ topics.")
def decode(topic: str, payload: Optional[str], device_prefix: str) -> None:
    """Decode one message offline (PAYLOAD defaults to stdin)."""
    if payload is None:
        data = click.get_binary_stream("stdin").read()
    else:
        data = payload.encode("utf-8")

    outcome = handle(topic, data, device_prefix)
    if isinstance(outcome, Rendered):
        click.echo(outcome.text)
    elif isinstance(outcome, Failed):
        click.echo(f"Error: {outcome.reason}", err=True)
        raise SystemExit(1)


# ── secrets subcommand group ────────────────────────────────────────


@main.group()
def secrets() -> None:
    """Manage the encrypted secrets file."""


@secrets.command("init")
@click.option("--output", default=None, help="Path for the encrypted file.")
@click.option("--key-file", required=True, help="Path for the master key.")
def secrets_init(output: Optional[str], key_file: str) -> None:
    """Create an empty encrypted secrets file and key."""
    from mqtt_tele_monitor.secrets import init_secrets
    output = output or _secrets_file()
    init_secrets(output, key_file)
    click.echo(f"Initialized: {output} (key: {key_file})")


@secrets.command("set")
@click.argument("key")
@click.option("--value", required=True, help="Secret value.")
@click.option("--key-file", required=True, help="Path to the master key.")
def secrets_set(key: str, value: str, key_file: str) -> None:
    """Store a secret in the encrypted file (e.g. MQTT_SERVER, MQTT_PASSWORD)."""
    from mqtt_tele_monitor.secrets import set_secret
    set_secret(_secrets_file(), key_file, key, value)
    click.echo(f"Set: {key}")


@secrets.command("list")
@click.option("--key-file", required=True, help="Path to the master key.")
def secrets_list(key_file: str) -> None:
    """List stored secret names (values are never shown)."""
    from mqtt_tele_monitor.secrets import list_secrets
    for name in list_secrets(_secrets_file(), key_file):
        click.echo(name)


@secrets.command("rekey")
@click.option("--key-file", required=True, help="Current master key path.")
@click.option("--new-key-file", required=True, help="New master key path.")
def secrets_rekey(key_file: str, new_key_file: str) -> None:
    """Re-encrypt the secrets store with a new key."""
    from mqtt_tele_monitor.secrets import rekey
    rekey(_secrets_file(), key_file, new_key_file)
    click.echo(f"Re-keyed with: {new_key_file}")
