"""Tests for the CLI and the async pipeline."""

import asyncio
import logging
from pathlib import Path

import orjson
import pytest
from click.testing import CliRunner

from mqtt_tele_monitor.cli import DRY_RUN_MESSAGES, _run_pipeline, main
from mqtt_tele_monitor.config import AppConfig
from mqtt_tele_monitor.dispatch import handle
from mqtt_tele_monitor.models import Dropped, Failed, Rendered


@pytest.fixture(autouse=True)
def _restore_logging():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture()
def runner() -> CliRunner:
    return CliRunner()


# ── decode subcommand ───────────────────────────────────────────────


def test_decode_message_count(runner: CliRunner) -> None:
    result = runner.invoke(main, ["decode", "$SYS/broker/messages/received", "42"])
    assert result.exit_code == 0
    assert result.output == "$SYS/broker/messages/received: 42 messages\n"


def test_decode_dropped_prints_nothing(runner: CliRunner) -> None:
    result = runner.invoke(main, ["decode", "tele/tasmota_ABCDEF/LWT", "Maybe"])
    assert result.exit_code == 0
    assert result.output == ""


def test_decode_failure_exits_nonzero(runner: CliRunner) -> None:
    result = runner.invoke(main, ["decode", "tele/tasmota_ABCDEF/STATE", '{"Uptime": null}'])
    assert result.exit_code == 1
    assert "Error: Uptime value was null" in result.output


def test_decode_reads_stdin(runner: CliRunner) -> None:
    result = runner.invoke(main, ["decode", "other/random/path"], input="hello")
    assert result.exit_code == 0
    assert result.output == "other/random/path: hello\n"


def test_decode_custom_prefix(runner: CliRunner) -> None:
    result = runner.invoke(main, ["decode", "--prefix", "shelly_", "tele/shelly_1/LWT", "Offline"])
    assert result.output == "LWT for shelly_1 is Offline\n"


# ── main command ────────────────────────────────────────────────────


def test_validate_config(runner: CliRunner, tmp_path: Path) -> None:
    cfg = tmp_path / "config.json"
    cfg.write_bytes(orjson.dumps({"broker": {"host": "broker.lan"}, "logging": {"format": "text"}}))
    result = runner.invoke(main, ["--config", str(cfg), "--validate-config"])
    assert result.exit_code == 0
    assert "Configuration is valid." in result.output


def test_config_error(runner: CliRunner, tmp_path: Path) -> None:
    result = runner.invoke(main, ["--config", str(tmp_path / "missing.json")])
    assert result.exit_code == 1
    assert "Config error" in result.output


def test_version(runner: CliRunner) -> None:
    result = runner.invoke(main, ["--version"])
    assert result.exit_code == 0
    assert "0.1.0" in result.output


# ── pipeline ────────────────────────────────────────────────────────


class FakeConnection:
    """Stands in for BrokerConnection; replays messages on start()."""

    def __init__(self, messages):
        self.messages = messages
        self.filters = []
        self.handler = None
        self.stopped = False

    def on_message(self, handler):
        self.handler = handler

    def subscribe(self, topic_filter):
        self.filters.append(topic_filter)

    def start(self):
        assert self.handler is not None
        for topic, payload in self.messages:
            self.handler(topic, payload)

    def stop(self):
        self.stopped = True


class RecordingSink:
    def __init__(self):
        self.outcomes = []
        self.closed = False

    def emit(self, outcome):
        self.outcomes.append(outcome)
        return not isinstance(outcome, Dropped)

    def close(self):
        self.closed = True


def test_pipeline_preserves_order_and_stops_after_dry_run() -> None:
    messages = [
        ("$SYS/broker/messages/received", b"42"),
        ("tele/tasmota_ABCDEF/LWT", b"Maybe"),
        ("tele/tasmota_ABCDEF/STATE", b"{"),
        ("tele/tasmota_ABCDEF/LWT", b"Online"),
        ("other/random/path", b"hello"),
        ("other/never/read", b"late"),
    ]
    conn = FakeConnection(messages)
    sink = RecordingSink()

    count = asyncio.run(_run_pipeline(AppConfig(), True, conn=conn, sink=sink))

    assert count == DRY_RUN_MESSAGES
    assert conn.filters == ["$SYS/#", "tele/#"]
    assert conn.stopped and sink.closed
    assert [type(o) for o in sink.outcomes] == [Rendered, Dropped, Failed, Rendered, Rendered]
    assert sink.outcomes[0] == Rendered("$SYS/broker/messages/received: 42 messages")
    assert sink.outcomes[3] == Rendered("LWT for tasmota_ABCDEF is Online")
    assert sink.outcomes[4] == Rendered("other/random/path: hello")


def test_pipeline_stops_on_broken_pipe() -> None:
    class BrokenSink(RecordingSink):
        def emit(self, outcome):
            raise BrokenPipeError

    conn = FakeConnection([("a/b", b"x"), ("a/c", b"y")])
    sink = BrokenSink()

    count = asyncio.run(_run_pipeline(AppConfig(), False, conn=conn, sink=sink))

    assert count == 0
    assert conn.stopped and sink.closed


def test_pipeline_survives_dispatch_error(monkeypatch: pytest.MonkeyPatch) -> None:
    class ExplodingDispatcher:
        def __init__(self, device_prefix):
            self._device_prefix = device_prefix

        def __call__(self, topic, payload):
            if topic == "tele/tasmota_1/SENSOR":
                raise RuntimeError("decoder bug")
            return handle(topic, payload, self._device_prefix)

    monkeypatch.setattr("mqtt_tele_monitor.cli.Dispatcher", ExplodingDispatcher)
    messages = [
        ("tele/tasmota_1/SENSOR", b"{}"),
        ("tele/tasmota_1/LWT", b"Online"),
        ("$SYS/broker/messages/sent", b"7"),
        ("a/b", b"x"),
        ("a/c", b"y"),
    ]
    conn = FakeConnection(messages)
    sink = RecordingSink()

    count = asyncio.run(_run_pipeline(AppConfig(), True, conn=conn, sink=sink))

    assert count == DRY_RUN_MESSAGES
    assert sink.outcomes[0] == Failed("RuntimeError: decoder bug")
    assert sink.outcomes[1] == Rendered("LWT for tasmota_1 is Online")
    assert sink.outcomes[2] == Rendered("$SYS/broker/messages/sent: 7 messages")
