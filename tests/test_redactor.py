"""Tests for the redactor module."""

import logging

from mqtt_tele_monitor.redactor import REDACTED, SecretRedactingFilter, collect_secret_values


def test_collect_nested_values() -> None:
    cfg = {
        "broker": {"host": "broker.lan", "username": "monitor", "password": "hunter22"},
        "logging": {"redact_patterns": ["*password*"]},
    }
    assert collect_secret_values(cfg, ["*PASSWORD*"]) == ["hunter22"]


def test_collect_without_patterns() -> None:
    assert collect_secret_values({"password": "x"}, []) == []


def _record(msg: str, *args) -> logging.LogRecord:
    return logging.LogRecord("t", logging.INFO, __file__, 1, msg, args, None)


def test_filter_redacts_args() -> None:
    f = SecretRedactingFilter(["hunter22"])
    record = _record("Connecting with password %s to %s", "hunter22", "broker.lan")
    assert f.filter(record) is True
    assert record.getMessage() == f"Connecting with password {REDACTED} to broker.lan"


def test_filter_leaves_clean_records_alone() -> None:
    f = SecretRedactingFilter(["hunter22"])
    record = _record("Connected to %s", "broker.lan")
    f.filter(record)
    assert record.args == ("broker.lan",)


def test_empty_and_single_char_secrets_are_ignored() -> None:
    f = SecretRedactingFilter(["", "x", "hunter22"])
    assert f.secrets == ["hunter22"]


def test_longest_secret_wins() -> None:
    f = SecretRedactingFilter(["pass", "password123"])
    assert f.redact("password123") == REDACTED
