"""Tests for the encrypted secrets store."""

import os
import stat
from pathlib import Path

import pytest

from mqtt_tele_monitor.secrets import (
    SecretsError,
    init_secrets,
    list_secrets,
    load_secrets,
    rekey,
    set_secret,
)


@pytest.fixture()
def store(tmp_path: Path) -> tuple[Path, Path]:
    secrets_file = tmp_path / ".secrets.enc"
    key_file = tmp_path / "master.key"
    init_secrets(secrets_file, key_file)
    return secrets_file, key_file


def test_init_creates_key_and_empty_store(store: tuple[Path, Path]) -> None:
    secrets_file, key_file = store
    assert len(key_file.read_bytes()) == 32
    assert stat.S_IMODE(os.stat(key_file).st_mode) == 0o600
    assert load_secrets(secrets_file, key_file) == {}


def test_set_and_list(store: tuple[Path, Path]) -> None:
    secrets_file, key_file = store
    set_secret(secrets_file, key_file, "MQTT_SERVER", "broker.lan")
    set_secret(secrets_file, key_file, "MQTT_PASSWORD", "hunter22")
    set_secret(secrets_file, key_file, "MQTT_SERVER", "broker2.lan")

    assert list_secrets(secrets_file, key_file) == ["MQTT_PASSWORD", "MQTT_SERVER"]
    assert load_secrets(secrets_file, key_file)["MQTT_SERVER"] == "broker2.lan"
    assert b"broker2.lan" not in secrets_file.read_bytes()


def test_wrong_key_is_rejected(store: tuple[Path, Path], tmp_path: Path) -> None:
    secrets_file, _ = store
    other_key = tmp_path / "other.key"
    other_key.write_bytes(os.urandom(32))
    with pytest.raises(SecretsError, match="wrong key"):
        load_secrets(secrets_file, other_key)


def test_short_key_is_rejected(store: tuple[Path, Path], tmp_path: Path) -> None:
    secrets_file, _ = store
    short_key = tmp_path / "short.key"
    short_key.write_bytes(b"x" * 16)
    with pytest.raises(SecretsError, match="32 bytes"):
        load_secrets(secrets_file, short_key)


def test_missing_key_file(store: tuple[Path, Path], tmp_path: Path) -> None:
    secrets_file, _ = store
    with pytest.raises(SecretsError, match="not found"):
        load_secrets(secrets_file, tmp_path / "nope.key")


def test_bad_magic(tmp_path: Path, store: tuple[Path, Path]) -> None:
    _, key_file = store
    bogus = tmp_path / "bogus.enc"
    bogus.write_bytes(b"NOTSECRT" + b"\x01" + os.urandom(40))
    with pytest.raises(SecretsError, match="bad magic"):
        load_secrets(bogus, key_file)


def test_rekey(store: tuple[Path, Path], tmp_path: Path) -> None:
    secrets_file, key_file = store
    set_secret(secrets_file, key_file, "MQTT_SERVER", "broker.lan")
    new_key = tmp_path / "new.key"

    rekey(secrets_file, key_file, new_key)

    assert load_secrets(secrets_file, new_key) == {"MQTT_SERVER": "broker.lan"}
    with pytest.raises(SecretsError):
        load_secrets(secrets_file, key_file)
