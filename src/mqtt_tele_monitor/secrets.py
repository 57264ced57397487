"""Encrypted store for broker secrets (server name, credentials).

Values are looked up by name during ``${VAR}`` interpolation of the config,
e.g. ``MQTT_SERVER`` or ``MQTT_PASSWORD``.

File layout::

    [8 bytes:  magic "MQTTSECR"]
    [1 byte:   format version = 0x01]
    [12 bytes: nonce]
    [N bytes:  AES-256-GCM ciphertext of a JSON object, tag appended]

The 9-byte header is bound to the ciphertext as associated data.  The
master key is a 32-byte file created on ``init`` with mode 0600.
"""

from __future__ import annotations

import os
from pathlib import Path

import orjson
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

MAGIC = b"MQTTSECR"
VERSION = 0x01
HEADER = MAGIC + bytes([VERSION])
NONCE_LEN = 12
KEY_LEN = 32


class SecretsError(Exception):
    """The secrets file or key is unusable."""


def init_secrets(output: str | Path, key_file: str | Path) -> None:
    """Create an empty encrypted store, generating *key_file* if needed."""
    key = _ensure_key(Path(key_file))
    _write_store(Path(output), key, {})


def set_secret(secrets_file: str | Path, key_file: str | Path, name: str, value: str) -> None:
    """Add or replace one secret."""
    key = _read_key(Path(key_file))
    store = _read_store(Path(secrets_file), key)
    store[name] = value
    _write_store(Path(secrets_file), key, store)


def list_secrets(secrets_file: str | Path, key_file: str | Path) -> list[str]:
    """Names of all stored secrets, sorted."""
    return sorted(load_secrets(secrets_file, key_file))


def load_secrets(secrets_file: str | Path, key_file: str | Path) -> dict[str, str]:
    """Decrypt the whole store."""
    return _read_store(Path(secrets_file), _read_key(Path(key_file)))


def rekey(secrets_file: str | Path, old_key_file: str | Path, new_key_file: str | Path) -> None:
    """Decrypt with the old key and re-encrypt under a (possibly new) key file."""
    store = load_secrets(secrets_file, old_key_file)
    new_key = _ensure_key(Path(new_key_file))
    _write_store(Path(secrets_file), new_key, store)


# ── internal helpers ────────────────────────────────────────────────


def _ensure_key(path: Path) -> bytes:
    if not path.exists():
        path.write_bytes(AESGCM.generate_key(bit_length=256))
        os.chmod(path, 0o600)
    return _read_key(path)


def _read_key(path: Path) -> bytes:
    if not path.exists():
        raise SecretsError(f"Key file not found: {path}")
    key = path.read_bytes()
    if len(key) != KEY_LEN:
        raise SecretsError(f"Key file must be exactly {KEY_LEN} bytes, got {len(key)}")
    return key


def _write_store(path: Path, key: bytes, store: dict[str, str]) -> None:
    nonce = os.urandom(NONCE_LEN)
    ciphertext = AESGCM(key).encrypt(nonce, orjson.dumps(store), HEADER)

    tmp = path.with_name(path.name + ".tmp")
    tmp.write_bytes(HEADER + nonce + ciphertext)
    os.chmod(tmp, 0o600)
    os.replace(tmp, path)


def _read_store(path: Path, key: bytes) -> dict[str, str]:
    data = path.read_bytes()
    if data[:len(MAGIC)] != MAGIC:
        raise SecretsError(f"{path} is not a secrets file (bad magic)")
    if len(data) <= len(HEADER) or data[len(MAGIC)] != VERSION:
        raise SecretsError(f"Unsupported secrets file version in {path}")

    nonce = data[len(HEADER):len(HEADER) + NONCE_LEN]
    ciphertext = data[len(HEADER) + NONCE_LEN:]
    try:
        plaintext = AESGCM(key).decrypt(nonce, ciphertext, HEADER)
    except InvalidTag as exc:
        raise SecretsError(f"Cannot decrypt {path}: wrong key or corrupted file") from exc
    return orjson.loads(plaintext)
