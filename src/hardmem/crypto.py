"""
hardmem crypto -- encryption of memory exports and secure database files.

Exports written by ``SQLiteStore.export_to_file`` are Fernet tokens
(AES-128-CBC + HMAC-SHA256) prefixed with ``ENC:``. The key lives at
``$HARDMEM_HOME/.key`` and is created on first use with 0600 permissions.
Losing it means losing access to encrypted exports.

Enabled by default. Disable: HARDMEM_ENCRYPT=0
"""

import base64
import logging
import os
import secrets
import sqlite3
import stat
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger("hardmem.crypto")

ENC_PREFIX = "ENC:"

_fernet_instance = None


def hardmem_home() -> Path:
    """Resolve HARDMEM_HOME lazily so tests can override it."""
    return Path(os.environ.get("HARDMEM_HOME", str(Path.home() / ".hardmem")))


def _key_path() -> Path:
    return hardmem_home() / ".key"


def is_enabled() -> bool:
    val = os.environ.get("HARDMEM_ENCRYPT", "").strip().lower()
    return val not in ("0", "false", "no")


def reset_crypto_state() -> None:
    """Forget the cached key (test isolation, key rotation)."""
    global _fernet_instance
    _fernet_instance = None


def _get_or_create_key() -> bytes:
    kp = _key_path()
    if kp.exists():
        raw = kp.read_bytes().strip()
        # 32 raw bytes: derive the urlsafe Fernet key
        if len(raw) == 32:
            return base64.urlsafe_b64encode(raw)
        return raw

    home = hardmem_home()
    home.mkdir(parents=True, exist_ok=True, mode=0o700)
    encoded_key = base64.urlsafe_b64encode(secrets.token_bytes(32))
    fd = os.open(str(kp), os.O_CREAT | os.O_WRONLY | os.O_EXCL, 0o600)
    try:
        os.write(fd, encoded_key)
    finally:
        os.close(fd)
    logger.info("Created encryption key at %s", kp)
    return encoded_key


def _get_fernet() -> Fernet:
    global _fernet_instance
    if _fernet_instance is None:
        _fernet_instance = Fernet(_get_or_create_key())
    return _fernet_instance


def encrypt(plaintext: str) -> str:
    """Encrypt *plaintext*; returns it unchanged when encryption is disabled."""
    if not is_enabled():
        return plaintext
    token = _get_fernet().encrypt(plaintext.encode("utf-8"))
    return ENC_PREFIX + token.decode("ascii")


def decrypt(data: str) -> str:
    """Decrypt an ``ENC:`` token. Plaintext input is returned as-is.

    Raises ValueError when the token does not decrypt with the current key.
    """
    if not data.startswith(ENC_PREFIX):
        return data
    try:
        token = data[len(ENC_PREFIX):].encode("ascii")
        return _get_fernet().decrypt(token).decode("utf-8")
    except (InvalidToken, UnicodeError) as e:
        raise ValueError(f"Decryption failed: {e!r}") from e


def secure_connect(db_path, **kwargs) -> sqlite3.Connection:
    """Open a SQLite connection on a file readable only by its owner."""
    db_path_str = str(db_path)
    path_obj = Path(db_path_str)

    if not path_obj.exists():
        fd = os.open(db_path_str, os.O_CREAT | os.O_WRONLY, 0o600)
        os.close(fd)
    elif path_obj.stat().st_mode & (stat.S_IRWXG | stat.S_IRWXO):
        os.chmod(db_path_str, 0o600)

    return sqlite3.connect(db_path_str, **kwargs)
