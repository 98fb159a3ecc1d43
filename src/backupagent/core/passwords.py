"""Recorded encryption passwords for unattended backups.

This module provides:
- Protection of a password bound to this installation (LOCAL_MACHINE):
  AES-256-GCM under an Argon2id key derived from a per-installation secret
- Protection through the OS keyring (CURRENT_USER)
- Helpers to record and recover the password of a settings document
"""

from __future__ import annotations

import base64
import binascii
import contextlib
import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING

import keyring
from argon2.low_level import Type, hash_secret_raw
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from backupagent.core.paths import compute_pair_hash
from backupagent.core.types import PasswordProtectionScope, PersistenceError

if TYPE_CHECKING:
    from backupagent.core.config import BackupSettings

logger = logging.getLogger(__name__)

KEYRING_SERVICE = "backupagent"
KEYRING_MARKER = "keyring:"
SECRET_FILE_NAME = "Secret.key"
DEFAULT_ENTRY_NAME = "default"

# Argon2id parameters (OWASP recommendations for password hashing)
ARGON2_TIME_COST = 3
ARGON2_MEMORY_COST = 65536  # 64 MiB
ARGON2_PARALLELISM = 4
ARGON2_HASH_LEN = 32  # 256 bits

SECRET_SIZE = 32
SALT_SIZE = 16
NONCE_SIZE = 12


class PasswordError(Exception):
    """Exception raised when a recorded password cannot be stored or recovered."""


def _load_or_create_secret(data_dir: Path) -> bytes:
    """Get the installation secret, creating it on first use."""
    path = data_dir / SECRET_FILE_NAME
    if path.exists():
        try:
            secret = base64.b64decode(path.read_text().strip(), validate=True)
        except (OSError, binascii.Error) as e:
            raise PasswordError(f"Installation secret {path} is unreadable") from e
        if len(secret) != SECRET_SIZE:
            raise PasswordError(f"Installation secret {path} is corrupted")
        return secret

    secret = os.urandom(SECRET_SIZE)
    data_dir.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write(base64.b64encode(secret).decode())
    logger.info("Created installation secret at %s", path)
    return secret


def _derive_key(secret: bytes, salt: bytes) -> bytes:
    return hash_secret_raw(
        secret=secret,
        salt=salt,
        time_cost=ARGON2_TIME_COST,
        memory_cost=ARGON2_MEMORY_COST,
        parallelism=ARGON2_PARALLELISM,
        hash_len=ARGON2_HASH_LEN,
        type=Type.ID,
    )


def protect_password(
    password: str,
    scope: PasswordProtectionScope,
    data_dir: Path,
    entry_name: str = DEFAULT_ENTRY_NAME,
) -> str:
    """Protect a password for storage in a settings document.

    Args:
        password: The plaintext password.
        scope: LOCAL_MACHINE encrypts with the installation secret,
            CURRENT_USER stores it in the OS keyring.
        data_dir: Data directory holding the installation secret.
        entry_name: Keyring username (CURRENT_USER only).

    Returns:
        The protected form to store in BackupSettings.protected_password.

    Raises:
        PasswordError: If the keyring is unavailable.
    """
    if scope == PasswordProtectionScope.CURRENT_USER:
        try:
            keyring.set_password(KEYRING_SERVICE, entry_name, password)
        except Exception as e:
            raise PasswordError(f"Keyring unavailable: {e}") from e
        return KEYRING_MARKER + entry_name

    salt = os.urandom(SALT_SIZE)
    nonce = os.urandom(NONCE_SIZE)
    key = _derive_key(_load_or_create_secret(data_dir), salt)
    ciphertext = AESGCM(key).encrypt(nonce, password.encode("utf-8"), None)
    return base64.b64encode(salt + nonce + ciphertext).decode()


def unprotect_password(protected: str, data_dir: Path) -> str:
    """Recover a password protected with protect_password.

    Raises:
        PasswordError: If the protected blob cannot be decrypted or the
            keyring entry is missing.
    """
    if protected.startswith(KEYRING_MARKER):
        entry_name = protected[len(KEYRING_MARKER):]
        try:
            password = keyring.get_password(KEYRING_SERVICE, entry_name)
        except Exception as e:
            raise PasswordError(f"Keyring unavailable: {e}") from e
        if password is None:
            raise PasswordError(f"No keyring entry for {entry_name}")
        return password

    try:
        blob = base64.b64decode(protected, validate=True)
    except binascii.Error as e:
        raise PasswordError("Recorded password is not valid base64") from e
    if len(blob) <= SALT_SIZE + NONCE_SIZE:
        raise PasswordError("Recorded password is truncated")

    salt = blob[:SALT_SIZE]
    nonce = blob[SALT_SIZE : SALT_SIZE + NONCE_SIZE]
    ciphertext = blob[SALT_SIZE + NONCE_SIZE :]
    key = _derive_key(_load_or_create_secret(data_dir), salt)
    try:
        return AESGCM(key).decrypt(nonce, ciphertext, None).decode("utf-8")
    except InvalidTag as e:
        raise PasswordError("Recorded password was protected by another installation") from e


def forget_protected_password(protected: str | None) -> None:
    """Drop the keyring entry behind a protected password, if any."""
    if protected and protected.startswith(KEYRING_MARKER):
        with contextlib.suppress(Exception):
            keyring.delete_password(KEYRING_SERVICE, protected[len(KEYRING_MARKER):])


def _entry_name(settings: BackupSettings) -> str:
    if settings.origin_base_dir_path is None or settings.dest_base_dir_path is None:
        return DEFAULT_ENTRY_NAME
    return compute_pair_hash(settings.origin_base_dir_path, settings.dest_base_dir_path)


def save_password(settings: BackupSettings, password: str | None, data_dir: Path) -> bool:
    """Record (or clear) the password of a settings document and save it.

    Returns:
        True if the settings now hold the password.
    """
    forget_protected_password(settings.protected_password)
    settings.protected_password = None
    recorded = False
    if password and settings.record_password:
        try:
            settings.protected_password = protect_password(
                password, settings.password_protection_scope, data_dir, _entry_name(settings)
            )
            recorded = True
        except PasswordError:
            logger.exception("Could not record password")
    try:
        settings.save(data_dir)
    except PersistenceError:
        logger.exception("Could not save settings with the recorded password")
        return False
    return recorded


def load_password(settings: BackupSettings, data_dir: Path) -> str | None:
    """Recover the recorded password of a settings document.

    Returns:
        The password, or None if none is recorded or it cannot be recovered.
    """
    if not settings.record_password or not settings.protected_password:
        return None
    try:
        return unprotect_password(settings.protected_password, data_dir)
    except PasswordError:
        logger.exception("Could not recover the recorded password")
        return None
