"""Tests for recorded password protection."""

from __future__ import annotations

import base64
import os
import stat
import sys
from pathlib import Path
from unittest.mock import patch

import pytest

from backupagent.core.config import BackupSettings, load_local_settings
from backupagent.core.passwords import (
    KEYRING_MARKER,
    KEYRING_SERVICE,
    SECRET_FILE_NAME,
    PasswordError,
    load_password,
    protect_password,
    save_password,
    unprotect_password,
)
from backupagent.core.types import PasswordProtectionScope, PersistenceError

ORIGIN = os.sep + os.path.join("o", "")
DEST = os.sep + os.path.join("d", "")


class TestLocalMachineScope:
    """Tests for passwords bound to the installation secret."""

    def test_round_trip(self, tmp_path: Path) -> None:
        protected = protect_password("hunter2", PasswordProtectionScope.LOCAL_MACHINE, tmp_path)
        assert "hunter2" not in protected
        assert unprotect_password(protected, tmp_path) == "hunter2"

    def test_secret_created_once(self, tmp_path: Path) -> None:
        protect_password("a", PasswordProtectionScope.LOCAL_MACHINE, tmp_path)
        secret = (tmp_path / SECRET_FILE_NAME).read_text()
        protect_password("b", PasswordProtectionScope.LOCAL_MACHINE, tmp_path)
        assert (tmp_path / SECRET_FILE_NAME).read_text() == secret

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
    def test_secret_is_private(self, tmp_path: Path) -> None:
        protect_password("a", PasswordProtectionScope.LOCAL_MACHINE, tmp_path)
        mode = stat.S_IMODE((tmp_path / SECRET_FILE_NAME).stat().st_mode)
        assert mode == 0o600

    def test_other_installation_cannot_recover(self, tmp_path: Path) -> None:
        first, second = tmp_path / "first", tmp_path / "second"
        protected = protect_password("pw", PasswordProtectionScope.LOCAL_MACHINE, first)
        with pytest.raises(PasswordError, match="another installation"):
            unprotect_password(protected, second)

    def test_garbage_rejected(self, tmp_path: Path) -> None:
        with pytest.raises(PasswordError):
            unprotect_password("not base64!", tmp_path)
        with pytest.raises(PasswordError, match="truncated"):
            unprotect_password(base64.b64encode(b"short").decode(), tmp_path)


class TestCurrentUserScope:
    """Tests for passwords kept in the OS keyring."""

    def test_stores_in_keyring(self, tmp_path: Path) -> None:
        with patch("backupagent.core.passwords.keyring") as mock_keyring:
            protected = protect_password("pw", PasswordProtectionScope.CURRENT_USER, tmp_path, "entry")

        assert protected == KEYRING_MARKER + "entry"
        mock_keyring.set_password.assert_called_once_with(KEYRING_SERVICE, "entry", "pw")

    def test_recovers_from_keyring(self, tmp_path: Path) -> None:
        with patch("backupagent.core.passwords.keyring") as mock_keyring:
            mock_keyring.get_password.return_value = "pw"
            assert unprotect_password(KEYRING_MARKER + "entry", tmp_path) == "pw"
        mock_keyring.get_password.assert_called_once_with(KEYRING_SERVICE, "entry")

    def test_missing_keyring_entry(self, tmp_path: Path) -> None:
        with patch("backupagent.core.passwords.keyring") as mock_keyring:
            mock_keyring.get_password.return_value = None
            with pytest.raises(PasswordError):
                unprotect_password(KEYRING_MARKER + "entry", tmp_path)

    def test_keyring_failure_wrapped(self, tmp_path: Path) -> None:
        with patch("backupagent.core.passwords.keyring") as mock_keyring:
            mock_keyring.set_password.side_effect = RuntimeError("no backend")
            with pytest.raises(PasswordError, match="Keyring unavailable"):
                protect_password("pw", PasswordProtectionScope.CURRENT_USER, tmp_path)


class TestSettingsPasswords:
    """Tests for save_password / load_password."""

    def test_save_and_load(self, tmp_path: Path) -> None:
        settings = BackupSettings(origin_base_dir_path=ORIGIN, dest_base_dir_path=DEST)
        assert save_password(settings, "pw", tmp_path)

        reloaded = load_local_settings(tmp_path, ORIGIN, DEST)
        assert reloaded is not None
        assert reloaded.protected_password
        assert load_password(reloaded, tmp_path) == "pw"

    def test_not_recorded_when_disabled(self, tmp_path: Path) -> None:
        settings = BackupSettings(origin_base_dir_path=ORIGIN, dest_base_dir_path=DEST, record_password=False)
        assert not save_password(settings, "pw", tmp_path)
        assert settings.protected_password is None
        assert load_password(settings, tmp_path) is None

    def test_clear(self, tmp_path: Path) -> None:
        settings = BackupSettings(origin_base_dir_path=ORIGIN, dest_base_dir_path=DEST)
        save_password(settings, "pw", tmp_path)
        save_password(settings, None, tmp_path)
        assert load_password(settings, tmp_path) is None

    def test_unwritable_settings_reported(self, tmp_path: Path) -> None:
        """A settings document that cannot be written is logged, not raised."""
        settings = BackupSettings(origin_base_dir_path=ORIGIN, dest_base_dir_path=DEST)
        with patch.object(BackupSettings, "save", side_effect=PersistenceError("disk full")):
            assert save_password(settings, "pw", tmp_path) is False
        assert load_local_settings(tmp_path, ORIGIN, DEST) is None

    def test_unrecoverable_password_gives_none(self, tmp_path: Path) -> None:
        settings = BackupSettings(protected_password="garbage")
        assert load_password(settings, tmp_path) is None

    def test_keyring_entry_named_after_pair(self, tmp_path: Path) -> None:
        settings = BackupSettings(
            origin_base_dir_path=ORIGIN,
            dest_base_dir_path=DEST,
            password_protection_scope=PasswordProtectionScope.CURRENT_USER,
        )
        with patch("backupagent.core.passwords.keyring") as mock_keyring:
            assert save_password(settings, "pw", tmp_path)
        entry = mock_keyring.set_password.call_args.args[1]
        assert settings.protected_password == KEYRING_MARKER + entry
        assert entry != "default"
