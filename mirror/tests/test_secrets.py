"""Tests for the token store."""

import os
import shutil
import stat
import tempfile
from datetime import datetime, timezone
from pathlib import Path

from django.test import SimpleTestCase, override_settings

from mirror import secrets


class SecretsStoreTests(SimpleTestCase):
    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.secrets_file = Path(self.temp_dir) / "nested" / "secrets.json"

        settings_override = override_settings(SECRETS_FILE=self.secrets_file)
        settings_override.enable()
        self.addCleanup(settings_override.disable)

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_account_key(self):
        self.assertEqual(secrets.account_key("alice@example.com"), "google_drive:alice@example.com")

    def test_set_and_get_tokens(self):
        expires = datetime(2024, 1, 15, 10, 0, 0, tzinfo=timezone.utc)

        secrets.set_tokens(
            "alice",
            access_token="test_access",
            refresh_token="test_refresh",
            expires_at=expires,
        )
        tokens = secrets.get_tokens("alice")

        self.assertEqual(tokens.access_token, "test_access")
        self.assertEqual(tokens.refresh_token, "test_refresh")
        self.assertEqual(tokens.expires_at, expires)

    def test_get_tokens_unknown_account(self):
        secrets.set_tokens("alice", access_token="a", refresh_token="r")

        self.assertIsNone(secrets.get_tokens("bob"))

    def test_delete_tokens(self):
        secrets.set_tokens("alice", access_token="a", refresh_token="r")
        self.assertTrue(secrets.has_tokens("alice"))

        self.assertTrue(secrets.delete_tokens("alice"))
        self.assertFalse(secrets.has_tokens("alice"))

    def test_delete_tokens_nonexistent(self):
        self.assertFalse(secrets.delete_tokens("alice"))

    def test_file_permissions(self):
        secrets.set_tokens("alice", access_token="a", refresh_token="r")

        mode = stat.S_IMODE(os.stat(self.secrets_file).st_mode)
        self.assertEqual(mode, stat.S_IRUSR | stat.S_IWUSR)

    def test_no_temp_files_left_behind(self):
        secrets.set_tokens("alice", access_token="a", refresh_token="r")

        self.assertEqual(list(self.secrets_file.parent.glob(".secrets_*.tmp")), [])

    def test_update_keeps_other_accounts(self):
        secrets.set_tokens("alice", access_token="old", refresh_token="r1")
        secrets.set_tokens("bob", access_token="bob_token", refresh_token="r2")
        secrets.set_tokens("alice", access_token="new", refresh_token="r3")

        self.assertEqual(secrets.get_tokens("alice").access_token, "new")
        self.assertEqual(secrets.get_tokens("bob").access_token, "bob_token")

    def test_expires_at_none(self):
        secrets.set_tokens("alice", access_token="a", refresh_token="r", expires_at=None)

        self.assertIsNone(secrets.get_tokens("alice").expires_at)

    def test_unparseable_expiry_is_dropped(self):
        self.secrets_file.parent.mkdir(parents=True)
        self.secrets_file.write_text(
            '{"google_drive:alice": {"access_token": "a", "refresh_token": "r", "expires_at": "soon"}}'
        )

        self.assertIsNone(secrets.get_tokens("alice").expires_at)

    def test_load_missing_file(self):
        self.assertEqual(secrets._read_all(), {})

    def test_invalid_json_file(self):
        self.secrets_file.parent.mkdir(parents=True)
        self.secrets_file.write_text("not valid json{{{")

        with self.assertRaises(secrets.SecretsFileError):
            secrets._read_all()
