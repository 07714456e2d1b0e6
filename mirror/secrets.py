"""
OAuth token store for mirrored accounts.

Tokens never touch the database. They live in one JSON document at
``settings.SECRETS_FILE``, readable by the owner only, with one entry
per account under ``google_drive:<uid>``::

    {
      "google_drive:alice": {
        "access_token": "...",
        "refresh_token": "...",
        "expires_at": "2024-01-15T10:00:00+00:00"
      }
    }
"""

from __future__ import annotations

import json
import logging
import os
import stat
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from django.conf import settings

logger = logging.getLogger(__name__)

PROVIDER = "google_drive"

FILE_MODE = stat.S_IRUSR | stat.S_IWUSR


class SecretsError(Exception):
    """Base exception for token store operations."""

    pass


class SecretsFileError(SecretsError):
    """The secrets file can't be read, parsed or written."""

    pass


@dataclass
class Tokens:
    access_token: str
    refresh_token: str | None
    expires_at: datetime | None = None

    @classmethod
    def from_entry(cls, entry: dict) -> Tokens:
        expires_at = None
        if entry.get("expires_at"):
            try:
                expires_at = datetime.fromisoformat(entry["expires_at"])
            except (TypeError, ValueError):
                logger.warning(f"Ignoring unparseable token expiry {entry['expires_at']!r}")

        return cls(
            access_token=entry["access_token"],
            refresh_token=entry.get("refresh_token"),
            expires_at=expires_at,
        )

    def to_entry(self) -> dict:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }


def account_key(uid: str) -> str:
    return f"{PROVIDER}:{uid}"


def _secrets_path() -> Path:
    return Path(settings.SECRETS_FILE)


def _read_all() -> dict:
    path = _secrets_path()
    try:
        raw = path.read_text()
    except FileNotFoundError:
        return {}
    except OSError as e:
        logger.error(f"Cannot read secrets file {path}: {e}")
        raise SecretsFileError(f"Cannot read {path}: {e}") from e

    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        logger.error(f"Secrets file {path} is not valid JSON: {e}")
        raise SecretsFileError(f"{path} is not valid JSON: {e}") from e


def _write_all(entries: dict) -> None:
    path = _secrets_path()
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".secrets_", suffix=".tmp")
        try:
            os.fchmod(fd, FILE_MODE)
            with os.fdopen(fd, "w") as f:
                json.dump(entries, f, indent=2)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
    except OSError as e:
        logger.error(f"Cannot write secrets file {path}: {e}")
        raise SecretsFileError(f"Cannot write {path}: {e}") from e


def get_tokens(uid: str) -> Tokens | None:
    """Tokens stored for ``uid``, or None if the account is unknown."""
    entry = _read_all().get(account_key(uid))
    return Tokens.from_entry(entry) if entry else None


def set_tokens(
    uid: str,
    access_token: str,
    refresh_token: str | None,
    expires_at: datetime | None = None,
) -> None:
    """Store (or replace) the tokens for ``uid``."""
    entries = _read_all()
    entries[account_key(uid)] = Tokens(access_token, refresh_token, expires_at).to_entry()
    _write_all(entries)
    logger.info(f"Saved tokens for {account_key(uid)}")


def delete_tokens(uid: str) -> bool:
    """Forget ``uid``'s tokens; False if there were none."""
    entries = _read_all()
    if entries.pop(account_key(uid), None) is None:
        return False

    _write_all(entries)
    logger.info(f"Deleted tokens for {account_key(uid)}")
    return True


def has_tokens(uid: str) -> bool:
    return account_key(uid) in _read_all()
