"""
Django settings for the drive-mirror project.

Only the pieces the mirror app needs: no admin, no templates, no
auth. Credentials come from the environment or the secrets file.
"""

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY", "drive-mirror-insecure-dev-key")

DEBUG = os.environ.get("DJANGO_DEBUG", "false").lower() == "true"

ALLOWED_HOSTS: list[str] = []

INSTALLED_APPS = [
    "django.contrib.contenttypes",
    "mirror.apps.MirrorConfig",
]

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": BASE_DIR / "db.sqlite3",
    }
}

USE_TZ = True
TIME_ZONE = "UTC"

# Local mirrors live under MIRROR_ROOT/<uid> unless --root is given
MIRROR_ROOT = Path(os.environ.get("MIRROR_ROOT", BASE_DIR / "mirror_data"))

# Seconds a Drive poll asks the engine to back off when nothing changed
MIRROR_POLL_INTERVAL = int(os.environ.get("MIRROR_POLL_INTERVAL", "30"))

# Changes API page size (Drive caps this at 1000)
MIRROR_PAGE_SIZE = int(os.environ.get("MIRROR_PAGE_SIZE", "1000"))

# OAuth tokens are kept out of the database
SECRETS_FILE = Path(os.environ.get("SECRETS_FILE", BASE_DIR / ".secrets.json"))

GOOGLE_CLIENT_ID = os.environ.get("GOOGLE_CLIENT_ID", "")
GOOGLE_CLIENT_SECRET = os.environ.get("GOOGLE_CLIENT_SECRET", "")

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "{asctime} {levelname} {name} {message}",
            "style": "{",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "verbose",
        },
    },
    "loggers": {
        "mirror": {
            "handlers": ["console"],
            "level": os.environ.get("MIRROR_LOG_LEVEL", "INFO"),
            "propagate": False,
        },
    },
}
