import logging
from pathlib import Path

from django.apps import AppConfig

logger = logging.getLogger(__name__)


class MirrorConfig(AppConfig):
    name = 'mirror'
    verbose_name = 'Drive Mirror'

    def ready(self):
        """
        Run when Django app is ready.

        Ensures the base mirror directory exists so accounts can be
        opened without a separate setup step.
        """
        from django.conf import settings

        root = getattr(settings, 'MIRROR_ROOT', None)
        if not root:
            return

        try:
            Path(root).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            # Don't crash the app if the volume isn't mounted yet
            logger.error(f"Could not create mirror root {root}: {e}", exc_info=True)
