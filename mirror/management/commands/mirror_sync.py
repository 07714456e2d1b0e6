"""
Django management command to mirror a Google Drive account locally.
"""

import asyncio
from pathlib import Path

from django.conf import settings
from django.core.management.base import BaseCommand, CommandError

from mirror.providers.google_drive import DriveFeed, GoogleDriveClient
from mirror.sync import MirrorSync, instances


class Command(BaseCommand):
    help = "Keep a local directory in sync with a Google Drive account"

    def add_arguments(self, parser):
        parser.add_argument(
            "uid",
            help="Account id (as stored in the secrets file)",
        )
        parser.add_argument(
            "--root",
            help="Local mirror directory (default: MIRROR_ROOT/<uid>)",
        )
        parser.add_argument(
            "--path",
            action="append",
            dest="paths",
            help="Folder within the drive to mirror; repeatable (default: everything)",
        )

    def handle(self, *args, **options):
        uid = options["uid"]
        root = options["root"] or str(Path(settings.MIRROR_ROOT) / uid)
        paths = options["paths"] or ["/"]

        feed = DriveFeed(GoogleDriveClient(uid))

        self.stdout.write(f"Mirroring {uid} into {root}")
        for path in paths:
            self.stdout.write(f"  - {path}")

        try:
            error = asyncio.run(self._run(feed, root, paths))
        except KeyboardInterrupt:
            self.stdout.write(self.style.WARNING("\nInterrupted, local mirror left in place"))
            return

        if error is not None:
            raise CommandError(f"Mirror failed: {error}")

    async def _run(self, feed, root, paths):
        failed = asyncio.get_running_loop().create_future()

        def on_error(err):
            if not failed.done():
                failed.set_result(err)

        mirror = MirrorSync.open(feed, root)
        for path in paths:
            mirror.sync(path, on_error, self._reporter(path))

        error = await failed
        self.stdout.write(self.style.ERROR(f"\n✗ {error}"))

        # Leave the local tree alone; stop_sync would wipe it
        instances.evict(mirror.key, mirror)
        return error

    def _reporter(self, path):
        def on_change(changed):
            self.stdout.write(
                self.style.SUCCESS(f"✓ {path}: {len(changed)} change(s) committed")
            )
            for local_path in changed[:10]:
                self.stdout.write(f"    {local_path}")
            if len(changed) > 10:
                self.stdout.write(f"    ... and {len(changed) - 10} more")

        return on_change
