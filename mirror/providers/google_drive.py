"""
Google Drive delta feed.

Provides OAuth credential handling, change listing via the Changes
API and file download, wrapped as a ``RemoteFeed`` for the mirror
engine.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from io import BytesIO

from django.conf import settings
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaIoBaseDownload

from mirror import secrets
from mirror.providers.base import Change, PollResult, PulledChanges, RemoteFeed
from mirror.providers.drive_paths import DrivePathIndex

logger = logging.getLogger(__name__)

FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"

# Google Docs MIME types that need export
GOOGLE_DOC_TYPES = {
    "application/vnd.google-apps.document": (
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        ".docx",
    ),
    "application/vnd.google-apps.spreadsheet": (
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        ".xlsx",
    ),
    "application/vnd.google-apps.presentation": (
        "application/vnd.openxmlformats-officedocument.presentationml.presentation",
        ".pptx",
    ),
    "application/vnd.google-apps.drawing": ("application/pdf", ".pdf"),
}

# MIME types that have no content to mirror (shortcuts, etc.)
NON_DOWNLOADABLE_TYPES = {
    FOLDER_MIME_TYPE,
    "application/vnd.google-apps.shortcut",
    "application/vnd.google-apps.form",
    "application/vnd.google-apps.map",
    "application/vnd.google-apps.site",
}

FILE_FIELDS = "id,name,mimeType,size,modifiedTime,md5Checksum,parents,trashed"


class GoogleDriveError(Exception):
    """Base exception for Google Drive operations."""

    pass


class TokenExpiredError(GoogleDriveError):
    """Raised when no usable token exists or refreshing it fails."""

    pass


class FileNotDownloadableError(GoogleDriveError):
    """Raised when a file type cannot be downloaded."""

    pass


class UnknownPathError(GoogleDriveError):
    """Raised when a path has no known Drive file id."""

    pass


@dataclass
class DriveFile:
    """Represents a file from Google Drive."""

    id: str
    name: str
    mime_type: str
    size: int | None
    modified_time: datetime | None
    md5_checksum: str | None
    parents: list[str]
    trashed: bool

    @classmethod
    def from_api_response(cls, data: dict) -> "DriveFile":
        modified = data.get("modifiedTime")
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            mime_type=data.get("mimeType", ""),
            size=int(data["size"]) if "size" in data else None,
            modified_time=datetime.fromisoformat(modified.replace("Z", "+00:00"))
            if modified
            else None,
            md5_checksum=data.get("md5Checksum"),
            parents=data.get("parents", []),
            trashed=data.get("trashed", False),
        )

    @property
    def is_folder(self) -> bool:
        return self.mime_type == FOLDER_MIME_TYPE

    @property
    def is_google_doc(self) -> bool:
        return self.mime_type in GOOGLE_DOC_TYPES

    @property
    def is_downloadable(self) -> bool:
        return self.mime_type not in NON_DOWNLOADABLE_TYPES

    @property
    def export_mime_type(self) -> str | None:
        if self.is_google_doc:
            return GOOGLE_DOC_TYPES[self.mime_type][0]
        return None

    @property
    def local_name(self) -> str:
        """Name on disk; exported Google Docs get their Office extension."""
        if self.is_google_doc:
            extension = GOOGLE_DOC_TYPES[self.mime_type][1]
            if not self.name.lower().endswith(extension):
                return self.name + extension
        return self.name


@dataclass
class DriveChange:
    """Represents a change from the Google Drive Changes API."""

    file_id: str
    removed: bool
    file: DriveFile | None
    change_type: str  # 'file' or 'drive'

    @classmethod
    def from_api_response(cls, data: dict) -> "DriveChange":
        file_data = data.get("file")
        return cls(
            file_id=data.get("fileId", ""),
            removed=data.get("removed", False),
            file=DriveFile.from_api_response(file_data) if file_data else None,
            change_type=data.get("changeType", "file"),
        )


@dataclass
class ChangesPage:
    """A page of changes from the Changes API."""

    changes: list[DriveChange]
    new_start_page_token: str | None
    next_page_token: str | None

    @property
    def has_more(self) -> bool:
        return self.next_page_token is not None


class GoogleDriveClient:
    """
    Blocking client for the Drive v3 API of one account.

    Args:
        uid: Account id; tokens are read from the secrets file
    """

    def __init__(self, uid: str):
        self.uid = uid
        self._credentials: Credentials | None = None
        self._service = None

    def _get_credentials(self) -> Credentials:
        if self._credentials is None:
            tokens = secrets.get_tokens(self.uid)
            if tokens is None:
                raise TokenExpiredError(f"No tokens found for account {self.uid}")

            expiry = tokens.expires_at
            if expiry is not None and expiry.tzinfo is not None:
                # google-auth compares against naive UTC
                expiry = expiry.astimezone(timezone.utc).replace(tzinfo=None)

            self._credentials = Credentials(
                token=tokens.access_token,
                refresh_token=tokens.refresh_token,
                token_uri="https://oauth2.googleapis.com/token",
                client_id=settings.GOOGLE_CLIENT_ID,
                client_secret=settings.GOOGLE_CLIENT_SECRET,
                expiry=expiry,
            )
        return self._credentials

    def refresh_token_if_needed(self) -> bool:
        """
        Refresh the access token if expired or expiring soon.

        Returns:
            True if token was refreshed, False otherwise

        Raises:
            TokenExpiredError: If refresh fails
        """
        credentials = self._get_credentials()

        if credentials.expiry:
            buffer = timedelta(minutes=5)
            now = datetime.now(timezone.utc).replace(tzinfo=None)
            if credentials.expiry > now + buffer:
                return False

        if not credentials.refresh_token:
            raise TokenExpiredError("No refresh token available")

        try:
            credentials.refresh(Request())
        except Exception as e:
            logger.error(f"Token refresh failed for account {self.uid}: {e}")
            raise TokenExpiredError(f"Token refresh failed: {e}") from e

        secrets.set_tokens(
            self.uid,
            access_token=credentials.token,
            refresh_token=credentials.refresh_token,
            expires_at=credentials.expiry.replace(tzinfo=timezone.utc)
            if credentials.expiry
            else None,
        )
        logger.info(f"Refreshed token for account {self.uid}")
        return True

    def _get_service(self):
        if self._service is None:
            self.refresh_token_if_needed()
            self._service = build("drive", "v3", credentials=self._get_credentials())
        return self._service

    def get_root_folder_id(self) -> str:
        """Id of "My Drive", which parents report instead of "root"."""
        response = self._get_service().files().get(fileId="root", fields="id").execute()
        return response["id"]

    def get_start_page_token(self) -> str:
        response = self._get_service().changes().getStartPageToken().execute()
        return response["startPageToken"]

    def list_changes(self, page_token: str, page_size: int | None = None) -> ChangesPage:
        """
        List changes since the given page token.

        Args:
            page_token: Token from a previous page, or "1" for everything
            page_size: Number of changes per page (default MIRROR_PAGE_SIZE)

        Returns:
            ChangesPage with changes and next/new tokens
        """
        response = (
            self._get_service()
            .changes()
            .list(
                pageToken=page_token,
                pageSize=page_size or settings.MIRROR_PAGE_SIZE,
                fields=(
                    "nextPageToken,newStartPageToken,"
                    f"changes(fileId,removed,changeType,file({FILE_FIELDS}))"
                ),
                includeItemsFromAllDrives=False,
                supportsAllDrives=True,
            )
            .execute()
        )

        return ChangesPage(
            changes=[DriveChange.from_api_response(c) for c in response.get("changes", [])],
            new_start_page_token=response.get("newStartPageToken"),
            next_page_token=response.get("nextPageToken"),
        )

    def get_file_metadata(self, file_id: str) -> DriveFile:
        response = (
            self._get_service()
            .files()
            .get(fileId=file_id, fields=FILE_FIELDS, supportsAllDrives=True)
            .execute()
        )
        return DriveFile.from_api_response(response)

    def download_file(self, file_id: str) -> bytes:
        """
        Download a file's content, exporting Google Docs.

        Raises:
            FileNotDownloadableError: If file type cannot be downloaded
        """
        service = self._get_service()
        file_meta = self.get_file_metadata(file_id)

        if not file_meta.is_downloadable:
            raise FileNotDownloadableError(f"File type {file_meta.mime_type} cannot be downloaded")

        if file_meta.is_google_doc:
            request = service.files().export_media(
                fileId=file_id, mimeType=file_meta.export_mime_type
            )
        else:
            request = service.files().get_media(fileId=file_id)

        buffer = BytesIO()
        downloader = MediaIoBaseDownload(buffer, request)

        done = False
        while not done:
            status, done = downloader.next_chunk()
            if status:
                logger.debug(f"Download progress: {int(status.progress() * 100)}%")

        return buffer.getvalue()


class DriveFeed(RemoteFeed):
    """
    ``RemoteFeed`` over the Drive Changes API.

    Page tokens serve as cursors. Without a cursor the feed lists every
    change since token "1", which amounts to the current state of the
    drive, and flags the page as a blank slate. Drive has no long-poll,
    so a poll peeks at one change and, when there is none, asks the
    engine to come back after ``MIRROR_POLL_INTERVAL`` seconds.

    File entries carry their Drive id, so content is downloaded by id
    even if a later entry in the batch moved the path. The index state
    before every page of the current batch is kept; pulling one of those
    pages again rewinds the index first, so removals and moves are
    reported again instead of being lost.
    """

    def __init__(self, client: GoogleDriveClient, index: DrivePathIndex | None = None):
        self.client = client
        self.index = index or DrivePathIndex()
        self._checkpoints: list[tuple[str, tuple]] = []
        self._batch_done = True

    @property
    def uid(self) -> str:
        return self.client.uid

    async def poll_for_changes(self, cursor: str) -> PollResult:
        return await asyncio.to_thread(self._poll, cursor)

    async def pull_changes(self, cursor: str | None) -> PulledChanges:
        return await asyncio.to_thread(self._pull, cursor)

    async def read_file(self, path: str, source_id: str | None = None) -> bytes:
        return await asyncio.to_thread(self._read, path, source_id)

    def _poll(self, cursor: str) -> PollResult:
        page = self.client.list_changes(cursor, page_size=1)
        if page.changes or page.has_more:
            return PollResult(has_changes=True)
        return PollResult(has_changes=False, retry_after=settings.MIRROR_POLL_INTERVAL)

    def _pull(self, cursor: str | None) -> PulledChanges:
        blank_slate = cursor is None
        if blank_slate:
            self._checkpoints.clear()
            self.index.reset(root_id=self.client.get_root_folder_id())
        else:
            self._checkpoint(cursor)

        token = cursor or "1"
        page = self.client.list_changes(token)

        changes = []
        for drive_change in page.changes:
            changes.extend(self._to_changes(drive_change))

        self._batch_done = not page.has_more
        return PulledChanges(
            cursor=page.next_page_token or page.new_start_page_token or token,
            changes=changes,
            should_pull_again=page.has_more,
            blank_slate=blank_slate,
        )

    def _checkpoint(self, cursor: str) -> None:
        for i, (seen, state) in enumerate(self._checkpoints):
            if seen == cursor:
                logger.info(f"Page {cursor} pulled again, rewinding path index")
                self.index.restore(state)
                del self._checkpoints[i:]
                break
        else:
            if self._batch_done:
                self._checkpoints.clear()

        self._batch_done = False
        self._checkpoints.append((cursor, self.index.snapshot()))

    def _to_changes(self, drive_change: DriveChange) -> list[Change]:
        if drive_change.change_type != "file":
            return []

        drive_file = drive_change.file
        if drive_change.removed or drive_file is None or drive_file.trashed:
            old_path = self.index.forget(drive_change.file_id)
            return [Change.removed(old_path)] if old_path else []

        old_path = self.index.path_for(drive_file.id)
        path = self.index.build_path(drive_file, self._lookup)

        changes = []
        moved = old_path is not None and old_path != path
        if moved:
            changes.append(Change.removed(old_path))

        if drive_file.is_folder:
            changes.append(Change.folder(path))
            if moved:
                # The old tree is gone locally, so re-create what was under it
                for child_path, child_id, is_folder in self.index.descendants(path):
                    if is_folder:
                        changes.append(Change.folder(child_path))
                    else:
                        changes.append(Change.file(child_path, source_id=child_id))
        elif drive_file.is_downloadable:
            changes.append(
                Change.file(
                    path,
                    size=drive_file.size,
                    revision=drive_file.md5_checksum,
                    source_id=drive_file.id,
                )
            )
        else:
            logger.debug(f"Skipping {drive_file.mime_type} at {path}")

        return changes

    def _lookup(self, file_id: str) -> DriveFile | None:
        try:
            return self.client.get_file_metadata(file_id)
        except HttpError as e:
            logger.warning(f"Could not fetch metadata for {file_id}: {e}")
            return None

    def _read(self, path: str, source_id: str | None = None) -> bytes:
        file_id = source_id or self.index.file_id(path)
        if file_id is None:
            raise UnknownPathError(f"No Drive file known at {path}")
        return self.client.download_file(file_id)
