from contextlib import contextmanager
from google.auth.exceptions import GoogleAuthError
from google.oauth2 import service_account
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaFileUpload, MediaIoBaseDownload
from httplib2 import HttpLib2Error
from streamvault.core.errors import StreamVaultException, DriveError, RateLimited, BlobNotFound
from typing import Optional, Tuple
from uuid import UUID
import json
import logging

logger = logging.getLogger(__name__)

RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded", "sharingRateLimitExceeded"}

# failures below the http layer: resets, timeouts, token refresh
TRANSPORT_ERRORS = (OSError, HttpLib2Error, GoogleAuthError)


def _error_reasons(error: HttpError) -> set:
    """pull the `reason` fields out of a drive error payload"""
    try:
        payload = json.loads(error.content.decode("utf-8") if isinstance(error.content, bytes) else error.content)
    except (ValueError, AttributeError, TypeError):
        return set()
    errors = payload.get("error", {}).get("errors", []) if isinstance(payload, dict) else []
    return {e.get("reason") for e in errors if isinstance(e, dict) and e.get("reason")}


def translate_http_error(error: HttpError, remote_id: Optional[str] = None) -> StreamVaultException:
    """map a drive HttpError onto the streamvault error taxonomy"""
    status = getattr(error.resp, "status", None)
    try:
        status = int(status)
    except (TypeError, ValueError):
        status = None

    if status == 429 or (status == 403 and _error_reasons(error) & RATE_LIMIT_REASONS):
        return RateLimited(f"drive rate limited ({status})")
    if status == 404:
        return BlobNotFound(f"remote object not found: {remote_id}")
    return DriveError(f"drive error {status}: {error}")


def public_url(remote_id: str) -> str:
    """direct link for an object shared with anyone (see make_public)"""
    return f"https://drive.google.com/uc?export=download&id={remote_id}"


@contextmanager
def drive_errors(remote_id: Optional[str] = None):
    """every failure of a drive call leaves as a streamvault error"""
    try:
        yield
    except HttpError as e:
        raise translate_http_error(e, remote_id) from e
    except TRANSPORT_ERRORS as e:
        raise DriveError(f"drive transport error: {e.__class__.__name__}: {e}") from e


class DriveAccountClient:
    """one service-account identity against the drive api"""

    SCOPES = ['https://www.googleapis.com/auth/drive']

    def __init__(self, account_id: UUID, email: str, service):
        self.account_id = account_id
        self.email = email
        self.service = service

    @classmethod
    def from_credentials(cls, account_id: UUID, email: str, credentials_info: dict) -> "DriveAccountClient":
        credentials = service_account.Credentials.from_service_account_info(
            credentials_info,
            scopes=cls.SCOPES
        )
        service = build('drive', 'v3', credentials=credentials, cache_discovery=False)
        return cls(account_id, email, service)

    def upload(self, local_path: str, media_type: str, name: str) -> str:
        """resumable upload, returns the new drive file id"""
        with drive_errors():
            media = MediaFileUpload(local_path, mimetype=media_type, resumable=True)
            file = self.service.files().create(
                body={'name': name},
                media_body=media,
                fields='id'
            ).execute()
        logger.info(f"[{self.email}] uploaded {name} -> {file['id']}")
        return file['id']

    def make_public(self, remote_id: str) -> None:
        """anyone with the id can fetch the object"""
        with drive_errors(remote_id):
            self.service.permissions().create(
                fileId=remote_id,
                body={'role': 'reader', 'type': 'anyone'}
            ).execute()

    def download(self, remote_id: str, dest_path: str) -> str:
        with drive_errors(remote_id):
            request = self.service.files().get_media(fileId=remote_id)
            with open(dest_path, 'wb') as f:
                downloader = MediaIoBaseDownload(f, request)
                done = False
                while not done:
                    status, done = downloader.next_chunk()
                    if status:
                        logger.debug(f"[{self.email}] download {remote_id}: {int(status.progress() * 100)}%")
        return dest_path

    def delete(self, remote_id: str) -> None:
        with drive_errors(remote_id):
            self.service.files().delete(fileId=remote_id).execute()

    def get_metadata(self, remote_id: str) -> dict:
        with drive_errors(remote_id):
            return self.service.files().get(
                fileId=remote_id,
                fields='id, name, mimeType, size'
            ).execute()

    def get_quota(self) -> Tuple[int, Optional[int]]:
        """returns (usage, limit) in bytes, limit is None for unlimited accounts"""
        with drive_errors():
            about = self.service.about().get(fields='storageQuota').execute()
        quota = about.get('storageQuota', {})
        usage = int(quota.get('usage', 0) or 0)
        limit = quota.get('limit')
        return usage, int(limit) if limit not in (None, '', 'UNLIMITED') else None
