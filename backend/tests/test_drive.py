from unittest.mock import MagicMock
from uuid import uuid4

import httplib2
import pytest
from google.auth.exceptions import RefreshError
from googleapiclient.errors import HttpError

from streamvault.core.errors import BlobNotFound, DriveError, RateLimited
from streamvault.services.drive import DriveAccountClient, public_url


def _client(service):
    return DriveAccountClient(uuid4(), "svc@pool-test.iam.gserviceaccount.com", service)


def _http_error(status, reason=None):
    content = b'{"error": {"errors": [{"reason": "%s"}]}}' % (reason or "backendError").encode()
    return HttpError(httplib2.Response({"status": status}), content)


def test_connection_reset_becomes_a_drive_error():
    service = MagicMock()
    service.permissions().create().execute.side_effect = ConnectionResetError(104, "Connection reset by peer")

    with pytest.raises(DriveError) as excinfo:
        _client(service).make_public("abc123")

    assert "ConnectionResetError" in excinfo.value.message


def test_token_refresh_failure_becomes_a_drive_error():
    service = MagicMock()
    service.files().delete().execute.side_effect = RefreshError("invalid_grant")

    with pytest.raises(DriveError):
        _client(service).delete("abc123")


def test_timeout_while_reading_quota_becomes_a_drive_error():
    service = MagicMock()
    service.about().get().execute.side_effect = TimeoutError("timed out")

    with pytest.raises(DriveError):
        _client(service).get_quota()


def test_http_errors_are_translated():
    service = MagicMock()
    files = service.files()
    files.get().execute.side_effect = [
        _http_error(404),
        _http_error(403, "userRateLimitExceeded"),
        _http_error(500),
    ]
    client = _client(service)

    with pytest.raises(BlobNotFound):
        client.get_metadata("abc123")
    with pytest.raises(RateLimited):
        client.get_metadata("abc123")
    with pytest.raises(DriveError) as excinfo:
        client.get_metadata("abc123")
    assert not isinstance(excinfo.value, RateLimited)


def test_quota_limit_is_optional():
    service = MagicMock()
    service.about().get().execute.return_value = {"storageQuota": {"usage": "2048"}}

    assert _client(service).get_quota() == (2048, None)


def test_public_url_points_at_the_download_endpoint():
    assert public_url("abc123") == "https://drive.google.com/uc?export=download&id=abc123"
