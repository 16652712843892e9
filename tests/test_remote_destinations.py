"""Unit tests for the HTTP-backed destinations (no network access)"""

import json
import time
from datetime import datetime

import pytest

from distributor.destinations import build_destinations
from distributor.destinations.base import UploadMetadata
from distributor.destinations.google_drive import GoogleDriveDestination
from distributor.destinations.google_photos import GooglePhotosDestination
from distributor.destinations.local import LocalDestination
from distributor.destinations.pentaract import PentaractDestination
from distributor.errors import AuthError, ConfigurationError, UploadError
from distributor.models.settings import (
    DistributorSettings,
    GoogleDriveConfig,
    GooglePhotosConfig,
    PentaractConfig,
)


class FakeResponse:
    def __init__(self, status=200, body=None):
        self.status = status
        self.body = body if body is not None else {}

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def json(self, content_type=None):
        if isinstance(self.body, str):
            return json.loads(self.body)
        return self.body

    async def text(self):
        return self.body if isinstance(self.body, str) else json.dumps(self.body)


class FakeSession:
    """Replays queued responses and records every request"""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []
        self.closed = False

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        return self.responses.pop(0)

    def post(self, url, **kwargs):
        return self.request("POST", url, **kwargs)

    async def close(self):
        self.closed = True


@pytest.fixture
def metadata():
    return UploadMetadata(
        received_id="recv-1",
        original_filename="IMG_0001.JPG",
        date=datetime(2024, 1, 19, 10, 30),
        mime_type="image/jpeg",
        extension=".jpg",
    )


def _write_client_secrets(path, data=None):
    path.write_text(json.dumps(data or {"installed": {"client_id": "cid", "client_secret": "csecret"}}))
    return path


class TestBuildDestinations:
    """Test settings-driven instantiation"""

    def test_defaults_build_local_only(self, app_config):
        destinations = build_destinations(DistributorSettings(), app_config)

        assert [type(d) for d in destinations] == [LocalDestination]

    def test_enabled_remote_destinations(self, app_config, database):
        settings = DistributorSettings.from_document(
            {
                "destinations": {
                    "local": {"enabled": False},
                    "googleDrive": {"enabled": True},
                    "pentaract": {"enabled": True, "email": "me@example.com", "password": "pw"},
                }
            }
        )

        destinations = build_destinations(settings, app_config, database)

        assert [d.get_name() for d in destinations] == ["google-drive", "pentaract"]
        assert all(d.database is database for d in destinations)
        assert destinations[1].refresh_interval_minutes == app_config.token_refresh_interval_minutes
        assert destinations[1].timeout_seconds == app_config.upload_timeout_seconds


class TestGoogleOAuth:
    """Test credential loading and token refresh"""

    @pytest.mark.asyncio
    async def test_missing_credentials_file(self, tmp_path):
        destination = GoogleDriveDestination(
            GoogleDriveConfig(
                enabled=True,
                credentials_path=str(tmp_path / "missing.json"),
                token_path=str(tmp_path / "token.json"),
            )
        )
        with pytest.raises(ConfigurationError):
            await destination.initialize()

    @pytest.mark.asyncio
    async def test_missing_paths(self):
        destination = GooglePhotosDestination(GooglePhotosConfig(enabled=True, credentials_path=None))
        with pytest.raises(ConfigurationError):
            await destination.initialize()

    @pytest.mark.asyncio
    async def test_service_account_rejected(self, tmp_path):
        credentials = _write_client_secrets(tmp_path / "creds.json", {"type": "service_account", "client_email": "x"})
        destination = GoogleDriveDestination(
            GoogleDriveConfig(enabled=True, credentials_path=str(credentials), token_path=str(tmp_path / "t.json"))
        )
        with pytest.raises(ConfigurationError, match="service account"):
            await destination.initialize()

    @pytest.mark.asyncio
    async def test_missing_token(self, tmp_path):
        credentials = _write_client_secrets(tmp_path / "creds.json")
        destination = GoogleDriveDestination(
            GoogleDriveConfig(enabled=True, credentials_path=str(credentials), token_path=str(tmp_path / "t.json"))
        )
        with pytest.raises(ConfigurationError, match="No token"):
            await destination.initialize()

    def test_stored_tokens_override_token_file(self, tmp_path, database):
        token_file = tmp_path / "token.json"
        token_file.write_text(json.dumps({"refresh_token": "from-file", "access_token": "old"}))
        database.put_setting("token:google-photos", {"access_token": "from-store"})
        destination = GooglePhotosDestination(
            GooglePhotosConfig(enabled=True, token_path=str(token_file)), database
        )

        tokens = destination._load_tokens()

        assert tokens == {"refresh_token": "from-file", "access_token": "from-store"}

    @pytest.mark.asyncio
    async def test_refresh_persists_to_store_and_file(self, tmp_path, database):
        token_file = tmp_path / "token.json"
        destination = GoogleDriveDestination(
            GoogleDriveConfig(enabled=True, token_path=str(token_file)), database
        )
        destination._client_id, destination._client_secret = "cid", "csecret"
        destination._tokens = {"refresh_token": "r1"}
        session = FakeSession(FakeResponse(200, {"access_token": "a2", "expires_in": 3600}))
        destination._session = session

        await destination.refresh_credentials()

        method, url, kwargs = session.calls[0]
        assert kwargs["data"]["grant_type"] == "refresh_token"
        assert kwargs["data"]["refresh_token"] == "r1"
        stored = database.get_setting("token:google-drive")
        assert stored["access_token"] == "a2"
        assert stored["refresh_token"] == "r1"
        assert stored["expiry_date"] > int(time.time() * 1000)
        assert json.loads(token_file.read_text())["access_token"] == "a2"
        assert destination._token_expiring() is False

    @pytest.mark.asyncio
    async def test_rejected_refresh(self, tmp_path):
        destination = GoogleDriveDestination(GoogleDriveConfig(enabled=True, token_path=str(tmp_path / "t.json")))
        destination._tokens = {"refresh_token": "revoked"}
        destination._session = FakeSession(FakeResponse(400, {"error": "invalid_grant"}))

        with pytest.raises(AuthError, match="invalid_grant"):
            await destination.refresh_credentials()

    @pytest.mark.asyncio
    async def test_not_ready_without_tokens(self):
        destination = GoogleDriveDestination(GoogleDriveConfig(enabled=True))
        assert await destination.is_ready() is False

    def test_token_expiry_margin(self):
        destination = GoogleDriveDestination(GoogleDriveConfig(enabled=True))
        now_ms = int(time.time() * 1000)

        destination._tokens = {"access_token": "a", "expiry_date": now_ms + 30_000}
        assert destination._token_expiring() is True

        destination._tokens = {"access_token": "a", "expiry_date": now_ms + 600_000}
        assert destination._token_expiring() is False


class TestGooglePhotos:
    @pytest.mark.asyncio
    async def test_upload_two_steps(self, sample_file, metadata):
        destination = GooglePhotosDestination(GooglePhotosConfig(enabled=True))
        destination._tokens = {"access_token": "a"}
        session = FakeSession(
            FakeResponse(200, "upload-token-1"),
            FakeResponse(
                200,
                {
                    "newMediaItemResults": [
                        {
                            "status": {"message": "Success"},
                            "mediaItem": {"id": "m1", "productUrl": "https://photos/m1", "filename": "IMG_0001.JPG"},
                        }
                    ]
                },
            ),
        )
        destination._session = session

        result = await destination.upload(sample_file, metadata)

        assert result == {"mediaItemId": "m1", "productUrl": "https://photos/m1", "filename": "IMG_0001.JPG"}
        assert session.calls[0][2]["headers"]["X-Goog-Upload-Protocol"] == "raw"
        assert session.calls[0][2]["headers"]["Authorization"] == "Bearer a"
        batch = session.calls[1][2]["json"]["newMediaItems"][0]
        assert batch["simpleMediaItem"]["uploadToken"] == "upload-token-1"

    @pytest.mark.asyncio
    async def test_media_item_error_status(self, sample_file, metadata):
        destination = GooglePhotosDestination(GooglePhotosConfig(enabled=True))
        destination._tokens = {"access_token": "a"}
        destination._session = FakeSession(
            FakeResponse(200, "upload-token-1"),
            FakeResponse(200, {"newMediaItemResults": [{"status": {"code": 3, "message": "bad"}}]}),
        )

        with pytest.raises(UploadError, match="bad"):
            await destination.upload(sample_file, metadata)


class TestGoogleDrive:
    @pytest.mark.asyncio
    async def test_upload_creates_date_folders_once(self, sample_file, metadata):
        destination = GoogleDriveDestination(GoogleDriveConfig(enabled=True, root_folder_id="root-1"))
        destination._tokens = {"access_token": "a"}
        session = FakeSession(
            FakeResponse(200, {"files": [{"id": "y2024"}]}),
            FakeResponse(200, {"files": []}),
            FakeResponse(200, {"id": "d0119"}),
            FakeResponse(200, {"id": "f1", "name": "IMG_0001.JPG", "webViewLink": "https://drive/f1"}),
            FakeResponse(200, {"id": "f2", "name": "IMG_0001.JPG"}),
        )
        destination._session = session

        first = await destination.upload(sample_file, metadata)
        second = await destination.upload(sample_file, metadata)

        assert first["fileId"] == "f1"
        assert first["folderId"] == "d0119"
        assert first["folderPath"] == "2024/2024-01-19"
        assert first["webViewLink"] == "https://drive/f1"
        assert second["fileId"] == "f2"
        assert len(session.calls) == 5  # folder lookups cached

    @pytest.mark.asyncio
    async def test_upload_http_error(self, sample_file, metadata):
        destination = GoogleDriveDestination(GoogleDriveConfig(enabled=True, root_folder_id="root-1"))
        destination._tokens = {"access_token": "a"}
        destination._session = FakeSession(FakeResponse(500, "backend error"))

        with pytest.raises(UploadError, match="HTTP 500"):
            await destination.upload(sample_file, metadata)


class TestPentaract:
    """Test login, storage bootstrap, retry on 401 and upload"""

    def _destination(self, database=None, **overrides):
        config = PentaractConfig(
            enabled=True,
            api_url="http://pentaract.test/api/",
            email="me@example.com",
            password="pw",
            **overrides,
        )
        return PentaractDestination(config, database)

    @pytest.mark.asyncio
    async def test_missing_credentials(self):
        destination = PentaractDestination(PentaractConfig(enabled=True))
        with pytest.raises(ConfigurationError, match="credentials"):
            await destination.initialize()

    @pytest.mark.asyncio
    async def test_initialize_logs_in_and_creates_storage(self, database):
        destination = self._destination(database)
        session = FakeSession(
            FakeResponse(200, {"access_token": "a1", "refresh_token": "r1"}),
            FakeResponse(200, [{"id": 1, "name": "Other"}]),
            FakeResponse(201, {"id": 7, "name": "Photo-Distributor"}),
        )
        destination._session = session

        await destination.initialize()
        try:
            assert destination.storage_id == "7"
            assert session.calls[0][1] == "http://pentaract.test/api/auth/login"
            assert session.calls[2][2]["json"] == {"name": "Photo-Distributor"}
            assert database.get_setting("token:pentaract") == {"refresh_token": "r1"}
        finally:
            await destination.cleanup()
        assert session.closed is True

    @pytest.mark.asyncio
    async def test_unauthorized_triggers_single_refresh(self):
        destination = self._destination()
        destination.access_token = "stale"
        destination.refresh_token = "r1"
        session = FakeSession(
            FakeResponse(401, "expired"),
            FakeResponse(200, {"access_token": "fresh"}),
            FakeResponse(200, [{"id": 7, "name": "Photo-Distributor"}]),
        )
        destination._session = session

        assert await destination.is_ready() is True
        assert session.calls[1][1] == "http://pentaract.test/api/auth/refresh"
        assert session.calls[2][2]["headers"]["Authorization"] == "Bearer fresh"

    @pytest.mark.asyncio
    async def test_upload(self, sample_file, metadata):
        destination = self._destination()
        destination.access_token = "a1"
        destination.storage_id = "7"
        session = FakeSession(FakeResponse(201, "created"))
        destination._session = session

        result = await destination.upload(sample_file, metadata)

        assert result == {
            "path": "2024/2024-01-19/IMG_0001.JPG",
            "size": sample_file.stat().st_size,
            "storageId": "7",
        }
        assert session.calls[0][1] == "http://pentaract.test/api/files/upload"

    @pytest.mark.asyncio
    async def test_upload_failure_status(self, sample_file, metadata):
        destination = self._destination()
        destination.access_token = "a1"
        destination.storage_id = "7"
        destination._session = FakeSession(FakeResponse(413, "too large"))

        with pytest.raises(UploadError, match="413"):
            await destination.upload(sample_file, metadata)

    @pytest.mark.asyncio
    async def test_rejected_login_makes_upload_fail(self, sample_file, metadata):
        destination = self._destination()
        destination.storage_id = "7"
        destination._session = FakeSession(FakeResponse(403, "bad password"))

        with pytest.raises(UploadError, match="Pentaract unavailable"):
            await destination.upload(sample_file, metadata)

    @pytest.mark.asyncio
    async def test_non_json_success_body_is_an_upload_error(self):
        destination = self._destination()
        destination.access_token = "a1"
        destination._session = FakeSession(FakeResponse(200, "<html>maintenance</html>"))

        with pytest.raises(UploadError, match="non-JSON"):
            await destination._call("GET", "http://pentaract.test/api/storages")
