"""Unit tests for the Google authorization-code flow (no network access)"""

import json
from urllib.parse import parse_qs, urlparse

import pytest
import pytest_asyncio

from distributor.destinations.google_drive import GoogleDriveDestination
from distributor.errors import AuthError, ConfigurationError, NotFoundError
from distributor.models.settings import GoogleDriveConfig
from distributor.services.google_auth import AUTH_URL, GoogleAuthService


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


class FakeSession:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []
        self.closed = False

    def post(self, url, **kwargs):
        self.calls.append((url, kwargs))
        return self.responses.pop(0)

    async def close(self):
        self.closed = True


@pytest.fixture
def google_paths(tmp_path):
    credentials = tmp_path / "drive-credentials.json"
    credentials.write_text(json.dumps({"installed": {"client_id": "cid", "client_secret": "csecret"}}))
    return {"credentials": credentials, "token": tmp_path / "tokens" / "drive-token.json"}


@pytest_asyncio.fixture
async def google_auth(settings_service, database, google_paths):
    await settings_service.update(
        {
            "destinations": {
                "googleDrive": {
                    "credentialsPath": str(google_paths["credentials"]),
                    "tokenPath": str(google_paths["token"]),
                }
            }
        }
    )
    service = GoogleAuthService(settings_service, database)
    yield service
    await service.close()


REDIRECT_URI = "http://localhost:3001/api/auth/google/callback"


class TestStart:
    """Test building the consent URL"""

    @pytest.mark.asyncio
    async def test_consent_url(self, google_auth):
        auth_url = await google_auth.start("drive", REDIRECT_URI)

        parsed = urlparse(auth_url)
        assert auth_url.startswith(AUTH_URL)
        query = {key: values[0] for key, values in parse_qs(parsed.query).items()}
        assert query["client_id"] == "cid"
        assert query["redirect_uri"] == REDIRECT_URI
        assert query["scope"] == "https://www.googleapis.com/auth/drive.file"
        assert query["access_type"] == "offline"
        assert query["prompt"] == "consent"
        assert query["state"].startswith("drive.")

    @pytest.mark.asyncio
    async def test_unknown_service(self, google_auth):
        with pytest.raises(NotFoundError):
            await google_auth.start("dropbox", REDIRECT_URI)

    @pytest.mark.asyncio
    async def test_missing_credentials_file(self, google_auth, settings_service, tmp_path):
        await settings_service.update(
            {"destinations": {"googlePhotos": {"credentialsPath": str(tmp_path / "missing.json")}}}
        )

        with pytest.raises(ConfigurationError, match="not found"):
            await google_auth.start("photos", REDIRECT_URI)


class TestComplete:
    """Test the code exchange and token storage"""

    async def _state(self, google_auth):
        auth_url = await google_auth.start("drive", REDIRECT_URI)
        return parse_qs(urlparse(auth_url).query)["state"][0]

    @pytest.mark.asyncio
    async def test_tokens_stored_for_the_destination(self, google_auth, database, google_paths):
        state = await self._state(google_auth)
        session = FakeSession(
            FakeResponse(200, {"access_token": "a1", "refresh_token": "r1", "expires_in": 3600, "token_type": "Bearer"})
        )
        google_auth._session = session

        assert await google_auth.complete(state, "code-1") == "drive"

        _, kwargs = session.calls[0]
        assert kwargs["data"]["grant_type"] == "authorization_code"
        assert kwargs["data"]["code"] == "code-1"
        assert kwargs["data"]["redirect_uri"] == REDIRECT_URI
        stored = database.get_setting("token:google-drive")
        assert stored["refresh_token"] == "r1"
        assert stored["access_token"] == "a1"
        assert json.loads(google_paths["token"].read_text())["refresh_token"] == "r1"

        # The destination now finds its token
        destination = GoogleDriveDestination(
            GoogleDriveConfig(enabled=True, token_path=str(google_paths["token"])), database
        )
        assert destination._load_tokens()["refresh_token"] == "r1"

        status = await google_auth.get_status()
        assert status["drive"] == {"enabled": False, "hasCredentials": True, "hasToken": True, "authenticated": True}

    @pytest.mark.asyncio
    async def test_state_is_single_use(self, google_auth):
        state = await self._state(google_auth)
        google_auth._session = FakeSession(FakeResponse(200, {"access_token": "a1", "refresh_token": "r1"}))
        await google_auth.complete(state, "code-1")

        with pytest.raises(AuthError, match="expired"):
            await google_auth.complete(state, "code-1")

    @pytest.mark.asyncio
    async def test_repeated_consent_keeps_refresh_token(self, google_auth, database):
        database.put_setting("token:google-drive", {"refresh_token": "r-old", "access_token": "stale"})
        state = await self._state(google_auth)
        google_auth._session = FakeSession(FakeResponse(200, {"access_token": "a2", "expires_in": 3600}))

        await google_auth.complete(state, "code-2")

        stored = database.get_setting("token:google-drive")
        assert stored["refresh_token"] == "r-old"
        assert stored["access_token"] == "a2"

    @pytest.mark.asyncio
    async def test_rejected_exchange(self, google_auth, database):
        state = await self._state(google_auth)
        google_auth._session = FakeSession(FakeResponse(400, {"error": "invalid_grant"}))

        with pytest.raises(AuthError, match="invalid_grant"):
            await google_auth.complete(state, "bad-code")
        assert database.get_setting("token:google-drive") is None

    @pytest.mark.asyncio
    async def test_unknown_state(self, google_auth):
        with pytest.raises(AuthError):
            await google_auth.complete("drive.forged", "code-1")

    @pytest.mark.asyncio
    async def test_expired_state(self, google_auth):
        state = await self._state(google_auth)
        google_auth._pending[state].created_at -= 3600

        with pytest.raises(AuthError, match="expired"):
            await google_auth.complete(state, "code-1")


@pytest.mark.asyncio
async def test_status_without_files(settings_service, database, tmp_path):
    await settings_service.update(
        {
            "destinations": {
                "googleDrive": {"credentialsPath": str(tmp_path / "a.json"), "tokenPath": str(tmp_path / "b.json")},
                "googlePhotos": {"credentialsPath": str(tmp_path / "c.json"), "tokenPath": str(tmp_path / "d.json")},
            }
        }
    )

    status = await GoogleAuthService(settings_service, database).get_status()

    assert set(status) == {"drive", "photos"}
    assert not any(status["drive"].values())
    assert status["photos"]["hasToken"] is False
