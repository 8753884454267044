"""Tests for the SafeguardClient handle."""

import httpx
import pytest

from conftest import APPLIANCE_URL
from safeguard_access import SafeguardClient
from safeguard_access.access_requests import Bound
from safeguard_access.config import ClientConfig, TOKEN_ENV_VAR, TOKEN_EXPIRES_ENV_VAR
from safeguard_access.errors import AuthenticationError, ConfigurationError
from safeguard_access.session import AuthModality


def _client(appliance) -> SafeguardClient:
    return SafeguardClient(ClientConfig(appliance_url=APPLIANCE_URL), transport=appliance.transport)


class TestConstruction:
    def test_appliance_url_required(self):
        with pytest.raises(ConfigurationError):
            SafeguardClient(ClientConfig())

    def test_bad_appliance_url(self, appliance):
        with pytest.raises(ConfigurationError):
            SafeguardClient(ClientConfig(appliance_url="ftp://pam"), transport=appliance.transport)

    @pytest.mark.asyncio
    async def test_clients_are_independent(self, appliance):
        appliance.add_login()
        async with _client(appliance) as first, _client(appliance) as second:
            await first.login_with_password("admin", "pw")
            assert first.store.get_session_token()
            assert second.store.get_session_token() == ""


class TestValidateToken:
    @pytest.mark.asyncio
    async def test_me(self, appliance):
        appliance.add_login()
        appliance.add_json("GET", "/service/core/v4/me", {"Id": 7, "Name": "admin"})
        async with _client(appliance) as client:
            await client.login_with_password("admin", "pw")
            me = await client.me()
        assert me["Name"] == "admin"
        assert appliance.calls("GET")[0].headers["Authorization"] == "Bearer user-token-0123456789"

    @pytest.mark.asyncio
    async def test_empty_token(self, appliance):
        async with _client(appliance) as client:
            with pytest.raises(AuthenticationError, match="empty"):
                await client.validate_token()
        assert appliance.requests == []

    @pytest.mark.asyncio
    async def test_rejected_token(self, appliance):
        appliance.add_login()
        appliance.add_json("GET", "/service/core/v4/me", {"Message": "Access denied"}, status=401)
        async with _client(appliance) as client:
            await client.login_with_password("admin", "pw")
            with pytest.raises(AuthenticationError) as exc_info:
                await client.validate_token()
        assert exc_info.value.status == 401


class TestExportRestore:
    @pytest.mark.asyncio
    async def test_round_trip(self, appliance, monkeypatch):
        monkeypatch.delenv(TOKEN_ENV_VAR, raising=False)
        monkeypatch.delenv(TOKEN_EXPIRES_ENV_VAR, raising=False)
        appliance.add_login()
        async with _client(appliance) as client:
            await client.login_with_password("admin", "pw")
            client.export_session()

        async with _client(appliance) as other:
            session = other.restore_session()
            assert session.session_token == "user-token-0123456789"
            assert session.modality is None


class TestCheckout:
    @pytest.mark.asyncio
    async def test_bound_request(self, appliance):
        appliance.add_json("GET", "/service/core/v4/AccessRequests/9", {"Id": "9", "State": "RequestAvailable"})
        appliance.add("POST", "/service/core/v4/AccessRequests/9/CheckOutPassword", httpx.Response(200, json="pw!"))
        async with _client(appliance) as client:
            bound = await client.get_access_request("9")
            assert isinstance(bound, Bound)
            assert bound.client is client
            assert await client.check_out_password(bound) == "pw!"


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_refresher_runs_and_stops(self, appliance):
        appliance.add_login(expires_in=3600)
        client = _client(appliance)
        async with client:
            await client.login_with_password("admin", "pw")
            assert client.session.modality is AuthModality.PASSWORD
            task = client._tasks[0]
            assert not task.done()
        assert task.done()
        assert client.http.is_closed

