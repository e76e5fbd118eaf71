"""
Tests for the vendor OAuth connectors and the connector registry.
"""

from datetime import timedelta
from unittest.mock import patch
from urllib.parse import parse_qs

import httpx
import pytest

from config.settings import config
from connectors.discord import DiscordConnector
from connectors.dropbox import DropboxConnector
from connectors.gmail import GmailConnector
from connectors.registry import ConnectorRegistry
from connectors.slack import SlackConnector
from credentials.adapter import ServiceAdapter
from credentials.errors import InvalidTokenError, OAuthValidationError, classify_oauth_error
from credentials.models import TokenRefreshRequest

_RealAsyncClient = httpx.AsyncClient


def _mock_client(handler, seen=None):
    def factory(**kwargs):
        def recording_handler(request: httpx.Request) -> httpx.Response:
            if seen is not None:
                seen.append(request)
            return handler(request)

        return _RealAsyncClient(transport=httpx.MockTransport(recording_handler), **kwargs)

    return patch("connectors.base.httpx.AsyncClient", side_effect=factory)


def _request() -> TokenRefreshRequest:
    return TokenRefreshRequest(refresh_token="old-refresh", client_id="cid", client_secret="secret")


class TestRefreshGrant:
    @pytest.mark.asyncio
    async def test_discord_posts_refresh_form(self):
        seen = []

        def handler(request):
            return httpx.Response(
                200,
                json={
                    "access_token": "new",
                    "refresh_token": "rotated",
                    "expires_in": 604800,
                    "token_type": "Bearer",
                    "scope": "identify guilds",
                },
            )

        with _mock_client(handler, seen):
            result = await DiscordConnector().refresh_access_token(_request())

        assert str(seen[0].url) == "https://discord.com/api/oauth2/token"
        form = parse_qs(seen[0].content.decode())
        assert form["grant_type"] == ["refresh_token"]
        assert form["refresh_token"] == ["old-refresh"]
        assert form["client_id"] == ["cid"]
        assert result.access_token == "new"
        assert result.refresh_token == "rotated"
        assert result.expires_in == 604800
        assert result.scope == "identify guilds"

    @pytest.mark.asyncio
    async def test_non_rotating_provider_keeps_refresh_token(self):
        def handler(request):
            return httpx.Response(200, json={"access_token": "new", "expires_in": 14400})

        with _mock_client(handler):
            result = await DropboxConnector().refresh_access_token(_request())

        assert result.refresh_token == "old-refresh"
        assert result.expires_in == 14400

    @pytest.mark.asyncio
    async def test_http_error_propagates_for_classification(self):
        def handler(request):
            return httpx.Response(400, json={"error": "invalid_grant"})

        with _mock_client(handler):
            with pytest.raises(httpx.HTTPStatusError) as excinfo:
                await GmailConnector().refresh_access_token(_request())

        assert isinstance(classify_oauth_error(excinfo.value), InvalidTokenError)

    @pytest.mark.asyncio
    async def test_missing_client_credentials(self):
        request = TokenRefreshRequest(refresh_token="r", client_id="", client_secret="")
        with pytest.raises(OAuthValidationError):
            await DiscordConnector().refresh_access_token(request)


class TestSlack:
    @pytest.mark.asyncio
    async def test_ok_false_body_is_an_error(self):
        def handler(request):
            return httpx.Response(200, json={"ok": False, "error": "invalid_refresh_token"})

        with _mock_client(handler):
            with pytest.raises(InvalidTokenError):
                await SlackConnector().refresh_access_token(_request())

    @pytest.mark.asyncio
    async def test_user_token_under_authed_user(self):
        def handler(request):
            return httpx.Response(
                200,
                json={
                    "ok": True,
                    "authed_user": {
                        "access_token": "xoxe.xoxp-new",
                        "refresh_token": "xoxe-1-rotated",
                        "expires_in": 43200,
                        "token_type": "user",
                    },
                },
            )

        with _mock_client(handler):
            result = await SlackConnector().refresh_access_token(_request())

        assert result.access_token == "xoxe.xoxp-new"
        assert result.refresh_token == "xoxe-1-rotated"
        assert result.expires_in == 43200

    def test_default_ttl(self):
        assert SlackConnector().default_token_ttl == timedelta(hours=12)
        assert DiscordConnector().default_token_ttl is None


class TestRegistry:
    @pytest.fixture(autouse=True)
    def fresh_registry(self):
        ConnectorRegistry._instance = None
        yield
        ConnectorRegistry._instance = None

    def test_discover_registers_enabled_and_configured(self, monkeypatch):
        monkeypatch.setattr(config, "enabled_services", ["discord", "slack", "gmail"])
        monkeypatch.setattr(config, "discord_client_id", "d-id")
        monkeypatch.setattr(config, "discord_client_secret", "d-secret")
        monkeypatch.setattr(config, "slack_client_id", "")
        monkeypatch.setattr(config, "slack_client_secret", "")
        monkeypatch.setattr(config, "google_client_id", "g-id")
        monkeypatch.setattr(config, "google_client_secret", "g-secret")
        monkeypatch.setattr(config, "dropbox_client_id", "x-id")
        monkeypatch.setattr(config, "dropbox_client_secret", "x-secret")

        registry = ConnectorRegistry()
        registry.discover()

        assert sorted(registry.list_configured()) == ["discord", "gmail"]
        assert registry.get("dropbox") is None
        assert ConnectorRegistry() is registry

    def test_adapter_from_connector(self, monkeypatch):
        monkeypatch.setattr(config, "slack_client_id", "s-id")
        monkeypatch.setattr(config, "slack_client_secret", "s-secret")

        adapter = ServiceAdapter.from_connector(SlackConnector())

        assert adapter.service_name == "slack"
        assert adapter.default_client_id == "s-id"
        assert adapter.default_token_ttl == timedelta(hours=12)
