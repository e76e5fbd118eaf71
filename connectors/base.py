"""
BaseConnector — abstract interface for the OAuth2 token endpoint of one
vendor.

Connectors only know how to turn a refresh token into a fresh access
token.  Caching, persistence and retry policy live in ``credentials``.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Any, Dict, Optional

import httpx

from config.settings import config
from credentials.errors import OAuthValidationError
from credentials.models import TokenRefreshRequest, TokenRefreshResult
from utils.client_pool import ClientPool

logger = logging.getLogger(__name__)


def http_client_kwargs() -> Dict[str, Any]:
    timeout = config.oauth_http_timeout
    return {"timeout": timeout} if timeout is not None else {}


class BaseConnector(ABC):
    """Abstract base for all OAuth2 connectors."""

    def __init__(self, client_pool: Optional[ClientPool] = None) -> None:
        self.client_pool = client_pool

    # ── Identity ────────────────────────────────────────────────────────
    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Unique slug: 'discord', 'slack', 'gmail', 'dropbox'."""
        ...

    @property
    @abstractmethod
    def display_name(self) -> str:
        ...

    @property
    @abstractmethod
    def token_url(self) -> str:
        """OAuth2 token endpoint used for the refresh grant."""
        ...

    @property
    def default_token_ttl(self) -> Optional[timedelta]:
        """
        Lifetime assumed for a stored token that has no recorded expiry.
        ``None`` means such tokens are cached without an expiry.
        """
        return None

    # ── Configuration ───────────────────────────────────────────────────

    def client_credentials(self) -> tuple[str, str]:
        """App-level client id/secret; instances may carry their own."""
        return config.get_client_credentials(self.provider_name)

    def is_configured(self) -> bool:
        client_id, client_secret = self.client_credentials()
        return bool(client_id and client_secret)

    # ── Refresh grant ───────────────────────────────────────────────────

    def _refresh_form(self, request: TokenRefreshRequest) -> Dict[str, str]:
        return {
            "grant_type": "refresh_token",
            "refresh_token": request.refresh_token,
            "client_id": request.client_id,
            "client_secret": request.client_secret,
        }

    def _parse_token_response(self, data: Dict[str, Any], request: TokenRefreshRequest) -> TokenRefreshResult:
        return TokenRefreshResult(
            access_token=data["access_token"],
            # Providers that do not rotate refresh tokens omit the field.
            refresh_token=data.get("refresh_token") or request.refresh_token,
            expires_in=int(data.get("expires_in") or 3600),
            token_type=data.get("token_type") or "Bearer",
            scope=data.get("scope"),
        )

    async def _post_token_request(self, form: Dict[str, str]) -> Dict[str, Any]:
        if self.client_pool is not None:
            return await self._send(self.client_pool.get(self.provider_name), form)
        async with httpx.AsyncClient(**http_client_kwargs()) as client:
            return await self._send(client, form)

    async def _send(self, client: httpx.AsyncClient, form: Dict[str, str]) -> Dict[str, Any]:
        resp = await client.post(
            self.token_url,
            data=form,
            headers={"Accept": "application/json"},
        )
        resp.raise_for_status()
        return resp.json()

    async def refresh_access_token(self, request: TokenRefreshRequest) -> TokenRefreshResult:
        """
        Exchange a refresh token for a new access token.

        HTTP failures surface as ``httpx`` exceptions; callers classify
        them with ``credentials.errors.classify_oauth_error``.
        """
        if not request.client_id or not request.client_secret:
            raise OAuthValidationError(f"Missing client credentials for {self.display_name} token refresh")

        logger.info("Refreshing %s OAuth token", self.display_name)
        data = await self._post_token_request(self._refresh_form(request))
        return self._parse_token_response(data, request)
