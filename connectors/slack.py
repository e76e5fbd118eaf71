"""
SlackConnector — token rotation through ``oauth.v2.access``.

Slack answers every call with HTTP 200 and reports failures in the body as
``{"ok": false, "error": "invalid_refresh_token"}``, so the body has to be
checked before the token fields are read.  Stored Slack tokens frequently
carry no expiry; those are treated as valid for twelve hours.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from connectors.base import BaseConnector
from credentials.errors import error_for_code
from credentials.models import TokenRefreshRequest, TokenRefreshResult

logger = logging.getLogger(__name__)

_SLACK_TOKEN_URL = "https://slack.com/api/oauth.v2.access"
_SLACK_DEFAULT_TTL = timedelta(hours=12)


class SlackConnector(BaseConnector):
    """OAuth2 connector for Slack (rotating tokens)."""

    @property
    def provider_name(self) -> str:
        return "slack"

    @property
    def display_name(self) -> str:
        return "Slack"

    @property
    def token_url(self) -> str:
        return _SLACK_TOKEN_URL

    @property
    def default_token_ttl(self) -> Optional[timedelta]:
        return _SLACK_DEFAULT_TTL

    def _parse_token_response(self, data: Dict[str, Any], request: TokenRefreshRequest) -> TokenRefreshResult:
        if not data.get("ok", False):
            code = str(data.get("error") or "unknown_error")
            logger.warning("Slack token refresh rejected: %s", code)
            raise error_for_code(code, f"Slack token refresh failed: {code}")

        # Bot tokens sit at the top level, user tokens under authed_user.
        token_source = data if data.get("access_token") else data.get("authed_user") or {}
        return TokenRefreshResult(
            access_token=token_source["access_token"],
            refresh_token=token_source.get("refresh_token") or request.refresh_token,
            expires_in=int(token_source.get("expires_in") or _SLACK_DEFAULT_TTL.total_seconds()),
            token_type=token_source.get("token_type") or "Bearer",
            scope=token_source.get("scope"),
        )
