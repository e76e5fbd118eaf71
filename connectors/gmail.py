"""
GmailConnector — Google OAuth2 refresh grant for Gmail instances.

Google never rotates the refresh token on refresh; the stored one keeps
working until the user revokes access.
"""

from __future__ import annotations

import logging

from connectors.base import BaseConnector

logger = logging.getLogger(__name__)

_GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"


class GmailConnector(BaseConnector):
    """OAuth2 connector for Gmail."""

    @property
    def provider_name(self) -> str:
        return "gmail"

    @property
    def display_name(self) -> str:
        return "Gmail"

    @property
    def token_url(self) -> str:
        return _GOOGLE_TOKEN_URL
