"""
DropboxConnector — OAuth2 refresh grant for Dropbox.

Dropbox returns short-lived access tokens (about four hours) and does not
issue a new refresh token; errors come back as
``{"error": {".tag": "invalid_grant"}}`` or a plain OAuth2 body.
"""

from __future__ import annotations

import logging

from connectors.base import BaseConnector

logger = logging.getLogger(__name__)

_DROPBOX_TOKEN_URL = "https://api.dropboxapi.com/oauth2/token"


class DropboxConnector(BaseConnector):
    """OAuth2 connector for Dropbox."""

    @property
    def provider_name(self) -> str:
        return "dropbox"

    @property
    def display_name(self) -> str:
        return "Dropbox"

    @property
    def token_url(self) -> str:
        return _DROPBOX_TOKEN_URL
