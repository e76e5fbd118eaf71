"""
DiscordConnector — OAuth2 refresh grant against Discord's token endpoint.
"""

from __future__ import annotations

import logging

from connectors.base import BaseConnector

logger = logging.getLogger(__name__)

_DISCORD_TOKEN_URL = "https://discord.com/api/oauth2/token"


class DiscordConnector(BaseConnector):
    """OAuth2 connector for Discord."""

    @property
    def provider_name(self) -> str:
        return "discord"

    @property
    def display_name(self) -> str:
        return "Discord"

    @property
    def token_url(self) -> str:
        return _DISCORD_TOKEN_URL
