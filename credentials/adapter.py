"""
ServiceAdapter — the vendor-specific knobs the generic credential cache,
watcher and sync need: how to refresh, which client credentials to use,
and what expiry to assume for tokens stored without one.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from credentials.errors import OAuthValidationError
from credentials.models import InstanceCredentials, TokenRefreshRequest, TokenRefreshResult

RefreshFn = Callable[[TokenRefreshRequest], Awaitable[TokenRefreshResult]]


@dataclass
class ServiceAdapter:
    service_name: str
    refresh: RefreshFn
    default_token_ttl: Optional[timedelta] = None
    default_client_id: str = ""
    default_client_secret: str = ""

    @classmethod
    def from_connector(cls, connector) -> "ServiceAdapter":
        """Build an adapter around a ``connectors.base.BaseConnector``."""
        client_id, client_secret = connector.client_credentials()
        return cls(
            service_name=connector.provider_name,
            refresh=connector.refresh_access_token,
            default_token_ttl=connector.default_token_ttl,
            default_client_id=client_id,
            default_client_secret=client_secret,
        )

    def build_refresh_request(self, instance: InstanceCredentials) -> TokenRefreshRequest:
        """Instance-level client credentials win over the app-level defaults."""
        client_id = instance.client_id or self.default_client_id
        client_secret = instance.client_secret or self.default_client_secret
        if not client_id or not client_secret:
            raise OAuthValidationError(f"Missing client credentials for {self.service_name} token refresh")
        return TokenRefreshRequest(
            refresh_token=instance.refresh_token or "",
            client_id=client_id,
            client_secret=client_secret,
        )

    def resolve_expiry(self, expires_at: Optional[datetime], now: datetime) -> Optional[datetime]:
        if expires_at is not None:
            return expires_at
        if self.default_token_ttl is not None:
            return now + self.default_token_ttl
        return None
