"""
CredentialStore — the relational source of truth as seen by the cache.

The production implementation is ``database.helpers.SqlCredentialStore``;
tests pass in-memory fakes.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional, Protocol, runtime_checkable

from credentials.models import InstanceCredentials


@runtime_checkable
class CredentialStore(Protocol):
    async def lookup_instance_credentials(
        self, instance_id: str, service_name: str, *, require_completed: bool = True
    ) -> Optional[InstanceCredentials]:
        ...

    async def update_instance_credentials(
        self,
        instance_id: str,
        *,
        access_token: str,
        refresh_token: Optional[str],
        token_expires_at: Optional[datetime],
        scope: Optional[str] = None,
    ) -> None:
        ...

    async def update_oauth_status(
        self,
        instance_id: str,
        *,
        status: str,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        token_expires_at: Optional[datetime] = None,
        scope: Optional[str] = None,
        team_id: Optional[str] = None,
    ) -> None:
        ...

    async def mark_instance_for_reauth(self, instance_id: str, service_name: str, reason: str) -> None:
        ...

    async def log_api_operation(
        self,
        instance_id: str,
        service_name: str,
        operation: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Best-effort; implementations must not raise."""
        ...

    async def update_instance_usage(self, instance_id: str) -> bool:
        ...
