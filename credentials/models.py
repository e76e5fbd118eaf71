"""
Data types shared by the credential cache, watcher and sync.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class CachedCredential:
    """One cached OAuth token pair for an instance."""

    bearer_token: Optional[str]
    refresh_token: Optional[str]
    user_id: Optional[str]
    expires_at: Optional[datetime] = None
    team_id: Optional[str] = None
    token_type: str = "Bearer"
    scope: Optional[str] = None
    status: Optional[str] = None
    refresh_attempts: int = 0
    cached_at: datetime = field(default_factory=utcnow)
    last_used: datetime = field(default_factory=utcnow)
    last_modified: Optional[datetime] = None
    last_refresh_attempt: Optional[datetime] = None
    last_successful_refresh: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at < now

    def expires_within(self, window: timedelta, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at < now + window

    def to_dict(self) -> Dict[str, Any]:
        """Monitoring view — token values are never included."""
        return {
            "user_id": self.user_id,
            "team_id": self.team_id,
            "token_type": self.token_type,
            "scope": self.scope,
            "status": self.status,
            "has_refresh_token": bool(self.refresh_token),
            "refresh_attempts": self.refresh_attempts,
            "expires_at": isoformat(self.expires_at),
            "cached_at": isoformat(self.cached_at),
            "last_used": isoformat(self.last_used),
            "last_modified": isoformat(self.last_modified),
        }


class InstanceCredentials(BaseModel):
    """Joined database view of an instance and its stored OAuth material."""

    instance_id: str
    user_id: str
    service_name: str
    oauth_status: str
    status: str = "active"
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    token_scope: Optional[str] = None
    team_id: Optional[str] = None
    credentials_updated_at: Optional[datetime] = None
    usage_count: int = 0

    def token_needs_refresh(self, window: timedelta, now: Optional[datetime] = None) -> bool:
        """True when the stored access token expires within ``window``."""
        if self.token_expires_at is None:
            return False
        return self.token_expires_at <= (now or utcnow()) + window


class TokenRefreshRequest(BaseModel):
    refresh_token: str
    client_id: str
    client_secret: str


class TokenRefreshResult(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: int = 3600
    token_type: str = "Bearer"
    scope: Optional[str] = None

    def expires_at(self, now: Optional[datetime] = None) -> datetime:
        return (now or utcnow()) + timedelta(seconds=self.expires_in)


# OAuth status values mirrored into cache entries.
STATUS_COMPLETED = "completed"
STATUS_REQUIRES_AUTH = "requires_auth"


def cache_payload(instance: InstanceCredentials, expires_at: Optional[datetime]) -> Dict[str, Any]:
    """Cache ``set`` payload built from a database row."""
    return {
        "bearer_token": instance.access_token,
        "refresh_token": instance.refresh_token,
        "expires_at": expires_at,
        "user_id": instance.user_id,
        "team_id": instance.team_id,
        "scope": instance.token_scope,
        "status": instance.oauth_status,
    }
