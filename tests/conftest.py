"""
Shared fixtures: a controllable clock and an in-memory credential store.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import pytest

from credentials.adapter import ServiceAdapter
from credentials.cache import CredentialCache
from credentials.models import InstanceCredentials, TokenRefreshResult


T0 = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = T0) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


class FakeStore:
    """In-memory CredentialStore that records every write."""

    def __init__(self) -> None:
        self.instances: Dict[str, InstanceCredentials] = {}
        self.credential_updates: List[Tuple[str, Dict[str, Any]]] = []
        self.status_updates: List[Tuple[str, Dict[str, Any]]] = []
        self.reauth_marks: List[Tuple[str, str, str]] = []
        self.audit: List[Tuple[str, str, str, Dict[str, Any]]] = []
        self.usage: List[str] = []
        self.lookup_error: Optional[Exception] = None
        self.update_error: Optional[Exception] = None

    def add(self, instance: InstanceCredentials) -> InstanceCredentials:
        self.instances[instance.instance_id] = instance
        return instance

    async def lookup_instance_credentials(self, instance_id, service_name, *, require_completed=True):
        if self.lookup_error is not None:
            raise self.lookup_error
        instance = self.instances.get(instance_id)
        if instance is None or instance.service_name != service_name:
            return None
        if require_completed and instance.oauth_status != "completed":
            return None
        return instance

    async def update_instance_credentials(self, instance_id, **kwargs):
        if self.update_error is not None:
            raise self.update_error
        self.credential_updates.append((instance_id, kwargs))

    async def update_oauth_status(self, instance_id, **kwargs):
        self.status_updates.append((instance_id, kwargs))

    async def mark_instance_for_reauth(self, instance_id, service_name, reason):
        self.reauth_marks.append((instance_id, service_name, reason))
        instance = self.instances.get(instance_id)
        if instance is not None:
            instance.oauth_status = "requires_auth"
            instance.status = "inactive"

    async def log_api_operation(self, instance_id, service_name, operation, metadata=None):
        self.audit.append((instance_id, service_name, operation, metadata or {}))

    async def update_instance_usage(self, instance_id):
        self.usage.append(instance_id)
        return True

    def operations(self) -> List[str]:
        return [entry[2] for entry in self.audit]


def make_instance(instance_id: str = "inst-1", **overrides: Any) -> InstanceCredentials:
    data: Dict[str, Any] = {
        "instance_id": instance_id,
        "user_id": "user-1",
        "service_name": "discord",
        "oauth_status": "completed",
        "client_id": "client-id",
        "client_secret": "client-secret",
        "access_token": "db-access",
        "refresh_token": "db-refresh",
        "token_expires_at": T0 + timedelta(minutes=2),
        "credentials_updated_at": T0 - timedelta(hours=1),
    }
    data.update(overrides)
    return InstanceCredentials(**data)


def token_data(expires_at: Optional[datetime] = None, **overrides: Any) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "bearer_token": "bearer",
        "refresh_token": "refresh",
        "expires_at": expires_at,
        "user_id": "user-1",
    }
    data.update(overrides)
    return data


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def cache(clock) -> CredentialCache:
    return CredentialCache("discord", clock=clock)


@pytest.fixture
def refresh_calls() -> List[Any]:
    return []


@pytest.fixture
def adapter(refresh_calls) -> ServiceAdapter:
    async def refresh(request):
        refresh_calls.append(request)
        return TokenRefreshResult(access_token="new-access", refresh_token="new-refresh", expires_in=3600)

    return ServiceAdapter(service_name="discord", refresh=refresh)
