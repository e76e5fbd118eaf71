"""
CredentialService — one per vendor; owns the cache and everything that
works on it.

Built once at startup by ``main.py`` and handed to request handlers by
reference.  ``init()`` starts the watcher, the background database
sync and the idle sweep of the pooled token-endpoint clients;
``shutdown()`` stops them, closes the clients and drops the cached tokens.

Request path
────────────
``get_bearer_token`` is what connector code calls before talking to a
vendor API.  A live cache entry is returned as-is.  On a miss the
instance is loaded from the database; tokens inside the refresh lookahead
are refreshed first (through the same single-flight guard the watcher
uses), then cached.  Instances that cannot be used without the user
redoing the consent flow raise :class:`ReauthenticationRequired`.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

from config.settings import Settings, config
from credentials.adapter import ServiceAdapter
from credentials.cache import CredentialCache
from credentials.errors import InstanceNotFoundError, OAuthError, ReauthenticationRequired
from credentials.metrics import TokenRefreshMetrics
from credentials.models import (
    STATUS_COMPLETED,
    STATUS_REQUIRES_AUTH,
    CachedCredential,
    InstanceCredentials,
    cache_payload,
)
from credentials.refresh import REASON_NO_REFRESH_TOKEN, TokenRefresher
from credentials.stats import get_cache_performance_metrics, get_cache_statistics
from credentials.store import CredentialStore
from credentials.sync import CacheSynchronizer
from credentials.watcher import CredentialWatcher, WatcherConfig
from utils.client_pool import ClientPool
from utils.single_flight import SingleFlight

logger = logging.getLogger(__name__)


class CredentialService:
    def __init__(
        self,
        adapter: ServiceAdapter,
        store: CredentialStore,
        settings: Optional[Settings] = None,
        *,
        cache: Optional[CredentialCache] = None,
        client_pool: Optional[ClientPool] = None,
    ) -> None:
        self.adapter = adapter
        self.store = store
        self.settings = settings or config

        if cache is None:
            cache = CredentialCache(
                adapter.service_name,
                max_refresh_attempts=self.settings.max_refresh_attempts,
                refresh_threshold=timedelta(seconds=self.settings.refresh_threshold_seconds),
            )
        self.cache = cache
        self.metrics = TokenRefreshMetrics(adapter.service_name)
        self.single_flight = SingleFlight()
        self.refresher = TokenRefresher(self.cache, adapter, store, self.metrics, self.single_flight)
        self.watcher = CredentialWatcher(
            self.cache,
            self.refresher,
            store,
            WatcherConfig.from_settings(self.settings),
        )
        self.synchronizer = CacheSynchronizer(self.cache, adapter, store)
        self.client_pool = client_pool

    @property
    def service_name(self) -> str:
        return self.adapter.service_name

    # ── Lifecycle ──────────────────────────────────────────────────────

    async def init(self) -> None:
        """Start background work.  Must run inside the event loop."""
        if self.settings.watcher_enabled:
            self.watcher.start()
        if self.settings.cache_sync_enabled:
            self.synchronizer.start_background_cache_sync(
                interval=float(self.settings.cache_sync_interval_seconds),
                initial_delay=float(self.settings.cache_sync_initial_delay_seconds),
                max_instances=self.settings.cache_sync_max_instances,
                item_delay=self.settings.cache_sync_item_delay_seconds,
            )
        if self.client_pool is not None:
            self.client_pool.start_cleanup(float(self.settings.http_client_cleanup_interval_seconds))
        logger.info("%s credential service initialised", self.service_name)

    async def shutdown(self) -> None:
        if self.watcher.is_running:
            await self.watcher.stop()
        await self.synchronizer.stop()
        if self.client_pool is not None:
            await self.client_pool.aclose()
        self.cache.clear()
        logger.info("%s credential service shut down", self.service_name)

    # ── Request path ───────────────────────────────────────────────────

    async def get_bearer_token(self, instance_id: str) -> CachedCredential:
        cached = self.cache.get(instance_id)
        if cached is not None:
            if cached.status == STATUS_REQUIRES_AUTH:
                raise ReauthenticationRequired(instance_id, STATUS_REQUIRES_AUTH.upper())
            logger.debug("Using cached %s token for instance: %s", self.service_name, instance_id)
            await self.store.update_instance_usage(instance_id)
            return cached

        logger.info("%s cache miss for instance %s, loading from database", self.service_name, instance_id)
        instance = await self.store.lookup_instance_credentials(
            instance_id, self.service_name, require_completed=False
        )
        if instance is None:
            raise InstanceNotFoundError(instance_id, self.service_name)
        if instance.oauth_status != STATUS_COMPLETED:
            raise ReauthenticationRequired(instance_id, instance.oauth_status.upper())

        entry = await self._load_into_cache(instance)
        await self.store.update_instance_usage(instance_id)
        return entry

    async def _load_into_cache(self, instance: InstanceCredentials) -> CachedCredential:
        now = self.cache.now()
        threshold = self.cache.refresh_threshold

        if not instance.access_token:
            if not instance.refresh_token:
                await self.refresher.mark_for_reauth(instance.instance_id, REASON_NO_REFRESH_TOKEN)
                raise ReauthenticationRequired(instance.instance_id, REASON_NO_REFRESH_TOKEN)
            return await self.refresher.refresh(instance, method="request")

        if instance.token_needs_refresh(threshold, now):
            try:
                return await self.refresher.refresh(instance, method="request")
            except OAuthError as exc:
                still_valid = instance.token_expires_at is not None and instance.token_expires_at > now
                if not still_valid:
                    raise
                logger.warning(
                    "Refresh failed for %s instance %s, serving stored token until expiry: %s",
                    self.service_name,
                    instance.instance_id,
                    exc,
                )

        expires_at = self.adapter.resolve_expiry(instance.token_expires_at, now)
        return self.cache.set(instance.instance_id, cache_payload(instance, expires_at))

    async def refresh_instance_token(
        self,
        instance_id: str,
        instance: Optional[InstanceCredentials] = None,
        *,
        method: str = "request",
    ) -> CachedCredential:
        """Refresh now, regardless of expiry."""
        if instance is None:
            instance = await self.store.lookup_instance_credentials(
                instance_id, self.service_name, require_completed=False
            )
            if instance is None:
                raise InstanceNotFoundError(instance_id, self.service_name)
            if instance.oauth_status != STATUS_COMPLETED:
                raise ReauthenticationRequired(instance_id, instance.oauth_status.upper())
        return await self.refresher.refresh(instance, method=method)

    # ── Eviction ───────────────────────────────────────────────────────

    def revoke(self, instance_id: str) -> bool:
        self._forget([instance_id])
        return self.cache.remove(instance_id)

    def deprovision_user(self, user_id: str) -> int:
        self._forget(self._ids_where(lambda c: c.user_id == user_id))
        return self.cache.remove_by_user(user_id)

    def deprovision_team(self, team_id: str) -> int:
        self._forget(self._ids_where(lambda c: c.team_id is not None and c.team_id == team_id))
        return self.cache.remove_by_team(team_id)

    def _ids_where(self, predicate: Callable[[CachedCredential], bool]) -> List[str]:
        ids = []
        for instance_id in self.cache.cached_instance_ids():
            cached = self.cache.peek(instance_id)
            if cached is not None and predicate(cached):
                ids.append(instance_id)
        return ids

    def _forget(self, instance_ids: List[str]) -> None:
        for instance_id in instance_ids:
            self.refresher.forget(instance_id)

    # ── Monitoring ─────────────────────────────────────────────────────

    def cache_statistics(self) -> Dict[str, Any]:
        return get_cache_statistics(
            self.cache, expiring_soon=timedelta(seconds=self.settings.expiring_soon_seconds)
        )

    def performance_metrics(self) -> Dict[str, Any]:
        return get_cache_performance_metrics(self.cache)

    def status(self) -> Dict[str, Any]:
        report = self.synchronizer.last_report
        return {
            "service": self.service_name,
            "cached_instances": len(self.cache),
            "refreshes_in_flight": len(self.single_flight),
            "watcher": self.watcher.get_health(),
            "last_background_sync": report.to_dict() if report else None,
            "http_clients": self.client_pool.statistics() if self.client_pool is not None else None,
        }
