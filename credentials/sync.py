"""
Cache ↔ database synchronisation.

The database is the source of truth; the cache is a best-effort copy.
:meth:`CacheSynchronizer.sync_cache_with_database` reconciles one
instance by comparing the row's ``credentials_updated_at`` with the
entry's ``cached_at``, and :meth:`background_cache_sync` walks a capped
slice of the cache on a timer so drift (tokens rotated by another
process, instances deleted from the dashboard) does not live forever.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from credentials.adapter import ServiceAdapter
from credentials.cache import CredentialCache
from credentials.models import STATUS_COMPLETED, cache_payload
from credentials.store import CredentialStore
from utils.scheduler import PeriodicTask

logger = logging.getLogger(__name__)

ACTION_REMOVED_ORPHAN = "removed_orphan"
ACTION_CACHE_UPDATED = "cache_updated"
ACTION_CACHE_CLEARED = "cache_cleared"
ACTION_DATABASE_UPDATED = "database_updated"
ACTION_IN_SYNC = "in_sync"
ACTION_ERROR = "error"
ACTION_ORPHAN_KEPT = "orphan_kept"


@dataclass
class SyncResult:
    synced: bool
    action: str


@dataclass
class BackgroundSyncReport:
    total: int = 0
    synced: int = 0
    errors: int = 0
    orphaned: int = 0
    skipped: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class CacheSynchronizer:
    def __init__(self, cache: CredentialCache, adapter: ServiceAdapter, store: CredentialStore) -> None:
        self.cache = cache
        self.adapter = adapter
        self.store = store
        self._task: Optional[PeriodicTask] = None
        self.last_report: Optional[BackgroundSyncReport] = None

    @property
    def service_name(self) -> str:
        return self.adapter.service_name

    async def sync_cache_with_database(
        self,
        instance_id: str,
        force_refresh: bool = False,
        update_database: bool = False,
        *,
        remove_orphaned: bool = True,
    ) -> SyncResult:
        try:
            return await self._sync(instance_id, force_refresh, update_database, remove_orphaned)
        except Exception as exc:
            logger.error("Failed to sync %s cache for instance %s: %s", self.service_name, instance_id, exc)
            return SyncResult(synced=False, action=ACTION_ERROR)

    async def _sync(
        self, instance_id: str, force_refresh: bool, update_database: bool, remove_orphaned: bool
    ) -> SyncResult:
        cached = self.cache.peek(instance_id)
        instance = await self.store.lookup_instance_credentials(
            instance_id, self.service_name, require_completed=False
        )

        if instance is None:
            if not remove_orphaned:
                logger.debug("Keeping orphaned %s cache entry: %s", self.service_name, instance_id)
                return SyncResult(synced=False, action=ACTION_ORPHAN_KEPT)
            if self.cache.remove(instance_id):
                logger.info("Removed orphaned %s cache entry: %s", self.service_name, instance_id)
            return SyncResult(synced=False, action=ACTION_REMOVED_ORPHAN)

        db_updated = instance.credentials_updated_at
        db_is_newer = cached is not None and db_updated is not None and db_updated > cached.cached_at

        if force_refresh or cached is None or db_is_newer:
            if instance.access_token and instance.refresh_token:
                expires_at = self.adapter.resolve_expiry(instance.token_expires_at, self.cache.now())
                self.cache.set(instance_id, cache_payload(instance, expires_at))
                logger.info("Synced %s cache from database for instance: %s", self.service_name, instance_id)
                return SyncResult(synced=True, action=ACTION_CACHE_UPDATED)

            self.cache.remove(instance_id)
            logger.info(
                "Cleared %s cache entry without database tokens: %s", self.service_name, instance_id
            )
            return SyncResult(synced=True, action=ACTION_CACHE_CLEARED)

        cache_is_newer = db_updated is None or cached.cached_at > db_updated
        if cache_is_newer and update_database:
            await self.store.update_oauth_status(
                instance_id,
                status=STATUS_COMPLETED,
                access_token=cached.bearer_token,
                refresh_token=cached.refresh_token,
                token_expires_at=cached.expires_at,
                scope=cached.scope,
                team_id=cached.team_id,
            )
            logger.info("Synced %s database from cache for instance: %s", self.service_name, instance_id)
            return SyncResult(synced=True, action=ACTION_DATABASE_UPDATED)

        return SyncResult(synced=True, action=ACTION_IN_SYNC)

    async def background_cache_sync(
        self,
        max_instances: int = 50,
        remove_orphaned: bool = True,
        item_delay: float = 0.01,
    ) -> BackgroundSyncReport:
        """
        Sync up to ``max_instances`` cached ids, pausing ``item_delay``
        seconds between them.  One failing instance never aborts the run.
        """
        ids = self.cache.cached_instance_ids()
        batch = ids[:max_instances]
        report = BackgroundSyncReport(total=len(ids), skipped=len(ids) - len(batch))
        logger.info(
            "Starting background %s cache sync for %d of %d instances",
            self.service_name,
            len(batch),
            len(ids),
        )

        for index, instance_id in enumerate(batch):
            result = await self.sync_cache_with_database(instance_id, remove_orphaned=remove_orphaned)
            if result.action == ACTION_ERROR:
                report.errors += 1
            elif result.action == ACTION_REMOVED_ORPHAN:
                report.orphaned += 1
            elif result.action == ACTION_ORPHAN_KEPT:
                report.skipped += 1
            elif result.synced:
                report.synced += 1
            if item_delay and index < len(batch) - 1:
                await asyncio.sleep(item_delay)

        logger.info(
            "Background %s cache sync completed: %d synced, %d errors, %d orphaned, %d skipped",
            self.service_name,
            report.synced,
            report.errors,
            report.orphaned,
            report.skipped,
        )
        self.last_report = report
        return report

    def start_background_cache_sync(
        self,
        interval: float = 300.0,
        initial_delay: float = 30.0,
        *,
        max_instances: int = 50,
        item_delay: float = 0.01,
    ) -> PeriodicTask:
        """Run :meth:`background_cache_sync` after ``initial_delay`` and then every ``interval`` seconds."""
        if self._task is not None and self._task.is_running:
            logger.warning("Background %s cache sync is already running", self.service_name)
            return self._task

        self._task = PeriodicTask(
            f"{self.service_name}-cache-sync",
            lambda: self.background_cache_sync(max_instances=max_instances, item_delay=item_delay),
            interval,
            initial_delay=initial_delay,
        )
        self._task.start()
        return self._task

    async def stop(self) -> None:
        if self._task is not None:
            await self._task.stop()
            self._task = None
