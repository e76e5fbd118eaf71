"""
CredentialWatcher — background refresh of tokens that are about to expire.

Two states, ``stopped`` and ``running``.  ``start()`` runs one cycle right
away and then one every ``WatcherConfig.interval`` seconds.  A cycle:

  1. asks the cache for instances inside the refresh lookahead
     (attempt cap already applied there), minus entries already flagged
     ``requires_auth``
  2. splits them into batches of ``batch_size``; batches run one after
     the other, the instances of a batch concurrently
  3. per instance, re-checks the database row before spending the refresh
     token, then refreshes through the shared :class:`TokenRefresher`
  4. runs the cache cleanup sweep once per ``cleanup_interval``

Nothing raised for one instance leaves its batch; anything unexpected in
the cycle itself is logged and the next tick still happens.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, fields
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional, Sequence

from credentials.cache import CredentialCache
from credentials.errors import ReauthenticationRequired, WatcherNotRunningError
from credentials.models import STATUS_COMPLETED, STATUS_REQUIRES_AUTH, isoformat
from credentials.refresh import TokenRefresher
from credentials.stats import get_cache_statistics
from credentials.store import CredentialStore
from utils.scheduler import PeriodicTask

logger = logging.getLogger(__name__)

OUTCOME_REFRESHED = "refreshed"
OUTCOME_SKIPPED = "skipped"
OUTCOME_ORPHANED = "orphaned"
OUTCOME_REAUTH = "reauth_required"
OUTCOME_FAILED = "failed"


@dataclass
class WatcherConfig:
    interval: float = 300.0                # seconds between cycles
    max_refresh_attempts: int = 3
    refresh_threshold: float = 600.0       # lookahead, seconds
    cleanup_interval: float = 3600.0
    batch_size: int = 10

    @classmethod
    def from_settings(cls, settings) -> "WatcherConfig":
        return cls(
            interval=float(settings.watcher_interval_seconds),
            max_refresh_attempts=settings.max_refresh_attempts,
            refresh_threshold=float(settings.refresh_threshold_seconds),
            cleanup_interval=float(settings.cleanup_interval_seconds),
            batch_size=settings.watcher_batch_size,
        )


@dataclass
class WatcherStatistics:
    last_run: Optional[datetime] = None
    last_cleanup: Optional[datetime] = None
    cycles: int = 0
    total_refresh_attempts: int = 0
    successful_refreshes: int = 0
    failed_refreshes: int = 0
    tokens_marked_for_reauth: int = 0
    skipped: int = 0
    orphans_evicted: int = 0
    cleanup_runs: int = 0
    cycle_errors: int = 0


def chunked(items: Sequence[str], size: int) -> Iterator[List[str]]:
    """Yield consecutive slices of at most ``size`` items."""
    if size <= 0:
        raise ValueError("batch size must be positive")
    for start in range(0, len(items), size):
        yield list(items[start:start + size])


class CredentialWatcher:
    def __init__(
        self,
        cache: CredentialCache,
        refresher: TokenRefresher,
        store: CredentialStore,
        config: Optional[WatcherConfig] = None,
    ) -> None:
        self.cache = cache
        self.refresher = refresher
        self.store = store
        self.config = config or WatcherConfig()
        self.stats = WatcherStatistics()
        self._task: Optional[PeriodicTask] = None
        self._started_at: Optional[datetime] = None
        self._apply_cache_limits()

    @property
    def service_name(self) -> str:
        return self.refresher.service_name

    @property
    def is_running(self) -> bool:
        return self._task is not None and self._task.is_running

    def _apply_cache_limits(self) -> None:
        self.cache.max_refresh_attempts = self.config.max_refresh_attempts
        self.cache.refresh_threshold = timedelta(seconds=self.config.refresh_threshold)

    # ── Lifecycle ──────────────────────────────────────────────────────

    def start(self) -> None:
        if self.is_running:
            logger.warning("%s credential watcher is already running", self.service_name)
            return

        logger.info("Starting %s credential watcher service...", self.service_name)
        self._task = PeriodicTask(
            f"{self.service_name}-credential-watcher",
            self.run_cycle,
            self.config.interval,
        )
        self._task.start()
        self._started_at = self.cache.now()
        logger.info(
            "%s credential watcher started (interval: %.0fs)",
            self.service_name,
            self.config.interval,
        )

    async def stop(self) -> None:
        if not self.is_running:
            logger.warning("%s credential watcher is not running", self.service_name)
            return
        logger.info("Stopping %s credential watcher service...", self.service_name)
        await self._task.stop()
        self._task = None
        self._started_at = None
        logger.info("%s credential watcher stopped", self.service_name)

    async def force_cycle(self) -> None:
        if not self.is_running:
            raise WatcherNotRunningError(f"{self.service_name} credential watcher is not running")
        logger.info("Forcing %s credential watcher cycle...", self.service_name)
        await self.run_cycle()

    # ── Cycle ──────────────────────────────────────────────────────────

    async def run_cycle(self) -> None:
        """One pass over the cache.  Never raises."""
        try:
            await self._run_cycle()
        except Exception:
            self.stats.cycle_errors += 1
            logger.exception("Error in %s credential watcher cycle", self.service_name)

    async def _run_cycle(self) -> None:
        now = self.cache.now()
        self.stats.last_run = now
        self.stats.cycles += 1

        instance_ids = [
            iid
            for iid in self.cache.get_instances_needing_refresh()
            if not self._awaiting_reauth(iid)
        ]
        if not instance_ids:
            logger.info("No %s instances need token refresh", self.service_name)
        else:
            logger.info(
                "Processing %d %s instances for token refresh",
                len(instance_ids),
                self.service_name,
            )
            for batch in chunked(instance_ids, self.config.batch_size):
                await self.process_batch(batch)

        if self.should_run_cleanup(now):
            self.run_cleanup(now)

        logger.info("%s credential watcher cycle completed", self.service_name)

    def _awaiting_reauth(self, instance_id: str) -> bool:
        cached = self.cache.peek(instance_id)
        return cached is not None and cached.status == STATUS_REQUIRES_AUTH

    async def process_batch(self, instance_ids: Sequence[str]) -> List[Any]:
        results = await asyncio.gather(
            *(self.process_instance(iid) for iid in instance_ids),
            return_exceptions=True,
        )
        for iid, result in zip(instance_ids, results):
            if isinstance(result, BaseException):
                logger.error("Unexpected error processing %s instance %s: %s", self.service_name, iid, result)
        return results

    async def process_instance(self, instance_id: str) -> str:
        self.stats.total_refresh_attempts += 1
        logger.debug("Processing %s token refresh for instance: %s", self.service_name, instance_id)

        try:
            instance = await self.store.lookup_instance_credentials(
                instance_id, self.service_name, require_completed=False
            )
        except Exception as exc:
            self.stats.failed_refreshes += 1
            logger.error("Database lookup failed for %s instance %s: %s", self.service_name, instance_id, exc)
            return OUTCOME_FAILED

        if instance is None:
            logger.warning("%s instance not found in database: %s", self.service_name, instance_id)
            self.refresher.forget(instance_id)
            if self.cache.remove(instance_id):
                self.stats.orphans_evicted += 1
            return OUTCOME_ORPHANED

        if instance.oauth_status != STATUS_COMPLETED:
            # Flagged in the database; keep the entry so callers get the re-auth error.
            self.stats.skipped += 1
            self.cache.update_metadata(instance_id, status=STATUS_REQUIRES_AUTH)
            logger.info(
                "%s instance %s is %s, waiting for re-authentication",
                self.service_name,
                instance_id,
                instance.oauth_status,
            )
            return OUTCOME_REAUTH

        if not instance.token_needs_refresh(
            timedelta(seconds=self.config.refresh_threshold), self.cache.now()
        ):
            self.stats.skipped += 1
            logger.info("%s token doesn't need refresh yet for instance: %s", self.service_name, instance_id)
            return OUTCOME_SKIPPED

        try:
            await self.refresher.refresh(instance, method="watcher")
        except ReauthenticationRequired as exc:
            if exc.__cause__ is not None:
                self.stats.failed_refreshes += 1
            self.stats.tokens_marked_for_reauth += 1
            return OUTCOME_REAUTH
        except Exception:
            # Already classified, logged and audited by the refresher.
            self.stats.failed_refreshes += 1
            return OUTCOME_FAILED

        self.stats.successful_refreshes += 1
        return OUTCOME_REFRESHED

    # ── Cleanup ────────────────────────────────────────────────────────

    def should_run_cleanup(self, now: Optional[datetime] = None) -> bool:
        if self.stats.last_cleanup is None:
            return True
        elapsed = (now or self.cache.now()) - self.stats.last_cleanup
        return elapsed.total_seconds() >= self.config.cleanup_interval

    def run_cleanup(self, now: Optional[datetime] = None) -> int:
        logger.info("Running %s credential cleanup cycle...", self.service_name)
        removed = self.cache.cleanup("watcher")
        self.stats.cleanup_runs += 1
        self.stats.last_cleanup = now or self.cache.now()
        logger.info("Cleaned up %d invalid %s tokens from cache", removed, self.service_name)
        return removed

    # ── Manual operations ──────────────────────────────────────────────

    async def needs_immediate_refresh(self, instance_id: str) -> bool:
        try:
            instance = await self.store.lookup_instance_credentials(instance_id, self.service_name)
        except Exception as exc:
            logger.error("Error checking refresh status for %s instance %s: %s", self.service_name, instance_id, exc)
            return False
        if instance is None:
            return False
        return instance.token_needs_refresh(timedelta(seconds=self.config.refresh_threshold), self.cache.now())

    async def refresh_instance(self, instance_id: str) -> bool:
        """Run the per-instance refresh now.  True only when a new token was stored."""
        logger.info("Manual %s token refresh for instance: %s", self.service_name, instance_id)
        outcome = await self.process_instance(instance_id)
        return outcome == OUTCOME_REFRESHED

    # ── Configuration & statistics ─────────────────────────────────────

    def update_config(self, **changes: Any) -> WatcherConfig:
        known = {f.name for f in fields(WatcherConfig)}
        unknown = set(changes) - known
        if unknown:
            raise TypeError(f"Unknown watcher settings: {', '.join(sorted(unknown))}")
        for name, value in changes.items():
            setattr(self.config, name, value)
        self._apply_cache_limits()
        if self._task is not None:
            self._task.interval = self.config.interval
        logger.info("Updated %s credential watcher configuration: %s", self.service_name, asdict(self.config))
        return self.config

    def reset_statistics(self) -> None:
        self.stats = WatcherStatistics()
        logger.info("Reset %s credential watcher statistics", self.service_name)

    def _statistics_dict(self) -> Dict[str, Any]:
        data = asdict(self.stats)
        data["last_run"] = isoformat(self.stats.last_run)
        data["last_cleanup"] = isoformat(self.stats.last_cleanup)
        uptime = 0.0
        if self.is_running and self._started_at is not None:
            uptime = (self.cache.now() - self._started_at).total_seconds()
        data["uptime_seconds"] = uptime
        return data

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "is_running": self.is_running,
            "configuration": asdict(self.config),
            "statistics": self._statistics_dict(),
            "cache": get_cache_statistics(self.cache),
        }

    def success_rate(self) -> str:
        total = self.stats.total_refresh_attempts
        if total == 0:
            return "N/A"
        return "%.2f%%" % (self.stats.successful_refreshes / total * 100)

    def get_health(self) -> Dict[str, Any]:
        cache_stats = get_cache_statistics(self.cache)
        return {
            "service": f"{self.service_name}-credential-watcher",
            "status": "running" if self.is_running else "stopped",
            "health": {
                "cache_size": cache_stats["total_cached"],
                **cache_stats["cache_health"],
            },
            "statistics": self._statistics_dict(),
            "last_run": isoformat(self.stats.last_run),
            "success_rate": self.success_rate(),
        }
