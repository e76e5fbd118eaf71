"""
TokenRefresher — the one code path that spends a refresh token.

Shared by the watcher and the request path.  Every refresh for an
instance goes through the service's single-flight guard, so two callers
asking at the same time share one call to the vendor.

Outcome handling:
  • success → re-cache (attempts back to 0), persist to database, audit
    ``TOKEN_REFRESH_SUCCESS``; a failed database write is logged and the
    cached token is still returned
  • no refresh token, or an error that means the refresh token is dead →
    mark the instance for re-authentication and raise
    :class:`ReauthenticationRequired`
  • anything else → audit ``TOKEN_REFRESH_FAILED`` and raise the
    classified :class:`OAuthError`; the attempt counter bounds retries
"""

from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Dict, Optional, Tuple

from credentials.adapter import ServiceAdapter
from credentials.cache import CredentialCache
from credentials.errors import (
    OAuthError,
    ReauthenticationRequired,
    RefreshLimitExceededError,
    classify_oauth_error,
)
from credentials.metrics import TokenRefreshMetrics
from credentials.models import (
    STATUS_COMPLETED,
    STATUS_REQUIRES_AUTH,
    CachedCredential,
    InstanceCredentials,
    isoformat,
)
from credentials.store import CredentialStore
from utils.single_flight import SingleFlight

logger = logging.getLogger(__name__)

REASON_NO_REFRESH_TOKEN = "NO_REFRESH_TOKEN"
REASON_REFRESH_FAILED = "REFRESH_FAILED"


class TokenRefresher:
    def __init__(
        self,
        cache: CredentialCache,
        adapter: ServiceAdapter,
        store: CredentialStore,
        metrics: TokenRefreshMetrics,
        single_flight: Optional[SingleFlight] = None,
    ) -> None:
        self.cache = cache
        self.adapter = adapter
        self.store = store
        self.metrics = metrics
        self.single_flight = single_flight if single_flight is not None else SingleFlight()
        # Attempt counters for instances that have no cache entry to carry one.
        self._uncached_attempts: Dict[str, Tuple[int, datetime]] = {}

    @property
    def service_name(self) -> str:
        return self.adapter.service_name

    def in_flight(self, instance_id: str) -> bool:
        return self.single_flight.in_flight(instance_id)

    async def refresh(self, instance: InstanceCredentials, *, method: str = "request") -> CachedCredential:
        return await self.single_flight.run(
            instance.instance_id,
            lambda: self._refresh(instance, method),
        )

    async def mark_for_reauth(self, instance_id: str, reason: str) -> None:
        """Flag the instance in the database and the cache.  Database errors are logged."""
        try:
            await self.store.mark_instance_for_reauth(instance_id, self.service_name, reason)
        except Exception as exc:
            logger.error("Could not mark %s instance %s for re-auth: %s", self.service_name, instance_id, exc)
        self.cache.update_metadata(instance_id, status=STATUS_REQUIRES_AUTH)

    async def _refresh(self, instance: InstanceCredentials, method: str) -> CachedCredential:
        instance_id = instance.instance_id

        if not instance.refresh_token:
            logger.warning("No refresh token for %s instance %s", self.service_name, instance_id)
            await self.mark_for_reauth(instance_id, REASON_NO_REFRESH_TOKEN)
            raise ReauthenticationRequired(instance_id, REASON_NO_REFRESH_TOKEN)

        attempt = self._count_attempt(instance_id)
        started = time.perf_counter()
        try:
            request = self.adapter.build_refresh_request(instance)
            result = await self.adapter.refresh(request)
        except Exception as exc:
            error = await self._record_failure(instance_id, method, exc, started, attempt)
            if error.requires_reauth:
                await self.mark_for_reauth(instance_id, REASON_REFRESH_FAILED)
                raise ReauthenticationRequired(instance_id, REASON_REFRESH_FAILED) from error
            if error is exc:
                raise
            raise error from exc

        now = self.cache.now()
        expires_at = result.expires_at(now)
        refresh_token = result.refresh_token or instance.refresh_token
        entry = self.cache.set(
            instance_id,
            {
                "bearer_token": result.access_token,
                "refresh_token": refresh_token,
                "expires_at": expires_at,
                "user_id": instance.user_id,
                "team_id": instance.team_id,
                "token_type": result.token_type,
                "scope": result.scope or instance.token_scope,
                "status": STATUS_COMPLETED,
            },
        )
        self.cache.reset_refresh_attempts(instance_id)
        self._uncached_attempts.pop(instance_id, None)

        try:
            await self.store.update_instance_credentials(
                instance_id,
                access_token=result.access_token,
                refresh_token=refresh_token,
                token_expires_at=expires_at,
                scope=result.scope,
            )
        except Exception as exc:
            # The new token stays cached and usable.
            duration_ms = (time.perf_counter() - started) * 1000
            self.metrics.record(
                instance_id, method, False, duration_ms,
                error_type="DATABASE_ERROR", error_message=str(exc),
            )
            logger.error(
                "Refreshed %s token for %s but could not persist it: %s",
                self.service_name,
                instance_id,
                exc,
            )
            return entry

        duration_ms = (time.perf_counter() - started) * 1000
        self.metrics.record(instance_id, method, True, duration_ms)
        await self.store.log_api_operation(
            instance_id,
            self.service_name,
            "TOKEN_REFRESH_SUCCESS",
            {"method": method, "expires_at": isoformat(expires_at), "duration_ms": round(duration_ms, 2)},
        )
        logger.info(
            "Refreshed %s token for instance %s (%s, %.0fms)",
            self.service_name,
            instance_id,
            method,
            duration_ms,
        )
        return entry

    def forget(self, instance_id: str) -> None:
        """Drop attempt and metric history for an instance leaving the cache."""
        self._uncached_attempts.pop(instance_id, None)
        self.metrics.forget(instance_id)

    def _count_attempt(self, instance_id: str) -> int:
        """
        Bump the attempt counter.  Cached instances carry it on their entry;
        for the rest the refresher keeps it, and refuses further attempts
        once the cap is reached until the refresh lookahead has elapsed
        since the last one.
        """
        if self.cache.peek(instance_id) is not None:
            return self.cache.increment_refresh_attempts(instance_id)

        now = self.cache.now()
        count, last_attempt = self._uncached_attempts.get(instance_id, (0, now))
        if count >= self.cache.max_refresh_attempts:
            if now - last_attempt < self.cache.refresh_threshold:
                logger.warning(
                    "Refresh attempts exhausted for %s instance %s (%d)",
                    self.service_name,
                    instance_id,
                    count,
                )
                raise RefreshLimitExceededError(
                    f"Token refresh for {instance_id} failed {count} times; retry later",
                    retry_after=(last_attempt + self.cache.refresh_threshold - now).total_seconds(),
                )
            count = 0
        self._uncached_attempts[instance_id] = (count + 1, now)
        return count + 1

    async def _record_failure(
        self,
        instance_id: str,
        method: str,
        exc: Exception,
        started: float,
        attempt: int,
    ) -> OAuthError:
        error = classify_oauth_error(exc)
        duration_ms = (time.perf_counter() - started) * 1000
        self.metrics.record(
            instance_id, method, False, duration_ms,
            error_type=error.error_type, error_message=str(exc),
        )
        logger.log(
            error.log_level,
            "%s token refresh failed for %s (attempt %d): %s [%s]",
            self.service_name,
            instance_id,
            attempt,
            exc,
            error.error_type,
        )
        await self.store.log_api_operation(
            instance_id,
            self.service_name,
            "TOKEN_REFRESH_FAILED",
            {
                "method": method,
                "attempt": attempt,
                "error_type": error.error_type,
                "error": str(exc),
                "requires_reauth": error.requires_reauth,
            },
        )
        return error
