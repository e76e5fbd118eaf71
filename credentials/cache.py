"""
CredentialCache — in-process store of OAuth tokens keyed by instance id.

One cache exists per vendor service and is owned by its
``CredentialService``.  Reads never return a token past its recorded
expiry: an expired entry is evicted the moment it is read.

The cache is only touched from the event loop thread, so single dict
operations need no locking.  Read-modify-write sequences that span an
``await`` are guarded one level up by ``utils.single_flight``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple

from credentials.models import CachedCredential, isoformat, utcnow

logger = logging.getLogger(__name__)

DEFAULT_MAX_REFRESH_ATTEMPTS = 3
DEFAULT_REFRESH_THRESHOLD = timedelta(minutes=10)

# Fields update_metadata() is allowed to patch.
_PATCHABLE_FIELDS = frozenset(
    {"status", "expires_at", "bearer_token", "refresh_token", "team_id", "scope"}
)


class CredentialCache:
    """Expiry-aware map of instance id → :class:`CachedCredential`."""

    def __init__(
        self,
        service_name: str,
        *,
        max_refresh_attempts: int = DEFAULT_MAX_REFRESH_ATTEMPTS,
        refresh_threshold: timedelta = DEFAULT_REFRESH_THRESHOLD,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.service_name = service_name
        self.max_refresh_attempts = max_refresh_attempts
        self.refresh_threshold = refresh_threshold
        self._clock = clock
        self._entries: Dict[str, CachedCredential] = {}

    def now(self) -> datetime:
        return self._clock()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, instance_id: object) -> bool:
        return instance_id in self._entries

    def items(self) -> Iterator[Tuple[str, CachedCredential]]:
        """Snapshot iteration — safe against concurrent eviction."""
        return iter(list(self._entries.items()))

    # ── Basic operations ───────────────────────────────────────────────

    def get(self, instance_id: str) -> Optional[CachedCredential]:
        """Return the live entry, evicting it instead if it has expired."""
        cached = self._entries.get(instance_id)
        if cached is None:
            return None

        now = self.now()
        if cached.is_expired(now):
            logger.info("Removing expired %s token from cache: %s", self.service_name, instance_id)
            del self._entries[instance_id]
            return None

        cached.last_used = now
        return cached

    def set(self, instance_id: str, token_data: Optional[Mapping[str, Any]]) -> Optional[CachedCredential]:
        """
        Insert or overwrite the entry for ``instance_id``.

        ``token_data`` keys: ``bearer_token``, ``refresh_token``,
        ``expires_at``, ``user_id`` and optionally ``team_id``,
        ``token_type``, ``scope``, ``status``.  Overwriting always starts
        a fresh entry, so ``refresh_attempts`` goes back to 0.  Passing
        ``None`` removes the entry.
        """
        if token_data is None:
            self.remove(instance_id)
            return None

        now = self.now()
        entry = CachedCredential(
            bearer_token=token_data.get("bearer_token"),
            refresh_token=token_data.get("refresh_token"),
            user_id=token_data.get("user_id"),
            expires_at=token_data.get("expires_at"),
            team_id=token_data.get("team_id"),
            token_type=token_data.get("token_type") or "Bearer",
            scope=token_data.get("scope"),
            status=token_data.get("status"),
            cached_at=now,
            last_used=now,
        )
        self._entries[instance_id] = entry

        if entry.expires_at is not None:
            minutes = int((entry.expires_at - now).total_seconds() // 60)
            logger.info(
                "Cached %s OAuth tokens for instance: %s (expires in %d minutes)",
                self.service_name,
                instance_id,
                minutes,
            )
        else:
            logger.info("Cached %s OAuth tokens for instance: %s", self.service_name, instance_id)
        return entry

    def peek(self, instance_id: str) -> Optional[CachedCredential]:
        """Raw entry lookup: no expiry check, no ``last_used`` update."""
        return self._entries.get(instance_id)

    def remove(self, instance_id: str) -> bool:
        removed = self._entries.pop(instance_id, None) is not None
        if removed:
            logger.info("Removed %s OAuth tokens from cache: %s", self.service_name, instance_id)
        return removed

    def is_cached(self, instance_id: str) -> bool:
        """True when a valid, unexpired entry exists.  Side-effect free."""
        cached = self._entries.get(instance_id)
        if cached is None:
            return False
        return not cached.is_expired(self.now())

    def cached_instance_ids(self) -> List[str]:
        return list(self._entries.keys())

    def clear(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        logger.info("Cleared %d entries from %s credential cache", count, self.service_name)
        return count

    # ── Refresh bookkeeping ────────────────────────────────────────────

    def increment_refresh_attempts(self, instance_id: str) -> int:
        cached = self._entries.get(instance_id)
        if cached is None:
            return 0
        cached.refresh_attempts += 1
        cached.last_refresh_attempt = self.now()
        logger.info(
            "Refresh attempt %d for %s instance: %s",
            cached.refresh_attempts,
            self.service_name,
            instance_id,
        )
        return cached.refresh_attempts

    def reset_refresh_attempts(self, instance_id: str) -> None:
        cached = self._entries.get(instance_id)
        if cached is None:
            return
        cached.refresh_attempts = 0
        cached.last_successful_refresh = self.now()

    def get_instances_needing_refresh(self) -> List[str]:
        """
        Ids whose token expires inside the refresh lookahead, that hold a
        refresh token and are still under the attempt cap.
        """
        now = self.now()
        return [
            instance_id
            for instance_id, cached in self._entries.items()
            if cached.expires_within(self.refresh_threshold, now)
            and cached.refresh_token
            and cached.refresh_attempts < self.max_refresh_attempts
        ]

    # ── Expiry inspection ──────────────────────────────────────────────

    def is_close_to_expiry(self, instance_id: str, threshold: timedelta = timedelta(minutes=5)) -> bool:
        cached = self._entries.get(instance_id)
        if cached is None:
            return False
        return cached.expires_within(threshold, self.now())

    def expiry_status(self, instance_id: str) -> Dict[str, Any]:
        cached = self._entries.get(instance_id)
        if cached is None or cached.expires_at is None:
            return {
                "exists": cached is not None,
                "expired": False,
                "expiring_soon": False,
                "expires_at": None,
                "minutes_until_expiry": None,
            }

        now = self.now()
        minutes = int((cached.expires_at - now).total_seconds() // 60)
        return {
            "exists": True,
            "expired": cached.expires_at < now,
            "expiring_soon": minutes < 5,
            "expires_at": isoformat(cached.expires_at),
            "minutes_until_expiry": minutes,
        }

    # ── Maintenance ────────────────────────────────────────────────────

    def update_metadata(self, instance_id: str, **patch: Any) -> bool:
        """
        Shallow-merge ``patch`` into an existing entry.

        Only status, expiry, token values, team and scope may be patched;
        anything else raises ``TypeError``.  Returns False when the entry
        does not exist.
        """
        unknown = set(patch) - _PATCHABLE_FIELDS
        if unknown:
            raise TypeError(f"Cannot patch credential fields: {', '.join(sorted(unknown))}")

        cached = self._entries.get(instance_id)
        if cached is None:
            logger.debug("No cache entry to update for %s instance: %s", self.service_name, instance_id)
            return False

        for name, value in patch.items():
            setattr(cached, name, value)
        cached.last_modified = self.now()
        logger.debug(
            "Updated cached %s fields for instance %s: %s",
            self.service_name,
            instance_id,
            sorted(patch),
        )
        return True

    def _invalid_reason(self, cached: CachedCredential, now: datetime) -> Optional[str]:
        if cached.is_expired(now):
            return "expired_token"
        if not cached.bearer_token or not cached.user_id:
            return "missing_fields"
        if cached.refresh_attempts >= self.max_refresh_attempts:
            return "refresh_attempts_exceeded"
        return None

    def cleanup(self, reason: str = "cleanup") -> int:
        """
        Evict entries that are expired, lack a bearer token or user id, or
        have hit the refresh-attempt cap.  Returns the number removed.
        """
        now = self.now()
        removed = 0
        for instance_id, cached in list(self._entries.items()):
            why = self._invalid_reason(cached, now)
            if why is None:
                continue
            del self._entries[instance_id]
            removed += 1
            logger.debug("Removed %s %s cache entry for instance: %s", why, self.service_name, instance_id)

        if removed:
            logger.info("%s cache cleanup (%s): removed %d invalid entries", self.service_name, reason, removed)
        return removed

    def _remove_where(self, predicate: Callable[[CachedCredential], bool]) -> int:
        doomed = [iid for iid, cached in self._entries.items() if predicate(cached)]
        for iid in doomed:
            del self._entries[iid]
        return len(doomed)

    def remove_by_user(self, user_id: str) -> int:
        removed = self._remove_where(lambda c: c.user_id == user_id)
        if removed:
            logger.info("Evicted %d %s cache entries for user %s", removed, self.service_name, user_id)
        return removed

    def remove_by_team(self, team_id: str) -> int:
        removed = self._remove_where(lambda c: c.team_id is not None and c.team_id == team_id)
        if removed:
            logger.info("Evicted %d %s cache entries for team %s", removed, self.service_name, team_id)
        return removed
