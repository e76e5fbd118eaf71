"""
Read-only aggregates over a CredentialCache for the monitoring endpoints.

Everything here is recomputed from the current cache contents on each call
(O(n) in cache size) and never mutates the cache.
"""

from __future__ import annotations

import json
from collections import Counter
from datetime import timedelta
from typing import Any, Dict, List

from credentials.cache import CredentialCache
from credentials.models import isoformat

EXPIRING_SOON_WINDOW = timedelta(minutes=5)
RECENT_USE_WINDOW = timedelta(hours=1)

# Weights of the 0–100 health score.
_VALID_WEIGHT = 0.7
_REFRESH_WEIGHT = 0.3


def calculate_health_score(total: int, valid: int, failing_refresh: int) -> int:
    """
    Heuristic cache health, 0 (bad) to 100 (good).

    Combines the share of unexpired entries with the share of entries that
    have no outstanding refresh failures.  An empty cache scores 100.
    """
    if total <= 0:
        return 100
    valid_ratio = valid / total
    failing_ratio = failing_refresh / total
    score = 100 * (_VALID_WEIGHT * valid_ratio + _REFRESH_WEIGHT * (1 - failing_ratio))
    return max(0, min(100, round(score)))


def get_cache_statistics(
    cache: CredentialCache,
    *,
    expiring_soon: timedelta = EXPIRING_SOON_WINDOW,
) -> Dict[str, Any]:
    now = cache.now()
    expired = expiring = healthy = failing = 0
    by_user: Counter = Counter()
    by_team: Counter = Counter()
    ages: List[float] = []
    instances: List[Dict[str, Any]] = []

    for instance_id, cached in cache.items():
        if cached.expires_at is None:
            status = "healthy"
        elif cached.expires_at < now:
            status = "expired"
        elif cached.expires_at < now + expiring_soon:
            status = "expiring_soon"
        else:
            status = "healthy"

        if status == "expired":
            expired += 1
        elif status == "expiring_soon":
            expiring += 1
        else:
            healthy += 1

        if cached.refresh_attempts > 0:
            failing += 1
        if cached.user_id:
            by_user[cached.user_id] += 1
        if cached.team_id:
            by_team[cached.team_id] += 1
        ages.append((now - cached.cached_at).total_seconds())

        instances.append(
            {
                "instance_id": instance_id,
                "status": status,
                "cached_at": isoformat(cached.cached_at),
                "last_used": isoformat(cached.last_used),
                "refresh_attempts": cached.refresh_attempts,
                "token_type": cached.token_type,
                "has_refresh_token": bool(cached.refresh_token),
                "expires_at": isoformat(cached.expires_at),
            }
        )

    total = len(instances)
    return {
        "service": cache.service_name,
        "total_cached": total,
        "cache_health": {
            "expired_tokens": expired,
            "tokens_expiring_soon": expiring,
            "healthy_tokens": healthy,
        },
        "by_user": dict(by_user),
        "by_team": dict(by_team),
        "entry_age_seconds": {
            "average": sum(ages) / total if total else 0.0,
            "oldest": max(ages) if ages else 0.0,
            "newest": min(ages) if ages else 0.0,
        },
        "health_score": calculate_health_score(total, total - expired, failing),
        "instances": instances,
    }


def get_cache_performance_metrics(cache: CredentialCache) -> Dict[str, Any]:
    """Usage and expiry figures; token values are never serialised."""
    now = cache.now()
    entries = [cached for _, cached in cache.items()]
    total = len(entries)

    recently_used = sum(1 for c in entries if now - c.last_used < RECENT_USE_WINDOW)
    minutes_to_expiry = [
        max(0.0, (c.expires_at - now).total_seconds() / 60) for c in entries if c.expires_at
    ]
    at_cap = sum(1 for c in entries if c.refresh_attempts >= cache.max_refresh_attempts)
    footprint = len(json.dumps({iid: c.to_dict() for iid, c in cache.items()}))

    return {
        "service": cache.service_name,
        "total_entries": total,
        "recently_used": recently_used,
        "recent_use_ratio": round(recently_used / total * 100, 2) if total else 0.0,
        "average_expiry_minutes": int(sum(minutes_to_expiry) / len(minutes_to_expiry))
        if minutes_to_expiry
        else 0,
        "average_refresh_attempts": round(sum(c.refresh_attempts for c in entries) / total, 2)
        if total
        else 0.0,
        "entries_at_refresh_cap": at_cap,
        "approx_size_kb": round(footprint / 1024, 2),
    }
