"""
Token refresh metrics — per-instance counters and recent history.

Process-lifetime, in memory only.  ``method`` names how a refresh was
triggered (``watcher`` or ``request``).
"""

from __future__ import annotations

import logging
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional

from credentials.models import utcnow

logger = logging.getLogger(__name__)

RECENT_PER_INSTANCE = 10
RECENT_AGGREGATE = 20
TOP_ERRORS = 5


@dataclass
class RefreshEvent:
    instance_id: str
    method: str
    success: bool
    duration_ms: float
    timestamp: datetime
    error_type: Optional[str] = None
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "method": self.method,
            "success": self.success,
            "duration_ms": round(self.duration_ms, 2),
            "timestamp": self.timestamp.isoformat(),
            "error_type": self.error_type,
            "error_message": self.error_message,
        }


@dataclass
class _InstanceMetrics:
    total: int = 0
    successes: int = 0
    failures: int = 0
    total_duration_ms: float = 0.0
    last_success: Optional[datetime] = None
    last_failure: Optional[datetime] = None
    by_method: Dict[str, Counter] = field(default_factory=dict)
    errors: Counter = field(default_factory=Counter)
    recent: Deque[RefreshEvent] = field(default_factory=lambda: deque(maxlen=RECENT_PER_INSTANCE))


def _rate(successes: int, total: int) -> float:
    return round(successes / total * 100, 2) if total else 0.0


class TokenRefreshMetrics:
    def __init__(self, service_name: str) -> None:
        self.service_name = service_name
        self._metrics: Dict[str, _InstanceMetrics] = {}

    def record(
        self,
        instance_id: str,
        method: str,
        success: bool,
        duration_ms: float,
        *,
        error_type: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> None:
        m = self._metrics.setdefault(instance_id, _InstanceMetrics())
        now = utcnow()
        m.total += 1
        m.total_duration_ms += duration_ms
        method_stats = m.by_method.setdefault(method, Counter())
        method_stats["attempts"] += 1
        if success:
            m.successes += 1
            method_stats["successes"] += 1
            m.last_success = now
        else:
            m.failures += 1
            method_stats["failures"] += 1
            m.last_failure = now
            m.errors[error_type or "UNKNOWN_ERROR"] += 1

        m.recent.append(
            RefreshEvent(
                instance_id=instance_id,
                method=method,
                success=success,
                duration_ms=duration_ms,
                timestamp=now,
                error_type=error_type,
                error_message=error_message,
            )
        )
        logger.debug(
            "Recorded %s refresh for %s: %s (%s, %.0fms)",
            self.service_name,
            instance_id,
            "SUCCESS" if success else "FAILURE",
            method,
            duration_ms,
        )

    def for_instance(self, instance_id: str) -> Optional[Dict[str, Any]]:
        m = self._metrics.get(instance_id)
        if m is None:
            return None
        return {
            "instance_id": instance_id,
            "total_refreshes": m.total,
            "successful_refreshes": m.successes,
            "failed_refreshes": m.failures,
            "success_rate": _rate(m.successes, m.total),
            "average_response_ms": round(m.total_duration_ms / m.total, 2) if m.total else 0.0,
            "last_success": m.last_success.isoformat() if m.last_success else None,
            "last_failure": m.last_failure.isoformat() if m.last_failure else None,
            "method_stats": {name: dict(c) for name, c in m.by_method.items()},
            "error_stats": dict(m.errors),
            "recent_refreshes": [e.to_dict() for e in m.recent],
        }

    def aggregate(self) -> Dict[str, Any]:
        total = successes = failures = 0
        duration = 0.0
        methods: Dict[str, Counter] = {}
        errors: Counter = Counter()
        affected: Dict[str, set] = {}
        recent: List[RefreshEvent] = []

        for instance_id, m in self._metrics.items():
            total += m.total
            successes += m.successes
            failures += m.failures
            duration += m.total_duration_ms
            for name, c in m.by_method.items():
                methods.setdefault(name, Counter()).update(c)
            for error_type, count in m.errors.items():
                errors[error_type] += count
                affected.setdefault(error_type, set()).add(instance_id)
            recent.extend(m.recent)

        recent.sort(key=lambda e: e.timestamp, reverse=True)
        return {
            "service": self.service_name,
            "total_instances": len(self._metrics),
            "total_refreshes": total,
            "successful_refreshes": successes,
            "failed_refreshes": failures,
            "success_rate": _rate(successes, total),
            "average_response_ms": round(duration / total, 2) if total else 0.0,
            "method_stats": {name: dict(c) for name, c in methods.items()},
            "top_errors": [
                {
                    "error_type": error_type,
                    "count": count,
                    "affected_instances": len(affected[error_type]),
                }
                for error_type, count in errors.most_common(TOP_ERRORS)
            ],
            "recent_activity": [e.to_dict() for e in recent[:RECENT_AGGREGATE]],
        }

    def reset(self) -> None:
        self._metrics.clear()

    def forget(self, instance_id: str) -> bool:
        """Drop everything recorded for an instance that left the cache."""
        return self._metrics.pop(instance_id, None) is not None
