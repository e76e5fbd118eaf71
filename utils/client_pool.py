"""
ClientPool — long-lived ``httpx.AsyncClient`` objects keyed by name.

Connectors borrow a client from their service's pool for every token
request instead of opening a fresh connection each time.  Clients left
idle for ``max_idle`` seconds are closed by a periodic sweep and
recreated on next use; ``aclose()`` closes everything on shutdown.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import httpx

from utils.scheduler import PeriodicTask

logger = logging.getLogger(__name__)


@dataclass
class _PooledClient:
    client: httpx.AsyncClient
    created_at: float
    last_used: float
    requests: int = 0


class ClientPool:
    def __init__(
        self,
        name: str,
        *,
        max_idle: float = 1800.0,
        clock: Callable[[], float] = time.monotonic,
        **client_kwargs: Any,
    ) -> None:
        self.name = name
        self.max_idle = max_idle
        self._clock = clock
        self._client_kwargs = client_kwargs
        self._clients: Dict[str, _PooledClient] = {}
        self._cleanup_task: Optional[PeriodicTask] = None
        self.clients_created = 0
        self.clients_closed = 0

    @property
    def size(self) -> int:
        return len(self._clients)

    def get(self, key: str) -> httpx.AsyncClient:
        """Return the client for ``key``, creating it on first use or after it was closed."""
        now = self._clock()
        pooled = self._clients.get(key)
        if pooled is None or pooled.client.is_closed:
            pooled = _PooledClient(
                client=httpx.AsyncClient(**self._client_kwargs),
                created_at=now,
                last_used=now,
            )
            self._clients[key] = pooled
            self.clients_created += 1
            logger.info("Created pooled HTTP client %s/%s", self.name, key)
        pooled.last_used = now
        pooled.requests += 1
        return pooled.client

    async def close_idle(self) -> int:
        now = self._clock()
        idle = [key for key, pooled in self._clients.items() if now - pooled.last_used >= self.max_idle]
        for key in idle:
            await self._close(key)
        if idle:
            logger.info("Closed %d idle %s HTTP clients", len(idle), self.name)
        return len(idle)

    async def aclose(self) -> int:
        await self.stop_cleanup()
        keys = list(self._clients)
        for key in keys:
            await self._close(key)
        return len(keys)

    async def _close(self, key: str) -> None:
        pooled = self._clients.pop(key)
        await pooled.client.aclose()
        self.clients_closed += 1

    # ── Idle sweep ─────────────────────────────────────────────────────

    def start_cleanup(self, interval: float) -> PeriodicTask:
        if self._cleanup_task is None:
            self._cleanup_task = PeriodicTask(
                f"{self.name}-http-client-cleanup",
                self.close_idle,
                interval,
                initial_delay=interval,
            )
        self._cleanup_task.start()
        return self._cleanup_task

    async def stop_cleanup(self) -> None:
        if self._cleanup_task is not None:
            await self._cleanup_task.stop()

    def statistics(self) -> Dict[str, Any]:
        now = self._clock()
        return {
            "pool": self.name,
            "active_clients": len(self._clients),
            "clients_created": self.clients_created,
            "clients_closed": self.clients_closed,
            "max_idle_seconds": self.max_idle,
            "cleanup_running": self._cleanup_task is not None and self._cleanup_task.is_running,
            "clients": [
                {
                    "key": key,
                    "requests": pooled.requests,
                    "age_seconds": round(now - pooled.created_at, 1),
                    "idle_seconds": round(now - pooled.last_used, 1),
                }
                for key, pooled in self._clients.items()
            ],
        }
