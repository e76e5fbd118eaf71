"""
Tests for the background credential watcher.
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from conftest import make_instance, token_data
from credentials.adapter import ServiceAdapter
from credentials.errors import NetworkError, WatcherNotRunningError
from credentials.metrics import TokenRefreshMetrics
from credentials.refresh import TokenRefresher
from credentials.watcher import CredentialWatcher, WatcherConfig, chunked


def _watcher(cache, adapter, store, **config) -> CredentialWatcher:
    refresher = TokenRefresher(cache, adapter, store, TokenRefreshMetrics(adapter.service_name))
    return CredentialWatcher(cache, refresher, store, WatcherConfig(**config))


def _failing_adapter(exc: Exception, calls=None) -> ServiceAdapter:
    async def refresh(request):
        if calls is not None:
            calls.append(request)
        raise exc

    return ServiceAdapter(service_name="discord", refresh=refresh)


def _invalid_grant() -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://discord.com/api/oauth2/token")
    response = httpx.Response(400, json={"error": "invalid_grant"}, request=request)
    return httpx.HTTPStatusError("Bad Request", request=request, response=response)


def _due(cache, clock, instance_id: str = "inst-1") -> None:
    cache.set(instance_id, token_data(clock() + timedelta(minutes=2)))


class TestChunked:
    def test_twelve_with_batch_ten(self):
        batches = list(chunked([str(i) for i in range(12)], 10))
        assert [len(b) for b in batches] == [10, 2]

    def test_empty(self):
        assert list(chunked([], 10)) == []

    def test_rejects_non_positive_size(self):
        with pytest.raises(ValueError):
            list(chunked(["a"], 0))


class TestCycle:
    @pytest.mark.asyncio
    async def test_empty_cycle_updates_last_run(self, cache, adapter, store, clock):
        watcher = _watcher(cache, adapter, store)

        await watcher.run_cycle()

        assert watcher.stats.last_run == clock()
        assert watcher.stats.cycles == 1
        assert watcher.stats.cycle_errors == 0
        assert watcher.stats.total_refresh_attempts == 0

    @pytest.mark.asyncio
    async def test_twelve_instances_form_two_batches(self, cache, adapter, store, clock):
        for i in range(12):
            _due(cache, clock, f"inst-{i}")
        watcher = _watcher(cache, adapter, store, batch_size=10)

        with patch.object(watcher, "process_batch", new_callable=AsyncMock) as mock_batch:
            await watcher.run_cycle()

        assert mock_batch.call_count == 2
        sizes = [len(call.args[0]) for call in mock_batch.call_args_list]
        assert sizes == [10, 2]

    @pytest.mark.asyncio
    async def test_successful_refresh(self, cache, adapter, store, clock, refresh_calls):
        _due(cache, clock)
        store.add(make_instance("inst-1"))
        watcher = _watcher(cache, adapter, store)

        await watcher.run_cycle()

        assert len(refresh_calls) == 1
        assert refresh_calls[0].refresh_token == "db-refresh"
        assert refresh_calls[0].client_id == "client-id"
        entry = cache.peek("inst-1")
        assert entry.bearer_token == "new-access"
        assert entry.refresh_token == "new-refresh"
        assert entry.refresh_attempts == 0
        assert entry.expires_at == clock() + timedelta(hours=1)
        instance_id, written = store.credential_updates[0]
        assert instance_id == "inst-1"
        assert written["access_token"] == "new-access"
        assert store.operations() == ["TOKEN_REFRESH_SUCCESS"]
        assert watcher.stats.successful_refreshes == 1
        assert watcher.stats.total_refresh_attempts == 1

    @pytest.mark.asyncio
    async def test_missing_refresh_token_marks_reauth(self, cache, adapter, store, clock, refresh_calls):
        _due(cache, clock)
        store.add(make_instance("inst-1", refresh_token=None))
        watcher = _watcher(cache, adapter, store)

        await watcher.run_cycle()

        assert refresh_calls == []
        assert store.reauth_marks == [("inst-1", "discord", "NO_REFRESH_TOKEN")]
        assert cache.peek("inst-1").status == "requires_auth"
        assert watcher.stats.tokens_marked_for_reauth == 1
        assert watcher.stats.failed_refreshes == 0

    @pytest.mark.asyncio
    async def test_invalid_grant_marks_reauth(self, cache, store, clock):
        _due(cache, clock)
        store.add(make_instance("inst-1"))
        watcher = _watcher(cache, _failing_adapter(_invalid_grant()), store)

        await watcher.run_cycle()

        assert store.reauth_marks == [("inst-1", "discord", "REFRESH_FAILED")]
        assert "TOKEN_REFRESH_FAILED" in store.operations()
        assert watcher.stats.failed_refreshes == 1
        assert watcher.stats.tokens_marked_for_reauth == 1

    @pytest.mark.asyncio
    async def test_transient_failures_stop_at_attempt_cap(self, cache, store, clock):
        calls = []
        _due(cache, clock)
        store.add(make_instance("inst-1"))
        watcher = _watcher(cache, _failing_adapter(NetworkError("timeout"), calls), store)

        for _ in range(5):
            await watcher.run_cycle()

        assert len(calls) == 3
        assert store.reauth_marks == []
        assert watcher.stats.failed_refreshes == 3
        assert cache.get_instances_needing_refresh() == []

    @pytest.mark.asyncio
    async def test_database_says_refresh_not_needed(self, cache, adapter, store, clock, refresh_calls):
        _due(cache, clock)
        store.add(make_instance("inst-1", token_expires_at=clock() + timedelta(hours=1)))
        watcher = _watcher(cache, adapter, store)

        await watcher.run_cycle()

        assert refresh_calls == []
        assert watcher.stats.skipped == 1

    @pytest.mark.asyncio
    async def test_orphan_is_evicted(self, cache, adapter, store, clock):
        _due(cache, clock)
        watcher = _watcher(cache, adapter, store)

        await watcher.run_cycle()

        assert "inst-1" not in cache
        assert watcher.stats.orphans_evicted == 1

    @pytest.mark.asyncio
    async def test_orphan_metrics_are_dropped(self, cache, adapter, store, clock):
        _due(cache, clock)
        watcher = _watcher(cache, adapter, store)
        watcher.refresher.metrics.record("inst-1", "watcher", True, 5.0)

        await watcher.run_cycle()

        assert watcher.refresher.metrics.for_instance("inst-1") is None

    @pytest.mark.asyncio
    async def test_revoked_instance_stays_cached_across_cycles(self, cache, store, clock):
        calls = []
        _due(cache, clock)
        store.add(make_instance("inst-1"))
        watcher = _watcher(cache, _failing_adapter(_invalid_grant(), calls), store)

        await watcher.run_cycle()
        assert cache.peek("inst-1").status == "requires_auth"
        assert store.instances["inst-1"].oauth_status == "requires_auth"

        await watcher.run_cycle()

        assert "inst-1" in cache
        assert cache.peek("inst-1").status == "requires_auth"
        assert watcher.stats.orphans_evicted == 0
        assert watcher.stats.tokens_marked_for_reauth == 1
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_instance_flagged_in_database_is_not_refreshed(self, cache, adapter, store, clock, refresh_calls):
        _due(cache, clock)
        store.add(make_instance("inst-1", oauth_status="requires_auth"))
        watcher = _watcher(cache, adapter, store)

        await watcher.run_cycle()

        assert refresh_calls == []
        assert cache.peek("inst-1").status == "requires_auth"
        assert watcher.stats.orphans_evicted == 0
        assert watcher.stats.skipped == 1

    @pytest.mark.asyncio
    async def test_database_write_failure_counts_as_refreshed(self, cache, adapter, store, clock):
        _due(cache, clock)
        store.add(make_instance("inst-1"))
        store.update_error = RuntimeError("database down")
        watcher = _watcher(cache, adapter, store)

        await watcher.run_cycle()

        assert cache.peek("inst-1").bearer_token == "new-access"
        assert watcher.stats.successful_refreshes == 1
        assert watcher.stats.failed_refreshes == 0

    @pytest.mark.asyncio
    async def test_one_failure_does_not_abort_batch(self, cache, adapter, store):
        watcher = _watcher(cache, adapter, store)

        with patch.object(
            watcher,
            "process_instance",
            new_callable=AsyncMock,
            side_effect=[RuntimeError("boom"), "refreshed", "skipped"],
        ) as mock_process:
            results = await watcher.process_batch(["a", "b", "c"])

        assert mock_process.call_count == 3
        assert isinstance(results[0], RuntimeError)
        assert results[1:] == ["refreshed", "skipped"]

    @pytest.mark.asyncio
    async def test_cycle_errors_are_contained(self, cache, adapter, store):
        watcher = _watcher(cache, adapter, store)

        with patch.object(cache, "get_instances_needing_refresh", side_effect=RuntimeError("boom")):
            await watcher.run_cycle()

        assert watcher.stats.cycle_errors == 1

    @pytest.mark.asyncio
    async def test_lookup_failure_counts_as_failed(self, cache, adapter, store, clock):
        _due(cache, clock)
        store.lookup_error = RuntimeError("database down")
        watcher = _watcher(cache, adapter, store)

        await watcher.run_cycle()

        assert watcher.stats.failed_refreshes == 1
        assert "inst-1" in cache


class TestCleanupSchedule:
    @pytest.mark.asyncio
    async def test_cleanup_runs_hourly(self, cache, adapter, store, clock):
        watcher = _watcher(cache, adapter, store)

        await watcher.run_cycle()
        assert watcher.stats.cleanup_runs == 1

        clock.advance(minutes=30)
        await watcher.run_cycle()
        assert watcher.stats.cleanup_runs == 1

        clock.advance(minutes=31)
        await watcher.run_cycle()
        assert watcher.stats.cleanup_runs == 2

    @pytest.mark.asyncio
    async def test_cleanup_evicts_expired(self, cache, adapter, store, clock):
        cache.set("old", token_data(clock() - timedelta(minutes=1)))
        watcher = _watcher(cache, adapter, store)

        await watcher.run_cycle()

        assert "old" not in cache


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_force_cycle_requires_running_watcher(self, cache, adapter, store):
        watcher = _watcher(cache, adapter, store)
        with pytest.raises(WatcherNotRunningError):
            await watcher.force_cycle()

    @pytest.mark.asyncio
    async def test_start_runs_immediately_then_stops(self, cache, adapter, store):
        watcher = _watcher(cache, adapter, store, interval=300)

        watcher.start()
        for _ in range(5):
            await asyncio.sleep(0)

        assert watcher.is_running
        assert watcher.stats.cycles == 1
        assert watcher.get_health()["status"] == "running"

        await watcher.force_cycle()
        assert watcher.stats.cycles == 2

        await watcher.stop()
        assert not watcher.is_running
        assert watcher.get_health()["status"] == "stopped"

    @pytest.mark.asyncio
    async def test_start_twice_is_noop(self, cache, adapter, store):
        watcher = _watcher(cache, adapter, store)
        watcher.start()
        task = watcher._task
        watcher.start()
        assert watcher._task is task
        await watcher.stop()


class TestReporting:
    @pytest.mark.asyncio
    async def test_health_success_rate(self, cache, adapter, store, clock):
        watcher = _watcher(cache, adapter, store)
        health = watcher.get_health()
        assert health["service"] == "discord-credential-watcher"
        assert health["success_rate"] == "N/A"
        assert health["last_run"] is None

        _due(cache, clock)
        store.add(make_instance("inst-1"))
        await watcher.run_cycle()

        health = watcher.get_health()
        assert health["success_rate"] == "100.00%"
        assert health["health"]["cache_size"] == 1
        assert health["health"]["healthy_tokens"] == 1

    def test_statistics_shape(self, cache, adapter, store):
        stats = _watcher(cache, adapter, store).get_statistics()

        assert stats["is_running"] is False
        assert stats["configuration"]["batch_size"] == 10
        assert stats["configuration"]["interval"] == 300.0
        assert stats["statistics"]["uptime_seconds"] == 0.0
        assert stats["cache"]["total_cached"] == 0

    @pytest.mark.asyncio
    async def test_reset_statistics(self, cache, adapter, store):
        watcher = _watcher(cache, adapter, store)
        await watcher.run_cycle()
        watcher.reset_statistics()
        assert watcher.stats.cycles == 0
        assert watcher.stats.last_run is None

    def test_update_config_reaches_cache(self, cache, adapter, store):
        watcher = _watcher(cache, adapter, store)

        watcher.update_config(max_refresh_attempts=5, refresh_threshold=120)

        assert cache.max_refresh_attempts == 5
        assert cache.refresh_threshold == timedelta(minutes=2)
        with pytest.raises(TypeError):
            watcher.update_config(bogus=1)


class TestManualOperations:
    @pytest.mark.asyncio
    async def test_needs_immediate_refresh(self, cache, adapter, store, clock):
        store.add(make_instance("due"))
        store.add(make_instance("fine", token_expires_at=clock() + timedelta(hours=2)))
        watcher = _watcher(cache, adapter, store)

        assert await watcher.needs_immediate_refresh("due") is True
        assert await watcher.needs_immediate_refresh("fine") is False
        assert await watcher.needs_immediate_refresh("missing") is False

    @pytest.mark.asyncio
    async def test_needs_immediate_refresh_swallows_lookup_errors(self, cache, adapter, store):
        store.lookup_error = RuntimeError("database down")
        assert await _watcher(cache, adapter, store).needs_immediate_refresh("x") is False

    @pytest.mark.asyncio
    async def test_refresh_instance_reports_outcome(self, cache, adapter, store, clock):
        store.add(make_instance("inst-1"))
        watcher = _watcher(cache, adapter, store)

        assert await watcher.refresh_instance("inst-1") is True
        assert await watcher.refresh_instance("missing") is False
