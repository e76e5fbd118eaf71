"""
Tests for the per-key single-flight guard.
"""

import asyncio

import pytest

from utils.single_flight import SingleFlight


class TestSingleFlight:
    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_call(self):
        guard = SingleFlight()
        calls = []
        release = asyncio.Event()

        async def work():
            calls.append(1)
            await release.wait()
            return "token"

        first = asyncio.create_task(guard.run("inst-1", work))
        await asyncio.sleep(0)
        second = asyncio.create_task(guard.run("inst-1", work))
        await asyncio.sleep(0)

        assert guard.in_flight("inst-1")
        release.set()

        assert await first == "token"
        assert await second == "token"
        assert calls == [1]
        assert len(guard) == 0

    @pytest.mark.asyncio
    async def test_waiters_see_the_same_exception(self):
        guard = SingleFlight()
        release = asyncio.Event()

        async def work():
            await release.wait()
            raise ValueError("refresh failed")

        first = asyncio.create_task(guard.run("k", work))
        await asyncio.sleep(0)
        second = asyncio.create_task(guard.run("k", work))
        await asyncio.sleep(0)
        release.set()

        with pytest.raises(ValueError):
            await first
        with pytest.raises(ValueError):
            await second
        assert not guard.in_flight("k")

    @pytest.mark.asyncio
    async def test_different_keys_run_independently(self):
        guard = SingleFlight()
        calls = []

        async def work(key):
            calls.append(key)
            return key

        results = await asyncio.gather(
            guard.run("a", lambda: work("a")),
            guard.run("b", lambda: work("b")),
        )

        assert results == ["a", "b"]
        assert sorted(calls) == ["a", "b"]

    @pytest.mark.asyncio
    async def test_key_is_released_after_completion(self):
        guard = SingleFlight()
        calls = []

        async def work():
            calls.append(1)
            return len(calls)

        assert await guard.run("k", work) == 1
        assert await guard.run("k", work) == 2
