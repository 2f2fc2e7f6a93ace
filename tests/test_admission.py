from __future__ import annotations

import asyncio
import time

import pytest

from llm_orchestrator.config import AdmissionConfig
from llm_orchestrator.errors import AbortedError
from llm_orchestrator.runtime.admission import AdmissionScheduler
from llm_orchestrator.runtime.cancellation import CancelToken


def test_unlimited_scheduler_admits_immediately() -> None:
    async def _run() -> None:
        scheduler = AdmissionScheduler()
        started = time.monotonic()
        await scheduler.reserve_slot("LLM_REQUEST", est_tokens=500)
        await scheduler.reserve_slot("LLM_REQUEST", est_tokens=500, priority="high")
        assert time.monotonic() - started < 0.1
        assert scheduler.pending == 0

    asyncio.run(_run())


def test_reservation_requires_a_kind() -> None:
    async def _run() -> None:
        with pytest.raises(ValueError):
            await AdmissionScheduler().reserve_slot("")

    asyncio.run(_run())


def test_shared_backoff_delays_every_reservation() -> None:
    async def _run() -> None:
        scheduler = AdmissionScheduler()
        scheduler.on_rate_limited(retry_after_seconds=0.2, kind="LLM_REQUEST")
        started = time.monotonic()
        await asyncio.gather(
            scheduler.reserve_slot("LLM_REQUEST", priority="high"),
            scheduler.reserve_slot("LLM_REQUEST"),
        )
        assert time.monotonic() - started >= 0.15

    asyncio.run(_run())


def test_backoff_window_only_grows() -> None:
    scheduler = AdmissionScheduler()
    scheduler.on_rate_limited(retry_after_seconds=10)
    remaining = scheduler.on_rate_limited(retry_after_seconds=1)

    assert remaining > 9


def test_high_priority_is_served_before_low_when_budget_is_scarce() -> None:
    async def _run() -> None:
        scheduler = AdmissionScheduler(
            AdmissionConfig(rpm=1, window_seconds=0.2, idle_poll_seconds=0.02)
        )
        await scheduler.reserve_slot("LLM_REQUEST", priority="high")
        order: list[str] = []

        async def _reserve(name: str, priority: str) -> None:
            await scheduler.reserve_slot("LLM_REQUEST", priority=priority)
            order.append(name)

        low = asyncio.create_task(_reserve("low", "normal"))
        await asyncio.sleep(0)
        high = asyncio.create_task(_reserve("high", "high"))
        await asyncio.wait_for(asyncio.gather(low, high), timeout=3.0)
        assert order == ["high", "low"]

    asyncio.run(_run())


def test_fifo_within_a_priority_class() -> None:
    async def _run() -> None:
        scheduler = AdmissionScheduler()
        scheduler.on_rate_limited(retry_after_seconds=0.05)
        order: list[int] = []

        async def _reserve(index: int) -> None:
            await scheduler.reserve_slot("LLM_REQUEST", priority="high")
            order.append(index)

        tasks = []
        for index in range(5):
            tasks.append(asyncio.create_task(_reserve(index)))
            await asyncio.sleep(0)
        await asyncio.gather(*tasks)
        assert order == [0, 1, 2, 3, 4]

    asyncio.run(_run())


def test_cancel_token_rejects_queued_reservation_and_removes_it() -> None:
    async def _run() -> None:
        scheduler = AdmissionScheduler()
        scheduler.on_rate_limited(retry_after_seconds=5)
        token = CancelToken()
        task = asyncio.create_task(scheduler.reserve_slot("LLM_REQUEST", cancel_token=token))
        await asyncio.sleep(0.01)
        assert scheduler.pending == 1

        token.cancel("user_cancelled")
        with pytest.raises(AbortedError) as excinfo:
            await asyncio.wait_for(task, timeout=0.5)

        assert excinfo.value.reason == "user_cancelled"
        assert scheduler.pending == 0
        scheduler.close()

    asyncio.run(_run())


def test_already_cancelled_token_fails_fast() -> None:
    async def _run() -> None:
        token = CancelToken()
        token.cancel()
        with pytest.raises(AbortedError):
            await AdmissionScheduler().reserve_slot("LLM_REQUEST", cancel_token=token)

    asyncio.run(_run())


def test_cancelled_waiter_leaves_the_queue() -> None:
    async def _run() -> None:
        scheduler = AdmissionScheduler()
        scheduler.on_rate_limited(retry_after_seconds=5)
        task = asyncio.create_task(scheduler.reserve_slot("LLM_REQUEST"))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert scheduler.pending == 0
        scheduler.close()

    asyncio.run(_run())


def test_close_rejects_pending_reservations() -> None:
    async def _run() -> None:
        scheduler = AdmissionScheduler()
        scheduler.on_rate_limited(retry_after_seconds=5)
        task = asyncio.create_task(scheduler.reserve_slot("LLM_REQUEST"))
        await asyncio.sleep(0.01)
        scheduler.close()
        with pytest.raises(AbortedError):
            await task

    asyncio.run(_run())


def test_bench_rate_limit_freezes_low_priority_work() -> None:
    async def _run() -> None:
        scheduler = AdmissionScheduler(AdmissionConfig(idle_poll_seconds=0.02))
        scheduler.on_rate_limited(retry_after_seconds=0.02, kind="BENCH")
        low = asyncio.create_task(scheduler.reserve_slot("BENCH"))
        high = asyncio.create_task(scheduler.reserve_slot("LLM_REQUEST", priority="high"))
        await asyncio.wait_for(high, timeout=1.0)
        await asyncio.sleep(0.1)
        assert not low.done()
        scheduler.close()
        with pytest.raises(AbortedError):
            await low

    asyncio.run(_run())


def test_token_bucket_availability_reports_fractions() -> None:
    async def _run() -> None:
        scheduler = AdmissionScheduler(AdmissionConfig(rpm=10, tpm=1000, window_seconds=60))
        await scheduler.reserve_slot("LLM_REQUEST", est_tokens=250, priority="high")
        availability = scheduler.availability()
        assert availability["rpm_remaining"] == pytest.approx(9, abs=0.01)
        assert availability["tpm_fraction"] == pytest.approx(0.75, abs=0.01)
        assert availability["pending_high"] == 0

    asyncio.run(_run())


def test_non_positive_limits_mean_unlimited() -> None:
    config = AdmissionConfig(rpm=0, tpm=-5)

    assert config.rpm is None
    assert config.tpm is None
