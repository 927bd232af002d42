"""Unit tests for AsyncPredicate polling with simulated time."""

from __future__ import annotations

import asyncio

import pytest

from cloud_provisioner.config.models import PollConfig
from cloud_provisioner.errors import (
    ProvisioningCancelledError,
    TransportError,
    WaitTimeoutError,
)
from cloud_provisioner.provisioning.waiter import AsyncPredicate, Outcome, PollSchedule


def _countdown(ready_after: int):
    calls: list[str] = []

    async def check(token: str) -> bool:
        calls.append(token)
        return len(calls) >= ready_after

    return check, calls


def _predicate(check, clock, *, timeout: float = 10.0) -> AsyncPredicate[str]:
    return AsyncPredicate(
        check,
        name="instance-running",
        schedule=PollSchedule(initial_delay=1.0, max_delay=4.0),
        timeout=timeout,
        clock=clock,
        sleep=clock.sleep,
    )


class TestPollSchedule:
    def test_from_config(self):
        schedule = PollSchedule.from_config(
            PollConfig(initial_period_seconds=0.5, max_period_seconds=8)
        )
        assert schedule == PollSchedule(initial_delay=0.5, max_delay=8.0)


@pytest.mark.asyncio
class TestAsyncPredicate:
    async def test_immediate_success_does_not_sleep(self, clock):
        check, calls = _countdown(1)
        outcome = await _predicate(check, clock).wait("eu-west/i-1")
        assert outcome is Outcome.SUCCESS
        assert calls == ["eu-west/i-1"]
        assert clock.sleeps == []

    async def test_backoff_grows_to_max_delay(self, clock):
        check, calls = _countdown(5)
        outcome = await _predicate(check, clock, timeout=100).wait("t")
        assert outcome is Outcome.SUCCESS
        assert len(calls) == 5
        assert clock.sleeps == [1.0, 2.0, 4.0, 4.0]

    async def test_times_out_on_the_deadline(self, clock):
        async def never(token: str) -> bool:
            return False

        outcome = await _predicate(never, clock, timeout=10).wait("t")
        assert outcome is Outcome.TIMED_OUT
        # The last delay is clipped to the remaining budget.
        assert clock.sleeps == [1.0, 2.0, 4.0, 3.0]
        assert clock.now == 10.0

    async def test_zero_timeout_checks_exactly_once(self, clock):
        check, calls = _countdown(2)
        outcome = await _predicate(check, clock, timeout=0).wait("t")
        assert outcome is Outcome.TIMED_OUT
        assert len(calls) == 1
        assert clock.sleeps == []

    async def test_zero_timeout_succeeds_when_already_true(self, clock):
        check, _ = _countdown(1)
        assert await _predicate(check, clock, timeout=0).wait("t") is Outcome.SUCCESS

    async def test_check_exception_propagates_without_retry(self, clock):
        calls = 0

        async def broken(token: str) -> bool:
            nonlocal calls
            calls += 1
            raise TransportError("connection refused")

        with pytest.raises(TransportError, match="connection refused"):
            await _predicate(broken, clock).wait("t")
        assert calls == 1

    async def test_require_raises_wait_timeout(self, clock):
        async def never(token: str) -> bool:
            return False

        with pytest.raises(WaitTimeoutError) as exc_info:
            await _predicate(never, clock, timeout=5).require("eu-west/i-9")
        err = exc_info.value
        assert err.wait == "instance-running"
        assert err.token == "eu-west/i-9"
        assert err.elapsed == pytest.approx(5.0)
        assert isinstance(err, TimeoutError)

    async def test_require_returns_on_success(self, clock):
        check, _ = _countdown(2)
        await _predicate(check, clock).require("t")

    async def test_cancel_stops_polling(self, clock):
        cancel = asyncio.Event()
        calls = 0

        async def check(token: str) -> bool:
            nonlocal calls
            calls += 1
            cancel.set()
            return False

        with pytest.raises(ProvisioningCancelledError, match="instance-running"):
            await _predicate(check, clock).wait("t", cancel=cancel)
        assert calls == 1

    async def test_already_cancelled_never_checks(self, clock):
        cancel = asyncio.Event()
        cancel.set()
        check, calls = _countdown(1)
        with pytest.raises(ProvisioningCancelledError):
            await _predicate(check, clock).wait("t", cancel=cancel)
        assert calls == []
