"""Bounded polling-until-true over an asynchronous provider operation.

``AsyncPredicate`` repeatedly invokes a side-effect-free check against an
opaque token (instance id, operation URI, ...) with exponential backoff until
the check returns true or the time budget runs out.

A falsy check result means "not ready yet" and is retried. An exception raised
by the check means "cannot tell" and propagates immediately, so a transport
failure is never mistaken for a resource that will not converge.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Generic, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_result,
    wait_exponential,
)

from cloud_provisioner.config.models import PollConfig
from cloud_provisioner.errors import ProvisioningCancelledError, WaitTimeoutError

logger = structlog.get_logger()

T = TypeVar("T")

Clock = Callable[[], float]
Sleeper = Callable[[float], Awaitable[None]]
CheckFn = Callable[[T], Awaitable[bool]]


class Outcome(StrEnum):
    SUCCESS = "success"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class PollSchedule:
    initial_delay: float = 1.0
    max_delay: float = 15.0

    @classmethod
    def from_config(cls, config: PollConfig) -> PollSchedule:
        return cls(
            initial_delay=config.initial_period_seconds,
            max_delay=config.max_period_seconds,
        )


@dataclass
class PollState:
    """Transient bookkeeping for one ``wait`` invocation. Never persisted."""

    started_at: float
    last_checked_at: float | None = None
    elapsed: float = 0.0
    delay: float = 0.0
    attempts: int = 0


class _StopAfterBudget:
    """tenacity stop condition driven by the injected clock."""

    def __init__(self, state: PollState, clock: Clock, timeout: float) -> None:
        self._state = state
        self._clock = clock
        self._timeout = timeout

    def __call__(self, retry_state: RetryCallState) -> bool:
        self._state.elapsed = self._clock() - self._state.started_at
        return self._state.elapsed >= self._timeout


class _ClippedExponentialWait:
    """Exponential backoff capped at ``max_delay`` and at the remaining budget.

    The last check therefore lands on the deadline instead of overshooting it.
    """

    def __init__(
        self,
        state: PollState,
        schedule: PollSchedule,
        clock: Clock,
        timeout: float,
    ) -> None:
        self._state = state
        self._clock = clock
        self._timeout = timeout
        self._backoff = wait_exponential(
            multiplier=schedule.initial_delay,
            min=schedule.initial_delay,
            max=schedule.max_delay,
        )

    def __call__(self, retry_state: RetryCallState) -> float:
        elapsed = self._clock() - self._state.started_at
        remaining = max(self._timeout - elapsed, 0.0)
        self._state.delay = min(self._backoff(retry_state), remaining)
        return self._state.delay


class AsyncPredicate(Generic[T]):
    """Retry-until-true predicate with its own time budget.

    Args:
        check: Coroutine function performing one provider query for a token.
        name: Name of the wait (``instance-running``, ...), used in errors.
        schedule: Initial / max poll delay.
        timeout: Overall budget in seconds. ``0`` checks exactly once.
        clock: Monotonic time source; injectable for simulated-time tests.
        sleep: Async sleeper; injectable for simulated-time tests.
    """

    def __init__(
        self,
        check: CheckFn[T],
        *,
        name: str,
        schedule: PollSchedule | None = None,
        timeout: float,
        clock: Clock = time.monotonic,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self._check = check
        self.name = name
        self._schedule = schedule or PollSchedule()
        self.timeout = timeout
        self._clock = clock
        self._sleep = sleep

    async def wait(
        self, token: T, *, cancel: asyncio.Event | None = None
    ) -> Outcome:
        """Poll until the check returns true (SUCCESS) or the budget runs out."""
        state = PollState(started_at=self._clock())

        async def _attempt() -> bool:
            if cancel is not None and cancel.is_set():
                raise ProvisioningCancelledError(
                    f"Cancelled while waiting for {self.name} ({token})"
                )
            state.attempts += 1
            state.last_checked_at = self._clock()
            ready = bool(await self._check(token))
            logger.debug(
                "wait.poll",
                wait=self.name,
                token=str(token),
                attempt=state.attempts,
                ready=ready,
            )
            return ready

        retrying = AsyncRetrying(
            retry=retry_if_result(lambda ready: not ready),
            stop=_StopAfterBudget(state, self._clock, self.timeout),
            wait=_ClippedExponentialWait(
                state, self._schedule, self._clock, self.timeout
            ),
            sleep=self._sleep,
            retry_error_callback=lambda _: False,
        )
        ready = await retrying(_attempt)

        state.elapsed = self._clock() - state.started_at
        if ready:
            logger.debug(
                "wait.succeeded",
                wait=self.name,
                token=str(token),
                attempts=state.attempts,
                elapsed=round(state.elapsed, 3),
            )
            return Outcome.SUCCESS
        logger.warning(
            "wait.timed_out",
            wait=self.name,
            token=str(token),
            attempts=state.attempts,
            elapsed=round(state.elapsed, 3),
        )
        return Outcome.TIMED_OUT

    async def require(self, token: T, *, cancel: asyncio.Event | None = None) -> None:
        """Like :meth:`wait` but raise ``WaitTimeoutError`` on timeout."""
        started = self._clock()
        outcome = await self.wait(token, cancel=cancel)
        if outcome is Outcome.TIMED_OUT:
            raise WaitTimeoutError(self.name, token, self._clock() - started)
