"""Polling engine: drives one provider job to a terminal state.

The engine is an explicit state machine::

    PENDING -> POLLING -> SUCCEEDED | FAILED | TIMED_OUT | CANCELED

The first status check runs immediately. After every non-terminal status the
progress callback fires and the engine sleeps for ``interval`` seconds on the
injected scheduler. No sleep follows the final attempt, so a run never takes
longer than ``max_attempts * interval`` plus the provider's own latency.
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from momentful.exceptions import ProviderError, ProviderUnreachableError
from momentful.schemas.provider import JobStatus, ProviderJob

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProviderJob], Any]
PollOnce = Callable[[str], Awaitable[ProviderJob]]


class PollState(str, Enum):
    PENDING = "pending"
    POLLING = "polling"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self not in (PollState.PENDING, PollState.POLLING)


class Scheduler(Protocol):
    def monotonic(self) -> float: ...

    async def sleep(self, seconds: float) -> None: ...


class AsyncioScheduler:
    """Real clock backed by the running event loop."""

    def monotonic(self) -> float:
        return asyncio.get_running_loop().time()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


@dataclass(frozen=True)
class PollResult:
    state: PollState
    job: ProviderJob | None
    attempts: int
    elapsed_seconds: float
    error: ProviderError | None = None

    @property
    def output_url(self) -> str | None:
        return self.job.output_url if self.job else None

    @property
    def error_detail(self) -> str | None:
        if self.error is not None:
            return self.error.message
        return self.job.error_detail if self.job else None


class PollingEngine:
    """Polls ``poll_once(job_id)`` until the job settles, times out or is canceled.

    ``cancel()`` is a first-class transition: it moves the engine to CANCELED,
    wakes a pending sleep, and any status check still in flight is discarded
    when it resolves. Cancelling the task that awaits ``run()`` also ends in
    CANCELED, and the CancelledError propagates.
    """

    def __init__(
        self,
        poll_once: PollOnce,
        job_id: str,
        *,
        interval: float = 2.0,
        max_attempts: int = 60,
        scheduler: Scheduler | None = None,
        on_progress: ProgressCallback | None = None,
        max_consecutive_errors: int = 3,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._poll_once = poll_once
        self.job_id = job_id
        self._interval = interval
        self._max_attempts = max_attempts
        self._scheduler = scheduler or AsyncioScheduler()
        self._on_progress = on_progress
        self._max_consecutive_errors = max_consecutive_errors

        self._state = PollState.PENDING
        self._attempts = 0
        self._consecutive_errors = 0
        self._last_job: ProviderJob | None = None
        self._error: ProviderError | None = None
        self._started_at = 0.0
        self._finished_at: float | None = None
        self._sleep_task: asyncio.Future | None = None
        self._cancel_requested = False

    @property
    def state(self) -> PollState:
        return self._state

    @property
    def attempts(self) -> int:
        return self._attempts

    def cancel(self) -> None:
        """Abandon polling. Has no effect once a terminal state is reached."""
        if self._state.is_terminal:
            return
        self._cancel_requested = True
        self._transition(PollState.CANCELED)
        if self._sleep_task is not None and not self._sleep_task.done():
            self._sleep_task.cancel()

    async def run(self) -> PollResult:
        if self._state is PollState.CANCELED:
            return self._result()
        if self._state is not PollState.PENDING:
            raise RuntimeError(f"Polling engine already used (state={self._state.value})")

        self._started_at = self._scheduler.monotonic()
        self._transition(PollState.POLLING)
        try:
            return await self._loop()
        except asyncio.CancelledError:
            if not self._state.is_terminal:
                self._transition(PollState.CANCELED)
            raise

    async def _loop(self) -> PollResult:
        while self._attempts < self._max_attempts:
            self._attempts += 1
            try:
                job = await self._poll_once(self.job_id)
            except ProviderUnreachableError as e:
                if self._state is PollState.CANCELED:
                    return self._result()
                self._consecutive_errors += 1
                if self._consecutive_errors >= self._max_consecutive_errors:
                    logger.error(
                        f"Giving up on job {self.job_id} after "
                        f"{self._consecutive_errors} consecutive unreachable checks"
                    )
                    return self._finish(PollState.FAILED, error=e)
                logger.warning(
                    f"Status check {self._attempts}/{self._max_attempts} for job "
                    f"{self.job_id} could not reach the provider: {e.message}"
                )
            except ProviderError as e:
                if self._state is PollState.CANCELED:
                    return self._result()
                return self._finish(PollState.FAILED, error=e)
            else:
                if self._state is PollState.CANCELED:
                    logger.debug(f"Discarding status of job {self.job_id} received after cancel")
                    return self._result()
                self._consecutive_errors = 0
                self._last_job = job

                if job.status == JobStatus.SUCCEEDED:
                    return self._finish(PollState.SUCCEEDED)
                if job.status == JobStatus.FAILED:
                    return self._finish(PollState.FAILED)
                if job.status == JobStatus.CANCELED:
                    return self._finish(PollState.CANCELED)

                await self._notify(job)
                if self._state is PollState.CANCELED:
                    return self._result()

            if self._attempts < self._max_attempts:
                if not await self._wait():
                    return self._result()

        logger.warning(f"Job {self.job_id} not finished after {self._attempts} status checks")
        return self._finish(PollState.TIMED_OUT)

    async def _wait(self) -> bool:
        """Sleep one interval. Returns False when cancel() interrupted the sleep."""
        self._sleep_task = asyncio.ensure_future(self._scheduler.sleep(self._interval))
        try:
            await self._sleep_task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if self._cancel_requested and not (current and current.cancelling()):
                return False
            raise
        finally:
            self._sleep_task = None
        return self._state is not PollState.CANCELED

    async def _notify(self, job: ProviderJob) -> None:
        if self._on_progress is None:
            return
        try:
            result = self._on_progress(job)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning(f"Progress callback for job {self.job_id} failed: {e}")

    def _transition(self, state: PollState) -> None:
        logger.debug(f"Job {self.job_id}: {self._state.value} -> {state.value}")
        self._state = state
        if state.is_terminal:
            self._finished_at = self._scheduler.monotonic()

    def _finish(self, state: PollState, error: ProviderError | None = None) -> PollResult:
        self._error = error
        self._transition(state)
        return self._result()

    def _result(self) -> PollResult:
        end = self._finished_at if self._finished_at is not None else self._scheduler.monotonic()
        return PollResult(
            state=self._state,
            job=self._last_job,
            attempts=self._attempts,
            elapsed_seconds=max(end - self._started_at, 0.0),
            error=self._error,
        )
