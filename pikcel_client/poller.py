import asyncio
import inspect
import time
from typing import Any, Awaitable, Callable, Optional

from loguru import logger

from pikcel_client.models import Job, PollingConfig, PollResult, PollState

ProgressCallback = Callable[[Job], Any]


class JobPoller:
    """Observes a remote job until it reaches a terminal status.

    The loop is an explicit state machine: it starts in `polling` and
    leaves it for exactly one of `terminal`, `timed_out` or `cancelled`.
    Setting `cancel_event` stops the loop between iterations; a status
    request that is already in flight is allowed to finish.
    """

    def __init__(
        self,
        fetch_status: Callable[[str], Awaitable[Job]],
        config: Optional[PollingConfig] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._fetch_status = fetch_status
        self.config = config or PollingConfig()
        self.on_progress = on_progress
        self.cancel_event = cancel_event
        self._clock = clock
        self.logger = logger

    def _cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    async def _report(self, job: Job) -> None:
        if self.on_progress is None:
            return
        result = self.on_progress(job)
        if inspect.isawaitable(result):
            await result

    async def _wait_interval(self) -> None:
        """Sleeps one poll interval, waking early on cancellation"""
        if self.cancel_event is None:
            await asyncio.sleep(self.config.interval)
            return
        try:
            await asyncio.wait_for(self.cancel_event.wait(), self.config.interval)
        except asyncio.TimeoutError:
            pass

    async def run(self, job_id: str) -> PollResult:
        start_time = self._clock()
        state = PollState.polling
        job: Optional[Job] = None
        attempts = 0

        while state is PollState.polling:
            if self._cancelled():
                state = PollState.cancelled
                break

            job = await self._fetch_status(job_id)
            attempts += 1
            await self._report(job)

            if job.is_terminal:
                state = PollState.terminal
            elif self._clock() - start_time > self.config.timeout:
                state = PollState.timed_out
            else:
                self.logger.debug(
                    f"Job {job_id} is {job.status.value}, "
                    f"checking again in {self.config.interval:.2f}s"
                )
                await self._wait_interval()

        elapsed = self._clock() - start_time
        self.logger.info(
            f"Stopped polling job {job_id}: {state.value} after {attempts} "
            f"checks in {elapsed:.2f}s"
        )
        return PollResult(state=state, job=job, attempts=attempts, elapsed=elapsed)
