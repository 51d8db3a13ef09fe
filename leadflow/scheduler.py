"""Periodic driver that hands due executions to the step processor."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from .config import SchedulerConfig
from .contracts import ProcessResult
from .persistence import WorkflowRepository
from .persistence.models import WorkflowExecution, utcnow
from .processor import StepProcessor

logger = logging.getLogger(__name__)


class SchedulerLoop:
    """Claims due executions and processes each one independently.

    A pass is safe to run concurrently with other passes, in this process or
    another: executions are claimed atomically before any email goes out.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        processor: StepProcessor,
        config: Optional[SchedulerConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._processor = processor
        self._config = config or SchedulerConfig()
        self._clock = clock
        self._pass_in_progress = False

    async def process_scheduled_steps(self) -> ProcessResult:
        """Process every execution due now. Returns how many were processed."""
        now = self._clock()
        lease_until = now + timedelta(seconds=self._config.lease_seconds)
        try:
            claimed = await self._repository.claim_due_executions(
                now, lease_until, self._config.batch_size
            )
        except Exception as e:
            logger.exception("Failed to claim due executions")
            return ProcessResult(success=False, error=str(e))

        logger.info(f"{len(claimed)} executions to process")

        if self._config.concurrency <= 1:
            for execution in claimed:
                await self._process_one(execution)
        else:
            semaphore = asyncio.Semaphore(self._config.concurrency)

            async def guarded(execution: WorkflowExecution) -> None:
                async with semaphore:
                    await self._process_one(execution)

            await asyncio.gather(*(guarded(e) for e in claimed))

        return ProcessResult(processed_count=len(claimed))

    async def _process_one(self, execution: WorkflowExecution) -> None:
        try:
            await self._processor.process(execution)
        except Exception:
            # The claim lapses at lease expiry and the step is retried then.
            logger.exception(f"Could not record result for execution {execution.id}")

    async def _tick(self) -> None:
        self._pass_in_progress = True
        try:
            result = await self.process_scheduled_steps()
            if not result.success:
                logger.error(f"Scheduler pass failed: {result.error}")
        finally:
            self._pass_in_progress = False

    async def run_forever(
        self,
        interval_seconds: Optional[float] = None,
        iterations: Optional[int] = None,
    ) -> None:
        """Start a pass every ``interval_seconds`` until cancelled.

        A tick is skipped while the previous pass is still running. With
        ``iterations`` set, the loop stops after that many ticks and waits
        for the last pass to finish.
        """
        interval = self._config.interval_seconds if interval_seconds is None else interval_seconds
        logger.info(f"Processing scheduled steps every {interval} seconds")
        ticks = 0
        current: Optional[asyncio.Task] = None
        try:
            while iterations is None or ticks < iterations:
                if self._pass_in_progress:
                    logger.warning("Previous pass still running, skipping tick")
                else:
                    current = asyncio.create_task(self._tick())
                    # let the pass mark itself in progress before the next check
                    await asyncio.sleep(0)
                ticks += 1
                if iterations is not None and ticks >= iterations:
                    break
                await asyncio.sleep(interval)
        finally:
            if current is not None and not current.done():
                await current
        logger.info("Scheduler stopped")
