# portraitbook/polling.py
"""
Background status polling for a training job.

One poll loop per poller: start() cancels whatever was running. The loop stops
on a terminal status, and also on the first failed fetch (fail-stop); after a
failure the last good record stays as-is until someone re-checks manually.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional

from portraitbook.records import TrainingJobRecord
from portraitbook.training import TrainingJobManager

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 5.0


class TrainingPoller:
    def __init__(
        self,
        manager: TrainingJobManager,
        interval: float = DEFAULT_POLL_INTERVAL,
        on_update: Optional[Callable[[TrainingJobRecord], None]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.manager = manager
        self.interval = interval
        self.on_update = on_update
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self.training_id: Optional[str] = None
        self.last_record: Optional[TrainingJobRecord] = None
        self.last_error: Optional[str] = None

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, training_id: str) -> asyncio.Task:
        self.stop()
        self.training_id = training_id
        self.last_error = None
        self._task = asyncio.create_task(self._run(training_id))
        logger.info("[%s] polling every %ss", training_id, self.interval)
        return self._task

    def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def wait(self) -> None:
        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def _run(self, training_id: str) -> None:
        while True:
            await self._sleep(self.interval)
            try:
                record, _ = await self.manager.get_status(training_id)
            except Exception as e:
                # fail-stop: a failed tick halts automatic updates
                logger.warning("[%s] polling error, stopping: %s", training_id, e)
                self.last_error = str(e)
                return

            self.last_record = record
            if self.on_update is not None:
                self.on_update(record)
            if record.is_terminal:
                logger.info("[%s] reached %s, polling stopped", training_id, record.status)
                return
