"""Service for running the engine's periodic tasks."""
import asyncio
import logging
from typing import Any, Callable, Dict, Optional

from tipsync.config import settings
from tipsync.models.domain import TimerState
from tipsync.services.reconciliation_service import ReconciliationEngine
from tipsync.services.rollover_service import RolloverService

logger = logging.getLogger(__name__)

ExpiryHook = Callable[[Optional[TimerState]], None]


class SchedulerService:
    """Service for running rollover checks, timer ticks and write retries."""

    def __init__(
        self,
        engine: ReconciliationEngine,
        rollover: RolloverService,
        on_timer_expired: Optional[ExpiryHook] = None,
        rollover_interval: float = settings.sync.rollover_check_interval,
        tick_interval: float = settings.sync.timer_tick_interval,
        retry_interval: float = settings.sync.retry_interval,
    ):
        """Initialize the service with the engine it drives."""
        self.engine = engine
        self.rollover = rollover
        self.on_timer_expired = on_timer_expired
        self.rollover_interval = rollover_interval
        self.tick_interval = tick_interval
        self.retry_interval = retry_interval
        self.tasks: Dict[str, asyncio.Task] = {}
        self.running = False

    async def start(self) -> None:
        """Start the scheduler service."""
        if self.running:
            return

        self.running = True
        logger.info("Starting scheduler service...")

        # Start rollover check task
        self.tasks["rollover_checks"] = asyncio.create_task(self._run_rollover_checks())

        # Start timer tick task
        self.tasks["timer_ticks"] = asyncio.create_task(self._run_timer_ticks())

        # Start failed write retry task
        self.tasks["write_retries"] = asyncio.create_task(self._run_write_retries())

    async def stop(self) -> None:
        """Stop the scheduler service."""
        if not self.running:
            return

        self.running = False
        logger.info("Stopping scheduler service...")

        # Cancel all tasks
        for task in self.tasks.values():
            task.cancel()

        # Wait for tasks to complete
        await asyncio.gather(*self.tasks.values(), return_exceptions=True)
        self.tasks.clear()

        # Write any timer state still held back by the debounce
        self.engine.timer.writer.flush()

    async def _run_rollover_checks(self) -> None:
        """Run daily rollover check task."""
        while self.running:
            try:
                if self.rollover.check_and_reset():
                    logger.info("Daily rollover performed")
                await asyncio.sleep(self.rollover_interval)

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in rollover check task: {e}")
                await asyncio.sleep(self.rollover_interval)

    async def _run_timer_ticks(self) -> None:
        """Run timer tick task."""
        while self.running:
            try:
                if self.engine.tick():
                    logger.info("Treatment timer expired")
                    if self.on_timer_expired:
                        try:
                            self.on_timer_expired(self.engine.timer.state)
                        except Exception as e:
                            logger.error(f"Error in timer expiry hook: {e}")
                await asyncio.sleep(self.tick_interval)

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in timer tick task: {e}")
                await asyncio.sleep(self.tick_interval)

    async def _run_write_retries(self) -> None:
        """Run failed write retry task."""
        while self.running:
            try:
                await asyncio.sleep(self.retry_interval)
                retried = self.engine.retry_failed_writes()
                if retried:
                    logger.info(f"Retried {retried} failed writes")

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in write retry task: {e}")

    def schedule_task(
        self,
        name: str,
        coro: Callable,
        interval: float,
        *args: Any,
        **kwargs: Any,
    ) -> None:
        """Schedule a new periodic task."""
        if name in self.tasks:
            logger.warning(f"Task {name} already exists")
            return

        async def run_task() -> None:
            while self.running:
                try:
                    await coro(*args, **kwargs)
                    await asyncio.sleep(interval)
                except asyncio.CancelledError:
                    break
                except Exception as e:
                    logger.error(f"Error in task {name}: {e}")
                    await asyncio.sleep(interval)

        self.tasks[name] = asyncio.create_task(run_task())
        logger.info(f"Scheduled task: {name}")

    def cancel_task(self, name: str) -> None:
        """Cancel a scheduled task."""
        if name not in self.tasks:
            logger.warning(f"Task {name} does not exist")
            return

        self.tasks[name].cancel()
        del self.tasks[name]
        logger.info(f"Cancelled task: {name}")
