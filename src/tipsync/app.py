"""Application wiring."""
import asyncio
import logging
import signal
from typing import Callable, Optional

from sqlalchemy.orm import Session

from tipsync import monitoring
from tipsync.config import settings
from tipsync.gateway.base import RemoteGateway
from tipsync.gateway.memory import InMemoryGateway
from tipsync.models.base import SessionLocal, init_db
from tipsync.models.domain import TimerState, new_id
from tipsync.services.local_store import LocalStore, TimerStateStore
from tipsync.services.reconciliation_service import ReconciliationEngine
from tipsync.services.rollover_service import RolloverService
from tipsync.services.room_service import RoomService
from tipsync.services.scheduler_service import SchedulerService
from tipsync.services.timer_service import DebouncedStateWriter, TimerStateMachine
from tipsync.utils.dt_utils import resolve_timezone


class TipSyncApp:
    """Main application class."""

    def __init__(
        self,
        gateway: Optional[RemoteGateway] = None,
        session_factory: Callable[[], Session] = SessionLocal,
        on_timer_expired: Optional[Callable[[Optional[TimerState]], None]] = None,
    ):
        """Initialize the application."""
        self.gateway = gateway
        self.session_factory = session_factory
        self.on_timer_expired = on_timer_expired
        self.engine: Optional[ReconciliationEngine] = None
        self.room: Optional[RoomService] = None
        self.rollover: Optional[RolloverService] = None
        self.scheduler: Optional[SchedulerService] = None
        self.running = False
        self.logger = logging.getLogger(__name__)

    def build(self) -> ReconciliationEngine:
        """Create the engine and the services around it."""
        actor_id = settings.sync.actor_id
        if not actor_id:
            actor_id = new_id()
            self.logger.warning(f"ACTOR_ID is not set, using generated id {actor_id}")

        writer = DebouncedStateWriter(
            TimerStateStore(settings.paths.timer_state_file),
            min_interval=settings.sync.timer_debounce,
        )
        self.engine = ReconciliationEngine(
            LocalStore(self.session_factory),
            TimerStateMachine(writer),
            actor_id=actor_id,
            tz=resolve_timezone(settings.sync.timezone),
        )
        self.room = RoomService(self.engine)
        self.rollover = RolloverService(self.engine)
        self.scheduler = SchedulerService(self.engine, self.rollover, on_timer_expired=self.on_timer_expired)
        return self.engine

    async def start(self) -> None:
        """Start the application."""
        if self.running:
            return

        try:
            # Initialize database
            init_db()
            self.logger.info("Database initialized")

            self.build()
            self.engine.load_cached()

            # Cold start rollover before the first remote snapshot
            self.rollover.check_and_reset()

            if self.gateway is None:
                self.gateway = InMemoryGateway()
                self.logger.info("No remote store configured, running in local-only mode")
            self.engine.attach(self.gateway)
            self.logger.info(f"Attached to room {settings.sync.room_id}")

            await self.scheduler.start()
            self.logger.info("Scheduler service started")

            if settings.monitoring.enabled:
                monitoring.start_monitoring(settings.monitoring.port)
                self.logger.info(f"Metrics server listening on port {settings.monitoring.port}")

            self.running = True

        except Exception as e:
            self.logger.error(f"Failed to start application: {e}")
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop the application."""
        try:
            if self.scheduler:
                await self.scheduler.stop()
                self.scheduler = None
                self.logger.info("Scheduler service stopped")

            if self.engine:
                self.engine.detach()
                self.engine.timer.writer.flush()
                self.logger.info("Engine detached, timer state flushed")

            self.running = False

        except Exception as e:
            self.logger.error(f"Error while stopping application: {e}")
            self.running = False
            self.scheduler = None
            raise

    def run(self) -> None:
        """Run the application until a signal arrives."""
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)

        def signal_handler(signum, frame):
            """Handle signals like SIGINT (Ctrl+C)."""
            self.logger.info(f"Received signal {signum}. Shutting down...")
            loop.call_soon_threadsafe(loop.stop)

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

        try:
            loop.run_until_complete(self.start())
            loop.run_forever()
        except KeyboardInterrupt:
            self.logger.info("Received keyboard interrupt")
        finally:
            loop.run_until_complete(self.stop())
            loop.close()
