"""Daily rollover: clears the previous days' completion state."""
import logging
from datetime import date, datetime
from typing import Optional

from tipsync import monitoring
from tipsync.models.domain import Category
from tipsync.models.sync_models import Mutation
from tipsync.services.reconciliation_service import ReconciliationEngine
from tipsync.utils.dt_utils import day_of, today as today_in

logger = logging.getLogger(__name__)


class RolloverService:
    """Runs the daily reset at most once per calendar day."""

    def __init__(self, engine: ReconciliationEngine):
        self.engine = engine

    def needs_reset(self, today: date) -> bool:
        return self.engine.last_reset_date() != today

    def check_and_reset(self, today: Optional[date] = None, now: Optional[datetime] = None) -> bool:
        """Reset if the last reset happened on another day.

        Removes events dated before today in every cycle, expands every
        category, keeps the timer only if it is active and not yet due, and
        records today as the last reset date. Returns True if a reset ran;
        calling it again on the same day does nothing.
        """
        engine = self.engine
        now = now or engine.clock()
        today = today or today_in(engine.tz, now)

        with engine.lock:
            last_reset = engine.last_reset_date()
            if last_reset == today:
                return False
            logger.info(f"Daily rollover: last reset {last_reset}, today {today}")

            state = engine.state
            for cycle_id, log in state.events.items():
                if any(day_of(e.timestamp, engine.tz) < today for entries in log.values() for e in entries):
                    engine.apply_local_mutation(Mutation.prune_events(cycle_id, today))

            for category in Category:
                if state.category_collapsed.get(category.value):
                    engine.apply_local_mutation(Mutation.set_category_collapsed(category, False))

            if engine.clear_stale_timer(now):
                logger.info("Cleared timer that was no longer running")

            engine.set_last_reset_date(today)
            monitoring.rollovers.inc()
            return True
