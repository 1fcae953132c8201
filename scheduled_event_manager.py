import asyncio
import logging
import os
from datetime import datetime
from typing import Optional

from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from database import async_session_maker
from event_manager import ACTIVE_STATUSES, EventError, EventManager, event_manager
from models import Event, EventStatus
from time_utils import utcnow

logger = logging.getLogger(__name__)

SCHEDULER_INTERVAL_SECONDS = float(os.getenv("SCHEDULER_INTERVAL_SECONDS", "10"))

# Share of each round spent collecting poems; the remainder is voting.
SUBMISSION_RATIO = 0.6


def expected_phase(start_time: datetime, scheduled_end: datetime, max_rounds: int,
                   now: datetime) -> Optional[tuple[EventStatus, int]]:
    """Phase and round an auto-progressing event should be in at `now`.

    The window [start_time, scheduled_end) is cut into `max_rounds` equal
    rounds. Returns None when the window is empty.
    """
    total = (scheduled_end - start_time).total_seconds()
    if total <= 0 or max_rounds < 1:
        return None

    elapsed = max(0.0, (now - start_time).total_seconds())
    round_duration = total / max_rounds
    calculated_round = int(elapsed // round_duration) + 1
    if calculated_round > max_rounds:
        return EventStatus.VOTING, max_rounds

    round_progress = (elapsed % round_duration) / round_duration
    if round_progress < SUBMISSION_RATIO:
        return EventStatus.SUBMISSION, calculated_round
    return EventStatus.VOTING, calculated_round


class ScheduledEventManager:
    """Polls the event table and moves events along their schedule.

    A failed tick is logged and retried on the next one; the database is
    the only state, so nothing needs to be rolled forward by hand.
    """

    def __init__(self, session_factory=None, interval: float = SCHEDULER_INTERVAL_SECONDS,
                 manager: Optional[EventManager] = None):
        self.session_factory = session_factory or async_session_maker
        self.interval = interval
        self.manager = manager or event_manager
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.running:
            return
        logger.info(f"Scheduled event manager started (every {self.interval:g}s)")
        self._task = asyncio.create_task(self._run())

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Scheduled event manager stopped")

    async def _run(self):
        while True:
            await self.check_and_progress_events()
            await asyncio.sleep(self.interval)

    async def check_and_progress_events(self, now: Optional[datetime] = None):
        now = now or utcnow()
        try:
            async with self.session_factory() as session:
                await self.tick(session, now)
        except Exception as e:
            logger.error(f"Error checking scheduled events: {e}", exc_info=True)

    async def tick(self, session: AsyncSession, now: datetime):
        await self.start_scheduled_events(session, now)
        await self.end_scheduled_events(session, now)
        await self.progress_active_events(session, now)

    async def start_scheduled_events(self, session: AsyncSession, now: datetime):
        stmt = (
            select(Event)
            .where(Event.status == EventStatus.SCHEDULED)
            .where(Event.scheduled_start <= now)
            .where(Event.start_time == None)  # noqa: E711
        )
        for event in (await session.exec(stmt)).all():
            logger.info(f"Starting event {event.id} ({event.type.value})")
            try:
                await self.manager.start_event(session, event.id, now=now)
            except EventError as e:
                logger.warning(f"Could not start event {event.id}: {e}")

    async def end_scheduled_events(self, session: AsyncSession, now: datetime):
        stmt = (
            select(Event)
            .where(Event.status != EventStatus.FINISHED)
            .where(Event.scheduled_end <= now)
        )
        for event in (await session.exec(stmt)).all():
            logger.info(f"Ending event {event.id} ({event.type.value})")
            try:
                await self.manager.finish_event(session, event.id, now=now)
            except EventError as e:
                logger.warning(f"Could not finish event {event.id}: {e}")

    async def progress_active_events(self, session: AsyncSession, now: datetime):
        stmt = (
            select(Event)
            .where(Event.status.in_(ACTIVE_STATUSES))
            .where(Event.auto_progress == True)  # noqa: E712
            .where(Event.start_time != None)  # noqa: E711
            .where(Event.scheduled_end > now)
        )
        for event in (await session.exec(stmt)).all():
            expected = expected_phase(event.start_time, event.scheduled_end, event.max_rounds, now)
            if expected is None:
                continue
            phase, round_number = expected
            if event.status != phase or event.current_round != round_number:
                await self.manager.sync_phase(session, event, phase, round_number)


scheduled_event_manager = ScheduledEventManager()
