import asyncio
import logging
import math
import uuid
from datetime import datetime, timedelta
from typing import Optional, Sequence

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import select, delete
from sqlmodel.ext.asyncio.session import AsyncSession

from models import (
    Event, EventStatus, EventTheme, EventType, Room, RoomParticipant,
    Submission, Theme, User, Vote,
)
from socket_manager import broadcast_to_room
from time_utils import utcnow

logger = logging.getLogger(__name__)

ROOM_CAPACITY = 80
MAX_VOTES_PER_SUBMISSION = 3
MAX_ROUNDS_LIMIT = 10
MEDAL_COUNT = 3

DEFAULT_THEMES = [
    '春の訪れ',
    '夏の思い出',
    '秋の夕暮れ',
    '冬の景色',
    '恋の歌',
    '旅の途中',
]

DEFAULT_DURATION = timedelta(minutes=90)
DAILY_DURATION = timedelta(hours=48)

ACTIVE_STATUSES = (EventStatus.SUBMISSION, EventStatus.VOTING)


class EventError(Exception):
    pass


class EventNotFoundError(EventError):
    pass


class PhaseTransitionError(EventError):
    pass


class EventValidationError(EventError):
    pass


def default_duration(event_type: EventType) -> timedelta:
    return DAILY_DURATION if event_type == EventType.DAILY else DEFAULT_DURATION


def vote_budget(participant_count: int) -> int:
    """Votes each participant may hand out: a tenth of the room, at least one."""
    return max(1, math.floor(participant_count / 10 + 0.5))


def competition_ranks(points: list[int]) -> list[int]:
    """Ranks for scores already sorted descending: equal scores share a rank (1, 2, 2, 4)."""
    ranks = []
    for index, value in enumerate(points):
        if index > 0 and value == points[index - 1]:
            ranks.append(ranks[-1])
        else:
            ranks.append(index + 1)
    return ranks


class EventManager:
    """Owns every status change of an Event and tells the rooms about it.

    Each method commits its own work. Broadcasts happen after the commit so
    clients that reload on `phase-update` see the new state.
    """

    def __init__(self):
        self._join_lock = asyncio.Lock()

    async def get_event(self, session: AsyncSession, event_id: uuid.UUID) -> Event:
        event = await session.get(Event, event_id)
        if event is None:
            raise EventNotFoundError(f"Event {event_id} not found")
        return event

    async def get_current_event(self, session: AsyncSession) -> Optional[Event]:
        """The newest in-progress event, else the next scheduled one."""
        stmt = select(Event).where(Event.status != EventStatus.FINISHED)
        events = (await session.exec(stmt)).all()

        in_progress = [e for e in events if e.status in ACTIVE_STATUSES]
        if in_progress:
            return max(in_progress, key=lambda e: e.start_time or e.scheduled_start)
        if events:
            return min(events, key=lambda e: e.scheduled_start)
        return None

    async def room_participant_count(self, session: AsyncSession, room_id: uuid.UUID) -> int:
        stmt = select(func.count(RoomParticipant.id)).where(RoomParticipant.room_id == room_id)
        return (await session.exec(stmt)).one()

    async def _get_or_create_theme(self, session: AsyncSession, content: str) -> Theme:
        stmt = select(Theme).where(Theme.content == content).where(Theme.is_approved == True)  # noqa: E712
        theme = (await session.exec(stmt)).first()
        if theme is None:
            theme = Theme(content=content, is_approved=True)
            session.add(theme)
        return theme

    async def create_event(
        self,
        session: AsyncSession,
        event_type: EventType,
        max_rounds: int,
        scheduled_start: datetime,
        scheduled_end: datetime,
        themes: Sequence[str],
    ) -> Event:
        if not 1 <= max_rounds <= MAX_ROUNDS_LIMIT:
            raise EventValidationError(f"max_rounds must be between 1 and {MAX_ROUNDS_LIMIT}")
        if len(themes) != max_rounds:
            raise EventValidationError(f"Must provide {max_rounds} themes (one per round)")
        if any(not t or not t.strip() for t in themes):
            raise EventValidationError("Themes cannot be blank")
        if scheduled_start >= scheduled_end:
            raise EventValidationError("scheduled_end must be after scheduled_start")

        event = Event(
            type=event_type,
            status=EventStatus.SCHEDULED,
            max_rounds=max_rounds,
            scheduled_start=scheduled_start,
            scheduled_end=scheduled_end,
        )
        session.add(event)
        session.add(Room(event_id=event.id, room_number=1))

        for round_number, content in enumerate(themes, start=1):
            theme = await self._get_or_create_theme(session, content.strip())
            session.add(EventTheme(event_id=event.id, theme_id=theme.id, round=round_number))

        await session.commit()
        await session.refresh(event)
        logger.info(f"Created {event.type.value} event {event.id} "
                    f"({event.scheduled_start.isoformat()} - {event.scheduled_end.isoformat()})")
        return event

    async def create_scheduled_event(self, session: AsyncSession, event_type: EventType) -> Event:
        """An event that starts now with the type's default length and themes."""
        scheduled_start = utcnow()
        return await self.create_event(
            session,
            event_type,
            max_rounds=len(DEFAULT_THEMES),
            scheduled_start=scheduled_start,
            scheduled_end=scheduled_start + default_duration(event_type),
            themes=DEFAULT_THEMES,
        )

    async def _seat_of(self, session: AsyncSession, event_id: uuid.UUID,
                       user_id: uuid.UUID) -> Optional[Room]:
        stmt = (
            select(Room)
            .join(RoomParticipant, RoomParticipant.room_id == Room.id)
            .where(Room.event_id == event_id)
            .where(RoomParticipant.user_id == user_id)
        )
        return (await session.exec(stmt)).first()

    async def join_event(self, session: AsyncSession, user: User) -> tuple[Event, Room]:
        """Seat the user in the current event, opening a new room when all are full.

        Seating is serialised in-process by a lock and across workers by a
        row lock on the event. SQLite ignores FOR UPDATE, so there the lock
        alone holds.
        """
        user_id = user.id
        async with self._join_lock:
            event = await self.get_current_event(session)
            if event is None:
                raise EventNotFoundError("No active event")
            event_id = event.id

            await session.exec(select(Event.id).where(Event.id == event_id).with_for_update())

            existing_room = await self._seat_of(session, event_id, user_id)
            if existing_room is not None:
                await session.commit()
                return event, existing_room

            try:
                room, participant_count = await self._take_seat(session, event, user_id)
            except IntegrityError:
                # The same user joined from another worker in the meantime
                await session.rollback()
                event = await self.get_event(session, event_id)
                existing_room = await self._seat_of(session, event_id, user_id)
                if existing_room is None:
                    raise
                return event, existing_room

        logger.info(f"User {user_id} joined event {event_id} room {room.room_number} "
                    f"({participant_count} participants)")
        await broadcast_to_room(room.id, 'participant-count', {
            'room_id': room.id,
            'count': participant_count,
        })
        return event, room

    async def _take_seat(self, session: AsyncSession, event: Event,
                         user_id: uuid.UUID) -> tuple[Room, int]:
        rooms = (await session.exec(
            select(Room).where(Room.event_id == event.id).order_by(Room.room_number)
        )).all()
        count_stmt = (
            select(RoomParticipant.room_id, func.count(RoomParticipant.id))
            .join(Room, RoomParticipant.room_id == Room.id)
            .where(Room.event_id == event.id)
            .group_by(RoomParticipant.room_id)
        )
        counts = {room_id: count for room_id, count in (await session.exec(count_stmt)).all()}

        room = next((r for r in rooms if counts.get(r.id, 0) < ROOM_CAPACITY), None)
        if room is None:
            room = Room(event_id=event.id, room_number=len(rooms) + 1)
            session.add(room)
            logger.info(f"Event {event.id}: all rooms full, opened room {room.room_number}")

        session.add(RoomParticipant(room_id=room.id, user_id=user_id))
        await session.commit()
        return room, counts.get(room.id, 0) + 1

    async def _broadcast_phase(self, session: AsyncSession, event: Event):
        rooms = (await session.exec(select(Room).where(Room.event_id == event.id))).all()
        for room in rooms:
            await broadcast_to_room(room.id, 'phase-update', {
                'phase': event.status,
                'event_id': event.id,
                'round': event.current_round,
            })

    async def _apply_phase(
        self,
        session: AsyncSession,
        event: Event,
        status: EventStatus,
        round_number: Optional[int] = None,
    ) -> Event:
        event.status = status
        if round_number is not None:
            event.current_round = round_number
        session.add(event)
        await session.commit()

        logger.info(f"Event {event.id}: round {event.current_round}, phase {status.value}")
        await self._broadcast_phase(session, event)
        return event

    async def start_event(self, session: AsyncSession, event_id: uuid.UUID,
                          now: Optional[datetime] = None) -> Event:
        event = await self.get_event(session, event_id)
        if event.status != EventStatus.SCHEDULED:
            raise PhaseTransitionError(f"Event is already {event.status.value}")
        event.start_time = now or utcnow()
        return await self._apply_phase(session, event, EventStatus.SUBMISSION, 1)

    async def open_voting(self, session: AsyncSession, event_id: uuid.UUID) -> Event:
        event = await self.get_event(session, event_id)
        if event.status != EventStatus.SUBMISSION:
            raise PhaseTransitionError(f"Cannot open voting while event is {event.status.value}")
        event.auto_progress = False
        return await self._apply_phase(session, event, EventStatus.VOTING)

    async def next_round(self, session: AsyncSession, event_id: uuid.UUID) -> Event:
        event = await self.get_event(session, event_id)
        if event.status != EventStatus.VOTING:
            raise PhaseTransitionError(f"Cannot advance round while event is {event.status.value}")
        if event.current_round >= event.max_rounds:
            return await self.finish_event(session, event_id)
        event.auto_progress = False
        return await self._apply_phase(session, event, EventStatus.SUBMISSION, event.current_round + 1)

    async def finish_event(self, session: AsyncSession, event_id: uuid.UUID,
                           now: Optional[datetime] = None) -> Event:
        event = await self.get_event(session, event_id)
        if event.status == EventStatus.FINISHED:
            return event

        # Claim the finish with a conditional UPDATE so only one caller awards points
        end_time = now or utcnow()
        claimed = await session.execute(
            update(Event)
            .where(Event.id == event_id)
            .where(Event.status != EventStatus.FINISHED)
            .values(status=EventStatus.FINISHED, end_time=end_time)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount == 0:
            await session.refresh(event)
            await session.commit()
            logger.info(f"Event {event_id} was already finished elsewhere")
            return event

        event.end_time = end_time
        await self._award_points(session, event)
        return await self._apply_phase(session, event, EventStatus.FINISHED)

    async def sync_phase(self, session: AsyncSession, event: Event,
                         status: EventStatus, round_number: int) -> Event:
        """Time-driven move used by the poller; skips the manual transition checks."""
        round_number = min(max(1, round_number), event.max_rounds)
        return await self._apply_phase(session, event, status, round_number)

    async def _award_points(self, session: AsyncSession, event: Event):
        stmt = (
            select(Submission.user_id, func.sum(Submission.points))
            .join(Room, Submission.room_id == Room.id)
            .where(Room.event_id == event.id)
            .group_by(Submission.user_id)
        )
        totals = {user_id: int(total or 0) for user_id, total in (await session.exec(stmt)).all()}

        ranked = sorted(((uid, pts) for uid, pts in totals.items() if pts > 0),
                        key=lambda item: item[1], reverse=True)
        ranks = competition_ranks([pts for _, pts in ranked])
        # Everyone tied within the top three gets a medal
        medalists = {uid for (uid, _), rank in zip(ranked, ranks) if rank <= MEDAL_COUNT}

        for user_id, points in totals.items():
            user = await session.get(User, user_id)
            if user is None:
                continue
            user.total_points += points
            if user_id in medalists:
                user.medals += 1
            session.add(user)
        logger.info(f"Event {event.id}: awarded points to {len(totals)} users, "
                    f"{len(medalists)} medals")

    async def update_event(
        self,
        session: AsyncSession,
        event_id: uuid.UUID,
        event_type: Optional[EventType] = None,
        scheduled_start: Optional[datetime] = None,
        scheduled_end: Optional[datetime] = None,
        status: Optional[EventStatus] = None,
    ) -> Event:
        event = await self.get_event(session, event_id)
        new_start = scheduled_start or event.scheduled_start
        new_end = scheduled_end or event.scheduled_end
        if new_start >= new_end:
            raise EventValidationError("scheduled_end must be after scheduled_start")

        if event_type is not None:
            event.type = event_type
        event.scheduled_start = new_start
        event.scheduled_end = new_end

        if status is not None and status != event.status:
            if status == EventStatus.FINISHED:
                session.add(event)
                await session.commit()
                return await self.finish_event(session, event_id)
            if status != EventStatus.SCHEDULED and event.start_time is None:
                event.start_time = utcnow()
            event.auto_progress = False
            return await self._apply_phase(session, event, status)

        session.add(event)
        await session.commit()
        await session.refresh(event)
        return event

    async def delete_event(self, session: AsyncSession, event_id: uuid.UUID):
        await self.get_event(session, event_id)

        room_ids = select(Room.id).where(Room.event_id == event_id)
        submission_ids = select(Submission.id).where(Submission.room_id.in_(room_ids))

        await session.execute(delete(Vote).where(Vote.submission_id.in_(submission_ids)))
        await session.execute(delete(Submission).where(Submission.room_id.in_(room_ids)))
        await session.execute(delete(RoomParticipant).where(RoomParticipant.room_id.in_(room_ids)))
        await session.execute(delete(Room).where(Room.event_id == event_id))
        await session.execute(delete(EventTheme).where(EventTheme.event_id == event_id))
        await session.execute(delete(Event).where(Event.id == event_id))
        await session.commit()
        logger.info(f"Deleted event {event_id}")


event_manager = EventManager()
