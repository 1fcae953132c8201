from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import func
from sqlalchemy.orm import selectinload
from sqlmodel.ext.asyncio.session import AsyncSession
from sqlmodel import select
import uuid
from typing import Optional

from database import get_session
from event_manager import (
    event_manager, vote_budget,
    EventError, EventNotFoundError, PhaseTransitionError,
)
from models import Event, EventStatus, EventTheme, Room, RoomParticipant, Submission, User
from security import get_current_user
from socket_manager import serialize

router = APIRouter(prefix="/api/events", tags=["events"])


def raise_for_event_error(e: EventError):
    """Translate an event manager error into the matching HTTP error."""
    if isinstance(e, EventNotFoundError):
        raise HTTPException(status_code=404, detail=str(e))
    if isinstance(e, PhaseTransitionError):
        raise HTTPException(status_code=409, detail=str(e))
    raise HTTPException(status_code=400, detail=str(e))


def event_detail_options(include_submissions: bool = True) -> list:
    options = [
        selectinload(Event.rooms).selectinload(Room.participants),
        selectinload(Event.themes).selectinload(EventTheme.theme),
    ]
    if include_submissions:
        options += [
            selectinload(Event.rooms).selectinload(Room.submissions).selectinload(Submission.votes),
            selectinload(Event.rooms).selectinload(Room.submissions).selectinload(Submission.user),
        ]
    return options


async def load_event_detail(session: AsyncSession, event_id: uuid.UUID,
                            include_submissions: bool = True) -> Optional[Event]:
    stmt = (
        select(Event)
        .where(Event.id == event_id)
        .options(*event_detail_options(include_submissions))
        .execution_options(populate_existing=True)
    )
    return (await session.exec(stmt)).first()


def submission_payload(submission: Submission, reveal_author: bool) -> dict:
    data = serialize(submission.model_dump())
    data["vote_count"] = sum(v.vote_count for v in submission.votes)
    if reveal_author and submission.user is not None:
        data["user"] = {"id": str(submission.user.id), "display_name": submission.user.display_name}
    else:
        # Authors stay anonymous until the event is over
        data.pop("user_id", None)
    return data


def event_payload(event: Event, include_submissions: bool = True) -> dict:
    """Event with its rooms and themes, shaped for the room and admin pages."""
    reveal = event.status == EventStatus.FINISHED
    data = serialize(event.model_dump())

    rooms = []
    for room in sorted(event.rooms, key=lambda r: r.room_number):
        room_data = serialize(room.model_dump())
        room_data["participants"] = [serialize(p.model_dump()) for p in room.participants]
        room_data["vote_budget"] = vote_budget(len(room.participants))
        if include_submissions:
            room_data["submissions"] = [submission_payload(s, reveal) for s in room.submissions]
        rooms.append(room_data)
    data["rooms"] = rooms
    data["participant_count"] = sum(len(r.participants) for r in event.rooms)

    themes = sorted(event.themes, key=lambda t: t.round)
    data["themes"] = [
        {
            "id": str(et.id),
            "round": et.round,
            "theme": serialize(et.theme.model_dump()) if et.theme else None,
        }
        for et in themes
    ]
    current = next((et for et in themes if et.round == event.current_round), None)
    data["current_theme"] = current.theme.content if current and current.theme else None
    return data


@router.get("/current")
async def get_current_event(session: AsyncSession = Depends(get_session)):
    """The event the home page should point at, or null."""
    current = await event_manager.get_current_event(session)
    if current is None:
        return {"event": None}
    event = await load_event_detail(session, current.id, include_submissions=False)
    return {"event": event_payload(event, include_submissions=False)}


@router.get("/history")
async def get_event_history(session: AsyncSession = Depends(get_session)):
    """Finished events, newest first."""
    stmt = (
        select(Event)
        .where(Event.status == EventStatus.FINISHED)
        .order_by(Event.end_time.desc())
    )
    events = (await session.exec(stmt)).all()

    count_stmt = (
        select(Room.event_id, func.count(RoomParticipant.id))
        .join(RoomParticipant, RoomParticipant.room_id == Room.id)
        .group_by(Room.event_id)
    )
    counts = {event_id: count for event_id, count in (await session.exec(count_stmt)).all()}

    history = []
    for event in events:
        data = serialize(event.model_dump())
        data["participant_count"] = counts.get(event.id, 0)
        history.append(data)
    return {"events": history}


@router.get("/{event_id}")
async def get_event(event_id: uuid.UUID, session: AsyncSession = Depends(get_session)):
    event = await load_event_detail(session, event_id)
    if not event:
        raise HTTPException(status_code=404, detail="Event not found")
    return {"event": event_payload(event)}


@router.post("/join")
async def join_event(user: User = Depends(get_current_user), session: AsyncSession = Depends(get_session)):
    """Join the current event; the user lands in the first room with space."""
    try:
        event, room = await event_manager.join_event(session, user)
    except EventError as e:
        raise_for_event_error(e)

    return {
        "event_id": str(event.id),
        "room_id": str(room.id),
        "room_number": room.room_number,
    }
