from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import func
from sqlmodel.ext.asyncio.session import AsyncSession
from sqlmodel import select
from pydantic import BaseModel
from datetime import datetime
from typing import List, Optional
import logging
import uuid

from database import get_session
from event_manager import event_manager, default_duration, EventError
from models import Event, EventStatus, EventType, Submission, User, Vote
from security import require_admin, user_public
from socket_manager import serialize
from time_utils import to_utc_naive, utcnow
from .events import event_detail_options, event_payload, raise_for_event_error

router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(require_admin)])
logger = logging.getLogger(__name__)


class CreateEventRequest(BaseModel):
    """Body for creating an event. Missing times default to now + type duration."""
    type: EventType
    max_rounds: int = 6
    scheduled_start: Optional[datetime] = None
    scheduled_end: Optional[datetime] = None
    themes: List[str] = []


class QuickEventRequest(BaseModel):
    type: EventType = EventType.NIGHT


class UpdateEventRequest(BaseModel):
    type: Optional[EventType] = None
    scheduled_start: Optional[datetime] = None
    scheduled_end: Optional[datetime] = None
    status: Optional[EventStatus] = None


@router.post("/events", status_code=201)
async def create_event(req: CreateEventRequest, session: AsyncSession = Depends(get_session)):
    scheduled_start = to_utc_naive(req.scheduled_start) or utcnow()
    scheduled_end = to_utc_naive(req.scheduled_end) or scheduled_start + default_duration(req.type)

    try:
        event = await event_manager.create_event(
            session,
            req.type,
            req.max_rounds,
            scheduled_start,
            scheduled_end,
            req.themes,
        )
    except EventError as e:
        raise_for_event_error(e)

    return {"event": serialize(event.model_dump())}


@router.post("/events/quick", status_code=201)
async def create_quick_event(req: QuickEventRequest, session: AsyncSession = Depends(get_session)):
    """Event starting now with the default themes, for rehearsals and testing."""
    event = await event_manager.create_scheduled_event(session, req.type)
    return {"event": serialize(event.model_dump())}


@router.get("/events")
async def list_events(session: AsyncSession = Depends(get_session)):
    """All events, past and future."""
    stmt = (
        select(Event)
        .options(*event_detail_options(include_submissions=False))
        .order_by(Event.scheduled_start.desc())
        .execution_options(populate_existing=True)
    )
    events = (await session.exec(stmt)).all()
    return {"events": [event_payload(e, include_submissions=False) for e in events]}


@router.put("/events/{event_id}")
async def update_event(event_id: uuid.UUID, req: UpdateEventRequest, session: AsyncSession = Depends(get_session)):
    try:
        event = await event_manager.update_event(
            session,
            event_id,
            event_type=req.type,
            scheduled_start=to_utc_naive(req.scheduled_start),
            scheduled_end=to_utc_naive(req.scheduled_end),
            status=req.status,
        )
    except EventError as e:
        raise_for_event_error(e)
    return {"event": serialize(event.model_dump())}


@router.delete("/events/{event_id}")
async def delete_event(event_id: uuid.UUID, session: AsyncSession = Depends(get_session)):
    try:
        await event_manager.delete_event(session, event_id)
    except EventError as e:
        raise_for_event_error(e)
    return {"message": "Event deleted successfully"}


@router.post("/events/{event_id}/start")
async def start_event(event_id: uuid.UUID, session: AsyncSession = Depends(get_session)):
    try:
        event = await event_manager.start_event(session, event_id)
    except EventError as e:
        raise_for_event_error(e)
    return {"event": serialize(event.model_dump())}


@router.post("/events/{event_id}/open-voting")
async def open_voting(event_id: uuid.UUID, session: AsyncSession = Depends(get_session)):
    try:
        event = await event_manager.open_voting(session, event_id)
    except EventError as e:
        raise_for_event_error(e)
    return {"event": serialize(event.model_dump())}


@router.post("/events/{event_id}/next-round")
async def next_round(event_id: uuid.UUID, session: AsyncSession = Depends(get_session)):
    try:
        event = await event_manager.next_round(session, event_id)
    except EventError as e:
        raise_for_event_error(e)
    return {"event": serialize(event.model_dump())}


@router.post("/events/{event_id}/finish")
async def finish_event(event_id: uuid.UUID, session: AsyncSession = Depends(get_session)):
    try:
        event = await event_manager.finish_event(session, event_id)
    except EventError as e:
        raise_for_event_error(e)
    return {"event": serialize(event.model_dump())}


@router.get("/users")
async def list_users(session: AsyncSession = Depends(get_session)):
    users = (await session.exec(select(User).order_by(User.created_at.desc()))).all()
    return {"users": [user_public(u) for u in users]}


@router.post("/users/{user_id}/admin")
async def make_admin(user_id: uuid.UUID, session: AsyncSession = Depends(get_session)):
    user = await session.get(User, user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")

    user.is_admin = True
    session.add(user)
    await session.commit()
    logger.info(f"User {user.id} promoted to admin")
    return {"user": user_public(user)}


@router.get("/stats")
async def get_stats(session: AsyncSession = Depends(get_session)):
    async def count(stmt) -> int:
        return (await session.exec(stmt)).one()

    return {
        "stats": {
            "total_users": await count(select(func.count(User.id))),
            "total_events": await count(select(func.count(Event.id))),
            "active_events": await count(
                select(func.count(Event.id)).where(Event.status != EventStatus.FINISHED)
            ),
            "total_submissions": await count(select(func.count(Submission.id))),
            "total_votes": await count(select(func.count(Vote.id))),
        }
    }
