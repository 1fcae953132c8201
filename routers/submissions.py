from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import selectinload
from sqlmodel.ext.asyncio.session import AsyncSession
from sqlmodel import select
from pydantic import BaseModel
from typing import Optional
import logging
import uuid

from database import get_session
from models import Event, EventStatus, EventTheme, Room, RoomParticipant, Submission, User
from security import get_current_user
from socket_manager import serialize
from time_utils import utcnow

router = APIRouter(prefix="/api/submissions", tags=["submissions"])
logger = logging.getLogger(__name__)

LINE_FIELDS = ("line1", "line2", "line3", "line4", "line5")


class SubmissionRequest(BaseModel):
    room_id: Optional[uuid.UUID] = None
    round: Optional[int] = None
    line1: str = ""
    line2: str = ""
    line3: str = ""
    line4: str = ""
    line5: str = ""


async def is_participant(session: AsyncSession, room_id: uuid.UUID, user_id: uuid.UUID) -> bool:
    stmt = (
        select(RoomParticipant)
        .where(RoomParticipant.room_id == room_id)
        .where(RoomParticipant.user_id == user_id)
    )
    return (await session.exec(stmt)).first() is not None


@router.post("")
async def submit_tanka(req: SubmissionRequest, user: User = Depends(get_current_user),
                       session: AsyncSession = Depends(get_session)):
    """Create or edit the user's poem for a room and round."""
    lines = {field: getattr(req, field).strip() for field in LINE_FIELDS}
    if not req.room_id or not req.round or not all(lines.values()):
        raise HTTPException(status_code=400, detail="All fields are required")

    room = await session.get(Room, req.room_id)
    if not room:
        raise HTTPException(status_code=404, detail="Room not found")

    if not await is_participant(session, room.id, user.id):
        raise HTTPException(status_code=403, detail="You have not joined this room")

    event = await session.get(Event, room.event_id)
    if event.status != EventStatus.SUBMISSION or event.current_round != req.round:
        raise HTTPException(status_code=409, detail="Submissions are closed for this round")

    stmt = (
        select(Submission)
        .where(Submission.user_id == user.id)
        .where(Submission.room_id == room.id)
        .where(Submission.round == req.round)
    )
    submission = (await session.exec(stmt)).first()

    if submission:
        for field, value in lines.items():
            setattr(submission, field, value)
        submission.updated_at = utcnow()
    else:
        submission = Submission(user_id=user.id, room_id=room.id, round=req.round, **lines)

    session.add(submission)
    await session.commit()
    await session.refresh(submission)

    logger.info(f"User {user.id} submitted for room {room.id} round {req.round}")
    return {"submission": serialize(submission.model_dump())}


@router.get("/mine")
async def get_my_submissions(user: User = Depends(get_current_user),
                             session: AsyncSession = Depends(get_session)):
    """Every poem the user has written, with its event and theme."""
    stmt = (
        select(Submission)
        .where(Submission.user_id == user.id)
        .options(selectinload(Submission.room).selectinload(Room.event))
        .order_by(Submission.created_at.desc())
        .execution_options(populate_existing=True)
    )
    submissions = (await session.exec(stmt)).all()

    event_ids = {s.room.event_id for s in submissions}
    themes = {}
    if event_ids:
        theme_stmt = (
            select(EventTheme)
            .where(EventTheme.event_id.in_(event_ids))
            .options(selectinload(EventTheme.theme))
        )
        for et in (await session.exec(theme_stmt)).all():
            themes[(et.event_id, et.round)] = et.theme.content if et.theme else None

    results = []
    for s in submissions:
        data = serialize(s.model_dump())
        event = s.room.event
        data["theme"] = themes.get((event.id, s.round))
        data["room"] = {
            "id": str(s.room.id),
            "room_number": s.room.room_number,
            "event": {
                "id": str(event.id),
                "type": event.type.value,
                "status": event.status.value,
                "scheduled_start": event.scheduled_start.isoformat(),
                "end_time": event.end_time.isoformat() if event.end_time else None,
            },
        }
        results.append(data)
    return {"submissions": results}


@router.get("/mine/{room_id}/{round}")
async def get_my_submission(room_id: uuid.UUID, round: int, user: User = Depends(get_current_user),
                            session: AsyncSession = Depends(get_session)):
    stmt = (
        select(Submission)
        .where(Submission.user_id == user.id)
        .where(Submission.room_id == room_id)
        .where(Submission.round == round)
    )
    submission = (await session.exec(stmt)).first()
    return {"submission": serialize(submission.model_dump()) if submission else None}


@router.get("/room/{room_id}/round/{round}")
async def get_room_submissions(room_id: uuid.UUID, round: int, user: User = Depends(get_current_user),
                               session: AsyncSession = Depends(get_session)):
    """Poems for a room and round, without author information."""
    stmt = (
        select(Submission)
        .where(Submission.room_id == room_id)
        .where(Submission.round == round)
        .options(selectinload(Submission.votes))
        .order_by(Submission.created_at)
        .execution_options(populate_existing=True)
    )
    submissions = (await session.exec(stmt)).all()

    return {
        "submissions": [
            {
                "id": str(s.id),
                "line1": s.line1,
                "line2": s.line2,
                "line3": s.line3,
                "line4": s.line4,
                "line5": s.line5,
                "points": s.points,
                "vote_count": sum(v.vote_count for v in s.votes),
            }
            for s in submissions
        ]
    }
