from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import selectinload
from sqlmodel.ext.asyncio.session import AsyncSession
from sqlmodel import select
import uuid

from database import get_session
from event_manager import competition_ranks
from models import Event, EventStatus, Room, Submission, User

router = APIRouter(prefix="/api/rankings", tags=["rankings"])

GLOBAL_RANKING_SIZE = 100


def revealed_rounds_filter(event: Event):
    """Rounds whose authors may be shown: all once finished, else the closed ones."""
    if event.status == EventStatus.FINISHED:
        return None
    if event.status == EventStatus.SCHEDULED:
        return Submission.round < 1
    return Submission.round < event.current_round


@router.get("/event/{event_id}")
async def get_event_rankings(event_id: uuid.UUID, session: AsyncSession = Depends(get_session)):
    """Submissions of an event ordered by points, with their authors."""
    event = await session.get(Event, event_id)
    if not event:
        raise HTTPException(status_code=404, detail="Event not found")

    stmt = (
        select(Submission)
        .join(Room, Submission.room_id == Room.id)
        .where(Room.event_id == event_id)
        .options(selectinload(Submission.user), selectinload(Submission.votes))
        .order_by(Submission.points.desc(), Submission.created_at)
        .execution_options(populate_existing=True)
    )
    round_filter = revealed_rounds_filter(event)
    if round_filter is not None:
        stmt = stmt.where(round_filter)
    submissions = (await session.exec(stmt)).all()

    ranks = competition_ranks([s.points for s in submissions])
    rankings = []
    for submission, rank in zip(submissions, ranks):
        rankings.append({
            "id": str(submission.id),
            "room_id": str(submission.room_id),
            "round": submission.round,
            "line1": submission.line1,
            "line2": submission.line2,
            "line3": submission.line3,
            "line4": submission.line4,
            "line5": submission.line5,
            "points": submission.points,
            "vote_count": sum(v.vote_count for v in submission.votes),
            "rank": rank,
            "user": {
                "id": str(submission.user.id),
                "display_name": submission.user.display_name,
            } if submission.user else None,
        })
    return {"rankings": rankings}


@router.get("/global")
async def get_global_rankings(session: AsyncSession = Depends(get_session)):
    stmt = (
        select(User)
        .order_by(User.total_points.desc(), User.medals.desc(), User.created_at)
        .limit(GLOBAL_RANKING_SIZE)
    )
    users = (await session.exec(stmt)).all()
    return {
        "rankings": [
            {
                "id": str(u.id),
                "display_name": u.display_name,
                "total_points": u.total_points,
                "medals": u.medals,
            }
            for u in users
        ]
    }
