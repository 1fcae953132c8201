from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import func
from sqlmodel.ext.asyncio.session import AsyncSession
from sqlmodel import select, delete
from pydantic import BaseModel
from typing import List
import logging
import uuid

from database import get_session
from event_manager import event_manager, vote_budget, MAX_VOTES_PER_SUBMISSION
from models import Event, EventStatus, Room, Submission, User, Vote
from security import get_current_user
from socket_manager import serialize
from .submissions import is_participant

router = APIRouter(prefix="/api/votes", tags=["votes"])
logger = logging.getLogger(__name__)


class VoteItem(BaseModel):
    submission_id: uuid.UUID
    vote_count: int


class VoteRequest(BaseModel):
    votes: List[VoteItem] = []


async def recompute_points(session: AsyncSession, room_id: uuid.UUID, round_number: int):
    """Set every submission's points in a room/round to the sum of its votes."""
    totals_stmt = (
        select(Vote.submission_id, func.sum(Vote.vote_count))
        .join(Submission, Vote.submission_id == Submission.id)
        .where(Submission.room_id == room_id)
        .where(Submission.round == round_number)
        .group_by(Vote.submission_id)
    )
    totals = {sid: int(total or 0) for sid, total in (await session.exec(totals_stmt)).all()}

    subs_stmt = (
        select(Submission)
        .where(Submission.room_id == room_id)
        .where(Submission.round == round_number)
    )
    for submission in (await session.exec(subs_stmt)).all():
        submission.points = totals.get(submission.id, 0)
        session.add(submission)


@router.post("")
async def submit_votes(req: VoteRequest, user: User = Depends(get_current_user),
                       session: AsyncSession = Depends(get_session)):
    """Replace the voter's ballot for one room and round."""
    if not req.votes:
        raise HTTPException(status_code=400, detail="Invalid votes data")

    submission_ids = [v.submission_id for v in req.votes]
    if len(set(submission_ids)) != len(submission_ids):
        raise HTTPException(status_code=400, detail="Each submission may appear only once")
    if any(v.vote_count > MAX_VOTES_PER_SUBMISSION for v in req.votes):
        raise HTTPException(status_code=400, detail=f"Maximum {MAX_VOTES_PER_SUBMISSION} votes per submission")
    if any(v.vote_count < 0 for v in req.votes):
        raise HTTPException(status_code=400, detail="Vote counts cannot be negative")

    ballot = {v.submission_id: v.vote_count for v in req.votes if v.vote_count > 0}
    if not ballot:
        raise HTTPException(status_code=400, detail="Invalid votes data")

    submissions = (await session.exec(
        select(Submission).where(Submission.id.in_(list(ballot)))
    )).all()
    if len(submissions) != len(ballot):
        raise HTTPException(status_code=404, detail="Submission not found")

    targets = {(s.room_id, s.round) for s in submissions}
    if len(targets) != 1:
        raise HTTPException(status_code=400, detail="Votes must target a single room and round")
    room_id, round_number = targets.pop()

    room = await session.get(Room, room_id)
    event = await session.get(Event, room.event_id)
    if event.status != EventStatus.VOTING or event.current_round != round_number:
        raise HTTPException(status_code=409, detail="Voting is closed for this round")

    if not await is_participant(session, room_id, user.id):
        raise HTTPException(status_code=403, detail="You have not joined this room")

    budget = vote_budget(await event_manager.room_participant_count(session, room_id))
    total = sum(ballot.values())
    if total > budget:
        raise HTTPException(status_code=400, detail=f"Vote budget exceeded ({total}/{budget})")

    round_submissions = (
        select(Submission.id)
        .where(Submission.room_id == room_id)
        .where(Submission.round == round_number)
    )
    await session.execute(
        delete(Vote)
        .where(Vote.voter_id == user.id)
        .where(Vote.submission_id.in_(round_submissions))
    )

    created = [Vote(voter_id=user.id, submission_id=sid, vote_count=count) for sid, count in ballot.items()]
    session.add_all(created)
    await session.flush()

    await recompute_points(session, room_id, round_number)
    await session.commit()

    logger.info(f"User {user.id} cast {total}/{budget} votes in room {room_id} round {round_number}")
    return {"votes": [serialize(v.model_dump()) for v in created]}


@router.get("/check/{room_id}/{round}")
async def check_votes(room_id: uuid.UUID, round: int, user: User = Depends(get_current_user),
                      session: AsyncSession = Depends(get_session)):
    stmt = (
        select(Vote)
        .join(Submission, Vote.submission_id == Submission.id)
        .where(Vote.voter_id == user.id)
        .where(Submission.room_id == room_id)
        .where(Submission.round == round)
    )
    votes = (await session.exec(stmt)).all()
    budget = vote_budget(await event_manager.room_participant_count(session, room_id))

    return {
        "has_voted": len(votes) > 0,
        "votes": [serialize(v.model_dump()) for v in votes],
        "vote_budget": budget,
    }
