import asyncio
import pytest
import uuid
from datetime import timedelta
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.orm.attributes import set_committed_value
from sqlmodel import SQLModel, select
from sqlmodel.ext.asyncio.session import AsyncSession

import event_manager as event_manager_module
from event_manager import (
    event_manager, vote_budget, default_duration,
    EventNotFoundError, EventValidationError, PhaseTransitionError,
)
from models import (
    Event, EventStatus, EventTheme, EventType, Room, RoomParticipant, Submission, Theme, User, Vote,
)
from time_utils import utcnow


def phase_updates(emit):
    return [c for c in emit.await_args_list if c.args[0] == 'phase-update']


def make_submission(user, room, round_number=1, points=0):
    return Submission(
        user_id=user.id, room_id=room.id, round=round_number, points=points,
        line1="春の夜の", line2="夢の浮橋", line3="とだえして", line4="峰に別るる", line5="横雲の空",
    )


def test_vote_budget():
    assert vote_budget(0) == 1
    assert vote_budget(4) == 1
    assert vote_budget(5) == 1
    assert vote_budget(14) == 1
    assert vote_budget(15) == 2
    assert vote_budget(25) == 3
    assert vote_budget(80) == 8


def test_default_duration():
    assert default_duration(EventType.NIGHT) == timedelta(minutes=90)
    assert default_duration(EventType.DAILY) == timedelta(hours=48)


@pytest.mark.asyncio(loop_scope="session")
async def test_create_event(session, make_event):
    event = await make_event(max_rounds=3)

    assert event.status == EventStatus.SCHEDULED
    assert event.current_round == 1
    assert event.start_time is None

    rooms = (await session.exec(select(Room).where(Room.event_id == event.id))).all()
    assert [r.room_number for r in rooms] == [1]

    themes = (await session.exec(
        select(EventTheme).where(EventTheme.event_id == event.id).order_by(EventTheme.round)
    )).all()
    assert [t.round for t in themes] == [1, 2, 3]


@pytest.mark.asyncio(loop_scope="session")
async def test_create_event_reuses_themes(session, make_event):
    await make_event(max_rounds=2)
    await make_event(max_rounds=2)

    themes = (await session.exec(select(Theme))).all()
    assert sorted(t.content for t in themes) == ["お題1", "お題2"]


@pytest.mark.asyncio(loop_scope="session")
async def test_create_event_validation(session):
    start = utcnow()
    end = start + timedelta(minutes=90)

    with pytest.raises(EventValidationError):
        await event_manager.create_event(session, EventType.NIGHT, 2, start, end, ["一つだけ"])
    with pytest.raises(EventValidationError):
        await event_manager.create_event(session, EventType.NIGHT, 0, start, end, [])
    with pytest.raises(EventValidationError):
        await event_manager.create_event(session, EventType.NIGHT, 11, start, end, ["t"] * 11)
    with pytest.raises(EventValidationError):
        await event_manager.create_event(session, EventType.NIGHT, 1, end, start, ["逆"])
    with pytest.raises(EventValidationError):
        await event_manager.create_event(session, EventType.NIGHT, 1, start, end, ["  "])

    assert (await session.exec(select(Event))).all() == []


@pytest.mark.asyncio(loop_scope="session")
async def test_create_scheduled_event(session):
    event = await event_manager.create_scheduled_event(session, EventType.DAILY)

    assert event.max_rounds == len(event_manager_module.DEFAULT_THEMES)
    assert event.scheduled_end - event.scheduled_start == timedelta(hours=48)


@pytest.mark.asyncio(loop_scope="session")
async def test_current_event_prefers_in_progress(session, make_event):
    soon = await make_event(start=utcnow() + timedelta(minutes=10))
    later = await make_event(start=utcnow() + timedelta(days=1))

    assert (await event_manager.get_current_event(session)).id == soon.id

    await event_manager.start_event(session, later.id)
    assert (await event_manager.get_current_event(session)).id == later.id

    await event_manager.finish_event(session, later.id)
    assert (await event_manager.get_current_event(session)).id == soon.id


@pytest.mark.asyncio(loop_scope="session")
async def test_join_event_fills_rooms(session, make_event, make_user, monkeypatch, emitted):
    monkeypatch.setattr(event_manager_module, "ROOM_CAPACITY", 2)
    event = await make_event()
    users = [await make_user() for _ in range(3)]

    seats = [await event_manager.join_event(session, u) for u in users]
    assert [room.room_number for _, room in seats] == [1, 1, 2]
    assert all(e.id == event.id for e, _ in seats)

    # Joining again keeps the same seat
    _, again = await event_manager.join_event(session, users[0])
    assert again.id == seats[0][1].id
    participants = (await session.exec(select(RoomParticipant))).all()
    assert len(participants) == 3

    counts = [c for c in emitted.await_args_list if c.args[0] == 'participant-count']
    assert [c.args[1]["count"] for c in counts] == [1, 2, 1]


@pytest.mark.asyncio(loop_scope="session")
async def test_join_without_event(session, make_user):
    user = await make_user()
    with pytest.raises(EventNotFoundError):
        await event_manager.join_event(session, user)


@pytest.mark.asyncio(loop_scope="session")
async def test_manual_lifecycle(session, make_event, make_user, emitted):
    event = await make_event(max_rounds=2)
    user = await make_user()
    _, room = await event_manager.join_event(session, user)

    event = await event_manager.start_event(session, event.id)
    assert (event.status, event.current_round) == (EventStatus.SUBMISSION, 1)
    assert event.start_time is not None
    assert event.auto_progress is True

    event = await event_manager.open_voting(session, event.id)
    assert (event.status, event.current_round) == (EventStatus.VOTING, 1)
    assert event.auto_progress is False

    event = await event_manager.next_round(session, event.id)
    assert (event.status, event.current_round) == (EventStatus.SUBMISSION, 2)

    await event_manager.open_voting(session, event.id)
    event = await event_manager.next_round(session, event.id)
    assert event.status == EventStatus.FINISHED
    assert event.end_time is not None

    updates = phase_updates(emitted)
    assert [c.args[1]["phase"] for c in updates] == [
        "submission", "voting", "submission", "voting", "finished",
    ]
    assert all(c.kwargs["room"] == f"room-{room.id}" for c in updates)
    assert updates[2].args[1]["round"] == 2


@pytest.mark.asyncio(loop_scope="session")
async def test_invalid_transitions(session, make_event):
    event = await make_event()

    with pytest.raises(PhaseTransitionError):
        await event_manager.open_voting(session, event.id)
    with pytest.raises(PhaseTransitionError):
        await event_manager.next_round(session, event.id)

    await event_manager.start_event(session, event.id)
    with pytest.raises(PhaseTransitionError):
        await event_manager.start_event(session, event.id)

    await event_manager.finish_event(session, event.id)
    with pytest.raises(PhaseTransitionError):
        await event_manager.open_voting(session, event.id)


@pytest.mark.asyncio(loop_scope="session")
async def test_unknown_event(session):
    with pytest.raises(EventNotFoundError):
        await event_manager.start_event(session, uuid.uuid4())


@pytest.mark.asyncio(loop_scope="session")
async def test_finish_awards_points_and_medals(session, make_event, make_user):
    event = await make_event(max_rounds=2)
    users = [await make_user() for _ in range(5)]
    for u in users:
        await event_manager.join_event(session, u)
    room = (await session.exec(select(Room).where(Room.event_id == event.id))).first()

    # Two rounds for the first user, one for the rest
    points = [4, 3, 2, 1, 0]
    for u, p in zip(users, points):
        session.add(make_submission(u, room, 1, p))
    session.add(make_submission(users[0], room, 2, 2))
    await session.commit()

    await event_manager.start_event(session, event.id)
    await event_manager.finish_event(session, event.id)

    for u in users:
        await session.refresh(u)
    assert [u.total_points for u in users] == [6, 3, 2, 1, 0]
    assert [u.medals for u in users] == [1, 1, 1, 0, 0]

    # Finishing twice awards nothing more
    await event_manager.finish_event(session, event.id)
    for u in users:
        await session.refresh(u)
    assert [u.total_points for u in users] == [6, 3, 2, 1, 0]


@pytest.mark.asyncio(loop_scope="session")
async def test_medals_shared_on_ties(session, make_event, make_user):
    event = await make_event(max_rounds=1)
    users = [await make_user() for _ in range(5)]
    for u in users:
        _, room = await event_manager.join_event(session, u)
    for u, p in zip(users, [5, 3, 2, 2, 1]):
        session.add(make_submission(u, room, 1, p))
    await session.commit()

    await event_manager.finish_event(session, event.id)

    for u in users:
        await session.refresh(u)
    assert [u.medals for u in users] == [1, 1, 1, 1, 0]


@pytest.mark.asyncio(loop_scope="session")
async def test_finish_awards_once_on_stale_status(session, make_event, make_user):
    event = await make_event(max_rounds=1)
    poet = await make_user()
    _, room = await event_manager.join_event(session, poet)
    session.add(make_submission(poet, room, 1, 3))
    await session.commit()

    await event_manager.finish_event(session, event.id)

    # A second finisher that read the event before it was finished
    set_committed_value(event, "status", EventStatus.VOTING)
    await event_manager.finish_event(session, event.id)

    await session.refresh(poet)
    assert poet.total_points == 3
    assert poet.medals == 1
    assert event.status == EventStatus.FINISHED


@pytest.mark.asyncio(loop_scope="session")
async def test_concurrent_joins_respect_capacity(tmp_path, monkeypatch):
    monkeypatch.setattr(event_manager_module, "ROOM_CAPACITY", 1)
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'joins.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    make_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async def join(user):
        async with make_session() as session:
            _, room = await event_manager.join_event(session, user)
            return room.room_number

    try:
        async with make_session() as session:
            start = utcnow() + timedelta(hours=1)
            await event_manager.create_event(session, EventType.NIGHT, 1, start,
                                             start + timedelta(minutes=90), ["夜"])
            poets = [User(email=f"poet{i}@example.com", password_hash="x", display_name=f"Poet {i}")
                     for i in range(2)]
            session.add_all(poets)
            await session.commit()

        numbers = await asyncio.gather(join(poets[0]), join(poets[1]))
        assert sorted(numbers) == [1, 2]

        # The same poet joining twice at once keeps a single seat
        numbers = await asyncio.gather(join(poets[0]), join(poets[0]))
        assert numbers[0] == numbers[1]

        async with make_session() as session:
            assert len((await session.exec(select(Room))).all()) == 2
            assert len((await session.exec(select(RoomParticipant))).all()) == 2
    finally:
        await engine.dispose()


@pytest.mark.asyncio(loop_scope="session")
async def test_update_event(session, make_event):
    event = await make_event()
    new_end = event.scheduled_end + timedelta(hours=1)

    event = await event_manager.update_event(session, event.id, event_type=EventType.SEASONAL,
                                             scheduled_end=new_end)
    assert event.type == EventType.SEASONAL
    assert event.scheduled_end == new_end

    with pytest.raises(EventValidationError):
        await event_manager.update_event(session, event.id,
                                         scheduled_start=new_end + timedelta(minutes=1))

    event = await event_manager.update_event(session, event.id, status=EventStatus.VOTING)
    assert event.status == EventStatus.VOTING
    assert event.start_time is not None
    assert event.auto_progress is False

    event = await event_manager.update_event(session, event.id, status=EventStatus.FINISHED)
    assert event.status == EventStatus.FINISHED
    assert event.end_time is not None


@pytest.mark.asyncio(loop_scope="session")
async def test_delete_event(session, make_event, make_user):
    event = await make_event()
    voter = await make_user()
    _, room = await event_manager.join_event(session, voter)
    submission = make_submission(voter, room)
    session.add(submission)
    await session.commit()
    session.add(Vote(voter_id=voter.id, submission_id=submission.id))
    await session.commit()

    await event_manager.delete_event(session, event.id)

    for model in (Event, Room, RoomParticipant, EventTheme, Submission, Vote):
        assert (await session.exec(select(model))).all() == []
    # Themes outlive the events that used them
    assert len((await session.exec(select(Theme))).all()) == 2

    with pytest.raises(EventNotFoundError):
        await event_manager.delete_event(session, event.id)
