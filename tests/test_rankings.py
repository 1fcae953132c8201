import pytest
import uuid

from event_manager import event_manager
from models import Submission
from routers.rankings import competition_ranks


def test_competition_ranks():
    assert competition_ranks([]) == []
    assert competition_ranks([5, 3, 3, 1]) == [1, 2, 2, 4]
    assert competition_ranks([2, 2, 2]) == [1, 1, 1]
    assert competition_ranks([0]) == [1]


async def seed_round(session, make_event, make_user, points):
    """Event in round-1 voting with one scored poem per poet."""
    event = await make_event(max_rounds=2)
    poets = [await make_user(display_name=f"歌人{i}") for i in range(len(points))]
    room = None
    for poet in poets:
        _, room = await event_manager.join_event(session, poet)
    await event_manager.start_event(session, event.id)
    for poet, p in zip(poets, points):
        session.add(Submission(user_id=poet.id, room_id=room.id, round=1, points=p,
                               line1="a", line2="b", line3="c", line4="d", line5="e"))
    await session.commit()
    await event_manager.open_voting(session, event.id)
    return event, poets


@pytest.mark.asyncio(loop_scope="session")
async def test_event_rankings_after_finish(client, session, make_event, make_user):
    event, poets = await seed_round(session, make_event, make_user, [1, 3, 3, 0])
    await event_manager.finish_event(session, event.id)

    response = await client.get(f"/api/rankings/event/{event.id}")
    assert response.status_code == 200
    rankings = response.json()["rankings"]
    assert [r["points"] for r in rankings] == [3, 3, 1, 0]
    assert [r["rank"] for r in rankings] == [1, 1, 3, 4]
    assert rankings[2]["user"]["display_name"] == "歌人0"
    assert rankings[3]["user"]["id"] == str(poets[3].id)


@pytest.mark.asyncio(loop_scope="session")
async def test_event_rankings_reveal_closed_rounds_only(client, session, make_event, make_user):
    event, poets = await seed_round(session, make_event, make_user, [2, 1])

    response = await client.get(f"/api/rankings/event/{event.id}")
    assert response.json()["rankings"] == []

    await event_manager.next_round(session, event.id)
    response = await client.get(f"/api/rankings/event/{event.id}")
    rankings = response.json()["rankings"]
    assert [r["round"] for r in rankings] == [1, 1]
    assert [r["points"] for r in rankings] == [2, 1]


@pytest.mark.asyncio(loop_scope="session")
async def test_event_rankings_unknown_event(client):
    response = await client.get(f"/api/rankings/event/{uuid.uuid4()}")
    assert response.status_code == 404


@pytest.mark.asyncio(loop_scope="session")
async def test_global_rankings(client, session, make_event, make_user):
    event, poets = await seed_round(session, make_event, make_user, [1, 5, 2])
    await event_manager.finish_event(session, event.id)
    latecomer = await make_user(display_name="新人")

    response = await client.get("/api/rankings/global")
    assert response.status_code == 200
    rankings = response.json()["rankings"]
    assert [r["display_name"] for r in rankings] == ["歌人1", "歌人2", "歌人0", "新人"]
    assert [r["total_points"] for r in rankings] == [5, 2, 1, 0]
    assert [r["medals"] for r in rankings] == [1, 1, 1, 0]
    assert rankings[-1]["id"] == str(latecomer.id)
