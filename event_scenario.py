"""Walk a live server through one round of an event.

Admin creates a one-round event, two poets join, submit, vote, and the
admin finishes the event. Run against a seeded server:

    python event_scenario.py
"""
import asyncio
import logging
import os

import httpx
import socketio

# Configure logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

BASE_URL = "http://localhost:8000"
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "admin@tanka-chaya.com")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "admin123")

POEMS = {
    "poet-a": ["春の夜の", "夢の浮橋", "とだえして", "峰に別るる", "横雲の空"],
    "poet-b": ["ひさかたの", "光のどけき", "春の日に", "しづ心なく", "花の散るらむ"],
}


async def login_or_register(client: httpx.AsyncClient, name: str) -> dict:
    email = f"{name}@tanka-chaya.test"
    res = await client.post("/api/auth/login", json={"email": email, "password": "scenario"})
    if res.status_code == 401:
        res = await client.post("/api/auth/register", json={
            "email": email, "password": "scenario", "display_name": name
        })
    res.raise_for_status()
    return res.json()


def bearer(auth: dict) -> dict:
    return {"Authorization": f"Bearer {auth['token']}"}


async def run_scenario():
    async with httpx.AsyncClient(base_url=BASE_URL) as client:
        # 1. Admin creates a one-round event starting now
        res = await client.post("/api/auth/login", json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD})
        if res.status_code != 200:
            logger.error(f"Admin login failed: {res.text}")
            return
        admin = bearer(res.json())

        res = await client.post("/api/admin/events", headers=admin, json={
            "type": "night", "max_rounds": 1, "themes": ["春の夜"]
        })
        res.raise_for_status()
        event_id = res.json()["event"]["id"]
        logger.info(f"Created event {event_id}")

        # 2. Poets join and listen on the socket
        poets = {name: await login_or_register(client, name) for name in POEMS}
        sockets = {}
        rooms = {}
        for name, auth in poets.items():
            joined = (await client.post("/api/events/join", headers=bearer(auth))).json()
            rooms[name] = joined["room_id"]

            sio = socketio.AsyncClient()

            @sio.on('phase-update')
            async def on_phase(data, name=name):
                logger.info(f"[{name}] phase-update: {data}")

            await sio.connect(BASE_URL, auth={"token": auth["token"]})
            await sio.emit('join-room', joined["room_id"])
            sockets[name] = sio

        # 3. Start, submit, open voting
        await client.post(f"/api/admin/events/{event_id}/start", headers=admin)
        await asyncio.sleep(1)

        for name, lines in POEMS.items():
            res = await client.post("/api/submissions", headers=bearer(poets[name]), json={
                "room_id": rooms[name], "round": 1,
                **{f"line{i + 1}": line for i, line in enumerate(lines)},
            })
            logger.info(f"{name} submitted: {res.status_code}")

        await client.post(f"/api/admin/events/{event_id}/open-voting", headers=admin)
        await asyncio.sleep(1)

        # 4. Each poet gives their single vote to the other poem
        for name, auth in poets.items():
            listed = await client.get(f"/api/submissions/room/{rooms[name]}/round/1", headers=bearer(auth))
            mine = (await client.get(f"/api/submissions/mine/{rooms[name]}/1", headers=bearer(auth))).json()
            others = [s for s in listed.json()["submissions"] if s["id"] != mine["submission"]["id"]]
            if others:
                res = await client.post("/api/votes", headers=bearer(auth), json={
                    "votes": [{"submission_id": others[0]["id"], "vote_count": 1}]
                })
                logger.info(f"{name} voted: {res.status_code}")

        # 5. Finish and read the results
        await client.post(f"/api/admin/events/{event_id}/next-round", headers=admin)
        await asyncio.sleep(1)
        rankings = (await client.get(f"/api/rankings/event/{event_id}")).json()["rankings"]
        for entry in rankings:
            logger.info(f"#{entry['rank']} {entry['user']['display_name']}: {entry['points']} points")

    for sio in sockets.values():
        await sio.disconnect()
    logger.info("Scenario Complete")


if __name__ == "__main__":
    asyncio.run(run_scenario())
