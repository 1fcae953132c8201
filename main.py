from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import logging
import socketio

from socket_manager import sio, CLIENT_URL
from database import init_db
from routers import auth, events, submissions, votes, rankings, admin
from scheduled_event_manager import scheduled_event_manager

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    try:
        await init_db()
    except Exception as e:
        logger.critical(f"Database initialization failed: {e}")
        logger.critical("Continuing to start server, but database features will fail.")
    scheduled_event_manager.start()
    yield

    # Shutdown
    await scheduled_event_manager.stop()


server = FastAPI(title="短歌茶屋 Tanka Chaya", lifespan=lifespan)

# Wildcard origins cannot be combined with credentials
server.add_middleware(
    CORSMiddleware,
    allow_origins=[CLIENT_URL],
    allow_credentials=CLIENT_URL != "*",
    allow_methods=["*"],
    allow_headers=["*"],
)

# API Routers
server.include_router(auth.router)
server.include_router(events.router)
server.include_router(submissions.router)
server.include_router(votes.router)
server.include_router(rankings.router)
server.include_router(admin.router)


@server.get("/api/health")
async def health():
    return {"status": "ok"}


# Mount Socket.IO
app = socketio.ASGIApp(sio, server)
