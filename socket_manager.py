import socketio
import logging
import os
import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from socketio.exceptions import ConnectionRefusedError

from database import async_session_maker
from models import User
from security import decode_access_token

# Set up logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

CLIENT_URL = os.getenv("CLIENT_URL", "*")

sio = socketio.AsyncServer(
    async_mode='asgi',
    cors_allowed_origins=CLIENT_URL if CLIENT_URL == "*" else [CLIENT_URL],
    ping_timeout=25,
    ping_interval=10
)

# ---------------------------------------------------------------------------
# ROOM PRESENCE: which sockets are currently inside each logical room.
# Socket.IO tracks this too, but keeping our own maps lets us report counts
# and clean up on disconnect without reaching into the manager internals.
# ---------------------------------------------------------------------------
_room_members: dict[str, set[str]] = {}    # room key -> {sid}
_sid_rooms: dict[str, set[str]] = {}       # sid -> {room key}


def room_key(room_id: Any) -> str:
    return f"room-{room_id}"


def get_online_count(room_id: Any) -> int:
    """Number of sockets currently joined to a room."""
    return len(_room_members.get(room_key(room_id), ()))


def serialize(data):
    """Recursively serialize data for Socket.IO emission."""
    if isinstance(data, list):
        return [serialize(item) for item in data]
    if isinstance(data, dict):
        return {key: serialize(value) for key, value in data.items()}
    if isinstance(data, uuid.UUID):
        return str(data)
    if isinstance(data, Enum):
        return data.value
    if isinstance(data, Decimal):
        return float(data)
    if isinstance(data, datetime):
        return data.isoformat()
    return data


async def broadcast_to_room(room_id: Any, event: str, data: dict):
    """Emit to every socket in a room. Delivery failures are logged, never raised."""
    try:
        await sio.emit(event, serialize(data), room=room_key(room_id))
    except Exception as e:
        logger.error(f"Error broadcasting {event} to room {room_id}: {e}")


async def broadcast_online_count(room_id: Any):
    await broadcast_to_room(room_id, 'online-count', {
        'room_id': room_id,
        'count': get_online_count(room_id),
    })


def _parse_room_id(data) -> Optional[str]:
    """Clients send either the bare room id or {'room_id': ...}."""
    if isinstance(data, dict):
        data = data.get('room_id')
    if not data:
        return None
    try:
        return str(uuid.UUID(str(data)))
    except ValueError:
        return None


def _track_join(sid: str, key: str):
    _room_members.setdefault(key, set()).add(sid)
    _sid_rooms.setdefault(sid, set()).add(key)


def _track_leave(sid: str, key: str):
    members = _room_members.get(key)
    if members is not None:
        members.discard(sid)
        if not members:
            _room_members.pop(key, None)
    rooms = _sid_rooms.get(sid)
    if rooms is not None:
        rooms.discard(key)


# ---------------------------------------------------------------------------
# SOCKET EVENTS
# ---------------------------------------------------------------------------

@sio.event
async def connect(sid, environ, auth=None):
    """Authenticate the handshake with the JWT passed as auth.token."""
    token = auth.get('token') if isinstance(auth, dict) else None
    if not token:
        logger.warning(f"Socket {sid} refused: no token")
        raise ConnectionRefusedError('Authentication error')

    try:
        user_id = decode_access_token(token)
    except ValueError as e:
        logger.warning(f"Socket {sid} refused: {e}")
        raise ConnectionRefusedError('Authentication error')

    async with async_session_maker() as session:
        user = await session.get(User, user_id)

    if user is None:
        logger.warning(f"Socket {sid} refused: unknown user {user_id}")
        raise ConnectionRefusedError('Authentication error')

    await sio.save_session(sid, {
        'user_id': str(user.id),
        'display_name': user.display_name,
        'is_admin': user.is_admin,
    })
    logger.info(f"User connected: {user.id} (sid {sid})")


@sio.event
async def disconnect(sid, *args):
    logger.info(f"Client disconnected: {sid}")
    for key in list(_sid_rooms.pop(sid, set())):
        _track_leave(sid, key)
        room_id = key[len("room-"):]
        await broadcast_online_count(room_id)


@sio.on('join-room')
async def join_room(sid, data):
    room_id = _parse_room_id(data)
    if not room_id:
        logger.warning(f"join-room from {sid} with bad payload: {data!r}")
        return

    session = await sio.get_session(sid)
    key = room_key(room_id)
    await sio.enter_room(sid, key)
    _track_join(sid, key)
    logger.info(f"User {session.get('user_id')} joined room {room_id}")

    await sio.emit('user-joined', {'user_id': session.get('user_id')}, room=key, skip_sid=sid)
    await broadcast_online_count(room_id)


@sio.on('leave-room')
async def leave_room(sid, data):
    room_id = _parse_room_id(data)
    if not room_id:
        return

    session = await sio.get_session(sid)
    key = room_key(room_id)
    await sio.leave_room(sid, key)
    _track_leave(sid, key)
    logger.info(f"User {session.get('user_id')} left room {room_id}")

    await broadcast_online_count(room_id)


@sio.on('phase-change')
async def phase_change(sid, data):
    """Manual phase announcement. Only admins may push it to a room."""
    session = await sio.get_session(sid)
    if not session.get('is_admin'):
        logger.warning(f"phase-change from non-admin {session.get('user_id')} ignored")
        return

    room_id = _parse_room_id(data)
    if not room_id or not isinstance(data, dict) or not data.get('phase'):
        logger.warning(f"phase-change from {sid} with bad payload: {data!r}")
        return

    await broadcast_to_room(room_id, 'phase-update', {
        'phase': data['phase'],
        'time_remaining': data.get('time_remaining'),
    })


@sio.on('submission-complete')
async def submission_complete(sid, data):
    room_id = _parse_room_id(data)
    if not room_id:
        return
    session = await sio.get_session(sid)
    await sio.emit('submission-received', {'user_id': session.get('user_id')},
                   room=room_key(room_id), skip_sid=sid)


@sio.on('vote-complete')
async def vote_complete(sid, data):
    room_id = _parse_room_id(data)
    if not room_id:
        return
    session = await sio.get_session(sid)
    await sio.emit('vote-received', {'user_id': session.get('user_id')},
                   room=room_key(room_id), skip_sid=sid)
