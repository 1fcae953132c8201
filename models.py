from typing import Optional, List
from datetime import datetime
from enum import Enum
import uuid

from sqlalchemy import DateTime, UniqueConstraint
from sqlmodel import Field, SQLModel, Relationship

from time_utils import utcnow

# Timestamps are stored as naive UTC. Every datetime column is a plain DateTime so
# naive values are written as-is whatever sqlmodel infers by default.


class EventType(str, Enum):
    NIGHT = "night"
    DAY = "day"
    SEASONAL = "seasonal"
    DAILY = "daily"


class EventStatus(str, Enum):
    SCHEDULED = "scheduled"
    SUBMISSION = "submission"
    VOTING = "voting"
    FINISHED = "finished"


class RoomStatus(str, Enum):
    ACTIVE = "active"
    CLOSED = "closed"


class User(SQLModel, table=True):
    id: Optional[uuid.UUID] = Field(default_factory=uuid.uuid4, primary_key=True)
    email: str = Field(index=True, unique=True)
    password_hash: str
    display_name: str
    total_points: int = Field(default=0)
    medals: int = Field(default=0)
    is_admin: bool = Field(default=False)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


class EventBase(SQLModel):
    type: EventType = Field(default=EventType.NIGHT)
    status: EventStatus = Field(default=EventStatus.SCHEDULED, index=True)
    current_round: int = Field(default=1)
    max_rounds: int = Field(default=6)
    scheduled_start: datetime = Field(sa_type=DateTime)
    scheduled_end: datetime = Field(sa_type=DateTime)
    start_time: Optional[datetime] = Field(default=None, sa_type=DateTime)
    end_time: Optional[datetime] = Field(default=None, sa_type=DateTime)
    # Cleared once an admin drives phases by hand; the poller then only ends the event.
    auto_progress: bool = Field(default=True)


class Event(EventBase, table=True):
    id: Optional[uuid.UUID] = Field(default_factory=uuid.uuid4, primary_key=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)

    rooms: List["Room"] = Relationship(back_populates="event")
    themes: List["EventTheme"] = Relationship(back_populates="event")


class Room(SQLModel, table=True):
    id: Optional[uuid.UUID] = Field(default_factory=uuid.uuid4, primary_key=True)
    event_id: uuid.UUID = Field(foreign_key="event.id", index=True)
    room_number: int = Field(default=1)
    status: RoomStatus = Field(default=RoomStatus.ACTIVE)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)

    event: Optional[Event] = Relationship(back_populates="rooms")
    participants: List["RoomParticipant"] = Relationship(back_populates="room")
    submissions: List["Submission"] = Relationship(back_populates="room")


class RoomParticipant(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("room_id", "user_id"),)

    id: Optional[uuid.UUID] = Field(default_factory=uuid.uuid4, primary_key=True)
    room_id: uuid.UUID = Field(foreign_key="room.id", index=True)
    user_id: uuid.UUID = Field(foreign_key="user.id", index=True)
    joined_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)

    room: Optional[Room] = Relationship(back_populates="participants")


class Theme(SQLModel, table=True):
    id: Optional[uuid.UUID] = Field(default_factory=uuid.uuid4, primary_key=True)
    content: str = Field(index=True)
    category: Optional[str] = Field(default=None)
    season: Optional[str] = Field(default=None)
    is_approved: bool = Field(default=False)


class EventTheme(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("event_id", "round"),)

    id: Optional[uuid.UUID] = Field(default_factory=uuid.uuid4, primary_key=True)
    event_id: uuid.UUID = Field(foreign_key="event.id", index=True)
    theme_id: uuid.UUID = Field(foreign_key="theme.id")
    round: int

    event: Optional[Event] = Relationship(back_populates="themes")
    theme: Optional[Theme] = Relationship()


class SubmissionBase(SQLModel):
    round: int
    line1: str
    line2: str
    line3: str
    line4: str
    line5: str
    points: int = Field(default=0)


class Submission(SubmissionBase, table=True):
    __table_args__ = (UniqueConstraint("user_id", "room_id", "round"),)

    id: Optional[uuid.UUID] = Field(default_factory=uuid.uuid4, primary_key=True)
    user_id: uuid.UUID = Field(foreign_key="user.id", index=True)
    room_id: uuid.UUID = Field(foreign_key="room.id", index=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)

    user: Optional[User] = Relationship()
    room: Optional[Room] = Relationship(back_populates="submissions")
    votes: List["Vote"] = Relationship(back_populates="submission")


class Vote(SQLModel, table=True):
    id: Optional[uuid.UUID] = Field(default_factory=uuid.uuid4, primary_key=True)
    voter_id: uuid.UUID = Field(foreign_key="user.id", index=True)
    submission_id: uuid.UUID = Field(foreign_key="submission.id", index=True)
    vote_count: int = Field(default=1)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)

    submission: Optional[Submission] = Relationship(back_populates="votes")
