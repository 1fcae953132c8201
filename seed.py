import argparse
import asyncio
import os
from datetime import timedelta

from dotenv import load_dotenv
from sqlmodel import SQLModel, select

from database import async_session_maker, engine
from event_manager import DEFAULT_THEMES, event_manager
from models import EventType, Theme, User
from security import get_password_hash
from time_utils import utcnow

load_dotenv()

ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "admin@tanka-chaya.com")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "admin123")

# Extra approved themes for the admin's theme library
THEME_LIBRARY = [
    ("桜吹雪", "自然", "春"),
    ("蝉しぐれ", "自然", "夏"),
    ("月見", "行事", "秋"),
    ("初雪", "自然", "冬"),
    ("ふるさと", "暮らし", None),
    ("手紙", "暮らし", None),
]


async def seed(reset: bool):
    """Create the schema, the default admin and a theme library. Optionally start from empty."""
    async with engine.begin() as conn:
        if reset:
            print("Resetting database...")
            await conn.run_sync(SQLModel.metadata.drop_all)
        await conn.run_sync(SQLModel.metadata.create_all)

    async with async_session_maker() as session:
        admin = (await session.exec(select(User).where(User.email == ADMIN_EMAIL))).first()
        if admin is None:
            print("Creating admin user...")
            admin = User(
                email=ADMIN_EMAIL,
                password_hash=get_password_hash(ADMIN_PASSWORD),
                display_name="管理者",
                is_admin=True,
            )
            session.add(admin)

        print("Seeding themes...")
        existing = set((await session.exec(select(Theme.content))).all())
        for content, category, season in THEME_LIBRARY:
            if content not in existing:
                session.add(Theme(content=content, category=category, season=season, is_approved=True))

        await session.commit()

        print("Scheduling a sample night event...")
        start = utcnow() + timedelta(minutes=5)
        await event_manager.create_event(
            session,
            EventType.NIGHT,
            max_rounds=len(DEFAULT_THEMES),
            scheduled_start=start,
            scheduled_end=start + timedelta(minutes=90),
            themes=DEFAULT_THEMES,
        )

    print("Seeding Complete!")
    print(f"Admin login: {ADMIN_EMAIL} / {ADMIN_PASSWORD}")
    print("Please change the password after first login!")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed the Tanka Chaya database")
    parser.add_argument("--reset", action="store_true", help="Drop all tables first")
    args = parser.parse_args()

    asyncio.run(seed(args.reset))
