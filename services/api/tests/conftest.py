import os

os.environ.setdefault("TRACING_ENABLED", "false")
os.environ.setdefault("REALTIME_BACKEND", "local")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from datetime import datetime  # noqa: E402
from typing import Optional  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

from app.auth import create_access_token  # noqa: E402
from app.database import Base, get_db, get_session_factory  # noqa: E402
from app.main import app  # noqa: E402
from app.models import User, utcnow  # noqa: E402
from app.realtime.presence import LocalPresence  # noqa: E402
from app.realtime.rooms import RoomManager  # noqa: E402


class RecordingBroadcaster:
    """Captures room emissions instead of sending them."""

    def __init__(self) -> None:
        self.events: list[tuple[str, str, dict]] = []

    async def emit_to_room(self, room: str, event: str, payload: dict) -> None:
        self.events.append((room, event, payload))

    def named(self, event: str) -> list[tuple[str, dict]]:
        return [(room, payload) for room, name, payload in self.events if name == event]


def auth_header(user_id: str) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user_id)}"}


async def create_user(
    session_maker: async_sessionmaker,
    username: str,
    display_name: Optional[str] = None,
    created_at: Optional[datetime] = None,
) -> str:
    async with session_maker() as session:
        user = User(
            username=username,
            display_name=display_name or username.title(),
            created_at=created_at or utcnow(),
        )
        session.add(user)
        await session.commit()
        return user.user_id


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "social_hub.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker
    await engine.dispose()


@pytest.fixture
def broadcaster():
    return RecordingBroadcaster()


@pytest.fixture
def rooms():
    return RoomManager()


@pytest_asyncio.fixture
async def client(session_maker, broadcaster, rooms):
    async def override_get_db():
        async with session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    previous = (app.state.rooms, app.state.broadcaster, app.state.presence)
    app.state.rooms = rooms
    app.state.broadcaster = broadcaster
    app.state.presence = LocalPresence(rooms)
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_maker

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http

    app.dependency_overrides.pop(get_db, None)
    app.dependency_overrides.pop(get_session_factory, None)
    app.state.rooms, app.state.broadcaster, app.state.presence = previous
