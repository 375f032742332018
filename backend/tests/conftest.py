"""
Shared fixtures: a fresh SQLite file per test, seeded users and a notifier
that records what it was asked to deliver.
"""

import os

os.environ.setdefault("SECRET_KEY", "test-secret-key-for-testing-only")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./brew_orders_test.db")

import uuid
from typing import List, Optional

import httpx
import pytest

from app.auth_middleware import CurrentUser
from app.database import create_engine_for, create_session_maker
from app.models import Base, User, UserRole, LoyaltyAccount
from app.services.notifications.base import Notice, Notifier


class RecordingNotifier(Notifier):
    """Notifier fake that keeps every delivered notice in memory."""

    def __init__(self):
        self.sent: List[Notice] = []

    async def notify(self, user_id, kind, title, message, link=None):
        self.sent.append(Notice(user_id=user_id, kind=kind, title=title, message=message, link=link))

    def for_user(self, user_id: str) -> List[Notice]:
        return [n for n in self.sent if n.user_id == user_id]

    def titles_for(self, user_id: str) -> List[str]:
        return [n.title for n in self.for_user(user_id)]


@pytest.fixture
async def engine(tmp_path):
    engine = create_engine_for(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return create_session_maker(engine)


@pytest.fixture
def notifier():
    return RecordingNotifier()


async def _create_user(session_maker, role: UserRole, name: str, points: Optional[int] = None) -> CurrentUser:
    user_id = str(uuid.uuid4())
    async with session_maker() as session:
        session.add(User(id=user_id, email=f"{user_id}@example.com", name=name, role=role))
        await session.flush()
        if points is not None:
            session.add(LoyaltyAccount(user_id=user_id, points=points))
        await session.commit()
    return CurrentUser(id=user_id, role=role, name=name)


@pytest.fixture
async def customer(session_maker):
    return await _create_user(session_maker, UserRole.CUSTOMER, "Maria Santos")


@pytest.fixture
async def other_customer(session_maker):
    return await _create_user(session_maker, UserRole.CUSTOMER, "Jose Rizal")


@pytest.fixture
async def admin(session_maker):
    return await _create_user(session_maker, UserRole.ADMIN, "Store Admin")


@pytest.fixture
async def second_admin(session_maker):
    return await _create_user(session_maker, UserRole.SUPER_ADMIN, "Owner")


@pytest.fixture
def make_user(session_maker):
    async def _make(role: UserRole = UserRole.CUSTOMER, name: str = "Customer", points: Optional[int] = None):
        return await _create_user(session_maker, role, name, points)
    return _make


@pytest.fixture
def app_client(session_maker, notifier):
    """
    Build an httpx client against the app with the DB session and notifier
    swapped for the test ones. Pass the CurrentUser to act as.
    """
    from app.auth_middleware import get_current_user
    from app.database import get_db
    from app.main import app
    from app.routers.dependencies import get_notifier

    async def _get_db():
        async with session_maker() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise

    def _client(user: Optional[CurrentUser] = None):
        app.dependency_overrides[get_db] = _get_db
        app.dependency_overrides[get_notifier] = lambda: notifier
        if user is not None:
            app.dependency_overrides[get_current_user] = lambda: user
        else:
            app.dependency_overrides.pop(get_current_user, None)
        transport = httpx.ASGITransport(app=app)
        return httpx.AsyncClient(transport=transport, base_url="http://test")

    yield _client
    from app.main import app as _app
    _app.dependency_overrides.clear()
