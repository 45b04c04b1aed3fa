from __future__ import annotations

from datetime import datetime, timedelta, timezone
from uuid import UUID

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from heist_api import models  # noqa: F401
from heist_api.app import create_app
from heist_api.db.base import Base
from heist_api.db.session import build_engine, get_session, get_session_factory
from heist_api.models.heist import (
    Heist,
    HeistItem,
    HeistItemEffectType,
    HeistItemType,
    HeistStatus,
    HeistToken,
    UserHeistItem,
)
from heist_api.models.user import User
from heist_api.observability.heist import get_heist_store


class FrozenClock:
    """Injectable clock that only moves when told to."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class Seeder:
    """Insert fixtures rows through short committed sessions."""

    def __init__(self, factory: async_sessionmaker[AsyncSession], clock: FrozenClock) -> None:
        self._factory = factory
        self._clock = clock

    async def user(self, email: str, *, points: int = 0, coins: int = 0, name: str | None = None) -> User:
        async with self._factory() as session:
            user = User(email=email, display_name=name or email.split("@")[0], points_balance=points, coins=coins)
            session.add(user)
            await session.commit()
            return user

    async def tokens(self, user_id: UUID, balance: int) -> None:
        async with self._factory() as session:
            session.add(HeistToken(user_id=user_id, balance=balance, total_earned=balance, total_spent=0))
            await session.commit()

    async def item(
        self,
        name: str,
        item_type: HeistItemType,
        effect_type: HeistItemEffectType,
        effect_value: float,
        *,
        coin_cost: int = 100,
        duration_hours: int | None = None,
        max_uses: int | None = None,
        is_active: bool = True,
    ) -> HeistItem:
        async with self._factory() as session:
            item = HeistItem(
                name=name,
                item_type=item_type,
                effect_type=effect_type,
                effect_value=effect_value,
                coin_cost=coin_cost,
                duration_hours=duration_hours,
                max_uses=max_uses,
                is_active=is_active,
            )
            session.add(item)
            await session.commit()
            return item

    async def owned(
        self,
        user_id: UUID,
        item: HeistItem,
        *,
        uses_remaining: int | None = None,
        expires_at: datetime | None = None,
        purchased_at: datetime | None = None,
    ) -> UserHeistItem:
        async with self._factory() as session:
            instance = UserHeistItem(
                user_id=user_id,
                item_id=item.id,
                quantity=1,
                purchased_at=purchased_at or self._clock() - timedelta(hours=1),
                expires_at=expires_at,
                uses_remaining=uses_remaining,
                is_active=True,
            )
            session.add(instance)
            await session.commit()
            return instance

    async def heist(
        self,
        attacker_id: UUID,
        victim_id: UUID,
        *,
        status: HeistStatus = HeistStatus.SUCCESS,
        points_stolen: int = 0,
        created_at: datetime | None = None,
    ) -> Heist:
        async with self._factory() as session:
            heist = Heist(
                attacker_id=attacker_id,
                victim_id=victim_id,
                points_stolen=points_stolen,
                status=status,
                token_spent=status == HeistStatus.SUCCESS,
                created_at=created_at or self._clock(),
            )
            session.add(heist)
            await session.commit()
            return heist


@pytest.fixture(autouse=True)
def reset_heist_store():
    get_heist_store().reset()
    yield
    get_heist_store().reset()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc))


@pytest_asyncio.fixture
async def session_factory():
    engine = build_engine("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest.fixture
def seed(session_factory, clock) -> Seeder:
    return Seeder(session_factory, clock)


@pytest_asyncio.fixture
async def app_with_db(session_factory):
    app = create_app()

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    try:
        yield app, session_factory
    finally:
        await app.state.heist_dispatcher.drain()
        app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    """File-backed database where every session gets its own connection."""

    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'heist.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest.fixture
def file_seed(file_session_factory, clock) -> Seeder:
    return Seeder(file_session_factory, clock)


@pytest_asyncio.fixture
async def file_app(file_session_factory):
    app = create_app()

    async def override_get_session():
        async with file_session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_session_factory] = lambda: file_session_factory

    try:
        yield app
    finally:
        await app.state.heist_dispatcher.drain()
        app.dependency_overrides.clear()
