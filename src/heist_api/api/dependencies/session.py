"""Session-aware dependencies for member-facing heist APIs."""

from __future__ import annotations

from uuid import UUID

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from heist_api.db.session import get_session, get_session_factory
from heist_api.models.user import User
from heist_api.services.heist import BackgroundDispatcher, HeistExecutor, HeistNotificationService


async def require_member_session(
    session_user: str | None = Header(None, alias="X-Session-User"),
    db: AsyncSession = Depends(get_session),
) -> User:
    """Resolve the authenticated user from forwarded session headers."""

    if not session_user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing session user context",
        )

    try:
        user_id = UUID(session_user)
    except ValueError as error:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid session user identifier",
        ) from error

    stmt = select(User).where(User.id == user_id)
    result = await db.execute(stmt)
    user = result.scalar_one_or_none()
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Session user not found",
        )

    # Release the read transaction so executor sessions can take the write lock.
    await db.commit()
    return user


def get_dispatcher(request: Request) -> BackgroundDispatcher:
    return request.app.state.heist_dispatcher


def get_notification_service(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> HeistNotificationService:
    return HeistNotificationService(session_factory)


def get_heist_executor(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    dispatcher: BackgroundDispatcher = Depends(get_dispatcher),
    notifier: HeistNotificationService = Depends(get_notification_service),
) -> HeistExecutor:
    return HeistExecutor(session_factory, notifier=notifier, dispatcher=dispatcher)
