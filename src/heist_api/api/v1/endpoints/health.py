from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, Request
from loguru import logger
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from heist_api.db.session import get_session


router = APIRouter()


class ReadinessPayload(BaseModel):
    status: Literal["ready", "degraded", "error"]
    database: Literal["ready", "error"]
    pendingSideEffects: int


@router.get("/healthz", summary="Service health check")
async def service_health() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz", summary="Service readiness", response_model=ReadinessPayload)
async def service_readiness(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> ReadinessPayload:
    database: Literal["ready", "error"] = "ready"
    try:
        await session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("Readiness database probe failed", error=str(exc))
        database = "error"

    dispatcher = getattr(request.app.state, "heist_dispatcher", None)
    pending = dispatcher.pending if dispatcher is not None else 0
    return ReadinessPayload(
        status="ready" if database == "ready" else "error",
        database=database,
        pendingSideEffects=pending,
    )
