"""API endpoints for heist tokens, execution, items, and notifications."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from pydantic import BaseModel, Field, model_validator
from sqlalchemy.ext.asyncio import AsyncSession

from heist_api.api.dependencies.session import (
    get_heist_executor,
    get_notification_service,
    require_member_session,
)
from heist_api.db.session import get_session
from heist_api.models.heist import HeistItem, HeistNotificationType, HeistStatus, UserHeistItem
from heist_api.models.user import User
from heist_api.observability.heist import get_heist_store
from heist_api.services.heist import (
    CooldownStatus,
    CooldownTracker,
    EligibilityEvaluator,
    HeistExecutor,
    HeistHistoryReader,
    HeistItemService,
    HeistMetadata,
    HeistNotificationService,
    ItemPurchaseError,
    TokenLedger,
    get_heist_config,
)


router = APIRouter(prefix="/heist", tags=["heist"])


HTTP_STATUS_BY_CODE: dict[str, int] = {
    "FEATURE_DISABLED": status.HTTP_503_SERVICE_UNAVAILABLE,
    "INSUFFICIENT_TOKENS": status.HTTP_402_PAYMENT_REQUIRED,
    "COOLDOWN_ACTIVE": status.HTTP_429_TOO_MANY_REQUESTS,
    "TARGET_PROTECTED": status.HTTP_409_CONFLICT,
    "INVALID_TARGET": status.HTTP_404_NOT_FOUND,
    "INSUFFICIENT_VICTIM_POINTS": status.HTTP_400_BAD_REQUEST,
    "DAILY_LIMIT_EXCEEDED": status.HTTP_429_TOO_MANY_REQUESTS,
    "SHIELD_BLOCKED": status.HTTP_409_CONFLICT,
    "EXECUTION_ERROR": status.HTTP_503_SERVICE_UNAVAILABLE,
}

PURCHASE_STATUS_BY_CODE: dict[str, int] = {
    "ITEM_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "USER_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "INSUFFICIENT_COINS": status.HTTP_402_PAYMENT_REQUIRED,
}


class TokenBalanceResponse(BaseModel):
    balance: int
    totalEarned: int
    totalSpent: int
    lastEarnedAt: Optional[datetime]
    lastSpentAt: Optional[datetime]


class ExecuteHeistRequest(BaseModel):
    victimId: UUID


class BalanceChangeResponse(BaseModel):
    before: int
    after: int


class ExecuteHeistResponse(BaseModel):
    success: bool
    heistId: Optional[UUID] = None
    status: Optional[HeistStatus] = None
    errorCode: Optional[str] = None
    detail: Optional[str] = None
    pointsStolen: int = 0
    attackerPoints: Optional[BalanceChangeResponse] = None
    victimPoints: Optional[BalanceChangeResponse] = None
    details: dict[str, Any] = Field(default_factory=dict)
    retryable: bool = False


class EligibilityResponse(BaseModel):
    eligible: bool
    checks: dict[str, bool]
    code: Optional[str] = None
    reason: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)
    potentialSteal: Optional[int] = None


class HistoryEntryResponse(BaseModel):
    id: UUID
    attackerId: UUID
    victimId: UUID
    pointsStolen: int
    status: HeistStatus
    createdAt: datetime
    role: Literal["attacker", "victim"]


class HistoryResponse(BaseModel):
    entries: list[HistoryEntryResponse]
    limit: int
    offset: int


class AttackerStatsResponse(BaseModel):
    total: int
    successful: int
    failed: int
    totalPointsStolen: int


class VictimStatsResponse(BaseModel):
    total: int
    totalPointsLost: int


class StatsResponse(BaseModel):
    asAttacker: AttackerStatsResponse
    asVictim: VictimStatsResponse


class WindowResponse(BaseModel):
    active: bool
    remainingMs: int
    availableAt: Optional[datetime]


class CooldownResponse(BaseModel):
    attacker: WindowResponse
    victim: WindowResponse
    heistsToday: int
    maxHeistsPerDay: int


class LeaderboardEntryResponse(BaseModel):
    userId: UUID
    balance: int
    totalEarned: int


class ItemResponse(BaseModel):
    id: UUID
    name: str
    description: Optional[str]
    itemType: str
    effectType: str
    effectValue: float
    coinCost: int
    durationHours: Optional[int]
    maxUses: Optional[int]
    icon: Optional[str]


class InventoryItemResponse(BaseModel):
    id: UUID
    itemId: UUID
    name: str
    itemType: str
    effectType: str
    effectValue: float
    quantity: int
    purchasedAt: datetime
    expiresAt: Optional[datetime]
    usesRemaining: Optional[int]


class PurchaseItemRequest(BaseModel):
    itemId: UUID


class NotificationResponse(BaseModel):
    id: UUID
    heistId: Optional[UUID]
    type: HeistNotificationType
    message: str
    metadata: Optional[dict[str, Any]]
    read: bool
    createdAt: datetime


class NotificationFeedResponse(BaseModel):
    notifications: list[NotificationResponse]
    total: int
    unreadCount: int


class MarkNotificationsRequest(BaseModel):
    notificationIds: Optional[list[UUID]] = None
    markAll: bool = False

    @model_validator(mode="after")
    def _require_target(self) -> "MarkNotificationsRequest":
        if not self.markAll and not self.notificationIds:
            raise ValueError("Either notificationIds or markAll must be provided")
        return self


class MarkNotificationsResponse(BaseModel):
    updated: int


class HeistConfigResponse(BaseModel):
    enabled: bool
    tokenCost: int
    stealPercentage: float
    maxPointsPerHeist: int
    minVictimPoints: int
    attackerCooldownHours: int
    victimProtectionHours: int
    maxHeistsPerDay: int
    itemsEnabled: bool
    minProtectionPercentage: float


def _window(window: CooldownStatus) -> WindowResponse:
    return WindowResponse(
        active=window.active,
        remainingMs=window.remaining_ms,
        availableAt=window.available_at,
    )


def _item_response(item: HeistItem) -> ItemResponse:
    return ItemResponse(
        id=item.id,
        name=item.name,
        description=item.description,
        itemType=item.item_type.value,
        effectType=item.effect_type.value,
        effectValue=float(item.effect_value),
        coinCost=item.coin_cost,
        durationHours=item.duration_hours,
        maxUses=item.max_uses,
        icon=item.icon,
    )


def _inventory_response(instance: UserHeistItem, item: HeistItem) -> InventoryItemResponse:
    return InventoryItemResponse(
        id=instance.id,
        itemId=item.id,
        name=item.name,
        itemType=item.item_type.value,
        effectType=item.effect_type.value,
        effectValue=float(item.effect_value),
        quantity=instance.quantity,
        purchasedAt=instance.purchased_at,
        expiresAt=instance.expires_at,
        usesRemaining=instance.uses_remaining,
    )


def _request_metadata(request: Request) -> HeistMetadata:
    forwarded = request.headers.get("x-forwarded-for")
    ip_address = forwarded.split(",")[0].strip() if forwarded else None
    if not ip_address and request.client:
        ip_address = request.client.host
    return HeistMetadata(ip_address=ip_address, user_agent=request.headers.get("user-agent"))


@router.get("/tokens", response_model=TokenBalanceResponse)
async def get_token_balance(
    member: User = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
) -> TokenBalanceResponse:
    balance = await TokenLedger(db).get_balance(member.id)
    return TokenBalanceResponse(
        balance=balance.balance,
        totalEarned=balance.total_earned,
        totalSpent=balance.total_spent,
        lastEarnedAt=balance.last_earned_at,
        lastSpentAt=balance.last_spent_at,
    )


@router.post("/execute", response_model=ExecuteHeistResponse)
async def execute_heist(
    payload: ExecuteHeistRequest,
    request: Request,
    response: Response,
    member: User = Depends(require_member_session),
    executor: HeistExecutor = Depends(get_heist_executor),
) -> ExecuteHeistResponse:
    result = await executor.execute_heist(member.id, payload.victimId, _request_metadata(request))

    body = ExecuteHeistResponse(
        success=result.success,
        heistId=result.heist_id,
        status=result.status,
        errorCode=result.error_code,
        detail=result.detail,
        pointsStolen=result.points_stolen,
        details=result.details,
        retryable=result.retryable,
    )
    if result.attacker_points_before is not None and result.attacker_points_after is not None:
        body.attackerPoints = BalanceChangeResponse(
            before=result.attacker_points_before, after=result.attacker_points_after
        )
    if result.victim_points_before is not None and result.victim_points_after is not None:
        body.victimPoints = BalanceChangeResponse(before=result.victim_points_before, after=result.victim_points_after)

    if not result.success:
        response.status_code = HTTP_STATUS_BY_CODE.get(result.error_code or "", status.HTTP_400_BAD_REQUEST)
    return body


@router.get("/eligibility/{victim_id}", response_model=EligibilityResponse)
async def get_eligibility(
    victim_id: UUID,
    member: User = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
) -> EligibilityResponse:
    breakdown = await EligibilityEvaluator(db, get_heist_config()).breakdown(member.id, victim_id)
    failure = breakdown.first_failure
    return EligibilityResponse(
        eligible=breakdown.eligible,
        checks=breakdown.checks,
        code=failure.code if failure else None,
        reason=failure.reason if failure else None,
        details=failure.details if failure else {},
        potentialSteal=breakdown.potential_steal,
    )


@router.get("/history", response_model=HistoryResponse)
async def get_history(
    role: Literal["attacker", "victim", "both"] = Query("both"),
    status_filter: Optional[HeistStatus] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    member: User = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
) -> HistoryResponse:
    entries = await HeistHistoryReader(db).history(
        member.id,
        role=role,
        status=status_filter,
        limit=limit,
        offset=offset,
    )
    return HistoryResponse(
        entries=[
            HistoryEntryResponse(
                id=entry.id,
                attackerId=entry.attacker_id,
                victimId=entry.victim_id,
                pointsStolen=entry.points_stolen,
                status=entry.status,
                createdAt=entry.created_at,
                role=entry.role,
            )
            for entry in entries
        ],
        limit=limit,
        offset=offset,
    )


@router.get("/stats", response_model=StatsResponse)
async def get_stats(
    member: User = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
) -> StatsResponse:
    stats = await HeistHistoryReader(db).stats(member.id)
    return StatsResponse(
        asAttacker=AttackerStatsResponse(
            total=stats.as_attacker.total,
            successful=stats.as_attacker.successful,
            failed=stats.as_attacker.failed,
            totalPointsStolen=stats.as_attacker.total_points_stolen,
        ),
        asVictim=VictimStatsResponse(
            total=stats.as_victim.total,
            totalPointsLost=stats.as_victim.total_points_lost,
        ),
    )


@router.get("/cooldowns", response_model=CooldownResponse)
async def get_cooldowns(
    member: User = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
) -> CooldownResponse:
    info = await CooldownTracker(db, get_heist_config()).cooldown_info(member.id)
    return CooldownResponse(
        attacker=_window(info.attacker),
        victim=_window(info.victim),
        heistsToday=info.heists_today,
        maxHeistsPerDay=info.max_heists_per_day,
    )


@router.get("/leaderboard", response_model=list[LeaderboardEntryResponse])
async def get_leaderboard(
    limit: int = Query(10, ge=1, le=100),
    db: AsyncSession = Depends(get_session),
) -> list[LeaderboardEntryResponse]:
    entries = await TokenLedger(db).leaderboard(limit)
    return [
        LeaderboardEntryResponse(userId=entry.user_id, balance=entry.balance, totalEarned=entry.total_earned)
        for entry in entries
    ]


@router.get("/items", response_model=list[ItemResponse])
async def list_items(db: AsyncSession = Depends(get_session)) -> list[ItemResponse]:
    items = await HeistItemService(db).list_catalog()
    return [_item_response(item) for item in items]


@router.get("/items/inventory", response_model=list[InventoryItemResponse])
async def get_inventory(
    member: User = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
) -> list[InventoryItemResponse]:
    instances = await HeistItemService(db).inventory(member.id)
    await db.commit()
    return [_inventory_response(instance, instance.item) for instance in instances]


@router.post("/items/purchase", response_model=InventoryItemResponse, status_code=status.HTTP_201_CREATED)
async def purchase_item(
    payload: PurchaseItemRequest,
    member: User = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
) -> InventoryItemResponse:
    if not get_heist_config().items_enabled:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Item system is disabled")

    service = HeistItemService(db)
    try:
        instance = await service.purchase(member.id, payload.itemId)
    except ItemPurchaseError as error:
        await db.rollback()
        raise HTTPException(
            status_code=PURCHASE_STATUS_BY_CODE.get(error.code, status.HTTP_400_BAD_REQUEST),
            detail=str(error),
        ) from error

    item = await service.get_item(payload.itemId)
    await db.commit()
    return _inventory_response(instance, item)


@router.get("/notifications", response_model=NotificationFeedResponse)
async def list_notifications(
    unread_only: bool = Query(False, alias="unreadOnly"),
    notification_type: Optional[HeistNotificationType] = Query(None, alias="type"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    member: User = Depends(require_member_session),
    notifications: HeistNotificationService = Depends(get_notification_service),
) -> NotificationFeedResponse:
    rows, total = await notifications.list_notifications(
        member.id,
        unread_only=unread_only,
        notification_type=notification_type,
        limit=limit,
        offset=offset,
    )
    unread = await notifications.unread_count(member.id)
    return NotificationFeedResponse(
        notifications=[
            NotificationResponse(
                id=row.id,
                heistId=row.heist_id,
                type=row.notification_type,
                message=row.message,
                metadata=row.metadata_json,
                read=row.read,
                createdAt=row.created_at,
            )
            for row in rows
        ],
        total=total,
        unreadCount=unread,
    )


@router.post("/notifications/read", response_model=MarkNotificationsResponse)
async def mark_notifications_read(
    payload: MarkNotificationsRequest,
    member: User = Depends(require_member_session),
    notifications: HeistNotificationService = Depends(get_notification_service),
) -> MarkNotificationsResponse:
    if payload.markAll:
        updated = await notifications.mark_all_read(member.id)
    else:
        updated = await notifications.mark_read(member.id, payload.notificationIds or [])
    return MarkNotificationsResponse(updated=updated)


@router.get("/config", response_model=HeistConfigResponse)
async def get_public_config() -> HeistConfigResponse:
    config = get_heist_config()
    return HeistConfigResponse(
        enabled=config.enabled,
        tokenCost=config.token_cost,
        stealPercentage=config.steal_percentage,
        maxPointsPerHeist=config.max_points_per_heist,
        minVictimPoints=config.min_victim_points,
        attackerCooldownHours=config.attacker_cooldown_hours,
        victimProtectionHours=config.victim_protection_hours,
        maxHeistsPerDay=config.max_heists_per_day,
        itemsEnabled=config.items_enabled,
        minProtectionPercentage=config.min_protection_percentage,
    )


@router.get("/observability")
async def get_observability_snapshot() -> dict[str, Any]:
    return get_heist_store().snapshot().as_dict()
