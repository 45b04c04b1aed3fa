"""Transactional heist execution."""

from __future__ import annotations

import asyncio
import random
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from loguru import logger
from opentelemetry import trace
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from heist_api.core.settings import settings
from heist_api.core.time import utcnow
from heist_api.models.heist import Heist, HeistStatus
from heist_api.models.points import PointEventType
from heist_api.models.user import User
from heist_api.observability.heist import get_heist_store
from heist_api.observability.tracing import get_tracer
from heist_api.services.points import PointAccountService

from .config import HeistConfig, calculate_points_to_steal, get_heist_config
from .dispatch import BackgroundDispatcher
from .eligibility import (
    COOLDOWN_ACTIVE,
    DAILY_LIMIT_EXCEEDED,
    EXECUTION_ERROR,
    FEATURE_DISABLED,
    INSUFFICIENT_TOKENS,
    INSUFFICIENT_VICTIM_POINTS,
    INVALID_TARGET,
    SHIELD_BLOCKED,
    TARGET_PROTECTED,
    EligibilityEvaluator,
)
from .errors import HeistConflictError, InsufficientTokensError
from .items import HeistItemService, ItemEffectResult, ItemUsage, apply_item_effects, apply_protection_floor
from .notifications import HeistNotificationService, HeistNotifier
from .tokens import TokenLedger

STATUS_BY_CODE: dict[str, HeistStatus] = {
    FEATURE_DISABLED: HeistStatus.FAILED_INVALID_TARGET,
    INVALID_TARGET: HeistStatus.FAILED_INVALID_TARGET,
    DAILY_LIMIT_EXCEEDED: HeistStatus.FAILED_INVALID_TARGET,
    INSUFFICIENT_TOKENS: HeistStatus.FAILED_INSUFFICIENT_TOKENS,
    COOLDOWN_ACTIVE: HeistStatus.FAILED_COOLDOWN,
    TARGET_PROTECTED: HeistStatus.FAILED_TARGET_PROTECTED,
    INSUFFICIENT_VICTIM_POINTS: HeistStatus.FAILED_INSUFFICIENT_POINTS,
}

_CONFLICT_SQLSTATES = {"40001", "40P01"}
_RETRY_BACKOFF_SECONDS = 0.05


@dataclass
class HeistMetadata:
    ip_address: str | None = None
    user_agent: str | None = None


@dataclass
class HeistResult:
    success: bool
    status: HeistStatus | None
    heist_id: UUID | None = None
    points_stolen: int = 0
    attacker_points_before: int | None = None
    attacker_points_after: int | None = None
    victim_points_before: int | None = None
    victim_points_after: int | None = None
    error_code: str | None = None
    detail: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    retryable: bool = False


@dataclass
class _AttemptOutcome:
    result: HeistResult
    attacker_name: str | None = None
    victim_name: str | None = None


def is_conflict_error(error: DBAPIError) -> bool:
    """Serialization failures, deadlocks and SQLite lock contention."""

    orig = getattr(error, "orig", None)
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in _CONFLICT_SQLSTATES:
        return True
    return "database is locked" in str(orig or error).lower()


def _items_payload(usages: list[ItemUsage]) -> list[dict[str, Any]]:
    return [
        {
            "itemId": str(usage.item_id),
            "itemName": usage.item_name,
            "userItemId": str(usage.user_item_id),
            "userId": str(usage.user_id),
            "effectApplied": usage.effect.as_payload(),
        }
        for usage in usages
    ]


class HeistExecutor:
    """Run one heist attempt end to end.

    Each attempt opens its own session and transaction from ``session_factory``.
    Every eligibility check is repeated inside that transaction before anything
    is written, so the advisory pre-check can never authorize a stale transfer.
    Notifications are handed to ``dispatcher`` only after commit.
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        *,
        config_provider: Callable[[], HeistConfig] = get_heist_config,
        notifier: HeistNotifier | None = None,
        dispatcher: BackgroundDispatcher | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] = utcnow,
        tracer: trace.Tracer | None = None,
        isolation_level: str | None = None,
        max_wait_seconds: float | None = None,
        timeout_seconds: float | None = None,
        max_attempts: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._config_provider = config_provider
        self._notifier = notifier or HeistNotificationService(session_factory, clock=clock)
        self._dispatcher = dispatcher or BackgroundDispatcher()
        self._rng = rng or random.Random()
        self._clock = clock
        self._tracer = tracer or get_tracer()
        self._isolation_level = isolation_level or settings.heist_transaction_isolation
        self._max_wait = max_wait_seconds if max_wait_seconds is not None else settings.heist_transaction_max_wait_seconds
        self._timeout = timeout_seconds if timeout_seconds is not None else settings.heist_transaction_timeout_seconds
        self._max_attempts = max(1, max_attempts if max_attempts is not None else settings.heist_max_attempts)

    async def execute_heist(
        self,
        attacker_id: UUID,
        victim_id: UUID,
        metadata: HeistMetadata | None = None,
    ) -> HeistResult:
        with self._tracer.start_as_current_span("heist.execute") as span:
            span.set_attribute("heist.attacker_id", str(attacker_id))
            span.set_attribute("heist.victim_id", str(victim_id))
            result = await self._execute_with_retries(attacker_id, victim_id, metadata or HeistMetadata())
            span.set_attribute("heist.success", result.success)
            span.set_attribute("heist.points_stolen", result.points_stolen)
            if result.status is not None:
                span.set_attribute("heist.status", result.status.value)
            if result.error_code:
                span.set_attribute("heist.error_code", result.error_code)
            return result

    async def _execute_with_retries(
        self,
        attacker_id: UUID,
        victim_id: UUID,
        metadata: HeistMetadata,
    ) -> HeistResult:
        config = self._config_provider()
        store = get_heist_store()

        outcome: _AttemptOutcome | None = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                outcome = await asyncio.wait_for(
                    self._attempt(attacker_id, victim_id, metadata, config),
                    timeout=self._timeout,
                )
            except HeistConflictError as exc:
                store.record_retry("conflict")
                logger.warning(
                    "Heist transaction conflict",
                    attacker_id=str(attacker_id),
                    victim_id=str(victim_id),
                    attempt=attempt,
                    max_attempts=self._max_attempts,
                    error=str(exc),
                )
                if attempt < self._max_attempts:
                    await asyncio.sleep(_RETRY_BACKOFF_SECONDS * attempt)
                    continue
                return self._execution_error("Heist could not be completed due to concurrent activity, try again")
            except asyncio.TimeoutError:
                logger.warning(
                    "Heist transaction timed out",
                    attacker_id=str(attacker_id),
                    victim_id=str(victim_id),
                    attempt=attempt,
                    timeout_seconds=self._timeout,
                    max_wait_seconds=self._max_wait,
                )
                return self._execution_error("Heist timed out, try again")
            except Exception as exc:  # noqa: BLE001
                logger.exception(
                    "Heist execution failed",
                    attacker_id=str(attacker_id),
                    victim_id=str(victim_id),
                    error=str(exc),
                )
                return self._execution_error("An error occurred while executing the heist")
            break

        assert outcome is not None
        result = outcome.result
        if result.status is not None and result.heist_id is not None:
            store.record_outcome(result.status.value, result.points_stolen)
        elif result.error_code:
            store.record_error(result.error_code)

        if result.success:
            logger.info(
                "Heist executed",
                heist_id=str(result.heist_id),
                attacker_id=str(attacker_id),
                victim_id=str(victim_id),
                points_stolen=result.points_stolen,
            )
            if config.notifications_enabled:
                self._dispatch_notifications(attacker_id, victim_id, outcome)
        else:
            logger.info(
                "Heist attempt rejected",
                attacker_id=str(attacker_id),
                victim_id=str(victim_id),
                status=result.status.value if result.status else None,
                code=result.error_code,
            )
        return result

    def _execution_error(self, detail: str) -> HeistResult:
        get_heist_store().record_error(EXECUTION_ERROR)
        return HeistResult(
            success=False,
            status=None,
            error_code=EXECUTION_ERROR,
            detail=detail,
            retryable=True,
        )

    async def _begin(self, session: AsyncSession) -> None:
        if session.get_bind().dialect.name == "sqlite":
            # SQLite transactions are always serializable.
            await session.connection()
        else:
            await session.connection(execution_options={"isolation_level": self._isolation_level})

    async def _attempt(
        self,
        attacker_id: UUID,
        victim_id: UUID,
        metadata: HeistMetadata,
        config: HeistConfig,
    ) -> _AttemptOutcome:
        async with self._session_factory() as session:
            try:
                await asyncio.wait_for(self._begin(session), timeout=self._max_wait)
            except asyncio.TimeoutError:
                logger.warning("Timed out waiting for a database connection", max_wait_seconds=self._max_wait)
                raise

            try:
                outcome = await self._run(session, attacker_id, victim_id, metadata, config)
                await session.commit()
            except InsufficientTokensError as exc:
                await session.rollback()
                logger.info(
                    "Heist token spend lost a race",
                    attacker_id=str(attacker_id),
                    available=exc.available,
                    required=exc.required,
                )
                return _AttemptOutcome(
                    HeistResult(
                        success=False,
                        status=HeistStatus.FAILED_INSUFFICIENT_TOKENS,
                        error_code=INSUFFICIENT_TOKENS,
                        detail="You do not have enough heist tokens",
                    )
                )
            except DBAPIError as exc:
                await session.rollback()
                if is_conflict_error(exc):
                    raise HeistConflictError(str(exc.orig or exc)) from exc
                raise
            return outcome

    async def _run(
        self,
        session: AsyncSession,
        attacker_id: UUID,
        victim_id: UUID,
        metadata: HeistMetadata,
        config: HeistConfig,
    ) -> _AttemptOutcome:
        points = PointAccountService(session)

        # 1. eligibility against this transaction's view
        evaluator = EligibilityEvaluator(session, config, clock=self._clock)
        eligibility = await evaluator.evaluate(attacker_id, victim_id)
        if not eligibility.eligible:
            attacker_balance = await points.read_balance(attacker_id)
            victim_balance = await points.read_balance(victim_id)
            heist_id = None
            if attacker_balance is not None and victim_balance is not None:
                heist = await self._record(
                    session,
                    attacker_id=attacker_id,
                    victim_id=victim_id,
                    status=STATUS_BY_CODE[eligibility.code],
                    attacker_before=attacker_balance,
                    victim_before=victim_balance,
                    failure_reason=eligibility.reason,
                    metadata=metadata,
                )
                heist_id = heist.id
            return _AttemptOutcome(
                HeistResult(
                    success=False,
                    status=STATUS_BY_CODE[eligibility.code],
                    heist_id=heist_id,
                    error_code=eligibility.code,
                    detail=eligibility.reason,
                    details=eligibility.details,
                )
            )

        # 2. lock both accounts
        locked = await points.lock_accounts(attacker_id, victim_id)
        attacker = locked[attacker_id]
        victim = locked[victim_id]
        if attacker is None or victim is None:
            return _AttemptOutcome(
                HeistResult(
                    success=False,
                    status=HeistStatus.FAILED_INVALID_TARGET,
                    error_code=INVALID_TARGET,
                    detail="Target user not found",
                )
            )
        attacker_before = int(attacker.points_balance or 0)
        victim_before = int(victim.points_balance or 0)

        # 3. base amount
        amount = calculate_points_to_steal(victim_before, config)
        if amount <= 0:
            return await self._fail_insufficient(
                session, attacker, victim, metadata, "Target does not have enough points to steal"
            )

        # 4. item pipeline
        effects: ItemEffectResult | None = None
        item_service = HeistItemService(session, clock=self._clock)
        if config.items_enabled:
            now = self._clock()
            effects = apply_item_effects(
                victim_balance=victim_before,
                base_amount=amount,
                config=config,
                attacker_items=await item_service.active_items(attacker_id, "attacker", now),
                victim_items=await item_service.active_items(victim_id, "victim", now),
                rng=self._rng,
            )
            if effects.shield_blocked:
                heist = await self._record(
                    session,
                    attacker_id=attacker_id,
                    victim_id=victim_id,
                    status=HeistStatus.FAILED_SHIELD,
                    attacker_before=attacker_before,
                    victim_before=victim_before,
                    failure_reason="Heist was blocked by shield",
                    metadata=metadata,
                )
                await self._record_item_usages(session, item_service, heist.id, effects.items_used)
                return _AttemptOutcome(
                    HeistResult(
                        success=False,
                        status=HeistStatus.FAILED_SHIELD,
                        heist_id=heist.id,
                        attacker_points_before=attacker_before,
                        attacker_points_after=attacker_before,
                        victim_points_before=victim_before,
                        victim_points_after=victim_before,
                        error_code=SHIELD_BLOCKED,
                        detail="Heist was blocked by shield",
                        details={"itemsUsed": _items_payload(effects.items_used)},
                    )
                )
            amount = effects.final_amount
        else:
            amount = apply_protection_floor(amount, victim_before, config)

        if amount <= 0:
            return await self._fail_insufficient(
                session,
                attacker,
                victim,
                metadata,
                "Not enough points to steal after item effects",
                item_service=item_service,
                usages=effects.items_used if effects else [],
            )

        # 5. token spend; InsufficientTokensError aborts the transaction
        await TokenLedger(session, config=config, clock=self._clock).spend(attacker_id, config.token_cost)

        # 6. transfer
        attacker_after = await points.credit_points(attacker_id, amount)
        victim_after = await points.credit_points(victim_id, -amount)

        # 7. outcome record
        heist = await self._record(
            session,
            attacker_id=attacker_id,
            victim_id=victim_id,
            status=HeistStatus.SUCCESS,
            attacker_before=attacker_before,
            victim_before=victim_before,
            attacker_after=attacker_after,
            victim_after=victim_after,
            points_stolen=amount,
            token_spent=True,
            metadata=metadata,
        )

        # 8. audit events
        try:
            async with session.begin_nested():
                await points.record_event(
                    attacker_id, points=amount, event_type=PointEventType.HEIST_GAIN, heist_id=heist.id
                )
                await points.record_event(
                    victim_id, points=-amount, event_type=PointEventType.HEIST_LOSS, heist_id=heist.id
                )
        except SQLAlchemyError as exc:
            get_heist_store().record_side_effect_failure("point_events")
            logger.warning("Heist point events not recorded", heist_id=str(heist.id), error=str(exc))

        # 9. item usages
        usages = effects.items_used if effects else []
        await self._record_item_usages(session, item_service, heist.id, usages)

        details: dict[str, Any] = {}
        if effects is not None:
            details = {
                "itemsUsed": _items_payload(usages),
                "effectivePercentage": effects.effective_percentage,
            }
        return _AttemptOutcome(
            HeistResult(
                success=True,
                status=HeistStatus.SUCCESS,
                heist_id=heist.id,
                points_stolen=amount,
                attacker_points_before=attacker_before,
                attacker_points_after=attacker_after,
                victim_points_before=victim_before,
                victim_points_after=victim_after,
                details=details,
            ),
            attacker_name=attacker.display_name,
            victim_name=victim.display_name,
        )

    async def _fail_insufficient(
        self,
        session: AsyncSession,
        attacker: User,
        victim: User,
        metadata: HeistMetadata,
        reason: str,
        *,
        item_service: HeistItemService | None = None,
        usages: list[ItemUsage] | None = None,
    ) -> _AttemptOutcome:
        attacker_before = int(attacker.points_balance or 0)
        victim_before = int(victim.points_balance or 0)
        heist = await self._record(
            session,
            attacker_id=attacker.id,
            victim_id=victim.id,
            status=HeistStatus.FAILED_INSUFFICIENT_POINTS,
            attacker_before=attacker_before,
            victim_before=victim_before,
            failure_reason=reason,
            metadata=metadata,
        )
        if item_service is not None and usages:
            await self._record_item_usages(session, item_service, heist.id, usages)
        return _AttemptOutcome(
            HeistResult(
                success=False,
                status=HeistStatus.FAILED_INSUFFICIENT_POINTS,
                heist_id=heist.id,
                attacker_points_before=attacker_before,
                attacker_points_after=attacker_before,
                victim_points_before=victim_before,
                victim_points_after=victim_before,
                error_code=INSUFFICIENT_VICTIM_POINTS,
                detail=reason,
            )
        )

    async def _record(
        self,
        session: AsyncSession,
        *,
        attacker_id: UUID,
        victim_id: UUID,
        status: HeistStatus,
        attacker_before: int,
        victim_before: int,
        metadata: HeistMetadata,
        attacker_after: int | None = None,
        victim_after: int | None = None,
        points_stolen: int = 0,
        token_spent: bool = False,
        failure_reason: str | None = None,
    ) -> Heist:
        heist = Heist(
            attacker_id=attacker_id,
            victim_id=victim_id,
            points_stolen=points_stolen,
            attacker_points_before=attacker_before,
            attacker_points_after=attacker_before if attacker_after is None else attacker_after,
            victim_points_before=victim_before,
            victim_points_after=victim_before if victim_after is None else victim_after,
            token_spent=token_spent,
            status=status,
            failure_reason=failure_reason,
            ip_address=metadata.ip_address,
            user_agent=metadata.user_agent,
            created_at=self._clock(),
        )
        session.add(heist)
        await session.flush()
        return heist

    async def _record_item_usages(
        self,
        session: AsyncSession,
        item_service: HeistItemService,
        heist_id: UUID,
        usages: list[ItemUsage],
    ) -> None:
        for usage in usages:
            try:
                async with session.begin_nested():
                    await item_service.record_usage(heist_id, usage)
            except SQLAlchemyError as exc:
                get_heist_store().record_side_effect_failure("item_usage")
                logger.warning(
                    "Heist item usage not recorded",
                    heist_id=str(heist_id),
                    user_item_id=str(usage.user_item_id),
                    error=str(exc),
                )

    def _dispatch_notifications(self, attacker_id: UUID, victim_id: UUID, outcome: _AttemptOutcome) -> None:
        result = outcome.result
        notifier = self._notifier
        heist_id = result.heist_id
        amount = result.points_stolen
        self._dispatcher.dispatch(
            "heist.notify_attack_success",
            lambda: notifier.notify_attack_success(
                attacker_id, victim_id, outcome.victim_name or "user", amount, heist_id
            ),
        )
        self._dispatcher.dispatch(
            "heist.notify_victim",
            lambda: notifier.notify_victim(
                victim_id, attacker_id, outcome.attacker_name or "user", amount, heist_id
            ),
        )
