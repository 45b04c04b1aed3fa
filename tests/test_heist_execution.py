from __future__ import annotations

import asyncio
import random
import sqlite3
from uuid import uuid4

import pytest
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from heist_api.models.heist import (
    Heist,
    HeistItemEffectType,
    HeistItemType,
    HeistItemUsage,
    HeistNotification,
    HeistNotificationType,
    HeistStatus,
    HeistToken,
    UserHeistItem,
)
from heist_api.models.points import PointEventType, UserPointEvent
from heist_api.models.user import User
from heist_api.observability.heist import get_heist_store
from heist_api.services.heist import (
    BackgroundDispatcher,
    HeistConfig,
    HeistExecutor,
    HeistMetadata,
)


class FixedRandom(random.Random):
    def __init__(self, value: float) -> None:
        super().__init__()
        self._value = value

    def random(self) -> float:
        return self._value


def _executor(factory, clock, dispatcher, config: HeistConfig | None = None, **kwargs) -> HeistExecutor:
    config = config or HeistConfig()
    kwargs.setdefault("rng", FixedRandom(0.99))
    return HeistExecutor(
        factory,
        config_provider=lambda: config,
        dispatcher=dispatcher,
        clock=clock,
        **kwargs,
    )


async def _balance(factory, user_id) -> int:
    async with factory() as session:
        return (await session.execute(select(User.points_balance).where(User.id == user_id))).scalar_one()


async def _count(factory, model, *criteria) -> int:
    async with factory() as session:
        stmt = select(func.count()).select_from(model)
        if criteria:
            stmt = stmt.where(*criteria)
        return (await session.execute(stmt)).scalar_one()


@pytest.fixture
def dispatcher() -> BackgroundDispatcher:
    return BackgroundDispatcher()


@pytest.mark.asyncio
async def test_successful_heist_transfers_points(file_session_factory, file_seed, clock, dispatcher) -> None:
    attacker = await file_seed.user("attacker@example.com", points=10, name="Ace")
    victim = await file_seed.user("victim@example.com", points=1000, name="Vic")
    await file_seed.tokens(attacker.id, 1)

    executor = _executor(file_session_factory, clock, dispatcher)
    result = await executor.execute_heist(
        attacker.id, victim.id, HeistMetadata(ip_address="10.0.0.1", user_agent="pytest")
    )
    await dispatcher.drain()

    assert result.success is True
    assert result.status == HeistStatus.SUCCESS
    assert result.points_stolen == 50
    assert (result.attacker_points_before, result.attacker_points_after) == (10, 60)
    assert (result.victim_points_before, result.victim_points_after) == (1000, 950)
    assert result.details == {"itemsUsed": [], "effectivePercentage": 0.05}

    assert await _balance(file_session_factory, attacker.id) == 60
    assert await _balance(file_session_factory, victim.id) == 950

    async with file_session_factory() as session:
        heist = (await session.execute(select(Heist))).scalar_one()
        token = (await session.execute(select(HeistToken).where(HeistToken.user_id == attacker.id))).scalar_one()
        events = (await session.execute(select(UserPointEvent).order_by(UserPointEvent.points))).scalars().all()
        notifications = (
            await session.execute(select(HeistNotification).order_by(HeistNotification.notification_type))
        ).scalars().all()

    assert heist.id == result.heist_id
    assert heist.token_spent is True
    assert heist.ip_address == "10.0.0.1"
    assert heist.user_agent == "pytest"
    assert token.balance == 0
    assert token.total_spent == 1
    assert [(event.event_type, event.points) for event in events] == [
        (PointEventType.HEIST_LOSS, -50),
        (PointEventType.HEIST_GAIN, 50),
    ]
    assert {notification.notification_type for notification in notifications} == {
        HeistNotificationType.HEIST_SUCCESS,
        HeistNotificationType.HEIST_VICTIM,
    }
    messages = {notification.user_id: notification.message for notification in notifications}
    assert messages[attacker.id] == "Heist successful! You stole 50 points from Vic"
    assert messages[victim.id] == "Ace robbed you and stole 50 points!"

    snapshot = get_heist_store().snapshot()
    assert snapshot.outcomes == {"SUCCESS": 1}
    assert snapshot.points_transferred == 50


@pytest.mark.asyncio
async def test_missing_tokens_record_failure_without_moving_points(
    file_session_factory, file_seed, clock, dispatcher
) -> None:
    attacker = await file_seed.user("broke@example.com", points=5)
    victim = await file_seed.user("rich@example.com", points=1000)

    result = await _executor(file_session_factory, clock, dispatcher).execute_heist(attacker.id, victim.id)

    assert result.success is False
    assert result.status == HeistStatus.FAILED_INSUFFICIENT_TOKENS
    assert result.error_code == "INSUFFICIENT_TOKENS"
    assert result.heist_id is not None
    assert result.details == {"tokensAvailable": 0, "tokensRequired": 1}

    async with file_session_factory() as session:
        heist = (await session.execute(select(Heist))).scalar_one()
    assert heist.status == HeistStatus.FAILED_INSUFFICIENT_TOKENS
    assert heist.points_stolen == 0
    assert heist.token_spent is False
    assert heist.failure_reason
    assert await _balance(file_session_factory, attacker.id) == 5
    assert await _balance(file_session_factory, victim.id) == 1000
    assert await _count(file_session_factory, UserPointEvent) == 0
    assert get_heist_store().snapshot().outcomes == {"FAILED_INSUFFICIENT_TOKENS": 1}


@pytest.mark.asyncio
async def test_shield_block_consumes_item_but_not_token(file_session_factory, file_seed, clock, dispatcher) -> None:
    attacker = await file_seed.user("attacker@example.com")
    victim = await file_seed.user("victim@example.com", points=1000)
    await file_seed.tokens(attacker.id, 1)
    shield = await file_seed.item(
        "Aegis", HeistItemType.SHIELD, HeistItemEffectType.BLOCK_THEFT_CHANCE, 100, max_uses=1
    )
    owned = await file_seed.owned(victim.id, shield, uses_remaining=1)

    result = await _executor(file_session_factory, clock, dispatcher).execute_heist(attacker.id, victim.id)
    await dispatcher.drain()

    assert result.success is False
    assert result.status == HeistStatus.FAILED_SHIELD
    assert result.error_code == "SHIELD_BLOCKED"
    assert result.details["itemsUsed"][0]["effectApplied"] == {
        "kind": "block",
        "blocked": True,
        "blockChance": 100.0,
    }

    async with file_session_factory() as session:
        token = (await session.execute(select(HeistToken))).scalar_one()
        instance = await session.get(UserHeistItem, owned.id)
        usage = (await session.execute(select(HeistItemUsage))).scalar_one()

    assert token.balance == 1
    assert instance.uses_remaining == 0
    assert instance.is_active is False
    assert usage.heist_id == result.heist_id
    assert usage.user_item_id == owned.id
    assert await _balance(file_session_factory, victim.id) == 1000
    assert await _count(file_session_factory, HeistNotification) == 0


@pytest.mark.asyncio
async def test_items_adjust_amount_and_are_recorded(file_session_factory, file_seed, clock, dispatcher) -> None:
    attacker = await file_seed.user("attacker@example.com")
    victim = await file_seed.user("victim@example.com", points=1000)
    await file_seed.tokens(attacker.id, 1)
    sword = await file_seed.item("Sword", HeistItemType.SWORD, HeistItemEffectType.INCREASE_STEAL_PERCENTAGE, 20)
    hammer = await file_seed.item(
        "Hammer", HeistItemType.HAMMER, HeistItemEffectType.INCREASE_STEAL_BONUS, 10, max_uses=2
    )
    buckler = await file_seed.item(
        "Buckler", HeistItemType.SHIELD, HeistItemEffectType.REDUCE_THEFT_PERCENTAGE, 50
    )
    await file_seed.owned(attacker.id, sword)
    owned_hammer = await file_seed.owned(attacker.id, hammer, uses_remaining=2)
    await file_seed.owned(victim.id, buckler)

    result = await _executor(file_session_factory, clock, dispatcher).execute_heist(attacker.id, victim.id)
    await dispatcher.drain()

    # (60 + 10) halved by the buckler
    assert result.success is True
    assert result.points_stolen == 35
    assert [entry["effectApplied"]["kind"] for entry in result.details["itemsUsed"]] == [
        "boost",
        "bonus",
        "reduction",
    ]
    assert result.details["effectivePercentage"] == pytest.approx(0.06)

    async with file_session_factory() as session:
        instance = await session.get(UserHeistItem, owned_hammer.id)
    assert instance.uses_remaining == 1
    assert instance.is_active is True
    assert await _count(file_session_factory, HeistItemUsage) == 3


@pytest.mark.asyncio
async def test_protection_floor_applies_when_items_disabled(
    file_session_factory, file_seed, clock, dispatcher
) -> None:
    attacker = await file_seed.user("attacker@example.com")
    victim = await file_seed.user("victim@example.com", points=100)
    await file_seed.tokens(attacker.id, 1)
    sword = await file_seed.item("Sword", HeistItemType.SWORD, HeistItemEffectType.INCREASE_STEAL_PERCENTAGE, 90)
    await file_seed.owned(attacker.id, sword)

    config = HeistConfig(items_enabled=False, steal_percentage=0.5, min_protection_percentage=0.6)
    result = await _executor(file_session_factory, clock, dispatcher, config).execute_heist(attacker.id, victim.id)
    await dispatcher.drain()

    assert result.success is True
    assert result.points_stolen == 40
    assert result.details == {}
    assert await _count(file_session_factory, HeistItemUsage) == 0


@pytest.mark.asyncio
async def test_victim_protection_blocks_second_attacker(file_session_factory, file_seed, clock, dispatcher) -> None:
    first = await file_seed.user("first@example.com")
    second = await file_seed.user("second@example.com")
    victim = await file_seed.user("victim@example.com", points=1000)
    await file_seed.tokens(first.id, 1)
    await file_seed.tokens(second.id, 2)
    executor = _executor(file_session_factory, clock, dispatcher)

    assert (await executor.execute_heist(first.id, victim.id)).success is True
    blocked = await executor.execute_heist(second.id, victim.id)

    assert blocked.status == HeistStatus.FAILED_TARGET_PROTECTED
    assert blocked.error_code == "TARGET_PROTECTED"
    assert blocked.details["remainingMs"] == 48 * 3600 * 1000

    clock.advance(hours=48)
    retry = await executor.execute_heist(second.id, victim.id)
    await dispatcher.drain()

    assert retry.success is True
    assert retry.points_stolen == 47
    assert await _count(file_session_factory, Heist, Heist.status == HeistStatus.SUCCESS) == 2


@pytest.mark.asyncio
async def test_attacker_cooldown_blocks_back_to_back_heists(
    file_session_factory, file_seed, clock, dispatcher
) -> None:
    attacker = await file_seed.user("attacker@example.com")
    first_victim = await file_seed.user("one@example.com", points=500)
    second_victim = await file_seed.user("two@example.com", points=500)
    await file_seed.tokens(attacker.id, 2)
    executor = _executor(file_session_factory, clock, dispatcher)

    assert (await executor.execute_heist(attacker.id, first_victim.id)).success is True
    clock.advance(hours=1)
    result = await executor.execute_heist(attacker.id, second_victim.id)
    await dispatcher.drain()

    assert result.status == HeistStatus.FAILED_COOLDOWN
    assert result.error_code == "COOLDOWN_ACTIVE"
    assert result.detail == "You can attack again in 23h 0m"


@pytest.mark.asyncio
async def test_invalid_targets(file_session_factory, file_seed, clock, dispatcher) -> None:
    attacker = await file_seed.user("attacker@example.com", points=100)
    await file_seed.tokens(attacker.id, 1)
    executor = _executor(file_session_factory, clock, dispatcher)

    self_target = await executor.execute_heist(attacker.id, attacker.id)
    missing = await executor.execute_heist(attacker.id, uuid4())

    assert self_target.status == HeistStatus.FAILED_INVALID_TARGET
    assert self_target.detail == "You cannot rob yourself"
    assert self_target.heist_id is not None
    assert missing.status == HeistStatus.FAILED_INVALID_TARGET
    assert missing.detail == "Target user not found"
    assert missing.heist_id is None
    assert await _count(file_session_factory, Heist) == 1


@pytest.mark.asyncio
async def test_disabled_feature_and_poor_victim(file_session_factory, file_seed, clock, dispatcher) -> None:
    attacker = await file_seed.user("attacker@example.com")
    victim = await file_seed.user("victim@example.com", points=10)
    await file_seed.tokens(attacker.id, 1)

    disabled = await _executor(
        file_session_factory, clock, dispatcher, HeistConfig(enabled=False)
    ).execute_heist(attacker.id, victim.id)
    poor = await _executor(file_session_factory, clock, dispatcher).execute_heist(attacker.id, victim.id)

    assert disabled.error_code == "FEATURE_DISABLED"
    assert disabled.status == HeistStatus.FAILED_INVALID_TARGET
    assert poor.error_code == "INSUFFICIENT_VICTIM_POINTS"
    assert poor.status == HeistStatus.FAILED_INSUFFICIENT_POINTS
    assert poor.details == {"victimPoints": 10, "required": 20}


@pytest.mark.asyncio
async def test_concurrent_heists_on_one_victim_allow_single_success(
    file_session_factory, file_seed, clock
) -> None:
    first = await file_seed.user("first@example.com")
    second = await file_seed.user("second@example.com")
    victim = await file_seed.user("victim@example.com", points=1000)
    await file_seed.tokens(first.id, 1)
    await file_seed.tokens(second.id, 1)

    dispatcher = BackgroundDispatcher()
    executor = _executor(file_session_factory, clock, dispatcher, timeout_seconds=30, max_attempts=5)
    results = await asyncio.gather(
        executor.execute_heist(first.id, victim.id),
        executor.execute_heist(second.id, victim.id),
    )
    await dispatcher.drain()

    winners = [result for result in results if result.success]
    losers = [result for result in results if not result.success]
    assert len(winners) == 1
    assert len(losers) == 1
    assert losers[0].error_code in {"TARGET_PROTECTED", "EXECUTION_ERROR"}

    assert await _balance(file_session_factory, victim.id) == 950
    assert await _count(file_session_factory, Heist, Heist.status == HeistStatus.SUCCESS) == 1
    async with file_session_factory() as session:
        spent = (await session.execute(select(func.sum(HeistToken.total_spent)))).scalar_one()
    assert spent == 1


class _SlowExecutor(HeistExecutor):
    async def _begin(self, session) -> None:  # noqa: ANN001
        await asyncio.sleep(1)


@pytest.mark.asyncio
async def test_connection_wait_timeout_is_retryable(file_session_factory, file_seed, clock, dispatcher) -> None:
    attacker = await file_seed.user("attacker@example.com")
    victim = await file_seed.user("victim@example.com", points=1000)
    await file_seed.tokens(attacker.id, 1)

    config = HeistConfig()
    executor = _SlowExecutor(
        file_session_factory,
        config_provider=lambda: config,
        dispatcher=dispatcher,
        clock=clock,
        max_wait_seconds=0.01,
    )
    result = await executor.execute_heist(attacker.id, victim.id)

    assert result.success is False
    assert result.status is None
    assert result.error_code == "EXECUTION_ERROR"
    assert result.retryable is True
    assert await _count(file_session_factory, Heist) == 0
    assert get_heist_store().snapshot().errors == {"EXECUTION_ERROR": 1}


class _ConflictingExecutor(HeistExecutor):
    def __init__(self, *args, conflicts: int, **kwargs) -> None:  # noqa: ANN002, ANN003
        super().__init__(*args, **kwargs)
        self.conflicts = conflicts
        self.calls = 0

    async def _run(self, session, *args, **kwargs):  # noqa: ANN001, ANN002, ANN003
        self.calls += 1
        if self.calls <= self.conflicts:
            raise OperationalError("UPDATE heist_tokens", {}, sqlite3.OperationalError("database is locked"))
        return await super()._run(session, *args, **kwargs)


@pytest.mark.asyncio
async def test_conflicts_are_retried(file_session_factory, file_seed, clock, dispatcher) -> None:
    attacker = await file_seed.user("attacker@example.com")
    victim = await file_seed.user("victim@example.com", points=1000)
    await file_seed.tokens(attacker.id, 1)

    config = HeistConfig()
    executor = _ConflictingExecutor(
        file_session_factory,
        conflicts=1,
        config_provider=lambda: config,
        dispatcher=dispatcher,
        clock=clock,
        max_attempts=3,
    )
    result = await executor.execute_heist(attacker.id, victim.id)
    await dispatcher.drain()

    assert result.success is True
    assert executor.calls == 2
    assert get_heist_store().snapshot().retries == {"conflict": 1}


@pytest.mark.asyncio
async def test_exhausted_conflict_retries_surface_execution_error(
    file_session_factory, file_seed, clock, dispatcher
) -> None:
    attacker = await file_seed.user("attacker@example.com")
    victim = await file_seed.user("victim@example.com", points=1000)
    await file_seed.tokens(attacker.id, 1)

    config = HeistConfig()
    executor = _ConflictingExecutor(
        file_session_factory,
        conflicts=10,
        config_provider=lambda: config,
        dispatcher=dispatcher,
        clock=clock,
        max_attempts=2,
    )
    result = await executor.execute_heist(attacker.id, victim.id)

    assert result.error_code == "EXECUTION_ERROR"
    assert result.retryable is True
    assert executor.calls == 2
    assert await _count(file_session_factory, Heist) == 0
    assert await _balance(file_session_factory, victim.id) == 1000

    snapshot = get_heist_store().snapshot()
    assert snapshot.retries == {"conflict": 2}
    assert snapshot.errors == {"EXECUTION_ERROR": 1}


class _FailingNotifier:
    async def notify_attack_success(self, *args) -> None:  # noqa: ANN002
        raise RuntimeError("inbox unavailable")

    async def notify_victim(self, *args) -> None:  # noqa: ANN002
        raise RuntimeError("inbox unavailable")


@pytest.mark.asyncio
async def test_notification_failures_do_not_affect_the_heist(
    file_session_factory, file_seed, clock, dispatcher
) -> None:
    attacker = await file_seed.user("attacker@example.com")
    victim = await file_seed.user("victim@example.com", points=1000)
    await file_seed.tokens(attacker.id, 1)

    executor = _executor(file_session_factory, clock, dispatcher, notifier=_FailingNotifier())
    result = await executor.execute_heist(attacker.id, victim.id)
    await dispatcher.drain()

    assert result.success is True
    assert await _balance(file_session_factory, victim.id) == 950
    assert get_heist_store().snapshot().side_effect_failures == {
        "heist.notify_attack_success": 1,
        "heist.notify_victim": 1,
    }


@pytest.mark.asyncio
async def test_execute_heist_records_a_span(file_session_factory, file_seed, clock, dispatcher) -> None:
    attacker = await file_seed.user("attacker@example.com")
    victim = await file_seed.user("victim@example.com", points=1000)
    await file_seed.tokens(attacker.id, 1)

    exporter = InMemorySpanExporter()
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    executor = _executor(file_session_factory, clock, dispatcher, tracer=provider.get_tracer("tests"))

    await executor.execute_heist(attacker.id, victim.id)
    await executor.execute_heist(attacker.id, victim.id)
    await dispatcher.drain()

    spans = exporter.get_finished_spans()
    assert [span.name for span in spans] == ["heist.execute", "heist.execute"]
    assert spans[0].attributes["heist.status"] == "SUCCESS"
    assert spans[0].attributes["heist.points_stolen"] == 50
    assert spans[1].attributes["heist.success"] is False
    assert spans[1].attributes["heist.error_code"] == "INSUFFICIENT_TOKENS"
