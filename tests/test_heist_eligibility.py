from __future__ import annotations

from datetime import timedelta
from uuid import uuid4

import pytest

from heist_api.services.heist import EligibilityEvaluator, HeistConfig


@pytest.mark.asyncio
async def test_eligible_attacker_passes_every_check(session_factory, seed, clock) -> None:
    attacker = await seed.user("attacker@example.com")
    victim = await seed.user("victim@example.com", points=1000)
    await seed.tokens(attacker.id, 1)

    async with session_factory() as session:
        evaluator = EligibilityEvaluator(session, HeistConfig(), clock=clock)
        result = await evaluator.evaluate(attacker.id, victim.id)
        breakdown = await evaluator.breakdown(attacker.id, victim.id)

    assert result.eligible is True
    assert result.code is None
    assert breakdown.eligible is True
    assert all(breakdown.checks.values())
    assert list(breakdown.checks) == [
        "featureEnabled",
        "notSelfTarget",
        "victimHasPoints",
        "hasTokens",
        "notOnCooldown",
        "targetNotProtected",
        "underDailyLimit",
    ]
    assert breakdown.potential_steal == 50


@pytest.mark.asyncio
async def test_first_failure_in_chain_order_wins(session_factory, seed, clock) -> None:
    attacker = await seed.user("attacker@example.com", points=1000)

    async with session_factory() as session:
        evaluator = EligibilityEvaluator(session, HeistConfig(), clock=clock)
        self_target = await evaluator.evaluate(attacker.id, attacker.id)
        disabled = await EligibilityEvaluator(session, HeistConfig(enabled=False), clock=clock).evaluate(
            attacker.id, attacker.id
        )

    assert self_target.code == "INVALID_TARGET"
    assert self_target.reason == "You cannot rob yourself"
    assert disabled.code == "FEATURE_DISABLED"


@pytest.mark.asyncio
async def test_victim_checks(session_factory, seed, clock) -> None:
    attacker = await seed.user("attacker@example.com")
    poor = await seed.user("poor@example.com", points=19)

    async with session_factory() as session:
        evaluator = EligibilityEvaluator(session, HeistConfig(), clock=clock)
        missing = await evaluator.evaluate(attacker.id, uuid4())
        too_poor = await evaluator.evaluate(attacker.id, poor.id)

    assert missing.code == "INVALID_TARGET"
    assert missing.reason == "Target user not found"
    assert too_poor.code == "INSUFFICIENT_VICTIM_POINTS"
    assert too_poor.details == {"victimPoints": 19, "required": 20}


@pytest.mark.asyncio
async def test_token_check_reports_balance(session_factory, seed, clock) -> None:
    attacker = await seed.user("attacker@example.com")
    victim = await seed.user("victim@example.com", points=1000)
    await seed.tokens(attacker.id, 1)

    async with session_factory() as session:
        result = await EligibilityEvaluator(session, HeistConfig(token_cost=2), clock=clock).evaluate(
            attacker.id, victim.id
        )

    assert result.code == "INSUFFICIENT_TOKENS"
    assert result.details == {"tokensAvailable": 1, "tokensRequired": 2}


@pytest.mark.asyncio
async def test_window_and_daily_limit_checks(session_factory, seed, clock) -> None:
    attacker = await seed.user("attacker@example.com")
    victim = await seed.user("victim@example.com", points=1000)
    other = await seed.user("other@example.com", points=1000)
    fresh_victim = await seed.user("fresh@example.com", points=1000)
    await seed.tokens(attacker.id, 5)
    await seed.heist(attacker.id, victim.id)
    await seed.heist(other.id, fresh_victim.id, created_at=clock() - timedelta(hours=1))

    async with session_factory() as session:
        evaluator = EligibilityEvaluator(session, HeistConfig(), clock=clock)
        cooldown = await evaluator.evaluate(attacker.id, other.id)

        no_cooldown = HeistConfig(attacker_cooldown_hours=0)
        protected = await EligibilityEvaluator(session, no_cooldown, clock=clock).evaluate(
            attacker.id, fresh_victim.id
        )

        capped = HeistConfig(attacker_cooldown_hours=0, max_heists_per_day=1)
        daily = await EligibilityEvaluator(session, capped, clock=clock).evaluate(attacker.id, other.id)

    assert cooldown.code == "COOLDOWN_ACTIVE"
    assert cooldown.details["remainingMs"] == 24 * 3600 * 1000
    assert protected.code == "TARGET_PROTECTED"
    assert protected.reason == "This user is protected for 47h 0m"
    assert daily.code == "DAILY_LIMIT_EXCEEDED"
    assert daily.details == {"heistsToday": 1, "maxPerDay": 1}


@pytest.mark.asyncio
async def test_breakdown_reports_every_failing_check(session_factory, seed, clock) -> None:
    attacker = await seed.user("attacker@example.com")
    victim = await seed.user("victim@example.com", points=5)

    async with session_factory() as session:
        breakdown = await EligibilityEvaluator(session, HeistConfig(), clock=clock).breakdown(
            attacker.id, victim.id
        )

    assert breakdown.eligible is False
    assert breakdown.first_failure.code == "INSUFFICIENT_VICTIM_POINTS"
    assert breakdown.checks["victimHasPoints"] is False
    assert breakdown.checks["hasTokens"] is False
    assert breakdown.checks["notOnCooldown"] is True
    assert breakdown.potential_steal is None
