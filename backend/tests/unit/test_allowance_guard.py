"""Unit tests for allowance checks and atomic usage increments."""

import asyncio
from datetime import UTC, date, datetime, timedelta

import pytest

from entitlements.config import BillingConfig
from entitlements.errors import (
    ConversationLimitExceeded,
    CreditLimitExceeded,
    SubmissionLimitExceeded,
)
from entitlements.models.billing import LimitCode
from entitlements.services.allowance_guard import AllowanceGuard
from entitlements.services.billing_repository import InMemoryBillingRepository
from tests.fakes import MutableClock


def make_guard(
    *,
    clock: MutableClock | None = None,
    config: BillingConfig | None = None,
) -> tuple[AllowanceGuard, InMemoryBillingRepository, MutableClock]:
    active_clock = clock or MutableClock(datetime(2026, 2, 22, 12, 0, tzinfo=UTC))
    repo = InMemoryBillingRepository()
    guard = AllowanceGuard(repo, config or BillingConfig(), now_provider=active_clock.now)
    return guard, repo, active_clock


class TestConversationAllowance:
    async def test_free_user_limited_to_five_conversations(self):
        guard, repo, _ = make_guard()
        for _ in range(4):
            await repo.create_conversation("user-a")

        allowance = await guard.ensure_conversation_allowance("user-a", is_pro=False)
        assert allowance.remaining == 1

        await repo.create_conversation("user-a")
        with pytest.raises(ConversationLimitExceeded) as exc_info:
            await guard.ensure_conversation_allowance("user-a", is_pro=False)

        error = exc_info.value
        assert error.code == LimitCode.CONVERSATION_LIMIT
        assert error.limit == 5
        assert error.used == 5
        assert error.resets_at is None
        assert error.to_response()["details"] == {"limit": 5, "used": 5}

    async def test_pro_user_has_no_conversation_limit(self):
        guard, repo, _ = make_guard()
        for _ in range(10):
            await repo.create_conversation("user-a")

        allowance = await guard.ensure_conversation_allowance("user-a", is_pro=True)

        assert allowance.limit is None

    async def test_check_does_not_create_anything(self):
        guard, repo, _ = make_guard()

        await guard.ensure_conversation_allowance("user-a", is_pro=False)

        assert repo.conversations == {}


class TestFreeSubmissions:
    async def test_fourth_submission_of_the_day_fails_and_count_stays(self):
        guard, repo, _ = make_guard()

        for expected in (1, 2, 3):
            allowance = await guard.increment_submission_usage("user-a", is_pro=False)
            assert allowance.used == expected

        with pytest.raises(SubmissionLimitExceeded) as exc_info:
            await guard.increment_submission_usage("user-a", is_pro=False)

        assert exc_info.value.resets_at == datetime(2026, 2, 23, tzinfo=UTC)
        assert exc_info.value.to_response()["code"] == "SUBMISSION_LIMIT"
        assert repo.daily_usage[("user-a", date(2026, 2, 22))].submission_count == 3

    async def test_limit_resets_next_utc_day(self):
        guard, _, clock = make_guard()
        for _ in range(3):
            await guard.increment_submission_usage("user-a", is_pro=False)

        clock.advance(timedelta(days=1))
        allowance = await guard.increment_submission_usage("user-a", is_pro=False)

        assert allowance.used == 1
        assert allowance.remaining == 2

    async def test_users_are_counted_separately(self):
        guard, _, _ = make_guard()
        for _ in range(3):
            await guard.increment_submission_usage("user-a", is_pro=False)

        allowance = await guard.increment_submission_usage("user-b", is_pro=False)

        assert allowance.used == 1

    async def test_concurrent_submissions_never_exceed_limit(self):
        guard, repo, _ = make_guard()

        results = await asyncio.gather(
            *(guard.increment_submission_usage("user-a", is_pro=False) for _ in range(10)),
            return_exceptions=True,
        )

        allowed = [r for r in results if not isinstance(r, Exception)]
        denied = [r for r in results if isinstance(r, SubmissionLimitExceeded)]
        assert len(allowed) == 3
        assert len(denied) == 7
        assert repo.daily_usage[("user-a", date(2026, 2, 22))].submission_count == 3


class TestProCredits:
    async def test_credit_199_to_200_then_fail(self):
        guard, repo, _ = make_guard()
        for _ in range(199):
            await repo.increment_monthly_credits_with_ceiling("user-a", "2026-02", 200)

        allowance = await guard.increment_submission_usage("user-a", is_pro=True)
        assert allowance.used == 200
        assert allowance.remaining == 0

        with pytest.raises(CreditLimitExceeded) as exc_info:
            await guard.increment_submission_usage("user-a", is_pro=True)

        assert exc_info.value.resets_at == datetime(2026, 3, 1, tzinfo=UTC)
        assert exc_info.value.used == 200
        assert repo.monthly_credits[("user-a", "2026-02")].credits_used == 200

    async def test_pro_does_not_touch_daily_counter(self):
        guard, repo, _ = make_guard()

        await guard.increment_submission_usage("user-a", is_pro=True)

        assert repo.daily_usage == {}

    async def test_credits_reset_next_month(self):
        guard, repo, clock = make_guard(config=BillingConfig(pro_max_credits_per_month=1))
        await guard.increment_submission_usage("user-a", is_pro=True)

        clock.advance(timedelta(days=7))
        allowance = await guard.increment_submission_usage("user-a", is_pro=True)

        assert allowance.used == 1
        assert repo.monthly_credits[("user-a", "2026-03")].credits_used == 1
