"""Unit tests for usage period keys and the usage snapshot."""

from datetime import UTC, date, datetime, timedelta, timezone

from entitlements.config import BillingConfig
from entitlements.services.billing_repository import InMemoryBillingRepository
from entitlements.services.usage_ledger import (
    UsageLedger,
    next_daily_reset,
    next_monthly_reset,
    usage_date_key,
    usage_month_key,
)
from tests.fakes import MutableClock


class TestPeriodKeys:
    def test_date_key_uses_utc(self):
        # 23:30 at UTC-5 is already the next day in UTC
        local = datetime(2026, 3, 1, 23, 30, tzinfo=timezone(timedelta(hours=-5)))

        assert usage_date_key(local) == date(2026, 3, 2)

    def test_next_daily_reset_is_next_utc_midnight(self):
        now = datetime(2026, 3, 1, 10, 15, tzinfo=UTC)

        assert next_daily_reset(now) == datetime(2026, 3, 2, tzinfo=UTC)

    def test_month_key_is_zero_padded(self):
        assert usage_month_key(datetime(2026, 4, 30, 23, 59, tzinfo=UTC)) == "2026-04"

    def test_next_monthly_reset_rolls_over_year(self):
        assert next_monthly_reset(datetime(2026, 12, 31, 23, 0, tzinfo=UTC)) == datetime(2027, 1, 1, tzinfo=UTC)
        assert next_monthly_reset(datetime(2026, 2, 10, tzinfo=UTC)) == datetime(2026, 3, 1, tzinfo=UTC)


class TestUsageSnapshot:
    async def test_free_snapshot_reports_free_dimensions(self):
        repo = InMemoryBillingRepository()
        clock = MutableClock(datetime(2026, 2, 22, 12, 0, tzinfo=UTC))
        ledger = UsageLedger(repo, BillingConfig(), now_provider=clock.now)
        await repo.create_conversation("user-a")
        await repo.increment_daily_usage_with_ceiling("user-a", date(2026, 2, 22), 3)

        snapshot = await ledger.snapshot("user-a", is_pro=False)

        assert snapshot.conversation_limit == 5
        assert snapshot.conversations_used == 1
        assert snapshot.submissions_limit == 3
        assert snapshot.submissions_used == 1
        assert snapshot.resets_at == datetime(2026, 2, 23, tzinfo=UTC)
        assert snapshot.credit_limit is None
        assert snapshot.credits_used is None
        assert snapshot.credit_resets_at is None

    async def test_pro_snapshot_reports_credits_only(self):
        repo = InMemoryBillingRepository()
        clock = MutableClock(datetime(2026, 2, 22, 12, 0, tzinfo=UTC))
        ledger = UsageLedger(repo, BillingConfig(), now_provider=clock.now)
        await repo.increment_monthly_credits_with_ceiling("user-a", "2026-02", 200)

        snapshot = await ledger.snapshot("user-a", is_pro=True)

        assert snapshot.credit_limit == 200
        assert snapshot.credits_used == 1
        assert snapshot.credit_resets_at == datetime(2026, 3, 1, tzinfo=UTC)
        assert snapshot.conversation_limit is None
        assert snapshot.conversations_used is None
        assert snapshot.submissions_limit is None
        assert snapshot.submissions_used is None
        assert snapshot.resets_at is None

    async def test_previous_day_usage_is_not_counted(self):
        repo = InMemoryBillingRepository()
        clock = MutableClock(datetime(2026, 2, 22, 23, 59, tzinfo=UTC))
        ledger = UsageLedger(repo, BillingConfig(), now_provider=clock.now)
        await repo.increment_daily_usage_with_ceiling("user-a", date(2026, 2, 22), 3)

        clock.advance(timedelta(minutes=2))

        assert await ledger.submissions_used("user-a") == 0

    async def test_snapshot_serializes_camel_case(self):
        ledger = UsageLedger(
            InMemoryBillingRepository(),
            BillingConfig(),
            now_provider=lambda: datetime(2026, 2, 22, tzinfo=UTC),
        )

        data = (await ledger.snapshot("user-a", is_pro=False)).model_dump(by_alias=True)

        assert "conversationLimit" in data
        assert "submissionsUsed" in data
        assert "creditResetsAt" in data
