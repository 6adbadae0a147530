"""Per-period usage counters and the read-only usage snapshot."""

from datetime import UTC, date, datetime, timedelta

from entitlements.config import BillingConfig
from entitlements.models.billing import UsageSnapshot
from entitlements.services.billing_repository import BillingRepository


def _utcnow() -> datetime:
    return datetime.now(UTC)


def usage_date_key(now: datetime) -> date:
    """UTC calendar date that keys the daily submission counter."""
    return now.astimezone(UTC).date()


def next_daily_reset(now: datetime) -> datetime:
    """Next UTC midnight after `now`."""
    today = usage_date_key(now)
    return datetime(today.year, today.month, today.day, tzinfo=UTC) + timedelta(days=1)


def usage_month_key(now: datetime) -> str:
    """UTC month (YYYY-MM) that keys the monthly credit counter."""
    current = now.astimezone(UTC)
    return f"{current.year:04d}-{current.month:02d}"


def next_monthly_reset(now: datetime) -> datetime:
    """First instant of the next UTC month."""
    current = now.astimezone(UTC)
    if current.month == 12:
        return datetime(current.year + 1, 1, 1, tzinfo=UTC)
    return datetime(current.year, current.month + 1, 1, tzinfo=UTC)


class UsageLedger:
    """Answers how much of each allowance a user has consumed.

    Reads only; counters are incremented by AllowanceGuard.
    """

    def __init__(
        self,
        repository: BillingRepository,
        config: BillingConfig,
        now_provider=_utcnow,
    ) -> None:
        self.repository = repository
        self.config = config
        self.now_provider = now_provider

    async def conversations_used(self, user_id: str) -> int:
        return await self.repository.count_conversations(user_id)

    async def submissions_used(self, user_id: str, now: datetime | None = None) -> int:
        now = now or self.now_provider()
        record = await self.repository.get_daily_usage(user_id, usage_date_key(now))
        return record.submission_count if record else 0

    async def credits_used(self, user_id: str, now: datetime | None = None) -> int:
        now = now or self.now_provider()
        record = await self.repository.get_monthly_credits(user_id, usage_month_key(now))
        return record.credits_used if record else 0

    async def snapshot(self, user_id: str, is_pro: bool) -> UsageSnapshot:
        now = self.now_provider()

        if is_pro:
            return UsageSnapshot(
                credit_limit=self.config.pro_max_credits_per_month,
                credits_used=await self.credits_used(user_id, now),
                credit_resets_at=next_monthly_reset(now),
            )

        return UsageSnapshot(
            conversation_limit=self.config.free_max_conversations,
            conversations_used=await self.conversations_used(user_id),
            submissions_limit=self.config.free_max_submissions_per_day,
            submissions_used=await self.submissions_used(user_id, now),
            resets_at=next_daily_reset(now),
        )
