"""Allowance checks that gate every billable action."""

from datetime import UTC, datetime

import structlog

from entitlements.config import BillingConfig
from entitlements.errors import (
    ConversationLimitExceeded,
    CreditLimitExceeded,
    SubmissionLimitExceeded,
)
from entitlements.models.billing import Allowance
from entitlements.services.billing_repository import BillingRepository
from entitlements.services.usage_ledger import (
    next_daily_reset,
    next_monthly_reset,
    usage_date_key,
    usage_month_key,
)

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class AllowanceGuard:
    """Permits a unit of work and records it, or raises a typed limit error.

    Checking and recording happen in one call through the repository's
    increment-with-ceiling primitive; a rejected attempt leaves the stored
    counter untouched. Each call increments at most once and is never retried.
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

    async def ensure_conversation_allowance(self, user_id: str, is_pro: bool) -> Allowance:
        """Check the lifetime stored-conversation quota (Free plan only)."""
        if is_pro:
            return Allowance()

        limit = self.config.free_max_conversations
        used = await self.repository.count_conversations(user_id)

        if used >= limit:
            logger.info("usage_limit_reached", user_id=user_id, code="CONVERSATION_LIMIT", limit=limit, used=used)
            raise ConversationLimitExceeded(
                f"Free plan allows up to {limit} stored conversations. "
                "Upgrade to Pro for unlimited threads.",
                limit=limit,
                used=used,
            )

        return Allowance(limit=limit, used=used, remaining=limit - used)

    async def increment_submission_usage(self, user_id: str, is_pro: bool) -> Allowance:
        """Consume one submission: a monthly credit for Pro, a daily slot for Free."""
        if is_pro:
            return await self._increment_pro_credits(user_id)
        return await self._increment_daily_submissions(user_id)

    async def _increment_pro_credits(self, user_id: str) -> Allowance:
        now = self.now_provider()
        limit = self.config.pro_max_credits_per_month
        update = await self.repository.increment_monthly_credits_with_ceiling(
            user_id, usage_month_key(now), limit
        )

        if not update.applied:
            logger.info("usage_limit_reached", user_id=user_id, code="CREDIT_LIMIT", limit=limit, used=update.value)
            raise CreditLimitExceeded(
                "You reached this month's Pro credit limit. Contact support to increase it.",
                limit=limit,
                used=update.value,
                resets_at=next_monthly_reset(now),
            )

        return Allowance(limit=limit, used=update.value, remaining=max(0, limit - update.value))

    async def _increment_daily_submissions(self, user_id: str) -> Allowance:
        now = self.now_provider()
        limit = self.config.free_max_submissions_per_day
        update = await self.repository.increment_daily_usage_with_ceiling(
            user_id, usage_date_key(now), limit
        )

        if not update.applied:
            logger.info("usage_limit_reached", user_id=user_id, code="SUBMISSION_LIMIT", limit=limit, used=update.value)
            raise SubmissionLimitExceeded(
                f"You reached today's free limit ({limit} submissions). Upgrade to keep going.",
                limit=limit,
                used=update.value,
                resets_at=next_daily_reset(now),
            )

        return Allowance(limit=limit, used=update.value, remaining=max(0, limit - update.value))
