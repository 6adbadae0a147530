"""Billing entitlement service."""

from datetime import UTC, datetime, timedelta

import structlog

from entitlements.config import BillingConfig
from entitlements.models.billing import Allowance, BillingLimits, Plan, PlanInfo, PlanRecord
from entitlements.services.allowance_guard import AllowanceGuard
from entitlements.services.billing_repository import BillingRepository
from entitlements.services.plan_resolver import PlanResolver
from entitlements.services.usage_ledger import UsageLedger

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class BillingService:
    """Entry point the API uses for plan state, allowances and Pro grants.

    Composes PlanResolver (lazy expiry), UsageLedger (read-only counters) and
    AllowanceGuard (check-and-increment) over one repository and clock.
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
        self.plans = PlanResolver(repository, now_provider=now_provider)
        self.ledger = UsageLedger(repository, config, now_provider=now_provider)
        self.guard = AllowanceGuard(repository, config, now_provider=now_provider)

    async def get_plan_info(self, user_id: str, email: str | None = None) -> PlanInfo:
        return await self.plans.get_or_create_plan_info(user_id, email)

    async def get_limits(self, user_id: str, email: str | None = None) -> BillingLimits:
        plan_info = await self.get_plan_info(user_id, email)
        snapshot = await self.ledger.snapshot(user_id, plan_info.is_pro)
        return BillingLimits(
            **snapshot.model_dump(),
            plan=plan_info.plan,
            is_pro=plan_info.is_pro,
            plan_expires_at=plan_info.plan_expires_at,
        )

    async def ensure_conversation_allowance(self, user_id: str, is_pro: bool) -> Allowance:
        return await self.guard.ensure_conversation_allowance(user_id, is_pro)

    async def increment_submission_usage(self, user_id: str, is_pro: bool) -> Allowance:
        return await self.guard.increment_submission_usage(user_id, is_pro)

    def calculate_pro_expiry(self, base: datetime | None = None) -> datetime:
        return (base or self.now_provider()) + timedelta(days=self.config.pro_duration_days)

    async def grant_pro(
        self,
        user_id: str,
        *,
        customer_code: str | None = None,
        authorization_code: str | None = None,
    ) -> datetime | None:
        """
        Put the user on Pro until now + pro_duration_days.

        The write sets the expiry to a value rather than extending it, so a
        grant repeated for the same payment converges on the same state.

        Returns:
            The new expiry, or None if the user does not exist.
        """
        expires_at = self.calculate_pro_expiry()
        record = await self.repository.grant_pro_plan(
            user_id,
            expires_at=expires_at,
            customer_code=customer_code,
            authorization_code=authorization_code,
        )
        if record is None:
            logger.warning("plan_grant_user_missing", user_id=user_id)
            return None

        logger.info("plan_granted", user_id=user_id, plan_expires_at=expires_at.isoformat())
        return expires_at

    async def set_plan(self, user_id: str, plan: Plan, duration_days: int | None = None) -> PlanRecord | None:
        """
        Admin override of a user's plan.

        Pro lasts `duration_days` (pro_duration_days when omitted); zero or a
        negative value grants Pro with no expiry. Free clears the expiry.

        Returns:
            The updated record, or None if the user does not exist.
        """
        expires_at = None
        if plan == Plan.PRO:
            days = self.config.pro_duration_days if duration_days is None else duration_days
            if days > 0:
                expires_at = self.now_provider() + timedelta(days=days)

        record = await self.repository.set_plan(user_id, plan=plan, expires_at=expires_at)
        if record is None:
            logger.warning("plan_override_user_missing", user_id=user_id)
            return None

        logger.info(
            "plan_set_by_admin",
            user_id=user_id,
            plan=plan.value,
            plan_expires_at=expires_at.isoformat() if expires_at else None,
        )
        return record
