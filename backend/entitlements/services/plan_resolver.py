"""Plan resolution with lazy expiry."""

from datetime import UTC, datetime

import structlog

from entitlements.models.billing import EffectivePlan, Plan, PlanInfo, PlanRecord
from entitlements.services.billing_repository import BillingRepository

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def resolve_plan(raw_plan: str | None, raw_expiry: datetime | None, *, now: datetime) -> EffectivePlan:
    """
    Normalize a stored plan and expiry into the plan every reader must see.

    A Pro plan whose expiry is at or before `now` resolves to Free no matter
    how long ago it lapsed, and is flagged for write-back. Pro without an
    expiry is a lifetime grant. Unknown plan values resolve to Free.

    Args:
        raw_plan: Plan value as stored (may be None or unrecognised).
        raw_expiry: Stored expiry timestamp, if any.
        now: Reference instant (UTC).

    Returns:
        EffectivePlan with `needs_persistence` set when the stored record is stale.
    """
    if raw_plan != Plan.PRO.value:
        return EffectivePlan(plan=Plan.FREE, is_pro=False)

    if raw_expiry is None:
        return EffectivePlan(plan=Plan.PRO, is_pro=True)

    if raw_expiry <= now:
        return EffectivePlan(plan=Plan.FREE, is_pro=False, needs_persistence=True)

    return EffectivePlan(plan=Plan.PRO, is_pro=True, expires_at=raw_expiry)


class PlanResolver:
    """Loads plan records and applies lazy expiry on read."""

    def __init__(self, repository: BillingRepository, now_provider=_utcnow) -> None:
        self.repository = repository
        self.now_provider = now_provider

    async def _to_plan_info(self, record: PlanRecord) -> PlanInfo:
        now = self.now_provider()
        effective = resolve_plan(record.plan, record.plan_expires_at, now=now)

        if effective.needs_persistence:
            # Same target state for every writer, so concurrent readers may all
            # issue this without coordination.
            changed = await self.repository.downgrade_expired_plan(record.user_id, now)
            logger.info(
                "plan_downgraded_on_read",
                user_id=record.user_id,
                expired_at=record.plan_expires_at.isoformat() if record.plan_expires_at else None,
                changed=changed,
            )

        return PlanInfo(
            user_id=record.user_id,
            email=record.email,
            plan=effective.plan,
            is_pro=effective.is_pro,
            plan_expires_at=effective.expires_at,
            paystack_customer_code=record.paystack_customer_code,
            paystack_authorization_code=record.paystack_authorization_code,
        )

    async def get_plan_info(self, user_id: str) -> PlanInfo | None:
        record = await self.repository.get_plan_record(user_id)
        if record is None:
            return None
        return await self._to_plan_info(record)

    async def get_or_create_plan_info(self, user_id: str, email: str | None = None) -> PlanInfo:
        """Resolve the user's plan, provisioning a Free record for new accounts."""
        record = await self.repository.get_plan_record(user_id)
        if record is None:
            record = await self.repository.create_plan_record(
                PlanRecord(user_id=user_id, email=email, plan=Plan.FREE.value)
            )
            logger.info("plan_record_created", user_id=user_id)
        return await self._to_plan_info(record)
