"""Admin endpoints for manual plan management."""

from datetime import datetime

import structlog
from fastapi import APIRouter, HTTPException, Request

from entitlements.auth import AdminUser
from entitlements.models.billing import CamelModel, Plan
from entitlements.services.billing_service import BillingService

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


class SetPlanRequest(CamelModel):
    # Validated in the handler so an unknown plan gets a readable 400
    plan: str | None = None
    duration_days: int | None = None


class AdminPlanUser(CamelModel):
    id: str
    email: str | None = None
    plan: str
    plan_expires_at: datetime | None = None


class SetPlanResponse(CamelModel):
    success: bool = True
    user: AdminPlanUser


def _get_billing_service(request: Request) -> BillingService:
    service = getattr(request.app.state, "billing_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Billing service unavailable")
    return service


@router.patch("/users/{user_id}/plan", response_model=SetPlanResponse)
async def set_user_plan(
    user_id: str,
    body: SetPlanRequest,
    request: Request,
    admin: AdminUser,
) -> SetPlanResponse:
    """
    Put a user on Free or Pro regardless of payments.

    Pro runs for `durationDays` (30 by default); zero or less means no expiry.
    """
    try:
        plan = Plan(body.plan)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid plan. Must be 'free' or 'pro'")

    service = _get_billing_service(request)
    record = await service.set_plan(user_id, plan, body.duration_days)
    if record is None:
        raise HTTPException(status_code=404, detail="User not found")

    logger.info("admin_plan_override", admin_id=admin.id, user_id=user_id, plan=plan.value)
    return SetPlanResponse(
        user=AdminPlanUser(
            id=record.user_id,
            email=record.email,
            plan=record.plan,
            plan_expires_at=record.plan_expires_at,
        )
    )
