"""Billing API endpoints."""

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import BaseModel, Field

from entitlements.auth import CurrentUser, require_cron_secret
from entitlements.errors import InvalidSignature, MalformedEvent, PaystackError, WebhookConfigurationError
from entitlements.models.billing import (
    BillingLimits,
    CamelModel,
    CheckoutSession,
    ReminderRunResult,
    VerificationResult,
)
from entitlements.services.billing_service import BillingService
from entitlements.services.checkout_service import CheckoutError, CheckoutService
from entitlements.services.paystack_service import SIGNATURE_HEADER
from entitlements.services.renewal_reminders import RenewalReminderScheduler
from entitlements.services.webhook_processor import PaymentWebhookProcessor

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


class VerifyRequest(BaseModel):
    """Client-driven payment verification request."""

    reference: str = Field(min_length=1, description="Paystack transaction reference")


class ReminderRequest(CamelModel):
    """Reminder job parameters sent by the cron trigger."""

    days_before_expiry: int | None = Field(default=None, ge=1, le=30)
    limit: int | None = Field(default=None, ge=1, le=500)


class WebhookResponse(BaseModel):
    """Paystack webhook acknowledgement."""

    received: bool


def _get_billing_service(request: Request) -> BillingService:
    service = getattr(request.app.state, "billing_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Billing service unavailable")
    return service


def _get_checkout_service(request: Request) -> CheckoutService:
    service = getattr(request.app.state, "checkout_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Paystack is not configured")
    return service


def _get_webhook_processor(request: Request) -> PaymentWebhookProcessor:
    processor = getattr(request.app.state, "webhook_processor", None)
    if processor is None:
        raise HTTPException(status_code=503, detail="Billing service unavailable")
    return processor


def _get_renewal_scheduler(request: Request) -> RenewalReminderScheduler:
    scheduler = getattr(request.app.state, "renewal_scheduler", None)
    if scheduler is None:
        raise HTTPException(status_code=503, detail="Renewal reminders unavailable")
    return scheduler


@router.get("/limits", response_model=BillingLimits)
async def billing_limits(request: Request, user: CurrentUser) -> BillingLimits:
    """Return the caller's effective plan and usage snapshot."""
    service = _get_billing_service(request)
    return await service.get_limits(user.id, user.email)


@router.post("/paystack/initialize", response_model=CheckoutSession)
async def initialize_checkout(request: Request, user: CurrentUser) -> CheckoutSession:
    """Start a Paystack checkout for the Pro plan."""
    billing_service = _get_billing_service(request)
    checkout_service = _get_checkout_service(request)
    plan_info = await billing_service.get_plan_info(user.id, user.email)

    try:
        return await checkout_service.initialize(plan_info)
    except CheckoutError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    except PaystackError as e:
        raise HTTPException(status_code=502, detail=str(e))


@router.post("/paystack/verify", response_model=VerificationResult)
async def verify_checkout(body: VerifyRequest, request: Request, user: CurrentUser) -> VerificationResult:
    """Confirm a Paystack payment after the user is redirected back."""
    checkout_service = _get_checkout_service(request)
    structlog.contextvars.bind_contextvars(reference=body.reference)

    try:
        return await checkout_service.verify(user.id, body.reference)
    except CheckoutError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    except PaystackError as e:
        raise HTTPException(status_code=502, detail=str(e))


@router.post("/paystack/webhook", response_model=WebhookResponse)
async def paystack_webhook(
    request: Request,
    paystack_signature: str | None = Header(default=None, alias=SIGNATURE_HEADER),
) -> WebhookResponse:
    """Process Paystack webhooks and sync plan state."""
    processor = _get_webhook_processor(request)
    payload = await request.body()

    try:
        await processor.process(payload, paystack_signature)
    except WebhookConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except InvalidSignature:
        raise HTTPException(status_code=401, detail="Invalid signature")
    except MalformedEvent as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception:
        logger.exception("paystack_webhook_processing_failed")
        raise HTTPException(status_code=500, detail="Failed to process webhook")

    return WebhookResponse(received=True)


@router.post(
    "/renewals/reminders",
    response_model=ReminderRunResult,
    dependencies=[Depends(require_cron_secret)],
)
async def send_renewal_reminders(request: Request, body: ReminderRequest | None = None) -> ReminderRunResult:
    """Send one batch of renewal reminders. Called by the scheduler cron."""
    scheduler = _get_renewal_scheduler(request)
    billing_service = _get_billing_service(request)
    body = body or ReminderRequest()

    return await scheduler.run(
        window_days=body.days_before_expiry or billing_service.config.renewal_reminder_days,
        limit=body.limit or billing_service.config.renewal_reminder_batch_size,
    )
