"""
Textopsy Entitlements - Main FastAPI Application.

Serves plan limits, usage-gated conversation endpoints, Paystack checkout and
webhooks, and the renewal reminder job.

Run with:
    uvicorn entitlements.main:app --reload
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from supabase import acreate_client
from supabase._async.client import AsyncClient as AsyncSupabaseClient

from entitlements.api.v1.admin import router as admin_router
from entitlements.api.v1.billing import router as billing_router
from entitlements.api.v1.conversations import router as conversations_router
from entitlements.config import get_settings
from entitlements.constants import API_PREFIX, API_TITLE, API_VERSION
from entitlements.errors import FreemiumLimitError
from entitlements.logging_config import setup_logging
from entitlements.middleware import RequestContextMiddleware
from entitlements.services.billing_repository import (
    BillingRepository,
    InMemoryBillingRepository,
    SupabaseBillingRepository,
)
from entitlements.services.billing_service import BillingService
from entitlements.services.checkout_service import CheckoutService
from entitlements.services.commentary import OpenAICommentaryGenerator, get_openai_client
from entitlements.services.email_service import EmailService
from entitlements.services.paystack_service import PaystackService
from entitlements.services.renewal_reminders import RenewalReminderScheduler
from entitlements.services.webhook_processor import PaymentWebhookProcessor

# Get settings before logging setup so we know the debug flag
settings = get_settings()

setup_logging(settings.debug)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Lifespan event handler for startup and shutdown."""
    logger.info("api_startup", cors_origins=settings.cors_origins)

    supabase_client: AsyncSupabaseClient | None = None
    if settings.supabase_url and settings.supabase_secret_key:
        try:
            supabase_client = await acreate_client(settings.supabase_url, settings.supabase_secret_key)
            logger.info("supabase_configured")
        except Exception as e:
            logger.warning("supabase_init_failed", error=str(e))
    else:
        logger.warning("supabase_not_configured", detail="Auth endpoints will return 503")

    _app.state.supabase = supabase_client

    repository: BillingRepository
    if supabase_client is not None:
        repository = SupabaseBillingRepository(supabase_client)
    else:
        repository = InMemoryBillingRepository()
        logger.warning("billing_repository_in_memory", detail="Usage and plans are not persisted")

    billing_service = BillingService(repository, settings.billing)
    email_service = EmailService(settings.email)
    if not settings.email.is_configured:
        logger.warning("email_not_configured", detail="Transactional email will be skipped")

    paystack_service: PaystackService | None = None
    checkout_service: CheckoutService | None = None
    if settings.paystack.secret_key:
        paystack_service = PaystackService(settings.paystack)
        checkout_service = CheckoutService(
            billing_service,
            paystack_service,
            settings.paystack,
            callback_url=settings.paystack_callback_url,
            email_service=email_service,
            manage_url=settings.plan_management_url,
        )
        logger.info("paystack_configured")
    else:
        logger.warning("paystack_not_configured", detail="Checkout endpoints will return 503")

    commentary_generator = None
    if settings.openai_api_key:
        commentary_generator = OpenAICommentaryGenerator(
            get_openai_client(settings.openai_api_key), settings.commentary
        )
        logger.info("openai_configured")
    else:
        logger.warning("openai_key_missing", detail="Analyze endpoint will return 503")

    _app.state.billing_service = billing_service
    _app.state.email_service = email_service
    _app.state.paystack_service = paystack_service
    _app.state.checkout_service = checkout_service
    _app.state.webhook_processor = PaymentWebhookProcessor(
        billing_service,
        secret_key=settings.paystack.secret_key,
        email_service=email_service,
        manage_url=settings.plan_management_url,
    )
    _app.state.renewal_scheduler = RenewalReminderScheduler(
        repository,
        email_service,
        renewal_url=settings.plan_management_url,
        once_per_window=settings.billing.renewal_reminder_once_per_window,
    )
    _app.state.commentary_generator = commentary_generator

    logger.info("services_initialized")

    yield

    if paystack_service is not None:
        await paystack_service.close()
    logger.info("api_shutdown")


app = FastAPI(
    title=API_TITLE,
    description="Plan entitlements, usage metering and Paystack billing for Textopsy.",
    version=API_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)


@app.exception_handler(FreemiumLimitError)
async def freemium_limit_handler(_request: Request, exc: FreemiumLimitError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_response())


# Request context middleware must come before CORS so every response gets
# the X-Request-ID header (including preflight OPTIONS responses).
app.add_middleware(RequestContextMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(billing_router, prefix=API_PREFIX)
app.include_router(conversations_router, prefix=API_PREFIX)
app.include_router(admin_router, prefix=API_PREFIX)


@app.get("/")
async def root() -> dict:
    """Root endpoint with API info."""
    return {
        "name": API_TITLE,
        "version": API_VERSION,
        "description": "Plan entitlements and usage metering",
        "docs": "/docs",
    }


@app.get("/health")
async def health() -> dict:
    """Health check endpoint."""
    return {"status": "healthy"}
