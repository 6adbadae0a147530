"""Conversation endpoints gated by plan allowances."""

from datetime import datetime

import structlog
from fastapi import APIRouter, HTTPException, Request
from pydantic import Field

from entitlements.auth import CurrentUser
from entitlements.models.billing import Allowance, CamelModel
from entitlements.services.billing_service import BillingService
from entitlements.services.commentary import DEFAULT_PERSONA, CommentaryGenerator

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/conversations", tags=["conversations"])


class CreateConversationRequest(CamelModel):
    title: str | None = Field(default=None, max_length=200)


class ConversationResponse(CamelModel):
    id: str
    title: str | None = None
    created_at: datetime | None = None
    allowance: Allowance | None = None


class AnalyzeRequest(CamelModel):
    text: str = Field(min_length=1, max_length=20000)
    persona: str = Field(default=DEFAULT_PERSONA, max_length=200)
    context: str | None = Field(default=None, max_length=2000)


class AnalyzeResponse(CamelModel):
    conversation_id: str
    commentary: str
    allowance: Allowance


def _get_billing_service(request: Request) -> BillingService:
    service = getattr(request.app.state, "billing_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Billing service unavailable")
    return service


def _get_commentary_generator(request: Request) -> CommentaryGenerator:
    generator = getattr(request.app.state, "commentary_generator", None)
    if generator is None:
        raise HTTPException(status_code=503, detail="Commentary service unavailable")
    return generator


@router.post("", status_code=201, response_model=ConversationResponse)
async def create_conversation(
    request: Request,
    user: CurrentUser,
    body: CreateConversationRequest | None = None,
) -> ConversationResponse:
    """
    Create a conversation for the caller.

    Free users are capped at `BILLING__FREE_MAX_CONVERSATIONS` stored
    conversations; exceeding it returns 402 with code CONVERSATION_LIMIT.
    """
    service = _get_billing_service(request)
    plan_info = await service.get_plan_info(user.id, user.email)
    allowance = await service.ensure_conversation_allowance(user.id, plan_info.is_pro)

    record = await service.repository.create_conversation(user.id, body.title if body else None)
    logger.info("conversation_created", conversation_id=record.id, is_pro=plan_info.is_pro)
    return ConversationResponse(
        id=record.id,
        title=record.title,
        created_at=record.created_at,
        allowance=allowance,
    )


@router.post("/{conversation_id}/analyze", response_model=AnalyzeResponse)
async def analyze_conversation(
    conversation_id: str,
    body: AnalyzeRequest,
    request: Request,
    user: CurrentUser,
) -> AnalyzeResponse:
    """
    Consume one submission unit and return persona commentary.

    Free users spend from the daily submission allowance, Pro users from the
    monthly credit allowance. The unit is spent before the model is called.
    """
    structlog.contextvars.bind_contextvars(conversation_id=conversation_id)
    service = _get_billing_service(request)
    generator = _get_commentary_generator(request)

    conversation = await service.repository.get_conversation(conversation_id)
    if conversation is None or conversation.user_id != user.id:
        raise HTTPException(status_code=404, detail="Conversation not found")

    plan_info = await service.get_plan_info(user.id, user.email)
    allowance = await service.increment_submission_usage(user.id, plan_info.is_pro)

    try:
        commentary = await generator.generate(text=body.text, persona=body.persona, context=body.context)
    except Exception as e:
        logger.error("commentary_generation_failed", error=str(e))
        raise HTTPException(status_code=502, detail="Failed to generate commentary")

    return AnalyzeResponse(conversation_id=conversation_id, commentary=commentary, allowance=allowance)
