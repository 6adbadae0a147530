"""Billing, usage and entitlement models."""

from datetime import date, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class Plan(str, Enum):
    """Supported plans."""

    FREE = "free"
    PRO = "pro"


class TransactionStatus(str, Enum):
    """Lifecycle of a payment transaction. SUCCESS and FAILED are terminal."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class LimitCode(str, Enum):
    """Machine-readable code attached to 402 responses."""

    CONVERSATION_LIMIT = "CONVERSATION_LIMIT"
    SUBMISSION_LIMIT = "SUBMISSION_LIMIT"
    CREDIT_LIMIT = "CREDIT_LIMIT"


class CamelModel(BaseModel):
    """Response model serialized with camelCase keys for the web client."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PlanRecord(BaseModel):
    """Persisted plan state for a user."""

    user_id: str
    email: str | None = None
    plan: str = Plan.FREE.value
    plan_expires_at: datetime | None = None
    paystack_customer_code: str | None = None
    paystack_authorization_code: str | None = None
    last_renewal_reminder_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class EffectivePlan(BaseModel):
    """Plan as every reader must see it after lazy expiry is applied.

    `needs_persistence` is set when the stored record still says Pro but the
    plan has lapsed; the caller decides when to write the downgrade back.
    """

    plan: Plan
    is_pro: bool
    expires_at: datetime | None = None
    needs_persistence: bool = False


class PlanInfo(BaseModel):
    """Resolved plan joined with the account fields the API needs."""

    user_id: str
    email: str | None = None
    plan: Plan
    is_pro: bool
    plan_expires_at: datetime | None = None
    paystack_customer_code: str | None = None
    paystack_authorization_code: str | None = None


class DailyUsageRecord(BaseModel):
    """Free-plan submissions for one user on one UTC day."""

    user_id: str
    usage_date: date
    submission_count: int = Field(default=0, ge=0)
    created_at: datetime | None = None
    updated_at: datetime | None = None


class MonthlyCreditRecord(BaseModel):
    """Pro-plan credits for one user in one UTC month (YYYY-MM)."""

    user_id: str
    usage_month: str = Field(pattern=r"^\d{4}-\d{2}$")
    credits_used: int = Field(default=0, ge=0)
    created_at: datetime | None = None
    updated_at: datetime | None = None


class CounterUpdate(BaseModel):
    """Result of an increment-if-below-ceiling on a usage counter."""

    applied: bool
    value: int = Field(ge=0)


class ConversationRecord(BaseModel):
    """Stored conversation owned by a user."""

    id: str
    user_id: str
    title: str | None = None
    created_at: datetime | None = None


class TransactionRecord(BaseModel):
    """Payment transaction keyed by the provider reference."""

    reference: str
    user_id: str
    status: TransactionStatus = TransactionStatus.PENDING
    amount: int = 0
    currency: str = "KES"
    channel: str | None = None
    metadata: dict[str, Any] | None = None
    authorization_url: str | None = None
    access_code: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class Allowance(BaseModel):
    """Outcome of a successful allowance check. `limit=None` means unlimited."""

    limit: int | None = None
    used: int = 0
    remaining: int | None = None


class UsageSnapshot(CamelModel):
    """Read-only usage view; dimensions not applicable to the plan are null."""

    conversation_limit: int | None = None
    conversations_used: int | None = None
    submissions_limit: int | None = None
    submissions_used: int | None = None
    resets_at: datetime | None = None
    credit_limit: int | None = None
    credits_used: int | None = None
    credit_resets_at: datetime | None = None


class BillingLimits(UsageSnapshot):
    """Usage snapshot plus the caller's effective plan."""

    plan: Plan
    is_pro: bool
    plan_expires_at: datetime | None = None


class RenewalCandidate(BaseModel):
    """Pro user whose plan expires inside the reminder window."""

    user_id: str
    email: str
    plan_expires_at: datetime


class ReminderRunResult(CamelModel):
    """Summary of one reminder scheduler pass."""

    reminders_sent: int = 0
    attempted: int = 0


class PaymentEvent(BaseModel):
    """Normalized Paystack webhook payload."""

    event_type: str
    reference: str | None = None
    status: str | None = None
    user_id: str | None = None
    amount: int = 0
    currency: str = "KES"
    channel: str | None = None
    customer_email: str | None = None
    customer_code: str | None = None
    authorization_code: str | None = None
    paid_at: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class WebhookOutcomeKind(str, Enum):
    """How an inbound payment event was disposed of."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"
    IGNORED = "ignored"


class WebhookOutcome(BaseModel):
    """Tagged result of processing one payment event."""

    kind: WebhookOutcomeKind
    reason: str | None = None
    reference: str | None = None
    plan_expires_at: datetime | None = None


class PaystackVerification(BaseModel):
    """Normalized response of Paystack's transaction verify endpoint."""

    status: str
    amount: int
    currency: str
    customer_code: str | None = None
    authorization_code: str | None = None
    paid_at: str | None = None
    channel: str | None = None
    metadata: dict[str, Any] | None = None


class CheckoutSession(CamelModel):
    """Paystack checkout created for a user."""

    authorization_url: str
    reference: str


class VerificationResult(CamelModel):
    """Response of the client-driven payment verification."""

    success: bool = True
    plan: Plan
    plan_expires_at: datetime | None = None
    message: str | None = None
