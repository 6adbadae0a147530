"""Payment webhook ingestion: authenticate, deduplicate, grant, notify."""

from datetime import datetime

import structlog

from entitlements.constants import PRO_PLAN_DISPLAY_NAME
from entitlements.errors import DuplicateTransactionError
from entitlements.models.billing import (
    PaymentEvent,
    TransactionRecord,
    TransactionStatus,
    WebhookOutcome,
    WebhookOutcomeKind,
)
from entitlements.services.billing_service import BillingService
from entitlements.services.email_service import EmailService
from entitlements.services.paystack_service import parse_payment_event, verify_signature

logger = structlog.get_logger(__name__)

PAYMENT_SUCCESS_EVENTS = {"charge.success", "invoice.payment_success"}
PAYMENT_FAILED_EVENTS = {"charge.failed", "invoice.payment_failed"}
RENEWAL_EVENT = "invoice.payment_success"


class PaymentWebhookProcessor:
    """Applies Paystack events to plan and transaction state exactly once.

    The transaction `reference` is the idempotency key. A reference moves
    pending -> success or pending -> failed; a redelivered success is a no-op.
    """

    def __init__(
        self,
        billing_service: BillingService,
        *,
        secret_key: str | None,
        email_service: EmailService | None = None,
        manage_url: str | None = None,
    ) -> None:
        self.billing_service = billing_service
        self.repository = billing_service.repository
        self.secret_key = secret_key
        self.email_service = email_service
        self.manage_url = manage_url

    async def process(self, payload: bytes, signature: str | None) -> WebhookOutcome:
        """
        Authenticate and apply one raw webhook delivery.

        Raises:
            WebhookConfigurationError: Secret or signature missing.
            InvalidSignature: HMAC mismatch; nothing has been read or written.
            MalformedEvent: Body is not a JSON object.
        """
        try:
            verify_signature(self.secret_key, payload, signature)
        except Exception as e:
            logger.warning("paystack_webhook_auth_failed", error=str(e), security_event=True)
            raise

        event = parse_payment_event(payload)
        structlog.contextvars.bind_contextvars(event_type=event.event_type, reference=event.reference)
        return await self.apply_event(event)

    async def apply_event(self, event: PaymentEvent) -> WebhookOutcome:
        if event.event_type in PAYMENT_SUCCESS_EVENTS:
            outcome = await self._handle_payment_success(event)
        elif event.event_type in PAYMENT_FAILED_EVENTS:
            outcome = await self._handle_payment_failed(event)
        else:
            outcome = WebhookOutcome(
                kind=WebhookOutcomeKind.IGNORED, reason="unhandled_event", reference=event.reference
            )

        logger.info(
            "paystack_webhook_processed",
            event_type=event.event_type,
            reference=event.reference,
            outcome=outcome.kind.value,
            reason=outcome.reason,
        )
        return outcome

    async def _handle_payment_success(self, event: PaymentEvent) -> WebhookOutcome:
        # Acknowledged without processing: the provider would resend the same
        # incomplete payload forever.
        if not event.user_id:
            logger.error("paystack_webhook_missing_user_id", reference=event.reference)
            return WebhookOutcome(kind=WebhookOutcomeKind.REJECTED, reason="missing_user_id", reference=event.reference)
        if not event.reference:
            logger.error("paystack_webhook_missing_reference", user_id=event.user_id)
            return WebhookOutcome(kind=WebhookOutcomeKind.REJECTED, reason="missing_reference")

        existing = await self.repository.get_transaction(event.reference)
        if existing is not None:
            if existing.user_id != event.user_id:
                logger.error(
                    "paystack_webhook_user_mismatch",
                    reference=event.reference,
                    expected_user_id=existing.user_id,
                    received_user_id=event.user_id,
                    security_event=True,
                )
                return WebhookOutcome(
                    kind=WebhookOutcomeKind.REJECTED, reason="user_mismatch", reference=event.reference
                )
            if existing.status == TransactionStatus.SUCCESS:
                logger.info("paystack_webhook_duplicate", reference=event.reference)
                return WebhookOutcome(kind=WebhookOutcomeKind.DUPLICATE, reference=event.reference)
            if existing.status == TransactionStatus.FAILED:
                logger.error("paystack_webhook_success_after_failure", reference=event.reference, security_event=True)
                return WebhookOutcome(
                    kind=WebhookOutcomeKind.REJECTED, reason="transaction_failed", reference=event.reference
                )

        if event.status != TransactionStatus.SUCCESS.value:
            logger.warning("paystack_webhook_payment_not_successful", reference=event.reference, status=event.status)
            return WebhookOutcome(
                kind=WebhookOutcomeKind.IGNORED, reason="payment_not_successful", reference=event.reference
            )

        expires_at = await self.billing_service.grant_pro(
            event.user_id,
            customer_code=event.customer_code,
            authorization_code=event.authorization_code,
        )
        if expires_at is None:
            return WebhookOutcome(kind=WebhookOutcomeKind.REJECTED, reason="unknown_user", reference=event.reference)

        recorded = await self._record_success(event, existing)
        if not recorded:
            # A concurrent delivery of the same reference committed first; the
            # grant above wrote the same plan state, so only skip notifying.
            logger.info("paystack_webhook_concurrent_duplicate", reference=event.reference)
            return WebhookOutcome(kind=WebhookOutcomeKind.DUPLICATE, reference=event.reference)

        await self._notify(event, expires_at)
        return WebhookOutcome(
            kind=WebhookOutcomeKind.APPLIED, reference=event.reference, plan_expires_at=expires_at
        )

    async def _record_success(self, event: PaymentEvent, existing: TransactionRecord | None) -> bool:
        if existing is not None:
            updated = existing.model_copy(
                update={
                    "status": TransactionStatus.SUCCESS,
                    "channel": event.channel or existing.channel,
                    "metadata": event.metadata or existing.metadata,
                    "amount": event.amount or existing.amount,
                    "currency": event.currency or existing.currency,
                }
            )
            return await self.repository.update_transaction(updated, expected_status=TransactionStatus.PENDING)

        try:
            await self.repository.insert_transaction(
                TransactionRecord(
                    reference=event.reference,
                    user_id=event.user_id,
                    status=TransactionStatus.SUCCESS,
                    amount=event.amount,
                    currency=event.currency,
                    channel=event.channel,
                    metadata=event.metadata or None,
                )
            )
        except DuplicateTransactionError:
            return False
        return True

    async def _handle_payment_failed(self, event: PaymentEvent) -> WebhookOutcome:
        logger.warning("paystack_payment_failed", reference=event.reference, user_id=event.user_id)
        if not event.reference:
            return WebhookOutcome(kind=WebhookOutcomeKind.IGNORED, reason="missing_reference")

        existing = await self.repository.get_transaction(event.reference)
        if existing is None or existing.status != TransactionStatus.PENDING:
            return WebhookOutcome(
                kind=WebhookOutcomeKind.IGNORED, reason="no_pending_transaction", reference=event.reference
            )
        if event.user_id and existing.user_id != event.user_id:
            logger.error(
                "paystack_webhook_user_mismatch",
                reference=event.reference,
                expected_user_id=existing.user_id,
                received_user_id=event.user_id,
                security_event=True,
            )
            return WebhookOutcome(kind=WebhookOutcomeKind.REJECTED, reason="user_mismatch", reference=event.reference)

        failed = existing.model_copy(
            update={"status": TransactionStatus.FAILED, "channel": event.channel or existing.channel}
        )
        if not await self.repository.update_transaction(failed, expected_status=TransactionStatus.PENDING):
            return WebhookOutcome(kind=WebhookOutcomeKind.DUPLICATE, reference=event.reference)
        return WebhookOutcome(kind=WebhookOutcomeKind.APPLIED, reason="payment_failed", reference=event.reference)

    async def _notify(self, event: PaymentEvent, expires_at: datetime) -> None:
        if self.email_service is None:
            return

        plan_name = str(event.metadata.get("plan") or PRO_PLAN_DISPLAY_NAME).title()
        is_renewal = event.event_type == RENEWAL_EVENT

        try:
            if event.customer_email:
                await self.email_service.send_plan_activated(
                    email=event.customer_email,
                    plan_name=plan_name,
                    amount_minor=event.amount,
                    currency=event.currency,
                    reference=event.reference,
                    expires_at=expires_at,
                    manage_url=self.manage_url,
                    is_renewal=is_renewal,
                )
            if is_renewal:
                await self.email_service.send_auto_renewal_alert(
                    customer_email=event.customer_email or "unknown",
                    plan_name=plan_name,
                    amount_minor=event.amount,
                    currency=event.currency,
                    reference=event.reference,
                    paid_at=event.paid_at,
                )
        except Exception as e:
            logger.warning("plan_notification_failed", reference=event.reference, error=str(e))
