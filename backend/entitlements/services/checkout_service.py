"""Paystack checkout: create a pending transaction, then confirm it on return."""

import secrets
import string
import time

import structlog

from entitlements.config import PaystackConfig
from entitlements.constants import PRO_PLAN_DISPLAY_NAME
from entitlements.models.billing import (
    CheckoutSession,
    Plan,
    PlanInfo,
    TransactionRecord,
    TransactionStatus,
    VerificationResult,
)
from entitlements.services.billing_service import BillingService
from entitlements.services.email_service import EmailService
from entitlements.services.paystack_service import PaystackService

logger = structlog.get_logger(__name__)

_REFERENCE_ALPHABET = string.ascii_uppercase + string.digits


class CheckoutError(Exception):
    """Checkout request cannot be honoured; carries the HTTP status to return."""

    def __init__(self, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def generate_reference() -> str:
    """Unique, provider-safe transaction reference, e.g. TXT-1718000000000-K3J9QZ."""
    suffix = "".join(secrets.choice(_REFERENCE_ALPHABET) for _ in range(6))
    return f"TXT-{int(time.time() * 1000)}-{suffix}"


class CheckoutService:
    """Starts Paystack checkouts and confirms them when the user returns.

    Confirmation follows the same grant rules as the webhook; whichever of the
    two reaches a pending transaction first moves it to success, the other
    sees it already processed.
    """

    def __init__(
        self,
        billing_service: BillingService,
        paystack_service: PaystackService,
        config: PaystackConfig,
        *,
        callback_url: str | None,
        email_service: EmailService | None = None,
        manage_url: str | None = None,
    ) -> None:
        self.billing_service = billing_service
        self.repository = billing_service.repository
        self.paystack = paystack_service
        self.config = config
        self.callback_url = callback_url
        self.email_service = email_service
        self.manage_url = manage_url

    async def initialize(self, plan_info: PlanInfo) -> CheckoutSession:
        if plan_info.is_pro:
            raise CheckoutError("You already have an active Pro plan.")
        if not plan_info.email:
            raise CheckoutError("An email address is required to start checkout.")
        if not self.callback_url:
            raise CheckoutError("Paystack callback URL is not configured.", status_code=500)

        reference = generate_reference()
        session = await self.paystack.initialize_transaction(
            email=plan_info.email,
            amount=self.config.pro_amount_minor,
            reference=reference,
            callback_url=self.callback_url,
            metadata={"userId": plan_info.user_id, "email": plan_info.email, "plan": Plan.PRO.value},
            currency=self.config.currency,
            plan_code=self.config.plan_code or None,
        )

        await self.repository.insert_transaction(
            TransactionRecord(
                reference=session["reference"],
                user_id=plan_info.user_id,
                status=TransactionStatus.PENDING,
                amount=self.config.pro_amount_minor,
                currency=self.config.currency,
                metadata={"plan": Plan.PRO.value},
                authorization_url=session["authorization_url"],
                access_code=session["access_code"],
            )
        )
        logger.info("checkout_initialized", user_id=plan_info.user_id, reference=session["reference"])
        return CheckoutSession(authorization_url=session["authorization_url"], reference=session["reference"])

    async def verify(self, user_id: str, reference: str) -> VerificationResult:
        transaction = await self.repository.get_transaction(reference)
        if transaction is None:
            raise CheckoutError("Transaction not found.", status_code=404)
        if transaction.user_id != user_id:
            logger.warning("checkout_verify_foreign_reference", user_id=user_id, reference=reference)
            raise CheckoutError("You are not allowed to verify this transaction.", status_code=403)

        if transaction.status == TransactionStatus.SUCCESS:
            plan_info = await self.billing_service.get_plan_info(user_id)
            return VerificationResult(
                plan=plan_info.plan,
                plan_expires_at=plan_info.plan_expires_at,
                message="Transaction already processed.",
            )
        if transaction.status == TransactionStatus.FAILED:
            raise CheckoutError("This payment failed. Please start a new checkout.")

        verification =await self.paystack.verify_transaction(reference)
        if verification.status != TransactionStatus.SUCCESS.value:
            raise CheckoutError("Payment not completed yet. Please finish the Paystack flow.")

        if verification.amount != transaction.amount:
            logger.error(
                "checkout_amount_mismatch",
                reference=reference,
                expected=transaction.amount,
                received=verification.amount,
            )
            raise CheckoutError("Payment amount mismatch. Please contact support.")

        expected_currency = (transaction.currency or "").upper()
        if verification.currency != expected_currency:
            logger.error(
                "checkout_currency_mismatch",
                reference=reference,
                expected=expected_currency,
                received=verification.currency,
            )
            raise CheckoutError("Payment currency mismatch. Please contact support.")

        settled = transaction.model_copy(
            update={
                "status": TransactionStatus.SUCCESS,
                "channel": verification.channel or transaction.channel,
                "metadata": verification.metadata or transaction.metadata,
            }
        )

        current = await self.billing_service.get_plan_info(user_id)
        if current.is_pro:
            await self.repository.update_transaction(settled, expected_status=TransactionStatus.PENDING)
            return VerificationResult(
                plan=current.plan,
                plan_expires_at=current.plan_expires_at,
                message="You already have an active Pro plan.",
            )

        expires_at = await self.billing_service.grant_pro(
            user_id,
            customer_code=verification.customer_code,
            authorization_code=verification.authorization_code,
        )
        if expires_at is None:
            raise CheckoutError("User not found.", status_code=404)

        if not await self.repository.update_transaction(settled, expected_status=TransactionStatus.PENDING):
            # The webhook settled it between our read and write.
            logger.info("checkout_verify_concurrent_settle", reference=reference)
            return VerificationResult(
                plan=Plan.PRO, plan_expires_at=expires_at, message="Transaction already processed."
            )

        if self.email_service is not None and current.email:
            try:
                await self.email_service.send_plan_activated(
                    email=current.email,
                    plan_name=PRO_PLAN_DISPLAY_NAME,
                    amount_minor=verification.amount,
                    currency=verification.currency,
                    reference=reference,
                    expires_at=expires_at,
                    manage_url=self.manage_url,
                )
            except Exception as e:
                logger.warning("plan_notification_failed", reference=reference, error=str(e))

        return VerificationResult(plan=Plan.PRO, plan_expires_at=expires_at)
