"""Typed errors raised by the entitlement and payment services."""

from datetime import datetime
from typing import Any

from entitlements.models.billing import LimitCode


class FreemiumLimitError(Exception):
    """A plan limit blocks the current request.

    Terminal for the request: the user has to upgrade or wait for the reset.
    Rendered as HTTP 402 with a machine-readable code and details.
    """

    code: LimitCode
    status_code = 402

    def __init__(
        self,
        message: str,
        *,
        limit: int,
        used: int,
        resets_at: datetime | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.limit = limit
        self.used = used
        self.resets_at = resets_at

    @property
    def details(self) -> dict[str, Any]:
        details: dict[str, Any] = {"limit": self.limit, "used": self.used}
        if self.resets_at is not None:
            details["resetsAt"] = self.resets_at.isoformat()
        return details

    def to_response(self) -> dict[str, Any]:
        return {"error": self.message, "code": self.code.value, "details": self.details}


class ConversationLimitExceeded(FreemiumLimitError):
    code = LimitCode.CONVERSATION_LIMIT


class SubmissionLimitExceeded(FreemiumLimitError):
    code = LimitCode.SUBMISSION_LIMIT


class CreditLimitExceeded(FreemiumLimitError):
    code = LimitCode.CREDIT_LIMIT


class WebhookConfigurationError(ValueError):
    """Webhook secret or signature header is missing."""


class InvalidSignature(Exception):
    """Webhook body does not match its HMAC signature."""


class MalformedEvent(ValueError):
    """Webhook body cannot be parsed into a payment event."""


class DuplicateTransactionError(Exception):
    """A transaction with the same reference already exists in storage."""

    def __init__(self, reference: str) -> None:
        super().__init__(f"Transaction '{reference}' already exists")
        self.reference = reference


class PaystackError(Exception):
    """Paystack API call failed or returned an unsuccessful envelope."""
