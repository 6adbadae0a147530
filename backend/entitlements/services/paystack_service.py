"""Paystack API wrapper and webhook signature checks."""

import hashlib
import hmac
import json
from typing import Any

import httpx
import structlog

from entitlements.config import PaystackConfig
from entitlements.errors import (
    InvalidSignature,
    MalformedEvent,
    PaystackError,
    WebhookConfigurationError,
)
from entitlements.models.billing import PaymentEvent, PaystackVerification

logger = structlog.get_logger(__name__)

SIGNATURE_HEADER = "x-paystack-signature"


def compute_signature(secret_key: str, payload: bytes) -> str:
    """hex(HMAC-SHA512(secret_key, payload)) as Paystack signs webhook bodies."""
    return hmac.new(secret_key.encode(), payload, hashlib.sha512).hexdigest()


def verify_signature(secret_key: str | None, payload: bytes, signature: str | None) -> None:
    """
    Authenticate a raw webhook body against its signature header.

    Raises:
        WebhookConfigurationError: Secret or signature header missing.
        InvalidSignature: Signature does not match the recomputed HMAC.
    """
    if not secret_key:
        raise WebhookConfigurationError("Paystack secret key is not configured")
    if not signature:
        raise WebhookConfigurationError(f"Missing {SIGNATURE_HEADER} header")

    # Header values may carry non-ASCII bytes; compare as bytes so they fail as a mismatch.
    expected = compute_signature(secret_key, payload).encode()
    if not hmac.compare_digest(expected, signature.strip().lower().encode("utf-8")):
        raise InvalidSignature("Webhook signature mismatch")


def parse_payment_event(payload: bytes) -> PaymentEvent:
    """
    Deserialize a Paystack webhook body into a PaymentEvent.

    Missing fields are left empty; deciding whether an event without a
    reference or user id can be processed is the processor's job.

    Raises:
        MalformedEvent: Body is not a JSON object.
    """
    try:
        body = json.loads(payload)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MalformedEvent("Webhook body is not valid JSON") from e
    if not isinstance(body, dict):
        raise MalformedEvent("Webhook body must be a JSON object")

    data = body.get("data") or {}
    if not isinstance(data, dict):
        raise MalformedEvent("Webhook data must be a JSON object")

    metadata = data.get("metadata") or {}
    if not isinstance(metadata, dict):
        # Paystack sends metadata as a string when it was initialized that way.
        metadata = {}
    customer = data.get("customer") or {}
    authorization = data.get("authorization") or {}

    reference = data.get("reference")
    user_id = metadata.get("userId")

    return PaymentEvent(
        event_type=str(body.get("event") or ""),
        reference=str(reference) if reference else None,
        status=data.get("status"),
        user_id=str(user_id) if user_id else None,
        amount=_as_int(data.get("amount")),
        currency=str(data.get("currency") or "KES").upper(),
        channel=data.get("channel"),
        customer_email=customer.get("email") or metadata.get("email"),
        customer_code=customer.get("customer_code"),
        authorization_code=authorization.get("authorization_code"),
        paid_at=data.get("paid_at") or data.get("paidAt"),
        metadata=metadata,
    )


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


class PaystackService:
    """Encapsulates Paystack HTTP calls used by the checkout routes."""

    def __init__(self, config: PaystackConfig, transport: httpx.AsyncBaseTransport | None = None) -> None:
        if not config.secret_key:
            raise ValueError("Paystack secret key is required")

        self.config = config
        self._client = httpx.AsyncClient(
            base_url=config.base_url,
            timeout=config.request_timeout_seconds,
            headers={"Authorization": f"Bearer {config.secret_key}"},
            transport=transport,
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    def verify_webhook(self, payload: bytes, signature: str | None) -> None:
        verify_signature(self.config.secret_key, payload, signature)

    async def _request(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.error("paystack_request_failed", path=path, error=str(e))
            raise PaystackError(f"Paystack request failed: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.is_error or not body.get("status"):
            message = body.get("message") or f"Paystack returned HTTP {response.status_code}"
            logger.warning("paystack_request_rejected", path=path, status_code=response.status_code, message=message)
            raise PaystackError(message)

        return body.get("data") or {}

    async def initialize_transaction(
        self,
        *,
        email: str,
        amount: int,
        reference: str,
        callback_url: str,
        metadata: dict[str, Any] | None = None,
        currency: str | None = None,
        plan_code: str | None = None,
    ) -> dict[str, str]:
        payload: dict[str, Any] = {
            "email": email,
            "amount": amount,
            "reference": reference,
            "callback_url": callback_url,
            "metadata": metadata or {},
        }
        if plan_code:
            payload["plan"] = plan_code
        if currency:
            payload["currency"] = currency

        data = await self._request("POST", "/transaction/initialize", json=payload)
        return {
            "authorization_url": str(data.get("authorization_url", "")),
            "access_code": str(data.get("access_code", "")),
            "reference": str(data.get("reference") or reference),
        }

    async def verify_transaction(self, reference: str) -> PaystackVerification:
        data = await self._request("GET", f"/transaction/verify/{reference}")
        customer = data.get("customer") or {}
        authorization = data.get("authorization") or {}
        metadata = data.get("metadata")

        return PaystackVerification(
            status=str(data.get("status", "")),
            amount=_as_int(data.get("amount")),
            currency=str(data.get("currency") or "").upper(),
            customer_code=customer.get("customer_code"),
            authorization_code=authorization.get("authorization_code"),
            paid_at=data.get("paid_at"),
            channel=data.get("channel"),
            metadata=metadata if isinstance(metadata, dict) else None,
        )
