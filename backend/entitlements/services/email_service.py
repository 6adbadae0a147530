"""SMTP delivery for billing emails."""

import asyncio
import smtplib
from datetime import datetime
from email.message import EmailMessage

import structlog

from entitlements.config import EmailConfig
from entitlements.services.email_templates import (
    EmailContent,
    auto_renewal_notification_email,
    format_amount_from_minor_units,
    plan_activated_email,
    renewal_reminder_email,
)

logger = structlog.get_logger(__name__)


def _format_date(value: datetime) -> str:
    return value.strftime("%a, %d %b %Y %H:%M:%S GMT")


class EmailService:
    """Sends templated billing emails over SMTP.

    Every send returns True only when the SMTP server accepted the message.
    When SMTP is not configured the send is skipped and False is returned;
    transport errors propagate to the caller.
    """

    def __init__(self, config: EmailConfig) -> None:
        self.config = config

    def _build_message(self, to: str | list[str], content: EmailContent) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self.config.from_address
        message["To"] = to if isinstance(to, str) else ", ".join(to)
        message["Subject"] = content.subject
        if self.config.reply_to:
            message["Reply-To"] = self.config.reply_to
        message.set_content(content.text)
        message.add_alternative(content.html, subtype="html")
        return message

    def _deliver(self, message: EmailMessage) -> None:
        cfg = self.config
        use_ssl = cfg.smtp_secure or cfg.smtp_port == 465
        if use_ssl:
            with smtplib.SMTP_SSL(cfg.smtp_host, cfg.smtp_port, timeout=cfg.timeout_seconds) as server:
                server.login(cfg.smtp_user, cfg.smtp_password)
                server.send_message(message)
        else:
            with smtplib.SMTP(cfg.smtp_host, cfg.smtp_port, timeout=cfg.timeout_seconds) as server:
                server.starttls()
                server.login(cfg.smtp_user, cfg.smtp_password)
                server.send_message(message)

    async def send_email(self, to: str | list[str], content: EmailContent) -> bool:
        if not self.config.is_configured:
            logger.warning("email_skipped", reason="smtp_not_configured", subject=content.subject)
            return False

        message = self._build_message(to, content)
        await asyncio.to_thread(self._deliver, message)
        logger.info("email_sent", subject=content.subject)
        return True

    async def send_plan_activated(
        self,
        *,
        email: str,
        plan_name: str,
        amount_minor: int | None,
        currency: str,
        reference: str | None,
        expires_at: datetime,
        manage_url: str | None,
        is_renewal: bool = False,
    ) -> bool:
        content = plan_activated_email(
            email=email,
            plan_name=plan_name,
            amount=format_amount_from_minor_units(amount_minor, currency),
            reference=reference,
            expires_at=_format_date(expires_at),
            manage_url=manage_url,
            is_renewal=is_renewal,
        )
        return await self.send_email(email, content)

    async def send_renewal_reminder(
        self, *, email: str, plan_name: str, expires_at: datetime, renewal_url: str | None
    ) -> bool:
        content = renewal_reminder_email(
            email=email,
            plan_name=plan_name,
            expires_at=_format_date(expires_at),
            renewal_url=renewal_url,
        )
        return await self.send_email(email, content)

    async def send_auto_renewal_alert(
        self,
        *,
        customer_email: str,
        plan_name: str,
        amount_minor: int | None,
        currency: str,
        reference: str | None,
        paid_at: str | None,
    ) -> bool:
        if not self.config.billing_alert_email:
            logger.warning("email_skipped", reason="billing_alert_email_not_configured")
            return False

        content = auto_renewal_notification_email(
            customer_email=customer_email,
            plan_name=plan_name,
            amount=format_amount_from_minor_units(amount_minor, currency),
            reference=reference,
            paid_at=paid_at,
        )
        return await self.send_email(self.config.billing_alert_email, content)
