"""Unit tests for billing email templates and SMTP delivery."""

from datetime import UTC, datetime

from entitlements.config import EmailConfig
from entitlements.services import email_service as email_service_module
from entitlements.services.email_service import EmailService
from entitlements.services.email_templates import (
    format_amount_from_minor_units,
    plan_activated_email,
    renewal_reminder_email,
)

EXPIRES = datetime(2026, 3, 24, 12, 0, tzinfo=UTC)


class FakeSMTP:
    """Test double for smtplib.SMTP / SMTP_SSL."""

    instances: list["FakeSMTP"] = []

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port
        self.started_tls = False
        self.logged_in = None
        self.sent = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self):
        self.started_tls = True

    def login(self, user, password):
        self.logged_in = (user, password)

    def send_message(self, message):
        self.sent.append(message)


def _configured(**overrides) -> EmailConfig:
    values = {
        "smtp_host": "smtp.test",
        "smtp_port": 587,
        "smtp_user": "mailer",
        "smtp_password": "secret",
        "billing_alert_email": "billing@textopsy.test",
    }
    values.update(overrides)
    return EmailConfig(**values)


class TestTemplates:
    def test_format_amount(self):
        assert format_amount_from_minor_units(65000, "kes") == "KES 650.00"
        assert format_amount_from_minor_units(None) is None

    def test_activation_and_renewal_subjects_differ(self):
        kwargs = dict(
            email="user@example.com",
            plan_name="Pro",
            amount="KES 650.00",
            reference="TXT-1",
            expires_at="Tue, 24 Mar 2026",
            manage_url="https://app.textopsy.test/plan",
        )

        assert plan_activated_email(**kwargs).subject == "Welcome to Pro"
        assert plan_activated_email(**kwargs, is_renewal=True).subject == "Your plan renewed successfully"

    def test_values_are_html_escaped(self):
        content = renewal_reminder_email(
            email="<script>@example.com",
            plan_name="Pro",
            expires_at="soon",
            renewal_url=None,
        )

        assert "<script>" not in content.html
        assert content.text


class TestEmailService:
    async def test_unconfigured_smtp_skips_send(self):
        service = EmailService(EmailConfig())

        sent = await service.send_renewal_reminder(
            email="user@example.com", plan_name="Pro", expires_at=EXPIRES, renewal_url=None
        )

        assert sent is False

    async def test_sends_with_starttls(self, monkeypatch):
        FakeSMTP.instances.clear()
        monkeypatch.setattr(email_service_module.smtplib, "SMTP", FakeSMTP)
        service = EmailService(_configured())

        sent = await service.send_plan_activated(
            email="user@example.com",
            plan_name="Pro",
            amount_minor=65000,
            currency="KES",
            reference="TXT-1",
            expires_at=EXPIRES,
            manage_url=None,
        )

        assert sent is True
        smtp = FakeSMTP.instances[0]
        assert smtp.started_tls is True
        assert smtp.logged_in == ("mailer", "secret")
        message = smtp.sent[0]
        assert message["To"] == "user@example.com"
        assert message["Subject"] == "Welcome to Pro"

    async def test_port_465_uses_ssl(self, monkeypatch):
        FakeSMTP.instances.clear()
        monkeypatch.setattr(email_service_module.smtplib, "SMTP_SSL", FakeSMTP)
        service = EmailService(_configured(smtp_port=465))

        await service.send_renewal_reminder(
            email="user@example.com", plan_name="Pro", expires_at=EXPIRES, renewal_url=None
        )

        assert FakeSMTP.instances[0].started_tls is False
        assert FakeSMTP.instances[0].port == 465

    async def test_auto_renewal_alert_goes_to_billing_inbox(self, monkeypatch):
        FakeSMTP.instances.clear()
        monkeypatch.setattr(email_service_module.smtplib, "SMTP", FakeSMTP)
        service = EmailService(_configured())

        await service.send_auto_renewal_alert(
            customer_email="user@example.com",
            plan_name="Pro",
            amount_minor=65000,
            currency="KES",
            reference="TXT-1",
            paid_at=None,
        )

        assert FakeSMTP.instances[0].sent[0]["To"] == "billing@textopsy.test"

    async def test_auto_renewal_alert_skipped_without_inbox(self):
        service = EmailService(_configured(billing_alert_email=""))

        sent = await service.send_auto_renewal_alert(
            customer_email="user@example.com",
            plan_name="Pro",
            amount_minor=65000,
            currency="KES",
            reference="TXT-1",
            paid_at=None,
        )

        assert sent is False
