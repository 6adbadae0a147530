"""
Transactional email templates for billing notifications.

Each builder returns an EmailContent with subject, HTML and plain-text bodies.
All interpolated values are HTML-escaped.
"""

from html import escape

from pydantic import BaseModel

PRODUCT_NAME = "Textopsy"

_PARAGRAPH = '<p style="margin:0 0 8px;font-size:15px;color:#475569;">{}</p>'
_BUTTON = (
    '<p style="margin:12px 0 0;"><a href="{url}" style="display:inline-block;padding:12px 24px;'
    'background-color:#4f46e5;color:#ffffff;border-radius:8px;font-weight:600;text-decoration:none;">'
    "{label}</a></p>"
)


class EmailContent(BaseModel):
    """Rendered email."""

    subject: str
    html: str
    text: str


def format_amount_from_minor_units(amount_minor_units: int | None, currency: str = "KES") -> str | None:
    """Render an amount stored in minor units, e.g. 65000 KES -> 'KES 650.00'."""
    if amount_minor_units is None:
        return None
    return f"{currency.upper()} {amount_minor_units / 100:,.2f}"


def _render_layout(*, headline: str, body: str, intro: str | None = None, preview: str | None = None) -> str:
    preview_html = f'<span style="display:none !important;">{escape(preview)}</span>' if preview else ""
    intro_html = (
        f'<p style="font-size:16px;margin:0 0 20px;color:#475569;">{escape(intro)}</p>' if intro else ""
    )
    return (
        '<!DOCTYPE html><html lang="en"><head><meta charset="UTF-8" />'
        f"<title>{escape(headline)}</title></head>"
        '<body style="margin:0;padding:24px;background-color:#f4f6fb;font-family:sans-serif;color:#0f172a;">'
        f"{preview_html}"
        '<div style="max-width:520px;margin:0 auto;background-color:#ffffff;border:1px solid #e2e8f0;'
        'border-radius:12px;padding:32px;">'
        f'<p style="font-size:22px;font-weight:600;margin:0 0 16px;">{escape(headline)}</p>'
        f"{intro_html}{body}"
        '<hr style="border:none;border-top:1px solid #e2e8f0;margin:32px 0;" />'
        f'<p style="font-size:12px;color:#94a3b8;margin:0;">You received this email because you have a '
        f"{PRODUCT_NAME} account. If this was unexpected, please ignore it.</p>"
        "</div></body></html>"
    )


def _render_text(lines: list[str | None]) -> str:
    return "\n\n".join(line for line in lines if line)


def plan_activated_email(
    *,
    email: str,
    plan_name: str,
    amount: str | None = None,
    reference: str | None = None,
    expires_at: str | None = None,
    manage_url: str | None = None,
    is_renewal: bool = False,
) -> EmailContent:
    subject = "Your plan renewed successfully" if is_renewal else f"Welcome to {plan_name}"
    intro = (
        f"Hi {email}, your {plan_name} plan renewed successfully."
        if is_renewal
        else f"Hi {email}, welcome to {plan_name}."
    )
    details = [
        f"Your billing cycle now ends on {expires_at}." if expires_at else None,
        f"Amount charged: {amount}." if amount else None,
        f"Reference: {reference}." if reference else None,
    ]
    body = "".join(_PARAGRAPH.format(escape(line)) for line in details if line)
    if not body:
        body = _PARAGRAPH.format("Your plan is active.")
    if manage_url:
        body += _BUTTON.format(url=escape(manage_url, quote=True), label="Manage billing")

    html = _render_layout(
        headline="Plan renewed" if is_renewal else "Plan activated",
        intro=intro,
        body=body,
        preview=f"Your {plan_name} plan renewed successfully" if is_renewal else f"You're now on {plan_name}",
    )
    text = _render_text(
        [
            intro,
            f"Cycle ends on {expires_at}." if expires_at else None,
            f"Amount charged: {amount}." if amount else None,
            f"Reference: {reference}." if reference else None,
            f"Manage billing: {manage_url}" if manage_url else None,
        ]
    )
    return EmailContent(subject=subject, html=html, text=text)


def renewal_reminder_email(
    *, email: str, plan_name: str, expires_at: str, renewal_url: str | None = None
) -> EmailContent:
    intro = f"Hi {email}, your {plan_name} plan renews on {expires_at}."
    body = _PARAGRAPH.format(
        escape(
            f"We will attempt to renew automatically on {expires_at}. "
            "Update your billing method or cancel before then if needed."
        )
    )
    if renewal_url:
        body += _BUTTON.format(url=escape(renewal_url, quote=True), label="Manage renewal")

    html = _render_layout(
        headline="Your plan renews soon",
        intro=intro,
        body=body,
        preview=f"Your {plan_name} plan renews soon",
    )
    text = _render_text(
        [
            intro,
            "We'll attempt to renew automatically using your saved authorization.",
            f"Manage renewal: {renewal_url}" if renewal_url else None,
        ]
    )
    return EmailContent(subject="Your plan renews soon", html=html, text=text)


def auto_renewal_notification_email(
    *,
    customer_email: str,
    plan_name: str,
    amount: str | None = None,
    reference: str | None = None,
    paid_at: str | None = None,
) -> EmailContent:
    lines = [
        f"{customer_email} just renewed {plan_name}.",
        f"Paid at: {paid_at}" if paid_at else None,
        f"Amount: {amount}" if amount else None,
        f"Reference: {reference}" if reference else None,
    ]
    body = "".join(_PARAGRAPH.format(escape(line)) for line in lines if line)
    html = _render_layout(headline="Auto-renewal succeeded", body=body)
    return EmailContent(
        subject=f"Auto-renewal succeeded for {customer_email}",
        html=html,
        text=_render_text(lines),
    )
