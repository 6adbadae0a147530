"""Renewal reminders for Pro plans that are about to expire."""

from datetime import UTC, datetime, timedelta

import structlog

from entitlements.constants import PRO_PLAN_DISPLAY_NAME
from entitlements.models.billing import ReminderRunResult, RenewalCandidate
from entitlements.services.billing_repository import BillingRepository
from entitlements.services.email_service import EmailService

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class RenewalReminderScheduler:
    """Selects Pro users nearing expiry and emails them a renewal reminder.

    Runs one bounded batch per invocation (triggered by an external cron).
    By default anyone reminded before the current pass is eligible again;
    with `once_per_window` a user is reminded at most once per look-ahead window.
    A user is marked only after the email was accepted, so a failed send is
    picked up again by the next pass.
    """

    def __init__(
        self,
        repository: BillingRepository,
        email_service: EmailService,
        *,
        renewal_url: str | None = None,
        once_per_window: bool = False,
        now_provider=_utcnow,
    ) -> None:
        self.repository = repository
        self.email_service = email_service
        self.renewal_url = renewal_url
        self.once_per_window = once_per_window
        self.now_provider = now_provider

    async def select_due_for_reminder(
        self,
        window_days: int,
        limit: int,
        *,
        reminded_before: datetime | None = None,
    ) -> list[RenewalCandidate]:
        """
        Pro users whose plan expires within the next `window_days`.

        Args:
            window_days: Size of the look-ahead window; values below 1 count as 1.
            limit: Maximum number of candidates returned.
            reminded_before: Users reminded at or after this instant are skipped.
                Defaults to now, or to `now - window_days` when the scheduler
                reminds once per window.
        """
        now = self.now_provider()
        window = timedelta(days=max(1, window_days))
        cutoff = reminded_before
        if cutoff is None:
            cutoff = now - window if self.once_per_window else now
        return await self.repository.select_renewal_candidates(
            now=now,
            window_end=now + window,
            reminded_before=cutoff,
            limit=max(0, limit),
        )

    async def mark_reminded(self, user_id: str) -> None:
        await self.repository.mark_renewal_reminder_sent(user_id, self.now_provider())

    async def run(self, window_days: int, limit: int) -> ReminderRunResult:
        candidates = await self.select_due_for_reminder(window_days, limit)
        sent = 0

        for candidate in candidates:
            try:
                delivered = await self.email_service.send_renewal_reminder(
                    email=candidate.email,
                    plan_name=PRO_PLAN_DISPLAY_NAME,
                    expires_at=candidate.plan_expires_at,
                    renewal_url=self.renewal_url,
                )
            except Exception as e:
                logger.error("renewal_reminder_failed", user_id=candidate.user_id, error=str(e))
                continue

            if not delivered:
                logger.warning("renewal_reminder_not_delivered", user_id=candidate.user_id)
                continue

            await self.mark_reminded(candidate.user_id)
            sent += 1

        logger.info("renewal_reminders_run", attempted=len(candidates), reminders_sent=sent)
        return ReminderRunResult(reminders_sent=sent, attempted=len(candidates))
