"""Storage contract and repositories for plan, usage and transaction state.

Usage counters are only ever changed through `increment_*_with_ceiling`, a
single storage operation that inserts the period row or increments it while it
is below the ceiling. Nothing reads a counter and writes it back, so two
concurrent submissions cannot both slip under the limit.
"""

import uuid
from datetime import UTC, date, datetime
from typing import Protocol

import structlog
from postgrest.exceptions import APIError

from entitlements.errors import DuplicateTransactionError
from entitlements.models.billing import (
    ConversationRecord,
    CounterUpdate,
    DailyUsageRecord,
    MonthlyCreditRecord,
    Plan,
    PlanRecord,
    RenewalCandidate,
    TransactionRecord,
    TransactionStatus,
)

logger = structlog.get_logger(__name__)

# Postgres SQLSTATE for unique_violation
UNIQUE_VIOLATION = "23505"


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _ts(value: datetime) -> str:
    """Timestamp literal safe to embed in PostgREST filter strings."""
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class BillingRepository(Protocol):
    """Storage contract for billing state."""

    async def get_plan_record(self, user_id: str) -> PlanRecord | None:
        """Fetch a user's plan record."""

    async def create_plan_record(self, record: PlanRecord) -> PlanRecord:
        """Insert a plan record unless one exists; return the stored record."""

    async def downgrade_expired_plan(self, user_id: str, now: datetime) -> bool:
        """Write plan=free only if the stored plan is Pro and expired at `now`.

        Idempotent; returns True when a row was changed.
        """

    async def grant_pro_plan(
        self,
        user_id: str,
        *,
        expires_at: datetime,
        customer_code: str | None = None,
        authorization_code: str | None = None,
    ) -> PlanRecord | None:
        """Set plan=pro with the given expiry and clear the reminder marker.

        Returns None when the user does not exist.
        """

    async def set_plan(self, user_id: str, *, plan: Plan, expires_at: datetime | None) -> PlanRecord | None:
        """Overwrite plan and expiry unconditionally (admin override).

        Returns None when the user does not exist.
        """

    async def count_conversations(self, user_id: str) -> int:
        """Count conversations owned by a user."""

    async def create_conversation(self, user_id: str, title: str | None = None) -> ConversationRecord:
        """Insert a conversation."""

    async def get_conversation(self, conversation_id: str) -> ConversationRecord | None:
        """Fetch a conversation by id."""

    async def get_daily_usage(self, user_id: str, usage_date: date) -> DailyUsageRecord | None:
        """Fetch the daily usage row for (user, day)."""

    async def increment_daily_usage_with_ceiling(
        self, user_id: str, usage_date: date, ceiling: int
    ) -> CounterUpdate:
        """Atomically create-or-increment the day's count while below `ceiling`."""

    async def get_monthly_credits(self, user_id: str, usage_month: str) -> MonthlyCreditRecord | None:
        """Fetch the monthly credit row for (user, month)."""

    async def increment_monthly_credits_with_ceiling(
        self, user_id: str, usage_month: str, ceiling: int
    ) -> CounterUpdate:
        """Atomically create-or-increment the month's credits while below `ceiling`."""

    async def get_transaction(self, reference: str) -> TransactionRecord | None:
        """Fetch a transaction by its unique reference."""

    async def insert_transaction(self, record: TransactionRecord) -> TransactionRecord:
        """Insert a transaction.

        Raises DuplicateTransactionError when the reference already exists.
        """

    async def update_transaction(
        self, record: TransactionRecord, *, expected_status: TransactionStatus
    ) -> bool:
        """Overwrite a transaction only if its stored status is `expected_status`.

        Returns False when another writer changed the status first.
        """

    async def select_renewal_candidates(
        self,
        *,
        now: datetime,
        window_end: datetime,
        reminded_before: datetime,
        limit: int,
    ) -> list[RenewalCandidate]:
        """Pro users expiring in (now, window_end] not reminded since `reminded_before`."""

    async def mark_renewal_reminder_sent(self, user_id: str, at: datetime) -> None:
        """Record that a renewal reminder went out."""


class InMemoryBillingRepository:
    """In-memory repository used for tests and local fallback.

    Every method finishes without awaiting, so each call is atomic with
    respect to other coroutines on the same event loop.
    """

    def __init__(self) -> None:
        self.plans: dict[str, PlanRecord] = {}
        self.conversations: dict[str, ConversationRecord] = {}
        self.daily_usage: dict[tuple[str, date], DailyUsageRecord] = {}
        self.monthly_credits: dict[tuple[str, str], MonthlyCreditRecord] = {}
        self.transactions: dict[str, TransactionRecord] = {}

    async def get_plan_record(self, user_id: str) -> PlanRecord | None:
        record = self.plans.get(user_id)
        return record.model_copy(deep=True) if record else None

    async def create_plan_record(self, record: PlanRecord) -> PlanRecord:
        existing = self.plans.get(record.user_id)
        if existing is None:
            now = _utcnow()
            existing = record.model_copy(
                update={"created_at": record.created_at or now, "updated_at": now}, deep=True
            )
            self.plans[record.user_id] = existing
        return existing.model_copy(deep=True)

    async def downgrade_expired_plan(self, user_id: str, now: datetime) -> bool:
        record = self.plans.get(user_id)
        if record is None or record.plan != Plan.PRO.value:
            return False
        if record.plan_expires_at is None or record.plan_expires_at > now:
            return False
        record.plan = Plan.FREE.value
        record.plan_expires_at = None
        record.updated_at = _utcnow()
        return True

    async def grant_pro_plan(
        self,
        user_id: str,
        *,
        expires_at: datetime,
        customer_code: str | None = None,
        authorization_code: str | None = None,
    ) -> PlanRecord | None:
        record = self.plans.get(user_id)
        if record is None:
            return None
        record.plan = Plan.PRO.value
        record.plan_expires_at = expires_at
        record.paystack_customer_code = customer_code
        record.paystack_authorization_code = authorization_code
        record.last_renewal_reminder_at = None
        record.updated_at = _utcnow()
        return record.model_copy(deep=True)

    async def set_plan(self, user_id: str, *, plan: Plan, expires_at: datetime | None) -> PlanRecord | None:
        record = self.plans.get(user_id)
        if record is None:
            return None
        record.plan = plan.value
        record.plan_expires_at = expires_at
        record.updated_at = _utcnow()
        return record.model_copy(deep=True)

    async def count_conversations(self, user_id: str) -> int:
        return sum(1 for c in self.conversations.values() if c.user_id == user_id)

    async def create_conversation(self, user_id: str, title: str | None = None) -> ConversationRecord:
        record = ConversationRecord(
            id=str(uuid.uuid4()), user_id=user_id, title=title, created_at=_utcnow()
        )
        self.conversations[record.id] = record
        return record.model_copy(deep=True)

    async def get_conversation(self, conversation_id: str) -> ConversationRecord | None:
        record = self.conversations.get(conversation_id)
        return record.model_copy(deep=True) if record else None

    async def get_daily_usage(self, user_id: str, usage_date: date) -> DailyUsageRecord | None:
        record = self.daily_usage.get((user_id, usage_date))
        return record.model_copy(deep=True) if record else None

    async def increment_daily_usage_with_ceiling(
        self, user_id: str, usage_date: date, ceiling: int
    ) -> CounterUpdate:
        key = (user_id, usage_date)
        record = self.daily_usage.get(key)
        now = _utcnow()
        if record is None:
            if ceiling <= 0:
                return CounterUpdate(applied=False, value=0)
            record = DailyUsageRecord(
                user_id=user_id, usage_date=usage_date, submission_count=1, created_at=now, updated_at=now
            )
            self.daily_usage[key] = record
            return CounterUpdate(applied=True, value=1)
        if record.submission_count >= ceiling:
            return CounterUpdate(applied=False, value=record.submission_count)
        record.submission_count += 1
        record.updated_at = now
        return CounterUpdate(applied=True, value=record.submission_count)

    async def get_monthly_credits(self, user_id: str, usage_month: str) -> MonthlyCreditRecord | None:
        record = self.monthly_credits.get((user_id, usage_month))
        return record.model_copy(deep=True) if record else None

    async def increment_monthly_credits_with_ceiling(
        self, user_id: str, usage_month: str, ceiling: int
    ) -> CounterUpdate:
        key = (user_id, usage_month)
        record = self.monthly_credits.get(key)
        now = _utcnow()
        if record is None:
            if ceiling <= 0:
                return CounterUpdate(applied=False, value=0)
            record = MonthlyCreditRecord(
                user_id=user_id, usage_month=usage_month, credits_used=1, created_at=now, updated_at=now
            )
            self.monthly_credits[key] = record
            return CounterUpdate(applied=True, value=1)
        if record.credits_used >= ceiling:
            return CounterUpdate(applied=False, value=record.credits_used)
        record.credits_used += 1
        record.updated_at = now
        return CounterUpdate(applied=True, value=record.credits_used)

    async def get_transaction(self, reference: str) -> TransactionRecord | None:
        record = self.transactions.get(reference)
        return record.model_copy(deep=True) if record else None

    async def insert_transaction(self, record: TransactionRecord) -> TransactionRecord:
        if record.reference in self.transactions:
            raise DuplicateTransactionError(record.reference)
        now = _utcnow()
        stored = record.model_copy(
            update={"created_at": record.created_at or now, "updated_at": now}, deep=True
        )
        self.transactions[stored.reference] = stored
        return stored.model_copy(deep=True)

    async def update_transaction(
        self, record: TransactionRecord, *, expected_status: TransactionStatus
    ) -> bool:
        current = self.transactions.get(record.reference)
        if current is None or current.status != expected_status:
            return False
        self.transactions[record.reference] = record.model_copy(
            update={"created_at": current.created_at, "updated_at": _utcnow()}, deep=True
        )
        return True

    async def select_renewal_candidates(
        self,
        *,
        now: datetime,
        window_end: datetime,
        reminded_before: datetime,
        limit: int,
    ) -> list[RenewalCandidate]:
        candidates: list[RenewalCandidate] = []
        for record in self.plans.values():
            if len(candidates) >= limit:
                break
            if record.plan != Plan.PRO.value or record.plan_expires_at is None or not record.email:
                continue
            if not (now < record.plan_expires_at <= window_end):
                continue
            reminded = record.last_renewal_reminder_at
            if reminded is not None and reminded >= reminded_before:
                continue
            candidates.append(
                RenewalCandidate(
                    user_id=record.user_id,
                    email=record.email,
                    plan_expires_at=record.plan_expires_at,
                )
            )
        return candidates

    async def mark_renewal_reminder_sent(self, user_id: str, at: datetime) -> None:
        record = self.plans.get(user_id)
        if record is None:
            return
        record.last_renewal_reminder_at = at
        record.updated_at = _utcnow()


class SupabaseBillingRepository:
    """Supabase-backed repository for billing state.

    Relies on the constraints and functions in
    `supabase/migrations/0001_entitlements.sql`: unique (user_id, usage_date),
    unique (user_id, usage_month), unique reference, and the
    `increment_daily_usage` / `increment_monthly_credits` functions.
    """

    def __init__(
        self,
        client,
        *,
        users_table: str = "users",
        conversations_table: str = "conversations",
        daily_usage_table: str = "user_daily_usage",
        monthly_credits_table: str = "user_monthly_credits",
        transactions_table: str = "paystack_transactions",
    ):
        self.client = client
        self.users_table = users_table
        self.conversations_table = conversations_table
        self.daily_usage_table = daily_usage_table
        self.monthly_credits_table = monthly_credits_table
        self.transactions_table = transactions_table

    @staticmethod
    def _plan_record_from_row(row: dict) -> PlanRecord:
        data = dict(row)
        data["user_id"] = str(data.pop("id"))
        return PlanRecord.model_validate(data)

    async def get_plan_record(self, user_id: str) -> PlanRecord | None:
        response = (
            await self.client.table(self.users_table)
            .select("*")
            .eq("id", user_id)
            .limit(1)
            .execute()
        )
        rows = response.data or []
        if not rows:
            return None
        return self._plan_record_from_row(rows[0])

    async def create_plan_record(self, record: PlanRecord) -> PlanRecord:
        payload = record.model_dump(mode="json", exclude_none=True)
        payload["id"] = payload.pop("user_id")
        await (
            self.client.table(self.users_table)
            .upsert(payload, on_conflict="id", ignore_duplicates=True)
            .execute()
        )
        stored = await self.get_plan_record(record.user_id)
        return stored or record

    async def downgrade_expired_plan(self, user_id: str, now: datetime) -> bool:
        response = (
            await self.client.table(self.users_table)
            .update(
                {
                    "plan": Plan.FREE.value,
                    "plan_expires_at": None,
                    "updated_at": _utcnow().isoformat(),
                }
            )
            .eq("id", user_id)
            .eq("plan", Plan.PRO.value)
            .lte("plan_expires_at", _ts(now))
            .execute()
        )
        return bool(response.data)

    async def grant_pro_plan(
        self,
        user_id: str,
        *,
        expires_at: datetime,
        customer_code: str | None = None,
        authorization_code: str | None = None,
    ) -> PlanRecord | None:
        response = (
            await self.client.table(self.users_table)
            .update(
                {
                    "plan": Plan.PRO.value,
                    "plan_expires_at": expires_at.isoformat(),
                    "paystack_customer_code": customer_code,
                    "paystack_authorization_code": authorization_code,
                    "last_renewal_reminder_at": None,
                    "updated_at": _utcnow().isoformat(),
                }
            )
            .eq("id", user_id)
            .execute()
        )
        rows = response.data or []
        if not rows:
            return None
        return self._plan_record_from_row(rows[0])

    async def set_plan(self, user_id: str, *, plan: Plan, expires_at: datetime | None) -> PlanRecord | None:
        response = (
            await self.client.table(self.users_table)
            .update(
                {
                    "plan": plan.value,
                    "plan_expires_at": expires_at.isoformat() if expires_at else None,
                    "updated_at": _utcnow().isoformat(),
                }
            )
            .eq("id", user_id)
            .execute()
        )
        rows = response.data or []
        if not rows:
            return None
        return self._plan_record_from_row(rows[0])

    async def count_conversations(self, user_id: str) -> int:
        response = (
            await self.client.table(self.conversations_table)
            .select("id", count="exact", head=True)
            .eq("user_id", user_id)
            .execute()
        )
        return int(response.count or 0)

    async def create_conversation(self, user_id: str, title: str | None = None) -> ConversationRecord:
        data = {"id": str(uuid.uuid4()), "user_id": user_id, "title": title}
        response = await self.client.table(self.conversations_table).insert(data).execute()
        return ConversationRecord.model_validate(response.data[0])

    async def get_conversation(self, conversation_id: str) -> ConversationRecord | None:
        response = (
            await self.client.table(self.conversations_table)
            .select("id, user_id, title, created_at")
            .eq("id", conversation_id)
            .limit(1)
            .execute()
        )
        rows = response.data or []
        return ConversationRecord.model_validate(rows[0]) if rows else None

    async def get_daily_usage(self, user_id: str, usage_date: date) -> DailyUsageRecord | None:
        response = (
            await self.client.table(self.daily_usage_table)
            .select("*")
            .eq("user_id", user_id)
            .eq("usage_date", usage_date.isoformat())
            .limit(1)
            .execute()
        )
        rows = response.data or []
        return DailyUsageRecord.model_validate(rows[0]) if rows else None

    async def increment_daily_usage_with_ceiling(
        self, user_id: str, usage_date: date, ceiling: int
    ) -> CounterUpdate:
        response = await self.client.rpc(
            "increment_daily_usage",
            {"p_user_id": user_id, "p_usage_date": usage_date.isoformat(), "p_ceiling": ceiling},
        ).execute()
        return self._counter_update(response.data)

    async def get_monthly_credits(self, user_id: str, usage_month: str) -> MonthlyCreditRecord | None:
        response = (
            await self.client.table(self.monthly_credits_table)
            .select("*")
            .eq("user_id", user_id)
            .eq("usage_month", usage_month)
            .limit(1)
            .execute()
        )
        rows = response.data or []
        return MonthlyCreditRecord.model_validate(rows[0]) if rows else None

    async def increment_monthly_credits_with_ceiling(
        self, user_id: str, usage_month: str, ceiling: int
    ) -> CounterUpdate:
        response = await self.client.rpc(
            "increment_monthly_credits",
            {"p_user_id": user_id, "p_usage_month": usage_month, "p_ceiling": ceiling},
        ).execute()
        return self._counter_update(response.data)

    @staticmethod
    def _counter_update(data) -> CounterUpdate:
        # Set-returning functions come back as a list with one row.
        row = data[0] if isinstance(data, list) else data
        return CounterUpdate(applied=bool(row["applied"]), value=int(row["value"]))

    async def get_transaction(self, reference: str) -> TransactionRecord | None:
        response = (
            await self.client.table(self.transactions_table)
            .select("*")
            .eq("reference", reference)
            .limit(1)
            .execute()
        )
        rows = response.data or []
        return TransactionRecord.model_validate(rows[0]) if rows else None

    async def insert_transaction(self, record: TransactionRecord) -> TransactionRecord:
        payload = record.model_dump(mode="json", exclude_none=True)
        payload["id"] = str(uuid.uuid4())
        try:
            response = await self.client.table(self.transactions_table).insert(payload).execute()
        except APIError as e:
            if e.code == UNIQUE_VIOLATION:
                logger.info("transaction_reference_conflict", reference=record.reference)
                raise DuplicateTransactionError(record.reference) from e
            raise
        rows = response.data or []
        return TransactionRecord.model_validate(rows[0]) if rows else record

    async def update_transaction(
        self, record: TransactionRecord, *, expected_status: TransactionStatus
    ) -> bool:
        payload = record.model_dump(
            mode="json", exclude={"reference", "user_id", "created_at", "updated_at"}
        )
        payload["updated_at"] = _utcnow().isoformat()
        response = (
            await self.client.table(self.transactions_table)
            .update(payload)
            .eq("reference", record.reference)
            .eq("status", expected_status.value)
            .execute()
        )
        return bool(response.data)

    async def select_renewal_candidates(
        self,
        *,
        now: datetime,
        window_end: datetime,
        reminded_before: datetime,
        limit: int,
    ) -> list[RenewalCandidate]:
        response = (
            await self.client.table(self.users_table)
            .select("id, email, plan_expires_at")
            .eq("plan", Plan.PRO.value)
            .gt("plan_expires_at", _ts(now))
            .lte("plan_expires_at", _ts(window_end))
            .or_(
                "last_renewal_reminder_at.is.null,"
                f"last_renewal_reminder_at.lt.{_ts(reminded_before)}"
            )
            .limit(limit)
            .execute()
        )
        return [
            RenewalCandidate(user_id=str(row["id"]), email=row["email"], plan_expires_at=row["plan_expires_at"])
            for row in response.data or []
            if row.get("email") and row.get("plan_expires_at")
        ]

    async def mark_renewal_reminder_sent(self, user_id: str, at: datetime) -> None:
        await (
            self.client.table(self.users_table)
            .update({"last_renewal_reminder_at": at.isoformat(), "updated_at": _utcnow().isoformat()})
            .eq("id", user_id)
            .execute()
        )
