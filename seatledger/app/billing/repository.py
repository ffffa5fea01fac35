"""Persistence layer for billing domain objects."""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Any, ContextManager, Iterable, Iterator, Mapping, Optional, Protocol, Sequence

import psycopg2
import psycopg2.errors
import psycopg2.extras
import psycopg2.pool
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from .errors import DuplicateSubscription
from .models import (
    BillingInterval,
    Invoice,
    InvoiceStatus,
    Organization,
    PlanTier,
    ReconcileOutcome,
    SeatHolder,
    Subscription,
    SubscriptionPlan,
    SubscriptionStatus,
    WebhookEventRecord,
)


class BillingUnitOfWork(Protocol):
    """Operations available inside one atomic billing transaction."""

    def get_organization(self, organization_id: str) -> Optional[Organization]:
        ...

    def find_organization_by_customer(self, customer_id: str) -> Optional[Organization]:
        ...

    def save_organization(self, organization: Organization) -> Organization:
        ...

    def get_plan(self, plan_id: str) -> Optional[SubscriptionPlan]:
        ...

    def get_plan_by_tier(self, tier: PlanTier) -> Optional[SubscriptionPlan]:
        ...

    def insert_plan(self, plan: SubscriptionPlan) -> SubscriptionPlan:
        """Insert ``plan`` unless its tier exists; return the stored record either way."""

    def get_subscription(self, subscription_id: str, *, for_update: bool = False) -> Optional[Subscription]:
        ...

    def find_subscription_by_external_id(
        self, external_id: str, *, for_update: bool = False
    ) -> Optional[Subscription]:
        ...

    def find_subscription_by_organization(
        self, organization_id: str, *, for_update: bool = False
    ) -> Optional[Subscription]:
        ...

    def insert_subscription(self, subscription: Subscription) -> Subscription:
        """Insert a new subscription or raise :class:`DuplicateSubscription`."""

    def save_subscription(self, subscription: Subscription) -> Subscription:
        ...

    def increment_used_seats(self, subscription_id: str) -> Optional[Subscription]:
        """Consume one seat if capacity remains; ``None`` when the subscription is full."""

    def decrement_used_seats(self, subscription_id: str) -> Optional[Subscription]:
        ...

    def set_seat_capacity(self, subscription_id: str, seats: int) -> Optional[Subscription]:
        """Change capacity unless it would drop below usage; ``None`` when refused."""

    def list_expired_grace_periods(self, now: datetime, *, limit: int) -> Sequence[Subscription]:
        ...

    def get_user(self, user_id: str, *, for_update: bool = False) -> Optional[SeatHolder]:
        ...

    def save_user(self, user: SeatHolder) -> SeatHolder:
        ...

    def find_invoice_by_external_id(self, external_id: str, *, for_update: bool = False) -> Optional[Invoice]:
        ...

    def insert_invoice(self, invoice: Invoice) -> Invoice:
        """Insert ``invoice`` unless its external id exists; return the stored record."""

    def save_invoice(self, invoice: Invoice) -> Invoice:
        ...

    def list_invoices(self, subscription_id: str, *, limit: int = 20) -> Sequence[Invoice]:
        ...

    def get_webhook_event(self, event_id: str) -> Optional[WebhookEventRecord]:
        ...

    def record_webhook_event(self, record: WebhookEventRecord) -> WebhookEventRecord:
        """Insert or update the receipt for a webhook delivery, counting attempts."""

    def list_webhook_events(
        self,
        outcomes: Iterable[ReconcileOutcome],
        *,
        max_attempts: int,
        limit: int,
    ) -> Sequence[WebhookEventRecord]:
        ...


class BillingRepository(Protocol):
    """Store with an explicit open/close lifecycle handing out units of work."""

    def open(self) -> None:
        ...

    def close(self) -> None:
        ...

    def transaction(self) -> ContextManager[BillingUnitOfWork]:
        ...


def _row_to_organization(row: Mapping[str, Any]) -> Organization:
    return Organization(
        organization_id=row["organization_id"],
        name=row["name"],
        billing_email=row.get("billing_email"),
        customer_id=row.get("customer_id"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_plan(row: Mapping[str, Any]) -> SubscriptionPlan:
    return SubscriptionPlan(
        plan_id=row["plan_id"],
        tier=PlanTier(row["tier"]),
        name=row["name"],
        features=row.get("features") or {},
        max_seats=row.get("max_seats"),
        monthly_price=int(row["monthly_price"]),
        yearly_price=row.get("yearly_price"),
        trial_days=int(row["trial_days"]),
        is_active=bool(row["is_active"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_subscription(row: Mapping[str, Any]) -> Subscription:
    return Subscription(
        subscription_id=row["subscription_id"],
        organization_id=row["organization_id"],
        plan_id=row["plan_id"],
        billing_interval=BillingInterval(row["billing_interval"]),
        status=SubscriptionStatus(row["status"]),
        current_period_start=row["current_period_start"],
        current_period_end=row["current_period_end"],
        period_confirmed=bool(row["period_confirmed"]),
        cancel_at_period_end=bool(row["cancel_at_period_end"]),
        canceled_at=row.get("canceled_at"),
        external_id=row.get("external_id"),
        seats=int(row["seats"]),
        used_seats=int(row["used_seats"]),
        grace_period_end=row.get("grace_period_end"),
        billing_cycle_anchor=row["billing_cycle_anchor"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_user(row: Mapping[str, Any]) -> SeatHolder:
    return SeatHolder(
        user_id=row["user_id"],
        email=row.get("email"),
        organization_id=row.get("organization_id"),
        seat_assigned_at=row.get("seat_assigned_at"),
    )


def _row_to_invoice(row: Mapping[str, Any]) -> Invoice:
    return Invoice(
        invoice_id=row["invoice_id"],
        subscription_id=row["subscription_id"],
        organization_id=row["organization_id"],
        external_id=row["external_id"],
        amount=int(row["amount"]),
        currency=row["currency"],
        status=InvoiceStatus(row["status"]),
        due_date=row.get("due_date"),
        paid_at=row.get("paid_at"),
        period_start=row.get("period_start"),
        period_end=row.get("period_end"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_webhook_event(row: Mapping[str, Any]) -> WebhookEventRecord:
    return WebhookEventRecord(
        event_id=row["event_id"],
        event_type=row["event_type"],
        payload=row.get("payload") or {},
        outcome=ReconcileOutcome(row["outcome"]),
        detail=row.get("detail"),
        attempts=int(row["attempts"]),
        received_at=row["received_at"],
        processed_at=row.get("processed_at"),
    )


def _subscription_params(subscription: Subscription) -> Mapping[str, Any]:
    return {
        "subscription_id": subscription.subscription_id,
        "organization_id": subscription.organization_id,
        "plan_id": subscription.plan_id,
        "billing_interval": subscription.billing_interval.value,
        "status": subscription.status.value,
        "current_period_start": subscription.current_period_start,
        "current_period_end": subscription.current_period_end,
        "period_confirmed": subscription.period_confirmed,
        "cancel_at_period_end": subscription.cancel_at_period_end,
        "canceled_at": subscription.canceled_at,
        "external_id": subscription.external_id,
        "seats": subscription.seats,
        "used_seats": subscription.used_seats,
        "grace_period_end": subscription.grace_period_end,
        "billing_cycle_anchor": subscription.billing_cycle_anchor,
    }


def _locking(query: str, for_update: bool) -> str:
    return f"{query} FOR UPDATE" if for_update else query


class PostgresUnitOfWork:
    """Executes billing statements on a single transactional cursor."""

    def __init__(self, cursor: PgCursor) -> None:
        self._cursor = cursor

    def _fetch_one(self, query: str, params: Any) -> Optional[Mapping[str, Any]]:
        self._cursor.execute(query, params)
        return self._cursor.fetchone()

    def _fetch_all(self, query: str, params: Any) -> Sequence[Mapping[str, Any]]:
        self._cursor.execute(query, params)
        return self._cursor.fetchall()

    # Organizations -----------------------------------------------------

    def get_organization(self, organization_id: str) -> Optional[Organization]:
        row = self._fetch_one(
            "SELECT * FROM billing_organizations WHERE organization_id = %s",
            (organization_id,),
        )
        return _row_to_organization(row) if row else None

    def find_organization_by_customer(self, customer_id: str) -> Optional[Organization]:
        row = self._fetch_one(
            "SELECT * FROM billing_organizations WHERE customer_id = %s",
            (customer_id,),
        )
        return _row_to_organization(row) if row else None

    def save_organization(self, organization: Organization) -> Organization:
        row = self._fetch_one(
            """
            INSERT INTO billing_organizations (organization_id, name, billing_email, customer_id)
            VALUES (%(organization_id)s, %(name)s, %(billing_email)s, %(customer_id)s)
            ON CONFLICT (organization_id) DO UPDATE SET
                name = EXCLUDED.name,
                billing_email = EXCLUDED.billing_email,
                customer_id = EXCLUDED.customer_id,
                updated_at = NOW()
            RETURNING *
            """,
            {
                "organization_id": organization.organization_id,
                "name": organization.name,
                "billing_email": organization.billing_email,
                "customer_id": organization.customer_id,
            },
        )
        if not row:
            raise RuntimeError("Failed to persist organization")
        return _row_to_organization(row)

    # Plans -------------------------------------------------------------

    def get_plan(self, plan_id: str) -> Optional[SubscriptionPlan]:
        row = self._fetch_one("SELECT * FROM billing_plans WHERE plan_id = %s", (plan_id,))
        return _row_to_plan(row) if row else None

    def get_plan_by_tier(self, tier: PlanTier) -> Optional[SubscriptionPlan]:
        row = self._fetch_one("SELECT * FROM billing_plans WHERE tier = %s", (tier.value,))
        return _row_to_plan(row) if row else None

    def insert_plan(self, plan: SubscriptionPlan) -> SubscriptionPlan:
        row = self._fetch_one(
            """
            INSERT INTO billing_plans (
                plan_id, tier, name, features, max_seats,
                monthly_price, yearly_price, trial_days, is_active
            )
            VALUES (%(plan_id)s, %(tier)s, %(name)s, %(features)s, %(max_seats)s,
                    %(monthly_price)s, %(yearly_price)s, %(trial_days)s, %(is_active)s)
            ON CONFLICT (tier) DO NOTHING
            RETURNING *
            """,
            {
                "plan_id": plan.plan_id,
                "tier": plan.tier.value,
                "name": plan.name,
                "features": psycopg2.extras.Json(plan.features),
                "max_seats": plan.max_seats,
                "monthly_price": plan.monthly_price,
                "yearly_price": plan.yearly_price,
                "trial_days": plan.trial_days,
                "is_active": plan.is_active,
            },
        )
        if row:
            return _row_to_plan(row)
        existing = self.get_plan_by_tier(plan.tier)
        if existing is None:
            raise RuntimeError(f"Plan for tier {plan.tier.value} vanished during upsert")
        return existing

    # Subscriptions -----------------------------------------------------

    def get_subscription(self, subscription_id: str, *, for_update: bool = False) -> Optional[Subscription]:
        row = self._fetch_one(
            _locking("SELECT * FROM billing_subscriptions WHERE subscription_id = %s", for_update),
            (subscription_id,),
        )
        return _row_to_subscription(row) if row else None

    def find_subscription_by_external_id(
        self, external_id: str, *, for_update: bool = False
    ) -> Optional[Subscription]:
        row = self._fetch_one(
            _locking("SELECT * FROM billing_subscriptions WHERE external_id = %s", for_update),
            (external_id,),
        )
        return _row_to_subscription(row) if row else None

    def find_subscription_by_organization(
        self, organization_id: str, *, for_update: bool = False
    ) -> Optional[Subscription]:
        row = self._fetch_one(
            _locking("SELECT * FROM billing_subscriptions WHERE organization_id = %s", for_update),
            (organization_id,),
        )
        return _row_to_subscription(row) if row else None

    def insert_subscription(self, subscription: Subscription) -> Subscription:
        try:
            row = self._fetch_one(
                """
                INSERT INTO billing_subscriptions (
                    subscription_id, organization_id, plan_id, billing_interval, status,
                    current_period_start, current_period_end, period_confirmed,
                    cancel_at_period_end, canceled_at, external_id, seats, used_seats,
                    grace_period_end, billing_cycle_anchor
                )
                VALUES (%(subscription_id)s, %(organization_id)s, %(plan_id)s,
                        %(billing_interval)s, %(status)s, %(current_period_start)s,
                        %(current_period_end)s, %(period_confirmed)s, %(cancel_at_period_end)s,
                        %(canceled_at)s, %(external_id)s, %(seats)s, %(used_seats)s,
                        %(grace_period_end)s, %(billing_cycle_anchor)s)
                RETURNING *
                """,
                _subscription_params(subscription),
            )
        except psycopg2.errors.UniqueViolation as exc:
            raise DuplicateSubscription(
                "Organization already has a subscription",
                detail={"organization_id": subscription.organization_id},
            ) from exc
        if not row:
            raise RuntimeError("Failed to persist subscription")
        return _row_to_subscription(row)

    def save_subscription(self, subscription: Subscription) -> Subscription:
        row = self._fetch_one(
            """
            UPDATE billing_subscriptions SET
                plan_id = %(plan_id)s,
                billing_interval = %(billing_interval)s,
                status = %(status)s,
                current_period_start = %(current_period_start)s,
                current_period_end = %(current_period_end)s,
                period_confirmed = %(period_confirmed)s,
                cancel_at_period_end = %(cancel_at_period_end)s,
                canceled_at = %(canceled_at)s,
                external_id = %(external_id)s,
                seats = %(seats)s,
                grace_period_end = %(grace_period_end)s,
                updated_at = NOW()
            WHERE subscription_id = %(subscription_id)s
            RETURNING *
            """,
            _subscription_params(subscription),
        )
        if not row:
            raise RuntimeError(f"Subscription {subscription.subscription_id} disappeared during update")
        return _row_to_subscription(row)

    def increment_used_seats(self, subscription_id: str) -> Optional[Subscription]:
        row = self._fetch_one(
            """
            UPDATE billing_subscriptions
            SET used_seats = used_seats + 1, updated_at = NOW()
            WHERE subscription_id = %s AND used_seats < seats
            RETURNING *
            """,
            (subscription_id,),
        )
        return _row_to_subscription(row) if row else None

    def decrement_used_seats(self, subscription_id: str) -> Optional[Subscription]:
        row = self._fetch_one(
            """
            UPDATE billing_subscriptions
            SET used_seats = GREATEST(used_seats - 1, 0), updated_at = NOW()
            WHERE subscription_id = %s
            RETURNING *
            """,
            (subscription_id,),
        )
        return _row_to_subscription(row) if row else None

    def set_seat_capacity(self, subscription_id: str, seats: int) -> Optional[Subscription]:
        row = self._fetch_one(
            """
            UPDATE billing_subscriptions
            SET seats = %(seats)s, updated_at = NOW()
            WHERE subscription_id = %(subscription_id)s AND used_seats <= %(seats)s
            RETURNING *
            """,
            {"subscription_id": subscription_id, "seats": seats},
        )
        return _row_to_subscription(row) if row else None

    def list_expired_grace_periods(self, now: datetime, *, limit: int) -> Sequence[Subscription]:
        rows = self._fetch_all(
            """
            SELECT *
            FROM billing_subscriptions
            WHERE status = %s AND grace_period_end <= %s
            ORDER BY grace_period_end ASC
            LIMIT %s
            """,
            (SubscriptionStatus.PAST_DUE.value, now, limit),
        )
        return [_row_to_subscription(row) for row in rows]

    # Seat holders ------------------------------------------------------

    def get_user(self, user_id: str, *, for_update: bool = False) -> Optional[SeatHolder]:
        row = self._fetch_one(
            _locking(
                "SELECT user_id, email, organization_id, seat_assigned_at FROM users WHERE user_id = %s",
                for_update,
            ),
            (user_id,),
        )
        return _row_to_user(row) if row else None

    def save_user(self, user: SeatHolder) -> SeatHolder:
        row = self._fetch_one(
            """
            UPDATE users
            SET organization_id = %(organization_id)s, seat_assigned_at = %(seat_assigned_at)s
            WHERE user_id = %(user_id)s
            RETURNING user_id, email, organization_id, seat_assigned_at
            """,
            {
                "user_id": user.user_id,
                "organization_id": user.organization_id,
                "seat_assigned_at": user.seat_assigned_at,
            },
        )
        if not row:
            raise RuntimeError(f"User {user.user_id} disappeared during update")
        return _row_to_user(row)

    # Invoices ----------------------------------------------------------

    def find_invoice_by_external_id(self, external_id: str, *, for_update: bool = False) -> Optional[Invoice]:
        row = self._fetch_one(
            _locking("SELECT * FROM billing_invoices WHERE external_id = %s", for_update),
            (external_id,),
        )
        return _row_to_invoice(row) if row else None

    def insert_invoice(self, invoice: Invoice) -> Invoice:
        row = self._fetch_one(
            """
            INSERT INTO billing_invoices (
                invoice_id, subscription_id, organization_id, external_id, amount,
                currency, status, due_date, paid_at, period_start, period_end
            )
            VALUES (%(invoice_id)s, %(subscription_id)s, %(organization_id)s, %(external_id)s,
                    %(amount)s, %(currency)s, %(status)s, %(due_date)s, %(paid_at)s,
                    %(period_start)s, %(period_end)s)
            ON CONFLICT (external_id) DO NOTHING
            RETURNING *
            """,
            {
                "invoice_id": invoice.invoice_id,
                "subscription_id": invoice.subscription_id,
                "organization_id": invoice.organization_id,
                "external_id": invoice.external_id,
                "amount": invoice.amount,
                "currency": invoice.currency,
                "status": invoice.status.value,
                "due_date": invoice.due_date,
                "paid_at": invoice.paid_at,
                "period_start": invoice.period_start,
                "period_end": invoice.period_end,
            },
        )
        if row:
            return _row_to_invoice(row)
        existing = self.find_invoice_by_external_id(invoice.external_id)
        if existing is None:
            raise RuntimeError(f"Invoice {invoice.external_id} vanished during insert")
        return existing

    def save_invoice(self, invoice: Invoice) -> Invoice:
        row = self._fetch_one(
            """
            UPDATE billing_invoices
            SET status = %(status)s, paid_at = %(paid_at)s, updated_at = NOW()
            WHERE invoice_id = %(invoice_id)s
            RETURNING *
            """,
            {"invoice_id": invoice.invoice_id, "status": invoice.status.value, "paid_at": invoice.paid_at},
        )
        if not row:
            raise RuntimeError(f"Invoice {invoice.invoice_id} disappeared during update")
        return _row_to_invoice(row)

    def list_invoices(self, subscription_id: str, *, limit: int = 20) -> Sequence[Invoice]:
        rows = self._fetch_all(
            """
            SELECT *
            FROM billing_invoices
            WHERE subscription_id = %s
            ORDER BY created_at DESC
            LIMIT %s
            """,
            (subscription_id, limit),
        )
        return [_row_to_invoice(row) for row in rows]

    # Webhook receipts --------------------------------------------------

    def get_webhook_event(self, event_id: str) -> Optional[WebhookEventRecord]:
        row = self._fetch_one("SELECT * FROM billing_webhook_events WHERE event_id = %s", (event_id,))
        return _row_to_webhook_event(row) if row else None

    def record_webhook_event(self, record: WebhookEventRecord) -> WebhookEventRecord:
        row = self._fetch_one(
            """
            INSERT INTO billing_webhook_events (
                event_id, event_type, payload, outcome, detail, attempts, received_at, processed_at
            )
            VALUES (%(event_id)s, %(event_type)s, %(payload)s, %(outcome)s, %(detail)s, 1,
                    %(received_at)s, %(processed_at)s)
            ON CONFLICT (event_id) DO UPDATE SET
                outcome = EXCLUDED.outcome,
                detail = EXCLUDED.detail,
                attempts = billing_webhook_events.attempts + 1,
                processed_at = EXCLUDED.processed_at
            RETURNING *
            """,
            {
                "event_id": record.event_id,
                "event_type": record.event_type,
                "payload": psycopg2.extras.Json(record.payload),
                "outcome": record.outcome.value,
                "detail": record.detail,
                "received_at": record.received_at,
                "processed_at": record.processed_at,
            },
        )
        if not row:
            raise RuntimeError("Failed to persist webhook event")
        return _row_to_webhook_event(row)

    def list_webhook_events(
        self,
        outcomes: Iterable[ReconcileOutcome],
        *,
        max_attempts: int,
        limit: int,
    ) -> Sequence[WebhookEventRecord]:
        rows = self._fetch_all(
            """
            SELECT *
            FROM billing_webhook_events
            WHERE outcome = ANY(%s) AND attempts < %s
            ORDER BY received_at ASC
            LIMIT %s
            """,
            ([outcome.value for outcome in outcomes], max_attempts, limit),
        )
        return [_row_to_webhook_event(row) for row in rows]


@contextmanager
def managed_connection(pool: psycopg2.pool.AbstractConnectionPool) -> Iterator[PgConnection]:
    """Borrow a pooled connection and commit or roll back around the block."""

    connection = pool.getconn()
    try:
        yield connection
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        pool.putconn(connection)


class PostgresBillingRepository:
    """Concrete repository persisting billing models in PostgreSQL."""

    def __init__(self, *, connect_kwargs: Mapping[str, Any], minconn: int = 1, maxconn: int = 10) -> None:
        self._connect_kwargs = dict(connect_kwargs)
        self._minconn = minconn
        self._maxconn = maxconn
        self._pool: Optional[psycopg2.pool.ThreadedConnectionPool] = None

    def open(self) -> None:
        if self._pool is None:
            self._pool = psycopg2.pool.ThreadedConnectionPool(
                self._minconn, self._maxconn, **self._connect_kwargs
            )

    def close(self) -> None:
        if self._pool is not None:
            self._pool.closeall()
            self._pool = None

    @contextmanager
    def transaction(self) -> Iterator[PostgresUnitOfWork]:
        if self._pool is None:
            raise RuntimeError("PostgresBillingRepository has not been opened")
        with managed_connection(self._pool) as connection:
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield PostgresUnitOfWork(cursor)
            finally:
                cursor.close()
