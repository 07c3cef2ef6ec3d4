"""Subscription store: the single source of truth for per-account billing state.

Every webhook transition is one conditional statement guarded by the stored
event watermark (``last_event_at``), executed in the same transaction as the
event-ID claim. Concurrent deliveries for the same account therefore never
lose updates, and an event is only marked processed once its effect is
durable.
"""

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum

import structlog
from sqlalchemy import and_, case, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_sync.core.exceptions import StoreWriteFailed
from billing_sync.db.models.processed_event import ProcessedWebhookEvent
from billing_sync.db.models.subscription import Subscription
from billing_sync.domain.events import (
    BillingEvent,
    CheckoutConfirmed,
    InvoicePaymentFailed,
    InvoicePaymentSucceeded,
    SubscriptionEnded,
    SubscriptionUpdated,
)
from billing_sync.domain.subscriptions import FREE_PLAN_ID, SubscriptionRecord, SubscriptionStatus

logger = structlog.get_logger(__name__)

subscriptions = Subscription.__table__
processed_events = ProcessedWebhookEvent.__table__


class TransitionOutcome(StrEnum):
    APPLIED = "applied"
    STALE = "stale"  # guard rejected the write (older or superseded event)
    MISSING_RECORD = "missing_record"
    LOGGED = "logged"  # event handled without a state change
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class TransitionResult:
    outcome: TransitionOutcome
    record: SubscriptionRecord | None = None


def _insert_for(session: AsyncSession):
    """Dialect-specific INSERT supporting ON CONFLICT."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise RuntimeError(f"Unsupported database dialect for upserts: {dialect}")
    return insert


def _not_older(created: datetime):
    return or_(subscriptions.c.last_event_at.is_(None), subscriptions.c.last_event_at <= created)


def _newest(created: datetime):
    return case(
        (subscriptions.c.last_event_at.is_(None), created),
        (subscriptions.c.last_event_at < created, created),
        else_=subscriptions.c.last_event_at,
    )


class SubscriptionStore:
    """Reads and guarded writes against the ``subscriptions`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    # ── Reads ───────────────────────────────────────────────────────

    async def get(self, account_id: str) -> SubscriptionRecord | None:
        async with self._session_factory() as session:
            return await self._get(session, account_id)

    async def _get(self, session: AsyncSession, account_id: str) -> SubscriptionRecord | None:
        result = await session.execute(select(subscriptions).where(subscriptions.c.account_id == account_id))
        row = result.one_or_none()
        return SubscriptionRecord.from_row(row) if row is not None else None

    # ── Checkout-side writes ────────────────────────────────────────

    async def upsert(self, record: SubscriptionRecord) -> SubscriptionRecord:
        """Insert or update a whole record keyed on ``account_id``.

        Backfill and admin primitive; webhooks go through ``apply_event``.
        ``processor_customer_id`` is write-once: an existing value is kept.
        An existing row is only overwritten when ``record.last_event_at`` is
        not older than its watermark, and a row that has seen processor
        events is never overwritten by a record without one. The stored
        record is returned either way.
        """
        now = datetime.now(UTC)
        async with self._session_factory() as session:
            insert = _insert_for(session)
            stmt = insert(subscriptions).values(
                account_id=record.account_id,
                processor_customer_id=record.processor_customer_id,
                processor_subscription_id=record.processor_subscription_id,
                plan_id=record.plan_id,
                status=record.status,
                current_period_start=record.current_period_start,
                current_period_end=record.current_period_end,
                cancel_at_period_end=record.cancel_at_period_end,
                last_event_at=record.last_event_at,
                created_at=now,
                updated_at=now,
            )
            excluded = stmt.excluded
            stmt = stmt.on_conflict_do_update(
                index_elements=[subscriptions.c.account_id],
                set_={
                    "processor_customer_id": func.coalesce(
                        subscriptions.c.processor_customer_id, excluded.processor_customer_id
                    ),
                    "processor_subscription_id": excluded.processor_subscription_id,
                    "plan_id": excluded.plan_id,
                    "status": excluded.status,
                    "current_period_start": excluded.current_period_start,
                    "current_period_end": excluded.current_period_end,
                    "cancel_at_period_end": excluded.cancel_at_period_end,
                    "last_event_at": excluded.last_event_at,
                    "updated_at": excluded.updated_at,
                },
                where=or_(
                    subscriptions.c.last_event_at.is_(None),
                    subscriptions.c.last_event_at <= excluded.last_event_at,
                ),
            )
            try:
                await session.execute(stmt)
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                logger.error("subscription_upsert_failed", account_id=record.account_id, error=str(exc))
                raise StoreWriteFailed(f"Could not persist subscription for {record.account_id}") from exc
            return await self._get(session, record.account_id)

    async def ensure_customer(self, account_id: str, customer_id: str) -> str:
        """Persist a processor customer ID for an account unless one exists.

        Creates the provisional ``inactive``/``free`` row on first contact.
        Returns the customer ID actually stored, which is the earlier one
        when a concurrent request won the race.
        """
        now = datetime.now(UTC)
        async with self._session_factory() as session:
            insert = _insert_for(session)
            stmt = insert(subscriptions).values(
                account_id=account_id,
                processor_customer_id=customer_id,
                plan_id=FREE_PLAN_ID,
                status=SubscriptionStatus.INACTIVE,
                cancel_at_period_end=False,
                created_at=now,
                updated_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[subscriptions.c.account_id],
                set_={
                    "processor_customer_id": stmt.excluded.processor_customer_id,
                    "updated_at": stmt.excluded.updated_at,
                },
                where=subscriptions.c.processor_customer_id.is_(None),
            )
            try:
                await session.execute(stmt)
                await session.commit()
            except IntegrityError:
                # Customer ID already bound elsewhere; fall through to re-read
                await session.rollback()
                logger.warning("customer_id_conflict", account_id=account_id, customer_id=customer_id)
            except SQLAlchemyError as exc:
                await session.rollback()
                logger.error("customer_id_persist_failed", account_id=account_id, error=str(exc))
                raise StoreWriteFailed(f"Could not persist customer for {account_id}") from exc

            record = await self._get(session, account_id)

        if record is None or not record.processor_customer_id:
            raise StoreWriteFailed(f"Customer for {account_id} was not persisted")
        if record.processor_customer_id != customer_id:
            logger.info(
                "customer_id_reused",
                account_id=account_id,
                stored=record.processor_customer_id,
                discarded=customer_id,
            )
        return record.processor_customer_id

    # ── Webhook-side writes ─────────────────────────────────────────

    async def apply_event(self, event: BillingEvent) -> TransitionResult:
        """Claim ``event.event_id`` and apply its transition atomically.

        Raises:
            StoreWriteFailed: the transaction could not be committed.
        """
        transition = _TRANSITIONS[type(event)]
        async with self._session_factory() as session:
            try:
                if not await self._claim(session, event):
                    await session.rollback()
                    return TransitionResult(TransitionOutcome.DUPLICATE)
                outcome = await transition(self, session, event)
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                logger.error(
                    "webhook_store_write_failed",
                    event_id=event.event_id,
                    event_type=event.event_type,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                raise StoreWriteFailed(f"Could not apply event {event.event_id}") from exc

            record = await self._get(session, event.account_id)
        return TransitionResult(outcome, record)

    async def _claim(self, session: AsyncSession, event: BillingEvent) -> bool:
        insert = _insert_for(session)
        stmt = (
            insert(processed_events)
            .values(
                event_id=event.event_id,
                event_type=event.event_type,
                account_id=getattr(event, "account_id", None),
                processed_at=datetime.now(UTC),
            )
            .on_conflict_do_nothing(index_elements=[processed_events.c.event_id])
        )
        result = await session.execute(stmt)
        return result.rowcount == 1

    async def _guarded_update(self, session: AsyncSession, account_id: str, guard, values: dict) -> TransitionOutcome:
        stmt = (
            update(subscriptions)
            .where(subscriptions.c.account_id == account_id, guard)
            .values(**values, updated_at=datetime.now(UTC))
        )
        result = await session.execute(stmt)
        if result.rowcount:
            return TransitionOutcome.APPLIED
        exists = await session.execute(select(subscriptions.c.account_id).where(subscriptions.c.account_id == account_id))
        return TransitionOutcome.STALE if exists.first() else TransitionOutcome.MISSING_RECORD

    async def _apply_checkout_confirmed(self, session: AsyncSession, event: CheckoutConfirmed) -> TransitionOutcome:
        snapshot = event.subscription
        now = datetime.now(UTC)
        insert = _insert_for(session)
        stmt = insert(subscriptions).values(
            account_id=event.account_id,
            processor_customer_id=event.customer_id,
            processor_subscription_id=snapshot.subscription_id,
            plan_id=event.plan_id,
            status=snapshot.status,
            current_period_start=snapshot.current_period_start,
            current_period_end=snapshot.current_period_end,
            cancel_at_period_end=False,
            last_event_at=event.created,
            created_at=now,
            updated_at=now,
        )
        excluded = stmt.excluded
        stmt = stmt.on_conflict_do_update(
            index_elements=[subscriptions.c.account_id],
            set_={
                "processor_customer_id": func.coalesce(
                    subscriptions.c.processor_customer_id, excluded.processor_customer_id
                ),
                "processor_subscription_id": excluded.processor_subscription_id,
                "plan_id": excluded.plan_id,
                "status": excluded.status,
                "current_period_start": excluded.current_period_start,
                "current_period_end": excluded.current_period_end,
                "cancel_at_period_end": False,
                "last_event_at": excluded.last_event_at,
                "updated_at": excluded.updated_at,
            },
            where=or_(
                subscriptions.c.last_event_at.is_(None),
                subscriptions.c.last_event_at <= excluded.last_event_at,
            ),
        )
        result = await session.execute(stmt)
        return TransitionOutcome.APPLIED if result.rowcount else TransitionOutcome.STALE

    async def _apply_subscription_updated(self, session: AsyncSession, event: SubscriptionUpdated) -> TransitionOutcome:
        snapshot = event.subscription
        values = {
            "processor_subscription_id": snapshot.subscription_id,
            "status": snapshot.status,
            "current_period_start": snapshot.current_period_start,
            "current_period_end": snapshot.current_period_end,
            "cancel_at_period_end": snapshot.cancel_at_period_end,
            "last_event_at": event.created,
        }
        if snapshot.plan_id:
            values["plan_id"] = snapshot.plan_id
        # Only the row's own subscription (or a row with none yet) is updated;
        # switching to a new subscription goes through checkout confirmation.
        same_subscription = or_(
            subscriptions.c.processor_subscription_id.is_(None),
            subscriptions.c.processor_subscription_id == snapshot.subscription_id,
        )
        guard = and_(
            _not_older(event.created),
            same_subscription,
            # An ended subscription is never revived by a late update
            or_(
                subscriptions.c.status != SubscriptionStatus.CANCELED,
                subscriptions.c.processor_subscription_id.is_(None),
            ),
        )
        return await self._guarded_update(session, event.account_id, guard, values)

    async def _apply_subscription_ended(self, session: AsyncSession, event: SubscriptionEnded) -> TransitionOutcome:
        guard = and_(
            or_(
                subscriptions.c.processor_subscription_id.is_(None),
                subscriptions.c.processor_subscription_id == event.subscription_id,
            ),
            or_(
                subscriptions.c.status != SubscriptionStatus.CANCELED,
                subscriptions.c.last_event_at.is_(None),
                subscriptions.c.last_event_at < event.created,
            ),
        )
        values = {
            "processor_subscription_id": event.subscription_id,
            "status": SubscriptionStatus.CANCELED,
            "cancel_at_period_end": False,
            "last_event_at": _newest(event.created),
        }
        return await self._guarded_update(session, event.account_id, guard, values)

    async def _apply_payment_failed(self, session: AsyncSession, event: InvoicePaymentFailed) -> TransitionOutcome:
        guard = and_(
            _not_older(event.created),
            subscriptions.c.processor_subscription_id == event.subscription_id,
            subscriptions.c.status != SubscriptionStatus.CANCELED,
            subscriptions.c.current_period_end.is_not(None),
        )
        values = {"status": SubscriptionStatus.PAST_DUE, "last_event_at": event.created}
        return await self._guarded_update(session, event.account_id, guard, values)

    async def _apply_payment_succeeded(self, session: AsyncSession, event: InvoicePaymentSucceeded) -> TransitionOutcome:
        return TransitionOutcome.LOGGED

    # ── Retention ───────────────────────────────────────────────────

    async def prune_processed_events(self, older_than: datetime) -> int:
        """Delete dedupe rows processed before ``older_than``; returns the count."""
        async with self._session_factory() as session:
            result = await session.execute(delete(processed_events).where(processed_events.c.processed_at < older_than))
            await session.commit()
            return result.rowcount or 0


_TRANSITIONS = {
    CheckoutConfirmed: SubscriptionStore._apply_checkout_confirmed,
    SubscriptionUpdated: SubscriptionStore._apply_subscription_updated,
    SubscriptionEnded: SubscriptionStore._apply_subscription_ended,
    InvoicePaymentFailed: SubscriptionStore._apply_payment_failed,
    InvoicePaymentSucceeded: SubscriptionStore._apply_payment_succeeded,
}
