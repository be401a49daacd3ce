"""
SQLAlchemy billing store.

Direct async database access for the workers. Concurrency-sensitive writes are
single statements guarded by constraints:

* usage ingestion: ``INSERT ... ON CONFLICT (fingerprint) DO NOTHING``
* aggregates: ``INSERT ... ON CONFLICT (key) DO UPDATE`` (replace or increment)
* payments: one guarded ``UPDATE`` computing the floored balance with ``CASE``
* status changes: compare-and-set on the current status
"""

from collections.abc import Collection, Sequence
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any
from uuid import uuid4

import structlog
from sqlalchemy import Select, case, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from dotmac.billing_engine.claims import AuthorizationClaims
from dotmac.billing_engine.core.entities import (
    CreditMemoEntity,
    InvoiceEntity,
    InvoiceLineEntity,
    SubscriptionEntity,
    SubscriptionScheduleEntity,
    UsageAggregateEntity,
    UsageEventEntity,
)
from dotmac.billing_engine.core.enums import (
    InvoiceStatus,
    SubscriptionScheduleStatus,
    SubscriptionStatus,
    UsageResolution,
    UsageSource,
)
from dotmac.billing_engine.core.exceptions import (
    BillingConfigurationError,
    CreditMemoNotFoundError,
    DuplicateInvoiceNumberError,
    InvoiceNotFoundError,
    InvoiceStateError,
    SubscriptionError,
    SubscriptionNotFoundError,
)
from dotmac.billing_engine.core.models import (
    CreditMemo,
    CreditMemoCreate,
    Invoice,
    InvoiceCreate,
    InvoiceLine,
    InvoiceLineCreate,
    Subscription,
    SubscriptionCreate,
    SubscriptionSchedule,
    SubscriptionScheduleCreate,
    SubscriptionUpdate,
    UsageAggregate,
    UsageAggregateKey,
    UsageEvent,
    UsageEventInput,
    UsageTotal,
    ensure_utc,
)
from dotmac.billing_engine.db import create_session_factory, session_scope
from dotmac.billing_engine.repository.base import UsageTotalKey

logger = structlog.get_logger(__name__)

AGGREGATE_KEY_COLUMNS = [
    "organization_id",
    "subscription_id",
    "feature_key",
    "resolution",
    "period_start",
    "period_end",
]


def _now() -> datetime:
    return datetime.now(UTC)


def _new_id() -> str:
    return str(uuid4())


# ============================================================================
# Row mappers
# ============================================================================


def _to_subscription(row: SubscriptionEntity) -> Subscription:
    return Subscription(
        id=row.id,
        organization_id=row.organization_id,
        package_id=row.package_id,
        status=SubscriptionStatus(row.status),
        currency=row.currency,
        amount_cents=row.amount_cents,
        billing_interval=row.billing_interval,
        current_period_start=row.current_period_start,
        current_period_end=row.current_period_end,
        trial_ends_at=row.trial_ends_at,
        cancel_at_period_end=row.cancel_at_period_end,
        canceled_at=row.canceled_at,
        external_id=row.external_id,
        metadata=row.metadata_json or {},
        created_at=row.created_at,
    )


def _to_schedule(row: SubscriptionScheduleEntity) -> SubscriptionSchedule:
    return SubscriptionSchedule(
        id=row.id,
        subscription_id=row.subscription_id,
        target_package_id=row.target_package_id,
        effective_at=row.effective_at,
        status=SubscriptionScheduleStatus(row.status),
        metadata=row.metadata_json or {},
    )


def _to_usage_event(row: UsageEventEntity) -> UsageEvent:
    return UsageEvent(
        id=row.id,
        organization_id=row.organization_id,
        subscription_id=row.subscription_id,
        tenant_id=row.tenant_id,
        product_id=row.product_id,
        feature_key=row.feature_key,
        quantity=row.quantity,
        unit=row.unit,
        recorded_at=row.recorded_at,
        source=UsageSource(row.source),
        fingerprint=row.fingerprint,
        metadata=row.metadata_json,
        created_at=row.created_at,
    )


def _to_aggregate(row: UsageAggregateEntity) -> UsageAggregate:
    return UsageAggregate(
        id=row.id,
        organization_id=row.organization_id,
        subscription_id=row.subscription_id,
        feature_key=row.feature_key,
        resolution=UsageResolution(row.resolution),
        period_start=row.period_start,
        period_end=row.period_end,
        quantity=row.quantity,
        unit=row.unit,
        source=UsageSource(row.source),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _to_line(row: InvoiceLineEntity) -> InvoiceLine:
    return InvoiceLine(
        id=row.id,
        invoice_id=row.invoice_id,
        position=row.position,
        line_type=row.line_type,
        description=row.description,
        feature_key=row.feature_key,
        quantity=row.quantity,
        unit_amount_cents=row.unit_amount_cents,
        amount_cents=row.amount_cents,
        usage_period_start=row.usage_period_start,
        usage_period_end=row.usage_period_end,
        metadata=row.metadata_json,
    )


def _to_invoice(row: InvoiceEntity, lines: list[InvoiceLine] | None = None) -> Invoice:
    return Invoice(
        id=row.id,
        organization_id=row.organization_id,
        subscription_id=row.subscription_id,
        number=row.number,
        status=InvoiceStatus(row.status),
        currency=row.currency,
        subtotal_cents=row.subtotal_cents,
        tax_cents=row.tax_cents,
        total_cents=row.total_cents,
        balance_cents=row.balance_cents,
        period_start=row.period_start,
        period_end=row.period_end,
        issued_at=row.issued_at,
        due_at=row.due_at,
        paid_at=row.paid_at,
        voided_at=row.voided_at,
        external_id=row.external_id,
        metadata=row.metadata_json or {},
        lines=lines,
    )


def _to_credit_memo(row: CreditMemoEntity) -> CreditMemo:
    return CreditMemo(
        id=row.id,
        organization_id=row.organization_id,
        invoice_id=row.invoice_id,
        amount_cents=row.amount_cents,
        currency=row.currency,
        reason=row.reason,
        expires_at=row.expires_at,
        metadata=row.metadata_json,
        created_at=row.created_at,
    )


def _line_entity(invoice_id: str, position: int, line: InvoiceLineCreate) -> InvoiceLineEntity:
    return InvoiceLineEntity(
        id=_new_id(),
        invoice_id=invoice_id,
        position=position,
        line_type=line.line_type.value,
        description=line.description,
        feature_key=line.feature_key,
        quantity=line.quantity,
        unit_amount_cents=line.unit_amount_cents,
        amount_cents=line.amount_cents,
        usage_period_start=line.usage_period_start,
        usage_period_end=line.usage_period_end,
        metadata_json=line.metadata,
    )


class SQLAlchemyBillingStore:
    """``BillingStore`` backed by an async SQLAlchemy engine (PostgreSQL or SQLite)."""

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine
        self._session_factory = create_session_factory(engine)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _insert(self, table: Any) -> Any:
        dialect = self.engine.dialect.name
        if dialect == "postgresql":
            return postgresql.insert(table)
        if dialect == "sqlite":
            return sqlite.insert(table)
        raise BillingConfigurationError(
            f"Unsupported database dialect for the billing store: {dialect}",
            config_key="database.url",
        )

    @staticmethod
    def _scoped(stmt: Select[Any], entity: Any, claims: AuthorizationClaims) -> Select[Any]:
        if claims.organization_id is not None:
            return stmt.where(entity.organization_id == claims.organization_id)
        return stmt

    @staticmethod
    def _check_org(claims: AuthorizationClaims, organization_id: str) -> None:
        if not claims.can_access(organization_id):
            raise SubscriptionError(
                "Claims do not grant access to this organization",
                context={"organization_id": organization_id},
            )

    async def _load_invoice_row(
        self, session: AsyncSession, claims: AuthorizationClaims, invoice_id: str
    ) -> InvoiceEntity | None:
        stmt = self._scoped(
            select(InvoiceEntity).where(InvoiceEntity.id == invoice_id), InvoiceEntity, claims
        )
        return (await session.execute(stmt)).scalar_one_or_none()

    async def _require_invoice_row(
        self, session: AsyncSession, claims: AuthorizationClaims, invoice_id: str
    ) -> InvoiceEntity:
        row = await self._load_invoice_row(session, claims, invoice_id)
        if row is None:
            raise InvoiceNotFoundError(f"Invoice {invoice_id} not found", invoice_id=invoice_id)
        return row

    async def _require_subscription_row(
        self, session: AsyncSession, claims: AuthorizationClaims, subscription_id: str
    ) -> SubscriptionEntity:
        stmt = self._scoped(
            select(SubscriptionEntity).where(SubscriptionEntity.id == subscription_id),
            SubscriptionEntity,
            claims,
        )
        row = (await session.execute(stmt)).scalar_one_or_none()
        if row is None:
            raise SubscriptionNotFoundError(
                f"Subscription {subscription_id} not found", subscription_id=subscription_id
            )
        return row

    async def _lines_for(
        self, session: AsyncSession, invoice_ids: Collection[str]
    ) -> dict[str, list[InvoiceLine]]:
        lines: dict[str, list[InvoiceLine]] = {invoice_id: [] for invoice_id in invoice_ids}
        if not invoice_ids:
            return lines
        stmt = (
            select(InvoiceLineEntity)
            .where(InvoiceLineEntity.invoice_id.in_(list(invoice_ids)))
            .order_by(InvoiceLineEntity.invoice_id, InvoiceLineEntity.position)
        )
        for row in (await session.execute(stmt)).scalars():
            lines[row.invoice_id].append(_to_line(row))
        return lines

    def _active_conflict(self, organization_id: str, exc: IntegrityError) -> SubscriptionError:
        logger.warning(
            "billing.subscription.active_conflict",
            organization_id=organization_id,
            error=str(exc.orig),
        )
        return SubscriptionError(
            f"Organization {organization_id} already has an active subscription",
            context={"organization_id": organization_id},
        )

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def create_subscription(
        self, claims: AuthorizationClaims, data: SubscriptionCreate
    ) -> Subscription:
        self._check_org(claims, data.organization_id)
        row = SubscriptionEntity(
            id=_new_id(),
            organization_id=data.organization_id,
            package_id=data.package_id,
            status=data.status.value,
            currency=data.currency,
            amount_cents=data.amount_cents,
            billing_interval=data.billing_interval.value,
            current_period_start=data.current_period_start,
            current_period_end=data.current_period_end,
            trial_ends_at=data.trial_ends_at,
            cancel_at_period_end=data.cancel_at_period_end,
            external_id=data.external_id,
            metadata_json=data.metadata,
        )
        try:
            async with session_scope(self._session_factory) as session:
                session.add(row)
                await session.flush()
        except IntegrityError as exc:
            raise self._active_conflict(data.organization_id, exc) from exc
        return _to_subscription(row)

    async def update_subscription(
        self, claims: AuthorizationClaims, subscription_id: str, changes: SubscriptionUpdate
    ) -> Subscription:
        values = changes.changes()
        try:
            async with session_scope(self._session_factory) as session:
                row = await self._require_subscription_row(session, claims, subscription_id)
                for field, value in values.items():
                    if field == "metadata":
                        row.metadata_json = value
                    elif hasattr(value, "value"):
                        setattr(row, field, value.value)
                    else:
                        setattr(row, field, value)
                organization_id = row.organization_id
                if ensure_utc(row.current_period_end) <= ensure_utc(row.current_period_start):
                    raise SubscriptionError(
                        "Subscription period end must be later than its start",
                        context={"subscription_id": subscription_id},
                    )
                await session.flush()
        except IntegrityError as exc:
            raise self._active_conflict(organization_id, exc) from exc
        return _to_subscription(row)

    async def get_subscription(
        self, claims: AuthorizationClaims, subscription_id: str
    ) -> Subscription | None:
        async with self._session_factory() as session:
            stmt = self._scoped(
                select(SubscriptionEntity).where(SubscriptionEntity.id == subscription_id),
                SubscriptionEntity,
                claims,
            )
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _to_subscription(row) if row else None

    async def get_active_subscription(
        self, claims: AuthorizationClaims, organization_id: str
    ) -> Subscription | None:
        if not claims.can_access(organization_id):
            return None
        active = [status.value for status in SubscriptionStatus.active_like()]
        async with self._session_factory() as session:
            stmt = (
                select(SubscriptionEntity)
                .where(
                    SubscriptionEntity.organization_id == organization_id,
                    SubscriptionEntity.status.in_(active),
                )
                .order_by(SubscriptionEntity.created_at.desc())
                .limit(1)
            )
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _to_subscription(row) if row else None

    async def list_subscriptions(
        self,
        claims: AuthorizationClaims,
        organization_id: str,
        status: SubscriptionStatus | None = None,
    ) -> list[Subscription]:
        if not claims.can_access(organization_id):
            return []
        async with self._session_factory() as session:
            stmt = select(SubscriptionEntity).where(
                SubscriptionEntity.organization_id == organization_id
            )
            if status is not None:
                stmt = stmt.where(SubscriptionEntity.status == status.value)
            stmt = stmt.order_by(SubscriptionEntity.created_at.desc())
            return [_to_subscription(row) for row in (await session.execute(stmt)).scalars()]

    async def cancel_subscription(
        self,
        claims: AuthorizationClaims,
        subscription_id: str,
        invoice_thru_period: bool = False,
        canceled_at: datetime | None = None,
    ) -> Subscription:
        async with session_scope(self._session_factory) as session:
            row = await self._require_subscription_row(session, claims, subscription_id)
            row.status = SubscriptionStatus.CANCELED.value
            row.canceled_at = ensure_utc(canceled_at) if canceled_at else _now()
            row.cancel_at_period_end = invoice_thru_period
            await session.flush()
        return _to_subscription(row)

    async def schedule_subscription_change(
        self, claims: AuthorizationClaims, data: SubscriptionScheduleCreate
    ) -> SubscriptionSchedule:
        async with session_scope(self._session_factory) as session:
            await self._require_subscription_row(session, claims, data.subscription_id)
            row = SubscriptionScheduleEntity(
                id=_new_id(),
                subscription_id=data.subscription_id,
                target_package_id=data.target_package_id,
                effective_at=data.effective_at,
                status=data.status.value,
                metadata_json=data.metadata,
            )
            session.add(row)
            await session.flush()
        return _to_schedule(row)

    async def list_subscription_schedules(
        self, claims: AuthorizationClaims, subscription_id: str
    ) -> list[SubscriptionSchedule]:
        async with self._session_factory() as session:
            stmt = (
                select(SubscriptionScheduleEntity)
                .join(
                    SubscriptionEntity,
                    SubscriptionEntity.id == SubscriptionScheduleEntity.subscription_id,
                )
                .where(SubscriptionScheduleEntity.subscription_id == subscription_id)
                .order_by(SubscriptionScheduleEntity.effective_at)
            )
            stmt = self._scoped(stmt, SubscriptionEntity, claims)
            return [_to_schedule(row) for row in (await session.execute(stmt)).scalars()]

    async def update_subscription_schedule_status(
        self,
        claims: AuthorizationClaims,
        schedule_id: str,
        status: SubscriptionScheduleStatus,
    ) -> SubscriptionSchedule:
        async with session_scope(self._session_factory) as session:
            stmt = (
                select(SubscriptionScheduleEntity)
                .join(
                    SubscriptionEntity,
                    SubscriptionEntity.id == SubscriptionScheduleEntity.subscription_id,
                )
                .where(SubscriptionScheduleEntity.id == schedule_id)
            )
            row = (
                await session.execute(self._scoped(stmt, SubscriptionEntity, claims))
            ).scalar_one_or_none()
            if row is None:
                raise SubscriptionError(
                    f"Subscription schedule {schedule_id} not found",
                    context={"schedule_id": schedule_id},
                )
            row.status = status.value
            await session.flush()
        return _to_schedule(row)

    # ------------------------------------------------------------------
    # Usage
    # ------------------------------------------------------------------

    async def insert_usage_events(
        self, claims: AuthorizationClaims, events: Sequence[UsageEventInput]
    ) -> int:
        if not events:
            return 0

        rows: dict[str, dict[str, Any]] = {}
        now = _now()
        for event in events:
            self._check_org(claims, event.organization_id)
            if not event.fingerprint:
                raise ValueError("usage events must be fingerprinted before insert")
            rows.setdefault(
                event.fingerprint,
                {
                    "id": _new_id(),
                    "organization_id": event.organization_id,
                    "subscription_id": event.subscription_id,
                    "tenant_id": event.tenant_id,
                    "product_id": event.product_id,
                    "feature_key": event.feature_key,
                    "quantity": event.quantity,
                    "unit": event.unit,
                    "recorded_at": event.recorded_at,
                    "source": event.source.value,
                    "fingerprint": event.fingerprint,
                    "metadata": event.metadata,
                    "created_at": now,
                },
            )

        table = UsageEventEntity.__table__
        stmt = (
            self._insert(table)
            .values(list(rows.values()))
            .on_conflict_do_nothing(index_elements=["fingerprint"])
            .returning(table.c.id)
        )
        async with session_scope(self._session_factory) as session:
            result = await session.execute(stmt)
            return len(result.all())

    async def fetch_usage_events(
        self,
        claims: AuthorizationClaims,
        organization_id: str,
        subscription_id: str,
        period_start: datetime,
        period_end: datetime,
        feature_keys: Collection[str] | None = None,
    ) -> list[UsageEvent]:
        if not claims.can_access(organization_id):
            return []
        stmt = select(UsageEventEntity).where(
            UsageEventEntity.organization_id == organization_id,
            UsageEventEntity.subscription_id == subscription_id,
            UsageEventEntity.recorded_at >= period_start,
            UsageEventEntity.recorded_at < period_end,
        )
        if feature_keys is not None:
            stmt = stmt.where(UsageEventEntity.feature_key.in_(list(feature_keys)))
        stmt = stmt.order_by(UsageEventEntity.recorded_at)
        async with self._session_factory() as session:
            return [_to_usage_event(row) for row in (await session.execute(stmt)).scalars()]

    async def list_usage_events(
        self,
        claims: AuthorizationClaims,
        organization_id: str,
        feature_key: str | None = None,
        limit: int = 100,
    ) -> list[UsageEvent]:
        if not claims.can_access(organization_id):
            return []
        stmt = select(UsageEventEntity).where(UsageEventEntity.organization_id == organization_id)
        if feature_key is not None:
            stmt = stmt.where(UsageEventEntity.feature_key == feature_key)
        stmt = stmt.order_by(UsageEventEntity.recorded_at.desc()).limit(limit)
        async with self._session_factory() as session:
            return [_to_usage_event(row) for row in (await session.execute(stmt)).scalars()]

    async def _upsert_aggregate(
        self,
        claims: AuthorizationClaims,
        key: UsageAggregateKey,
        quantity: Decimal,
        unit: str,
        source: UsageSource,
        increment: bool,
    ) -> UsageAggregate:
        self._check_org(claims, key.organization_id)
        table = UsageAggregateEntity.__table__
        now = _now()
        key_values = {
            "organization_id": key.organization_id,
            "subscription_id": key.subscription_id,
            "feature_key": key.feature_key,
            "resolution": key.resolution.value,
            "period_start": key.period_start,
            "period_end": key.period_end,
        }
        stmt = self._insert(table).values(
            id=_new_id(),
            **key_values,
            quantity=quantity,
            unit=unit,
            source=source.value,
            created_at=now,
            updated_at=now,
        )
        new_quantity = table.c.quantity + stmt.excluded.quantity if increment else stmt.excluded.quantity
        stmt = stmt.on_conflict_do_update(
            index_elements=AGGREGATE_KEY_COLUMNS,
            set_={
                "quantity": new_quantity,
                "unit": stmt.excluded.unit,
                "source": stmt.excluded.source,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        async with session_scope(self._session_factory) as session:
            await session.execute(stmt)
            lookup = select(UsageAggregateEntity).where(
                *(getattr(UsageAggregateEntity, column) == value for column, value in key_values.items())
            )
            row = (await session.execute(lookup)).scalar_one()
            return _to_aggregate(row)

    async def replace_aggregate(
        self,
        claims: AuthorizationClaims,
        key: UsageAggregateKey,
        quantity: Decimal,
        unit: str,
        source: UsageSource,
    ) -> UsageAggregate:
        return await self._upsert_aggregate(claims, key, quantity, unit, source, increment=False)

    async def increment_aggregate(
        self,
        claims: AuthorizationClaims,
        key: UsageAggregateKey,
        unit: str,
        delta: Decimal,
        source: UsageSource,
    ) -> UsageAggregate:
        return await self._upsert_aggregate(claims, key, delta, unit, source, increment=True)

    async def list_usage_aggregates(
        self,
        claims: AuthorizationClaims,
        organization_id: str,
        feature_key: str | None = None,
        resolution: UsageResolution | None = None,
        subscription_id: str | None = None,
        period_start: datetime | None = None,
        period_end: datetime | None = None,
        limit: int = 50,
    ) -> list[UsageAggregate]:
        if not claims.can_access(organization_id):
            return []
        stmt = select(UsageAggregateEntity).where(
            UsageAggregateEntity.organization_id == organization_id
        )
        if feature_key is not None:
            stmt = stmt.where(UsageAggregateEntity.feature_key == feature_key)
        if resolution is not None:
            stmt = stmt.where(UsageAggregateEntity.resolution == resolution.value)
        if subscription_id is not None:
            stmt = stmt.where(UsageAggregateEntity.subscription_id == subscription_id)
        if period_start is not None:
            stmt = stmt.where(UsageAggregateEntity.period_start == ensure_utc(period_start))
        if period_end is not None:
            stmt = stmt.where(UsageAggregateEntity.period_end == ensure_utc(period_end))
        stmt = stmt.order_by(UsageAggregateEntity.period_start.desc()).limit(limit)
        async with self._session_factory() as session:
            return [_to_aggregate(row) for row in (await session.execute(stmt)).scalars()]

    async def fetch_usage_totals(
        self,
        claims: AuthorizationClaims,
        organization_id: str,
        subscription_id: str,
        period_start: datetime,
        period_end: datetime,
        charges: Collection[UsageTotalKey],
    ) -> dict[UsageTotalKey, UsageTotal]:
        totals = {charge: UsageTotal() for charge in charges}
        if not charges or not claims.can_access(organization_id):
            return totals

        feature_keys = sorted({feature_key for feature_key, _ in charges})
        resolutions = sorted({resolution.value for _, resolution in charges})
        stmt = select(UsageAggregateEntity).where(
            UsageAggregateEntity.organization_id == organization_id,
            UsageAggregateEntity.subscription_id == subscription_id,
            UsageAggregateEntity.feature_key.in_(feature_keys),
            UsageAggregateEntity.resolution.in_(resolutions),
            UsageAggregateEntity.period_start >= period_start,
            UsageAggregateEntity.period_end <= period_end,
        )
        async with self._session_factory() as session:
            for row in (await session.execute(stmt)).scalars():
                charge = (row.feature_key, UsageResolution(row.resolution))
                if charge not in totals:
                    continue
                total = totals[charge]
                totals[charge] = UsageTotal(quantity=total.quantity + row.quantity, unit=row.unit)
        return totals

    # ------------------------------------------------------------------
    # Invoices
    # ------------------------------------------------------------------

    async def create_invoice(
        self,
        claims: AuthorizationClaims,
        data: InvoiceCreate,
        lines: Sequence[InvoiceLineCreate] = (),
    ) -> Invoice:
        self._check_org(claims, data.organization_id)
        invoice_id = _new_id()
        row = InvoiceEntity(
            id=invoice_id,
            organization_id=data.organization_id,
            subscription_id=data.subscription_id,
            number=data.number,
            status=data.status.value,
            currency=data.currency,
            subtotal_cents=data.subtotal_cents,
            tax_cents=data.tax_cents,
            total_cents=data.total_cents,
            balance_cents=data.opening_balance_cents,
            period_start=data.period_start,
            period_end=data.period_end,
            issued_at=data.issued_at,
            due_at=data.due_at,
            paid_at=data.paid_at,
            voided_at=data.voided_at,
            external_id=data.external_id,
            metadata_json=data.metadata,
        )
        line_rows = [_line_entity(invoice_id, position, line) for position, line in enumerate(lines)]
        try:
            async with session_scope(self._session_factory) as session:
                session.add(row)
                await session.flush()
                session.add_all(line_rows)
                await session.flush()
        except IntegrityError as exc:
            async with self._session_factory() as session:
                taken = (
                    await session.execute(
                        select(InvoiceEntity.id).where(InvoiceEntity.number == data.number)
                    )
                ).scalar_one_or_none()
            if taken is not None:
                raise DuplicateInvoiceNumberError(
                    f"Invoice number {data.number} already exists", number=data.number
                ) from exc
            raise
        return _to_invoice(row, [_to_line(line) for line in line_rows])

    async def add_invoice_line(
        self, claims: AuthorizationClaims, invoice_id: str, line: InvoiceLineCreate
    ) -> InvoiceLine:
        async with session_scope(self._session_factory) as session:
            await self._require_invoice_row(session, claims, invoice_id)
            positions = await session.execute(
                select(InvoiceLineEntity.position)
                .where(InvoiceLineEntity.invoice_id == invoice_id)
                .order_by(InvoiceLineEntity.position.desc())
                .limit(1)
            )
            last = positions.scalar_one_or_none()
            row = _line_entity(invoice_id, 0 if last is None else last + 1, line)
            session.add(row)
            await session.flush()
        return _to_line(row)

    async def get_invoice(
        self, claims: AuthorizationClaims, invoice_id: str, include_lines: bool = False
    ) -> Invoice | None:
        async with self._session_factory() as session:
            row = await self._load_invoice_row(session, claims, invoice_id)
            if row is None:
                return None
            lines = (await self._lines_for(session, [row.id]))[row.id] if include_lines else None
            return _to_invoice(row, lines)

    async def find_invoice_for_period(
        self,
        claims: AuthorizationClaims,
        subscription_id: str,
        period_start: datetime,
        period_end: datetime,
    ) -> Invoice | None:
        stmt = (
            select(InvoiceEntity)
            .where(
                InvoiceEntity.subscription_id == subscription_id,
                InvoiceEntity.period_start == period_start,
                InvoiceEntity.period_end == period_end,
                InvoiceEntity.status != InvoiceStatus.VOID.value,
            )
            .order_by(InvoiceEntity.issued_at.desc())
            .limit(1)
        )
        async with self._session_factory() as session:
            row = (
                await session.execute(self._scoped(stmt, InvoiceEntity, claims))
            ).scalar_one_or_none()
            return _to_invoice(row) if row else None

    async def list_invoices(
        self,
        claims: AuthorizationClaims,
        organization_id: str,
        include_lines: bool = False,
        limit: int = 50,
    ) -> list[Invoice]:
        if not claims.can_access(organization_id):
            return []
        stmt = (
            select(InvoiceEntity)
            .where(InvoiceEntity.organization_id == organization_id)
            .order_by(InvoiceEntity.issued_at.desc())
            .limit(limit)
        )
        async with self._session_factory() as session:
            rows = list((await session.execute(stmt)).scalars())
            if not include_lines:
                return [_to_invoice(row) for row in rows]
            lines = await self._lines_for(session, [row.id for row in rows])
            return [_to_invoice(row, lines[row.id]) for row in rows]

    async def record_payment(
        self,
        claims: AuthorizationClaims,
        invoice_id: str,
        amount_cents: int,
        paid_at: datetime,
    ) -> Invoice:
        if amount_cents < 0:
            raise ValueError("payment amount must not be negative")

        remaining = InvoiceEntity.balance_cents - amount_cents
        payable = [status.value for status in InvoiceStatus.payable()]
        stmt = (
            update(InvoiceEntity)
            .where(InvoiceEntity.id == invoice_id, InvoiceEntity.status.in_(payable))
            .values(
                balance_cents=case((remaining > 0, remaining), else_=0),
                status=case((remaining <= 0, InvoiceStatus.PAID.value), else_=InvoiceEntity.status),
                paid_at=ensure_utc(paid_at),
                updated_at=_now(),
            )
            .execution_options(synchronize_session=False)
        )
        if claims.organization_id is not None:
            stmt = stmt.where(InvoiceEntity.organization_id == claims.organization_id)

        async with session_scope(self._session_factory) as session:
            result = await session.execute(stmt)
            row = await self._require_invoice_row(session, claims, invoice_id)
            if result.rowcount == 0:
                raise InvoiceStateError(
                    f"Invoice {invoice_id} is {row.status} and cannot accept payments",
                    invoice_id=invoice_id,
                    current_status=row.status,
                    requested="payment",
                )
            return _to_invoice(row)

    async def update_invoice_status(
        self,
        claims: AuthorizationClaims,
        invoice_id: str,
        status: InvoiceStatus,
        allowed_from: Collection[InvoiceStatus] | None = None,
        paid_at: datetime | None = None,
        voided_at: datetime | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Invoice:
        values: dict[str, Any] = {"status": status.value, "updated_at": _now()}
        if paid_at is not None:
            values["paid_at"] = ensure_utc(paid_at)
        if voided_at is not None:
            values["voided_at"] = ensure_utc(voided_at)
        if metadata is not None:
            values["metadata_json"] = metadata

        async with session_scope(self._session_factory) as session:
            row = await self._guarded_status_update(
                session, claims, invoice_id, status, allowed_from, values
            )
            return _to_invoice(row)

    async def _guarded_status_update(
        self,
        session: AsyncSession,
        claims: AuthorizationClaims,
        invoice_id: str,
        status: InvoiceStatus,
        allowed_from: Collection[InvoiceStatus] | None,
        values: dict[str, Any],
    ) -> InvoiceEntity:
        """Compare-and-set UPDATE; raises ``InvoiceStateError`` when no row matched."""
        stmt = update(InvoiceEntity).where(InvoiceEntity.id == invoice_id)
        if allowed_from is not None:
            stmt = stmt.where(InvoiceEntity.status.in_([s.value for s in allowed_from]))
        if claims.organization_id is not None:
            stmt = stmt.where(InvoiceEntity.organization_id == claims.organization_id)
        stmt = stmt.values(**values).execution_options(synchronize_session=False)

        result = await session.execute(stmt)
        row = await self._require_invoice_row(session, claims, invoice_id)
        if result.rowcount == 0:
            raise InvoiceStateError(
                f"Invoice {invoice_id} is {row.status}; cannot move it to {status.value}",
                invoice_id=invoice_id,
                current_status=row.status,
                requested=status.value,
            )
        return row

    async def attach_external_invoice_id(
        self, claims: AuthorizationClaims, invoice_id: str, external_id: str
    ) -> Invoice:
        async with session_scope(self._session_factory) as session:
            row = await self._require_invoice_row(session, claims, invoice_id)
            row.external_id = external_id
            await session.flush()
        return _to_invoice(row)

    # ------------------------------------------------------------------
    # Credit memos
    # ------------------------------------------------------------------

    async def create_credit_memo(
        self, claims: AuthorizationClaims, data: CreditMemoCreate
    ) -> CreditMemo:
        self._check_org(claims, data.organization_id)
        async with session_scope(self._session_factory) as session:
            if data.invoice_id is not None:
                await self._require_invoice_row(session, claims, data.invoice_id)
            row = CreditMemoEntity(
                id=_new_id(),
                organization_id=data.organization_id,
                invoice_id=data.invoice_id,
                amount_cents=data.amount_cents,
                currency=data.currency,
                reason=data.reason.value,
                expires_at=data.expires_at,
                metadata_json=data.metadata,
                created_at=_now(),
            )
            session.add(row)
            await session.flush()
        return _to_credit_memo(row)

    async def issue_credit(
        self,
        claims: AuthorizationClaims,
        data: CreditMemoCreate,
        status: InvoiceStatus,
        allowed_from: Collection[InvoiceStatus],
        voided_at: datetime | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> tuple[CreditMemo, Invoice]:
        self._check_org(claims, data.organization_id)
        if data.invoice_id is None:
            raise ValueError("issue_credit requires an invoice_id")

        values: dict[str, Any] = {"status": status.value, "updated_at": _now()}
        if voided_at is not None:
            values["voided_at"] = ensure_utc(voided_at)
        if metadata is not None:
            values["metadata_json"] = metadata

        async with session_scope(self._session_factory) as session:
            invoice_row = await self._guarded_status_update(
                session, claims, data.invoice_id, status, allowed_from, values
            )
            memo_row = CreditMemoEntity(
                id=_new_id(),
                organization_id=data.organization_id,
                invoice_id=data.invoice_id,
                amount_cents=data.amount_cents,
                currency=data.currency,
                reason=data.reason.value,
                expires_at=data.expires_at,
                metadata_json=data.metadata,
                created_at=_now(),
            )
            session.add(memo_row)
            await session.flush()
            return _to_credit_memo(memo_row), _to_invoice(invoice_row)

    async def list_credit_memos(
        self, claims: AuthorizationClaims, organization_id: str
    ) -> list[CreditMemo]:
        if not claims.can_access(organization_id):
            return []
        stmt = (
            select(CreditMemoEntity)
            .where(CreditMemoEntity.organization_id == organization_id)
            .order_by(CreditMemoEntity.created_at.desc())
        )
        async with self._session_factory() as session:
            return [_to_credit_memo(row) for row in (await session.execute(stmt)).scalars()]

    async def link_credit_memo_to_invoice(
        self, claims: AuthorizationClaims, credit_memo_id: str, invoice_id: str | None
    ) -> CreditMemo:
        async with session_scope(self._session_factory) as session:
            stmt = self._scoped(
                select(CreditMemoEntity).where(CreditMemoEntity.id == credit_memo_id),
                CreditMemoEntity,
                claims,
            )
            row = (await session.execute(stmt)).scalar_one_or_none()
            if row is None:
                raise CreditMemoNotFoundError(
                    f"Credit memo {credit_memo_id} not found", credit_memo_id=credit_memo_id
                )
            if invoice_id is not None:
                await self._require_invoice_row(session, claims, invoice_id)
            row.invoice_id = invoice_id
            await session.flush()
        return _to_credit_memo(row)


__all__ = ["SQLAlchemyBillingStore"]
