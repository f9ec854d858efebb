"""Implementación SQLAlchemy (PostgreSQL / Supabase) de los stores del checkout"""
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import AsyncIterator, Callable, Dict, List, Optional
import uuid
import logging

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from shared.database.models import (
    Customer,
    DiscountCode,
    Event,
    Order,
    OrderItem,
    OrderSequence,
    PaymentEvent,
    SiteSetting,
    Ticket,
    TicketType,
)
from services.checkout.models.domain import (
    CustomerRecord,
    DiscountRecord,
    EventRecord,
    OrderItemRecord,
    OrderRecord,
    PaymentEventRecord,
    ProductRecord,
    TicketRecord,
    TicketTypeRecord,
)
from services.checkout.models.errors import DuplicateOrderError
from services.checkout.stores.interfaces import (
    CustomerStore,
    DiscountStore,
    EventStore,
    OrderStore,
    PaymentEventStore,
    SettingsStore,
    TicketTypeStore,
)

logger = logging.getLogger(__name__)

ORDER_PAYMENT_REF_CONSTRAINT = "uq_orders_org_payment_ref"


def _uuid_list(ids: List[str]) -> List[uuid.UUID]:
    result = []
    for value in ids:
        try:
            result.append(uuid.UUID(str(value)))
        except ValueError:
            # IDs mal formados simplemente no existen
            continue
    return result


def _ticket_type_record(tt: TicketType) -> TicketTypeRecord:
    product = None
    if tt.product is not None:
        product = ProductRecord(id=str(tt.product.id), name=tt.product.name)
    return TicketTypeRecord(
        id=str(tt.id),
        org_id=tt.org_id,
        event_id=str(tt.event_id),
        name=tt.name,
        price=Decimal(tt.price),
        capacity=tt.capacity,
        sold=tt.sold or 0,
        max_per_order=tt.max_per_order,
        includes_merch=bool(tt.includes_merch),
        merch_name=tt.merch_name,
        sort_order=tt.sort_order or 0,
        status=tt.status,
        product=product,
    )


def _order_record(order: Order) -> OrderRecord:
    return OrderRecord(
        id=str(order.id),
        org_id=order.org_id,
        order_number=order.order_number,
        event_id=str(order.event_id),
        customer_id=str(order.customer_id),
        subtotal=Decimal(order.subtotal),
        fees=Decimal(order.fees),
        total=Decimal(order.total),
        currency=order.currency,
        payment_method=order.payment_method,
        payment_ref=order.payment_ref,
        status=order.status,
        metadata=order.order_metadata or {},
        created_at=order.created_at,
    )


class SqlAlchemyStore:
    """Base: todas las escrituras hacen commit (cada paso queda durable)"""

    def __init__(self, db: AsyncSession):
        self.db = db

    @asynccontextmanager
    async def _write(self) -> AsyncIterator[None]:
        """Commit al salir; ante cualquier error rollback para que la sesión siga usable"""
        try:
            yield
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise


class SqlAlchemyEventStore(SqlAlchemyStore, EventStore):

    async def get_event(self, org_id: str, event_id: str) -> Optional[EventRecord]:
        ids = _uuid_list([event_id])
        if not ids:
            return None
        stmt = select(Event).where(Event.id == ids[0], Event.org_id == org_id)
        result = await self.db.execute(stmt)
        event = result.scalar_one_or_none()
        if not event:
            return None
        return EventRecord(
            id=str(event.id),
            org_id=event.org_id,
            name=event.name,
            slug=event.slug,
            currency=event.currency or "GBP",
            payment_method=event.payment_method,
            venue_name=event.venue_name,
            date_start=event.date_start.isoformat() if event.date_start else None,
            doors_time=event.doors_time,
            stripe_account_id=event.stripe_account_id,
            platform_fee_percent=event.platform_fee_percent,
            vat_registered=event.vat_registered,
            vat_rate=event.vat_rate,
            vat_prices_include=event.vat_prices_include,
            vat_number=event.vat_number,
        )


class SqlAlchemyTicketTypeStore(SqlAlchemyStore, TicketTypeStore):

    async def fetch_ticket_types(self, org_id: str, ids: List[str]) -> List[TicketTypeRecord]:
        stmt = (
            select(TicketType)
            .options(selectinload(TicketType.product))
            .where(TicketType.org_id == org_id, TicketType.id.in_(_uuid_list(ids)))
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return [_ticket_type_record(tt) for tt in result.scalars().all()]

    async def fetch_event_ticket_types(self, org_id: str, event_id: str) -> List[TicketTypeRecord]:
        stmt = (
            select(TicketType)
            .options(selectinload(TicketType.product))
            .where(TicketType.org_id == org_id, TicketType.event_id.in_(_uuid_list([event_id])))
            .order_by(TicketType.sort_order)
        )
        result = await self.db.execute(stmt)
        return [_ticket_type_record(tt) for tt in result.scalars().all()]

    async def atomic_increment_sold(self, ticket_type_id: str, qty: int) -> int:
        # UPDATE ... SET sold = sold + :qty RETURNING sold (sin read-modify-write)
        stmt = (
            update(TicketType)
            .where(TicketType.id == uuid.UUID(str(ticket_type_id)))
            .values(sold=TicketType.sold + qty)
            .returning(TicketType.sold)
        )
        async with self._write():
            result = await self.db.execute(stmt)
            new_sold = result.scalar_one()
        return new_sold


class SqlAlchemyDiscountStore(SqlAlchemyStore, DiscountStore):

    async def fetch_discount(self, org_id: str, code: str) -> Optional[DiscountRecord]:
        stmt = select(DiscountCode).where(
            DiscountCode.org_id == org_id,
            func.lower(DiscountCode.code) == code.strip().lower(),
            DiscountCode.status == "active",
        )
        result = await self.db.execute(stmt)
        discount = result.scalars().first()
        if not discount:
            return None
        return DiscountRecord(
            id=str(discount.id),
            org_id=discount.org_id,
            code=discount.code,
            type=discount.type,
            value=Decimal(discount.value),
            starts_at=discount.starts_at,
            expires_at=discount.expires_at,
            max_uses=discount.max_uses,
            used_count=discount.used_count or 0,
            min_order_amount=Decimal(discount.min_order_amount) if discount.min_order_amount is not None else None,
            applicable_event_ids=[str(e) for e in discount.applicable_event_ids] if discount.applicable_event_ids else None,
            status=discount.status,
        )

    async def increment_used_count(self, discount_id: str) -> None:
        # Lectura + escritura a propósito: contador best-effort
        stmt = select(DiscountCode.used_count).where(DiscountCode.id == uuid.UUID(str(discount_id)))
        async with self._write():
            result = await self.db.execute(stmt)
            current = result.scalar_one_or_none()
            if current is None:
                return
            await self.db.execute(
                update(DiscountCode)
                .where(DiscountCode.id == uuid.UUID(str(discount_id)))
                .values(used_count=current + 1)
            )


class SqlAlchemyCustomerStore(SqlAlchemyStore, CustomerStore):

    async def upsert_customer(
        self,
        org_id: str,
        email_lower: str,
        first_name: str,
        last_name: str,
        phone: Optional[str] = None,
    ) -> str:
        now = datetime.now(timezone.utc)
        values = {
            "id": uuid.uuid4(),
            "org_id": org_id,
            "email": email_lower,
            "first_name": first_name,
            "last_name": last_name,
            "phone": phone or None,
            "first_order_at": now,
        }
        update_values = {
            "first_name": first_name,
            "last_name": last_name,
            "updated_at": now,
        }
        if phone:
            update_values["phone"] = phone

        stmt = (
            pg_insert(Customer)
            .values(**values)
            .on_conflict_do_update(constraint="uq_customers_org_email", set_=update_values)
            .returning(Customer.id)
        )
        async with self._write():
            result = await self.db.execute(stmt)
            customer_id = result.scalar_one()
        return str(customer_id)

    async def update_customer_stats(self, customer_id: str, orders_delta: int, spend_delta: Decimal) -> None:
        now = datetime.now(timezone.utc)
        async with self._write():
            await self.db.execute(
                update(Customer)
                .where(Customer.id == uuid.UUID(str(customer_id)))
                .values(
                    total_orders=Customer.total_orders + orders_delta,
                    total_spent=Customer.total_spent + spend_delta,
                    last_order_at=now,
                    updated_at=now,
                )
            )

    async def get_customer(self, customer_id: str) -> Optional[CustomerRecord]:
        customer = await self.db.get(Customer, uuid.UUID(str(customer_id)))
        if not customer:
            return None
        return CustomerRecord(
            id=str(customer.id),
            org_id=customer.org_id,
            email=customer.email,
            first_name=customer.first_name,
            last_name=customer.last_name,
            phone=customer.phone,
            total_orders=customer.total_orders,
            total_spent=Decimal(customer.total_spent),
        )


class SqlAlchemyOrderStore(SqlAlchemyStore, OrderStore):

    async def next_order_sequence(self, org_id: str) -> int:
        stmt = (
            pg_insert(OrderSequence)
            .values(org_id=org_id, last_value=1)
            .on_conflict_do_update(
                index_elements=[OrderSequence.org_id],
                set_={"last_value": OrderSequence.last_value + 1},
            )
            .returning(OrderSequence.last_value)
        )
        async with self._write():
            result = await self.db.execute(stmt)
            value = result.scalar_one()
        return value

    async def find_order_by_payment_ref(self, org_id: str, payment_ref: str) -> Optional[OrderRecord]:
        stmt = select(Order).where(Order.org_id == org_id, Order.payment_ref == payment_ref)
        result = await self.db.execute(stmt)
        order = result.scalars().first()
        return _order_record(order) if order else None

    async def insert_order(self, order: OrderRecord) -> OrderRecord:
        row = Order(
            id=uuid.UUID(order.id) if order.id else uuid.uuid4(),
            org_id=order.org_id,
            order_number=order.order_number,
            event_id=uuid.UUID(order.event_id),
            customer_id=uuid.UUID(order.customer_id),
            status=order.status,
            subtotal=order.subtotal,
            fees=order.fees,
            total=order.total,
            currency=order.currency,
            payment_method=order.payment_method,
            payment_ref=order.payment_ref,
            order_metadata=order.metadata or None,
        )
        try:
            async with self._write():
                self.db.add(row)
        except IntegrityError as e:
            if ORDER_PAYMENT_REF_CONSTRAINT in str(e.orig):
                raise DuplicateOrderError(order.org_id, order.payment_ref) from e
            raise
        await self.db.refresh(row)
        return _order_record(row)

    async def insert_order_items(self, items: List[OrderItemRecord]) -> List[OrderItemRecord]:
        rows = []
        async with self._write():
            for item in items:
                row = OrderItem(
                    id=uuid.UUID(item.id) if item.id else uuid.uuid4(),
                    org_id=item.org_id,
                    order_id=uuid.UUID(item.order_id),
                    ticket_type_id=uuid.UUID(item.ticket_type_id),
                    qty=item.qty,
                    unit_price=item.unit_price,
                    merch_size=item.merch_size,
                )
                self.db.add(row)
                rows.append(row)
        return [
            OrderItemRecord(
                id=str(row.id),
                org_id=row.org_id,
                order_id=str(row.order_id),
                ticket_type_id=str(row.ticket_type_id),
                qty=row.qty,
                unit_price=Decimal(row.unit_price),
                merch_size=row.merch_size,
            )
            for row in rows
        ]

    async def insert_tickets(self, tickets: List[TicketRecord]) -> None:
        async with self._write():
            for ticket in tickets:
                row = ticket.to_row()
                for key in ("order_item_id", "order_id", "event_id", "ticket_type_id", "customer_id"):
                    row[key] = uuid.UUID(row[key])
                self.db.add(Ticket(**row))

    async def list_order_tickets(self, order_id: str) -> List[TicketRecord]:
        stmt = select(Ticket).where(Ticket.order_id == uuid.UUID(str(order_id))).order_by(Ticket.created_at)
        result = await self.db.execute(stmt)
        return [
            TicketRecord(
                org_id=t.org_id,
                order_item_id=str(t.order_item_id),
                order_id=str(t.order_id),
                event_id=str(t.event_id),
                ticket_type_id=str(t.ticket_type_id),
                customer_id=str(t.customer_id),
                ticket_code=t.ticket_code,
                holder_first_name=t.holder_first_name,
                holder_last_name=t.holder_last_name,
                holder_email=t.holder_email,
                merch_size=t.merch_size,
            )
            for t in result.scalars().all()
        ]


class SqlAlchemySettingsStore(SqlAlchemyStore, SettingsStore):

    async def get_setting(self, key: str) -> Optional[Dict]:
        stmt = select(SiteSetting.data).where(SiteSetting.key == key)
        result = await self.db.execute(stmt)
        data = result.scalar_one_or_none()
        return data if isinstance(data, dict) else None

    async def set_setting(self, key: str, data: Dict, org_id: Optional[str] = None) -> None:
        stmt = (
            pg_insert(SiteSetting)
            .values(key=key, data=data, org_id=org_id)
            .on_conflict_do_update(
                index_elements=[SiteSetting.key],
                set_={"data": data, "updated_at": func.now()},
            )
        )
        async with self._write():
            await self.db.execute(stmt)


class SqlAlchemyPaymentEventStore(SqlAlchemyStore, PaymentEventStore):

    async def insert_payment_event(self, event: PaymentEventRecord) -> None:
        async with self._write():
            self.db.add(PaymentEvent(
                org_id=event.org_id,
                type=event.type,
                severity=event.severity,
                event_id=event.event_id,
                stripe_payment_intent_id=event.stripe_payment_intent_id,
                stripe_account_id=event.stripe_account_id,
                error_code=event.error_code,
                error_message=event.error_message,
                customer_email=event.customer_email,
                ip_address=event.ip_address,
                event_metadata=event.metadata or {},
            ))


class ScopedPaymentEventStore(PaymentEventStore):
    """Eventos de pago en una sesión propia por evento

    Un fallo de los stores del request (IntegrityError, conexión caída) no
    impide registrar el incidente que lo describe.
    """

    def __init__(self, session_factory: Callable):
        self.session_factory = session_factory

    async def insert_payment_event(self, event: PaymentEventRecord) -> None:
        async with self.session_factory() as db:
            await SqlAlchemyPaymentEventStore(db).insert_payment_event(event)
