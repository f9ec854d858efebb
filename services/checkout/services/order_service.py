"""Order Materializer: orden, items y tickets a partir de un pago completado

Flujo de create_order:
 1. Re-leer los tipos de ticket (nunca confiar en precios del cliente)
 2. Número de orden y códigos de ticket
 3. Expandir cada línea de cantidad N en N tickets
 4. fees = max(0, total_cobrado - subtotal), 0 sin cobro real
 5. Upsert del cliente y estadísticas
 6. Orden -> items -> tickets
 7. Incremento atómico de sold (único punto donde muta el inventario)
 8. Email de confirmación best-effort
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional
import logging
import secrets
import string
import uuid

from app.core.config import settings
from services.checkout.models.checkout import (
    CartLine,
    CheckoutCustomer,
    ManualOrderRequest,
    PaymentIntentMetadata,
)
from services.checkout.models.domain import (
    EventRecord,
    OrderItemRecord,
    OrderRecord,
    TicketRecord,
    TicketTypeRecord,
)
from services.checkout.models.errors import DuplicateOrderError, OrderCreationError
from services.checkout.services import payment_monitor
from services.checkout.services.dispatcher import BackgroundDispatcher
from services.checkout.services.payment_monitor import PaymentMonitor
from services.checkout.services.pricing import (
    from_smallest_unit,
    get_payment_error_message,
    round_money,
    to_decimal,
)
from services.checkout.services.stripe_service import GatewayError, PaymentGateway
from services.checkout.stores.interfaces import (
    CustomerStore,
    EventStore,
    OrderStore,
    TicketTypeStore,
)
from services.checkout.tasks.checkout_tasks import send_order_confirmation_email_task

logger = logging.getLogger(__name__)

TICKET_CODE_ALPHABET = string.ascii_uppercase + string.digits
TICKET_CODE_LENGTH = 8


@dataclass
class OrderEvent:
    """Snapshot del evento para la orden y el email"""
    id: str
    name: str
    slug: str = ""
    currency: str = "GBP"
    venue_name: Optional[str] = None
    date_start: Optional[str] = None
    doors_time: Optional[str] = None

    @classmethod
    def from_record(cls, event: EventRecord) -> "OrderEvent":
        return cls(
            id=event.id,
            name=event.name,
            slug=event.slug,
            currency=event.currency,
            venue_name=event.venue_name,
            date_start=event.date_start,
            doors_time=event.doors_time,
        )


@dataclass
class OrderPayment:
    method: str  # stripe | test
    reference: str
    total_charged: Optional[Decimal] = None  # Solo si hubo un cobro real


@dataclass
class OrderVat:
    amount: Decimal
    rate: Decimal
    inclusive: bool


@dataclass
class CreateOrderResult:
    order: OrderRecord
    tickets: List[TicketRecord]
    customer_id: str
    ticket_types: Dict[str, TicketTypeRecord] = field(default_factory=dict)
    created: bool = True  # False cuando confirm_order encontró la orden ya creada


def generate_ticket_code(prefix: Optional[str] = None) -> str:
    prefix = prefix or settings.ORDER_NUMBER_PREFIX
    code = "".join(secrets.choice(TICKET_CODE_ALPHABET) for _ in range(TICKET_CODE_LENGTH))
    return f"{prefix}-{code}"


def format_order_number(sequence: int, prefix: Optional[str] = None) -> str:
    return f"{prefix or settings.ORDER_NUMBER_PREFIX}-{sequence:05d}"


def _json_safe(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, dict):
        return {k: _json_safe(v) for k, v in value.items() if v is not None}
    if isinstance(value, list):
        return [_json_safe(v) for v in value]
    return value


class OrderService:

    def __init__(
        self,
        ticket_types: TicketTypeStore,
        customers: CustomerStore,
        orders: OrderStore,
        events: Optional[EventStore] = None,
        gateway: Optional[PaymentGateway] = None,
        monitor: Optional[PaymentMonitor] = None,
        dispatcher: Optional[BackgroundDispatcher] = None,
        order_prefix: Optional[str] = None,
    ):
        self.ticket_types = ticket_types
        self.customers = customers
        self.orders = orders
        self.events = events
        self.gateway = gateway
        self.monitor = monitor or PaymentMonitor(None)
        self.dispatcher = dispatcher or BackgroundDispatcher()
        self.order_prefix = order_prefix or settings.ORDER_NUMBER_PREFIX

    async def create_order(
        self,
        org_id: str,
        event: OrderEvent,
        items: List[CartLine],
        customer: CheckoutCustomer,
        payment: OrderPayment,
        vat: Optional[OrderVat] = None,
        extra_metadata: Optional[Dict] = None,
        send_email: bool = True,
        currency: Optional[str] = None,
    ) -> CreateOrderResult:
        if not items:
            raise OrderCreationError("No items in order", 400)

        # 1. Tipos de ticket frescos
        ids = list(dict.fromkeys(item.ticket_type_id for item in items))
        try:
            records = await self.ticket_types.fetch_ticket_types(org_id, ids)
        except Exception as e:
            logger.error(f"[ORDERS] Error obteniendo tipos de ticket: {e}", exc_info=True)
            raise OrderCreationError("Failed to fetch ticket types", 500) from e

        ticket_type_map = {tt.id: tt for tt in records}
        for item in items:
            if item.ticket_type_id not in ticket_type_map:
                raise OrderCreationError(f"Ticket type {item.ticket_type_id} not found", 400)

        subtotal = round_money(sum(
            (ticket_type_map[item.ticket_type_id].price * item.qty for item in items), Decimal("0")
        ))

        # 4. Comisión: diferencia entre lo cobrado y el subtotal
        if payment.total_charged is not None:
            total = round_money(to_decimal(payment.total_charged))
            fees = max(Decimal("0.00"), round_money(total - subtotal))
        else:
            total = subtotal
            fees = Decimal("0.00")

        # 2. Número de orden
        try:
            sequence = await self.orders.next_order_sequence(org_id)
        except Exception as e:
            logger.error(f"[ORDERS] Error generando número de orden para org {org_id}: {e}", exc_info=True)
            raise OrderCreationError("Failed to generate order number", 500) from e
        order_number = format_order_number(sequence, self.order_prefix)

        # 5. Cliente por (org, email en minúsculas)
        email_lower = customer.email_lower
        try:
            customer_id = await self.customers.upsert_customer(
                org_id,
                email_lower,
                customer.first_name,
                customer.last_name,
                phone=customer.phone,
            )
        except Exception as e:
            logger.error(f"[ORDERS] Error creando cliente {email_lower}: {e}", exc_info=True)
            raise OrderCreationError("Failed to create customer", 500) from e

        # 6. Orden
        metadata = dict(extra_metadata or {})
        if vat is not None:
            metadata.update(vat_amount=vat.amount, vat_rate=vat.rate, vat_inclusive=vat.inclusive)

        try:
            order = await self.orders.insert_order(OrderRecord(
                id=str(uuid.uuid4()),
                org_id=org_id,
                order_number=order_number,
                event_id=event.id,
                customer_id=customer_id,
                subtotal=subtotal,
                fees=fees,
                total=total,
                currency=(currency or event.currency or "GBP").upper(),
                payment_method=payment.method,
                payment_ref=payment.reference,
                metadata=_json_safe(metadata),
            ))
        except DuplicateOrderError:
            logger.warning(f"[ORDERS] Pago {payment.reference} ya tiene orden, se descarta {order_number}")
            raise
        except Exception as e:
            logger.error(f"[ORDERS] Error insertando orden {order_number}: {e}", exc_info=True)
            raise OrderCreationError("Failed to create order", 500) from e

        # A partir de aquí la orden existe: los fallos se reportan, no se revierten
        try:
            await self.customers.update_customer_stats(customer_id, 1, total)
        except Exception as e:
            logger.error(f"[ORDERS] Error actualizando estadísticas del cliente {customer_id}: {e}")

        order_items = [
            OrderItemRecord(
                id=str(uuid.uuid4()),
                org_id=org_id,
                order_id=order.id,
                ticket_type_id=item.ticket_type_id,
                qty=item.qty,
                unit_price=ticket_type_map[item.ticket_type_id].price,
                merch_size=item.merch_size,
            )
            for item in items
        ]
        try:
            order_items = await self.orders.insert_order_items(order_items)
        except Exception as e:
            await self._report_partial_order(org_id, order, "order items", e)
            raise OrderCreationError("Failed to create order items", 500, order_id=order.id) from e

        # 3. Un ticket por unidad
        tickets = []
        for item, order_item in zip(items, order_items):
            for _ in range(item.qty):
                tickets.append(TicketRecord(
                    org_id=org_id,
                    order_item_id=order_item.id,
                    order_id=order.id,
                    event_id=event.id,
                    ticket_type_id=item.ticket_type_id,
                    customer_id=customer_id,
                    ticket_code=generate_ticket_code(self.order_prefix),
                    holder_first_name=customer.first_name,
                    holder_last_name=customer.last_name,
                    holder_email=email_lower,
                    merch_size=item.merch_size or None,
                ))
        try:
            await self.orders.insert_tickets(tickets)
        except Exception as e:
            await self._report_partial_order(org_id, order, "tickets", e)
            raise OrderCreationError("Failed to create tickets", 500, order_id=order.id) from e

        # 7. Inventario
        for item in items:
            await self._increment_sold(org_id, order, ticket_type_map[item.ticket_type_id], item.qty)

        logger.info(
            f"[ORDERS] Orden {order_number} creada: {len(tickets)} tickets, total {total} {order.currency} "
            f"({payment.method} {payment.reference})"
        )

        # 8. Email (nunca falla la orden)
        if send_email:
            self._dispatch_email(org_id, order, event, customer, tickets, ticket_type_map)

        return CreateOrderResult(
            order=order,
            tickets=tickets,
            customer_id=customer_id,
            ticket_types=ticket_type_map,
        )

    async def _increment_sold(self, org_id: str, order: OrderRecord, tt: TicketTypeRecord, qty: int) -> None:
        try:
            new_sold = await self.ticket_types.atomic_increment_sold(tt.id, qty)
        except Exception as e:
            await self._report_partial_order(org_id, order, f"sold counter of {tt.id}", e)
            raise OrderCreationError("Failed to update ticket inventory", 500, order_id=order.id) from e

        if tt.capacity is not None and new_sold > tt.capacity:
            # Sobreventa por carrera entre cotización y fulfillment: la orden se mantiene
            logger.critical(
                f"[ORDERS] SOBREVENTA en tipo de ticket {tt.id} ({tt.name}): "
                f"sold={new_sold} capacity={tt.capacity} orden={order.order_number}"
            )
            await self.monitor.log(
                org_id,
                payment_monitor.INVENTORY_OVERSELL,
                severity="critical",
                event_id=order.event_id,
                stripe_payment_intent_id=order.payment_ref if order.payment_method == "stripe" else None,
                error_code="inventory_oversell",
                error_message=f'"{tt.name}" oversold: {new_sold}/{tt.capacity}',
                metadata={
                    "ticket_type_id": tt.id,
                    "order_id": order.id,
                    "order_number": order.order_number,
                    "sold": new_sold,
                    "capacity": tt.capacity,
                },
            )

    async def _report_partial_order(self, org_id: str, order: OrderRecord, step: str, error: Exception) -> None:
        logger.critical(f"[ORDERS] Orden {order.order_number} ({order.id}) creada pero falló {step}: {error}")
        await self.monitor.log(
            org_id,
            payment_monitor.CHECKOUT_ERROR,
            event_id=order.event_id,
            stripe_payment_intent_id=order.payment_ref if order.payment_method == "stripe" else None,
            error_code="order_partially_created",
            error_message=f"Failed to create {step}: {error}",
            metadata={"order_id": order.id, "order_number": order.order_number},
        )

    def _dispatch_email(
        self,
        org_id: str,
        order: OrderRecord,
        event: OrderEvent,
        customer: CheckoutCustomer,
        tickets: List[TicketRecord],
        ticket_type_map: Dict[str, TicketTypeRecord],
    ) -> None:
        payload = {
            "org_id": org_id,
            "order_id": order.id,
            "order_number": order.order_number,
            "total": str(order.total),
            "currency": order.currency,
            "customer": {
                "email": customer.email_lower,
                "first_name": customer.first_name,
                "last_name": customer.last_name,
            },
            "event": {
                "id": event.id,
                "name": event.name,
                "slug": event.slug,
                "venue_name": event.venue_name,
                "date_start": event.date_start,
                "doors_time": event.doors_time,
            },
            "tickets": [
                {
                    "ticket_code": ticket.ticket_code,
                    "ticket_type": ticket_type_map[ticket.ticket_type_id].name,
                    "merch_size": ticket.merch_size,
                    "merch_name": ticket_type_map[ticket.ticket_type_id].display_merch_name
                    if ticket.merch_size else None,
                }
                for ticket in tickets
            ],
        }
        try:
            if not self.dispatcher.dispatch(send_order_confirmation_email_task, payload=payload):
                logger.error(f"[ORDERS] Email de confirmación no encolado para orden {order.order_number}")
        except Exception as e:
            logger.error(f"[ORDERS] Error despachando email de orden {order.order_number}: {e}")

    # ── Caminos de fulfillment ───────────────────────────────────

    async def confirm_order(
        self,
        payment_intent_id: str,
        connected_account: Optional[str] = None,
    ) -> CreateOrderResult:
        """Materializar la orden de un PaymentIntent completado (idempotente por payment_ref)"""
        if self.gateway is None or self.events is None:
            raise OrderCreationError("Order confirmation is not configured", 500)

        try:
            intent = await self.gateway.retrieve_payment_intent(payment_intent_id, connected_account)
        except GatewayError as e:
            raise OrderCreationError("Failed to retrieve payment", 502) from e

        if intent.status != "succeeded":
            error = intent.last_payment_error or {}
            message = (
                get_payment_error_message(error.get("code"), error.get("decline_code"), error.get("message"))
                if error else "Payment has not been completed"
            )
            raise OrderCreationError(message, 400)

        try:
            metadata = PaymentIntentMetadata.from_stripe_metadata(intent.metadata)
        except ValueError as e:
            raise OrderCreationError(str(e).splitlines()[0], 400) from e

        org_id = metadata.org_id
        existing = await self.orders.find_order_by_payment_ref(org_id, intent.id)
        if existing is not None:
            return await self._existing_order(existing)

        event = await self.events.get_event(org_id, metadata.event_id)
        if event is None:
            raise OrderCreationError("Event not found", 404)

        customer = CheckoutCustomer(
            email=metadata.customer_email,
            first_name=metadata.customer_first_name,
            last_name=metadata.customer_last_name,
            phone=metadata.customer_phone or None,
        )

        vat = None
        if metadata.vat_amount is not None:
            vat = OrderVat(
                amount=metadata.vat_amount,
                rate=metadata.vat_rate,
                inclusive=bool(metadata.vat_inclusive),
            )

        extra = {}
        if metadata.discount_code:
            extra.update(discount_code=metadata.discount_code, discount_amount=metadata.discount_amount)

        charged = from_smallest_unit(intent.amount)
        if metadata.presentment_currency and metadata.base_total is not None:
            # La orden se registra en la moneda base; lo cobrado queda en metadata
            extra.update(
                presentment_currency=metadata.presentment_currency,
                presentment_total=charged,
                exchange_rate=metadata.exchange_rate,
                base_subtotal=metadata.base_subtotal,
            )
            charged = metadata.base_total

        try:
            result = await self.create_order(
                org_id,
                OrderEvent.from_record(event),
                metadata.items,
                customer,
                OrderPayment(method="stripe", reference=intent.id, total_charged=charged),
                vat=vat,
                extra_metadata=extra,
                currency=metadata.base_currency or event.currency,
            )
        except DuplicateOrderError as e:
            # Otra confirmación del mismo pago ganó la carrera
            existing = await self.orders.find_order_by_payment_ref(org_id, intent.id)
            if existing is None:
                raise OrderCreationError("Failed to create order", 500) from e
            return await self._existing_order(existing)

        await self.monitor.log(
            org_id,
            payment_monitor.PAYMENT_SUCCEEDED,
            event_id=event.id,
            stripe_payment_intent_id=intent.id,
            stripe_account_id=connected_account,
            customer_email=customer.email_lower,
            metadata={"order_number": result.order.order_number, "amount": intent.amount},
        )
        return result

    async def _existing_order(self, existing: OrderRecord) -> CreateOrderResult:
        logger.info(f"[ORDERS] PaymentIntent {existing.payment_ref} ya tiene orden {existing.order_number}")
        return CreateOrderResult(
            order=existing,
            tickets=await self.orders.list_order_tickets(existing.id),
            customer_id=existing.customer_id,
            created=False,
        )

    async def create_manual_order(self, org_id: str, request: ManualOrderRequest) -> CreateOrderResult:
        """Orden de prueba/manual: método test, referencia TEST-xxx, sin cobro"""
        if self.events is None:
            raise OrderCreationError("Manual orders are not configured", 500)

        event = await self.events.get_event(org_id, request.event_id)
        if event is None:
            raise OrderCreationError("Event not found", 404)

        reference = f"TEST-{secrets.token_hex(6).upper()}"
        return await self.create_order(
            org_id,
            OrderEvent.from_record(event),
            request.items,
            request.customer,
            OrderPayment(method="test", reference=reference),
            send_email=request.send_email,
        )
