"""Fixtures compartidas: stores en memoria, gateway falso y dispatcher que registra llamadas"""
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, List, Optional
import asyncio
import uuid

import pytest

from services.checkout.models.domain import (
    CustomerRecord,
    DiscountRecord,
    EventRecord,
    ExchangeRates,
    ProductRecord,
    TicketTypeRecord,
)
from services.checkout.models.errors import DuplicateOrderError
from services.checkout.services.exchange_rates import ExchangeRateCache, RatesSource
from services.checkout.services.order_service import OrderService
from services.checkout.services.payment_intent_service import PaymentIntentService
from services.checkout.services.payment_monitor import PaymentMonitor
from services.checkout.services.stripe_service import (
    ConnectedAccountVerifier,
    GatewayCurrencyError,
    GatewayError,
    GatewayIntent,
    PaymentGateway,
)
from services.checkout.stores.interfaces import (
    CustomerStore,
    DiscountStore,
    EventStore,
    OrderStore,
    PaymentEventStore,
    SettingsStore,
    TicketTypeStore,
)

ORG_ID = "org-1"
EVENT_ID = "evt-1"
NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


class FakeEventStore(EventStore):

    def __init__(self, events: Optional[List[EventRecord]] = None):
        self.events = {(e.org_id, e.id): e for e in events or []}

    async def get_event(self, org_id, event_id):
        return self.events.get((org_id, event_id))


class FakeTicketTypeStore(TicketTypeStore):

    def __init__(self, ticket_types: Optional[List[TicketTypeRecord]] = None):
        self.ticket_types = {tt.id: tt for tt in ticket_types or []}
        self.fail_fetch = False
        self.increments = []

    def add(self, tt: TicketTypeRecord):
        self.ticket_types[tt.id] = tt

    async def fetch_ticket_types(self, org_id, ids):
        if self.fail_fetch:
            raise ConnectionError("database unavailable")
        # Copias: cada lectura es una fila "fresca"
        return [replace(tt) for tt in self.ticket_types.values() if tt.org_id == org_id and tt.id in ids]

    async def fetch_event_ticket_types(self, org_id, event_id):
        return sorted(
            (replace(tt) for tt in self.ticket_types.values() if tt.org_id == org_id and tt.event_id == event_id),
            key=lambda tt: tt.sort_order,
        )

    async def atomic_increment_sold(self, ticket_type_id, qty):
        tt = self.ticket_types[ticket_type_id]
        tt.sold += qty
        self.increments.append((ticket_type_id, qty))
        return tt.sold


class FakeDiscountStore(DiscountStore):

    def __init__(self, discounts: Optional[List[DiscountRecord]] = None):
        self.discounts = list(discounts or [])

    async def fetch_discount(self, org_id, code):
        for discount in self.discounts:
            if discount.org_id == org_id and discount.code.lower() == code.lower() and discount.status == "active":
                return discount
        return None

    async def increment_used_count(self, discount_id):
        for discount in self.discounts:
            if discount.id == discount_id:
                discount.used_count += 1


class FakeCustomerStore(CustomerStore):

    def __init__(self):
        self.customers: Dict[tuple, CustomerRecord] = {}

    async def upsert_customer(self, org_id, email_lower, first_name, last_name, phone=None):
        key = (org_id, email_lower)
        customer = self.customers.get(key)
        if customer is None:
            customer = CustomerRecord(id=str(uuid.uuid4()), org_id=org_id, email=email_lower)
            self.customers[key] = customer
        customer.first_name = first_name
        customer.last_name = last_name
        if phone:
            customer.phone = phone
        return customer.id

    async def update_customer_stats(self, customer_id, orders_delta, spend_delta):
        customer = await self.get_customer(customer_id)
        customer.total_orders += orders_delta
        customer.total_spent += spend_delta

    async def get_customer(self, customer_id):
        for customer in self.customers.values():
            if customer.id == customer_id:
                return customer
        return None


class FakeOrderStore(OrderStore):

    def __init__(self):
        self.sequences: Dict[str, int] = {}
        self.orders = []
        self.items = []
        self.tickets = []
        self.fail_on = set()
        # Ceder el loop en la búsqueda, como un round trip real a la base
        self.yield_on_lookup = False

    def _maybe_fail(self, step):
        if step in self.fail_on:
            raise ConnectionError(f"{step} failed")

    async def next_order_sequence(self, org_id):
        self.sequences[org_id] = self.sequences.get(org_id, 0) + 1
        return self.sequences[org_id]

    async def find_order_by_payment_ref(self, org_id, payment_ref):
        found = next(
            (o for o in self.orders if o.org_id == org_id and o.payment_ref == payment_ref),
            None,
        )
        if self.yield_on_lookup:
            await asyncio.sleep(0)
        return found

    async def insert_order(self, order):
        self._maybe_fail("order")
        if any(o.org_id == order.org_id and o.payment_ref == order.payment_ref for o in self.orders):
            raise DuplicateOrderError(order.org_id, order.payment_ref)
        self.orders.append(order)
        return order

    async def insert_order_items(self, items):
        self._maybe_fail("items")
        self.items.extend(items)
        return items

    async def insert_tickets(self, tickets):
        self._maybe_fail("tickets")
        self.tickets.extend(tickets)

    async def list_order_tickets(self, order_id):
        return [t for t in self.tickets if t.order_id == order_id]


class FakeSettingsStore(SettingsStore):

    def __init__(self, data: Optional[Dict[str, Dict]] = None):
        self.data = dict(data or {})

    async def get_setting(self, key):
        return self.data.get(key)

    async def set_setting(self, key, data, org_id=None):
        self.data[key] = data


class FakePaymentEventStore(PaymentEventStore):

    def __init__(self):
        self.events = []

    async def insert_payment_event(self, event):
        self.events.append(event)

    def types(self):
        return [e.type for e in self.events]


class FakeGateway(PaymentGateway):

    def __init__(self):
        self.created = []
        self.intents: Dict[str, GatewayIntent] = {}
        self.accessible_accounts = set()
        self.rejected_currencies = set()
        self.error: Optional[Exception] = None

    async def create_payment_intent(
        self,
        amount,
        currency,
        metadata,
        description=None,
        receipt_email=None,
        application_fee_amount=None,
        connected_account=None,
    ):
        call = {
            "amount": amount,
            "currency": currency,
            "metadata": metadata,
            "description": description,
            "receipt_email": receipt_email,
            "application_fee_amount": application_fee_amount,
            "connected_account": connected_account,
        }
        self.created.append(call)
        if currency in self.rejected_currencies:
            raise GatewayCurrencyError(f"Currency {currency} not supported", code="currency_not_supported")
        if self.error is not None:
            raise self.error
        intent_id = f"pi_{len(self.created)}"
        intent = GatewayIntent(
            id=intent_id,
            client_secret=f"{intent_id}_secret",
            amount=amount,
            currency=currency,
            metadata=metadata,
        )
        self.intents[intent_id] = intent
        return intent

    async def retrieve_payment_intent(self, payment_intent_id, connected_account=None):
        if payment_intent_id not in self.intents:
            raise GatewayError("No such payment_intent", code="resource_missing")
        return self.intents[payment_intent_id]

    async def account_accessible(self, account_id):
        return account_id in self.accessible_accounts


class RecordingDispatcher:

    def __init__(self, fail: bool = False):
        self.calls = []
        self.fail = fail

    def dispatch(self, task, **kwargs):
        if self.fail:
            raise RuntimeError("broker down")
        self.calls.append((task.name, kwargs))
        return True

    def names(self):
        return [name for name, _ in self.calls]


class FakeRatesSource(RatesSource):

    def __init__(self, data: Optional[Dict] = None):
        self.data = data
        self.loads = 0

    async def load(self):
        self.loads += 1
        return self.data

    async def save(self, data):
        self.data = data


class FakeSharedCache:

    def __init__(self):
        self.data = {}

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value, expire=3600):
        self.data[key] = value

    async def delete(self, key):
        self.data.pop(key, None)


class Clock:

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


def make_rates(fetched_at: datetime = NOW - timedelta(hours=2)) -> ExchangeRates:
    return ExchangeRates(rates={"USD": 1.0, "GBP": 0.8, "EUR": 0.9, "SEK": 10.0}, fetched_at=fetched_at)


# ── Fixtures ──────────────────────────────────────────────────────


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def event():
    return EventRecord(
        id=EVENT_ID,
        org_id=ORG_ID,
        name="Summer Rave",
        slug="summer-rave",
        currency="GBP",
        payment_method="stripe",
        venue_name="Warehouse",
        date_start="2026-07-01T22:00:00+00:00",
        stripe_account_id="acct_event",
    )


@pytest.fixture
def ticket_a():
    return TicketTypeRecord(
        id="tt-a", org_id=ORG_ID, event_id=EVENT_ID, name="General Admission",
        price=Decimal("25.00"), capacity=100, sold=0, sort_order=0,
    )


@pytest.fixture
def ticket_b():
    return TicketTypeRecord(
        id="tt-b", org_id=ORG_ID, event_id=EVENT_ID, name="GA + Tee",
        price=Decimal("45.00"), capacity=50, sold=0, sort_order=1,
        includes_merch=True, merch_name="T-Shirt", product=ProductRecord(id="prod-1", name="Tour Tee"),
    )


@pytest.fixture
def event_store(event):
    return FakeEventStore([event])


@pytest.fixture
def ticket_store(ticket_a, ticket_b):
    return FakeTicketTypeStore([ticket_a, ticket_b])


@pytest.fixture
def discount_store():
    return FakeDiscountStore([
        DiscountRecord(
            id="disc-10", org_id=ORG_ID, code="SAVE10", type="percentage", value=Decimal("10"),
        ),
    ])


@pytest.fixture
def settings_store():
    return FakeSettingsStore()


@pytest.fixture
def payment_events():
    return FakePaymentEventStore()


@pytest.fixture
def gateway():
    gw = FakeGateway()
    gw.accessible_accounts.add("acct_event")
    return gw


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def rates_source():
    return FakeRatesSource(make_rates().to_dict())


@pytest.fixture
def rates_cache(rates_source, clock):
    return ExchangeRateCache(rates_source, clock=clock)


@pytest.fixture
def intent_service(
    event_store, ticket_store, discount_store, settings_store, gateway,
    rates_cache, payment_events, dispatcher, clock,
):
    return PaymentIntentService(
        events=event_store,
        ticket_types=ticket_store,
        discounts=discount_store,
        settings_store=settings_store,
        gateway=gateway,
        account_verifier=ConnectedAccountVerifier(gateway, ttl_seconds=300),
        rates_cache=rates_cache,
        monitor=PaymentMonitor(payment_events),
        dispatcher=dispatcher,
        clock=clock,
    )


@pytest.fixture
def customer_store():
    return FakeCustomerStore()


@pytest.fixture
def order_store():
    return FakeOrderStore()


@pytest.fixture
def order_service(ticket_store, customer_store, order_store, event_store, gateway, payment_events, dispatcher):
    return OrderService(
        ticket_types=ticket_store,
        customers=customer_store,
        orders=order_store,
        events=event_store,
        gateway=gateway,
        monitor=PaymentMonitor(payment_events),
        dispatcher=dispatcher,
        order_prefix="FERAL",
    )
