from datetime import timedelta
from decimal import Decimal

import pytest

from services.checkout.models.checkout import (
    CartLine,
    CheckoutCustomer,
    CurrencyFallback,
    PaymentIntentMetadata,
    PaymentIntentRequest,
)
from services.checkout.models.domain import DiscountRecord
from services.checkout.models.errors import (
    CheckoutStoreError,
    CheckoutValidationError,
    DiscountInvalidError,
    ErrorCode,
    InventoryConflictError,
    PaymentGatewayError,
    SequentialReleaseError,
)
from services.checkout.services.order_service import OrderEvent, OrderPayment
from services.checkout.services.stripe_service import GatewayError
from services.checkout.stores.interfaces import (
    event_settings_key,
    plan_key,
    stripe_account_key,
    vat_key,
)

from conftest import EVENT_ID, NOW, ORG_ID, make_rates


def make_request(items=None, discount_code=None, currency=None, event_id=EVENT_ID):
    if items is None:
        items = [
            CartLine(ticket_type_id="tt-a", qty=2),
            CartLine(ticket_type_id="tt-b", qty=1, merch_size="M"),
        ]
    return PaymentIntentRequest(
        event_id=event_id,
        items=items,
        customer=CheckoutCustomer(email="Alice.Smith@Gmail.com", first_name="Alice", last_name="Smith"),
        discount_code=discount_code,
        currency=currency,
    )


class TestCart:

    async def test_basic_quote(self, intent_service, gateway):
        response = await intent_service.create_payment_intent(ORG_ID, make_request())

        assert response.subtotal == Decimal("95.00")
        assert response.amount == 9500
        assert response.currency == "GBP"
        assert response.discount is None
        assert response.vat is None
        assert response.exchange_rate is None
        assert response.client_secret == "pi_1_secret"

        call = gateway.created[0]
        assert call["receipt_email"] == "alice.smith@gmail.com"
        assert call["description"] == "Summer Rave tickets"

    async def test_capacity_boundary_passes(self, intent_service, ticket_a):
        ticket_a.capacity = 10
        ticket_a.sold = 9
        response = await intent_service.create_payment_intent(
            ORG_ID, make_request([CartLine(ticket_type_id="tt-a", qty=1)])
        )
        assert response.amount == 2500

    async def test_capacity_exceeded(self, intent_service, ticket_a, gateway):
        ticket_a.capacity = 10
        ticket_a.sold = 9
        with pytest.raises(InventoryConflictError) as exc:
            await intent_service.create_payment_intent(ORG_ID, make_request([CartLine(ticket_type_id="tt-a", qty=2)]))

        assert exc.value.remaining == 1
        assert "Available: 1" in exc.value.message
        assert gateway.created == []

    async def test_unknown_ticket_type(self, intent_service):
        with pytest.raises(CheckoutValidationError) as exc:
            await intent_service.create_payment_intent(ORG_ID, make_request([CartLine(ticket_type_id="nope", qty=1)]))
        assert exc.value.code == ErrorCode.TICKET_TYPE_NOT_FOUND

    async def test_ticket_type_from_other_event(self, intent_service, ticket_a):
        ticket_a.event_id = "evt-other"
        with pytest.raises(CheckoutValidationError) as exc:
            await intent_service.create_payment_intent(ORG_ID, make_request([CartLine(ticket_type_id="tt-a", qty=1)]))
        assert exc.value.code == ErrorCode.TICKET_TYPE_NOT_FOUND

    async def test_inactive_ticket_type(self, intent_service, ticket_a):
        ticket_a.status = "paused"
        with pytest.raises(CheckoutValidationError) as exc:
            await intent_service.create_payment_intent(ORG_ID, make_request())
        assert exc.value.message == '"General Admission" is not available'

    async def test_max_per_order(self, intent_service, ticket_a):
        ticket_a.max_per_order = 4
        with pytest.raises(CheckoutValidationError) as exc:
            await intent_service.create_payment_intent(ORG_ID, make_request([CartLine(ticket_type_id="tt-a", qty=5)]))
        assert exc.value.code == ErrorCode.MAX_PER_ORDER_EXCEEDED

    async def test_capacity_counts_repeated_lines_together(self, intent_service, ticket_a, gateway):
        ticket_a.capacity = 10
        ticket_a.sold = 9
        items = [CartLine(ticket_type_id="tt-a", qty=1), CartLine(ticket_type_id="tt-a", qty=1)]

        with pytest.raises(InventoryConflictError):
            await intent_service.create_payment_intent(ORG_ID, make_request(items))
        assert gateway.created == []

    async def test_max_per_order_counts_repeated_lines_together(self, intent_service, ticket_a):
        ticket_a.max_per_order = 4
        items = [CartLine(ticket_type_id="tt-a", qty=3), CartLine(ticket_type_id="tt-a", qty=2)]

        with pytest.raises(CheckoutValidationError) as exc:
            await intent_service.create_payment_intent(ORG_ID, make_request(items))
        assert exc.value.code == ErrorCode.MAX_PER_ORDER_EXCEEDED

    async def test_repeated_lines_within_limits(self, intent_service, ticket_b):
        items = [
            CartLine(ticket_type_id="tt-b", qty=1, merch_size="M"),
            CartLine(ticket_type_id="tt-b", qty=1, merch_size="L"),
        ]
        response = await intent_service.create_payment_intent(ORG_ID, make_request(items))
        assert response.amount == 9000

    async def test_event_not_found(self, intent_service):
        with pytest.raises(CheckoutValidationError) as exc:
            await intent_service.create_payment_intent(ORG_ID, make_request(event_id="missing"))
        assert exc.value.status_code == 404

    async def test_event_without_stripe(self, intent_service, event):
        event.payment_method = "test"
        with pytest.raises(CheckoutValidationError) as exc:
            await intent_service.create_payment_intent(ORG_ID, make_request())
        assert exc.value.message == "This event does not use Stripe payments"

    async def test_store_failure(self, intent_service, ticket_store):
        ticket_store.fail_fetch = True
        with pytest.raises(CheckoutStoreError) as exc:
            await intent_service.create_payment_intent(ORG_ID, make_request())
        assert exc.value.status_code == 500
        assert exc.value.message == "Failed to load ticket types"

    async def test_validation_failures_are_recorded(self, intent_service, payment_events, ticket_a):
        ticket_a.status = "paused"
        with pytest.raises(CheckoutValidationError):
            await intent_service.create_payment_intent(ORG_ID, make_request(), ip_address="1.2.3.4")

        event = payment_events.events[0]
        assert event.type == "checkout_validation"
        assert event.severity == "info"
        assert event.ip_address == "1.2.3.4"
        assert event.customer_email == "alice.smith@gmail.com"


class TestSequentialRelease:

    @pytest.fixture(autouse=True)
    def sequential_group(self, settings_store):
        settings_store.data[event_settings_key(ORG_ID, EVENT_ID)] = {
            "ticket_group_map": {"tt-a": "GA", "tt-b": "GA"},
            "ticket_group_release_mode": {"GA": "sequential"},
        }

    async def test_later_tier_blocked(self, intent_service, gateway):
        with pytest.raises(SequentialReleaseError) as exc:
            await intent_service.create_payment_intent(ORG_ID, make_request([CartLine(ticket_type_id="tt-b", qty=1)]))

        assert exc.value.message == '"GA + Tee" is not yet available. "General Admission" must sell out first.'
        assert gateway.created == []

    async def test_later_tier_released_after_sell_out(self, intent_service, ticket_a):
        ticket_a.sold = ticket_a.capacity
        response = await intent_service.create_payment_intent(
            ORG_ID, make_request([CartLine(ticket_type_id="tt-b", qty=1, merch_size="L")])
        )
        assert response.amount == 4500


class TestDiscounts:

    async def test_percentage_discount(self, intent_service, gateway, dispatcher):
        response = await intent_service.create_payment_intent(ORG_ID, make_request(discount_code="save10"))

        assert response.subtotal == Decimal("95.00")
        assert response.discount.amount == Decimal("9.50")
        assert response.discount.code == "SAVE10"
        assert response.amount == 8550

        metadata = gateway.created[0]["metadata"]
        assert metadata["discount_code"] == "SAVE10"
        assert metadata["discount_amount"] == "9.50"
        assert metadata["subtotal"] == "95.00"

        assert dispatcher.calls == [("increment_discount_usage", {"discount_id": "disc-10"})]

    async def test_minimum_order_rejected(self, intent_service, discount_store, gateway, dispatcher, payment_events):
        discount_store.discounts.append(DiscountRecord(
            id="disc-big", org_id=ORG_ID, code="BIG", type="fixed", value=Decimal("20"),
            min_order_amount=Decimal("100"),
        ))

        with pytest.raises(DiscountInvalidError) as exc:
            await intent_service.create_payment_intent(ORG_ID, make_request(discount_code="BIG"))

        assert exc.value.message == "Minimum order of £100.00 required"
        assert gateway.created == []
        assert dispatcher.calls == []
        assert payment_events.types() == ["checkout_validation"]

    async def test_unknown_code_rejected(self, intent_service):
        with pytest.raises(DiscountInvalidError) as exc:
            await intent_service.create_payment_intent(ORG_ID, make_request(discount_code="NOPE"))
        assert exc.value.message == "Invalid discount code"

    async def test_blank_code_is_ignored(self, intent_service, dispatcher):
        response = await intent_service.create_payment_intent(ORG_ID, make_request(discount_code="  "))
        assert response.discount is None
        assert dispatcher.calls == []

    async def test_free_order_rejected(self, intent_service, discount_store, gateway):
        discount_store.discounts.append(DiscountRecord(
            id="disc-free", org_id=ORG_ID, code="FREE", type="percentage", value=Decimal("100"),
        ))
        with pytest.raises(CheckoutValidationError) as exc:
            await intent_service.create_payment_intent(ORG_ID, make_request(discount_code="FREE"))

        assert exc.value.code == ErrorCode.AMOUNT_TOO_LOW
        assert exc.value.message == "Order total must be greater than zero"
        assert gateway.created == []


class TestVat:

    async def test_exclusive_vat_added_on_top(self, intent_service, settings_store):
        settings_store.data[vat_key(ORG_ID)] = {
            "vat_registered": True, "vat_rate": 20, "prices_include_vat": False,
        }
        response = await intent_service.create_payment_intent(ORG_ID, make_request(discount_code="SAVE10"))

        assert response.vat.amount == Decimal("17.10")
        assert response.vat.inclusive is False
        assert response.amount == 10260

    async def test_inclusive_vat_extracted(self, intent_service, settings_store, gateway):
        settings_store.data[vat_key(ORG_ID)] = {
            "vat_registered": True, "vat_rate": 20, "prices_include_vat": True,
        }
        response = await intent_service.create_payment_intent(ORG_ID, make_request(discount_code="SAVE10"))

        assert response.vat.amount == Decimal("14.25")
        assert response.amount == 8550
        assert gateway.created[0]["metadata"]["vat_inclusive"] == "true"

    async def test_event_opt_out_overrides_org(self, intent_service, settings_store, event):
        settings_store.data[vat_key(ORG_ID)] = {"vat_registered": True, "vat_rate": 20}
        event.vat_registered = False
        response = await intent_service.create_payment_intent(ORG_ID, make_request())
        assert response.vat is None
        assert response.amount == 9500


class TestConnectedAccounts:

    async def test_event_account_with_starter_fee(self, intent_service, gateway):
        response = await intent_service.create_payment_intent(ORG_ID, make_request(discount_code="SAVE10"))

        assert response.stripe_account_id == "acct_event"
        assert response.application_fee == 299
        assert gateway.created[0]["connected_account"] == "acct_event"
        assert gateway.created[0]["application_fee_amount"] == 299

    async def test_event_fee_override(self, intent_service, event):
        event.platform_fee_percent = Decimal("10")
        response = await intent_service.create_payment_intent(ORG_ID, make_request())
        assert response.application_fee == 950

    async def test_org_plan(self, intent_service, settings_store):
        settings_store.data[plan_key(ORG_ID)] = {"plan_id": "pro"}
        response = await intent_service.create_payment_intent(ORG_ID, make_request())
        assert response.application_fee == 190

    async def test_org_account_when_event_has_none(self, intent_service, event, settings_store, gateway):
        event.stripe_account_id = None
        settings_store.data[stripe_account_key(ORG_ID)] = {"account_id": "acct_org"}
        gateway.accessible_accounts.add("acct_org")

        response = await intent_service.create_payment_intent(ORG_ID, make_request())
        assert response.stripe_account_id == "acct_org"

    async def test_inaccessible_account_falls_back_to_platform(self, intent_service, gateway, payment_events):
        gateway.accessible_accounts.clear()

        response = await intent_service.create_payment_intent(ORG_ID, make_request())

        assert response.stripe_account_id is None
        assert response.application_fee == 0
        assert gateway.created[0]["connected_account"] is None
        assert gateway.created[0]["application_fee_amount"] is None
        assert payment_events.types() == ["connect_fallback"]
        assert payment_events.events[0].stripe_account_id == "acct_event"

    async def test_no_account_configured(self, intent_service, event, payment_events):
        event.stripe_account_id = None
        response = await intent_service.create_payment_intent(ORG_ID, make_request())
        assert response.stripe_account_id is None
        assert payment_events.events == []


class TestCurrency:

    async def test_converts_with_fresh_rates(self, intent_service, gateway):
        response = await intent_service.create_payment_intent(ORG_ID, make_request(currency="eur"))

        # 95 GBP -> 118.75 USD -> 106.88 EUR
        assert response.currency == "EUR"
        assert response.amount == 10688
        assert response.exchange_rate == Decimal("1.125000")
        assert response.base_currency == "GBP"
        assert response.base_total == Decimal("95.00")

        metadata = PaymentIntentMetadata.from_stripe_metadata(gateway.created[0]["metadata"])
        assert metadata.presentment_currency == "EUR"
        assert metadata.base_currency == "GBP"
        assert metadata.base_total == Decimal("95.00")

    async def test_stale_rates_charge_base_currency(self, intent_service, rates_source):
        rates_source.data = make_rates(NOW - timedelta(hours=25)).to_dict()
        response = await intent_service.create_payment_intent(ORG_ID, make_request(currency="EUR"))

        assert response.currency == "GBP"
        assert response.amount == 9500
        assert response.exchange_rate is None

    async def test_unsupported_currency_charges_base(self, intent_service):
        response = await intent_service.create_payment_intent(ORG_ID, make_request(currency="JPY"))
        assert response.currency == "GBP"

    async def test_currency_rejected_returns_fallback(self, intent_service, gateway, dispatcher, payment_events):
        gateway.rejected_currencies.add("EUR")

        result = await intent_service.create_payment_intent(
            ORG_ID, make_request(currency="EUR", discount_code="SAVE10")
        )

        assert isinstance(result, CurrencyFallback)
        assert result.base_currency == "GBP"
        assert result.requested_currency == "EUR"
        assert dispatcher.calls == []
        assert "currency_fallback" in payment_events.types()

    async def test_base_currency_rejected_is_gateway_error(self, intent_service, gateway):
        gateway.rejected_currencies.add("GBP")
        with pytest.raises(PaymentGatewayError) as exc:
            await intent_service.create_payment_intent(ORG_ID, make_request())
        assert exc.value.status_code == 502


async def test_gateway_error_is_recorded(intent_service, gateway, payment_events):
    gateway.error = GatewayError("Something broke", code="api_error")

    with pytest.raises(PaymentGatewayError) as exc:
        await intent_service.create_payment_intent(ORG_ID, make_request())

    assert exc.value.internal_code == "api_error"
    assert exc.value.message == "Failed to create payment. Please try again."
    event = payment_events.events[-1]
    assert event.type == "checkout_error"
    assert event.severity == "critical"
    assert event.error_code == "api_error"


class TestQuoteVersusFulfilment:

    async def test_capacity_is_advisory_and_oversell_is_recorded(
        self, intent_service, order_service, event, ticket_a, payment_events
    ):
        ticket_a.capacity = 10
        ticket_a.sold = 9
        request = make_request([CartLine(ticket_type_id="tt-a", qty=1)])

        # Dos compradores cotizan el último ticket antes de que ninguno pague
        first = await intent_service.create_payment_intent(ORG_ID, request)
        second = await intent_service.create_payment_intent(ORG_ID, request)
        assert first.payment_intent_id != second.payment_intent_id
        assert ticket_a.sold == 9

        for quote in (first, second):
            result = await order_service.create_order(
                ORG_ID,
                OrderEvent.from_record(event),
                request.items,
                request.customer,
                OrderPayment(method="stripe", reference=quote.payment_intent_id, total_charged=quote.subtotal),
            )
            assert result.created
            assert len(result.tickets) == 1

        assert ticket_a.sold == 11
        oversell = [e for e in payment_events.events if e.type == "inventory_oversell"]
        assert len(oversell) == 1
        assert oversell[0].severity == "critical"
        assert oversell[0].metadata["sold"] == 11
        assert oversell[0].metadata["capacity"] == 10
