from decimal import Decimal

import pytest

from app.core.config import settings
from services.checkout.models.domain import EventRecord, VatSettings
from services.checkout.services.pricing import (
    calculate_application_fee,
    calculate_checkout_vat,
    calculate_vat,
    format_price,
    from_smallest_unit,
    get_currency_symbol,
    get_discount_amount,
    get_payment_error_message,
    get_plan,
    resolve_vat_settings,
    to_smallest_unit,
)


class TestSmallestUnit:

    def test_to_smallest_unit(self):
        assert to_smallest_unit(Decimal("26.50")) == 2650
        assert to_smallest_unit("0.01") == 1
        assert to_smallest_unit(10) == 1000

    def test_half_up_rounding(self):
        assert to_smallest_unit(Decimal("10.005")) == 1001

    def test_from_smallest_unit(self):
        assert from_smallest_unit(2650) == Decimal("26.50")
        assert from_smallest_unit(1) == Decimal("0.01")

    def test_round_trip_within_one_unit(self):
        for pounds in ["0.10", "9.99", "85.50", "102.60", "1234.56"]:
            amount = Decimal(pounds)
            assert abs(from_smallest_unit(to_smallest_unit(amount)) - amount) <= Decimal("0.01")


class TestFormatting:

    def test_format_price_whole_number(self):
        assert format_price(26, "GBP") == "£26"

    def test_format_price_with_pence(self):
        assert format_price("26.5", "EUR") == "€26.50"

    def test_unknown_currency_symbol_is_code(self):
        assert get_currency_symbol("sek") == "SEK"


class TestVat:

    def test_inclusive_extracts_vat(self):
        result = calculate_vat(Decimal("120"), Decimal("20"), inclusive=True)
        assert result.net == Decimal("100.00")
        assert result.vat == Decimal("20.00")
        assert result.gross == Decimal("120")

    def test_exclusive_adds_vat(self):
        result = calculate_vat(Decimal("100"), Decimal("20"), inclusive=False)
        assert result.vat == Decimal("20.00")
        assert result.gross == Decimal("120.00")

    @pytest.mark.parametrize("amount", ["85.50", "9.99", "0.01", "333.33"])
    def test_inclusive_net_plus_vat_equals_gross(self, amount):
        result = calculate_vat(Decimal(amount), Decimal("20"), inclusive=True)
        assert result.net + result.vat == result.gross

    def test_zero_rate(self):
        result = calculate_vat(Decimal("50"), Decimal("0"), inclusive=False)
        assert result.vat == Decimal("0")
        assert result.gross == Decimal("50")

    def test_checkout_vat_none_when_not_registered(self):
        assert calculate_checkout_vat(Decimal("50"), VatSettings(vat_registered=False)) is None
        assert calculate_checkout_vat(Decimal("50"), None) is None


class TestResolveVatSettings:

    org_vat = VatSettings(vat_registered=True, vat_rate=Decimal("20"), prices_include_vat=True)

    def test_event_registered_overrides_org(self):
        event = EventRecord(
            id="e", org_id="o", name="E", vat_registered=True,
            vat_rate=Decimal("10"), vat_prices_include=False,
        )
        resolved = resolve_vat_settings(event, self.org_vat)
        assert resolved.vat_rate == Decimal("10")
        assert resolved.prices_include_vat is False

    def test_event_explicitly_unregistered_disables_vat(self):
        event = EventRecord(id="e", org_id="o", name="E", vat_registered=False)
        assert resolve_vat_settings(event, self.org_vat) is None

    def test_event_unset_falls_back_to_org(self):
        event = EventRecord(id="e", org_id="o", name="E")
        assert resolve_vat_settings(event, self.org_vat) is self.org_vat

    def test_no_vat_anywhere(self):
        event = EventRecord(id="e", org_id="o", name="E")
        assert resolve_vat_settings(event, None) is None


class TestDiscountAmount:

    def test_percentage(self):
        assert get_discount_amount(Decimal("95"), "percentage", Decimal("10")) == Decimal("9.50")

    def test_fixed_is_capped_at_subtotal(self):
        assert get_discount_amount(Decimal("95"), "fixed", Decimal("100")) == Decimal("95")

    def test_fixed(self):
        assert get_discount_amount(Decimal("95"), "fixed", Decimal("10")) == Decimal("10.00")

    def test_non_positive_value(self):
        assert get_discount_amount(Decimal("95"), "fixed", Decimal("-5")) == Decimal("0.00")
        assert get_discount_amount(Decimal("0"), "percentage", Decimal("50")) == Decimal("0.00")

    def test_always_within_subtotal(self):
        for subtotal in ["0.01", "10", "95", "250.75"]:
            for discount_type, value in [("percentage", "150"), ("percentage", "33"), ("fixed", "1000")]:
                amount = get_discount_amount(Decimal(subtotal), discount_type, Decimal(value))
                assert Decimal("0") <= amount <= Decimal(subtotal)


class TestPlatformFee:

    def test_percentage_fee(self):
        assert calculate_application_fee(10000, Decimal("3.5"), 30) == 350

    def test_minimum_fee(self):
        assert calculate_application_fee(500, Decimal("3.5"), 30) == 30

    def test_fee_never_exceeds_charge(self):
        assert calculate_application_fee(20, Decimal("3.5"), 30) == 20

    def test_zero_amount(self):
        assert calculate_application_fee(0, Decimal("3.5"), 30) == 0

    def test_default_plan_is_starter(self):
        assert get_plan(None).id == "starter"

    def test_known_plan(self):
        assert get_plan("pro").fee_percent == Decimal("2")

    def test_unknown_plan_uses_platform_defaults(self):
        plan = get_plan("enterprise-legacy")
        assert plan.fee_percent == Decimal(str(settings.DEFAULT_PLATFORM_FEE_PERCENT))
        assert plan.min_fee == settings.MIN_PLATFORM_FEE


class TestPaymentErrorMessages:

    def test_insufficient_funds(self):
        message = get_payment_error_message("card_declined", "insufficient_funds")
        assert message.startswith("Insufficient funds")

    def test_expired_card(self):
        assert "expired" in get_payment_error_message("expired_card")

    def test_incorrect_cvc(self):
        assert get_payment_error_message("incorrect_cvc") == "Your card's security code is incorrect."

    def test_unknown_decline_code_is_generic(self):
        assert get_payment_error_message("card_declined", "something_new").startswith("Your card was declined")

    def test_falls_back_to_message(self):
        assert get_payment_error_message(None, None, "Bank says no") == "Bank says no"
