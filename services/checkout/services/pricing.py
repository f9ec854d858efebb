"""Utilidades de precios: unidades de moneda, IVA, descuentos y comisión de plataforma

Todos los montos en unidad mayor (libras, no peniques) salvo donde se indica.
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union

from app.core.config import settings
from services.checkout.models.domain import EventRecord, PlatformPlan, VatSettings

Number = Union[Decimal, int, float, str]

CENT = Decimal("0.01")
HUNDRED = Decimal("100")

DEFAULT_VAT_RATE = Decimal("20")

# fee_percent / min_fee = application_fee que se envía a Stripe
PLANS = {
    "starter": PlatformPlan(id="starter", name="Starter", fee_percent=Decimal("3.5"), min_fee=30),
    "pro": PlatformPlan(id="pro", name="Pro", fee_percent=Decimal("2"), min_fee=10),
}
DEFAULT_PLAN_ID = "starter"

CURRENCY_SYMBOLS = {
    "GBP": "£",
    "EUR": "€",
    "USD": "$",
}


def to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_money(amount: Number) -> Decimal:
    """Redondear al centavo más cercano (half-up)"""
    return to_decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


def to_smallest_unit(amount: Number) -> int:
    """26.50 -> 2650"""
    return int((to_decimal(amount) * HUNDRED).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_smallest_unit(amount: int) -> Decimal:
    """2650 -> 26.50"""
    return (Decimal(amount) / HUNDRED).quantize(CENT)


def get_currency_symbol(currency: str) -> str:
    return CURRENCY_SYMBOLS.get(currency.upper(), currency.upper())


def format_price(price: Number, currency: Optional[str] = None) -> str:
    """Formatear precio para mostrar ("£26" o "£26.50")"""
    symbol = get_currency_symbol(currency) if currency else ""
    value = round_money(price)
    if value == value.to_integral_value():
        display = str(int(value))
    else:
        display = f"{value:.2f}"
    return f"{symbol}{display}"


# ── IVA ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class VatBreakdown:
    net: Decimal
    vat: Decimal
    gross: Decimal  # Lo que paga el cliente


def calculate_vat(amount: Number, rate: Number, inclusive: bool) -> VatBreakdown:
    """Calcular IVA de un monto

    inclusive=True: el monto ya incluye IVA (se extrae: net = gross / (1 + rate/100)).
    inclusive=False: el monto es neto y el IVA se suma encima.
    """
    amount = to_decimal(amount)
    rate = to_decimal(rate)
    if rate <= 0 or amount <= 0:
        return VatBreakdown(net=amount, vat=Decimal("0"), gross=amount)

    if inclusive:
        gross = amount
        net = round_money(gross / (1 + rate / HUNDRED))
        vat = round_money(gross - net)
        return VatBreakdown(net=net, vat=vat, gross=gross)

    net = amount
    vat = round_money(net * rate / HUNDRED)
    gross = round_money(net + vat)
    return VatBreakdown(net=net, vat=vat, gross=gross)


def calculate_checkout_vat(subtotal: Number, vat_settings: Optional[VatSettings]) -> Optional[VatBreakdown]:
    """Breakdown de IVA para el checkout; None si no hay IVA que mostrar"""
    if not vat_settings or not vat_settings.vat_registered or not vat_settings.vat_rate:
        return None
    return calculate_vat(subtotal, vat_settings.vat_rate, vat_settings.prices_include_vat)


def resolve_vat_settings(event: EventRecord, org_vat: Optional[VatSettings]) -> Optional[VatSettings]:
    """Política ternaria evento > organización

    - Evento registrado explícitamente: tasa/inclusividad del evento
    - Evento explícitamente no registrado: sin IVA
    - Flag del evento sin definir: configuración de la organización
    """
    if event.vat_registered is True:
        rate = to_decimal(event.vat_rate) if event.vat_rate is not None else DEFAULT_VAT_RATE
        if rate <= 0:
            return None
        return VatSettings(
            vat_registered=True,
            vat_number=event.vat_number or "",
            vat_rate=rate,
            prices_include_vat=True if event.vat_prices_include is None else event.vat_prices_include,
        )
    if event.vat_registered is False:
        return None
    if org_vat and org_vat.vat_registered and org_vat.vat_rate > 0:
        return org_vat
    return None


# ── Descuentos ────────────────────────────────────────────────────


def get_discount_amount(subtotal: Number, discount_type: str, value: Number) -> Decimal:
    """Monto de descuento, siempre dentro de [0, subtotal]"""
    subtotal = to_decimal(subtotal)
    value = to_decimal(value)
    if subtotal <= 0 or value <= 0:
        return Decimal("0.00")

    if discount_type == "percentage":
        amount = round_money(subtotal * value / HUNDRED)
    else:
        amount = round_money(min(value, subtotal))
    return min(max(amount, Decimal("0.00")), subtotal)


# ── Comisión de plataforma ────────────────────────────────────────


def get_plan(plan_id: Optional[str]) -> PlatformPlan:
    """Sin plan asignado -> starter; plan desconocido -> comisión por defecto de la plataforma"""
    if not plan_id:
        return PLANS[DEFAULT_PLAN_ID]
    if plan_id in PLANS:
        return PLANS[plan_id]
    return PlatformPlan(
        id=plan_id,
        name=plan_id,
        fee_percent=to_decimal(settings.DEFAULT_PLATFORM_FEE_PERCENT),
        min_fee=settings.MIN_PLATFORM_FEE,
    )


def calculate_application_fee(amount_in_smallest_unit: int, fee_percent: Number, min_fee: int) -> int:
    """Comisión en unidad mínima: max(round(amount * pct/100), min_fee), nunca mayor al cargo"""
    if amount_in_smallest_unit <= 0:
        return 0
    fee = int((Decimal(amount_in_smallest_unit) * to_decimal(fee_percent) / HUNDRED).quantize(
        Decimal("1"), rounding=ROUND_HALF_UP
    ))
    return min(max(fee, min_fee), amount_in_smallest_unit)


# ── Mensajes de error de pago ─────────────────────────────────────

_DECLINE_MESSAGES = {
    "insufficient_funds": "Insufficient funds. Please use a different card or payment method.",
    "lost_card": "This card cannot be used. Please try a different card.",
    "stolen_card": "This card cannot be used. Please try a different card.",
    "card_not_supported": "This card type is not supported. Please try a different card.",
    "do_not_honor": "Your bank declined this transaction. Please contact your bank or try a different card.",
    "try_again_later": "Your bank couldn't process this right now. Please try again in a moment.",
    "currency_not_supported": "Your card doesn't support this currency. Please try a different card.",
    "duplicate_transaction": "A duplicate transaction was detected. Please wait a moment before trying again.",
    "fraudulent": "This transaction was declined. Please try a different card.",
    "withdrawal_count_limit_exceeded": "You've exceeded your card's transaction limit. Please try a different card.",
}

_CODE_MESSAGES = {
    "incomplete_number": "Your card number is incomplete.",
    "invalid_number": "Your card number is invalid. Please check and try again.",
    "incorrect_number": "Your card number is invalid. Please check and try again.",
    "incomplete_expiry": "Your card's expiry date is incomplete.",
    "invalid_expiry_month": "Your card's expiry date is incomplete.",
    "invalid_expiry_year": "Your card's expiry date is incomplete.",
    "incorrect_cvc": "Your card's security code is incorrect.",
    "invalid_cvc": "Your card's security code is incorrect.",
    "incomplete_cvc": "Your card's security code is incorrect.",
    "incorrect_zip": "Your postal code doesn't match your card. Please check and try again.",
    "postal_code_invalid": "Your postal code doesn't match your card. Please check and try again.",
    "processing_error": "An error occurred while processing your card. Please try again.",
    "rate_limit": "Too many attempts. Please wait a moment and try again.",
}

_GENERIC_DECLINE = "Your card was declined. Please contact your bank or try a different card."


def get_payment_error_message(
    code: Optional[str] = None,
    decline_code: Optional[str] = None,
    message: Optional[str] = None,
) -> str:
    """Traducir códigos de Stripe a mensajes accionables para el comprador"""
    if code == "expired_card" or decline_code == "expired_card":
        return "Your card has expired. Please use a different card."
    if code in _CODE_MESSAGES and code not in ("processing_error", "rate_limit"):
        return _CODE_MESSAGES[code]
    if code == "card_declined" or decline_code:
        return _DECLINE_MESSAGES.get(decline_code, _GENERIC_DECLINE)
    if code in _CODE_MESSAGES:
        return _CODE_MESSAGES[code]
    return message or "Payment failed. Please try again."
