"""Validación de códigos de descuento"""
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Optional
import logging

from services.checkout.models.domain import DiscountRecord
from services.checkout.services.pricing import Number, get_currency_symbol, to_decimal
from services.checkout.stores.interfaces import DiscountStore

logger = logging.getLogger(__name__)

INVALID_CODE = "Invalid discount code"
NOT_YET_ACTIVE = "This discount code is not yet active"
EXPIRED = "This discount code has expired"
USAGE_LIMIT_REACHED = "This discount code has reached its usage limit"
NOT_VALID_FOR_EVENT = "This discount code is not valid for this event"


@dataclass
class DiscountValidation:
    valid: bool
    discount: Optional[DiscountRecord] = None
    error: Optional[str] = None

    def to_response(self) -> Dict:
        if not self.valid:
            return {"valid": False, "error": self.error}
        return {
            "valid": True,
            "discount": {
                "id": self.discount.id,
                "code": self.discount.code,
                "type": self.discount.type,
                "value": self.discount.value,
            },
        }


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def check_discount(
    discount: DiscountRecord,
    event_id: Optional[str] = None,
    subtotal: Optional[Number] = None,
    now: Optional[datetime] = None,
    currency: str = "GBP",
) -> Optional[str]:
    """Primer chequeo que falla (ventana, uso, evento, mínimo) o None si es válido"""
    now = now or datetime.now(timezone.utc)

    if discount.starts_at and _aware(discount.starts_at) > now:
        return NOT_YET_ACTIVE
    if discount.expires_at and _aware(discount.expires_at) < now:
        return EXPIRED

    if discount.max_uses is not None and discount.used_count >= discount.max_uses:
        return USAGE_LIMIT_REACHED

    if discount.applicable_event_ids and event_id and event_id not in discount.applicable_event_ids:
        return NOT_VALID_FOR_EVENT

    if discount.min_order_amount is not None and subtotal is not None:
        if to_decimal(subtotal) < discount.min_order_amount:
            minimum = to_decimal(discount.min_order_amount).quantize(Decimal("0.01"))
            return f"Minimum order of {get_currency_symbol(currency)}{minimum} required"

    return None


async def validate_discount(
    store: DiscountStore,
    org_id: str,
    code: Optional[str],
    event_id: Optional[str] = None,
    subtotal: Optional[Number] = None,
    now: Optional[datetime] = None,
    currency: str = "GBP",
) -> DiscountValidation:
    """Buscar el código (case-insensitive, solo activos) y validarlo"""
    if not code or not code.strip():
        return DiscountValidation(valid=False, error="Please enter a discount code")

    discount = await store.fetch_discount(org_id, code.strip())
    if discount is None:
        return DiscountValidation(valid=False, error=INVALID_CODE)

    error = check_discount(discount, event_id=event_id, subtotal=subtotal, now=now, currency=currency)
    if error:
        logger.info(f"[CHECKOUT] Código de descuento {discount.code} rechazado: {error}")
        return DiscountValidation(valid=False, discount=discount, error=error)

    return DiscountValidation(valid=True, discount=discount)
