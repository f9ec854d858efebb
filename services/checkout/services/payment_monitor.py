"""Monitoreo de pagos: eventos de auditoría en payment_events

log() nunca lanza excepciones; si la inserción falla queda solo en el log.
"""
from typing import Any, Dict, Optional
import logging

from services.checkout.models.domain import PaymentEventRecord
from services.checkout.stores.interfaces import PaymentEventStore

logger = logging.getLogger(__name__)

PAYMENT_FAILED = "payment_failed"
PAYMENT_SUCCEEDED = "payment_succeeded"
CHECKOUT_ERROR = "checkout_error"
CHECKOUT_VALIDATION = "checkout_validation"
CONNECT_FALLBACK = "connect_fallback"
RATE_LIMIT_HIT = "rate_limit_hit"
INVENTORY_OVERSELL = "inventory_oversell"
CURRENCY_FALLBACK = "currency_fallback"
EMAIL_FAILED = "email_failed"

# Rechazos de tarjeta normales: warning, no incidente
CARD_DECLINE_CODES = {"card_declined", "insufficient_funds", "expired_card"}


def derive_severity(event_type: str, error_code: Optional[str] = None) -> str:
    if event_type in (PAYMENT_SUCCEEDED, CHECKOUT_VALIDATION):
        return "info"
    if event_type == PAYMENT_FAILED:
        return "warning" if error_code in CARD_DECLINE_CODES else "critical"
    if event_type in (CHECKOUT_ERROR, INVENTORY_OVERSELL):
        return "critical"
    if event_type in (CONNECT_FALLBACK, RATE_LIMIT_HIT, CURRENCY_FALLBACK, EMAIL_FAILED):
        return "warning"
    return "info"


class PaymentMonitor:

    def __init__(self, store: Optional[PaymentEventStore]):
        self.store = store

    async def log(
        self,
        org_id: str,
        event_type: str,
        severity: Optional[str] = None,
        event_id: Optional[str] = None,
        stripe_payment_intent_id: Optional[str] = None,
        stripe_account_id: Optional[str] = None,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
        customer_email: Optional[str] = None,
        ip_address: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        try:
            severity = severity or derive_severity(event_type, error_code)
            if severity == "critical":
                logger.critical(
                    f"[PAYMENTS] {event_type} org={org_id} event={event_id} "
                    f"code={error_code} error={error_message}"
                )

            if self.store is None:
                logger.error(f"[PAYMENTS] Store no disponible, evento no registrado: {event_type}")
                return

            await self.store.insert_payment_event(PaymentEventRecord(
                org_id=org_id,
                type=event_type,
                severity=severity,
                event_id=event_id,
                stripe_payment_intent_id=stripe_payment_intent_id,
                stripe_account_id=stripe_account_id,
                error_code=error_code,
                error_message=error_message,
                customer_email=customer_email,
                ip_address=ip_address,
                metadata=metadata or {},
            ))
        except Exception as e:
            logger.error(f"[PAYMENTS] Error registrando evento {event_type}: {e}")
