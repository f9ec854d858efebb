"""Gateway de pagos (Stripe PaymentIntents con Stripe Connect)

Con cuenta conectada: cargo directo en la cuenta conectada con
application_fee_amount (la cuenta conectada es merchant of record).
Sin cuenta conectada: cargo en la cuenta de la plataforma, sin comisión.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from functools import partial
from typing import Callable, Dict, Optional, Tuple
import asyncio
import logging
import time

import stripe

from app.core.config import settings

logger = logging.getLogger(__name__)


@dataclass
class GatewayIntent:
    id: str
    client_secret: Optional[str]
    amount: int
    currency: str
    status: str = "requires_payment_method"
    metadata: Dict[str, str] = field(default_factory=dict)
    last_payment_error: Optional[Dict] = None


class GatewayError(Exception):
    """Rechazo del gateway con los códigos de Stripe para diagnóstico"""

    def __init__(self, message: str, code: Optional[str] = None, decline_code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.decline_code = decline_code


class GatewayCurrencyError(GatewayError):
    """La cuenta (o el método de pago) no acepta la moneda pedida"""
    pass


class PaymentGateway(ABC):

    @abstractmethod
    async def create_payment_intent(
        self,
        amount: int,
        currency: str,
        metadata: Dict[str, str],
        description: Optional[str] = None,
        receipt_email: Optional[str] = None,
        application_fee_amount: Optional[int] = None,
        connected_account: Optional[str] = None,
    ) -> GatewayIntent:
        ...

    @abstractmethod
    async def retrieve_payment_intent(
        self, payment_intent_id: str, connected_account: Optional[str] = None
    ) -> GatewayIntent:
        ...

    @abstractmethod
    async def account_accessible(self, account_id: str) -> bool:
        """True si la cuenta conectada existe y la plataforma tiene acceso"""
        ...


def _is_currency_error(error: stripe.StripeError) -> bool:
    param = getattr(error, "param", None) or ""
    code = getattr(error, "code", None) or ""
    message = (getattr(error, "user_message", None) or str(error) or "").lower()
    return param == "currency" or "currency" in code or "currency" in message


def _to_intent(intent) -> GatewayIntent:
    return GatewayIntent(
        id=intent["id"],
        client_secret=intent.get("client_secret"),
        amount=intent["amount"],
        currency=(intent.get("currency") or "").upper(),
        status=intent.get("status") or "",
        metadata=dict(intent.get("metadata") or {}),
        last_payment_error=dict(intent["last_payment_error"]) if intent.get("last_payment_error") else None,
    )


class StripeGateway(PaymentGateway):
    """Implementación con el SDK oficial de Stripe

    El SDK es síncrono; las llamadas se ejecutan en el thread pool.
    """

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key or settings.STRIPE_SECRET_KEY
        if not self.api_key:
            logger.warning("STRIPE_SECRET_KEY no configurado. Los pagos fallarán.")

    async def _call(self, func: Callable, **kwargs):
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, partial(func, api_key=self.api_key, **kwargs))

    async def create_payment_intent(
        self,
        amount: int,
        currency: str,
        metadata: Dict[str, str],
        description: Optional[str] = None,
        receipt_email: Optional[str] = None,
        application_fee_amount: Optional[int] = None,
        connected_account: Optional[str] = None,
    ) -> GatewayIntent:
        params = {
            "amount": amount,
            "currency": currency.lower(),
            "metadata": metadata,
            "automatic_payment_methods": {"enabled": True},
        }
        if description:
            params["description"] = description
        if receipt_email:
            params["receipt_email"] = receipt_email
        if connected_account:
            params["stripe_account"] = connected_account
            if application_fee_amount:
                params["application_fee_amount"] = application_fee_amount

        try:
            intent = await self._call(stripe.PaymentIntent.create, **params)
        except stripe.StripeError as e:
            code = getattr(e, "code", None)
            decline_code = getattr(e, "decline_code", None)
            logger.error(
                f"[STRIPE] Error creando PaymentIntent ({currency}, cuenta={connected_account or 'plataforma'}): "
                f"{type(e).__name__} {code} {e}"
            )
            if _is_currency_error(e):
                raise GatewayCurrencyError(str(e), code=code, decline_code=decline_code) from e
            raise GatewayError(str(e), code=code, decline_code=decline_code) from e

        logger.info(f"[STRIPE] PaymentIntent {intent['id']} creado: {amount} {currency.upper()}")
        return _to_intent(intent)

    async def retrieve_payment_intent(
        self, payment_intent_id: str, connected_account: Optional[str] = None
    ) -> GatewayIntent:
        kwargs = {"stripe_account": connected_account} if connected_account else {}
        try:
            intent = await self._call(stripe.PaymentIntent.retrieve, id=payment_intent_id, **kwargs)
        except stripe.StripeError as e:
            logger.error(f"[STRIPE] Error obteniendo PaymentIntent {payment_intent_id}: {e}")
            raise GatewayError(str(e), code=getattr(e, "code", None)) from e
        return _to_intent(intent)

    async def account_accessible(self, account_id: str) -> bool:
        try:
            await self._call(stripe.Account.retrieve, id=account_id)
            return True
        except stripe.StripeError as e:
            logger.warning(
                f"[STRIPE] Cuenta conectada {account_id} no accesible, se usará la cuenta de plataforma: {e}"
            )
            return False


class ConnectedAccountVerifier:
    """Cache de verificación de cuentas conectadas (positivos y negativos, TTL 5 min)"""

    def __init__(
        self,
        gateway: PaymentGateway,
        ttl_seconds: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.gateway = gateway
        self.ttl = ttl_seconds if ttl_seconds is not None else settings.CONNECTED_ACCOUNT_CACHE_TTL_SECONDS
        self.clock = clock
        self._cache: Dict[str, Tuple[Optional[str], float]] = {}

    async def verify(self, account_id: Optional[str]) -> Optional[str]:
        """ID de la cuenta si es utilizable, None si no existe o fue revocada"""
        if not account_id:
            return None

        cached = self._cache.get(account_id)
        now = self.clock()
        if cached and now < cached[1]:
            return cached[0]

        result = account_id if await self.gateway.account_accessible(account_id) else None
        self._cache[account_id] = (result, now + self.ttl)
        return result

    def invalidate(self, account_id: Optional[str] = None) -> None:
        if account_id is None:
            self._cache.clear()
        else:
            self._cache.pop(account_id, None)
