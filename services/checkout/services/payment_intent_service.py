"""Pricing & Intent Builder: cotización del carrito y creación del PaymentIntent

Orden de pasos:
 1. Tipos de ticket (existencia, estado, máximo por orden)
 2. Capacidad (consultiva, no reserva) y release secuencial
 3. Cuenta conectada (evento > organización > plataforma)
 4. Código de descuento
 5. IVA (evento > organización)
 6. Conversión de moneda (solo con tasas frescas; si no, moneda base)
 7. Comisión de plataforma (solo con cuenta conectada)
 8. Guard de monto > 0
 9. PaymentIntent con metadata tipada
10. Rechazo de moneda tras conversión -> CurrencyFallback
11. Incremento best-effort del contador de descuento
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Tuple, Union
import logging

from services.checkout.models.checkout import (
    CurrencyFallback,
    DiscountSummary,
    PaymentIntentMetadata,
    PaymentIntentRequest,
    PaymentIntentResponse,
    VatSummary,
)
from services.checkout.models.domain import (
    DiscountRecord,
    EventRecord,
    ReleaseSettings,
    TicketTypeRecord,
    VatSettings,
)
from services.checkout.models.errors import (
    CheckoutError,
    CheckoutStoreError,
    CheckoutValidationError,
    DiscountInvalidError,
    ErrorCode,
    InventoryConflictError,
    PaymentGatewayError,
    SequentialReleaseError,
)
from services.checkout.services import payment_monitor
from services.checkout.services.discount_service import validate_discount
from services.checkout.services.dispatcher import BackgroundDispatcher
from services.checkout.services.exchange_rates import (
    SUPPORTED_CURRENCIES,
    ExchangeRateCache,
    are_rates_fresh_for_checkout,
    convert_currency,
    get_exchange_rate,
    utc_now,
)
from services.checkout.services.payment_monitor import PaymentMonitor
from services.checkout.services.pricing import (
    VatBreakdown,
    calculate_application_fee,
    calculate_checkout_vat,
    get_discount_amount,
    get_plan,
    resolve_vat_settings,
    round_money,
    to_decimal,
    to_smallest_unit,
)
from services.checkout.services.stripe_service import (
    ConnectedAccountVerifier,
    GatewayCurrencyError,
    GatewayError,
    PaymentGateway,
)
from services.checkout.services.ticket_visibility import validate_sequential_purchase
from services.checkout.stores.interfaces import (
    DiscountStore,
    EventStore,
    SettingsStore,
    TicketTypeStore,
    event_settings_key,
    plan_key,
    stripe_account_key,
    vat_key,
)
from services.checkout.tasks.checkout_tasks import increment_discount_usage_task

logger = logging.getLogger(__name__)


@dataclass
class Quote:
    """Resultado de los pasos 1-8 (sin efectos secundarios)"""
    subtotal: Decimal
    discount: Optional[DiscountRecord]
    discount_amount: Decimal
    vat: Optional[VatBreakdown]
    vat_settings: Optional[VatSettings]
    total: Decimal
    currency: str
    base_currency: str
    exchange_rate: Optional[Decimal] = None
    base_subtotal: Optional[Decimal] = None
    base_total: Optional[Decimal] = None

    @property
    def converted(self) -> bool:
        return self.exchange_rate is not None


class PaymentIntentService:

    def __init__(
        self,
        events: EventStore,
        ticket_types: TicketTypeStore,
        discounts: DiscountStore,
        settings_store: SettingsStore,
        gateway: PaymentGateway,
        account_verifier: ConnectedAccountVerifier,
        rates_cache: ExchangeRateCache,
        monitor: PaymentMonitor,
        dispatcher: BackgroundDispatcher,
        clock=utc_now,
    ):
        self.events = events
        self.ticket_types = ticket_types
        self.discounts = discounts
        self.settings_store = settings_store
        self.gateway = gateway
        self.account_verifier = account_verifier
        self.rates_cache = rates_cache
        self.monitor = monitor
        self.dispatcher = dispatcher
        self.clock = clock

    async def create_payment_intent(
        self,
        org_id: str,
        request: PaymentIntentRequest,
        ip_address: Optional[str] = None,
    ) -> Union[PaymentIntentResponse, CurrencyFallback]:
        try:
            return await self._create(org_id, request, ip_address)
        except CheckoutError as e:
            await self.monitor.log(
                org_id,
                payment_monitor.CHECKOUT_VALIDATION if e.status_code < 500 else payment_monitor.CHECKOUT_ERROR,
                event_id=request.event_id,
                error_code=getattr(e, "internal_code", None) or e.code.value,
                error_message=e.message,
                customer_email=request.customer.email_lower,
                ip_address=ip_address,
            )
            raise

    async def _create(
        self,
        org_id: str,
        request: PaymentIntentRequest,
        ip_address: Optional[str],
    ) -> Union[PaymentIntentResponse, CurrencyFallback]:
        event = await self._read(self.events.get_event(org_id, request.event_id), "event")
        if event is None:
            raise CheckoutValidationError(ErrorCode.EVENT_NOT_FOUND, "Event not found", status_code=404)
        if event.payment_method != "stripe":
            raise CheckoutValidationError(ErrorCode.INVALID_REQUEST, "This event does not use Stripe payments")

        lines = await self.validate_cart(org_id, event, request)
        account_id = await self.resolve_account(org_id, event, request, ip_address)
        quote = await self.build_quote(org_id, event, request, lines)

        amount = to_smallest_unit(quote.total)
        if amount <= 0:
            raise CheckoutValidationError(ErrorCode.AMOUNT_TOO_LOW, "Order total must be greater than zero")

        application_fee = 0
        if account_id:
            application_fee = await self.calculate_fee(org_id, event, amount)

        metadata = self._build_metadata(org_id, event, request, quote)

        try:
            intent = await self.gateway.create_payment_intent(
                amount=amount,
                currency=quote.currency,
                metadata=metadata.to_stripe_metadata(),
                description=f"{event.name} tickets",
                receipt_email=request.customer.email_lower,
                application_fee_amount=application_fee if account_id else None,
                connected_account=account_id,
            )
        except GatewayCurrencyError as e:
            if not quote.converted:
                raise PaymentGatewayError(internal_code=e.code or "currency_not_supported") from e
            logger.warning(
                f"[CHECKOUT] {quote.currency} rechazada por la cuenta {account_id or 'plataforma'}, "
                f"se pide reintentar en {quote.base_currency}"
            )
            await self.monitor.log(
                org_id,
                payment_monitor.CURRENCY_FALLBACK,
                event_id=event.id,
                stripe_account_id=account_id,
                error_code=e.code,
                error_message=e.message,
                customer_email=request.customer.email_lower,
                ip_address=ip_address,
                metadata={"requested_currency": quote.currency, "base_currency": quote.base_currency},
            )
            return CurrencyFallback(base_currency=quote.base_currency, requested_currency=quote.currency)
        except GatewayError as e:
            raise PaymentGatewayError(internal_code=e.code or "gateway_error") from e

        if quote.discount is not None:
            self.dispatcher.dispatch(increment_discount_usage_task, discount_id=quote.discount.id)

        logger.info(
            f"[CHECKOUT] PaymentIntent {intent.id} para evento {event.id}: {amount} {quote.currency} "
            f"(fee={application_fee}, cuenta={account_id or 'plataforma'})"
        )

        return PaymentIntentResponse(
            client_secret=intent.client_secret,
            payment_intent_id=intent.id,
            stripe_account_id=account_id,
            amount=amount,
            currency=quote.currency,
            application_fee=application_fee,
            subtotal=quote.subtotal,
            discount=DiscountSummary(
                code=quote.discount.code,
                type=quote.discount.type,
                value=quote.discount.value,
                amount=quote.discount_amount,
            ) if quote.discount else None,
            vat=VatSummary(
                amount=quote.vat.vat,
                rate=quote.vat_settings.vat_rate,
                inclusive=quote.vat_settings.prices_include_vat,
            ) if quote.vat else None,
            exchange_rate=quote.exchange_rate,
            base_currency=quote.base_currency if quote.converted else None,
            base_subtotal=quote.base_subtotal,
            base_total=quote.base_total,
        )

    # ── Pasos 1-2 ────────────────────────────────────────────────

    async def validate_cart(
        self,
        org_id: str,
        event: EventRecord,
        request: PaymentIntentRequest,
    ) -> List[Tuple[TicketTypeRecord, int]]:
        if not request.items:
            raise CheckoutValidationError(ErrorCode.INVALID_REQUEST, "Cart is empty")

        ids = list(dict.fromkeys(item.ticket_type_id for item in request.items))
        records = await self._read(self.ticket_types.fetch_ticket_types(org_id, ids), "ticket types")
        by_id = {tt.id: tt for tt in records if tt.event_id == event.id}
        # Límites por tipo de ticket: varias líneas del mismo tipo suman
        requested: Dict[str, int] = {}
        for item in request.items:
            requested[item.ticket_type_id] = requested.get(item.ticket_type_id, 0) + item.qty

        release: Optional[ReleaseSettings] = None
        release_loaded = False
        all_event_types: List[TicketTypeRecord] = []

        lines = []
        for item in request.items:
            tt = by_id.get(item.ticket_type_id)
            if tt is None:
                raise CheckoutValidationError(
                    ErrorCode.TICKET_TYPE_NOT_FOUND, f"Ticket type {item.ticket_type_id} not found"
                )
            if tt.status != "active":
                raise CheckoutValidationError(ErrorCode.TICKET_TYPE_UNAVAILABLE, f'"{tt.name}" is not available')
            if tt.max_per_order and requested[tt.id] > tt.max_per_order:
                raise CheckoutValidationError(
                    ErrorCode.MAX_PER_ORDER_EXCEEDED,
                    f'Maximum {tt.max_per_order} tickets per order for "{tt.name}"',
                )
            if tt.capacity is not None and tt.sold + requested[tt.id] > tt.capacity:
                raise InventoryConflictError(tt.id, tt.name, tt.remaining)

            if not release_loaded:
                data = await self._read(
                    self.settings_store.get_setting(event_settings_key(org_id, event.id)), "event settings"
                )
                release = ReleaseSettings.from_dict(data)
                if release is not None:
                    all_event_types = await self._read(
                        self.ticket_types.fetch_event_ticket_types(org_id, event.id), "ticket types"
                    )
                release_loaded = True

            error = validate_sequential_purchase(tt, all_event_types, release)
            if error:
                raise SequentialReleaseError(error)

            lines.append((tt, item.qty))
        return lines

    # ── Paso 3 ───────────────────────────────────────────────────

    async def resolve_account(
        self,
        org_id: str,
        event: EventRecord,
        request: PaymentIntentRequest,
        ip_address: Optional[str] = None,
    ) -> Optional[str]:
        """Cuenta conectada utilizable, o None para cobrar en la cuenta de plataforma"""
        candidates = []
        if event.stripe_account_id:
            candidates.append(event.stripe_account_id)
        org_account = await self._read(self.settings_store.get_setting(stripe_account_key(org_id)), "account settings")
        if org_account and org_account.get("account_id"):
            candidates.append(org_account["account_id"])

        for candidate in candidates:
            verified = await self.account_verifier.verify(candidate)
            if verified:
                return verified

        if candidates:
            logger.warning(f"[CHECKOUT] Ninguna cuenta conectada utilizable para org {org_id}, usando plataforma")
            await self.monitor.log(
                org_id,
                payment_monitor.CONNECT_FALLBACK,
                event_id=event.id,
                stripe_account_id=candidates[0],
                error_message="Connected account not accessible, charging on platform account",
                customer_email=request.customer.email_lower,
                ip_address=ip_address,
            )
        return None

    # ── Pasos 4-6 ────────────────────────────────────────────────

    async def build_quote(
        self,
        org_id: str,
        event: EventRecord,
        request: PaymentIntentRequest,
        lines: List[Tuple[TicketTypeRecord, int]],
    ) -> Quote:
        base_currency = (event.currency or "GBP").upper()
        subtotal = round_money(sum((tt.price * qty for tt, qty in lines), Decimal("0")))

        discount = None
        discount_amount = Decimal("0.00")
        if request.discount_code and request.discount_code.strip():
            validation = await self._read(
                validate_discount(
                    self.discounts,
                    org_id,
                    request.discount_code,
                    event_id=event.id,
                    subtotal=subtotal,
                    now=self.clock(),
                    currency=base_currency,
                ),
                "discount",
            )
            if not validation.valid:
                raise DiscountInvalidError(validation.error)
            discount = validation.discount
            discount_amount = get_discount_amount(subtotal, discount.type, discount.value)

        after_discount = subtotal - discount_amount

        org_vat_data = await self._read(self.settings_store.get_setting(vat_key(org_id)), "VAT settings")
        org_vat = VatSettings.from_dict(org_vat_data) if org_vat_data else None
        vat_settings = resolve_vat_settings(event, org_vat)
        vat = calculate_checkout_vat(after_discount, vat_settings)
        total = vat.gross if vat else after_discount

        quote = Quote(
            subtotal=subtotal,
            discount=discount,
            discount_amount=discount_amount,
            vat=vat,
            vat_settings=vat_settings if vat else None,
            total=total,
            currency=base_currency,
            base_currency=base_currency,
        )

        presentment = (request.currency or base_currency).upper()
        if presentment != base_currency:
            self._apply_conversion(quote, presentment, after_discount, await self.rates_cache.get())
        return quote

    def _apply_conversion(self, quote: Quote, presentment: str, after_discount: Decimal, rates) -> None:
        """Convertir el subtotal post-descuento y recalcular el IVA; sin tasas frescas no hace nada"""
        if presentment not in SUPPORTED_CURRENCIES:
            logger.info(f"[FX] Moneda {presentment} no soportada, se cobra en {quote.base_currency}")
            return
        if not are_rates_fresh_for_checkout(rates, now=self.clock()):
            logger.warning(f"[FX] Sin tipos de cambio frescos, se cobra en {quote.base_currency}")
            return
        rate = get_exchange_rate(quote.base_currency, presentment, rates)
        if rate is None:
            return

        converted = convert_currency(after_discount, quote.base_currency, presentment, rates)
        vat = calculate_checkout_vat(converted, quote.vat_settings) if quote.vat_settings else None

        quote.base_subtotal = after_discount
        quote.base_total = quote.total
        quote.vat = vat
        quote.total = vat.gross if vat else converted
        quote.currency = presentment
        quote.exchange_rate = rate

    # ── Paso 7 ───────────────────────────────────────────────────

    async def calculate_fee(self, org_id: str, event: EventRecord, amount: int) -> int:
        plan_data = await self._read(self.settings_store.get_setting(plan_key(org_id)), "plan settings")
        plan = get_plan((plan_data or {}).get("plan_id"))
        fee_percent = (
            to_decimal(event.platform_fee_percent)
            if event.platform_fee_percent is not None
            else plan.fee_percent
        )
        return calculate_application_fee(amount, fee_percent, plan.min_fee)

    # ── Paso 9 ───────────────────────────────────────────────────

    def _build_metadata(
        self,
        org_id: str,
        event: EventRecord,
        request: PaymentIntentRequest,
        quote: Quote,
    ) -> PaymentIntentMetadata:
        customer = request.customer
        metadata = PaymentIntentMetadata(
            event_id=event.id,
            event_slug=event.slug or "",
            org_id=org_id,
            customer_email=customer.email_lower,
            customer_first_name=customer.first_name,
            customer_last_name=customer.last_name,
            customer_phone=customer.phone or "",
            items=request.items,
            subtotal=quote.subtotal,
        )
        if quote.discount:
            metadata.discount_code = quote.discount.code
            metadata.discount_amount = quote.discount_amount
        if quote.vat:
            metadata.vat_amount = quote.vat.vat
            metadata.vat_rate = quote.vat_settings.vat_rate
            metadata.vat_inclusive = quote.vat_settings.prices_include_vat
        if quote.converted:
            metadata.presentment_currency = quote.currency
            metadata.base_currency = quote.base_currency
            metadata.exchange_rate = quote.exchange_rate
            metadata.base_subtotal = quote.base_subtotal
            metadata.base_total = quote.base_total
        return metadata

    async def _read(self, awaitable, what: str):
        """Errores de infraestructura del store -> CheckoutStoreError (mensaje genérico)"""
        try:
            return await awaitable
        except CheckoutError:
            raise
        except Exception as e:
            logger.error(f"[CHECKOUT] Error leyendo {what}: {e}", exc_info=True)
            raise CheckoutStoreError(f"Failed to load {what}") from e
