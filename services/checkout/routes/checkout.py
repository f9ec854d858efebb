"""Rutas de checkout: PaymentIntent y confirmación de orden"""
from fastapi import APIRouter, Depends, HTTPException, Request, status
from starlette.responses import JSONResponse
import logging

from shared.utils.rate_limiter import RATE_LIMITS, get_real_client_ip, limiter
from services.checkout.models.checkout import (
    ConfirmOrderRequest,
    CurrencyFallback,
    OrderResponse,
    PaymentIntentRequest,
    PaymentIntentResponse,
)
from services.checkout.models.errors import CheckoutError, OrderCreationError
from services.checkout.routes.dependencies import (
    get_order_service,
    get_org_id,
    get_payment_intent_service,
)
from services.checkout.services.order_service import CreateOrderResult, OrderService
from services.checkout.services.payment_intent_service import PaymentIntentService

logger = logging.getLogger(__name__)

router = APIRouter()


def order_response(result: CreateOrderResult) -> OrderResponse:
    order = result.order
    return OrderResponse(
        order_id=order.id,
        order_number=order.order_number,
        status=order.status,
        subtotal=order.subtotal,
        fees=order.fees,
        total=order.total,
        currency=order.currency,
        payment_method=order.payment_method,
        payment_ref=order.payment_ref,
        customer_id=result.customer_id,
        tickets=[
            {
                "ticket_code": ticket.ticket_code,
                "ticket_type_id": ticket.ticket_type_id,
                "ticket_type": result.ticket_types[ticket.ticket_type_id].name
                if ticket.ticket_type_id in result.ticket_types else None,
                "holder_email": ticket.holder_email,
                "merch_size": ticket.merch_size,
            }
            for ticket in result.tickets
        ],
    )


def raise_order_error(e: OrderCreationError):
    if e.status_code >= 500:
        logger.error(f"[ORDERS] {e.message} (order_id={e.order_id})")
    raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post("/payment-intent", response_model=PaymentIntentResponse)
@limiter.limit(RATE_LIMITS["payment_intent"])
async def create_payment_intent(
    request: Request,  # Necesario para rate limiter
    intent_request: PaymentIntentRequest,
    org_id: str = Depends(get_org_id),
    service: PaymentIntentService = Depends(get_payment_intent_service),
):
    """
    Cotizar el carrito y crear el PaymentIntent

    409 con error=currency_fallback si la moneda pedida no se puede cobrar:
    el cliente debe reintentar en base_currency.
    """
    try:
        result = await service.create_payment_intent(
            org_id, intent_request, ip_address=get_real_client_ip(request)
        )
    except CheckoutError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    except Exception as e:
        logger.error(f"[CHECKOUT] Error inesperado creando PaymentIntent: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create payment. Please try again.",
        )

    if isinstance(result, CurrencyFallback):
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content=result.model_dump())
    return result


@router.post("/confirm-order", response_model=OrderResponse)
@limiter.limit(RATE_LIMITS["confirm_order"])
async def confirm_order(
    request: Request,
    confirm_request: ConfirmOrderRequest,
    service: OrderService = Depends(get_order_service),
):
    """Crear la orden de un PaymentIntent completado (idempotente)"""
    try:
        result = await service.confirm_order(
            confirm_request.payment_intent_id,
            connected_account=confirm_request.stripe_account_id,
        )
    except OrderCreationError as e:
        raise_order_error(e)
    except Exception as e:
        logger.error(f"[ORDERS] Error inesperado confirmando {confirm_request.payment_intent_id}: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create order",
        )
    return order_response(result)
