"""Rutas de órdenes de prueba/manuales (eventos con payment_method=test)"""
from fastapi import APIRouter, Depends, HTTPException, status
import logging

from services.checkout.models.checkout import ManualOrderRequest, OrderResponse
from services.checkout.models.errors import OrderCreationError
from services.checkout.routes.checkout import order_response, raise_order_error
from services.checkout.routes.dependencies import get_order_service, get_org_id
from services.checkout.services.order_service import OrderService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("", response_model=OrderResponse, status_code=status.HTTP_201_CREATED)
async def create_order(
    order_request: ManualOrderRequest,
    org_id: str = Depends(get_org_id),
    service: OrderService = Depends(get_order_service),
):
    try:
        result = await service.create_manual_order(org_id, order_request)
    except OrderCreationError as e:
        raise_order_error(e)
    except Exception as e:
        logger.error(f"[ORDERS] Error inesperado creando orden manual: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create order",
        )
    return order_response(result)
