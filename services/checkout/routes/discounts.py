"""Validación pública de códigos de descuento"""
from fastapi import APIRouter, Depends, Request
import logging

from shared.utils.rate_limiter import RATE_LIMITS, limiter
from services.checkout.models.checkout import DiscountValidateRequest, DiscountValidateResponse
from services.checkout.routes.dependencies import get_discount_store, get_org_id
from services.checkout.services.discount_service import validate_discount
from services.checkout.stores.sqlalchemy_store import SqlAlchemyDiscountStore

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/validate", response_model=DiscountValidateResponse)
@limiter.limit(RATE_LIMITS["discount_validate"])  # Evita adivinar códigos por fuerza bruta
async def validate_discount_code(
    request: Request,  # Necesario para rate limiter
    validate_request: DiscountValidateRequest,
    org_id: str = Depends(get_org_id),
    store: SqlAlchemyDiscountStore = Depends(get_discount_store),
):
    """Siempre 200: {valid, discount} o {valid: false, error}"""
    try:
        result = await validate_discount(
            store,
            org_id,
            validate_request.code,
            event_id=validate_request.event_id,
            subtotal=validate_request.subtotal,
        )
    except Exception as e:
        logger.error(f"[CHECKOUT] Error validando código de descuento: {e}", exc_info=True)
        return DiscountValidateResponse(valid=False, error="Something went wrong. Please try again.")
    return DiscountValidateResponse(**result.to_response())
