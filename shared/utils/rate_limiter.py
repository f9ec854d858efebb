"""
Rate limiting por IP usando slowapi + Redis
Los bloqueos quedan registrados como eventos rate_limit_hit
"""
from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from fastapi import Request, Response
from starlette.responses import JSONResponse
import logging

from app.core.config import settings

logger = logging.getLogger(__name__)

REDIS_URL = settings.REDIS_URL


def get_real_client_ip(request: Request) -> str:
    """
    Obtener IP real del cliente considerando proxies/load balancers.
    Importante para rate limiting correcto detrás de nginx/cloudflare.
    """
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # client, proxy1, proxy2: la primera es la del cliente
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip

    cf_connecting_ip = request.headers.get("CF-Connecting-IP")
    if cf_connecting_ip:
        return cf_connecting_ip

    return get_remote_address(request)


# Storage en Redis para que varias instancias de la API compartan los contadores
limiter = Limiter(
    key_func=get_real_client_ip,
    storage_uri=REDIS_URL,
    strategy="fixed-window",
    headers_enabled=False,  # Deshabilitado para compatibilidad con response_model de FastAPI
)


def get_rate_limit_monitor():
    """PaymentMonitor con sesión propia (el handler corre fuera de las dependencias del request)"""
    from shared.database.connection import session_scope
    from services.checkout.services.payment_monitor import PaymentMonitor
    from services.checkout.stores.sqlalchemy_store import ScopedPaymentEventStore

    return PaymentMonitor(ScopedPaymentEventStore(session_scope))


async def _record_rate_limit_hit(request: Request, ip: str) -> None:
    from services.checkout.services import payment_monitor

    org_id = request.headers.get("X-Org-Id") or settings.DEFAULT_ORG_ID
    # log() nunca lanza: un fallo de la base no cambia la respuesta 429
    await get_rate_limit_monitor().log(
        org_id,
        payment_monitor.RATE_LIMIT_HIT,
        ip_address=ip,
        metadata={"path": request.url.path},
    )


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> Response:
    """
    Handler personalizado para rate limit exceeded.
    Retorna JSON con información útil para el cliente.
    """
    # Ventana del límite en segundos ("10 per 1 minute" -> 60)
    retry_after = exc.limit.limit.get_expiry() if exc.limit is not None else 60
    ip = get_real_client_ip(request)

    logger.warning(
        f"Rate limit exceeded - IP: {ip}, "
        f"Path: {request.url.path}, "
        f"Retry-After: {retry_after}"
    )
    await _record_rate_limit_hit(request, ip)

    return JSONResponse(
        status_code=429,
        content={
            "error": "rate_limit_exceeded",
            "detail": "Too many requests. Please wait a moment and try again.",
            "retry_after_seconds": retry_after,
        },
        headers={"Retry-After": str(retry_after)},
    )


# ============ RATE LIMITS PRE-DEFINIDOS ============

RATE_LIMITS = {
    # Creación de PaymentIntent: protege el gateway
    "payment_intent": "10/minute",

    # Validación de descuentos: evita adivinar códigos por fuerza bruta
    "discount_validate": "20/minute",

    # Confirmación de orden: el cliente puede reintentar
    "confirm_order": "30/minute",

    "default": "30/minute",
}
