"""Tareas asíncronas del checkout: email de confirmación y contador de descuentos"""
from typing import Dict
import logging
import asyncio
from shared.cache.celery_app import celery_app

logger = logging.getLogger(__name__)


def run_async(coro):
    """Helper para ejecutar coroutines en contexto síncrono de Celery"""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


@celery_app.task(
    name="send_order_confirmation_email",
    bind=True,
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_backoff_max=600,
    retry_kwargs={"max_retries": 3},
)
def send_order_confirmation_email_task(self, payload: Dict):
    """
    Enviar email de confirmación de orden con los QR de cada ticket

    payload: org_id, order_number, customer, event, tickets, total, currency
    """
    from services.notifications.services.email_service import EmailService

    order_number = payload.get("order_number")
    to_email = payload.get("customer", {}).get("email")
    logger.info(f"[CELERY] Enviando confirmación de orden {order_number} a {to_email}")

    service = EmailService()
    success = run_async(service.send_order_confirmation_email(payload))

    if not success:
        logger.error(f"[CELERY] Error enviando confirmación de orden {order_number}")
        raise Exception(f"Error enviando confirmación de orden {order_number}")

    logger.info(f"[CELERY] Confirmación de orden {order_number} enviada a {to_email}")
    return {"status": "sent", "order_number": order_number, "email": to_email}


@celery_app.task(
    name="increment_discount_usage",
    bind=True,
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_kwargs={"max_retries": 3},
)
def increment_discount_usage_task(self, discount_id: str):
    """Incrementar used_count de un código (best-effort, lectura + escritura)"""
    from shared.database.connection import worker_session
    from services.checkout.stores.sqlalchemy_store import SqlAlchemyDiscountStore

    async def increment():
        async with worker_session() as db:
            await SqlAlchemyDiscountStore(db).increment_used_count(discount_id)

    run_async(increment())
    logger.info(f"[CELERY] used_count incrementado para descuento {discount_id}")
    return {"discount_id": discount_id}


@celery_app.task(
    name="refresh_exchange_rates",
    bind=True,
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_kwargs={"max_retries": 2},
)
def refresh_exchange_rates_task(self):
    """Descargar tipos de cambio y guardarlos en site_settings (Celery beat)"""
    from shared.database.connection import worker_session
    from services.checkout.services.exchange_rates import (
        ExchangeRateCache,
        StoreRatesSource,
        refresh_exchange_rates,
    )
    from services.checkout.stores.sqlalchemy_store import SqlAlchemySettingsStore

    async def refresh():
        async with worker_session() as db:
            cache = ExchangeRateCache(StoreRatesSource(SqlAlchemySettingsStore(db)))
            return await refresh_exchange_rates(cache)

    rates = run_async(refresh())
    if rates is None:
        raise Exception("No se pudieron actualizar los tipos de cambio")
    return {"currencies": len(rates.rates), "fetched_at": rates.fetched_at.isoformat()}
