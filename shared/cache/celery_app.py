"""
Configuración de Celery para tareas best-effort del checkout
(email de confirmación y contador de códigos de descuento)
"""
from celery import Celery
from celery.schedules import crontab
from kombu import Queue, Exchange
import os
import logging

from app.core.config import settings

logger = logging.getLogger(__name__)

# Configuración de Redis
REDIS_URL = os.getenv("REDIS_URL", settings.REDIS_URL)
REDIS_MAX_CONNECTIONS = int(os.getenv("CELERY_REDIS_MAX_CONNECTIONS", "50"))

# Crear aplicación Celery
celery_app = Celery(
    "checkout",
    broker=REDIS_URL,
    backend=REDIS_URL,
    include=[
        "services.checkout.tasks.checkout_tasks",
    ]
)

# Definir colas con prioridades
default_exchange = Exchange("default", type="direct")
priority_exchange = Exchange("priority", type="direct")

# Colas separadas para diferentes tipos de tareas
celery_app.conf.task_queues = (
    # Cola de alta prioridad para confirmaciones de orden
    Queue("high_priority", priority_exchange, routing_key="high"),
    # Cola default para contadores y operaciones normales
    Queue("default", default_exchange, routing_key="default"),
)

# Routing de tareas a colas específicas
celery_app.conf.task_routes = {
    "send_order_confirmation_email": {"queue": "high_priority"},
    "increment_discount_usage": {"queue": "default"},
    "refresh_exchange_rates": {"queue": "default"},
}

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Tareas cortas: un email o un UPDATE
    task_time_limit=2 * 60,
    task_soft_time_limit=90,
    worker_prefetch_multiplier=1,

    broker_pool_limit=REDIS_MAX_CONNECTIONS,
    redis_max_connections=REDIS_MAX_CONNECTIONS,
    broker_connection_retry_on_startup=True,

    # ACK late: un worker caído no pierde el email de confirmación
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    result_expires=3600,
    task_default_queue="default",
    task_default_exchange="default",
    task_default_routing_key="default",

    task_annotations={
        "send_order_confirmation_email": {"rate_limit": "30/m"},
    },

    # Tipos de cambio: el checkout solo los usa con menos de 24h
    beat_schedule={
        "refresh-exchange-rates": {
            "task": "refresh_exchange_rates",
            "schedule": crontab(minute=0, hour="*/6"),
        },
    },
)

logger.info(
    "Celery configurado - Broker: %s, Pool limit: %d",
    REDIS_URL.split("@")[-1] if "@" in REDIS_URL else REDIS_URL,
    REDIS_MAX_CONNECTIONS,
)

