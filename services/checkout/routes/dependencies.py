"""Dependencias FastAPI: stores por request y colaboradores compartidos"""
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import AsyncIterator

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from shared.cache.redis_client import RedisCache
from shared.database.connection import get_db, session_scope
from services.checkout.services.dispatcher import BackgroundDispatcher
from services.checkout.services.exchange_rates import ExchangeRateCache, SettingsRatesSource
from services.checkout.services.order_service import OrderService
from services.checkout.services.payment_intent_service import PaymentIntentService
from services.checkout.services.payment_monitor import PaymentMonitor
from services.checkout.services.stripe_service import ConnectedAccountVerifier, StripeGateway
from services.checkout.stores.sqlalchemy_store import (
    SqlAlchemyCustomerStore,
    SqlAlchemyDiscountStore,
    SqlAlchemyEventStore,
    SqlAlchemyOrderStore,
    ScopedPaymentEventStore,
    SqlAlchemySettingsStore,
    SqlAlchemyTicketTypeStore,
)


def get_org_id(request: Request) -> str:
    """Organización del request (la resuelve el proxy por dominio)"""
    return request.headers.get("X-Org-Id") or settings.DEFAULT_ORG_ID


@asynccontextmanager
async def settings_store_scope() -> AsyncIterator[SqlAlchemySettingsStore]:
    """SettingsStore con sesión propia (el cache de tipos de cambio vive más que un request)"""
    async with session_scope() as db:
        yield SqlAlchemySettingsStore(db)


@lru_cache
def get_gateway() -> StripeGateway:
    return StripeGateway()


@lru_cache
def get_account_verifier() -> ConnectedAccountVerifier:
    return ConnectedAccountVerifier(get_gateway())


@lru_cache
def get_rates_cache() -> ExchangeRateCache:
    return ExchangeRateCache(SettingsRatesSource(settings_store_scope), shared_cache=RedisCache())


@lru_cache
def get_dispatcher() -> BackgroundDispatcher:
    return BackgroundDispatcher()


def get_monitor() -> PaymentMonitor:
    """Monitor con sesión propia: los incidentes se registran aunque la sesión del request haya fallado"""
    return PaymentMonitor(ScopedPaymentEventStore(session_scope))


def get_payment_intent_service(db: AsyncSession = Depends(get_db)) -> PaymentIntentService:
    return PaymentIntentService(
        events=SqlAlchemyEventStore(db),
        ticket_types=SqlAlchemyTicketTypeStore(db),
        discounts=SqlAlchemyDiscountStore(db),
        settings_store=SqlAlchemySettingsStore(db),
        gateway=get_gateway(),
        account_verifier=get_account_verifier(),
        rates_cache=get_rates_cache(),
        monitor=get_monitor(),
        dispatcher=get_dispatcher(),
    )


def get_order_service(db: AsyncSession = Depends(get_db)) -> OrderService:
    return OrderService(
        ticket_types=SqlAlchemyTicketTypeStore(db),
        customers=SqlAlchemyCustomerStore(db),
        orders=SqlAlchemyOrderStore(db),
        events=SqlAlchemyEventStore(db),
        gateway=get_gateway(),
        monitor=get_monitor(),
        dispatcher=get_dispatcher(),
    )


def get_discount_store(db: AsyncSession = Depends(get_db)) -> SqlAlchemyDiscountStore:
    return SqlAlchemyDiscountStore(db)
