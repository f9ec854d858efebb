"""Tipos de cambio: conversión, frescura y cache por capas

Las tasas tienen base USD (1 USD = X moneda). La conversión entre dos monedas
pivotea por USD. Capas del cache: memoria (TTL 1h) -> Redis -> site_settings.
"""
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable, Dict, Optional
import logging

import httpx

from app.core.config import settings
from services.checkout.models.domain import ExchangeRates
from services.checkout.services.pricing import Number, round_money, to_decimal
from services.checkout.stores.interfaces import EXCHANGE_RATES_KEY, SettingsStore
from shared.utils.retry import retry_with_backoff

logger = logging.getLogger(__name__)

SUPPORTED_CURRENCIES = ["GBP", "EUR", "USD", "CAD", "AUD", "CHF", "SEK", "NOK", "DKK"]

OPEN_EXCHANGE_RATES_URL = "https://openexchangerates.org/api/latest.json"
OPEN_ER_API_URL = "https://open.er-api.com/v6/latest/USD"

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _age(rates: ExchangeRates, now: datetime) -> timedelta:
    fetched_at = rates.fetched_at
    if fetched_at.tzinfo is None:
        fetched_at = fetched_at.replace(tzinfo=timezone.utc)
    return now - fetched_at


def are_rates_fresh_for_checkout(
    rates: Optional[ExchangeRates],
    now: Optional[datetime] = None,
    max_age_seconds: Optional[int] = None,
) -> bool:
    """True si las tasas tienen menos de 24h (configurable) desde fetched_at"""
    if rates is None or not rates.rates:
        return False
    if max_age_seconds is None:
        max_age_seconds = settings.EXCHANGE_RATES_CHECKOUT_MAX_AGE_SECONDS
    return _age(rates, now or utc_now()) < timedelta(seconds=max_age_seconds)


def get_exchange_rate(from_currency: str, to_currency: str, rates: ExchangeRates) -> Optional[Decimal]:
    """Tasa efectiva from -> to, o None si alguna moneda no está en el payload"""
    from_currency = from_currency.upper()
    to_currency = to_currency.upper()
    if from_currency == to_currency:
        return Decimal("1")
    from_rate = rates.rates.get(from_currency)
    to_rate = rates.rates.get(to_currency)
    if not from_rate or not to_rate:
        return None
    rate = Decimal(str(to_rate)) / Decimal(str(from_rate))
    return rate.quantize(Decimal("0.000001"), rounding=ROUND_HALF_UP)


def convert_currency(amount: Number, from_currency: str, to_currency: str, rates: ExchangeRates) -> Decimal:
    """Convertir pivoteando por USD; monedas desconocidas devuelven el monto original"""
    amount = to_decimal(amount)
    from_currency = from_currency.upper()
    to_currency = to_currency.upper()
    if from_currency == to_currency:
        return amount
    from_rate = rates.rates.get(from_currency)
    to_rate = rates.rates.get(to_currency)
    if not from_rate or not to_rate:
        return amount
    in_usd = amount / Decimal(str(from_rate))
    return round_money(in_usd * Decimal(str(to_rate)))


class RatesSource(ABC):
    """Almacenamiento persistente de las tasas (fuente de verdad del cache)"""

    @abstractmethod
    async def load(self) -> Optional[Dict]:
        ...

    @abstractmethod
    async def save(self, data: Dict) -> None:
        ...


class SettingsRatesSource(RatesSource):
    """Tasas guardadas en site_settings bajo platform_exchange_rates

    Abre su propia sesión porque el cache vive más que cualquier request.
    """

    def __init__(self, store_factory: Callable[[], Any]):
        # store_factory: async context manager que entrega un SettingsStore
        self.store_factory = store_factory

    async def load(self) -> Optional[Dict]:
        async with self.store_factory() as store:
            return await store.get_setting(EXCHANGE_RATES_KEY)

    async def save(self, data: Dict) -> None:
        async with self.store_factory() as store:
            await store.set_setting(EXCHANGE_RATES_KEY, data)


class StoreRatesSource(RatesSource):
    """Adaptador directo sobre un SettingsStore ya abierto"""

    def __init__(self, store: SettingsStore):
        self.store = store

    async def load(self) -> Optional[Dict]:
        return await self.store.get_setting(EXCHANGE_RATES_KEY)

    async def save(self, data: Dict) -> None:
        await self.store.set_setting(EXCHANGE_RATES_KEY, data)


class ExchangeRateCache:
    """Cache de tipos de cambio con TTL e invalidación explícitos

    Nunca lanza excepciones: si ninguna capa tiene tasas utilizables devuelve
    None y el checkout cae a la moneda base.
    """

    def __init__(
        self,
        source: RatesSource,
        shared_cache=None,
        memory_ttl_seconds: Optional[int] = None,
        stale_seconds: Optional[int] = None,
        clock: Clock = utc_now,
        cache_key: str = "fx:platform_exchange_rates",
    ):
        self.source = source
        self.shared_cache = shared_cache
        self.memory_ttl = timedelta(seconds=memory_ttl_seconds or settings.EXCHANGE_RATES_MEMORY_TTL_SECONDS)
        self.stale_after = timedelta(seconds=stale_seconds or settings.EXCHANGE_RATES_STALE_SECONDS)
        self.clock = clock
        self.cache_key = cache_key
        self._memory: Optional[ExchangeRates] = None
        self._memory_loaded_at: Optional[datetime] = None

    def _usable(self, rates: Optional[ExchangeRates], now: datetime) -> bool:
        return rates is not None and bool(rates.rates) and _age(rates, now) <= self.stale_after

    def _remember(self, rates: ExchangeRates, now: datetime) -> None:
        self._memory = rates
        self._memory_loaded_at = now

    async def get(self) -> Optional[ExchangeRates]:
        now = self.clock()

        if self._memory is not None and now - self._memory_loaded_at < self.memory_ttl:
            if self._usable(self._memory, now):
                return self._memory
            self.invalidate_memory()

        if self.shared_cache is not None:
            try:
                cached = await self.shared_cache.get(self.cache_key)
                if cached:
                    rates = ExchangeRates.from_dict(cached)
                    if self._usable(rates, now):
                        self._remember(rates, now)
                        return rates
            except Exception as e:
                logger.warning(f"[FX] Cache compartido no disponible: {e}")

        try:
            data = await self.source.load()
        except Exception as e:
            logger.error(f"[FX] Error leyendo tipos de cambio: {e}")
            return None

        if not data:
            return None
        try:
            rates = ExchangeRates.from_dict(data)
        except (KeyError, ValueError, AttributeError) as e:
            logger.error(f"[FX] Payload de tipos de cambio inválido: {e}")
            return None

        if not self._usable(rates, now):
            logger.warning(f"[FX] Tipos de cambio obsoletos (fetched_at={rates.fetched_at.isoformat()})")
            return None

        self._remember(rates, now)
        await self._write_shared(rates)
        return rates

    async def set(self, rates: ExchangeRates) -> None:
        """Persistir tasas nuevas y refrescar todas las capas"""
        await self.source.save(rates.to_dict())
        self._remember(rates, self.clock())
        await self._write_shared(rates)

    def invalidate_memory(self) -> None:
        self._memory = None
        self._memory_loaded_at = None

    async def invalidate(self) -> None:
        self.invalidate_memory()
        if self.shared_cache is not None:
            try:
                await self.shared_cache.delete(self.cache_key)
            except Exception as e:
                logger.warning(f"[FX] No se pudo invalidar cache compartido: {e}")

    async def _write_shared(self, rates: ExchangeRates) -> None:
        if self.shared_cache is None:
            return
        try:
            await self.shared_cache.set(
                self.cache_key, rates.to_dict(), expire=int(self.memory_ttl.total_seconds())
            )
        except Exception as e:
            logger.warning(f"[FX] No se pudo escribir cache compartido: {e}")


async def fetch_exchange_rates(
    api_key: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
    clock: Clock = utc_now,
) -> ExchangeRates:
    """Descargar tasas USD del proveedor y filtrar a las monedas soportadas"""
    api_key = api_key if api_key is not None else settings.EXCHANGE_RATE_API_KEY
    if api_key:
        url = OPEN_EXCHANGE_RATES_URL
        params = {"app_id": api_key, "symbols": ",".join(SUPPORTED_CURRENCIES)}
    else:
        url = OPEN_ER_API_URL
        params = None

    async def do_request() -> Dict:
        if client is not None:
            response = await client.get(url, params=params)
        else:
            async with httpx.AsyncClient(timeout=10.0) as http:
                response = await http.get(url, params=params)
        response.raise_for_status()
        return response.json()

    payload = await retry_with_backoff(
        do_request,
        max_retries=2,
        initial_delay=0.5,
        exceptions=(httpx.HTTPError,),
    )

    raw_rates = payload.get("rates") or {}
    rates = {
        currency: float(raw_rates[currency])
        for currency in SUPPORTED_CURRENCIES
        if currency in raw_rates
    }
    rates["USD"] = 1.0
    return ExchangeRates(rates=rates, fetched_at=clock())


async def refresh_exchange_rates(
    cache: ExchangeRateCache,
    api_key: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> Optional[ExchangeRates]:
    """Descargar, guardar y precargar el cache; None si el proveedor falla"""
    try:
        rates = await fetch_exchange_rates(api_key=api_key, client=client, clock=cache.clock)
    except (httpx.HTTPError, ValueError) as e:
        logger.error(f"[FX] Error descargando tipos de cambio: {e}")
        return None

    await cache.set(rates)
    logger.info(f"[FX] Tipos de cambio actualizados ({len(rates.rates)} monedas)")
    return rates
