"""Retry con backoff exponencial para llamadas salientes (proveedor de tipos de cambio)"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Tuple, Type

logger = logging.getLogger(__name__)


async def retry_with_backoff(
    func: Callable[[], Awaitable[Any]],
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Any:
    """
    Ejecutar una coroutine con reintentos y backoff exponencial

    Args:
        func: Función async sin argumentos
        max_retries: Reintentos después del primer intento
        initial_delay: Espera antes del primer reintento (segundos)
        max_delay: Espera máxima entre reintentos
        exponential_base: Factor de crecimiento de la espera
        exceptions: Excepciones que disparan un reintento; el resto se propaga
        sleep: Función de espera (inyectable en tests)

    Returns:
        Resultado de la función; la última excepción se propaga si se agotan los reintentos
    """
    delay = initial_delay
    attempt = 0

    while True:
        try:
            return await func()
        except exceptions as e:
            if attempt >= max_retries:
                raise
            attempt += 1
            logger.warning(f"Intento {attempt}/{max_retries} falló ({e}), reintentando en {delay:.1f}s")
            await sleep(delay)
            delay = min(delay * exponential_base, max_delay)
