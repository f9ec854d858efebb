"""Cliente Redis compartido por las instancias de la API

Se usa como capa intermedia del cache de tipos de cambio: un proceso que
arranca en frío lee las tasas de Redis antes de ir a site_settings.
"""
import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool
import os
import json
from typing import Optional, Any
import logging

from app.core.config import settings

logger = logging.getLogger(__name__)

redis_client: Optional[redis.Redis] = None
redis_pool: Optional[ConnectionPool] = None


async def init_redis():
    """Inicializar el pool; si Redis no responde la API arranca igual (el cache es opcional)"""
    global redis_client, redis_pool

    max_connections = int(os.getenv("REDIS_MAX_CONNECTIONS", "10"))
    redis_pool = ConnectionPool.from_url(
        settings.REDIS_URL,
        password=os.getenv("REDIS_PASSWORD"),
        max_connections=max_connections,
        decode_responses=True,
        socket_connect_timeout=5,
        socket_keepalive=True,
        retry_on_timeout=True,
        health_check_interval=30,
    )
    redis_client = redis.Redis(connection_pool=redis_pool)

    try:
        await redis_client.ping()
        logger.info(f"[CACHE] Redis conectado (max_connections={max_connections})")
    except Exception as e:
        logger.error(f"[CACHE] Redis no disponible, se seguirá sin cache compartido: {e}")


async def get_redis() -> redis.Redis:
    if redis_client is None:
        await init_redis()
    return redis_client


async def close_redis():
    global redis_client, redis_pool
    if redis_client:
        await redis_client.close()
        redis_client = None
    if redis_pool:
        await redis_pool.disconnect()
        redis_pool = None
    logger.info("[CACHE] Redis desconectado")


class RedisCache:
    """Cache JSON con expiración, con la interfaz get/set/delete que esperan los servicios

    Los errores de conexión se propagan: quien lo usa decide si el cache es opcional.
    """

    def __init__(self, prefix: str = ""):
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def get(self, key: str) -> Optional[Any]:
        conn = await get_redis()
        raw = await conn.get(self._key(key))
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"[CACHE] Valor no JSON en {self._key(key)}, se descarta")
            return None

    async def set(self, key: str, value: Any, expire: int = 3600):
        conn = await get_redis()
        await conn.setex(self._key(key), expire, json.dumps(value))

    async def delete(self, key: str):
        conn = await get_redis()
        await conn.delete(self._key(key))
