"""Conexión a la base de datos PostgreSQL (Supabase o local)"""
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base
import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator, AsyncIterator, Optional
import logging
import ssl

from app.core.config import settings

logger = logging.getLogger(__name__)

# Base para modelos SQLAlchemy
Base = declarative_base()

# Engine y session factory
engine = None
async_session_maker: Optional[async_sessionmaker] = None


def to_async_url(database_url: str) -> str:
    """Normalizar DATABASE_URL al driver asyncpg"""
    # Limpiar parámetros SSL de la URL (se configuran en connect_args)
    if "?" in database_url:
        database_url = database_url.split("?")[0]

    if database_url.startswith("postgresql://"):
        return database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if database_url.startswith("postgresql+psycopg://"):
        return database_url.replace("postgresql+psycopg://", "postgresql+asyncpg://", 1)
    return database_url


def _is_supabase(database_url: str) -> bool:
    return "pooler.supabase.com" in database_url or "supabase.com" in database_url


def build_engine(database_url: str, pool_size: Optional[int] = None, max_overflow: Optional[int] = None):
    """Crear engine async con la configuración de pool adecuada al entorno"""
    is_supabase = _is_supabase(database_url)
    database_url = to_async_url(database_url)

    connect_args = {}
    if is_supabase:
        logger.info("Detected Supabase connection, configuring search_path and SSL")
        ssl_context = ssl.create_default_context()
        ssl_context.check_hostname = False
        ssl_context.verify_mode = ssl.CERT_NONE

        connect_args = {
            "ssl": ssl_context,
            "server_settings": {
                "search_path": "public",
                "jit": "off"
            },
            "command_timeout": 60,
            "timeout": 60,
        }

    default_size, default_overflow = ("3", "5") if is_supabase else ("5", "10")
    pool_config = {
        "pool_pre_ping": True,  # Verificar conexiones antes de usar
        "pool_recycle": 180 if is_supabase else 300,
        "pool_timeout": 30,
        "pool_use_lifo": True,
        "pool_size": pool_size or int(os.getenv("DATABASE_POOL_SIZE", default_size)),
        "max_overflow": max_overflow or int(os.getenv("DATABASE_MAX_OVERFLOW", default_overflow)),
    }
    logger.info(f"Pool config: size={pool_config['pool_size']}, overflow={pool_config['max_overflow']}")

    return create_async_engine(
        database_url,
        echo=os.getenv("APP_DEBUG", "False").lower() == "true",
        connect_args=connect_args,
        **pool_config
    )


async def init_db():
    """Inicializar conexión a la base de datos"""
    global engine, async_session_maker

    if engine is not None:
        logger.warning("Database engine already initialized, skipping...")
        return

    database_url = settings.DATABASE_URL
    logger.info(f"Initializing database connection to: {database_url.split('@')[1] if '@' in database_url else database_url}")

    engine = build_engine(database_url)
    async_session_maker = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    logger.info("Database engine initialized successfully")


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency para obtener sesión de base de datos"""
    if async_session_maker is None:
        logger.error("Database not initialized! Call init_db() first.")
        raise RuntimeError("Database not initialized. Please check application startup.")

    async with async_session_maker() as session:
        yield session


async def close_db():
    """Cerrar conexiones a la base de datos"""
    global engine, async_session_maker
    if engine:
        logger.info("Closing database connections...")
        await engine.dispose()
        engine = None
        async_session_maker = None
        logger.info("Database connections closed")


@asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    """Sesión propia fuera del ciclo de un request (cache, handlers de error)"""
    if async_session_maker is None:
        raise RuntimeError("Database not initialized. Please check application startup.")
    async with async_session_maker() as session:
        yield session


@asynccontextmanager
async def worker_session() -> AsyncIterator[AsyncSession]:
    """Sesión para tareas Celery: engine propio por tarea (cada tarea corre en su propio event loop)"""
    worker_engine = build_engine(settings.DATABASE_URL, pool_size=2, max_overflow=2)
    session_maker = async_sessionmaker(worker_engine, class_=AsyncSession, expire_on_commit=False)
    try:
        async with session_maker() as session:
            yield session
    finally:
        await worker_engine.dispose()
