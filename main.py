"""API de checkout - Punto de entrada de la aplicación"""
from fastapi import FastAPI
from starlette.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from slowapi.errors import RateLimitExceeded
import os
import logging
from contextlib import asynccontextmanager

from app.core.config import settings
from shared.database.connection import init_db, close_db
from shared.cache.redis_client import init_redis, close_redis
from shared.utils.rate_limiter import limiter, rate_limit_exceeded_handler
from services.checkout.routes.checkout import router as checkout_router
from services.checkout.routes.discounts import router as discounts_router
from services.checkout.routes.orders import router as orders_router

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

DEFAULT_CORS_ORIGINS = "http://localhost:3000,http://127.0.0.1:3000"


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("[CHECKOUT] Iniciando API de checkout...")
    await init_db()
    await init_redis()
    yield
    logger.info("[CHECKOUT] Cerrando API de checkout...")
    await close_db()
    await close_redis()


app = FastAPI(
    title="Checkout API",
    description="Checkout multi-tenant: cotización, PaymentIntent y creación de órdenes",
    version="1.0.0",
    lifespan=lifespan
)


def cors_settings():
    """En desarrollo cualquier origen (sin credenciales); en producción la lista de CORS_ORIGINS"""
    if os.getenv("APP_ENV", "development") == "development":
        return ["*"], False
    origins = os.getenv("CORS_ORIGINS", DEFAULT_CORS_ORIGINS)
    return [origin.strip() for origin in origins.split(",") if origin.strip()], True


allow_origins, allow_credentials = cors_settings()
logger.info(f"CORS origins: {allow_origins}")

# CORS antes del rate limiting: los preflight no consumen cuota
app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_credentials=allow_credentials,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
    max_age=3600,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

app.include_router(checkout_router, prefix="/api/v1/checkout", tags=["checkout"])
app.include_router(orders_router, prefix="/api/v1/orders", tags=["orders"])
app.include_router(discounts_router, prefix="/api/v1/discounts", tags=["discounts"])


@app.get("/health")
async def health():
    return {"status": "ok", "service": "checkout-api"}


@app.get("/ready")
async def ready():
    """Verifica base de datos y Redis; 503 si alguno no responde"""
    from sqlalchemy import text
    from shared.database.connection import session_scope
    from shared.cache.redis_client import get_redis

    try:
        async with session_scope() as session:
            await session.execute(text("SELECT 1"))
        redis = await get_redis()
        await redis.ping()
    except Exception as e:
        logger.error(f"Ready check failed: {e}")
        return JSONResponse(status_code=503, content={"status": "not ready", "error": str(e)})
    return {"status": "ready", "database": "connected", "redis": "connected"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=os.getenv("APP_DEBUG", "False").lower() == "true"
    )
