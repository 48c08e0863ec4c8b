from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from dotenv import load_dotenv
from pathlib import Path
import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

env_path = Path(__file__).resolve().parent.parent / ".env"
_ = load_dotenv(dotenv_path=env_path)

from bookswap.config import settings
from bookswap.database import AsyncSessionLocal
from bookswap.core.exceptions import TradeServiceError
from bookswap.core.locks import EntityLocks
from bookswap.core.middleware import setup_middleware
from bookswap.services.notification_service import NotificationDispatcher
from bookswap.services.websocket_auth_service import WebSocketAuthenticator
from bookswap.services.websocket_service import RealtimeChannelManager
from bookswap.api import books, trades, websockets

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("🚀 Bookswap Trading API starting up")

    if settings.DEBUG:
        logger.info("Running in debug mode - enhanced logging enabled")

    app.state.channel_manager.start()
    logger.info("✅ Notification channel started")

    yield

    logger.info("🛑 Bookswap Trading API shutting down")

    try:
        await app.state.channel_manager.stop()
        logger.info("✅ All connections closed")
    except Exception as e:
        logger.error(f"❌ Shutdown error: {e}")


if settings.SENTRY_DSN:
    _ = sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        traces_sample_rate=1.0 if settings.DEBUG else 0.1,
        environment=settings.ENVIRONMENT,
        release=f"bookswap@{settings.VERSION}",
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            StarletteIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
        ],
        send_default_pii=False,
        attach_stacktrace=True,
    )

    logger.info(f"✅ Sentry initialized for environment: {settings.ENVIRONMENT}")
else:
    logger.info("⚠️  Sentry DSN not configured - error tracking disabled")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.VERSION,
    openapi_url="/api/openapi.json" if settings.DEBUG else None,
    lifespan=lifespan,
)

app.state.channel_manager = RealtimeChannelManager(
    WebSocketAuthenticator(AsyncSessionLocal),
    idle_timeout=settings.WS_IDLE_TIMEOUT_SECONDS,
    sweep_interval=settings.WS_SWEEP_INTERVAL_SECONDS,
)
app.state.dispatcher = NotificationDispatcher(app.state.channel_manager)
app.state.entity_locks = EntityLocks()

setup_middleware(app)

app.include_router(books.router, prefix="/api/books", tags=["books"])
app.include_router(trades.router, prefix="/api/trades", tags=["trades"])
app.include_router(websockets.router, tags=["websockets"])


@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "version": settings.VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "features": {
            "trades": True,
            "books": True,
            "rate_limiting": True,
            "websocket_notifications": True,
            "error_tracking": bool(settings.SENTRY_DSN),
        },
        "websockets": app.state.channel_manager.get_connection_stats(),
    }


@app.exception_handler(TradeServiceError)
async def trade_service_exception_handler(request: Request, exc: TradeServiceError):
    logger.info(f"{type(exc).__name__} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)

    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "detail": "An unexpected error occurred",
        },
    )
