"""
Webhook Server - FastAPI app receiving M-Pesa callbacks

The app holds the service container on app.state; routers read their
services from there instead of module globals.
"""

import logging
import time
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from sqlalchemy import text

from handlers.mpesa_webhook import router as mpesa_router

logger = logging.getLogger(__name__)


def create_app(container) -> FastAPI:
    app = FastAPI(
        title="Subscription Bot Webhook Server",
        description="M-Pesa STK push callbacks for the subscription bot",
    )
    app.state.container = container
    app.state.started_at = time.time()

    app.include_router(mpesa_router)

    @app.get("/")
    async def root():
        """Root endpoint"""
        return {"message": "Subscription Bot Webhook Server is running"}

    @app.get("/health")
    async def health_check():
        """Health check endpoint with database probe"""
        database_ok = True
        try:
            async with container.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except Exception as e:
            database_ok = False
            logger.error(f"❌ HEALTH: Database probe failed: {e}")

        content = {
            "status": "ok" if database_ok else "degraded",
            "service": "subscription-bot",
            "database": "connected" if database_ok else "unreachable",
            "uptime_seconds": int(time.time() - app.state.started_at),
        }
        return JSONResponse(content=content, status_code=200 if database_ok else 503)

    logger.info("✅ Webhook server routes registered: POST /callback/mpesa, GET /health, GET /")
    return app
