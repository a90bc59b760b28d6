"""Entry point for the call signaling relay service."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from api.dependencies import get_relay
from api.relay_routes import router as relay_router
from api.routes import router as api_router
from config.settings import get_settings
from db.base import engine, init_db


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    yield
    await get_relay().drain()
    await engine.dispose()


settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

app = FastAPI(
    title="Call Signaling Relay",
    description="Presence, call signaling relay and call-quality telemetry storage.",
    lifespan=lifespan,
)
app.include_router(relay_router)
app.include_router(api_router, prefix="/api")
