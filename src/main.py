"""Entry point for the call signaling and call-record service."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from api.routes import router as calls_router
from api.signaling_routes import router as signaling_router
from calls.errors import CallError, PersistenceFailureError
from config.settings import get_settings
from db.base import init_db

LOGGER = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    yield


settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

app = FastAPI(
    title="Call Sessions",
    description="Signaling relay and call records for one-to-one voice and video calls.",
    lifespan=lifespan,
)


@app.exception_handler(CallError)
async def call_error_handler(request: Request, exc: CallError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(SQLAlchemyError)
async def persistence_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    LOGGER.error("Database operation failed on %s", request.url.path, exc_info=exc)
    error = PersistenceFailureError()
    return JSONResponse(status_code=error.status_code, content={"detail": error.detail})


app.include_router(calls_router, prefix="/api")
app.include_router(signaling_router, prefix="/api")
