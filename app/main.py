from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.api.routes_orders import router as orders_router
from app.core.config import get_settings
from app.core.logging import configure_logging
from app.fulfillment.errors import InvalidTransitionError, OrderNotFoundError, OrderValidationError
from app.persistence.pg import init_db

configure_logging()
logger = logging.getLogger(__name__)
settings = get_settings()

app = FastAPI(title=settings.app_name)


@app.on_event("startup")
def on_startup() -> None:
    init_db()
    logger.info(
        "fulfillment sync ready: environment=%s distributor=%s crm=%s",
        settings.fulfillment_environment,
        settings.distributor_backend,
        settings.crm_backend,
    )


@app.exception_handler(OrderValidationError)
async def order_validation_handler(_: Request, exc: OrderValidationError):
    return JSONResponse(status_code=422, content={"detail": str(exc), "error": "order_validation"})


@app.exception_handler(OrderNotFoundError)
async def order_not_found_handler(_: Request, exc: OrderNotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc), "error": "not_found"})


@app.exception_handler(InvalidTransitionError)
async def invalid_transition_handler(_: Request, exc: InvalidTransitionError):
    return JSONResponse(status_code=409, content={"detail": str(exc), "error": "invalid_transition"})


@app.get("/healthz")
def healthz() -> dict:
    return {"status": "ok"}


app.include_router(orders_router)
