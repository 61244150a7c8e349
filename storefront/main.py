"""
Storefront order & inventory service – FastAPI entry point.
"""
from __future__ import annotations

import asyncio
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from storefront.database import AsyncSessionLocal
from storefront.errors import StoreError
from storefront.routers import admin, cart, orders, payments, refunds
from storefront.services.effects import SideEffects

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s – %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Storefront Orders",
    version="1.0.0",
    description="Checkout, stock ledger, cancellations and refunds for the storefront.",
)

# ── Middleware ────────────────────────────────────────────────────────────────

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Exception handlers ────────────────────────────────────────────────────────

@app.exception_handler(StoreError)
async def _store_error(request: Request, exc: StoreError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s %s", request.method, request.url.path, exc.kind, exc.details)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

# ── Routers ───────────────────────────────────────────────────────────────────

app.include_router(cart.router)
app.include_router(orders.router)
app.include_router(refunds.router)
app.include_router(payments.router)
app.include_router(admin.router)


# ── Startup / shutdown ────────────────────────────────────────────────────────

@app.on_event("startup")
async def _startup() -> None:
    effects = SideEffects(AsyncSessionLocal)
    app.state.effects = effects

    logger.info("Starting side-effect worker …")
    app.state.effects_task = asyncio.create_task(effects.worker(), name="side-effect-worker")
    logger.info("Storefront service ready.")


@app.on_event("shutdown")
async def _shutdown() -> None:
    logger.info("Draining side-effect queue …")
    try:
        await asyncio.wait_for(app.state.effects.join(), timeout=30)
    except asyncio.TimeoutError:
        logger.warning("Side-effect queue did not drain within 30 s")
    app.state.effects_task.cancel()
