# buyback/main.py
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from buyback.api.routers.admin import router as admin_router
from buyback.api.routers.orders import router as orders_router
from buyback.core.config import get_settings
from buyback.core.logging import setup_logging
from buyback.core.scheduler import init_scheduler, shutdown_scheduler
from buyback.db.session import close_engines
from buyback.http_problem_handlers import register_exception_handlers
from buyback.obs.metrics import PrometheusMiddleware

settings = get_settings()
setup_logging(settings.LOG_LEVEL, json=settings.JSON_LOG)
logger = logging.getLogger("buyback")


@asynccontextmanager
async def lifespan(_app: FastAPI):
    init_scheduler()
    try:
        yield
    finally:
        shutdown_scheduler()
        await close_engines()


app = FastAPI(
    title="Buyback Lifecycle",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://127.0.0.1:5173",
        "http://localhost:5173",
        "http://127.0.0.1:8000",
        "http://localhost:8000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(PrometheusMiddleware)

register_exception_handlers(app)

# admin routes first: /orders/admin/... must not be read as an order id
app.include_router(admin_router)
app.include_router(orders_router)


@app.get("/")
async def root():
    return {"name": "Buyback Lifecycle", "version": "1.0.0"}


@app.get("/healthz")
async def healthz():
    return {"status": "ok"}


@app.get("/metrics")
async def metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
