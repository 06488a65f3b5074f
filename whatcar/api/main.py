"""
FastAPI application entry-point.
"""
from __future__ import annotations

from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from whatcar.api.routers import catalog, query
from whatcar.copilot.cache import close_cache
from whatcar.core.config import get_settings
from whatcar.core.logging import get_logger
from whatcar.db.connection import close_http_client

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await close_http_client()
    await close_cache()
    logger.info("Shutdown complete")


app = FastAPI(
    title="WhatCar Query API",
    version="0.1.0",
    description="Natural-language questions over vehicle-sales data, answered through a governed OData query",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Result-Type"],
)

app.include_router(query.router, prefix="/query", tags=["Query"])
app.include_router(query.router, prefix="/api/v1/query", tags=["Query"])
app.include_router(catalog.router, tags=["Catalog"])


@app.get("/health")
def health():
    return {"status": "ok"}


def run() -> None:
    """Serve the app with uvicorn on the configured host and port."""
    settings = get_settings()
    uvicorn.run(app, host=settings.api_host, port=settings.api_port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    run()
