from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from bulkops.api import admin, bulk_processing, uploads
from bulkops.api.errors import register_exception_handlers
from bulkops.config import settings
from bulkops.plugins.registry import discover


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    discover()
    yield


app = FastAPI(title="BulkOps API", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
register_exception_handlers(app)

api_prefix = "/api/v1"
app.include_router(uploads.router, prefix=api_prefix)
app.include_router(bulk_processing.router, prefix=api_prefix)
app.include_router(admin.router, prefix=api_prefix)


@app.get("/api/v1/health")
async def health() -> dict:
    return {"status": "ok"}
