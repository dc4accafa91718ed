"""FastAPI application definition."""

from __future__ import annotations

from fastapi import FastAPI

from .deps import lifespan
from .routes import api_router

app = FastAPI(
    title="gatekeeper",
    description="Membership access reconciliation engine",
    version="1.0.0",
    lifespan=lifespan,
    redirect_slashes=False,
)

app.include_router(api_router)


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy"}
