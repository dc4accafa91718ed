"""API route modules."""

from fastapi import APIRouter

from .admin import router as admin_router
from .webhooks import router as webhooks_router

api_router = APIRouter()
api_router.include_router(webhooks_router)
api_router.include_router(admin_router)

__all__ = ["api_router"]
