"""API routes for the support service."""

from fastapi import APIRouter

from .notifications import router as notifications_router
from .support import router as support_router

# Main API router
api_router = APIRouter()

api_router.include_router(support_router)
api_router.include_router(notifications_router)

__all__ = ["api_router"]
