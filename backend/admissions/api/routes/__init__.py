"""API Routes module"""
from fastapi import APIRouter

from .workflows import router as workflows_router
from .applications import router as applications_router
from .actions import router as actions_router

# Main API router
api_router = APIRouter()

api_router.include_router(workflows_router, prefix="/workflow-definitions", tags=["Workflow Definitions"])
api_router.include_router(applications_router, prefix="/applications", tags=["Applications"])
api_router.include_router(actions_router, prefix="/actions", tags=["Actions"])

__all__ = ["api_router"]
