"""Main API routes for Toolshelf."""

from fastapi import APIRouter

from .tools import router as tools_router

# Main API router
router = APIRouter()

router.include_router(tools_router, tags=["tools"])
