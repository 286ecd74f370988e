"""API router: aggregates all endpoint modules."""

from __future__ import annotations

from fastapi import APIRouter

from .health import router as health_router
from .merge import router as merge_router

router = APIRouter()
router.include_router(health_router)
router.include_router(merge_router)
