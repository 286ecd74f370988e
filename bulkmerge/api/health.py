"""Health check endpoint."""

from __future__ import annotations

from fastapi import APIRouter, Request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from ..core.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(request: Request):
    db_ok = False
    try:
        async with request.app.state.session_factory() as session:
            await session.execute(text("SELECT 1"))
            db_ok = True
    except (SQLAlchemyError, OSError) as exc:
        logger.warning("Database health check failed", data={"error": str(exc)})

    providers = await request.app.state.registry.healthcheck_all()
    healthy = db_ok and all(providers.values())
    return {
        "status": "ok" if healthy else "degraded",
        "db_ok": db_ok,
        "providers": providers,
        "running_operations": len(request.app.state.runner.running_operations),
    }
