"""Health-related API endpoints."""

from __future__ import annotations

from typing import Optional, Tuple

from fastapi import APIRouter
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from database import SessionLocal

router = APIRouter(prefix="/health", tags=["Health"])


def ping_database() -> Tuple[bool, Optional[str]]:
    """Return database connectivity status and optional error message."""
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        return True, None
    except SQLAlchemyError as exc:
        return False, str(exc)
    finally:
        db.close()


@router.get(
    "/status",
    summary="Service runtime status",
    description="Database connectivity used by liveness probes and the admin console.",
)
def read_service_status():
    db_ok, db_error = ping_database()
    status = "ok" if db_ok else "degraded"
    payload = {"status": status, "database": {"ok": db_ok}}
    if db_error:
        payload["database"]["error"] = db_error
    return payload


__all__ = ["router", "ping_database"]
