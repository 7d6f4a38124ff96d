"""Shared FastAPI dependencies and error helpers."""

from typing import Dict, Optional

from fastapi import HTTPException, Request

from iap_reconciler.context import ReconcilerContext


def get_context(request: Request) -> ReconcilerContext:
    """Return the application's ReconcilerContext.

    Raises:
        HTTPException: 503 while the context is not built yet
    """
    context = getattr(request.app.state, "context", None)
    if context is None:
        raise api_error(503, "UNAVAILABLE", "Reconciler is not ready")
    return context


def api_error(
    status_code: int,
    status: str,
    message: str,
    headers: Optional[Dict[str, str]] = None,
    **extra,
) -> HTTPException:
    """Build an HTTPException with a Google-style error body."""
    detail = {"error": {"code": status_code, "message": message, "status": status}}
    detail.update(extra)
    return HTTPException(status_code=status_code, detail=detail, headers=headers)
