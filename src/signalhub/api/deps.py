"""FastAPI dependency injection for the SignalHub service."""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from src.signalhub.service import SignalHubService


def get_service(request: Request) -> SignalHubService:
    """Retrieve the SignalHubService from app.state, 503 if not initialized."""
    service = getattr(request.app.state, "signalhub", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="SignalHub service not initialized",
        )
    return service
