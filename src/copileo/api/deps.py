"""FastAPI dependency injection for authentication and session services.

These dependencies are used in endpoint function signatures to inject the
verified account id and the SessionManager wired up during app startup.
"""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from src.copileo.core.security import verify_token
from src.copileo.sessions.manager import SessionManager


async def get_current_account(request: Request) -> str:
    """Extract and verify the account id from a Bearer JWT.

    Raises:
        HTTPException(401): If no valid token is provided.
    """
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        payload = verify_token(auth_header[7:], token_type="access")
        return payload["sub"]

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Not authenticated",
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_session_manager(request: Request) -> SessionManager:
    """Retrieve SessionManager from app.state, 503 if not available."""
    manager = getattr(request.app.state, "session_manager", None)
    if manager is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Session manager not initialized (Vexa API key may not be configured)",
        )
    return manager
