"""Account settings endpoints -- outbound webhook configuration."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from src.copileo.api.deps import get_current_account, get_session_manager
from src.copileo.sessions.errors import StoreUnavailable
from src.copileo.sessions.manager import SessionManager
from src.copileo.sessions.schemas import WebhookConfig, WebhookConfigUpdate

router = APIRouter(prefix="/settings", tags=["settings"])


class WebhookConfigResponse(BaseModel):
    webhook_url: str
    webhook_secret: str
    webhook_enabled: bool
    updated_at: str | None = None


def _config_to_response(c: WebhookConfig) -> WebhookConfigResponse:
    return WebhookConfigResponse(
        webhook_url=c.webhook_url,
        webhook_secret=c.webhook_secret,
        webhook_enabled=c.webhook_enabled,
        updated_at=c.updated_at.isoformat() if c.updated_at else None,
    )


@router.get("/webhook", response_model=WebhookConfigResponse)
async def get_webhook_settings(
    account_id: str = Depends(get_current_account),
    manager: SessionManager = Depends(get_session_manager),
) -> WebhookConfigResponse:
    """Current webhook settings; defaults (disabled) when never saved."""
    try:
        config = await manager.get_webhook_config(account_id)
    except StoreUnavailable as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Meeting store unavailable",
        ) from exc
    return _config_to_response(config)


@router.put("/webhook", response_model=WebhookConfigResponse)
async def update_webhook_settings(
    body: WebhookConfigUpdate,
    account_id: str = Depends(get_current_account),
    manager: SessionManager = Depends(get_session_manager),
) -> WebhookConfigResponse:
    """Save webhook settings for the account."""
    if body.webhook_enabled and not body.webhook_url:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="webhook_url is required when webhooks are enabled",
        )
    try:
        config = await manager.save_webhook_config(account_id, body)
    except StoreUnavailable as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Meeting store unavailable",
        ) from exc
    return _config_to_response(config)
