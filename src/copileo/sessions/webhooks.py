"""Outbound webhook notifications for meeting lifecycle events.

Each delivery POSTs a compact JSON body:

    {"event_type": ..., "meeting_id": ..., "timestamp": ..., "data": {...}}

signed with HMAC-SHA256 over the exact body bytes using the account's
webhook secret. The lowercase hex digest travels in the
``X-Copileo-Signature`` header; receivers recompute it with
verify_signature().

Delivery is best-effort: transport errors and 5xx responses are retried
with tenacity, and a final failure is logged but never propagated to the
operation that produced the event.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import uuid
from datetime import datetime, timezone
from typing import Any

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from src.copileo.core.monitoring import webhook_deliveries_total
from src.copileo.sessions.errors import StoreUnavailable, WebhookDeliveryFailed
from src.copileo.sessions.schemas import LifecycleEventType, WebhookConfig

logger = structlog.get_logger(__name__)

SIGNATURE_HEADER = "X-Copileo-Signature"


# ── Payload & Signature ─────────────────────────────────────────────────────


def build_payload(
    event_type: LifecycleEventType | str,
    meeting_id: uuid.UUID | str,
    data: dict[str, Any] | None = None,
    timestamp: datetime | None = None,
) -> bytes:
    """Serialize a webhook body to the exact bytes that get signed and sent."""
    ts = (timestamp or datetime.now(timezone.utc)).astimezone(timezone.utc)
    body = {
        "event_type": event_type.value if isinstance(event_type, LifecycleEventType) else event_type,
        "meeting_id": str(meeting_id),
        "timestamp": ts.isoformat().replace("+00:00", "Z"),
        "data": data or {},
    }
    return json.dumps(body, separators=(",", ":"), default=str).encode("utf-8")


def sign_payload(body: bytes, secret: str) -> str:
    """HMAC-SHA256 of the body bytes, lowercase hex."""
    return hmac.new(
        key=secret.encode("utf-8"),
        msg=body,
        digestmod=hashlib.sha256,
    ).hexdigest()


def verify_signature(body: bytes, secret: str, signature: str) -> bool:
    """Receiver-side check of an X-Copileo-Signature header value."""
    provided = (signature or "").strip().lower()
    if provided.startswith("sha256="):
        provided = provided.split("=", maxsplit=1)[1].strip()
    if not provided:
        return False
    return hmac.compare_digest(sign_payload(body, secret), provided)


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return isinstance(exc, httpx.TransportError)


# ── Dispatcher ──────────────────────────────────────────────────────────────


class WebhookDispatcher:
    """Signs and delivers lifecycle notifications to per-account endpoints.

    Args:
        repository: Source of WebhookConfig (read on every dispatch).
        timeout: Per-attempt HTTP timeout in seconds.
        max_attempts: Total attempts for retryable failures.
        backoff: Exponential backoff multiplier in seconds.
    """

    def __init__(
        self,
        repository,
        timeout: float = 10.0,
        max_attempts: int = 3,
        backoff: float = 1.0,
    ) -> None:
        self._repository = repository
        self._timeout = timeout
        self._max_attempts = max_attempts
        self._backoff = backoff
        self._tasks: set[asyncio.Task] = set()

    async def deliver(self, config: WebhookConfig, body: bytes) -> None:
        """POST a signed body to the configured URL.

        Raises:
            WebhookDeliveryFailed: After the final failed attempt.
        """
        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: sign_payload(body, config.webhook_secret),
        }
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._max_attempts),
                wait=wait_exponential(multiplier=self._backoff, min=self._backoff, max=10),
                retry=retry_if_exception(_is_retryable),
                reraise=True,
            ):
                with attempt:
                    async with httpx.AsyncClient(timeout=self._timeout) as client:
                        response = await client.post(
                            config.webhook_url,
                            content=body,
                            headers=headers,
                        )
                        response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise WebhookDeliveryFailed(
                f"{config.webhook_url} answered HTTP {exc.response.status_code}"
            ) from exc
        except httpx.TransportError as exc:
            raise WebhookDeliveryFailed(
                f"{config.webhook_url} unreachable: {type(exc).__name__}: {exc}"
            ) from exc
        except httpx.InvalidURL as exc:
            raise WebhookDeliveryFailed(f"{config.webhook_url!r} is not a usable URL: {exc}") from exc

    async def dispatch(
        self,
        account_id: str,
        event_type: LifecycleEventType,
        meeting_id: uuid.UUID | str,
        data: dict[str, Any] | None = None,
    ) -> bool:
        """Notify the account's endpoint of an event.

        A missing or disabled config is a silent no-op.

        Returns:
            True if a delivery succeeded, False otherwise. Never raises.
        """
        try:
            config = await self._repository.get_webhook_config(account_id)
        except StoreUnavailable as exc:
            logger.warning(
                "webhook.config_unavailable",
                account_id=account_id,
                event_type=event_type.value,
                error=str(exc),
            )
            return False

        if config is None or not config.webhook_enabled or not config.webhook_url:
            return False

        body = build_payload(event_type, meeting_id, data)
        try:
            await self.deliver(config, body)
        except WebhookDeliveryFailed as exc:
            webhook_deliveries_total.labels(event_type=event_type.value, result="failed").inc()
            logger.warning(
                "webhook.delivery_failed",
                account_id=account_id,
                meeting_id=str(meeting_id),
                event_type=event_type.value,
                error=str(exc),
            )
            return False

        webhook_deliveries_total.labels(event_type=event_type.value, result="delivered").inc()
        logger.info(
            "webhook.delivered",
            account_id=account_id,
            meeting_id=str(meeting_id),
            event_type=event_type.value,
        )
        return True

    def dispatch_in_background(
        self,
        account_id: str,
        event_type: LifecycleEventType,
        meeting_id: uuid.UUID | str,
        data: dict[str, Any] | None = None,
    ) -> asyncio.Task:
        """Schedule dispatch() without awaiting it; drain() waits for these."""
        task = asyncio.create_task(
            self.dispatch(account_id, event_type, meeting_id, data),
            name=f"webhook_{event_type.value}_{meeting_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for in-flight background deliveries to finish."""
        if not self._tasks:
            return
        logger.info("webhook.draining", pending=len(self._tasks))
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
