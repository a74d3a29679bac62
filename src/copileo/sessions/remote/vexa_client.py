"""Async HTTP client wrapper for the Vexa transcription API.

Provides VexaClient with retry logic (tenacity, 3 attempts, exponential
backoff 1-10s) on transient failures only: connection errors, timeouts and
5xx responses. A 4xx response is a well-formed rejection and is never
retried.

Failures surface as session errors rather than httpx exceptions:
- RemoteUnavailable: transport error, timeout or 5xx after all attempts
- RemoteRejected: 4xx, carrying the provider's detail/message text
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

import httpx
import structlog
from pydantic import ValidationError
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from src.copileo.core.monitoring import remote_requests_total
from src.copileo.sessions.errors import RemoteRejected, RemoteUnavailable
from src.copileo.sessions.schemas import BotDescriptor, RemoteSegment, extract_segments

logger = structlog.get_logger(__name__)


def _is_transient(exc: BaseException) -> bool:
    """Network errors, timeouts and 5xx responses are worth another attempt."""
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return isinstance(exc, httpx.TransportError)


def _error_message(response: httpx.Response) -> str:
    """Pull a human-readable message out of an error response."""
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        for key in ("detail", "message", "error"):
            if payload.get(key):
                value = payload[key]
                return value if isinstance(value, str) else str(value)
    text = response.text.strip()
    return text or f"HTTP {response.status_code}"


def _json_body(response: httpx.Response) -> Any:
    if not response.content:
        return {}
    try:
        return response.json()
    except ValueError:
        return {"raw": response.text}


class VexaClient:
    """Async client for the Vexa REST API.

    Opens a fresh httpx.AsyncClient per call with a per-operation timeout.
    Every request carries the account API key in the ``X-API-Key`` header.

    Args:
        api_key: Vexa API key.
        base_url: API root (default https://api.cloud.vexa.ai).
        max_attempts: Total attempts for transient failures.
        backoff: Exponential backoff multiplier in seconds (0 disables waits).
    """

    # Timeouts per operation type
    TIMEOUT_MUTATE = 30.0  # start/stop/webhook registration
    TIMEOUT_READ = 10.0    # transcript and status reads

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.cloud.vexa.ai",
        max_attempts: int = 3,
        backoff: float = 1.0,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._headers = {
            "X-API-Key": api_key,
            "Content-Type": "application/json",
        }
        self._max_attempts = max_attempts
        self._backoff = backoff

    def _client(self, timeout: float) -> httpx.AsyncClient:
        """Create a new httpx client with specified timeout."""
        return httpx.AsyncClient(
            headers=self._headers,
            timeout=timeout,
        )

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=self._backoff, min=self._backoff, max=10),
            retry=retry_if_exception(_is_transient),
            reraise=True,
        )

    async def _call(
        self,
        operation: str,
        timeout: float,
        send: Callable[[httpx.AsyncClient], Awaitable[httpx.Response]],
    ) -> Any:
        """Run one request with retries and map failures to session errors."""
        try:
            async for attempt in self._retrying():
                with attempt:
                    async with self._client(timeout) as client:
                        response = await send(client)
                        response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status_code = exc.response.status_code
            message = _error_message(exc.response)
            if status_code >= 500:
                remote_requests_total.labels(operation=operation, result="unavailable").inc()
                logger.warning(
                    "vexa.request_unavailable",
                    operation=operation,
                    status_code=status_code,
                    error=message,
                )
                raise RemoteUnavailable(f"{operation}: HTTP {status_code}: {message}") from exc
            remote_requests_total.labels(operation=operation, result="rejected").inc()
            logger.warning(
                "vexa.request_rejected",
                operation=operation,
                status_code=status_code,
                error=message,
            )
            raise RemoteRejected(message, status_code=status_code) from exc
        except httpx.TransportError as exc:
            remote_requests_total.labels(operation=operation, result="unavailable").inc()
            logger.warning(
                "vexa.request_unavailable",
                operation=operation,
                error=str(exc) or type(exc).__name__,
            )
            raise RemoteUnavailable(f"{operation}: {type(exc).__name__}: {exc}") from exc

        remote_requests_total.labels(operation=operation, result="ok").inc()
        return _json_body(response)

    async def start_bot(
        self,
        platform: str,
        native_meeting_id: str,
        passcode: str,
        bot_name: str,
        language: str,
    ) -> Any:
        """Ask Vexa to send a bot into a meeting.

        POST /bots with the meeting coordinates and bot settings.

        Returns:
            Raw provider response (stored on the bot_started event).
        """
        payload = {
            "platform": platform,
            "native_meeting_id": native_meeting_id,
            "passcode": passcode,
            "language": language,
            "bot_name": bot_name,
        }
        data = await self._call(
            "start_bot",
            self.TIMEOUT_MUTATE,
            lambda client: client.post(f"{self._base_url}/bots", json=payload),
        )
        logger.info(
            "vexa.bot_started",
            platform=platform,
            native_meeting_id=native_meeting_id,
        )
        return data

    async def stop_bot(self, platform: str, native_meeting_id: str) -> Any:
        """Remove the bot from a meeting.

        DELETE /bots/{platform}/{native_meeting_id}
        """
        data = await self._call(
            "stop_bot",
            self.TIMEOUT_MUTATE,
            lambda client: client.delete(
                f"{self._base_url}/bots/{platform}/{native_meeting_id}"
            ),
        )
        logger.info(
            "vexa.bot_stopped",
            platform=platform,
            native_meeting_id=native_meeting_id,
        )
        return data

    async def get_transcript(self, platform: str, native_meeting_id: str) -> dict:
        """Fetch the cumulative transcript snapshot as returned by Vexa.

        GET /transcripts/{platform}/{native_meeting_id}

        Returns:
            The raw payload, normally ``{"segments": [...], ...}``.
        """
        data = await self._call(
            "get_transcript",
            self.TIMEOUT_READ,
            lambda client: client.get(
                f"{self._base_url}/transcripts/{platform}/{native_meeting_id}"
            ),
        )
        if isinstance(data, list):
            data = {"segments": data}
        elif not isinstance(data, dict):
            data = {"segments": []}
        logger.debug(
            "vexa.transcript_retrieved",
            platform=platform,
            native_meeting_id=native_meeting_id,
            segment_count=len(data.get("segments") or []),
        )
        return data

    async def fetch_segments(
        self, platform: str, native_meeting_id: str
    ) -> list[RemoteSegment]:
        """Fetch the transcript snapshot and parse its segments in provider order."""
        data = await self.get_transcript(platform, native_meeting_id)
        return extract_segments(data)

    async def list_active_bots(self) -> list[BotDescriptor]:
        """Enumerate bots currently running for this API key.

        GET /bots/status. Entries without a meeting id are skipped.
        """
        data = await self._call(
            "list_active_bots",
            self.TIMEOUT_READ,
            lambda client: client.get(f"{self._base_url}/bots/status"),
        )
        if isinstance(data, dict):
            raw = data.get("bots") or data.get("running_bots") or []
        elif isinstance(data, list):
            raw = data
        else:
            raw = []

        bots: list[BotDescriptor] = []
        for item in raw:
            if not isinstance(item, dict):
                continue
            try:
                bots.append(BotDescriptor.model_validate(item))
            except ValidationError:
                logger.debug("vexa.bot_descriptor_skipped", entry=item)
        logger.debug("vexa.bots_listed", count=len(bots))
        return bots

    async def set_user_webhook(self, webhook_url: str) -> Any:
        """Register the account-level webhook URL with Vexa.

        PUT /user/webhook
        """
        data = await self._call(
            "set_user_webhook",
            self.TIMEOUT_MUTATE,
            lambda client: client.put(
                f"{self._base_url}/user/webhook",
                json={"webhook_url": webhook_url},
            ),
        )
        logger.info("vexa.user_webhook_set", webhook_url=webhook_url)
        return data
