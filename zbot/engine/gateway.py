"""Model gateway -- one resilient upstream generate call per invocation.

Wraps GeminiProvider with:
- per-thread ChatSession reuse (created lazily, torn down on error or when
  the active credential changes)
- credential rotation on rate-limit / permission errors, with no delay,
  moving to the next model once every key is limited
- exponential backoff on transient errors, keeping the same credential
- a bounded attempt budget that ends in a failed GatewayResult instead of
  an exception

Rate limits are solved by changing identity, overload by waiting.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import httpx

from zbot.config import Settings
from zbot.engine.credentials import CredentialPool
from zbot.engine.errors import (
    PermissionDeniedError,
    RateLimitError,
    TransientUpstreamError,
    UpstreamError,
)
from zbot.engine.provider import ChatSession, GeminiProvider, HistoryTurn
from zbot.engine.schemas import MediaKind, MediaPart

logger = logging.getLogger(__name__)

_DEFAULT_MIME: dict[MediaKind, str] = {
    MediaKind.IMAGE: "image/jpeg",
    MediaKind.VIDEO: "video/mp4",
    MediaKind.AUDIO: "audio/mpeg",
    MediaKind.FILE: "application/octet-stream",
    MediaKind.YOUTUBE: "video/*",
}


@dataclass
class GatewayResult:
    """Outcome of ModelGateway.generate()."""

    text: str
    success: bool
    error: str | None = None
    rate_limited: bool = False  # True when credentials ran out
    attempts: int = 0


class ModelGateway:
    """Owns the thread -> ChatSession map and the retry policy."""

    def __init__(
        self,
        provider: GeminiProvider,
        pool: CredentialPool,
        settings: Settings,
        media_http: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._provider = provider
        self._pool = pool
        self._settings = settings
        self._media_http = media_http
        self._sleep = sleep
        self._sessions: dict[str, ChatSession] = {}

    @property
    def active_threads(self) -> list[str]:
        return list(self._sessions)

    def has_session(self, thread_id: str) -> bool:
        return thread_id in self._sessions

    def drop_session(self, thread_id: str) -> None:
        if self._sessions.pop(thread_id, None) is not None:
            logger.debug("Chat session for thread %s torn down", thread_id)

    async def generate(
        self,
        thread_id: str | None,
        prompt: str,
        media: list[MediaPart] | None = None,
        history: list[HistoryTurn] | None = None,
    ) -> GatewayResult:
        """Run one upstream turn with retries. Never raises for upstream failures."""
        parts = await self.build_parts(prompt, media)
        max_retries = self._settings.max_retries
        base_delay = self._settings.retry_base_delay_ms / 1000

        last_error: Exception | None = None
        attempt = 0

        for attempt in range(1, max_retries + 1):
            session = self._get_session(thread_id, history)
            try:
                start = time.monotonic()
                text = await self._provider.send(session, parts)
                self._pool.mark_succeeded(session.credential.index)
                if attempt > 1:
                    logger.info("Upstream call succeeded after %d attempts", attempt)
                logger.debug(
                    "Upstream call ok (thread=%s, key #%d, %dms)",
                    thread_id,
                    session.credential.index + 1,
                    int((time.monotonic() - start) * 1000),
                )
                return GatewayResult(text=text, success=True, attempts=attempt)

            except (RateLimitError, PermissionDeniedError) as e:
                last_error = e
                self._teardown(thread_id)
                cooldown = None
                if isinstance(e, PermissionDeniedError):
                    cooldown = self._settings.permission_denied_cooldown_s
                moved = self._pool.report_failure(session.credential, cooldown=cooldown)
                if moved and attempt < max_retries:
                    current = self._pool.current()
                    logger.warning(
                        "%s on key #%d, switched to key #%d/%d (%s) -- retrying immediately",
                        type(e).__name__,
                        session.credential.index + 1,
                        current.index + 1,
                        len(self._pool),
                        current.model or self._settings.model,
                    )
                    continue
                break

            except TransientUpstreamError as e:
                last_error = e
                self._teardown(thread_id)
                if attempt < max_retries:
                    delay = base_delay * 2 ** (attempt - 1)
                    logger.warning(
                        "Upstream error (%s), retry %d/%d in %.1fs: %s",
                        e.status_code or "transient",
                        attempt,
                        max_retries - 1,
                        delay,
                        e,
                    )
                    await self._sleep(delay)
                    continue
                break

            except UpstreamError as e:
                last_error = e
                self._teardown(thread_id)
                break

            except Exception as e:
                logger.exception("Unexpected error during upstream call")
                last_error = e
                self._teardown(thread_id)
                break

        logger.error("Upstream call failed after %d attempt(s): %s", attempt, last_error)
        return GatewayResult(
            text="",
            success=False,
            error=str(last_error) if last_error else "unknown error",
            rate_limited=isinstance(last_error, (RateLimitError, PermissionDeniedError)),
            attempts=attempt,
        )

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def _get_session(self, thread_id: str | None, history: list[HistoryTurn] | None) -> ChatSession:
        credential = self._pool.current()
        if thread_id is None:
            return self._provider.create_session(f"temp-{time.time_ns()}", credential, history)

        session = self._sessions.get(thread_id)
        if session is not None and session.credential != credential:
            logger.debug("Credential or model changed for thread %s, recreating session", thread_id)
            session = None
        if session is None:
            session = self._provider.create_session(thread_id, credential, history)
            self._sessions[thread_id] = session
        return session

    def _teardown(self, thread_id: str | None) -> None:
        if thread_id is not None:
            self.drop_session(thread_id)

    # ------------------------------------------------------------------
    # Input parts
    # ------------------------------------------------------------------

    async def build_parts(self, prompt: str, media: list[MediaPart] | None = None) -> list[dict[str, Any]]:
        """Prompt text plus one part per usable media item."""
        parts: list[dict[str, Any]] = []
        for item in media or []:
            part = await self._media_part(item)
            if part is not None:
                parts.append(part)
        parts.append({"text": prompt})
        return parts

    async def _media_part(self, item: MediaPart) -> dict[str, Any] | None:
        mime = item.mime_type or _DEFAULT_MIME[item.kind]

        if item.kind == MediaKind.YOUTUBE and item.url:
            return {"file_data": {"file_uri": item.url, "mime_type": mime}}

        data = item.data
        if data is None:
            if not item.url:
                logger.warning("Dropping %s media without url or data", item.kind)
                return None
            fetched = await self._fetch(item.url)
            if fetched is None:
                return None
            data, content_type = fetched
            if not item.mime_type and content_type:
                mime = content_type.split(";")[0].strip()

        return {"inline_data": {"mime_type": mime, "data": base64.b64encode(data).decode("ascii")}}

    async def _fetch(self, url: str) -> tuple[bytes, str] | None:
        if self._media_http is None:
            logger.warning("No media client configured, dropping %s", url)
            return None
        try:
            response = await self._media_http.get(
                url, timeout=self._settings.media_fetch_timeout, follow_redirects=True
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Media fetch failed for %s: %s", url, e)
            return None
        return response.content, response.headers.get("content-type", "")
