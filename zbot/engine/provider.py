"""Gemini REST provider -- chat sessions over direct httpx calls.

A ChatSession is a client-side handle: the credential it was opened with
plus the `contents` history sent with every request. The provider never
retries; it raises a classified UpstreamError and leaves retry policy to
the ModelGateway.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import httpx

from zbot.config import Settings
from zbot.engine.credentials import Credential
from zbot.engine.errors import (
    FatalUpstreamError,
    TransientUpstreamError,
    classify_http_error,
)

logger = logging.getLogger(__name__)


@dataclass
class HistoryTurn:
    """A single turn in a thread's history."""

    role: str  # "user" or "model"
    text: str


@dataclass
class ChatSession:
    """Provider-side conversation handle for one thread."""

    thread_id: str
    credential: Credential
    contents: list[dict[str, Any]] = field(default_factory=list)


class GeminiProvider:
    """Calls models/{model}:generateContent with a per-session history."""

    def __init__(
        self,
        settings: Settings,
        system_prompt: str | Callable[[], str] = "",
    ) -> None:
        self._settings = settings
        self._system_prompt = system_prompt
        self._http: httpx.AsyncClient | None = None

    async def start(self) -> None:
        settings = self._settings
        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(max_connections=10, max_keepalive_connections=5)
        self._http = httpx.AsyncClient(
            base_url=settings.api_base_url,
            headers={"content-type": "application/json"},
            timeout=timeout,
            limits=limits,
        )
        logger.info("Gemini provider initialized (model: %s)", settings.model)

    async def close(self) -> None:
        if self._http:
            await self._http.aclose()
            self._http = None

    def create_session(
        self,
        thread_id: str,
        credential: Credential,
        prior_history: list[HistoryTurn] | None = None,
    ) -> ChatSession:
        contents = [
            {"role": turn.role, "parts": [{"text": turn.text}]}
            for turn in (prior_history or [])
            if turn.text
        ]
        return ChatSession(thread_id=thread_id, credential=credential, contents=contents)

    def system_prompt(self) -> str:
        if callable(self._system_prompt):
            return self._system_prompt()
        return self._system_prompt

    def _build_payload(self, contents: list[dict[str, Any]]) -> dict[str, Any]:
        settings = self._settings
        payload: dict[str, Any] = {
            "contents": contents,
            "generationConfig": {
                "temperature": settings.temperature,
                "topP": settings.top_p,
                "maxOutputTokens": settings.max_output_tokens,
            },
        }
        system = self.system_prompt()
        if system:
            payload["systemInstruction"] = {"parts": [{"text": system}]}
        return payload

    async def send(self, session: ChatSession, parts: list[dict[str, Any]]) -> str:
        """Send one user turn; on success both turns join the session history."""
        if not self._http:
            raise RuntimeError("httpx client not initialized -- call start() first")

        user_content = {"role": "user", "parts": parts}
        payload = self._build_payload([*session.contents, user_content])

        try:
            model = session.credential.model or self._settings.model
            response = await self._http.post(
                f"/v1beta/models/{model}:generateContent",
                json=payload,
                headers={"x-goog-api-key": session.credential.key},
            )
        except httpx.TimeoutException as e:
            raise TransientUpstreamError(f"API request timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientUpstreamError(f"Transport error: {e}") from e

        if response.status_code != 200:
            try:
                body = response.json()
            except ValueError:
                body = None
            raise classify_http_error(response.status_code, body, response.text)

        text = self._extract_text(response.json())
        session.contents.append(user_content)
        session.contents.append({"role": "model", "parts": [{"text": text}]})
        # Turns are appended in user/model pairs, so an even cap keeps roles alternating
        limit = self._settings.max_history_messages
        if len(session.contents) > limit:
            del session.contents[: len(session.contents) - limit + limit % 2]
        return text

    @staticmethod
    def _extract_text(data: dict[str, Any]) -> str:
        candidates = data.get("candidates") or []
        if not candidates:
            reason = (data.get("promptFeedback") or {}).get("blockReason", "no candidates")
            raise FatalUpstreamError(f"Upstream returned no candidates: {reason}")
        parts = (candidates[0].get("content") or {}).get("parts") or []
        # Skip thought summaries, keep only the visible answer
        return "".join(p.get("text", "") for p in parts if not p.get("thought"))
