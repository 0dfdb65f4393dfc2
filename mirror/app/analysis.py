from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import httpx

from . import config
from .metrics import Timer, increment

logger = logging.getLogger(__name__)

FIT_QUESTION = "How does this look on me? Be honest!"

SYSTEM_PROMPT = """
You are Naomi, an elite AI fashion stylist.
You are savage, trendy, and extremely helpful.
You have access to the user's closet: {closet}.
You will receive a photo of the user wearing a virtual garment.
Analyze the fit, the style, and how it looks on them.
Be honest but encouraging. If it looks weird, say so (it's a virtual try-on after all).
Keep responses short, punchy, and emoji-rich.
""".strip()

UNREACHABLE_MESSAGE = "Oops! My vision is blurry. Try again?"


@dataclass(frozen=True)
class AnalysisResult:
    text: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def build_fit_messages(image_uri: str) -> List[Dict[str, Any]]:
    return [
        {
            "role": "user",
            "content": [
                {"type": "text", "text": FIT_QUESTION},
                {"type": "image_url", "image_url": {"url": image_uri}},
            ],
        }
    ]


def _error_message(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict) or "error" not in payload:
        return None
    error = payload["error"]
    if isinstance(error, dict):
        return str(error.get("message") or "Failed to fetch response")
    return str(error) if error else "Failed to fetch response"


class AnalysisClient:
    """Fit analysis over an OpenAI-compatible chat completions endpoint.

    Every call is independent, so re-sending the same capture ("ask again")
    only produces a fresh response. Failures come back as
    `AnalysisResult(error=...)` and are never raised.
    """

    def __init__(
        self,
        *,
        base_url: str = config.ANALYSIS_BASE_URL,
        api_key: str = config.ANALYSIS_API_KEY,
        model: str = config.ANALYSIS_MODEL,
        timeout: float = config.ANALYSIS_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self._transport = transport

    async def analyze(self, image_uri: str, context: Optional[Sequence[Any]] = None) -> AnalysisResult:
        increment("analysis_requests", "fit")
        return await self._complete(build_fit_messages(image_uri), context, label="fit")

    async def chat(
        self,
        messages: Sequence[Dict[str, Any]],
        context: Optional[Sequence[Any]] = None,
    ) -> AnalysisResult:
        increment("analysis_requests", "chat")
        return await self._complete(list(messages), context, label="chat")

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _complete(
        self,
        messages: List[Dict[str, Any]],
        context: Optional[Sequence[Any]],
        *,
        label: str,
    ) -> AnalysisResult:
        system = SYSTEM_PROMPT.format(closet=json.dumps(list(context or [])))
        payload = {"model": self.model, "messages": [{"role": "system", "content": system}, *messages]}
        with Timer("analysis_seconds", label):
            try:
                async with httpx.AsyncClient(
                    base_url=self.base_url,
                    headers=self._headers(),
                    timeout=self.timeout,
                    transport=self._transport,
                ) as client:
                    response = await client.post("/chat/completions", json=payload)
            except httpx.RequestError as exc:
                logger.warning("Analysis request failed: %s", exc)
                increment("analysis_failures", "transport")
                return AnalysisResult(error=UNREACHABLE_MESSAGE)

        try:
            data = response.json()
        except ValueError:
            data = None

        message = _error_message(data)
        if message is None and response.is_error:
            message = f"Analysis service returned HTTP {response.status_code}"
        if message is not None:
            logger.warning("Analysis service error (%s): %s", response.status_code, message)
            increment("analysis_failures", "service")
            return AnalysisResult(error=message)

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            content = None
        if isinstance(content, list):
            content = "".join(part.get("text", "") for part in content if isinstance(part, dict))
        if not content:
            increment("analysis_failures", "empty")
            return AnalysisResult(error="The stylist returned an empty response.")
        return AnalysisResult(text=str(content).strip())
