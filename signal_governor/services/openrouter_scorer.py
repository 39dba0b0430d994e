import asyncio
import json
import re
from typing import Any, Dict, Optional

import httpx

from signal_governor.domain import ActivityWindow, ScoringConfig, ScoringResult
from signal_governor.observability import get_logger, sanitize_json_text
from signal_governor.prompts import RAW_SCORE_PROMPT, SMART_SCORE_PROMPT, SYSTEM_PROMPT, render_user_payload
from signal_governor.services.scoring import Scorer
from signal_governor.settings import Settings

DEFAULT_MAX_CHARS = 20000
MAX_ATTEMPTS = 3

logger = get_logger(__name__)


def _strip_code_fences(text: str) -> str:
    cleaned = (text or "").strip()
    if "```" not in cleaned:
        return cleaned
    match = re.search(r"```(?:json)?\s*(.*?)\s*```", cleaned, flags=re.IGNORECASE | re.DOTALL)
    if match:
        return (match.group(1) or "").strip()
    return cleaned


def _extract_json_object(text: str) -> Optional[Dict[str, Any]]:
    cleaned = _strip_code_fences(text)
    decoder = json.JSONDecoder()
    for idx, ch in enumerate(cleaned):
        if ch != "{":
            continue
        try:
            value, _end = decoder.raw_decode(cleaned[idx:])
        except ValueError:
            continue
        if isinstance(value, dict):
            return value
    return None


class OpenRouterScorer(Scorer):
    """Scores activity windows with a chat-completions model on OpenRouter."""

    def __init__(
        self,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        temperature: float = 0.2,
    ) -> None:
        self._api_key = settings.openrouter_api_key.get_secret_value() if settings.openrouter_api_key else None
        self._model = settings.openrouter_model
        self._base_url = str(settings.openrouter_base_url).rstrip("/")
        self._timeout = settings.http_timeout_seconds
        self._transport = transport
        self._temperature = temperature
        self._semaphore = asyncio.Semaphore(max(1, settings.llm_concurrency))

    async def score(self, window: ActivityWindow, config: ScoringConfig) -> ScoringResult:
        if not self._api_key or not self._model:
            return ScoringResult(error="missing_openrouter_config", model=self._model)

        if window.kind == "raw" and not window.activity:
            return ScoringResult(value=0.0, summary=f"No activity in the past {config.previous_days} days")

        if window.kind == "smart":
            prompt = SMART_SCORE_PROMPT.format(max_value=config.max_value, previous_days=config.previous_days)
        else:
            prompt = RAW_SCORE_PROMPT.format(day=window.day.isoformat(), source=config.source, max_value=config.max_value)
        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {
                "role": "user",
                "content": f"{prompt}\n\n"
                + render_user_payload(config.user_id, window.activity, config.max_chars or DEFAULT_MAX_CHARS),
            },
        ]

        data = await self._complete(messages)
        if data is None:
            return ScoringResult(error="openrouter_request_failed", model=self._model)

        content = (data.get("choices", [{}])[0].get("message", {}).get("content") or "").strip()
        parsed = _extract_json_object(content)
        if parsed is None:
            body_text, _ = sanitize_json_text(content, max_chars=500)
            logger.warning(
                "openrouter.unparseable",
                extra={"event": "openrouter.unparseable", "openrouter_model": self._model, "content": body_text},
            )
            return ScoringResult(error="unparseable_response", model=self._model)

        value = parsed.get("value")
        usage = data.get("usage") or {}
        return ScoringResult(
            value=float(value) if isinstance(value, (int, float)) else None,
            summary=parsed.get("summary"),
            description=parsed.get("description"),
            request_id=data.get("id"),
            model=data.get("model") or self._model,
            prompt_tokens=usage.get("prompt_tokens"),
            completion_tokens=usage.get("completion_tokens"),
        )

    async def _complete(self, messages: list) -> Optional[Dict[str, Any]]:
        async with self._semaphore:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                backoff = 1.0
                for attempt in range(1, MAX_ATTEMPTS + 1):
                    try:
                        resp = await client.post(
                            f"{self._base_url}/chat/completions",
                            headers={"Authorization": f"Bearer {self._api_key}", "Content-Type": "application/json"},
                            json={"model": self._model, "messages": messages, "temperature": self._temperature},
                        )
                    except httpx.HTTPError:
                        logger.exception(
                            "openrouter.exception",
                            extra={"event": "openrouter.exception", "openrouter_model": self._model, "attempt": attempt},
                        )
                    else:
                        if resp.status_code == 200:
                            return resp.json()
                        body_text, body_truncated = sanitize_json_text(resp.text, max_chars=2000)
                        logger.warning(
                            "openrouter.error",
                            extra={
                                "event": "openrouter.error",
                                "openrouter_status": resp.status_code,
                                "openrouter_body": body_text,
                                "openrouter_body_truncated": body_truncated,
                                "openrouter_model": self._model,
                                "attempt": attempt,
                            },
                        )
                        if resp.status_code < 500 and resp.status_code != 429:
                            return None
                    if attempt < MAX_ATTEMPTS:
                        await asyncio.sleep(backoff)
                        backoff = min(backoff * 2, 4.0)
        return None
