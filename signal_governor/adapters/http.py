import logging
import time
from typing import Any, Dict, Optional

import httpx

from signal_governor.observability import get_logger, sanitize_json_bytes


class LoggedHttpClient:
    """httpx.AsyncClient wrapper that logs every request/response as `<prefix>.request` / `<prefix>.response`."""

    def __init__(
        self,
        base_url: str,
        *,
        prefix: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base = base_url.rstrip("/")
        self.prefix = prefix
        self._logger = get_logger(f"signal_governor.http.{prefix}")
        self._client = httpx.AsyncClient(
            base_url=self.base,
            headers=headers or {},
            timeout=timeout,
            transport=transport,
            event_hooks={"request": [self._log_request], "response": [self._log_response]},
        )

    async def _log_request(self, request: httpx.Request) -> None:
        request.extensions["start_time"] = time.perf_counter()
        self._logger.info(
            f"{self.prefix}.request",
            extra={
                "event": f"{self.prefix}.request",
                "http_method": request.method,
                "http_path": request.url.path,
                "http_query": str(request.url.query, "utf-8") if request.url.query else None,
            },
        )

    async def _log_response(self, response: httpx.Response) -> None:
        start = response.request.extensions.get("start_time")
        duration_ms = int((time.perf_counter() - float(start)) * 1000) if start is not None else None

        include_body = response.status_code >= 400 or self._logger.isEnabledFor(logging.DEBUG)
        body_text = None
        body_truncated = None
        if include_body:
            content = await response.aread()
            if content:
                body_text, body_truncated = sanitize_json_bytes(content, max_chars=2000)

        self._logger.info(
            f"{self.prefix}.response",
            extra={
                "event": f"{self.prefix}.response",
                "http_method": response.request.method,
                "http_path": response.request.url.path,
                "http_status": response.status_code,
                "duration_ms": duration_ms,
                "http_response_body": body_text,
                "http_response_body_truncated": body_truncated,
            },
        )

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._client.request(method, url, **kwargs)
        except httpx.HTTPError:
            self._logger.exception(
                f"{self.prefix}.exception",
                extra={"event": f"{self.prefix}.exception", "http_method": method, "http_path": url},
            )
            raise

    async def aclose(self) -> None:
        await self._client.aclose()
