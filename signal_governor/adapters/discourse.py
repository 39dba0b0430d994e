import asyncio
import html
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import quote

import httpx

from signal_governor.adapters.base import PlatformAdapter, parse_timestamp
from signal_governor.adapters.http import LoggedHttpClient
from signal_governor.db import SessionFactory, session_scope
from signal_governor.domain import ActivityItem, Cursor, QueuePolicy, SyncTarget, UnitContext
from signal_governor.errors import FetchError
from signal_governor.models import PlatformAccount
from signal_governor.observability import get_logger
from signal_governor.settings import Settings

SOURCE = "discourse_forum"

MAX_ACTIVITY_CHARS = 5000
REQUEST_DELAY_SECONDS = 0.5

_TAG_RE = re.compile(r"<[^>]+>")
_BLOCK_TAG_RE = re.compile(r"</?(p|br|div|li|blockquote|h[1-6])[^>]*>", re.IGNORECASE)
_WS_RE = re.compile(r"[ \t]+")
_BLANK_LINES_RE = re.compile(r"\n{3,}")

logger = get_logger(__name__)


def html_to_text(value: Optional[str]) -> str:
    if not value:
        return ""
    text = _BLOCK_TAG_RE.sub("\n", value)
    text = _TAG_RE.sub("", text)
    text = html.unescape(text)
    text = _WS_RE.sub(" ", text)
    text = _BLANK_LINES_RE.sub("\n\n", text)
    return text.strip()


class DiscourseForumAdapter(PlatformAdapter):
    """One unit per linked forum account; activity comes from the user's public activity feed."""

    source = SOURCE

    def __init__(
        self,
        settings: Settings,
        session_factory: SessionFactory,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._settings = settings
        self._session_factory = session_factory
        self._transport = transport
        self._sleep = sleep
        self._clients: Dict[str, LoggedHttpClient] = {}

    def default_policy(self) -> QueuePolicy:
        return QueuePolicy(
            max_concurrent=10,
            timeout_seconds=32,
            max_attempts=2,
            page_size=30,
            max_pages=1,
            head_gap_minutes=60,
            min_content_chars=0,
        )

    async def list_units(self, target: SyncTarget) -> List[UnitContext]:
        if not target.url:
            logger.warning(
                "forum.missing_url",
                extra={"event": "forum.missing_url", "project_id": target.project_id},
            )
            return []
        with session_scope(self._session_factory) as db:
            rows = (
                db.query(PlatformAccount.external_user_id, PlatformAccount.external_username)
                .filter(PlatformAccount.source == self.source, PlatformAccount.project_id == target.project_id)
                .all()
            )
        units = []
        for external_user_id, username in rows:
            parts = {"base_url": target.url.rstrip("/"), "username": username or external_user_id}
            units.append(self.make_unit(target, parts, label=username))
        return units

    async def fetch_activity(self, unit: UnitContext, before: Optional[Cursor], limit: int) -> List[ActivityItem]:
        base_url = unit.params["base_url"]
        username = unit.params["username"]
        client = self._client_for(base_url)
        # The forum has no per-user rate limit headers; space requests like the original importer.
        await self._sleep(REQUEST_DELAY_SECONDS)
        try:
            resp = await client.request("GET", f"/u/{quote(username)}/activity.json")
        except httpx.HTTPError as exc:
            raise FetchError(f"forum request failed for {username}: {exc}") from exc
        if resp.status_code == 404:
            logger.info("forum.user_not_found", extra={"event": "forum.user_not_found", "username": username})
            return []
        if resp.status_code >= 400:
            raise FetchError(
                f"forum api error for {username}: {resp.status_code}",
                status_code=resp.status_code,
                retryable=resp.status_code >= 500,
            )

        items = [self._to_item(action, username) for action in self._actions(resp.json())]
        if before is not None:
            items = [i for i in items if self.cursor_sort_key(i.cursor) < self.cursor_sort_key(before)]
        items.sort(key=lambda i: self.cursor_sort_key(i.cursor), reverse=True)
        return items[:limit]

    @staticmethod
    def _actions(payload: Any) -> List[Dict[str, Any]]:
        if isinstance(payload, list):
            return payload
        if isinstance(payload, dict) and isinstance(payload.get("user_actions"), list):
            return payload["user_actions"]
        return []

    @staticmethod
    def _to_item(action: Dict[str, Any], username: str) -> ActivityItem:
        body = action.get("cooked") or action.get("excerpt") or ""
        return ActivityItem(
            external_id=str(action.get("post_id") or action["id"]),
            content=html_to_text(body)[:MAX_ACTIVITY_CHARS],
            timestamp=parse_timestamp(action["created_at"]),
            author_id=username,
            author_name=username,
        )

    def _client_for(self, base_url: str) -> LoggedHttpClient:
        client = self._clients.get(base_url)
        if client is None:
            client = LoggedHttpClient(
                base_url,
                prefix="forum",
                headers={"Accept": "application/json"},
                timeout=self._settings.http_timeout_seconds,
                transport=self._transport,
            )
            self._clients[base_url] = client
        return client

    async def aclose(self) -> None:
        for client in self._clients.values():
            await client.aclose()
        self._clients.clear()
