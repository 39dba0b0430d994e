import asyncio
import re
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from signal_governor.adapters.base import PlatformAdapter, parse_timestamp
from signal_governor.adapters.http import LoggedHttpClient
from signal_governor.adapters.rate_limit import SlidingWindowRateLimiter
from signal_governor.domain import ActivityItem, Cursor, QueuePolicy, SyncTarget, UnitContext
from signal_governor.errors import FetchError
from signal_governor.observability import get_logger
from signal_governor.settings import Settings

SOURCE = "discord"

GUILD_URL_RE = re.compile(r"discord\.com/channels/(\d+)")
# Zero-width and bidi control characters that only pad message length.
INVISIBLE_CHARS_RE = re.compile("[\u200b-\u200f\u202a-\u202e\u2060-\u2064\ufeff]")

DISCORD_EPOCH_MS = 1420070400000
GUILD_TEXT_CHANNEL = 0
MAX_PAGE_SIZE = 100
MAX_REQUESTS_PER_SECOND_PER_CHANNEL = 5
MAX_SERVER_ERROR_RETRIES = 3
MAX_RATE_LIMIT_RETRIES = 5

logger = get_logger(__name__)


def snowflake_from_timestamp(ts: datetime) -> str:
    """Smallest message id Discord could assign at `ts` (naive UTC)."""
    epoch = datetime(1970, 1, 1)
    ms = int((ts - epoch).total_seconds() * 1000)
    return str(max(0, ms - DISCORD_EPOCH_MS) << 22)


def guild_id_from_url(url: Optional[str]) -> Optional[str]:
    if not url:
        return None
    match = GUILD_URL_RE.search(url)
    return match.group(1) if match else None


class DiscordAdapter(PlatformAdapter):
    """Text channels of the project's guild, read through the Discord REST API with a bot token."""

    source = SOURCE
    provisions_shell_accounts = True

    def __init__(
        self,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        token = settings.discord_bot_token.get_secret_value() if settings.discord_bot_token else ""
        self._http = LoggedHttpClient(
            str(settings.discord_api_base_url),
            prefix="discord",
            headers={"Authorization": f"Bot {token}", "Content-Type": "application/json"},
            timeout=settings.http_timeout_seconds,
            transport=transport,
        )
        self._sleep = sleep
        self._limiter = SlidingWindowRateLimiter(MAX_REQUESTS_PER_SECOND_PER_CHANNEL, sleep=sleep)

    def default_policy(self) -> QueuePolicy:
        return QueuePolicy(
            max_concurrent=20,
            timeout_seconds=60,
            max_attempts=3,
            page_size=MAX_PAGE_SIZE,
            max_pages=10,
            head_gap_minutes=60,
            min_content_chars=10,
        )

    async def list_units(self, target: SyncTarget) -> List[UnitContext]:
        guild_id = guild_id_from_url(target.url)
        if not guild_id:
            logger.warning(
                "discord.invalid_guild_url",
                extra={"event": "discord.invalid_guild_url", "project_id": target.project_id, "url": target.url},
            )
            return []
        channels = await self._get_json(f"/guilds/{guild_id}/channels")
        units = []
        for channel in channels or []:
            if channel.get("type") != GUILD_TEXT_CHANNEL:
                continue
            units.append(
                self.make_unit(
                    target,
                    {"guild_id": guild_id, "channel_id": str(channel["id"])},
                    label=channel.get("name"),
                )
            )
        return units

    async def fetch_activity(self, unit: UnitContext, before: Optional[Cursor], limit: int) -> List[ActivityItem]:
        channel_id = unit.params["channel_id"]
        params: Dict[str, Any] = {"limit": min(limit, MAX_PAGE_SIZE)}
        if before is not None:
            params["before"] = before.external_id or snowflake_from_timestamp(before.timestamp)
        await self._limiter.acquire(channel_id)
        messages = await self._get_json(f"/channels/{channel_id}/messages", params=params)
        items = [self._to_item(m) for m in messages or []]
        items.sort(key=lambda i: self.cursor_sort_key(i.cursor), reverse=True)
        return items

    @staticmethod
    def _to_item(message: Dict[str, Any]) -> ActivityItem:
        author = message.get("author") or {}
        return ActivityItem(
            external_id=str(message["id"]),
            content=INVISIBLE_CHARS_RE.sub("", message.get("content") or ""),
            timestamp=parse_timestamp(message["timestamp"]),
            author_id=str(author["id"]) if author.get("id") else None,
            author_name=author.get("username"),
        )

    async def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        server_retries = 0
        rate_limit_retries = 0
        while True:
            try:
                resp = await self._http.request("GET", path, params=params)
            except httpx.HTTPError as exc:
                raise FetchError(f"discord request failed for {path}: {exc}") from exc

            if resp.status_code == 429 and rate_limit_retries < MAX_RATE_LIMIT_RETRIES:
                rate_limit_retries += 1
                retry_after = self._retry_after(resp)
                logger.warning(
                    "discord.rate_limited",
                    extra={
                        "event": "discord.rate_limited",
                        "http_path": path,
                        "retry_after_seconds": retry_after,
                        "global": self._is_global(resp),
                    },
                )
                await self._sleep(retry_after)
                continue

            if 500 <= resp.status_code < 600 and server_retries < MAX_SERVER_ERROR_RETRIES:
                wait = float(2**server_retries)
                server_retries += 1
                logger.warning(
                    "discord.server_error.retry",
                    extra={
                        "event": "discord.server_error.retry",
                        "http_path": path,
                        "http_status": resp.status_code,
                        "attempt": server_retries,
                        "wait_seconds": wait,
                    },
                )
                await self._sleep(wait)
                continue

            if resp.status_code >= 400:
                raise FetchError(
                    f"discord api error for {path}: {resp.status_code} {resp.text[:500]}",
                    status_code=resp.status_code,
                    retryable=resp.status_code == 429 or resp.status_code >= 500,
                )
            return resp.json()

    @staticmethod
    def _retry_after(resp: httpx.Response) -> float:
        try:
            return max(0.0, float(resp.json().get("retry_after", 1.0)))
        except ValueError:
            return float(resp.headers.get("Retry-After", "1") or 1)

    @staticmethod
    def _is_global(resp: httpx.Response) -> bool:
        try:
            return bool(resp.json().get("global", False))
        except ValueError:
            return False

    async def aclose(self) -> None:
        await self._http.aclose()
