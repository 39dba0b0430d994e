from typing import Dict, Optional

from signal_governor.adapters.base import PlatformAdapter
from signal_governor.adapters.discord import DiscordAdapter
from signal_governor.adapters.discourse import DiscourseForumAdapter
from signal_governor.db import SessionFactory
from signal_governor.errors import UnknownSourceError
from signal_governor.settings import Settings

SOURCES = (DiscordAdapter.source, DiscourseForumAdapter.source)


def build_adapter(source: str, settings: Settings, session_factory: SessionFactory) -> PlatformAdapter:
    if source == DiscordAdapter.source:
        return DiscordAdapter(settings)
    if source == DiscourseForumAdapter.source:
        return DiscourseForumAdapter(settings, session_factory)
    raise UnknownSourceError(source)


def resolve_adapter(
    source: str,
    settings: Settings,
    session_factory: SessionFactory,
    overrides: Optional[Dict[str, PlatformAdapter]] = None,
) -> PlatformAdapter:
    if overrides and source in overrides:
        return overrides[source]
    return build_adapter(source, settings, session_factory)
