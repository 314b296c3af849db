from __future__ import annotations

import httpx

from app.config import Settings
from src.polltrend.classifier import ScopeClassifier
from src.polltrend.extractor import PollExtractor
from src.polltrend.fetcher import PollFetcher
from src.polltrend.standards import ElectionCalendar, ScopeTables, load_election_calendar, load_scope_tables


def scope_tables_for(settings: Settings) -> ScopeTables:
    return load_scope_tables(settings.scope_tables_path)


def election_calendar_for(settings: Settings) -> ElectionCalendar:
    return load_election_calendar(settings.election_calendar_path)


def build_extractor(settings: Settings) -> PollExtractor:
    return PollExtractor(
        party=settings.tracked_party,
        party_aliases=settings.tracked_party_aliases,
        tables=scope_tables_for(settings),
    )


def build_classifier(settings: Settings) -> ScopeClassifier:
    return ScopeClassifier(
        scope_tables_for(settings),
        region_mention_threshold=settings.region_mention_threshold,
    )


def build_fetcher(
    settings: Settings,
    extractor: PollExtractor,
    *,
    client: httpx.Client | None = None,
    **overrides,
) -> PollFetcher:
    return PollFetcher(
        base_url=settings.source_base_url,
        feed_url=settings.feed_url,
        user_agent=settings.user_agent,
        request_delay_sec=settings.request_delay_sec,
        request_timeout_sec=settings.request_timeout_sec,
        is_missing_page=extractor.is_missing_page,
        client=client,
        **overrides,
    )
