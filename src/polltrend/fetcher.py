from __future__ import annotations

import logging
import time
from typing import Callable, Iterable, Iterator

import feedparser
import httpx

from .contracts import FetchOutcome, SOURCE_ID_PARAM, poll_id_from_ref
from .errors import NetworkFailure

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://www.pollofpolls.no"
DEFAULT_FEED_URL = "https://www.pollofpolls.no/rss_maling.php"
DEFAULT_USER_AGENT = "PollTrendCollector/0.1"

ShouldStopFn = Callable[[], bool]


def _is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


class PollFetcher:
    """Throttled HTTP access to poll detail pages and the poll feed.

    Every request (retries included) waits until ``request_delay_sec`` has
    passed since the previous one. A failed request is retried once.
    """

    def __init__(
        self,
        *,
        base_url: str = DEFAULT_BASE_URL,
        feed_url: str = DEFAULT_FEED_URL,
        user_agent: str = DEFAULT_USER_AGENT,
        request_delay_sec: float = 1.0,
        request_timeout_sec: float = 12.0,
        max_attempts: int = 2,
        is_missing_page: Callable[[str], bool] | None = None,
        client: httpx.Client | None = None,
        sleep_fn: Callable[[float], None] = time.sleep,
        clock_fn: Callable[[], float] = time.monotonic,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.feed_url = feed_url
        self.user_agent = user_agent
        self.request_delay_sec = max(0.0, request_delay_sec)
        self.request_timeout_sec = max(0.1, request_timeout_sec)
        self.max_attempts = max(1, max_attempts)
        self.is_missing_page = is_missing_page
        self._owns_client = client is None
        self._client = client or httpx.Client(
            headers={"User-Agent": user_agent},
            timeout=self.request_timeout_sec,
            follow_redirects=True,
        )
        self._sleep = sleep_fn
        self._clock = clock_fn
        self._last_request_at: float | None = None
        self.stop_reason: str | None = None
        self.skipped_known: list[str] = []

    def __enter__(self) -> "PollFetcher":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def detail_url(self, poll_id: int | str) -> str:
        return f"{self.base_url}/?cmd=Maling&{SOURCE_ID_PARAM}={poll_id}"

    def canonical_detail_url(self, link: str) -> str:
        link = link.strip()
        poll_id = poll_id_from_ref(link)
        if poll_id.isdigit():
            return self.detail_url(poll_id)
        return link

    def fetch(self, ref: str, url: str | None = None) -> FetchOutcome:
        target = url or self.detail_url(ref)
        status = "network_failure"
        error: str | None = None
        attempts = 0

        for attempt in range(1, self.max_attempts + 1):
            attempts = attempt
            retryable = True
            try:
                response = self._get(target)
            except httpx.TimeoutException as exc:
                status, error = "timeout", f"{exc.__class__.__name__}: {exc}"
            except httpx.HTTPError as exc:
                status, error = "network_failure", f"{exc.__class__.__name__}: {exc}"
            else:
                if response.status_code == 404:
                    return FetchOutcome(ref=ref, url=target, status="not_found", attempts=attempt)
                if response.is_success:
                    body = response.text
                    if self.is_missing_page is not None and self.is_missing_page(body):
                        return FetchOutcome(ref=ref, url=target, status="not_found", attempts=attempt)
                    return FetchOutcome(ref=ref, url=target, status="ok", body=body, attempts=attempt)
                status, error = "network_failure", f"http_status={response.status_code}"
                retryable = _is_retryable_status(response.status_code)

            if not retryable or attempt >= self.max_attempts:
                break
            logger.info("fetch_retry ref=%s status=%s error=%s", ref, status, error)

        logger.warning("fetch_failed ref=%s status=%s attempts=%s error=%s", ref, status, attempts, error)
        return FetchOutcome(ref=ref, url=target, status=status, error=error, attempts=attempts)

    def fetch_text(self, url: str) -> str:
        outcome = self.fetch(url, url)
        if outcome.status == "ok" and outcome.body is not None:
            return outcome.body
        raise NetworkFailure(
            url,
            outcome.error or outcome.status,
            timed_out=outcome.status == "timeout",
        )

    def scan_sequential(
        self,
        *,
        start_id: int,
        max_scan_length: int | None = None,
        max_consecutive_misses: int = 30,
        should_stop: ShouldStopFn | None = None,
    ) -> Iterator[FetchOutcome]:
        """Probe ``start_id``, ``start_id + 1``, ... until a stop condition holds.

        ``should_stop`` is checked after the consumer has handled each outcome.
        The reason for stopping is left in ``stop_reason``.
        """
        self.stop_reason = None
        misses = 0
        scanned = 0
        poll_id = max(1, start_id)

        while max_scan_length is None or scanned < max_scan_length:
            outcome = self.fetch(str(poll_id), self.detail_url(poll_id))
            scanned += 1
            poll_id += 1
            misses = misses + 1 if outcome.is_miss else 0
            yield outcome

            if should_stop is not None and should_stop():
                self.stop_reason = "cancelled"
                return
            if misses >= max_consecutive_misses:
                logger.info("scan_stop reason=miss_limit last_probed=%s misses=%s", poll_id - 1, misses)
                self.stop_reason = "miss_limit"
                return

        self.stop_reason = "scan_length"

    def feed_refs(self, keywords: Iterable[str] = ()) -> list[str]:
        """Detail-page links listed in the feed, deduplicated, in feed order."""
        wanted = [keyword.lower() for keyword in keywords if keyword]
        parsed = feedparser.parse(self.fetch_text(self.feed_url))
        if parsed.get("bozo") and not parsed.entries:
            raise NetworkFailure(self.feed_url, f"unreadable feed: {parsed.get('bozo_exception')}")

        refs: list[str] = []
        seen: set[str] = set()
        for entry in parsed.entries:
            link = entry.get("link")
            if not link:
                continue
            title = (entry.get("title") or "").lower()
            if wanted and not any(keyword in title for keyword in wanted):
                continue
            canonical = self.canonical_detail_url(link)
            if canonical in seen:
                continue
            seen.add(canonical)
            refs.append(canonical)
        return refs

    def scan_feed(
        self,
        *,
        keywords: Iterable[str] = (),
        skip_ids: set[str] | None = None,
        should_stop: ShouldStopFn | None = None,
    ) -> Iterator[FetchOutcome]:
        """Fetch each feed entry not in ``skip_ids``; skipped ids are left in ``skipped_known``."""
        self.stop_reason = None
        self.skipped_known = []
        for url in self.feed_refs(keywords):
            poll_id = poll_id_from_ref(url)
            if skip_ids and poll_id in skip_ids:
                self.skipped_known.append(poll_id)
                continue
            yield self.fetch(poll_id, url)
            if should_stop is not None and should_stop():
                self.stop_reason = "cancelled"
                return
        self.stop_reason = "feed_exhausted"

    def _get(self, url: str) -> httpx.Response:
        self._wait_for_delay()
        try:
            return self._client.get(url, timeout=self.request_timeout_sec)
        finally:
            self._last_request_at = self._clock()

    def _wait_for_delay(self) -> None:
        if self._last_request_at is None:
            return
        wait_for = self.request_delay_sec - (self._clock() - self._last_request_at)
        if wait_for > 0:
            self._sleep(wait_for)
