from __future__ import annotations

from datetime import date
import re
from typing import Iterable

from bs4 import BeautifulSoup

from .contracts import PollDraft, ScopeEvidence
from .errors import ParseFailure
from .normalization import normalize_percentage, normalize_query_value
from .standards import ScopeTables, load_scope_tables, token_pattern

NORWEGIAN_MONTHS = {
    "januar": 1,
    "februar": 2,
    "mars": 3,
    "april": 4,
    "mai": 5,
    "juni": 6,
    "juli": 7,
    "august": 8,
    "september": 9,
    "oktober": 10,
    "november": 11,
    "desember": 12,
}


def _safe_date(year: int, month: int, day: int) -> date | None:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _cleanup_space(value: str) -> str:
    return re.sub(r"\s+", " ", value).strip()


class PollExtractor:
    _NUMERIC_DATE_RE = re.compile(r"(?<!\d)(\d{1,2})\.(\d{1,2})\.(\d{4})(?!\d)")
    _LONG_DATE_RE = re.compile(r"(?<!\d)(\d{1,2})\.\s*([^\W\d_]+)\s*(\d{4})(?!\d)")

    def __init__(
        self,
        *,
        party: str = "MDG",
        party_aliases: Iterable[str] = ("miljøpartiet",),
        tables: ScopeTables | None = None,
    ) -> None:
        self.party = party
        self.party_aliases = tuple(alias.lower() for alias in party_aliases if alias)
        self.tables = tables or load_scope_tables()
        self._party_param_re = re.compile(
            r"(?<![A-Za-z0-9_])" + re.escape(party) + r"=(\d{1,3}(?:\.\d+)?)",
            flags=re.IGNORECASE,
        )
        self._region_patterns = [(token, token_pattern(token)) for token in self.tables.region_tokens()]

    def is_missing_page(self, html: str) -> bool:
        lowered = html.lower()
        return any(marker in lowered for marker in self.tables.missing_page_markers)

    def extract(self, html: str, source_ref: str) -> PollDraft | None:
        if self.is_missing_page(html):
            return None

        soup = BeautifulSoup(html, "html.parser")
        title = self._title(soup)
        body_text = self._body_text(soup)

        poll_date = self.extract_date(soup, body_text=body_text, title=title)
        if poll_date is None:
            raise ParseFailure("date", source_ref)

        percentage = self.extract_percentage(soup)
        if percentage is None:
            raise ParseFailure("percentage", source_ref, detail=f"no value for {self.party}")

        pollster = self.extract_pollster(title)
        evidence = self.harvest_evidence(soup, body_text=body_text, title=title, pollster=pollster)
        return PollDraft(
            source_ref=source_ref,
            date=poll_date,
            percentage=percentage,
            pollster=pollster,
            evidence=evidence,
        )

    def extract_date(self, soup: BeautifulSoup, *, body_text: str, title: str) -> date | None:
        blockquote = soup.find("blockquote")
        if blockquote is not None:
            for match in self._NUMERIC_DATE_RE.finditer(blockquote.get_text(" ")):
                day, month, year = (int(part) for part in match.groups())
                parsed = _safe_date(year, month, day)
                if parsed is not None:
                    return parsed

        return self._long_form_date(body_text) or self._long_form_date(title)

    def extract_percentage(self, soup: BeautifulSoup) -> float | None:
        for anchor in soup.find_all("a", href=True):
            value = self._party_param_value(anchor["href"])
            if value is not None:
                return value

        for script in soup.find_all("script"):
            value = self._party_param_value(script.string or script.get_text())
            if value is not None:
                return value

        return self._results_table_value(soup)

    def extract_pollster(self, title: str) -> str:
        text = title.strip()
        lowered = text.lower()
        for prefix in self.tables.site_title_prefixes:
            if lowered.startswith(prefix.lower()):
                text = text[len(prefix):]
                break
        leading = text.split(",", 1)[0].strip()
        return leading or "Unknown"

    def harvest_evidence(self, soup: BeautifulSoup, *, body_text: str, title: str, pollster: str) -> ScopeEvidence:
        free_text = f"{title} {body_text}".lower()
        return ScopeEvidence(
            area_field=self._area_field(soup),
            national_marker=self._has_national_marker(soup, body_text=body_text, title=title),
            region_mentions=self._region_mentions(free_text),
            non_national_region=self._non_national_region(free_text),
            pollster=pollster,
        )

    def _title(self, soup: BeautifulSoup) -> str:
        if soup.title is None:
            return ""
        return _cleanup_space(soup.title.get_text(" "))

    def _body_text(self, soup: BeautifulSoup) -> str:
        root = soup.body or soup
        return _cleanup_space(root.get_text(" "))

    def _long_form_date(self, text: str) -> date | None:
        for match in self._LONG_DATE_RE.finditer(text):
            day, month_name, year = match.groups()
            month = NORWEGIAN_MONTHS.get(month_name.lower())
            if month is None:
                continue
            parsed = _safe_date(int(year), month, int(day))
            if parsed is not None:
                return parsed
        return None

    def _party_param_value(self, text: str | None) -> float | None:
        if not text:
            return None
        for match in self._party_param_re.finditer(text):
            value = normalize_query_value(match.group(1))
            if value is not None:
                return value
        return None

    def _is_party_header(self, text: str) -> bool:
        lowered = text.strip().lower()
        if not lowered:
            return False
        if lowered == self.party.lower():
            return True
        return any(alias in lowered for alias in self.party_aliases)

    def _results_table_value(self, soup: BeautifulSoup) -> float | None:
        for table in soup.find_all("table"):
            column: int | None = None
            for row in table.find_all("tr"):
                cells = row.find_all(["th", "td"])
                if column is None:
                    for idx, cell in enumerate(cells):
                        if cell.name == "th" and self._is_party_header(cell.get_text(" ")):
                            column = idx
                            break
                    continue
                if len(cells) <= column or cells[column].name != "td":
                    continue
                value = normalize_percentage(cells[column].get_text(" "))
                if value is not None:
                    return value
        return None

    def _area_field(self, soup: BeautifulSoup) -> str | None:
        labels = set(self.tables.area_field_labels)
        for row in soup.find_all("tr"):
            cells = row.find_all(["td", "th"])
            if len(cells) < 2:
                continue
            label = cells[0].get_text(" ", strip=True).lower().rstrip(":").strip()
            if label in labels:
                value = _cleanup_space(cells[1].get_text(" "))
                return value or None
        return None

    def _region_mentions(self, free_text: str) -> dict[str, int]:
        mentions: dict[str, int] = {}
        remaining = free_text
        for token, pattern in self._region_patterns:
            hits = len(pattern.findall(remaining))
            if not hits:
                continue
            canonical = self.tables.regions[token]
            mentions[canonical] = mentions.get(canonical, 0) + hits
            # Mask matched spans so shorter tokens ("trøndelag") do not recount "sør-trøndelag".
            remaining = pattern.sub(" ", remaining)
        return mentions

    def _has_national_marker(self, soup: BeautifulSoup, *, body_text: str, title: str) -> bool:
        """``hele landet`` in the title or a table header, or in a listing line such as ``, hele landet /``."""
        marker = self.tables.national_marker
        if marker in title.lower():
            return True
        lowered_body = body_text.lower()
        if any(pattern in lowered_body for pattern in self.tables.national_marker_patterns):
            return True
        return any(marker in header.get_text(" ").lower() for header in soup.find_all("th"))

    def _non_national_region(self, free_text: str) -> str | None:
        for token in self.tables.region_tokens():
            for template in self.tables.non_national_marker_patterns:
                if template.format(region=token) in free_text:
                    return self.tables.regions[token]
        return None
