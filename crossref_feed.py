"""CrossRef works search and candidate collection."""

from __future__ import annotations

import html
import logging
import os
import re
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date
from typing import Any

import requests

from models import CandidateRecord
from queries import KEYWORD_FIELD, QueryCategory

CROSSREF_API_URL = "https://api.crossref.org/works"
CROSSREF_MAILTO = os.getenv("CROSSREF_MAILTO", "contact@compassid.org")
CROSSREF_RATE_LIMIT_SECONDS = float(os.getenv("CROSSREF_RATE_LIMIT_SECONDS", "1.0"))
REQUEST_TIMEOUT_SECONDS = 30
PAGE_SIZE = 100

MIN_VALID_YEAR = 1500
MAX_VALID_YEAR = 2100

# Tried in order; the first with a usable year wins.
_DATE_FIELDS = ("published", "published-print", "published-online", "issued", "created")

_TAG_PATTERN = re.compile(r"<[^>]+>")
_SPACE_PATTERN = re.compile(r"\s+")

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class SearchPage:
    items: list[dict[str, Any]]
    total_results: int = 0


@dataclass(slots=True)
class CollectionSession:
    """Deduplicated working set for one collection phase, keyed by DOI.

    Owned by the run controller and handed to `collect()` for the duration of
    the sweep. Inserting an existing key overwrites the previous record.
    """

    target: int
    records: dict[str, CandidateRecord] = field(default_factory=dict)
    searches: int = 0
    items_fetched: int = 0
    rejected_items: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)

    def add(self, record: CandidateRecord) -> None:
        self.records[record.external_id] = record

    @property
    def target_reached(self) -> bool:
        return len(self.records) >= self.target

    def values(self) -> list[CandidateRecord]:
        return list(self.records.values())


def search_crossref(
    query: str,
    *,
    field_name: str = KEYWORD_FIELD,
    rows: int = PAGE_SIZE,
    offset: int = 0,
    from_date: date | None = None,
    until_date: date | None = None,
    session: requests.Session | None = None,
) -> SearchPage:
    """Fetch one page of journal articles with abstracts. Raises on HTTP errors."""
    filters: list[str] = []
    if from_date is not None:
        filters.append(f"from-pub-date:{from_date.isoformat()}")
    if until_date is not None:
        filters.append(f"until-pub-date:{until_date.isoformat()}")
    filters += ["has-abstract:true", "type:journal-article"]

    params = {
        field_name: query,
        "rows": rows,
        "offset": offset,
        "filter": ",".join(filters),
        "mailto": CROSSREF_MAILTO,
    }
    headers = {"User-Agent": f"COMPASSID-Importer/1.0 (mailto:{CROSSREF_MAILTO})"}

    getter = session.get if session is not None else requests.get
    response = getter(CROSSREF_API_URL, params=params, headers=headers, timeout=REQUEST_TIMEOUT_SECONDS)
    response.raise_for_status()
    return _parse_search_payload(response.json())


def _parse_search_payload(payload: Any) -> SearchPage:
    if not isinstance(payload, dict) or not isinstance(payload.get("message"), dict):
        raise RuntimeError("Unexpected CrossRef payload shape: expected an object with 'message'")

    message = payload["message"]
    items = message.get("items") or []
    if not isinstance(items, list):
        raise RuntimeError("Unexpected CrossRef payload shape: 'items' is not a list")

    return SearchPage(
        items=[item for item in items if isinstance(item, dict)],
        total_results=int(message.get("total-results") or 0),
    )


def normalize_crossref_item(item: dict[str, Any]) -> CandidateRecord | None:
    """Convert a CrossRef work into a CandidateRecord; None when it has no DOI."""
    doi = _as_str(item.get("DOI"))
    if not doi:
        return None

    year, published_on = resolve_publication_date(item)
    citations = item.get("is-referenced-by-count")

    return CandidateRecord(
        external_id=doi,
        title=_first_str(item.get("title")) or "",
        abstract=_clean_abstract(item.get("abstract")),
        authors=_author_names(item.get("author")),
        publication_year=year,
        publication_date=published_on,
        venue=_first_str(item.get("container-title")),
        citation_count=citations if isinstance(citations, int) and citations > 0 else 0,
        url=f"https://doi.org/{doi}",
    )


def resolve_publication_date(item: dict[str, Any]) -> tuple[int | None, date | None]:
    """Best-effort (year, date) from CrossRef date-parts.

    Missing month/day default to 1; an impossible month/day falls back to
    January 1st; a year outside the valid range rejects the date entirely.
    """
    for name in _DATE_FIELDS:
        block = item.get(name)
        if not isinstance(block, dict):
            continue
        date_parts = block.get("date-parts")
        if not isinstance(date_parts, list) or not date_parts or not isinstance(date_parts[0], list):
            continue

        parts = date_parts[0]
        year = parts[0] if parts and isinstance(parts[0], int) else None
        if year is None or not MIN_VALID_YEAR <= year <= MAX_VALID_YEAR:
            continue

        month = parts[1] if len(parts) > 1 and isinstance(parts[1], int) else 1
        day = parts[2] if len(parts) > 2 and isinstance(parts[2], int) else 1
        try:
            return year, date(year, month, day)
        except ValueError:
            return year, date(year, 1, 1)

    return None, None


def collect(
    session: CollectionSession,
    plan: list[QueryCategory],
    *,
    from_date: date | None = None,
    until_date: date | None = None,
    flush: Callable[[list[CandidateRecord]], Any] | None = None,
    page_size: int = PAGE_SIZE,
    request_delay: float = CROSSREF_RATE_LIMIT_SECONDS,
) -> CollectionSession:
    """Sweep every category of `plan` into `session` until the target is reached.

    `flush` receives the whole working set after each category so a crash loses
    at most one category of progress. Failures from `flush` propagate.
    """
    http = requests.Session()
    try:
        for category in plan:
            LOGGER.info("Searching %s (%s queries)", category.name, len(category.queries))

            for query in category.queries:
                fetched = _sweep_query(
                    session,
                    http,
                    query,
                    category,
                    from_date=from_date,
                    until_date=until_date,
                    page_size=page_size,
                    request_delay=request_delay,
                )
                LOGGER.info(
                    "  - %r: %s items (%s unique total)", query, fetched, len(session.records)
                )
                if session.target_reached:
                    break

            if flush is not None:
                flush(session.values())

            if session.target_reached:
                LOGGER.info("Reached target of %s candidates. Stopping search.", session.target)
                break
    finally:
        http.close()

    LOGGER.info(
        "Collection complete: searches=%s fetched=%s unique=%s rejected=%s errors=%s",
        session.searches,
        session.items_fetched,
        len(session.records),
        session.rejected_items,
        len(session.errors),
    )
    return session


def _sweep_query(
    session: CollectionSession,
    http: requests.Session,
    query: str,
    category: QueryCategory,
    *,
    from_date: date | None,
    until_date: date | None,
    page_size: int,
    request_delay: float,
) -> int:
    fetched = 0
    for page in range(category.max_pages):
        offset = page * page_size
        try:
            result = search_crossref(
                query,
                field_name=category.field,
                rows=page_size,
                offset=offset,
                from_date=from_date,
                until_date=until_date,
                session=http,
            )
        except (requests.RequestException, RuntimeError, ValueError) as exc:
            LOGGER.warning("CrossRef search failed for %r offset=%s, skipping query: %s", query, offset, exc)
            session.errors.append(
                {
                    "type": "crossref_search" if category.field == KEYWORD_FIELD else "crossref_author_search",
                    "query": query,
                    "offset": offset,
                    "error": str(exc),
                }
            )
            break
        finally:
            if request_delay > 0:
                time.sleep(request_delay)

        session.searches += 1
        if not result.items:
            break

        fetched += len(result.items)
        session.items_fetched += len(result.items)
        for item in result.items:
            record = normalize_crossref_item(item)
            if record is None or not record.abstract:
                session.rejected_items += 1
                continue
            session.add(record)

        if session.target_reached or len(result.items) < page_size:
            break

    return fetched


def _clean_abstract(value: Any) -> str | None:
    """Strip JATS/HTML markup from a CrossRef abstract."""
    if not isinstance(value, str):
        return None
    text = _TAG_PATTERN.sub(" ", value)
    text = _SPACE_PATTERN.sub(" ", html.unescape(text)).strip()
    return text or None


def _author_names(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    names: list[str] = []
    for author in value:
        if not isinstance(author, dict):
            continue
        name = f"{author.get('given') or ''} {author.get('family') or ''}".strip()
        if not name:
            name = _as_str(author.get("name")) or ""
        if name:
            names.append(name)
    return names


def _first_str(value: Any) -> str | None:
    if isinstance(value, list):
        return next((s for s in (_as_str(v) for v in value) if s), None)
    return _as_str(value)


def _as_str(value: Any) -> str | None:
    return value.strip() if isinstance(value, str) and value.strip() else None
