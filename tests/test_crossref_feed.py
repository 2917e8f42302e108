from datetime import date
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import requests

from cache_store import ChunkCache
from crossref_feed import (
    CollectionSession,
    _parse_search_payload,
    collect,
    normalize_crossref_item,
    resolve_publication_date,
    search_crossref,
)
from queries import AUTHOR_FIELD, QueryCategory

_ABSTRACT = "<jats:p>Camera traps recorded snow leopards across the Altai &amp; Sayan ranges.</jats:p>"


def _item(doi: str, abstract: str | None = _ABSTRACT, title: str = "A study") -> dict:
    item = {
        "DOI": doi,
        "title": [title],
        "author": [{"given": "Troy", "family": "Sternberg"}],
        "container-title": ["Oryx"],
        "published": {"date-parts": [[2021, 3, 15]]},
        "is-referenced-by-count": 7,
    }
    if abstract is not None:
        item["abstract"] = abstract
    return item


def _page(items: list[dict]) -> MagicMock:
    """Return a mock requests.Response wrapping a CrossRef works payload."""
    mock = MagicMock()
    mock.json.return_value = {"status": "ok", "message": {"total-results": 1000, "items": items}}
    return mock


def _mock_http(pages: list) -> MagicMock:
    http = MagicMock()
    http.get.side_effect = pages
    return http


def test_normalize_crossref_item_smoke() -> None:
    record = normalize_crossref_item(_item("10.1017/S0030605321000001"))

    assert record is not None
    assert record.external_id == "10.1017/S0030605321000001"
    assert record.title == "A study"
    assert record.abstract == "Camera traps recorded snow leopards across the Altai & Sayan ranges."
    assert record.authors == ["Troy Sternberg"]
    assert record.venue == "Oryx"
    assert record.publication_year == 2021
    assert record.publication_date == date(2021, 3, 15)
    assert record.citation_count == 7
    assert record.url == "https://doi.org/10.1017/S0030605321000001"
    assert record.source == "CrossRef"


def test_normalize_without_doi_returns_none() -> None:
    item = _item("")
    assert normalize_crossref_item(item) is None


def test_normalize_author_falls_back_to_name() -> None:
    item = _item("10.1/x")
    item["author"] = [{"name": "IUCN SSC Cat Specialist Group"}, {"given": "", "family": ""}]
    assert normalize_crossref_item(item).authors == ["IUCN SSC Cat Specialist Group"]


@pytest.mark.parametrize(("item", "expected"), [
    ({"published": {"date-parts": [[2019]]}}, (2019, date(2019, 1, 1))),
    ({"published": {"date-parts": [[2019, 7]]}}, (2019, date(2019, 7, 1))),
    ({"published": {"date-parts": [[2019, 2, 30]]}}, (2019, date(2019, 1, 1))),
    ({"published": {"date-parts": [[1200, 1, 1]]}, "issued": {"date-parts": [[2004, 6, 2]]}}, (2004, date(2004, 6, 2))),
    ({"published-online": {"date-parts": [[2022, 11, 5]]}, "created": {"date-parts": [[2023, 1, 1]]}}, (2022, date(2022, 11, 5))),
    ({"published": {"date-parts": [[None]]}}, (None, None)),
    ({}, (None, None)),
])
def test_resolve_publication_date(item: dict, expected: tuple) -> None:
    assert resolve_publication_date(item) == expected


def test_parse_search_payload_rejects_bad_shape() -> None:
    with pytest.raises(RuntimeError):
        _parse_search_payload({"status": "ok"})
    with pytest.raises(RuntimeError):
        _parse_search_payload({"message": {"items": "nope"}})


def test_search_crossref_builds_filter_and_polite_params() -> None:
    http = _mock_http([_page([_item("10.1/a")])])

    page = search_crossref(
        "snow leopard",
        field_name=AUTHOR_FIELD,
        rows=100,
        offset=200,
        from_date=date(1990, 1, 1),
        until_date=date(2025, 12, 31),
        session=http,
    )

    assert len(page.items) == 1
    assert page.total_results == 1000
    params = http.get.call_args.kwargs["params"]
    assert params["query.author"] == "snow leopard"
    assert params["rows"] == 100
    assert params["offset"] == 200
    assert params["filter"] == (
        "from-pub-date:1990-01-01,until-pub-date:2025-12-31,has-abstract:true,type:journal-article"
    )
    assert "mailto" in params
    assert "mailto:" in http.get.call_args.kwargs["headers"]["User-Agent"]


def test_search_crossref_raises_on_http_error() -> None:
    response = MagicMock()
    response.raise_for_status.side_effect = requests.HTTPError("503 Server Error")
    with patch("crossref_feed.requests.get", return_value=response), pytest.raises(requests.HTTPError):
        search_crossref("wetlands")


def _run_collect(session: CollectionSession, plan: list[QueryCategory], pages: list, **kwargs) -> MagicMock:
    http = _mock_http(pages)
    with patch("crossref_feed.requests.Session", return_value=http):
        collect(session, plan, request_delay=0, **kwargs)
    return http


def test_target_five_with_chunk_capacity_three(tmp_path: Path) -> None:
    """Pages of 3, 2 and 0 items with target 5 leave two chunks of 3 and 2."""
    cache = ChunkCache(tmp_path, chunk_size=3)
    session = CollectionSession(target=5)
    plan = [QueryCategory(name="ecosystems", queries=("wetland restoration",), max_pages=10)]
    pages = [
        _page([_item(f"10.1/a{i}") for i in range(3)]),
        _page([_item(f"10.1/b{i}") for i in range(2)]),
        _page([]),
    ]

    _run_collect(session, plan, pages, flush=cache.save, page_size=3)

    assert len(session.records) == 5
    assert session.target_reached is True
    sizes = [len(chunk) for chunk in (cache.load()[:3], cache.load()[3:])]
    assert sizes == [3, 2]
    assert len(cache.chunk_files()) == 2


def test_short_page_stops_pagination() -> None:
    session = CollectionSession(target=100)
    plan = [QueryCategory(name="threats", queries=("habitat fragmentation",), max_pages=10)]

    http = _run_collect(session, plan, [_page([_item("10.1/a"), _item("10.1/b")])], page_size=3)

    assert http.get.call_count == 1
    assert session.searches == 1
    assert len(session.records) == 2


def test_duplicate_dois_collapse_last_write_wins() -> None:
    session = CollectionSession(target=100)
    plan = [QueryCategory(name="threats", queries=("one", "two"), max_pages=1)]
    pages = [
        _page([_item("10.1/same", title="First"), _item("10.1/other")]),
        _page([_item("10.1/same", title="Second")]),
    ]

    _run_collect(session, plan, pages, page_size=100)

    assert len(session.records) == 2
    assert session.records["10.1/same"].title == "Second"
    assert session.items_fetched == 3


def test_items_without_abstract_are_rejected() -> None:
    session = CollectionSession(target=100)
    plan = [QueryCategory(name="threats", queries=("one",), max_pages=1)]

    _run_collect(session, plan, [_page([_item("10.1/a", abstract=None), _item("10.1/b")])])

    assert list(session.records) == ["10.1/b"]
    assert session.rejected_items == 1


def test_search_error_skips_query_and_continues() -> None:
    session = CollectionSession(target=100)
    plan = [
        QueryCategory(name="threats", queries=("broken", "working"), max_pages=2),
        QueryCategory(name="authors", queries=("Troy Sternberg",), field=AUTHOR_FIELD, max_pages=1),
    ]
    pages = [
        requests.ConnectionError("connection reset"),
        _page([_item("10.1/a")]),
        _page([_item("10.1/b")]),
    ]

    _run_collect(session, plan, pages, page_size=100)

    assert set(session.records) == {"10.1/a", "10.1/b"}
    assert len(session.errors) == 1
    assert session.errors[0]["type"] == "crossref_search"
    assert session.errors[0]["query"] == "broken"


def test_author_search_error_is_labelled() -> None:
    session = CollectionSession(target=100)
    plan = [QueryCategory(name="authors", queries=("Troy Sternberg",), field=AUTHOR_FIELD, max_pages=1)]

    _run_collect(session, plan, [requests.Timeout("timed out")])

    assert session.errors[0]["type"] == "crossref_author_search"


def test_flush_called_after_each_category() -> None:
    session = CollectionSession(target=100)
    plan = [
        QueryCategory(name="ecosystems", queries=("wetlands",), max_pages=1),
        QueryCategory(name="threats", queries=("invasive species",), max_pages=1),
    ]
    flush = MagicMock()

    _run_collect(session, plan, [_page([_item("10.1/a")]), _page([_item("10.1/b")])], flush=flush)

    assert flush.call_count == 2
    assert [r.external_id for r in flush.call_args_list[0].args[0]] == ["10.1/a"]
    assert [r.external_id for r in flush.call_args_list[1].args[0]] == ["10.1/a", "10.1/b"]


def test_target_reached_stops_remaining_categories() -> None:
    session = CollectionSession(target=1)
    plan = [
        QueryCategory(name="ecosystems", queries=("wetlands", "reefs"), max_pages=3),
        QueryCategory(name="threats", queries=("invasive species",), max_pages=3),
    ]
    flush = MagicMock()

    http = _run_collect(session, plan, [_page([_item("10.1/a"), _item("10.1/b")])], flush=flush)

    assert http.get.call_count == 1
    assert flush.call_count == 1
    assert http.close.called
