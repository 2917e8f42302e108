import json
from pathlib import Path

import pytest

from queries import (
    AUTHOR_FIELD,
    AUTHOR_MAX_PAGES,
    BACKFILL_MAX_PAGES,
    DEFAULT_QUERY_SET,
    KEYWORD_FIELD,
    WEEKLY_MAX_PAGES,
    backfill_plan,
    load_query_set,
    weekly_plan,
)


def test_backfill_plan_keeps_category_order_and_appends_authors() -> None:
    plan = backfill_plan()

    assert [c.name for c in plan[:-1]] == list(DEFAULT_QUERY_SET)
    assert all(c.field == KEYWORD_FIELD and c.max_pages == BACKFILL_MAX_PAGES for c in plan[:-1])
    assert plan[-1].name == "authors"
    assert plan[-1].field == AUTHOR_FIELD
    assert plan[-1].max_pages == AUTHOR_MAX_PAGES


def test_backfill_plan_skips_empty_categories_and_authors() -> None:
    plan = backfill_plan({"reefs": ["coral reef"], "empty": []}, authors=[])
    assert [c.name for c in plan] == ["reefs"]


def test_weekly_plan_flattens_all_queries() -> None:
    plan = weekly_plan({"a": ["one", "two"], "b": ["three"]})

    assert len(plan) == 1
    assert plan[0].queries == ("one", "two", "three")
    assert plan[0].max_pages == WEEKLY_MAX_PAGES


def test_load_query_set(tmp_path: Path) -> None:
    path = tmp_path / "queries.json"
    path.write_text(
        json.dumps({"reefs": ["coral reef", "", 3], "authors": ["Troy Sternberg"], "note": "ignored"}),
        encoding="utf-8",
    )

    categories, authors = load_query_set(path)

    assert categories == {"reefs": ["coral reef"]}
    assert authors == ["Troy Sternberg"]


def test_load_query_set_rejects_non_object(tmp_path: Path) -> None:
    path = tmp_path / "queries.json"
    path.write_text("[]", encoding="utf-8")

    with pytest.raises(RuntimeError):
        load_query_set(path)
