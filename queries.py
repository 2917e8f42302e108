"""Query sets and sweep plans for the backfill and weekly import modes."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

LOGGER = logging.getLogger(__name__)

KEYWORD_FIELD = "query"
AUTHOR_FIELD = "query.author"

BACKFILL_MAX_PAGES = 10
AUTHOR_MAX_PAGES = 5
WEEKLY_MAX_PAGES = 1

# Category order is the sweep order; the cache is flushed after each one.
DEFAULT_QUERY_SET: dict[str, list[str]] = {
    "frameworks": [
        "Convention on Biological Diversity",
        "Kunming-Montreal Global Biodiversity Framework",
        "Ramsar Convention wetlands",
        "CITES wildlife trade",
        "Sustainable Development Goal 15 life on land",
    ],
    "conservation_general": [
        "biodiversity conservation",
        "conservation biology",
        "endangered species management",
        "protected area effectiveness",
    ],
    "climate_biodiversity": [
        "climate change biodiversity loss",
        "species range shift warming",
        "nature-based solutions climate adaptation",
    ],
    "ecosystems": [
        "coral reef conservation",
        "tropical forest degradation",
        "wetland restoration",
        "grassland biodiversity",
        "freshwater ecosystem conservation",
    ],
    "conservation_methods": [
        "camera trap survey",
        "environmental DNA monitoring",
        "species distribution modeling",
        "passive acoustic monitoring wildlife",
    ],
    "sustainability": [
        "sustainable fisheries management",
        "sustainable land use biodiversity",
    ],
    "countries_regions": [
        "Amazon conservation",
        "Mongolia rangeland",
        "Southeast Asia biodiversity hotspot",
    ],
    "taxonomic_groups": [
        "amphibian decline",
        "bird population trends",
        "pollinator conservation",
    ],
    "iconic_threatened_species": [
        "snow leopard conservation",
        "African elephant poaching",
        "sea turtle nesting",
    ],
    "threats": [
        "habitat fragmentation",
        "invasive species impact",
        "wildlife disease outbreak",
    ],
    "conservation_interventions": [
        "habitat restoration outcomes",
        "species reintroduction",
        "community-based conservation",
    ],
    "traditional_ecological_knowledge": [
        "traditional ecological knowledge",
        "indigenous-led conservation",
        "cultural burning fire management",
    ],
}

DEFAULT_AUTHORS: list[str] = ["Troy Sternberg"]


@dataclass(frozen=True, slots=True)
class QueryCategory:
    """One top-level sweep unit: queries sharing a search field and page cap."""

    name: str
    queries: tuple[str, ...]
    field: str = KEYWORD_FIELD
    max_pages: int = BACKFILL_MAX_PAGES


def load_query_set(path: str | Path) -> tuple[dict[str, list[str]], list[str]]:
    """Read `{"<category>": [...], "authors": [...]}` from a JSON file."""
    with Path(path).open(encoding="utf-8") as fh:
        payload: Any = json.load(fh)

    if not isinstance(payload, dict):
        raise RuntimeError(f"Query file {path} must contain a JSON object")

    authors = [a for a in payload.get("authors", []) if isinstance(a, str) and a.strip()]
    categories: dict[str, list[str]] = {}
    for name, queries in payload.items():
        if name == "authors" or not isinstance(queries, list):
            continue
        categories[name] = [q for q in queries if isinstance(q, str) and q.strip()]

    LOGGER.info(
        "Loaded %s query categories (%s queries) and %s authors from %s",
        len(categories),
        sum(len(q) for q in categories.values()),
        len(authors),
        path,
    )
    return categories, authors


def backfill_plan(
    query_set: dict[str, list[str]] | None = None,
    authors: list[str] | None = None,
) -> list[QueryCategory]:
    """Categorised keyword sweep with deep pagination, then an author sweep."""
    query_set = DEFAULT_QUERY_SET if query_set is None else query_set
    authors = DEFAULT_AUTHORS if authors is None else authors

    plan = [
        QueryCategory(name=name, queries=tuple(queries))
        for name, queries in query_set.items()
        if queries
    ]
    if authors:
        plan.append(
            QueryCategory(
                name="authors",
                queries=tuple(authors),
                field=AUTHOR_FIELD,
                max_pages=AUTHOR_MAX_PAGES,
            )
        )
    return plan


def weekly_plan(query_set: dict[str, list[str]] | None = None) -> list[QueryCategory]:
    """All keyword queries flattened into one shallow category."""
    query_set = DEFAULT_QUERY_SET if query_set is None else query_set
    flattened = tuple(q for queries in query_set.values() for q in queries)
    return [QueryCategory(name="weekly", queries=flattened, max_pages=WEEKLY_MAX_PAGES)]
