"""Shared typed models for the ingestion pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any


@dataclass(frozen=True, slots=True)
class CandidateRecord:
    """Normalized bibliographic item collected from the search service."""

    external_id: str
    title: str
    abstract: str | None
    authors: list[str] = field(default_factory=list)
    publication_year: int | None = None
    publication_date: date | None = None
    venue: str | None = None
    citation_count: int = 0
    url: str | None = None
    source: str = "CrossRef"

    def to_dict(self) -> dict[str, Any]:
        return {
            "external_id": self.external_id,
            "title": self.title,
            "abstract": self.abstract,
            "authors": list(self.authors),
            "publication_year": self.publication_year,
            "publication_date": self.publication_date.isoformat() if self.publication_date else None,
            "venue": self.venue,
            "citation_count": self.citation_count,
            "url": self.url,
            "source": self.source,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CandidateRecord:
        raw_date = data.get("publication_date")
        return cls(
            external_id=data["external_id"],
            title=data.get("title") or "",
            abstract=data.get("abstract"),
            authors=list(data.get("authors") or []),
            publication_year=data.get("publication_year"),
            publication_date=date.fromisoformat(raw_date) if raw_date else None,
            venue=data.get("venue"),
            citation_count=int(data.get("citation_count") or 0),
            url=data.get("url"),
            source=data.get("source") or "CrossRef",
        )


@dataclass(frozen=True, slots=True)
class GeoPoint:
    """Primary study location reported by the enrichment service."""

    name: str | None
    latitude: float | None = None
    longitude: float | None = None
    confidence: float = 0.5

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def as_geojson(self) -> dict[str, Any] | None:
        if not self.has_coordinates:
            return None
        return {"type": "Point", "coordinates": [self.longitude, self.latitude]}


@dataclass(frozen=True, slots=True)
class TemporalRange:
    start: int | None = None
    end: int | None = None


@dataclass(frozen=True, slots=True)
class EnrichedMetadata:
    """Structured metadata derived from one candidate's title and abstract.

    List fields are always lists (possibly empty), never None.
    """

    ecosystem: str | None = None
    methods: list[str] = field(default_factory=list)
    taxonomic_coverage: list[str] = field(default_factory=list)
    frameworks: list[str] = field(default_factory=list)
    geographic_scope: str | None = None
    location: GeoPoint | None = None
    temporal_range: TemporalRange = field(default_factory=TemporalRange)
    threat_types: list[str] = field(default_factory=list)
    conservation_actions: list[str] = field(default_factory=list)
    study_type: str | None = None
    traditional_knowledge_present: bool = False
    data_availability: str | None = None
    rationale: str | None = None

    @property
    def geo_text(self) -> str | None:
        """Location name when known, otherwise the scope label."""
        if self.location is not None and self.location.name:
            return self.location.name
        return self.geographic_scope


@dataclass(frozen=True, slots=True)
class ChatReply:
    """Raw completion text plus total (input + output) token usage."""

    text: str
    tokens_used: int = 0


@dataclass(frozen=True, slots=True)
class ParseOk:
    data: dict[str, Any]


@dataclass(frozen=True, slots=True)
class ParseError:
    reason: str
    raw: str = ""


ParseResult = ParseOk | ParseError


@dataclass(frozen=True, slots=True)
class EnrichmentResult:
    """Outcome of one enrichment call; `data` is set only on success."""

    success: bool
    data: EnrichedMetadata | None = None
    error: str | None = None
    tokens_used: int = 0


@dataclass(frozen=True, slots=True)
class PersistResult:
    success: bool
    item_id: int | None = None
    error: str | None = None
    duplicate: bool = False
