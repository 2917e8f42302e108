"""Relational store for imported papers and their enrichment metadata."""

from __future__ import annotations

import logging
import os
from datetime import date
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    create_engine,
    func,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from models import CandidateRecord, EnrichedMetadata, PersistResult

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///compass_papers.db")

LOGGER = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class ResearchItem(Base):
    __tablename__ = "research_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    doi: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    abstract: Mapped[str | None] = mapped_column(Text, nullable=True)
    authors: Mapped[list[str]] = mapped_column(JSON, default=list)
    publication_year: Mapped[int | None] = mapped_column(Integer, nullable=True)
    publication_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    journal: Mapped[str | None] = mapped_column(String(512), nullable=True)
    citations: Mapped[int] = mapped_column(Integer, default=0)
    url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    source: Mapped[str | None] = mapped_column(String(64), nullable=True)


class CompassMetadata(Base):
    __tablename__ = "compass_metadata"
    __table_args__ = (
        CheckConstraint(
            "temporal_start IS NULL OR temporal_end IS NULL OR temporal_start <= temporal_end",
            name="ck_compass_metadata_temporal_order",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    research_id: Mapped[int] = mapped_column(
        ForeignKey("research_items.id", ondelete="CASCADE"), index=True, nullable=False
    )
    ecosystem_type: Mapped[str | None] = mapped_column(String(128), nullable=True)
    methods: Mapped[list[str]] = mapped_column(JSON, default=list)
    taxon_scope: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    framework_alignment: Mapped[list[str]] = mapped_column(JSON, default=list)
    geo_scope_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    geo_scope_geom: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    geo_confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    temporal_start: Mapped[date | None] = mapped_column(Date, nullable=True)
    temporal_end: Mapped[date | None] = mapped_column(Date, nullable=True)
    threat_types: Mapped[list[str]] = mapped_column(JSON, default=list)
    conservation_actions: Mapped[list[str]] = mapped_column(JSON, default=list)
    study_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    traditional_knowledge_present: Mapped[bool] = mapped_column(Boolean, default=False)
    data_availability: Mapped[str | None] = mapped_column(String(64), nullable=True)


def make_engine(url: str = DATABASE_URL) -> Engine:
    kwargs: dict[str, Any] = {"pool_pre_ping": True}
    if url.startswith("sqlite"):
        # Enrichment waves persist from worker threads.
        kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
    return create_engine(url, **kwargs)


class PaperStore:
    """Existence checks and atomic parent+metadata inserts keyed by DOI.

    Existing rows are never updated: they may carry hand-curated metadata.
    """

    def __init__(self, engine: Engine | None = None, create_schema: bool = True) -> None:
        self.engine = engine or make_engine()
        self._sessions = sessionmaker(bind=self.engine, expire_on_commit=False)
        if create_schema:
            Base.metadata.create_all(self.engine)

    def exists(self, doi: str) -> bool:
        """True when a research item with this DOI is already stored.

        A failed lookup is treated as "not stored"; the unique constraint still
        rejects the insert later.
        """
        try:
            with self._sessions() as session:
                found = session.execute(
                    select(ResearchItem.id).where(ResearchItem.doi == doi).limit(1)
                ).first()
        except SQLAlchemyError as exc:
            LOGGER.error("Existence check failed for DOI %s: %s", doi, exc)
            return False
        return found is not None

    def count(self) -> int:
        with self._sessions() as session:
            return session.scalar(select(func.count()).select_from(ResearchItem)) or 0

    def persist(self, candidate: CandidateRecord, metadata: EnrichedMetadata) -> PersistResult:
        """Insert the research item and its metadata row in one transaction."""
        with self._sessions() as session:
            try:
                item = _research_item(candidate)
                session.add(item)
                try:
                    session.flush()
                except IntegrityError as exc:
                    session.rollback()
                    if not self.exists(candidate.external_id):
                        raise
                    LOGGER.info("Skipping %s: already stored (%s)", candidate.external_id, exc.orig)
                    return PersistResult(success=False, error="duplicate", duplicate=True)

                session.add(_metadata_row(item.id, metadata))
                session.flush()
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                LOGGER.error(
                    "Error saving paper %r: %s", (candidate.title or "")[:50], exc
                )
                return PersistResult(success=False, error=str(exc))

        LOGGER.debug("Stored %s as research item id=%s", candidate.external_id, item.id)
        return PersistResult(success=True, item_id=item.id)


def _research_item(candidate: CandidateRecord) -> ResearchItem:
    return ResearchItem(
        doi=candidate.external_id,
        title=candidate.title,
        abstract=candidate.abstract,
        authors=list(candidate.authors),
        publication_year=candidate.publication_year,
        publication_date=candidate.publication_date,
        journal=candidate.venue,
        citations=candidate.citation_count,
        url=candidate.url,
        source=candidate.source,
    )


def _metadata_row(research_id: int, metadata: EnrichedMetadata) -> CompassMetadata:
    temporal = metadata.temporal_range
    location = metadata.location
    return CompassMetadata(
        research_id=research_id,
        ecosystem_type=metadata.ecosystem,
        methods=list(metadata.methods),
        taxon_scope=list(metadata.taxonomic_coverage) or None,
        framework_alignment=list(metadata.frameworks),
        geo_scope_text=metadata.geo_text,
        geo_scope_geom=location.as_geojson() if location is not None else None,
        geo_confidence=location.confidence if location is not None else None,
        temporal_start=date(temporal.start, 1, 1) if temporal.start else None,
        temporal_end=date(temporal.end, 12, 31) if temporal.end else None,
        threat_types=list(metadata.threat_types),
        conservation_actions=list(metadata.conservation_actions),
        study_type=metadata.study_type,
        traditional_knowledge_present=metadata.traditional_knowledge_present,
        data_availability=metadata.data_availability,
    )
