"""Run controller: collect candidates, then enrich and store them in waves.

One pipeline serves both the historical backfill and the weekly import; they
differ only in their `RunConfig` (query plan, date range, target, phases).

States::

    IDLE -> COLLECTING -> COLLECTED -> PROCESSING -> COMPLETED
    IDLE -> PROCESSING                  (process-only invocation, loads the cache)
    PROCESSING -> PROCESSING            (resume from a checkpoint)
    COLLECTING | PROCESSING -> FAILED   (cache or checkpoint I/O failure)

Per-record problems never leave PROCESSING; they are counted in `RunStats`.
"""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from enum import Enum
from typing import Any

import filters
from cache_store import CACHE_DIR, CHUNK_SIZE, ChunkCache, CheckpointStore
from crossref_feed import CROSSREF_RATE_LIMIT_SECONDS, CollectionSession, collect
from enrichment import enrich
from errors import InvalidTransitionError, PipelineError
from models import CandidateRecord, EnrichmentResult
from paper_store import PaperStore
from queries import QueryCategory, backfill_plan, weekly_plan
from run_report import ERRORS_DIR, RunStats, log_progress, log_summary, write_error_log

AI_BATCH_SIZE = int(os.getenv("AI_BATCH_SIZE", "2"))
AI_BATCH_DELAY_SECONDS = float(os.getenv("AI_BATCH_DELAY_SECONDS", "3"))
CHECKPOINT_INTERVAL = int(os.getenv("CHECKPOINT_INTERVAL", "50"))
PROGRESS_INTERVAL = 50
MIN_ABSTRACT_LENGTH = 50

BACKFILL_FROM = date(1990, 1, 1)
BACKFILL_UNTIL = date(2025, 12, 31)
BACKFILL_TARGET = 1000
WEEKLY_TARGET = 500
WEEKLY_DAYS = 7

LOGGER = logging.getLogger(__name__)

Enricher = Callable[[CandidateRecord], EnrichmentResult]


class RunState(Enum):
    IDLE = "idle"
    COLLECTING = "collecting"
    COLLECTED = "collected"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


_TRANSITIONS: dict[RunState, frozenset[RunState]] = {
    RunState.IDLE: frozenset({RunState.COLLECTING, RunState.PROCESSING}),
    RunState.COLLECTING: frozenset({RunState.COLLECTED, RunState.FAILED}),
    RunState.COLLECTED: frozenset({RunState.PROCESSING}),
    RunState.PROCESSING: frozenset({RunState.PROCESSING, RunState.COMPLETED, RunState.FAILED}),
    RunState.COMPLETED: frozenset(),
    RunState.FAILED: frozenset(),
}


@dataclass(slots=True)
class RunConfig:
    """Everything that distinguishes one import run from another."""

    mode: str = "backfill"
    target: int = BACKFILL_TARGET
    from_date: date | None = BACKFILL_FROM
    until_date: date | None = BACKFILL_UNTIL
    two_phase: bool = True
    dry_run: bool = False
    wave_size: int = AI_BATCH_SIZE
    wave_delay: float = AI_BATCH_DELAY_SECONDS
    request_delay: float = CROSSREF_RATE_LIMIT_SECONDS
    checkpoint_interval: int = CHECKPOINT_INTERVAL
    progress_interval: int = PROGRESS_INTERVAL
    chunk_size: int = CHUNK_SIZE
    cache_dir: str = CACHE_DIR
    errors_dir: str = ERRORS_DIR
    query_set: dict[str, list[str]] | None = None
    authors: list[str] | None = None

    @classmethod
    def backfill(cls, target: int = BACKFILL_TARGET, **overrides: Any) -> RunConfig:
        return cls(mode="backfill", target=target, **overrides)

    @classmethod
    def weekly(cls, days: int = WEEKLY_DAYS, target: int = WEEKLY_TARGET, **overrides: Any) -> RunConfig:
        today = datetime.now(UTC).date()
        defaults: dict[str, Any] = {
            "from_date": today - timedelta(days=days),
            "until_date": today,
            "two_phase": False,
            "cache_dir": os.path.join(CACHE_DIR, "weekly"),
        }
        defaults.update(overrides)
        return cls(mode="weekly", target=target, **defaults)

    def plan(self) -> list[QueryCategory]:
        if self.mode == "weekly":
            return weekly_plan(self.query_set)
        return backfill_plan(self.query_set, self.authors)


@dataclass(frozen=True, slots=True)
class ProcessOutcome:
    """What happened to one candidate inside a wave."""

    candidate: CandidateRecord
    status: str
    detail: str | None = None
    ai_called: bool = False
    ai_succeeded: bool = False
    tokens_used: int = 0


INSERTED = "inserted"
NO_ABSTRACT = "no_abstract"
DUPLICATE = "duplicate"
PRE_FILTER = "pre_filter"
AI_FAILED = "ai_failed"
DB_FAILED = "db_failed"
DRY_RUN = "dry_run"
UNEXPECTED = "unexpected"


class RunController:
    """Drives one run through collection and processing.

    Owns the chunk cache, the checkpoint store and the run statistics; the
    paper store and enricher are injected so tests can swap them.
    """

    def __init__(
        self,
        config: RunConfig,
        store: PaperStore | None = None,
        enricher: Enricher = enrich,
    ) -> None:
        self.config = config
        self.store = store
        self.enricher = enricher
        self.state = RunState.IDLE
        self.stats = RunStats()
        self.cache = ChunkCache(config.cache_dir, config.chunk_size)
        self.checkpoints = CheckpointStore(self.cache)
        self._records: list[CandidateRecord] | None = None
        # Errors and rejections before these positions are already in the journal.
        self._journaled = (0, 0)

    # -- state -----------------------------------------------------------------

    def _transition(self, new_state: RunState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidTransitionError(f"Cannot move from {self.state.value} to {new_state.value}")
        LOGGER.debug("Run state %s -> %s", self.state.value, new_state.value)
        self.state = new_state

    def _fail(self, exc: PipelineError) -> None:
        LOGGER.error("FATAL: %s", exc)
        self._transition(RunState.FAILED)
        log_summary(self.stats, title="IMPORT FAILED")
        self._write_error_log()

    def _write_error_log(self) -> None:
        try:
            write_error_log(self.stats, self.config.errors_dir)
        except OSError as exc:
            LOGGER.error("Could not write error log to %s: %s", self.config.errors_dir, exc)

    # -- commands ----------------------------------------------------------------

    def run(self, fresh: bool = False) -> dict[str, Any]:
        """Collect (unless a cache survives from an earlier run) and process.

        In two-phase mode the run stops after collection.
        """
        if fresh:
            self.checkpoints.clear()

        if fresh or not self.cache.exists():
            summary = self.collect(write_log=self.config.two_phase)
            if self.config.two_phase:
                return summary
        else:
            LOGGER.info(
                "Found %s cached candidates from a previous run in %s",
                self.cache.count(),
                self.cache.cache_dir,
            )

        return self.process()

    def collect(self, write_log: bool = True) -> dict[str, Any]:
        """Sweep the search service and leave the deduplicated set in the cache.

        With `write_log`, search errors go to the run's error log here; otherwise
        they stay in the stats for the processing phase that follows.
        """
        self._transition(RunState.COLLECTING)
        plan = self.config.plan()
        LOGGER.info(
            "Collecting up to %s candidates: mode=%s categories=%s range=%s..%s",
            self.config.target,
            self.config.mode,
            len(plan),
            self.config.from_date,
            self.config.until_date,
        )

        session = CollectionSession(target=self.config.target)
        try:
            if self.cache.exists():
                LOGGER.warning("Existing cache in %s will be replaced by a fresh collection", self.cache.cache_dir)
            self.checkpoints.clear()
            collect(
                session,
                plan,
                from_date=self.config.from_date,
                until_date=self.config.until_date,
                flush=self.cache.save,
                request_delay=self.config.request_delay,
            )
            records = session.values()[: self.config.target]
            self.cache.save(records)
        except PipelineError as exc:
            self._merge_collection(session)
            self._fail(exc)
            raise

        self._merge_collection(session)
        self._records = records
        self.stats.candidates_collected = len(records)
        self._transition(RunState.COLLECTED)
        LOGGER.info("Total unique candidates collected: %s (cached in %s)", len(records), self.cache.cache_dir)
        summary = log_summary(self.stats, title="COLLECTION COMPLETE")
        if write_log:
            self._write_error_log()
        return summary

    def _merge_collection(self, session: CollectionSession) -> None:
        self.stats.crossref_searches += session.searches
        self.stats.crossref_items += session.items_fetched
        self.stats.errors.extend(session.errors)

    def process(self, start: int = 0, limit: int | None = None) -> dict[str, Any]:
        """Enrich and store candidates in `[start, start + limit)` of the working set."""
        self._transition(RunState.PROCESSING)
        try:
            records = self._records if self._records is not None else self.cache.load()
            if not records:
                raise PipelineError("No cached candidates found. Run collection first.")

            total = len(records)
            start = min(max(0, start), total)
            end = total if limit is None else min(total, start + limit)
            offset = self._resume_offset(start, end, total)
            if offset > start:
                LOGGER.info("Resuming from checkpoint: %s/%s", offset, total)
                self._transition(RunState.PROCESSING)

            LOGGER.info(
                "Processing candidates %s to %s of %s (%s per wave, %ss between waves)%s",
                offset,
                end,
                total,
                self.config.wave_size,
                self.config.wave_delay,
                " [dry-run]" if self.config.dry_run else "",
            )
            self._store()
            self._process_window(records, offset, end, total)
        except PipelineError as exc:
            self._fail(exc)
            raise

        self._transition(RunState.COMPLETED)
        summary = log_summary(self.stats)
        self._finish(end, total, limit)
        return summary

    # -- processing ----------------------------------------------------------------

    def _resume_offset(self, start: int, end: int, total: int) -> int:
        checkpoint = self.checkpoints.load()
        if checkpoint is None:
            return start
        if checkpoint.total_count != total:
            LOGGER.warning(
                "Ignoring checkpoint for %s candidates; working set has %s",
                checkpoint.total_count,
                total,
            )
            return start
        if checkpoint.processed_count <= start:
            return start

        self.stats.restore(checkpoint.stats)
        self.stats.replay(self.checkpoints.load_entries(checkpoint))
        self._journaled = (len(self.stats.errors), len(self.stats.rejections))
        return min(checkpoint.processed_count, end)

    def _save_checkpoint(self, processed: int, total: int) -> None:
        errors_from, rejections_from = self._journaled
        self.checkpoints.save(
            processed,
            total,
            self.stats.counters(),
            entries=self.stats.journal(errors_from, rejections_from),
        )
        self._journaled = (len(self.stats.errors), len(self.stats.rejections))

    def _process_window(self, records: list[CandidateRecord], offset: int, end: int, total: int) -> None:
        wave_size = max(1, self.config.wave_size)
        last_checkpoint = offset
        last_progress = offset

        with ThreadPoolExecutor(max_workers=wave_size, thread_name_prefix="enrich") as pool:
            for wave_start in range(offset, end, wave_size):
                wave = records[wave_start:min(wave_start + wave_size, end)]
                futures = [pool.submit(self._process_candidate, candidate) for candidate in wave]
                for future in futures:
                    self._record(future.result())

                processed = wave_start + len(wave)
                if not self.config.dry_run and (
                    processed - last_checkpoint >= self.config.checkpoint_interval or processed == end
                ):
                    self._save_checkpoint(processed, total)
                    last_checkpoint = processed

                if processed - last_progress >= self.config.progress_interval or processed == end:
                    log_progress(self.stats, processed, end)
                    last_progress = processed

                if processed < end and self.config.wave_delay > 0 and not self.config.dry_run:
                    time.sleep(self.config.wave_delay)

    def _process_candidate(self, candidate: CandidateRecord) -> ProcessOutcome:
        """Gate, enrich and store one candidate. Runs on a wave worker thread."""
        try:
            if not candidate.abstract or len(candidate.abstract) < MIN_ABSTRACT_LENGTH:
                return ProcessOutcome(candidate, NO_ABSTRACT)

            if self._store().exists(candidate.external_id):
                return ProcessOutcome(candidate, DUPLICATE)

            rule = filters.matching_rule(candidate)
            if rule is not None:
                return ProcessOutcome(candidate, PRE_FILTER, detail=rule)

            if self.config.dry_run:
                LOGGER.info("[dry-run] Would enrich: %s", candidate.title)
                return ProcessOutcome(candidate, DRY_RUN)

            result = self.enricher(candidate)
            if not result.success or result.data is None:
                return ProcessOutcome(
                    candidate,
                    AI_FAILED,
                    detail=result.error or "enrichment returned no data",
                    ai_called=True,
                    tokens_used=result.tokens_used,
                )

            saved = self._store().persist(candidate, result.data)
            if saved.success:
                status, detail = INSERTED, None
            elif saved.duplicate:
                status, detail = DUPLICATE, None
            else:
                status, detail = DB_FAILED, saved.error
            return ProcessOutcome(
                candidate,
                status,
                detail=detail,
                ai_called=True,
                ai_succeeded=True,
                tokens_used=result.tokens_used,
            )
        except Exception as exc:  # broad: recorded as a per-record failure
            LOGGER.exception("Unexpected failure processing %s: %s", candidate.external_id, exc)
            return ProcessOutcome(candidate, UNEXPECTED, detail=str(exc))

    def _record(self, outcome: ProcessOutcome) -> None:
        stats = self.stats
        candidate = outcome.candidate
        title = (candidate.title or "")[:100]

        if outcome.ai_called:
            stats.ai_processed += 1
            if outcome.ai_succeeded:
                stats.ai_successful += 1
                stats.add_tokens(outcome.tokens_used)

        if outcome.status == INSERTED:
            stats.db_inserted += 1
        elif outcome.status == NO_ABSTRACT:
            stats.no_abstract_skipped += 1
        elif outcome.status == DUPLICATE:
            stats.duplicates_skipped += 1
        elif outcome.status == PRE_FILTER:
            stats.pre_filter_skipped += 1
            stats.rejections.append(
                {"external_id": candidate.external_id, "title": title, "rule": outcome.detail}
            )
        elif outcome.status == DRY_RUN:
            stats.dry_run_skipped += 1
        elif outcome.status == AI_FAILED:
            stats.ai_failed += 1
            LOGGER.error("AI extraction failed for %r: %s", title[:50], outcome.detail)
            stats.errors.append(
                {"type": "ai_extraction", "external_id": candidate.external_id, "title": title, "error": outcome.detail}
            )
        elif outcome.status == DB_FAILED:
            stats.db_failed += 1
            stats.errors.append(
                {"type": "db_insert", "external_id": candidate.external_id, "title": title, "error": outcome.detail}
            )
        else:
            stats.errors.append(
                {"type": outcome.status, "external_id": candidate.external_id, "title": title, "error": outcome.detail}
            )

    def _store(self) -> PaperStore:
        if self.store is None:
            self.store = PaperStore()
        return self.store

    def _finish(self, end: int, total: int, limit: int | None) -> None:
        if self.config.dry_run:
            LOGGER.info("Dry run complete. Cache and checkpoint left untouched.")
        elif end >= total:
            LOGGER.info("All candidates processed. Clearing cache and checkpoint.")
            self.checkpoints.clear()
        else:
            LOGGER.info("Batch complete. Cache preserved for remaining batches.")
            LOGGER.info("To process the next batch, run: process --start %s --limit %s", end, limit)

        LOGGER.info("Research items in store: %s", self._store().count())
        self._write_error_log()
