"""Run statistics, progress blocks, the final summary and the per-run error log.

The summary is always produced, however many per-record failures a run had.
Errors and pre-filter rejections are written to
``<errors_dir>/import-errors-<timestamp>.json`` so rejected candidates can be
reviewed and recovered by hand.
"""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import asdict, dataclass, field, fields
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

ERRORS_DIR = os.getenv("PIPELINE_ERRORS_DIR", "logs")
COST_PER_MILLION_TOKENS = float(os.getenv("COST_PER_MILLION_TOKENS", "0.75"))
# Average enrichment spend per paper, used to report pre-filter savings.
ESTIMATED_COST_PER_PAPER = 0.002

LOGGER = logging.getLogger(__name__)

_RULE = "=" * 80


@dataclass(slots=True)
class RunStats:
    """Counters for one run; everything except `started_at` survives a resume."""

    started_at: float = field(default_factory=time.time)
    crossref_searches: int = 0
    crossref_items: int = 0
    candidates_collected: int = 0
    duplicates_skipped: int = 0
    no_abstract_skipped: int = 0
    pre_filter_skipped: int = 0
    ai_processed: int = 0
    ai_successful: int = 0
    ai_failed: int = 0
    db_inserted: int = 0
    db_failed: int = 0
    dry_run_skipped: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0
    errors: list[dict[str, Any]] = field(default_factory=list)
    rejections: list[dict[str, Any]] = field(default_factory=list)

    def add_tokens(self, tokens: int) -> None:
        self.total_tokens += tokens
        self.total_cost += tokens / 1_000_000 * COST_PER_MILLION_TOKENS

    @property
    def elapsed_seconds(self) -> float:
        return time.time() - self.started_at

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data.pop("started_at")
        return data

    def counters(self) -> dict[str, Any]:
        """Everything in `to_dict` except the error and rejection lists."""
        data = self.to_dict()
        data.pop("errors")
        data.pop("rejections")
        return data

    def journal(self, errors_from: int = 0, rejections_from: int = 0) -> list[dict[str, Any]]:
        """Errors and rejections recorded since the given positions, tagged by kind."""
        entries = [{"kind": "error", **error} for error in self.errors[errors_from:]]
        entries += [{"kind": "rejection", **rejection} for rejection in self.rejections[rejections_from:]]
        return entries

    def replay(self, entries: list[dict[str, Any]]) -> None:
        """Restore errors and rejections from journal entries."""
        for entry in entries:
            item = {key: value for key, value in entry.items() if key != "kind"}
            if entry.get("kind") == "rejection":
                self.rejections.append(item)
            else:
                self.errors.append(item)

    def restore(self, data: dict[str, Any]) -> None:
        """Load counters saved in a checkpoint; unknown keys are ignored."""
        for item in fields(self):
            if item.name == "started_at" or item.name not in data:
                continue
            value = data[item.name]
            if item.name in {"errors", "rejections"}:
                setattr(self, item.name, list(value or []))
            elif item.name == "total_cost":
                setattr(self, item.name, float(value or 0.0))
            else:
                setattr(self, item.name, int(value or 0))


def log_progress(stats: RunStats, current: int, total: int) -> None:
    elapsed = max(stats.elapsed_seconds, 1e-6)
    rate = current / elapsed
    remaining = max(total - current, 0)
    eta = remaining / rate if rate > 0 else 0.0
    percent = round(current / total * 100) if total else 100

    LOGGER.info(_RULE)
    LOGGER.info("Progress: %s / %s candidates (%s%%)", current, total, percent)
    LOGGER.info("Time elapsed: %ss | ETA: %ss | Rate: %.2f candidates/sec", round(elapsed), round(eta), rate)
    LOGGER.info(
        "Duplicates skipped: %s | No abstract: %s | Pre-filter skipped: %s (saved $%.2f)",
        stats.duplicates_skipped,
        stats.no_abstract_skipped,
        stats.pre_filter_skipped,
        stats.pre_filter_skipped * ESTIMATED_COST_PER_PAPER,
    )
    LOGGER.info(
        "AI processed: %s | Success: %s | Failed: %s",
        stats.ai_processed,
        stats.ai_successful,
        stats.ai_failed,
    )
    LOGGER.info(
        "DB inserted: %s | Failed: %s | Estimated cost: $%.2f",
        stats.db_inserted,
        stats.db_failed,
        stats.total_cost,
    )
    LOGGER.info(_RULE)


def summarize(stats: RunStats) -> dict[str, Any]:
    """Flat per-category summary returned by the run controller."""
    return {
        "crossref_searches": stats.crossref_searches,
        "crossref_items": stats.crossref_items,
        "candidates_collected": stats.candidates_collected,
        "inserted": stats.db_inserted,
        "duplicates_skipped": stats.duplicates_skipped,
        "no_abstract_skipped": stats.no_abstract_skipped,
        "pre_filter_skipped": stats.pre_filter_skipped,
        "ai_processed": stats.ai_processed,
        "ai_failed": stats.ai_failed,
        "db_failed": stats.db_failed,
        "dry_run_skipped": stats.dry_run_skipped,
        "errors": len(stats.errors),
        "estimated_cost": round(stats.total_cost, 4),
        "elapsed_seconds": round(stats.elapsed_seconds, 1),
    }


def log_summary(stats: RunStats, title: str = "IMPORT COMPLETE") -> dict[str, Any]:
    summary = summarize(stats)
    LOGGER.info(_RULE)
    LOGGER.info(title)
    LOGGER.info(_RULE)
    LOGGER.info("Total papers inserted: %s", summary["inserted"])
    LOGGER.info("Total duplicates skipped: %s", summary["duplicates_skipped"])
    LOGGER.info("Total papers without abstract: %s", summary["no_abstract_skipped"])
    LOGGER.info("Total pre-filter rejections: %s", summary["pre_filter_skipped"])
    LOGGER.info("Total AI extraction failures: %s", summary["ai_failed"])
    LOGGER.info("Total database insertion failures: %s", summary["db_failed"])
    if summary["dry_run_skipped"]:
        LOGGER.info("Dry run, would have enriched: %s", summary["dry_run_skipped"])
    LOGGER.info("Total estimated cost: $%.2f", stats.total_cost)
    LOGGER.info("Total time: %ss", round(stats.elapsed_seconds))
    LOGGER.info(_RULE)
    return summary


def write_error_log(stats: RunStats, errors_dir: str | Path = ERRORS_DIR) -> Path | None:
    """Write recorded errors and pre-filter rejections; None when there are neither."""
    if not stats.errors and not stats.rejections:
        return None

    directory = Path(errors_dir)
    directory.mkdir(parents=True, exist_ok=True)
    stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%S%fZ")
    path = directory / f"import-errors-{stamp}.json"

    payload = {
        "generated_at": datetime.now(UTC).isoformat(),
        "errors": stats.errors,
        "pre_filter_rejections": stats.rejections,
    }
    with path.open("w", encoding="utf-8") as fh:
        json.dump(payload, fh, indent=2, ensure_ascii=False)

    LOGGER.info("Error log saved to: %s", path)
    return path
