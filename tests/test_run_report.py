import json
from pathlib import Path

import pytest

from run_report import RunStats, summarize, write_error_log


def test_add_tokens_accumulates_cost() -> None:
    stats = RunStats()
    stats.add_tokens(2_000_000)

    assert stats.total_tokens == 2_000_000
    assert stats.total_cost == pytest.approx(1.5)


def test_restore_round_trips_counters() -> None:
    saved = RunStats(db_inserted=7, ai_failed=2, errors=[{"type": "db_insert"}])
    saved.add_tokens(1000)

    restored = RunStats()
    restored.restore(saved.to_dict())

    assert restored.db_inserted == 7
    assert restored.ai_failed == 2
    assert restored.total_tokens == 1000
    assert restored.errors == [{"type": "db_insert"}]
    assert "started_at" not in saved.to_dict()


def test_counters_leave_out_error_lists() -> None:
    stats = RunStats(db_inserted=4, errors=[{"type": "db_insert"}], rejections=[{"rule": "markets"}])

    counters = stats.counters()

    assert counters["db_inserted"] == 4
    assert "errors" not in counters
    assert "rejections" not in counters


def test_journal_returns_only_new_entries_tagged_by_kind() -> None:
    stats = RunStats(
        errors=[{"type": "ai_extraction"}, {"type": "db_insert"}],
        rejections=[{"rule": "markets"}],
    )

    assert stats.journal(errors_from=1, rejections_from=1) == [{"kind": "error", "type": "db_insert"}]
    assert stats.journal(errors_from=2) == [{"kind": "rejection", "rule": "markets"}]


def test_replay_restores_journal_entries() -> None:
    saved = RunStats(errors=[{"type": "ai_extraction"}], rejections=[{"rule": "markets"}])

    restored = RunStats()
    restored.replay(saved.journal())

    assert restored.errors == saved.errors
    assert restored.rejections == saved.rejections


def test_summarize_reports_every_category() -> None:
    summary = summarize(RunStats(db_inserted=3, duplicates_skipped=1, pre_filter_skipped=2))

    assert summary["inserted"] == 3
    assert summary["duplicates_skipped"] == 1
    assert summary["pre_filter_skipped"] == 2
    assert summary["errors"] == 0


def test_write_error_log_skipped_when_clean(tmp_path: Path) -> None:
    assert write_error_log(RunStats(), tmp_path) is None
    assert list(tmp_path.iterdir()) == []


def test_write_error_log_contents(tmp_path: Path) -> None:
    stats = RunStats(
        errors=[{"type": "crossref_search", "query": "wetlands", "error": "503"}],
        rejections=[{"external_id": "10.1/x", "title": "Quantum dots", "rule": "quantum"}],
    )

    path = write_error_log(stats, tmp_path / "logs")

    assert path is not None
    assert path.name.startswith("import-errors-")
    payload = json.loads(path.read_text(encoding="utf-8"))
    assert payload["errors"][0]["query"] == "wetlands"
    assert payload["pre_filter_rejections"][0]["rule"] == "quantum"
