"""On-disk working-set cache (chunked JSON) and processing checkpoint."""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from errors import CacheError, CheckpointError
from models import CandidateRecord

CACHE_DIR = os.getenv("PIPELINE_CACHE_DIR", "cache")
CHUNK_SIZE = int(os.getenv("CHUNK_SIZE", "10000"))
CHUNK_PREFIX = "collected-papers"
CHECKPOINT_FILENAME = "processing-checkpoint.json"
JOURNAL_FILENAME = "processing-journal.jsonl"

_CHUNK_PATTERN = re.compile(rf"^{CHUNK_PREFIX}-(\d+)\.json$")

LOGGER = logging.getLogger(__name__)


def _atomic_write_json(path: Path, payload: Any) -> None:
    """Write JSON to a sibling temp file, then replace the target in one step."""
    tmp_path = path.with_name(f".{path.name}.tmp")
    with tmp_path.open("w", encoding="utf-8") as fh:
        json.dump(payload, fh, indent=2, ensure_ascii=False)
        fh.flush()
        os.fsync(fh.fileno())
    os.replace(tmp_path, path)


class ChunkCache:
    """Working set stored as numbered JSON arrays of at most `chunk_size` records.

    A single JSON document for several hundred thousand records is too large to
    serialize safely, so the set is split and reassembled in chunk-number order.
    """

    def __init__(self, cache_dir: str | Path = CACHE_DIR, chunk_size: int = CHUNK_SIZE) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be positive")
        self.cache_dir = Path(cache_dir)
        self.chunk_size = chunk_size

    def chunk_files(self) -> list[Path]:
        """Existing chunk files in ascending numeric order (2 before 10)."""
        if not self.cache_dir.exists():
            return []
        numbered: list[tuple[int, Path]] = []
        for path in self.cache_dir.iterdir():
            match = _CHUNK_PATTERN.match(path.name)
            if match:
                numbered.append((int(match.group(1)), path))
        return [path for _, path in sorted(numbered)]

    def exists(self) -> bool:
        return bool(self.chunk_files())

    def save(self, records: list[CandidateRecord]) -> int:
        """Replace the cached working set with `records`; returns the chunk count."""
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            total = len(records)
            num_chunks = (total + self.chunk_size - 1) // self.chunk_size
            LOGGER.info("Saving %s candidates in %s chunks to %s", total, num_chunks, self.cache_dir)

            for index in range(num_chunks):
                chunk = records[index * self.chunk_size:(index + 1) * self.chunk_size]
                path = self.cache_dir / f"{CHUNK_PREFIX}-{index}.json"
                _atomic_write_json(path, [record.to_dict() for record in chunk])
                LOGGER.debug("Chunk %s/%s: %s records -> %s", index + 1, num_chunks, len(chunk), path)

            # A previous, larger flush may have left higher-numbered chunks behind.
            for path in self.chunk_files():
                number = int(_CHUNK_PATTERN.match(path.name).group(1))
                if number >= num_chunks:
                    path.unlink()
        except OSError as exc:
            raise CacheError(f"Failed to write candidate cache in {self.cache_dir}: {exc}") from exc

        return num_chunks

    def load(self) -> list[CandidateRecord]:
        """Reassemble the full working set; empty list when nothing is cached."""
        records: list[CandidateRecord] = []
        files = self.chunk_files()
        for path in files:
            try:
                with path.open(encoding="utf-8") as fh:
                    chunk = json.load(fh)
                if not isinstance(chunk, list):
                    raise ValueError("chunk is not a JSON array")
                records.extend(CandidateRecord.from_dict(item) for item in chunk)
            except (OSError, ValueError, KeyError, TypeError) as exc:
                raise CacheError(f"Corrupt or unreadable cache chunk {path}: {exc}") from exc
            LOGGER.debug("Loaded %s records from %s", len(chunk), path.name)

        if files:
            LOGGER.info("Loaded %s candidates from %s cache chunks", len(records), len(files))
        return records

    def count(self) -> int:
        """Number of cached records, reading one chunk at a time."""
        total = 0
        for path in self.chunk_files():
            try:
                with path.open(encoding="utf-8") as fh:
                    total += len(json.load(fh))
            except (OSError, ValueError) as exc:
                raise CacheError(f"Corrupt or unreadable cache chunk {path}: {exc}") from exc
        return total

    def clear(self) -> int:
        removed = 0
        try:
            for path in self.chunk_files():
                path.unlink()
                removed += 1
        except OSError as exc:
            raise CacheError(f"Failed to clear candidate cache: {exc}") from exc
        if removed:
            LOGGER.info("Cleared %s cache chunk files", removed)
        return removed



@dataclass(slots=True)
class Checkpoint:
    """Processing position plus the run counters at that position.

    `journal_entries` is how many lines of the detail journal belong to this
    checkpoint; lines past it were written by work that was never checkpointed.
    """

    processed_count: int
    total_count: int
    timestamp: str
    stats: dict[str, Any] = field(default_factory=dict)
    journal_entries: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "processedCount": self.processed_count,
            "totalCount": self.total_count,
            "timestamp": self.timestamp,
            "stats": self.stats,
            "journalEntries": self.journal_entries,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Checkpoint:
        return cls(
            processed_count=int(data["processedCount"]),
            total_count=int(data["totalCount"]),
            timestamp=str(data.get("timestamp") or ""),
            stats=dict(data.get("stats") or {}),
            journal_entries=int(data.get("journalEntries") or 0),
        )


class CheckpointStore:
    """Durable "how far did processing get" marker next to the chunk cache.

    The checkpoint itself stays small (counters only). Per-record errors and
    pre-filter rejections are appended to a JSON Lines journal beside it, so
    each entry is written once however many checkpoints a run saves.
    """

    def __init__(self, cache: ChunkCache) -> None:
        self.cache = cache
        self.path = cache.cache_dir / CHECKPOINT_FILENAME
        self.journal_path = cache.cache_dir / JOURNAL_FILENAME
        self._journal_entries = 0

    def save(
        self,
        processed_count: int,
        total_count: int,
        stats: dict[str, Any],
        entries: list[dict[str, Any]] | None = None,
    ) -> Checkpoint:
        """Append `entries` to the journal, then replace the checkpoint file."""
        entries = entries or []
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            if entries or self._journal_entries == 0:
                # A fresh journal drops lines left by a checkpoint that was not resumed.
                mode = "a" if self._journal_entries else "w"
                with self.journal_path.open(mode, encoding="utf-8") as fh:
                    for entry in entries:
                        fh.write(json.dumps(entry, ensure_ascii=False) + "\n")
                    fh.flush()
                    os.fsync(fh.fileno())

            checkpoint = Checkpoint(
                processed_count=processed_count,
                total_count=total_count,
                timestamp=datetime.now(UTC).isoformat(),
                stats=stats,
                journal_entries=self._journal_entries + len(entries),
            )
            _atomic_write_json(self.path, checkpoint.to_dict())
        except OSError as exc:
            raise CheckpointError(f"Failed to write checkpoint {self.path}: {exc}") from exc

        self._journal_entries = checkpoint.journal_entries
        LOGGER.debug("Checkpoint saved: %s/%s", processed_count, total_count)
        return checkpoint

    def load(self) -> Checkpoint | None:
        if not self.path.exists():
            return None
        try:
            with self.path.open(encoding="utf-8") as fh:
                checkpoint = Checkpoint.from_dict(json.load(fh))
        except (OSError, ValueError, KeyError, TypeError) as exc:
            raise CheckpointError(f"Corrupt or unreadable checkpoint {self.path}: {exc}") from exc

        LOGGER.info(
            "Loaded checkpoint: %s/%s candidates processed (saved %s)",
            checkpoint.processed_count,
            checkpoint.total_count,
            checkpoint.timestamp,
        )
        return checkpoint

    def load_entries(self, checkpoint: Checkpoint) -> list[dict[str, Any]]:
        """Journal entries covered by `checkpoint`; resuming from it continues the journal."""
        entries: list[dict[str, Any]] = []
        if checkpoint.journal_entries:
            try:
                with self.journal_path.open(encoding="utf-8") as fh:
                    for line in fh:
                        if len(entries) == checkpoint.journal_entries:
                            break
                        entries.append(json.loads(line))
            except (OSError, ValueError) as exc:
                raise CheckpointError(f"Corrupt or unreadable journal {self.journal_path}: {exc}") from exc
            if len(entries) < checkpoint.journal_entries:
                raise CheckpointError(
                    f"Journal {self.journal_path} has {len(entries)} entries, "
                    f"checkpoint expects {checkpoint.journal_entries}"
                )

        self._journal_entries = len(entries)
        if entries:
            # Truncate anything written after the checkpoint.
            try:
                with self.journal_path.open("w", encoding="utf-8") as fh:
                    for entry in entries:
                        fh.write(json.dumps(entry, ensure_ascii=False) + "\n")
            except OSError as exc:
                raise CheckpointError(f"Failed to rewrite journal {self.journal_path}: {exc}") from exc
        return entries

    def clear(self) -> None:
        """Remove the checkpoint, its journal and every cache chunk."""
        self.cache.clear()
        try:
            for path in (self.path, self.journal_path):
                if path.exists():
                    path.unlink()
                    LOGGER.info("Cleared %s", path)
        except OSError as exc:
            raise CheckpointError(f"Failed to remove checkpoint {self.path}: {exc}") from exc
        self._journal_entries = 0
