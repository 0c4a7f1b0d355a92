"""Checkpoint and output storage for crawl state.

Provides persistent storage for:
- The last processed repository id per forge (state.json)
- Discovered repositories, appended to one CSV file per forge

Records are buffered in memory and only reach disk on flush(). A cursor
update always flushes first, so the checkpoint never claims progress that
the CSV files do not reflect.
"""

import asyncio
import csv
import json
import logging
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from reposcan.crawler.errors import StorageError

logger = logging.getLogger(__name__)


CSV_HEADER = ["id", "name", "has_marker_a", "has_marker_b"]


class Forge(Enum):
    """Hosted forges the crawler knows about."""

    GITHUB = "github"
    GITLAB = "gitlab"


@dataclass(frozen=True)
class RepoRecord:
    """A discovered repository written to the output file."""

    id: str
    full_name: str
    has_marker_a: bool = False
    has_marker_b: bool = False

    def to_row(self) -> List[str]:
        return [
            self.id,
            self.full_name,
            "true" if self.has_marker_a else "false",
            "true" if self.has_marker_b else "false",
        ]


class StateStore:
    """Cursor checkpoint plus buffered, append-only record output."""

    def __init__(self, data_dir: Path):
        self.data_dir = Path(data_dir)
        self.state_path = self.data_dir / "state.json"
        self._cursors: Optional[Dict[str, int]] = None
        self._buffers: Dict[Forge, Dict[str, RepoRecord]] = {}
        self._buffer_locks: Dict[Forge, asyncio.Lock] = {}
        self._checkpoint_lock = asyncio.Lock()
        self._load_lock = asyncio.Lock()

    def csv_path(self, forge: Forge) -> Path:
        return self.data_dir / f"{forge.value}.csv"

    def _read_state_file(self) -> Dict[str, int]:
        if not self.state_path.exists():
            return {}
        try:
            data = json.loads(self.state_path.read_text(encoding="utf-8"))
            # Older checkpoints nested the cursors under "last_id"
            if isinstance(data.get("last_id"), dict):
                data = data["last_id"]
            items = list(data.items())
        except (OSError, ValueError, AttributeError) as e:
            raise StorageError(f"failed to load {self.state_path}: {e}") from e

        cursors = {}
        for key, value in items:
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise StorageError(
                    f"failed to load {self.state_path}: cursor for {key!r} is {value!r}, "
                    f"not a non-negative integer"
                )
            cursors[str(key)] = value
        logger.debug(f"Loaded checkpoint {cursors} from {self.state_path}")
        return cursors

    async def _load_state(self) -> Dict[str, int]:
        async with self._load_lock:
            if self._cursors is None:
                self._cursors = await asyncio.to_thread(self._read_state_file)
        return self._cursors

    async def get_cursor(self, forge: Forge) -> int:
        """Return the last persisted cursor for forge, 0 when there is none."""
        return (await self._load_state()).get(forge.value, 0)

    async def set_cursor(self, forge: Forge, value: int) -> None:
        """Advance the cursor, flush buffered records, then checkpoint."""
        cursors = await self._load_state()
        current = cursors.get(forge.value, 0)
        if value < current:
            raise ValueError(
                f"cursor for {forge.value} cannot move backwards ({current} -> {value})"
            )
        cursors[forge.value] = value

        await self.flush()
        await self._write_checkpoint()

    def store_record(self, forge: Forge, record: RepoRecord) -> None:
        """Buffer a record; a later record with the same name replaces it."""
        self._buffers.setdefault(forge, {})[record.full_name] = record

    def pending(self, forge: Forge) -> int:
        """Number of records waiting for the next flush."""
        return len(self._buffers.get(forge, {}))

    async def flush(self) -> None:
        """Append every buffered record to its forge's CSV file."""
        await asyncio.gather(*(self._flush_forge(forge) for forge in list(self._buffers)))

    async def _flush_forge(self, forge: Forge) -> None:
        lock = self._buffer_locks.setdefault(forge, asyncio.Lock())
        async with lock:
            buffer = self._buffers.get(forge)
            if not buffer:
                return

            snapshot = dict(buffer)
            try:
                await asyncio.to_thread(self._append_rows, self.csv_path(forge), list(snapshot.values()))
            except OSError as e:
                raise StorageError(f"failed to write {self.csv_path(forge)}: {e}") from e

            # Records replaced while the write was in flight stay buffered
            for name, record in snapshot.items():
                if buffer.get(name) is record:
                    del buffer[name]

            logger.debug(f"Flushed {len(snapshot)} {forge.value} records")

    def _append_rows(self, path: Path, records: List[RepoRecord]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        write_header = not path.exists()
        with open(path, "a", newline="", encoding="utf-8") as f:
            writer = csv.writer(f, lineterminator="\n")
            if write_header:
                writer.writerow(CSV_HEADER)
            writer.writerows(record.to_row() for record in records)

    async def _write_checkpoint(self) -> None:
        async with self._checkpoint_lock:
            snapshot = dict(await self._load_state())
            try:
                await asyncio.to_thread(self._write_state_file, snapshot)
            except OSError as e:
                raise StorageError(f"failed to write {self.state_path}: {e}") from e

    def _write_state_file(self, cursors: Dict[str, int]) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        tmp_path = self.state_path.with_name(self.state_path.name + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(cursors, f, indent=2, sort_keys=True)
            f.write("\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self.state_path)
