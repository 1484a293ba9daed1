"""
CheckpointStore - durable record of which operations have completed.

The checkpoint store is the only mutable state shared across runs. It
manages:
- CheckpointEntries (one live entry per operation key)
- The RunMarker describing where the last run stopped (informational only)

Storage backends:
- In-memory (for testing)
- File-based: an append-only JSON Lines log plus an atomically replaced
  run marker

Monotonicity: once a key is recorded ``success`` it stays ``success`` until
it is explicitly cleared. Recording ``failed`` or ``skipped`` over it is
ignored with a warning.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

from stackforge.errors import PersistenceError
from stackforge.schemas import (
    CHECKPOINT_SCHEMA_VERSION,
    CheckpointEntry,
    CheckpointStatus,
    RunMarker,
)

logger = logging.getLogger(__name__)

CHECKPOINT_FILENAME = "checkpoints.jsonl"
MARKER_FILENAME = "run.json"

# Status written by clear() to retire a key in the append-only log
CLEARED = "cleared"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CheckpointStore(ABC):
    """
    Abstract base class for checkpoint storage.

    Implementations provide entry storage and the run marker; the base class
    supplies the monotonicity rule and the derived queries.
    """

    @abstractmethod
    def get(self, key: str) -> Optional[CheckpointEntry]:
        """
        Return the live entry for a key.

        Args:
            key: Operation key ("phase_id/operation_id")

        Returns:
            The CheckpointEntry if one is live, None otherwise
        """
        pass

    @abstractmethod
    def list(self) -> list[CheckpointEntry]:
        """Return all live entries in the order they were first recorded."""
        pass

    @abstractmethod
    def _put(self, entry: CheckpointEntry) -> None:
        """Durably store an entry, replacing any live entry for its key."""
        pass

    @abstractmethod
    def clear(self, key: str) -> bool:
        """
        Remove the live entry for a key.

        Returns:
            True if an entry was removed
        """
        pass

    @abstractmethod
    def clear_all(self) -> None:
        """Remove every entry and the run marker."""
        pass

    @abstractmethod
    def read_marker(self) -> Optional[RunMarker]:
        """Return the last written run marker, if any."""
        pass

    @abstractmethod
    def write_marker(self, marker: RunMarker) -> None:
        """Replace the run marker."""
        pass

    @abstractmethod
    def clear_marker(self) -> None:
        """Remove the run marker."""
        pass

    def has(self, key: str) -> bool:
        """True if the key is checkpointed as successful."""
        entry = self.get(key)
        return entry is not None and entry.succeeded

    def record(
        self,
        key: str,
        status: Union[CheckpointStatus, str],
        timestamp: Optional[datetime] = None,
        detail: Optional[str] = None,
        run_id: Optional[str] = None,
    ) -> CheckpointEntry:
        """
        Record an operation outcome.

        The entry is durable when this returns.

        Args:
            key: Operation key
            status: success, failed or skipped
            timestamp: Completion time (defaults to now, UTC)
            detail: Failure reason or note
            run_id: Run that produced the outcome

        Returns:
            The live entry for the key after the call

        Raises:
            PersistenceError: If the entry could not be durably written
        """
        status = CheckpointStatus(status)
        existing = self.get(key)
        if existing is not None and existing.succeeded and status != CheckpointStatus.SUCCESS:
            logger.warning(
                f"Ignoring {status.value} for {key}: already checkpointed as success",
                extra={
                    "event": "checkpoint.monotonic",
                    "metadata": {"key": key, "status": status.value},
                },
            )
            return existing

        entry = CheckpointEntry(
            key=key,
            status=status,
            completed_at=timestamp or _utcnow(),
            run_id=run_id,
            detail=detail,
        )
        self._put(entry)
        logger.debug(
            f"Checkpoint recorded: {key} = {status.value}",
            extra={"event": "checkpoint.recorded", "metadata": {"key": key, "status": status.value}},
        )
        return entry

    def clear_prefix(self, phase_id: str) -> list[str]:
        """
        Clear every entry belonging to a phase.

        Returns:
            Keys that were cleared
        """
        prefix = f"{phase_id}/"
        cleared = [e.key for e in self.list() if e.key.startswith(prefix)]
        for key in cleared:
            self.clear(key)
        return cleared

    def completed_keys(self) -> set[str]:
        return {e.key for e in self.list() if e.succeeded}


class InMemoryCheckpointStore(CheckpointStore):
    """
    In-memory implementation of CheckpointStore for testing.

    All data is lost when the instance is garbage collected.
    """

    def __init__(self):
        self._entries: dict[str, CheckpointEntry] = {}
        self._marker: Optional[RunMarker] = None

    def get(self, key: str) -> Optional[CheckpointEntry]:
        return self._entries.get(key)

    def list(self) -> list[CheckpointEntry]:
        return list(self._entries.values())

    def _put(self, entry: CheckpointEntry) -> None:
        self._entries[entry.key] = entry

    def clear(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def clear_all(self) -> None:
        self._entries.clear()
        self._marker = None

    def read_marker(self) -> Optional[RunMarker]:
        return self._marker

    def write_marker(self, marker: RunMarker) -> None:
        self._marker = marker

    def clear_marker(self) -> None:
        self._marker = None


class FileCheckpointStore(CheckpointStore):
    """
    File-based implementation of CheckpointStore.

    Layout:
        state_dir/
            checkpoints.jsonl   append-only log, one JSON object per line
            run.json            run marker, replaced atomically

    Every record is appended, flushed and fsynced before record() returns.
    clear() appends a tombstone line. On read the last line for a key wins.
    A torn final line (interrupted write) is ignored with a warning; a
    corrupt line anywhere else raises PersistenceError.
    """

    def __init__(self, state_dir: Union[Path, str]):
        self._state_dir = Path(state_dir)
        self._entries: Optional[dict[str, CheckpointEntry]] = None
        self._torn_tail = False
        self._unterminated = False

    @property
    def state_dir(self) -> Path:
        return self._state_dir

    @property
    def log_path(self) -> Path:
        return self._state_dir / CHECKPOINT_FILENAME

    @property
    def marker_path(self) -> Path:
        return self._state_dir / MARKER_FILENAME

    # -- reading ---------------------------------------------------------

    def _load(self) -> dict[str, CheckpointEntry]:
        if self._entries is not None:
            return self._entries

        entries: dict[str, CheckpointEntry] = {}
        self._torn_tail = False
        self._unterminated = False
        if not self.log_path.exists():
            self._entries = entries
            return entries

        try:
            with open(self.log_path, "r") as f:
                text = f.read()
        except OSError as e:
            raise PersistenceError(f"Cannot read checkpoint log {self.log_path}: {e}")

        lines = text.split("\n")
        # A complete last record saved without its newline
        self._unterminated = bool(text) and not text.endswith("\n")

        # Index of the last non-empty line
        last = max((i for i, line in enumerate(lines) if line.strip()), default=-1)

        for lineno, line in enumerate(lines):
            if not line.strip():
                continue
            try:
                data = json.loads(line)
                if data.get("status") == CLEARED:
                    entries.pop(data["key"], None)
                    continue
                entry = CheckpointEntry.from_dict(data)
            except (json.JSONDecodeError, KeyError, ValueError, TypeError, AttributeError) as e:
                if lineno == last:
                    logger.warning(
                        f"Ignoring torn final line in {self.log_path}: {line[:80]!r}",
                        extra={"event": "checkpoint.torn_line", "metadata": {"line": lineno + 1}},
                    )
                    self._torn_tail = True
                    continue
                raise PersistenceError(
                    f"Corrupt checkpoint record at {self.log_path}:{lineno + 1}: {e}"
                )
            entries[entry.key] = entry

        self._entries = entries
        return entries

    def get(self, key: str) -> Optional[CheckpointEntry]:
        return self._load().get(key)

    def list(self) -> list[CheckpointEntry]:
        return list(self._load().values())

    # -- writing ---------------------------------------------------------

    def _append(self, record: dict) -> None:
        entries = self._load()
        if self._torn_tail:
            # Appending after a torn line would bury it mid-file
            self._rewrite(entries)
        try:
            self._state_dir.mkdir(parents=True, exist_ok=True)
            with open(self.log_path, "a") as f:
                if self._unterminated:
                    f.write("\n")
                f.write(json.dumps(record, sort_keys=True) + "\n")
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            self._entries = None
            raise PersistenceError(f"Cannot write checkpoint log {self.log_path}: {e}")
        self._unterminated = False

    def _put(self, entry: CheckpointEntry) -> None:
        self._append(entry.to_dict())
        self._load()[entry.key] = entry

    def clear(self, key: str) -> bool:
        if self.get(key) is None:
            return False
        self._append({
            "schema_version": CHECKPOINT_SCHEMA_VERSION,
            "key": key,
            "status": CLEARED,
            "completed_at": _utcnow().isoformat(),
        })
        self._load().pop(key, None)
        return True

    def clear_all(self) -> None:
        try:
            self.log_path.unlink(missing_ok=True)
            self.marker_path.unlink(missing_ok=True)
        except OSError as e:
            raise PersistenceError(f"Cannot clear checkpoint state in {self._state_dir}: {e}")
        self._entries = {}
        self._torn_tail = False
        self._unterminated = False

    def compact(self) -> int:
        """
        Rewrite the log with only live entries.

        Returns:
            Number of entries kept
        """
        entries = self._load()
        self._rewrite(entries)
        return len(entries)

    def _rewrite(self, entries: dict[str, CheckpointEntry]) -> None:
        content = "".join(json.dumps(e.to_dict(), sort_keys=True) + "\n" for e in entries.values())
        self._atomic_write(self.log_path, content)
        self._torn_tail = False
        self._unterminated = False

    def _atomic_write(self, path: Path, content: str) -> None:
        """Write to a temp file in the same directory, fsync, then os.replace."""
        try:
            self._state_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=str(self._state_dir), prefix=f".{path.name}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w") as f:
                    f.write(content)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, path)
            except OSError:
                Path(tmp_path).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise PersistenceError(f"Cannot write {path}: {e}")

    # -- run marker ------------------------------------------------------

    def read_marker(self) -> Optional[RunMarker]:
        if not self.marker_path.exists():
            return None
        try:
            with open(self.marker_path) as f:
                data = json.load(f)
            return RunMarker.from_dict(data)
        except (OSError, json.JSONDecodeError, KeyError, ValueError) as e:
            # The marker never drives resume decisions
            logger.warning(
                f"Ignoring unreadable run marker {self.marker_path}: {e}",
                extra={"event": "checkpoint.marker_unreadable"},
            )
            return None

    def write_marker(self, marker: RunMarker) -> None:
        self._atomic_write(self.marker_path, json.dumps(marker.to_dict(), indent=2) + "\n")

    def clear_marker(self) -> None:
        try:
            self.marker_path.unlink(missing_ok=True)
        except OSError as e:
            raise PersistenceError(f"Cannot remove run marker {self.marker_path}: {e}")
