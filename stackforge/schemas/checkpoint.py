"""
Checkpoint schemas - durable records of operation outcomes.

CheckpointEntry is one line in the checkpoint log. RunMarker describes the
last run (running, paused at a breakpoint, halted...) and is informational
only: resume decisions are made from checkpoint entries alone.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

# Bump when the on-disk record layout changes
CHECKPOINT_SCHEMA_VERSION = 1


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class CheckpointStatus(str, Enum):
    """Outcome recorded for an operation key."""
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class CheckpointEntry:
    """
    Durable record of one operation's outcome.

    Attributes:
        key: Operation key ("phase_id/operation_id")
        status: success, failed or skipped
        completed_at: When the outcome was recorded (UTC)
        schema_version: Layout version of the serialized record
        run_id: Run that produced the outcome, if known
        detail: Failure reason or other note
    """
    key: str
    status: CheckpointStatus
    completed_at: datetime
    schema_version: int = CHECKPOINT_SCHEMA_VERSION
    run_id: Optional[str] = None
    detail: Optional[str] = None

    def __post_init__(self):
        if not self.key or "/" not in self.key:
            raise ValueError(f"checkpoint key must be 'phase/operation', got {self.key!r}")
        if self.completed_at.tzinfo is None:
            raise ValueError("completed_at must be timezone-aware")

    @property
    def phase_id(self) -> str:
        return self.key.split("/", 1)[0]

    @property
    def operation_id(self) -> str:
        return self.key.split("/", 1)[1]

    @property
    def succeeded(self) -> bool:
        return self.status == CheckpointStatus.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "schema_version": self.schema_version,
            "key": self.key,
            "status": self.status.value,
            "completed_at": self.completed_at.isoformat(),
        }
        if self.run_id is not None:
            result["run_id"] = self.run_id
        if self.detail is not None:
            result["detail"] = self.detail
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CheckpointEntry":
        """Deserialize from dictionary."""
        version = int(data.get("schema_version", 1))
        if version > CHECKPOINT_SCHEMA_VERSION:
            raise ValueError(
                f"checkpoint schema_version {version} is newer than supported "
                f"({CHECKPOINT_SCHEMA_VERSION})"
            )
        return cls(
            key=data["key"],
            status=CheckpointStatus(data["status"]),
            completed_at=datetime.fromisoformat(data["completed_at"]),
            schema_version=version,
            run_id=data.get("run_id"),
            detail=data.get("detail"),
        )


class RunMarkerStatus(str, Enum):
    """State of the most recent run."""
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    HALTED = "halted"
    INTERRUPTED = "interrupted"


@dataclass(frozen=True)
class RunMarker:
    """
    Marker describing where the last run stopped.

    Attributes:
        run_id: Run identifier
        status: running, paused, completed, halted or interrupted
        mode: Run mode the run was started in
        phase_id: Phase the run stopped in or paused after
        operation_key: Operation the run stopped at, if any
        handoff_path: Handoff artifact location when paused
        resume_command: Exact command to continue
        updated_at: When the marker was written
    """
    run_id: str
    status: RunMarkerStatus
    mode: str = "execute"
    phase_id: Optional[str] = None
    operation_key: Optional[str] = None
    handoff_path: Optional[str] = None
    resume_command: Optional[str] = None
    updated_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "schema_version": CHECKPOINT_SCHEMA_VERSION,
            "run_id": self.run_id,
            "status": self.status.value,
            "mode": self.mode,
            "updated_at": self.updated_at.isoformat(),
        }
        if self.phase_id is not None:
            result["phase_id"] = self.phase_id
        if self.operation_key is not None:
            result["operation_key"] = self.operation_key
        if self.handoff_path is not None:
            result["handoff_path"] = self.handoff_path
        if self.resume_command is not None:
            result["resume_command"] = self.resume_command
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RunMarker":
        """Deserialize from dictionary."""
        return cls(
            run_id=data["run_id"],
            status=RunMarkerStatus(data["status"]),
            mode=data.get("mode", "execute"),
            phase_id=data.get("phase_id"),
            operation_key=data.get("operation_key"),
            handoff_path=data.get("handoff_path"),
            resume_command=data.get("resume_command"),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )
