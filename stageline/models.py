from __future__ import annotations

import datetime as _dt
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple


SKIPPED = "skipped"


def utc_now() -> str:
    return _dt.datetime.now(_dt.timezone.utc).isoformat()


class BuildStatus(Enum):
    """Build-wide status, ordered by severity."""

    PENDING = "pending"
    SUCCESS = "success"
    UNSTABLE = "unstable"
    FAILURE = "failure"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]

    def worst(self, other: "BuildStatus") -> "BuildStatus":
        return self if self.severity >= other.severity else other


_SEVERITY = {
    BuildStatus.PENDING: 0,
    BuildStatus.SUCCESS: 1,
    BuildStatus.UNSTABLE: 2,
    BuildStatus.FAILURE: 3,
}


@dataclass(frozen=True)
class StageOutcome:
    """Result returned by a stage body."""

    status: BuildStatus
    reports: Dict[str, str] = field(default_factory=dict)
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.status is BuildStatus.PENDING:
            raise ValueError("A stage outcome cannot be pending")

    @classmethod
    def success(cls, **kwargs: Any) -> "StageOutcome":
        return cls(BuildStatus.SUCCESS, **kwargs)

    @classmethod
    def unstable(cls, message: str = "", **kwargs: Any) -> "StageOutcome":
        return cls(BuildStatus.UNSTABLE, message=message, **kwargs)

    @classmethod
    def failure(cls, message: str = "", **kwargs: Any) -> "StageOutcome":
        return cls(BuildStatus.FAILURE, message=message, **kwargs)


@dataclass
class StageRecord:
    """Audit entry kept for every declared stage of a run."""

    name: str
    result: str
    allowed_failure: bool = False
    message: str = ""
    reports: Dict[str, str] = field(default_factory=dict)
    details: Dict[str, Any] = field(default_factory=dict)
    started_at: Optional[str] = None
    duration_s: float = 0.0
    post_errors: List[str] = field(default_factory=list)

    @property
    def skipped(self) -> bool:
        return self.result == SKIPPED

    @classmethod
    def skip(cls, name: str, message: str = "") -> "StageRecord":
        return cls(name=name, result=SKIPPED, message=message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.name,
            "result": self.result,
            "allowed_failure": self.allowed_failure,
            "message": self.message,
            "reports": dict(self.reports),
            "details": dict(self.details),
            "started_at": self.started_at,
            "duration_s": self.duration_s,
            "post_errors": list(self.post_errors),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StageRecord":
        return cls(
            name=data.get("stage", ""),
            result=data.get("result", SKIPPED),
            allowed_failure=bool(data.get("allowed_failure", False)),
            message=data.get("message", ""),
            reports=dict(data.get("reports", {})),
            details=dict(data.get("details", {})),
            started_at=data.get("started_at"),
            duration_s=float(data.get("duration_s", 0.0)),
            post_errors=list(data.get("post_errors", [])),
        )


@dataclass
class BuildRun:
    """One execution of a stage graph.

    ``status`` is only ever changed by the executor's fold; everything else on
    the run is bookkeeping for reporting and retention.
    """

    pipeline: str
    number: int
    cause: str = "manual"
    status: BuildStatus = BuildStatus.PENDING
    records: List[StageRecord] = field(default_factory=list)
    cancelled: bool = False
    message: str = ""
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    console_log: Optional[Path] = None
    artifacts_dir: Optional[Path] = None

    @property
    def id(self) -> str:
        return f"{self.pipeline}#{self.number}"

    @property
    def finished(self) -> bool:
        return self.finished_at is not None

    def outcomes(self) -> List[Tuple[str, str]]:
        return [(record.name, record.result) for record in self.records]

    def failed_stages(self) -> List[str]:
        return [
            record.name
            for record in self.records
            if record.result == BuildStatus.FAILURE.value and not record.allowed_failure
        ]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pipeline": self.pipeline,
            "number": self.number,
            "id": self.id,
            "cause": self.cause,
            "status": self.status.value,
            "cancelled": self.cancelled,
            "message": self.message,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "console_log": str(self.console_log) if self.console_log else None,
            "artifacts_dir": str(self.artifacts_dir) if self.artifacts_dir else None,
            "stages": [record.to_dict() for record in self.records],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BuildRun":
        console_log = data.get("console_log")
        artifacts_dir = data.get("artifacts_dir")
        return cls(
            pipeline=data["pipeline"],
            number=int(data["number"]),
            cause=data.get("cause", "manual"),
            status=BuildStatus(data.get("status", BuildStatus.PENDING.value)),
            records=[StageRecord.from_dict(entry) for entry in data.get("stages", [])],
            cancelled=bool(data.get("cancelled", False)),
            message=data.get("message", ""),
            started_at=data.get("started_at"),
            finished_at=data.get("finished_at"),
            console_log=Path(console_log) if console_log else None,
            artifacts_dir=Path(artifacts_dir) if artifacts_dir else None,
        )


@dataclass(frozen=True)
class NotificationPayload:
    """What a notification sink receives for a failed run."""

    run_id: str
    pipeline: str
    number: int
    status: BuildStatus
    console_url: str
    failed_stages: Tuple[str, ...] = ()
    message: str = ""

    @property
    def subject(self) -> str:
        return f"[stageline] {self.run_id} {self.status.value.upper()}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "pipeline": self.pipeline,
            "number": self.number,
            "status": self.status.value,
            "console_url": self.console_url,
            "failed_stages": list(self.failed_stages),
            "message": self.message,
        }
