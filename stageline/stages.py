from __future__ import annotations

import json
import logging
import shlex
import shutil
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import (
    Callable,
    ContextManager,
    Dict,
    FrozenSet,
    Iterable,
    Iterator,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Union,
)

from .errors import ConfigurationError, PostActionError
from .models import SKIPPED, BuildStatus, StageOutcome, StageRecord
from .reports import summarize_report
from .utils import append_console, ensure_directory, run_command, sha256_file
from .workspace import ExecutionContext

logger = logging.getLogger(__name__)

STAGE_POST_KEYS = frozenset({"always", "success", "unstable", "failure", SKIPPED})
PIPELINE_POST_KEYS = frozenset({"always", "success", "unstable", "failure"})


class RunCondition(Enum):
    """Gate evaluated against the build status before a stage runs."""

    ALWAYS = "always"
    SUCCESS = "success"
    NOT_FAILURE = "not_failure"
    UNSTABLE = "unstable"

    def allows(self, status: BuildStatus) -> bool:
        if self is RunCondition.ALWAYS:
            return True
        if self is RunCondition.SUCCESS:
            return status in (BuildStatus.PENDING, BuildStatus.SUCCESS)
        if self is RunCondition.NOT_FAILURE:
            return status is not BuildStatus.FAILURE
        return status is BuildStatus.UNSTABLE


def split_command(command: Union[str, Sequence[str]]) -> Tuple[str, ...]:
    if isinstance(command, str):
        parts = tuple(shlex.split(command))
    else:
        parts = tuple(str(part) for part in command)
    if not parts:
        raise ConfigurationError("Command must not be empty")
    return parts


# --- stage bodies -----------------------------------------------------------


class StageBody(ABC):
    """Unit of work run by a stage."""

    @abstractmethod
    def run(self, context: ExecutionContext, timeout_s: Optional[float] = None) -> StageOutcome:
        """Run inside ``context`` and report the outcome."""


@dataclass(frozen=True)
class ShellStep(StageBody):
    """External command, executed without a shell.

    Return codes listed in ``unstable_returncodes`` mark the stage unstable
    instead of failed (a test runner reporting test failures, for instance).
    ``reports`` maps report names to workspace-relative paths; only files that
    exist once the command has finished are reported.
    """

    command: Tuple[str, ...]
    cwd: Optional[str] = None
    env: Mapping[str, str] = field(default_factory=dict)
    unstable_returncodes: FrozenSet[int] = frozenset()
    reports: Mapping[str, str] = field(default_factory=dict)
    retries: int = 0

    @classmethod
    def of(cls, command: Union[str, Sequence[str]], **kwargs) -> "ShellStep":
        if "unstable_returncodes" in kwargs:
            kwargs["unstable_returncodes"] = frozenset(int(code) for code in kwargs["unstable_returncodes"])
        return cls(command=split_command(command), **kwargs)

    def run(self, context: ExecutionContext, timeout_s: Optional[float] = None) -> StageOutcome:
        cwd = context.path(self.cwd) if self.cwd else context.workspace
        attempts = max(0, self.retries) + 1
        for attempt in range(1, attempts + 1):
            result = run_command(
                self.command,
                cwd=cwd,
                env=context.command_env(self.env),
                check=False,
                timeout_s=timeout_s,
            )
            append_console(context.console_log, self.command, result)
            if result.returncode == 0 or result.returncode in self.unstable_returncodes:
                break
            if attempt < attempts:
                logger.info("%s exited with %s, retrying (%s/%s)", self.command[0], result.returncode, attempt, self.retries)

        reports = {
            name: str(context.path(relative))
            for name, relative in self.reports.items()
            if context.path(relative).exists()
        }
        details = {"returncode": result.returncode, "attempts": attempt}
        if result.returncode == 0:
            return StageOutcome.success(reports=reports, details=details)
        message = f"{' '.join(self.command)} exited with {result.returncode}"
        if result.returncode in self.unstable_returncodes:
            return StageOutcome.unstable(message, reports=reports, details=details)
        return StageOutcome.failure(message, reports=reports, details=details)


@dataclass(frozen=True)
class CompositeStep(StageBody):
    """Sub-steps run in order; the worst status wins and a failure stops the rest."""

    steps: Tuple[StageBody, ...]

    def run(self, context: ExecutionContext, timeout_s: Optional[float] = None) -> StageOutcome:
        deadline = time.monotonic() + timeout_s if timeout_s is not None else None
        status = BuildStatus.SUCCESS
        reports: Dict[str, str] = {}
        messages: List[str] = []
        for step in self.steps:
            remaining = None
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return StageOutcome.failure(f"timed out after {timeout_s}s", reports=reports)
            outcome = step.run(context, timeout_s=remaining)
            status = status.worst(outcome.status)
            reports.update(outcome.reports)
            if outcome.message:
                messages.append(outcome.message)
            if outcome.status is BuildStatus.FAILURE:
                break
        return StageOutcome(status, reports=reports, message="; ".join(messages))


@dataclass(frozen=True)
class CallableStep(StageBody):
    """In-process body; ``True``/``None`` mean success and ``False`` failure."""

    func: Callable[[ExecutionContext], Union[StageOutcome, bool, None]]

    def run(self, context: ExecutionContext, timeout_s: Optional[float] = None) -> StageOutcome:
        result = self.func(context)
        if isinstance(result, StageOutcome):
            return result
        if result is False:
            return StageOutcome.failure(f"{getattr(self.func, '__name__', 'callable')} returned False")
        return StageOutcome.success()


# --- stage resources --------------------------------------------------------


class StageResource(ABC):
    """Something a stage holds only while its body runs."""

    @abstractmethod
    def acquire(self, context: ExecutionContext) -> ContextManager[object]:
        """Return a context manager scoping the resource to the body."""


@dataclass(frozen=True)
class ScratchDir(StageResource):
    """Temporary directory inside the workspace, exported through ``env_var``."""

    env_var: str = "TMPDIR"

    @contextmanager
    def acquire(self, context: ExecutionContext) -> Iterator[Path]:
        path = Path(tempfile.mkdtemp(prefix="scratch-", dir=context.workspace))
        previous = context.env.get(self.env_var)
        context.env[self.env_var] = str(path)
        try:
            yield path
        finally:
            if previous is None:
                context.env.pop(self.env_var, None)
            else:
                context.env[self.env_var] = previous
            shutil.rmtree(path, ignore_errors=True)


_LOCKS: Dict[str, threading.Lock] = {}
_LOCKS_GUARD = threading.Lock()


def named_lock(name: str) -> threading.Lock:
    with _LOCKS_GUARD:
        return _LOCKS.setdefault(name, threading.Lock())


@dataclass(frozen=True)
class NamedLock(StageResource):
    """Process-wide lock shared by every run that names it."""

    name: str

    def acquire(self, context: ExecutionContext) -> ContextManager[object]:
        logger.debug("%s waiting for lock %s", context.run_id, self.name)
        return named_lock(self.name)


# --- post-actions -----------------------------------------------------------


class PostAction(ABC):
    """Side effect run after a stage (or the whole pipeline) has finished."""

    @abstractmethod
    def run(self, context: ExecutionContext, record: Optional[StageRecord]) -> None:
        """Raise on failure; the executor logs and contains the error."""


@dataclass(frozen=True)
class ArchiveArtifacts(PostAction):
    """Copy workspace files matching ``patterns`` into the run's artifacts."""

    patterns: Tuple[str, ...]
    allow_empty: bool = False

    def _matches(self, workspace: Path) -> List[Path]:
        matched = set()
        for pattern in self.patterns:
            matched.update(path for path in workspace.glob(pattern) if path.is_file())
        return sorted(matched)

    def run(self, context: ExecutionContext, record: Optional[StageRecord]) -> None:
        files = self._matches(context.workspace)
        if not files and not self.allow_empty:
            raise PostActionError(f"No artifacts matched {', '.join(self.patterns)}")

        fingerprints_path = context.artifacts_dir / "fingerprints.json"
        fingerprints: Dict[str, str] = {}
        if fingerprints_path.exists():
            fingerprints = json.loads(fingerprints_path.read_text())

        archived: List[str] = []
        for source in files:
            relative = source.relative_to(context.workspace)
            target = context.artifacts_dir / relative
            ensure_directory(target.parent)
            shutil.copy2(source, target)
            fingerprints[str(relative)] = sha256_file(target)
            archived.append(str(relative))

        ensure_directory(context.artifacts_dir)
        fingerprints_path.write_text(json.dumps(fingerprints, indent=2, sort_keys=True) + "\n")
        if record is not None:
            record.details.setdefault("artifacts", []).extend(archived)
        logger.info("Archived %d artifact(s) for %s", len(archived), context.run_id)


ReportPublisher = Callable[[str, Path], None]


@dataclass(frozen=True)
class PublishReport(PostAction):
    """Summarise a report file and hand it to an external publisher.

    The report is looked up in the stage's produced reports under ``name``
    (defaulting to ``kind``) unless an explicit workspace-relative ``path``
    is given.
    """

    kind: str
    path: Optional[str] = None
    name: Optional[str] = None
    publisher: Optional[ReportPublisher] = None

    def _resolve(self, context: ExecutionContext, record: Optional[StageRecord]) -> Path:
        if self.path is not None:
            return context.path(self.path)
        key = self.name or self.kind
        if record is None or key not in record.reports:
            raise PostActionError(f"Stage produced no {key!r} report")
        return Path(record.reports[key])

    def run(self, context: ExecutionContext, record: Optional[StageRecord]) -> None:
        path = self._resolve(context, record)
        if not path.exists():
            raise PostActionError(f"Report {path} does not exist")
        try:
            summary = summarize_report(self.kind, path)
        except (OSError, ValueError, SyntaxError) as exc:
            # xml.etree's ParseError is a SyntaxError subclass
            raise PostActionError(f"Cannot read {self.kind} report {path}: {exc}") from exc
        if record is not None:
            record.details.setdefault("reports", {})[self.name or self.kind] = summary
        if self.publisher is not None:
            self.publisher(self.kind, path)


@dataclass(frozen=True)
class ShellPostAction(PostAction):
    command: Tuple[str, ...]

    @classmethod
    def of(cls, command: Union[str, Sequence[str]]) -> "ShellPostAction":
        return cls(split_command(command))

    def run(self, context: ExecutionContext, record: Optional[StageRecord]) -> None:
        result = run_command(self.command, cwd=context.workspace, env=context.command_env(), check=True)
        append_console(context.console_log, self.command, result)


# --- graph ------------------------------------------------------------------


def _freeze_post(post: Optional[Mapping[str, Iterable[PostAction]]], allowed: FrozenSet[str]) -> Mapping[str, Tuple[PostAction, ...]]:
    frozen: Dict[str, Tuple[PostAction, ...]] = {}
    for key, actions in (post or {}).items():
        if key not in allowed:
            raise ConfigurationError(f"Unknown post condition {key!r}; expected one of {sorted(allowed)}")
        frozen[key] = tuple(actions)
    return MappingProxyType(frozen)


@dataclass(frozen=True)
class Stage:
    name: str
    body: StageBody
    when: RunCondition = RunCondition.ALWAYS
    allow_failure: bool = False
    post: Mapping[str, Tuple[PostAction, ...]] = field(default_factory=dict)
    resources: Tuple[StageResource, ...] = ()
    timeout_s: Optional[float] = None

    def __post_init__(self) -> None:
        if not self.name:
            raise ConfigurationError("Stage name must not be empty")
        object.__setattr__(self, "post", _freeze_post(self.post, STAGE_POST_KEYS))
        object.__setattr__(self, "resources", tuple(self.resources))

    def post_actions(self, result: str) -> Tuple[PostAction, ...]:
        return self.post.get("always", ()) + self.post.get(result, ())


class StageGraph:
    """Stages in declaration order plus pipeline-level post-actions."""

    def __init__(
        self,
        stages: Iterable[Stage],
        post: Optional[Mapping[str, Iterable[PostAction]]] = None,
    ) -> None:
        self._stages: Tuple[Stage, ...] = tuple(stages)
        seen = set()
        for stage in self._stages:
            if stage.name in seen:
                raise ConfigurationError(f"Duplicate stage name: {stage.name}")
            seen.add(stage.name)
        self._post = _freeze_post(post, PIPELINE_POST_KEYS)

    @property
    def stages(self) -> Tuple[Stage, ...]:
        return self._stages

    def names(self) -> List[str]:
        return [stage.name for stage in self._stages]

    def post_actions(self, status: BuildStatus) -> Tuple[PostAction, ...]:
        return self._post.get("always", ()) + self._post.get(status.value, ())

    def __iter__(self) -> Iterator[Stage]:
        return iter(self._stages)

    def __len__(self) -> int:
        return len(self._stages)
