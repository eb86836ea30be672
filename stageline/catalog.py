from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

import yaml

from .errors import ConfigurationError
from .history import RunHistory
from .notify import CompositeNotifier, EmailNotifier, LogNotifier, NotificationSink
from .pipeline import Pipeline
from .stages import (
    ArchiveArtifacts,
    CompositeStep,
    NamedLock,
    PostAction,
    PublishReport,
    RunCondition,
    ScratchDir,
    ShellPostAction,
    ShellStep,
    Stage,
    StageBody,
    StageGraph,
    StageResource,
)
from .trigger import AlwaysChanged, ChangeProbe, GitRemoteProbe, OverlapPolicy, PollTrigger, ScheduleExpression
from .workspace import CommandLifecycle, EnvironmentLifecycle, WorkspaceLifecycle

logger = logging.getLogger(__name__)


class CatalogError(ConfigurationError):
    """Raised when the pipeline definitions cannot be parsed."""


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _shell_step(entry: Mapping[str, Any], where: str) -> ShellStep:
    try:
        return ShellStep.of(
            entry["run"],
            cwd=entry.get("cwd"),
            env={str(k): str(v) for k, v in (entry.get("env") or {}).items()},
            unstable_returncodes=_as_list(entry.get("unstable_returncodes")),
            reports=dict(entry.get("reports") or {}),
            retries=int(entry.get("retries", 0)),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise CatalogError(f"{where}: invalid step definition ({exc})") from exc


def _parse_body(entry: Mapping[str, Any], where: str) -> StageBody:
    if "run" in entry and "steps" in entry:
        raise CatalogError(f"{where}: use either 'run' or 'steps', not both")
    if "run" in entry:
        return _shell_step(entry, where)
    steps = entry.get("steps")
    if not steps:
        raise CatalogError(f"{where}: needs 'run' or 'steps'")
    return CompositeStep(tuple(_shell_step(step, f"{where}.steps[{i}]") for i, step in enumerate(steps)))


def _parse_post_action(entry: Any, where: str) -> PostAction:
    if not isinstance(entry, dict) or len(entry) != 1:
        raise CatalogError(f"{where}: each post-action must be a single-key mapping")
    kind, value = next(iter(entry.items()))
    if kind == "archive":
        if isinstance(value, dict):
            return ArchiveArtifacts(tuple(_as_list(value.get("patterns"))), allow_empty=bool(value.get("allow_empty", False)))
        return ArchiveArtifacts(tuple(_as_list(value)))
    if kind == "publish":
        if isinstance(value, str):
            return PublishReport(kind=value)
        if isinstance(value, dict) and "kind" in value:
            return PublishReport(kind=value["kind"], path=value.get("path"), name=value.get("name"))
        raise CatalogError(f"{where}: publish needs a report kind")
    if kind == "run":
        return ShellPostAction.of(value)
    raise CatalogError(f"{where}: unknown post-action {kind!r}")


def _parse_post(data: Optional[Mapping[str, Any]], where: str) -> Dict[str, List[PostAction]]:
    return {
        str(key): [_parse_post_action(action, f"{where}.post.{key}") for action in _as_list(actions)]
        for key, actions in (data or {}).items()
    }


def _parse_resource(entry: Any, where: str) -> StageResource:
    if entry == "scratch":
        return ScratchDir()
    if isinstance(entry, dict) and len(entry) == 1:
        kind, value = next(iter(entry.items()))
        if kind == "scratch":
            return ScratchDir(env_var=str(value))
        if kind == "lock":
            return NamedLock(str(value))
    raise CatalogError(f"{where}: unknown resource {entry!r}")


def parse_stage(entry: Mapping[str, Any], index: int = 0) -> Stage:
    if not isinstance(entry, dict) or not entry.get("name"):
        raise CatalogError(f"stages[{index}]: every stage needs a name")
    where = f"stage {entry['name']!r}"
    try:
        when = RunCondition(entry.get("when", RunCondition.ALWAYS.value))
    except ValueError as exc:
        raise CatalogError(f"{where}: unknown condition {entry.get('when')!r}") from exc
    timeout = entry.get("timeout_s")
    return Stage(
        name=str(entry["name"]),
        body=_parse_body(entry, where),
        when=when,
        allow_failure=bool(entry.get("allow_failure", False)),
        post=_parse_post(entry.get("post"), where),
        resources=tuple(_parse_resource(r, where) for r in _as_list(entry.get("resources"))),
        timeout_s=float(timeout) if timeout is not None else None,
    )


@dataclass
class EnvironmentConfig:
    setup: List[str] = field(default_factory=list)
    teardown: List[str] = field(default_factory=list)
    keep_workspace: bool = False
    timeout_s: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EnvironmentConfig":
        return cls(
            setup=[str(part) for part in _as_list(data.get("setup"))],
            teardown=[str(part) for part in _as_list(data.get("teardown"))],
            keep_workspace=bool(data.get("keep_workspace", False)),
            timeout_s=data.get("timeout_s"),
        )


@dataclass
class EmailConfig:
    to: List[str]
    from_addr: str
    smtp_host: str = "localhost"
    smtp_port: int = 25
    use_tls: bool = False
    username: Optional[str] = None
    password_env: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EmailConfig":
        recipients = [str(addr) for addr in _as_list(data.get("to"))]
        if not recipients:
            raise CatalogError("notify.email needs at least one recipient in 'to'")
        return cls(
            to=recipients,
            from_addr=data.get("from", "stageline@localhost"),
            smtp_host=data.get("smtp_host", "localhost"),
            smtp_port=int(data.get("smtp_port", 25)),
            use_tls=bool(data.get("use_tls", False)),
            username=data.get("username"),
            password_env=data.get("password_env"),
        )


@dataclass
class NotifyConfig:
    console_url: Optional[str] = None
    email: Optional[EmailConfig] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NotifyConfig":
        email = data.get("email")
        return cls(
            console_url=data.get("console_url"),
            email=EmailConfig.from_dict(email) if email else None,
        )


@dataclass
class PipelineDefinition:
    """One pipeline as declared in the definitions file."""

    name: str
    graph: StageGraph
    schedule: Optional[str] = None
    retention: Optional[int] = None
    overlap: OverlapPolicy = OverlapPolicy.QUEUE
    poll: Dict[str, Any] = field(default_factory=dict)
    environment: EnvironmentConfig = field(default_factory=EnvironmentConfig)
    notify: NotifyConfig = field(default_factory=NotifyConfig)
    env: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PipelineDefinition":
        if not isinstance(data, dict) or not data.get("name"):
            raise CatalogError("Every pipeline needs a name")
        name = str(data["name"])
        stages = data.get("stages") or []
        try:
            graph = StageGraph(
                (parse_stage(entry, index) for index, entry in enumerate(stages)),
                post=_parse_post(data.get("post"), f"pipeline {name!r}"),
            )
            overlap = OverlapPolicy(data.get("overlap", OverlapPolicy.QUEUE.value))
        except CatalogError:
            raise
        except (ConfigurationError, ValueError) as exc:
            raise CatalogError(f"pipeline {name!r}: {exc}") from exc
        retention = data.get("retention")
        return cls(
            name=name,
            graph=graph,
            schedule=data.get("schedule"),
            retention=int(retention) if retention is not None else None,
            overlap=overlap,
            poll=dict(data.get("poll") or {}),
            environment=EnvironmentConfig.from_dict(data.get("environment") or {}),
            notify=NotifyConfig.from_dict(data.get("notify") or {}),
            env={str(k): str(v) for k, v in (data.get("env") or {}).items()},
        )

    def build_lifecycle(self, root: Path) -> EnvironmentLifecycle:
        if self.environment.setup:
            return CommandLifecycle(
                root,
                setup=self.environment.setup,
                teardown=self.environment.teardown,
                keep_workspace=self.environment.keep_workspace,
                env=self.env,
                timeout_s=self.environment.timeout_s,
            )
        return WorkspaceLifecycle(root, keep_workspace=self.environment.keep_workspace, env=self.env)

    def build_notifier(self) -> NotificationSink:
        sinks: List[NotificationSink] = [LogNotifier()]
        email = self.notify.email
        if email is not None:
            password = os.environ.get(email.password_env) if email.password_env else None
            sinks.append(
                EmailNotifier(
                    to_addrs=email.to,
                    from_addr=email.from_addr,
                    smtp_host=email.smtp_host,
                    smtp_port=email.smtp_port,
                    use_tls=email.use_tls,
                    username=email.username,
                    password=password,
                )
            )
        return sinks[0] if len(sinks) == 1 else CompositeNotifier(sinks)

    def build(self, workspace: str | Path) -> Pipeline:
        workspace = Path(workspace)
        return Pipeline(
            self.name,
            self.graph,
            self.build_lifecycle(workspace / "workspaces"),
            RunHistory(workspace / "history", retention=self.retention),
            notifier=self.build_notifier(),
            console_url=self.notify.console_url,
        )

    def schedule_expression(self) -> Optional[ScheduleExpression]:
        if not self.schedule:
            return None
        return ScheduleExpression(self.schedule, seed=self.name)

    def build_probe(self) -> ChangeProbe:
        if "git" in self.poll:
            git = self.poll["git"]
            if isinstance(git, str):
                return GitRemoteProbe(git)
            return GitRemoteProbe(git["url"], git.get("ref", "HEAD"))
        return AlwaysChanged()

    def build_trigger(self, pipeline: Pipeline) -> Optional[PollTrigger]:
        expression = self.schedule_expression()
        if expression is None:
            return None
        return PollTrigger(
            self.name,
            expression,
            pipeline.run,
            probe=self.build_probe(),
            overlap=self.overlap,
        )


@dataclass
class PipelineCatalog:
    """Loader for the pipeline definitions file (YAML, or JSON which YAML reads too)."""

    path: Path
    _cache: Optional[Dict[str, PipelineDefinition]] = None

    @classmethod
    def from_file(cls, path: str | Path) -> "PipelineCatalog":
        return cls(path=Path(path))

    def _load(self) -> Dict[str, PipelineDefinition]:
        if self._cache is not None:
            return self._cache

        try:
            raw_data = yaml.safe_load(self.path.read_text())
        except OSError as exc:
            raise CatalogError(f"Cannot read {self.path}: {exc}") from exc
        except yaml.YAMLError as exc:
            raise CatalogError(f"Cannot parse {self.path}: {exc}") from exc

        if not isinstance(raw_data, dict) or not isinstance(raw_data.get("pipelines"), list):
            raise CatalogError("Definitions must contain a top-level 'pipelines' list")

        definitions: Dict[str, PipelineDefinition] = {}
        for entry in raw_data["pipelines"]:
            definition = PipelineDefinition.from_dict(entry)
            if definition.name in definitions:
                raise CatalogError(f"Duplicate pipeline name: {definition.name}")
            definitions[definition.name] = definition
        logger.debug("Loaded %d pipeline(s) from %s", len(definitions), self.path)
        self._cache = definitions
        return definitions

    def iter_pipelines(self) -> Iterable[PipelineDefinition]:
        return self._load().values()

    def get(self, name: str) -> PipelineDefinition:
        try:
            return self._load()[name]
        except KeyError as exc:
            raise CatalogError(f"Unknown pipeline: {name}") from exc

    def __len__(self) -> int:
        return len(self._load())

    def __contains__(self, name: str) -> bool:
        return name in self._load()
