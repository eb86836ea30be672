"""Execution contexts and the lifecycles that create and tear them down."""

from __future__ import annotations

import logging
import re
import shutil
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional, Sequence

from .errors import ProvisioningError
from .models import BuildRun
from .utils import append_console, ensure_directory, run_command

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


def workspace_name(run: BuildRun) -> str:
    return f"{_UNSAFE_CHARS.sub('_', run.pipeline)}-{run.number}"


@dataclass
class ExecutionContext:
    """Isolated environment a single run executes inside."""

    run_id: str
    workspace: Path
    artifacts_dir: Path
    console_log: Optional[Path] = None
    env: Dict[str, str] = field(default_factory=dict)
    name: Optional[str] = None

    def __post_init__(self) -> None:
        self.workspace = Path(self.workspace)
        self.artifacts_dir = Path(self.artifacts_dir)

    def path(self, relative: str | Path) -> Path:
        return self.workspace / relative

    def command_env(self, extra: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        env = {
            "STAGELINE_RUN_ID": self.run_id,
            "STAGELINE_WORKSPACE": str(self.workspace),
            "STAGELINE_ARTIFACTS": str(self.artifacts_dir),
        }
        if self.name:
            env["STAGELINE_ENV_NAME"] = self.name
        env.update(self.env)
        if extra:
            env.update(extra)
        return env


class EnvironmentLifecycle(ABC):
    """Acquires the execution context of a run and guarantees its teardown."""

    @abstractmethod
    def acquire(self, run: BuildRun) -> ExecutionContext:
        """Create the context or raise ProvisioningError."""

    @abstractmethod
    def release(self, context: ExecutionContext) -> None:
        """Tear the context down; called exactly once per acquired context."""


class WorkspaceLifecycle(EnvironmentLifecycle):
    """Disposable directory per run, named after the pipeline and run number."""

    def __init__(
        self,
        root: str | Path,
        *,
        keep_workspace: bool = False,
        env: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.root = Path(root)
        self.keep_workspace = keep_workspace
        self.env = dict(env or {})

    def acquire(self, run: BuildRun) -> ExecutionContext:
        name = workspace_name(run)
        workspace = self.root / name
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            workspace.mkdir()
        except FileExistsError as exc:
            raise ProvisioningError(run.id, f"workspace {workspace} already exists") from exc
        except OSError as exc:
            raise ProvisioningError(run.id, f"cannot create workspace {workspace}: {exc}") from exc

        artifacts_dir = run.artifacts_dir or self.root / "artifacts" / name
        try:
            ensure_directory(artifacts_dir)
        except OSError as exc:
            shutil.rmtree(workspace, ignore_errors=True)
            raise ProvisioningError(run.id, f"cannot create artifacts directory {artifacts_dir}: {exc}") from exc
        logger.debug("Acquired workspace %s for %s", workspace, run.id)
        return ExecutionContext(
            run_id=run.id,
            workspace=workspace,
            artifacts_dir=artifacts_dir,
            console_log=run.console_log,
            env=dict(self.env),
            name=name,
        )

    def release(self, context: ExecutionContext) -> None:
        if self.keep_workspace:
            logger.info("Keeping workspace %s", context.workspace)
            return
        shutil.rmtree(context.workspace)
        logger.debug("Removed workspace %s", context.workspace)


class CommandLifecycle(WorkspaceLifecycle):
    """Workspace plus an external environment created and removed by commands.

    Command templates are formatted with ``{name}`` and ``{workspace}``, e.g.
    ``["conda", "create", "-y", "-n", "{name}"]``.
    """

    def __init__(
        self,
        root: str | Path,
        *,
        setup: Sequence[str],
        teardown: Sequence[str] = (),
        keep_workspace: bool = False,
        env: Optional[Mapping[str, str]] = None,
        timeout_s: Optional[float] = None,
    ) -> None:
        super().__init__(root, keep_workspace=keep_workspace, env=env)
        self.setup = list(setup)
        self.teardown = list(teardown)
        self.timeout_s = timeout_s

    def _format(self, template: Sequence[str], context: ExecutionContext) -> list[str]:
        return [part.format(name=context.name, workspace=context.workspace) for part in template]

    def acquire(self, run: BuildRun) -> ExecutionContext:
        context = super().acquire(run)
        command = self._format(self.setup, context)
        try:
            result = run_command(
                command,
                cwd=context.workspace,
                env=context.command_env(),
                check=False,
                timeout_s=self.timeout_s,
            )
        except subprocess.TimeoutExpired as exc:
            shutil.rmtree(context.workspace, ignore_errors=True)
            raise ProvisioningError(run.id, f"environment setup timed out after {exc.timeout}s") from exc
        except (OSError, ValueError) as exc:
            shutil.rmtree(context.workspace, ignore_errors=True)
            raise ProvisioningError(run.id, f"environment setup could not start: {exc}") from exc
        append_console(context.console_log, command, result)
        if result.returncode != 0:
            shutil.rmtree(context.workspace, ignore_errors=True)
            raise ProvisioningError(
                run.id,
                f"environment setup exited with {result.returncode}: {result.stderr.strip()}",
            )
        return context

    def release(self, context: ExecutionContext) -> None:
        try:
            if self.teardown:
                command = self._format(self.teardown, context)
                result = run_command(command, cwd=context.workspace, env=context.command_env(), check=False)
                append_console(context.console_log, command, result)
                if result.returncode != 0:
                    logger.warning(
                        "Environment teardown for %s exited with %s", context.run_id, result.returncode
                    )
        finally:
            super().release(context)
