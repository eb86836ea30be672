from __future__ import annotations

import hashlib
import json
import os
import shlex
import subprocess
from pathlib import Path
from typing import Mapping, Optional, Sequence, TextIO


class CommandError(RuntimeError):
    """A command run with ``check=True`` exited non-zero."""

    def __init__(self, command: Sequence[str], returncode: int, stdout: str, stderr: str) -> None:
        self.command = list(command)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        detail = stderr.strip().splitlines()[-1] if stderr.strip() else ""
        super().__init__(f"{shlex.join(self.command)} exited with {returncode}" + (f": {detail}" if detail else ""))


def run_command(
    command: Sequence[str],
    *,
    cwd: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    check: bool = True,
    timeout_s: Optional[float] = None,
) -> subprocess.CompletedProcess[str]:
    """Execute a subprocess command and return the completed process.

    ``subprocess.TimeoutExpired`` propagates when ``timeout_s`` elapses; the
    child is killed by ``subprocess.run`` before the exception is raised.
    """

    process_env = os.environ.copy()
    if env:
        process_env.update(env)

    result = subprocess.run(
        list(command),
        cwd=str(cwd) if cwd else None,
        env=process_env,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        check=False,
        timeout=timeout_s,
    )
    if check and result.returncode != 0:
        raise CommandError(command, result.returncode, result.stdout, result.stderr)
    return result


def append_console(console: Path | None, command: Sequence[str], result: subprocess.CompletedProcess[str]) -> None:
    """Append a command and its captured output to a run console log."""

    if console is None:
        return
    console.parent.mkdir(parents=True, exist_ok=True)
    with open(console, "a", encoding="utf-8") as handle:
        _write_block(handle, command, result)


def _write_block(handle: TextIO, command: Sequence[str], result: subprocess.CompletedProcess[str]) -> None:
    handle.write(f"+ {' '.join(command)}\n")
    if result.stdout:
        handle.write(result.stdout if result.stdout.endswith("\n") else result.stdout + "\n")
    if result.stderr:
        handle.write(result.stderr if result.stderr.endswith("\n") else result.stderr + "\n")
    handle.write(f"[exit {result.returncode}]\n")


def ensure_directory(path: str | Path) -> Path:
    """Create a directory and return its Path object."""

    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path


def sha256_file(path: str | Path) -> str:
    """Compute the SHA256 hash of the provided file."""

    digest = hashlib.sha256()
    with open(path, "rb") as file_handle:
        for chunk in iter(lambda: file_handle.read(8192), b""):
            digest.update(chunk)
    return digest.hexdigest()


def dump_json(path: str | Path, payload: Mapping[str, object], *, indent: int = 2) -> None:
    """Write ``payload`` as JSON, replacing ``path`` atomically so readers never see half a record."""

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    partial = path.with_name(path.name + ".partial")
    partial.write_text(json.dumps(payload, indent=indent, sort_keys=True) + "\n")
    os.replace(partial, path)
