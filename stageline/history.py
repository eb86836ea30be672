from __future__ import annotations

import json
import logging
import re
import shutil
import threading
from pathlib import Path
from typing import List, Optional

from .errors import ConfigurationError
from .models import BuildRun
from .utils import dump_json, ensure_directory

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


class RunHistory:
    """Numbered run records on disk, pruned to the ``retention`` newest runs.

    Layout: ``<root>/<pipeline>/<number>/{run.json,console.log,artifacts/}``.
    """

    def __init__(self, root: str | Path, *, retention: Optional[int] = None) -> None:
        if retention is not None and retention < 1:
            raise ConfigurationError(f"Retention must keep at least one run, got {retention}")
        self.root = Path(root)
        self.retention = retention
        self._lock = threading.Lock()

    def pipeline_dir(self, pipeline: str) -> Path:
        return self.root / _UNSAFE_CHARS.sub("_", pipeline)

    def run_dir(self, pipeline: str, number: int) -> Path:
        return self.pipeline_dir(pipeline) / str(number)

    def numbers(self, pipeline: str) -> List[int]:
        directory = self.pipeline_dir(pipeline)
        if not directory.exists():
            return []
        return sorted(int(entry.name) for entry in directory.iterdir() if entry.is_dir() and entry.name.isdigit())

    def create_run(self, pipeline: str, cause: str = "manual") -> BuildRun:
        with self._lock:
            number = max(self.numbers(pipeline), default=0) + 1
            run_dir = self.run_dir(pipeline, number)
            ensure_directory(run_dir.parent)
            run_dir.mkdir()
        run = BuildRun(
            pipeline=pipeline,
            number=number,
            cause=cause,
            console_log=run_dir / "console.log",
            artifacts_dir=ensure_directory(run_dir / "artifacts"),
        )
        dump_json(run_dir / "run.json", run.to_dict())
        return run

    def archive(self, run: BuildRun) -> List[int]:
        """Persist the final run record and return the run numbers evicted."""

        dump_json(self.run_dir(run.pipeline, run.number) / "run.json", run.to_dict())
        return self.enforce(run.pipeline)

    def enforce(self, pipeline: str) -> List[int]:
        """Evict the oldest runs beyond ``retention``.

        Unfinished runs are kept unless a newer run has already finished, in
        which case they were abandoned by an interrupted process.
        """

        if self.retention is None:
            return []
        with self._lock:
            numbers = self.numbers(pipeline)
            records = {number: self._read(pipeline, number) for number in numbers}
            newest_finished = max(
                (number for number, record in records.items() if record is not None and record.finished),
                default=0,
            )
            evicted: List[int] = []
            for number in numbers[: max(0, len(numbers) - self.retention)]:
                record = records[number]
                if record is not None and not record.finished and number > newest_finished:
                    logger.debug("Not evicting %s, still running", record.id)
                    continue
                shutil.rmtree(self.run_dir(pipeline, number))
                evicted.append(number)
        if evicted:
            logger.info("Evicted %s run(s) %s beyond retention of %d", pipeline, evicted, self.retention)
        return evicted

    def _read(self, pipeline: str, number: int) -> Optional[BuildRun]:
        path = self.run_dir(pipeline, number) / "run.json"
        if not path.exists():
            return None
        return BuildRun.from_dict(json.loads(path.read_text()))

    def load(self, pipeline: str, number: int) -> BuildRun:
        record = self._read(pipeline, number)
        if record is None:
            raise KeyError(f"{pipeline}#{number}")
        return record

    def list_runs(self, pipeline: str) -> List[BuildRun]:
        runs = (self._read(pipeline, number) for number in self.numbers(pipeline))
        return [run for run in runs if run is not None]
