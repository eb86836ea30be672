"""Cron-style polling that decides when a new build run starts."""

from __future__ import annotations

import datetime as _dt
import hashlib
import logging
import re
import threading
from abc import ABC, abstractmethod
from enum import Enum
from typing import Callable, List, Optional, Sequence

from apscheduler.job import Job
from apscheduler.schedulers.base import BaseScheduler
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger

from .errors import ConfigurationError
from .models import BuildRun
from .utils import CommandError, run_command

logger = logging.getLogger(__name__)

# (name, lowest, highest) for the five crontab fields; H in day-of-month stays
# below 29 so every month has the chosen day.
_FIELDS = (
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day", 1, 28),
    ("month", 1, 12),
    ("day_of_week", 0, 6),
)

_ALIASES = {
    "@yearly": "H H H H *",
    "@annually": "H H H H *",
    "@monthly": "H H H * *",
    "@weekly": "H H * * H",
    "@daily": "H H * * *",
    "@midnight": "H H(0-2) * * *",
    "@hourly": "H * * * *",
}

_HASH_TOKEN = re.compile(r"^H(?:\((\d+)-(\d+)\))?(?:/(\d+))?$")
_DOW_NAMES = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")
_DOW_TOKEN = re.compile(r"^(\*|\d+)(?:-(\d+))?(?:/(\d+))?$")


def _hash_value(seed: str, index: int) -> int:
    digest = hashlib.sha256(f"{seed}:{index}".encode("utf-8")).hexdigest()
    return int(digest[:8], 16)


def _resolve_token(token: str, low: int, high: int, value: int) -> str:
    match = _HASH_TOKEN.match(token)
    if not match:
        return token
    start, end, step = match.groups()
    if start is not None:
        low, high = int(start), int(end)
        if low > high:
            raise ConfigurationError(f"Invalid hash range {token!r}")
    if step is not None:
        step_value = int(step)
        if step_value < 1:
            raise ConfigurationError(f"Invalid step in {token!r}")
        first = low + value % step_value
        return f"{first}-{high}/{step_value}"
    return str(low + value % (high - low + 1))


def _dow_names(field: str) -> str:
    """Expand a crontab day-of-week field (Sunday is 0 or 7) into day names.

    APScheduler counts weekdays from Monday, so numeric ranges and steps are
    expanded here and handed over as an explicit list such as ``sun,tue,thu``.
    Tokens that already use names pass through unchanged.
    """

    if field == "*":
        return field
    tokens = []
    days = set()
    for token in field.lower().split(","):
        match = _DOW_TOKEN.match(token)
        if not match:
            tokens.append(token)
            continue
        start, end, step = match.groups()
        if start == "*":
            if end is not None:
                raise ConfigurationError(f"Invalid day of week {token!r}")
            low, high = 0, 6
        else:
            low = int(start)
            high = int(end) if end is not None else (6 if step is not None else low)
        step_value = int(step) if step is not None else 1
        if high > 7 or low > high or step_value < 1:
            raise ConfigurationError(f"Invalid day of week {token!r}")
        days.update(number % 7 for number in range(low, high + 1, step_value))
    tokens.extend(_DOW_NAMES[number] for number in sorted(days))
    return ",".join(tokens)


def resolve_expression(text: str, seed: str = "") -> List[str]:
    """Expand aliases and ``H`` tokens into five plain crontab fields."""

    expression = _ALIASES.get(text.strip(), text.strip())
    fields = expression.split()
    if len(fields) != len(_FIELDS):
        raise ConfigurationError(f"Schedule {text!r} must have 5 fields, got {len(fields)}")
    resolved = []
    for index, (field, (_name, low, high)) in enumerate(zip(fields, _FIELDS)):
        value = _hash_value(seed, index)
        resolved.append(",".join(_resolve_token(token, low, high, value) for token in field.split(",")))
    return resolved


class ScheduleExpression:
    """A 5-field cron expression bound to an APScheduler trigger."""

    def __init__(self, text: str, *, seed: str = "", timezone: str = "UTC") -> None:
        self.text = text
        self.fields = resolve_expression(text, seed)
        minute, hour, day, month, day_of_week = self.fields
        try:
            self.trigger = CronTrigger(
                minute=minute,
                hour=hour,
                day=day,
                month=month,
                day_of_week=_dow_names(day_of_week),
                timezone=timezone,
            )
        except ValueError as exc:
            raise ConfigurationError(f"Invalid schedule {text!r}: {exc}") from exc

    def next_fire_time(self, after: _dt.datetime) -> Optional[_dt.datetime]:
        return self.trigger.get_next_fire_time(None, after)

    def __str__(self) -> str:
        return " ".join(self.fields)


class ChangeProbe(ABC):
    """Answers whether upstream changed since the last poll."""

    @abstractmethod
    def has_changed(self) -> bool:
        ...


class AlwaysChanged(ChangeProbe):
    def has_changed(self) -> bool:
        return True


class GitRemoteProbe(ChangeProbe):
    """Compares the remote head of ``ref`` with the revision seen last time."""

    def __init__(self, url: str, ref: str = "HEAD") -> None:
        self.url = url
        self.ref = ref
        self.last_revision: Optional[str] = None

    def remote_revision(self) -> str:
        result = run_command(["git", "ls-remote", self.url, self.ref], timeout_s=60)
        line = result.stdout.strip().splitlines()
        if not line:
            raise CommandError(["git", "ls-remote", self.url, self.ref], 0, result.stdout, "ref not found")
        return line[0].split()[0]

    def has_changed(self) -> bool:
        revision = self.remote_revision()
        changed = revision != self.last_revision
        if changed:
            logger.info("%s %s moved to %s", self.url, self.ref, revision[:12])
        self.last_revision = revision
        return changed


class OverlapPolicy(Enum):
    """What a tick does while a run of the same pipeline is in progress."""

    QUEUE = "queue"
    DROP = "drop"


class PollTrigger:
    """Starts at most one run per matching tick; runs of a pipeline never overlap."""

    def __init__(
        self,
        name: str,
        expression: ScheduleExpression,
        start_run: Callable[[str], BuildRun],
        *,
        probe: Optional[ChangeProbe] = None,
        overlap: OverlapPolicy = OverlapPolicy.QUEUE,
    ) -> None:
        self.name = name
        self.expression = expression
        self.start_run = start_run
        self.probe = probe or AlwaysChanged()
        self.overlap = overlap
        self._lock = threading.Lock()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def fire(self, cause: str) -> Optional[BuildRun]:
        if not self._lock.acquire(blocking=self.overlap is OverlapPolicy.QUEUE):
            logger.info("%s is already running, dropping %s trigger", self.name, cause)
            return None
        try:
            return self.start_run(cause)
        finally:
            self._lock.release()

    def tick(self) -> Optional[BuildRun]:
        try:
            changed = self.probe.has_changed()
        except (CommandError, OSError) as exc:
            logger.warning("Polling %s failed: %s", self.name, exc)
            return None
        if not changed:
            logger.debug("No upstream changes for %s", self.name)
            return None
        return self.fire("poll")

    def schedule(self, scheduler: BaseScheduler) -> Job:
        return scheduler.add_job(
            self.tick,
            self.expression.trigger,
            id=f"poll-{self.name}",
            name=f"Poll: {self.name}",
            coalesce=True,
            max_instances=2 if self.overlap is OverlapPolicy.QUEUE else 1,
        )


def serve(triggers: Sequence[PollTrigger], scheduler: Optional[BaseScheduler] = None) -> None:
    """Block running the poll schedule of every trigger until interrupted."""

    scheduler = scheduler or BlockingScheduler()
    for trigger in triggers:
        trigger.schedule(scheduler)
        logger.info("Registered poll for %s (%s)", trigger.name, trigger.expression)

    try:
        logger.info("Scheduler starting with %d job(s)", len(scheduler.get_jobs()))
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Received interrupt signal")
        scheduler.shutdown()
        logger.info("Scheduler stopped")
