from __future__ import annotations

import logging
import subprocess
import threading
import time
from contextlib import ExitStack
from typing import Optional, Sequence

from .errors import PostActionError, ProvisioningError, StageError
from .history import RunHistory
from .models import BuildRun, BuildStatus, NotificationPayload, StageOutcome, StageRecord, utc_now
from .notify import LogNotifier, NotificationSink
from .stages import PostAction, Stage, StageGraph
from .workspace import EnvironmentLifecycle, ExecutionContext

logger = logging.getLogger(__name__)


def fold_status(current: BuildStatus, outcome: BuildStatus, allow_failure: bool = False) -> BuildStatus:
    """Combine a stage outcome into the build status.

    The result is never better than ``current``; allow-failure stages only
    ever contribute SUCCESS.
    """

    if allow_failure:
        outcome = BuildStatus.SUCCESS
    return current.worst(outcome)


class CancelToken:
    """Cooperative cancellation, checked by the executor before each stage."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class PipelineExecutor:
    """Runs a stage graph for one build run, strictly in declaration order."""

    def __init__(
        self,
        graph: StageGraph,
        lifecycle: EnvironmentLifecycle,
        *,
        notifier: Optional[NotificationSink] = None,
        history: Optional[RunHistory] = None,
        console_url: Optional[str] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> None:
        self.graph = graph
        self.lifecycle = lifecycle
        self.notifier = notifier if notifier is not None else LogNotifier()
        self.history = history
        self.console_url = console_url
        self.cancel_token = cancel_token or CancelToken()

    def execute(self, run: BuildRun) -> BuildRun:
        if run.started_at is not None:
            raise ValueError(f"{run.id} has already been executed")
        run.started_at = utc_now()
        logger.info("Starting %s (%s)", run.id, run.cause)

        try:
            context = self.lifecycle.acquire(run)
        except ProvisioningError as exc:
            logger.error("Provisioning failed for %s: %s", run.id, exc.message)
            self._provisioning_failed(run, exc.message)
        except Exception as exc:
            logger.exception("Provisioning %s raised", run.id)
            self._provisioning_failed(run, f"{type(exc).__name__}: {exc}")
        else:
            try:
                self._run_stages(run, context)
                run.status = fold_status(run.status, BuildStatus.SUCCESS)
                self._run_post(self.graph.post_actions(run.status), context, None, "pipeline")
            finally:
                self._release(context)

        run.status = fold_status(run.status, BuildStatus.SUCCESS)
        run.finished_at = utc_now()
        self._console(run, f"[stageline] finished: {run.status.value.upper()}")
        if run.status is BuildStatus.FAILURE:
            self._notify(run)
        if self.history is not None:
            self._archive(run)
        logger.info("Finished %s: %s", run.id, run.status.value.upper())
        return run

    def _provisioning_failed(self, run: BuildRun, reason: str) -> None:
        self._console(run, f"[stageline] provisioning failed: {reason}")
        run.message = f"provisioning failed: {reason}"
        run.status = fold_status(run.status, BuildStatus.FAILURE)
        run.records.extend(StageRecord.skip(stage.name, "environment not provisioned") for stage in self.graph)

    def _run_stages(self, run: BuildRun, context: ExecutionContext) -> None:
        for stage in self.graph:
            if self.cancel_token.cancelled:
                if not run.cancelled:
                    logger.warning("%s cancelled before stage %s", run.id, stage.name)
                    run.cancelled = True
                    run.message = "cancelled"
                    run.status = fold_status(run.status, BuildStatus.FAILURE)
                record = StageRecord.skip(stage.name, "cancelled")
            elif run.status is BuildStatus.FAILURE:
                record = StageRecord.skip(stage.name, "skipped after failure")
            elif not stage.when.allows(run.status):
                record = StageRecord.skip(stage.name, f"condition {stage.when.value!r} not met")
            else:
                record = self._run_stage(stage, run, context)

            if record.skipped:
                logger.info("[%s] stage %s skipped: %s", run.id, stage.name, record.message)
                self._console(run, f"[stageline] stage {stage.name} skipped ({record.message})")
            run.records.append(record)
            self._run_post(stage.post_actions(record.result), context, record, stage.name)

    def _run_stage(self, stage: Stage, run: BuildRun, context: ExecutionContext) -> StageRecord:
        logger.info("[%s] stage %s started", run.id, stage.name)
        self._console(run, f"[stageline] stage {stage.name}")
        record = StageRecord(name=stage.name, result="", started_at=utc_now())
        started = time.perf_counter()
        outcome = self._invoke(stage, context)
        record.duration_s = round(time.perf_counter() - started, 3)

        record.result = outcome.status.value
        record.message = outcome.message
        record.reports = dict(outcome.reports)
        record.details = dict(outcome.details)
        record.allowed_failure = stage.allow_failure and outcome.status is not BuildStatus.SUCCESS
        run.status = fold_status(run.status, outcome.status, stage.allow_failure)

        log = logger.info if outcome.status is BuildStatus.SUCCESS else logger.warning
        log(
            "[%s] stage %s finished: %s%s (%.3fs)",
            run.id,
            stage.name,
            record.result,
            " (allowed)" if record.allowed_failure else "",
            record.duration_s,
        )
        return record

    def _invoke(self, stage: Stage, context: ExecutionContext) -> StageOutcome:
        try:
            with ExitStack() as stack:
                for resource in stage.resources:
                    stack.enter_context(resource.acquire(context))
                return stage.body.run(context, timeout_s=stage.timeout_s)
        except subprocess.TimeoutExpired:
            logger.error("Stage %s timed out after %ss", stage.name, stage.timeout_s)
            return StageOutcome.failure(f"timed out after {stage.timeout_s}s")
        except StageError as exc:
            return StageOutcome.failure(exc.message)
        except Exception as exc:
            logger.exception("Stage %s raised", stage.name)
            return StageOutcome.failure(f"{type(exc).__name__}: {exc}")

    def _run_post(
        self,
        actions: Sequence[PostAction],
        context: ExecutionContext,
        record: Optional[StageRecord],
        label: str,
    ) -> None:
        for action in actions:
            try:
                action.run(context, record)
            except PostActionError as exc:
                logger.warning("Post-action %s after %s failed: %s", type(action).__name__, label, exc)
                if record is not None:
                    record.post_errors.append(str(exc))
            except Exception as exc:
                logger.exception("Post-action %s after %s raised", type(action).__name__, label)
                if record is not None:
                    record.post_errors.append(f"{type(action).__name__}: {exc}")

    def _release(self, context: ExecutionContext) -> None:
        try:
            self.lifecycle.release(context)
        except Exception:
            logger.exception("Releasing the environment of %s failed", context.run_id)

    def _notify(self, run: BuildRun) -> None:
        payload = NotificationPayload(
            run_id=run.id,
            pipeline=run.pipeline,
            number=run.number,
            status=run.status,
            console_url=self.console_reference(run),
            failed_stages=tuple(run.failed_stages()),
            message=run.message,
        )
        try:
            self.notifier.notify(payload)
        except Exception:
            logger.exception("Failure notification for %s could not be delivered", run.id)

    def _archive(self, run: BuildRun) -> None:
        try:
            self.history.archive(run)
        except OSError:
            logger.exception("Archiving %s failed", run.id)

    def console_reference(self, run: BuildRun) -> str:
        if self.console_url:
            return self.console_url.format(pipeline=run.pipeline, number=run.number, run_id=run.id)
        if run.console_log is not None:
            return run.console_log.resolve().as_uri()
        return ""

    @staticmethod
    def _console(run: BuildRun, line: str) -> None:
        if run.console_log is None:
            return
        run.console_log.parent.mkdir(parents=True, exist_ok=True)
        with open(run.console_log, "a", encoding="utf-8") as handle:
            handle.write(line + "\n")


class Pipeline:
    """A named stage graph bound to its lifecycle, run history and notifier."""

    def __init__(
        self,
        name: str,
        graph: StageGraph,
        lifecycle: EnvironmentLifecycle,
        history: RunHistory,
        *,
        notifier: Optional[NotificationSink] = None,
        console_url: Optional[str] = None,
    ) -> None:
        self.name = name
        self.graph = graph
        self.lifecycle = lifecycle
        self.history = history
        self.notifier = notifier
        self.console_url = console_url
        self._active: Optional[CancelToken] = None

    def run(self, cause: str = "manual") -> BuildRun:
        run = self.history.create_run(self.name, cause)
        token = CancelToken()
        self._active = token
        executor = PipelineExecutor(
            self.graph,
            self.lifecycle,
            notifier=self.notifier,
            history=self.history,
            console_url=self.console_url,
            cancel_token=token,
        )
        try:
            return executor.execute(run)
        finally:
            self._active = None

    def cancel(self) -> bool:
        """Request cancellation of the in-flight run; False when none is running."""

        token = self._active
        if token is None:
            return False
        token.cancel()
        return True
