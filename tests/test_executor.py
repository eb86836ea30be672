from __future__ import annotations

import subprocess
import sys
from pathlib import Path
from typing import List, Optional

import pytest

from stageline.errors import NotificationError, PostActionError, ProvisioningError, StageError
from stageline.history import RunHistory
from stageline.models import BuildRun, BuildStatus, NotificationPayload, StageOutcome, StageRecord
from stageline.notify import NotificationSink
from stageline.pipeline import CancelToken, Pipeline, PipelineExecutor, fold_status
from stageline.stages import CallableStep, PostAction, RunCondition, ShellStep, Stage, StageGraph
from stageline.workspace import CommandLifecycle, EnvironmentLifecycle, ExecutionContext, WorkspaceLifecycle


class FakeLifecycle(EnvironmentLifecycle):
    def __init__(self, root: Path, *, fail: bool = False, fail_release: bool = False) -> None:
        self.root = root
        self.fail = fail
        self.fail_release = fail_release
        self.acquired: List[ExecutionContext] = []
        self.released: List[ExecutionContext] = []

    def acquire(self, run: BuildRun) -> ExecutionContext:
        if self.fail:
            raise ProvisioningError(run.id, "no capacity")
        workspace = self.root / f"ws-{run.number}-{len(self.acquired)}"
        workspace.mkdir(parents=True)
        context = ExecutionContext(run.id, workspace, self.root / "artifacts")
        self.acquired.append(context)
        return context

    def release(self, context: ExecutionContext) -> None:
        self.released.append(context)
        if self.fail_release:
            raise OSError("device busy")


class RecordingNotifier(NotificationSink):
    def __init__(self, error: Optional[Exception] = None) -> None:
        self.payloads: List[NotificationPayload] = []
        self.error = error

    def notify(self, payload: NotificationPayload) -> None:
        self.payloads.append(payload)
        if self.error is not None:
            raise self.error


class RecordingAction(PostAction):
    def __init__(self, label: str, log: List[str], error: Optional[Exception] = None) -> None:
        self.label = label
        self.log = log
        self.error = error

    def run(self, context: ExecutionContext, record: Optional[StageRecord]) -> None:
        self.log.append(self.label)
        if self.error is not None:
            raise self.error


def _body(name: str, status: BuildStatus, calls: List[str]) -> CallableStep:
    def _run(context: ExecutionContext) -> StageOutcome:
        calls.append(name)
        return StageOutcome(status)

    return CallableStep(_run)


def _six_stages(calls: List[str], *, failing: int = 3, allow_failure: bool = False) -> StageGraph:
    stages = []
    for index in range(1, 7):
        status = BuildStatus.FAILURE if index == failing else BuildStatus.SUCCESS
        stages.append(
            Stage(
                f"stage{index}",
                _body(f"stage{index}", status, calls),
                allow_failure=allow_failure and index == failing,
            )
        )
    return StageGraph(stages)


def _run() -> BuildRun:
    return BuildRun(pipeline="demo", number=1)


def test_fold_status_never_improves() -> None:
    assert fold_status(BuildStatus.PENDING, BuildStatus.SUCCESS) is BuildStatus.SUCCESS
    assert fold_status(BuildStatus.SUCCESS, BuildStatus.UNSTABLE) is BuildStatus.UNSTABLE
    assert fold_status(BuildStatus.UNSTABLE, BuildStatus.SUCCESS) is BuildStatus.UNSTABLE
    assert fold_status(BuildStatus.FAILURE, BuildStatus.SUCCESS) is BuildStatus.FAILURE
    assert fold_status(BuildStatus.SUCCESS, BuildStatus.FAILURE, allow_failure=True) is BuildStatus.SUCCESS
    assert fold_status(BuildStatus.PENDING, BuildStatus.UNSTABLE, allow_failure=True) is BuildStatus.SUCCESS


def test_failure_skips_remaining_stages_and_notifies_once(tmp_path: Path) -> None:
    calls: List[str] = []
    lifecycle = FakeLifecycle(tmp_path)
    notifier = RecordingNotifier()
    executor = PipelineExecutor(_six_stages(calls), lifecycle, notifier=notifier)

    run = executor.execute(_run())

    assert calls == ["stage1", "stage2", "stage3"]
    assert run.outcomes() == [
        ("stage1", "success"),
        ("stage2", "success"),
        ("stage3", "failure"),
        ("stage4", "skipped"),
        ("stage5", "skipped"),
        ("stage6", "skipped"),
    ]
    assert run.status is BuildStatus.FAILURE
    assert len(notifier.payloads) == 1
    assert notifier.payloads[0].status is BuildStatus.FAILURE
    assert notifier.payloads[0].failed_stages == ("stage3",)
    assert len(lifecycle.released) == 1
    assert lifecycle.released[0] is lifecycle.acquired[0]


def test_allowed_failure_keeps_running_without_notification(tmp_path: Path) -> None:
    calls: List[str] = []
    lifecycle = FakeLifecycle(tmp_path)
    notifier = RecordingNotifier()
    executor = PipelineExecutor(_six_stages(calls, allow_failure=True), lifecycle, notifier=notifier)

    run = executor.execute(_run())

    assert calls == [f"stage{i}" for i in range(1, 7)]
    assert run.status is BuildStatus.SUCCESS
    assert run.records[2].result == "failure"
    assert run.records[2].allowed_failure is True
    assert run.failed_stages() == []
    assert notifier.payloads == []
    assert len(lifecycle.released) == 1


def test_provisioning_failure_runs_nothing(tmp_path: Path) -> None:
    calls: List[str] = []
    lifecycle = FakeLifecycle(tmp_path, fail=True)
    notifier = RecordingNotifier()
    executor = PipelineExecutor(_six_stages(calls), lifecycle, notifier=notifier)

    run = executor.execute(_run())

    assert calls == []
    assert lifecycle.released == []
    assert run.status is BuildStatus.FAILURE
    assert all(record.skipped for record in run.records)
    assert "no capacity" in run.message
    assert [p.status for p in notifier.payloads] == [BuildStatus.FAILURE]


class BrokenLifecycle(FakeLifecycle):
    def acquire(self, run: BuildRun) -> ExecutionContext:
        raise RuntimeError("backend unavailable")


def test_unexpected_provisioning_error_is_a_failed_run(tmp_path: Path) -> None:
    calls: List[str] = []
    lifecycle = BrokenLifecycle(tmp_path)
    notifier = RecordingNotifier()

    run = PipelineExecutor(_six_stages(calls), lifecycle, notifier=notifier).execute(_run())

    assert calls == []
    assert lifecycle.released == []
    assert run.status is BuildStatus.FAILURE
    assert run.finished
    assert len(run.records) == 6 and all(record.skipped for record in run.records)
    assert "RuntimeError: backend unavailable" in run.message
    assert len(notifier.payloads) == 1


def test_setup_timeout_fails_the_run_without_leaking(tmp_path: Path) -> None:
    notifier = RecordingNotifier()
    history = RunHistory(tmp_path / "history", retention=5)
    lifecycle = CommandLifecycle(
        tmp_path / "ws",
        setup=[sys.executable, "-c", "import time; time.sleep(5)"],
        timeout_s=0.2,
    )
    graph = StageGraph([Stage("build", CallableStep(lambda context: True))])
    pipeline = Pipeline("demo", graph, lifecycle, history, notifier=notifier)

    run = pipeline.run()

    assert run.status is BuildStatus.FAILURE
    assert run.outcomes() == [("build", "skipped")]
    assert len(notifier.payloads) == 1
    assert not (tmp_path / "ws" / "demo-1").exists()
    assert history.load("demo", 1).finished


def test_identical_graphs_yield_identical_outcomes(tmp_path: Path) -> None:
    calls: List[str] = []
    graph = _six_stages(calls, failing=5)
    first = PipelineExecutor(graph, FakeLifecycle(tmp_path / "a"), notifier=RecordingNotifier()).execute(_run())
    second = PipelineExecutor(graph, FakeLifecycle(tmp_path / "b"), notifier=RecordingNotifier()).execute(_run())
    assert first.outcomes() == second.outcomes()
    assert len(calls) == 10


def test_run_conditions_gate_on_current_status(tmp_path: Path) -> None:
    calls: List[str] = []
    graph = StageGraph(
        [
            Stage("tests", _body("tests", BuildStatus.UNSTABLE, calls)),
            Stage("deploy", _body("deploy", BuildStatus.SUCCESS, calls), when=RunCondition.SUCCESS),
            Stage("docs", _body("docs", BuildStatus.SUCCESS, calls), when=RunCondition.NOT_FAILURE),
            Stage("triage", _body("triage", BuildStatus.SUCCESS, calls), when=RunCondition.UNSTABLE),
        ]
    )
    notifier = RecordingNotifier()
    run = PipelineExecutor(graph, FakeLifecycle(tmp_path), notifier=notifier).execute(_run())

    assert calls == ["tests", "docs", "triage"]
    assert run.records[1].skipped
    assert run.status is BuildStatus.UNSTABLE
    assert notifier.payloads == []


def test_empty_graph_succeeds(tmp_path: Path) -> None:
    lifecycle = FakeLifecycle(tmp_path)
    run = PipelineExecutor(StageGraph([]), lifecycle, notifier=RecordingNotifier()).execute(_run())
    assert run.status is BuildStatus.SUCCESS
    assert len(lifecycle.released) == 1


def test_body_exception_becomes_failure(tmp_path: Path) -> None:
    def _explode(context: ExecutionContext) -> None:
        raise RuntimeError("boom")

    def _reject(context: ExecutionContext) -> None:
        raise StageError("lint", "too many warnings")

    lifecycle = FakeLifecycle(tmp_path)
    graph = StageGraph(
        [
            Stage("lint", CallableStep(_reject), allow_failure=True),
            Stage("build", CallableStep(_explode)),
        ]
    )
    run = PipelineExecutor(graph, lifecycle, notifier=RecordingNotifier()).execute(_run())

    assert run.records[0].message == "too many warnings"
    assert run.records[1].result == "failure"
    assert "RuntimeError: boom" in run.records[1].message
    assert run.status is BuildStatus.FAILURE
    assert len(lifecycle.released) == 1


def test_interrupt_still_releases_context(tmp_path: Path) -> None:
    def _interrupt(context: ExecutionContext) -> None:
        raise KeyboardInterrupt

    lifecycle = FakeLifecycle(tmp_path)
    notifier = RecordingNotifier()
    executor = PipelineExecutor(StageGraph([Stage("wait", CallableStep(_interrupt))]), lifecycle, notifier=notifier)

    with pytest.raises(KeyboardInterrupt):
        executor.execute(_run())
    assert len(lifecycle.released) == 1
    assert notifier.payloads == []


def test_post_actions_run_for_outcome_and_never_escalate(tmp_path: Path) -> None:
    calls: List[str] = []
    log: List[str] = []
    graph = StageGraph(
        [
            Stage(
                "unit",
                _body("unit", BuildStatus.SUCCESS, calls),
                post={
                    "always": [RecordingAction("unit-always", log, PostActionError("no report"))],
                    "success": [RecordingAction("unit-success", log, ValueError("bad"))],
                    "failure": [RecordingAction("unit-failure", log)],
                },
            ),
            Stage("package", _body("package", BuildStatus.FAILURE, calls), post={"failure": [RecordingAction("package-failure", log)]}),
            Stage("publish", _body("publish", BuildStatus.SUCCESS, calls), post={"skipped": [RecordingAction("publish-skipped", log)]}),
        ],
        post={
            "always": [RecordingAction("pipeline-always", log)],
            "failure": [RecordingAction("pipeline-failure", log)],
            "success": [RecordingAction("pipeline-success", log)],
        },
    )
    run = PipelineExecutor(graph, FakeLifecycle(tmp_path), notifier=RecordingNotifier()).execute(_run())

    assert log == [
        "unit-always",
        "unit-success",
        "package-failure",
        "publish-skipped",
        "pipeline-always",
        "pipeline-failure",
    ]
    assert run.records[0].result == "success"
    assert run.records[0].post_errors == ["no report", "RecordingAction: bad"]
    assert run.status is BuildStatus.FAILURE


def test_cancellation_between_stages(tmp_path: Path) -> None:
    token = CancelToken()
    calls: List[str] = []

    def _cancel(context: ExecutionContext) -> None:
        calls.append("build")
        token.cancel()

    graph = StageGraph(
        [
            Stage("build", CallableStep(_cancel)),
            Stage("test", _body("test", BuildStatus.SUCCESS, calls)),
            Stage("package", _body("package", BuildStatus.SUCCESS, calls)),
        ]
    )
    lifecycle = FakeLifecycle(tmp_path)
    notifier = RecordingNotifier()
    run = PipelineExecutor(graph, lifecycle, notifier=notifier, cancel_token=token).execute(_run())

    assert calls == ["build"]
    assert run.cancelled is True
    assert [record.message for record in run.records[1:]] == ["cancelled", "cancelled"]
    assert run.status is BuildStatus.FAILURE
    assert len(notifier.payloads) == 1
    assert len(lifecycle.released) == 1


def test_release_and_notification_errors_are_contained(tmp_path: Path) -> None:
    calls: List[str] = []
    lifecycle = FakeLifecycle(tmp_path, fail_release=True)
    notifier = RecordingNotifier(error=NotificationError("smtp down"))
    executor = PipelineExecutor(_six_stages(calls, failing=2), lifecycle, notifier=notifier)

    run = executor.execute(_run())

    assert run.status is BuildStatus.FAILURE
    assert len(notifier.payloads) == 1
    assert len(lifecycle.released) == 1

    ok = PipelineExecutor(StageGraph([]), FakeLifecycle(tmp_path / "ok", fail_release=True)).execute(
        BuildRun(pipeline="demo", number=2)
    )
    assert ok.status is BuildStatus.SUCCESS


def test_stage_timeout_is_a_failure(tmp_path: Path) -> None:
    sleeper = ShellStep.of([sys.executable, "-c", "import time; time.sleep(10)"])
    graph = StageGraph([Stage("slow", sleeper, timeout_s=0.5)])
    run = PipelineExecutor(graph, FakeLifecycle(tmp_path), notifier=RecordingNotifier()).execute(_run())

    assert run.records[0].result == "failure"
    assert "timed out" in run.records[0].message


def test_timeout_expired_from_body(tmp_path: Path) -> None:
    def _slow(context: ExecutionContext) -> None:
        raise subprocess.TimeoutExpired(["sleep"], 1)

    graph = StageGraph([Stage("slow", CallableStep(_slow), timeout_s=1)])
    run = PipelineExecutor(graph, FakeLifecycle(tmp_path), notifier=RecordingNotifier()).execute(_run())
    assert run.records[0].message == "timed out after 1s"


def test_run_cannot_be_executed_twice(tmp_path: Path) -> None:
    executor = PipelineExecutor(StageGraph([]), FakeLifecycle(tmp_path), notifier=RecordingNotifier())
    run = executor.execute(_run())
    with pytest.raises(ValueError):
        executor.execute(run)


def test_pipeline_run_archives_and_links_console(tmp_path: Path) -> None:
    notifier = RecordingNotifier()
    graph = StageGraph(
        [
            Stage("hello", ShellStep.of([sys.executable, "-c", "print('hello from stage')"])),
            Stage("fail", ShellStep.of([sys.executable, "-c", "import sys; sys.exit(4)"])),
        ]
    )
    history = RunHistory(tmp_path / "history", retention=5)
    pipeline = Pipeline(
        "demo",
        graph,
        WorkspaceLifecycle(tmp_path / "workspaces"),
        history,
        notifier=notifier,
    )

    run = pipeline.run()

    assert run.status is BuildStatus.FAILURE
    assert not (tmp_path / "workspaces" / "demo-1").exists()
    stored = history.load("demo", 1)
    assert stored.outcomes() == [("hello", "success"), ("fail", "failure")]
    assert stored.finished
    console = run.console_log.read_text()
    assert "hello from stage" in console
    assert "[exit 4]" in console
    assert notifier.payloads[0].console_url == run.console_log.resolve().as_uri()
    assert pipeline.cancel() is False


def test_console_url_template(tmp_path: Path) -> None:
    notifier = RecordingNotifier()
    executor = PipelineExecutor(
        StageGraph([Stage("fail", CallableStep(lambda context: False))]),
        FakeLifecycle(tmp_path),
        notifier=notifier,
        console_url="https://ci.example.com/{pipeline}/{number}/console",
    )
    executor.execute(BuildRun(pipeline="demo", number=7))
    assert notifier.payloads[0].console_url == "https://ci.example.com/demo/7/console"
    assert notifier.payloads[0].run_id == "demo#7"
