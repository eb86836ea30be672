from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest

from stageline import run as cli

PY = sys.executable


@pytest.fixture(autouse=True)
def _quiet_logging(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(cli, "setup_logging", lambda level, log_file: None)


@pytest.fixture()
def definitions(tmp_path: Path) -> Path:
    path = tmp_path / "stageline.yaml"
    path.write_text(
        json.dumps(
            {
                "pipelines": [
                    {
                        "name": "green",
                        "schedule": "*/10 * * * *",
                        "stages": [{"name": "build", "run": [PY, "-c", "print('built')"]}],
                    },
                    {
                        "name": "red",
                        "stages": [
                            {"name": "build", "run": [PY, "-c", "import sys; sys.exit(3)"]},
                            {"name": "deploy", "run": [PY, "-c", "pass"]},
                        ],
                    },
                ]
            }
        )
    )
    return path


def _main(definitions: Path, workspace: Path, *args: str) -> int:
    return cli.main(["--definitions", str(definitions), "--workspace", str(workspace), *args])


def test_list(definitions: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert _main(definitions, tmp_path / "ws", "list") == 0
    out = capsys.readouterr().out
    assert "green\t*/10 * * * *\tbuild" in out
    assert "red\t-\tbuild, deploy" in out


def test_run_success_and_history(definitions: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert _main(definitions, tmp_path / "ws", "run", "--pipeline", "green") == 0
    record = json.loads(capsys.readouterr().out)
    assert record["status"] == "success"
    assert record["id"] == "green#1"

    assert _main(definitions, tmp_path / "ws", "history", "--pipeline", "green") == 0
    assert capsys.readouterr().out.startswith("1\tsuccess\tmanual\t")


def test_run_failure_exit_code(definitions: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert _main(definitions, tmp_path / "ws", "run", "--pipeline", "red") == cli.EXIT_FAILURE
    record = json.loads(capsys.readouterr().out)
    assert [stage["result"] for stage in record["stages"]] == ["failure", "skipped"]


def test_unknown_pipeline_is_a_configuration_error(definitions: Path, tmp_path: Path) -> None:
    assert _main(definitions, tmp_path / "ws", "run", "--pipeline", "blue") == cli.EXIT_CONFIG


def test_next_poll_time(definitions: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert _main(definitions, tmp_path / "ws", "next", "--pipeline", "green") == 0
    assert capsys.readouterr().out.startswith("*/10 * * * *\t")
    assert _main(definitions, tmp_path / "ws", "next", "--pipeline", "red") == 0
    assert "has no schedule" in capsys.readouterr().out
