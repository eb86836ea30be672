from __future__ import annotations

import argparse
import datetime as _dt
import json
import logging
import sys
from pathlib import Path

from .catalog import PipelineCatalog, PipelineDefinition
from .errors import ConfigurationError
from .history import RunHistory
from .logging_setup import setup_logging
from .models import BuildStatus
from .trigger import serve

logger = logging.getLogger(__name__)

EXIT_FAILURE = 1
EXIT_CONFIG = 2


def _load_definition(args: argparse.Namespace) -> PipelineDefinition:
    return PipelineCatalog.from_file(args.definitions).get(args.pipeline)


def cmd_list(args: argparse.Namespace) -> int:
    catalog = PipelineCatalog.from_file(args.definitions)
    for definition in catalog.iter_pipelines():
        print(f"{definition.name}\t{definition.schedule or '-'}\t{', '.join(definition.graph.names())}")
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    definition = _load_definition(args)
    pipeline = definition.build(Path(args.workspace))
    run = pipeline.run(cause="manual")
    print(json.dumps(run.to_dict(), indent=2))
    return EXIT_FAILURE if run.status is BuildStatus.FAILURE else 0


def cmd_history(args: argparse.Namespace) -> int:
    definition = _load_definition(args)
    history = RunHistory(Path(args.workspace) / "history", retention=definition.retention)
    for run in history.list_runs(definition.name):
        print(f"{run.number}\t{run.status.value}\t{run.cause}\t{run.started_at or '-'}")
    return 0


def cmd_next(args: argparse.Namespace) -> int:
    definition = _load_definition(args)
    expression = definition.schedule_expression()
    if expression is None:
        print(f"{definition.name} has no schedule")
        return 0
    now = _dt.datetime.now(_dt.timezone.utc)
    next_time = expression.next_fire_time(now)
    print(f"{expression}\t{next_time.isoformat() if next_time else '-'}")
    return 0


def cmd_schedule(args: argparse.Namespace) -> int:
    catalog = PipelineCatalog.from_file(args.definitions)
    triggers = []
    for definition in catalog.iter_pipelines():
        trigger = definition.build_trigger(definition.build(Path(args.workspace)))
        if trigger is not None:
            triggers.append(trigger)
    if not triggers:
        logger.error("No pipeline in %s declares a schedule", args.definitions)
        return EXIT_CONFIG
    serve(triggers)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Sequential stage pipeline runner")
    parser.add_argument(
        "--definitions",
        default="stageline.yaml",
        help="Path to the pipeline definitions file.",
    )
    parser.add_argument(
        "--workspace",
        default=".stageline",
        help="Directory used for run workspaces, history and artifacts.",
    )
    parser.add_argument("--log-level", default="INFO", help="Log level for stageline loggers.")
    parser.add_argument("--log-file", default=None, help="Optional rotating log file.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    list_parser = subparsers.add_parser("list", help="List pipelines in the definitions file")
    list_parser.set_defaults(func=cmd_list)

    for command, func, help_text in (
        ("run", cmd_run, "Run a pipeline once"),
        ("history", cmd_history, "Show retained runs of a pipeline"),
        ("next", cmd_next, "Show the next poll time of a pipeline"),
    ):
        sub = subparsers.add_parser(command, help=help_text)
        sub.add_argument("--pipeline", required=True)
        sub.set_defaults(func=func)

    schedule_parser = subparsers.add_parser("schedule", help="Poll every scheduled pipeline until interrupted")
    schedule_parser.set_defaults(func=cmd_schedule)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_level, args.log_file)
    try:
        return args.func(args)
    except ConfigurationError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_CONFIG


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
