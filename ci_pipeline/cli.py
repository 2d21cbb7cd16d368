from __future__ import annotations

import argparse
import logging
import sys
from collections.abc import Sequence

from cikit.errors import PipelineError


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ci-pipeline", add_help=True)
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run the pipeline for a trigger event")
    run.add_argument("--config", default=None, help="Config YAML (default: CI_PIPELINE_CONFIG or config/config.yaml)")
    run.add_argument("--definition", default=None, help="Pipeline definition YAML (overrides config)")
    run.add_argument("--event", choices=("push", "pull_request", "manual"), default="manual")
    run.add_argument("--ref", default=None, help="Branch or ref the event refers to")
    run.add_argument("--revision", default="HEAD", help="Source revision (opaque)")
    run.add_argument("--run-id", default=None)

    for name, help_text in (
        ("validate", "Compile a pipeline definition and print its layout"),
        ("list-stages", "List stages in declaration order"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("--config", default=None)
        cmd.add_argument("--definition", default=None)

    history = sub.add_parser("history", help="Summarize past runs from the run index")
    history.add_argument("--config", default=None)
    history.add_argument("--index", default=None, help="Run index JSONL (overrides config)")
    history.add_argument("--csv", default=None, help="Also write the per-stage summary as CSV")

    return parser


def _definition_from_args(args: argparse.Namespace):
    from .app.run import load_run_config, resolve_definition

    cfg = None
    if args.definition is None:
        cfg, _warnings = load_run_config(args.config)
    return resolve_definition(cfg, args.definition)


def _cmd_run(args: argparse.Namespace) -> int:
    from .app.run import load_run_config, resolve_definition, run_pipeline
    from .framework.trigger import TriggerEvent

    cfg, warnings = load_run_config(args.config)
    definition = resolve_definition(cfg, args.definition)
    event = TriggerEvent(kind=args.event, revision=args.revision, ref=args.ref)
    exit_code, run = run_pipeline(cfg, definition, event, run_id=args.run_id, config_warnings=warnings)
    if run is None:
        print(f"Trigger {event.kind} ({event.ref or '-'}) does not match pipeline {definition.name}")
        return exit_code

    print(f"Pipeline {definition.name} run {run.run_id}: {run.status}")
    for group in run.groups:
        for stage in group.stages:
            result = run.stage(stage.name)
            suffix = f" ({result.error})" if result.error else ""
            print(f"  {group.name}/{stage.name}: {result.label}{suffix}")
    return exit_code


def _cmd_validate(args: argparse.Namespace) -> int:
    definition = _definition_from_args(args)
    print(f"Pipeline {definition.name}: {len(definition.groups)} group(s)")
    triggers = definition.triggers.describe()
    if triggers:
        for kind, branches in triggers.items():
            print(f"  trigger {kind}: {', '.join(branches) or '*'}")
    for group in definition.groups:
        print(f"  [{group.mode}] {group.name}")
        for stage in group.stages:
            resources = stage.resources.describe() if stage.resources else "unreserved"
            print(f"    - {stage.name} ({resources}, commands={len(stage.commands)})")
    return 0


def _cmd_list_stages(args: argparse.Namespace) -> int:
    definition = _definition_from_args(args)
    for row in definition.describe():
        print(f"{row['group']}/{row['stage']}")
    return 0


def _cmd_history(args: argparse.Namespace) -> int:
    from .app.run import load_run_config
    from .framework.records import load_run_index, summarize_runs, summarize_stages

    index_path = args.index
    if index_path is None:
        cfg, _warnings = load_run_config(args.config)
        index_path = cfg.run_index_path
    if not index_path:
        raise ValueError("No run index: pass --index or set paths.run_index_path")

    frame = load_run_index(index_path)
    if frame.empty:
        print(f"No runs recorded in {index_path}")
        return 0

    runs = summarize_runs(frame)
    print("Runs: " + ", ".join(f"{status}={count}" for status, count in sorted(runs.items())))
    summary = summarize_stages(frame)
    print(summary.to_string(index=False))
    if args.csv:
        summary.to_csv(args.csv, index=False)
        print(f"Wrote {args.csv}")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(list(argv) if argv is not None else None)
    logging.basicConfig(level=logging.INFO, format="%(levelname)s | %(message)s")

    handlers = {
        "run": _cmd_run,
        "validate": _cmd_validate,
        "list-stages": _cmd_list_stages,
        "history": _cmd_history,
    }
    handler = handlers.get(args.command)
    if handler is None:
        raise AssertionError(f"Unhandled command: {args.command}")

    try:
        return int(handler(args))
    except (PipelineError, ValueError, FileNotFoundError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main(sys.argv[1:]))
