from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Dict, List, Optional

from .definition import DefinitionFile, PipelineDefinition
from .errors import CycleDetected, DefinitionError, InvalidRule, WorkspaceBusy
from .models import RunReport, RunStatus
from .pipeline import STATE_DIRNAME, PipelineContext, PipelineRunner
from .utils import dump_json

LOG = logging.getLogger("stackbuild")

EXIT_CODES = {
    RunStatus.COMPLETED: 0,
    RunStatus.ABORTED: 1,
    RunStatus.FAILED: 2,
}
EXIT_INVALID_DEFINITION = 3
EXIT_WORKSPACE_BUSY = 4


def setup_logging(verbose: bool = False, log_file: Optional[Path] = None) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    LOG.setLevel(level)
    for handler in list(LOG.handlers):
        LOG.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.setLevel(level)
    LOG.addHandler(console_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, mode="w")
        file_handler.setFormatter(formatter)
        file_handler.setLevel(logging.DEBUG)
        LOG.addHandler(file_handler)


def _parse_overrides(pairs: List[str]) -> Dict[str, str]:
    overrides: Dict[str, str] = {}
    for pair in pairs:
        key, separator, value = pair.partition("=")
        if not separator or not key:
            raise DefinitionError(f"--set expects KEY=VALUE, got {pair!r}")
        overrides[key.strip()] = value
    return overrides


def _load_definition(args: argparse.Namespace) -> PipelineDefinition:
    definition_file = DefinitionFile.from_file(args.definition)
    return definition_file.resolve(workspace=args.workspace, overrides=_parse_overrides(args.set))


def format_summary(report: RunReport) -> List[str]:
    lines = [f"Pipeline {report.pipeline}: {report.overall_status.value}"]
    width = max((len(result.name) for result in report.stage_results), default=0)
    for result in report.stage_results:
        line = f"  {result.name.ljust(width)}  {result.status.value:<9}"
        if result.attempts:
            line += f"  attempts={result.attempts}  {result.duration_s:.2f}s"
        if result.exit_status not in (None, 0):
            line += f"  exit={result.exit_status}"
        reason = result.details.get("reason")
        if reason:
            line += f"  ({reason})"
        lines.append(line)
    changed = sum(1 for record in report.file_changes if record.changed)
    skipped = sum(1 for record in report.file_changes if record.status == "skipped")
    errors = sum(1 for record in report.file_changes if record.status == "error")
    verb = "would change" if report.dry_run else "changed"
    lines.append(f"  files {verb}: {changed}, skipped: {skipped}, errors: {errors}")
    return lines


def _execute(args: argparse.Namespace, *, dry_run: bool) -> int:
    definition = _load_definition(args)
    graph = definition.build_graph()
    context = PipelineContext.from_definition(
        definition,
        dry_run=dry_run,
        strict=True if args.strict else None,
        max_workers=args.max_workers,
        backup_suffix=args.backup_suffix,
    )
    if not dry_run:
        setup_logging(args.verbose, context.workspace / STATE_DIRNAME / "run.log")

    runner = PipelineRunner(context)
    previous_handler = signal.signal(signal.SIGINT, lambda signum, frame: runner.cancel())
    try:
        report = runner.run(graph)
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    for line in format_summary(report):
        LOG.info(line)
    payload = report.to_dict()
    if args.report:
        dump_json(args.report, payload)
        LOG.info("Run report written to %s", args.report)
    else:
        print(json.dumps(payload, indent=2))
    return EXIT_CODES[report.overall_status]


def cmd_run(args: argparse.Namespace) -> int:
    return _execute(args, dry_run=False)


def cmd_dry_run(args: argparse.Namespace) -> int:
    return _execute(args, dry_run=True)


def cmd_validate(args: argparse.Namespace) -> int:
    definition = _load_definition(args)
    graph = definition.build_graph()
    payload = {
        "pipeline": definition.name,
        "workspace": str(definition.workspace),
        "order": graph.names(),
        "stages": [stage.to_dict() for stage in graph],
        "rule_sets": {name: [rule.to_dict() for rule in rule_set] for name, rule_set in definition.rule_sets.items()},
    }
    print(json.dumps(payload, indent=2))
    LOG.info("Pipeline %s is valid (%d stages)", definition.name, len(graph))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Declarative manifest-patching build pipeline runner")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    parser.add_argument(
        "--workspace",
        default=None,
        help="Workspace directory (overrides $STACKBUILD_WORKSPACE and the definition).",
    )
    parser.add_argument(
        "--set",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Override a pipeline variable. May be repeated.",
    )
    parser.add_argument("--strict", action="store_true", help="Fail patch stages on per-file permission errors.")
    parser.add_argument("--max-workers", type=int, default=None, help="Run independent stages concurrently.")
    parser.add_argument("--backup-suffix", default=None, help="Keep the original of every patched file.")
    parser.add_argument("--report", default=None, help="Write the JSON run report here instead of stdout.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    for command, handler, help_text in (
        ("run", cmd_run, "Execute the pipeline"),
        ("validate", cmd_validate, "Check the definition and print the stage order"),
        ("dry-run", cmd_dry_run, "Report what would change without running commands or writing files"),
    ):
        command_parser = subparsers.add_parser(command, help=help_text)
        command_parser.add_argument("definition", help="Path to the pipeline definition (YAML or JSON).")
        command_parser.set_defaults(func=handler)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)
    try:
        return args.func(args)
    except (DefinitionError, InvalidRule, CycleDetected) as exc:
        LOG.error("Invalid pipeline definition: %s", exc)
        return EXIT_INVALID_DEFINITION
    except WorkspaceBusy as exc:
        LOG.error("%s", exc)
        return EXIT_WORKSPACE_BUSY


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
