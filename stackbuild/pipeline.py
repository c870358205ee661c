from __future__ import annotations

import logging
import os
import shutil
import subprocess
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Set, Tuple

from .definition import PipelineDefinition, evaluate_condition
from .errors import InvalidRule, PermissionDenied, RetriesExhausted, StageExecutionError, StackbuildError
from .graph import StageGraph
from .lock import LOCK_FILENAME, WorkspaceLock
from .models import OnFailure, PatchRuleSet, RunReport, RunStatus, Stage, StageResult, StageStatus
from .patcher import ManifestPatcher
from .utils import dump_json, ensure_directory, run_command, tail

LOG = logging.getLogger("stackbuild.pipeline")

STATE_DIRNAME = ".stackbuild"
MISSING_TOOL_EXIT_STATUS = 127

CommandRunner = Callable[..., subprocess.CompletedProcess]


@dataclass
class PipelineContext:
    """Everything a run needs, passed explicitly instead of living in the environment."""

    workspace: Path
    name: str = "pipeline"
    rule_sets: Dict[str, PatchRuleSet] = field(default_factory=dict)
    variables: Dict[str, str] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)
    strict: bool = False
    dry_run: bool = False
    backup_suffix: Optional[str] = None
    max_workers: int = 1
    audit: bool = False
    exclude: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        self.workspace = Path(self.workspace)

    @classmethod
    def from_definition(
        cls,
        definition: PipelineDefinition,
        *,
        dry_run: bool = False,
        strict: Optional[bool] = None,
        max_workers: Optional[int] = None,
        backup_suffix: Optional[str] = None,
    ) -> "PipelineContext":
        settings = definition.settings
        return cls(
            workspace=definition.workspace,
            name=definition.name,
            rule_sets=dict(definition.rule_sets),
            variables=dict(definition.variables),
            env=dict(definition.env),
            strict=settings.strict if strict is None else strict,
            dry_run=dry_run,
            backup_suffix=backup_suffix or settings.backup_suffix,
            max_workers=max_workers or settings.max_workers,
            audit=settings.audit,
            exclude=settings.exclude,
        )

    @property
    def state_dir(self) -> Path:
        return ensure_directory(self.workspace / STATE_DIRNAME)

    @property
    def logs_dir(self) -> Path:
        return ensure_directory(self.state_dir / "logs")

    @property
    def reports_dir(self) -> Path:
        return ensure_directory(self.state_dir / "reports")

    def resolve(self, relative: Optional[str]) -> Path:
        if not relative:
            return self.workspace
        path = Path(relative).expanduser()
        return path if path.is_absolute() else self.workspace / path


class PipelineRunner:
    """Execute a :class:`StageGraph` against one workspace.

    Stages run one at a time in graph order unless ``context.max_workers`` is
    above one, in which case stages whose dependencies have finished are
    dispatched concurrently as long as their working directories and
    environment overlays do not overlap with a stage already running.
    """

    def __init__(
        self,
        context: PipelineContext,
        *,
        command_runner: CommandRunner = run_command,
    ) -> None:
        self.context = context
        self._command_runner = command_runner
        self._cancel = threading.Event()
        self._changes_lock = threading.Lock()

    def cancel(self) -> None:
        """Stop dispatching stages and terminate the running process."""

        LOG.warning("Cancellation requested")
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def run(self, graph: StageGraph, env: Optional[Mapping[str, str]] = None) -> RunReport:
        context = self.context
        ensure_directory(context.workspace)
        with WorkspaceLock(context.workspace):
            report = RunReport(pipeline=context.name, workspace=str(context.workspace), dry_run=context.dry_run)
            LOG.info(
                "%s pipeline %s (%d stages) in %s",
                "Dry-running" if context.dry_run else "Running",
                context.name,
                len(graph),
                context.workspace,
            )
            if context.max_workers > 1:
                aborted = self._run_concurrent(graph, report, env or {})
            else:
                aborted = self._run_serial(graph, report, env or {})

            order = {name: index for index, name in enumerate(graph.names())}
            report.stage_results.sort(key=lambda result: order[result.name])
            report.cancelled = self.cancelled
            report.finalize(_overall_status(report, aborted or self.cancelled))
            if context.audit and not context.dry_run:
                stamp = time.strftime("%Y%m%d-%H%M%S")
                dump_json(context.reports_dir / f"{stamp}-{os.getpid()}.json", report.to_dict())
        LOG.info("Pipeline %s finished: %s", context.name, report.overall_status.value)
        return report

    def _run_serial(self, graph: StageGraph, report: RunReport, env: Mapping[str, str]) -> bool:
        aborted = False
        for stage in graph:
            if aborted or self.cancelled:
                report.record(_not_run(stage, aborted))
                continue
            result = self._execute(stage, graph, report, env)
            report.record(result)
            if result.status is StageStatus.FAILED and stage.on_failure is OnFailure.ABORT:
                LOG.error("Stage %s failed; aborting pipeline", stage.name)
                aborted = True
        return aborted

    def _run_concurrent(self, graph: StageGraph, report: RunReport, env: Mapping[str, str]) -> bool:
        aborted = False
        pending: List[Stage] = list(graph)
        running: Dict[Future, Stage] = {}
        with ThreadPoolExecutor(max_workers=self.context.max_workers) as pool:
            while pending or running:
                if aborted or self.cancelled:
                    for stage in pending:
                        report.record(_not_run(stage, aborted))
                    pending.clear()
                else:
                    for stage in list(pending):
                        if len(running) >= self.context.max_workers:
                            break
                        if any(report.result_for(dependency) is None for dependency in stage.depends_on):
                            continue
                        if any(self._overlaps(stage, other) for other in running.values()):
                            continue
                        pending.remove(stage)
                        running[pool.submit(self._execute, stage, graph, report, env)] = stage
                if not running:
                    continue
                done, _ = wait(list(running), return_when=FIRST_COMPLETED)
                for future in done:
                    stage = running.pop(future)
                    result = future.result()
                    report.record(result)
                    if result.status is StageStatus.FAILED and stage.on_failure is OnFailure.ABORT:
                        LOG.error("Stage %s failed; aborting pipeline", stage.name)
                        aborted = True
        return aborted

    def _overlaps(self, first: Stage, second: Stage) -> bool:
        first_dir, first_keys = self._footprint(first)
        second_dir, second_keys = self._footprint(second)
        if first_keys & second_keys:
            return True
        return first_dir == second_dir or first_dir in second_dir.parents or second_dir in first_dir.parents

    def _footprint(self, stage: Stage) -> Tuple[Path, Set[str]]:
        if stage.patch is not None:
            return self.context.resolve(stage.patch.root).resolve(), set()
        assert stage.command is not None
        return self.context.resolve(stage.command.cwd).resolve(), set(stage.command.env)

    def _skip_reason(self, stage: Stage, graph: StageGraph, report: RunReport) -> Optional[Tuple[str, str]]:
        """Return ``(cause, reason)`` when ``stage`` must not run.

        A dependency skipped by its own ``when`` condition does not block its
        dependents; one skipped because of an upstream failure does.
        """

        if stage.when is not None and not evaluate_condition(stage.when, self.context.variables):
            return "condition", f"condition {stage.when!r} is false"
        for dependency in stage.depends_on:
            outcome = report.result_for(dependency)
            if outcome is None:
                continue
            if outcome.status is StageStatus.SKIPPED and outcome.details.get("cause") != "condition":
                return "dependency", f"dependency {dependency} was skipped"
            if outcome.status is StageStatus.FAILED and graph.get(dependency).on_failure is OnFailure.SKIP_DEPENDENTS:
                return "dependency", f"dependency {dependency} failed"
        return None

    def _execute(self, stage: Stage, graph: StageGraph, report: RunReport, env: Mapping[str, str]) -> StageResult:
        skip = self._skip_reason(stage, graph, report)
        if skip is not None:
            cause, reason = skip
            LOG.info("Skipping stage %s: %s", stage.name, reason)
            return StageResult(stage.name, StageStatus.SKIPPED, details={"cause": cause, "reason": reason})

        if stage.command is not None and self.context.dry_run:
            LOG.info("[dry-run] %s: %s", stage.name, " ".join(stage.command.argv))
            return StageResult(
                stage.name,
                StageStatus.PLANNED,
                details={"command": stage.command.argv, "cwd": str(self.context.resolve(stage.command.cwd))},
            )
        if stage.patch is not None and self.context.dry_run:
            root = self.context.resolve(stage.patch.root)
            if not root.is_dir():
                LOG.info("[dry-run] %s: patch root %s does not exist yet", stage.name, root)
                return StageResult(
                    stage.name,
                    StageStatus.PLANNED,
                    details={"root": str(root), "reason": "patch root does not exist yet"},
                )

        missing = [tool for tool in stage.requires if shutil.which(tool) is None]
        if missing:
            message = f"Required tool(s) not found on PATH: {', '.join(missing)}"
            LOG.error("Stage %s: %s", stage.name, message)
            return StageResult(stage.name, StageStatus.FAILED, exit_status=MISSING_TOOL_EXIT_STATUS, error=message)

        LOG.info("==> Stage %s", stage.name)
        start = time.perf_counter()
        max_attempts = stage.retry.max_attempts
        last_error: Optional[StageExecutionError] = None
        attempts = 0
        for attempt in range(1, max_attempts + 1):
            if self.cancelled:
                break
            attempts = attempt
            try:
                exit_status, details = self._attempt(stage, attempt, report, env)
            except StageExecutionError as exc:
                last_error = exc
                LOG.warning(
                    "Stage %s attempt %d/%d failed with exit status %d",
                    stage.name,
                    attempt,
                    max_attempts,
                    exc.returncode,
                )
                if exc.stderr_tail:
                    LOG.debug("%s stderr:\n%s", stage.name, exc.stderr_tail)
                if attempt < max_attempts and not self.cancelled:
                    delay = stage.retry.backoff.delay(attempt)
                    if delay > 0:
                        LOG.info("Retrying stage %s in %.1fs", stage.name, delay)
                        self._cancel.wait(delay)
                continue
            duration = time.perf_counter() - start
            LOG.info("Stage %s succeeded after %d attempt(s) in %.2fs", stage.name, attempt, duration)
            return StageResult(stage.name, StageStatus.SUCCEEDED, exit_status, attempt, duration, details=details)

        duration = time.perf_counter() - start
        if last_error is None:
            return StageResult(
                stage.name,
                StageStatus.SKIPPED,
                duration_s=duration,
                details={"cause": "cancelled", "reason": "cancelled"},
            )

        error: StackbuildError = last_error
        if max_attempts > 1:
            error = RetriesExhausted(last_error, attempts)
        LOG.error("%s", error)
        details = {"cancelled": True} if self.cancelled else {}
        return StageResult(
            stage.name,
            StageStatus.FAILED,
            exit_status=last_error.returncode,
            attempts=attempts,
            duration_s=duration,
            error=str(error),
            details=details,
        )

    def _attempt(
        self, stage: Stage, attempt: int, report: RunReport, env: Mapping[str, str]
    ) -> Tuple[int, Dict[str, object]]:
        if stage.patch is not None:
            return 0, self._patch(stage, report)
        assert stage.command is not None
        invocation = stage.command
        cwd = self.context.resolve(invocation.cwd)
        process_env = {**self.context.env, **env, **invocation.env}
        LOG.info("$ %s", " ".join(invocation.argv))
        try:
            result = self._command_runner(
                invocation.argv,
                cwd=cwd,
                env=process_env,
                timeout=stage.timeout_s,
                cancel_event=self._cancel,
            )
        except OSError as exc:
            raise StageExecutionError(stage.name, MISSING_TOOL_EXIT_STATUS, str(exc)) from exc
        self._write_log(stage, attempt, result)
        if result.returncode not in stage.success_codes:
            raise StageExecutionError(stage.name, result.returncode, tail(result.stderr or ""))
        return result.returncode, {"command": invocation.argv, "cwd": str(cwd)}

    def _patch(self, stage: Stage, report: RunReport) -> Dict[str, object]:
        assert stage.patch is not None
        rule_set = self.context.rule_sets.get(stage.patch.rule_set)
        if rule_set is None:
            raise StageExecutionError(stage.name, 1, f"Unknown rule set {stage.patch.rule_set!r}")
        root = self.context.resolve(stage.patch.root)
        patcher = ManifestPatcher(
            strict=self.context.strict,
            dry_run=self.context.dry_run,
            backup_suffix=self.context.backup_suffix,
            exclude=(STATE_DIRNAME, LOCK_FILENAME, *self.context.exclude),
        )
        try:
            records = patcher.apply(root, rule_set)
        except PermissionDenied as exc:
            with self._changes_lock:
                report.file_changes.extend(exc.records)
            raise StageExecutionError(stage.name, 1, str(exc)) from exc
        except (InvalidRule, OSError) as exc:
            raise StageExecutionError(stage.name, 1, str(exc)) from exc
        with self._changes_lock:
            report.file_changes.extend(records)
        counts = {"changed": 0, "skipped": 0, "error": 0}
        for record in records:
            counts[record.status] += 1
        return {
            "root": str(root),
            "rule_set": rule_set.name,
            "changed": counts["changed"],
            "skipped": counts["skipped"],
            "errors": counts["error"],
        }

    def _write_log(self, stage: Stage, attempt: int, result: subprocess.CompletedProcess) -> None:
        if self.context.dry_run:
            return
        log_path = self.context.logs_dir / f"{stage.name}.log"
        with log_path.open("a", encoding="utf-8") as handle:
            handle.write(f"# attempt {attempt}: {' '.join(map(str, result.args))} (exit {result.returncode})\n")
            handle.write(result.stdout or "")
            handle.write(result.stderr or "")


def _not_run(stage: Stage, aborted: bool) -> StageResult:
    cause = "aborted" if aborted else "cancelled"
    reason = "pipeline aborted" if aborted else "cancelled"
    return StageResult(stage.name, StageStatus.SKIPPED, details={"cause": cause, "reason": reason})


def _overall_status(report: RunReport, aborted: bool) -> RunStatus:
    if aborted:
        return RunStatus.ABORTED
    if any(result.status is StageStatus.FAILED for result in report.stage_results):
        return RunStatus.FAILED
    return RunStatus.COMPLETED
