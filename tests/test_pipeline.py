from __future__ import annotations

import json
import os
import sys
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import pytest

from stackbuild.errors import WorkspaceBusy
from stackbuild.graph import StageGraph
from stackbuild.models import (
    CommandSpec,
    OnFailure,
    PatchRule,
    PatchRuleSet,
    PatchSpec,
    RetryPolicy,
    RunStatus,
    Stage,
    StageStatus,
)
from stackbuild.pipeline import MISSING_TOOL_EXIT_STATUS, STATE_DIRNAME, PipelineContext, PipelineRunner

from conftest import FakeCommandRunner

MANIFEST_RULES = PatchRuleSet(
    "default",
    [
        PatchRule(match="edk2-stable202405", replacement="edk2-stable202411", scope="*.xml"),
        PatchRule(match="refs/tags/v2.14.0", replacement="refs/tags/v2.15.0", scope="*.xml"),
    ],
).freeze()


def _command(
    name: str,
    depends_on: Sequence[str] = (),
    *,
    on_failure: OnFailure = OnFailure.ABORT,
    cwd: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
    **kwargs,
) -> Stage:
    return Stage(
        name=name,
        command=CommandSpec(name, cwd=cwd, env=env or {}),
        depends_on=tuple(depends_on),
        on_failure=on_failure,
        **kwargs,
    )


def _runner(tmp_path: Path, fake: FakeCommandRunner, **context) -> PipelineRunner:
    return PipelineRunner(PipelineContext(workspace=tmp_path / "ws", **context), command_runner=fake)


def test_failed_stage_skips_only_its_dependents(tmp_path: Path) -> None:
    fake = FakeCommandRunner({"A": [1]})
    graph = StageGraph.build(
        [_command("A", on_failure=OnFailure.SKIP_DEPENDENTS), _command("B", ["A"]), _command("C")]
    )

    report = _runner(tmp_path, fake).run(graph)

    assert report.statuses() == {"A": "failed", "B": "skipped", "C": "succeeded"}
    assert report.overall_status is RunStatus.FAILED
    assert fake.binaries() == ["A", "C"]
    assert report.result_for("B").details["cause"] == "dependency"


def test_chain_with_failing_middle_stage(tmp_path: Path) -> None:
    fake = FakeCommandRunner({"B": [1]})
    graph = StageGraph.build(
        [_command("A"), _command("B", ["A"], on_failure=OnFailure.SKIP_DEPENDENTS), _command("C", ["B"])]
    )

    report = _runner(tmp_path, fake).run(graph)

    assert report.statuses() == {"A": "succeeded", "B": "failed", "C": "skipped"}
    assert report.overall_status is RunStatus.FAILED
    assert report.result_for("B").error == "Stage B exited with status 1\nB failed"


def test_abort_policy_stops_the_pipeline(tmp_path: Path) -> None:
    fake = FakeCommandRunner({"A": [2]})
    graph = StageGraph.build([_command("A"), _command("B"), _command("C", ["B"])])

    report = _runner(tmp_path, fake).run(graph)

    assert report.statuses() == {"A": "failed", "B": "skipped", "C": "skipped"}
    assert report.result_for("A").exit_status == 2
    assert report.result_for("B").details["cause"] == "aborted"
    assert report.overall_status is RunStatus.ABORTED
    assert fake.binaries() == ["A"]


def test_continue_policy_runs_dependents_but_marks_run_failed(tmp_path: Path) -> None:
    fake = FakeCommandRunner({"list-quirks": [1]})
    graph = StageGraph.build(
        [_command("list-quirks", on_failure=OnFailure.CONTINUE), _command("cherry-pick", ["list-quirks"])]
    )

    report = _runner(tmp_path, fake).run(graph)

    assert report.statuses() == {"list-quirks": "failed", "cherry-pick": "succeeded"}
    assert report.overall_status is RunStatus.FAILED


def test_retry_succeeds_on_third_attempt(tmp_path: Path) -> None:
    fake = FakeCommandRunner({"repo-sync": [1, 1, 0]})
    graph = StageGraph.build([_command("repo-sync", retry=RetryPolicy(max_attempts=3))])

    report = _runner(tmp_path, fake).run(graph)

    result = report.result_for("repo-sync")
    assert result.status is StageStatus.SUCCEEDED
    assert result.attempts == 3
    assert report.overall_status is RunStatus.COMPLETED


def test_exhausted_retries_report_attempts(tmp_path: Path) -> None:
    fake = FakeCommandRunner({"repo-sync": [1, 1, 1, 0]})
    graph = StageGraph.build([_command("repo-sync", retry=RetryPolicy(max_attempts=3))])

    report = _runner(tmp_path, fake).run(graph)

    result = report.result_for("repo-sync")
    assert result.status is StageStatus.FAILED
    assert result.attempts == 3
    assert "after 3 attempt(s)" in (result.error or "")
    assert len(fake.calls) == 3


def test_false_condition_skips_without_blocking_dependents(tmp_path: Path) -> None:
    fake = FakeCommandRunner()
    graph = StageGraph.build(
        [
            _command("install-toolchain", when="install_toolchain"),
            _command("cross-build", ["install-toolchain"], when="build_mode==cross"),
            _command("native-build", when="build_mode==native"),
        ]
    )

    report = _runner(tmp_path, fake, variables={"install_toolchain": "no", "build_mode": "cross"}).run(graph)

    assert report.statuses() == {
        "install-toolchain": "skipped",
        "cross-build": "succeeded",
        "native-build": "skipped",
    }
    assert report.result_for("native-build").details["cause"] == "condition"
    assert report.overall_status is RunStatus.COMPLETED


def test_success_codes_accept_expected_failures(tmp_path: Path) -> None:
    fake = FakeCommandRunner({"repo-init-bootstrap": [1]})
    graph = StageGraph.build(
        [_command("repo-init-bootstrap", success_codes=(0, 1)), _command("copy", ["repo-init-bootstrap"])]
    )

    report = _runner(tmp_path, fake).run(graph)

    assert report.result_for("repo-init-bootstrap").exit_status == 1
    assert report.statuses()["copy"] == "succeeded"
    assert report.overall_status is RunStatus.COMPLETED


def test_missing_required_tool_fails_without_running(tmp_path: Path) -> None:
    fake = FakeCommandRunner()
    graph = StageGraph.build([_command("build", requires=("stackbuild-no-such-tool",))])

    report = _runner(tmp_path, fake).run(graph)

    result = report.result_for("build")
    assert result.status is StageStatus.FAILED
    assert result.exit_status == MISSING_TOOL_EXIT_STATUS
    assert result.attempts == 0
    assert fake.calls == []


def test_unlaunchable_binary_maps_to_missing_tool_status(tmp_path: Path) -> None:
    fake = FakeCommandRunner()

    def missing() -> None:
        raise FileNotFoundError(2, "No such file or directory", "ghost")

    fake.hooks["ghost"] = missing
    report = _runner(tmp_path, fake).run(StageGraph.build([_command("ghost")]))

    assert report.result_for("ghost").exit_status == MISSING_TOOL_EXIT_STATUS


def test_env_overlays_layer_context_run_and_stage(tmp_path: Path) -> None:
    fake = FakeCommandRunner()
    graph = StageGraph.build([_command("show-env", env={"C": "stage"})])
    runner = _runner(tmp_path, fake, env={"A": "context", "B": "context", "C": "context"})

    runner.run(graph, env={"B": "run", "C": "run"})

    env = fake.calls[0]["env"]
    assert env == {"A": "context", "B": "run", "C": "stage"}


def test_cancellation_stops_dispatch(tmp_path: Path) -> None:
    fake = FakeCommandRunner()
    runner = _runner(tmp_path, fake)
    fake.hooks["first"] = runner.cancel
    graph = StageGraph.build([_command("first"), _command("second", ["first"]), _command("third")])

    report = runner.run(graph)

    assert report.cancelled
    assert report.overall_status is RunStatus.ABORTED
    assert report.statuses() == {"first": "succeeded", "second": "skipped", "third": "skipped"}
    assert report.result_for("third").details["cause"] == "cancelled"
    assert fake.binaries() == ["first"]


def test_second_run_on_same_workspace_is_refused(tmp_path: Path) -> None:
    fake = FakeCommandRunner()
    graph = StageGraph.build([_command("long-build")])
    first = _runner(tmp_path, fake)
    errors: List[Exception] = []

    def start_second_run() -> None:
        try:
            _runner(tmp_path, FakeCommandRunner()).run(graph)
        except WorkspaceBusy as exc:
            errors.append(exc)

    fake.hooks["long-build"] = start_second_run
    report = first.run(graph)

    assert len(errors) == 1
    assert report.overall_status is RunStatus.COMPLETED


def test_stage_output_is_logged_per_stage(tmp_path: Path) -> None:
    fake = FakeCommandRunner({"fetch-tools": [1, 0]})
    graph = StageGraph.build([_command("fetch-tools", retry=RetryPolicy(max_attempts=2))])

    _runner(tmp_path, fake).run(graph)

    log = (tmp_path / "ws" / STATE_DIRNAME / "logs" / "fetch-tools.log").read_text()
    assert "# attempt 1: fetch-tools (exit 1)" in log
    assert "# attempt 2: fetch-tools (exit 0)" in log
    assert "fetch-tools failed" in log


def test_audit_writes_report_file(tmp_path: Path) -> None:
    report = _runner(tmp_path, FakeCommandRunner(), audit=True, name="n1sdp").run(
        StageGraph.build([_command("check-dep")])
    )

    reports = list((tmp_path / "ws" / STATE_DIRNAME / "reports").glob("*.json"))
    assert len(reports) == 1
    payload = json.loads(reports[0].read_text())
    assert payload["pipeline"] == "n1sdp"
    assert payload["overall_status"] == report.overall_status.value


def test_patch_stage_records_file_changes(manifest_tree: Path) -> None:
    fake = FakeCommandRunner()
    context = PipelineContext(workspace=manifest_tree.parent, rule_sets={"default": MANIFEST_RULES})
    graph = StageGraph.build([Stage(name="patch-manifests", patch=PatchSpec(".repo"))])

    report = PipelineRunner(context, command_runner=fake).run(graph)

    result = report.result_for("patch-manifests")
    assert result.status is StageStatus.SUCCEEDED
    assert result.details["changed"] == 1
    assert [record.path for record in report.file_changes if record.changed] == ["manifests/pinned-n1sdp.xml"]


def test_invalid_rule_fails_the_patch_stage(manifest_tree: Path) -> None:
    rule_set = PatchRuleSet("default", [PatchRule(match="x", replacement="y", scope="*.cfg")]).freeze()
    context = PipelineContext(workspace=manifest_tree.parent, rule_sets={"default": rule_set})
    graph = StageGraph.build([Stage(name="patch-manifests", patch=PatchSpec(".repo"))])

    report = PipelineRunner(context, command_runner=FakeCommandRunner()).run(graph)

    assert report.result_for("patch-manifests").status is StageStatus.FAILED
    assert report.overall_status is RunStatus.ABORTED


def test_dry_run_plans_commands_and_previews_patches(manifest_tree: Path) -> None:
    workspace = manifest_tree.parent
    graph = StageGraph.build(
        [_command("repo-init"), Stage(name="patch-manifests", patch=PatchSpec(".repo"), depends_on=("repo-init",))]
    )
    pinned = manifest_tree / "manifests" / "pinned-n1sdp.xml"
    before = pinned.read_bytes()

    fake = FakeCommandRunner()
    dry = PipelineRunner(
        PipelineContext(workspace=workspace, rule_sets={"default": MANIFEST_RULES}, dry_run=True),
        command_runner=fake,
    ).run(graph)

    assert fake.calls == []
    assert pinned.read_bytes() == before
    assert dry.result_for("repo-init").status is StageStatus.PLANNED
    assert not (workspace / STATE_DIRNAME / "logs").exists()

    real = PipelineRunner(
        PipelineContext(workspace=workspace, rule_sets={"default": MANIFEST_RULES}),
        command_runner=FakeCommandRunner(),
    ).run(graph)

    assert pinned.read_bytes() != before
    assert [record.to_dict() for record in dry.file_changes] == [record.to_dict() for record in real.file_changes]


def test_dry_run_plans_patch_when_root_does_not_exist_yet(tmp_path: Path) -> None:
    graph = StageGraph.build([Stage(name="patch-manifests", patch=PatchSpec(".repo"))])
    context = PipelineContext(workspace=tmp_path / "ws", rule_sets={"default": MANIFEST_RULES}, dry_run=True)

    report = PipelineRunner(context, command_runner=FakeCommandRunner()).run(graph)

    assert report.result_for("patch-manifests").status is StageStatus.PLANNED
    assert report.overall_status is RunStatus.COMPLETED


def test_concurrent_mode_runs_disjoint_stages_together(tmp_path: Path) -> None:
    barrier = threading.Barrier(2, timeout=5)
    fake = FakeCommandRunner()
    fake.hooks["left"] = barrier.wait
    fake.hooks["right"] = barrier.wait
    graph = StageGraph.build(
        [_command("left", cwd="left"), _command("right", cwd="right"), _command("merge", ["left", "right"], cwd="out")]
    )

    report = _runner(tmp_path, fake, max_workers=2).run(graph)

    assert report.overall_status is RunStatus.COMPLETED
    assert fake.binaries()[-1] == "merge"
    assert [result.name for result in report.stage_results] == ["left", "right", "merge"]


@pytest.mark.parametrize(
    "first, second",
    [
        ({"cwd": None}, {"cwd": None}),
        ({"cwd": "src"}, {"cwd": "src/kernel"}),
        ({"cwd": "a", "env": {"CROSS_COMPILE": "aarch64-"}}, {"cwd": "b", "env": {"CROSS_COMPILE": "x86_64-"}}),
    ],
)
def test_concurrent_mode_serializes_overlapping_stages(tmp_path: Path, first: Dict, second: Dict) -> None:
    active = 0
    peak = 0
    guard = threading.Lock()

    def busy() -> None:
        nonlocal active, peak
        with guard:
            active += 1
            peak = max(peak, active)
        time.sleep(0.05)
        with guard:
            active -= 1

    fake = FakeCommandRunner()
    fake.hooks["one"] = busy
    fake.hooks["two"] = busy
    graph = StageGraph.build([_command("one", **first), _command("two", **second)])

    report = _runner(tmp_path, fake, max_workers=2).run(graph)

    assert report.overall_status is RunStatus.COMPLETED
    assert peak == 1


def test_undecodable_child_output_is_still_reported(tmp_path: Path) -> None:
    noisy = "import sys; sys.stderr.buffer.write(b'\\xff quirk\\n'); sys.exit({code})"
    graph = StageGraph.build(
        [
            Stage(name="git-log", command=CommandSpec(sys.executable, ("-c", noisy.format(code=0)))),
            Stage(name="build", command=CommandSpec(sys.executable, ("-c", noisy.format(code=2)))),
        ]
    )

    report = PipelineRunner(PipelineContext(workspace=tmp_path / "ws")).run(graph)

    assert report.statuses() == {"git-log": "succeeded", "build": "failed"}
    assert report.result_for("build").exit_status == 2
    assert "\ufffd quirk" in (report.result_for("build").error or "")
    assert report.overall_status is RunStatus.ABORTED


def test_strict_patch_failure_still_reports_rewritten_files(
    manifest_tree: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    first = manifest_tree / "manifests" / "a-first.xml"
    first.write_text("refs/tags/v2.14.0\n")
    real_access = os.access

    def access(path, mode, **kwargs) -> bool:
        if Path(path).name == "pinned-n1sdp.xml" and mode & os.W_OK:
            return False
        return real_access(path, mode, **kwargs)

    monkeypatch.setattr(os, "access", access)
    context = PipelineContext(workspace=manifest_tree.parent, rule_sets={"default": MANIFEST_RULES}, strict=True)
    graph = StageGraph.build([Stage(name="patch-manifests", patch=PatchSpec(".repo"))])

    report = PipelineRunner(context, command_runner=FakeCommandRunner()).run(graph)

    assert report.result_for("patch-manifests").status is StageStatus.FAILED
    assert first.read_text() == "refs/tags/v2.15.0\n"
    assert [(record.path, record.status) for record in report.file_changes] == [
        ("manifests/a-first.xml", "changed"),
        ("manifests/pinned-n1sdp.xml", "error"),
    ]
