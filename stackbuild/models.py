from __future__ import annotations

import datetime as _dt
import fnmatch
import re
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Pattern, Sequence, Tuple

from .errors import DefinitionError, InvalidRule


def coerce_value(convert, value: Any, where: str, error: type = DefinitionError) -> Any:
    """Convert a definition value, reporting bad input as a definition error."""

    try:
        return convert(value)
    except (TypeError, ValueError) as exc:
        raise error(f"{where}: cannot convert {value!r} to {convert.__name__}") from exc


class OnFailure(Enum):
    ABORT = "abort-pipeline"
    SKIP_DEPENDENTS = "skip-dependents"
    CONTINUE = "continue"

    @classmethod
    def parse(cls, value: Optional[str]) -> "OnFailure":
        if value is None:
            return cls.ABORT
        try:
            return cls(value)
        except ValueError as exc:
            choices = ", ".join(member.value for member in cls)
            raise DefinitionError(f"Unknown on_failure policy {value!r}; expected one of {choices}") from exc


class StageStatus(Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    PLANNED = "planned"


class RunStatus(Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"


@dataclass(frozen=True)
class PatchRule:
    """A single text substitution applied to files matching ``scope``.

    ``match`` is a literal string unless ``regex`` is set, in which case it is
    compiled with ``flags`` and ``replacement`` may use group references.  When
    ``unless`` is given, files that already contain that text are left alone,
    which lets insertion-style rules stay idempotent.
    """

    match: str
    replacement: str
    scope: str = "*"
    regex: bool = False
    flags: Tuple[str, ...] = ()
    unless: Optional[str] = None
    count: int = 0
    id: str = ""
    _pattern: Optional[Pattern[str]] = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if not self.match:
            raise InvalidRule(f"Rule {self.id or '<unnamed>'} has an empty match pattern")
        if not self.scope:
            raise InvalidRule(f"Rule {self.id or '<unnamed>'} has an empty scope")
        if self.regex:
            flag_value = 0
            for name in self.flags:
                try:
                    flag_value |= re.RegexFlag[name.upper()]
                except KeyError as exc:
                    raise InvalidRule(f"Rule {self.id or '<unnamed>'} uses unknown regex flag {name!r}") from exc
            try:
                object.__setattr__(self, "_pattern", re.compile(self.match, flag_value))
            except re.error as exc:
                raise InvalidRule(f"Rule {self.id or '<unnamed>'} has an invalid pattern: {exc}") from exc
        elif self.unless is None and self.replacement != self.match and self.match in self.replacement:
            raise InvalidRule(
                f"Rule {self.id or '<unnamed>'} is not idempotent: replacement contains {self.match!r}"
            )

    def applies_to(self, relative_path: str) -> bool:
        """Return ``True`` when ``scope`` matches the root-relative POSIX path.

        Scopes without a slash are also matched against the file name alone so
        ``*.xml`` selects manifests at any depth.
        """

        if fnmatch.fnmatchcase(relative_path, self.scope):
            return True
        if "/" not in self.scope:
            return fnmatch.fnmatchcase(relative_path.rsplit("/", 1)[-1], self.scope)
        return False

    def apply(self, text: str) -> str:
        if self.unless is not None and self.unless in text:
            return text
        if self._pattern is not None:
            return self._pattern.sub(self.replacement, text, count=self.count)
        if self.count:
            return text.replace(self.match, self.replacement, self.count)
        return text.replace(self.match, self.replacement)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PatchRule":
        if "match" not in data:
            raise InvalidRule(f"Rule {data.get('id', '<unnamed>')} is missing 'match'")
        flags = data.get("flags") or ()
        if isinstance(flags, str):
            flags = (flags,)
        return cls(
            match=str(data["match"]),
            replacement=str(data.get("replacement", "")),
            scope=data.get("scope", "*"),
            regex=bool(data.get("regex", False)),
            flags=tuple(flags),
            unless=data.get("unless"),
            count=coerce_value(int, data.get("count", 0), f"rule {data.get('id', '<unnamed>')} count", InvalidRule),
            id=str(data.get("id", "")),
        )

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "match": self.match,
            "replacement": self.replacement,
            "scope": self.scope,
        }
        if self.regex:
            payload["regex"] = True
            payload["flags"] = list(self.flags)
        if self.unless is not None:
            payload["unless"] = self.unless
        if self.count:
            payload["count"] = self.count
        return payload


class PatchRuleSet:
    """Append-only, ordered collection of :class:`PatchRule`."""

    def __init__(self, name: str = "default", rules: Sequence[PatchRule] = ()) -> None:
        self.name = name
        self._rules: List[PatchRule] = []
        self._frozen = False
        for rule in rules:
            self.add(rule)

    def add(self, rule: PatchRule) -> PatchRule:
        if self._frozen:
            raise InvalidRule(f"Rule set {self.name} is frozen; rules can no longer be added")
        if not rule.id:
            rule = replace(rule, id=f"{self.name}-{len(self._rules) + 1}")
        if any(existing.id == rule.id for existing in self._rules):
            raise InvalidRule(f"Duplicate rule id {rule.id!r} in rule set {self.name}")
        self._rules.append(rule)
        return rule

    def freeze(self) -> "PatchRuleSet":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def rules(self) -> Tuple[PatchRule, ...]:
        return tuple(self._rules)

    def __iter__(self) -> Iterator[PatchRule]:
        return iter(tuple(self._rules))

    def __len__(self) -> int:
        return len(self._rules)

    @classmethod
    def from_list(cls, name: str, entries: Sequence[Dict[str, Any]]) -> "PatchRuleSet":
        if not isinstance(entries, list):
            raise InvalidRule(f"Rule set {name} must be a list of rules")
        rule_set = cls(name)
        for entry in entries:
            if not isinstance(entry, dict):
                raise InvalidRule(f"Rule set {name} contains a non-mapping entry: {entry!r}")
            rule_set.add(PatchRule.from_dict(entry))
        return rule_set.freeze()


@dataclass
class FileChangeRecord:
    """Outcome of patching a single file."""

    path: str
    rules_applied: List[str] = field(default_factory=list)
    bytes_before: int = 0
    bytes_after: int = 0
    status: str = "changed"
    reason: Optional[str] = None

    @property
    def changed(self) -> bool:
        return self.status == "changed"

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "path": self.path,
            "status": self.status,
            "rules_applied": list(self.rules_applied),
            "bytes_before": self.bytes_before,
            "bytes_after": self.bytes_after,
        }
        if self.reason:
            payload["reason"] = self.reason
        return payload


class Backoff:
    """Delay policy between attempts of a retried stage."""

    kind = "none"

    def delay(self, attempt: int) -> float:
        """Return the delay to wait after failed ``attempt`` (1-based)."""

        return 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind}


@dataclass(frozen=True)
class NoBackoff(Backoff):
    kind = "none"


@dataclass(frozen=True)
class FixedBackoff(Backoff):
    seconds: float = 1.0
    kind = "fixed"

    def delay(self, attempt: int) -> float:
        return self.seconds

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "seconds": self.seconds}


@dataclass(frozen=True)
class ExponentialBackoff(Backoff):
    initial: float = 1.0
    factor: float = 2.0
    max_delay: Optional[float] = None
    kind = "exponential"

    def delay(self, attempt: int) -> float:
        value = self.initial * (self.factor ** max(attempt - 1, 0))
        if self.max_delay is not None:
            value = min(value, self.max_delay)
        return value

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "initial": self.initial, "factor": self.factor, "max_delay": self.max_delay}


def backoff_from_value(value: Any) -> Backoff:
    if value is None:
        return NoBackoff()
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return FixedBackoff(seconds=float(value)) if value > 0 else NoBackoff()
    if not isinstance(value, dict):
        raise DefinitionError(f"Unsupported backoff value: {value!r}")
    kind = value.get("kind", "fixed")
    if kind == "none":
        return NoBackoff()
    if kind == "fixed":
        return FixedBackoff(seconds=coerce_value(float, value.get("seconds", 1.0), "backoff seconds"))
    if kind == "exponential":
        max_delay = value.get("max_delay")
        return ExponentialBackoff(
            initial=coerce_value(float, value.get("initial", 1.0), "backoff initial"),
            factor=coerce_value(float, value.get("factor", 2.0), "backoff factor"),
            max_delay=coerce_value(float, max_delay, "backoff max_delay") if max_delay is not None else None,
        )
    raise DefinitionError(f"Unknown backoff kind {kind!r}")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 1
    backoff: Backoff = field(default_factory=NoBackoff)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise DefinitionError(f"max_attempts must be at least 1, got {self.max_attempts}")

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RetryPolicy":
        if not data:
            return cls()
        if not isinstance(data, dict):
            raise DefinitionError(f"retry must be a mapping, got {data!r}")
        return cls(
            max_attempts=coerce_value(int, data.get("max_attempts", 1), "retry max_attempts"),
            backoff=backoff_from_value(data.get("backoff")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"max_attempts": self.max_attempts, "backoff": self.backoff.to_dict()}


@dataclass(frozen=True)
class CommandSpec:
    """External process invocation: ``binary`` plus ``args`` run in ``cwd``."""

    binary: str
    args: Tuple[str, ...] = ()
    cwd: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)

    @property
    def argv(self) -> List[str]:
        return [self.binary, *self.args]

    def to_dict(self) -> Dict[str, Any]:
        return {"binary": self.binary, "args": list(self.args), "cwd": self.cwd, "env": dict(self.env)}


@dataclass(frozen=True)
class PatchSpec:
    """In-process manifest patch over ``root`` using the named rule set."""

    root: str
    rule_set: str = "default"

    def to_dict(self) -> Dict[str, Any]:
        return {"root": self.root, "rule_set": self.rule_set}


@dataclass(frozen=True)
class Stage:
    name: str
    command: Optional[CommandSpec] = None
    patch: Optional[PatchSpec] = None
    depends_on: Tuple[str, ...] = ()
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    on_failure: OnFailure = OnFailure.ABORT
    when: Optional[str] = None
    requires: Tuple[str, ...] = ()
    timeout_s: Optional[float] = None
    success_codes: Tuple[int, ...] = (0,)

    def __post_init__(self) -> None:
        if not self.name:
            raise DefinitionError("Stage name must not be empty")
        if (self.command is None) == (self.patch is None):
            raise DefinitionError(f"Stage {self.name} must define exactly one of 'run' or 'patch'")

    @property
    def kind(self) -> str:
        return "patch" if self.patch is not None else "command"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Stage":
        if not isinstance(data, dict) or "name" not in data:
            raise DefinitionError(f"Stage entries need a 'name': {data!r}")
        name = str(data["name"])

        command: Optional[CommandSpec] = None
        run = data.get("run")
        if run is not None:
            if isinstance(run, str) or not run:
                raise DefinitionError(f"Stage {name}: 'run' must be a non-empty argument list")
            argv = [str(part) for part in run]
            env = data.get("env") or {}
            if not isinstance(env, dict):
                raise DefinitionError(f"Stage {name}: 'env' must be a mapping")
            command = CommandSpec(
                binary=argv[0],
                args=tuple(argv[1:]),
                cwd=data.get("cwd"),
                env={str(key): str(value) for key, value in env.items()},
            )

        patch: Optional[PatchSpec] = None
        patch_data = data.get("patch")
        if patch_data is not None:
            if isinstance(patch_data, str):
                patch = PatchSpec(root=patch_data)
            elif isinstance(patch_data, dict) and "root" in patch_data:
                patch = PatchSpec(root=str(patch_data["root"]), rule_set=patch_data.get("rule_set", "default"))
            else:
                raise DefinitionError(f"Stage {name}: 'patch' needs a 'root'")

        depends_on = data.get("depends_on") or ()
        if isinstance(depends_on, str):
            depends_on = (depends_on,)
        timeout = data.get("timeout_s")
        success_codes = data.get("success_codes") or (0,)
        if not isinstance(success_codes, (list, tuple)):
            success_codes = (success_codes,)
        return cls(
            name=name,
            command=command,
            patch=patch,
            depends_on=tuple(str(dep) for dep in depends_on),
            retry=RetryPolicy.from_dict(data.get("retry")),
            on_failure=OnFailure.parse(data.get("on_failure")),
            when=str(data["when"]) if data.get("when") is not None else None,
            requires=tuple(data.get("requires") or ()),
            timeout_s=coerce_value(float, timeout, f"stage {name} timeout_s") if timeout is not None else None,
            success_codes=tuple(
                coerce_value(int, code, f"stage {name} success_codes") for code in success_codes
            ),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind,
            "action": self.patch.to_dict() if self.patch else self.command.to_dict(),  # type: ignore[union-attr]
            "depends_on": list(self.depends_on),
            "retry": self.retry.to_dict(),
            "on_failure": self.on_failure.value,
            "when": self.when,
            "requires": list(self.requires),
            "timeout_s": self.timeout_s,
            "success_codes": list(self.success_codes),
        }


@dataclass
class StageResult:
    """Summary emitted by a pipeline stage."""

    name: str
    status: StageStatus
    exit_status: Optional[int] = None
    attempts: int = 0
    duration_s: float = 0.0
    error: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "stage": self.name,
            "status": self.status.value,
            "exit_status": self.exit_status,
            "attempts": self.attempts,
            "duration_s": round(self.duration_s, 3),
        }
        if self.error:
            payload["error"] = self.error
        if self.details:
            payload["details"] = self.details
        return payload


def _utc_now() -> str:
    return _dt.datetime.now(_dt.timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class RunReport:
    """Results of one pipeline run, appended to while the run progresses."""

    pipeline: str
    workspace: str
    dry_run: bool = False
    stage_results: List[StageResult] = field(default_factory=list)
    file_changes: List[FileChangeRecord] = field(default_factory=list)
    overall_status: RunStatus = RunStatus.RUNNING
    cancelled: bool = False
    started_at: str = field(default_factory=_utc_now)
    finished_at: Optional[str] = None

    def record(self, result: StageResult) -> None:
        self.stage_results.append(result)

    def result_for(self, stage_name: str) -> Optional[StageResult]:
        for result in self.stage_results:
            if result.name == stage_name:
                return result
        return None

    def statuses(self) -> Dict[str, str]:
        return {result.name: result.status.value for result in self.stage_results}

    def finalize(self, status: RunStatus) -> "RunReport":
        self.overall_status = status
        self.finished_at = _utc_now()
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pipeline": self.pipeline,
            "workspace": self.workspace,
            "dry_run": self.dry_run,
            "overall_status": self.overall_status.value,
            "cancelled": self.cancelled,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "stage_results": [result.to_dict() for result in self.stage_results],
            "file_changes": [record.to_dict() for record in self.file_changes],
        }
