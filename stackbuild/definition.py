from __future__ import annotations

import json
import os
import platform
from dataclasses import dataclass, field
from pathlib import Path
from string import Template
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from .errors import DefinitionError
from .graph import StageGraph
from .models import PatchRuleSet, Stage, coerce_value

TRUTHY = {"1", "true", "yes", "y", "on"}
WORKSPACE_ENV = "STACKBUILD_WORKSPACE"


@dataclass
class Settings:
    """Engine knobs read from the ``settings`` block of a definition."""

    strict: bool = False
    backup_suffix: Optional[str] = None
    max_workers: int = 1
    audit: bool = False
    exclude: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Settings":
        if not isinstance(data, dict):
            raise DefinitionError(f"settings must be a mapping, got {data!r}")
        max_workers = coerce_value(int, data.get("max_workers", 1), "settings.max_workers")
        if max_workers < 1:
            raise DefinitionError(f"settings.max_workers must be at least 1, got {max_workers}")
        return cls(
            strict=bool(data.get("strict", False)),
            backup_suffix=data.get("backup_suffix"),
            max_workers=max_workers,
            audit=bool(data.get("audit", False)),
            exclude=tuple(data.get("exclude", ())),
        )


@dataclass
class PipelineDefinition:
    """A fully expanded pipeline: stages, rule sets, variables and settings."""

    name: str
    source: Path
    workspace: Path
    stages: List[Stage]
    rule_sets: Dict[str, PatchRuleSet] = field(default_factory=dict)
    variables: Dict[str, str] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)
    settings: Settings = field(default_factory=Settings)

    def build_graph(self) -> StageGraph:
        graph = StageGraph.build(self.stages)
        for stage in graph:
            if stage.patch is not None and stage.patch.rule_set not in self.rule_sets:
                raise DefinitionError(f"Stage {stage.name} uses unknown rule set {stage.patch.rule_set!r}")
            if stage.when is not None:
                evaluate_condition(stage.when, self.variables)
        return graph


@dataclass
class DefinitionFile:
    """Loader for a YAML or JSON pipeline definition file."""

    path: Path
    _cache: Optional[Dict[str, Any]] = None

    @classmethod
    def from_file(cls, path: str | Path) -> "DefinitionFile":
        return cls(path=Path(path))

    def _load(self) -> Dict[str, Any]:
        if self._cache is not None:
            return self._cache

        try:
            raw_text = self.path.read_text(encoding="utf-8")
        except OSError as exc:
            raise DefinitionError(f"Cannot read pipeline definition {self.path}: {exc}") from exc
        try:
            if self.path.suffix.lower() == ".json":
                raw_data = json.loads(raw_text)
            else:
                raw_data = yaml.safe_load(raw_text)
        except (json.JSONDecodeError, yaml.YAMLError) as exc:
            raise DefinitionError(f"Malformed pipeline definition {self.path}: {exc}") from exc

        if not isinstance(raw_data, dict) or not isinstance(raw_data.get("stages"), list):
            raise DefinitionError("Pipeline definition must contain a top-level 'stages' list")
        self._cache = raw_data
        return raw_data

    @property
    def name(self) -> str:
        return str(self._load().get("name", self.path.stem))

    def resolve(
        self,
        *,
        workspace: str | Path | None = None,
        overrides: Optional[Mapping[str, str]] = None,
    ) -> PipelineDefinition:
        """Expand variables and parse stages and rule sets.

        The workspace comes from ``workspace``, then ``$STACKBUILD_WORKSPACE``,
        then the definition's own ``workspace`` key, and finally
        ``./<name>_workspace``.  Relative paths resolve against the current
        directory.
        """

        data = self._load()
        name = self.name
        workspace_value = workspace or os.environ.get(WORKSPACE_ENV) or data.get("workspace")
        workspace_path = Path(workspace_value or f"{name}_workspace").expanduser().resolve()

        # overrides win over file values and are visible to variables derived from them
        forced = {str(key): str(value) for key, value in (overrides or {}).items()}
        variables = builtin_variables(workspace_path)
        variables.update(forced)
        for key, value in _mapping(data, "variables").items():
            if str(key) in forced:
                continue
            variables[str(key)] = _expand(_stringify(value), variables, f"variable {key}")

        env = {
            str(key): _expand(_stringify(value), variables, f"env {key}")
            for key, value in _mapping(data, "env").items()
        }

        rule_sets: Dict[str, PatchRuleSet] = {}
        if "patch_rules" in data:
            rule_sets["default"] = PatchRuleSet.from_list("default", data["patch_rules"])
        for set_name, entries in _mapping(data, "rule_sets").items():
            if set_name in rule_sets:
                raise DefinitionError(f"Rule set {set_name!r} is defined twice")
            rule_sets[set_name] = PatchRuleSet.from_list(set_name, entries)

        stages = [Stage.from_dict(_expand_stage(entry, variables)) for entry in data["stages"]]
        return PipelineDefinition(
            name=name,
            source=self.path,
            workspace=workspace_path,
            stages=stages,
            rule_sets=rule_sets,
            variables=variables,
            env=env,
            settings=Settings.from_dict(data.get("settings") or {}),
        )


def _mapping(data: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = data.get(key) or {}
    if not isinstance(value, dict):
        raise DefinitionError(f"'{key}' must be a mapping, got {value!r}")
    return value


def builtin_variables(workspace: Path) -> Dict[str, str]:
    variables = {
        "workspace": str(workspace),
        "arch": platform.machine(),
        "nproc": str(os.cpu_count() or 1),
    }
    if hasattr(os, "getuid"):
        variables["uid"] = str(os.getuid())
        variables["gid"] = str(os.getgid())
    return variables


def evaluate_condition(expression: str, variables: Mapping[str, str]) -> bool:
    """Evaluate a ``when`` expression.

    Supported forms: ``name``, ``!name``, ``name==value`` and ``name!=value``.
    """

    expression = expression.strip()
    for operator in ("!=", "=="):
        if operator in expression:
            key, _, expected = expression.partition(operator)
            actual = _lookup(key.strip(), variables, expression)
            equal = actual == expected.strip()
            return equal if operator == "==" else not equal
    if expression.startswith("!"):
        return not evaluate_condition(expression[1:], variables)
    return _lookup(expression, variables, expression).strip().lower() in TRUTHY


def _lookup(key: str, variables: Mapping[str, str], expression: str) -> str:
    if key not in variables:
        raise DefinitionError(f"Condition {expression!r} references unknown variable {key!r}")
    return variables[key]


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _expand(text: str, variables: Mapping[str, str], where: str) -> str:
    try:
        return Template(text).substitute(variables)
    except KeyError as exc:
        raise DefinitionError(f"{where}: unknown variable {exc.args[0]!r}") from exc
    except ValueError as exc:
        raise DefinitionError(f"{where}: {exc}") from exc


def _expand_stage(entry: Any, variables: Mapping[str, str]) -> Any:
    if not isinstance(entry, dict):
        return entry
    where = f"stage {entry.get('name', '<unnamed>')}"
    expanded = dict(entry)
    if isinstance(entry.get("run"), list):
        expanded["run"] = [_expand(_stringify(part), variables, where) for part in entry["run"]]
    if isinstance(entry.get("cwd"), str):
        expanded["cwd"] = _expand(entry["cwd"], variables, where)
    if isinstance(entry.get("env"), dict):
        expanded["env"] = {key: _expand(_stringify(value), variables, where) for key, value in entry["env"].items()}
    patch = entry.get("patch")
    if isinstance(patch, str):
        expanded["patch"] = _expand(patch, variables, where)
    elif isinstance(patch, dict) and isinstance(patch.get("root"), str):
        expanded["patch"] = {**patch, "root": _expand(patch["root"], variables, where)}
    return expanded
