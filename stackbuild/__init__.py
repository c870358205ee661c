"""Declarative manifest patching and build pipeline orchestration."""

from .definition import DefinitionFile, PipelineDefinition
from .graph import StageGraph
from .models import FileChangeRecord, PatchRule, PatchRuleSet, RunReport, Stage
from .patcher import ManifestPatcher
from .pipeline import PipelineContext, PipelineRunner

__all__ = [
    "DefinitionFile",
    "FileChangeRecord",
    "ManifestPatcher",
    "PatchRule",
    "PatchRuleSet",
    "PipelineContext",
    "PipelineDefinition",
    "PipelineRunner",
    "RunReport",
    "Stage",
    "StageGraph",
]
