"""Sequential stage pipelines with scoped workspaces and failure notification."""

from .catalog import PipelineCatalog, PipelineDefinition
from .models import BuildRun, BuildStatus, StageOutcome, StageRecord
from .pipeline import CancelToken, Pipeline, PipelineExecutor
from .stages import RunCondition, ShellStep, Stage, StageGraph

__all__ = [
    "BuildRun",
    "BuildStatus",
    "CancelToken",
    "Pipeline",
    "PipelineCatalog",
    "PipelineDefinition",
    "PipelineExecutor",
    "RunCondition",
    "ShellStep",
    "Stage",
    "StageGraph",
    "StageOutcome",
    "StageRecord",
]
