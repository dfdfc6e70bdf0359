"""DAG 编排层 - 可配置管线执行引擎"""

from conductor.pipeline.definitions import PipelineRegistry
from conductor.pipeline.graph import PipelineGraph
from conductor.pipeline.node_base import StepContext, StepExecutor, StepOutcome
from conductor.pipeline.registry import ExecutorRegistry, get_default_registry
from conductor.pipeline.runner import RunController
from conductor.pipeline.schemas import PipelineDefinition, Run, Step

__all__ = [
    "ExecutorRegistry",
    "PipelineDefinition",
    "PipelineGraph",
    "PipelineRegistry",
    "Run",
    "RunController",
    "Step",
    "StepContext",
    "StepExecutor",
    "StepOutcome",
    "get_default_registry",
]
