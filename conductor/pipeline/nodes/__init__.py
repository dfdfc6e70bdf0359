"""步骤执行器实现"""

# 工作型
from conductor.pipeline.nodes.core import (
    AgentTaskExecutor,
    ScriptExecutor,
    TransformExecutor,
    WebhookExecutor,
)

# 挂起型
from conductor.pipeline.nodes.suspend import ApprovalExecutor, WaitExecutor

# 子管线
from conductor.pipeline.nodes.sub_pipeline import SubPipelineExecutor, SubPipelineLauncher

__all__ = [
    "AgentTaskExecutor",
    "ScriptExecutor",
    "TransformExecutor",
    "WebhookExecutor",
    "ApprovalExecutor",
    "WaitExecutor",
    "SubPipelineExecutor",
    "SubPipelineLauncher",
]
