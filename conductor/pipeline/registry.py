"""执行器注册表 - 步骤类型到执行器的映射"""

from __future__ import annotations

from typing import Dict, List, Optional

from conductor.pipeline.node_base import StepExecutor
from conductor.pipeline.schemas import CONTROL_FLOW_TYPES, StepType


class ExecutorNotFoundError(Exception):
    """步骤类型未注册执行器"""

    pass


class ExecutorRegistry:
    """
    执行器注册表

    以封闭的 StepType 为键，管理工作型步骤的执行器实例。
    控制流步骤（conditional/parallel/loop）由调度器展开，不在此注册。
    """

    def __init__(self):
        self._registry: Dict[StepType, StepExecutor] = {}

    def register(self, executor: StepExecutor) -> "ExecutorRegistry":
        """
        注册执行器，同类型重复注册会覆盖

        Returns:
            self（支持链式调用）
        """
        step_type = StepType(executor.step_type)
        if step_type in CONTROL_FLOW_TYPES:
            raise ValueError(f"控制流步骤不能注册执行器: {step_type.value}")
        self._registry[step_type] = executor
        return self

    def get(self, step_type: StepType) -> StepExecutor:
        """
        Raises:
            ExecutorNotFoundError: 类型未注册
        """
        step_type = StepType(step_type)
        if step_type not in self._registry:
            raise ExecutorNotFoundError(
                f"步骤类型未注册执行器: {step_type.value}，"
                f"可用类型: {[t.value for t in self._registry]}"
            )
        return self._registry[step_type]

    def get_registered_types(self) -> List[StepType]:
        return list(self._registry.keys())

    def has_type(self, step_type: StepType) -> bool:
        return step_type in self._registry

    def __contains__(self, step_type: StepType) -> bool:
        return self.has_type(step_type)

    def __repr__(self) -> str:
        return f"ExecutorRegistry(types={[t.value for t in self._registry]})"


# 全局默认注册表（单例）
_default_registry: Optional[ExecutorRegistry] = None


def get_default_registry() -> ExecutorRegistry:
    """
    获取默认注册表（单例）

    首次调用时注册所有内置执行器
    """
    global _default_registry

    if _default_registry is None:
        _default_registry = build_registry()

    return _default_registry


def build_registry() -> ExecutorRegistry:
    """创建一份注册了全部内置执行器的新注册表"""
    registry = ExecutorRegistry()
    _register_builtin_executors(registry)
    return registry


def _register_builtin_executors(registry: ExecutorRegistry) -> None:
    # 延迟导入避免循环依赖
    from conductor.pipeline.nodes.core import (
        AgentTaskExecutor,
        ScriptExecutor,
        TransformExecutor,
        WebhookExecutor,
    )
    from conductor.pipeline.nodes.sub_pipeline import SubPipelineExecutor
    from conductor.pipeline.nodes.suspend import ApprovalExecutor, WaitExecutor

    registry.register(AgentTaskExecutor())
    registry.register(ScriptExecutor())
    registry.register(WebhookExecutor())
    registry.register(TransformExecutor())

    # 挂起型
    registry.register(WaitExecutor())
    registry.register(ApprovalExecutor())

    registry.register(SubPipelineExecutor())
