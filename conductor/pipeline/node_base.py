"""步骤执行器抽象基类与执行结果类型"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar, Dict, List, Optional

from conductor.pipeline.context import ContextView, ContextWrite
from conductor.pipeline.schemas import ErrorInfo, Step, StepType
from conductor.settings import EngineSettings

if TYPE_CHECKING:
    from conductor.core.utils.subprocess_helper import ScriptRunner
    from conductor.integrations.agent_client import AgentDispatcher
    from conductor.pipeline.nodes.sub_pipeline import SubPipelineLauncher


class OutcomeStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    SUSPENDED = "suspended"


class SuspensionKind(str, Enum):
    TIMER = "timer"  # wait: duration / until
    WEBHOOK = "webhook"  # wait: 外部回调
    APPROVAL = "approval"


@dataclass
class Suspension:
    """
    挂起信号：步骤让出 worker，由 RunController 记录截止时间或回调令牌

    Attributes:
        kind: 挂起类型
        deadline: 截止时间（UTC），到期后按 on_deadline 处理
        on_deadline: 到期动作，complete/fail，或审批的 approve/reject/fail
        token: webhook 模式的回调令牌
        output: 到期完成时作为步骤输出
    """

    kind: SuspensionKind
    deadline: Optional[datetime] = None
    on_deadline: str = "complete"
    token: Optional[str] = None
    output: Any = None


@dataclass
class StepOutcome:
    """执行器一次调用的结果"""

    status: OutcomeStatus
    output: Any = None
    error: Optional[ErrorInfo] = None
    retryable: bool = True
    writes: List[ContextWrite] = field(default_factory=list)
    suspension: Optional[Suspension] = None

    @classmethod
    def completed(cls, output: Any = None, writes: Optional[List[ContextWrite]] = None) -> "StepOutcome":
        return cls(OutcomeStatus.COMPLETED, output=output, writes=list(writes or []))

    @classmethod
    def failed(
        cls,
        code: str,
        message: str,
        retryable: bool = True,
        details: Optional[Dict[str, Any]] = None,
    ) -> "StepOutcome":
        return cls(
            OutcomeStatus.FAILED,
            error=ErrorInfo(code=code, message=message, details=details or {}),
            retryable=retryable,
        )

    @classmethod
    def suspended(cls, suspension: Suspension) -> "StepOutcome":
        return cls(OutcomeStatus.SUSPENDED, suspension=suspension)

    @classmethod
    def cancelled(cls) -> "StepOutcome":
        return cls.failed("CANCELLED", "运行已取消", retryable=False)

    @property
    def is_completed(self) -> bool:
        return self.status == OutcomeStatus.COMPLETED

    @property
    def is_failed(self) -> bool:
        return self.status == OutcomeStatus.FAILED

    @property
    def is_suspended(self) -> bool:
        return self.status == OutcomeStatus.SUSPENDED


@dataclass
class EngineServices:
    """执行器依赖的外部协作方，均可替换"""

    agent_dispatcher: Optional["AgentDispatcher"] = None
    http_session: Any = None
    script_runner: Optional["ScriptRunner"] = None
    sub_pipelines: Optional["SubPipelineLauncher"] = None


@dataclass
class StepContext:
    """执行器一次调用的输入"""

    run_id: str
    pipeline_id: str
    step: Step
    attempt: int
    view: ContextView
    cancel_event: threading.Event
    settings: EngineSettings
    services: EngineServices

    @property
    def config(self) -> Any:
        return self.step.config

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def render(self, value: Any) -> Any:
        return self.view.render(value)

    def timeout_ms(self, configured: Optional[int], default: Optional[int] = None) -> Optional[int]:
        """配置值优先，其次步骤级 timeout，最后使用默认值（可为 None，表示不限时）"""
        return configured or self.step.timeout or default

    def log_prefix(self) -> str:
        return f"run_id={self.run_id} step_id={self.step.id} attempt={self.attempt}"


class StepExecutor(ABC):
    """步骤执行器抽象基类，每种工作型步骤一个实现"""

    step_type: ClassVar[StepType]

    @abstractmethod
    def execute(self, ctx: StepContext) -> StepOutcome:
        """
        执行一次步骤调用

        可以返回 StepOutcome，也可以抛出 ExecutionError / SandboxViolation，
        异常会由重试控制器转换为失败结果。

        Args:
            ctx: 步骤调用上下文

        Returns:
            执行结果
        """
        pass

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(step_type={self.step_type.value!r})"
