"""管线引擎异常定义"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class PipelineError(Exception):
    """管线引擎异常基类"""

    pass


# ============ 定义校验 ============


class PipelineValidationError(PipelineError):
    """管线定义校验失败，在任何执行开始前抛出"""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors: List[str] = list(errors or [message])


class InvalidGraphError(PipelineValidationError):
    """图结构无效（悬空引用、重复归属等）"""

    pass


class CyclicDependencyError(PipelineValidationError):
    """循环依赖错误"""

    pass


# ============ 沙箱 ============


class SandboxViolation(PipelineError):
    """表达式或路径越过沙箱边界，不可重试"""

    pass


# ============ 执行 ============


class ExecutionError(PipelineError):
    """步骤执行失败

    Attributes:
        code: 机器可读的错误码
        retryable: 是否允许重试策略再次调用
        details: 附加信息（退出码、HTTP 状态等）
    """

    def __init__(
        self,
        code: str,
        message: str,
        retryable: bool = True,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.retryable = retryable
        self.details = details or {}

    def __repr__(self) -> str:
        return f"ExecutionError(code={self.code!r}, message={self.message!r})"


class ExpressionError(ExecutionError):
    """表达式或路径在运行期无法求值（类型不匹配、索引越界等）"""

    def __init__(self, message: str):
        super().__init__("EXPRESSION_ERROR", message, retryable=False)


# ============ 查找 ============


class PipelineNotFoundError(PipelineError):
    """管线定义不存在"""

    pass


class PipelineDisabledError(PipelineError):
    """管线已禁用，无法触发"""

    pass


class RunNotFoundError(PipelineError):
    """Run 不存在"""

    pass
