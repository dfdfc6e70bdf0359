"""重试控制器 - 基于 tenacity 的有界指数退避"""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Callable, List, Optional

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_result,
    stop_after_attempt,
)

from conductor.core.utils.logger import setup_logger
from conductor.pipeline.errors import ExecutionError, SandboxViolation
from conductor.pipeline.node_base import StepOutcome
from conductor.pipeline.schemas import RetryPolicy, utcnow

logger = setup_logger("pipeline_retry")

# (attempt, outcome, started_at, finished_at)
AttemptCallback = Callable[[int, StepOutcome, datetime, datetime], None]


def invoke_safely(invoke: Callable[[int], StepOutcome], attempt: int) -> StepOutcome:
    """调用执行器并把所有异常转换为失败结果"""
    try:
        outcome = invoke(attempt)
    except SandboxViolation as e:
        return StepOutcome.failed("SANDBOX_VIOLATION", str(e), retryable=False)
    except ExecutionError as e:
        return StepOutcome.failed(e.code, e.message, retryable=e.retryable, details=e.details)
    except Exception as e:
        logger.error(f"执行器抛出未预期异常: {e}", exc_info=True)
        return StepOutcome.failed("STEP_FAILED", f"{type(e).__name__}: {e}")
    if not isinstance(outcome, StepOutcome):
        return StepOutcome.failed(
            "INVALID_OUTCOME", f"执行器返回了非法结果: {type(outcome).__name__}", retryable=False
        )
    return outcome


class RetryController:
    """
    对单个步骤的执行器调用做重试

    - 尝试次数上限为 maxRetries + 1
    - 第 n 次失败后等待 min(initialDelay × multiplier^(n-1), maxDelay)
    - 仅重试可重试且命中 retryableErrors 的失败
    - 退避等待在取消信号到来时立即结束
    """

    def __init__(
        self,
        policy: RetryPolicy,
        cancel_event: threading.Event,
        on_attempt: Optional[AttemptCallback] = None,
        log_prefix: str = "",
    ):
        self.policy = policy
        self.cancel_event = cancel_event
        self.on_attempt = on_attempt
        self.log_prefix = log_prefix
        # 实际采用的退避时长（秒），按发生顺序
        self.delays: List[float] = []
        self.attempts = 0

    def run(self, invoke: Callable[[int], StepOutcome]) -> StepOutcome:
        """
        执行并按策略重试

        Args:
            invoke: 接收尝试序号（从 1 开始）并返回 StepOutcome 的可调用对象

        Returns:
            最后一次尝试的结果
        """
        policy = self.policy
        retrying = Retrying(
            stop=stop_after_attempt(policy.max_retries + 1),
            wait=self._wait,
            retry=retry_if_result(self._should_retry),
            sleep=self._sleep,
            before_sleep=self._before_sleep,
            retry_error_callback=lambda state: state.outcome.result(),
        )
        return retrying(self._attempt, invoke)

    def _attempt(self, invoke: Callable[[int], StepOutcome]) -> StepOutcome:
        self.attempts += 1
        if self.cancel_event.is_set():
            return StepOutcome.cancelled()

        started = utcnow()
        outcome = invoke_safely(invoke, self.attempts)
        if self.on_attempt is not None:
            self.on_attempt(self.attempts, outcome, started, utcnow())
        return outcome

    def _should_retry(self, outcome: StepOutcome) -> bool:
        if not outcome.is_failed or not outcome.retryable:
            return False
        if self.cancel_event.is_set():
            return False
        error = outcome.error
        return self.policy.matches(error.code, error.message) if error else True

    def _wait(self, retry_state: RetryCallState) -> float:
        return self.policy.delay_ms(retry_state.attempt_number) / 1000

    def _sleep(self, seconds: float) -> None:
        self.delays.append(seconds)
        self.cancel_event.wait(seconds)

    def _before_sleep(self, retry_state: RetryCallState) -> None:
        outcome = retry_state.outcome.result()
        delay = retry_state.next_action.sleep if retry_state.next_action else 0
        logger.warning(
            f"{self.log_prefix} 第 {retry_state.attempt_number} 次尝试失败"
            f"（{outcome.error.code if outcome.error else '-'}），{delay:.3f}s 后重试"
        )
