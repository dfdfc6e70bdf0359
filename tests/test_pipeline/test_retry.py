"""重试控制器测试"""

import threading

import pytest

from conductor.pipeline.errors import ExecutionError, SandboxViolation
from conductor.pipeline.node_base import StepOutcome
from conductor.pipeline.retry import RetryController, invoke_safely
from conductor.pipeline.schemas import RetryPolicy


def flaky(failures, code="AGENT_TASK_FAILED", retryable=True):
    """前 failures 次失败，之后成功"""
    calls = []

    def invoke(attempt):
        calls.append(attempt)
        if len(calls) <= failures:
            return StepOutcome.failed(code, f"failure #{attempt}", retryable=retryable)
        return StepOutcome.completed({"attempt": attempt})

    invoke.calls = calls
    return invoke


class TestRetryController:
    """RetryController 测试"""

    def test_succeeds_after_retries(self):
        """失败后按指数退避重试直至成功"""
        records = []
        controller = RetryController(
            RetryPolicy(maxRetries=3, initialDelay=10, multiplier=2),
            threading.Event(),
            on_attempt=lambda n, outcome, started, finished: records.append((n, outcome.status.value)),
        )
        invoke = flaky(2)
        outcome = controller.run(invoke)

        assert outcome.is_completed
        assert outcome.output == {"attempt": 3}
        assert invoke.calls == [1, 2, 3]
        assert records == [(1, "failed"), (2, "failed"), (3, "completed")]
        assert controller.delays == pytest.approx([0.01, 0.02])

    def test_attempts_bounded(self):
        """最多 maxRetries + 1 次尝试，返回最后一次结果"""
        controller = RetryController(RetryPolicy(maxRetries=2, initialDelay=1), threading.Event())
        invoke = flaky(10)
        outcome = controller.run(invoke)

        assert outcome.is_failed
        assert outcome.error.message == "failure #3"
        assert controller.attempts == 3

    def test_zero_retries(self):
        """maxRetries=0 只尝试一次"""
        controller = RetryController(RetryPolicy(maxRetries=0), threading.Event())
        invoke = flaky(1)
        assert controller.run(invoke).is_failed
        assert invoke.calls == [1]
        assert controller.delays == []

    def test_non_retryable_stops_immediately(self):
        """不可重试的失败不再重试"""
        controller = RetryController(RetryPolicy(maxRetries=5, initialDelay=1), threading.Event())
        invoke = flaky(3, retryable=False)
        assert controller.run(invoke).is_failed
        assert invoke.calls == [1]

    def test_retryable_errors_filter(self):
        """只重试命中 retryableErrors 的错误"""
        policy = RetryPolicy(maxRetries=3, initialDelay=1, retryableErrors=["TIMEOUT"])
        controller = RetryController(policy, threading.Event())
        invoke = flaky(3, code="SCRIPT_FAILED")
        controller.run(invoke)
        assert invoke.calls == [1]

        controller = RetryController(policy, threading.Event())
        invoke = flaky(1, code="TIMEOUT")
        assert controller.run(invoke).is_completed
        assert invoke.calls == [1, 2]

    def test_max_delay_clamp(self):
        """退避时长不超过 maxDelay"""
        controller = RetryController(
            RetryPolicy(maxRetries=4, initialDelay=10, multiplier=10, maxDelay=50),
            threading.Event(),
        )
        controller.run(flaky(4))
        assert controller.delays == pytest.approx([0.01, 0.05, 0.05, 0.05])

    def test_delays_follow_policy(self):
        """实际退避时长与 RetryPolicy.delay_ms 一致"""
        policy = RetryPolicy(maxRetries=3, initialDelay=5, multiplier=3, maxDelay=30)
        controller = RetryController(policy, threading.Event())
        controller.run(flaky(3))
        assert controller.delays == pytest.approx([policy.delay_ms(n) / 1000 for n in (1, 2, 3)])
        assert controller.delays == pytest.approx([0.005, 0.015, 0.03])

    def test_cancel_during_backoff(self):
        """退避期间取消立即结束，不再调用执行器"""
        cancel_event = threading.Event()
        controller = RetryController(
            RetryPolicy(maxRetries=3, initialDelay=10_000), cancel_event
        )

        def invoke(attempt):
            threading.Timer(0.1, cancel_event.set).start()
            return StepOutcome.failed("AGENT_TASK_FAILED", "busy")

        outcome = controller.run(invoke)
        assert outcome.error.code == "CANCELLED"
        assert controller.delays == pytest.approx([10.0])

    def test_cancelled_before_start(self):
        """已取消时不调用执行器"""
        cancel_event = threading.Event()
        cancel_event.set()
        invoke = flaky(0)
        outcome = RetryController(RetryPolicy(), cancel_event).run(invoke)
        assert outcome.error.code == "CANCELLED"
        assert invoke.calls == []


class TestInvokeSafely:
    """invoke_safely 测试"""

    def test_execution_error(self):
        """ExecutionError 保留错误码与可重试标记"""

        def invoke(attempt):
            raise ExecutionError("SCRIPT_FAILED", "exit 1", retryable=False, details={"exitCode": 1})

        outcome = invoke_safely(invoke, 1)
        assert outcome.error.code == "SCRIPT_FAILED"
        assert outcome.error.details == {"exitCode": 1}
        assert outcome.retryable is False

    def test_sandbox_violation(self):
        """沙箱违规不可重试"""

        def invoke(attempt):
            raise SandboxViolation("nope")

        outcome = invoke_safely(invoke, 1)
        assert outcome.error.code == "SANDBOX_VIOLATION"
        assert outcome.retryable is False

    def test_unexpected_exception(self):
        """未预期异常转为可重试的 STEP_FAILED"""

        def invoke(attempt):
            raise KeyError("missing")

        outcome = invoke_safely(invoke, 1)
        assert outcome.error.code == "STEP_FAILED"
        assert outcome.retryable is True

    def test_invalid_return_value(self):
        """返回值不是 StepOutcome"""
        outcome = invoke_safely(lambda attempt: {"ok": True}, 1)
        assert outcome.error.code == "INVALID_OUTCOME"
