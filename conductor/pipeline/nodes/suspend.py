"""挂起型步骤执行器：wait / approval

这两类执行器不占用 worker 等待，而是返回挂起信号，
由 RunController 记录截止时间、回调令牌或待审批记录。
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

from conductor.pipeline.errors import ExecutionError
from conductor.pipeline.node_base import (
    StepContext,
    StepExecutor,
    StepOutcome,
    Suspension,
    SuspensionKind,
)
from conductor.pipeline.schemas import StepType, WaitMode, utcnow


def parse_timestamp(value: str) -> datetime:
    """解析 ISO-8601 时间，无时区时按 UTC 处理"""
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class WaitExecutor(StepExecutor):
    """按时长、时间点或外部回调等待，始终受 timeout 约束"""

    step_type = StepType.WAIT

    def execute(self, ctx: StepContext) -> StepOutcome:
        config = ctx.config
        now = utcnow()
        timeout_at = now + timedelta(milliseconds=config.timeout)

        if config.mode == WaitMode.DURATION:
            return self._timer(now, now + timedelta(milliseconds=config.duration), timeout_at)

        if config.mode == WaitMode.UNTIL:
            raw = ctx.render(config.until)
            try:
                target = parse_timestamp(str(raw))
            except ValueError as e:
                raise ExecutionError(
                    "WAIT_INVALID_UNTIL", f"无法解析等待时间: {raw!r}", retryable=False
                ) from e
            if target <= now:
                return StepOutcome.completed({"waitedMs": 0})
            return self._timer(now, target, timeout_at)

        token = ctx.render(config.webhook_token) or f"wait_{uuid.uuid4().hex}"
        return StepOutcome.suspended(
            Suspension(
                kind=SuspensionKind.WEBHOOK,
                deadline=timeout_at,
                on_deadline="fail",
                token=str(token),
            )
        )

    @staticmethod
    def _timer(now: datetime, target: datetime, timeout_at: datetime) -> StepOutcome:
        if target <= timeout_at:
            waited_ms = int((target - now).total_seconds() * 1000)
            return StepOutcome.suspended(
                Suspension(
                    kind=SuspensionKind.TIMER,
                    deadline=target,
                    on_deadline="complete",
                    output={"waitedMs": waited_ms},
                )
            )
        # 目标时间晚于超时时间，到超时即失败
        return StepOutcome.suspended(
            Suspension(kind=SuspensionKind.TIMER, deadline=timeout_at, on_deadline="fail")
        )


class ApprovalExecutor(StepExecutor):
    """挂起步骤直到审批达到法定人数、被拒绝或超时"""

    step_type = StepType.APPROVAL

    def execute(self, ctx: StepContext) -> StepOutcome:
        config = ctx.config
        timeout_ms = ctx.timeout_ms(config.timeout)
        deadline = utcnow() + timedelta(milliseconds=timeout_ms) if timeout_ms else None
        return StepOutcome.suspended(
            Suspension(
                kind=SuspensionKind.APPROVAL,
                deadline=deadline,
                on_deadline=config.on_timeout.value,
                output={"message": str(ctx.render(config.message))},
            )
        )
