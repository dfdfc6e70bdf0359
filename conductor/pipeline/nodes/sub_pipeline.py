"""子管线执行器"""

from __future__ import annotations

import threading
from typing import Any, Dict, Optional, Protocol

from conductor.core.utils.logger import setup_logger
from conductor.pipeline.errors import ExecutionError
from conductor.pipeline.node_base import StepContext, StepExecutor, StepOutcome
from conductor.pipeline.schemas import Run, RunStatus, StepStatus, StepType

logger = setup_logger("pipeline_nodes")


class SubPipelineLauncher(Protocol):
    """启动并等待子 Run 的能力，由 RunController 提供"""

    def start_child_run(
        self,
        parent_run_id: str,
        parent_step_id: str,
        pipeline_id: str,
        version: Optional[int],
        inputs: Dict[str, Any],
    ) -> Run: ...

    def wait_for_run(
        self,
        run_id: str,
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Optional[Run]: ...

    def cancel_run(self, run_id: str) -> bool: ...


class SubPipelineExecutor(StepExecutor):
    """启动另一条管线的 Run，可选阻塞等待其结束并收集结果"""

    step_type = StepType.SUB_PIPELINE

    def execute(self, ctx: StepContext) -> StepOutcome:
        launcher = ctx.services.sub_pipelines
        if launcher is None:
            raise ExecutionError(
                "SUB_PIPELINE_UNAVAILABLE", "未配置子管线启动器", retryable=False
            )

        config = ctx.config
        inputs = ctx.render(dict(config.inputs))
        child = launcher.start_child_run(
            ctx.run_id, ctx.step.id, config.pipeline_id, config.version, inputs
        )
        logger.info(f"{ctx.log_prefix()} 启动子管线 {config.pipeline_id} child_run_id={child.id}")

        if not config.wait_for_completion:
            return StepOutcome.completed({"runId": child.id, "status": child.status.value})

        timeout_ms = ctx.timeout_ms(config.timeout, ctx.settings.sub_pipeline_timeout_ms)
        final = launcher.wait_for_run(child.id, timeout_ms / 1000, ctx.cancel_event)

        if ctx.cancelled:
            launcher.cancel_run(child.id)
            return StepOutcome.cancelled()

        if final is None or not final.is_terminal:
            launcher.cancel_run(child.id)
            raise ExecutionError(
                "SUB_PIPELINE_TIMEOUT",
                f"子管线 run {child.id} 在 {timeout_ms}ms 内未结束",
                details={"runId": child.id},
            )

        if final.status != RunStatus.COMPLETED:
            reason = final.error.message if final.error else final.status.value
            raise ExecutionError(
                "SUB_PIPELINE_FAILED",
                f"子管线 run {final.id} 结束状态为 {final.status.value}: {reason}",
                details={"runId": final.id, "status": final.status.value},
            )

        outputs = {
            step_id: state.output
            for step_id, state in final.step_states.items()
            if state.status == StepStatus.COMPLETED
        }
        return StepOutcome.completed(
            {
                "runId": final.id,
                "status": final.status.value,
                "context": final.context,
                "outputs": outputs,
            }
        )
