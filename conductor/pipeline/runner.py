"""Run 控制器 - 生命周期、单写者状态转换、审批与等待恢复

整体架构：
  start_run 构造 RunHandle → 调度线程运行 DagScheduler →
  worker 执行步骤并回调 complete_step → 控制器在 Run 锁内写入状态 →
  唤醒调度线程重新计算可运行集合

所有对 Run 状态的修改都在 RunHandle.lock 内进行，这把锁同时也是 RunContext 的锁，
因此 worker 线程之间、worker 与控制接口之间不会出现交错写入。
"""

from __future__ import annotations

import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from conductor.core.utils.logger import setup_logger
from conductor.core.utils.subprocess_helper import SubprocessScriptRunner
from conductor.pipeline.approvals import ApprovalBook, ApprovalError, ApprovalResolution
from conductor.pipeline.context import ContextWrite, RunContext, to_json_like
from conductor.pipeline.errors import (
    ExecutionError,
    ExpressionError,
    PipelineValidationError,
    RunNotFoundError,
    SandboxViolation,
)
from conductor.pipeline.node_base import EngineServices, StepOutcome, Suspension, SuspensionKind
from conductor.pipeline.registry import ExecutorRegistry, get_default_registry
from conductor.pipeline.scheduler import DagScheduler, LoopTracker, RunHandle
from conductor.pipeline.schemas import (
    ApprovalDecision,
    AttemptRecord,
    ErrorInfo,
    OnTimeoutAction,
    PendingApproval,
    PipelineDefinition,
    Run,
    RunError,
    RunStatus,
    Step,
    StepState,
    StepStatus,
    StepType,
    TriggeredBy,
    TriggerSource,
    utcnow,
)
from conductor.pipeline.validation import validate_definition
from conductor.settings import EngineSettings, get_engine_settings

if TYPE_CHECKING:
    from conductor.pipeline.definitions import PipelineRegistry
    from conductor.storage.base import PipelineStore

logger = setup_logger("pipeline_runner")


def _elapsed_ms(started: Optional[datetime], finished: datetime) -> int:
    if started is None:
        return 0
    return max(0, int((finished - started).total_seconds() * 1000))


class RunController:
    """
    管理所有活动 Run

    对外：start_run / pause_run / resume_run / cancel_run / submit_approval /
    resume_wait / get_run / wait_for_run
    对调度器：mark_step_running / record_attempt / complete_step / skip_step 等单写者操作
    """

    def __init__(
        self,
        definitions: "PipelineRegistry",
        store: "PipelineStore",
        executors: Optional[ExecutorRegistry] = None,
        services: Optional[EngineServices] = None,
        settings: Optional[EngineSettings] = None,
    ):
        self.definitions = definitions
        self.store = store
        self.executors = executors or get_default_registry()
        self.settings = settings or get_engine_settings()
        self.services = services or EngineServices()
        if self.services.script_runner is None:
            self.services.script_runner = SubprocessScriptRunner()
        if self.services.sub_pipelines is None:
            self.services.sub_pipelines = self
        self.approvals = ApprovalBook()
        self._handles: Dict[str, RunHandle] = {}
        self._lock = threading.Lock()

    # ============ 生命周期 ============

    def start_run(
        self,
        definition: PipelineDefinition,
        params: Optional[Dict[str, Any]] = None,
        triggered_by: Optional[TriggeredBy] = None,
        parent: Optional[RunHandle] = None,
        parent_step_id: Optional[str] = None,
    ) -> Run:
        """
        创建并启动一个 Run，立即返回 running 状态的快照

        Raises:
            PipelineValidationError: 缺少必需参数、参数非法或定义非法
        """
        params = dict(params or {})
        missing = [name for name in definition.trigger.required_params if name not in params]
        if missing:
            raise PipelineValidationError(f"缺少必需参数: {', '.join(missing)}")

        graph = validate_definition(definition)
        lock = threading.RLock()
        try:
            context = RunContext({**definition.context_defaults, **params}, lock)
        except SandboxViolation as e:
            raise PipelineValidationError(f"触发参数非法: {e}") from e

        run_id = f"run_{uuid.uuid4().hex}"
        run = Run(
            id=run_id,
            pipeline_id=definition.id,
            pipeline_version=definition.version,
            triggered_by=triggered_by or TriggeredBy(),
            trigger_params=to_json_like(params),
            context=context.snapshot(),
            step_states={step.id: StepState(step_id=step.id) for step in definition.steps},
            parent_run_id=parent.run_id if parent else None,
            parent_step_id=parent_step_id,
        )
        handle = RunHandle(
            run=run,
            definition=definition,
            graph=graph,
            context=context,
            lock=lock,
            changed=threading.Condition(lock),
            pool=ThreadPoolExecutor(
                max_workers=self.settings.max_workers_per_run,
                thread_name_prefix=f"{run_id[:12]}-step",
            ),
            lineage=(parent.lineage if parent else ()) + (definition.id,),
        )

        with self._lock:
            self._handles[run_id] = handle
        with handle.lock:
            self._persist(handle)
            run.status = RunStatus.RUNNING
            run.started_at = utcnow()
            self._persist(handle)
            snapshot = self._snapshot(handle)

        scheduler = DagScheduler(handle, self)
        handle.thread = threading.Thread(
            target=scheduler.run, name=f"scheduler-{run_id[:12]}", daemon=True
        )
        handle.thread.start()
        logger.info(
            f"run_id={run_id} pipeline_id={definition.id} version={definition.version} 已启动"
        )
        return snapshot

    def pause_run(self, run_id: str) -> bool:
        """暂停运行中的 Run：已开始的步骤继续完成，不再启动新步骤"""
        handle = self._active(run_id)
        if handle is None:
            return False
        with handle.changed:
            if handle.run.status != RunStatus.RUNNING:
                logger.warning(f"run_id={run_id} 状态为 {handle.run.status.value}，无法暂停")
                return False
            handle.run.status = RunStatus.PAUSED
            self._persist(handle)
            handle.changed.notify_all()
        logger.info(f"run_id={run_id} 已暂停")
        return True

    def resume_run(self, run_id: str) -> bool:
        handle = self._active(run_id)
        if handle is None:
            return False
        with handle.changed:
            if handle.run.status != RunStatus.PAUSED:
                logger.warning(f"run_id={run_id} 状态为 {handle.run.status.value}，无法恢复")
                return False
            handle.run.status = RunStatus.RUNNING
            self._persist(handle)
            handle.changed.notify_all()
        logger.info(f"run_id={run_id} 已恢复")
        return True

    def cancel_run(self, run_id: str) -> bool:
        """
        取消 Run：发出取消信号，所有未终结步骤标记为 cancelled，子 Run 一并取消

        不等待正在执行的 worker 退出；它们之后提交的结果会被忽略。
        """
        handle = self._active(run_id)
        if handle is None:
            return False
        with handle.changed:
            if handle.run.is_terminal:
                return False
            handle.cancel_event.set()
            self._cancel_open_steps(handle, "运行已取消")
            handle.run.status = RunStatus.CANCELLED
            handle.run.error = RunError(code="CANCELLED", message="运行已取消")
            self._close_run(handle)
            children = list(handle.run.child_run_ids)
        logger.info(f"run_id={run_id} 已取消")
        self._cancel_children(children)
        return True

    def shutdown(self) -> None:
        """取消所有活动 Run"""
        with self._lock:
            run_ids = list(self._handles)
        for run_id in run_ids:
            self.cancel_run(run_id)

    # ============ 审批与等待 ============

    def submit_approval(self, run_id: str, step_id: str, decision: ApprovalDecision) -> bool:
        """
        提交审批意见

        Returns:
            True 表示已记录；Run 不在运行、步骤未在等待、审批人不合法或重复提交时返回 False
        """
        handle = self._active(run_id)
        if handle is None:
            return False
        with handle.changed:
            state = handle.run.step_states.get(step_id)
            if (
                handle.run.status != RunStatus.RUNNING
                or state is None
                or state.status != StepStatus.WAITING
            ):
                logger.warning(f"run_id={run_id} step_id={step_id} 当前不接受审批")
                return False
            try:
                resolution = self.approvals.record(run_id, step_id, decision)
            except ApprovalError as e:
                logger.warning(f"run_id={run_id} step_id={step_id} 审批被拒收: {e}")
                return False

            state.approvals = self.approvals.decisions(run_id, step_id)
            logger.info(
                f"run_id={run_id} step_id={step_id} {decision.user_id} 提交 {decision.decision.value}"
            )
            if resolution == ApprovalResolution.APPROVED:
                self._resolve_suspension(
                    handle,
                    step_id,
                    StepOutcome.completed({"approved": True, "approvals": self._decision_dump(state)}),
                )
            elif resolution == ApprovalResolution.REJECTED:
                self._resolve_suspension(
                    handle,
                    step_id,
                    StepOutcome.failed(
                        "APPROVAL_REJECTED",
                        f"{decision.user_id} 拒绝了审批" + (f": {decision.comment}" if decision.comment else ""),
                        retryable=False,
                    ),
                )
            else:
                self._persist(handle)
        return True

    def list_pending_approvals(self, run_id: Optional[str] = None) -> List[PendingApproval]:
        return self.approvals.list_pending(run_id)

    def resume_wait(self, token: str, payload: Any = None) -> bool:
        """用回调令牌唤醒 webhook 模式的 wait 步骤"""
        with self._lock:
            handles = list(self._handles.values())
        for handle in handles:
            with handle.changed:
                for step_id, suspension in list(handle.suspensions.items()):
                    if suspension.kind != SuspensionKind.WEBHOOK or suspension.token != token:
                        continue
                    if handle.run.status != RunStatus.RUNNING:
                        logger.warning(f"run_id={handle.run_id} 未在运行，忽略回调 {token}")
                        return False
                    self._resolve_suspension(
                        handle,
                        step_id,
                        StepOutcome.completed(
                            {"payload": to_json_like(payload), "resumedAt": utcnow().isoformat()}
                        ),
                    )
                    logger.info(f"run_id={handle.run_id} step_id={step_id} 收到回调")
                    return True
        return False

    # ============ 查询 ============

    def get_run(self, run_id: str) -> Optional[Run]:
        with self._lock:
            handle = self._handles.get(run_id)
        if handle is not None:
            with handle.lock:
                return self._snapshot(handle)
        return self.store.get_run(run_id)

    def wait_for_run(
        self,
        run_id: str,
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Optional[Run]:
        """阻塞直到 Run 终结、超时或 cancel_event 被触发，返回此时的快照"""
        with self._lock:
            handle = self._handles.get(run_id)
        if handle is not None:
            deadline = None if timeout is None else time.monotonic() + timeout
            while not handle.done.is_set():
                if cancel_event is not None and cancel_event.is_set():
                    break
                slice_seconds = 0.05
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        break
                    slice_seconds = min(slice_seconds, remaining)
                handle.done.wait(slice_seconds)
        return self.get_run(run_id)

    def is_active(self, run_id: str) -> bool:
        with self._lock:
            return run_id in self._handles

    # ============ 子管线 ============

    def start_child_run(
        self,
        parent_run_id: str,
        parent_step_id: str,
        pipeline_id: str,
        version: Optional[int],
        inputs: Dict[str, Any],
    ) -> Run:
        """
        为 sub_pipeline 步骤启动子 Run

        Raises:
            ExecutionError: 父 Run 已结束、出现循环调用、超过嵌套深度、目标管线不存在或已停用
        """
        with self._lock:
            parent = self._handles.get(parent_run_id)
        if parent is None or parent.run.is_terminal:
            raise ExecutionError("PARENT_RUN_INACTIVE", f"父 Run {parent_run_id} 已结束", retryable=False)
        if pipeline_id in parent.lineage:
            chain = " -> ".join(parent.lineage + (pipeline_id,))
            raise ExecutionError("SUB_PIPELINE_CYCLE", f"子管线循环调用: {chain}", retryable=False)
        if len(parent.lineage) >= self.settings.max_sub_pipeline_depth:
            raise ExecutionError(
                "SUB_PIPELINE_DEPTH",
                f"子管线嵌套超过 {self.settings.max_sub_pipeline_depth} 层",
                retryable=False,
            )

        definition = self.definitions.get(pipeline_id, version)
        if definition is None:
            raise ExecutionError("PIPELINE_NOT_FOUND", f"管线 {pipeline_id} 不存在", retryable=False)
        if not definition.enabled:
            raise ExecutionError("PIPELINE_DISABLED", f"管线 {pipeline_id} 已停用", retryable=False)

        try:
            child = self.start_run(
                definition,
                inputs,
                TriggeredBy(type=TriggerSource.PIPELINE, id=parent_run_id),
                parent=parent,
                parent_step_id=parent_step_id,
            )
        except PipelineValidationError as e:
            raise ExecutionError("SUB_PIPELINE_INVALID", str(e), retryable=False) from e

        with parent.lock:
            orphaned = parent.run.is_terminal
            if not orphaned:
                parent.run.child_run_ids.append(child.id)
                self._persist(parent)
        if orphaned:
            self.cancel_run(child.id)
        return child

    # ============ 单写者操作（由调度器与 worker 调用） ============

    def mark_step_running(self, handle: RunHandle, step_id: str) -> None:
        with handle.lock:
            state = handle.state(step_id)
            state.status = StepStatus.RUNNING
            state.started_at = utcnow()
        logger.info(f"{self._prefix(handle, step_id)} 开始执行")

    def record_attempt(
        self,
        handle: RunHandle,
        step_id: str,
        attempt: int,
        outcome: StepOutcome,
        started: datetime,
        finished: datetime,
    ) -> None:
        with handle.lock:
            if handle.run.is_terminal:
                return
            state = handle.state(step_id)
            error = outcome.error if outcome.is_failed else None
            state.attempts += 1
            state.history.append(
                AttemptRecord(attempt=attempt, started_at=started, finished_at=finished, error=error)
            )
            if error is not None:
                state.last_error = error

    def record_inner_error(self, handle: RunHandle, step_id: str, error: ErrorInfo) -> None:
        with handle.lock:
            if not handle.run.is_terminal:
                handle.state(step_id).last_error = error

    def apply_outputs(self, handle: RunHandle, step: Step, outcome: StepOutcome) -> None:
        """原子地写入执行器产生的上下文写入与 outputVariable"""
        writes = list(outcome.writes)
        if step.output_variable:
            writes.append(ContextWrite(step.output_variable, outcome.output))
        if not writes:
            return
        with handle.lock:
            if handle.run.is_terminal:
                return
            handle.context.apply(writes)

    def complete_step(self, handle: RunHandle, step_id: str, outcome: StepOutcome) -> None:
        """提交步骤的最终结果（或挂起信号）"""
        with handle.changed:
            handle.in_flight.discard(step_id)
            state = handle.state(step_id)
            if handle.run.is_terminal or state.is_terminal:
                logger.debug(f"{self._prefix(handle, step_id)} 忽略迟到的结果")
                handle.changed.notify_all()
                return

            step = handle.graph.steps[step_id]
            if outcome.is_suspended:
                self._suspend_step(handle, step, outcome.suspension)
                handle.changed.notify_all()
                return

            if outcome.is_completed:
                try:
                    self.apply_outputs(handle, step, outcome)
                except (SandboxViolation, ExpressionError) as e:
                    outcome = StepOutcome.failed("OUTPUT_WRITE_FAILED", str(e), retryable=False)

            now = utcnow()
            state.completed_at = now
            state.duration_ms = _elapsed_ms(state.started_at, now)
            if outcome.is_completed:
                state.status = StepStatus.COMPLETED
                state.output = to_json_like(outcome.output)
                logger.info(f"{self._prefix(handle, step_id)} 完成，耗时 {state.duration_ms}ms")
            else:
                state.status = StepStatus.FAILED
                state.last_error = outcome.error
                logger.warning(
                    f"{self._prefix(handle, step_id)} 失败: "
                    f"{outcome.error.code if outcome.error else '-'} "
                    f"{outcome.error.message if outcome.error else ''}"
                )
                self._escalate(handle, step_id, outcome.error)

            if not handle.run.is_terminal:
                self._persist(handle)
            handle.changed.notify_all()

    def skip_step(self, handle: RunHandle, step_id: str, reason: str) -> None:
        """把步骤及其控制流后代中仍为 pending 的步骤标记为 skipped"""
        with handle.changed:
            now = utcnow()
            for sid in [step_id] + handle.graph.descendants(step_id):
                state = handle.state(sid)
                if state.status != StepStatus.PENDING:
                    continue
                state.status = StepStatus.SKIPPED
                state.skip_reason = reason
                state.completed_at = now
                logger.info(f"{self._prefix(handle, sid)} 跳过: {reason}")
            handle.changed.notify_all()

    def cancel_step(self, handle: RunHandle, step_id: str, reason: str) -> None:
        with handle.changed:
            now = utcnow()
            for sid in [step_id] + handle.graph.descendants(step_id):
                state = handle.state(sid)
                if state.status != StepStatus.PENDING:
                    continue
                state.status = StepStatus.CANCELLED
                state.skip_reason = reason
                state.completed_at = now
            handle.changed.notify_all()

    def begin_loop_body(self, handle: RunHandle, step_ids: List[str]) -> None:
        with handle.lock:
            now = utcnow()
            for sid in step_ids:
                state = handle.state(sid)
                if state.status == StepStatus.PENDING:
                    state.status = StepStatus.RUNNING
                    state.started_at = now

    def finish_loop_body(self, handle: RunHandle, tracker: LoopTracker) -> None:
        """循环结束后写入循环体步骤的汇总状态：输出为逐轮输出列表"""
        with handle.changed:
            now = utcnow()
            for sid in tracker.step_ids:
                state = handle.state(sid)
                if state.is_terminal:
                    continue
                outputs = tracker.ordered_outputs(sid)
                state.iterations = len(outputs) + (1 if sid in tracker.failed else 0)
                state.completed_at = now
                state.duration_ms = _elapsed_ms(state.started_at, now)
                if sid in tracker.failed:
                    state.status = StepStatus.FAILED
                    state.output = to_json_like(outputs)
                elif outputs:
                    state.status = StepStatus.COMPLETED
                    state.output = to_json_like(outputs)
                else:
                    state.status = StepStatus.SKIPPED
                    state.skip_reason = "循环未执行该步骤"
            handle.changed.notify_all()

    def expire_suspension(self, handle: RunHandle, step_id: str, suspension: Suspension) -> None:
        """挂起到期：按 on_deadline 完成或失败"""
        if suspension.kind == SuspensionKind.APPROVAL:
            action = OnTimeoutAction(suspension.on_deadline)
            if action == OnTimeoutAction.APPROVE:
                outcome = StepOutcome.completed(
                    {
                        "approved": True,
                        "timedOut": True,
                        "approvals": self._decision_dump(handle.state(step_id)),
                    }
                )
            elif action == OnTimeoutAction.REJECT:
                outcome = StepOutcome.failed("APPROVAL_REJECTED", "审批超时，按配置视为拒绝", retryable=False)
            else:
                outcome = StepOutcome.failed("APPROVAL_TIMEOUT", "审批超时", retryable=False)
        elif suspension.on_deadline == "complete":
            outcome = StepOutcome.completed(suspension.output)
        else:
            outcome = StepOutcome.failed("WAIT_TIMEOUT", "等待超时", retryable=False)
        logger.info(f"{self._prefix(handle, step_id)} 挂起到期 ({suspension.kind.value})")
        self._resolve_suspension(handle, step_id, outcome)

    def fail_run(self, handle: RunHandle, step_id: Optional[str], error: ErrorInfo) -> None:
        with handle.changed:
            if handle.run.is_terminal:
                return
            handle.cancel_event.set()
            self._cancel_open_steps(handle, "运行失败，步骤被取消")
            handle.run.status = RunStatus.FAILED
            handle.run.error = RunError(code=error.code, message=error.message, step_id=step_id)
            self._close_run(handle)
            children = list(handle.run.child_run_ids)
        logger.error(f"run_id={handle.run_id} 失败: {error.code} {error.message}")
        self._cancel_children(children)

    def finish_run(self, handle: RunHandle) -> None:
        with handle.changed:
            if handle.run.is_terminal:
                return
            handle.run.status = RunStatus.COMPLETED
            self._close_run(handle)
        logger.info(f"run_id={handle.run_id} 完成，耗时 {handle.run.duration_ms}ms")

    def scheduler_exited(self, handle: RunHandle) -> None:
        handle.pool.shutdown(wait=False, cancel_futures=True)
        handle.done.set()
        with self._lock:
            self._handles.pop(handle.run_id, None)

    # ============ 内部 ============

    def _active(self, run_id: str) -> Optional[RunHandle]:
        """
        Raises:
            RunNotFoundError: Run 既不在运行也不在存储中
        """
        with self._lock:
            handle = self._handles.get(run_id)
        if handle is None and self.store.get_run(run_id) is None:
            raise RunNotFoundError(f"Run {run_id} 不存在")
        return handle

    def _suspend_step(self, handle: RunHandle, step: Step, suspension: Optional[Suspension]) -> None:
        state = handle.state(step.id)
        state.status = StepStatus.WAITING
        handle.suspensions[step.id] = suspension
        if suspension.kind == SuspensionKind.WEBHOOK:
            state.wait_token = suspension.token
        elif suspension.kind == SuspensionKind.APPROVAL:
            output = suspension.output or {}
            self.approvals.open(
                handle.run_id, step.id, step.config, str(output.get("message", "")), suspension.deadline
            )
        logger.info(f"{self._prefix(handle, step.id)} 挂起等待 ({suspension.kind.value})")
        self._persist(handle)

    def _resolve_suspension(self, handle: RunHandle, step_id: str, outcome: StepOutcome) -> None:
        with handle.lock:
            suspension = handle.suspensions.pop(step_id, None)
            if suspension is not None and suspension.kind == SuspensionKind.APPROVAL:
                handle.state(step_id).approvals = self.approvals.decisions(handle.run_id, step_id)
                self.approvals.close(handle.run_id, step_id)
            self.complete_step(handle, step_id, outcome)

    def _escalate(self, handle: RunHandle, step_id: str, error: Optional[ErrorInfo]) -> None:
        """失败升级：容忍失败则止步；parallel / conditional 子步骤交给父步骤；否则整个 Run 失败"""
        graph = handle.graph
        if graph.steps[step_id].continue_on_failure:
            return
        error = error or ErrorInfo(code="STEP_FAILED", message="步骤失败")

        owner = graph.owner(step_id)
        if owner is not None and owner.kind == StepType.PARALLEL:
            parent_id = owner.parent_id
            if handle.state(parent_id).is_terminal:
                return
            if graph.steps[parent_id].config.fail_fast:
                for sibling in graph.children(parent_id):
                    self.cancel_step(handle, sibling, "并行步骤快速失败")
                self.complete_step(
                    handle,
                    parent_id,
                    StepOutcome.failed(
                        "PARALLEL_CHILD_FAILED",
                        f"并行子步骤 {step_id} 失败: {error.message}",
                        retryable=False,
                    ),
                )
            return
        if owner is not None and owner.kind == StepType.CONDITIONAL:
            # 分支内尚未开始的步骤不再执行，conditional 在分支全部终结后由调度器判定失败
            if not handle.state(owner.parent_id).is_terminal:
                for sibling in graph.children(owner.parent_id):
                    if sibling in handle.activated:
                        self.cancel_step(handle, sibling, "分支步骤失败")
            return
        if owner is not None and owner.kind == StepType.LOOP:
            return
        self.fail_run(handle, step_id, error)

    def _cancel_open_steps(self, handle: RunHandle, reason: str) -> None:
        now = utcnow()
        for state in handle.run.step_states.values():
            if state.is_terminal:
                continue
            state.status = StepStatus.CANCELLED
            state.skip_reason = reason
            state.completed_at = now
            if state.started_at is not None:
                state.duration_ms = _elapsed_ms(state.started_at, now)
        handle.suspensions.clear()
        self.approvals.close_run(handle.run_id)

    def _close_run(self, handle: RunHandle) -> None:
        """写入终态时间戳、持久化并唤醒所有等待方"""
        now = utcnow()
        handle.run.completed_at = now
        handle.run.duration_ms = _elapsed_ms(handle.run.started_at, now)
        self._persist(handle)
        handle.changed.notify_all()
        handle.done.set()

    def _cancel_children(self, child_ids: List[str]) -> None:
        for child_id in child_ids:
            try:
                self.cancel_run(child_id)
            except RunNotFoundError:
                logger.warning(f"子 Run {child_id} 不存在，跳过取消")

    def _snapshot(self, handle: RunHandle) -> Run:
        handle.run.context = handle.context.snapshot()
        return handle.run.model_copy(deep=True)

    def _persist(self, handle: RunHandle) -> None:
        try:
            self.store.save_run(self._snapshot(handle))
        except Exception as e:
            logger.error(f"run_id={handle.run_id} 持久化失败: {e}", exc_info=True)

    @staticmethod
    def _decision_dump(state: StepState) -> List[Dict[str, Any]]:
        return [d.model_dump(mode="json", by_alias=True) for d in state.approvals]

    @staticmethod
    def _prefix(handle: RunHandle, step_id: str) -> str:
        return f"run_id={handle.run_id} step_id={step_id}"
