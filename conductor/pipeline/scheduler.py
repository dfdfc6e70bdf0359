"""DAG 调度器 - 计算可运行步骤、派发执行、展开控制流"""

from __future__ import annotations

import copy
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Set, Tuple, Union

from conductor.core.utils.logger import setup_logger
from conductor.pipeline.context import ContextView, RunContext
from conductor.pipeline.errors import ExpressionError, SandboxViolation
from conductor.pipeline.graph import PipelineGraph
from conductor.pipeline.node_base import (
    StepContext,
    StepOutcome,
    Suspension,
    SuspensionKind,
)
from conductor.pipeline.registry import ExecutorNotFoundError
from conductor.pipeline.retry import RetryController
from conductor.pipeline.schemas import (
    DEFAULT_RETRY_POLICY,
    ErrorInfo,
    LoopMode,
    PipelineDefinition,
    Run,
    RunStatus,
    Step,
    StepState,
    StepStatus,
    StepType,
    utcnow,
)
from conductor.pipeline.validation import source_to_path

if TYPE_CHECKING:
    from conductor.pipeline.runner import RunController

logger = setup_logger("pipeline_scheduler")

# 依赖未就绪，继续等待
_WAIT = object()


@dataclass
class RunHandle:
    """一个活动 Run 的全部运行期状态，所有字段都在 lock 内读写"""

    run: Run
    definition: PipelineDefinition
    graph: PipelineGraph
    context: RunContext
    lock: threading.RLock
    changed: threading.Condition
    pool: ThreadPoolExecutor
    cancel_event: threading.Event = field(default_factory=threading.Event)
    done: threading.Event = field(default_factory=threading.Event)
    # 祖先管线 ID 链（含自身），用于检测子管线循环
    lineage: Tuple[str, ...] = ()
    # 被控制流步骤激活的子步骤
    activated: Set[str] = field(default_factory=set)
    # conditional 步骤选中的分支：step_id -> (then/else, 分支步骤)
    branches: Dict[str, Tuple[str, List[str]]] = field(default_factory=dict)
    # 已派发到 worker 的步骤
    in_flight: Set[str] = field(default_factory=set)
    # 挂起中的步骤
    suspensions: Dict[str, Suspension] = field(default_factory=dict)
    thread: Optional[threading.Thread] = None

    @property
    def run_id(self) -> str:
        return self.run.id

    def state(self, step_id: str) -> StepState:
        return self.run.step_states[step_id]


class LoopTracker:
    """汇总一次 loop 执行中内部步骤的逐轮结果"""

    def __init__(self, step_ids: List[str]):
        self._lock = threading.Lock()
        self.step_ids = step_ids
        self.outputs: Dict[str, Dict[int, Any]] = {sid: {} for sid in step_ids}
        self.failed: Set[str] = set()
        self.failure: Optional[Tuple[int, str, ErrorInfo]] = None

    def record(self, step_id: str, index: int, outcome: StepOutcome) -> None:
        with self._lock:
            if outcome.is_completed:
                self.outputs[step_id][index] = outcome.output
            else:
                self.failed.add(step_id)

    def fail(self, index: int, step_id: str, error: Optional[ErrorInfo]) -> None:
        with self._lock:
            if self.failure is None:
                self.failure = (
                    index,
                    step_id,
                    error or ErrorInfo(code="STEP_FAILED", message="步骤失败"),
                )

    def ordered_outputs(self, step_id: str) -> List[Any]:
        with self._lock:
            runs = self.outputs[step_id]
            return [runs[i] for i in sorted(runs)]


class DagScheduler:
    """
    单个 Run 的调度循环

    每当有步骤完成、失败、跳过、审批决定或定时器到期，就重新计算可运行集合：
    - 依赖全部终结（completed/skipped，或 continueOnFailure 的 failed）
    - 尚未开始，且（若属于控制流）已被父步骤激活
    - condition 为真；为假则标记 skipped
    """

    def __init__(self, handle: RunHandle, controller: "RunController"):
        self.handle = handle
        self.controller = controller
        self.executors = controller.executors
        self.settings = controller.settings
        self.services = controller.services

    # ============ 主循环 ============

    def run(self) -> None:
        h = self.handle
        try:
            with h.changed:
                while not h.run.is_terminal:
                    if h.run.status == RunStatus.PAUSED:
                        h.changed.wait(self.settings.scheduler_poll_seconds)
                        continue

                    self._resolve_deadlines()
                    if h.run.is_terminal:
                        break

                    self.advance()
                    if h.run.is_terminal:
                        break

                    if self._all_terminal():
                        self.controller.finish_run(h)
                        break

                    if not h.in_flight and not h.suspensions:
                        self._release_stalled()
                        continue

                    h.changed.wait(self._wait_timeout())
        except Exception as e:
            logger.error(f"run_id={h.run_id} 调度循环异常: {e}", exc_info=True)
            self.controller.fail_run(
                h, None, ErrorInfo(code="SCHEDULER_ERROR", message=str(e))
            )
        finally:
            self.controller.scheduler_exited(h)

    def advance(self) -> int:
        """
        启动所有当前可运行的步骤

        Returns:
            本次启动的步骤数
        """
        h = self.handle
        started = 0
        progressed = True
        with h.lock:
            while progressed and h.run.status == RunStatus.RUNNING:
                progressed = self._settle_control_steps()
                for step_id in h.graph.topological_sort():
                    if h.run.status != RunStatus.RUNNING:
                        break
                    if h.state(step_id).status != StepStatus.PENDING:
                        continue

                    gate = self._gate(step_id)
                    if gate is _WAIT:
                        continue
                    if isinstance(gate, str):
                        self.controller.skip_step(h, step_id, gate)
                        progressed = True
                        continue
                    if not self._has_capacity(step_id):
                        continue

                    step = h.graph.steps[step_id]
                    if step.condition:
                        try:
                            satisfied = self._view().test(step.condition)
                        except (SandboxViolation, ExpressionError) as e:
                            self.controller.complete_step(
                                h,
                                step_id,
                                StepOutcome.failed("CONDITION_ERROR", str(e), retryable=False),
                            )
                            progressed = True
                            continue
                        if not satisfied:
                            self.controller.skip_step(h, step_id, "条件不满足")
                            progressed = True
                            continue

                    self._start(step)
                    started += 1
                    progressed = True
        return started

    def _gate(self, step_id: str) -> Union[None, str, object]:
        """返回 None 表示可运行，_WAIT 表示等待，字符串表示应跳过的原因"""
        h = self.handle
        graph = h.graph

        owner = graph.owner(step_id)
        if owner is not None:
            parent_state = h.state(owner.parent_id)
            if owner.kind == StepType.LOOP:
                # 循环体由 loop 的 worker 执行
                return "所属循环已结束" if parent_state.is_terminal else _WAIT
            if step_id not in h.activated:
                return "所属控制步骤未激活该步骤" if parent_state.is_terminal else _WAIT

        for dep in graph.dependencies(step_id):
            dep_state = h.state(dep)
            if dep_state.status in (StepStatus.COMPLETED, StepStatus.SKIPPED):
                continue
            if dep_state.status == StepStatus.FAILED and graph.steps[dep].continue_on_failure:
                continue
            if dep_state.status in (StepStatus.FAILED, StepStatus.CANCELLED):
                return f"依赖步骤 {dep} 未成功"
            return _WAIT
        return None

    def _has_capacity(self, step_id: str) -> bool:
        h = self.handle
        owner = h.graph.owner(step_id)
        if owner is None or owner.kind != StepType.PARALLEL:
            return True
        cap = h.graph.steps[owner.parent_id].config.max_concurrency
        if cap is None:
            return True
        active = sum(
            1
            for child in h.graph.children(owner.parent_id)
            if h.state(child).status in (StepStatus.RUNNING, StepStatus.WAITING)
        )
        return active < cap

    def _start(self, step: Step) -> None:
        h = self.handle
        self.controller.mark_step_running(h, step.id)

        if step.type == StepType.CONDITIONAL:
            self._expand_conditional(step)
            return
        if step.type == StepType.PARALLEL:
            h.activated.update(h.graph.children(step.id))
            return

        target = self._run_loop if step.type == StepType.LOOP else self._run_work
        h.in_flight.add(step.id)
        try:
            h.pool.submit(self._worker, step, target)
        except RuntimeError:
            # worker 池已关闭（Run 正在结束）
            self.controller.complete_step(h, step.id, StepOutcome.cancelled())

    def _worker(self, step: Step, target: Callable[[Step], StepOutcome]) -> None:
        try:
            outcome = target(step)
        except Exception as e:
            logger.error(
                f"run_id={self.handle.run_id} step_id={step.id} worker 异常: {e}", exc_info=True
            )
            outcome = StepOutcome.failed("STEP_FAILED", f"{type(e).__name__}: {e}")
        self.controller.complete_step(self.handle, step.id, outcome)

    # ============ 控制流 ============

    def _expand_conditional(self, step: Step) -> None:
        """选出分支并激活；conditional 保持 running，直到分支内步骤全部终结"""
        h = self.handle
        config = step.config
        try:
            chosen_then = self._view().test(config.condition)
        except (SandboxViolation, ExpressionError) as e:
            self.controller.complete_step(
                h, step.id, StepOutcome.failed("CONDITION_ERROR", str(e), retryable=False)
            )
            return

        chosen, other = (
            (config.then_steps, config.else_steps)
            if chosen_then
            else (config.else_steps, config.then_steps)
        )
        h.branches[step.id] = ("then" if chosen_then else "else", list(chosen))
        h.activated.update(chosen)
        for step_id in other:
            self.controller.skip_step(h, step_id, "条件分支未选中")

    def _settle_control_steps(self) -> bool:
        """子步骤全部终结的 parallel / conditional 步骤在此完成或失败"""
        h = self.handle
        settled = False
        for step_id in h.graph.step_ids:
            step = h.graph.steps[step_id]
            if step.type not in (StepType.PARALLEL, StepType.CONDITIONAL):
                continue
            if h.state(step_id).status != StepStatus.RUNNING:
                continue
            children = h.graph.children(step_id)
            if not all(h.state(c).is_terminal for c in children):
                continue

            bad = [
                c
                for c in children
                if h.state(c).status == StepStatus.CANCELLED
                or (
                    h.state(c).status == StepStatus.FAILED
                    and not h.graph.steps[c].continue_on_failure
                )
            ]
            if step.type == StepType.CONDITIONAL:
                outcome = self._conditional_outcome(step_id, bad)
            elif bad:
                outcome = StepOutcome.failed(
                    "PARALLEL_CHILD_FAILED",
                    f"并行子步骤未成功: {', '.join(bad)}",
                    retryable=False,
                )
            else:
                outcome = StepOutcome.completed(
                    {
                        status.value: [c for c in children if h.state(c).status == status]
                        for status in (StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.SKIPPED)
                    }
                )
            self.controller.complete_step(h, step_id, outcome)
            settled = True
        return settled

    def _conditional_outcome(self, step_id: str, bad: List[str]) -> StepOutcome:
        h = self.handle
        branch, chosen = h.branches.get(step_id, ("else", []))
        if not bad:
            return StepOutcome.completed({"branch": branch, "steps": chosen})
        failed = [c for c in bad if h.state(c).status == StepStatus.FAILED]
        culprit = (failed or bad)[0]
        cause = h.state(culprit).last_error or ErrorInfo(code="CANCELLED", message="步骤被取消")
        return StepOutcome.failed(
            "CONDITIONAL_BRANCH_FAILED",
            f"分支步骤 {culprit} 未成功: {cause.message}",
            retryable=False,
            details={"branch": branch, "stepId": culprit, "code": cause.code},
        )

    # ============ 工作型步骤 ============

    def _run_work(
        self,
        step: Step,
        scope: Optional[Dict[str, Any]] = None,
        iteration_steps: Optional[Dict[str, Dict[str, Any]]] = None,
    ) -> StepOutcome:
        h = self.handle
        try:
            executor = self.executors.get(step.type)
        except ExecutorNotFoundError as e:
            return StepOutcome.failed("EXECUTOR_NOT_FOUND", str(e), retryable=False)

        policy = step.retry_policy or h.definition.retry_policy or DEFAULT_RETRY_POLICY

        def invoke(attempt: int) -> StepOutcome:
            ctx = StepContext(
                run_id=h.run_id,
                pipeline_id=h.definition.id,
                step=step,
                attempt=attempt,
                view=self._view(scope, iteration_steps),
                cancel_event=h.cancel_event,
                settings=self.settings,
                services=self.services,
            )
            return executor.execute(ctx)

        def on_attempt(attempt: int, outcome: StepOutcome, started: datetime, finished: datetime) -> None:
            self.controller.record_attempt(h, step.id, attempt, outcome, started, finished)

        retry = RetryController(
            policy,
            h.cancel_event,
            on_attempt=on_attempt,
            log_prefix=f"run_id={h.run_id} step_id={step.id}",
        )
        return retry.run(invoke)

    def _view(
        self,
        scope: Optional[Dict[str, Any]] = None,
        iteration_steps: Optional[Dict[str, Dict[str, Any]]] = None,
    ) -> ContextView:
        """构造一次调用的只读快照"""
        h = self.handle
        with h.lock:
            data = h.context.snapshot()
            steps = {
                sid: {"status": state.status.value, "output": copy.deepcopy(state.output)}
                for sid, state in h.run.step_states.items()
            }
        if iteration_steps:
            steps.update(copy.deepcopy(iteration_steps))
        return ContextView(data=data, steps=steps, scope=dict(scope or {}))

    # ============ 循环 ============

    def _run_loop(self, step: Step) -> StepOutcome:
        h = self.handle
        config = step.config
        body = [h.graph.steps[sid] for sid in h.graph.loop_body(step.id)]
        tracker = LoopTracker([s.id for s in body])
        self.controller.begin_loop_body(h, tracker.step_ids)

        try:
            if config.mode == LoopMode.FOR_EACH:
                items = self._view().lookup(source_to_path(config.collection))
                if not isinstance(items, list):
                    return StepOutcome.failed(
                        "LOOP_COLLECTION_INVALID",
                        f"循环集合 {config.collection} 不是数组",
                        retryable=False,
                    )
                if len(items) > config.max_iterations:
                    logger.warning(
                        f"run_id={h.run_id} step_id={step.id} 集合长度 {len(items)} "
                        f"超过 maxIterations={config.max_iterations}，已截断"
                    )
                passes = list(enumerate(items[: config.max_iterations]))
                results = self._run_passes(step, body, passes, tracker)
            elif config.mode == LoopMode.TIMES:
                count = min(config.count or 0, config.max_iterations)
                results = self._run_passes(step, body, [(i, i) for i in range(count)], tracker)
            else:
                results = self._run_conditional_passes(step, body, tracker)
        finally:
            self.controller.finish_loop_body(h, tracker)

        if tracker.failure is not None:
            index, inner_id, error = tracker.failure
            if error.code == "CANCELLED":
                return StepOutcome.cancelled()
            return StepOutcome.failed(
                "LOOP_ITERATION_FAILED",
                f"第 {index} 轮中步骤 {inner_id} 失败: {error.message}",
                retryable=False,
                details={"index": index, "stepId": inner_id, "code": error.code},
            )
        return StepOutcome.completed(results)

    def _run_passes(
        self,
        step: Step,
        body: List[Step],
        passes: List[Tuple[int, Any]],
        tracker: LoopTracker,
    ) -> List[Dict[str, Any]]:
        config = step.config
        if not config.parallel or len(passes) <= 1:
            results = []
            for index, item in passes:
                outputs = self._run_pass(step, body, index, item, tracker)
                if tracker.failure is not None:
                    break
                results.append(outputs)
            return results

        stop = threading.Event()

        def one(index: int, item: Any) -> Optional[Dict[str, Any]]:
            if stop.is_set() or self.handle.cancel_event.is_set():
                return None
            outputs = self._run_pass(step, body, index, item, tracker)
            if tracker.failure is not None:
                stop.set()
                return None
            return outputs

        limit = config.parallel_limit or min(len(passes), self.settings.max_workers_per_run)
        with ThreadPoolExecutor(
            max_workers=max(1, limit), thread_name_prefix=f"loop-{step.id}"
        ) as pool:
            futures = [pool.submit(one, index, item) for index, item in passes]
            ordered = [future.result() for future in futures]
        return [outputs for outputs in ordered if outputs is not None]

    def _run_conditional_passes(
        self, step: Step, body: List[Step], tracker: LoopTracker
    ) -> List[Dict[str, Any]]:
        config = step.config
        results: List[Dict[str, Any]] = []
        last: Dict[str, Any] = {}
        index = 0
        while index < config.max_iterations:
            if config.mode == LoopMode.WHILE and not self._loop_condition(step, index, last, tracker):
                break
            last = self._run_pass(step, body, index, None, tracker)
            if tracker.failure is not None:
                break
            results.append(last)
            if config.mode == LoopMode.UNTIL and self._loop_condition(step, index, last, tracker):
                break
            index += 1
        else:
            logger.warning(
                f"run_id={self.handle.run_id} step_id={step.id} 达到 maxIterations={config.max_iterations}"
            )
        return results

    def _loop_condition(
        self, step: Step, index: int, outputs: Dict[str, Any], tracker: LoopTracker
    ) -> bool:
        config = step.config
        view = self._view(
            {config.index_variable: index},
            {sid: {"status": "completed", "output": out} for sid, out in outputs.items()},
        )
        try:
            return view.test(config.condition)
        except (SandboxViolation, ExpressionError) as e:
            tracker.fail(index, step.id, ErrorInfo(code="CONDITION_ERROR", message=str(e)))
            return False

    def _run_pass(
        self,
        step: Step,
        body: List[Step],
        index: int,
        item: Any,
        tracker: LoopTracker,
    ) -> Dict[str, Any]:
        """执行一轮循环体，返回 {内部步骤 ID: 输出}"""
        config = step.config
        scope = {config.item_variable: item, config.index_variable: index}
        outputs: Dict[str, Any] = {}
        iteration_steps: Dict[str, Dict[str, Any]] = {}

        for inner in body:
            if not self._wait_while_paused():
                tracker.fail(index, inner.id, ErrorInfo(code="CANCELLED", message="运行已结束"))
                return outputs

            if inner.condition:
                view = self._view(scope, iteration_steps)
                try:
                    satisfied = view.test(inner.condition)
                except (SandboxViolation, ExpressionError) as e:
                    tracker.fail(index, inner.id, ErrorInfo(code="CONDITION_ERROR", message=str(e)))
                    return outputs
                if not satisfied:
                    iteration_steps[inner.id] = {"status": StepStatus.SKIPPED.value, "output": None}
                    continue

            outcome = self._run_work(inner, scope, iteration_steps)
            if outcome.is_suspended:
                outcome = self._block_on_timer(outcome.suspension)
            if outcome.is_completed:
                try:
                    self.controller.apply_outputs(self.handle, inner, outcome)
                except (SandboxViolation, ExpressionError) as e:
                    outcome = StepOutcome.failed("OUTPUT_WRITE_FAILED", str(e), retryable=False)

            tracker.record(inner.id, index, outcome)
            if outcome.is_completed:
                outputs[inner.id] = outcome.output
                iteration_steps[inner.id] = {
                    "status": StepStatus.COMPLETED.value,
                    "output": outcome.output,
                }
                continue

            iteration_steps[inner.id] = {"status": StepStatus.FAILED.value, "output": None}
            if outcome.error is not None:
                self.controller.record_inner_error(self.handle, inner.id, outcome.error)
            if not inner.continue_on_failure or (outcome.error and outcome.error.code == "CANCELLED"):
                tracker.fail(index, inner.id, outcome.error)
                return outputs

        return outputs

    def _block_on_timer(self, suspension: Optional[Suspension]) -> StepOutcome:
        """循环体内的定时等待直接在 worker 中阻塞完成"""
        if suspension is None or suspension.kind != SuspensionKind.TIMER:
            return StepOutcome.failed(
                "SUSPENSION_UNSUPPORTED", "循环体内不支持该挂起类型", retryable=False
            )
        if suspension.deadline is not None:
            seconds = (suspension.deadline - utcnow()).total_seconds()
            if seconds > 0 and self.handle.cancel_event.wait(seconds):
                return StepOutcome.cancelled()
        if suspension.on_deadline == "complete":
            return StepOutcome.completed(suspension.output)
        return StepOutcome.failed("WAIT_TIMEOUT", "等待超时", retryable=False)

    def _wait_while_paused(self) -> bool:
        """暂停期间阻塞；返回 Run 是否仍在运行"""
        h = self.handle
        with h.changed:
            while h.run.status == RunStatus.PAUSED:
                h.changed.wait(self.settings.scheduler_poll_seconds)
            return h.run.status == RunStatus.RUNNING

    # ============ 挂起与收尾 ============

    def _resolve_deadlines(self) -> None:
        h = self.handle
        now = utcnow()
        for step_id, suspension in list(h.suspensions.items()):
            if suspension.deadline is not None and now >= suspension.deadline:
                self.controller.expire_suspension(h, step_id, suspension)

    def _wait_timeout(self) -> float:
        h = self.handle
        timeout = self.settings.scheduler_poll_seconds
        now = utcnow()
        for suspension in h.suspensions.values():
            if suspension.deadline is not None:
                remaining = (suspension.deadline - now).total_seconds()
                timeout = min(timeout, max(remaining, 0.005))
        return timeout

    def _all_terminal(self) -> bool:
        h = self.handle
        return not h.in_flight and all(
            state.is_terminal for state in h.run.step_states.values()
        )

    def _release_stalled(self) -> None:
        """没有任何在途工作却仍有未终结步骤时，把无法满足的步骤标记为跳过"""
        h = self.handle
        stalled = [
            sid for sid, state in h.run.step_states.items() if state.status == StepStatus.PENDING
        ]
        if not stalled:
            # 仅剩 running 的 parallel / conditional，交给下一轮 settle
            if not self._settle_control_steps():
                self.controller.fail_run(
                    h, None, ErrorInfo(code="SCHEDULER_STALLED", message="调度停滞，无可推进的步骤")
                )
            return
        logger.warning(f"run_id={h.run_id} 以下步骤的依赖无法满足，标记为跳过: {stalled}")
        for sid in stalled:
            self.controller.skip_step(h, sid, "依赖无法满足")
