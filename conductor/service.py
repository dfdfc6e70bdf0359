"""
管线服务门面。

向 API 层暴露管线定义的 CRUD、Run 的触发与控制、审批提交、等待回调、
统计查询和外部触发事件分发。内部组合 PipelineRegistry（定义）与
RunController（执行），两者共享同一个 PipelineStore。
"""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Union

import requests
from pydantic import ValidationError

from conductor.core.utils.logger import setup_logger
from conductor.integrations.agent_client import OpenAIAgentDispatcher
from conductor.pipeline.definitions import DefinitionInput, PipelineRegistry
from conductor.pipeline.errors import (
    PipelineDisabledError,
    PipelineValidationError,
    SandboxViolation,
)
from conductor.pipeline.node_base import EngineServices
from conductor.pipeline.paths import get_path, has_path
from conductor.pipeline.registry import ExecutorRegistry
from conductor.pipeline.runner import RunController
from conductor.pipeline.schemas import (
    ApprovalDecision,
    PendingApproval,
    PipelineDefinition,
    PipelineFilter,
    PipelineStats,
    Run,
    RunFilter,
    RunStatus,
    TriggeredBy,
    TriggerEvent,
    TriggerSource,
    TriggerType,
)
from conductor.settings import EngineSettings
from conductor.storage.base import Page, PipelineStore
from conductor.storage.persistence import get_store

logger = setup_logger("pipeline_service")

_TRIGGER_SOURCES = {
    TriggerType.MANUAL: TriggerSource.USER,
    TriggerType.SCHEDULE: TriggerSource.SCHEDULE,
    TriggerType.WEBHOOK: TriggerSource.WEBHOOK,
    TriggerType.DOMAIN_EVENT: TriggerSource.DOMAIN_EVENT,
}

# 统计时每次从存储读取的 Run 数
_STATS_PAGE_SIZE = 500


class PipelineService:
    """管线服务：API 层唯一需要依赖的入口"""

    def __init__(
        self,
        store: Optional[PipelineStore] = None,
        executors: Optional[ExecutorRegistry] = None,
        services: Optional[EngineServices] = None,
        settings: Optional[EngineSettings] = None,
    ):
        self.store = store or get_store()
        self.registry = PipelineRegistry(self.store)
        if services is None:
            services = EngineServices(
                agent_dispatcher=OpenAIAgentDispatcher(),
                http_session=requests.Session(),
            )
        self.controller = RunController(self.registry, self.store, executors, services, settings)

    # ============ 管线定义 ============

    def create_pipeline(
        self, data: DefinitionInput, owner_id: Optional[str] = None
    ) -> PipelineDefinition:
        return self.registry.create(data, owner_id=owner_id)

    def update_pipeline(self, pipeline_id: str, changes: Mapping[str, Any]) -> PipelineDefinition:
        return self.registry.update(pipeline_id, changes)

    def delete_pipeline(self, pipeline_id: str) -> bool:
        return self.registry.delete(pipeline_id)

    def get_pipeline(
        self, pipeline_id: str, version: Optional[int] = None
    ) -> Optional[PipelineDefinition]:
        return self.registry.get(pipeline_id, version)

    def list_pipelines(self, flt: Optional[PipelineFilter] = None) -> Page[PipelineDefinition]:
        return self.registry.list(flt)

    # ============ Run ============

    def run_pipeline(
        self,
        pipeline_id: str,
        params: Optional[Dict[str, Any]] = None,
        triggered_by: Optional[TriggeredBy] = None,
        version: Optional[int] = None,
    ) -> Run:
        """
        触发一次 Run，返回 running 状态的快照

        Raises:
            PipelineNotFoundError: 管线或指定版本不存在
            PipelineDisabledError: 管线已停用
            PipelineValidationError: 缺少必需参数或参数非法
        """
        definition = self.registry.require(pipeline_id, version)
        if not definition.enabled:
            raise PipelineDisabledError(f"管线 {pipeline_id} 已停用")
        return self.controller.start_run(definition, params, triggered_by)

    def pause_run(self, run_id: str) -> bool:
        return self.controller.pause_run(run_id)

    def resume_run(self, run_id: str) -> bool:
        return self.controller.resume_run(run_id)

    def cancel_run(self, run_id: str) -> bool:
        return self.controller.cancel_run(run_id)

    def get_run(self, run_id: str) -> Optional[Run]:
        return self.controller.get_run(run_id)

    def list_runs(self, pipeline_id: str, flt: Optional[RunFilter] = None) -> Page[Run]:
        return self.store.list_runs(pipeline_id, flt or RunFilter())

    def wait_for_run(self, run_id: str, timeout: Optional[float] = None) -> Optional[Run]:
        return self.controller.wait_for_run(run_id, timeout)

    # ============ 审批与等待 ============

    def submit_approval(
        self,
        run_id: str,
        step_id: str,
        decision: Union[ApprovalDecision, Mapping[str, Any]],
    ) -> bool:
        """
        Raises:
            PipelineValidationError: decision 结构不合法
            RunNotFoundError: Run 不存在
        """
        if not isinstance(decision, ApprovalDecision):
            try:
                decision = ApprovalDecision.model_validate(dict(decision))
            except ValidationError as e:
                raise PipelineValidationError(
                    "审批意见不合法", [err["msg"] for err in e.errors()]
                ) from e
        return self.controller.submit_approval(run_id, step_id, decision)

    def list_pending_approvals(self, run_id: Optional[str] = None) -> List[PendingApproval]:
        return self.controller.list_pending_approvals(run_id)

    def resume_wait(self, token: str, payload: Any = None) -> bool:
        return self.controller.resume_wait(token, payload)

    # ============ 统计 ============

    def pipeline_stats(self, pipeline_id: str) -> PipelineStats:
        """根据 Run 历史计算管线统计"""
        self.registry.require(pipeline_id)
        stats = PipelineStats(pipeline_id=pipeline_id)
        durations: List[int] = []
        cursor: Optional[str] = None
        while True:
            page = self.store.list_runs(
                pipeline_id, RunFilter(limit=_STATS_PAGE_SIZE, cursor=cursor)
            )
            for run in page.items:
                stats.total_runs += 1
                if run.status == RunStatus.COMPLETED:
                    stats.successful_runs += 1
                elif run.status == RunStatus.FAILED:
                    stats.failed_runs += 1
                elif run.status == RunStatus.CANCELLED:
                    stats.cancelled_runs += 1
                if run.is_terminal and run.duration_ms is not None:
                    durations.append(run.duration_ms)
                if stats.last_run_at is None or run.created_at > stats.last_run_at:
                    stats.last_run_at = run.created_at
            if not page.has_more:
                break
            cursor = page.next_cursor

        if durations:
            stats.average_duration_ms = sum(durations) / len(durations)
        return stats

    # ============ 触发事件 ============

    def handle_trigger(self, event: TriggerEvent) -> List[Run]:
        """
        把外部触发事件分发给所有匹配的已启用管线

        - domain_event 按事件名匹配 trigger.config.events
        - webhook 按 payloadMapping {参数名: payload 路径} 绑定参数，未配置时整个 payload 作为参数
        - event.source_id 非空时只触发该 ID 的管线

        Returns:
            已启动的 Run 列表
        """
        started: List[Run] = []
        for definition in self._enabled_pipelines():
            trigger = definition.trigger
            if not trigger.enabled or trigger.type != event.type:
                continue
            if event.source_id and event.source_id != definition.id:
                continue
            if trigger.type == TriggerType.DOMAIN_EVENT and event.name not in trigger.config.get(
                "events", []
            ):
                continue

            try:
                params = self._bind_params(definition, event)
                run = self.controller.start_run(
                    definition,
                    params,
                    TriggeredBy(type=_TRIGGER_SOURCES[event.type], id=event.source_id or event.name),
                )
            except (PipelineValidationError, SandboxViolation) as e:
                logger.warning(f"事件 {event.type.value}:{event.name} 无法触发管线 {definition.id}: {e}")
                continue
            started.append(run)

        logger.info(f"事件 {event.type.value}:{event.name} 触发了 {len(started)} 个 Run")
        return started

    def shutdown(self) -> None:
        self.controller.shutdown()

    def _enabled_pipelines(self) -> List[PipelineDefinition]:
        definitions: List[PipelineDefinition] = []
        cursor: Optional[str] = None
        while True:
            page = self.registry.list(PipelineFilter(enabled=True, limit=500, cursor=cursor))
            definitions.extend(page.items)
            if not page.has_more:
                return definitions
            cursor = page.next_cursor

    @staticmethod
    def _bind_params(definition: PipelineDefinition, event: TriggerEvent) -> Dict[str, Any]:
        mapping = definition.trigger.config.get("payloadMapping")
        if event.type != TriggerType.WEBHOOK or not mapping:
            return dict(event.payload)
        return {
            param: get_path(event.payload, source)
            for param, source in mapping.items()
            if has_path(event.payload, source)
        }


# ---------- 模块级单例 ----------

_service: Optional[PipelineService] = None


def get_pipeline_service() -> PipelineService:
    """获取全局 PipelineService，存储后端由 PIPELINE_STORE_BACKEND 决定"""
    global _service
    if _service is None:
        _service = PipelineService()
    return _service
