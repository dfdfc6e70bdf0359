"""
管线数据模型：定义（PipelineDefinition/Step/各类步骤配置）与运行记录（Run/StepState）。

定义类模型一经创建即冻结（frozen），更新定义会产生新版本；
运行记录类模型只由 RunController 在单写者锁内修改。
字段对外使用 camelCase 别名，同时接受 snake_case。
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DefinitionModel(BaseModel):
    """定义类模型基类：冻结、拒绝未知字段、camelCase 别名"""

    model_config = ConfigDict(
        extra="forbid",
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
    )


class RecordModel(BaseModel):
    """运行记录类模型基类：可变，camelCase 别名"""

    model_config = ConfigDict(
        extra="forbid",
        populate_by_name=True,
        alias_generator=to_camel,
        validate_assignment=False,
    )


# ============ 枚举 ============


class StepType(str, Enum):
    AGENT_TASK = "agent_task"
    CONDITIONAL = "conditional"
    PARALLEL = "parallel"
    APPROVAL = "approval"
    SCRIPT = "script"
    LOOP = "loop"
    WAIT = "wait"
    TRANSFORM = "transform"
    WEBHOOK = "webhook"
    SUB_PIPELINE = "sub_pipeline"


# 由调度器展开、自身不做实际工作的步骤类型
CONTROL_FLOW_TYPES = frozenset({StepType.CONDITIONAL, StepType.PARALLEL, StepType.LOOP})


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    WAITING = "waiting"  # 挂起：等待审批/定时/外部回调
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


TERMINAL_STEP_STATUSES = frozenset(
    {StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.SKIPPED, StepStatus.CANCELLED}
)


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_RUN_STATUSES = frozenset(
    {RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED}
)


class TriggerType(str, Enum):
    MANUAL = "manual"
    SCHEDULE = "schedule"
    WEBHOOK = "webhook"
    DOMAIN_EVENT = "domain_event"


class TriggerSource(str, Enum):
    USER = "user"
    SCHEDULE = "schedule"
    WEBHOOK = "webhook"
    DOMAIN_EVENT = "domain_event"
    API = "api"
    PIPELINE = "pipeline"  # 由父管线的 sub_pipeline 步骤触发


class OnTimeoutAction(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    FAIL = "fail"


class ApprovalVerdict(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"


class LoopMode(str, Enum):
    FOR_EACH = "for_each"
    WHILE = "while"
    UNTIL = "until"
    TIMES = "times"


class WaitMode(str, Enum):
    DURATION = "duration"
    UNTIL = "until"
    WEBHOOK = "webhook"


class HttpMethod(str, Enum):
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"


class WebhookAuthType(str, Enum):
    NONE = "none"
    BASIC = "basic"
    BEARER = "bearer"
    API_KEY = "api_key"


# ============ 重试策略 ============


class RetryPolicy(DefinitionModel):
    """指数退避重试策略，时间单位为毫秒"""

    max_retries: int = Field(default=3, ge=0, le=10)
    initial_delay: float = Field(default=1000, gt=0)
    max_delay: float = Field(default=30000, gt=0)
    multiplier: float = Field(default=2.0, gt=0)
    # 为空表示所有错误都可重试；否则按错误码精确匹配或消息包含匹配
    retryable_errors: Optional[List[str]] = None

    def delay_ms(self, attempt: int) -> float:
        """第 attempt 次失败（从 1 开始）后的等待时长"""
        return min(self.initial_delay * self.multiplier ** (attempt - 1), self.max_delay)

    def matches(self, code: str, message: str = "") -> bool:
        if self.retryable_errors is None:
            return True
        return any(
            pattern == code or (pattern and pattern in message)
            for pattern in self.retryable_errors
        )


DEFAULT_RETRY_POLICY = RetryPolicy()


# ============ 步骤配置 ============


class AgentTaskConfig(DefinitionModel):
    prompt: str = Field(..., min_length=1)
    working_directory: Optional[str] = None
    system_prompt: Optional[str] = None
    timeout: Optional[int] = Field(default=None, gt=0)
    max_tokens: Optional[int] = Field(default=None, gt=0)
    wait_for_completion: bool = True


class ConditionalConfig(DefinitionModel):
    condition: str = Field(..., min_length=1, max_length=512)
    then_steps: List[str] = Field(..., min_length=1)
    else_steps: List[str] = Field(default_factory=list)


class ParallelConfig(DefinitionModel):
    steps: List[str] = Field(..., min_length=1)
    fail_fast: bool = False
    max_concurrency: Optional[int] = Field(default=None, ge=1)


class ApprovalConfig(DefinitionModel):
    approvers: List[str] = Field(..., min_length=1)
    message: str = Field(..., min_length=1)
    timeout: Optional[int] = Field(default=None, gt=0)
    on_timeout: OnTimeoutAction = OnTimeoutAction.FAIL
    min_approvals: int = Field(default=1, ge=1)

    @model_validator(mode="after")
    def _check_quorum(self) -> "ApprovalConfig":
        if self.min_approvals > len(set(self.approvers)):
            raise ValueError("minApprovals 不能超过去重后的审批人数量")
        return self


class ScriptConfig(DefinitionModel):
    script: str = Field(..., min_length=1)
    is_path: bool = False
    working_directory: Optional[str] = None
    env: Dict[str, str] = Field(default_factory=dict)
    timeout: Optional[int] = Field(default=None, gt=0)
    shell: Optional[str] = None


class LoopConfig(DefinitionModel):
    mode: LoopMode
    collection: Optional[str] = None
    condition: Optional[str] = Field(default=None, max_length=512)
    count: Optional[int] = Field(default=None, ge=0)
    max_iterations: int = Field(default=100, ge=1, le=10_000)
    parallel: bool = False
    parallel_limit: Optional[int] = Field(default=None, ge=1)
    item_variable: str = "item"
    index_variable: str = "index"
    steps: List[str] = Field(..., min_length=1)
    output_variable: Optional[str] = None

    @model_validator(mode="after")
    def _check_mode(self) -> "LoopConfig":
        if self.mode == LoopMode.FOR_EACH and not self.collection:
            raise ValueError("for_each 循环必须提供 collection")
        if self.mode in (LoopMode.WHILE, LoopMode.UNTIL) and not self.condition:
            raise ValueError(f"{self.mode.value} 循环必须提供 condition")
        if self.mode == LoopMode.TIMES and self.count is None:
            raise ValueError("times 循环必须提供 count")
        if self.parallel and self.mode in (LoopMode.WHILE, LoopMode.UNTIL):
            raise ValueError("while/until 循环不支持并行")
        if self.item_variable == self.index_variable:
            raise ValueError("itemVariable 与 indexVariable 不能相同")
        return self


class WaitConfig(DefinitionModel):
    mode: WaitMode
    duration: Optional[int] = Field(default=None, gt=0)
    until: Optional[str] = None
    webhook_token: Optional[str] = None
    timeout: int = Field(..., gt=0)

    @model_validator(mode="after")
    def _check_mode(self) -> "WaitConfig":
        if self.mode == WaitMode.DURATION and self.duration is None:
            raise ValueError("duration 模式必须提供 duration")
        if self.mode == WaitMode.UNTIL and not self.until:
            raise ValueError("until 模式必须提供 until")
        return self


class SetOperation(DefinitionModel):
    op: Literal["set"]
    path: str
    value: Any = None


class DeleteOperation(DefinitionModel):
    op: Literal["delete"]
    path: str


class MergeOperation(DefinitionModel):
    op: Literal["merge"]
    source: str
    target: str


class MapOperation(DefinitionModel):
    op: Literal["map"]
    source: str
    expression: str = Field(..., min_length=1, max_length=512)
    target: str


class FilterOperation(DefinitionModel):
    op: Literal["filter"]
    source: str
    condition: str = Field(..., min_length=1, max_length=512)
    target: str


class ReduceOperation(DefinitionModel):
    op: Literal["reduce"]
    source: str
    expression: str = Field(..., min_length=1, max_length=512)
    initial: Any = None
    target: str


class ExtractOperation(DefinitionModel):
    op: Literal["extract"]
    source: str
    query: str
    target: str


TransformOperation = Annotated[
    Union[
        SetOperation,
        DeleteOperation,
        MergeOperation,
        MapOperation,
        FilterOperation,
        ReduceOperation,
        ExtractOperation,
    ],
    Field(discriminator="op"),
]


class TransformConfig(DefinitionModel):
    operations: List[TransformOperation] = Field(..., min_length=1)
    output_variable: Optional[str] = None


class WebhookAuth(DefinitionModel):
    type: WebhookAuthType = WebhookAuthType.NONE
    username: Optional[str] = None
    password: Optional[str] = None
    token: Optional[str] = None
    api_key: Optional[str] = None
    header_name: str = "X-API-Key"

    @model_validator(mode="after")
    def _check_credentials(self) -> "WebhookAuth":
        if self.type == WebhookAuthType.BASIC and not self.username:
            raise ValueError("basic 认证必须提供 username")
        if self.type == WebhookAuthType.BEARER and not self.token:
            raise ValueError("bearer 认证必须提供 token")
        if self.type == WebhookAuthType.API_KEY and not self.api_key:
            raise ValueError("api_key 认证必须提供 apiKey")
        return self


class WebhookConfig(DefinitionModel):
    url: str = Field(..., min_length=1)
    method: HttpMethod = HttpMethod.POST
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Any = None
    auth: Optional[WebhookAuth] = None
    validate_status: Optional[List[int]] = None
    timeout: Optional[int] = Field(default=None, gt=0)
    output_variable: Optional[str] = None
    extract_fields: Dict[str, str] = Field(default_factory=dict)


class SubPipelineConfig(DefinitionModel):
    pipeline_id: str = Field(..., min_length=1)
    version: Optional[int] = Field(default=None, ge=1)
    inputs: Dict[str, Any] = Field(default_factory=dict)
    wait_for_completion: bool = True
    timeout: Optional[int] = Field(default=None, gt=0)
    output_variable: Optional[str] = None


STEP_CONFIG_MODELS = {
    StepType.AGENT_TASK: AgentTaskConfig,
    StepType.CONDITIONAL: ConditionalConfig,
    StepType.PARALLEL: ParallelConfig,
    StepType.APPROVAL: ApprovalConfig,
    StepType.SCRIPT: ScriptConfig,
    StepType.LOOP: LoopConfig,
    StepType.WAIT: WaitConfig,
    StepType.TRANSFORM: TransformConfig,
    StepType.WEBHOOK: WebhookConfig,
    StepType.SUB_PIPELINE: SubPipelineConfig,
}

StepConfig = Union[
    AgentTaskConfig,
    ConditionalConfig,
    ParallelConfig,
    ApprovalConfig,
    ScriptConfig,
    LoopConfig,
    WaitConfig,
    TransformConfig,
    WebhookConfig,
    SubPipelineConfig,
]

STEP_ID_PATTERN = r"^[A-Za-z_][A-Za-z0-9_\-]{0,99}$"


# ============ 步骤与管线定义 ============


class Step(DefinitionModel):
    id: str = Field(..., pattern=STEP_ID_PATTERN)
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=1000)
    type: StepType
    config: StepConfig
    depends_on: List[str] = Field(default_factory=list)
    retry_policy: Optional[RetryPolicy] = None
    condition: Optional[str] = Field(default=None, max_length=512)
    continue_on_failure: bool = False
    timeout: Optional[int] = Field(default=None, gt=0)

    @model_validator(mode="before")
    @classmethod
    def _coerce_config(cls, data: Any) -> Any:
        """按 type 把 config 解析为对应的配置模型"""
        if not isinstance(data, dict):
            return data
        raw_type = data.get("type")
        try:
            step_type = StepType(raw_type)
        except ValueError:
            return data
        config = data.get("config")
        if config is None:
            config = {}
        if isinstance(config, dict):
            data = {**data, "config": STEP_CONFIG_MODELS[step_type].model_validate(config)}
        return data

    @model_validator(mode="after")
    def _check_config_type(self) -> "Step":
        expected = STEP_CONFIG_MODELS[self.type]
        if not isinstance(self.config, expected):
            raise ValueError(f"步骤 {self.id} 的 config 必须是 {expected.__name__}")
        if len(set(self.depends_on)) != len(self.depends_on):
            raise ValueError(f"步骤 {self.id} 的 dependsOn 存在重复项")
        if self.id in self.depends_on:
            raise ValueError(f"步骤 {self.id} 不能依赖自身")
        return self

    @property
    def output_variable(self) -> Optional[str]:
        return getattr(self.config, "output_variable", None)


class PipelineTrigger(DefinitionModel):
    type: TriggerType = TriggerType.MANUAL
    config: Dict[str, Any] = Field(default_factory=dict)
    enabled: bool = True

    @model_validator(mode="after")
    def _check_config(self) -> "PipelineTrigger":
        if self.type == TriggerType.SCHEDULE and not self.config.get("cron"):
            raise ValueError("schedule 触发器必须提供 cron")
        if self.type == TriggerType.DOMAIN_EVENT:
            events = self.config.get("events")
            if not isinstance(events, list) or not events:
                raise ValueError("domain_event 触发器必须提供非空 events 列表")
        if self.type == TriggerType.WEBHOOK:
            mapping = self.config.get("payloadMapping", {})
            if not isinstance(mapping, dict):
                raise ValueError("webhook 触发器的 payloadMapping 必须是对象")
        required = self.config.get("requiredParams", [])
        if not isinstance(required, list):
            raise ValueError("requiredParams 必须是列表")
        return self

    @property
    def required_params(self) -> List[str]:
        return list(self.config.get("requiredParams", []))


class PipelineDefinition(DefinitionModel):
    id: str = ""
    version: int = Field(default=1, ge=1)
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=2000)
    enabled: bool = True
    trigger: PipelineTrigger = Field(default_factory=PipelineTrigger)
    steps: List[Step] = Field(..., min_length=1)
    context_defaults: Dict[str, Any] = Field(default_factory=dict)
    retry_policy: Optional[RetryPolicy] = None
    tags: List[Annotated[str, Field(min_length=1, max_length=50)]] = Field(
        default_factory=list
    )
    owner_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("steps")
    @classmethod
    def _unique_step_ids(cls, steps: List[Step]) -> List[Step]:
        seen = set()
        duplicates = []
        for step in steps:
            if step.id in seen:
                duplicates.append(step.id)
            seen.add(step.id)
        if duplicates:
            raise ValueError(f"步骤 ID 重复: {', '.join(sorted(set(duplicates)))}")
        return steps

    def get_step(self, step_id: str) -> Optional[Step]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None


# ============ 运行记录 ============


class ErrorInfo(RecordModel):
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class AttemptRecord(RecordModel):
    attempt: int
    started_at: datetime
    finished_at: datetime
    error: Optional[ErrorInfo] = None


class ApprovalDecision(RecordModel):
    """一次审批提交"""

    user_id: str = Field(..., min_length=1)
    decision: ApprovalVerdict
    comment: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class StepState(RecordModel):
    step_id: str
    status: StepStatus = StepStatus.PENDING
    attempts: int = 0
    last_error: Optional[ErrorInfo] = None
    history: List[AttemptRecord] = Field(default_factory=list)
    output: Any = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    skip_reason: Optional[str] = None
    approvals: List[ApprovalDecision] = Field(default_factory=list)
    wait_token: Optional[str] = None
    iterations: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STEP_STATUSES


class TriggeredBy(RecordModel):
    type: TriggerSource = TriggerSource.API
    id: Optional[str] = None


class RunError(RecordModel):
    code: str
    message: str
    step_id: Optional[str] = None


class Run(RecordModel):
    id: str
    pipeline_id: str
    pipeline_version: int
    status: RunStatus = RunStatus.PENDING
    triggered_by: TriggeredBy = Field(default_factory=TriggeredBy)
    trigger_params: Dict[str, Any] = Field(default_factory=dict)
    context: Dict[str, Any] = Field(default_factory=dict)
    step_states: Dict[str, StepState] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    error: Optional[RunError] = None
    parent_run_id: Optional[str] = None
    parent_step_id: Optional[str] = None
    child_run_ids: List[str] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES


class PendingApproval(RecordModel):
    run_id: str
    step_id: str
    approvers: List[str]
    min_approvals: int
    message: str
    on_timeout: OnTimeoutAction
    decisions: List[ApprovalDecision] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    deadline: Optional[datetime] = None

    @property
    def approved_count(self) -> int:
        return len(
            {d.user_id for d in self.decisions if d.decision == ApprovalVerdict.APPROVED}
        )

    def has_decided(self, user_id: str) -> bool:
        return any(d.user_id == user_id for d in self.decisions)


# ============ 查询与统计 ============


class PipelineFilter(RecordModel):
    tags: Optional[List[str]] = None
    enabled: Optional[bool] = None
    owner_id: Optional[str] = None
    search: Optional[str] = None
    limit: int = Field(default=50, ge=1, le=500)
    cursor: Optional[str] = None


class RunFilter(RecordModel):
    status: Optional[List[RunStatus]] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    limit: int = Field(default=50, ge=1, le=500)
    cursor: Optional[str] = None


class PipelineStats(RecordModel):
    pipeline_id: str
    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    cancelled_runs: int = 0
    average_duration_ms: Optional[float] = None
    last_run_at: Optional[datetime] = None


class TriggerEvent(RecordModel):
    """外部事件源投递给引擎的触发事件"""

    type: TriggerType
    name: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    source_id: Optional[str] = None
