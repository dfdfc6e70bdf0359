"""管线定义的静态校验

在定义创建/更新时执行，保证执行开始前发现：
- 依赖/归属图的悬空引用与环
- 条件、转换表达式越过沙箱白名单
- 数据路径、模板占位符中的非法路径
- 循环体内不允许出现的步骤类型
"""

from __future__ import annotations

from typing import Any, Callable, FrozenSet, Iterable, List

from conductor.pipeline.condition import (
    CONDITION_IDENTIFIERS,
    MAP_IDENTIFIERS,
    REDUCE_IDENTIFIERS,
    validate_expression,
)
from conductor.pipeline.context import template_paths
from conductor.pipeline.errors import PipelineValidationError, SandboxViolation
from conductor.pipeline.graph import PipelineGraph
from conductor.pipeline.paths import check_tree_keys, is_safe_key, parse_path
from conductor.pipeline.schemas import (
    CONTROL_FLOW_TYPES,
    PipelineDefinition,
    Step,
    StepType,
    WaitMode,
)

# 循环体内不能出现的步骤类型（需要挂起或再展开）
_FORBIDDEN_IN_LOOP = CONTROL_FLOW_TYPES | {StepType.APPROVAL}


def query_to_path(query: str) -> str:
    """把 $.a.b 形式的查询转为相对路径；$ 本身返回空串"""
    query = query.strip()
    if query.startswith("$."):
        return query[2:]
    if query == "$":
        return ""
    return query


def source_to_path(source: str) -> str:
    """loop.collection 等数据源写法：允许 ${context.x}、context.x 与 x"""
    source = source.strip()
    paths = template_paths(source)
    if len(paths) == 1 and source.startswith("${") and source.endswith("}"):
        return paths[0]
    if source.startswith("context."):
        return source[len("context.") :]
    return source


def loop_variables(graph: PipelineGraph, step_id: str) -> FrozenSet[str]:
    """包围该步骤的所有循环提供的变量名"""
    names = set()
    for loop_id in graph.enclosing_loops(step_id):
        config = graph.steps[loop_id].config
        names.update({config.item_variable, config.index_variable})
    return frozenset(names)


class _Collector:
    def __init__(self) -> None:
        self.errors: List[str] = []

    def check(self, where: str, fn: Callable[..., Any], *args: Any) -> None:
        try:
            fn(*args)
        except SandboxViolation as e:
            self.errors.append(f"{where}: {e}")

    def add(self, message: str) -> None:
        self.errors.append(message)

    def path(self, where: str, path: str) -> None:
        self.check(where, parse_path, path)

    def templates(self, where: str, value: Any) -> None:
        for text in _strings(value):
            for path in template_paths(text):
                self.path(where, path)


def _strings(value: Any) -> Iterable[str]:
    if isinstance(value, str):
        yield value
    elif isinstance(value, dict):
        for v in value.values():
            yield from _strings(v)
    elif isinstance(value, list):
        for v in value:
            yield from _strings(v)


def validate_definition(definition: PipelineDefinition) -> PipelineGraph:
    """
    静态校验管线定义

    Args:
        definition: 已通过模型校验的管线定义

    Returns:
        构建好的 PipelineGraph

    Raises:
        PipelineValidationError: 任一检查失败，errors 中列出全部问题
    """
    graph = PipelineGraph(definition)
    collector = _Collector()

    collector.check("contextDefaults", check_tree_keys, definition.context_defaults)
    for param, source in definition.trigger.config.get("payloadMapping", {}).items():
        collector.path("trigger.payloadMapping", str(param))
        collector.path(f"trigger.payloadMapping.{param}", str(source))

    for step in definition.steps:
        _validate_step(definition, graph, step, collector)

    if collector.errors:
        raise PipelineValidationError(
            f"管线定义校验失败: {collector.errors[0]}", collector.errors
        )
    return graph


def _validate_step(
    definition: PipelineDefinition,
    graph: PipelineGraph,
    step: Step,
    c: _Collector,
) -> None:
    where = f"步骤 {step.id}"
    config = step.config
    allowed = CONDITION_IDENTIFIERS | loop_variables(graph, step.id)

    if step.condition:
        c.check(f"{where}.condition", validate_expression, step.condition, allowed)
    if step.output_variable:
        c.path(f"{where}.outputVariable", step.output_variable)

    enclosing = graph.enclosing_loops(step.id)
    if enclosing:
        if step.type in _FORBIDDEN_IN_LOOP:
            c.add(f"{where}: 循环体内不支持 {step.type.value} 步骤")
        if step.type == StepType.WAIT and config.mode == WaitMode.WEBHOOK:
            c.add(f"{where}: 循环体内不支持 webhook 模式的 wait 步骤")
        body = set(graph.children(enclosing[0]))
        for dep in step.depends_on:
            if dep not in body:
                c.add(f"{where}: 循环体内的步骤只能依赖同一循环体内的步骤（{dep}）")

    if step.type == StepType.AGENT_TASK:
        c.templates(f"{where}.prompt", [config.prompt, config.system_prompt or ""])

    elif step.type == StepType.CONDITIONAL:
        c.check(f"{where}.config.condition", validate_expression, config.condition, allowed)

    elif step.type == StepType.SCRIPT:
        if not config.is_path:
            c.templates(f"{where}.script", config.script)
        c.templates(f"{where}.env", config.env)
        for key in config.env:
            if not is_safe_key(key):
                c.add(f"{where}.env: 非法的环境变量名 {key!r}")

    elif step.type == StepType.LOOP:
        for name in (config.item_variable, config.index_variable):
            if not is_safe_key(name):
                c.add(f"{where}: 非法的循环变量名 {name!r}")
        if config.collection:
            c.path(f"{where}.collection", source_to_path(config.collection))
        if config.condition:
            loop_allowed = allowed | {config.index_variable}
            c.check(f"{where}.config.condition", validate_expression, config.condition, loop_allowed)

    elif step.type == StepType.WAIT:
        c.templates(f"{where}.wait", [config.until or "", config.webhook_token or ""])

    elif step.type == StepType.TRANSFORM:
        _validate_transform(step, c)

    elif step.type == StepType.WEBHOOK:
        c.templates(f"{where}.url", config.url)
        c.templates(f"{where}.headers", config.headers)
        c.templates(f"{where}.body", config.body)
        if config.auth is not None:
            c.templates(
                f"{where}.auth",
                [config.auth.username or "", config.auth.password or "",
                 config.auth.token or "", config.auth.api_key or ""],
            )
        for name, query in config.extract_fields.items():
            if not is_safe_key(name):
                c.add(f"{where}.extractFields: 非法的字段名 {name!r}")
            path = query_to_path(query)
            if path:
                c.path(f"{where}.extractFields.{name}", path)
        for code in config.validate_status or []:
            if not 100 <= code <= 599:
                c.add(f"{where}.validateStatus: 非法的 HTTP 状态码 {code}")

    elif step.type == StepType.SUB_PIPELINE:
        if definition.id and config.pipeline_id == definition.id:
            c.add(f"{where}: 子管线不能引用自身（{config.pipeline_id}）")
        c.templates(f"{where}.inputs", config.inputs)
        c.check(f"{where}.inputs", check_tree_keys, config.inputs, "inputs")


def _validate_transform(step: Step, c: _Collector) -> None:
    where = f"步骤 {step.id}"
    for i, operation in enumerate(step.config.operations):
        loc = f"{where}.operations[{i}]"
        if operation.op in ("set", "delete"):
            c.path(f"{loc}.path", operation.path)
            continue
        c.path(f"{loc}.source", operation.source)
        c.path(f"{loc}.target", operation.target)
        if operation.op == "map":
            c.check(f"{loc}.expression", validate_expression, operation.expression, MAP_IDENTIFIERS)
        elif operation.op == "filter":
            c.check(f"{loc}.condition", validate_expression, operation.condition, MAP_IDENTIFIERS)
        elif operation.op == "reduce":
            c.check(f"{loc}.expression", validate_expression, operation.expression, REDUCE_IDENTIFIERS)
        elif operation.op == "extract":
            query = query_to_path(operation.query)
            if query:
                c.path(f"{loc}.query", query)
