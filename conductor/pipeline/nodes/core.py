"""工作型步骤执行器：agent_task / script / webhook / transform"""

from __future__ import annotations

import copy
import os
import re
from contextlib import ExitStack
from typing import Any, Dict, List

import requests

from conductor.core.utils.logger import setup_logger
from conductor.core.utils.subprocess_helper import SubprocessScriptRunner
from conductor.pipeline.condition import (
    MAP_IDENTIFIERS,
    REDUCE_IDENTIFIERS,
    ExpressionEvaluator,
)
from conductor.pipeline.context import ContextWrite, scalar_items
from conductor.pipeline.errors import ExecutionError
from conductor.pipeline.limits import get_script_limiter
from conductor.pipeline.node_base import StepContext, StepExecutor, StepOutcome
from conductor.pipeline.paths import delete_path, get_path, set_path
from conductor.pipeline.schemas import HttpMethod, StepType, WebhookAuthType
from conductor.pipeline.validation import query_to_path

logger = setup_logger("pipeline_nodes")

_ENV_KEY_RE = re.compile(r"[^A-Z0-9_]")


def _as_text(value: Any) -> str:
    return "" if value is None else str(value)


# ============ Agent 任务 ============


class AgentTaskExecutor(StepExecutor):
    """把渲染后的 prompt 交给 Agent 调度后端"""

    step_type = StepType.AGENT_TASK

    def execute(self, ctx: StepContext) -> StepOutcome:
        config = ctx.config
        dispatcher = ctx.services.agent_dispatcher
        if dispatcher is None:
            raise ExecutionError(
                "AGENT_BACKEND_UNAVAILABLE", "未配置 Agent 调度后端", retryable=False
            )

        prompt = _as_text(ctx.render(config.prompt))
        dispatch_config = {
            "runId": ctx.run_id,
            "stepId": ctx.step.id,
            "workingDirectory": ctx.render(config.working_directory),
            "systemPrompt": ctx.render(config.system_prompt),
            "timeout": config.timeout or ctx.step.timeout,
            "maxTokens": config.max_tokens,
            "waitForCompletion": config.wait_for_completion,
        }

        logger.info(f"{ctx.log_prefix()} 派发 Agent 任务（prompt {len(prompt)} 字符）")
        outcome = dispatcher.dispatch(prompt, dispatch_config)
        if not outcome.success:
            raise ExecutionError(
                "AGENT_TASK_FAILED",
                outcome.error or "Agent 任务失败",
                retryable=outcome.retryable,
            )
        return StepOutcome.completed(outcome.output)


# ============ 脚本 ============


class ScriptExecutor(StepExecutor):
    """在子进程中运行 shell 脚本，受超时、取消与全局并发限制约束"""

    step_type = StepType.SCRIPT

    def execute(self, ctx: StepContext) -> StepOutcome:
        config = ctx.config
        settings = ctx.settings
        shell = config.shell or settings.script_shell

        if config.is_path:
            command = [shell, config.script]
        else:
            command = [shell, "-c", _as_text(ctx.render(config.script))]

        timeout_ms = ctx.timeout_ms(config.timeout, settings.script_timeout_ms)
        cwd = ctx.render(config.working_directory) or settings.script_working_directory
        runner = ctx.services.script_runner or SubprocessScriptRunner()

        with ExitStack() as stack:
            try:
                stack.enter_context(
                    get_script_limiter().acquire(cancel_event=ctx.cancel_event)
                )
            except RuntimeError as e:
                if ctx.cancelled:
                    return StepOutcome.cancelled()
                raise ExecutionError("SCRIPT_CONCURRENCY_LIMIT", str(e)) from e

            logger.info(f"{ctx.log_prefix()} 执行脚本 shell={shell} cwd={cwd}")
            try:
                result = runner.run(
                    command, self._build_env(ctx), cwd, timeout_ms / 1000, ctx.cancel_event
                )
            except OSError as e:
                raise ExecutionError(
                    "SCRIPT_SPAWN_FAILED", f"无法启动脚本: {e}", retryable=False
                ) from e

        output = {
            "exitCode": result.exit_code,
            "stdout": result.stdout,
            "stderr": result.stderr,
            "durationMs": result.duration_ms,
        }
        if result.cancelled:
            return StepOutcome.cancelled()
        if result.timed_out:
            raise ExecutionError(
                "SCRIPT_TIMEOUT", f"脚本执行超时（{timeout_ms}ms）", details=output
            )
        if result.exit_code != 0:
            tail = result.stderr.strip()[-500:]
            raise ExecutionError(
                "SCRIPT_FAILED",
                f"脚本退出码 {result.exit_code}" + (f": {tail}" if tail else ""),
                details=output,
            )
        return StepOutcome.completed(output)

    @staticmethod
    def _build_env(ctx: StepContext) -> Dict[str, str]:
        """只暴露 PATH/LANG，加上 PIPELINE_ 前缀的上下文标量与步骤自带 env"""
        env = {
            "PATH": os.environ.get("PATH", os.defpath),
            "LANG": os.environ.get("LANG", "C.UTF-8"),
            "PIPELINE_RUN_ID": ctx.run_id,
            "PIPELINE_STEP_ID": ctx.step.id,
        }
        for key, value in scalar_items(ctx.view.root):
            env[f"PIPELINE_{_ENV_KEY_RE.sub('_', key.upper())}"] = value
        for key, value in ctx.config.env.items():
            env[key] = _as_text(ctx.render(value))
        return env


# ============ Webhook ============


class WebhookExecutor(StepExecutor):
    """发起外部 HTTP 调用，校验状态码并提取字段"""

    step_type = StepType.WEBHOOK

    def execute(self, ctx: StepContext) -> StepOutcome:
        config = ctx.config
        url = _as_text(ctx.render(config.url))
        headers = {k: _as_text(ctx.render(v)) for k, v in config.headers.items()}
        kwargs: Dict[str, Any] = {
            "headers": headers,
            "timeout": ctx.timeout_ms(config.timeout, ctx.settings.webhook_timeout_ms) / 1000,
        }

        auth = config.auth
        if auth is not None:
            if auth.type == WebhookAuthType.BASIC:
                kwargs["auth"] = (
                    _as_text(ctx.render(auth.username)),
                    _as_text(ctx.render(auth.password)),
                )
            elif auth.type == WebhookAuthType.BEARER:
                headers["Authorization"] = f"Bearer {_as_text(ctx.render(auth.token))}"
            elif auth.type == WebhookAuthType.API_KEY:
                headers[auth.header_name] = _as_text(ctx.render(auth.api_key))

        body = ctx.render(config.body)
        if body is not None and config.method != HttpMethod.GET:
            if isinstance(body, (dict, list)):
                kwargs["json"] = body
            else:
                kwargs["data"] = _as_text(body)

        logger.info(f"{ctx.log_prefix()} 调用 webhook {config.method.value} {url}")
        try:
            response = self._send(ctx, config.method.value, url, kwargs)
        except requests.Timeout as e:
            raise ExecutionError("WEBHOOK_TIMEOUT", f"Webhook 请求超时: {url}") from e
        except requests.RequestException as e:
            raise ExecutionError("WEBHOOK_REQUEST_FAILED", f"Webhook 请求失败: {e}") from e

        payload = self._parse_body(response)
        status = response.status_code
        accepted = config.validate_status
        if not (status in accepted if accepted else 200 <= status < 300):
            raise ExecutionError(
                "WEBHOOK_BAD_STATUS",
                f"Webhook 返回状态码 {status}",
                details={"status": status},
            )

        if config.extract_fields:
            fields = {}
            for name, query in config.extract_fields.items():
                path = query_to_path(query)
                fields[name] = get_path(payload, path) if path else payload
            return StepOutcome.completed(fields)

        return StepOutcome.completed(
            {"status": status, "headers": dict(response.headers), "body": payload}
        )

    @staticmethod
    def _send(ctx: StepContext, method: str, url: str, kwargs: Dict[str, Any]) -> requests.Response:
        session = ctx.services.http_session
        if session is not None:
            return session.request(method, url, **kwargs)
        with requests.Session() as own_session:
            return own_session.request(method, url, **kwargs)

    @staticmethod
    def _parse_body(response: requests.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return response.text


# ============ 数据转换 ============


class TransformExecutor(StepExecutor):
    """
    在快照副本上依次执行转换操作，返回写入列表交由控制器原子提交

    输出为最后一个操作目标的值
    """

    step_type = StepType.TRANSFORM

    def execute(self, ctx: StepContext) -> StepOutcome:
        work = copy.deepcopy(ctx.view.root)
        writes: List[ContextWrite] = []
        last: Any = None

        for index, operation in enumerate(ctx.config.operations):
            op = operation.op
            if op == "delete":
                delete_path(work, operation.path)
                writes.append(ContextWrite(operation.path, delete=True))
                last = None
                continue

            if op == "set":
                target, value = operation.path, ctx.render(copy.deepcopy(operation.value))
            elif op == "merge":
                target, value = operation.target, self._merge(work, operation, index)
            elif op == "map":
                target = operation.target
                value = [
                    self._evaluate(operation.expression, MAP_IDENTIFIERS, _element_scope(v, i))
                    for i, v in enumerate(self._sequence(work, operation.source, index))
                ]
            elif op == "filter":
                target = operation.target
                value = [
                    v
                    for i, v in enumerate(self._sequence(work, operation.source, index))
                    if self._evaluate(operation.condition, MAP_IDENTIFIERS, _element_scope(v, i))
                ]
            elif op == "reduce":
                target = operation.target
                acc = copy.deepcopy(operation.initial)
                for i, v in enumerate(self._sequence(work, operation.source, index)):
                    acc = self._evaluate(
                        operation.expression,
                        REDUCE_IDENTIFIERS,
                        {"acc": acc, **_element_scope(v, i)},
                    )
                value = acc
            else:  # extract
                target = operation.target
                source = get_path(work, operation.source)
                query = query_to_path(operation.query)
                value = get_path(source, query) if query else source

            set_path(work, target, copy.deepcopy(value))
            writes.append(ContextWrite(target, value))
            last = value

        return StepOutcome.completed(last, writes)

    @staticmethod
    def _evaluate(expression: str, allowed, namespace: Dict[str, Any]) -> Any:
        return ExpressionEvaluator(namespace, allowed).evaluate(expression)

    @staticmethod
    def _sequence(work: Dict[str, Any], source: str, index: int) -> List[Any]:
        value = get_path(work, source)
        if not isinstance(value, list):
            raise ExecutionError(
                "TRANSFORM_TYPE_ERROR",
                f"operations[{index}] 的 source {source} 不是数组",
                retryable=False,
            )
        return value

    @staticmethod
    def _merge(work: Dict[str, Any], operation, index: int) -> Any:
        source = get_path(work, operation.source)
        target = get_path(work, operation.target)
        if isinstance(source, dict) and (target is None or isinstance(target, dict)):
            return {**(target or {}), **source}
        if isinstance(source, list) and (target is None or isinstance(target, list)):
            return (target or []) + source
        raise ExecutionError(
            "TRANSFORM_TYPE_ERROR",
            f"operations[{index}] 无法把 {type(source).__name__} 合并到 {type(target).__name__}",
            retryable=False,
        )


def _element_scope(value: Any, index: int) -> Dict[str, Any]:
    return {"item": {"value": value, "index": index}, "value": value, "index": index}
