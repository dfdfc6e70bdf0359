"""步骤执行器单元测试"""

import os
import threading
from datetime import timedelta

import pytest
import requests

from conductor.integrations.agent_client import OpenAIAgentDispatcher
from conductor.pipeline.errors import ExecutionError
from conductor.pipeline.node_base import EngineServices, SuspensionKind
from conductor.pipeline.nodes import (
    AgentTaskExecutor,
    ApprovalExecutor,
    ScriptExecutor,
    SubPipelineExecutor,
    TransformExecutor,
    WaitExecutor,
    WebhookExecutor,
)
from conductor.pipeline.registry import (
    ExecutorNotFoundError,
    ExecutorRegistry,
    build_registry,
    get_default_registry,
)
from conductor.pipeline.schemas import Run, RunError, RunStatus, StepState, StepStatus, StepType, utcnow
from conductor.settings import AgentSettings
from tests.test_pipeline.conftest import FakeDispatcher, agent, build_step_context, make_response, step


# ============ 注册表 ============


class TestExecutorRegistry:
    """ExecutorRegistry 测试"""

    def test_default_registry_has_all_work_types(self):
        """默认注册表包含全部工作型步骤"""
        registry = get_default_registry()
        assert registry is get_default_registry()
        assert set(registry.get_registered_types()) == {
            StepType.AGENT_TASK,
            StepType.SCRIPT,
            StepType.WEBHOOK,
            StepType.TRANSFORM,
            StepType.WAIT,
            StepType.APPROVAL,
            StepType.SUB_PIPELINE,
        }
        assert isinstance(registry.get(StepType.SCRIPT), ScriptExecutor)

    def test_control_flow_cannot_register(self):
        """控制流步骤不能注册执行器"""
        executor = TransformExecutor()
        executor.step_type = StepType.LOOP
        with pytest.raises(ValueError, match="控制流"):
            ExecutorRegistry().register(executor)

    def test_missing_type(self):
        """未注册的类型"""
        registry = ExecutorRegistry().register(TransformExecutor())
        assert StepType.TRANSFORM in registry
        with pytest.raises(ExecutorNotFoundError):
            registry.get(StepType.WEBHOOK)

    def test_build_registry_is_independent(self):
        """build_registry 每次返回新实例"""
        assert build_registry() is not build_registry()


# ============ Agent 任务 ============


class TestAgentTaskExecutor:
    """AgentTaskExecutor 测试"""

    def test_prompt_rendered_and_dispatched(self, engine_settings):
        """prompt 渲染后派发"""
        dispatcher = FakeDispatcher()
        ctx = build_step_context(
            agent("write", prompt="write about ${topic}", timeout=5000),
            data={"topic": "cats"},
            settings=engine_settings,
            services=EngineServices(agent_dispatcher=dispatcher),
        )
        outcome = AgentTaskExecutor().execute(ctx)

        assert outcome.is_completed
        assert outcome.output == {"content": "done: write about cats"}
        assert dispatcher.prompts == ["write about cats"]
        assert dispatcher.configs[0]["stepId"] == "write"
        assert dispatcher.configs[0]["timeout"] == 5000

    def test_failure_keeps_retryable_flag(self, engine_settings):
        """后端失败转为 AGENT_TASK_FAILED"""
        ctx = build_step_context(
            agent("write"),
            settings=engine_settings,
            services=EngineServices(agent_dispatcher=FakeDispatcher(fail_times=1, retryable=False)),
        )
        with pytest.raises(ExecutionError) as exc_info:
            AgentTaskExecutor().execute(ctx)
        assert exc_info.value.code == "AGENT_TASK_FAILED"
        assert exc_info.value.retryable is False

    def test_no_backend(self, engine_settings):
        """未配置后端"""
        ctx = build_step_context(agent("write"), settings=engine_settings)
        with pytest.raises(ExecutionError, match="未配置"):
            AgentTaskExecutor().execute(ctx)


class TestOpenAIAgentDispatcher:
    """OpenAIAgentDispatcher 测试"""

    def test_dispatch_with_mock_client(self, mock_openai_client):
        """使用模拟客户端完成一次调用"""
        dispatcher = OpenAIAgentDispatcher(settings=AgentSettings(), client=mock_openai_client)
        outcome = dispatcher.dispatch("hello", {"systemPrompt": "be brief", "maxTokens": 10})

        assert outcome.success
        assert outcome.output["content"] == "echo: hello"
        kwargs = mock_openai_client.chat.completions.create.call_args.kwargs
        assert kwargs["max_tokens"] == 10
        assert kwargs["messages"][0] == {"role": "system", "content": "be brief"}

    def test_unconfigured_backend(self, monkeypatch):
        """缺少 base_url/api_key 时返回不可重试的失败"""
        for var in ("AGENT_BASE_URL", "OPENAI_BASE_URL", "AGENT_API_KEY", "OPENAI_API_KEY"):
            monkeypatch.delenv(var, raising=False)
        outcome = OpenAIAgentDispatcher(settings=AgentSettings()).dispatch("hello", {})
        assert not outcome.success
        assert outcome.retryable is False

    @pytest.mark.integration
    def test_live_dispatch(self, check_env_vars):
        """真实后端调用"""
        check_env_vars("OPENAI_BASE_URL", "OPENAI_API_KEY")
        outcome = OpenAIAgentDispatcher().dispatch("Reply with the word ok.", {"maxTokens": 5})
        assert outcome.success, outcome.error


# ============ 脚本 ============


@pytest.mark.slow
class TestScriptExecutor:
    """ScriptExecutor 测试（真实子进程）"""

    def run_script(self, engine_settings, body, data=None, cancel_event=None, **config):
        ctx = build_step_context(
            step("s", "script", {"script": body, **config}),
            data=data,
            settings=engine_settings,
            cancel_event=cancel_event,
        )
        return ScriptExecutor().execute(ctx)

    def test_stdout_and_exit_code(self, engine_settings):
        """成功执行"""
        outcome = self.run_script(engine_settings, "echo hello")
        assert outcome.is_completed
        assert outcome.output["exitCode"] == 0
        assert outcome.output["stdout"] == "hello\n"

    def test_environment_is_restricted(self, engine_settings, monkeypatch):
        """只暴露上下文标量、步骤 env 与少量宿主变量"""
        monkeypatch.setenv("SECRET_TOKEN", "leak")
        outcome = self.run_script(
            engine_settings,
            'echo "$PIPELINE_USER_NAME:$GREETING:$SECRET_TOKEN"',
            data={"user_name": "bob", "nested": {"skip": True}},
            env={"GREETING": "hi ${user_name}"},
        )
        assert outcome.output["stdout"] == "bob:hi bob:\n"

    def test_template_rendering_in_script(self, engine_settings):
        """脚本内容中的模板占位符"""
        outcome = self.run_script(engine_settings, "echo ${count}", data={"count": 3})
        assert outcome.output["stdout"] == "3\n"

    def test_working_directory(self, engine_settings, tmp_path):
        """默认工作目录来自配置"""
        outcome = self.run_script(engine_settings, "pwd")
        assert outcome.output["stdout"].strip() == os.path.realpath(tmp_path)

    def test_script_path(self, engine_settings, tmp_path):
        """isPath 模式执行脚本文件"""
        path = tmp_path / "job.sh"
        path.write_text("echo from-file\n")
        outcome = self.run_script(engine_settings, str(path), isPath=True)
        assert outcome.output["stdout"] == "from-file\n"

    def test_non_zero_exit(self, engine_settings):
        """非零退出码"""
        with pytest.raises(ExecutionError) as exc_info:
            self.run_script(engine_settings, "echo oops >&2; exit 3")
        assert exc_info.value.code == "SCRIPT_FAILED"
        assert exc_info.value.details["exitCode"] == 3
        assert "oops" in exc_info.value.message

    def test_timeout(self, engine_settings):
        """超时终止进程"""
        with pytest.raises(ExecutionError) as exc_info:
            self.run_script(engine_settings, "sleep 5", timeout=300)
        assert exc_info.value.code == "SCRIPT_TIMEOUT"

    def test_cancel(self, engine_settings):
        """取消信号终止进程"""
        cancel_event = threading.Event()
        threading.Timer(0.2, cancel_event.set).start()
        outcome = self.run_script(engine_settings, "sleep 10", cancel_event=cancel_event)
        assert outcome.is_failed
        assert outcome.error.code == "CANCELLED"


# ============ Webhook ============


class TestWebhookExecutor:
    """WebhookExecutor 测试"""

    def run_webhook(self, engine_settings, http_session, config, data=None):
        ctx = build_step_context(
            step("hook", "webhook", config),
            data=data,
            settings=engine_settings,
            services=EngineServices(http_session=http_session),
        )
        return WebhookExecutor().execute(ctx)

    def test_post_json_with_bearer(self, engine_settings, http_session):
        """渲染 url/body，附加认证头"""
        http_session.request.return_value = make_response(201, {"id": 7})
        outcome = self.run_webhook(
            engine_settings,
            http_session,
            {
                "url": "https://api.example.com/orders/${order.id}",
                "body": {"customer": "${order.customer}"},
                "auth": {"type": "bearer", "token": "${token}"},
            },
            data={"order": {"id": 42, "customer": "ann"}, "token": "t0k"},
        )

        args, kwargs = http_session.request.call_args
        assert args == ("POST", "https://api.example.com/orders/42")
        assert kwargs["json"] == {"customer": "ann"}
        assert kwargs["headers"]["Authorization"] == "Bearer t0k"
        assert kwargs["timeout"] == 2.0
        assert outcome.output["status"] == 201
        assert outcome.output["body"] == {"id": 7}

    def test_basic_and_api_key_auth(self, engine_settings, http_session):
        """basic 与 api_key 认证"""
        http_session.request.return_value = make_response(200, {})
        self.run_webhook(
            engine_settings,
            http_session,
            {"url": "http://x", "method": "GET", "auth": {"type": "basic", "username": "u", "password": "p"}},
        )
        assert http_session.request.call_args.kwargs["auth"] == ("u", "p")

        self.run_webhook(
            engine_settings,
            http_session,
            {"url": "http://x", "auth": {"type": "api_key", "apiKey": "k", "headerName": "X-Key"}},
        )
        assert http_session.request.call_args.kwargs["headers"]["X-Key"] == "k"

    def test_extract_fields(self, engine_settings, http_session):
        """extractFields 按路径提取"""
        http_session.request.return_value = make_response(200, {"data": {"items": [{"sku": "A1"}]}})
        outcome = self.run_webhook(
            engine_settings,
            http_session,
            {"url": "http://x", "extractFields": {"firstSku": "$.data.items[0].sku", "all": "$"}},
        )
        assert outcome.output["firstSku"] == "A1"
        assert outcome.output["all"] == {"data": {"items": [{"sku": "A1"}]}}

    def test_status_validation(self, engine_settings, http_session):
        """默认只接受 2xx，可通过 validateStatus 覆盖"""
        http_session.request.return_value = make_response(404, {"error": "missing"})
        with pytest.raises(ExecutionError) as exc_info:
            self.run_webhook(engine_settings, http_session, {"url": "http://x"})
        assert exc_info.value.code == "WEBHOOK_BAD_STATUS"
        assert exc_info.value.details == {"status": 404}

        outcome = self.run_webhook(engine_settings, http_session, {"url": "http://x", "validateStatus": [404]})
        assert outcome.output["status"] == 404

    def test_text_body(self, engine_settings, http_session):
        """非 JSON 响应体按文本返回"""
        response = make_response(200, headers={"Content-Type": "text/plain"})
        response._content = b"plain text"
        http_session.request.return_value = response
        outcome = self.run_webhook(engine_settings, http_session, {"url": "http://x"})
        assert outcome.output["body"] == "plain text"

    def test_timeout_and_connection_error(self, engine_settings, http_session):
        """请求异常转为执行错误"""
        http_session.request.side_effect = requests.Timeout("slow")
        with pytest.raises(ExecutionError) as exc_info:
            self.run_webhook(engine_settings, http_session, {"url": "http://x"})
        assert exc_info.value.code == "WEBHOOK_TIMEOUT"

        http_session.request.side_effect = requests.ConnectionError("refused")
        with pytest.raises(ExecutionError) as exc_info:
            self.run_webhook(engine_settings, http_session, {"url": "http://x"})
        assert exc_info.value.code == "WEBHOOK_REQUEST_FAILED"


# ============ 数据转换 ============


class TestTransformExecutor:
    """TransformExecutor 测试"""

    DATA = {
        "nums": [1, 2, 3],
        "profile": {"a": 1},
        "extra": {"b": 2},
        "resp": {"data": {"id": "x9"}},
    }

    def run_transform(self, operations, data=None):
        ctx = build_step_context(
            step("t", "transform", {"operations": operations}),
            data=data if data is not None else self.DATA,
        )
        return TransformExecutor().execute(ctx)

    def test_all_operations(self):
        """依次执行各类操作，后续操作能看到前面的结果"""
        outcome = self.run_transform(
            [
                {"op": "map", "source": "nums", "expression": "item.value * 2", "target": "doubled"},
                {"op": "filter", "source": "doubled", "condition": "value > 2", "target": "big"},
                {"op": "reduce", "source": "big", "expression": "acc + value", "initial": 0, "target": "sum"},
                {"op": "merge", "source": "extra", "target": "profile"},
                {"op": "extract", "source": "resp", "query": "$.data.id", "target": "respId"},
                {"op": "set", "path": "meta.copy", "value": "${nums}"},
                {"op": "delete", "path": "extra"},
            ]
        )
        writes = {w.path: w for w in outcome.writes}

        assert writes["doubled"].value == [2, 4, 6]
        assert writes["big"].value == [4, 6]
        assert writes["sum"].value == 10
        assert writes["profile"].value == {"a": 1, "b": 2}
        assert writes["respId"].value == "x9"
        assert writes["meta.copy"].value == [1, 2, 3]
        assert writes["extra"].delete is True
        assert outcome.output is None

    def test_output_is_last_value(self):
        """输出为最后一个操作的值"""
        outcome = self.run_transform([{"op": "map", "source": "nums", "expression": "index", "target": "idx"}])
        assert outcome.output == [0, 1, 2]

    def test_snapshot_is_not_mutated(self):
        """执行器不修改快照"""
        data = {"nums": [1, 2]}
        self.run_transform([{"op": "set", "path": "nums[0]", "value": 99}], data=data)
        assert data == {"nums": [1, 2]}

    def test_type_errors(self):
        """源不是数组或合并类型不匹配"""
        with pytest.raises(ExecutionError, match="不是数组"):
            self.run_transform([{"op": "map", "source": "profile", "expression": "value", "target": "x"}])
        with pytest.raises(ExecutionError) as exc_info:
            self.run_transform([{"op": "merge", "source": "nums", "target": "profile"}])
        assert exc_info.value.code == "TRANSFORM_TYPE_ERROR"


# ============ 挂起型 ============


class TestWaitExecutor:
    """WaitExecutor 测试"""

    def test_duration(self):
        """时长等待返回定时挂起"""
        before = utcnow()
        outcome = WaitExecutor().execute(
            build_step_context(step("w", "wait", {"mode": "duration", "duration": 50, "timeout": 1000}))
        )
        suspension = outcome.suspension
        assert outcome.is_suspended
        assert suspension.kind == SuspensionKind.TIMER
        assert suspension.on_deadline == "complete"
        assert suspension.output == {"waitedMs": 50}
        assert before + timedelta(milliseconds=40) <= suspension.deadline

    def test_duration_longer_than_timeout(self):
        """目标超过超时时间时按超时失败"""
        outcome = WaitExecutor().execute(
            build_step_context(step("w", "wait", {"mode": "duration", "duration": 5000, "timeout": 100}))
        )
        assert outcome.suspension.on_deadline == "fail"

    def test_until_in_past_completes(self):
        """过去的时间点立即完成"""
        outcome = WaitExecutor().execute(
            build_step_context(
                step("w", "wait", {"mode": "until", "until": "${at}", "timeout": 1000}),
                data={"at": "2000-01-01T00:00:00Z"},
            )
        )
        assert outcome.is_completed
        assert outcome.output == {"waitedMs": 0}

    def test_until_invalid(self):
        """无法解析的时间"""
        with pytest.raises(ExecutionError) as exc_info:
            WaitExecutor().execute(
                build_step_context(step("w", "wait", {"mode": "until", "until": "tomorrow", "timeout": 1000}))
            )
        assert exc_info.value.code == "WAIT_INVALID_UNTIL"

    def test_webhook_token(self):
        """webhook 模式使用渲染后的令牌或自动生成"""
        outcome = WaitExecutor().execute(
            build_step_context(
                step("w", "wait", {"mode": "webhook", "webhookToken": "${ticket}", "timeout": 1000}),
                data={"ticket": "abc"},
            )
        )
        assert outcome.suspension.kind == SuspensionKind.WEBHOOK
        assert outcome.suspension.token == "abc"
        assert outcome.suspension.on_deadline == "fail"

        outcome = WaitExecutor().execute(
            build_step_context(step("w", "wait", {"mode": "webhook", "timeout": 1000}))
        )
        assert outcome.suspension.token.startswith("wait_")


class TestApprovalExecutor:
    """ApprovalExecutor 测试"""

    def test_suspends_with_timeout_action(self):
        """返回审批挂起，携带超时动作与渲染后的消息"""
        outcome = ApprovalExecutor().execute(
            build_step_context(
                step(
                    "gate",
                    "approval",
                    {"approvers": ["u1"], "message": "deploy ${version}?", "timeout": 1000, "onTimeout": "approve"},
                ),
                data={"version": "1.2"},
            )
        )
        assert outcome.suspension.kind == SuspensionKind.APPROVAL
        assert outcome.suspension.on_deadline == "approve"
        assert outcome.suspension.deadline is not None
        assert outcome.suspension.output == {"message": "deploy 1.2?"}

    def test_no_timeout(self):
        """未配置超时则无截止时间"""
        outcome = ApprovalExecutor().execute(
            build_step_context(step("gate", "approval", {"approvers": ["u1"], "message": "ok?"}))
        )
        assert outcome.suspension.deadline is None

    def test_step_timeout_fallback(self):
        """未配置审批超时时使用步骤级 timeout，审批自身的配置优先"""
        before = utcnow()
        fallback = ApprovalExecutor().execute(
            build_step_context(
                step("gate", "approval", {"approvers": ["u1"], "message": "ok?"}, timeout=60_000)
            )
        )
        own = ApprovalExecutor().execute(
            build_step_context(
                step("gate", "approval", {"approvers": ["u1"], "message": "ok?", "timeout": 1000}, timeout=60_000)
            )
        )
        assert fallback.suspension.deadline >= before + timedelta(seconds=59)
        assert fallback.suspension.on_deadline == "fail"
        assert own.suspension.deadline < before + timedelta(seconds=30)


# ============ 子管线 ============


class FakeLauncher:
    """记录调用的子管线启动器"""

    def __init__(self, final_status=RunStatus.COMPLETED):
        self.final_status = final_status
        self.started = []
        self.cancelled = []

    def start_child_run(self, parent_run_id, parent_step_id, pipeline_id, version, inputs):
        self.started.append((parent_run_id, parent_step_id, pipeline_id, version, inputs))
        return Run(id="run_child", pipeline_id=pipeline_id, pipeline_version=1, status=RunStatus.RUNNING)

    def wait_for_run(self, run_id, timeout=None, cancel_event=None):
        run = Run(id=run_id, pipeline_id="pipe_child", pipeline_version=1, status=self.final_status)
        if self.final_status == RunStatus.COMPLETED:
            run.context = {"answer": 42}
            run.step_states = {
                "a": StepState(step_id="a", status=StepStatus.COMPLETED, output="ok"),
                "b": StepState(step_id="b", status=StepStatus.SKIPPED),
            }
        elif self.final_status == RunStatus.FAILED:
            run.error = RunError(code="STEP_FAILED", message="boom", step_id="a")
        return run

    def cancel_run(self, run_id):
        self.cancelled.append(run_id)
        return True


class TestSubPipelineExecutor:
    """SubPipelineExecutor 测试"""

    def run_sub(self, engine_settings, launcher, **config):
        ctx = build_step_context(
            step("sub", "sub_pipeline", {"pipelineId": "pipe_child", "inputs": {"q": "${query}"}, **config}),
            data={"query": "find"},
            settings=engine_settings,
            services=EngineServices(sub_pipelines=launcher),
        )
        return SubPipelineExecutor().execute(ctx)

    def test_completed_child(self, engine_settings):
        """等待子 Run 完成并收集输出"""
        launcher = FakeLauncher()
        outcome = self.run_sub(engine_settings, launcher)
        assert launcher.started == [("run_test", "sub", "pipe_child", None, {"q": "find"})]
        assert outcome.output["context"] == {"answer": 42}
        assert outcome.output["outputs"] == {"a": "ok"}

    def test_fire_and_forget(self, engine_settings):
        """不等待时立即返回子 Run ID"""
        outcome = self.run_sub(engine_settings, FakeLauncher(), waitForCompletion=False)
        assert outcome.output == {"runId": "run_child", "status": "running"}

    def test_failed_child(self, engine_settings):
        """子 Run 失败"""
        with pytest.raises(ExecutionError) as exc_info:
            self.run_sub(engine_settings, FakeLauncher(RunStatus.FAILED))
        assert exc_info.value.code == "SUB_PIPELINE_FAILED"
        assert "boom" in exc_info.value.message

    def test_timeout_cancels_child(self, engine_settings):
        """等待超时后取消子 Run"""
        launcher = FakeLauncher(RunStatus.RUNNING)
        with pytest.raises(ExecutionError) as exc_info:
            self.run_sub(engine_settings, launcher, timeout=100)
        assert exc_info.value.code == "SUB_PIPELINE_TIMEOUT"
        assert launcher.cancelled == ["run_child"]

    def test_no_launcher(self, engine_settings):
        """未配置启动器"""
        ctx = build_step_context(
            step("sub", "sub_pipeline", {"pipelineId": "pipe_child"}), settings=engine_settings
        )
        with pytest.raises(ExecutionError) as exc_info:
            SubPipelineExecutor().execute(ctx)
        assert exc_info.value.code == "SUB_PIPELINE_UNAVAILABLE"
