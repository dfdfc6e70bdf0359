"""Pipeline 测试共享 fixtures"""

import json
import threading
import time
from typing import Any, Dict, List, Optional
from unittest.mock import MagicMock

import pytest
import requests

from conductor.integrations.agent_client import AgentOutcome
from conductor.pipeline.context import ContextView
from conductor.pipeline.node_base import EngineServices, StepContext
from conductor.pipeline.schemas import Run, Step
from conductor.service import PipelineService
from conductor.storage.memory import InMemoryStore


class FakeDispatcher:
    """记录调用的 Agent 调度后端；前 fail_times 次调用返回失败"""

    def __init__(self, fail_times: int = 0, retryable: bool = True):
        self.fail_times = fail_times
        self.retryable = retryable
        self.prompts: List[str] = []
        self.configs: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def dispatch(self, prompt: str, config: Dict[str, Any]) -> AgentOutcome:
        with self._lock:
            self.prompts.append(prompt)
            self.configs.append(config)
            if len(self.prompts) <= self.fail_times:
                return AgentOutcome(success=False, error="agent busy", retryable=self.retryable)
        return AgentOutcome(success=True, output={"content": f"done: {prompt}"})


def make_response(status: int = 200, body: Any = None, headers: Optional[Dict[str, str]] = None) -> requests.Response:
    """辅助函数：构造真实的 requests.Response"""
    response = requests.Response()
    response.status_code = status
    response._content = json.dumps(body).encode("utf-8") if body is not None else b""
    response.headers.update(headers or {"Content-Type": "application/json"})
    response.encoding = "utf-8"
    return response


def agent(step_id: str, prompt: str = "do it", **kwargs) -> Dict[str, Any]:
    """辅助函数：agent_task 步骤"""
    return {"id": step_id, "name": step_id, "type": "agent_task", "config": {"prompt": prompt}, **kwargs}


def script(step_id: str, body: str, **kwargs) -> Dict[str, Any]:
    """辅助函数：script 步骤，默认不重试"""
    kwargs.setdefault("retryPolicy", {"maxRetries": 0})
    return {"id": step_id, "name": step_id, "type": "script", "config": {"script": body}, **kwargs}


def step(step_id: str, step_type: str, config: Dict[str, Any], **kwargs) -> Dict[str, Any]:
    """辅助函数：任意类型步骤"""
    return {"id": step_id, "name": step_id, "type": step_type, "config": config, **kwargs}


def make_definition(steps: List[Dict[str, Any]], name: str = "test-pipeline", **kwargs) -> Dict[str, Any]:
    """辅助函数：创建管线定义字典"""
    return {"name": name, "steps": steps, **kwargs}


def build_step_context(
    step_data: Dict[str, Any],
    data: Optional[Dict[str, Any]] = None,
    settings=None,
    services: Optional[EngineServices] = None,
    scope: Optional[Dict[str, Any]] = None,
    cancel_event: Optional[threading.Event] = None,
) -> StepContext:
    """辅助函数：为执行器单元测试构造 StepContext"""
    return StepContext(
        run_id="run_test",
        pipeline_id="pipe_test",
        step=Step.model_validate(step_data),
        attempt=1,
        view=ContextView(data=dict(data or {}), steps={}, scope=dict(scope or {})),
        cancel_event=cancel_event or threading.Event(),
        settings=settings,
        services=services or EngineServices(),
    )


@pytest.fixture
def dispatcher():
    return FakeDispatcher()


@pytest.fixture
def http_session():
    """模拟 requests.Session"""
    return MagicMock()


@pytest.fixture
def service(engine_settings, dispatcher, http_session):
    """基于内存存储的 PipelineService"""
    svc = PipelineService(
        store=InMemoryStore(),
        services=EngineServices(agent_dispatcher=dispatcher, http_session=http_session),
        settings=engine_settings,
    )
    yield svc
    svc.shutdown()


def run_and_wait(
    service: PipelineService,
    definition: Dict[str, Any],
    params: Optional[Dict[str, Any]] = None,
    timeout: float = 15.0,
) -> Run:
    """辅助函数：创建管线、触发并等待 Run 结束"""
    created = service.create_pipeline(definition)
    run = service.run_pipeline(created.id, params)
    final = service.wait_for_run(run.id, timeout=timeout)
    assert final is not None
    assert final.is_terminal, f"run 未在 {timeout}s 内结束: {final.status}"
    return final


def wait_until(predicate, timeout: float = 5.0, interval: float = 0.02) -> bool:
    """辅助函数：轮询直到条件成立"""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()
