"""管线定义校验测试"""

import pytest

from conductor.pipeline.definitions import parse_definition
from conductor.pipeline.errors import PipelineValidationError
from conductor.pipeline.schemas import AgentTaskConfig, RetryPolicy, StepType
from conductor.pipeline.validation import query_to_path, source_to_path, validate_definition
from tests.test_pipeline.conftest import agent, make_definition, script, step


def validate(steps, **kwargs):
    return validate_definition(parse_definition(make_definition(steps, **kwargs)))


class TestParseDefinition:
    """模型层校验"""

    def test_camel_and_snake_case(self):
        """同时接受 camelCase 与 snake_case"""
        definition = parse_definition(
            make_definition(
                [agent("a", continueOnFailure=True), agent("b", depends_on=["a"])],
                contextDefaults={"x": 1},
            )
        )
        assert definition.steps[0].continue_on_failure is True
        assert definition.steps[1].depends_on == ["a"]
        assert definition.context_defaults == {"x": 1}
        assert isinstance(definition.steps[0].config, AgentTaskConfig)
        assert definition.steps[0].type == StepType.AGENT_TASK

    def test_errors_listed(self):
        """所有字段错误一起列出"""
        with pytest.raises(PipelineValidationError) as exc_info:
            parse_definition({"name": "", "steps": []})
        assert len(exc_info.value.errors) == 2

    def test_unknown_field_rejected(self):
        """未知字段"""
        with pytest.raises(PipelineValidationError):
            parse_definition(make_definition([agent("a")], colour="blue"))

    def test_duplicate_step_ids(self):
        """重复步骤 ID"""
        with pytest.raises(PipelineValidationError) as exc_info:
            parse_definition(make_definition([agent("a"), agent("a")]))
        assert "步骤 ID 重复" in " ".join(exc_info.value.errors)

    @pytest.mark.parametrize(
        "bad_step",
        [
            step("s", "agent_task", {}),
            step("s", "approval", {"approvers": ["u1"], "message": "ok?", "minApprovals": 2}),
            step("s", "loop", {"mode": "for_each", "steps": ["x"]}),
            step("s", "loop", {"mode": "while", "condition": "true", "parallel": True, "steps": ["x"]}),
            step("s", "wait", {"mode": "duration", "timeout": 1000}),
            step("s", "webhook", {"url": "http://x", "auth": {"type": "bearer"}}),
            step("s", "transform", {"operations": [{"op": "explode", "path": "a"}]}),
            step("s", "mystery", {}),
            agent("bad id"),
            agent("s", dependsOn=["s"]),
        ],
    )
    def test_invalid_steps(self, bad_step):
        """非法步骤配置"""
        with pytest.raises(PipelineValidationError):
            parse_definition(make_definition([bad_step]))

    def test_trigger_config_checked(self):
        """触发器配置校验"""
        with pytest.raises(PipelineValidationError):
            parse_definition(make_definition([agent("a")], trigger={"type": "schedule", "config": {}}))
        with pytest.raises(PipelineValidationError):
            parse_definition(
                make_definition([agent("a")], trigger={"type": "domain_event", "config": {"events": []}})
            )

    def test_definition_is_frozen(self):
        """定义创建后不可修改"""
        definition = parse_definition(make_definition([agent("a")]))
        with pytest.raises(Exception):
            definition.name = "changed"


class TestRetryPolicy:
    """重试策略模型"""

    def test_delay_ms(self):
        """指数退避并受 maxDelay 限制"""
        policy = RetryPolicy(initialDelay=100, multiplier=3, maxDelay=500)
        assert [policy.delay_ms(n) for n in (1, 2, 3)] == [100, 300, 500]

    def test_matches(self):
        """按错误码或消息子串匹配"""
        assert RetryPolicy().matches("ANY")
        policy = RetryPolicy(retryableErrors=["TIMEOUT", "connection reset"])
        assert policy.matches("TIMEOUT")
        assert policy.matches("HTTP_ERROR", "upstream connection reset by peer")
        assert not policy.matches("HTTP_ERROR", "bad request")


class TestValidateDefinition:
    """静态校验"""

    def test_valid_definition_returns_graph(self):
        """合法定义返回图"""
        graph = validate(
            [
                agent("a", prompt="summarize ${context.doc.title}"),
                script("b", "echo ${steps_total}", dependsOn=["a"], condition="steps.a.status == 'completed'"),
            ]
        )
        assert graph.topological_sort() == ["a", "b"]

    def test_condition_identifier_rejected(self):
        """条件只能引用 context 与 steps"""
        with pytest.raises(PipelineValidationError, match="不允许的标识符"):
            validate([agent("a", condition="os.system")])

    def test_loop_variables_allowed_inside_body(self):
        """循环体内可以引用循环变量"""
        validate(
            [
                step("each", "loop", {"mode": "for_each", "collection": "items", "itemVariable": "row", "steps": ["work"]}),
                agent("work", prompt="process ${row.name}", condition="row.enabled && index < 10"),
            ]
        )

    def test_loop_variables_rejected_outside_body(self):
        """循环外不能引用循环变量"""
        with pytest.raises(PipelineValidationError, match="不允许的标识符"):
            validate(
                [
                    step("each", "loop", {"mode": "times", "count": 2, "steps": ["work"]}),
                    agent("work"),
                    agent("after", condition="item > 1", dependsOn=["each"]),
                ]
            )

    def test_forbidden_steps_inside_loop(self):
        """循环体内不允许审批与控制流步骤"""
        with pytest.raises(PipelineValidationError) as exc_info:
            validate(
                [
                    step("each", "loop", {"mode": "times", "count": 2, "steps": ["gate", "hook"]}),
                    step("gate", "approval", {"approvers": ["u1"], "message": "ok?"}),
                    step("hook", "wait", {"mode": "webhook", "timeout": 1000}),
                ]
            )
        assert len(exc_info.value.errors) == 2

    def test_loop_body_dependency_must_stay_inside(self):
        """循环体内步骤不能依赖循环外步骤"""
        with pytest.raises(PipelineValidationError, match="只能依赖同一循环体"):
            validate(
                [
                    agent("outside"),
                    step("each", "loop", {"mode": "times", "count": 2, "steps": ["work"]}),
                    agent("work", dependsOn=["outside"]),
                ]
            )

    def test_reserved_paths_rejected(self):
        """模板、输出变量与转换路径中的保留名"""
        with pytest.raises(PipelineValidationError) as exc_info:
            validate(
                [
                    agent("a", prompt="leak ${__proto__.x}"),
                    step("t", "transform", {"operations": [{"op": "set", "path": "a.constructor", "value": 1}]}),
                    step("w", "webhook", {"url": "http://x", "outputVariable": "_secret"}),
                ]
            )
        assert len(exc_info.value.errors) == 3

    def test_transform_expressions_checked(self):
        """map/filter/reduce 表达式使用各自白名单"""
        validate(
            [
                step(
                    "t",
                    "transform",
                    {
                        "operations": [
                            {"op": "map", "source": "nums", "expression": "item.value * 2", "target": "doubled"},
                            {"op": "filter", "source": "nums", "condition": "value > 1", "target": "big"},
                            {"op": "reduce", "source": "nums", "expression": "acc + value", "initial": 0, "target": "sum"},
                        ]
                    },
                )
            ]
        )
        with pytest.raises(PipelineValidationError, match="不允许的标识符"):
            validate(
                [
                    step(
                        "t",
                        "transform",
                        {"operations": [{"op": "map", "source": "nums", "expression": "acc + 1", "target": "x"}]},
                    )
                ]
            )

    def test_script_env_names(self):
        """环境变量名必须合法"""
        with pytest.raises(PipelineValidationError, match="非法的环境变量名"):
            validate([step("s", "script", {"script": "env", "env": {"BAD-NAME!": "x"}})])

    def test_webhook_status_codes(self):
        """validateStatus 中的状态码范围"""
        with pytest.raises(PipelineValidationError, match="非法的 HTTP 状态码"):
            validate([step("w", "webhook", {"url": "http://x", "validateStatus": [200, 700]})])

    def test_context_defaults_and_payload_mapping(self):
        """contextDefaults 与 payloadMapping 中的保留键"""
        with pytest.raises(PipelineValidationError):
            validate([agent("a")], contextDefaults={"nested": {"__proto__": {}}})
        with pytest.raises(PipelineValidationError):
            validate(
                [agent("a")],
                trigger={"type": "webhook", "config": {"payloadMapping": {"user": "body.__class__"}}},
            )

    def test_sub_pipeline_self_reference(self):
        """子管线不能引用自身"""
        with pytest.raises(PipelineValidationError, match="引用自身"):
            validate([step("sub", "sub_pipeline", {"pipelineId": "pipe_self"})], id="pipe_self")


class TestPathHelpers:
    """数据源写法转换"""

    def test_query_to_path(self):
        assert query_to_path("$.data.items[0]") == "data.items[0]"
        assert query_to_path("$") == ""
        assert query_to_path("status") == "status"

    def test_source_to_path(self):
        assert source_to_path("${context.items}") == "items"
        assert source_to_path("context.items") == "items"
        assert source_to_path("items") == "items"
