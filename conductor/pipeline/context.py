"""Run 数据上下文 - 单写者数据树与只读快照视图"""

from __future__ import annotations

import copy
import json
import re
import threading
from dataclasses import asdict, dataclass, field, is_dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

from conductor.pipeline.condition import CONDITION_IDENTIFIERS, ExpressionEvaluator
from conductor.pipeline.paths import check_tree_keys, delete_path, get_path, parse_path, set_path

# ${context.a.b} 或 ${a.b}
TEMPLATE_PATTERN = re.compile(r"\$\{\s*([^}]+?)\s*\}")


def template_paths(text: str) -> List[str]:
    """提取字符串中所有模板占位符对应的数据路径"""
    return [_strip_context_prefix(m.group(1)) for m in TEMPLATE_PATTERN.finditer(text)]


def _strip_context_prefix(path: str) -> str:
    return path[len("context.") :] if path.startswith("context.") else path


def to_json_like(value: Any) -> Any:
    """把值规范化为 JSON 兼容结构，运行时对象一律转为字符串"""
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): to_json_like(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_json_like(v) for v in value]
    if is_dataclass(value) and not isinstance(value, type):
        return to_json_like(asdict(value))
    if hasattr(value, "model_dump"):
        return to_json_like(value.model_dump(mode="json", by_alias=True))
    return str(value)


@dataclass(frozen=True)
class ContextWrite:
    """一次待提交的上下文写入；value 为 None 且 delete=True 时表示删除"""

    path: str
    value: Any = None
    delete: bool = False


class RunContext:
    """
    单个 Run 的共享数据树

    所有写入都经过路径守卫，并在同一把锁（RunController 的单写者锁）内完成；
    读取方通过 snapshot() 拿到深拷贝，互不干扰。
    """

    def __init__(
        self,
        initial: Optional[Mapping[str, Any]] = None,
        lock: Optional[threading.RLock] = None,
    ):
        data = to_json_like(dict(initial or {}))
        check_tree_keys(data)
        self._data: Dict[str, Any] = data
        self._lock = lock or threading.RLock()

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._data)

    def get(self, path: str, default: Any = None) -> Any:
        with self._lock:
            return copy.deepcopy(get_path(self._data, path, default))

    def set(self, path: str, value: Any) -> None:
        segments = parse_path(path)
        value = to_json_like(value)
        check_tree_keys(value, path)
        with self._lock:
            set_path(self._data, segments, value)

    def delete(self, path: str) -> bool:
        segments = parse_path(path)
        with self._lock:
            return delete_path(self._data, segments)

    def apply(self, writes: Iterable[ContextWrite]) -> None:
        """
        原子地应用一批写入：先在副本上全部校验并执行，成功后整体替换

        Raises:
            SandboxViolation / ExpressionError: 任一写入非法时全部不生效
        """
        with self._lock:
            working = copy.deepcopy(self._data)
            for write in writes:
                segments = parse_path(write.path)
                if write.delete:
                    delete_path(working, segments)
                else:
                    value = to_json_like(write.value)
                    check_tree_keys(value, write.path)
                    set_path(working, segments, value)
            self._data = working

    def to_dict(self) -> Dict[str, Any]:
        return self.snapshot()

    def __repr__(self) -> str:
        return f"RunContext(keys={sorted(self._data.keys())})"


@dataclass
class ContextView:
    """
    一次步骤调用看到的只读视图

    Attributes:
        data: RunContext 快照
        steps: {step_id: {"status": ..., "output": ...}}
        scope: 循环变量等局部变量，读取时覆盖同名顶层键
    """

    data: Dict[str, Any]
    steps: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    scope: Dict[str, Any] = field(default_factory=dict)

    @property
    def root(self) -> Dict[str, Any]:
        if not self.scope:
            return self.data
        return {**self.data, **self.scope}

    def lookup(self, path: str, default: Any = None) -> Any:
        """按守卫路径读取数据，支持 context. 前缀与 ${...} 包裹"""
        path = path.strip()
        match = TEMPLATE_PATTERN.fullmatch(path)
        if match:
            path = match.group(1)
        return get_path(self.root, _strip_context_prefix(path), default)

    def namespace(self) -> Dict[str, Any]:
        return {"context": self.root, "steps": self.steps, **self.scope}

    def condition_identifiers(self) -> FrozenSet[str]:
        return CONDITION_IDENTIFIERS | frozenset(self.scope.keys())

    def evaluate(self, expression: str) -> Any:
        return ExpressionEvaluator(self.namespace(), self.condition_identifiers()).evaluate(
            expression
        )

    def test(self, expression: str) -> bool:
        return bool(self.evaluate(expression))

    def render(self, value: Any) -> Any:
        """
        递归替换模板占位符

        整个字符串恰好是一个占位符时返回原始值（可为对象/数组），
        否则按字符串拼接；缺失的值替换为空串。
        """
        if isinstance(value, str):
            whole = TEMPLATE_PATTERN.fullmatch(value.strip())
            if whole:
                return self.lookup(whole.group(1))
            return TEMPLATE_PATTERN.sub(lambda m: _stringify(self.lookup(m.group(1))), value)
        if isinstance(value, dict):
            return {k: self.render(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self.render(v) for v in value]
        return value


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def scalar_items(data: Mapping[str, Any]) -> List[Tuple[str, str]]:
    """顶层的字符串/数值/布尔值，供脚本环境变量导出"""
    items = []
    for key, value in data.items():
        if isinstance(value, bool):
            items.append((key, "true" if value else "false"))
        elif isinstance(value, (str, int, float)):
            items.append((key, str(value)))
    return items
