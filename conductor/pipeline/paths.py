"""数据路径守卫

路径语法：首段为标识符，之后为 ``.name``、``[数字]`` 或 ``["带引号的键"]``，
例如 ``orders[0].items["sku-id"]``。读写只在数据树内部解析（字典键、列表下标），
从不访问对象属性。
"""

from __future__ import annotations

import re
from typing import Any, List, Tuple, Union

from conductor.pipeline.errors import ExpressionError, SandboxViolation

MAX_PATH_LENGTH = 256
MAX_PATH_DEPTH = 32

# 任何位置都不允许出现的键名
RESERVED_NAMES = frozenset(
    {
        "__proto__",
        "constructor",
        "prototype",
        "__class__",
        "__dict__",
        "__globals__",
        "__builtins__",
        "__import__",
    }
)

_IDENTIFIER_RE = re.compile(r"[A-Za-z_$][A-Za-z0-9_$\-]*")
_SEGMENT_RE = re.compile(
    r"""
    \.(?P<name>[A-Za-z_$][A-Za-z0-9_$\-]*)
    | \[(?P<index>\d+)\]
    | \[(?P<quoted>"[^"\\\[\]]*"|'[^'\\\[\]]*')\]
    """,
    re.VERBOSE,
)

Segment = Union[str, int]

_MISSING = object()


def is_reserved_name(name: str) -> bool:
    """判断键名是否为保留名（含所有下划线开头的名字）"""
    return name in RESERVED_NAMES or name.startswith("_")


def _check_key(key: str, path: str) -> None:
    if is_reserved_name(key):
        raise SandboxViolation(f"路径包含保留名 {key!r}: {path}")


def parse_path(path: str) -> Tuple[Segment, ...]:
    """
    解析路径为段序列

    Args:
        path: 路径字符串

    Returns:
        (键或下标, ...)

    Raises:
        SandboxViolation: 路径语法非法或包含保留名
    """
    if not isinstance(path, str) or not path:
        raise SandboxViolation("路径不能为空")
    if len(path) > MAX_PATH_LENGTH:
        raise SandboxViolation(f"路径过长（>{MAX_PATH_LENGTH}）: {path[:40]}...")

    head = _IDENTIFIER_RE.match(path)
    if head is None:
        raise SandboxViolation(f"路径必须以标识符开头: {path}")
    segments: List[Segment] = [head.group(0)]
    pos = head.end()

    while pos < len(path):
        match = _SEGMENT_RE.match(path, pos)
        if match is None:
            raise SandboxViolation(f"路径语法非法（位置 {pos}）: {path}")
        if match.group("name") is not None:
            segments.append(match.group("name"))
        elif match.group("index") is not None:
            segments.append(int(match.group("index")))
        else:
            segments.append(match.group("quoted")[1:-1])
        pos = match.end()

    if len(segments) > MAX_PATH_DEPTH:
        raise SandboxViolation(f"路径层级过深（>{MAX_PATH_DEPTH}）: {path}")

    for segment in segments:
        if isinstance(segment, str):
            _check_key(segment, path)

    return tuple(segments)


def is_safe_path(path: str) -> bool:
    """路径能否通过守卫"""
    try:
        parse_path(path)
    except SandboxViolation:
        return False
    return True


def is_safe_key(key: str) -> bool:
    """单个键名能否作为顶层变量名使用"""
    return (
        isinstance(key, str)
        and _IDENTIFIER_RE.fullmatch(key) is not None
        and not is_reserved_name(key)
    )


def check_tree_keys(value: Any, where: str = "context") -> None:
    """递归检查数据树中不含保留键名"""
    if isinstance(value, dict):
        for key, child in value.items():
            if not isinstance(key, str):
                raise SandboxViolation(f"{where} 中的键必须为字符串: {key!r}")
            _check_key(key, where)
            check_tree_keys(child, f"{where}.{key}")
    elif isinstance(value, list):
        for i, child in enumerate(value):
            check_tree_keys(child, f"{where}[{i}]")


def _segments(path: Union[str, Tuple[Segment, ...]]) -> Tuple[Segment, ...]:
    return parse_path(path) if isinstance(path, str) else path


def get_path(tree: Any, path: Union[str, Tuple[Segment, ...]], default: Any = None) -> Any:
    """
    读取路径值，路径不存在时返回 default

    Raises:
        SandboxViolation: 路径非法
    """
    node = tree
    for segment in _segments(path):
        if isinstance(node, dict) and isinstance(segment, str):
            if segment not in node:
                return default
            node = node[segment]
        elif isinstance(node, list) and isinstance(segment, int):
            if segment >= len(node):
                return default
            node = node[segment]
        else:
            return default
    return node


def has_path(tree: Any, path: Union[str, Tuple[Segment, ...]]) -> bool:
    return get_path(tree, path, _MISSING) is not _MISSING


def set_path(tree: dict, path: Union[str, Tuple[Segment, ...]], value: Any) -> None:
    """
    写入路径值，缺失的中间层自动创建为对象；列表只允许覆盖已有下标或在末尾追加

    Raises:
        SandboxViolation: 路径非法
        ExpressionError: 路径无法在数据树内解析
    """
    segments = _segments(path)
    if not isinstance(tree, dict) or not isinstance(segments[0], str):
        raise ExpressionError("写入路径的根必须是对象")

    node: Any = tree
    for i, segment in enumerate(segments[:-1]):
        nxt = segments[i + 1]
        child = _child(node, segment, segments)
        if child is _MISSING or child is None:
            if isinstance(nxt, int):
                raise ExpressionError(f"路径 {_display(segments)} 中的列表不存在")
            child = {}
            _assign(node, segment, child, segments)
        elif not isinstance(child, (dict, list)):
            raise ExpressionError(
                f"路径 {_display(segments)} 穿过了非容器值（{type(child).__name__}）"
            )
        node = child

    _assign(node, segments[-1], value, segments)


def delete_path(tree: dict, path: Union[str, Tuple[Segment, ...]]) -> bool:
    """删除路径值，返回是否确实删除"""
    segments = _segments(path)
    parent = get_path(tree, segments[:-1]) if len(segments) > 1 else tree
    last = segments[-1]
    if isinstance(parent, dict) and isinstance(last, str) and last in parent:
        del parent[last]
        return True
    if isinstance(parent, list) and isinstance(last, int) and last < len(parent):
        del parent[last]
        return True
    return False


def _child(node: Any, segment: Segment, segments: Tuple[Segment, ...]) -> Any:
    if isinstance(node, dict) and isinstance(segment, str):
        return node.get(segment, _MISSING)
    if isinstance(node, list) and isinstance(segment, int):
        return node[segment] if segment < len(node) else _MISSING
    raise ExpressionError(f"路径 {_display(segments)} 的段 {segment!r} 与数据类型不匹配")


def _assign(node: Any, segment: Segment, value: Any, segments: Tuple[Segment, ...]) -> None:
    if isinstance(node, dict) and isinstance(segment, str):
        node[segment] = value
    elif isinstance(node, list) and isinstance(segment, int):
        if segment < len(node):
            node[segment] = value
        elif segment == len(node):
            node.append(value)
        else:
            raise ExpressionError(f"路径 {_display(segments)} 的下标 {segment} 越界")
    else:
        raise ExpressionError(f"路径 {_display(segments)} 的段 {segment!r} 与数据类型不匹配")


def _display(segments: Tuple[Segment, ...]) -> str:
    out = str(segments[0])
    for segment in segments[1:]:
        out += f"[{segment}]" if isinstance(segment, int) else f".{segment}"
    return out
