"""表达式沙箱 - 安全求值条件与转换表达式"""

from __future__ import annotations

import ast
import operator
import re
from functools import lru_cache
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional

from conductor.pipeline.errors import ExpressionError, SandboxViolation
from conductor.pipeline.paths import is_reserved_name

MAX_EXPRESSION_LENGTH = 512
# 字符串/列表拼接与重复运算结果展开后的元素总数上限
MAX_SEQUENCE_RESULT = 100_000

# 各类表达式允许引用的顶层标识符
CONDITION_IDENTIFIERS: FrozenSet[str] = frozenset({"context", "steps"})
MAP_IDENTIFIERS: FrozenSet[str] = frozenset({"item", "value", "index"})
REDUCE_IDENTIFIERS: FrozenSet[str] = frozenset({"acc", "item", "value", "index"})

_LITERAL_NAMES = {
    "True": True,
    "False": False,
    "None": None,
    "true": True,
    "false": False,
    "null": None,
}

# 允许的比较操作符
_ALLOWED_COMPARATORS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
}

# 允许的二元操作符
_ALLOWED_BINOPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
}

# 允许的一元操作符
_ALLOWED_UNARYOPS = {
    ast.Not: operator.not_,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}

_ALLOWED_NODES = (
    ast.Expression,
    ast.Constant,
    ast.Name,
    ast.Load,
    ast.Attribute,
    ast.Subscript,
    ast.Compare,
    ast.BoolOp,
    ast.And,
    ast.Or,
    ast.UnaryOp,
    ast.BinOp,
    ast.IfExp,
    ast.List,
    ast.Tuple,
    ast.Dict,
    *_ALLOWED_COMPARATORS.keys(),
    *_ALLOWED_BINOPS.keys(),
    *_ALLOWED_UNARYOPS.keys(),
)

_CONSTANT_TYPES = (str, int, float, bool, type(None))

_TEMPLATE_IN_EXPRESSION = re.compile(r"\$\{\s*([^}]+?)\s*\}")


def normalize_expression(expression: str) -> str:
    """
    把表达式规范化为可解析的形式

    - ``${context.x}`` 占位符展开为 ``(context.x)``
    - 字符串字面量之外的 ``&&`` ``||`` ``!`` ``===`` ``!==`` 转为对应关键字
    """
    source = _TEMPLATE_IN_EXPRESSION.sub(lambda m: f"({m.group(1)})", expression)

    out = []
    quote: Optional[str] = None
    i = 0
    while i < len(source):
        ch = source[i]
        if quote:
            out.append(ch)
            if ch == "\\" and i + 1 < len(source):
                out.append(source[i + 1])
                i += 2
                continue
            if ch == quote:
                quote = None
            i += 1
            continue
        if ch in ("'", '"'):
            quote = ch
            out.append(ch)
            i += 1
            continue
        three = source[i : i + 3]
        two = source[i : i + 2]
        if three in ("===", "!=="):
            out.append(" == " if three == "===" else " != ")
            i += 3
        elif two == "&&":
            out.append(" and ")
            i += 2
        elif two == "||":
            out.append(" or ")
            i += 2
        elif ch == "!" and two != "!=":
            out.append(" not ")
            i += 1
        else:
            out.append(ch)
            i += 1
    return "".join(out).strip()


@lru_cache(maxsize=1024)
def _compile(expression: str, allowed: FrozenSet[str]) -> ast.AST:
    if len(expression) > MAX_EXPRESSION_LENGTH:
        raise SandboxViolation(f"表达式过长（>{MAX_EXPRESSION_LENGTH} 字符）")

    try:
        tree = ast.parse(normalize_expression(expression), mode="eval")
    except SyntaxError as e:
        raise SandboxViolation(f"语法错误: {e.msg}") from e

    for node in ast.walk(tree):
        if not isinstance(node, _ALLOWED_NODES):
            raise SandboxViolation(f"不允许的语法: {type(node).__name__}")
        if isinstance(node, ast.Name):
            if node.id in _LITERAL_NAMES:
                continue
            if is_reserved_name(node.id) or node.id not in allowed:
                raise SandboxViolation(f"不允许的标识符: {node.id}")
        elif isinstance(node, ast.Attribute):
            if is_reserved_name(node.attr):
                raise SandboxViolation(f"不允许访问保留属性: {node.attr}")
        elif isinstance(node, ast.Subscript):
            key = node.slice
            if (
                isinstance(key, ast.Constant)
                and isinstance(key.value, str)
                and is_reserved_name(key.value)
            ):
                raise SandboxViolation(f"不允许访问保留键: {key.value}")
        elif isinstance(node, ast.Constant):
            if not isinstance(node.value, _CONSTANT_TYPES):
                raise SandboxViolation(f"不允许的字面量类型: {type(node.value).__name__}")

    return tree.body


def validate_expression(expression: str, allowed: Iterable[str]) -> None:
    """
    静态校验表达式：语法在白名单内，且只引用 allowed 中的标识符

    Raises:
        SandboxViolation: 校验失败
    """
    if not isinstance(expression, str) or not expression.strip():
        raise SandboxViolation("表达式不能为空")
    _compile(expression, frozenset(allowed))


class ExpressionEvaluator:
    """
    安全的表达式评估器

    支持：
    - 白名单内的标识符引用（从命名空间获取）
    - 数据访问（a.b、a["b"]、a[0]），只在 dict/list 内解析
    - 比较操作（==, !=, <, <=, >, >=, in, not in, is, is not）
    - 布尔操作（and, or, not），以及 &&、||、! 写法
    - 算术操作（+, -, *, /, //, %）
    - 三元表达式、字面量（数字、字符串、布尔值、null、列表、元组、字典）

    禁止：
    - 函数调用、lambda、推导式
    - 下划线开头及保留名的属性/键
    - 赋值、import
    """

    def __init__(
        self,
        namespace: Mapping[str, Any],
        allowed: Optional[Iterable[str]] = None,
    ):
        """
        Args:
            namespace: 可用变量的命名空间
            allowed: 允许引用的标识符，默认为命名空间的全部键
        """
        self.namespace = namespace
        self.allowed = frozenset(allowed if allowed is not None else namespace.keys())

    def evaluate(self, expression: str) -> Any:
        """
        求值表达式

        Raises:
            SandboxViolation: 表达式越过沙箱边界
            ExpressionError: 求值失败
        """
        if not isinstance(expression, str) or not expression.strip():
            raise SandboxViolation("表达式不能为空")

        node = _compile(expression, self.allowed)
        try:
            return self._eval_node(node)
        except (SandboxViolation, ExpressionError):
            raise
        except Exception as e:
            raise ExpressionError(f"表达式求值失败 [{expression}]: {e}") from e

    def test(self, expression: str) -> bool:
        """求值并转为布尔值"""
        return bool(self.evaluate(expression))

    def _eval_node(self, node: ast.AST) -> Any:
        """递归评估 AST 节点"""
        # 字面量
        if isinstance(node, ast.Constant):
            return node.value

        # 变量引用，白名单内但未提供的变量视为 null
        if isinstance(node, ast.Name):
            if node.id in _LITERAL_NAMES:
                return _LITERAL_NAMES[node.id]
            return self.namespace.get(node.id)

        # 数据访问
        if isinstance(node, ast.Attribute):
            return self._member(self._eval_node(node.value), node.attr)

        if isinstance(node, ast.Subscript):
            base = self._eval_node(node.value)
            return self._member(base, self._eval_node(node.slice))

        if isinstance(node, ast.Compare):
            return self._eval_compare(node)

        if isinstance(node, ast.BoolOp):
            return self._eval_boolop(node)

        if isinstance(node, ast.UnaryOp):
            operand = self._eval_node(node.operand)
            return _ALLOWED_UNARYOPS[type(node.op)](operand)

        if isinstance(node, ast.BinOp):
            return self._eval_binop(node)

        if isinstance(node, ast.List):
            return [self._eval_node(elt) for elt in node.elts]

        if isinstance(node, ast.Tuple):
            return tuple(self._eval_node(elt) for elt in node.elts)

        if isinstance(node, ast.Dict):
            return {
                self._eval_node(k): self._eval_node(v)
                for k, v in zip(node.keys, node.values)
            }

        # IfExp (三元表达式)
        if isinstance(node, ast.IfExp):
            if self._eval_node(node.test):
                return self._eval_node(node.body)
            return self._eval_node(node.orelse)

        raise SandboxViolation(f"不支持的操作: {type(node).__name__}")

    @staticmethod
    def _member(base: Any, key: Any) -> Any:
        """在数据内取成员，缺失时为 null，从不访问 Python 属性"""
        if isinstance(key, str):
            if is_reserved_name(key):
                raise SandboxViolation(f"不允许访问保留键: {key}")
            if isinstance(base, dict):
                return base.get(key)
            return None
        if isinstance(key, int) and not isinstance(key, bool):
            if isinstance(base, (list, tuple, str)) and -len(base) <= key < len(base):
                return base[key]
            return None
        raise ExpressionError(f"不支持的下标类型: {type(key).__name__}")

    def _eval_compare(self, node: ast.Compare) -> bool:
        """评估比较表达式"""
        left = self._eval_node(node.left)

        for op, comparator in zip(node.ops, node.comparators):
            right = self._eval_node(comparator)
            if not _ALLOWED_COMPARATORS[type(op)](left, right):
                return False
            left = right

        return True

    def _eval_boolop(self, node: ast.BoolOp) -> Any:
        """评估布尔操作，返回决定结果的操作数"""
        result: Any = None
        if isinstance(node.op, ast.And):
            for value in node.values:
                result = self._eval_node(value)
                if not result:
                    return result
            return result
        for value in node.values:
            result = self._eval_node(value)
            if result:
                return result
        return result

    def _eval_binop(self, node: ast.BinOp) -> Any:
        """评估二元操作"""
        left = self._eval_node(node.left)
        right = self._eval_node(node.right)

        if isinstance(node.op, ast.Mod) and isinstance(left, str):
            # printf 风格的宽度/精度可以构造任意长的字符串
            raise ExpressionError("不允许对字符串使用 % 格式化")
        if isinstance(node.op, ast.Mult):
            _check_repeat(left, right)
            _check_repeat(right, left)
        elif isinstance(node.op, ast.Add) and isinstance(left, (str, list, tuple)):
            if _element_count(left) + _element_count(right) > MAX_SEQUENCE_RESULT:
                raise ExpressionError("表达式结果过大")

        return _ALLOWED_BINOPS[type(node.op)](left, right)


def _element_count(value: Any, limit: int = MAX_SEQUENCE_RESULT) -> int:
    """
    统计值展开后的元素总数，嵌套容器逐层累加

    重复引用同一子列表时按引用次数计数，超过 ``limit`` 后提前返回。
    """
    total = 0
    pending = [value]
    while pending and total <= limit:
        current = pending.pop()
        if isinstance(current, str):
            total += len(current)
        elif isinstance(current, (list, tuple)):
            total += len(current)
            pending.extend(current)
        elif isinstance(current, dict):
            total += len(current)
            pending.extend(current.values())
    return total


def _check_repeat(seq: Any, times: Any) -> None:
    if not isinstance(seq, (str, list, tuple)) or not isinstance(times, int) or times <= 0:
        return
    if _element_count(seq) * times > MAX_SEQUENCE_RESULT:
        raise ExpressionError("表达式结果过大")


def evaluate_expression(
    expression: str,
    namespace: Dict[str, Any],
    allowed: Optional[Iterable[str]] = None,
) -> Any:
    """
    便捷函数：在白名单内求值表达式

    Args:
        expression: 表达式字符串
        namespace: 可用变量的命名空间
        allowed: 允许的标识符，默认为命名空间全部键

    Returns:
        求值结果
    """
    return ExpressionEvaluator(namespace, allowed).evaluate(expression)


def evaluate_condition(
    expression: str,
    namespace: Dict[str, Any],
    allowed: Optional[Iterable[str]] = None,
) -> bool:
    """便捷函数：求值条件表达式并转为布尔值"""
    return ExpressionEvaluator(namespace, allowed).test(expression)
