"""DAG 图结构、控制流归属与拓扑排序"""

from __future__ import annotations

from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Dict, List, Optional, Set

from conductor.pipeline.errors import CyclicDependencyError, InvalidGraphError
from conductor.pipeline.schemas import PipelineDefinition, Step, StepType


@dataclass(frozen=True)
class Ownership:
    """控制流步骤对子步骤的归属关系"""

    parent_id: str
    kind: StepType
    branch: Optional[str] = None  # conditional 的 then/else


class PipelineGraph:
    """
    DAG 图结构

    解析 PipelineDefinition 构建有向无环图，支持：
    - dependsOn 依赖边与控制流归属边
    - 循环依赖检测（两类边一起参与）
    - 拓扑排序（同层按定义顺序）
    - 依赖/下游/子步骤查询
    """

    def __init__(self, definition: PipelineDefinition):
        """
        从 PipelineDefinition 构建图

        Raises:
            InvalidGraphError: 存在悬空引用或重复归属
            CyclicDependencyError: 存在循环依赖
        """
        self.definition = definition

        # 步骤 ID，保持定义顺序
        self.step_ids: List[str] = [step.id for step in definition.steps]
        self.steps: Dict[str, Step] = {step.id: step for step in definition.steps}
        self._position: Dict[str, int] = {sid: i for i, sid in enumerate(self.step_ids)}

        # 依赖边：dependency -> [dependent, ...]
        self._adjacency: Dict[str, List[str]] = defaultdict(list)
        # 反向：step -> [dependency, ...]
        self._reverse_adjacency: Dict[str, List[str]] = defaultdict(list)

        # 归属：child -> Ownership；parent -> [child, ...]
        self._owner: Dict[str, Ownership] = {}
        self._children: Dict[str, List[str]] = defaultdict(list)

        self._build_graph()
        self._build_ownership()
        self._detect_cycle()
        self._order = self._kahn()

    def _build_graph(self) -> None:
        """构建依赖邻接表"""
        for step in self.definition.steps:
            for dep in step.depends_on:
                if dep not in self.steps:
                    raise InvalidGraphError(f"步骤 {step.id} 依赖的步骤不存在: {dep}")
                self._adjacency[dep].append(step.id)
                self._reverse_adjacency[step.id].append(dep)

    def _build_ownership(self) -> None:
        """登记 conditional/parallel/loop 对子步骤的归属"""
        for step in self.definition.steps:
            config = step.config
            if step.type == StepType.CONDITIONAL:
                refs = [(c, "then") for c in config.then_steps] + [
                    (c, "else") for c in config.else_steps
                ]
            elif step.type in (StepType.PARALLEL, StepType.LOOP):
                refs = [(c, None) for c in config.steps]
            else:
                continue

            for child_id, branch in refs:
                if child_id not in self.steps:
                    raise InvalidGraphError(f"步骤 {step.id} 引用的子步骤不存在: {child_id}")
                if child_id == step.id:
                    raise InvalidGraphError(f"步骤 {step.id} 不能把自身作为子步骤")
                if child_id in self._owner:
                    raise InvalidGraphError(
                        f"步骤 {child_id} 同时归属于 {self._owner[child_id].parent_id} 和 {step.id}"
                    )
                self._owner[child_id] = Ownership(step.id, step.type, branch)
                self._children[step.id].append(child_id)

    def _edges_from(self, step_id: str) -> List[str]:
        return self._adjacency[step_id] + self._children[step_id]

    def _detect_cycle(self) -> None:
        """使用 DFS 检测循环依赖"""
        # 0: 未访问, 1: 访问中, 2: 已完成
        state: Dict[str, int] = {step_id: 0 for step_id in self.step_ids}
        path: List[str] = []

        def dfs(step_id: str) -> None:
            if state[step_id] == 1:
                cycle_start = path.index(step_id)
                cycle = path[cycle_start:] + [step_id]
                raise CyclicDependencyError(f"检测到循环依赖: {' -> '.join(cycle)}")
            if state[step_id] == 2:
                return

            state[step_id] = 1
            path.append(step_id)
            for target in self._edges_from(step_id):
                dfs(target)
            path.pop()
            state[step_id] = 2

        for step_id in self.step_ids:
            if state[step_id] == 0:
                dfs(step_id)

    def _kahn(self) -> List[str]:
        in_degree: Dict[str, int] = {sid: 0 for sid in self.step_ids}
        for sid in self.step_ids:
            for target in self._edges_from(sid):
                in_degree[target] += 1

        queue = deque(sid for sid in self.step_ids if in_degree[sid] == 0)
        result: List[str] = []
        while queue:
            sid = queue.popleft()
            result.append(sid)
            ready = []
            for target in self._edges_from(sid):
                in_degree[target] -= 1
                if in_degree[target] == 0:
                    ready.append(target)
            queue.extend(sorted(ready, key=self._position.__getitem__))

        if len(result) != len(self.step_ids):
            raise CyclicDependencyError("拓扑排序失败，存在循环依赖")
        return result

    def topological_sort(self) -> List[str]:
        """返回拓扑排序后的步骤 ID 列表"""
        return list(self._order)

    def dependencies(self, step_id: str) -> List[str]:
        return list(self._reverse_adjacency[step_id])

    def dependents(self, step_id: str) -> List[str]:
        return list(self._adjacency[step_id])

    def owner(self, step_id: str) -> Optional[Ownership]:
        return self._owner.get(step_id)

    def children(self, step_id: str) -> List[str]:
        return list(self._children[step_id])

    def descendants(self, step_id: str) -> List[str]:
        """按归属关系递归展开的全部子孙步骤"""
        result: List[str] = []
        stack = list(reversed(self._children[step_id]))
        while stack:
            child = stack.pop()
            result.append(child)
            stack.extend(reversed(self._children[child]))
        return result

    def enclosing_loops(self, step_id: str) -> List[str]:
        """由内到外列出包含该步骤的 loop 步骤"""
        loops = []
        current = self._owner.get(step_id)
        while current is not None:
            if current.kind == StepType.LOOP:
                loops.append(current.parent_id)
            current = self._owner.get(current.parent_id)
        return loops

    def loop_body(self, loop_id: str) -> List[str]:
        """loop 的内部步骤，按拓扑顺序"""
        members: Set[str] = set(self._children[loop_id])
        return [sid for sid in self._order if sid in members]

    def __repr__(self) -> str:
        return (
            f"PipelineGraph(steps={len(self.step_ids)}, "
            f"edges={sum(len(t) for t in self._adjacency.values())}, "
            f"owned={len(self._owner)})"
        )
