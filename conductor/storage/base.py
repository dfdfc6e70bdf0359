"""存储接口：管线定义按 (id, version) 存储，Run 按 id 存储并按 pipeline_id / status 索引"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Generic, List, Optional, TypeVar

from conductor.pipeline.schemas import PipelineDefinition, PipelineFilter, Run, RunFilter

T = TypeVar("T")


@dataclass
class Page(Generic[T]):
    """一页查询结果；next_cursor 为本页最后一项的 id，没有更多数据时为 None"""

    items: List[T] = field(default_factory=list)
    next_cursor: Optional[str] = None

    @property
    def has_more(self) -> bool:
        return self.next_cursor is not None


def matches_definition(definition: PipelineDefinition, flt: PipelineFilter) -> bool:
    if flt.enabled is not None and definition.enabled != flt.enabled:
        return False
    if flt.owner_id is not None and definition.owner_id != flt.owner_id:
        return False
    if flt.tags and not set(flt.tags) & set(definition.tags):
        return False
    if flt.search:
        needle = flt.search.lower()
        haystack = f"{definition.name}\n{definition.description or ''}".lower()
        if needle not in haystack:
            return False
    return True


def matches_run(run: Run, flt: RunFilter) -> bool:
    if flt.status and run.status not in flt.status:
        return False
    if flt.since is not None and run.created_at < flt.since:
        return False
    if flt.until is not None and run.created_at > flt.until:
        return False
    return True


def paginate(
    items: List[T],
    limit: int,
    cursor: Optional[str],
    key: Callable[[T], str],
) -> Page[T]:
    """
    在已排序（最新在前）的结果上做游标分页

    cursor 指向的条目不存在时返回空页。
    """
    start = 0
    if cursor:
        ids = [key(item) for item in items]
        if cursor not in ids:
            return Page()
        start = ids.index(cursor) + 1
    window = items[start : start + limit]
    has_more = start + limit < len(items)
    return Page(items=window, next_cursor=key(window[-1]) if has_more and window else None)


class PipelineStore(ABC):
    """管线定义与 Run 的持久化接口"""

    # ============ 管线定义 ============

    @abstractmethod
    def save_definition(self, definition: PipelineDefinition) -> None:
        """保存一个定义版本；(id, version) 已存在时覆盖"""

    @abstractmethod
    def get_definition(
        self, pipeline_id: str, version: Optional[int] = None
    ) -> Optional[PipelineDefinition]:
        """读取指定版本，version 为 None 时读取最新版本"""

    @abstractmethod
    def list_definition_versions(self, pipeline_id: str) -> List[int]:
        """升序返回所有版本号"""

    @abstractmethod
    def list_definitions(self, flt: PipelineFilter) -> Page[PipelineDefinition]:
        """按最新版本筛选，按 updated_at 倒序"""

    @abstractmethod
    def delete_definition(self, pipeline_id: str) -> int:
        """删除所有版本，返回删除的版本数；已有 Run 保留"""

    # ============ Run ============

    @abstractmethod
    def save_run(self, run: Run) -> None:
        """插入或覆盖 Run"""

    @abstractmethod
    def get_run(self, run_id: str) -> Optional[Run]:
        pass

    @abstractmethod
    def list_runs(self, pipeline_id: str, flt: RunFilter) -> Page[Run]:
        """按 created_at 倒序"""

    def close(self) -> None:
        pass
