"""管线注册表 - 带版本的定义 CRUD，委托给存储层"""

from __future__ import annotations

import uuid
from typing import Any, List, Mapping, Optional, Union

from pydantic import ValidationError

from conductor.core.utils.logger import setup_logger
from conductor.pipeline.errors import PipelineNotFoundError, PipelineValidationError
from conductor.pipeline.schemas import PipelineDefinition, PipelineFilter, utcnow
from conductor.pipeline.validation import validate_definition
from conductor.storage.base import Page, PipelineStore

logger = setup_logger("pipeline_registry")

# 创建/更新时由注册表维护，不接受调用方修改
_MANAGED_FIELDS = {"id", "version", "created_at", "updated_at"}

DefinitionInput = Union[PipelineDefinition, Mapping[str, Any]]


def parse_definition(data: DefinitionInput) -> PipelineDefinition:
    """
    把字典解析为 PipelineDefinition

    Raises:
        PipelineValidationError: 字段缺失、类型错误或配置不合法，errors 中列出全部问题
    """
    if isinstance(data, PipelineDefinition):
        return data
    try:
        return PipelineDefinition.model_validate(dict(data))
    except ValidationError as e:
        errors = [
            f"{'.'.join(str(part) for part in err['loc']) or '<root>'}: {err['msg']}"
            for err in e.errors()
        ]
        raise PipelineValidationError(f"管线定义不合法（{len(errors)} 处错误）", errors) from e


def _field_names(data: Mapping[str, Any]) -> dict:
    """把 camelCase 别名统一为字段名"""
    aliases = {
        (info.alias or name): name for name, info in PipelineDefinition.model_fields.items()
    }
    return {aliases.get(key, key): value for key, value in data.items()}


class PipelineRegistry:
    """
    管线定义注册表

    - create 分配 ID，版本号从 1 开始
    - update 产生新版本，旧版本保留，进行中的 Run 不受影响
    - 所有写入前都会完成结构与沙箱校验
    """

    def __init__(self, store: PipelineStore):
        self.store = store

    def create(self, data: DefinitionInput, owner_id: Optional[str] = None) -> PipelineDefinition:
        definition = parse_definition(data)
        pipeline_id = definition.id or f"pipe_{uuid.uuid4().hex[:16]}"
        if definition.id and self.store.get_definition(pipeline_id) is not None:
            raise PipelineValidationError(f"管线 {pipeline_id} 已存在")

        now = utcnow()
        definition = definition.model_copy(
            update={
                "id": pipeline_id,
                "version": 1,
                "owner_id": owner_id or definition.owner_id,
                "created_at": now,
                "updated_at": now,
            }
        )
        validate_definition(definition)
        self.store.save_definition(definition)
        logger.info(f"创建管线 pipeline_id={pipeline_id} name={definition.name!r}")
        return definition

    def update(self, pipeline_id: str, changes: Mapping[str, Any]) -> PipelineDefinition:
        """
        以最新版本为基础合并修改，保存为新版本

        Raises:
            PipelineNotFoundError: 管线不存在
            PipelineValidationError: 合并后的定义不合法
        """
        current = self.require(pipeline_id)
        merged = current.model_dump()
        merged.update(
            {key: value for key, value in _field_names(changes).items() if key not in _MANAGED_FIELDS}
        )
        merged.update(
            id=current.id,
            version=current.version + 1,
            created_at=current.created_at,
            updated_at=utcnow(),
        )

        definition = parse_definition(merged)
        validate_definition(definition)
        self.store.save_definition(definition)
        logger.info(f"更新管线 pipeline_id={pipeline_id} version={definition.version}")
        return definition

    def delete(self, pipeline_id: str) -> bool:
        deleted = self.store.delete_definition(pipeline_id)
        if deleted:
            logger.info(f"删除管线 pipeline_id={pipeline_id}（{deleted} 个版本）")
        return deleted > 0

    def get(self, pipeline_id: str, version: Optional[int] = None) -> Optional[PipelineDefinition]:
        return self.store.get_definition(pipeline_id, version)

    def require(self, pipeline_id: str, version: Optional[int] = None) -> PipelineDefinition:
        definition = self.get(pipeline_id, version)
        if definition is None:
            suffix = f" version={version}" if version is not None else ""
            raise PipelineNotFoundError(f"管线 {pipeline_id}{suffix} 不存在")
        return definition

    def versions(self, pipeline_id: str) -> List[int]:
        return self.store.list_definition_versions(pipeline_id)

    def list(self, flt: Optional[PipelineFilter] = None) -> Page[PipelineDefinition]:
        return self.store.list_definitions(flt or PipelineFilter())
