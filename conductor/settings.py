"""
引擎配置模块，基于 pydantic-settings 实现。

各配置类通过环境变量注入参数值，每个类拥有独立的环境变量前缀，
使用 lru_cache 保证配置对象在进程生命周期内只实例化一次。
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from conductor.config import WORK_PATH


class EngineSettings(BaseSettings):
    """执行引擎配置，环境变量前缀为 PIPELINE_。"""

    model_config = SettingsConfigDict(env_prefix="PIPELINE_", extra="ignore")

    # 单个 Run 的 worker 线程数
    max_workers_per_run: int = Field(default=8, ge=1)
    # 全局同时运行的脚本数
    script_concurrency: int = Field(default=4, ge=1)
    # 获取脚本并发槽位的最长等待（秒）
    script_slot_wait_seconds: float = Field(default=300.0, gt=0)
    script_shell: str = "/bin/bash"
    script_working_directory: str = "/tmp"
    # 各类步骤的默认超时（毫秒）
    script_timeout_ms: int = Field(default=300_000, gt=0)
    webhook_timeout_ms: int = Field(default=30_000, gt=0)
    sub_pipeline_timeout_ms: int = Field(default=3_600_000, gt=0)
    # 子管线最大嵌套深度
    max_sub_pipeline_depth: int = Field(default=8, ge=1)
    # 调度循环在没有事件时的最长休眠（秒）
    scheduler_poll_seconds: float = Field(default=1.0, gt=0)


class StorageSettings(BaseSettings):
    """存储后端配置，环境变量前缀为 PIPELINE_STORE_。"""

    model_config = SettingsConfigDict(env_prefix="PIPELINE_STORE_", extra="ignore")

    backend: Literal["memory", "sqlite"] = "memory"
    db_path: Path = WORK_PATH / "pipelines.db"


class AgentSettings(BaseSettings):
    """Agent 调度后端配置，环境变量前缀为 AGENT_；
    同时兼容 OPENAI_BASE_URL / OPENAI_API_KEY。"""

    model_config = SettingsConfigDict(env_prefix="AGENT_", extra="ignore")

    model: str = "gpt-4o-mini"
    base_url: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("AGENT_BASE_URL", "OPENAI_BASE_URL"),
    )
    api_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("AGENT_API_KEY", "OPENAI_API_KEY"),
    )
    temperature: float = Field(default=0.2, ge=0, le=2)


# --- 单例工厂函数 ---


@lru_cache
def get_engine_settings() -> EngineSettings:
    return EngineSettings()


@lru_cache
def get_storage_settings() -> StorageSettings:
    return StorageSettings()


@lru_cache
def get_agent_settings() -> AgentSettings:
    return AgentSettings()


__all__ = [
    "AgentSettings",
    "EngineSettings",
    "StorageSettings",
    "get_agent_settings",
    "get_engine_settings",
    "get_storage_settings",
]
