"""
基于 SQLite 的持久化存储层。

管理两类核心数据：
- pipeline_definitions: 管线定义，以 (id, version) 为主键，每次更新新增一行
- pipeline_runs: Run 记录，StepState 与上下文嵌入在 body JSON 中

线程安全策略：单连接 + threading.Lock 互斥访问，配合 WAL 模式减少写锁冲突。
"""

from __future__ import annotations

import sqlite3
import threading
from pathlib import Path
from typing import Any, List, Optional

from conductor.pipeline.schemas import PipelineDefinition, PipelineFilter, Run, RunFilter
from conductor.settings import get_storage_settings
from conductor.storage.base import Page, PipelineStore, matches_definition, paginate
from conductor.storage.memory import InMemoryStore


class SQLiteStore(PipelineStore):
    """基于 SQLite 的持久化存储，提供线程安全的读写接口。

    采用单连接模式，所有读写操作通过 threading.Lock 串行化，
    适用于单进程内多个 Run 并发写入的场景。
    """

    def __init__(self, db_path: Optional[Path] = None) -> None:
        self.db_path = Path(db_path or get_storage_settings().db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        # check_same_thread=False 允许多线程共用同一连接，由 _lock 保证安全
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        with self._conn:
            # WAL 模式：允许读写并发，减少锁等待
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")
        self._init_schema()

    def _init_schema(self) -> None:
        with self._conn:
            # ---------- pipeline_definitions 表 ----------
            # 每个版本一行，body 为完整定义的 JSON（camelCase）
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS pipeline_definitions (
                    id TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    name TEXT NOT NULL,
                    enabled INTEGER NOT NULL,
                    owner_id TEXT,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL,
                    body TEXT NOT NULL,
                    PRIMARY KEY (id, version)
                )
                """
            )

            # ---------- pipeline_runs 表 ----------
            # created_at 为 Unix 时间戳，用于倒序分页
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS pipeline_runs (
                    id TEXT PRIMARY KEY,
                    pipeline_id TEXT NOT NULL,
                    pipeline_version INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL,
                    body TEXT NOT NULL
                )
                """
            )

            # ---------- 索引 ----------
            self._conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_pipeline_runs_pipeline
                ON pipeline_runs(pipeline_id, created_at)
                """
            )
            self._conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_pipeline_runs_status
                ON pipeline_runs(status)
                """
            )

    # ============ 管线定义 ============

    def save_definition(self, definition: PipelineDefinition) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT INTO pipeline_definitions (
                    id, version, name, enabled, owner_id, created_at, updated_at, body
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id, version) DO UPDATE SET
                    name=excluded.name,
                    enabled=excluded.enabled,
                    owner_id=excluded.owner_id,
                    updated_at=excluded.updated_at,
                    body=excluded.body
                """,
                (
                    definition.id,
                    definition.version,
                    definition.name,
                    1 if definition.enabled else 0,
                    definition.owner_id,
                    definition.created_at.timestamp(),
                    definition.updated_at.timestamp(),
                    definition.model_dump_json(by_alias=True),
                ),
            )

    def get_definition(
        self, pipeline_id: str, version: Optional[int] = None
    ) -> Optional[PipelineDefinition]:
        with self._lock:
            if version is None:
                row = self._conn.execute(
                    """
                    SELECT body FROM pipeline_definitions
                    WHERE id = ? ORDER BY version DESC LIMIT 1
                    """,
                    (pipeline_id,),
                ).fetchone()
            else:
                row = self._conn.execute(
                    "SELECT body FROM pipeline_definitions WHERE id = ? AND version = ?",
                    (pipeline_id, version),
                ).fetchone()
        if not row:
            return None
        return PipelineDefinition.model_validate_json(row["body"])

    def list_definition_versions(self, pipeline_id: str) -> List[int]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT version FROM pipeline_definitions WHERE id = ? ORDER BY version ASC",
                (pipeline_id,),
            ).fetchall()
        return [row["version"] for row in rows]

    def list_definitions(self, flt: PipelineFilter) -> Page[PipelineDefinition]:
        """取每条管线的最新版本，在内存中按标签/搜索词筛选后分页"""
        conditions = []
        params: List[Any] = []
        if flt.enabled is not None:
            conditions.append("d.enabled = ?")
            params.append(1 if flt.enabled else 0)
        if flt.owner_id is not None:
            conditions.append("d.owner_id = ?")
            params.append(flt.owner_id)
        extra = f"AND {' AND '.join(conditions)}" if conditions else ""

        with self._lock:
            rows = self._conn.execute(
                f"""
                SELECT d.body FROM pipeline_definitions d
                WHERE d.version = (
                    SELECT MAX(version) FROM pipeline_definitions WHERE id = d.id
                )
                {extra}
                ORDER BY d.updated_at DESC, d.id DESC
                """,
                params,
            ).fetchall()

        definitions = [PipelineDefinition.model_validate_json(row["body"]) for row in rows]
        matched = [d for d in definitions if matches_definition(d, flt)]
        return paginate(matched, flt.limit, flt.cursor, key=lambda d: d.id)

    def delete_definition(self, pipeline_id: str) -> int:
        with self._lock, self._conn:
            cursor = self._conn.execute(
                "DELETE FROM pipeline_definitions WHERE id = ?", (pipeline_id,)
            )
            return cursor.rowcount

    # ============ Run ============

    def save_run(self, run: Run) -> None:
        updated_at = (run.completed_at or run.started_at or run.created_at).timestamp()
        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT INTO pipeline_runs (
                    id, pipeline_id, pipeline_version, status, created_at, updated_at, body
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    status=excluded.status,
                    updated_at=excluded.updated_at,
                    body=excluded.body
                """,
                (
                    run.id,
                    run.pipeline_id,
                    run.pipeline_version,
                    run.status.value,
                    run.created_at.timestamp(),
                    updated_at,
                    run.model_dump_json(by_alias=True),
                ),
            )

    def get_run(self, run_id: str) -> Optional[Run]:
        with self._lock:
            row = self._conn.execute(
                "SELECT body FROM pipeline_runs WHERE id = ?", (run_id,)
            ).fetchone()
        if not row:
            return None
        return Run.model_validate_json(row["body"])

    def list_runs(self, pipeline_id: str, flt: RunFilter) -> Page[Run]:
        """按 (created_at, id) 倒序做键集分页"""
        conditions = ["pipeline_id = ?"]
        params: List[Any] = [pipeline_id]

        if flt.status:
            conditions.append(f"status IN ({', '.join('?' for _ in flt.status)})")
            params.extend(status.value for status in flt.status)
        if flt.since is not None:
            conditions.append("created_at >= ?")
            params.append(flt.since.timestamp())
        if flt.until is not None:
            conditions.append("created_at <= ?")
            params.append(flt.until.timestamp())

        with self._lock:
            if flt.cursor:
                anchor = self._conn.execute(
                    "SELECT created_at FROM pipeline_runs WHERE id = ? AND pipeline_id = ?",
                    (flt.cursor, pipeline_id),
                ).fetchone()
                if not anchor:
                    return Page()
                conditions.append("(created_at < ? OR (created_at = ? AND id < ?))")
                params.extend([anchor["created_at"], anchor["created_at"], flt.cursor])

            # 多取一行用于判断是否还有下一页
            params.append(flt.limit + 1)
            rows = self._conn.execute(
                f"""
                SELECT body FROM pipeline_runs
                WHERE {' AND '.join(conditions)}
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                params,
            ).fetchall()

        runs = [Run.model_validate_json(row["body"]) for row in rows[: flt.limit]]
        has_more = len(rows) > flt.limit
        return Page(items=runs, next_cursor=runs[-1].id if has_more and runs else None)

    def close(self) -> None:
        with self._lock:
            self._conn.close()


# ---------- 模块级单例 ----------

_store: Optional[PipelineStore] = None


def get_store(db_path: Optional[Path] = None) -> PipelineStore:
    """获取存储单例。

    传入 db_path 时创建独立的 SQLiteStore（用于测试等场景）；
    不传时按 PIPELINE_STORE_BACKEND 构建全局单例。
    """
    global _store
    if db_path is not None:
        return SQLiteStore(db_path=db_path)
    if _store is None:
        settings = get_storage_settings()
        _store = SQLiteStore(settings.db_path) if settings.backend == "sqlite" else InMemoryStore()
    return _store
