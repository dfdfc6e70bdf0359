"""存储层测试：内存与 SQLite 两种实现行为一致"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from conductor.pipeline.definitions import parse_definition
from conductor.pipeline.schemas import (
    PipelineFilter,
    Run,
    RunFilter,
    RunStatus,
    StepState,
    StepStatus,
)
from conductor.storage import InMemoryStore, SQLiteStore, get_store

BASE_TIME = datetime(2026, 1, 1, tzinfo=timezone.utc)


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    """两种存储实现"""
    if request.param == "memory":
        s = InMemoryStore()
    else:
        s = SQLiteStore(db_path=tmp_path / "pipelines.db")
    yield s
    s.close()


def make_pipeline(pipeline_id, version=1, minutes=0, **kwargs):
    """辅助函数：构造带 ID 与时间戳的定义"""
    data = {
        "name": kwargs.pop("name", f"pipeline {pipeline_id}"),
        "steps": [{"id": "a", "name": "A", "type": "agent_task", "config": {"prompt": "go"}}],
        **kwargs,
    }
    stamp = BASE_TIME + timedelta(minutes=minutes)
    return parse_definition(data).model_copy(
        update={"id": pipeline_id, "version": version, "created_at": BASE_TIME, "updated_at": stamp}
    )


def make_run(run_id, pipeline_id="pipe_1", status=RunStatus.COMPLETED, minutes=0):
    """辅助函数：构造 Run 记录"""
    return Run(
        id=run_id,
        pipeline_id=pipeline_id,
        pipeline_version=1,
        status=status,
        context={"answer": 42, "nested": {"items": [1, 2]}},
        step_states={"a": StepState(step_id="a", status=StepStatus.COMPLETED, output={"ok": True})},
        created_at=BASE_TIME + timedelta(minutes=minutes),
    )


class TestDefinitions:
    """管线定义存储"""

    def test_versions_kept(self, store):
        """每个版本单独保存，默认读取最新版本"""
        store.save_definition(make_pipeline("pipe_1", version=1, name="first"))
        store.save_definition(make_pipeline("pipe_1", version=2, minutes=1, name="second"))

        assert store.get_definition("pipe_1").name == "second"
        assert store.get_definition("pipe_1", 1).name == "first"
        assert store.get_definition("pipe_1", 3) is None
        assert store.get_definition("pipe_missing") is None
        assert store.list_definition_versions("pipe_1") == [1, 2]

    def test_round_trip_preserves_fields(self, store):
        """读回的定义与写入的一致"""
        original = make_pipeline(
            "pipe_1",
            description="nightly report",
            tags=["reports"],
            contextDefaults={"region": "eu"},
            retryPolicy={"maxRetries": 2},
        )
        store.save_definition(original)
        assert store.get_definition("pipe_1") == original

    def test_delete_returns_version_count(self, store):
        """删除所有版本"""
        store.save_definition(make_pipeline("pipe_1", version=1))
        store.save_definition(make_pipeline("pipe_1", version=2))
        assert store.delete_definition("pipe_1") == 2
        assert store.get_definition("pipe_1") is None
        assert store.delete_definition("pipe_1") == 0

    def test_list_uses_latest_version(self, store):
        """列表只包含每条管线的最新版本，按更新时间倒序"""
        store.save_definition(make_pipeline("pipe_a", version=1, minutes=0))
        store.save_definition(make_pipeline("pipe_b", version=1, minutes=1))
        store.save_definition(make_pipeline("pipe_a", version=2, minutes=2, enabled=False))

        page = store.list_definitions(PipelineFilter())
        assert [(d.id, d.version) for d in page.items] == [("pipe_a", 2), ("pipe_b", 1)]
        assert not page.has_more

    def test_filters(self, store):
        """按启用状态、所有者、标签与关键词过滤"""
        store.save_definition(make_pipeline("pipe_a", tags=["etl", "daily"], ownerId="ann", name="Daily ETL"))
        store.save_definition(make_pipeline("pipe_b", tags=["ml"], ownerId="bob", enabled=False))
        store.save_definition(make_pipeline("pipe_c", description="Weekly digest", ownerId="ann"))

        def ids(**kwargs):
            return sorted(d.id for d in store.list_definitions(PipelineFilter(**kwargs)).items)

        assert ids(enabled=False) == ["pipe_b"]
        assert ids(owner_id="ann") == ["pipe_a", "pipe_c"]
        assert ids(tags=["daily", "ml"]) == ["pipe_a", "pipe_b"]
        assert ids(search="etl") == ["pipe_a"]
        assert ids(search="DIGEST") == ["pipe_c"]

    def test_pagination(self, store):
        """游标分页"""
        for i in range(5):
            store.save_definition(make_pipeline(f"pipe_{i}", minutes=i))

        first = store.list_definitions(PipelineFilter(limit=2))
        assert [d.id for d in first.items] == ["pipe_4", "pipe_3"]
        assert first.next_cursor == "pipe_3"

        second = store.list_definitions(PipelineFilter(limit=2, cursor=first.next_cursor))
        assert [d.id for d in second.items] == ["pipe_2", "pipe_1"]

        last = store.list_definitions(PipelineFilter(limit=2, cursor=second.next_cursor))
        assert [d.id for d in last.items] == ["pipe_0"]
        assert last.next_cursor is None

    def test_unknown_cursor(self, store):
        """游标不存在时返回空页"""
        store.save_definition(make_pipeline("pipe_1"))
        page = store.list_definitions(PipelineFilter(cursor="pipe_gone"))
        assert page.items == []
        assert not page.has_more


class TestRuns:
    """Run 存储"""

    def test_save_and_overwrite(self, store):
        """同 ID 覆盖写入"""
        run = make_run("run_1", status=RunStatus.RUNNING)
        store.save_run(run)
        assert store.get_run("run_1").status == RunStatus.RUNNING

        run.status = RunStatus.FAILED
        store.save_run(run)
        loaded = store.get_run("run_1")
        assert loaded.status == RunStatus.FAILED
        assert loaded.context == {"answer": 42, "nested": {"items": [1, 2]}}
        assert loaded.step_states["a"].output == {"ok": True}
        assert store.get_run("run_missing") is None

    def test_stored_copy_is_isolated(self, store):
        """写入后修改原对象不影响已存储的记录"""
        run = make_run("run_1")
        store.save_run(run)
        run.context["answer"] = 0
        assert store.get_run("run_1").context["answer"] == 42

    def test_list_scoped_and_ordered(self, store):
        """按管线隔离，按创建时间倒序"""
        store.save_run(make_run("run_1", minutes=1))
        store.save_run(make_run("run_2", minutes=3))
        store.save_run(make_run("run_3", minutes=2))
        store.save_run(make_run("run_other", pipeline_id="pipe_2"))

        assert [r.id for r in store.list_runs("pipe_1", RunFilter()).items] == ["run_2", "run_3", "run_1"]
        assert [r.id for r in store.list_runs("pipe_2", RunFilter()).items] == ["run_other"]

    def test_filters(self, store):
        """按状态与时间窗口过滤"""
        store.save_run(make_run("run_ok", status=RunStatus.COMPLETED, minutes=0))
        store.save_run(make_run("run_bad", status=RunStatus.FAILED, minutes=10))
        store.save_run(make_run("run_stop", status=RunStatus.CANCELLED, minutes=20))

        def ids(**kwargs):
            return sorted(r.id for r in store.list_runs("pipe_1", RunFilter(**kwargs)).items)

        assert ids(status=[RunStatus.FAILED, RunStatus.CANCELLED]) == ["run_bad", "run_stop"]
        assert ids(since=BASE_TIME + timedelta(minutes=5)) == ["run_bad", "run_stop"]
        assert ids(until=BASE_TIME + timedelta(minutes=10)) == ["run_bad", "run_ok"]

    def test_pagination(self, store):
        """游标分页与未知游标"""
        for i in range(5):
            store.save_run(make_run(f"run_{i}", minutes=i))

        first = store.list_runs("pipe_1", RunFilter(limit=3))
        assert [r.id for r in first.items] == ["run_4", "run_3", "run_2"]
        assert first.has_more

        rest = store.list_runs("pipe_1", RunFilter(limit=3, cursor=first.next_cursor))
        assert [r.id for r in rest.items] == ["run_1", "run_0"]
        assert not rest.has_more

        assert store.list_runs("pipe_1", RunFilter(cursor="run_gone")).items == []


class TestSQLitePersistence:
    """SQLite 特有行为"""

    def test_survives_reopen(self, tmp_path):
        """重新打开数据库后数据仍在"""
        db_path = tmp_path / "nested" / "pipelines.db"
        first = SQLiteStore(db_path=db_path)
        first.save_definition(make_pipeline("pipe_1"))
        first.save_run(make_run("run_1"))
        first.close()

        second = SQLiteStore(db_path=db_path)
        try:
            assert second.get_definition("pipe_1").id == "pipe_1"
            assert second.get_run("run_1").context["answer"] == 42
        finally:
            second.close()

    def test_get_store_with_path(self, tmp_path):
        """传入路径时创建独立实例"""
        first = get_store(db_path=tmp_path / "a.db")
        second = get_store(db_path=tmp_path / "b.db")
        try:
            assert isinstance(first, SQLiteStore)
            assert first is not second
            assert (tmp_path / "b.db").exists()
        finally:
            first.close()
            second.close()
