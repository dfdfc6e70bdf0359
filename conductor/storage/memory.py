"""进程内存储，用于测试与单进程部署"""

from __future__ import annotations

import threading
from typing import Dict, List, Optional

from conductor.pipeline.schemas import PipelineDefinition, PipelineFilter, Run, RunFilter
from conductor.storage.base import Page, PipelineStore, matches_definition, matches_run, paginate


class InMemoryStore(PipelineStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._definitions: Dict[str, Dict[int, PipelineDefinition]] = {}
        self._runs: Dict[str, Run] = {}

    # ============ 管线定义 ============

    def save_definition(self, definition: PipelineDefinition) -> None:
        with self._lock:
            versions = self._definitions.setdefault(definition.id, {})
            versions[definition.version] = definition.model_copy(deep=True)

    def get_definition(
        self, pipeline_id: str, version: Optional[int] = None
    ) -> Optional[PipelineDefinition]:
        with self._lock:
            versions = self._definitions.get(pipeline_id)
            if not versions:
                return None
            if version is None:
                version = max(versions)
            definition = versions.get(version)
            return definition.model_copy(deep=True) if definition else None

    def list_definition_versions(self, pipeline_id: str) -> List[int]:
        with self._lock:
            return sorted(self._definitions.get(pipeline_id, {}))

    def list_definitions(self, flt: PipelineFilter) -> Page[PipelineDefinition]:
        with self._lock:
            latest = [versions[max(versions)] for versions in self._definitions.values() if versions]
        matched = [d for d in latest if matches_definition(d, flt)]
        matched.sort(key=lambda d: (d.updated_at, d.id), reverse=True)
        page = paginate(matched, flt.limit, flt.cursor, key=lambda d: d.id)
        page.items = [d.model_copy(deep=True) for d in page.items]
        return page

    def delete_definition(self, pipeline_id: str) -> int:
        with self._lock:
            return len(self._definitions.pop(pipeline_id, {}))

    # ============ Run ============

    def save_run(self, run: Run) -> None:
        with self._lock:
            self._runs[run.id] = run.model_copy(deep=True)

    def get_run(self, run_id: str) -> Optional[Run]:
        with self._lock:
            run = self._runs.get(run_id)
            return run.model_copy(deep=True) if run else None

    def list_runs(self, pipeline_id: str, flt: RunFilter) -> Page[Run]:
        with self._lock:
            matched = [
                r for r in self._runs.values() if r.pipeline_id == pipeline_id and matches_run(r, flt)
            ]
        matched.sort(key=lambda r: (r.created_at, r.id), reverse=True)
        page = paginate(matched, flt.limit, flt.cursor, key=lambda r: r.id)
        page.items = [r.model_copy(deep=True) for r in page.items]
        return page
