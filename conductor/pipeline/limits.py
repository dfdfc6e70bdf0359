"""Concurrency limits for heavy step executors."""
from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Optional

from conductor.settings import get_engine_settings


class ConcurrencyLimiter:
    def __init__(self, max_inflight: int, name: str, wait_seconds: float = 300.0) -> None:
        self._sem = threading.Semaphore(max_inflight)
        self.name = name
        self.max_inflight = max_inflight
        self.wait_seconds = wait_seconds

    @contextmanager
    def acquire(
        self,
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        """取得一个并发槽位；等待期间可被 cancel_event 打断"""
        wait_seconds = timeout if timeout is not None else self.wait_seconds
        acquired = False
        waited = 0.0
        # 分片等待，便于及时响应取消
        while waited < wait_seconds:
            slice_seconds = min(0.1, wait_seconds - waited)
            if self._sem.acquire(timeout=slice_seconds):
                acquired = True
                break
            waited += slice_seconds
            if cancel_event is not None and cancel_event.is_set():
                break
        if not acquired:
            raise RuntimeError(f"{self.name} 并发已达上限")
        try:
            yield
        finally:
            self._sem.release()


_script_limiter: Optional[ConcurrencyLimiter] = None
_limiter_lock = threading.Lock()


def get_script_limiter() -> ConcurrencyLimiter:
    """全局脚本并发限制器（单例）"""
    global _script_limiter

    if _script_limiter is None:
        with _limiter_lock:
            if _script_limiter is None:
                settings = get_engine_settings()
                _script_limiter = ConcurrencyLimiter(
                    settings.script_concurrency,
                    "script",
                    wait_seconds=settings.script_slot_wait_seconds,
                )

    return _script_limiter
