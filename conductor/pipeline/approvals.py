"""待审批记录簿"""

from __future__ import annotations

import threading
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple

from conductor.pipeline.schemas import (
    ApprovalConfig,
    ApprovalDecision,
    ApprovalVerdict,
    PendingApproval,
)


class ApprovalError(Exception):
    """审批提交不被接受"""

    pass


class ApprovalResolution(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ApprovalBook:
    """
    登记运行中所有待审批步骤

    规则：
    - 只有列出的审批人可以提交，每人只计一次
    - 同意数达到 minApprovals 即通过
    - 任意一票拒绝立即否决
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._pending: Dict[Tuple[str, str], PendingApproval] = {}

    def open(
        self,
        run_id: str,
        step_id: str,
        config: ApprovalConfig,
        message: str,
        deadline: Optional[datetime],
    ) -> PendingApproval:
        pending = PendingApproval(
            run_id=run_id,
            step_id=step_id,
            approvers=list(dict.fromkeys(config.approvers)),
            min_approvals=config.min_approvals,
            message=message,
            on_timeout=config.on_timeout,
            deadline=deadline,
        )
        with self._lock:
            self._pending[(run_id, step_id)] = pending
        return pending

    def get(self, run_id: str, step_id: str) -> Optional[PendingApproval]:
        with self._lock:
            pending = self._pending.get((run_id, step_id))
            return pending.model_copy(deep=True) if pending else None

    def list_pending(self, run_id: Optional[str] = None) -> List[PendingApproval]:
        with self._lock:
            return [
                p.model_copy(deep=True)
                for (rid, _), p in self._pending.items()
                if run_id is None or rid == run_id
            ]

    def record(self, run_id: str, step_id: str, decision: ApprovalDecision) -> ApprovalResolution:
        """
        记录一次审批

        Raises:
            ApprovalError: 无待审批记录、提交人不在名单内或已提交过
        """
        with self._lock:
            pending = self._pending.get((run_id, step_id))
            if pending is None:
                raise ApprovalError(f"步骤 {step_id} 没有待审批记录")
            if decision.user_id not in pending.approvers:
                raise ApprovalError(f"{decision.user_id} 不在审批人名单内")
            if pending.has_decided(decision.user_id):
                raise ApprovalError(f"{decision.user_id} 已提交过审批")

            pending.decisions.append(decision)
            if decision.decision == ApprovalVerdict.REJECTED:
                return ApprovalResolution.REJECTED
            if pending.approved_count >= pending.min_approvals:
                return ApprovalResolution.APPROVED
            return ApprovalResolution.PENDING

    def decisions(self, run_id: str, step_id: str) -> List[ApprovalDecision]:
        with self._lock:
            pending = self._pending.get((run_id, step_id))
            return [d.model_copy() for d in pending.decisions] if pending else []

    def close(self, run_id: str, step_id: str) -> Optional[PendingApproval]:
        with self._lock:
            return self._pending.pop((run_id, step_id), None)

    def close_run(self, run_id: str) -> int:
        with self._lock:
            keys = [key for key in self._pending if key[0] == run_id]
            for key in keys:
                del self._pending[key]
            return len(keys)
