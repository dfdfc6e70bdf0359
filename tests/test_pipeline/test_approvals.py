"""审批记录簿测试"""

import pytest

from conductor.pipeline.approvals import ApprovalBook, ApprovalError, ApprovalResolution
from conductor.pipeline.schemas import ApprovalConfig, ApprovalDecision


def decision(user_id, verdict="approved"):
    return ApprovalDecision(userId=user_id, decision=verdict)


@pytest.fixture
def book():
    book = ApprovalBook()
    config = ApprovalConfig(approvers=["ann", "bob", "cat", "ann"], message="ship?", minApprovals=2)
    book.open("run_1", "gate", config, "ship?", None)
    return book


class TestApprovalBook:
    """ApprovalBook 测试"""

    def test_quorum(self, book):
        """达到 minApprovals 后通过"""
        assert book.record("run_1", "gate", decision("ann")) == ApprovalResolution.PENDING
        assert book.record("run_1", "gate", decision("bob")) == ApprovalResolution.APPROVED
        assert [d.user_id for d in book.decisions("run_1", "gate")] == ["ann", "bob"]

    def test_approvers_deduplicated(self, book):
        """审批人去重"""
        assert book.get("run_1", "gate").approvers == ["ann", "bob", "cat"]

    def test_single_rejection_vetoes(self, book):
        """任意一票拒绝立即否决"""
        book.record("run_1", "gate", decision("ann"))
        assert book.record("run_1", "gate", decision("cat", "rejected")) == ApprovalResolution.REJECTED

    def test_unlisted_and_duplicate_submitters(self, book):
        """名单外与重复提交被拒绝"""
        with pytest.raises(ApprovalError, match="不在审批人名单内"):
            book.record("run_1", "gate", decision("mallory"))
        book.record("run_1", "gate", decision("ann"))
        with pytest.raises(ApprovalError, match="已提交过"):
            book.record("run_1", "gate", decision("ann", "rejected"))

    def test_unknown_step(self, book):
        """无待审批记录"""
        with pytest.raises(ApprovalError, match="没有待审批记录"):
            book.record("run_1", "other", decision("ann"))

    def test_list_and_close(self, book):
        """列出与关闭"""
        config = ApprovalConfig(approvers=["ann"], message="again?")
        book.open("run_2", "gate", config, "again?", None)

        assert len(book.list_pending()) == 2
        assert [p.run_id for p in book.list_pending("run_2")] == ["run_2"]
        assert book.close("run_1", "gate") is not None
        assert book.close("run_1", "gate") is None
        assert book.close_run("run_2") == 1
        assert book.list_pending() == []

    def test_returned_records_are_copies(self, book):
        """返回的是副本"""
        pending = book.get("run_1", "gate")
        pending.decisions.append(decision("ann"))
        assert book.get("run_1", "gate").decisions == []
