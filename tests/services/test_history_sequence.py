"""
Tests for HistoryService.

Covers:
- Per-expense sequence numbers start at 1 and have no gaps
- Metadata stored as JSON-safe values
- Retention purge removes only old history of terminal expenses
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from approval_kernel.domain.approval import HistoryAction
from approval_kernel.services.history_service import HistoryService, to_jsonable


@pytest.fixture
def history(session, deterministic_clock) -> HistoryService:
    return HistoryService(session, deterministic_clock)


class TestSequenceNumbers:

    def test_sequence_is_per_expense(self, seed, org, history):
        first = seed.expense(org.company, org.employee, "10.00")
        second = seed.expense(org.company, org.employee, "20.00")

        rows = [
            history.record(first.id, HistoryAction.SUBMITTED),
            history.record(first.id, HistoryAction.ASSIGNED),
            history.record(second.id, HistoryAction.SUBMITTED),
            history.record(first.id, HistoryAction.APPROVED),
        ]

        assert [r.sequence_number for r in rows] == [1, 2, 1, 3]

    def test_metadata_is_json_safe(self, seed, org, history, approval_selector):
        expense = seed.expense(org.company, org.employee, "10.00")
        step_id = uuid4()

        history.record(
            expense.id, HistoryAction.APPROVED,
            metadata={"step_id": step_id, "approved_amount": Decimal("9.50"), "n": 2},
        )

        [entry] = approval_selector.get_timeline(expense.id)
        assert entry.metadata == {
            "step_id": str(step_id), "approved_amount": "9.50", "n": 2,
        }

    def test_empty_metadata(self, seed, org, history, approval_selector):
        expense = seed.expense(org.company, org.employee, "10.00")
        history.record(expense.id, HistoryAction.SUBMITTED)
        assert approval_selector.get_timeline(expense.id)[0].metadata == {}

    def test_to_jsonable_nested(self):
        value = to_jsonable({"ids": (uuid4(),), "action": HistoryAction.ESCALATED})
        assert value["action"] == "escalated"
        assert isinstance(value["ids"], list)
        assert isinstance(value["ids"][0], str)


class TestPurgeTerminal:

    @pytest.fixture
    def flows(self, seed, org, workflow_service):
        """One approved expense and one still in approval."""
        seed.workflow(
            org.company,
            [{
                "step_number": 1, "step_name": "Manager", "approver_type": "manager",
                "auto_approve_threshold": Decimal("50"),
            }],
        )
        done = seed.expense(org.company, org.employee, "20.00")
        open_ = seed.expense(org.company, org.employee, "200.00")
        workflow_service.submit(done.id)
        workflow_service.submit(open_.id)
        return done, open_

    def test_old_terminal_history_removed(
        self, flows, history, approval_selector, deterministic_clock, captured_logs,
    ):
        done, open_ = flows
        open_count = len(approval_selector.get_timeline(open_.id))
        deterministic_clock.advance_hours(91 * 24)

        deleted = history.purge_terminal(90)

        assert deleted == 3
        assert approval_selector.get_timeline(done.id) == []
        assert len(approval_selector.get_timeline(open_.id)) == open_count
        [record] = [r for r in captured_logs() if r["message"] == "history_purged"]
        assert record["rows_deleted"] == 3

    def test_recent_history_kept(self, flows, history, deterministic_clock):
        deterministic_clock.advance_hours(24)
        assert history.purge_terminal(90) == 0
