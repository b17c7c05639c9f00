from datetime import timedelta

import pytest

from app.core.exceptions import ConflictError, NotFoundError, UnauthorizedError, ValidationError
from app.models.approval import ApprovalComment
from app.models.workflow import WorkflowInstance
from app.utils.datetime_helpers import utcnow

from factories import executions_of, role_step, start_workflow, user_step


def create_request(engine, seed, actor=None, **fields):
    data = {
        "entity_type": "stock_adjustment",
        "entity_id": "ADJ-500",
        "title": "Write-off of damaged stock",
        "assigned_to": seed.approver.id,
        "data": {"quantity": -15, "reason": "water damage"},
    }
    data.update(fields)
    return engine.create_approval_request(actor or seed.requester, **data)


class TestAdHocRequests:
    def test_request_is_a_single_step_workflow(self, engine, seed, db, sink):
        approval = create_request(engine, seed, priority="High")

        instance = db.get(WorkflowInstance, approval.workflow_instance_id)
        assert approval.status == "pending"
        assert approval.requested_by == seed.requester.id
        assert approval.priority == "High"
        assert approval.data == {"quantity": -15, "reason": "water damage"}
        assert instance.template_id is None
        assert instance.status == "in_progress"
        assert len(instance.template_snapshot) == 1
        assert sink.of_type("step_assigned")[0].recipients == [seed.approver.id]

    def test_request_for_a_role(self, engine, seed, db):
        approval = create_request(engine, seed, assigned_to=None, assigned_role_id=seed.approver_role.id)

        assert approval.assigned_to is None
        assert approval.assigned_role_id == seed.approver_role.id
        assert [a.id for a in engine.get_pending_approvals(seed.approver2)] == [approval.id]

    def test_second_open_request_for_same_entity_conflicts(self, engine, seed):
        create_request(engine, seed)

        with pytest.raises(ConflictError):
            create_request(engine, seed, title="Another write-off")

    def test_request_on_entity_with_running_workflow_conflicts(self, engine, make_template, seed):
        make_template()
        start_workflow(engine, seed, entity_id="PO-501")

        with pytest.raises(ConflictError):
            create_request(engine, seed, entity_type="purchase_order", entity_id="PO-501")

    def test_viewer_cannot_create(self, engine, seed):
        with pytest.raises(UnauthorizedError):
            create_request(engine, seed, actor=seed.viewer)

    @pytest.mark.parametrize("fields", [
        {"entity_type": "spaceship"},
        {"title": "  "},
        {"assigned_role_id": 1},
        {"assigned_to": None},
        {"expires_at": utcnow() - timedelta(hours=1)},
    ])
    def test_invalid_requests(self, engine, seed, fields):
        with pytest.raises(ValidationError):
            create_request(engine, seed, **fields)

    def test_assignee_from_other_company(self, engine, seed):
        with pytest.raises(NotFoundError):
            create_request(engine, seed, assigned_to=seed.outsider.id)

    def test_expiry_becomes_step_timeout(self, engine, seed, db):
        approval = create_request(engine, seed, expires_at=utcnow() + timedelta(hours=12))

        [execution] = executions_of(db, db.get(WorkflowInstance, approval.workflow_instance_id))
        assert execution.timeout_at is not None
        assert approval.expires_at == execution.timeout_at


class TestReview:
    def test_approve_through_review(self, engine, seed, db):
        approval = create_request(engine, seed)

        reviewed = engine.review_approval(approval.id, seed.approver, "approved")

        instance = db.get(WorkflowInstance, approval.workflow_instance_id)
        assert reviewed.status == "approved"
        assert reviewed.reviewed_by == seed.approver.id
        assert reviewed.completed_at is not None
        assert instance.outcome == "approved"

    def test_reject_with_notes(self, engine, seed, db):
        approval = create_request(engine, seed)

        reviewed = engine.review_approval(
            approval.id, seed.approver, "rejected",
            decision_reason="Damage not documented",
            notes="Please attach photos next time",
        )

        comments = engine.list_approval_comments(approval.id, seed.approver)
        assert reviewed.status == "rejected"
        assert reviewed.decision_reason == "Damage not documented"
        assert [c.comment for c in comments] == ["Please attach photos next time"]

    def test_unknown_review_decision(self, engine, seed):
        approval = create_request(engine, seed)

        with pytest.raises(ValidationError):
            engine.review_approval(approval.id, seed.approver, "escalate")

    def test_other_company_cannot_review(self, engine, seed):
        approval = create_request(engine, seed)

        with pytest.raises(NotFoundError):
            engine.review_approval(approval.id, seed.outsider, "approved")

    def test_reassign_through_approval(self, engine, seed):
        approval = create_request(engine, seed)

        updated = engine.reassign_approval(approval.id, seed.approver, "Lina handles write-offs", new_user_id=seed.approver2.id)

        assert updated.assigned_to == seed.approver2.id


class TestQueries:
    def test_pending_queue_is_ordered_by_priority_then_age(self, engine, seed):
        low = create_request(engine, seed, entity_id="ADJ-1", priority="Low")
        urgent = create_request(engine, seed, entity_id="ADJ-2", priority="Urgent")
        medium = create_request(engine, seed, entity_id="ADJ-3")

        pending = engine.get_pending_approvals(seed.approver)

        assert [a.id for a in pending] == [urgent.id, medium.id, low.id]
        assert engine.get_pending_approvals(seed.approver2) == []

    def test_orphaned_requests_are_not_in_queues(self, engine, make_template, seed):
        make_template(steps=[user_step(1, seed.requester.id)])
        start_workflow(engine, seed, entity_id="PO-510", actor=seed.admin)
        assert len(engine.get_pending_approvals(seed.requester)) == 1

        engine.release_user_assignments(seed.requester.id, "user_deactivated", seed.admin)

        assert engine.get_pending_approvals(seed.requester) == []

    def test_list_filters(self, engine, seed):
        create_request(engine, seed, entity_id="ADJ-4", priority="High")
        create_request(engine, seed, entity_id="ADJ-5", assigned_to=seed.approver2.id)

        items, total = engine.list_approval_requests(seed.admin, priority="High")
        assert total == 1 and items[0].entity_id == "ADJ-4"

        items, total = engine.list_approval_requests(seed.approver2, mine=True)
        assert total == 1 and items[0].entity_id == "ADJ-5"

        items, total = engine.list_approval_requests(seed.outsider)
        assert total == 0

    def test_internal_comments_hidden_from_viewer(self, engine, seed, db):
        approval = create_request(engine, seed)
        engine.add_approval_comment(approval.id, seed.approver, "Cost center check pending", is_internal=True)
        engine.add_approval_comment(approval.id, seed.viewer, "Is this the Dubai warehouse?")

        visible = engine.list_approval_comments(approval.id, seed.viewer)
        everything = engine.list_approval_comments(approval.id, seed.approver)

        assert [c.comment for c in visible] == ["Is this the Dubai warehouse?"]
        assert len(everything) == 2
        assert db.query(ApprovalComment).count() == 2

    def test_metrics(self, engine, seed):
        first = create_request(engine, seed, entity_id="ADJ-6", priority="High")
        create_request(engine, seed, entity_id="ADJ-7")
        engine.review_approval(first.id, seed.approver, "approved")

        metrics = engine.get_approval_metrics(seed.admin)

        assert metrics["total_approvals"] == 2
        assert metrics["pending_approvals"] == 1
        assert metrics["approved_count"] == 1
        assert metrics["completion_rate"] == 50.0
        assert metrics["by_priority"]["Medium"] == 1
        assert metrics["by_priority"]["High"] == 0
        assert metrics["recent"]["total"] == 2


class TestReminders:
    def test_reminders_are_sent_once_per_level(self, engine, seed, sink):
        create_request(engine, seed)

        assert engine.send_reminders(now=utcnow() + timedelta(hours=1)) == {"reminders": 0, "urgent_reminders": 0}
        assert engine.send_reminders(now=utcnow() + timedelta(hours=25)) == {"reminders": 1, "urgent_reminders": 0}
        assert engine.send_reminders(now=utcnow() + timedelta(hours=26)) == {"reminders": 0, "urgent_reminders": 0}
        assert engine.send_reminders(now=utcnow() + timedelta(hours=49)) == {"reminders": 0, "urgent_reminders": 1}
        assert engine.send_reminders(now=utcnow() + timedelta(hours=72)) == {"reminders": 0, "urgent_reminders": 0}

        assert sink.of_type("approval_reminder")[0].recipients == [seed.approver.id]
        assert len(sink.of_type("approval_urgent_reminder")) == 1

    def test_role_request_reminds_every_holder(self, engine, seed, sink):
        create_request(engine, seed, assigned_to=None, assigned_role_id=seed.approver_role.id)

        engine.send_reminders(now=utcnow() + timedelta(hours=25))

        assert sink.of_type("approval_reminder")[0].recipients == sorted([seed.approver.id, seed.approver2.id])

    def test_decided_and_orphaned_requests_get_no_reminders(self, engine, make_template, seed):
        approval = create_request(engine, seed)
        engine.review_approval(approval.id, seed.approver, "approved")
        make_template(steps=[role_step(1, seed.empty_role.id)])
        start_workflow(engine, seed, entity_id="PO-520")

        assert engine.send_reminders(now=utcnow() + timedelta(hours=49)) == {"reminders": 0, "urgent_reminders": 0}

    def test_reopened_request_waits_a_full_cycle_before_reminding(self, engine, seed, db, sink):
        approval = create_request(engine, seed)
        approval.requested_at = approval.assigned_at = utcnow() - timedelta(hours=72)
        db.commit()
        engine.review_approval(approval.id, seed.approver, "rejected", decision_reason="Missing photos")

        engine.decide(approval.step_execution_id, seed.approver, "reopen", "Photos attached")

        db.refresh(approval)
        assert approval.status == "pending"
        assert approval.requested_at < approval.assigned_at
        assert engine.send_reminders() == {"reminders": 0, "urgent_reminders": 0}
        assert engine.send_reminders(now=utcnow() + timedelta(hours=25)) == {"reminders": 1, "urgent_reminders": 0}
        assert sink.of_type("approval_urgent_reminder") == []

    def test_escalated_request_starts_a_fresh_reminder_cycle(self, engine, make_template, seed, db):
        make_template(steps=[user_step(1, seed.approver.id, timeout_hours=24, escalation_assignee_id=seed.admin.id)])
        start_workflow(engine, seed, entity_id="PO-521")
        engine.send_reminders(now=utcnow() + timedelta(hours=25))

        engine.sweep_timeouts(now=utcnow() + timedelta(hours=25))

        [approval] = engine.get_pending_approvals(seed.admin)
        assert approval.reminder_level == 0
        assert approval.assigned_at > approval.requested_at
