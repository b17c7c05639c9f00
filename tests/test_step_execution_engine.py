import pytest

from app.core.exceptions import ConflictError, UnauthorizedError
from app.models.approval import ApprovalRequest
from app.models.audit_log import AuditLog
from app.models.workflow import WorkflowStepExecution

from factories import executions_of, role_step, start_workflow, user_step


def approve(engine, execution, actor):
    return engine.decide(execution.id, actor, "approve")


def open_execution(db, instance):
    return (
        db.query(WorkflowStepExecution)
        .filter(
            WorkflowStepExecution.instance_id == instance.id,
            WorkflowStepExecution.status.in_(("assigned", "in_progress")),
        )
        .order_by(WorkflowStepExecution.id)
        .all()
    )


class TestSequentialSteps:
    def test_approving_every_step_completes_the_instance(self, engine, make_template, seed, db, sink):
        make_template(steps=[
            user_step(1, seed.approver.id),
            user_step(2, seed.approver2.id),
            user_step(3, seed.admin.id),
        ])
        instance = start_workflow(engine, seed, entity_id="PO-30")

        for actor in (seed.approver, seed.approver2, seed.admin):
            [execution] = open_execution(db, instance)
            assert execution.assigned_to == actor.id
            approve(engine, execution, actor)

        db.refresh(instance)
        executions = executions_of(db, instance)
        assert instance.status == "completed"
        assert instance.outcome == "approved"
        assert instance.active_key is None
        assert [e.status for e in executions] == ["completed"] * 3
        assert [e.decision for e in executions] == ["approved"] * 3
        assert sink.types[-1] == "workflow_completed"
        assert sink.of_type("workflow_completed")[0].recipients == [seed.requester.id]

    def test_current_step_number_never_moves_backwards(self, engine, make_template, seed, db):
        make_template(steps=[user_step(1, seed.approver.id), user_step(2, seed.approver.id)])
        instance = start_workflow(engine, seed, entity_id="PO-31")
        seen = [instance.current_step_number]

        for _ in range(2):
            [execution] = open_execution(db, instance)
            approve(engine, execution, seed.approver)
            db.refresh(instance)
            seen.append(instance.current_step_number)

        assert seen == sorted(seen)

    def test_optional_step_rejection_continues(self, engine, make_template, seed, db):
        make_template(steps=[
            user_step(1, seed.approver.id, is_required=False),
            user_step(2, seed.approver2.id),
        ])
        instance = start_workflow(engine, seed, entity_id="PO-32")
        [first] = open_execution(db, instance)

        engine.decide(first.id, seed.approver, "reject", "not my area")

        db.refresh(instance)
        [second] = open_execution(db, instance)
        assert instance.status == "in_progress"
        assert second.step_number == 2
        assert first.decision == "rejected"

    def test_auto_approve_step_runs_through(self, engine, make_template, seed, db):
        make_template(steps=[
            user_step(1, seed.approver.id, auto_approve=True),
            user_step(2, seed.approver2.id),
        ])
        instance = start_workflow(engine, seed, entity_id="PO-33")

        first, second = executions_of(db, instance)
        approval = db.query(ApprovalRequest).filter(ApprovalRequest.step_execution_id == first.id).one()
        assert first.status == "completed" and first.decision == "approved"
        assert approval.status == "approved"
        assert second.status == "assigned"


class TestParallelSteps:
    def test_parallel_role_step_fans_out_and_waits_for_all(self, engine, make_template, seed, db):
        make_template(steps=[
            role_step(1, seed.approver_role.id, allow_parallel=True),
            user_step(2, seed.admin.id),
        ])
        instance = start_workflow(engine, seed, entity_id="PO-40")
        executions = executions_of(db, instance, step_number=1)
        assert sorted(e.assigned_to for e in executions) == sorted([seed.approver.id, seed.approver2.id])

        by_user = {e.assigned_to: e for e in executions}
        approve(engine, by_user[seed.approver.id], seed.approver)
        assert executions_of(db, instance, step_number=2) == []

        approve(engine, by_user[seed.approver2.id], seed.approver2)
        [next_step] = executions_of(db, instance, step_number=2)
        assert next_step.status == "assigned"

    def test_required_parallel_rejection_vetoes(self, engine, make_template, seed, db):
        make_template(steps=[role_step(1, seed.approver_role.id, allow_parallel=True)])
        instance = start_workflow(engine, seed, entity_id="PO-41")
        by_user = {e.assigned_to: e for e in executions_of(db, instance)}

        engine.decide(by_user[seed.approver.id].id, seed.approver, "reject", "price too high")

        db.refresh(instance)
        other = by_user[seed.approver2.id]
        db.refresh(other)
        approval = db.query(ApprovalRequest).filter(ApprovalRequest.step_execution_id == other.id).one()
        assert instance.status == "completed"
        assert instance.outcome == "rejected"
        assert other.status == "skipped"
        assert approval.status == "cancelled"

    def test_optional_parallel_step_resolved_by_majority(self, engine, make_template, seed, db):
        make_template(
            parallel_policy="majority",
            steps=[
                role_step(1, seed.approver_role.id, allow_parallel=True, is_required=False),
                user_step(2, seed.admin.id),
            ],
        )
        instance = start_workflow(engine, seed, entity_id="PO-42")
        by_user = {e.assigned_to: e for e in executions_of(db, instance, step_number=1)}

        approve(engine, by_user[seed.approver.id], seed.approver)
        engine.decide(by_user[seed.approver2.id].id, seed.approver2, "reject", "duplicate order")

        resolution = (
            db.query(AuditLog)
            .filter(AuditLog.workflow_instance_id == instance.id, AuditLog.step_execution_id.is_(None))
            .filter(AuditLog.action == "step_rejected")
            .one()
        )
        assert resolution.changes["resolution"] == "rejected"
        assert resolution.changes["parallel_policy"] == "majority"
        # optional step: the workflow moves on regardless
        assert len(executions_of(db, instance, step_number=2)) == 1


class TestStepTypes:
    def test_notification_step_completes_immediately(self, engine, make_template, seed, db, sink):
        make_template(steps=[
            role_step(1, seed.approver_role.id, step_type="notification", name="Tell approvers"),
            user_step(2, seed.admin.id),
        ])
        instance = start_workflow(engine, seed, entity_id="PO-50")

        first, second = executions_of(db, instance)
        [notice] = sink.of_type("step_notification")
        assert first.status == "completed" and first.decision is None
        assert sorted(notice.recipients) == sorted([seed.approver.id, seed.approver2.id])
        assert second.status == "assigned"

    def test_condition_step_match_continues(self, engine, make_template, seed, db):
        make_template(steps=[
            {"step_number": 1, "name": "Large order?", "step_type": "condition",
             "conditions": {"threshold": {"field": "amount", "operator": "gt", "value": 1000}}},
            user_step(2, seed.approver.id),
        ])
        instance = start_workflow(engine, seed, entity_id="PO-51", snapshot={"amount": 4000})

        check, review = executions_of(db, instance)
        assert check.status == "completed" and check.decision == "approved"
        assert review.status == "assigned"

    def test_required_condition_step_miss_rejects(self, engine, make_template, seed, db):
        make_template(steps=[
            {"step_number": 1, "name": "Large order?", "step_type": "condition",
             "conditions": {"threshold": {"field": "amount", "operator": "gt", "value": 1000}}},
            user_step(2, seed.approver.id),
        ])
        instance = start_workflow(engine, seed, entity_id="PO-52", snapshot={"amount": 10})

        assert instance.status == "completed"
        assert instance.outcome == "rejected"
        assert len(executions_of(db, instance)) == 1

    def test_gating_conditions_skip_a_step(self, engine, make_template, seed, db):
        make_template(steps=[
            user_step(1, seed.approver.id, conditions={
                "field_conditions": [{"field": "warehouse", "operator": "eq", "value": "DXB-01"}]
            }),
            user_step(2, seed.approver2.id),
        ])
        instance = start_workflow(engine, seed, entity_id="PO-53", snapshot={"amount": 100, "warehouse": "AUH-02"})

        skipped, active = executions_of(db, instance)
        assert skipped.status == "skipped"
        assert active.status == "assigned" and active.step_number == 2


class TestAssignmentResolution:
    def test_role_queue_creates_one_shared_execution(self, engine, make_template, seed, db, sink):
        make_template(steps=[role_step(1, seed.approver_role.id)])
        instance = start_workflow(engine, seed, entity_id="PO-60")

        [execution] = executions_of(db, instance)
        assert execution.assigned_to is None
        assert execution.assigned_role_id == seed.approver_role.id
        assert sorted(sink.of_type("step_assigned")[0].recipients) == sorted([seed.approver.id, seed.approver2.id])

        approve(engine, execution, seed.approver2)
        db.refresh(instance)
        assert instance.outcome == "approved"

    def test_role_without_members_orphans_the_request(self, engine, make_template, seed, db, sink):
        make_template(steps=[role_step(1, seed.empty_role.id)])
        instance = start_workflow(engine, seed, entity_id="PO-61")

        [execution] = executions_of(db, instance)
        approval = db.query(ApprovalRequest).filter(ApprovalRequest.step_execution_id == execution.id).one()
        assert instance.status == "in_progress"
        assert approval.orphaned is True
        assert "approval_orphaned" in sink.types

    def test_deactivated_assignee_fails_the_instance(self, engine, make_template, seed, db, sink):
        make_template(steps=[user_step(1, seed.approver.id), user_step(2, seed.approver2.id)])
        instance = start_workflow(engine, seed, entity_id="PO-62")
        seed.approver2.is_active = False
        db.commit()

        [first] = open_execution(db, instance)
        approve(engine, first, seed.approver)

        db.refresh(instance)
        failed = executions_of(db, instance, step_number=2)
        assert instance.status == "failed"
        assert instance.active_key is None
        assert "no longer exists or is inactive" in instance.failure_reason
        assert [e.status for e in failed] == ["failed"]
        assert sink.types[-2:] == ["step_failed", "workflow_failed"]

    def test_parallel_step_on_empty_role_fails(self, engine, make_template, seed):
        make_template(steps=[role_step(1, seed.empty_role.id, allow_parallel=True)])
        instance = start_workflow(engine, seed, entity_id="PO-63")

        assert instance.status == "failed"


class TestCancellation:
    def test_requester_can_cancel_and_open_steps_are_skipped(self, engine, make_template, seed, db, sink):
        make_template()
        instance = start_workflow(engine, seed, entity_id="PO-70")
        [execution] = executions_of(db, instance)

        engine.cancel_instance(instance.id, seed.requester, "order withdrawn")

        db.refresh(execution)
        approval = db.query(ApprovalRequest).filter(ApprovalRequest.step_execution_id == execution.id).one()
        assert instance.status == "cancelled"
        assert instance.cancel_reason == "order withdrawn"
        assert execution.status == "skipped"
        assert approval.status == "cancelled"
        assert sink.types[-1] == "workflow_cancelled"

    def test_decision_after_cancel_conflicts(self, engine, make_template, seed, db):
        make_template()
        instance = start_workflow(engine, seed, entity_id="PO-71")
        [execution] = executions_of(db, instance)
        engine.cancel_instance(instance.id, seed.admin)

        with pytest.raises(ConflictError):
            approve(engine, execution, seed.approver)

    def test_cancelling_twice_conflicts(self, engine, make_template, seed):
        make_template()
        instance = start_workflow(engine, seed, entity_id="PO-72")
        engine.cancel_instance(instance.id, seed.admin)

        with pytest.raises(ConflictError):
            engine.cancel_instance(instance.id, seed.admin)

    def test_unrelated_user_cannot_cancel(self, engine, make_template, seed):
        make_template()
        instance = start_workflow(engine, seed, entity_id="PO-73")

        with pytest.raises(UnauthorizedError):
            engine.cancel_instance(instance.id, seed.viewer)
