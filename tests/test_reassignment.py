from datetime import timedelta

import pytest

from app.core.exceptions import ConflictError, NotFoundError, UnauthorizedError, ValidationError
from app.models.approval import ApprovalComment, ApprovalRequest
from app.models.workflow import StepReassignment
from app.utils.datetime_helpers import utcnow

from factories import executions_of, role_step, start_workflow, user_step


def approval_of(db, execution):
    return db.query(ApprovalRequest).filter(ApprovalRequest.step_execution_id == execution.id).one()


@pytest.fixture
def assigned(engine, make_template, seed, db):
    """One open approval step assigned to the approver"""
    make_template()
    instance = start_workflow(engine, seed, entity_id="PO-200")
    [execution] = executions_of(db, instance)
    return execution


class TestReassign:
    def test_reassign_to_another_user(self, engine, assigned, seed, db, sink):
        engine.reassign(assigned.id, seed.approver, "Out of office this week", new_user_id=seed.approver2.id)

        approval = approval_of(db, assigned)
        [record] = db.query(StepReassignment).filter(StepReassignment.step_execution_id == assigned.id).all()
        note = db.query(ApprovalComment).filter(ApprovalComment.approval_request_id == approval.id).one()

        assert assigned.assigned_to == seed.approver2.id
        assert assigned.assignee_name == seed.approver2.full_name
        assert assigned.status == "assigned"
        assert record.from_user_id == seed.approver.id
        assert record.to_user_id == seed.approver2.id
        assert record.reassigned_by == seed.approver.id
        assert record.is_escalation is False
        assert approval.assigned_to == seed.approver2.id
        assert note.is_internal is True
        assert sink.of_type("step_reassigned")[0].recipients == [seed.approver2.id]

    def test_new_assignee_can_decide_and_old_one_cannot(self, engine, assigned, seed):
        engine.reassign(assigned.id, seed.admin, "Workload balancing", new_user_id=seed.approver2.id)

        with pytest.raises(UnauthorizedError):
            engine.decide(assigned.id, seed.approver, "approve")
        engine.decide(assigned.id, seed.approver2, "approve")

    def test_reassign_to_role_turns_step_into_queue(self, engine, assigned, seed, db):
        engine.reassign(assigned.id, seed.admin, "Any approver can take it", new_role_id=seed.approver_role.id)

        approval = approval_of(db, assigned)
        assert assigned.assigned_to is None
        assert assigned.assigned_role_id == seed.approver_role.id
        assert assigned.assignee_type == "role"
        assert approval.assigned_role_id == seed.approver_role.id
        engine.decide(assigned.id, seed.approver2, "approve")

    @pytest.mark.parametrize("reason,user_key,role_key", [
        ("", "approver2", None),
        ("busy", None, None),
        ("busy", "approver2", "approver_role"),
        ("busy", "approver", None),
        ("busy", None, "empty_role"),
    ])
    def test_invalid_reassignments(self, engine, assigned, seed, reason, user_key, role_key):
        new_user_id = getattr(seed, user_key).id if user_key else None
        new_role_id = getattr(seed, role_key).id if role_key else None

        with pytest.raises(ValidationError):
            engine.reassign(assigned.id, seed.admin, reason, new_user_id=new_user_id, new_role_id=new_role_id)

    def test_inactive_target_is_rejected(self, engine, assigned, seed, db):
        seed.approver2.is_active = False
        db.commit()

        with pytest.raises(ValidationError):
            engine.reassign(assigned.id, seed.admin, "busy", new_user_id=seed.approver2.id)

    def test_cannot_hand_a_parallel_vote_to_a_colleague_who_already_has_one(self, engine, make_template, seed, db):
        make_template(steps=[role_step(1, seed.approver_role.id, allow_parallel=True)])
        instance = start_workflow(engine, seed, entity_id="PO-204")
        omar, lina = executions_of(db, instance)

        with pytest.raises(ValidationError):
            engine.reassign(omar.id, seed.admin, "Omar is travelling", new_user_id=seed.approver2.id)
        db.refresh(omar)
        assert omar.assigned_to == seed.approver.id

        engine.reassign(omar.id, seed.admin, "Omar is travelling", new_user_id=seed.admin.id)
        db.refresh(omar)
        assert omar.assigned_to == seed.admin.id

    def test_target_from_other_company_is_not_found(self, engine, assigned, seed):
        with pytest.raises(NotFoundError):
            engine.reassign(assigned.id, seed.admin, "busy", new_user_id=seed.outsider.id)

    def test_unrelated_user_cannot_reassign(self, engine, assigned, seed):
        with pytest.raises(UnauthorizedError):
            engine.reassign(assigned.id, seed.viewer, "not mine", new_user_id=seed.approver2.id)

    def test_decided_step_cannot_be_reassigned(self, engine, assigned, seed):
        engine.decide(assigned.id, seed.approver, "approve")

        with pytest.raises(ConflictError):
            engine.reassign(assigned.id, seed.admin, "too late", new_user_id=seed.approver2.id)


class TestReleaseUser:
    def test_departing_user_work_moves_to_role_colleague(self, engine, assigned, seed, db):
        result = engine.release_user_assignments(seed.approver.id, "user_deactivated", seed.admin)

        assert result == {"reassigned": [assigned.id], "orphaned": []}
        assert assigned.assigned_to == seed.approver2.id
        record = db.query(StepReassignment).filter(StepReassignment.step_execution_id == assigned.id).one()
        assert "user_deactivated" in record.reason

    def test_sole_role_holder_leaves_an_orphan(self, engine, make_template, seed, db, sink):
        # the requester is the only Purchaser
        make_template(steps=[user_step(1, seed.requester.id)])
        instance = start_workflow(engine, seed, entity_id="PO-201", actor=seed.admin)
        [execution] = executions_of(db, instance)

        result = engine.release_user_assignments(seed.requester.id, "user_deleted", seed.admin)

        approval = approval_of(db, execution)
        assert result == {"reassigned": [], "orphaned": [execution.id]}
        assert approval.orphaned is True
        assert approval.orphaned_at is not None
        assert sink.of_type("approval_orphaned")[-1].recipients == [seed.admin.id]

    def test_reassigning_an_orphan_clears_the_flag(self, engine, make_template, seed, db):
        make_template(steps=[user_step(1, seed.requester.id)])
        instance = start_workflow(engine, seed, entity_id="PO-202", actor=seed.admin)
        [execution] = executions_of(db, instance)
        engine.release_user_assignments(seed.requester.id, "user_deleted", seed.admin)

        engine.reassign(execution.id, seed.admin, "Picked up by operations", new_user_id=seed.approver.id)

        assert approval_of(db, execution).orphaned is False

    def test_parallel_colleague_never_gets_a_second_vote(self, engine, make_template, seed, db):
        make_template(
            steps=[role_step(1, seed.approver_role.id, allow_parallel=True, is_required=False)],
            parallel_policy="majority",
        )
        instance = start_workflow(engine, seed, entity_id="PO-203")
        omar, lina = executions_of(db, instance)

        result = engine.release_user_assignments(seed.approver2.id, "user_deactivated", seed.admin)

        db.refresh(lina)
        assert result == {"reassigned": [], "orphaned": [lina.id]}
        assert lina.assigned_to == seed.approver2.id
        assert approval_of(db, lina).orphaned is True
        assert omar.assigned_to == seed.approver.id

    def test_unknown_release_reason(self, engine, assigned, seed):
        with pytest.raises(ValidationError):
            engine.release_user_assignments(seed.approver.id, "holiday", seed.admin)

    def test_release_requires_manage_permission(self, engine, assigned, seed):
        with pytest.raises(UnauthorizedError):
            engine.release_user_assignments(seed.approver.id, "user_deactivated", seed.viewer)


class TestHistory:
    def test_history_is_ordered_and_survives_escalation(self, engine, make_template, seed, db):
        make_template(steps=[user_step(1, seed.approver.id, timeout_hours=24, escalation_assignee_id=seed.admin.id)])
        instance = start_workflow(engine, seed, entity_id="PO-203")
        [original] = executions_of(db, instance)
        engine.reassign(original.id, seed.approver, "Handing over", new_user_id=seed.approver2.id)

        engine.sweep_timeouts(now=utcnow() + timedelta(hours=25))
        escalated = [e for e in executions_of(db, instance) if e.escalated_from_id == original.id][0]

        history = engine.list_reassignments(escalated.id, seed.admin)

        assert [r.is_escalation for r in history] == [False, True]
        assert history[0].to_user_id == seed.approver2.id
        assert history[1].from_user_id == seed.approver2.id
        assert history[1].to_user_id == seed.admin.id

    def test_history_hidden_from_other_company(self, engine, assigned, seed):
        with pytest.raises(NotFoundError):
            engine.list_reassignments(assigned.id, seed.outsider)
