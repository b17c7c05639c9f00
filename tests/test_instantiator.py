import pytest
from sqlalchemy.exc import IntegrityError

from app.core.exceptions import ConflictError, UnauthorizedError, ValidationError
from app.models.approval import ApprovalRequest
from app.models.workflow import WorkflowInstance

from factories import entity_event, executions_of, start_workflow, user_step


def test_instance_freezes_snapshot_and_step_list(engine, make_template, seed, db):
    template = make_template(steps=[user_step(1, seed.approver.id), user_step(2, seed.approver2.id)])
    instance = start_workflow(engine, seed, entity_id="PO-20", snapshot={"amount": 7000, "currency": "USD"})

    engine.update_template(template.id, seed.admin, {"steps": [user_step(1, seed.admin.id)]})
    db.refresh(instance)

    assert instance.snapshot == {"amount": 7000, "currency": "USD"}
    assert [s["assignee_id"] for s in instance.template_snapshot] == [seed.approver.id, seed.approver2.id]
    assert instance.active_key == f"{seed.company.id}:purchase_order:PO-20"
    assert instance.triggered_by == seed.requester.id
    assert instance.current_step_number == 1


def test_first_step_gets_execution_and_approval_request(engine, make_template, seed, db, sink):
    make_template(priority="High", steps=[user_step(1, seed.approver.id, timeout_hours=48)])
    instance = start_workflow(engine, seed, entity_id="PO-21")

    [execution] = executions_of(db, instance)
    approval = db.query(ApprovalRequest).filter(ApprovalRequest.step_execution_id == execution.id).one()

    assert execution.status == "assigned"
    assert execution.timeout_at is not None
    assert approval.status == "pending"
    assert approval.assigned_to == seed.approver.id
    assert approval.priority == "High"
    assert approval.expires_at == execution.timeout_at
    assert sink.types[:2] == ["workflow_started", "step_assigned"]
    assert sink.of_type("step_assigned")[0].recipients == [seed.approver.id]


def test_manual_run_rejects_second_active_instance(engine, make_template, seed):
    template = make_template(trigger_type="manual", entity_type="stock_adjustment")

    engine.run_template(template.id, seed.admin, "ADJ-1", {"quantity": -4})
    with pytest.raises(ConflictError):
        engine.run_template(template.id, seed.admin, "ADJ-1", {"quantity": -4})


def test_new_instance_allowed_once_previous_one_finished(engine, make_template, seed, db):
    template = make_template(trigger_type="manual", entity_type="stock_adjustment")
    first = engine.run_template(template.id, seed.admin, "ADJ-2")
    engine.cancel_instance(first.id, seed.admin, "entered by mistake")

    second = engine.run_template(template.id, seed.admin, "ADJ-2")

    assert second.id != first.id
    assert first.active_key is None
    assert second.is_active


def test_manual_run_requires_permission(engine, make_template, seed):
    template = make_template(trigger_type="manual", entity_type="stock_adjustment")

    with pytest.raises(UnauthorizedError):
        engine.run_template(template.id, seed.viewer, "ADJ-3")


def test_manual_run_checks_trigger_conditions(engine, make_template, seed):
    template = make_template(
        trigger_type="manual",
        entity_type="purchase_order",
        trigger_conditions={"threshold": {"field": "amount", "operator": "gt", "value": 1000}},
    )

    with pytest.raises(ValidationError):
        engine.run_template(template.id, seed.admin, "PO-22", {"amount": 10})


def test_database_refuses_two_active_instances_for_one_entity(engine, make_template, seed, db):
    make_template()
    existing = start_workflow(engine, seed, entity_id="PO-23")

    duplicate = WorkflowInstance(
        company_id=seed.company.id,
        entity_type="purchase_order",
        entity_id="PO-23",
        status="pending",
        active_key=existing.active_key,
        template_snapshot=[],
    )
    db.add(duplicate)
    with pytest.raises(IntegrityError):
        db.flush()
    db.rollback()


def test_same_entity_id_in_other_company_is_independent(engine, make_template, seed, db):
    make_template()
    start_workflow(engine, seed, entity_id="PO-24")

    other = WorkflowInstance(
        company_id=seed.other_company.id,
        entity_type="purchase_order",
        entity_id="PO-24",
        status="pending",
        active_key=WorkflowInstance.build_active_key(seed.other_company.id, "purchase_order", "PO-24"),
        template_snapshot=[],
    )
    db.add(other)
    db.commit()

    assert engine.instantiator.find_active(seed.other_company.id, "purchase_order", "PO-24").id == other.id


def test_event_from_other_entity_type_does_not_collide(engine, make_template, seed):
    make_template()
    make_template(name="Sales orders", trigger_type="sales_order_create")

    po = engine.evaluate_event(entity_event(seed, "1001"))
    so = engine.evaluate_event(entity_event(seed, "1001", entity_type="sales_order"))

    assert len(po) == 1 and len(so) == 1
