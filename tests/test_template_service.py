import pytest

from app.core.exceptions import ConflictError, NotFoundError, UnauthorizedError, ValidationError
from app.models.workflow import WorkflowStepDefinition

from factories import role_step, start_workflow, user_step


def issues(excinfo):
    return {detail["field"] for detail in excinfo.value.details}


class TestCreate:
    def test_create_derives_entity_type_from_trigger(self, make_template, seed):
        template = make_template(trigger_type="transfer_order_create")

        assert template.entity_type == "transfer_order"
        assert template.is_active is True
        assert template.created_by == seed.admin.id
        assert [s.step_number for s in template.steps] == [1]

    def test_steps_are_stored_in_order(self, make_template, seed):
        template = make_template(steps=[
            user_step(2, seed.approver2.id),
            role_step(1, seed.approver_role.id),
        ])

        assert [s.assignee_type for s in template.steps] == ["role", "user"]

    def test_viewer_cannot_create(self, make_template, seed):
        with pytest.raises(UnauthorizedError):
            make_template(actor=seed.viewer)

    def test_unknown_trigger_type(self, make_template):
        with pytest.raises(ValidationError) as excinfo:
            make_template(trigger_type="invoice_paid")
        assert "trigger_type" in issues(excinfo)

    def test_manual_template_needs_entity_type(self, make_template):
        with pytest.raises(ValidationError) as excinfo:
            make_template(trigger_type="manual")
        assert "entity_type" in issues(excinfo)

    def test_threshold_trigger_needs_conditions(self, make_template):
        with pytest.raises(ValidationError) as excinfo:
            make_template(trigger_type="purchase_order_threshold")
        assert "trigger_conditions" in issues(excinfo)

    def test_negative_threshold_is_rejected(self, make_template):
        with pytest.raises(ValidationError) as excinfo:
            make_template(
                trigger_type="purchase_order_threshold",
                trigger_conditions={"threshold": {"field": "amount", "operator": "gt", "value": -5}},
            )
        assert "trigger_conditions.threshold" in issues(excinfo)

    def test_conditions_must_be_an_object(self, make_template):
        with pytest.raises(ValidationError):
            make_template(trigger_conditions="amount > 5000")

    def test_active_template_needs_steps(self, make_template):
        with pytest.raises(ValidationError) as excinfo:
            make_template(steps=[])
        assert "steps" in issues(excinfo)

    def test_inactive_draft_may_have_no_steps(self, make_template):
        template = make_template(steps=[], is_active=False)
        assert template.steps == []

    def test_step_numbers_must_be_contiguous(self, make_template, seed):
        with pytest.raises(ValidationError) as excinfo:
            make_template(steps=[user_step(1, seed.approver.id), user_step(3, seed.approver2.id)])
        assert "steps" in issues(excinfo)

    def test_step_names_must_be_unique(self, make_template, seed):
        with pytest.raises(ValidationError):
            make_template(steps=[
                user_step(1, seed.approver.id, name="Finance"),
                user_step(2, seed.approver2.id, name="finance"),
            ])

    def test_assignee_must_exist_in_company(self, make_template, seed):
        with pytest.raises(ValidationError) as excinfo:
            make_template(steps=[user_step(1, seed.outsider.id)])
        assert "steps[1].assignee" in issues(excinfo)

    def test_escalation_requires_timeout(self, make_template, seed):
        with pytest.raises(ValidationError) as excinfo:
            make_template(steps=[user_step(1, seed.approver.id, escalation_assignee_id=seed.admin.id)])
        assert "steps[1].escalation" in issues(excinfo)

    def test_timeout_out_of_range(self, make_template, seed):
        with pytest.raises(ValidationError):
            make_template(steps=[user_step(1, seed.approver.id, timeout_hours=0)])

    def test_condition_step_needs_conditions(self, make_template):
        with pytest.raises(ValidationError) as excinfo:
            make_template(steps=[{"step_number": 1, "name": "Check", "step_type": "condition"}])
        assert "steps[1].conditions" in issues(excinfo)

    def test_in_operator_needs_list(self, make_template, seed):
        with pytest.raises(ValidationError):
            make_template(steps=[user_step(1, seed.approver.id, conditions={
                "field_conditions": [{"field": "warehouse", "operator": "in", "value": "DXB-01"}],
            })])

    def test_all_problems_are_reported_together(self, make_template, seed):
        with pytest.raises(ValidationError) as excinfo:
            make_template(name=" ", priority="Whenever", parallel_policy="unanimous")
        assert {"name", "priority", "parallel_policy"} <= issues(excinfo)


class TestUpdateAndLifecycle:
    def test_update_replaces_steps(self, engine, make_template, seed, db):
        template = make_template(steps=[user_step(1, seed.approver.id), user_step(2, seed.approver2.id)])

        engine.update_template(template.id, seed.admin, {
            "name": "PO approval v2",
            "steps": [role_step(1, seed.approver_role.id)],
        })

        db.refresh(template)
        assert template.name == "PO approval v2"
        assert len(template.steps) == 1
        assert db.query(WorkflowStepDefinition).filter(WorkflowStepDefinition.template_id == template.id).count() == 1

    def test_partial_update_keeps_steps(self, engine, make_template, seed, db):
        template = make_template(steps=[user_step(1, seed.approver.id), user_step(2, seed.approver2.id)])

        engine.update_template(template.id, seed.admin, {"priority": "High"})

        db.refresh(template)
        assert template.priority == "High"
        assert len(template.steps) == 2

    def test_explicit_null_clears_optional_fields(self, engine, make_template, seed, db):
        template = make_template(
            description="Orders above the petty cash limit",
            trigger_conditions={"threshold": {"field": "amount", "operator": "gt", "value": 500}},
        )

        engine.update_template(template.id, seed.admin, {"description": None, "trigger_conditions": None})

        db.refresh(template)
        assert template.description is None
        assert template.trigger_conditions is None
        assert template.name == "Purchase order approval"

    def test_null_does_not_clear_required_fields(self, engine, make_template, seed, db):
        template = make_template(priority="High")

        engine.update_template(template.id, seed.admin, {"name": None, "priority": None, "description": "v2"})

        db.refresh(template)
        assert template.name == "Purchase order approval"
        assert template.priority == "High"
        assert template.description == "v2"

    def test_invalid_update_leaves_template_untouched(self, engine, make_template, seed, db):
        template = make_template()

        with pytest.raises(ValidationError):
            engine.update_template(template.id, seed.admin, {"trigger_type": "nothing"})
        db.refresh(template)
        assert template.trigger_type == "purchase_order_create"

    def test_deactivate(self, engine, make_template, seed):
        template = make_template()

        engine.deactivate_template(template.id, seed.admin)

        assert template.is_active is False
        assert engine.list_templates(seed.admin, is_active=True) == []

    def test_delete_unused_template(self, engine, make_template, seed):
        template = make_template()

        engine.delete_template(template.id, seed.admin)

        with pytest.raises(NotFoundError):
            engine.get_template(template.id, seed.admin)

    def test_delete_referenced_template_conflicts(self, engine, make_template, seed):
        template = make_template()
        start_workflow(engine, seed, entity_id="PO-400")

        with pytest.raises(ConflictError):
            engine.delete_template(template.id, seed.admin)

    def test_templates_are_scoped_to_company(self, engine, make_template, seed):
        template = make_template()

        with pytest.raises(NotFoundError):
            engine.get_template(template.id, seed.outsider)
        assert engine.list_templates(seed.outsider) == []
