# =====================================================
# FILE: app/services/workflow_template_service.py
# Workflow template management and validation
# =====================================================

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from app.core.exceptions import ConflictError, NotFoundError, UnauthorizedError, ValidationError
from app.core.permissions import Permission
from app.models.user import Role, User
from app.models.workflow import (
    AssigneeType,
    ParallelPolicy,
    StepType,
    TimeoutAction,
    WorkflowInstance,
    WorkflowStepDefinition,
    WorkflowTemplate,
)
from app.services.condition_matcher import FIELD_OPERATORS, OPERATOR_ALIASES, THRESHOLD_OPERATORS, ConditionMatcher
from app.services.entity_events import (
    ENTITY_TYPES,
    MANUAL_TRIGGER,
    all_trigger_types,
    entity_type_for_trigger,
    is_threshold_trigger,
)
from app.services.role_directory import RoleDirectory

logger = logging.getLogger(__name__)

MAX_STEPS = 20
MIN_TIMEOUT_HOURS = 1
MAX_TIMEOUT_HOURS = 8760
PRIORITIES = ("Low", "Medium", "High", "Critical", "Urgent")
# template columns a PUT may set back to null
CLEARABLE_FIELDS = ("description", "trigger_conditions")


class WorkflowTemplateService:
    """Administrator operations on workflow templates"""

    def __init__(self, db: Session, directory: RoleDirectory):
        self.db = db
        self.directory = directory

    # =====================================================
    # Queries
    # =====================================================

    def get_template(self, template_id: int, company_id: int) -> WorkflowTemplate:
        template = (
            self.db.query(WorkflowTemplate)
            .filter(WorkflowTemplate.id == template_id, WorkflowTemplate.company_id == company_id)
            .first()
        )
        if template is None:
            raise NotFoundError("Workflow template", template_id)
        return template

    def list_templates(self, company_id: int, is_active: Optional[bool] = None) -> List[WorkflowTemplate]:
        query = self.db.query(WorkflowTemplate).filter(WorkflowTemplate.company_id == company_id)
        if is_active is not None:
            query = query.filter(WorkflowTemplate.is_active == is_active)
        return query.order_by(WorkflowTemplate.created_at.desc(), WorkflowTemplate.id.desc()).all()

    # =====================================================
    # Mutations
    # =====================================================

    def create_template(self, actor: User, data: Dict[str, Any]) -> WorkflowTemplate:
        self._require_manage(actor)
        cleaned = self.validate(actor.company_id, data)

        template = WorkflowTemplate(
            company_id=actor.company_id,
            name=cleaned["name"],
            description=cleaned.get("description"),
            trigger_type=cleaned["trigger_type"],
            entity_type=cleaned["entity_type"],
            trigger_conditions=cleaned["trigger_conditions"],
            priority=cleaned["priority"],
            parallel_policy=cleaned["parallel_policy"],
            timeout_action=cleaned["timeout_action"],
            is_active=cleaned["is_active"],
            created_by=actor.id,
        )
        template.steps = [WorkflowStepDefinition(**step) for step in cleaned["steps"]]
        self.db.add(template)
        self.db.flush()

        logger.info(f"Workflow template {template.id} '{template.name}' created by user {actor.id}")
        return template

    def update_template(self, template_id: int, actor: User, data: Dict[str, Any]) -> WorkflowTemplate:
        """Replaces the step list as a whole; running instances keep their own snapshot"""
        self._require_manage(actor)
        template = self.get_template(template_id, actor.company_id)

        merged = {
            "name": template.name,
            "description": template.description,
            "trigger_type": template.trigger_type,
            "entity_type": template.entity_type,
            "trigger_conditions": template.trigger_conditions,
            "priority": template.priority,
            "parallel_policy": template.parallel_policy,
            "timeout_action": template.timeout_action,
            "is_active": template.is_active,
            "steps": [step.to_snapshot() for step in template.steps],
        }
        # an explicit null clears a nullable column; elsewhere it keeps the stored value
        merged.update({k: v for k, v in data.items() if v is not None or k in CLEARABLE_FIELDS})
        cleaned = self.validate(actor.company_id, merged)

        for field in (
            "name", "description", "trigger_type", "entity_type", "trigger_conditions",
            "priority", "parallel_policy", "timeout_action", "is_active",
        ):
            setattr(template, field, cleaned.get(field))

        if data.get("steps") is not None:
            template.steps.clear()
            self.db.flush()
            template.steps.extend(WorkflowStepDefinition(**step) for step in cleaned["steps"])

        self.db.flush()
        logger.info(f"Workflow template {template.id} updated by user {actor.id}")
        return template

    def deactivate_template(self, template_id: int, actor: User) -> WorkflowTemplate:
        self._require_manage(actor)
        template = self.get_template(template_id, actor.company_id)
        template.is_active = False
        self.db.flush()
        logger.info(f"Workflow template {template.id} deactivated by user {actor.id}")
        return template

    def delete_template(self, template_id: int, actor: User) -> None:
        self._require_manage(actor)
        template = self.get_template(template_id, actor.company_id)

        referenced = (
            self.db.query(WorkflowInstance.id)
            .filter(WorkflowInstance.template_id == template.id)
            .count()
        )
        if referenced:
            raise ConflictError(
                f"Workflow template {template.id} is referenced by {referenced} instance(s); deactivate it instead"
            )

        self.db.delete(template)
        self.db.flush()
        logger.info(f"Workflow template {template_id} deleted by user {actor.id}")

    # =====================================================
    # Validation
    # =====================================================

    def validate(self, company_id: int, data: Dict[str, Any]) -> Dict[str, Any]:
        """Returns a cleaned copy of the template definition or raises ValidationError"""
        errors: List[Dict[str, str]] = []

        name = (data.get("name") or "").strip()
        if not name:
            errors.append({"field": "name", "issue": "Name is required"})

        trigger_type = data.get("trigger_type") or MANUAL_TRIGGER
        if trigger_type not in all_trigger_types():
            errors.append({"field": "trigger_type", "issue": f"Unknown trigger type '{trigger_type}'"})

        entity_type = entity_type_for_trigger(trigger_type) or data.get("entity_type")
        if trigger_type == MANUAL_TRIGGER and not entity_type:
            errors.append({"field": "entity_type", "issue": "Manual templates must name an entity type"})
        elif entity_type and entity_type not in ENTITY_TYPES:
            errors.append({"field": "entity_type", "issue": f"Unknown entity type '{entity_type}'"})

        conditions = data.get("trigger_conditions")
        normalized_conditions = None
        try:
            normalized_conditions = ConditionMatcher.normalize(conditions) or None
        except TypeError as e:
            errors.append({"field": "trigger_conditions", "issue": str(e)})
        if normalized_conditions:
            errors.extend(self._condition_errors(normalized_conditions, "trigger_conditions"))
        if is_threshold_trigger(trigger_type) and not normalized_conditions:
            errors.append({
                "field": "trigger_conditions",
                "issue": "Threshold triggers require trigger conditions",
            })

        priority = data.get("priority") or "Medium"
        if priority not in PRIORITIES:
            errors.append({"field": "priority", "issue": f"Priority must be one of {', '.join(PRIORITIES)}"})

        parallel_policy = data.get("parallel_policy") or ParallelPolicy.ANY.value
        if parallel_policy not in {p.value for p in ParallelPolicy}:
            errors.append({"field": "parallel_policy", "issue": "Parallel policy must be 'any' or 'majority'"})

        timeout_action = data.get("timeout_action") or TimeoutAction.REJECT.value
        if timeout_action not in {a.value for a in TimeoutAction}:
            errors.append({"field": "timeout_action", "issue": "Timeout action must be 'reject' or 'advance'"})

        is_active = data.get("is_active", True)
        steps = list(data.get("steps") or [])
        cleaned_steps = self._validate_steps(company_id, steps, errors)
        if is_active and not steps:
            errors.append({"field": "steps", "issue": "An active template needs at least one step"})

        if errors:
            raise ValidationError("Invalid workflow template", details=errors)

        return {
            "name": name,
            "description": data.get("description"),
            "trigger_type": trigger_type,
            "entity_type": entity_type,
            "trigger_conditions": normalized_conditions,
            "priority": priority,
            "parallel_policy": parallel_policy,
            "timeout_action": timeout_action,
            "is_active": bool(is_active),
            "steps": cleaned_steps,
        }

    def _validate_steps(self, company_id: int, steps: List[Dict[str, Any]], errors: List[Dict[str, str]]):
        if len(steps) > MAX_STEPS:
            errors.append({"field": "steps", "issue": f"A template can have at most {MAX_STEPS} steps"})

        numbers = sorted(step.get("step_number") or 0 for step in steps)
        if numbers and numbers != list(range(1, len(steps) + 1)):
            errors.append({"field": "steps", "issue": "Step numbers must be unique and contiguous starting at 1"})

        names = [(step.get("name") or "").strip().lower() for step in steps]
        if len(set(names)) != len(names):
            errors.append({"field": "steps", "issue": "Step names must be unique"})

        step_types = {t.value for t in StepType}
        cleaned = []
        for step in sorted(steps, key=lambda s: s.get("step_number") or 0):
            prefix = f"steps[{step.get('step_number')}]"
            if not (step.get("name") or "").strip():
                errors.append({"field": f"{prefix}.name", "issue": "Step name is required"})

            step_type = step.get("step_type") or StepType.APPROVAL.value
            if step_type not in step_types:
                errors.append({"field": f"{prefix}.step_type", "issue": f"Unknown step type '{step_type}'"})

            assignee_type = step.get("assignee_type") or AssigneeType.USER.value
            assignee_id = step.get("assignee_id")
            if step_type != StepType.CONDITION.value or assignee_id is not None:
                errors.extend(self._assignee_errors(company_id, assignee_type, assignee_id, f"{prefix}.assignee"))

            escalation_type = step.get("escalation_assignee_type")
            escalation_id = step.get("escalation_assignee_id")
            if escalation_id is not None:
                escalation_type = escalation_type or AssigneeType.USER.value
                errors.extend(self._assignee_errors(company_id, escalation_type, escalation_id, f"{prefix}.escalation"))

            timeout_hours = step.get("timeout_hours")
            if timeout_hours is not None and not (MIN_TIMEOUT_HOURS <= timeout_hours <= MAX_TIMEOUT_HOURS):
                errors.append({
                    "field": f"{prefix}.timeout_hours",
                    "issue": f"Timeout must be between {MIN_TIMEOUT_HOURS} and {MAX_TIMEOUT_HOURS} hours",
                })
            if escalation_id is not None and not timeout_hours:
                errors.append({"field": f"{prefix}.escalation", "issue": "Escalation requires timeout_hours"})

            conditions = None
            try:
                conditions = ConditionMatcher.normalize(step.get("conditions")) or None
            except TypeError as e:
                errors.append({"field": f"{prefix}.conditions", "issue": str(e)})
            if conditions:
                errors.extend(self._condition_errors(conditions, f"{prefix}.conditions"))
            if step_type == StepType.CONDITION.value and not conditions:
                errors.append({"field": f"{prefix}.conditions", "issue": "Condition steps require conditions"})

            cleaned.append({
                "step_number": step.get("step_number"),
                "name": (step.get("name") or "").strip(),
                "description": step.get("description"),
                "step_type": step_type,
                "assignee_type": assignee_type,
                "assignee_id": assignee_id,
                "is_required": bool(step.get("is_required", True)),
                "timeout_hours": timeout_hours,
                "auto_approve": bool(step.get("auto_approve", False)),
                "allow_parallel": bool(step.get("allow_parallel", False)),
                "conditions": conditions,
                "escalation_assignee_type": escalation_type if escalation_id is not None else None,
                "escalation_assignee_id": escalation_id,
            })
        return cleaned

    def _assignee_errors(self, company_id: int, assignee_type: str, assignee_id, field: str) -> List[Dict[str, str]]:
        if assignee_type not in {t.value for t in AssigneeType}:
            return [{"field": field, "issue": f"Unknown assignee type '{assignee_type}'"}]
        if assignee_id is None:
            return [{"field": field, "issue": f"A {assignee_type} assignee requires an id"}]

        if assignee_type == AssigneeType.USER.value:
            exists = (
                self.db.query(User.id)
                .filter(User.id == assignee_id, User.company_id == company_id)
                .first()
            )
        else:
            exists = (
                self.db.query(Role.id)
                .filter(Role.id == assignee_id, (Role.company_id == company_id) | (Role.company_id.is_(None)))
                .first()
            )
        if not exists:
            return [{"field": field, "issue": f"{assignee_type.title()} {assignee_id} does not exist"}]
        return []

    @staticmethod
    def _condition_errors(conditions: Dict[str, Any], field: str) -> List[Dict[str, str]]:
        errors = []
        threshold = conditions.get("threshold")
        if threshold:
            operator = OPERATOR_ALIASES.get(threshold.get("operator"), threshold.get("operator"))
            if operator not in THRESHOLD_OPERATORS:
                errors.append({"field": f"{field}.threshold", "issue": f"Unsupported operator '{threshold.get('operator')}'"})
            value = threshold.get("value")
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
                errors.append({"field": f"{field}.threshold", "issue": "Threshold value must be a non-negative number"})

        for index, condition in enumerate(conditions.get("field_conditions", [])):
            if not isinstance(condition, dict) or not condition.get("field"):
                errors.append({"field": f"{field}.field_conditions[{index}]", "issue": "Field is required"})
                continue
            operator = OPERATOR_ALIASES.get(condition.get("operator"), condition.get("operator"))
            if operator not in FIELD_OPERATORS:
                errors.append({
                    "field": f"{field}.field_conditions[{index}]",
                    "issue": f"Unsupported operator '{condition.get('operator')}'",
                })
            elif operator in ("in", "not_in") and not isinstance(condition.get("value"), list):
                errors.append({"field": f"{field}.field_conditions[{index}]", "issue": f"'{operator}' needs a list value"})
        return errors

    def _require_manage(self, actor: User) -> None:
        if not self.directory.has_permission(actor, Permission.WORKFLOW_MANAGE):
            raise UnauthorizedError("Managing workflow templates requires the workflow.manage permission")
