# =====================================================
# FILE: app/services/entity_events.py
# Entity lifecycle events and trigger type mapping
# =====================================================

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

ENTITY_TYPES = (
    "purchase_order",
    "sales_order",
    "stock_adjustment",
    "transfer_order",
    "invoice",
    "bill",
    "customer",
    "supplier",
    "product",
    "payment_made",
    "payment_received",
    "backorder",
)

OPERATIONS = ("create", "update")

MANUAL_TRIGGER = "manual"
TRIGGER_SUFFIXES = ("create", "update", "threshold")


@dataclass
class EntityEvent:
    """Create/update notification sent by an entity service"""
    entity_type: str
    entity_id: str
    operation: str
    company_id: int
    snapshot: Dict[str, Any] = field(default_factory=dict)
    actor_user_id: Optional[int] = None


def all_trigger_types() -> List[str]:
    trigger_types = [MANUAL_TRIGGER]
    for entity_type in ENTITY_TYPES:
        trigger_types.extend(f"{entity_type}_{suffix}" for suffix in TRIGGER_SUFFIXES)
    return trigger_types


def is_threshold_trigger(trigger_type: str) -> bool:
    return trigger_type.endswith("_threshold")


def entity_type_for_trigger(trigger_type: str) -> Optional[str]:
    """
    purchase_order_threshold -> purchase_order.
    Returns None for manual (the template carries its own entity type).
    """
    if trigger_type == MANUAL_TRIGGER:
        return None
    for suffix in TRIGGER_SUFFIXES:
        ending = f"_{suffix}"
        if trigger_type.endswith(ending):
            entity_type = trigger_type[: -len(ending)]
            if entity_type in ENTITY_TYPES:
                return entity_type
    return None


def trigger_types_for(entity_type: str, operation: str) -> List[str]:
    """Trigger types evaluated for an entity event; threshold triggers fire on both operations"""
    if operation not in OPERATIONS:
        return []
    return [f"{entity_type}_{operation}", f"{entity_type}_threshold"]
