"""
Read-only entity projections consumed by the reminder engine.

Each entity type has a strategy describing which date the triggers look at,
which statuses are closed, and which template fields it exposes.
"""
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable


@dataclass(frozen=True)
class EntitySnapshot:
    entity_type: str
    id: int
    status: str
    reference_date: date | datetime | None  # task.due_date / quote.valid_until / invoice.due_date
    title: str = ""
    assignee_id: int | None = None
    creator_id: int | None = None
    institution_id: int | None = None
    attributes: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class EntityTypeStrategy:
    date_field: str
    terminal_statuses: frozenset[str]
    open_statuses: frozenset[str] | None  # None: every non-terminal status is open
    context_fields: Callable[[EntitySnapshot], dict[str, Any]]

    def is_open(self, status: str) -> bool:
        if status in self.terminal_statuses:
            return False
        if self.open_statuses is not None:
            return status in self.open_statuses
        return True


def _task_fields(entity: EntitySnapshot) -> dict[str, Any]:
    return {"title": entity.title}


def _quote_fields(entity: EntitySnapshot) -> dict[str, Any]:
    number = entity.attributes.get("quoteNumber") or entity.title
    return {"title": entity.title or number, "quoteNumber": number}


def _invoice_fields(entity: EntitySnapshot) -> dict[str, Any]:
    number = entity.attributes.get("invoiceNumber") or entity.title
    return {"title": entity.title or number, "invoiceNumber": number}


ENTITY_STRATEGIES: dict[str, EntityTypeStrategy] = {
    "task": EntityTypeStrategy(
        date_field="due_date",
        terminal_statuses=frozenset({"completed", "cancelled"}),
        open_statuses=None,
        context_fields=_task_fields,
    ),
    "quote": EntityTypeStrategy(
        date_field="valid_until",
        terminal_statuses=frozenset({"accepted", "rejected", "ordered", "cancelled"}),
        open_statuses=None,
        context_fields=_quote_fields,
    ),
    "invoice": EntityTypeStrategy(
        date_field="due_date",
        terminal_statuses=frozenset({"paid", "cancelled"}),
        open_statuses=frozenset({"sent", "partially_paid", "overdue"}),
        context_fields=_invoice_fields,
    ),
}


def build_template_context(entity_type: str, entity: EntitySnapshot, days: int, priority: str) -> dict[str, Any]:
    """Flat key/value context shared by every template of a firing."""
    ref = entity.reference_date
    if isinstance(ref, datetime):
        ref = ref.date()
    ctx: dict[str, Any] = {
        "institutionName": "",
        "assigneeName": "",
        "amount": "",
    }
    ctx.update(entity.attributes)
    ctx.update({
        "id": entity.id,
        "entityType": entity_type,
        "status": entity.status,
        "days": days,
        "dueDate": ref.isoformat() if ref else "",
        "priority": priority,
    })
    ctx.update(ENTITY_STRATEGIES[entity_type].context_fields(entity))
    return ctx
