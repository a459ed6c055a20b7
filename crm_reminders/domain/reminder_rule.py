"""
Reminder rule definition and validation.

A rule ties an entity type to a temporal trigger:
  task    - due_soon, overdue
  quote   - due_soon, expired
  invoice - due_soon, unpaid

days_before is read by due_soon; days_after by overdue/expired/unpaid.
"""
from dataclasses import dataclass

ENTITY_TYPES = ("task", "quote", "invoice")
TRIGGER_TYPES = ("due_soon", "overdue", "expired", "unpaid")
PRIORITIES = ("low", "medium", "high", "urgent")
NOTIFICATION_TYPES = ("in_app", "email", "both")

TRIGGERS_BY_ENTITY: dict[str, frozenset[str]] = {
    "task": frozenset({"due_soon", "overdue"}),
    "quote": frozenset({"due_soon", "expired"}),
    "invoice": frozenset({"due_soon", "unpaid"}),
}

REQUIRED_TEMPLATES = ("title_template", "message_template", "action_url_template", "action_text_template")


class RuleConfigurationError(ValueError):
    pass


@dataclass(frozen=True)
class ReminderRule:
    id: str
    entity_type: str
    trigger_type: str
    days_before: int
    days_after: int
    priority: str
    is_active: bool
    title_template: str
    message_template: str
    action_url_template: str
    action_text_template: str
    auto_create_task: bool
    task_title_template: str | None
    task_priority: str
    created_by: int
    fire_once: bool = False
    team_id: int | None = None
    updated_by: int | None = None

    @property
    def templates(self) -> dict[str, str]:
        return {
            "title": self.title_template,
            "message": self.message_template,
            "action_url": self.action_url_template,
            "action_text": self.action_text_template,
        }


def validate_rule(rule) -> None:
    """Validate rule invariants. Raises RuleConfigurationError on failure.

    Accepts anything exposing the rule attributes (ReminderRule or the ORM row).
    """
    if rule.entity_type not in ENTITY_TYPES:
        raise RuleConfigurationError(f"unknown entity type: {rule.entity_type}")
    if rule.trigger_type not in TRIGGER_TYPES:
        raise RuleConfigurationError(f"unknown trigger type: {rule.trigger_type}")
    if rule.trigger_type not in TRIGGERS_BY_ENTITY[rule.entity_type]:
        raise RuleConfigurationError(
            f"trigger {rule.trigger_type} is not supported for {rule.entity_type}"
        )
    if rule.days_before is None or rule.days_before < 0:
        raise RuleConfigurationError("days_before must be >= 0")
    if rule.days_after is None or rule.days_after < 0:
        raise RuleConfigurationError("days_after must be >= 0")
    if rule.priority not in PRIORITIES:
        raise RuleConfigurationError(f"invalid priority: {rule.priority}")
    for name in REQUIRED_TEMPLATES:
        value = getattr(rule, name)
        if value is None or not str(value).strip():
            raise RuleConfigurationError(f"{name} is required")
    if rule.auto_create_task:
        if not (rule.task_title_template or "").strip():
            raise RuleConfigurationError("task_title_template is required when auto_create_task is set")
        if rule.task_priority not in PRIORITIES:
            raise RuleConfigurationError(f"invalid task priority: {rule.task_priority}")


# System default rules. Fixed ids make seeding idempotent.
DEFAULT_RULES: list[dict] = [
    {
        "id": "00000000-0000-0000-0000-000000000001",
        "entity_type": "task",
        "trigger_type": "due_soon",
        "days_before": 3,
        "days_after": 0,
        "priority": "medium",
        "title_template": "Task Due Soon",
        "message_template": "Task '{title}' is due in {days} days.",
        "action_url_template": "/tasks/{id}",
        "action_text_template": "View Task",
        "auto_create_task": False,
        "task_priority": "medium",
    },
    {
        "id": "00000000-0000-0000-0000-000000000002",
        "entity_type": "task",
        "trigger_type": "overdue",
        "days_before": 0,
        "days_after": 1,
        "priority": "high",
        "title_template": "Task Overdue",
        "message_template": "Task '{title}' is {days} days overdue.",
        "action_url_template": "/tasks/{id}",
        "action_text_template": "View Task",
        "auto_create_task": False,
        "task_priority": "high",
    },
    {
        "id": "00000000-0000-0000-0000-000000000003",
        "entity_type": "quote",
        "trigger_type": "due_soon",
        "days_before": 7,
        "days_after": 0,
        "priority": "low",
        "title_template": "Quote Expiring Soon",
        "message_template": "Quote '{quoteNumber}' for {institutionName} expires in {days} days.",
        "action_url_template": "/quotes/{id}",
        "action_text_template": "View Quote",
        "auto_create_task": False,
        "task_priority": "low",
    },
    {
        "id": "00000000-0000-0000-0000-000000000004",
        "entity_type": "quote",
        "trigger_type": "expired",
        "days_before": 0,
        "days_after": 7,
        "priority": "medium",
        "title_template": "Quote Expired",
        "message_template": "Quote '{quoteNumber}' for {institutionName} expired {days} days ago.",
        "action_url_template": "/quotes/{id}",
        "action_text_template": "View Quote",
        "auto_create_task": True,
        "task_title_template": "Follow up on expired quote {quoteNumber}",
        "task_priority": "medium",
    },
    {
        "id": "00000000-0000-0000-0000-000000000005",
        "entity_type": "invoice",
        "trigger_type": "due_soon",
        "days_before": 7,
        "days_after": 0,
        "priority": "medium",
        "title_template": "Invoice Due Soon",
        "message_template": "Invoice '{invoiceNumber}' for {amount}€ is due in {days} days.",
        "action_url_template": "/invoices/{id}",
        "action_text_template": "View Invoice",
        "auto_create_task": False,
        "task_priority": "medium",
    },
    {
        "id": "00000000-0000-0000-0000-000000000006",
        "entity_type": "invoice",
        "trigger_type": "unpaid",
        "days_before": 0,
        "days_after": 30,
        "priority": "high",
        "title_template": "Invoice Overdue",
        "message_template": "Invoice '{invoiceNumber}' for {amount}€ is {days} days overdue.",
        "action_url_template": "/invoices/{id}",
        "action_text_template": "View Invoice",
        "auto_create_task": True,
        "task_title_template": "Follow up on unpaid invoice {invoiceNumber}",
        "task_priority": "high",
    },
]
