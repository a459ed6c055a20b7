"""
SQLAlchemy implementations of the reminder engine collaborators:
rules, candidate entities, recipients, follow-up task creation.
"""
import logging
from datetime import datetime, timedelta, tzinfo

from sqlalchemy.orm import Session

from crm_reminders.domain.entities import ENTITY_STRATEGIES, EntitySnapshot
from crm_reminders.domain.reminder_rule import ReminderRule
from crm_reminders.domain.triggers import local_date
from crm_reminders.infrastructure.db.models import (
    User,
    MedicalInstitution,
    TaskModel,
    QuoteModel,
    InvoiceModel,
    ReminderRuleModel,
)
from crm_reminders.infrastructure.reminders.errors import repository_errors, task_write_errors

logger = logging.getLogger(__name__)


def rule_from_row(row: ReminderRuleModel) -> ReminderRule:
    return ReminderRule(
        id=row.id,
        entity_type=row.entity_type,
        trigger_type=row.trigger_type,
        days_before=row.days_before,
        days_after=row.days_after,
        priority=row.priority,
        is_active=row.is_active,
        title_template=row.title_template,
        message_template=row.message_template,
        action_url_template=row.action_url_template,
        action_text_template=row.action_text_template,
        auto_create_task=row.auto_create_task,
        task_title_template=row.task_title_template,
        task_priority=row.task_priority,
        created_by=row.created_by,
        fire_once=row.fire_once,
        team_id=row.team_id,
        updated_by=row.updated_by,
    )


class SqlRuleRepository:
    def __init__(self, db: Session):
        self.db = db

    def list_active(self) -> list[ReminderRule]:
        with repository_errors(self.db, "loading active reminder rules"):
            rows = (
                self.db.query(ReminderRuleModel)
                .filter(ReminderRuleModel.is_active.is_(True))
                .order_by(ReminderRuleModel.entity_type, ReminderRuleModel.id)
                .all()
            )
        return [rule_from_row(r) for r in rows]


# ---------------------------------------------------------------------------
# Candidate entities
# ---------------------------------------------------------------------------

def _date_window(trigger_type: str, rule: ReminderRule, today) -> tuple:
    """(lower, upper) bounds on the entity date; None means unbounded."""
    if trigger_type == "due_soon":
        return today, today + timedelta(days=rule.days_before)
    return None, today - timedelta(days=max(rule.days_after, 1))


def _apply_window(q, column, lower, upper):
    q = q.filter(column.isnot(None))
    if lower is not None:
        q = q.filter(column >= lower)
    if upper is not None:
        q = q.filter(column <= upper)
    return q


class SqlEntityRepository:
    """Pre-filters entities at the source; the evaluator re-checks every candidate."""

    def __init__(self, db: Session, tz: tzinfo):
        self.db = db
        self.tz = tz
        self._queries = {
            "task": self._task_candidates,
            "quote": self._quote_candidates,
            "invoice": self._invoice_candidates,
        }

    def find_candidates(self, entity_type: str, trigger_type: str, now: datetime, rule: ReminderRule) -> list[EntitySnapshot]:
        query = self._queries.get(entity_type)
        if query is None:
            raise ValueError(f"unsupported entity type: {entity_type}")
        lower, upper = _date_window(trigger_type, rule, local_date(now, self.tz))
        with repository_errors(self.db, f"loading {entity_type} candidates"):
            return query(lower, upper)

    def _task_candidates(self, lower, upper) -> list[EntitySnapshot]:
        closed = ENTITY_STRATEGIES["task"].terminal_statuses
        q = self.db.query(TaskModel).filter(TaskModel.status.notin_(closed))
        tasks = _apply_window(q, TaskModel.due_date, lower, upper).order_by(TaskModel.id).all()
        institutions = self._institution_names({t.institution_id for t in tasks})
        users = self._user_names({t.assignee_id for t in tasks})
        return [
            EntitySnapshot(
                entity_type="task",
                id=t.id,
                status=t.status,
                reference_date=t.due_date,
                title=t.title,
                assignee_id=t.assignee_id,
                creator_id=t.creator_id,
                institution_id=t.institution_id,
                attributes={
                    "institutionName": institutions.get(t.institution_id, ""),
                    "assigneeName": users.get(t.assignee_id, ""),
                },
            )
            for t in tasks
        ]

    def _quote_candidates(self, lower, upper) -> list[EntitySnapshot]:
        closed = ENTITY_STRATEGIES["quote"].terminal_statuses
        q = self.db.query(QuoteModel).filter(QuoteModel.status.notin_(closed))
        quotes = _apply_window(q, QuoteModel.valid_until, lower, upper).order_by(QuoteModel.id).all()
        institutions = self._institution_names({x.institution_id for x in quotes})
        users = self._user_names({x.assigned_user_id for x in quotes})
        return [
            EntitySnapshot(
                entity_type="quote",
                id=x.id,
                status=x.status,
                reference_date=x.valid_until,
                title=x.quote_number,
                assignee_id=x.assigned_user_id,
                institution_id=x.institution_id,
                attributes={
                    "quoteNumber": x.quote_number,
                    "amount": x.total,
                    "institutionName": institutions.get(x.institution_id, ""),
                    "assigneeName": users.get(x.assigned_user_id, ""),
                },
            )
            for x in quotes
        ]

    def _invoice_candidates(self, lower, upper) -> list[EntitySnapshot]:
        open_statuses = ENTITY_STRATEGIES["invoice"].open_statuses
        q = self.db.query(InvoiceModel).filter(InvoiceModel.status.in_(open_statuses))
        invoices = _apply_window(q, InvoiceModel.due_date, lower, upper).order_by(InvoiceModel.id).all()
        institutions = self._institution_names({x.institution_id for x in invoices})
        users = self._user_names({x.assigned_user_id for x in invoices})
        return [
            EntitySnapshot(
                entity_type="invoice",
                id=x.id,
                status=x.status,
                reference_date=x.due_date,
                title=x.invoice_number,
                assignee_id=x.assigned_user_id,
                creator_id=x.created_by,
                institution_id=x.institution_id,
                attributes={
                    "invoiceNumber": x.invoice_number,
                    "amount": x.total,
                    "institutionName": institutions.get(x.institution_id, ""),
                    "assigneeName": users.get(x.assigned_user_id, ""),
                },
            )
            for x in invoices
        ]

    def _institution_names(self, ids: set) -> dict[int, str]:
        ids = {i for i in ids if i is not None}
        if not ids:
            return {}
        rows = self.db.query(MedicalInstitution).filter(MedicalInstitution.id.in_(ids)).all()
        return {r.id: r.name for r in rows}

    def _user_names(self, ids: set) -> dict[int, str]:
        ids = {i for i in ids if i is not None}
        if not ids:
            return {}
        rows = self.db.query(User).filter(User.id.in_(ids)).all()
        return {u.id: u.full_name for u in rows}


# ---------------------------------------------------------------------------
# Recipients
# ---------------------------------------------------------------------------

# Snapshot fields checked in order; the first one set is the entity owner.
OWNER_FIELDS: dict[str, tuple[str, ...]] = {
    "task": ("assignee_id",),
    "quote": ("assignee_id",),
    "invoice": ("assignee_id", "creator_id"),
}


class SqlRecipientResolver:
    """Owner of the entity first, then active members of the rule's team."""

    def __init__(self, db: Session):
        self.db = db

    def resolve(self, entity_type: str, entity: EntitySnapshot, rule: ReminderRule) -> list[int]:
        recipients: list[int] = []
        for field_name in OWNER_FIELDS[entity_type]:
            owner = getattr(entity, field_name)
            if owner is not None:
                recipients.append(owner)
                break

        if rule.team_id is not None:
            with repository_errors(self.db, "loading team members"):
                members = (
                    self.db.query(User.id)
                    .filter(User.team_id == rule.team_id, User.is_active.is_(True))
                    .order_by(User.id)
                    .all()
                )
            recipients.extend(m.id for m in members if m.id not in recipients)
        return recipients


# ---------------------------------------------------------------------------
# Follow-up tasks
# ---------------------------------------------------------------------------

class SqlTaskCreator:
    """One open follow-up task per (entity, rule): a re-firing reminder reuses it."""

    def __init__(self, db: Session, tz: tzinfo):
        self.db = db
        self.tz = tz

    def find_open(self, entity: EntitySnapshot, rule: ReminderRule) -> TaskModel | None:
        closed = ENTITY_STRATEGIES["task"].terminal_statuses
        with repository_errors(self.db, "looking up follow-up task"):
            return (
                self.db.query(TaskModel)
                .filter(
                    TaskModel.linked_entity_type == entity.entity_type,
                    TaskModel.linked_entity_id == entity.id,
                    TaskModel.reminder_rule_id == rule.id,
                    TaskModel.status.notin_(closed),
                )
                .order_by(TaskModel.id)
                .first()
            )

    def create(self, title: str, priority: str, entity: EntitySnapshot, rule: ReminderRule, now: datetime) -> int | None:
        """Insert the follow-up task. Returns None when an open one already exists."""
        existing = self.find_open(entity, rule)
        if existing is not None:
            logger.info(
                "Follow-up task %s still open for %s %s (rule %s), not duplicated",
                existing.id, entity.entity_type, entity.id, rule.id,
            )
            return None

        task = TaskModel(
            title=title,
            description=f"Automatic reminder task for {entity.entity_type}: {entity.title}",
            status="todo",
            priority=priority,
            due_date=local_date(now, self.tz) + timedelta(days=1),
            assignee_id=entity.assignee_id or rule.created_by,
            creator_id=rule.created_by,
            institution_id=entity.institution_id,
            linked_entity_type=entity.entity_type,
            linked_entity_id=entity.id,
            reminder_rule_id=rule.id,
        )
        with task_write_errors(self.db, "creating follow-up task"):
            self.db.add(task)
            self.db.commit()
        logger.info(
            "Follow-up task %s created for %s %s (rule %s)",
            task.id, entity.entity_type, entity.id, rule.id,
        )
        return task.id
