"""Reminder rules CRUD (plain CRUD, admin-facing)."""
import logging

from sqlalchemy.orm import Session

from crm_reminders.domain.reminder_rule import DEFAULT_RULES, RuleConfigurationError, validate_rule
from crm_reminders.infrastructure.db.models import ReminderRuleModel

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = (
    "entity_type",
    "trigger_type",
    "days_before",
    "days_after",
    "priority",
    "is_active",
    "title_template",
    "message_template",
    "action_url_template",
    "action_text_template",
    "auto_create_task",
    "task_title_template",
    "task_priority",
    "fire_once",
    "team_id",
)


class ReminderRuleValidationError(ValueError):
    pass


class ReminderRuleNotFound(LookupError):
    pass


class ReminderRulesService:
    def __init__(self, db: Session):
        self.db = db

    def list_rules(self, include_inactive: bool = True, entity_type: str | None = None) -> list[ReminderRuleModel]:
        q = self.db.query(ReminderRuleModel)
        if entity_type is not None:
            q = q.filter(ReminderRuleModel.entity_type == entity_type)
        if not include_inactive:
            q = q.filter(ReminderRuleModel.is_active.is_(True))
        return q.order_by(ReminderRuleModel.entity_type, ReminderRuleModel.trigger_type, ReminderRuleModel.id).all()

    def get_rule(self, rule_id: str) -> ReminderRuleModel:
        rule = self.db.get(ReminderRuleModel, rule_id)
        if rule is None:
            raise ReminderRuleNotFound(f"Reminder rule {rule_id} not found")
        return rule

    def create_rule(self, data: dict, created_by: int) -> str:
        fields = dict(data)
        unknown = set(fields) - set(EDITABLE_FIELDS) - {"id"}
        if unknown:
            raise ReminderRuleValidationError(f"Unknown rule fields: {', '.join(sorted(unknown))}")

        rule = ReminderRuleModel(created_by=created_by, **fields)
        # Column defaults are applied at flush; mirror them so validation sees them.
        for name, default in (("days_before", 7), ("days_after", 1), ("priority", "medium"),
                              ("is_active", True), ("auto_create_task", False),
                              ("task_priority", "medium"), ("fire_once", False)):
            if getattr(rule, name) is None:
                setattr(rule, name, default)
        self._validate(rule)

        self.db.add(rule)
        self.db.commit()
        logger.info("Reminder rule %s created (%s/%s)", rule.id, rule.entity_type, rule.trigger_type)
        return rule.id

    def update_rule(self, rule_id: str, changes: dict, updated_by: int) -> ReminderRuleModel:
        unknown = set(changes) - set(EDITABLE_FIELDS)
        if unknown:
            raise ReminderRuleValidationError(f"Unknown rule fields: {', '.join(sorted(unknown))}")

        rule = self.get_rule(rule_id)
        for name, value in changes.items():
            setattr(rule, name, value)
        rule.updated_by = updated_by
        try:
            self._validate(rule)
        except ReminderRuleValidationError:
            self.db.rollback()
            raise
        self.db.commit()
        return rule

    def set_active(self, rule_id: str, is_active: bool, updated_by: int) -> None:
        rule = self.get_rule(rule_id)
        rule.is_active = is_active
        rule.updated_by = updated_by
        self.db.commit()
        logger.info("Reminder rule %s %s", rule_id, "activated" if is_active else "deactivated")

    def seed_defaults(self, created_by: int) -> int:
        """Insert the system default rules that are missing. Returns the number inserted."""
        inserted = 0
        for values in DEFAULT_RULES:
            if self.db.get(ReminderRuleModel, values["id"]) is not None:
                continue
            self.db.add(ReminderRuleModel(created_by=created_by, is_active=True, **values))
            inserted += 1
        self.db.commit()
        if inserted:
            logger.info("Seeded %d default reminder rule(s)", inserted)
        return inserted

    @staticmethod
    def _validate(rule: ReminderRuleModel) -> None:
        try:
            validate_rule(rule)
        except RuleConfigurationError as e:
            raise ReminderRuleValidationError(str(e)) from e
