"""
Trigger evaluation: does a rule's temporal condition hold for an entity now?

All day arithmetic is done on calendar dates in the reminder timezone, so an
entity never flips between "due in 1 day" and "due in 2 days" within one day.

Trigger semantics:
  due_soon - 0 <= days remaining <= days_before
  overdue  - days overdue >= max(days_after, 1)
  expired  - days since expiry >= max(days_after, 1); quote not accepted/rejected/ordered
  unpaid   - days overdue >= max(days_after, 1); invoice sent/partially_paid/overdue
Closed entities never fire.
"""
from dataclasses import dataclass
from datetime import date, datetime, timezone, tzinfo

from crm_reminders.domain.entities import ENTITY_STRATEGIES, EntitySnapshot
from crm_reminders.domain.reminder_rule import RuleConfigurationError

UNPAID_STATUSES = frozenset({"sent", "partially_paid", "overdue"})


class TriggerEvaluationError(ValueError):
    pass


@dataclass(frozen=True)
class TriggerResult:
    fires: bool
    days_delta: int


NO_FIRE = TriggerResult(fires=False, days_delta=0)


def local_date(value: date | datetime, tz: tzinfo) -> date:
    """Calendar date of value in tz. Naive datetimes are taken as UTC."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(tz).date()
    return value


def days_until(reference: date | datetime, now: datetime, tz: tzinfo) -> int:
    """Whole days from today to reference (negative when reference is in the past)."""
    return (local_date(reference, tz) - local_date(now, tz)).days


def evaluate(rule, entity: EntitySnapshot, now: datetime, tz: tzinfo) -> TriggerResult:
    strategy = ENTITY_STRATEGIES.get(entity.entity_type)
    if strategy is None:
        raise TriggerEvaluationError(f"unsupported entity type: {entity.entity_type}")

    if not strategy.is_open(entity.status):
        return NO_FIRE

    if entity.reference_date is None:
        raise TriggerEvaluationError(
            f"{entity.entity_type} {entity.id} has no {strategy.date_field}"
        )

    delta = days_until(entity.reference_date, now, tz)
    trigger = rule.trigger_type

    if trigger == "due_soon":
        fires = 0 <= delta <= rule.days_before
        return TriggerResult(fires=fires, days_delta=delta)

    if trigger in ("overdue", "expired", "unpaid"):
        if trigger == "unpaid" and entity.status not in UNPAID_STATUSES:
            return NO_FIRE
        elapsed = -delta
        fires = elapsed >= 1 and elapsed >= rule.days_after
        return TriggerResult(fires=fires, days_delta=elapsed)

    raise RuleConfigurationError(f"unknown trigger type: {trigger}")
