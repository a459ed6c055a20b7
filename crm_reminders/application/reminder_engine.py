"""
Reminder engine: one scan cycle over all active reminder rules.

Cycle:
  1. load active rules (failure aborts the cycle)
  2. per rule: validate, fetch candidate entities for its entity type
  3. per entity: evaluate the trigger
  4. per recipient: ledger check -> render -> dispatch -> ledger row (sent/failed)
  5. optional follow-up task, once per entity per firing, skipped while an
     open follow-up for the same entity and rule exists

Per-rule, per-entity, per-recipient and follow-up task failures are logged
and counted, the scan goes on. RepositoryError (database unreachable) and ScanTimeoutError
abort the cycle and are left to the scheduler.
"""
import logging
import time
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone, tzinfo
from typing import Protocol

from crm_reminders.application.notification_sinks import (
    NOTIFICATION_KINDS,
    DispatchError,
    PartialDeliveryError,
    RenderedReminder,
)
from crm_reminders.domain.cooldown import cooldown_window_start, DEFAULT_COOLDOWN_DAYS
from crm_reminders.domain.entities import EntitySnapshot, build_template_context
from crm_reminders.domain.reminder_rule import ReminderRule, RuleConfigurationError, validate_rule
from crm_reminders.domain.templates import render, render_all
from crm_reminders.domain.triggers import TriggerEvaluationError, evaluate
from crm_reminders.infrastructure.reminders.errors import RepositoryError
from crm_reminders.infrastructure.reminders.ledger import STATUS_FAILED, STATUS_SENT

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------

class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class RuleRepository(Protocol):
    def list_active(self) -> list[ReminderRule]: ...


class EntityRepository(Protocol):
    def find_candidates(self, entity_type: str, trigger_type: str, now: datetime, rule: ReminderRule) -> list[EntitySnapshot]: ...


class RecipientResolver(Protocol):
    def resolve(self, entity_type: str, entity: EntitySnapshot, rule: ReminderRule) -> list[int]: ...


class NotificationSink(Protocol):
    def send(self, notification_type: str, recipient_id: int, reminder: RenderedReminder) -> None: ...


class TaskCreator(Protocol):
    def create(self, title: str, priority: str, entity: EntitySnapshot, rule: ReminderRule, now: datetime) -> int | None: ...


class Ledger(Protocol):
    def was_recently_notified(self, rule_id: str, entity_type: str, entity_id: int, recipient_id: int, since: datetime | None) -> bool: ...

    def record(self, rule_id: str, entity_type: str, entity_id: int, recipient_id: int,
               notification_type: str, status: str, sent_at: datetime, error_message: str | None = None): ...


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------

@dataclass
class ScanReport:
    started_at: datetime
    last_completed_at: datetime | None = None
    finished_at: datetime | None = None
    rules_evaluated: int = 0
    rules_skipped: int = 0
    entities_evaluated: int = 0
    entities_failed: int = 0
    notifications_sent: int = 0
    notifications_failed: int = 0
    notifications_skipped: int = 0
    tasks_created: int = 0
    tasks_failed: int = 0
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        data = asdict(self)
        for key in ("started_at", "last_completed_at", "finished_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


class ScanTimeoutError(RuntimeError):
    def __init__(self, report: ScanReport, budget_seconds: float):
        super().__init__(f"reminder scan exceeded its {budget_seconds:.0f}s budget")
        self.report = report


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class ReminderEngine:
    def __init__(
        self,
        rules: RuleRepository,
        entities: EntityRepository,
        recipients: RecipientResolver,
        ledger: Ledger,
        notifier: NotificationSink,
        task_creator: TaskCreator,
        tz: tzinfo,
        clock: Clock | None = None,
        notification_type: str = "in_app",
        cooldown_days: int = DEFAULT_COOLDOWN_DAYS,
        timeout_seconds: float | None = None,
    ):
        self.rules = rules
        self.entities = entities
        self.recipients = recipients
        self.ledger = ledger
        self.notifier = notifier
        self.task_creator = task_creator
        self.tz = tz
        self.clock = clock or SystemClock()
        self.notification_type = notification_type
        if cooldown_days < 1:
            raise ValueError(f"cooldown_days must be >= 1, got {cooldown_days}")
        self.cooldown_days = cooldown_days
        self.timeout_seconds = timeout_seconds

    def run_once(self, last_completed_at: datetime | None = None) -> ScanReport:
        now = self.clock.now()
        report = ScanReport(started_at=now, last_completed_at=last_completed_at)
        deadline = time.monotonic() + self.timeout_seconds if self.timeout_seconds else None

        logger.info("Reminder scan started (previous completed at %s)", last_completed_at)
        rules = self.rules.list_active()
        logger.info("Found %d active reminder rule(s)", len(rules))

        for rule in rules:
            self._run_rule(rule, now, report, deadline)

        report.finished_at = self.clock.now()
        logger.info(
            "Reminder scan finished: rules=%d skipped_rules=%d entities=%d sent=%d failed=%d deduped=%d tasks=%d tasks_failed=%d",
            report.rules_evaluated, report.rules_skipped, report.entities_evaluated,
            report.notifications_sent, report.notifications_failed,
            report.notifications_skipped, report.tasks_created, report.tasks_failed,
        )
        return report

    def _run_rule(self, rule: ReminderRule, now: datetime, report: ScanReport, deadline: float | None) -> None:
        if not rule.is_active:
            return
        try:
            validate_rule(rule)
        except RuleConfigurationError as e:
            logger.error("Skipping misconfigured reminder rule %s: %s", rule.id, e)
            report.rules_skipped += 1
            report.errors.append(f"rule {rule.id}: {e}")
            return

        report.rules_evaluated += 1
        candidates = self.entities.find_candidates(rule.entity_type, rule.trigger_type, now, rule)
        logger.debug("Rule %s: %d %s candidate(s)", rule.id, len(candidates), rule.entity_type)
        window_start = cooldown_window_start(rule, now, self.tz, self.cooldown_days)

        for entity in candidates:
            if deadline is not None and time.monotonic() > deadline:
                raise ScanTimeoutError(report, self.timeout_seconds)
            try:
                self._run_entity(rule, entity, now, window_start, report)
            except RepositoryError:
                raise
            except TriggerEvaluationError as e:
                logger.warning("Rule %s: cannot evaluate %s %s: %s", rule.id, entity.entity_type, entity.id, e)
                report.entities_failed += 1
                report.errors.append(f"rule {rule.id} {entity.entity_type} {entity.id}: {e}")
            except Exception as e:
                logger.exception("Rule %s failed on %s %s", rule.id, entity.entity_type, entity.id)
                report.entities_failed += 1
                report.errors.append(f"rule {rule.id} {entity.entity_type} {entity.id}: {e}")

    def _run_entity(
        self,
        rule: ReminderRule,
        entity: EntitySnapshot,
        now: datetime,
        window_start: datetime | None,
        report: ScanReport,
    ) -> None:
        report.entities_evaluated += 1
        result = evaluate(rule, entity, now, self.tz)
        if not result.fires:
            return

        ctx = build_template_context(rule.entity_type, entity, abs(result.days_delta), rule.priority)
        reminder: RenderedReminder | None = None
        delivered = False

        for recipient_id in self.recipients.resolve(rule.entity_type, entity, rule):
            if self.ledger.was_recently_notified(rule.id, rule.entity_type, entity.id, recipient_id, window_start):
                report.notifications_skipped += 1
                continue

            if reminder is None:
                reminder = self._render(rule, entity, ctx)

            if self._dispatch(rule, entity, recipient_id, reminder, now, report):
                delivered = True

        if delivered and rule.auto_create_task:
            self._create_follow_up(rule, entity, ctx, now, report)

    def _create_follow_up(self, rule: ReminderRule, entity: EntitySnapshot, ctx: dict,
                          now: datetime, report: ScanReport) -> None:
        title = render(rule.task_title_template, ctx)
        try:
            task_id = self.task_creator.create(title, rule.task_priority, entity, rule, now)
        except RepositoryError:
            raise
        except Exception as e:
            logger.error("Rule %s: follow-up task for %s %s not created: %s",
                         rule.id, entity.entity_type, entity.id, e)
            report.tasks_failed += 1
            report.errors.append(f"rule {rule.id} {entity.entity_type} {entity.id}: follow-up task: {e}")
            return
        if task_id is not None:
            report.tasks_created += 1

    def _render(self, rule: ReminderRule, entity: EntitySnapshot, ctx: dict) -> RenderedReminder:
        texts = render_all(rule.templates, ctx)
        return RenderedReminder(
            title=texts["title"],
            body=texts["message"],
            action_url=texts["action_url"],
            action_text=texts["action_text"],
            priority=rule.priority,
            entity_type=rule.entity_type,
            entity_id=entity.id,
            kind=NOTIFICATION_KINDS.get((rule.entity_type, rule.trigger_type), "system_alert"),
        )

    def _dispatch(
        self,
        rule: ReminderRule,
        entity: EntitySnapshot,
        recipient_id: int,
        reminder: RenderedReminder,
        now: datetime,
        report: ScanReport,
    ) -> bool:
        try:
            self.notifier.send(self.notification_type, recipient_id, reminder)
        except RepositoryError:
            raise
        except PartialDeliveryError as e:
            logger.warning(
                "Reminder partially delivered: rule=%s %s=%s user_id=%s: %s",
                rule.id, entity.entity_type, entity.id, recipient_id, e,
            )
            self.ledger.record(
                rule.id, rule.entity_type, entity.id, recipient_id,
                self.notification_type, STATUS_SENT, now, error_message=str(e),
            )
            report.notifications_sent += 1
            return True
        except Exception as e:
            if not isinstance(e, DispatchError):
                logger.exception("Unexpected dispatch error for user_id=%s", recipient_id)
            else:
                logger.warning(
                    "Reminder dispatch failed: rule=%s %s=%s user_id=%s: %s",
                    rule.id, entity.entity_type, entity.id, recipient_id, e,
                )
            self.ledger.record(
                rule.id, rule.entity_type, entity.id, recipient_id,
                self.notification_type, STATUS_FAILED, now, error_message=str(e),
            )
            report.notifications_failed += 1
            return False

        self.ledger.record(
            rule.id, rule.entity_type, entity.id, recipient_id,
            self.notification_type, STATUS_SENT, now,
        )
        report.notifications_sent += 1
        return True
