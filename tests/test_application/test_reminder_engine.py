"""
Tests for the reminder scan engine.

Covers:
  - Inactive rules never evaluated
  - Dedup: two scans at T and T+1h -> one `sent` row per tuple
  - Dedup: next calendar day fires again
  - due_soon daysBefore=3 scenario (one row, one notification, no task)
  - expired + autoCreateTask scenario (one row, one notification, one task)
  - Misconfigured rule skipped, other rules still run
  - Per-entity and per-recipient failures isolated
  - Database failure aborts the cycle; timeout carries the partial report
  - Follow-up task failures isolated; open follow-ups not duplicated
  - Email delivered + in-app failed is recorded sent, never re-sent
"""
import itertools
from datetime import date, datetime, timedelta, timezone
from unittest.mock import Mock

import pytest

from crm_reminders.application.notification_sinks import DispatchError, RenderedReminder, ReminderNotifier
from crm_reminders.application.reminder_engine import ReminderEngine, ScanTimeoutError
from crm_reminders.application.reminder_scan import build_reminder_engine
from crm_reminders.domain.entities import EntitySnapshot
from crm_reminders.domain.reminder_rule import ReminderRule
from crm_reminders.infrastructure.db.models import (
    MedicalInstitution,
    NotificationModel,
    QuoteModel,
    ReminderNotificationLog,
    ReminderRuleModel,
    TaskModel,
    User,
)
from crm_reminders.infrastructure.reminders.errors import RepositoryError, TaskCreationError

UTC = timezone.utc
T0 = datetime(2026, 3, 10, 9, 0, tzinfo=UTC)
TODAY = date(2026, 3, 10)
USER_ID = 1


class FakeClock:
    def __init__(self, now):
        self.current = now

    def now(self):
        return self.current


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _user(db, user_id=USER_ID, **kw) -> User:
    u = db.get(User, user_id)
    if not u:
        u = User(id=user_id, email=f"user{user_id}@example.com", first_name="Jean", last_name="Dupont", **kw)
        db.add(u)
        db.commit()
    return u


def _rule(db, rule_id="rule-1", entity_type="task", trigger_type="due_soon", **kw) -> ReminderRuleModel:
    values = dict(
        days_before=3,
        days_after=1,
        title_template="Task Due Soon",
        message_template="Task '{title}' is due in {days} days.",
        action_url_template="/tasks/{id}",
        action_text_template="View Task",
    )
    values.update(kw)
    row = ReminderRuleModel(id=rule_id, entity_type=entity_type, trigger_type=trigger_type,
                            created_by=USER_ID, **values)
    db.add(row)
    db.commit()
    return row


def _task(db, task_id=1, due=TODAY + timedelta(days=3), status="todo", assignee_id=USER_ID) -> TaskModel:
    t = TaskModel(id=task_id, title="Fix printer", due_date=due, status=status, assignee_id=assignee_id)
    db.add(t)
    db.commit()
    return t


def _engine(db, settings, clock):
    return build_reminder_engine(db, settings, clock=clock)


def _sent_rows(db):
    return db.query(ReminderNotificationLog).filter(ReminderNotificationLog.status == "sent").all()


# ---------------------------------------------------------------------------
# End-to-end on the database
# ---------------------------------------------------------------------------

class TestScanOnDatabase:
    def test_due_soon_scenario(self, db_session, settings):
        _user(db_session)
        _rule(db_session)
        _task(db_session, due=TODAY + timedelta(days=3))
        clock = FakeClock(T0)

        report = _engine(db_session, settings, clock).run_once()

        assert report.notifications_sent == 1
        assert report.tasks_created == 0
        rows = _sent_rows(db_session)
        assert len(rows) == 1
        assert (rows[0].rule_id, rows[0].entity_type, rows[0].entity_id, rows[0].recipient_id) == \
            ("rule-1", "task", 1, USER_ID)

        notif = db_session.query(NotificationModel).one()
        assert notif.user_id == USER_ID
        assert notif.title == "Task Due Soon"
        assert notif.message == "Task 'Fix printer' is due in 3 days."
        assert notif.action_url == "/tasks/1"
        assert notif.type == "task_due_soon"
        assert db_session.query(TaskModel).count() == 1

        # same day again: nothing new
        again = _engine(db_session, settings, clock).run_once(report.finished_at)
        assert again.notifications_sent == 0
        assert again.notifications_skipped == 1
        assert db_session.query(ReminderNotificationLog).count() == 1
        assert db_session.query(NotificationModel).count() == 1

    def test_second_scan_one_hour_later_is_deduplicated(self, db_session, settings):
        _user(db_session)
        _rule(db_session, trigger_type="overdue", days_after=1,
              title_template="Task Overdue", message_template="Task '{title}' is {days} days overdue.")
        _task(db_session, due=TODAY - timedelta(days=2))
        clock = FakeClock(T0)

        _engine(db_session, settings, clock).run_once()
        clock.current = T0 + timedelta(hours=1)
        second = _engine(db_session, settings, clock).run_once()

        assert second.notifications_sent == 0
        assert len(_sent_rows(db_session)) == 1

    def test_next_day_fires_again(self, db_session, settings):
        _user(db_session)
        _rule(db_session, trigger_type="overdue", days_after=1)
        _task(db_session, due=TODAY - timedelta(days=2))
        clock = FakeClock(T0)

        _engine(db_session, settings, clock).run_once()
        clock.current = T0 + timedelta(days=1)
        second = _engine(db_session, settings, clock).run_once()

        assert second.notifications_sent == 1
        assert len(_sent_rows(db_session)) == 2

    def test_fire_once_rule_never_repeats(self, db_session, settings):
        _user(db_session)
        _rule(db_session, trigger_type="overdue", days_after=1, fire_once=True)
        _task(db_session, due=TODAY - timedelta(days=2))
        clock = FakeClock(T0)

        _engine(db_session, settings, clock).run_once()
        clock.current = T0 + timedelta(days=5)
        second = _engine(db_session, settings, clock).run_once()

        assert second.notifications_sent == 0
        assert len(_sent_rows(db_session)) == 1

    def test_expired_quote_creates_follow_up_task(self, db_session, settings):
        _user(db_session)
        db_session.add(MedicalInstitution(id=3, name="Clinique Pasteur"))
        db_session.add(QuoteModel(id=12, quote_number="Q-2026-012", status="sent",
                                  valid_until=TODAY - timedelta(days=8), assigned_user_id=USER_ID,
                                  institution_id=3))
        db_session.commit()
        _rule(db_session, "rule-q", entity_type="quote", trigger_type="expired", days_before=0, days_after=7,
              title_template="Quote Expired",
              message_template="Quote '{quoteNumber}' for {institutionName} expired {days} days ago.",
              action_url_template="/quotes/{id}", action_text_template="View Quote",
              auto_create_task=True, task_title_template="Follow up on expired quote {quoteNumber}",
              task_priority="medium")

        report = _engine(db_session, settings, FakeClock(T0)).run_once()

        assert report.notifications_sent == 1
        assert report.tasks_created == 1
        assert len(_sent_rows(db_session)) == 1
        notif = db_session.query(NotificationModel).one()
        assert notif.message == "Quote 'Q-2026-012' for Clinique Pasteur expired 8 days ago."
        assert notif.type == "quote_expired"

        follow_up = db_session.query(TaskModel).one()
        assert follow_up.title == "Follow up on expired quote Q-2026-012"
        assert follow_up.linked_entity_type == "quote"
        assert follow_up.linked_entity_id == 12
        assert follow_up.due_date == TODAY + timedelta(days=1)

    def test_inactive_rule_never_evaluated(self, db_session, settings):
        _user(db_session)
        _rule(db_session, is_active=False)
        _task(db_session, due=TODAY + timedelta(days=1))

        report = _engine(db_session, settings, FakeClock(T0)).run_once()

        assert report.rules_evaluated == 0
        assert report.entities_evaluated == 0
        assert db_session.query(ReminderNotificationLog).count() == 0

    def test_completed_task_never_fires_overdue(self, db_session, settings):
        _user(db_session)
        _rule(db_session, trigger_type="overdue", days_after=1)
        _task(db_session, due=TODAY - timedelta(days=10), status="completed")

        report = _engine(db_session, settings, FakeClock(T0)).run_once()

        assert report.notifications_sent == 0
        assert db_session.query(ReminderNotificationLog).count() == 0

    def test_misconfigured_rule_skipped(self, db_session, settings):
        _user(db_session)
        _rule(db_session, "bad", entity_type="task", trigger_type="unpaid")
        _rule(db_session, "good")
        _task(db_session, due=TODAY + timedelta(days=1))

        report = _engine(db_session, settings, FakeClock(T0)).run_once()

        assert report.rules_skipped == 1
        assert report.rules_evaluated == 1
        assert report.notifications_sent == 1

    def test_email_failure_recorded_and_retried_next_scan(self, db_session, settings):
        settings.REMINDER_NOTIFICATION_TYPE = "email"
        _user(db_session)
        db_session.get(User, USER_ID).email = ""
        db_session.commit()
        _rule(db_session)
        _task(db_session)
        clock = FakeClock(T0)

        report = _engine(db_session, settings, clock).run_once()

        assert report.notifications_failed == 1
        row = db_session.query(ReminderNotificationLog).one()
        assert row.status == "failed"
        assert "no email" in row.error_message

        # failed rows do not suppress the next attempt
        clock.current = T0 + timedelta(hours=1)
        again = _engine(db_session, settings, clock).run_once()
        assert again.notifications_failed == 1
        assert again.notifications_skipped == 0


    def test_email_without_smtp_host_is_not_recorded_sent(self, db_session, settings):
        settings.REMINDER_NOTIFICATION_TYPE = "email"
        _user(db_session)
        _rule(db_session)
        _task(db_session)

        report = _engine(db_session, settings, FakeClock(T0)).run_once()

        assert report.notifications_sent == 0
        assert report.notifications_failed == 1
        row = db_session.query(ReminderNotificationLog).one()
        assert (row.status, row.notification_type) == ("failed", "email")
        assert row.error_message == "SMTP not configured"

    def test_refiring_quote_keeps_one_open_follow_up(self, db_session, settings):
        _user(db_session)
        db_session.add(QuoteModel(id=12, quote_number="Q-2026-012", status="sent",
                                  valid_until=TODAY - timedelta(days=8), assigned_user_id=USER_ID))
        db_session.commit()
        _rule(db_session, "rule-q", entity_type="quote", trigger_type="expired", days_before=0, days_after=7,
              title_template="Quote Expired", message_template="Quote '{quoteNumber}' expired.",
              action_url_template="/quotes/{id}", action_text_template="View Quote",
              auto_create_task=True, task_title_template="Follow up on {quoteNumber}")
        clock = FakeClock(T0)

        first = _engine(db_session, settings, clock).run_once()
        clock.current = T0 + timedelta(days=1)
        second = _engine(db_session, settings, clock).run_once()

        assert (first.notifications_sent, second.notifications_sent) == (1, 1)
        assert (first.tasks_created, second.tasks_created) == (1, 0)
        assert db_session.query(TaskModel).count() == 1


# ---------------------------------------------------------------------------
# Engine with in-memory collaborators
# ---------------------------------------------------------------------------

def _domain_rule(rule_id="r1", **kw) -> ReminderRule:
    values = dict(
        id=rule_id,
        entity_type="task",
        trigger_type="due_soon",
        days_before=3,
        days_after=1,
        priority="high",
        is_active=True,
        title_template="Due: {title}",
        message_template="{title} in {days} days",
        action_url_template="/tasks/{id}",
        action_text_template="Open",
        auto_create_task=False,
        task_title_template=None,
        task_priority="medium",
        created_by=USER_ID,
    )
    values.update(kw)
    return ReminderRule(**values)


def _snapshot(entity_id=1, due=TODAY + timedelta(days=1), status="todo"):
    return EntitySnapshot("task", entity_id, status, due, title=f"Task {entity_id}", assignee_id=USER_ID)


class FakeLedger:
    def __init__(self):
        self.rows = []
        self.errors = []

    def was_recently_notified(self, rule_id, entity_type, entity_id, recipient_id, since):
        return any(
            r[:4] == (rule_id, entity_type, entity_id, recipient_id) and r[5] == "sent"
            and (since is None or r[6] >= since)
            for r in self.rows
        )

    def record(self, rule_id, entity_type, entity_id, recipient_id, notification_type, status, sent_at,
               error_message=None):
        self.rows.append((rule_id, entity_type, entity_id, recipient_id, notification_type, status, sent_at))
        self.errors.append(error_message)


def _fake_engine(rules, entities, recipients=None, notifier=None, task_creator=None, **kw):
    rule_repo = Mock()
    rule_repo.list_active.return_value = rules
    entity_repo = Mock()
    entity_repo.find_candidates.side_effect = lambda et, tt, now, rule: entities
    resolver = Mock()
    resolver.resolve.side_effect = recipients or (lambda et, entity, rule: [entity.assignee_id])
    ledger = FakeLedger()
    engine = ReminderEngine(
        rules=rule_repo,
        entities=entity_repo,
        recipients=resolver,
        ledger=ledger,
        notifier=notifier or Mock(),
        task_creator=task_creator or Mock(),
        tz=UTC,
        clock=FakeClock(T0),
        **kw,
    )
    return engine, ledger


class TestEngineUnit:
    def test_rendered_reminder_passed_to_notifier(self):
        notifier = Mock()
        engine, _ = _fake_engine([_domain_rule()], [_snapshot()], notifier=notifier)

        engine.run_once()

        notifier.send.assert_called_once()
        notification_type, recipient_id, reminder = notifier.send.call_args.args
        assert notification_type == "in_app"
        assert recipient_id == USER_ID
        assert reminder == RenderedReminder(
            title="Due: Task 1", body="Task 1 in 1 days", action_url="/tasks/1", action_text="Open",
            priority="high", entity_type="task", entity_id=1, kind="task_due_soon",
        )

    def test_inactive_rule_never_queries_entities(self):
        engine, _ = _fake_engine([_domain_rule(is_active=False)], [_snapshot()])
        report = engine.run_once()
        engine.entities.find_candidates.assert_not_called()
        assert report.rules_evaluated == 0

    def test_immediate_rerun_is_idempotent(self):
        notifier = Mock()
        engine, ledger = _fake_engine([_domain_rule()], [_snapshot(1), _snapshot(2)], notifier=notifier)

        engine.run_once()
        engine.run_once()

        assert notifier.send.call_count == 2
        assert len(ledger.rows) == 2

    def test_dispatch_failure_does_not_block_others(self):
        notifier = Mock()
        notifier.send.side_effect = [DispatchError("smtp down"), None]
        engine, ledger = _fake_engine(
            [_domain_rule()], [_snapshot()], notifier=notifier,
            recipients=lambda et, entity, rule: [1, 2],
        )

        report = engine.run_once()

        assert report.notifications_failed == 1
        assert report.notifications_sent == 1
        assert [(r[3], r[5]) for r in ledger.rows] == [(1, "failed"), (2, "sent")]

    def test_entity_error_isolated(self):
        engine, ledger = _fake_engine([_domain_rule()], [_snapshot(1, due=None), _snapshot(2)])

        report = engine.run_once()

        assert report.entities_failed == 1
        assert report.notifications_sent == 1
        assert ledger.rows[0][2] == 2

    def test_follow_up_task_only_when_something_was_sent(self):
        task_creator = Mock()
        notifier = Mock()
        notifier.send.side_effect = DispatchError("nope")
        rule = _domain_rule(auto_create_task=True, task_title_template="Call about {title}")
        engine, _ = _fake_engine([rule], [_snapshot()], notifier=notifier, task_creator=task_creator)

        report = engine.run_once()

        assert report.tasks_created == 0
        task_creator.create.assert_not_called()

    def test_follow_up_task_created_once_per_entity(self):
        task_creator = Mock()
        rule = _domain_rule(auto_create_task=True, task_title_template="Call about {title}", task_priority="urgent")
        engine, _ = _fake_engine([rule], [_snapshot()], task_creator=task_creator,
                                 recipients=lambda et, entity, rule: [1, 2, 3])

        report = engine.run_once()

        assert report.notifications_sent == 3
        assert report.tasks_created == 1
        title, priority, entity, passed_rule, now = task_creator.create.call_args.args
        assert (title, priority, entity.id, passed_rule.id, now) == ("Call about Task 1", "urgent", 1, "r1", T0)

    def test_repository_error_aborts_cycle(self):
        engine, _ = _fake_engine([_domain_rule(), _domain_rule("r2")], [_snapshot()])
        engine.entities.find_candidates.side_effect = RepositoryError("loading task candidates failed")

        with pytest.raises(RepositoryError):
            engine.run_once()

    def test_timeout_carries_partial_report(self, monkeypatch):
        ticks = itertools.chain([0.0, 0.0], itertools.repeat(100.0))
        monkeypatch.setattr("crm_reminders.application.reminder_engine.time.monotonic", lambda: next(ticks))
        engine, _ = _fake_engine([_domain_rule()], [_snapshot(1), _snapshot(2)], timeout_seconds=10)

        with pytest.raises(ScanTimeoutError) as exc:
            engine.run_once()

        assert exc.value.report.notifications_sent == 1
        assert exc.value.report.finished_at is None

    def test_report_as_dict(self):
        engine, _ = _fake_engine([_domain_rule()], [_snapshot()])
        data = engine.run_once(last_completed_at=T0 - timedelta(hours=1)).as_dict()
        assert data["notifications_sent"] == 1
        assert data["started_at"] == T0.isoformat()
        assert data["last_completed_at"] == (T0 - timedelta(hours=1)).isoformat()

    def test_follow_up_failure_does_not_stop_next_entity(self):
        task_creator = Mock()
        task_creator.create.side_effect = [TaskCreationError("creating follow-up task failed: FK violation"), 42]
        notifier = Mock()
        rule = _domain_rule(auto_create_task=True, task_title_template="Call about {title}")
        engine, ledger = _fake_engine([rule], [_snapshot(1), _snapshot(2)],
                                      notifier=notifier, task_creator=task_creator)

        report = engine.run_once()

        assert notifier.send.call_count == 2
        assert [(r[2], r[5]) for r in ledger.rows] == [(1, "sent"), (2, "sent")]
        assert report.tasks_failed == 1
        assert report.tasks_created == 1
        assert report.entities_failed == 0
        assert "follow-up task" in report.errors[0]

    def test_follow_up_lost_connection_aborts_cycle(self):
        task_creator = Mock()
        task_creator.create.side_effect = RepositoryError("creating follow-up task failed: connection lost")
        rule = _domain_rule(auto_create_task=True, task_title_template="Call about {title}")
        engine, _ = _fake_engine([rule], [_snapshot(1), _snapshot(2)], task_creator=task_creator)

        with pytest.raises(RepositoryError):
            engine.run_once()

    def test_existing_open_follow_up_not_counted(self):
        task_creator = Mock()
        task_creator.create.return_value = None
        rule = _domain_rule(auto_create_task=True, task_title_template="Call about {title}")
        engine, _ = _fake_engine([rule], [_snapshot()], task_creator=task_creator)

        report = engine.run_once()

        task_creator.create.assert_called_once()
        assert report.tasks_created == 0

    def test_delivered_email_with_failed_in_app_is_not_resent(self):
        in_app, email = Mock(), Mock()
        in_app.send.side_effect = DispatchError("in-app notification not stored: disk full")
        engine, ledger = _fake_engine([_domain_rule()], [_snapshot()],
                                      notifier=ReminderNotifier(in_app, email), notification_type="both")

        first = engine.run_once()
        engine.clock.current = T0 + timedelta(hours=1)
        second = engine.run_once()

        assert email.send.call_count == 1
        assert [r[5] for r in ledger.rows] == ["sent"]
        assert "in-app failed" in ledger.errors[0]
        assert first.notifications_sent == 1
        assert second.notifications_skipped == 1

    def test_cooldown_days_must_be_positive(self):
        with pytest.raises(ValueError):
            _fake_engine([_domain_rule()], [_snapshot()], cooldown_days=0)
