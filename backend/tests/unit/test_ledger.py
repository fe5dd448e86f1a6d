"""Unit tests for the scheduled-email ledger."""
from datetime import datetime, timedelta

import pytest
from sqlalchemy import select, func

from mailflow.core.exceptions import (
    ValidationError,
    StateError,
    IllegalTransitionError,
    TemplateNotFoundError,
    DuplicateIdempotencyKeyError,
    ScheduledEmailNotFoundError,
)
from mailflow.db.models import ScheduledEmail, EmailStatus
from mailflow.email.store import EmailLedger, can_transition, sources_for
from mailflow.email.templates import TemplateStore

T0 = datetime(2024, 1, 1, 9, 0, 0)


def _row_count(db):
    return db.execute(select(func.count()).select_from(ScheduledEmail)).scalar()


class TestStateMachine:
    """Tests for the allowed transition table."""

    def test_terminal_states_have_no_exits(self):
        for terminal in (EmailStatus.SENT, EmailStatus.CANCELLED, EmailStatus.SUPPRESSED):
            for target in EmailStatus:
                assert not can_transition(terminal, target)

    def test_failed_only_retries(self):
        assert can_transition(EmailStatus.FAILED, EmailStatus.SCHEDULED)
        assert not can_transition(EmailStatus.FAILED, EmailStatus.SENT)

    def test_sources_for_cancelled(self):
        assert set(sources_for(EmailStatus.CANCELLED)) == {"pending", "scheduled"}


class TestSchedule:
    """Tests for inserting ledger rows."""

    def test_schedule_creates_pending_row(self, db_session, welcome_template):
        row, created = EmailLedger(db_session).schedule(
            email_address="ada@example.com",
            template_id=welcome_template.id,
            scheduled_at=T0,
            variables={"first_name": "Ada"},
        )
        assert created is True
        assert row.status == "pending"
        assert row.scheduled_at == T0
        assert row.template_version == 1
        assert row.template_snapshot["html_content"] == welcome_template.html_content
        assert row.meta["email_type"] == "marketing"

    def test_repeated_idempotency_key_returns_existing_row(self, db_session, welcome_template):
        """Scheduling twice with one key yields one row."""
        ledger = EmailLedger(db_session)
        first, created_first = ledger.schedule(
            email_address="ada@example.com", template_id=welcome_template.id, idempotency_key="signup-42"
        )
        second, created_second = ledger.schedule(
            email_address="other@example.com", template_id=welcome_template.id, idempotency_key="signup-42"
        )
        assert created_first is True and created_second is False
        assert second.id == first.id
        assert second.email_address == "ada@example.com"
        assert _row_count(db_session) == 1

    def test_strict_duplicate_raises(self, db_session, welcome_template):
        ledger = EmailLedger(db_session)
        ledger.schedule(email_address="ada@example.com", template_id=welcome_template.id, idempotency_key="k")
        with pytest.raises(DuplicateIdempotencyKeyError):
            ledger.schedule(
                email_address="ada@example.com", template_id=welcome_template.id, idempotency_key="k", strict=True
            )

    def test_insert_race_keeps_earlier_pending_rows(self, db_session, welcome_template, monkeypatch):
        """Losing a key race undoes only the losing insert."""
        ledger = EmailLedger(db_session)
        ledger.schedule(email_address="ada@example.com", template_id=welcome_template.id, idempotency_key="race")
        kept, _ = ledger.schedule(email_address="bob@example.com", template_id=welcome_template.id, commit=False)
        kept_id = kept.id

        real_find = ledger.find_by_key
        lookups = []

        def racing_find(key):
            lookups.append(key)
            # First lookup misses, as if the winning insert had not landed yet
            return None if len(lookups) == 1 else real_find(key)

        monkeypatch.setattr(ledger, "find_by_key", racing_find)
        with pytest.raises(DuplicateIdempotencyKeyError):
            ledger.schedule(
                email_address="ada@example.com", template_id=welcome_template.id, idempotency_key="race", commit=False
            )
        db_session.commit()

        assert ledger.get(kept_id).status == "pending"
        assert _row_count(db_session) == 2

    def test_invalid_address_rejected(self, db_session, welcome_template):
        with pytest.raises(ValidationError):
            EmailLedger(db_session).schedule(email_address="not-an-address", template_id=welcome_template.id)
        assert _row_count(db_session) == 0

    def test_unknown_template_rejected(self, db_session):
        with pytest.raises(TemplateNotFoundError):
            EmailLedger(db_session).schedule(email_address="ada@example.com", template_id="missing")

    def test_schedule_by_name_binds_active_version(self, db_session, welcome_template):
        TemplateStore(db_session).create_version(name="welcome", subject="Draft", html_content="<p>draft</p>")
        row, _ = EmailLedger(db_session).schedule(email_address="ada@example.com", template_name="welcome")
        assert row.template_version == 1

    def test_snapshot_is_frozen_against_later_versions(self, db_session, welcome_template):
        row, _ = EmailLedger(db_session).schedule(email_address="ada@example.com", template_id=welcome_template.id)
        TemplateStore(db_session).create_version(
            name="welcome", subject="Changed", html_content="<p>changed</p>", activate=True
        )
        db_session.refresh(row)
        assert row.template_version == 1
        assert row.template_snapshot["subject"] == "Welcome {{ first_name }}"

    def test_marketing_row_for_user_gets_unsubscribe_link(self, db_session, welcome_template):
        row, _ = EmailLedger(db_session).schedule(
            email_address="ada@example.com", template_id=welcome_template.id, user_id="user-1"
        )
        assert row.variables["unsubscribe_url"].startswith("https://app.test/unsubscribe/")
        assert row.variables["unsubscribeUrl"] == row.variables["unsubscribe_url"]

    def test_transactional_row_gets_no_unsubscribe_link(self, db_session, receipt_template):
        row, _ = EmailLedger(db_session).schedule(
            email_address="ada@example.com", template_id=receipt_template.id, user_id="user-1"
        )
        assert "unsubscribe_url" not in row.variables
        assert row.email_type == "transactional"

    def test_missing_secret_schedules_without_link(self, db_session, welcome_template, settings_env):
        settings_env(UNSUBSCRIBE_SECRET="")
        row, created = EmailLedger(db_session).schedule(
            email_address="ada@example.com", template_id=welcome_template.id, user_id="user-1"
        )
        assert created is True
        assert "unsubscribe_url" not in row.variables


class TestTransitions:
    """Tests for conditional status changes."""

    def _row(self, db, template, **kwargs):
        row, _ = EmailLedger(db).schedule(
            email_address="ada@example.com", template_id=template.id, scheduled_at=T0, **kwargs
        )
        return row

    def test_cancel_pending_row(self, db_session, welcome_template):
        row = self._row(db_session, welcome_template)
        cancelled = EmailLedger(db_session).cancel(row.id, now=T0)
        assert cancelled.status == "cancelled"
        assert cancelled.cancelled_at == T0

    def test_cancel_terminal_row_raises(self, db_session, welcome_template):
        """A second cancel is rejected rather than silently ignored."""
        ledger = EmailLedger(db_session)
        row = self._row(db_session, welcome_template)
        ledger.cancel(row.id)
        with pytest.raises(StateError):
            ledger.cancel(row.id)

    def test_cancel_claimed_row_raises_and_leaves_it_sending(self, db_session, welcome_template):
        ledger = EmailLedger(db_session)
        row = self._row(db_session, welcome_template)
        assert ledger.claim(row.id, T0) is True
        with pytest.raises(StateError):
            ledger.cancel(row.id)
        assert ledger.get(row.id).status == "sending"

    def test_cancel_unknown_row_raises(self, db_session):
        with pytest.raises(ScheduledEmailNotFoundError):
            EmailLedger(db_session).cancel("missing")

    def test_claim_is_exclusive(self, db_session, welcome_template):
        ledger = EmailLedger(db_session)
        row = self._row(db_session, welcome_template)
        assert ledger.claim(row.id, T0) is True
        assert ledger.claim(row.id, T0) is False

    def test_cancelled_row_cannot_be_claimed(self, db_session, welcome_template):
        ledger = EmailLedger(db_session)
        row = self._row(db_session, welcome_template)
        ledger.cancel(row.id)
        assert ledger.claim(row.id, T0) is False
        assert ledger.get(row.id).status == "cancelled"

    def test_illegal_edge_raises(self, db_session, welcome_template):
        row = self._row(db_session, welcome_template)
        with pytest.raises(IllegalTransitionError):
            EmailLedger(db_session).transition(row.id, EmailStatus.SENT, expected=(EmailStatus.PENDING,))

    def test_retry_bookkeeping(self, db_session, welcome_template):
        ledger = EmailLedger(db_session)
        row = self._row(db_session, welcome_template)
        ledger.claim(row.id, T0)
        ledger.mark_failed(row.id, "timeout")
        assert ledger.schedule_retry(row.id, T0, T0 + timedelta(minutes=1)) is True
        row = ledger.get(row.id)
        assert row.status == "scheduled"
        assert row.retry_count == 1
        assert row.last_retry_at == T0
        assert row.scheduled_at == T0 + timedelta(minutes=1)
        assert row.last_error == "timeout"

    def test_cancel_where_counts_only_open_rows(self, db_session, welcome_template):
        ledger = EmailLedger(db_session)
        rows = [self._row(db_session, welcome_template, user_id="user-1") for _ in range(3)]
        ledger.claim(rows[0].id, T0)
        count = ledger.cancel_where(ScheduledEmail.user_id == "user-1", now=T0)
        assert count == 2
        assert ledger.cancel_where(ScheduledEmail.user_id == "user-1", now=T0) == 0
        assert ledger.get(rows[0].id).status == "sending"

    def test_cancel_for_user_spans_templates_and_types(self, db_session, welcome_template, receipt_template):
        ledger = EmailLedger(db_session)
        mine = [
            self._row(db_session, welcome_template, user_id="user-1"),
            self._row(db_session, receipt_template, user_id="user-1"),
        ]
        other = self._row(db_session, welcome_template, user_id="user-2")
        assert ledger.cancel_for_user("user-1", now=T0) == 2
        assert {ledger.get(r.id).status for r in mine} == {"cancelled"}
        assert ledger.get(other.id).status == "pending"

    def test_final_failed_attempt_is_counted(self, db_session, welcome_template):
        ledger = EmailLedger(db_session)
        row = self._row(db_session, welcome_template)
        ledger.claim(row.id, T0)
        ledger.mark_failed(row.id, "rejected", count_attempt=True)
        row = ledger.get(row.id)
        assert row.status == "failed"
        assert row.retry_count == 1


class TestListing:
    """Tests for filtered, paginated listing."""

    def test_newest_first_with_filters(self, db_session, welcome_template):
        ledger = EmailLedger(db_session)
        for day in range(3):
            ledger.schedule(
                email_address="ada@example.com",
                template_id=welcome_template.id,
                scheduled_at=T0 + timedelta(days=day),
                is_test=day == 1,
            )
        rows = ledger.list_emails()
        assert [r.scheduled_at.day for r in rows] == [3, 2, 1]
        assert [r.scheduled_at.day for r in ledger.list_emails(is_test=True)] == [2]
        assert len(ledger.list_emails(status=EmailStatus.PENDING, limit=2)) == 2
        assert [r.scheduled_at.day for r in ledger.list_emails(limit=2, offset=2)] == [1]

    def test_page_size_is_clamped(self, db_session):
        ledger = EmailLedger(db_session)
        assert ledger.page_size(None) == 50
        assert ledger.page_size(10) == 10
        assert ledger.page_size(10_000) == 500
