"""Unit tests for the dispatch worker."""
import asyncio
import threading
from datetime import datetime, timedelta

from sqlalchemy.orm import sessionmaker

from mailflow.core.exceptions import ProviderTimeoutError
from mailflow.db.base import build_engine, init_db
from mailflow.db.models import EmailStatus
from mailflow.email.dispatcher import DispatchWorker, RetryPolicy, build_message
from mailflow.email.preferences import PreferenceService
from mailflow.email.service import EmailProvider, EmailService, ProviderResult
from mailflow.email.store import EmailLedger
from mailflow.email.templates import TemplateStore

T0 = datetime(2024, 3, 1, 12, 0, 0)


def _schedule(db, template, address="ada@example.com", at=T0, **kwargs):
    row, _ = EmailLedger(db).schedule(
        email_address=address,
        template_id=template.id,
        scheduled_at=at,
        variables={"first_name": "Ada"},
        **kwargs,
    )
    return row.id


def _worker(db, service, **kwargs):
    kwargs.setdefault("retry_policy", RetryPolicy(max_retries=3, base_delay_seconds=60, max_delay_seconds=3600))
    return DispatchWorker(db, email_service=service, **kwargs)


class DedupingProvider(EmailProvider):
    """Accepts the first send but loses the response, like a read timeout."""

    def __init__(self):
        self.keys = []
        self.delivered = {}

    def get_name(self) -> str:
        return "dedupe"

    async def send(self, message, scheduled_at=None):
        self.keys.append(message.idempotency_key)
        if message.idempotency_key in self.delivered:
            return ProviderResult(provider="dedupe", message_id=self.delivered[message.idempotency_key])
        self.delivered[message.idempotency_key] = f"msg-{len(self.delivered) + 1}"
        raise ProviderTimeoutError("Read timed out", provider="dedupe")


class TestRetryPolicy:
    """Tests for capped exponential backoff."""

    def test_delay_doubles_and_caps(self):
        policy = RetryPolicy(max_retries=5, base_delay_seconds=60, max_delay_seconds=3600)
        assert policy.delay(0) == timedelta(seconds=60)
        assert policy.delay(1) == timedelta(seconds=120)
        assert policy.delay(3) == timedelta(seconds=480)
        assert policy.delay(10) == timedelta(seconds=3600)

    def test_should_retry_below_limit(self):
        policy = RetryPolicy(max_retries=2)
        assert policy.should_retry(0)
        assert policy.should_retry(1)
        assert not policy.should_retry(2)


class TestDispatch:
    """Tests for one polling pass."""

    def test_due_row_is_sent(self, db_session, welcome_template, provider, email_service):
        email_id = _schedule(db_session, welcome_template, user_id="user-1")
        report = asyncio.run(_worker(db_session, email_service).run_once(T0))

        assert report.sent == 1
        row = EmailLedger(db_session).get(email_id)
        assert row.status == "sent"
        assert row.sent_at == T0
        assert row.resend_email_id == "re_1"
        message = provider.sent[0]
        assert message.to == "ada@example.com"
        assert message.subject == "Welcome Ada"
        assert message.idempotency_key == email_id
        assert message.headers["List-Unsubscribe"].startswith("<https://app.test/unsubscribe/")
        assert "https://app.test/unsubscribe/" in message.html

    def test_future_and_cancelled_rows_are_left_alone(self, db_session, welcome_template, provider, email_service):
        future_id = _schedule(db_session, welcome_template, at=T0 + timedelta(hours=1))
        cancelled_id = _schedule(db_session, welcome_template)
        EmailLedger(db_session).cancel(cancelled_id)

        report = asyncio.run(_worker(db_session, email_service).run_once(T0))
        assert report.selected == 0
        assert provider.calls == 0
        assert EmailLedger(db_session).get(future_id).status == "pending"
        assert EmailLedger(db_session).get(cancelled_id).status == "cancelled"

    def test_rows_are_sent_earliest_first(self, db_session, welcome_template, provider, email_service):
        _schedule(db_session, welcome_template, address="late@example.com", at=T0 - timedelta(minutes=1))
        _schedule(db_session, welcome_template, address="early@example.com", at=T0 - timedelta(minutes=10))
        asyncio.run(_worker(db_session, email_service).run_once(T0))
        assert [m.to for m in provider.sent] == ["early@example.com", "late@example.com"]

    def test_claimed_row_is_skipped(self, db_session, welcome_template, provider, email_service):
        email_id = _schedule(db_session, welcome_template)
        EmailLedger(db_session).claim(email_id, T0)
        outcome = asyncio.run(_worker(db_session, email_service).dispatch_one(email_id, T0))
        assert outcome == "skipped"
        assert provider.calls == 0

    def test_one_bad_row_does_not_stop_the_batch(self, db_session, welcome_template, email_service, monkeypatch):
        bad_id = _schedule(db_session, welcome_template, address="boom@example.com", at=T0 - timedelta(minutes=5))
        good_id = _schedule(db_session, welcome_template, address="fine@example.com")
        provider = email_service.get_provider()
        original = provider.send

        async def exploding_send(message, scheduled_at=None):
            if message.to == "boom@example.com":
                raise RuntimeError("unexpected")
            return await original(message, scheduled_at)

        monkeypatch.setattr(provider, "send", exploding_send)
        report = asyncio.run(_worker(db_session, email_service).run_once(T0))

        assert report.errors == 1
        assert report.sent == 1
        assert EmailLedger(db_session).get(good_id).status == "sent"
        assert EmailLedger(db_session).get(bad_id).status == "sending"


class TestSuppression:
    """Suppressed recipients never reach the provider."""

    def test_suppressed_address_short_circuits(self, db_session, welcome_template, provider, email_service):
        email_id = _schedule(db_session, welcome_template)
        PreferenceService(db_session).add_suppression("Ada@Example.com", "bounced", source="admin")

        report = asyncio.run(_worker(db_session, email_service).run_once(T0))
        assert report.suppressed == 1
        assert provider.calls == 0
        row = EmailLedger(db_session).get(email_id)
        assert row.status == "suppressed"
        assert row.suppression_reason == "bounced"

    def test_suppression_blocks_transactional_mail(self, db_session, receipt_template, provider, email_service):
        email_id = _schedule(db_session, receipt_template)
        PreferenceService(db_session).add_suppression("ada@example.com", "complained")
        asyncio.run(_worker(db_session, email_service).run_once(T0))
        assert EmailLedger(db_session).get(email_id).status == "suppressed"
        assert provider.calls == 0

    def test_marketing_opt_out_spares_transactional(
        self, db_session, welcome_template, receipt_template, provider, email_service
    ):
        PreferenceService(db_session).unsubscribe_user("user-1", "ada@example.com", now=T0)
        marketing_id = _schedule(db_session, welcome_template, user_id="user-1")
        receipt_id = _schedule(db_session, receipt_template, user_id="user-1")

        asyncio.run(_worker(db_session, email_service).run_once(T0))
        marketing = EmailLedger(db_session).get(marketing_id)
        assert marketing.status == "suppressed"
        assert marketing.suppression_reason == "unsubscribed"
        assert EmailLedger(db_session).get(receipt_id).status == "sent"
        assert [m.subject for m in provider.sent] == ["Your receipt"]


class TestRetries:
    """Tests for provider failures."""

    def test_failure_reschedules_with_backoff(self, db_session, welcome_template, provider):
        provider.failures = 1
        service = EmailService([provider])
        email_id = _schedule(db_session, welcome_template)

        report = asyncio.run(_worker(db_session, service).run_once(T0))
        assert report.retried == 1
        row = EmailLedger(db_session).get(email_id)
        assert row.status == "scheduled"
        assert row.retry_count == 1
        assert row.scheduled_at == T0 + timedelta(seconds=60)
        assert "outage" in row.last_error

        # Not due yet
        report = asyncio.run(_worker(db_session, service).run_once(T0 + timedelta(seconds=30)))
        assert report.selected == 0

        report = asyncio.run(_worker(db_session, service).run_once(T0 + timedelta(seconds=61)))
        assert report.sent == 1
        assert EmailLedger(db_session).get(email_id).status == "sent"
        assert provider.sent[0].idempotency_key == email_id

    def test_retries_exhausted_marks_failed(self, db_session, welcome_template, provider):
        provider.failures = 10
        service = EmailService([provider])
        email_id = _schedule(db_session, welcome_template)
        policy = RetryPolicy(max_retries=2, base_delay_seconds=60, max_delay_seconds=3600)

        now = T0
        outcomes = []
        for _ in range(3):
            report = asyncio.run(_worker(db_session, service, retry_policy=policy).run_once(now))
            outcomes.append((report.retried, report.failed))
            now = EmailLedger(db_session).get(email_id).scheduled_at

        assert outcomes == [(1, 0), (1, 0), (0, 1)]
        row = EmailLedger(db_session).get(email_id)
        assert row.status == "failed"
        assert row.retry_count == 3
        assert provider.calls == 3

        report = asyncio.run(_worker(db_session, service, retry_policy=policy).run_once(now + timedelta(days=1)))
        assert report.selected == 0

    def test_lost_response_is_retried_under_same_key(self, db_session, welcome_template, provider):
        deduping = DedupingProvider()
        service = EmailService([deduping, provider], primary_provider="dedupe")
        email_id = _schedule(db_session, welcome_template)

        report = asyncio.run(_worker(db_session, service).run_once(T0))
        assert report.retried == 1
        # Outcome unknown, so the fallback provider is never tried
        assert provider.calls == 0

        report = asyncio.run(_worker(db_session, service).run_once(T0 + timedelta(seconds=61)))
        assert report.sent == 1
        assert deduping.keys == [email_id, email_id]
        assert len(deduping.delivered) == 1
        assert EmailLedger(db_session).get(email_id).resend_email_id == "msg-1"

    def test_render_failure_is_not_retried(self, db_session, provider, email_service):
        broken = TemplateStore(db_session).create_version(name="broken", subject="Hi", html_content="{% if %}")
        email_id = _schedule(db_session, broken)

        report = asyncio.run(_worker(db_session, email_service).run_once(T0))
        assert report.failed == 1
        row = EmailLedger(db_session).get(email_id)
        assert row.status == "failed"
        assert row.retry_count == 0
        assert provider.calls == 0


class TestConcurrency:
    """A row is sent by at most one worker."""

    def test_concurrent_workers_send_each_row_once(self, tmp_path, provider):
        engine = build_engine(f"sqlite:///{tmp_path / 'race.db'}")
        init_db(bind=engine)
        Session = sessionmaker(bind=engine, autocommit=False, autoflush=False)

        with Session() as db:
            template = TemplateStore(db).create_version(
                name="race", subject="Hi", html_content="<p>hi</p>", activate=True
            )
            addresses = [f"user{i}@example.com" for i in range(6)]
            for address in addresses:
                _schedule(db, template, address=address)

        service = EmailService([provider])
        barrier = threading.Barrier(4)

        def work():
            db = Session()
            try:
                barrier.wait()
                asyncio.run(_worker(db, service).run_once(T0 + timedelta(minutes=1)))
            finally:
                db.close()

        threads = [threading.Thread(target=work) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        recipients = [m.to for m in provider.sent]
        assert len(recipients) == len(set(recipients))

        with Session() as db:
            sent = {r.email_address for r in EmailLedger(db).list_emails(status=EmailStatus.SENT)}
        # A lost mark_sent leaves a row in sending, never a second delivery
        assert sent <= set(recipients)
        assert len(sent) >= 1
        engine.dispose()


class TestProviderScheduling:
    """Tests for hand-off to the provider's scheduler and cancellation reconciliation."""

    def test_handoff_disabled_by_default(self, db_session, welcome_template, provider, email_service):
        _schedule(db_session, welcome_template, at=T0 + timedelta(hours=2))
        assert asyncio.run(_worker(db_session, email_service).handoff_upcoming(T0)) == 0
        assert provider.calls == 0

    def test_handoff_then_local_cancel_is_reconciled(
        self, db_session, welcome_template, provider, email_service, settings_env
    ):
        settings_env(PROVIDER_SCHEDULING_ENABLED="true", PROVIDER_SCHEDULING_HORIZON_HOURS="24")
        soon = _schedule(db_session, welcome_template, at=T0 + timedelta(hours=2))
        later = _schedule(db_session, welcome_template, at=T0 + timedelta(days=3))

        worker = _worker(db_session, email_service)
        assert asyncio.run(worker.handoff_upcoming(T0)) == 1
        ledger = EmailLedger(db_session)
        row = ledger.get(soon)
        assert row.status == "scheduled"
        assert row.resend_scheduled_id == "re_1"
        assert provider.scheduled[0][1] == T0 + timedelta(hours=2)
        assert ledger.get(later).status == "pending"

        # The provider owns delivery now
        report = asyncio.run(worker.run_once(T0 + timedelta(hours=3)))
        assert report.selected == 0

        ledger.cancel(soon)
        assert asyncio.run(worker.reconcile_provider_cancellations(T0)) == 1
        assert provider.cancelled == ["re_1"]
        assert ledger.get(soon).provider_cancelled_at == T0
        assert asyncio.run(worker.reconcile_provider_cancellations(T0)) == 0

    def test_stale_claims_are_failed(self, db_session, welcome_template, email_service):
        email_id = _schedule(db_session, welcome_template)
        EmailLedger(db_session).claim(email_id, T0)
        worker = _worker(db_session, email_service)

        assert worker.recover_stale_claims(T0 + timedelta(minutes=5)) == 0
        assert worker.recover_stale_claims(T0 + timedelta(minutes=20)) == 1
        row = EmailLedger(db_session).get(email_id)
        assert row.status == "failed"
        assert "claim expired" in row.last_error


class TestBuildMessage:

    def test_transactional_message_has_no_unsubscribe_header(self, db_session, receipt_template):
        email_id = _schedule(db_session, receipt_template, user_id="user-1")
        message = build_message(EmailLedger(db_session).get(email_id))
        assert "List-Unsubscribe" not in message.headers
        assert message.tags["email_type"] == "transactional"
