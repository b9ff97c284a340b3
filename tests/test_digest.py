import threading
from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from tellsafe.extensions import db, mail
from tellsafe.errors import DuplicateDigestError, NoActivityError
from tellsafe.models import DigestRecord, FeedbackResponse, InboundEvent, Organization, OrgMember, Survey, UpdateEvent
from tellsafe.models.digest_record import DIGEST_BUILDING, DIGEST_FAILED, DIGEST_PENDING, DIGEST_READY
from tellsafe.services import get_services
from tellsafe.services.digest import DigestBuilder, run_scheduled_digests
from tellsafe.services.notifications import NotificationDispatcher, pending_deliveries
from tellsafe.services.responses import encrypt_answers
from tellsafe.utils.helpers import utcnow

START = datetime(2026, 1, 5)
END = datetime(2026, 1, 12)

def _add_response(acme, key, text, at, **kw):
    row = FeedbackResponse(
        org_id=acme.org_id,
        survey_id=acme.survey_id,
        answers_ciphertext=encrypt_answers({"comment": text}, key),
        submitted_at=at,
        **kw,
    )
    db.session.add(row)
    db.session.flush()
    return row.id

def _seed_acme_week(acme, key):
    ids = {
        "pos1": _add_response(acme, key, "The staff were great, thanks!", START + timedelta(days=1)),
        "neg": _add_response(acme, key, "Awful experience, rude and unhelpful", START + timedelta(days=2)),
        "pos2": _add_response(acme, key, "Loved the new schedule", START + timedelta(days=3)),
    }
    db.session.commit()
    return ids

def test_acme_counts_and_highlights(app, acme, acme_key):
    with app.app_context():
        ids = _seed_acme_week(acme, acme_key)
        record = get_services().digest_builder.build_digest(acme.org_id, START, END)

        assert record.status == DIGEST_READY
        assert record.counts == {"positive": 2, "negative": 1, "neutral": 0}
        assert record.response_count == 3
        assert len(record.highlights) == 3
        assert record.highlights[0]["response_id"] == ids["neg"]
        assert record.highlights[0]["sentiment"] == "negative"
        assert record.highlights[1]["sentiment"] == "positive"
        # unannotated responses are tagged as a side effect of the build
        assert db.session.get(FeedbackResponse, ids["pos2"]).sentiment == "positive"

def test_highlight_limit_and_neutral_exclusion(app, acme, acme_key):
    with app.app_context():
        _seed_acme_week(acme, acme_key)
        _add_response(acme, acme_key, "We met on Tuesday.", START + timedelta(days=4))
        db.session.commit()
        builder = get_services().digest_builder
        builder.highlight_limit = 1
        try:
            record = builder.build_digest(acme.org_id, START, END)
        finally:
            builder.highlight_limit = app.config["DIGEST_HIGHLIGHT_LIMIT"]
        assert record.counts["neutral"] == 1
        assert [h["sentiment"] for h in record.highlights] == ["negative"]

def test_responses_outside_period_are_ignored(app, acme, acme_key):
    with app.app_context():
        _add_response(acme, acme_key, "great", START - timedelta(seconds=1))
        _add_response(acme, acme_key, "awful", END)
        _add_response(acme, acme_key, "great", START)
        db.session.commit()
        record = get_services().digest_builder.build_digest(acme.org_id, START, END)
        assert record.counts == {"positive": 1, "negative": 0, "neutral": 0}

def test_second_build_for_same_period_is_duplicate(app, acme, acme_key):
    with app.app_context():
        _seed_acme_week(acme, acme_key)
        builder = get_services().digest_builder
        builder.build_digest(acme.org_id, START, END)
        with pytest.raises(DuplicateDigestError) as exc:
            builder.build_digest(acme.org_id, START, END)
        assert exc.value.status == DIGEST_READY
        assert DigestRecord.query.filter_by(org_id=acme.org_id).count() == 1

def test_build_in_progress_blocks_second_trigger(app, acme, acme_key):
    with app.app_context():
        _seed_acme_week(acme, acme_key)
        db.session.add(DigestRecord(org_id=acme.org_id, period_start=START, period_end=END, status=DIGEST_BUILDING))
        db.session.commit()
        with pytest.raises(DuplicateDigestError):
            get_services().digest_builder.build_digest(acme.org_id, START, END)

def test_fresh_claim_blocks_but_abandoned_claim_is_reclaimed(app, acme, acme_key):
    with app.app_context():
        _seed_acme_week(acme, acme_key)
        builder = get_services().digest_builder
        lease = timedelta(seconds=app.config["DIGEST_CLAIM_TIMEOUT_SECONDS"])
        stuck = DigestRecord(org_id=acme.org_id, period_start=START, period_end=END, status=DIGEST_BUILDING,
                             claimed_at=utcnow() - lease + timedelta(minutes=1))
        db.session.add(stuck)
        db.session.commit()
        with pytest.raises(DuplicateDigestError) as exc:
            builder.build_digest(acme.org_id, START, END)
        assert exc.value.status == DIGEST_BUILDING

        # the run that claimed it died; once the lease runs out the next trigger takes over
        stuck = DigestRecord.query.filter_by(org_id=acme.org_id).one()
        stuck.claimed_at = utcnow() - lease - timedelta(minutes=1)
        db.session.commit()
        record = builder.build_digest(acme.org_id, START, END)
        assert record.id == stuck.id
        assert record.status == DIGEST_READY
        assert record.counts == {"positive": 2, "negative": 1, "neutral": 0}
        assert DigestRecord.query.filter_by(org_id=acme.org_id).count() == 1

def test_abandoned_pending_claim_is_reclaimed(app, acme, acme_key):
    with app.app_context():
        _seed_acme_week(acme, acme_key)
        db.session.add(DigestRecord(org_id=acme.org_id, period_start=START, period_end=END, status=DIGEST_PENDING,
                                    claimed_at=START - timedelta(days=30)))
        db.session.commit()
        record = get_services().digest_builder.build_digest(acme.org_id, START, END)
        assert record.status == DIGEST_READY

def test_concurrent_builds_produce_one_record(app, acme_key, tmp_path):
    # Two sessions on their own connections to one file database, released together
    engine = create_engine(f"sqlite:///{tmp_path / 'race.db'}", connect_args={"timeout": 30})
    db.metadata.create_all(engine)
    with Session(engine) as seed:
        org = Organization(slug="acme", name="Acme Co")
        seed.add(org)
        seed.flush()
        survey = Survey(org_id=org.id, title="Pulse", questions=[{"key": "comment", "prompt": "?"}])
        seed.add(survey)
        seed.flush()
        seed.add(FeedbackResponse(org_id=org.id, survey_id=survey.id,
                                  answers_ciphertext=encrypt_answers({"comment": "great"}, acme_key),
                                  submitted_at=START + timedelta(days=1)))
        seed.commit()
        org_id = org.id

    with app.app_context():
        services = get_services()
        key_provider, tagger = services.key_provider, services.tagger

    barrier = threading.Barrier(2)
    outcomes = []

    def _trigger():
        session = Session(engine)
        builder = DigestBuilder(session=session, key_provider=key_provider, tagger=tagger)
        try:
            barrier.wait(timeout=10)
            outcomes.append(builder.build_digest(org_id, START, END).status)
        except DuplicateDigestError:
            outcomes.append("duplicate")
        finally:
            session.close()

    threads = [threading.Thread(target=_trigger) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert sorted(outcomes) == ["duplicate", DIGEST_READY]
    with Session(engine) as check:
        assert check.query(DigestRecord).count() == 1
    engine.dispose()

def test_no_activity_raises_and_leaves_no_record(app, acme):
    with app.app_context():
        with pytest.raises(NoActivityError):
            get_services().digest_builder.build_digest(acme.org_id, START, END)
        assert DigestRecord.query.count() == 0

def test_relay_replies_alone_are_not_activity(app, acme):
    with app.app_context():
        db.session.add(InboundEvent(source="email-reply", provider_event_id="em_1", kind="relay.reply",
                                    org_id=acme.org_id, created_at=START + timedelta(hours=3)))
        db.session.commit()
        with pytest.raises(NoActivityError):
            get_services().digest_builder.build_digest(acme.org_id, START, END)

def test_updates_and_replies_are_counted(app, acme):
    with app.app_context():
        db.session.add(UpdateEvent(org_id=acme.org_id, title="New hours", created_at=START + timedelta(days=1)))
        db.session.add(UpdateEvent(org_id=acme.org_id, title="Draft", is_published=False, created_at=START + timedelta(days=1)))
        db.session.add(InboundEvent(source="email-reply", provider_event_id="em_2", kind="relay.reply",
                                    org_id=acme.org_id, created_at=START + timedelta(days=2)))
        db.session.commit()
        record = get_services().digest_builder.build_digest(acme.org_id, START, END)
        assert record.update_count == 1
        assert record.reply_count == 1
        assert record.counts == {"positive": 0, "neutral": 0, "negative": 0}
        assert record.highlights == []

def test_corrupted_response_is_excluded(app, acme, acme_key):
    with app.app_context():
        _seed_acme_week(acme, acme_key)
        _add_response(acme, bytes(32), "encrypted with some other key", START + timedelta(days=5))
        db.session.commit()
        record = get_services().digest_builder.build_digest(acme.org_id, START, END)
        assert record.excluded_count == 1
        assert record.response_count == 3
        assert sum(record.counts.values()) == 3

def test_failed_build_is_retried_on_next_run(app, acme, acme_key, monkeypatch):
    with app.app_context():
        _seed_acme_week(acme, acme_key)
        builder = get_services().digest_builder

        def _boom(*a, **kw):
            raise RuntimeError("db went away")

        monkeypatch.setattr(builder, "_aggregate", _boom)
        with pytest.raises(RuntimeError):
            builder.build_digest(acme.org_id, START, END)
        rec = DigestRecord.query.filter_by(org_id=acme.org_id).one()
        assert rec.status == DIGEST_FAILED
        assert "db went away" in rec.last_error

        monkeypatch.undo()
        record = builder.build_digest(acme.org_id, START, END)
        assert record.id == rec.id
        assert record.status == DIGEST_READY

def test_invalid_period_and_unknown_org(app, acme):
    with app.app_context():
        builder = get_services().digest_builder
        with pytest.raises(ValueError):
            builder.build_digest(acme.org_id, END, START)
        with pytest.raises(LookupError):
            builder.build_digest(424242, START, END)

def test_scheduled_run_reports_each_org(app, acme, acme_key):
    now = END + timedelta(hours=9)
    with app.app_context():
        _seed_acme_week(acme, acme_key)
        db.session.add(Organization(slug="quiet", name="Quiet Org"))
        db.session.add(Organization(slug="lapsed", name="Lapsed Org", is_active=False))
        db.session.add(Organization(slug="optout", name="Opted Out", digest_enabled=False))
        db.session.commit()

        services = get_services()
        with mail.record_messages() as outbox:
            results = run_scheduled_digests(builder=services.digest_builder, dispatcher=services.dispatcher,
                                            session=db.session, now=now, period_days=7)
            again = run_scheduled_digests(builder=services.digest_builder, dispatcher=services.dispatcher,
                                          session=db.session, now=now, period_days=7, org_slug="acme")

        by_slug = {r["org"]: r for r in results}
        assert by_slug["acme"]["sent"] is True
        assert by_slug["quiet"]["reason"] == "no_activity"
        assert by_slug["lapsed"]["reason"] == "inactive"
        assert by_slug["optout"]["reason"] == "disabled"
        assert again == [{"org_id": acme.org_id, "org": "acme", "sent": False, "reason": "duplicate", "status": "sent"}]
        assert len(outbox) == 1
        assert outbox[0].recipients == ["owner@acme.test"]

def test_categories_and_reply_backlog(app, acme, acme_key):
    with app.app_context():
        day = START + timedelta(days=1)
        _add_response(acme, acme_key, "great staff", day, categories=["Staff", "Facilities"])
        _add_response(acme, acme_key, "rude staff", day, categories=["Staff"], status="needs_reply")
        _add_response(acme, acme_key, "broken door", day, categories=["Facilities"], status="resolved")
        _add_response(acme, acme_key, "loved it", day, categories=["Events"], status="archived")
        _add_response(acme, acme_key, "ok", day)
        _add_response(acme, bytes(32), "unreadable", day, categories=["Staff"])
        db.session.commit()
        builder = get_services().digest_builder
        builder.top_categories = 2
        try:
            record = builder.build_digest(acme.org_id, START, END)
        finally:
            builder.top_categories = app.config["DIGEST_TOP_CATEGORIES"]

        assert record.top_categories == [{"name": "Facilities", "count": 2}, {"name": "Staff", "count": 2}]
        assert record.needs_reply_count == 3
        assert record.resolved_count == 2
        assert record.excluded_count == 1

        with mail.record_messages() as outbox:
            assert get_services().dispatcher.send(record).ok is True
        assert "Top categories" in outbox[0].body
        assert "- Facilities: 2" in outbox[0].body
        assert "Awaiting a reply: 3" in outbox[0].body

def test_mail_provider_error_does_not_stop_the_run(app, acme, acme_key):
    class BrokenMailer:
        def send(self, message):
            raise RuntimeError("provider API 503")

    now = END + timedelta(hours=9)
    with app.app_context():
        _seed_acme_week(acme, acme_key)
        zeta = Organization(slug="zeta", name="Zeta Org")
        db.session.add(zeta)
        db.session.flush()
        db.session.add(OrgMember(org_id=zeta.id, email="ops@zeta.test"))
        db.session.add(UpdateEvent(org_id=zeta.id, title="New hours", created_at=START + timedelta(days=1)))
        db.session.commit()

        services = get_services()
        dispatcher = NotificationDispatcher(mailer=BrokenMailer(), session=db.session,
                                            key_provider=services.key_provider,
                                            base_url="http://example.test", sleep=lambda s: None)
        results = run_scheduled_digests(builder=services.digest_builder, dispatcher=dispatcher,
                                        session=db.session, now=now, period_days=7)

        assert [(r["org"], r["reason"]) for r in results] == [("acme", "delivery_failed"), ("zeta", "delivery_failed")]
        queued = pending_deliveries(db.session)
        assert len(queued) == 2
        assert all(r.status == DIGEST_READY and "RuntimeError: provider API 503" in r.last_error for r in queued)
        assert all(r.delivery_attempts == 1 for r in queued)

def test_dispatcher_crash_is_recorded_per_org(app, acme, acme_key):
    class CrashingDispatcher:
        def __init__(self):
            self.seen = []

        def send(self, record):
            self.seen.append(record.org_id)
            if len(self.seen) == 1:
                raise RuntimeError("boom")
            return SimpleNamespace(ok=True)

    now = END + timedelta(hours=9)
    with app.app_context():
        _seed_acme_week(acme, acme_key)
        zeta = Organization(slug="zeta", name="Zeta Org")
        db.session.add(zeta)
        db.session.flush()
        db.session.add(UpdateEvent(org_id=zeta.id, title="New hours", created_at=START + timedelta(days=1)))
        db.session.commit()

        dispatcher = CrashingDispatcher()
        results = run_scheduled_digests(builder=get_services().digest_builder, dispatcher=dispatcher,
                                        session=db.session, now=now, period_days=7)
        assert results[0]["reason"] == "error"
        assert "digest_id" in results[0]
        assert results[1]["sent"] is True
        assert dispatcher.seen == [acme.org_id, zeta.id]
