"""
Periodic per-organization digest.

A DigestRecord moves ``pending -> building -> ready -> sent``, or
``pending -> building -> failed``; a failed record is re-claimed by the next
run. The unique (org_id, period_start, period_end) key is the build lock:
whoever inserts the row builds it, everyone else gets DuplicateDigestError.
A pending/building row whose claim is older than the lease belongs to a run
that died; the next trigger marks it failed and claims it again.
"""
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError

from tellsafe.errors import DecryptionError, DuplicateDigestError, NoActivityError
from tellsafe.models import DigestRecord, FeedbackResponse, InboundEvent, Organization, UpdateEvent
from tellsafe.models.digest_record import DIGEST_BUILDING, DIGEST_FAILED, DIGEST_PENDING, DIGEST_READY
from tellsafe.models.feedback_response import AWAITING_REPLY, CLOSED
from tellsafe.observability import log_event
from tellsafe.services.responses import answers_text, decrypt_answers
from tellsafe.services.sentiment import LABELS, NEUTRAL
from tellsafe.services.webhooks import KIND_RELAY_REPLY
from tellsafe.utils.helpers import as_naive_utc, trailing_period, utcnow

logger = logging.getLogger(__name__)

_IN_FLIGHT = (DIGEST_PENDING, DIGEST_BUILDING)


@dataclass
class _Candidate:
    response_id: int
    sentiment: str
    score: float
    submitted_at: datetime

    @property
    def magnitude(self) -> float:
        return abs(self.score or 0.0)


@dataclass
class _Aggregate:
    counts: dict = field(default_factory=lambda: {label: 0 for label in LABELS})
    candidates: list = field(default_factory=list)
    categories: Counter = field(default_factory=Counter)
    response_count: int = 0
    excluded_count: int = 0
    update_count: int = 0
    reply_count: int = 0
    needs_reply_count: int = 0
    resolved_count: int = 0

    @property
    def is_empty(self) -> bool:
        return self.response_count == 0 and self.update_count == 0


class DigestBuilder:
    def __init__(self, *, session, key_provider, tagger, highlight_limit: int = 3,
                 top_categories: int = 5, claim_timeout_seconds: int = 900):
        self.session = session
        self.key_provider = key_provider
        self.tagger = tagger
        self.highlight_limit = max(int(highlight_limit), 0)
        self.top_categories = max(int(top_categories), 0)
        self.claim_timeout = timedelta(seconds=max(int(claim_timeout_seconds), 0))

    @classmethod
    def from_config(cls, config, *, session, key_provider, tagger) -> "DigestBuilder":
        return cls(
            session=session,
            key_provider=key_provider,
            tagger=tagger,
            highlight_limit=config.get("DIGEST_HIGHLIGHT_LIMIT", 3),
            top_categories=config.get("DIGEST_TOP_CATEGORIES", 5),
            claim_timeout_seconds=config.get("DIGEST_CLAIM_TIMEOUT_SECONDS", 900),
        )

    # ---- claiming ----

    def _find(self, org_id: int, start: datetime, end: datetime) -> Optional[DigestRecord]:
        return self.session.query(DigestRecord).filter_by(
            org_id=org_id, period_start=start, period_end=end
        ).one_or_none()

    def _swap_status(self, record_id: int, current: str, target: str, **values) -> bool:
        """Compare-and-set on status; True when this caller won."""
        updated = self.session.query(DigestRecord).filter_by(id=record_id, status=current).update(
            {"status": target, **values}, synchronize_session=False
        )
        self.session.commit()
        return updated == 1

    def _expire_stale_claim(self, record: DigestRecord) -> bool:
        """Mark an abandoned pending/building row failed. True when this caller did it."""
        if record.status not in _IN_FLIGHT:
            return False
        prior, claimed_at = record.status, record.claimed_at
        cutoff = utcnow() - self.claim_timeout
        updated = (
            self.session.query(DigestRecord)
            .filter(
                DigestRecord.id == record.id,
                DigestRecord.status == prior,
                DigestRecord.claimed_at <= cutoff,
            )
            .update({"status": DIGEST_FAILED, "last_error": "claim expired"}, synchronize_session=False)
        )
        self.session.commit()
        if updated == 1:
            log_event(logger, "digest_claim_expired", logging.WARNING, org_id=record.org_id,
                      digest_id=record.id, status=prior, claimed_at=claimed_at)
        return updated == 1

    def _claim(self, org_id: int, start: datetime, end: datetime) -> DigestRecord:
        record = DigestRecord(org_id=org_id, period_start=start, period_end=end, status=DIGEST_PENDING)
        self.session.add(record)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            record = self._find(org_id, start, end)
            if record is None:
                # Row vanished between insert and lookup (a NoActivity cleanup); try once more
                return self._claim(org_id, start, end)
            status = DIGEST_FAILED if self._expire_stale_claim(record) else record.status
            if status != DIGEST_FAILED or not self._swap_status(record.id, DIGEST_FAILED, DIGEST_PENDING,
                                                                claimed_at=utcnow()):
                raise DuplicateDigestError(org_id, start, end, record.status)
            log_event(logger, "digest_retry_claimed", org_id=org_id, digest_id=record.id)

        if not self._swap_status(record.id, DIGEST_PENDING, DIGEST_BUILDING, claimed_at=utcnow()):
            self.session.refresh(record)
            raise DuplicateDigestError(org_id, start, end, record.status)
        self.session.refresh(record)
        return record

    # ---- aggregation ----

    def _aggregate(self, org: Organization, start: datetime, end: datetime) -> _Aggregate:
        agg = _Aggregate()

        responses = (
            self.session.query(FeedbackResponse)
            .filter(
                FeedbackResponse.org_id == org.id,
                FeedbackResponse.submitted_at >= start,
                FeedbackResponse.submitted_at < end,
            )
            .order_by(FeedbackResponse.submitted_at.asc(), FeedbackResponse.id.asc())
            .all()
        )
        key = self.key_provider.key_for(org) if responses else None
        for response in responses:
            try:
                text = answers_text(decrypt_answers(response.answers_ciphertext, key))
            except DecryptionError as exc:
                agg.excluded_count += 1
                log_event(logger, "response_corrupted", logging.WARNING, org_id=org.id,
                          response_id=response.id, error=str(exc))
                continue
            if not response.is_annotated:
                score = self.tagger.score(text)
                response.annotate(score.label, score.score)
            label = response.sentiment if response.sentiment in LABELS else NEUTRAL
            agg.counts[label] += 1
            agg.response_count += 1
            agg.categories.update(set(response.categories or []))
            if response.status in AWAITING_REPLY:
                agg.needs_reply_count += 1
            elif response.status in CLOSED:
                agg.resolved_count += 1
            if label != NEUTRAL:
                agg.candidates.append(_Candidate(response.id, label, response.sentiment_score or 0.0, response.submitted_at))

        agg.update_count = (
            self.session.query(UpdateEvent)
            .filter(
                UpdateEvent.org_id == org.id,
                UpdateEvent.is_published.is_(True),
                UpdateEvent.created_at >= start,
                UpdateEvent.created_at < end,
            )
            .count()
        )
        agg.reply_count = (
            self.session.query(InboundEvent)
            .filter(
                InboundEvent.org_id == org.id,
                InboundEvent.kind == KIND_RELAY_REPLY,
                InboundEvent.created_at >= start,
                InboundEvent.created_at < end,
            )
            .count()
        )
        return agg

    def rank_categories(self, categories: Counter) -> list:
        """Most used first; equal counts in name order."""
        ranked = sorted(categories.items(), key=lambda item: (-item[1], item[0]))
        return [{"name": name, "count": count} for name, count in ranked[: self.top_categories]]

    def select_highlights(self, candidates: list) -> list:
        """Highest magnitude first; ties go to the most recent submission."""
        ranked = sorted(candidates, key=lambda c: (c.magnitude, c.submitted_at, c.response_id), reverse=True)
        return [
            {
                "response_id": c.response_id,
                "sentiment": c.sentiment,
                "score": c.score,
                "magnitude": round(c.magnitude, 4),
                "submitted_at": c.submitted_at.isoformat(),
            }
            for c in ranked[: self.highlight_limit]
        ]

    # ---- entry point ----

    def build_digest(self, org_id: int, period_start: datetime, period_end: datetime) -> DigestRecord:
        start, end = as_naive_utc(period_start), as_naive_utc(period_end)
        if end <= start:
            raise ValueError("period_end must be after period_start")
        org = self.session.get(Organization, org_id)
        if org is None:
            raise LookupError(f"organization {org_id} not found")

        record = self._claim(org_id, start, end)
        record_id = record.id
        try:
            agg = self._aggregate(org, start, end)
        except Exception as exc:
            self.session.rollback()
            record = self.session.get(DigestRecord, record_id)
            record.fail(f"{type(exc).__name__}: {exc}")
            self.session.commit()
            log_event(logger, "digest_build_failed", logging.ERROR, org_id=org_id, digest_id=record_id,
                      error=type(exc).__name__)
            raise

        if agg.is_empty:
            # Nothing to send; drop the claim so the period is not held by an empty row
            self.session.delete(record)
            self.session.commit()
            log_event(logger, "digest_no_activity", org_id=org_id, excluded=agg.excluded_count,
                      period_start=start, period_end=end)
            raise NoActivityError(f"no activity for org {org_id} in period")

        record.counts = agg.counts
        record.highlights = self.select_highlights(agg.candidates)
        record.response_count = agg.response_count
        record.update_count = agg.update_count
        record.reply_count = agg.reply_count
        record.excluded_count = agg.excluded_count
        record.top_categories = self.rank_categories(agg.categories)
        record.needs_reply_count = agg.needs_reply_count
        record.resolved_count = agg.resolved_count
        record.transition(DIGEST_READY)
        self.session.commit()
        log_event(logger, "digest_built", org_id=org_id, digest_id=record.id, counts=record.counts,
                  updates=record.update_count, replies=record.reply_count, excluded=record.excluded_count)
        return record


def run_scheduled_digests(*, builder: DigestBuilder, dispatcher, session, now: datetime,
                          period_days: int = 7, org_slug: Optional[str] = None) -> list[dict]:
    """
    Build and send the trailing-period digest for every active org with digests
    enabled. Organizations are independent: one org's failure is recorded in its
    result entry and the loop moves on.
    """
    start, end = trailing_period(now, period_days)
    query = session.query(Organization).order_by(Organization.id.asc())
    if org_slug:
        query = query.filter(Organization.slug == org_slug)

    results = []
    for org in query.all():
        entry = {"org_id": org.id, "org": org.slug, "sent": False}
        results.append(entry)
        if not org.is_active:
            entry["reason"] = "inactive"
            continue
        if not org.digest_enabled:
            entry["reason"] = "disabled"
            continue
        try:
            record = builder.build_digest(org.id, start, end)
        except NoActivityError:
            entry["reason"] = "no_activity"
            continue
        except DuplicateDigestError as exc:
            entry["reason"] = "duplicate"
            entry["status"] = exc.status
            continue
        except Exception:
            session.rollback()
            logger.exception("digest_build_error org_id=%s", org.id)
            entry["reason"] = "error"
            continue

        entry["digest_id"] = record.id
        try:
            outcome = dispatcher.send(record)
        except Exception:
            session.rollback()
            logger.exception("digest_send_error org_id=%s digest_id=%s", org.id, entry["digest_id"])
            entry["reason"] = "error"
            continue
        if outcome.ok:
            entry["sent"] = True
        else:
            entry["reason"] = outcome.reason

    log_event(logger, "digest_run_complete", period_start=start, period_end=end,
              orgs=len(results), sent=sum(1 for r in results if r["sent"]))
    return results
