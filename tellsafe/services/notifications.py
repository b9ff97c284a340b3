import time
import smtplib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Union
from urllib.parse import urljoin

from flask import render_template
from flask_mail import Message

from tellsafe.errors import DecryptionError, KeyUnavailableError
from tellsafe.models import DigestRecord, EmailLog, FeedbackResponse, Organization
from tellsafe.models.digest_record import DIGEST_READY, DIGEST_SENT
from tellsafe.models.email_log import SUPPRESSING_STATUSES
from tellsafe.observability import log_event
from tellsafe.services import tokens
from tellsafe.services.responses import answers_text, decrypt_answers
from tellsafe.utils.helpers import excerpt, utcnow

DIGEST_TEMPLATE = "digest"

# Suppression lookback window
SUPPRESSION_WINDOW_DAYS = 90

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeliveryReceipt:
    digest_id: int
    recipients: tuple
    attempts: int
    sent_at: datetime
    ok: bool = True


@dataclass(frozen=True)
class DeliveryFailure:
    digest_id: int
    reason: str  # no_recipients | not_ready | delivery_failed
    attempts: int = 0
    error: Optional[str] = None
    ok: bool = False


def is_transient(exc: BaseException) -> bool:
    """Connection-level problems and 4xx SMTP replies are worth retrying."""
    if isinstance(exc, (smtplib.SMTPServerDisconnected, smtplib.SMTPConnectError)):
        return True
    if isinstance(exc, smtplib.SMTPResponseException):
        return 400 <= int(exc.smtp_code) < 500
    if isinstance(exc, smtplib.SMTPException):
        return False
    return isinstance(exc, OSError)


def is_suppressed(session, to_email: str) -> bool:
    """
    Return True if the address should be suppressed due to a recent bounce/complaint.
    """
    cutoff = utcnow() - timedelta(days=SUPPRESSION_WINDOW_DAYS)
    q = session.query(EmailLog).filter(
        EmailLog.to_email == to_email.lower(),
        EmailLog.created_at >= cutoff,
        EmailLog.status.in_(SUPPRESSING_STATUSES),
    )
    return session.query(q.exists()).scalar()


class NotificationDispatcher:
    def __init__(self, *, mailer, session, key_provider, base_url: str, product_name: str = "TellSafe",
                 max_retries: int = 3, backoff_seconds: float = 0.5, excerpt_chars: int = 280,
                 sleep: Callable[[float], None] = time.sleep):
        self.mailer = mailer
        self.session = session
        self.key_provider = key_provider
        self.base_url = base_url
        self.product_name = product_name
        self.max_retries = max(int(max_retries), 0)
        self.backoff_seconds = float(backoff_seconds)
        self.excerpt_chars = int(excerpt_chars)
        self.sleep = sleep

    @classmethod
    def from_config(cls, config, *, mailer, session, key_provider, sleep=time.sleep) -> "NotificationDispatcher":
        return cls(
            mailer=mailer,
            session=session,
            key_provider=key_provider,
            base_url=config.get("APP_BASE_URL", "http://localhost:5000"),
            product_name=config.get("PRODUCT_NAME", "TellSafe"),
            max_retries=config.get("DIGEST_MAX_RETRIES", 3),
            backoff_seconds=config.get("DIGEST_RETRY_BACKOFF_SECONDS", 0.5),
            excerpt_chars=config.get("DIGEST_EXCERPT_CHARS", 280),
            sleep=sleep,
        )

    def absolute_url(self, path: str) -> str:
        return urljoin(self.base_url.rstrip("/") + "/", path.lstrip("/"))

    # ---- message ----

    def _highlight_rows(self, org: Organization, record: DigestRecord) -> list:
        """Decrypt highlight excerpts at render time; nothing decrypted is persisted."""
        highlights = record.highlights or []
        if not highlights:
            return []
        try:
            key = self.key_provider.key_for(org)
        except KeyUnavailableError:
            log_event(logger, "digest_highlights_skipped", logging.WARNING, org_id=org.id, reason="no_org_key")
            return []
        rows = []
        for h in highlights:
            response = self.session.get(FeedbackResponse, h["response_id"])
            if response is None:
                continue
            try:
                text = answers_text(decrypt_answers(response.answers_ciphertext, key))
            except DecryptionError:
                log_event(logger, "response_corrupted", logging.WARNING, org_id=org.id, response_id=response.id)
                continue
            rows.append({**h, "excerpt": excerpt(text, self.excerpt_chars)})
        return rows

    def subject_for(self, org: Organization, record: DigestRecord) -> str:
        last_day = record.period_end - timedelta(days=1)
        return f"{self.product_name} digest for {org.name}: {record.period_start:%b %d} - {last_day:%b %d}"

    def build_message(self, record: DigestRecord, org: Organization, recipients: list) -> Message:
        ctx = {
            "product_name": self.product_name,
            "org": org,
            "record": record,
            "counts": record.counts or {},
            "highlights": self._highlight_rows(org, record),
            "period_last_day": record.period_end - timedelta(days=1),
            "dashboard_url": self.absolute_url("admin"),
            "unsubscribe_url": self.absolute_url(
                f"digest/unsubscribe?token={tokens.generate(tokens.DIGEST_OPTOUT, org.slug)}"
            ),
        }
        msg = Message(subject=self.subject_for(org, record), recipients=recipients)
        msg.body = render_template(f"email/{DIGEST_TEMPLATE}.txt", **ctx)
        msg.html = render_template(f"email/{DIGEST_TEMPLATE}.html", **ctx)
        return msg

    # ---- delivery ----

    def _log_email(self, record: DigestRecord, to_email: str, subject: str, status: str, meta=None) -> None:
        self.session.add(EmailLog(
            org_id=record.org_id,
            digest_id=record.id,
            to_email=to_email,
            template=DIGEST_TEMPLATE,
            subject=subject[:200],
            status=status,
            meta=meta or {},
        ))

    def _record_failure(self, record: DigestRecord, recipients: list, subject: str, error: BaseException,
                        attempts: int, latency_ms: int = 0) -> DeliveryFailure:
        # Record stays READY so `flask digest resend` can pick it up
        detail = f"{type(error).__name__}: {error}"
        record.delivery_attempts = (record.delivery_attempts or 0) + attempts
        record.last_error = detail[:255]
        for address in recipients:
            self._log_email(record, address, subject, "failed", {"error": detail[:200]})
        self.session.commit()
        log_event(logger, "digest_delivery_failed", logging.WARNING, org_id=record.org_id, digest_id=record.id,
                  reason="delivery_failed", attempts=attempts, transient=is_transient(error),
                  error=detail, needs_followup=True, latency_ms=latency_ms)
        return DeliveryFailure(record.id, "delivery_failed", attempts, detail)

    def send(self, record: DigestRecord) -> Union[DeliveryReceipt, DeliveryFailure]:
        """
        Email a ready digest. Transient failures are retried up to max_retries
        times with exponential backoff; any other error fails at once. The
        outcome is always returned, never raised.
        """
        if record.status != DIGEST_READY:
            return DeliveryFailure(record.id, "not_ready", error=f"status={record.status}")

        org = record.org
        subject = self.subject_for(org, record)
        recipients = []
        for address in org.digest_recipients():
            if is_suppressed(self.session, address):
                self._log_email(record, address, subject, "failed", {"reason": "suppressed"})
            else:
                recipients.append(address)

        if not recipients:
            record.last_error = "no_recipients"
            self.session.commit()
            log_event(logger, "digest_delivery_failed", logging.WARNING, org_id=org.id, digest_id=record.id,
                      reason="no_recipients", needs_followup=True)
            return DeliveryFailure(record.id, "no_recipients")

        try:
            message = self.build_message(record, org, recipients)
        except Exception as exc:
            logger.exception("digest_render_error digest_id=%s", record.id)
            return self._record_failure(record, recipients, subject, exc, attempts=0)

        attempts = 0
        error = None
        start = time.perf_counter()
        while True:
            attempts += 1
            try:
                self.mailer.send(message)
                error = None
                break
            except Exception as exc:
                error = exc
                if not is_transient(exc) or attempts > self.max_retries:
                    break
                delay = self.backoff_seconds * (2 ** (attempts - 1))
                log_event(logger, "digest_delivery_retry", logging.WARNING, digest_id=record.id,
                          attempt=attempts, delay_s=delay, error=type(exc).__name__)
                self.sleep(delay)
        latency_ms = int((time.perf_counter() - start) * 1000)

        if error is not None:
            return self._record_failure(record, recipients, subject, error, attempts, latency_ms)

        record.delivery_attempts = (record.delivery_attempts or 0) + attempts
        record.transition(DIGEST_SENT)
        for address in recipients:
            self._log_email(record, address, subject, "sent")
        self.session.commit()
        log_event(logger, "mail_send", template=DIGEST_TEMPLATE, org_id=org.id, digest_id=record.id,
                  outcome="sent", recipients=len(recipients), attempts=attempts, latency_ms=latency_ms)
        return DeliveryReceipt(record.id, tuple(recipients), attempts, record.sent_at)


def pending_deliveries(session) -> list:
    """Ready digests that were never sent; the manual follow-up queue."""
    return (
        session.query(DigestRecord)
        .filter(DigestRecord.status == DIGEST_READY, DigestRecord.last_error.isnot(None))
        .order_by(DigestRecord.created_at.asc())
        .all()
    )
