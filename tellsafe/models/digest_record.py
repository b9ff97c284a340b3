from sqlalchemy import UniqueConstraint, CheckConstraint
from tellsafe.extensions import db
from tellsafe.errors import InvalidTransitionError
from tellsafe.utils.helpers import utcnow

DIGEST_PENDING = "pending"
DIGEST_BUILDING = "building"
DIGEST_READY = "ready"
DIGEST_SENT = "sent"
DIGEST_FAILED = "failed"

_TRANSITIONS = {
    DIGEST_PENDING: {DIGEST_BUILDING, DIGEST_FAILED},  # failed when a claim expires
    DIGEST_BUILDING: {DIGEST_READY, DIGEST_FAILED},
    DIGEST_READY: {DIGEST_SENT},
    DIGEST_FAILED: {DIGEST_PENDING},  # retried on the next scheduled run
    DIGEST_SENT: set(),
}

class DigestRecord(db.Model):
    __tablename__ = "digest_records"

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("orgs.id", ondelete="RESTRICT"), nullable=False, index=True)
    period_start = db.Column(db.DateTime, nullable=False)
    period_end = db.Column(db.DateTime, nullable=False)
    status = db.Column(db.String(16), nullable=False, server_default=DIGEST_PENDING, default=DIGEST_PENDING, index=True)

    counts = db.Column(db.JSON, nullable=False, default=dict)       # {"positive": n, "neutral": n, "negative": n}
    highlights = db.Column(db.JSON, nullable=False, default=list)   # [{"response_id", "sentiment", "score", "magnitude", "submitted_at"}]
    response_count = db.Column(db.Integer, nullable=False, default=0)
    update_count = db.Column(db.Integer, nullable=False, default=0)
    reply_count = db.Column(db.Integer, nullable=False, default=0)
    excluded_count = db.Column(db.Integer, nullable=False, default=0)  # corrupted entries left out
    top_categories = db.Column(db.JSON, nullable=False, default=list)  # [{"name", "count"}], most frequent first
    needs_reply_count = db.Column(db.Integer, nullable=False, default=0)
    resolved_count = db.Column(db.Integer, nullable=False, default=0)

    delivery_attempts = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    # Start of the current build lease; a pending/building row older than the lease is abandoned
    claimed_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    built_at = db.Column(db.DateTime, nullable=True)
    sent_at = db.Column(db.DateTime, nullable=True)

    org = db.relationship("Organization")

    # The unique key doubles as the per-(org, period) build lock
    __table_args__ = (
        UniqueConstraint("org_id", "period_start", "period_end", name="uq_digest_records_org_period"),
        CheckConstraint(
            "status IN ('pending','building','ready','sent','failed')",
            name="ck_digest_records_status_valid",
        ),
    )

    def transition(self, target: str) -> None:
        if target not in _TRANSITIONS.get(self.status, set()):
            raise InvalidTransitionError(self.status, target)
        self.status = target
        if target == DIGEST_READY:
            self.built_at = utcnow()
            self.last_error = None
        elif target == DIGEST_SENT:
            self.sent_at = utcnow()
            self.last_error = None

    def fail(self, reason: str) -> None:
        self.transition(DIGEST_FAILED)
        self.last_error = (reason or "")[:255]

    def __repr__(self) -> str:
        return f"<DigestRecord id={self.id} org_id={self.org_id} status={self.status!r}>"
