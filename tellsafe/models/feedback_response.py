from sqlalchemy import CheckConstraint
from tellsafe.extensions import db
from tellsafe.errors import InvalidTransitionError
from tellsafe.utils.helpers import utcnow

RESPONSE_NEW = "new"
RESPONSE_NEEDS_REPLY = "needs_reply"
RESPONSE_RESOLVED = "resolved"
RESPONSE_ARCHIVED = "archived"
RESPONSE_STATUSES = (RESPONSE_NEW, RESPONSE_NEEDS_REPLY, RESPONSE_RESOLVED, RESPONSE_ARCHIVED)

# Reply backlog buckets reported in the digest
AWAITING_REPLY = (RESPONSE_NEW, RESPONSE_NEEDS_REPLY)
CLOSED = (RESPONSE_RESOLVED, RESPONSE_ARCHIVED)

class FeedbackResponse(db.Model):
    """
    One respondent submission. The answers are stored only as ciphertext
    (encrypted JSON object keyed by question key). Rows are immutable apart
    from the sentiment annotation written by the digest pipeline and the
    triage status set by org admins.
    """
    __tablename__ = "feedback_responses"

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("orgs.id", ondelete="RESTRICT"), nullable=False)
    survey_id = db.Column(db.Integer, db.ForeignKey("surveys.id", ondelete="RESTRICT"), nullable=False, index=True)

    answers_ciphertext = db.Column(db.Text, nullable=False)
    # Labels picked from the org's category list; plain text, never respondent free text
    categories = db.Column(db.JSON, nullable=False, default=list)

    sentiment = db.Column(db.String(16), nullable=True)  # positive|neutral|negative; null until processed
    sentiment_score = db.Column(db.Float, nullable=True)

    status = db.Column(db.String(16), nullable=False, server_default=RESPONSE_NEW, default=RESPONSE_NEW)
    submitted_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        db.Index("ix_feedback_responses_org_submitted_at", "org_id", "submitted_at"),
        CheckConstraint(
            "status IN ('new','needs_reply','resolved','archived')",
            name="ck_feedback_responses_status_valid",
        ),
    )

    @property
    def is_annotated(self) -> bool:
        return self.sentiment is not None

    def annotate(self, label: str, score: float) -> None:
        self.sentiment = label
        self.sentiment_score = score

    def set_status(self, status: str) -> None:
        if status not in RESPONSE_STATUSES:
            raise InvalidTransitionError(self.status, status)
        self.status = status

    def __repr__(self) -> str:
        return f"<FeedbackResponse id={self.id} survey_id={self.survey_id} sentiment={self.sentiment!r}>"
