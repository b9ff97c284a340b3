from sqlalchemy import func, CheckConstraint
from tellsafe.extensions import db
from tellsafe.errors import InvalidTransitionError
from tellsafe.utils.helpers import utcnow

SURVEY_DRAFT = "draft"
SURVEY_PUBLISHED = "published"
SURVEY_ARCHIVED = "archived"

_TRANSITIONS = {
    SURVEY_DRAFT: {SURVEY_PUBLISHED},
    SURVEY_PUBLISHED: {SURVEY_ARCHIVED},
    SURVEY_ARCHIVED: set(),
}

class Survey(db.Model):
    __tablename__ = "surveys"

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("orgs.id", ondelete="RESTRICT"), nullable=False, index=True)
    title = db.Column(db.String(255), nullable=False)
    # Ordered list of {"key": str, "prompt": str, "kind": "text"|"rating"}
    questions = db.Column(db.JSON, nullable=False, default=list)
    status = db.Column(db.String(20), nullable=False, server_default=SURVEY_DRAFT, default=SURVEY_DRAFT, index=True)

    published_at = db.Column(db.DateTime, nullable=True)
    archived_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        CheckConstraint(
            "status IN ('draft','published','archived')",
            name="ck_surveys_status_valid",
        ),
    )

    @property
    def accepts_responses(self) -> bool:
        return self.status == SURVEY_PUBLISHED

    def question_keys(self) -> list[str]:
        return [q["key"] for q in (self.questions or []) if q.get("key")]

    def transition(self, target: str) -> None:
        if target not in _TRANSITIONS.get(self.status, set()):
            raise InvalidTransitionError(self.status, target)
        self.status = target
        if target == SURVEY_PUBLISHED:
            self.published_at = utcnow()
        elif target == SURVEY_ARCHIVED:
            self.archived_at = utcnow()

    def publish(self) -> None:
        self.transition(SURVEY_PUBLISHED)

    def archive(self) -> None:
        self.transition(SURVEY_ARCHIVED)

    def __repr__(self) -> str:
        return f"<Survey id={self.id} org_id={self.org_id} status={self.status!r}>"
