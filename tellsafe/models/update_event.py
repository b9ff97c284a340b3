from tellsafe.extensions import db
from tellsafe.utils.helpers import utcnow

class UpdateEvent(db.Model):
    """Org changelog entry shown to respondents on the updates board."""
    __tablename__ = "update_events"

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("orgs.id", ondelete="RESTRICT"), nullable=False)
    title = db.Column(db.String(255), nullable=False)
    body = db.Column(db.Text, nullable=False, default="")
    category = db.Column(db.String(64), nullable=True)
    is_published = db.Column(db.Boolean, nullable=False, server_default=db.text("true"), default=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        db.Index("ix_update_events_org_created_at", "org_id", "created_at"),
    )
