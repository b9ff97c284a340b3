from sqlalchemy import UniqueConstraint
from tellsafe.extensions import db
from tellsafe.utils.helpers import utcnow

class InboundEvent(db.Model):
    """Persisted, normalized webhook delivery. Append-only."""
    __tablename__ = "inbound_events"

    id = db.Column(db.Integer, primary_key=True)
    source = db.Column(db.String(32), nullable=False)
    provider_event_id = db.Column(db.String(255), nullable=False)
    kind = db.Column(db.String(80), nullable=False, index=True)
    org_id = db.Column(db.Integer, db.ForeignKey("orgs.id", ondelete="SET NULL"), nullable=True)
    data = db.Column(db.JSON, nullable=False, default=dict)
    notes = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("source", "provider_event_id", name="uq_inbound_events_source_event"),
        db.Index("ix_inbound_events_org_kind_created_at", "org_id", "kind", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<InboundEvent id={self.id} {self.source}:{self.provider_event_id} kind={self.kind!r}>"
