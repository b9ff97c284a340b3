from tellsafe.extensions import db
from tellsafe.utils.helpers import utcnow

# Outbound rows are written as sent|failed; provider status events as delivered|bounced|complaint
SUPPRESSING_STATUSES = ("bounced", "complaint")

class EmailLog(db.Model):
    """
    One row per outbound digest email and per provider delivery-status event.
    Recent bounce/complaint rows suppress further sends to that address.
    """
    __tablename__ = "email_logs"

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("orgs.id", ondelete="SET NULL"), nullable=True)
    digest_id = db.Column(db.Integer, db.ForeignKey("digest_records.id", ondelete="SET NULL"), nullable=True, index=True)
    to_email = db.Column(db.String(320), nullable=False, index=True)
    template = db.Column(db.String(64), nullable=False)
    subject = db.Column(db.String(200), nullable=False)
    provider_msg_id = db.Column(db.String(128), nullable=True, index=True)
    status = db.Column(db.String(20), nullable=False, index=True)
    meta = db.Column(db.JSON, nullable=False, default=dict)  # failure reason / provider event id
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<EmailLog id={self.id} to={self.to_email} status={self.status} digest_id={self.digest_id}>"
