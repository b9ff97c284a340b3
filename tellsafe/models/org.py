from sqlalchemy import func
from tellsafe.extensions import db

BILLING_NONE = "none"
BILLING_TRIALING = "trialing"
BILLING_ACTIVE = "active"
BILLING_PAST_DUE = "past_due"
BILLING_UNPAID = "unpaid"
BILLING_CANCELED = "canceled"

# Past-due orgs keep working through the provider's dunning window
_LAPSED = {BILLING_UNPAID, BILLING_CANCELED}

class Organization(db.Model):
    __tablename__ = "orgs"

    id = db.Column(db.Integer, primary_key=True)
    slug = db.Column(db.String(64), nullable=False, unique=True, index=True)
    name = db.Column(db.String(255), nullable=False)

    billing_status = db.Column(db.String(32), nullable=False, server_default=BILLING_NONE, default=BILLING_NONE)
    stripe_customer_id = db.Column(db.String(64), nullable=True, index=True)
    # Soft-disable flag; orgs are never hard-deleted
    is_active = db.Column(db.Boolean, nullable=False, server_default=db.text("true"), default=True)

    branding = db.Column(db.JSON, nullable=False, default=dict)  # logo_url, primary_color, accent_color, tagline
    digest_enabled = db.Column(db.Boolean, nullable=False, server_default=db.text("true"), default=True)
    # Labels respondents may tag feedback with; the digest reports the most used
    feedback_categories = db.Column(db.JSON, nullable=False, default=list)
    # Slack or Discord incoming-webhook URL alerted on each new response; null disables
    chat_webhook_url = db.Column(db.String(512), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    members = db.relationship("OrgMember", back_populates="org", lazy="select", cascade="all, delete-orphan")

    def apply_billing_status(self, status: str) -> bool:
        """Record a provider subscription status. Returns True when is_active flipped."""
        was_active = bool(self.is_active)
        self.billing_status = status
        if status in _LAPSED:
            self.is_active = False
        elif status in (BILLING_ACTIVE, BILLING_TRIALING):
            self.is_active = True
        return was_active != bool(self.is_active)

    def digest_recipients(self) -> list[str]:
        return sorted({m.email.lower() for m in self.members if m.receives_digest})

    def __repr__(self) -> str:
        return f"<Organization id={self.id} slug={self.slug!r} billing={self.billing_status!r}>"
