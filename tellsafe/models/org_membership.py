from sqlalchemy import func, CheckConstraint, UniqueConstraint
from tellsafe.extensions import db

# Keep simple text+CHECK for evolvable roles (no DB enum migration pain)
ROLE_ADMIN = "admin"
ROLE_OWNER = "owner"
ROLE_CHOICES = (ROLE_OWNER, ROLE_ADMIN)

class OrgMember(db.Model):
    __tablename__ = "org_members"

    id = db.Column(db.Integer, primary_key=True)

    org_id = db.Column(
        db.Integer,
        db.ForeignKey("orgs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    email = db.Column(db.String(320), nullable=False)
    display_name = db.Column(db.String(255), nullable=True)

    # default is admin; owner must be explicit
    role = db.Column(db.String(20), nullable=False, server_default=ROLE_ADMIN, default=ROLE_ADMIN)
    receives_digest = db.Column(db.Boolean, nullable=False, server_default=db.text("true"), default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())

    org = db.relationship("Organization", back_populates="members")

    __table_args__ = (
        UniqueConstraint("org_id", "email", name="uq_org_members_org_email"),
        CheckConstraint(
            "role IN ('owner','admin')",
            name="ck_org_members_role_valid",
        ),
    )
