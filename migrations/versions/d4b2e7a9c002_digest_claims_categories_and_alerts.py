"""digest claim lease, response categories/status, org chat alerts, email_logs.digest_id

Revision ID: d4b2e7a9c002
Revises: c1a0f3d2b001
Create Date: 2026-10-19 09:12:44.118305

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'd4b2e7a9c002'
down_revision = 'c1a0f3d2b001'
branch_labels = None
depends_on = None


def upgrade():
    op.add_column("orgs", sa.Column("feedback_categories", sa.JSON(), nullable=False, server_default="[]"))
    op.add_column("orgs", sa.Column("chat_webhook_url", sa.String(length=512), nullable=True))

    op.add_column("feedback_responses", sa.Column("categories", sa.JSON(), nullable=False, server_default="[]"))
    op.add_column("feedback_responses", sa.Column("status", sa.String(length=16), nullable=False, server_default="new"))
    with op.batch_alter_table("feedback_responses") as batch:
        batch.create_check_constraint(
            "ck_feedback_responses_status_valid",
            "status IN ('new','needs_reply','resolved','archived')",
        )

    op.add_column("digest_records", sa.Column("top_categories", sa.JSON(), nullable=False, server_default="[]"))
    op.add_column("digest_records", sa.Column("needs_reply_count", sa.Integer(), nullable=False, server_default="0"))
    op.add_column("digest_records", sa.Column("resolved_count", sa.Integer(), nullable=False, server_default="0"))
    # Existing rows take their creation time as the lease start
    op.add_column("digest_records", sa.Column("claimed_at", sa.DateTime(), nullable=True))
    op.execute("UPDATE digest_records SET claimed_at = created_at")
    with op.batch_alter_table("digest_records") as batch:
        batch.alter_column("claimed_at", existing_type=sa.DateTime(), nullable=False)

    with op.batch_alter_table("email_logs") as batch:
        batch.add_column(sa.Column("digest_id", sa.Integer(), nullable=True))
        batch.create_foreign_key(
            "fk_email_logs_digest_id", "digest_records", ["digest_id"], ["id"], ondelete="SET NULL"
        )
    op.create_index("ix_email_logs_digest_id", "email_logs", ["digest_id"])


def downgrade():
    op.drop_index("ix_email_logs_digest_id", table_name="email_logs")
    with op.batch_alter_table("email_logs") as batch:
        batch.drop_constraint("fk_email_logs_digest_id", type_="foreignkey")
        batch.drop_column("digest_id")

    with op.batch_alter_table("digest_records") as batch:
        batch.drop_column("claimed_at")
        batch.drop_column("resolved_count")
        batch.drop_column("needs_reply_count")
        batch.drop_column("top_categories")

    with op.batch_alter_table("feedback_responses") as batch:
        batch.drop_constraint("ck_feedback_responses_status_valid", type_="check")
        batch.drop_column("status")
        batch.drop_column("categories")

    op.drop_column("orgs", "chat_webhook_url")
    op.drop_column("orgs", "feedback_categories")
