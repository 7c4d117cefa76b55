"""initial schema

Revision ID: 001
Revises:
Create Date: 2026-10-19

All 5 tables as defined in formgen/models/database_models.py:
templates, template_versions, services, customer_overrides, document_artifacts.
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # ── Enum types ────────────────────────────────────────────────────────
    template_status = sa.Enum("uploaded", "parsing", "parsed", "error", name="templatestatus")
    template_status.create(op.get_bind(), checkfirst=True)

    service_status = sa.Enum(
        "draft", "intake_sent", "intake_submitted", "documents_ready", "completed",
        name="servicestatus",
    )
    service_status.create(op.get_bind(), checkfirst=True)

    override_type = sa.Enum("add_field", "remove_field", "modify_field", "custom_clause", name="overridetype")
    override_type.create(op.get_bind(), checkfirst=True)

    override_status = sa.Enum("pending", "approved", "rejected", name="overridestatus")
    override_status.create(op.get_bind(), checkfirst=True)

    artifact_status = sa.Enum("generating", "generated", "error", name="artifactstatus")
    artifact_status.create(op.get_bind(), checkfirst=True)

    # ── templates ─────────────────────────────────────────────────────────
    op.create_table(
        "templates",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("original_file_name", sa.String(255), nullable=False),
        sa.Column("file_type", sa.String(10), nullable=False),
        sa.Column("storage_path", sa.String(512), nullable=False, unique=True),
        sa.Column("status", sa.Enum("uploaded", "parsing", "parsed", "error", name="templatestatus", create_type=False), nullable=False, index=True),
        sa.Column("extracted_fields", sa.JSON, nullable=False),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("version", sa.Integer, nullable=False, server_default="0"),
        sa.Column("etag", sa.String(64), nullable=True),
        sa.Column("lock_holder_id", sa.String(255), nullable=True),
        sa.Column("lock_acquired_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("lock_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("parsed_at", sa.DateTime(timezone=True), nullable=True),
    )

    # ── template_versions ─────────────────────────────────────────────────
    op.create_table(
        "template_versions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("template_id", sa.String(36), sa.ForeignKey("templates.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("version", sa.Integer, nullable=False),
        sa.Column("fields", sa.JSON, nullable=False),
        sa.Column("etag", sa.String(64), nullable=False),
        sa.Column("created_by", sa.String(255), nullable=True),
        sa.Column("reason", sa.Text, nullable=True),
        sa.Column("rolled_back_to", sa.Integer, nullable=True),
        sa.Column("is_rollback", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("template_id", "version", name="uq_template_version"),
    )

    # ── services ──────────────────────────────────────────────────────────
    op.create_table(
        "services",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("owner_id", sa.String(255), nullable=False, index=True),
        sa.Column("template_ids", sa.JSON, nullable=False),
        sa.Column("client_data", sa.JSON, nullable=True),
        sa.Column("status", sa.Enum("draft", "intake_sent", "intake_submitted", "documents_ready", "completed", name="servicestatus", create_type=False), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("intake_submitted_at", sa.DateTime(timezone=True), nullable=True),
    )

    # ── customer_overrides ────────────────────────────────────────────────
    op.create_table(
        "customer_overrides",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("service_id", sa.String(36), sa.ForeignKey("services.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("template_id", sa.String(36), nullable=True),
        sa.Column("override_type", sa.Enum("add_field", "remove_field", "modify_field", "custom_clause", name="overridetype", create_type=False), nullable=False),
        sa.Column("payload", sa.JSON, nullable=False),
        sa.Column("status", sa.Enum("pending", "approved", "rejected", name="overridestatus", create_type=False), nullable=False, index=True),
        sa.Column("collisions", sa.JSON, nullable=True),
        sa.Column("reason", sa.Text, nullable=True),
        sa.Column("created_by", sa.String(255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("reviewed_by", sa.String(255), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("review_notes", sa.Text, nullable=True),
    )

    # ── document_artifacts ────────────────────────────────────────────────
    op.create_table(
        "document_artifacts",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("template_id", sa.String(36), sa.ForeignKey("templates.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("service_id", sa.String(36), sa.ForeignKey("services.id", ondelete="SET NULL"), nullable=True, index=True),
        sa.Column("file_name", sa.String(255), nullable=False),
        sa.Column("storage_path", sa.String(512), nullable=False),
        sa.Column("content_type", sa.String(255), nullable=False),
        sa.Column("status", sa.Enum("generating", "generated", "error", name="artifactstatus", create_type=False), nullable=False),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("unmatched_fields", sa.JSON, nullable=False),
        sa.Column("override_ids", sa.JSON, nullable=False),
        sa.Column("generated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("document_artifacts")
    op.drop_table("customer_overrides")
    op.drop_table("services")
    op.drop_table("template_versions")
    op.drop_table("templates")

    op.execute("DROP TYPE IF EXISTS artifactstatus")
    op.execute("DROP TYPE IF EXISTS overridestatus")
    op.execute("DROP TYPE IF EXISTS overridetype")
    op.execute("DROP TYPE IF EXISTS servicestatus")
    op.execute("DROP TYPE IF EXISTS templatestatus")
