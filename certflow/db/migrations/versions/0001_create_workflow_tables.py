"""Create workflow tables

Revision ID: 0001
Revises:
Create Date: 2026-10-19

Templates, certificates, the append-only ledger, content-addressed artifact
metadata, batches, the handoff inbox and the audit log.
"""
from __future__ import annotations

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "templates",
        sa.Column("id", sa.String(length=128), primary_key=True),
        sa.Column("name", sa.String(length=256), nullable=False),
        sa.Column("background_ref", sa.String(length=64), nullable=True),
        sa.Column("logo_refs", sa.JSON, nullable=False),
        sa.Column("field_schema", sa.JSON, nullable=False),
        sa.Column("layout", sa.JSON, nullable=False),
        sa.Column("created_by", sa.String(length=128), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.func.now()),
    )

    op.create_table(
        "artifacts",
        sa.Column("ref", sa.String(length=64), primary_key=True),
        sa.Column("kind", sa.String(length=16), nullable=False),
        sa.Column("stage", sa.String(length=32), nullable=True),
        sa.Column("media_type", sa.String(length=128), nullable=False),
        sa.Column("size_bytes", sa.Integer, nullable=False),
        sa.Column("produced_by", sa.String(length=128), nullable=False),
        sa.Column("produced_at", sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.func.now()),
    )
    op.create_index("ix_artifacts_kind", "artifacts", ["kind"])

    op.create_table(
        "certificates",
        sa.Column("id", sa.String(length=128), primary_key=True),
        sa.Column("template_id", sa.String(length=128),
                  sa.ForeignKey("templates.id"), nullable=False),
        sa.Column("subject_fields", sa.JSON, nullable=False),
        sa.Column("current_stage", sa.String(length=32), nullable=False),
        sa.Column("created_by", sa.String(length=128), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.func.now()),
    )
    op.create_index("ix_certificates_template_id", "certificates", ["template_id"])
    op.create_index("ix_certificates_current_stage", "certificates", ["current_stage"])

    op.create_table(
        "ledger_entries",
        sa.Column("seq", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("certificate_id", sa.String(length=128),
                  sa.ForeignKey("certificates.id"), nullable=False),
        sa.Column("stage", sa.String(length=32), nullable=False),
        sa.Column("artifact_ref", sa.String(length=64),
                  sa.ForeignKey("artifacts.ref"), nullable=True),
        sa.Column("actor_id", sa.String(length=128), nullable=False),
        sa.Column("actor_role", sa.String(length=32), nullable=False),
        sa.Column("payload_digest", sa.String(length=64), nullable=True),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.func.now()),
        # At most one entry per stage: the backstop for concurrent writers
        sa.UniqueConstraint("certificate_id", "stage", name="uq_ledger_certificate_stage"),
    )
    op.create_index("ix_ledger_entries_certificate_id", "ledger_entries", ["certificate_id"])

    op.create_table(
        "batches",
        sa.Column("id", sa.String(length=128), primary_key=True),
        sa.Column("submitted_by", sa.String(length=128), nullable=False),
        sa.Column("submitted_by_role", sa.String(length=32), nullable=False),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.func.now()),
        sa.Column("payload", sa.JSON, nullable=False),
        sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_batches_submitted_by", "batches", ["submitted_by"])

    op.create_table(
        "batch_members",
        sa.Column("batch_id", sa.String(length=128),
                  sa.ForeignKey("batches.id"), primary_key=True),
        sa.Column("certificate_id", sa.String(length=128),
                  sa.ForeignKey("certificates.id"), primary_key=True),
        sa.Column("position", sa.Integer, nullable=False),
        sa.Column("start_stage", sa.String(length=32), nullable=False),
    )
    op.create_index("ix_batch_members_certificate", "batch_members", ["certificate_id"])

    op.create_table(
        "handoffs",
        sa.Column("id", sa.String(length=128), primary_key=True),
        sa.Column("certificate_id", sa.String(length=128),
                  sa.ForeignKey("certificates.id"), nullable=False),
        sa.Column("new_stage", sa.String(length=32), nullable=False),
        sa.Column("artifact_ref", sa.String(length=64), nullable=True),
        sa.Column("recipient_role", sa.String(length=32), nullable=False),
        sa.Column("recipient_id", sa.String(length=128), nullable=True),
        sa.Column("delivery_count", sa.Integer, nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.func.now()),
        sa.Column("last_delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("acknowledged_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("certificate_id", "new_stage", name="uq_handoff_certificate_stage"),
    )
    op.create_index("ix_handoffs_certificate_id", "handoffs", ["certificate_id"])
    op.create_index("ix_handoffs_recipient_role", "handoffs", ["recipient_role"])
    op.create_index("ix_handoffs_recipient_id", "handoffs", ["recipient_id"])

    op.create_table(
        "audit_log",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("ts", sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.func.now()),
        sa.Column("actor_id", sa.String(length=128), nullable=False),
        sa.Column("actor_role", sa.String(length=32), nullable=False),
        sa.Column(
            "action",
            sa.Enum(
                "created", "updated", "submitted", "acknowledged",
                name="audit_action",
                create_constraint=True,
            ),
            nullable=False,
        ),
        sa.Column("entity_kind", sa.String(length=50), nullable=False),
        sa.Column("entity_id", sa.String(length=128), nullable=False),
        sa.Column("before", sa.JSON, nullable=True),
        sa.Column("after", sa.JSON, nullable=True),
        sa.Column("note", sa.Text, nullable=True),
        sa.Column("trace_id", sa.String(length=36), nullable=True),
    )
    op.create_index("ix_audit_log_ts", "audit_log", ["ts"])
    op.create_index("ix_audit_log_actor_id", "audit_log", ["actor_id"])
    op.create_index("ix_audit_log_action", "audit_log", ["action"])
    op.create_index("ix_audit_log_entity_kind", "audit_log", ["entity_kind"])
    op.create_index("ix_audit_log_entity_id", "audit_log", ["entity_id"])
    op.create_index("ix_audit_log_trace_id", "audit_log", ["trace_id"])
    op.create_index("ix_audit_log_entity", "audit_log", ["entity_kind", "entity_id"])
    op.create_index("ix_audit_log_entity_ts", "audit_log", ["entity_kind", "entity_id", "ts"])


def downgrade() -> None:
    op.drop_table("audit_log")
    sa.Enum(name="audit_action").drop(op.get_bind(), checkfirst=True)
    op.drop_table("handoffs")
    op.drop_table("batch_members")
    op.drop_table("batches")
    op.drop_table("ledger_entries")
    op.drop_table("certificates")
    op.drop_table("artifacts")
    op.drop_table("templates")
