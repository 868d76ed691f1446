"""Create training registry, fine-tuning and model version tables

Revision ID: 002
Revises: 001
Create Date: 2024-09-16 00:00:00.000000+00:00

What:  `training_documents`, `verification_edits`, `fine_tuning_jobs`,
       `training_triggers` and `model_versions`.
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _uuid_pk() -> sa.Column:
    return sa.Column(
        "id",
        postgresql.UUID(as_uuid=True),
        server_default=sa.text("gen_random_uuid()"),
        nullable=False,
    )


def _timestamp(name: str, nullable: bool = False) -> sa.Column:
    if nullable:
        return sa.Column(name, sa.TIMESTAMP(timezone=True), nullable=True)
    return sa.Column(
        name,
        sa.TIMESTAMP(timezone=True),
        nullable=False,
        server_default=sa.text("CURRENT_TIMESTAMP"),
    )


def upgrade() -> None:
    # ── Training documents ────────────────────────────────────────────────
    op.create_table(
        "training_documents",
        _uuid_pk(),
        sa.Column("file_ref", sa.String(512), nullable=False),
        sa.Column("filename", sa.String(255), nullable=False),
        sa.Column("file_size", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column(
            "mime_type",
            sa.String(100),
            nullable=False,
            server_default=sa.text("'application/pdf'"),
        ),
        sa.Column(
            "document_type",
            sa.String(50),
            nullable=False,
            server_default=sa.text("'unknown'"),
        ),
        sa.Column(
            "processing_status",
            sa.String(20),
            nullable=False,
            server_default=sa.text("'pending'"),
            comment="pending, processing, completed, failed",
        ),
        sa.Column("extraction", postgresql.JSONB(), nullable=True),
        sa.Column("extraction_confidence", sa.Float(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column(
            "verification_status",
            sa.String(20),
            nullable=False,
            server_default=sa.text("'unverified'"),
        ),
        sa.Column("verified_by", sa.String(64), nullable=True),
        _timestamp("verified_at", nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("verification_notes", sa.Text(), nullable=True),
        sa.Column(
            "dataset_split",
            sa.String(20),
            nullable=False,
            server_default=sa.text("'unassigned'"),
        ),
        sa.Column(
            "include_in_training", sa.Boolean(), nullable=False, server_default=sa.text("true")
        ),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_training_documents_eligible",
        "training_documents",
        ["document_type", "verification_status", "dataset_split"],
    )
    op.create_index(
        "idx_training_documents_created_at",
        "training_documents",
        [sa.text("created_at DESC")],
    )

    op.create_table(
        "verification_edits",
        _uuid_pk(),
        sa.Column("document_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("previous_payload", postgresql.JSONB(), nullable=True),
        sa.Column("corrected_payload", postgresql.JSONB(), nullable=False),
        sa.Column(
            "changed_fields",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column("edited_by", sa.String(64), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["document_id"], ["training_documents.id"]),
    )
    op.create_index(
        "ix_verification_edits_document_id", "verification_edits", ["document_id"]
    )

    # ── Fine-tuning jobs ──────────────────────────────────────────────────
    op.create_table(
        "fine_tuning_jobs",
        _uuid_pk(),
        sa.Column("document_type", sa.String(50), nullable=False),
        sa.Column("external_job_id", sa.String(255), nullable=True),
        sa.Column(
            "status",
            sa.String(20),
            nullable=False,
            server_default=sa.text("'queued'"),
            comment="queued, uploading, running, succeeded, failed, cancelled",
        ),
        sa.Column("base_model", sa.String(255), nullable=False),
        sa.Column(
            "hyperparameters",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("training_document_ids", postgresql.JSONB(), nullable=False),
        sa.Column(
            "validation_document_ids",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column(
            "training_examples_count", sa.Integer(), nullable=False, server_default=sa.text("0")
        ),
        sa.Column(
            "validation_examples_count", sa.Integer(), nullable=False, server_default=sa.text("0")
        ),
        sa.Column("fine_tuned_model_id", sa.String(255), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column(
            "status_history",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column(
            "triggered_by", sa.String(20), nullable=False, server_default=sa.text("'manual'")
        ),
        sa.Column("created_by", sa.String(64), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        _timestamp("created_at"),
        _timestamp("started_at", nullable=True),
        _timestamp("completed_at", nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_fine_tuning_jobs_status", "fine_tuning_jobs", ["status"])
    op.create_index(
        "idx_fine_tuning_jobs_type_created",
        "fine_tuning_jobs",
        ["document_type", "created_at"],
    )

    op.create_table(
        "training_triggers",
        _uuid_pk(),
        sa.Column("document_type", sa.String(50), nullable=False),
        sa.Column("trigger_interval", sa.Integer(), nullable=False, server_default=sa.text("10")),
        sa.Column(
            "min_documents_required", sa.Integer(), nullable=False, server_default=sa.text("10")
        ),
        sa.Column(
            "auto_trigger_enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")
        ),
        sa.Column(
            "last_trigger_count", sa.Integer(), nullable=False, server_default=sa.text("0")
        ),
        sa.Column("next_trigger_at", sa.Integer(), nullable=False, server_default=sa.text("10")),
        _timestamp("last_triggered_at", nullable=True),
        sa.Column("last_job_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("total_triggers", sa.Integer(), nullable=False, server_default=sa.text("0")),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("document_type", name="uq_training_triggers_document_type"),
    )

    # ── Model versions ────────────────────────────────────────────────────
    op.create_table(
        "model_versions",
        _uuid_pk(),
        sa.Column("job_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("document_type", sa.String(50), nullable=False),
        sa.Column("model_id", sa.String(255), nullable=False),
        sa.Column("version_number", sa.Integer(), nullable=False),
        sa.Column(
            "deployment_status",
            sa.String(20),
            nullable=False,
            server_default=sa.text("'testing'"),
            comment="testing, active, inactive, archived",
        ),
        sa.Column(
            "traffic_percentage", sa.Integer(), nullable=False, server_default=sa.text("0")
        ),
        _timestamp("deployed_at", nullable=True),
        _timestamp("archived_at", nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(64), nullable=False),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["job_id"], ["fine_tuning_jobs.id"]),
        sa.UniqueConstraint("job_id", name="uq_model_versions_job_id"),
        sa.UniqueConstraint(
            "document_type", "version_number", name="uq_model_versions_type_number"
        ),
        sa.CheckConstraint(
            "traffic_percentage >= 0 AND traffic_percentage <= 100",
            name="ck_model_versions_traffic_range",
        ),
    )
    op.create_index(
        "idx_model_versions_type_status",
        "model_versions",
        ["document_type", "deployment_status"],
    )


def downgrade() -> None:
    op.drop_index("idx_model_versions_type_status", table_name="model_versions")
    op.drop_table("model_versions")
    op.drop_table("training_triggers")
    op.drop_index("idx_fine_tuning_jobs_type_created", table_name="fine_tuning_jobs")
    op.drop_index("idx_fine_tuning_jobs_status", table_name="fine_tuning_jobs")
    op.drop_table("fine_tuning_jobs")
    op.drop_index("ix_verification_edits_document_id", table_name="verification_edits")
    op.drop_table("verification_edits")
    op.drop_index("idx_training_documents_created_at", table_name="training_documents")
    op.drop_index("idx_training_documents_eligible", table_name="training_documents")
    op.drop_table("training_documents")
