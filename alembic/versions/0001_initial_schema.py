"""initial cutover schema

Revision ID: 0001
Revises:
Create Date: 2026-10-17 12:00:00

"""
from alembic import op
import sqlalchemy as sa


revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


DEPLOYMENT_STATES = (
    "IDLE",
    "STOPPING_OLD",
    "ACQUIRING_LOCK",
    "STARTING_NEW",
    "VERIFYING",
    "COMMITTED",
    "ROLLED_BACK",
    "FAILED",
)


def upgrade() -> None:
    op.create_table(
        "versions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("identifier", sa.String(length=255), nullable=False, unique=True),
        sa.Column("digest", sa.String(length=128), nullable=True),
        sa.Column("image_uri", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "version_commits",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("resource_id", sa.String(length=128), nullable=False),
        sa.Column("identifier", sa.String(length=255), nullable=False),
        sa.Column("committed_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_version_commits_resource", "version_commits", ["resource_id", "id"])

    op.create_table(
        "resource_locks",
        sa.Column("resource_id", sa.String(length=128), primary_key=True),
        sa.Column("holder_id", sa.String(length=255), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_resource_locks_expires_at", "resource_locks", ["expires_at"])

    op.create_table(
        "deployment_records",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("deployment_id", sa.String(length=64), nullable=False, unique=True),
        sa.Column("resource_id", sa.String(length=128), nullable=False),
        sa.Column("idempotency_key", sa.String(length=255), nullable=False),
        sa.Column("target_version", sa.String(length=255), nullable=False),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "state",
            sa.Enum(*DEPLOYMENT_STATES, name="deployment_state"),
            nullable=False,
        ),
        sa.Column("previous_version", sa.String(length=255), nullable=True),
        sa.Column("candidate", sa.JSON(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("transitions", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("resource_id", "idempotency_key", name="uq_deployment_idempotency"),
    )
    op.create_index("ix_deployment_records_resource", "deployment_records", ["resource_id", "id"])

    op.create_table(
        "resource_states",
        sa.Column("resource_id", sa.String(length=128), primary_key=True),
        sa.Column("active_instance", sa.JSON(), nullable=True),
        sa.Column("last_deployment_id", sa.String(length=64), nullable=True),
        sa.Column("blocked", sa.Boolean(), nullable=False),
        sa.Column("failure_counts", sa.JSON(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("resource_states")
    op.drop_index("ix_deployment_records_resource", table_name="deployment_records")
    op.drop_table("deployment_records")
    sa.Enum(name="deployment_state").drop(op.get_bind(), checkfirst=True)
    op.drop_index("ix_resource_locks_expires_at", table_name="resource_locks")
    op.drop_table("resource_locks")
    op.drop_index("ix_version_commits_resource", table_name="version_commits")
    op.drop_table("version_commits")
    op.drop_table("versions")
