from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "20250101_000001"
down_revision = None
branch_labels = None
depends_on = None


ASSET_STATUSES = ("uploading", "processing", "active", "failed", "trashed", "deleted")
ASSET_TYPES = ("image", "video", "audio", "other")
JOB_STATUSES = ("queued", "scheduled", "running", "succeeded", "failed", "dead_lettered")
JOB_TYPES = (
    "process_asset",
    "cleanup",
    "metadata_extraction",
    "thumbnail_generation",
    "transcode",
    "face_detection",
    "smart_search",
)
JOB_PRIORITIES = ("low", "normal", "high", "critical")


def upgrade() -> None:
    asset_status_enum = sa.Enum(*ASSET_STATUSES, name="assetstatus")
    asset_type_enum = sa.Enum(*ASSET_TYPES, name="assettype")
    job_status_enum = sa.Enum(*JOB_STATUSES, name="jobstatus")
    job_type_enum = sa.Enum(*JOB_TYPES, name="jobtype")
    job_priority_enum = sa.Enum(*JOB_PRIORITIES, name="jobpriority")

    op.create_table(
        "assets",
        sa.Column("asset_id", sa.String(length=64), primary_key=True),
        sa.Column("owner_id", sa.String(length=128), nullable=False),
        sa.Column("asset_type", asset_type_enum, nullable=False, server_default="other"),
        sa.Column("status", asset_status_enum, nullable=False, server_default="uploading"),
        sa.Column("storage_path", sa.String(length=2048), nullable=False),
        sa.Column("original_filename", sa.String(length=1024), nullable=False),
        sa.Column("content_type", sa.String(length=255), nullable=False),
        sa.Column("checksum", sa.LargeBinary(length=64), nullable=True),
        sa.Column("size_bytes", sa.BigInteger(), nullable=True),
        sa.Column("taken_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("width", sa.Integer(), nullable=True),
        sa.Column("height", sa.Integer(), nullable=True),
        sa.Column("duration_s", sa.Float(), nullable=True),
        sa.Column("make", sa.String(length=255), nullable=True),
        sa.Column("model", sa.String(length=255), nullable=True),
        sa.Column("lens_model", sa.String(length=255), nullable=True),
        sa.Column("f_number", sa.Float(), nullable=True),
        sa.Column("focal_length", sa.Float(), nullable=True),
        sa.Column("iso", sa.Integer(), nullable=True),
        sa.Column("exposure_time", sa.String(length=64), nullable=True),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_assets_owner_checksum", "assets", ["owner_id", "checksum"])
    op.create_index("ix_assets_owner_size", "assets", ["owner_id", "size_bytes"])
    op.create_index("ix_assets_owner_status", "assets", ["owner_id", "status"])

    op.create_table(
        "thumbnails",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("asset_id", sa.String(length=64), sa.ForeignKey("assets.asset_id", ondelete="CASCADE"), nullable=False),
        sa.Column("kind", sa.String(length=32), nullable=False),
        sa.Column("storage_key", sa.String(length=2048), nullable=False),
        sa.Column("content_type", sa.String(length=255), nullable=False),
        sa.Column("width", sa.Integer(), nullable=False),
        sa.Column("height", sa.Integer(), nullable=False),
        sa.Column("size_bytes", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("asset_id", "kind", name="uq_thumbnails_asset_kind"),
    )

    op.create_table(
        "jobs",
        sa.Column("job_id", sa.String(length=64), primary_key=True),
        sa.Column("job_type", job_type_enum, nullable=False),
        sa.Column("owner_id", sa.String(length=128), nullable=False),
        sa.Column("asset_id", sa.String(length=64), sa.ForeignKey("assets.asset_id", ondelete="SET NULL"), nullable=True),
        sa.Column("priority", job_priority_enum, nullable=False, server_default="normal"),
        sa.Column("status", job_status_enum, nullable=False, server_default="queued"),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("result", sa.JSON(), nullable=True),
        sa.Column("error", sa.JSON(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("idempotency_key", sa.String(length=128), nullable=True),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("owner_id", "idempotency_key", name="uq_jobs_owner_idempotency"),
    )
    op.create_index("ix_jobs_owner_id_asset_id", "jobs", ["owner_id", "asset_id"])


def downgrade() -> None:
    op.drop_index("ix_jobs_owner_id_asset_id", table_name="jobs")
    op.drop_table("jobs")
    op.drop_table("thumbnails")
    op.drop_index("ix_assets_owner_status", table_name="assets")
    op.drop_index("ix_assets_owner_size", table_name="assets")
    op.drop_index("ix_assets_owner_checksum", table_name="assets")
    op.drop_table("assets")

    bind = op.get_bind()
    for name in ("jobpriority", "jobtype", "jobstatus", "assettype", "assetstatus"):
        sa.Enum(name=name).drop(bind, checkfirst=True)
