"""create manifest entries table

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 09:30:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_0001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "manifest_entries",
        sa.Column("document_id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("filename", sa.String(length=1024), nullable=False),
        sa.Column("fingerprint", sa.String(length=80), nullable=False),
        sa.Column("size", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("discovered_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("refined_fingerprint", sa.String(length=80), nullable=True),
        sa.Column("refined_file", sa.String(length=1024), nullable=True),
        sa.Column("refined_hash", sa.String(length=80), nullable=True),
        sa.Column("ingested_fingerprint", sa.String(length=80), nullable=True),
        sa.Column(
            "status",
            sa.String(length=32),
            nullable=False,
            server_default=sa.text("'pending'"),
        ),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("error_kind", sa.String(length=32), nullable=True),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column("removed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_manifest_entries_filename",
        "manifest_entries",
        ["filename"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_manifest_entries_filename", table_name="manifest_entries")
    op.drop_table("manifest_entries")
