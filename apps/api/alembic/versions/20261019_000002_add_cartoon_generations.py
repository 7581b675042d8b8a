"""add cartoon_generations

Revision ID: 20261019_000002
Revises: 20261019_000001
Create Date: 2026-10-19 00:00:02.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_000002"
down_revision: Union[str, None] = "20261019_000001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "cartoon_generations",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("original_image_url", sa.Text(), nullable=False),
        sa.Column("generated_image_url", sa.Text(), nullable=False, server_default=""),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("credits_used", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["accounts.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_cartoon_generations_user_id", "cartoon_generations", ["user_id"], unique=False)
    op.create_index("ix_cartoon_generations_created_at", "cartoon_generations", ["created_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_cartoon_generations_created_at", table_name="cartoon_generations")
    op.drop_index("ix_cartoon_generations_user_id", table_name="cartoon_generations")
    op.drop_table("cartoon_generations")
