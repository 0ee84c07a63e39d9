"""Create mistake_questions table

Revision ID: 001
Revises: None
Create Date: 2025-01-15 00:00:00.000000+00:00

What:  Creates the `mistake_questions` table written by the recognize
       endpoints when save=true.
How:   PostgreSQL UUID primary key generated server-side, TIMESTAMP WITH
       TIME ZONE, composite index for "newest questions of a user".

Rollback: downgrade() drops the table (all stored questions are lost).
"""

from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "mistake_questions",
        sa.Column(
            "id",
            postgresql.UUID(as_uuid=True),
            server_default=sa.text("gen_random_uuid()"),
            nullable=False,
        ),
        sa.Column(
            "user_id",
            sa.String(255),
            nullable=False,
            comment="Owner of the question (opaque identity subject)",
        ),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column(
            "subject",
            sa.String(20),
            nullable=False,
            server_default=sa.text("'math'"),
            comment="math, chinese, english, physics, chemistry, biology, history, geography, politics",
        ),
        sa.Column("category", sa.String(100), nullable=False, server_default=sa.text("'其他'")),
        sa.Column(
            "difficulty",
            sa.String(10),
            nullable=False,
            server_default=sa.text("'medium'"),
            comment="easy, medium, hard",
        ),
        sa.Column("answer", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column("explanation", sa.Text(), nullable=True),
        sa.Column("review_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("is_mastered", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "subject IN ('math', 'chinese', 'english', 'physics', 'chemistry', "
            "'biology', 'history', 'geography', 'politics')",
            name="ck_mistake_questions_subject",
        ),
        sa.CheckConstraint(
            "difficulty IN ('easy', 'medium', 'hard')",
            name="ck_mistake_questions_difficulty",
        ),
    )

    op.create_index(
        "idx_mistake_questions_user_created",
        "mistake_questions",
        ["user_id", sa.text("created_at DESC")],
    )


def downgrade() -> None:
    op.drop_index("idx_mistake_questions_user_created", table_name="mistake_questions")
    op.drop_table("mistake_questions")
