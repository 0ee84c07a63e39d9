"""
MistakeBook Backend — MistakeQuestion SQLAlchemy Model
=======================================================

What:  ORM model for the `mistake_questions` table.
How:   Inherits from the shared DeclarativeBase; Alembic migration 001
       creates the same table.
Who:   Written by QuestionService when a recognition request has save=true.

Table Design:
    - user_id: opaque credential subject, never interpreted here
    - subject / difficulty: stored as their enum values ("math", "medium")
    - review_count / is_mastered: always start at 0 / false; maintained by
      the question CRUD API, which lives outside this service
    - Index (user_id, created_at DESC): the notebook lists a user's newest
      questions first
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Index, Integer, String, Text, text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.orm import Mapped, mapped_column

from mistakebook.database import Base


class MistakeQuestion(Base):
    """One question in a user's mistake notebook."""

    __tablename__ = "mistake_questions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )

    user_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="Owner of the question (opaque identity subject)",
    )

    # ── Recognized Fields ─────────────────────────────────────────────────
    content: Mapped[str] = mapped_column(Text, nullable=False)
    subject: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="math",
        comment="math, chinese, english, physics, chemistry, biology, history, geography, politics",
    )
    category: Mapped[str] = mapped_column(String(100), nullable=False, default="其他")
    difficulty: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        default="medium",
        comment="easy, medium, hard",
    )
    answer: Mapped[str] = mapped_column(Text, nullable=False, default="")
    explanation: Mapped[str | None] = mapped_column(Text, nullable=True, default=None)

    # ── Review State ──────────────────────────────────────────────────────
    review_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default=text("0"),
    )
    is_mastered: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=text("false"),
    )

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=text("CURRENT_TIMESTAMP"),
    )

    __table_args__ = (
        Index("idx_mistake_questions_user_created", user_id, created_at.desc()),
    )

    def __repr__(self) -> str:
        return (
            f"<MistakeQuestion(id={self.id}, subject='{self.subject}', "
            f"user_id='{self.user_id}')>"
        )
