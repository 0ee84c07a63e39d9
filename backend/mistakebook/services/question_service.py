"""
MistakeBook Backend — Question Service
=======================================

What:  Persists recognition results as mistake-notebook questions.
How:   One MistakeQuestion row per RecognitionResult, added in a single
       flush inside a savepoint. The commit happens in get_db_session when
       the request ends.
Who:   Called by the recognize routes when the client sends save=true.

Only creation lives here. Listing, editing, mastering and review
counting belong to the question CRUD API.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import List, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from mistakebook.exceptions import DatabaseError
from mistakebook.models.question import MistakeQuestion
from mistakebook.schemas.question import QuestionResponse
from mistakebook.schemas.recognition import RecognitionResult

logger = logging.getLogger(__name__)


class QuestionService:
    """Create-only access to the `mistake_questions` table."""

    async def create_questions(
        self,
        db: AsyncSession,
        user_id: str,
        results: Sequence[RecognitionResult],
    ) -> List[QuestionResponse]:
        """
        Store each result as a new question owned by `user_id`.

        Returns:
            The stored records, in the order of `results`, with generated
            id, review_count=0, is_mastered=False and created_at.

        Raises:
            DatabaseError: The insert failed (details are logged only).
        """
        if not results:
            return []

        now = datetime.now(timezone.utc)
        rows = [
            MistakeQuestion(
                id=uuid.uuid4(),
                user_id=user_id,
                content=result.content,
                subject=result.subject.value,
                category=result.category,
                difficulty=result.difficulty.value,
                answer=result.answer,
                explanation=result.explanation,
                review_count=0,
                is_mastered=False,
                created_at=now,
            )
            for result in results
        ]

        # SAVEPOINT: a failed insert rolls back only these rows, so a batch
        # can keep saving its other items in the same session
        try:
            async with db.begin_nested():
                db.add_all(rows)
                await db.flush()
        except SQLAlchemyError as e:
            logger.error("Failed to store %d question(s): %s", len(rows), str(e), exc_info=True)
            raise DatabaseError(
                message="Recognized questions could not be saved. Please try again.",
                context={"original_error": type(e).__name__, "count": len(rows)},
            )

        logger.info("Stored %d question(s) for user %s", len(rows), user_id)
        return [QuestionResponse.model_validate(row) for row in rows]


# ── Singleton Instance ────────────────────────────────────────────────────
question_service = QuestionService()
