"""
MistakeBook Backend — Question Service Unit Tests
==================================================

What:  Tests for storing recognition results as questions.
How:   Uses the mock DB session from conftest (no real DB).

What we test:
    ✅ One row per result, fresh review state, owner set
    ✅ Empty input touches nothing
    ✅ SQLAlchemy failures become DatabaseError
"""

import uuid

import pytest
from sqlalchemy.exc import OperationalError

from mistakebook.exceptions import DatabaseError
from mistakebook.models.question import MistakeQuestion
from mistakebook.schemas.recognition import Difficulty, Subject
from mistakebook.services.question_service import QuestionService


class TestCreateQuestions:

    def setup_method(self):
        self.service = QuestionService()

    @pytest.mark.asyncio
    async def test_creates_one_row_per_result(self, mock_db_session, make_result):
        results = [
            make_result(content="第一题"),
            make_result(
                content="第二题",
                subject=Subject.PHYSICS,
                difficulty=Difficulty.HARD,
                explanation="受力分析",
            ),
        ]

        questions = await self.service.create_questions(mock_db_session, "user-1", results)

        rows = mock_db_session.add_all.call_args.args[0]
        assert len(rows) == 2
        assert all(isinstance(row, MistakeQuestion) for row in rows)
        assert all(row.user_id == "user-1" for row in rows)
        mock_db_session.flush.assert_awaited_once()
        mock_db_session.begin_nested.assert_called_once()

        assert [q.content for q in questions] == ["第一题", "第二题"]
        assert questions[1].subject == "physics"
        assert questions[1].difficulty == "hard"
        assert questions[1].explanation == "受力分析"
        assert all(q.review_count == 0 and q.is_mastered is False for q in questions)
        assert all(isinstance(q.id, uuid.UUID) for q in questions)
        assert questions[0].id != questions[1].id
        assert questions[0].created_at is not None

    @pytest.mark.asyncio
    async def test_empty_results(self, mock_db_session):
        assert await self.service.create_questions(mock_db_session, "user-1", []) == []
        mock_db_session.add_all.assert_not_called()
        mock_db_session.flush.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_flush_failure_raises_database_error(self, mock_db_session, make_result):
        mock_db_session.flush.side_effect = OperationalError("INSERT", {}, Exception("connection lost"))

        with pytest.raises(DatabaseError) as exc_info:
            await self.service.create_questions(mock_db_session, "user-1", [make_result()])
        assert "could not be saved" in exc_info.value.message
        assert exc_info.value.context["original_error"] == "OperationalError"
