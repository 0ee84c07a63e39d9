"""
MistakeBook Backend — Question Schemas
=======================================

What:  Representation of a stored mistake-notebook question.
Who:   Returned by the recognize endpoints when `save=true`.
"""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class QuestionResponse(BaseModel):
    """
    A question row as created from one RecognitionResult.

    review_count and is_mastered always start at 0 / false; reviewing and
    mastering are handled by the question CRUD API, not by this service.
    """
    id: uuid.UUID = Field(description="Generated question id")
    content: str
    subject: str
    category: str
    difficulty: str
    answer: str
    explanation: Optional[str] = None
    review_count: int = Field(default=0)
    is_mastered: bool = Field(default=False)
    created_at: datetime

    model_config = {"from_attributes": True}
