"""
MistakeBook Backend — Recognition Schemas
==========================================

What:  The canonical RecognitionResult and the request/response models of
       the recognition endpoints.
How:   Pydantic models; enums are `str` subclasses so they serialize as
       their plain values ("math", "medium", ...).
Who:   Produced by the Result Normalizer, consumed by the orchestrator,
       the batch queue, the routes and the question store.

Invariant:
    Every RecognitionResult built by the normalizer has a valid subject,
    a valid difficulty and a confidence inside [0, 1]. The field
    constraints below reject anything else, so a bug upstream surfaces as
    a pydantic error instead of a bad record.
"""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from mistakebook.schemas.question import QuestionResponse


class Subject(str, Enum):
    MATH = "math"
    CHINESE = "chinese"
    ENGLISH = "english"
    PHYSICS = "physics"
    CHEMISTRY = "chemistry"
    BIOLOGY = "biology"
    HISTORY = "history"
    GEOGRAPHY = "geography"
    POLITICS = "politics"


class Difficulty(str, Enum):
    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"


class ProviderName(str, Enum):
    """
    The closed set of recognition backends.

    ALIBABA: DashScope qwen-vl (primary multimodal LLM)
    BAIDU:   Baidu accurate_basic OCR (secondary, plain text only)
    GEMINI:  Google Gemini (tertiary multimodal LLM)
    """
    ALIBABA = "alibaba"
    BAIDU = "baidu"
    GEMINI = "gemini"


class QueueStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"


class RecognitionResult(BaseModel):
    """
    One recognized question, whatever backend produced it.

    Fields:
        content:     Transcribed question text (placeholder text if missing)
        subject:     One of the nine school subjects, defaults to math
        category:    Free-text knowledge point, defaults to "其他"
        difficulty:  easy / medium / hard, defaults to medium
        answer:      May be empty (plain OCR rarely finds one)
        explanation: Optional worked explanation
        confidence:  Provider-reported or provider-default score in [0, 1]
    """
    content: str = Field(min_length=1, description="Transcribed question text")
    subject: Subject = Field(default=Subject.MATH)
    category: str = Field(default="其他")
    difficulty: Difficulty = Field(default=Difficulty.MEDIUM)
    answer: str = Field(default="")
    explanation: Optional[str] = Field(default=None)
    confidence: float = Field(ge=0.0, le=1.0)


# ══════════════════════════════════════════════════════════════════════════
# Request / Response Models
# ══════════════════════════════════════════════════════════════════════════


class RecognizeRequest(BaseModel):
    """
    Body of POST /api/ai/recognize.

    image_base64 is either a data URL (data:image/png;base64,...) or bare
    base64, which is treated as JPEG.
    """
    image_base64: str = Field(min_length=1, description="Base64 image or data URL")
    provider: ProviderName = Field(
        default=ProviderName.ALIBABA,
        description="Preferred recognition backend",
    )
    save: bool = Field(default=False, description="Persist results as questions")


class RecognizeResponse(BaseModel):
    results: List[RecognitionResult]
    provider: ProviderName = Field(description="Backend that produced the results")
    questions: List[QuestionResponse] = Field(
        default_factory=list,
        description="Stored records (only when save=true)",
    )


class QueueItemResponse(BaseModel):
    """Terminal state of one image of a batch."""
    id: str
    filename: str
    status: QueueStatus
    progress: int = Field(ge=0, le=100)
    retry_count: int
    results: Optional[List[RecognitionResult]] = None
    error: Optional[str] = None
    questions: List[QuestionResponse] = Field(default_factory=list)
    save_error: Optional[str] = Field(
        default=None, description="Set when save=true and storing this item's questions failed"
    )


class BatchRecognizeResponse(BaseModel):
    items: List[QueueItemResponse]
    succeeded: int
    failed: int
    message: str
