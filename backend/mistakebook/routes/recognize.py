"""
MistakeBook Backend — Recognition Routes
=========================================

What:  POST /api/ai/recognize        one base64 image (JSON body)
       POST /api/ai/recognize/batch  several uploaded files (multipart)
How:   Decode and validate the input, run the orchestrator (directly or
       through the batch queue), optionally store the results as questions.
Who:   The upload page of the notebook frontend.

Error responses (global exception handlers in main.py):
    400 ValidationError     bad base64, unsupported format, too large, too many files
    401 UnauthorizedError   no bearer credential
    422 EmptyResultError    no question recognized
    503 ProviderError       every provider of the chain failed (first error shown)
    500 DatabaseError       save=true and the insert failed (single image)

The batch endpoint answers 200 even when items failed; per-item state is
in the body. A failed save is reported in the item's `save_error` and
keeps its recognition results.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile
from sqlalchemy.ext.asyncio import AsyncSession

from mistakebook.config import settings
from mistakebook.database import get_db_session
from mistakebook.exceptions import DatabaseError, ValidationError
from mistakebook.routes.deps import CurrentUser, get_current_user, get_orchestrator
from mistakebook.schemas.common import ErrorResponse
from mistakebook.schemas.question import QuestionResponse
from mistakebook.schemas.recognition import (
    BatchRecognizeResponse,
    ProviderName,
    QueueItemResponse,
    QueueStatus,
    RecognizeRequest,
    RecognizeResponse,
)
from mistakebook.services.batch_queue import BatchQueue, ImageQueueItem
from mistakebook.services.image_service import (
    ImagePayload,
    decode_base64_image,
    validate_image,
)
from mistakebook.services.orchestrator import RecognitionOrchestrator
from mistakebook.services.question_service import question_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/ai", tags=["Recognition"])

ERROR_RESPONSES = {
    400: {"description": "Invalid image", "model": ErrorResponse},
    401: {"description": "Missing credential", "model": ErrorResponse},
    503: {"description": "Recognition services unavailable", "model": ErrorResponse},
}


@router.post(
    "/recognize",
    response_model=RecognizeResponse,
    responses={
        **ERROR_RESPONSES,
        422: {"description": "No question recognized", "model": ErrorResponse},
    },
    summary="Recognize the questions in one photo",
)
async def recognize(
    body: RecognizeRequest,
    user: CurrentUser = Depends(get_current_user),
    orchestrator: RecognitionOrchestrator = Depends(get_orchestrator),
    db: AsyncSession = Depends(get_db_session),
) -> RecognizeResponse:
    """
    Recognize one image with the preferred provider and its fallback chain.

    With save=true every result is stored as a question and the stored
    records are returned in `questions`.
    """
    image = decode_base64_image(body.image_base64)
    validate_image(image)

    logger.info(
        "Recognize request: provider=%s, %s, %d bytes, save=%s",
        body.provider.value, image.mime_type, image.size, body.save,
    )

    outcome = await orchestrator.recognize(image, body.provider)

    questions: List[QuestionResponse] = []
    if body.save:
        questions = await question_service.create_questions(db, user.subject, outcome.results)

    return RecognizeResponse(
        results=outcome.results,
        provider=outcome.provider,
        questions=questions,
    )


@router.post(
    "/recognize/batch",
    response_model=BatchRecognizeResponse,
    responses=ERROR_RESPONSES,
    summary="Recognize several photos",
    description=(
        "Runs the batch queue over the uploaded files: chunks of `concurrency` "
        "images, up to `max_retries` automatic retries per image. Individual "
        "failures are reported per item."
    ),
)
async def recognize_batch(
    files: List[UploadFile] = File(..., description="Question photos (JPG, PNG, GIF, WebP)"),
    provider: ProviderName = Form(ProviderName.ALIBABA),
    concurrency: Optional[int] = Form(None, ge=1, le=10),
    max_retries: Optional[int] = Form(None, ge=0, le=5),
    save: bool = Form(False),
    user: CurrentUser = Depends(get_current_user),
    orchestrator: RecognitionOrchestrator = Depends(get_orchestrator),
    db: AsyncSession = Depends(get_db_session),
) -> BatchRecognizeResponse:
    if len(files) > settings.batch_max_files:
        raise ValidationError(
            message=f"Too many images. Upload at most {settings.batch_max_files} at a time.",
            reason=ValidationError.TOO_MANY_FILES,
            field="files",
            context={"count": len(files), "max": settings.batch_max_files},
        )

    items: List[ImageQueueItem] = []
    for upload in files:
        try:
            data = await upload.read()
        finally:
            await upload.close()
        filename = upload.filename or "image"
        items.append(ImageQueueItem(image=ImagePayload(
            data=data,
            mime_type=(upload.content_type or "application/octet-stream").lower(),
            filename=filename,
        )))

    logger.info(
        "Batch request: %d file(s), provider=%s, concurrency=%s, max_retries=%s",
        len(items), provider.value, concurrency, max_retries,
    )

    queue = BatchQueue(
        orchestrator=orchestrator,
        provider=provider,
        concurrency=concurrency,
        max_retries=max_retries,
    )
    await queue.run(items)

    responses = []
    for item in items:
        questions: List[QuestionResponse] = []
        save_error: Optional[str] = None
        if save and item.status == QueueStatus.SUCCESS:
            try:
                questions = await question_service.create_questions(db, user.subject, item.results)
            except DatabaseError as e:
                logger.warning("Item %s (%s) recognized but not saved", item.id, item.filename)
                save_error = e.message
        responses.append(QueueItemResponse(
            id=item.id,
            filename=item.filename,
            status=item.status,
            progress=item.progress,
            retry_count=item.retry_count,
            results=item.results,
            error=item.error,
            questions=questions,
            save_error=save_error,
        ))

    succeeded = sum(1 for item in items if item.status == QueueStatus.SUCCESS)
    failed = len(items) - succeeded
    return BatchRecognizeResponse(
        items=responses,
        succeeded=succeeded,
        failed=failed,
        message=f"{succeeded} image(s) recognized, {failed} failed",
    )
