"""
MistakeBook Backend — Batch Queue Controller
=============================================

What:  Runs the orchestrator over several images with bounded concurrency,
       per-item retry and progress events.
How:   Images are cut into consecutive chunks of `concurrency`. All items of
       a chunk run together (asyncio.gather) and the next chunk starts only
       when every item of the current one is terminal. Retries happen in
       place, inside the item's slot, through tenacity.
Who:   POST /api/ai/recognize/batch; `retry_image` for a single manual retry.

Item state machine:
    pending → processing → success
                         → failed  (validation error, or retries exhausted)
    failed  → processing           (retry_image, retry_count reset to 0)

Progress per attempt: 0 → 20 (validated) → 40 (sent) → 80 (answered) → 100.
A failed item is reset to 0.

Events:
    BatchEventSink methods are plain functions called at each transition.
    They are observational only: an exception raised by a sink is logged
    and ignored, and nothing is awaited on them.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_fixed

from mistakebook.config import settings
from mistakebook.exceptions import ExhaustedRetriesError, MistakeBookError, ProviderError, ValidationError
from mistakebook.schemas.recognition import ProviderName, QueueStatus, RecognitionResult
from mistakebook.services.image_service import ImagePayload, validate_image
from mistakebook.services.orchestrator import RecognitionOrchestrator, orchestrator as default_orchestrator

logger = logging.getLogger(__name__)

PROGRESS_VALIDATED = 20
PROGRESS_SENT = 40
PROGRESS_ANSWERED = 80
PROGRESS_DONE = 100


@dataclass
class ImageQueueItem:
    """
    One image of a batch and its recognition state.

    `results` is set only on success and `error` only on failure. The
    exception behind a failure (ValidationError or ExhaustedRetriesError)
    is kept in `exception` for logging and tests.
    """
    image: ImagePayload
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    status: QueueStatus = QueueStatus.PENDING
    progress: int = 0
    results: Optional[List[RecognitionResult]] = None
    error: Optional[str] = None
    retry_count: int = 0
    provider: Optional[ProviderName] = None
    exception: Optional[MistakeBookError] = None

    @property
    def filename(self) -> str:
        return self.image.filename


class BatchEventSink:
    """
    Observer for batch progress. Subclass and override what you need.

    Callers that drop an item while the batch runs must ignore its late
    events themselves; the controller does not cancel work in flight.
    """

    def on_item_start(self, item: ImageQueueItem) -> None:
        pass

    def on_item_progress(self, item: ImageQueueItem, progress: int) -> None:
        pass

    def on_item_success(self, item: ImageQueueItem) -> None:
        pass

    def on_item_error(self, item: ImageQueueItem) -> None:
        pass

    def on_complete(self, items: List[ImageQueueItem]) -> None:
        pass


class BatchQueue:
    """
    Drives a list of ImageQueueItem through the orchestrator.

    Args:
        orchestrator:  Recognition orchestrator (the app singleton by default)
        provider:      Preferred provider for every item of the batch
        concurrency:   Chunk size, i.e. peak concurrent recognitions
        max_retries:   Automatic retries per item after the first attempt
        retry_backoff: Seconds to wait before each retry
        sink:          Event observer
    """

    def __init__(
        self,
        orchestrator: Optional[RecognitionOrchestrator] = None,
        provider: ProviderName = ProviderName.ALIBABA,
        concurrency: Optional[int] = None,
        max_retries: Optional[int] = None,
        retry_backoff: Optional[float] = None,
        sink: Optional[BatchEventSink] = None,
    ):
        self.orchestrator = orchestrator or default_orchestrator
        self.provider = ProviderName(provider)
        self.concurrency = max(1, concurrency if concurrency is not None else settings.batch_concurrency)
        self.max_retries = max(0, max_retries if max_retries is not None else settings.batch_max_retries)
        self.retry_backoff = settings.batch_retry_backoff if retry_backoff is None else retry_backoff
        self.sink = sink or BatchEventSink()

    # ── Events ────────────────────────────────────────────────────────────

    def _emit(self, event: str, *args) -> None:
        try:
            getattr(self.sink, event)(*args)
        except Exception:
            logger.exception("Batch event handler %s failed", event)

    def _set_progress(self, item: ImageQueueItem, progress: int) -> None:
        item.progress = progress
        self._emit("on_item_progress", item, progress)

    def _start_attempt(self, item: ImageQueueItem) -> None:
        item.status = QueueStatus.PROCESSING
        item.progress = 0
        item.error = None
        item.results = None
        item.exception = None
        self._emit("on_item_start", item)

    def _fail(self, item: ImageQueueItem, error: MistakeBookError) -> None:
        item.status = QueueStatus.FAILED
        item.progress = 0
        item.results = None
        item.error = error.message
        item.exception = error
        self._emit("on_item_error", item)

    # ── Per-item algorithm ────────────────────────────────────────────────

    def _before_retry(self, item: ImageQueueItem):
        def before_sleep(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            item.retry_count += 1
            logger.warning(
                "Item %s (%s) failed: %s. Retry %d/%d in %.1fs",
                item.id, item.filename, getattr(error, "message", error),
                item.retry_count, self.max_retries, self.retry_backoff,
            )
        return before_sleep

    async def _attempt(self, item: ImageQueueItem, attempt_number: int):
        if attempt_number > 1:
            self._start_attempt(item)
            self._set_progress(item, PROGRESS_VALIDATED)
        self._set_progress(item, PROGRESS_SENT)
        return await self.orchestrator.recognize(item.image, self.provider)

    async def process_item(self, item: ImageQueueItem) -> ImageQueueItem:
        """
        Validate, recognize and retry one item until it is terminal.

        Never raises: every failure ends up on the item.
        """
        self._start_attempt(item)

        try:
            validate_image(item.image)
        except ValidationError as e:
            logger.info("Item %s (%s) rejected: %s", item.id, item.filename, e.message)
            self._fail(item, e)
            return item
        self._set_progress(item, PROGRESS_VALIDATED)

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_retries + 1),
                wait=wait_fixed(self.retry_backoff),
                retry=retry_if_exception_type(ProviderError),
                before_sleep=self._before_retry(item),
                reraise=True,
            ):
                with attempt:
                    outcome = await self._attempt(item, attempt.retry_state.attempt_number)
        except ProviderError as e:
            self._fail(item, ExhaustedRetriesError(
                message=e.message,
                attempts=item.retry_count + 1,
                last_error=e,
                context={"item_id": item.id, "provider": self.provider.value},
            ))
            return item
        except Exception as e:
            logger.error("Unexpected error on item %s: %s", item.id, str(e), exc_info=True)
            self._fail(item, ExhaustedRetriesError(
                attempts=item.retry_count + 1,
                last_error=e,
                context={"item_id": item.id},
            ))
            return item

        self._set_progress(item, PROGRESS_ANSWERED)
        item.results = outcome.results
        item.provider = outcome.provider
        item.status = QueueStatus.SUCCESS
        self._set_progress(item, PROGRESS_DONE)
        self._emit("on_item_success", item)
        return item

    # ── Public API ────────────────────────────────────────────────────────

    async def run(self, items: Sequence[ImageQueueItem]) -> List[ImageQueueItem]:
        """Process `items` chunk by chunk; returns them in input order."""
        items = list(items)
        for start in range(0, len(items), self.concurrency):
            chunk = items[start:start + self.concurrency]
            logger.debug(
                "Batch chunk %d: %d item(s)", start // self.concurrency + 1, len(chunk)
            )
            await asyncio.gather(*(self.process_item(item) for item in chunk))

        succeeded = sum(1 for item in items if item.status == QueueStatus.SUCCESS)
        logger.info(
            "Batch finished: %d succeeded, %d failed (provider=%s)",
            succeeded, len(items) - succeeded, self.provider.value,
        )
        self._emit("on_complete", items)
        return items

    async def retry_image(self, item: ImageQueueItem) -> ImageQueueItem:
        """Manual retry of one item, outside any chunk, from retry_count 0."""
        item.retry_count = 0
        item.error = None
        item.status = QueueStatus.PENDING
        item.progress = 0
        logger.info("Manual retry of item %s (%s)", item.id, item.filename)
        return await self.process_item(item)


async def run_batch(
    images: Sequence[ImagePayload],
    concurrency: Optional[int] = None,
    max_retries: Optional[int] = None,
    sink: Optional[BatchEventSink] = None,
    provider: ProviderName = ProviderName.ALIBABA,
    orchestrator: Optional[RecognitionOrchestrator] = None,
    retry_backoff: Optional[float] = None,
) -> List[ImageQueueItem]:
    """
    Recognize a list of images. Always completes; per-item failures are
    reported on the returned items and through `sink`.
    """
    queue = BatchQueue(
        orchestrator=orchestrator,
        provider=provider,
        concurrency=concurrency,
        max_retries=max_retries,
        retry_backoff=retry_backoff,
        sink=sink,
    )
    return await queue.run([ImageQueueItem(image=image) for image in images])


async def retry_image(
    item: ImageQueueItem,
    max_retries: Optional[int] = None,
    sink: Optional[BatchEventSink] = None,
    provider: ProviderName = ProviderName.ALIBABA,
    orchestrator: Optional[RecognitionOrchestrator] = None,
    retry_backoff: Optional[float] = None,
) -> ImageQueueItem:
    queue = BatchQueue(
        orchestrator=orchestrator,
        provider=provider,
        max_retries=max_retries,
        retry_backoff=retry_backoff,
        sink=sink,
    )
    return await queue.retry_image(item)
