"""
MistakeBook Backend — Batch Queue Tests
========================================

What:  Tests for chunked concurrency, per-item retry, progress events and
       the manual retry of one item.
How:   A fake orchestrator that records in-flight calls; retry_backoff=0
       so retries do not sleep.

What we test:
    ✅ 5 images at concurrency 2 run as waves of 2, 2, 1
    ✅ Retries exhausted: retry_count == max_retries, one error event
    ✅ Validation failures make no provider call and are not retried
    ✅ Success after a retry, progress sequence, sink failures ignored
    ✅ retry_image restarts from retry_count 0
"""

import asyncio
import base64
from typing import List

import pytest

from mistakebook.exceptions import (
    ExhaustedRetriesError,
    ProviderHTTPError,
    ProviderTimeoutError,
    ValidationError,
)
from mistakebook.schemas.recognition import ProviderName, QueueStatus
from mistakebook.services.batch_queue import (
    BatchEventSink,
    BatchQueue,
    ImageQueueItem,
    retry_image,
    run_batch,
)
from mistakebook.services.image_service import ImagePayload
from mistakebook.services.orchestrator import RecognitionOutcome


class FakeOrchestrator:
    """
    Scripted stand-in for RecognitionOrchestrator.

    `script` maps a filename to a list of outcomes consumed per call; the
    last outcome repeats. Unlisted files succeed.
    """

    def __init__(self, make_result, script=None, delay: float = 0.01):
        self.make_result = make_result
        self.script = script or {}
        self.delay = delay
        self.calls: List[str] = []
        self.active = 0
        self.max_active = 0

    async def recognize(self, image, preferred=ProviderName.ALIBABA):
        self.calls.append(image.filename)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
            outcomes = self.script.get(image.filename)
            if outcomes:
                seen = self.calls.count(image.filename)
                outcome = outcomes[min(seen, len(outcomes)) - 1]
                if isinstance(outcome, Exception):
                    raise outcome
            return RecognitionOutcome(
                results=[self.make_result(content=f"question of {image.filename}")],
                provider=ProviderName(preferred),
                attempts=[ProviderName(preferred)],
            )
        finally:
            self.active -= 1


class RecordingSink(BatchEventSink):
    def __init__(self):
        self.events = []
        self.completed = None

    def on_item_start(self, item):
        self.events.append(("start", item.filename))

    def on_item_progress(self, item, progress):
        self.events.append(("progress", item.filename, progress))

    def on_item_success(self, item):
        self.events.append(("success", item.filename))

    def on_item_error(self, item):
        self.events.append(("error", item.filename))

    def on_complete(self, items):
        self.completed = list(items)

    def kinds(self, *wanted):
        return [event[0] for event in self.events if event[0] in wanted]

    def of(self, filename, kind):
        return [e for e in self.events if e[1] == filename and e[0] == kind]


PNG_1X1 = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="
)


def images(*names):
    return [ImagePayload(data=PNG_1X1, mime_type="image/png", filename=name) for name in names]


class TestRunBatch:

    @pytest.mark.asyncio
    async def test_waves_of_concurrency(self, make_result):
        orchestrator = FakeOrchestrator(make_result)
        sink = RecordingSink()

        items = await run_batch(
            images("1.png", "2.png", "3.png", "4.png", "5.png"),
            concurrency=2,
            max_retries=0,
            sink=sink,
            orchestrator=orchestrator,
            retry_backoff=0,
        )

        assert [item.status for item in items] == [QueueStatus.SUCCESS] * 5
        assert orchestrator.max_active == 2
        assert sink.kinds("start", "success") == [
            "start", "start", "success", "success",
            "start", "start", "success", "success",
            "start", "success",
        ]
        assert [item.filename for item in sink.completed] == ["1.png", "2.png", "3.png", "4.png", "5.png"]

    @pytest.mark.asyncio
    async def test_items_keep_input_order(self, make_result):
        items = await run_batch(
            images("a.png", "b.png", "c.png"),
            concurrency=3,
            orchestrator=FakeOrchestrator(make_result),
            retry_backoff=0,
        )
        assert [item.filename for item in items] == ["a.png", "b.png", "c.png"]
        assert all(item.progress == 100 for item in items)
        assert all(item.error is None for item in items)

    @pytest.mark.asyncio
    async def test_success_progress_sequence(self, make_result):
        sink = RecordingSink()
        await run_batch(
            images("a.png"), orchestrator=FakeOrchestrator(make_result), sink=sink, retry_backoff=0
        )
        progress = [e[2] for e in sink.of("a.png", "progress")]
        assert progress == [20, 40, 80, 100]

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, make_result):
        orchestrator = FakeOrchestrator(
            make_result, script={"bad.png": [ProviderHTTPError(message="Upstream error", provider="alibaba")]}
        )
        sink = RecordingSink()

        items = await run_batch(
            images("bad.png"),
            max_retries=1,
            sink=sink,
            orchestrator=orchestrator,
            retry_backoff=0,
        )
        item = items[0]

        assert item.status == QueueStatus.FAILED
        assert item.retry_count == 1
        assert item.progress == 0
        assert item.results is None
        assert item.error == "Upstream error"
        assert isinstance(item.exception, ExhaustedRetriesError)
        assert item.exception.attempts == 2
        assert orchestrator.calls == ["bad.png", "bad.png"]
        assert len(sink.of("bad.png", "error")) == 1
        assert len(sink.of("bad.png", "start")) == 2

    @pytest.mark.asyncio
    async def test_success_after_retry(self, make_result):
        orchestrator = FakeOrchestrator(
            make_result, script={"flaky.png": [ProviderTimeoutError(provider="alibaba"), None]}
        )
        items = await run_batch(
            images("flaky.png"), max_retries=2, orchestrator=orchestrator, retry_backoff=0
        )
        assert items[0].status == QueueStatus.SUCCESS
        assert items[0].retry_count == 1
        assert items[0].error is None
        assert items[0].provider == ProviderName.ALIBABA

    @pytest.mark.asyncio
    async def test_oversized_image_is_not_sent(self, make_result):
        orchestrator = FakeOrchestrator(make_result)
        sink = RecordingSink()
        blank = ImagePayload(data=b"\x00" * (10 * 1024 * 1024 + 1), mime_type="image/png", filename="blank.png")

        items = await run_batch(
            [blank] + images("ok.png"),
            max_retries=3,
            sink=sink,
            orchestrator=orchestrator,
            retry_backoff=0,
        )

        assert items[0].status == QueueStatus.FAILED
        assert items[0].retry_count == 0
        assert items[0].error == "Image file is too large. Maximum size is 10MB."
        assert isinstance(items[0].exception, ValidationError)
        assert items[1].status == QueueStatus.SUCCESS
        assert orchestrator.calls == ["ok.png"]
        assert len(sink.of("blank.png", "error")) == 1

    @pytest.mark.asyncio
    async def test_unsupported_format_is_not_sent(self, make_result, sample_images):
        orchestrator = FakeOrchestrator(make_result)
        pdf = ImagePayload(data=sample_images["application/pdf"], mime_type="application/pdf", filename="scan.pdf")
        items = await run_batch([pdf], orchestrator=orchestrator, retry_backoff=0)
        assert items[0].status == QueueStatus.FAILED
        assert orchestrator.calls == []

    @pytest.mark.asyncio
    async def test_mislabeled_pdf_is_not_sent(self, make_result, sample_images):
        orchestrator = FakeOrchestrator(make_result)
        pdf = ImagePayload(data=sample_images["application/pdf"], mime_type="image/png", filename="scan.png")

        items = await run_batch([pdf], max_retries=3, orchestrator=orchestrator, retry_backoff=0)

        assert items[0].status == QueueStatus.FAILED
        assert items[0].retry_count == 0
        assert items[0].error == "Unsupported image format. Upload JPG, PNG, GIF or WebP."
        assert isinstance(items[0].exception, ValidationError)
        assert orchestrator.calls == []

    @pytest.mark.asyncio
    async def test_failing_sink_does_not_break_batch(self, make_result):
        class BrokenSink(BatchEventSink):
            def on_item_progress(self, item, progress):
                raise RuntimeError("ui gone")

        items = await run_batch(
            images("a.png"), sink=BrokenSink(), orchestrator=FakeOrchestrator(make_result), retry_backoff=0
        )
        assert items[0].status == QueueStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_others(self, make_result):
        orchestrator = FakeOrchestrator(make_result, script={"2.png": [ProviderHTTPError()]})
        items = await run_batch(
            images("1.png", "2.png", "3.png"),
            concurrency=2,
            max_retries=0,
            orchestrator=orchestrator,
            retry_backoff=0,
        )
        assert [item.status for item in items] == [
            QueueStatus.SUCCESS, QueueStatus.FAILED, QueueStatus.SUCCESS,
        ]

    @pytest.mark.asyncio
    async def test_empty_batch(self, make_result):
        sink = RecordingSink()
        items = await run_batch([], sink=sink, orchestrator=FakeOrchestrator(make_result))
        assert items == []
        assert sink.completed == []


class TestRetryImage:

    @pytest.mark.asyncio
    async def test_manual_retry_resets_state(self, make_result):
        orchestrator = FakeOrchestrator(
            make_result, script={"page.png": [ProviderHTTPError(), ProviderHTTPError(), None]}
        )
        queue = BatchQueue(orchestrator=orchestrator, max_retries=1, retry_backoff=0)
        item = ImageQueueItem(image=images("page.png")[0])

        await queue.run([item])
        assert item.status == QueueStatus.FAILED
        assert item.retry_count == 1

        await queue.retry_image(item)
        assert item.status == QueueStatus.SUCCESS
        assert item.retry_count == 0
        assert item.error is None
        assert item.results[0].content == "question of page.png"

    @pytest.mark.asyncio
    async def test_retry_image_function(self, make_result):
        item = ImageQueueItem(image=images("page.png")[0], status=QueueStatus.FAILED, error="old")
        sink = RecordingSink()
        await retry_image(
            item, sink=sink, provider="gemini", orchestrator=FakeOrchestrator(make_result), retry_backoff=0
        )
        assert item.status == QueueStatus.SUCCESS
        assert item.provider == ProviderName.GEMINI
        assert sink.of("page.png", "start") == [("start", "page.png")]

    def test_item_ids_are_unique(self):
        a, b = (ImageQueueItem(image=img) for img in images("a.png", "b.png"))
        assert a.id != b.id
        assert a.status == QueueStatus.PENDING
        assert a.progress == 0
