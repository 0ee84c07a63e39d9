"""
MistakeBook Backend — Recognition Provider Interface
=====================================================

What:  Abstract base class shared by the three recognition backends, plus
       the per-provider circuit breaker.
How:   Concrete adapters implement `is_configured()` and `_recognize()`.
       The public `recognize()` wraps that call with the credential check,
       the circuit breaker, timing logs, error translation and a final
       re-validation of every result through the normalizer.
Who:   DashScopeProvider, BaiduOCRProvider, GeminiProvider; called by the
       RecognitionOrchestrator.

Contract:
    recognize(image) returns a non-empty list of valid RecognitionResult or
    raises a ProviderError subclass. Nothing else escapes.
"""

import logging
import time
import uuid
from abc import ABC, abstractmethod
from typing import List, Optional

import httpx

from mistakebook.config import settings
from mistakebook.exceptions import (
    CircuitBreakerOpenError,
    EmptyResultError,
    ProviderAuthError,
    ProviderError,
    ProviderHTTPError,
    ProviderParseError,
    ProviderTimeoutError,
)
from mistakebook.schemas.common import ProviderHealth
from mistakebook.schemas.recognition import ProviderName, RecognitionResult
from mistakebook.services.image_service import ImagePayload
from mistakebook.services.normalizer import extract_json_array, normalize, normalize_all

logger = logging.getLogger(__name__)


# Shared by both multimodal backends
QUESTION_PROMPT = """你是一个专业的题目识别助手。请仔细分析这张图片中的题目，并按照以下JSON格式返回结果（可以包含多道题目）：

[
  {
    "content": "题目内容（完整的题干）",
    "subject": "学科（math/chinese/english/physics/chemistry/biology/history/geography/politics）",
    "category": "知识点分类（例如：代数/几何/文言文/阅读理解等）",
    "difficulty": "难度（easy/medium/hard）",
    "answer": "正确答案",
    "explanation": "答案解析（可选）",
    "confidence": 0.95
  }
]

要求：
1. 准确识别题目的完整内容
2. 根据题目内容判断学科，必须是上述9个学科之一
3. 分析知识点分类
4. 评估难度级别
5. 如果图片包含答案或解析，请一并提取
6. confidence 表示识别的置信度（0-1之间）
7. 如果图片中有多道题目，请全部识别并返回数组

请直接返回JSON数组，不要有其他内容。"""


# ══════════════════════════════════════════════════════════════════════════
# Circuit Breaker Implementation
# ══════════════════════════════════════════════════════════════════════════

class CircuitBreaker:
    """
    Circuit breaker guarding one recognition backend.

    State Machine:
        CLOSED (normal operation)
            → On failure: increment failure_count
            → When failure_count >= threshold: transition to OPEN

        OPEN (rejecting all requests)
            → All calls raise CircuitBreakerOpenError immediately
            → After recovery_timeout seconds: transition to HALF_OPEN

        HALF_OPEN (testing recovery)
            → Allow ONE request through
            → On success: transition to CLOSED (reset failure_count)
            → On failure: transition back to OPEN (reset timer)

    Each provider owns its own breaker, so a DashScope outage does not stop
    requests from reaching Gemini or Baidu.

    Not thread-safe; all callers run on the same event loop.
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(self, provider: str, failure_threshold: int = 5, recovery_timeout: int = 60):
        self.provider = provider
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.failure_count = 0
        self.state = self.CLOSED
        self.last_failure_time: Optional[float] = None

    def _elapsed(self) -> float:
        return time.time() - (self.last_failure_time or 0)

    @property
    def is_rejecting(self) -> bool:
        """True while OPEN and still inside the recovery window."""
        return self.state == self.OPEN and self._elapsed() < self.recovery_timeout

    def can_execute(self) -> bool:
        """
        Check if a request is allowed through.

        Raises:
            CircuitBreakerOpenError if OPEN and the recovery timeout hasn't elapsed.
        """
        if self.state == self.CLOSED:
            return True

        if self.state == self.OPEN:
            elapsed = self._elapsed()
            if elapsed >= self.recovery_timeout:
                logger.info(
                    "Circuit breaker for %s transitioning to HALF_OPEN after %.1fs",
                    self.provider,
                    elapsed,
                )
                self.state = self.HALF_OPEN
                return True
            remaining = max(int(self.recovery_timeout - elapsed), 1)
            raise CircuitBreakerOpenError(recovery_time=remaining, provider=self.provider)

        return True

    def record_success(self) -> None:
        if self.state == self.HALF_OPEN:
            logger.info("Circuit breaker for %s transitioning to CLOSED (service recovered)", self.provider)
        self.failure_count = 0
        self.state = self.CLOSED
        self.last_failure_time = None

    def record_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = time.time()

        if self.state == self.HALF_OPEN:
            logger.warning("Circuit breaker for %s returning to OPEN (test request failed)", self.provider)
            self.state = self.OPEN
        elif self.failure_count >= self.failure_threshold:
            logger.warning(
                "Circuit breaker for %s OPENING after %d consecutive failures",
                self.provider,
                self.failure_count,
            )
            self.state = self.OPEN


# ══════════════════════════════════════════════════════════════════════════
# Provider Interface
# ══════════════════════════════════════════════════════════════════════════

class RecognitionProvider(ABC):
    """
    Abstract interface for one question-recognition backend.

    Subclasses set `name` and `default_confidence` and implement:
        - is_configured(): credentials present (no network)
        - _recognize():    one backend round trip, returning results or
                           raising a ProviderError subclass

    Implementations:
        - DashScopeProvider: Alibaba qwen-vl (primary)
        - BaiduOCRProvider:  Baidu accurate_basic OCR + keyword heuristics
        - GeminiProvider:    Google Gemini (tertiary)
    """

    name: ProviderName
    default_confidence: float = 0.85

    def __init__(
        self,
        timeout: Optional[float] = None,
        failure_threshold: Optional[int] = None,
        recovery_timeout: Optional[int] = None,
    ):
        self.timeout = timeout or settings.provider_timeout
        self.circuit_breaker = CircuitBreaker(
            provider=self.name.value,
            failure_threshold=failure_threshold or settings.cb_failure_threshold,
            recovery_timeout=recovery_timeout or settings.cb_recovery_timeout,
        )

    @abstractmethod
    def is_configured(self) -> bool:
        """Whether the credentials this backend needs are present."""

    @abstractmethod
    async def _recognize(self, image: ImagePayload, call_id: str) -> List[RecognitionResult]:
        """Run one backend call. Must raise ProviderError subclasses only."""

    async def recognize(self, image: ImagePayload) -> List[RecognitionResult]:
        """
        Recognize the questions in one image.

        Flow:
            1. Credentials check → ProviderAuthError (no network call)
            2. Circuit breaker check → CircuitBreakerOpenError
            3. Backend call via _recognize()
            4. Re-validate results; empty list → EmptyResultError
            5. Record success/failure in the circuit breaker

        Raises:
            ProviderError subclasses only. Unexpected exceptions are logged
            and wrapped in a plain ProviderError.
        """
        call_id = uuid.uuid4().hex[:8]
        provider = self.name.value

        if not self.is_configured():
            raise ProviderAuthError(
                message=f"Recognition service '{provider}' is not configured.",
                provider=provider,
                context={"call_id": call_id},
            )

        self.circuit_breaker.can_execute()

        logger.info(
            "[%s] %s recognition started: %s (%s, %d bytes)",
            call_id, provider, image.filename, image.mime_type, image.size,
        )
        start_time = time.time()

        try:
            results = self._revalidate(await self._recognize(image, call_id))
            if not results:
                raise EmptyResultError(provider=provider, context={"call_id": call_id})
        except EmptyResultError:
            # The backend answered; there was just nothing on the photo
            self.circuit_breaker.record_success()
            logger.warning("[%s] %s recognized no questions", call_id, provider)
            raise
        except ProviderError as e:
            self.circuit_breaker.record_failure()
            logger.warning(
                "[%s] %s failed after %.0fms (%s): %s",
                call_id, provider, (time.time() - start_time) * 1000, e.kind, e.message,
            )
            raise
        except Exception as e:
            self.circuit_breaker.record_failure()
            logger.error("[%s] Unexpected %s error: %s", call_id, provider, str(e), exc_info=True)
            raise ProviderError(
                provider=provider,
                context={"call_id": call_id, "error_type": type(e).__name__},
            ) from e

        self.circuit_breaker.record_success()
        logger.info(
            "[%s] %s recognition completed in %.0fms, %d question(s)",
            call_id, provider, (time.time() - start_time) * 1000, len(results),
        )
        return results

    def _revalidate(self, results: Optional[List[RecognitionResult]]) -> List[RecognitionResult]:
        # Every result passes through the normalizer again before leaving
        return [
            normalize(result.model_dump(mode="json"), self.default_confidence)
            for result in results or []
        ]

    def results_from_text(self, text: str, call_id: str) -> List[RecognitionResult]:
        """
        Turn model output text into results.

        Raises:
            ProviderParseError: No JSON array recoverable from the text
            EmptyResultError:   The array was empty
        """
        items = extract_json_array(text)
        if items is None:
            raise ProviderParseError(
                message="The recognition service returned an unreadable answer, please retry.",
                provider=self.name.value,
                context={"call_id": call_id, "preview": (text or "")[:200]},
            )
        if not items:
            raise EmptyResultError(provider=self.name.value, context={"call_id": call_id})
        return normalize_all(items, self.default_confidence)

    async def health_check(self) -> ProviderHealth:
        """
        Configuration and circuit state. Spends no API quota.
        """
        configured = self.is_configured()
        return ProviderHealth(
            configured=configured,
            circuit=self.circuit_breaker.state,
            available=configured and not self.circuit_breaker.is_rejecting,
        )

    async def aclose(self) -> None:
        """Release network resources. Adapters without any keep the default."""


class HTTPRecognitionProvider(RecognitionProvider):
    """
    Base for adapters that talk to their backend over plain HTTP (httpx).

    The AsyncClient is created lazily and reused across calls. Tests inject
    their own client built on httpx.MockTransport.
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None, **kwargs):
        super().__init__(**kwargs)
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _post(self, url: str, call_id: str, **kwargs) -> httpx.Response:
        """
        POST with transport and status errors translated into ProviderErrors.

        Raises:
            ProviderTimeoutError: No answer within self.timeout
            ProviderAuthError:    HTTP 401 / 403
            ProviderHTTPError:    Any other non-2xx status or transport failure
        """
        provider = self.name.value
        try:
            response = await self.client.post(url, timeout=self.timeout, **kwargs)
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError(
                message=f"Recognition service '{provider}' timed out, please retry.",
                provider=provider,
                context={"call_id": call_id, "timeout": self.timeout},
            ) from e
        except httpx.HTTPError as e:
            raise ProviderHTTPError(
                message=f"Could not reach recognition service '{provider}'.",
                provider=provider,
                context={"call_id": call_id, "error_type": type(e).__name__},
            ) from e

        if response.status_code in (401, 403):
            raise ProviderAuthError(
                message=f"Recognition service '{provider}' rejected the credentials.",
                provider=provider,
                context={"call_id": call_id, "status_code": response.status_code},
            )
        if response.status_code >= 400:
            raise ProviderHTTPError(
                provider=provider,
                status_code=response.status_code,
                context={"call_id": call_id, "body": response.text[:300]},
            )
        return response

    def _json(self, response: httpx.Response, call_id: str) -> dict:
        try:
            body = response.json()
        except ValueError as e:
            raise ProviderParseError(
                message="The recognition service returned an unreadable answer, please retry.",
                provider=self.name.value,
                context={"call_id": call_id, "body": response.text[:300]},
            ) from e
        if not isinstance(body, dict):
            raise ProviderParseError(
                message="The recognition service returned an unreadable answer, please retry.",
                provider=self.name.value,
                context={"call_id": call_id},
            )
        return body
