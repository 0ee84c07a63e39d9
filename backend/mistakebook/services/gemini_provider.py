"""
MistakeBook Backend — Google Gemini Provider
=============================================

What:  Tertiary recognition backend: Gemini vision through the
       google-generativeai SDK.
How:   The image goes inline as bytes next to the JSON prompt; the model is
       asked for application/json output and the text is run through the
       normalizer like DashScope's.
Who:   Second link of the "alibaba" chain and first link of the "gemini"
       chain.
When:  Only after the preferred provider failed, or when the user picks it.

SDK notes:
    genai.configure() sets the API key globally for the process, so it runs
    once in __init__. The GenerativeModel object holds no connection and is
    reused for every call.
"""

import asyncio
import logging
from typing import List, Optional

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions

from mistakebook.config import settings
from mistakebook.exceptions import (
    ProviderAuthError,
    ProviderHTTPError,
    ProviderParseError,
    ProviderTimeoutError,
)
from mistakebook.schemas.recognition import ProviderName, RecognitionResult
from mistakebook.services.image_service import ImagePayload
from mistakebook.services.provider_base import QUESTION_PROMPT, RecognitionProvider

logger = logging.getLogger(__name__)


SYSTEM_INSTRUCTION = """你是一个专业的题目识别助手。请仔细分析图片中的题目，并按照指定的JSON格式返回结果。

要求：
1. 准确识别题目的完整内容，包括公式和特殊符号
2. 根据题目内容判断学科，必须是以下之一：math（数学）、chinese（语文）、english（英语）、physics（物理）、chemistry（化学）、biology（生物）、history（历史）、geography（地理）、politics（政治）
3. 分析知识点分类（如代数、几何、文言文、阅读理解等）
4. 评估难度级别：easy（简单）、medium（中等）、hard（困难）
5. 如果图片包含答案或解析，请一并提取
6. confidence 表示识别的置信度（0-1之间）
7. 如果图片中有多道题目，请全部识别并返回数组

请严格按照JSON Schema返回结果。"""

GENERATION_CONFIG = {
    "temperature": 0.1,
    "top_p": 0.9,
    "response_mime_type": "application/json",
}


class GeminiProvider(RecognitionProvider):
    """
    Google Gemini adapter.

    Error translation:
        asyncio / DeadlineExceeded     → ProviderTimeoutError
        Unauthenticated / Forbidden    → ProviderAuthError
        other GoogleAPICallError       → ProviderHTTPError (with HTTP code)
        blocked or missing text        → ProviderParseError
    """

    name = ProviderName.GEMINI

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None, **kwargs):
        super().__init__(**kwargs)
        self.api_key = settings.gemini_api_key if api_key is None else api_key
        self.model_name = model or settings.gemini_model
        self.default_confidence = settings.gemini_default_confidence

        if self.api_key:
            genai.configure(api_key=self.api_key)

        self.model = genai.GenerativeModel(
            self.model_name,
            system_instruction=SYSTEM_INSTRUCTION,
            generation_config=GENERATION_CONFIG,
        )

        logger.info("GeminiProvider initialized with model=%s", self.model_name)

    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def _recognize(self, image: ImagePayload, call_id: str) -> List[RecognitionResult]:
        provider = self.name.value
        try:
            response = await asyncio.wait_for(
                self.model.generate_content_async(
                    [{"mime_type": image.mime_type, "data": image.data}, QUESTION_PROMPT],
                    request_options={"timeout": self.timeout},
                ),
                timeout=self.timeout,
            )
        except (asyncio.TimeoutError, google_exceptions.DeadlineExceeded) as e:
            raise ProviderTimeoutError(
                message="Recognition service 'gemini' timed out, please retry.",
                provider=provider,
                context={"call_id": call_id, "timeout": self.timeout},
            ) from e
        except (google_exceptions.Unauthenticated, google_exceptions.PermissionDenied) as e:
            raise ProviderAuthError(
                message="Recognition service 'gemini' rejected the API key.",
                provider=provider,
                context={"call_id": call_id},
            ) from e
        except google_exceptions.GoogleAPICallError as e:
            raise ProviderHTTPError(
                message=f"Gemini error: {e.message}",
                provider=provider,
                status_code=e.code,
                context={"call_id": call_id},
            ) from e

        # .text raises ValueError when the candidate was blocked by safety filters
        try:
            text = response.text
        except ValueError as e:
            raise ProviderParseError(
                message="The image was blocked by the Gemini safety filter.",
                provider=provider,
                context={"call_id": call_id},
            ) from e

        return self.results_from_text(text, call_id)
