"""
MistakeBook Backend — Alibaba DashScope Provider
=================================================

What:  Primary recognition backend: qwen-vl on the DashScope
       multimodal-generation endpoint.
How:   One POST carrying the image as a data URL plus the JSON prompt.
       The answer text at output.choices[0].message.content is run
       through the normalizer.
Who:   First link of the fallback chain when the user picks "alibaba".

Response shapes:
    message.content arrives in one of three forms depending on the model
    version: a plain string, a list of {"text": ...} parts, or a single
    object with a "text" field. Anything else is a ProviderParseError.
"""

import logging
from typing import Any, List, Optional

import httpx

from mistakebook.config import settings
from mistakebook.exceptions import ProviderHTTPError, ProviderParseError
from mistakebook.schemas.recognition import ProviderName, RecognitionResult
from mistakebook.services.image_service import ImagePayload, to_data_url
from mistakebook.services.provider_base import HTTPRecognitionProvider, QUESTION_PROMPT

logger = logging.getLogger(__name__)


def extract_message_text(content: Any) -> Optional[str]:
    """
    Flatten DashScope message content into one string.

    Returns None when the shape is not one of the three known forms.
    """
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict):
                parts.append(str(part.get("text") or ""))
        return "".join(parts)
    if isinstance(content, dict) and content.get("text"):
        return str(content["text"])
    return None


class DashScopeProvider(HTTPRecognitionProvider):
    """Alibaba DashScope qwen-vl adapter."""

    name = ProviderName.ALIBABA

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        **kwargs,
    ):
        super().__init__(client=client, **kwargs)
        self.api_key = settings.dashscope_api_key if api_key is None else api_key
        self.model = model or settings.dashscope_model
        self.url = url or settings.dashscope_url
        self.default_confidence = settings.dashscope_default_confidence

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def build_payload(self, image: ImagePayload) -> dict:
        return {
            "model": self.model,
            "input": {
                "messages": [
                    {
                        "role": "user",
                        "content": [
                            {"image": to_data_url(image)},
                            {"text": QUESTION_PROMPT},
                        ],
                    }
                ]
            },
            # Low temperature keeps the JSON shape stable
            "parameters": {"temperature": 0.1, "top_p": 0.9},
        }

    async def _recognize(self, image: ImagePayload, call_id: str) -> List[RecognitionResult]:
        response = await self._post(
            self.url,
            call_id,
            json=self.build_payload(image),
            headers={"Authorization": f"Bearer {self.api_key}"},
        )
        body = self._json(response, call_id)

        # DashScope reports some failures in a 200 body with a "code" field
        if body.get("code") and not body.get("output"):
            raise ProviderHTTPError(
                message=f"DashScope error: {body.get('message') or body['code']}",
                provider=self.name.value,
                status_code=response.status_code,
                context={"call_id": call_id, "code": body["code"]},
            )

        try:
            content = body["output"]["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            content = None

        text = extract_message_text(content)
        if text is None:
            raise ProviderParseError(
                message="The recognition service returned an unsupported answer format.",
                provider=self.name.value,
                context={"call_id": call_id, "content_type": type(content).__name__},
            )

        usage = body.get("usage") or {}
        logger.debug("[%s] DashScope usage: %s total tokens", call_id, usage.get("total_tokens"))

        return self.results_from_text(text, call_id)
