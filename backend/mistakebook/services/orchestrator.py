"""
MistakeBook Backend — Recognition Orchestrator
===============================================

What:  Runs one image through the preferred provider and, when that fails,
       through its fallback chain.
How:   Strictly sequential: one provider in flight per image at any time.
       Any ProviderError or an empty result moves on to the next link.
Who:   Called by the recognize routes and by the batch queue.

Fallback chains:
    alibaba → gemini → baidu
    gemini  → baidu
    baidu   (terminal, its error is reported as-is)

    Only the multimodal backends fall through. Picking "baidu" is an
    explicit user choice and is never silently replaced by an LLM.

Error surfacing:
    When every link fails, the error of the FIRST attempt is raised. The
    later errors are logged only.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional

from mistakebook.exceptions import EmptyResultError, ProviderError
from mistakebook.schemas.recognition import ProviderName, RecognitionResult
from mistakebook.schemas.common import ProviderHealth
from mistakebook.services.baidu_provider import BaiduOCRProvider
from mistakebook.services.dashscope_provider import DashScopeProvider
from mistakebook.services.gemini_provider import GeminiProvider
from mistakebook.services.image_service import ImagePayload
from mistakebook.services.provider_base import RecognitionProvider

logger = logging.getLogger(__name__)

FALLBACK_CHAINS: Dict[ProviderName, List[ProviderName]] = {
    ProviderName.ALIBABA: [ProviderName.ALIBABA, ProviderName.GEMINI, ProviderName.BAIDU],
    ProviderName.GEMINI: [ProviderName.GEMINI, ProviderName.BAIDU],
    ProviderName.BAIDU: [ProviderName.BAIDU],
}


@dataclass
class RecognitionOutcome:
    """Results plus the provider that produced them."""
    results: List[RecognitionResult]
    provider: ProviderName
    attempts: List[ProviderName] = field(default_factory=list)

    @property
    def used_fallback(self) -> bool:
        return len(self.attempts) > 1


class RecognitionOrchestrator:
    """
    Selects a provider and walks the fallback chain.

    Args:
        providers: One adapter per ProviderName. Tests pass stubs here.
    """

    def __init__(self, providers: Mapping[ProviderName, RecognitionProvider]):
        missing = set(ProviderName) - set(providers)
        if missing:
            raise ValueError(f"Missing recognition providers: {sorted(p.value for p in missing)}")
        self.providers: Dict[ProviderName, RecognitionProvider] = dict(providers)

    @classmethod
    def from_settings(cls) -> "RecognitionOrchestrator":
        return cls({
            ProviderName.ALIBABA: DashScopeProvider(),
            ProviderName.BAIDU: BaiduOCRProvider(),
            ProviderName.GEMINI: GeminiProvider(),
        })

    async def recognize(
        self, image: ImagePayload, preferred: ProviderName = ProviderName.ALIBABA
    ) -> RecognitionOutcome:
        """
        Recognize one image, falling back along the chain of `preferred`.

        Returns:
            RecognitionOutcome with a non-empty result list.

        Raises:
            ProviderError: The first attempt's error when every link failed.
        """
        preferred = ProviderName(preferred)
        chain = FALLBACK_CHAINS[preferred]
        first_error: Optional[ProviderError] = None
        attempts: List[ProviderName] = []

        for name in chain:
            attempts.append(name)
            try:
                results = await self.providers[name].recognize(image)
                if not results:
                    raise EmptyResultError(provider=name.value)
            except ProviderError as e:
                if first_error is None:
                    first_error = e
                next_index = len(attempts)
                if next_index < len(chain):
                    logger.warning(
                        "Provider %s failed (%s), falling back to %s",
                        name.value, e.kind, chain[next_index].value,
                    )
                else:
                    logger.warning("Provider %s failed (%s), no fallback left", name.value, e.kind)
                continue

            if len(attempts) > 1:
                logger.info(
                    "Recognition of %s succeeded with fallback provider %s (chain: %s)",
                    image.filename, name.value, " → ".join(a.value for a in attempts),
                )
            return RecognitionOutcome(results=results, provider=name, attempts=attempts)

        raise first_error

    async def recognize_with_fallback(
        self, image: ImagePayload, preferred: ProviderName = ProviderName.ALIBABA
    ) -> List[RecognitionResult]:
        outcome = await self.recognize(image, preferred)
        return outcome.results

    async def health(self) -> Dict[str, ProviderHealth]:
        return {
            name.value: await provider.health_check()
            for name, provider in self.providers.items()
        }

    async def aclose(self) -> None:
        for provider in self.providers.values():
            await provider.aclose()


# ── Singleton Instance ────────────────────────────────────────────────────
# Holds the circuit breakers and the Baidu token cache, which must be
# shared by every request.
orchestrator = RecognitionOrchestrator.from_settings()
