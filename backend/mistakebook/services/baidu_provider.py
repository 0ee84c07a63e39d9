"""
MistakeBook Backend — Baidu OCR Provider
=========================================

What:  Secondary recognition backend: Baidu accurate_basic OCR plus local
       keyword heuristics that turn plain text into questions.
How:   1. Exchange client credentials for an access token (cached by
          BaiduTokenCache, refreshed `baidu_token_safety_margin` seconds
          before it expires)
       2. POST the base64 image as a form field
       3. Join words_result[].words with newlines
       4. Split into questions (blank lines, then leading enumerators)
       5. Per question: keyword-scored subject and difficulty, first
          category of the subject, explicit 答案:/解析: regions
Who:   Terminal provider of the orchestrator: when the user picks "baidu"
       its failure is reported as-is, and it is the last link of the
       multimodal chains.

Why a fixed confidence:
    OCR reports no per-question score and subject/difficulty are guessed,
    so every result gets `baidu_confidence` (below the multimodal defaults).

The answer/explanation regexes are a heuristic. "解析" inside a sentence
is picked up like a section header; that is the established behavior.
"""

import asyncio
import logging
import re
import time
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

import httpx

from mistakebook.config import settings
from mistakebook.exceptions import EmptyResultError, ProviderAuthError, ProviderHTTPError
from mistakebook.schemas.recognition import Difficulty, ProviderName, RecognitionResult, Subject
from mistakebook.services.image_service import ImagePayload, to_base64
from mistakebook.services.normalizer import normalize
from mistakebook.services.provider_base import HTTPRecognitionProvider

logger = logging.getLogger(__name__)

# Baidu error codes meaning the access token is invalid or expired
TOKEN_ERROR_CODES = {110, 111}

# ── Keyword Tables ────────────────────────────────────────────────────────
# Order matters: on a tie the earlier subject wins, and math is the default.
SUBJECT_KEYWORDS: Dict[Subject, Tuple[str, ...]] = {
    Subject.MATH: ("函数", "方程", "几何", "三角", "数列", "导数", "积分", "概率", "统计",
                   "代数", "计算", "求证", "证明"),
    Subject.CHINESE: ("古诗", "文言文", "阅读", "作文", "成语", "修辞", "作者", "作品", "诗词", "散文"),
    Subject.ENGLISH: ("grammar", "vocabulary", "reading", "translation", "choose", "fill in",
                      "complete", "select"),
    Subject.PHYSICS: ("力", "速度", "加速度", "电流", "电压", "电阻", "光", "热", "能量", "磁场", "电场"),
    Subject.CHEMISTRY: ("化学", "元素", "分子", "原子", "反应", "方程式", "酸碱", "氧化", "化合"),
    Subject.BIOLOGY: ("细胞", "基因", "DNA", "生物", "植物", "动物", "遗传", "进化", "生态"),
    Subject.HISTORY: ("历史", "朝代", "皇帝", "战争", "革命", "条约", "年代", "事件"),
    Subject.GEOGRAPHY: ("地理", "气候", "地形", "河流", "山脉", "国家", "城市", "经纬度"),
    Subject.POLITICS: ("政治", "经济", "哲学", "文化", "社会", "制度", "政策", "马克思主义"),
}

HARD_KEYWORDS = ("证明", "推导", "综合", "应用", "拓展", "探究", "分析", "论述")
EASY_KEYWORDS = ("计算", "选择", "填空", "直接", "简单", "写出", "列举")

# The first entry is used as the category of an OCR result
CATEGORIES: Dict[Subject, Tuple[str, ...]] = {
    Subject.MATH: ("代数", "几何", "函数", "概率统计", "数列", "三角函数", "解析几何"),
    Subject.CHINESE: ("阅读理解", "作文", "古诗文", "语言文字运用", "文学常识"),
    Subject.ENGLISH: ("阅读理解", "完形填空", "语法", "写作", "听力", "词汇"),
    Subject.PHYSICS: ("力学", "电磁学", "热学", "光学", "原子物理"),
    Subject.CHEMISTRY: ("无机化学", "有机化学", "物理化学", "分析化学"),
    Subject.BIOLOGY: ("细胞生物学", "遗传学", "生态学", "生理学"),
    Subject.HISTORY: ("中国古代史", "中国近现代史", "世界史"),
    Subject.GEOGRAPHY: ("自然地理", "人文地理", "区域地理"),
    Subject.POLITICS: ("哲学", "经济学", "政治学", "文化生活"),
}

_BLANK_LINES_RE = re.compile(r"\n{2,}")
_ENUMERATOR_RE = re.compile(r"(?:^|\n)(?:\d+[.、]|\(\d+\)|[①②③④⑤⑥⑦⑧⑨⑩])")
_ANSWER_RE = re.compile(r"(?:答案[:：]|正确答案[:：])\s*(.+?)(?:\n|$)")
_EXPLANATION_RE = re.compile(r"(?:解析[:：]|解答[:：])\s*(.+?)(?:\n\n|$)", re.DOTALL)


# ══════════════════════════════════════════════════════════════════════════
# Text Heuristics
# ══════════════════════════════════════════════════════════════════════════

def split_questions(text: str) -> List[str]:
    """
    Split OCR text into question candidates.

    Blank-line runs separate questions. When there is only one block, the
    text is re-split on leading enumerators (1. / 1、 / (1) / ①) and the
    pieces are renumbered "1. ", "2. ", ...
    """
    parts = [part for part in _BLANK_LINES_RE.split(text) if part.strip()]

    if len(parts) == 1:
        pieces = [piece for piece in _ENUMERATOR_RE.split(text) if piece.strip()]
        if len(pieces) > 1:
            return [f"{i + 1}. {piece.strip()}" for i, piece in enumerate(pieces)]

    return parts if parts else [text]


def infer_subject(text: str) -> Subject:
    """Subject with the most keyword hits (case-insensitive), math on no hit."""
    lower = text.lower()
    best, best_score = Subject.MATH, 0
    for subject, keywords in SUBJECT_KEYWORDS.items():
        score = sum(1 for keyword in keywords if keyword.lower() in lower)
        if score > best_score:
            best, best_score = subject, score
    return best


def infer_difficulty(text: str) -> Difficulty:
    hard = sum(1 for keyword in HARD_KEYWORDS if keyword in text)
    easy = sum(1 for keyword in EASY_KEYWORDS if keyword in text)
    if hard > easy:
        return Difficulty.HARD
    if easy > hard:
        return Difficulty.EASY
    return Difficulty.MEDIUM


def default_category(subject: Subject) -> str:
    categories = CATEGORIES.get(subject)
    return categories[0] if categories else "其他"


def extract_answer_and_explanation(text: str) -> Tuple[str, str, Optional[str]]:
    """
    Pull explicit answer / explanation regions out of one question.

    Returns:
        (content, answer, explanation). Content is the text before the
        answer marker when one is found; answer is "" when none is found.
    """
    content, answer, explanation = text, "", None

    answer_match = _ANSWER_RE.search(text)
    if answer_match:
        answer = answer_match.group(1).strip()
        content = text[:answer_match.start()].strip()

    explanation_match = _EXPLANATION_RE.search(text)
    if explanation_match:
        explanation = explanation_match.group(1).strip() or None

    return content, answer, explanation


def build_results(full_text: str, confidence: float) -> List[RecognitionResult]:
    """Apply the text heuristics to the joined OCR output."""
    results = []
    for question in split_questions(full_text):
        question = question.strip()
        subject = infer_subject(question)
        content, answer, explanation = extract_answer_and_explanation(question)
        results.append(normalize(
            {
                "content": content,
                "subject": subject.value,
                "category": default_category(subject),
                "difficulty": infer_difficulty(question).value,
                "answer": answer,
                "explanation": explanation,
                "confidence": confidence,
            },
            confidence,
        ))
    return results


# ══════════════════════════════════════════════════════════════════════════
# Token Cache
# ══════════════════════════════════════════════════════════════════════════

class BaiduTokenCache:
    """
    Access token cache owned by one BaiduOCRProvider.

    The token is considered expired `safety_margin` seconds before Baidu's
    reported expiry. Concurrent callers that find it expired queue on a
    lock; the first one refreshes and the rest reuse its token, so an
    expired token is never served and at most one exchange runs at a time.
    """

    def __init__(self, safety_margin: int = 300, clock: Callable[[], float] = time.monotonic):
        self.safety_margin = safety_margin
        self._clock = clock
        self.token: Optional[str] = None
        self.expires_at = 0.0
        self._lock = asyncio.Lock()

    def is_valid(self) -> bool:
        return self.token is not None and self._clock() < self.expires_at

    def store(self, token: str, expires_in: int) -> None:
        self.token = token
        self.expires_at = self._clock() + max(expires_in - self.safety_margin, 0)

    def invalidate(self) -> None:
        self.token = None
        self.expires_at = 0.0

    async def refresh_if_expired(self, fetch: Callable[[], Awaitable[Tuple[str, int]]]) -> str:
        """
        Return a valid token, calling `fetch` only if the cached one expired.

        Args:
            fetch: Coroutine function returning (access_token, expires_in).
        """
        if self.is_valid():
            return self.token
        async with self._lock:
            if self.is_valid():
                return self.token
            token, expires_in = await fetch()
            self.store(token, expires_in)
            logger.info("Baidu access token refreshed, valid for %ds", expires_in)
            return token


# ══════════════════════════════════════════════════════════════════════════
# Baidu OCR Provider
# ══════════════════════════════════════════════════════════════════════════

class BaiduOCRProvider(HTTPRecognitionProvider):
    """Baidu accurate_basic OCR adapter."""

    name = ProviderName.BAIDU

    def __init__(
        self,
        api_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        token_cache: Optional[BaiduTokenCache] = None,
        client: Optional[httpx.AsyncClient] = None,
        **kwargs,
    ):
        super().__init__(client=client, **kwargs)
        self.api_key = settings.baidu_api_key if api_key is None else api_key
        self.secret_key = settings.baidu_secret_key if secret_key is None else secret_key
        self.token_url = settings.baidu_token_url
        self.ocr_url = settings.baidu_ocr_url
        self.default_confidence = settings.baidu_confidence
        self.token_cache = token_cache or BaiduTokenCache(settings.baidu_token_safety_margin)

    def is_configured(self) -> bool:
        return bool(self.api_key and self.secret_key)

    async def _fetch_token(self, call_id: str) -> Tuple[str, int]:
        response = await self._post(
            self.token_url,
            call_id,
            params={
                "grant_type": "client_credentials",
                "client_id": self.api_key,
                "client_secret": self.secret_key,
            },
        )
        body = self._json(response, call_id)
        token = body.get("access_token")
        if body.get("error") or not token:
            raise ProviderAuthError(
                message="Baidu OCR authorization failed. Check BAIDU_API_KEY / BAIDU_SECRET_KEY.",
                provider=self.name.value,
                context={"call_id": call_id, "error": body.get("error_description") or body.get("error")},
            )
        return token, int(body.get("expires_in") or 0)

    async def _recognize(self, image: ImagePayload, call_id: str) -> List[RecognitionResult]:
        token = await self.token_cache.refresh_if_expired(lambda: self._fetch_token(call_id))

        response = await self._post(
            self.ocr_url,
            call_id,
            params={"access_token": token},
            data={
                "image": to_base64(image),
                "language_type": "CHN_ENG",
                "detect_direction": "true",
                "paragraph": "true",
            },
        )
        body = self._json(response, call_id)

        error_code = body.get("error_code")
        if error_code:
            if error_code in TOKEN_ERROR_CODES:
                self.token_cache.invalidate()
                raise ProviderAuthError(
                    message="Baidu OCR access token was rejected, please retry.",
                    provider=self.name.value,
                    context={"call_id": call_id, "error_code": error_code},
                )
            raise ProviderHTTPError(
                message=f"Baidu OCR error: {body.get('error_msg') or error_code}",
                provider=self.name.value,
                status_code=response.status_code,
                context={"call_id": call_id, "error_code": error_code},
            )

        words = [
            str(item.get("words", ""))
            for item in body.get("words_result") or []
            if isinstance(item, dict)
        ]
        full_text = "\n".join(words)
        if not full_text.strip():
            raise EmptyResultError(provider=self.name.value, context={"call_id": call_id})

        logger.debug("[%s] Baidu OCR returned %d line(s)", call_id, len(words))
        return build_results(full_text, self.default_confidence)
