"""
MistakeBook Backend — Result Normalizer
========================================

What:  Pure functions that turn loose backend output into RecognitionResult.
How:   `extract_json_array` recovers a JSON array from model text;
       `normalize` maps one raw object onto the canonical shape using a
       table of candidate keys per field, then applies defaults and
       range checks.
Who:   Shared by all three provider adapters.

Both functions are total: they never raise on bad input. A failed
extraction is reported as None and turned into ProviderParseError by the
caller.
"""

import json
import math
import re
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from mistakebook.schemas.recognition import Difficulty, RecognitionResult, Subject

# Shown instead of an empty question so the record stays editable by the user
CONTENT_PLACEHOLDER = "未识别到题目内容"
DEFAULT_CATEGORY = "其他"
DEFAULT_CONFIDENCE = 0.85

VALID_SUBJECTS = frozenset(s.value for s in Subject)
VALID_DIFFICULTIES = frozenset(d.value for d in Difficulty)

# Candidate source keys per target field, highest priority first.
# The first candidate holding a non-empty value wins.
FIELD_CANDIDATES: Dict[str, Tuple[str, ...]] = {
    "content": ("content", "question", "text"),
    "subject": ("subject",),
    "category": ("category", "knowledgePoint", "knowledge_point"),
    "difficulty": ("difficulty",),
    "answer": ("answer", "答案"),
    "explanation": ("explanation", "parse", "解析"),
    "confidence": ("confidence",),
}

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict)):
        return not value
    return False


def pick_field(raw: Mapping[str, Any], field: str) -> Any:
    """Return the first non-empty value among the candidate keys of `field`."""
    for key in FIELD_CANDIDATES[field]:
        value = raw.get(key)
        if not _is_empty(value):
            return value
    return None


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, (list, dict)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def _coerce_confidence(value: Any, default: float) -> float:
    # bool is an int subclass and must not count as a score
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    if math.isnan(value) or value < 0 or value > 1:
        return default
    return float(value)


def normalize(raw: Any, default_confidence: float = DEFAULT_CONFIDENCE) -> RecognitionResult:
    """
    Coerce one raw backend item into a valid RecognitionResult.

    Args:
        raw: Usually a dict parsed from model JSON. A bare string is taken
             as the question text; any other value behaves like {}.
        default_confidence: Provider-specific score used when the item has
             no confidence or one outside [0, 1].

    Returns:
        A RecognitionResult satisfying all field invariants. Never raises.
    """
    if isinstance(raw, str):
        raw = {"content": raw}
    elif not isinstance(raw, Mapping):
        raw = {}

    if isinstance(default_confidence, bool) or not isinstance(default_confidence, (int, float)) \
            or not 0 <= default_confidence <= 1:
        default_confidence = DEFAULT_CONFIDENCE

    content = _as_text(pick_field(raw, "content")) or CONTENT_PLACEHOLDER

    subject = _as_text(pick_field(raw, "subject"))
    subject = subject.lower() if subject else ""
    if subject not in VALID_SUBJECTS:
        subject = Subject.MATH.value

    difficulty = _as_text(pick_field(raw, "difficulty"))
    difficulty = difficulty.lower() if difficulty else ""
    if difficulty not in VALID_DIFFICULTIES:
        difficulty = Difficulty.MEDIUM.value

    category = _as_text(pick_field(raw, "category")) or DEFAULT_CATEGORY
    answer = _as_text(pick_field(raw, "answer")) or ""
    explanation = _as_text(pick_field(raw, "explanation")) or None

    return RecognitionResult(
        content=content,
        subject=Subject(subject),
        category=category,
        difficulty=Difficulty(difficulty),
        answer=answer,
        explanation=explanation,
        confidence=_coerce_confidence(raw.get("confidence"), float(default_confidence)),
    )


# ══════════════════════════════════════════════════════════════════════════
# JSON recovery
# ══════════════════════════════════════════════════════════════════════════

def _array_from_parsed(parsed: Any) -> Optional[List[Any]]:
    if isinstance(parsed, list):
        return parsed
    if isinstance(parsed, dict) and isinstance(parsed.get("questions"), list):
        return parsed["questions"]
    return None


def _parse_array(text: str) -> Optional[List[Any]]:
    try:
        parsed = json.loads(text)
    except (ValueError, TypeError):
        return None
    return _array_from_parsed(parsed)


def _bracket_spans(text: str) -> List[Tuple[int, int]]:
    """
    Spans of top-level [...] groups, in order of appearance.

    Brackets inside JSON string literals are ignored so that a question
    such as "解集为 [1, 2)" does not end the scan early.
    """
    spans: List[Tuple[int, int]] = []
    depth = 0
    start = -1
    in_string = False
    escaped = False
    for index, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"' and depth > 0:
            in_string = True
        elif char == "[":
            if depth == 0:
                start = index
            depth += 1
        elif char == "]" and depth > 0:
            depth -= 1
            if depth == 0:
                spans.append((start, index + 1))
    return spans


def extract_json_array(text: Any) -> Optional[List[Any]]:
    """
    Recover the question array from model output.

    Strategies, in order:
        1. Parse the whole string (bare array or {"questions": [...]})
        2. Parse the first fenced block (```json ... ``` or ``` ... ```)
        3. Parse the first top-level [...] group found by bracket matching

    Returns:
        The list of raw items, or None when every strategy fails.
    """
    if not isinstance(text, str):
        return None
    stripped = text.strip()
    if not stripped:
        return None

    result = _parse_array(stripped)
    if result is not None:
        return result

    fence = _FENCE_RE.search(stripped)
    if fence:
        result = _parse_array(fence.group(1))
        if result is not None:
            return result

    for start, end in _bracket_spans(stripped):
        result = _parse_array(stripped[start:end])
        if result is not None:
            return result

    return None


def normalize_all(
    items: Sequence[Any], default_confidence: float = DEFAULT_CONFIDENCE
) -> List[RecognitionResult]:
    return [normalize(item, default_confidence) for item in items]
