import re
from typing import Dict, List, Optional

from model.question import ParsedAnswer, QuestionInfo

SKIP_KEYWORDS = {"skip", "pass", "跳过", "忽略"}

_TOKEN_SPLIT_RE = re.compile(r"[\s,，;；、]+")
_TOKEN_STRIP_RE = re.compile(r"[\.。、]")


def split_answer_tokens(text: str) -> List[str]:
    return [t.strip() for t in _TOKEN_SPLIT_RE.split(text) if t.strip()]


def resolve_option_index(token: str, label_index: Dict[str, int], option_count: int) -> Optional[int]:
    """Label (case-insensitive), then letter A.., then 1-based number."""
    cleaned = _TOKEN_STRIP_RE.sub("", token).strip()
    if not cleaned:
        return None

    by_label = label_index.get(cleaned.lower())
    if by_label is not None:
        return by_label

    if len(cleaned) == 1 and cleaned.isascii() and cleaned.isalpha():
        idx = ord(cleaned.upper()) - ord("A")
        if 0 <= idx < option_count:
            return idx

    if cleaned.isdigit():
        idx = int(cleaned) - 1
        if 0 <= idx < option_count:
            return idx

    return None


def classify_answer(text: str, question: QuestionInfo) -> ParsedAnswer:
    trimmed = (text or "").strip()
    if not trimmed:
        return ParsedAnswer.unrecognized()

    lower = trimmed.lower()
    if lower in SKIP_KEYWORDS or trimmed.startswith("跳过"):
        return ParsedAnswer.skip()

    label_index: Dict[str, int] = {}
    for i, opt in enumerate(question.options):
        label_index.setdefault(opt.label.lower(), i)

    exact = label_index.get(lower)
    if exact is not None:
        return ParsedAnswer.selected([exact])

    tokens = split_answer_tokens(trimmed)
    matched: List[int] = []
    for token in tokens:
        idx = resolve_option_index(token, label_index, len(question.options))
        if idx is None:
            # anything we can't map is free text
            return ParsedAnswer.custom(trimmed)
        if idx not in matched:
            matched.append(idx)

    if not matched:
        return ParsedAnswer.custom(trimmed)

    if not question.multiple and (len(matched) != 1 or len(tokens) != 1):
        return ParsedAnswer.custom(trimmed)

    return ParsedAnswer.selected(matched)
