"""Deterministic pattern checks that let nodes skip the LLM."""
import re
from dataclasses import dataclass
from typing import Optional

# Explicit requests for a human agent
DIRECT_HANDOFF_PATTERNS = [
    re.compile(r"转(到)?人工(客服)?|人工客服|真人客服|请转接|找(人|人工)|联系(技术|工程师|人工)", re.IGNORECASE),
    re.compile(
        r"(human|real (person|agent)|live agent|talk to (a )?(person|representative)|escalate|supervisor|manager)",
        re.IGNORECASE,
    ),
]

# Strong negative sentiment, abuse or complaints
ABUSIVE_PATTERNS = [
    re.compile(r"垃圾|滚|废物|狗屁|你啥也不会|没用|投诉|我要投诉|差评", re.IGNORECASE),
    re.compile(r"(useless|stupid|idiot|worst support|complain)", re.IGNORECASE),
]

# Greetings, acknowledgements, thanks and farewells
NO_SEARCH_PATTERNS = [
    re.compile(r"^hi$|^hello$|^hey$|你好|您好|在吗|早上好|下午好|晚上好"),
    re.compile(r"^(ok|okay|roger|收到|好的|明白了|了解了|行|可以)$", re.IGNORECASE),
    re.compile(r"谢谢|感谢|thx|thanks|thank you", re.IGNORECASE),
    re.compile(r"再见|bye|拜拜|辛苦了"),
    re.compile(r"^嗯+$"),
]

REASON_EXPLICIT_REQUEST = "用户明确请求人工"
REASON_NEGATIVE_SENTIMENT = "用户强烈负面情绪/投诉"


@dataclass
class HandoffMatch:
    handoff: bool
    reason: Optional[str] = None


def quick_handoff_heuristic(text: str) -> HandoffMatch:
    """
    Match unambiguous handoff triggers.

    Args:
        text: Latest customer message

    Returns:
        HandoffMatch with the reason of the first matching pattern group
    """
    normalized = (text or "").strip().lower()
    if any(p.search(normalized) for p in DIRECT_HANDOFF_PATTERNS):
        return HandoffMatch(handoff=True, reason=REASON_EXPLICIT_REQUEST)
    if any(p.search(normalized) for p in ABUSIVE_PATTERNS):
        return HandoffMatch(handoff=True, reason=REASON_NEGATIVE_SENTIMENT)
    return HandoffMatch(handoff=False)


def quick_no_search_heuristic(text: str) -> bool:
    """True when the message is small talk that needs no knowledge search."""
    normalized = (text or "").strip().lower()
    if not normalized:
        return False
    return any(p.search(normalized) for p in NO_SEARCH_PATTERNS)
