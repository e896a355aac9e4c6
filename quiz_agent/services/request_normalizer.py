import re
from typing import Optional

from ..models.schemas import GenerationRequest

_UNSAFE_CHARS_RE = re.compile(r"[<>\"'`;()]")
MAX_TOPIC_FILTER_LENGTH = 100
MIN_TOPIC_FILTER_LENGTH = 3


def sanitize_topic_filter(topic: Optional[str]) -> Optional[str]:
    """Strip markup/quote characters; anything shorter than 3 chars is dropped"""
    if not topic:
        return None
    cleaned = _UNSAFE_CHARS_RE.sub("", topic).strip()[:MAX_TOPIC_FILTER_LENGTH]
    return cleaned if len(cleaned) >= MIN_TOPIC_FILTER_LENGTH else None


def normalize_request(request: GenerationRequest, caller_id: str) -> GenerationRequest:
    """Bind the verified caller id and clean free-text fields"""
    return request.model_copy(update={
        "caller_id": caller_id,
        "topic_filter": sanitize_topic_filter(request.topic_filter),
    })
