import hashlib
import re
import unicodedata

_WS_RE = re.compile(r"\s+")
# Arabic diacritics and tatweel
_TASHKEEL_RE = re.compile(r"[\u064B-\u0652\u0640]")


def normalize_text(text: str) -> str:
    text = unicodedata.normalize("NFKC", text or "")
    text = _TASHKEEL_RE.sub("", text)
    return _WS_RE.sub(" ", text).strip().lower()


def compute_fingerprint(text: str) -> str:
    """Deterministic content fingerprint of a question text"""
    return hashlib.md5(normalize_text(text).encode("utf-8")).hexdigest()[:16]
