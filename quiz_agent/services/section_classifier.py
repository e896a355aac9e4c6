import re
from typing import Optional, Protocol

from ..models.schemas import Section

MATH_KEYWORDS = ("نسبة", "معادلة", "مجموع", "مساحة", "محيط", "جذر", "ضرب", "قسمة")

# ASCII and Arabic-Indic digits
_DIGIT_RE = re.compile(r"[0-9\u0660-\u0669\u06F0-\u06F9]")

# Labels the generator or the bank may use for a section
_SECTION_ALIASES = {
    "quantitative": Section.QUANTITATIVE,
    "كمي": Section.QUANTITATIVE,
    "الكمي": Section.QUANTITATIVE,
    "القسم الكمي": Section.QUANTITATIVE,
    "verbal": Section.VERBAL,
    "لفظي": Section.VERBAL,
    "اللفظي": Section.VERBAL,
    "القسم اللفظي": Section.VERBAL,
}


class SectionClassifier(Protocol):
    def classify(self, text: str) -> Section:
        ...


class KeywordSectionClassifier:
    """Digits or math vocabulary mean quantitative, anything else is verbal"""

    def __init__(self, keywords=MATH_KEYWORDS):
        self.keywords = tuple(keywords)

    def classify(self, text: str) -> Section:
        text = (text or "").lower()
        if _DIGIT_RE.search(text) or any(kw in text for kw in self.keywords):
            return Section.QUANTITATIVE
        return Section.VERBAL


def normalize_section(label) -> Optional[Section]:
    """Map a declared section label (English or Arabic) to a Section, or None"""
    if label is None:
        return None
    if isinstance(label, Section):
        return label
    return _SECTION_ALIASES.get(str(label).strip().lower())
