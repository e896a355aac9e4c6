"""
Post-filter pipeline applied to every candidate batch.

Order matters:
  1. fingerprint + dedup against the exclude-set and earlier kept items
  2. section repair for missing tags
  3. section conformance against the requested filter
  4. structural validation (4 distinct options, answer among them, text)
     and quality bounds (lengths, numerals per section)
  5. topic conformance (practice mode with reference topics only)
  6. concept diversity (at most N kept items per concept signature, when enabled)

Output preserves input order.
"""

import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set

import structlog
from pydantic import ValidationError

from ..models.schemas import CandidateQuestion, Mode, ReferenceTopic, Section
from .fingerprint import compute_fingerprint
from .section_classifier import SectionClassifier, normalize_section

logger = structlog.get_logger(__name__)

_NUMBER_RE = re.compile(r"[0-9\u0660-\u0669\u06F0-\u06F9]+")
_GEOMETRY_RE = re.compile("مساحة|محيط|حجم|زاوية")


@dataclass
class QualityBounds:
    min_text_length: int = 20
    max_text_length: int = 600
    min_explanation_length: int = 30
    max_verbal_numbers: int = 2

    @classmethod
    def from_config(cls, config) -> "QualityBounds":
        return cls(
            min_text_length=config.min_question_length,
            max_text_length=config.max_question_length,
            min_explanation_length=config.min_explanation_length,
            max_verbal_numbers=config.max_verbal_numbers,
        )


@dataclass
class FilterContext:
    excluded_fingerprints: Set[str]
    section_filter: Optional[Section]
    mode: Mode
    reference_topics: List[ReferenceTopic] = field(default_factory=list)
    quality: QualityBounds = field(default_factory=QualityBounds)
    max_per_concept: int = 0


@dataclass
class FilterReport:
    kept: List[CandidateQuestion]
    received: int
    dropped: Counter = field(default_factory=Counter)


def to_candidates(raw_items: Iterable[Dict[str, Any]], source: str) -> List[CandidateQuestion]:
    """Coerce raw generator/bank dicts; items that cannot be coerced are skipped"""
    candidates = []
    for item in raw_items:
        try:
            candidates.append(CandidateQuestion.from_raw(item, source=source))
        except (ValidationError, ValueError, TypeError) as e:
            logger.debug(f"Skipping uncoercible item: {e}")
    return candidates


def is_structurally_valid(candidate: CandidateQuestion) -> bool:
    options = candidate.options
    if len(options) != 4 or len(set(options)) != 4:
        return False
    if candidate.correct_answer not in options:
        return False
    return bool(candidate.text.strip()) and bool(candidate.explanation.strip())


def meets_quality_bounds(candidate: CandidateQuestion, section: Section, bounds: QualityBounds) -> bool:
    """Length bounds; quantitative text needs a number, verbal text allows only a few"""
    text = candidate.text.strip()
    if not bounds.min_text_length <= len(text) <= bounds.max_text_length:
        return False
    if len(candidate.explanation.strip()) < bounds.min_explanation_length:
        return False
    numbers = _NUMBER_RE.findall(text)
    if section == Section.QUANTITATIVE:
        return bool(numbers)
    return len(numbers) <= bounds.max_verbal_numbers


def concept_signature(text: str) -> str:
    """Coarse shape of a question: how many numbers and which operation families it uses"""
    numbers = len(_NUMBER_RE.findall(text))
    percentage = "%" in text or "نسبة" in text
    fraction = "/" in text
    root = "√" in text or "جذر" in text
    geometry = bool(_GEOMETRY_RE.search(text))
    return f"nums:{numbers}_pct:{percentage}_frac:{fraction}_sqrt:{root}_geo:{geometry}"


def matches_reference_topics(candidate: CandidateQuestion, topics: List[ReferenceTopic]) -> bool:
    needles = [t.title.lower() for t in topics]
    needles += [tag.lower() for t in topics for tag in t.related_topic_tags]
    needles = [n.strip() for n in needles if n and n.strip()]
    haystack = [h.lower().strip() for h in (candidate.topic_tag, candidate.subject_tag, candidate.text) if h and h.strip()]
    return any(n in h or h in n for n in needles for h in haystack)


class PostFilter:
    def __init__(self, classifier: SectionClassifier):
        self.classifier = classifier

    def run(self, candidates: List[CandidateQuestion], ctx: FilterContext,
            collected: Sequence[CandidateQuestion] = (), apply_topic_filter: bool = True) -> FilterReport:
        """Apply the filter steps; ``collected`` holds questions already accepted in this request"""
        report = FilterReport(kept=[], received=len(candidates))
        seen: Set[str] = {q.content_fingerprint for q in collected if q.content_fingerprint}
        concepts = Counter(concept_signature(q.text) for q in collected)
        topic_step = (
            apply_topic_filter and ctx.mode == Mode.PRACTICE and bool(ctx.reference_topics)
        )

        for candidate in candidates:
            fingerprint = compute_fingerprint(candidate.text)
            if fingerprint in ctx.excluded_fingerprints:
                report.dropped["served_before"] += 1
                continue
            if fingerprint in seen:
                report.dropped["duplicate"] += 1
                continue

            section = normalize_section(candidate.section) or self.classifier.classify(candidate.text)

            if ctx.section_filter is not None:
                verdict = self.classifier.classify(candidate.text)
                if verdict != ctx.section_filter:
                    report.dropped["section_mismatch"] += 1
                    logger.debug(
                        "Dropped off-section question",
                        declared=candidate.section,
                        classified=verdict.value,
                        wanted=ctx.section_filter.value,
                    )
                    continue
                section = ctx.section_filter

            if not is_structurally_valid(candidate):
                report.dropped["invalid_structure"] += 1
                continue
            if not meets_quality_bounds(candidate, section, ctx.quality):
                report.dropped["low_quality"] += 1
                continue

            if topic_step and not matches_reference_topics(candidate, ctx.reference_topics):
                report.dropped["off_topic"] += 1
                continue

            concept = concept_signature(candidate.text)
            if ctx.max_per_concept and concepts[concept] >= ctx.max_per_concept:
                report.dropped["repeated_concept"] += 1
                continue

            seen.add(fingerprint)
            concepts[concept] += 1
            report.kept.append(candidate.model_copy(update={
                "content_fingerprint": fingerprint,
                "section": section.value,
            }))

        if report.dropped:
            logger.info(
                f"🧹 Post-filter kept {len(report.kept)}/{report.received}",
                dropped=dict(report.dropped),
            )
        return report
