"""
Context assembly: effective quiz config, reference topics, the caller's
exclude-set of served fingerprints, and the lesson content in lesson mode.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Set

import psycopg2
import structlog

from ..errors import ContentNotFound
from ..models.schemas import GenerationRequest, LessonContent, Mode, ReferenceTopic, Section
from .quiz_config import QuizConfig
from .repository import QuizRepository

logger = structlog.get_logger(__name__)

PRACTICE_TITLE = "اختبار تدريبي شامل"
INITIAL_ASSESSMENT_TITLE = "التقييم الأولي"

SECTION_TOPIC_KEYWORDS = {
    Section.QUANTITATIVE: ("القسم الكمي", "quantitative"),
    Section.VERBAL: ("القسم اللفظي", "verbal"),
}


@dataclass
class AssembledContext:
    config: QuizConfig
    reference_topics: List[ReferenceTopic]
    excluded_fingerprints: Set[str]
    lesson: Optional[LessonContent] = None
    content_title: Optional[str] = None
    topic_names: List[str] = field(default_factory=list)
    related_tags: List[str] = field(default_factory=list)


def narrow_by_section(topics: List[ReferenceTopic], section: Optional[Section]) -> List[ReferenceTopic]:
    """Keep topics tagged with the section keyword; an empty result means no narrowing"""
    if not section or not topics:
        return topics
    keywords = SECTION_TOPIC_KEYWORDS[section]
    narrowed = [
        topic for topic in topics
        if any(kw in tag.lower() for tag in topic.related_topic_tags for kw in keywords)
    ]
    if not narrowed:
        logger.info(f"ℹ️ No reference topics tagged for {section.value}, keeping all {len(topics)}")
        return topics
    return narrowed


class ContextAssembler:
    def __init__(self, repository: QuizRepository, defaults: Optional[QuizConfig] = None):
        self.repository = repository
        self.defaults = defaults or QuizConfig()

    async def load_config(self) -> QuizConfig:
        try:
            rows = await self.repository.fetch_ai_settings()
        except psycopg2.Error as e:
            logger.warning(f"⚠️ Could not read ai_settings, using defaults: {e}")
            return self.defaults
        return self.defaults.merged_with(rows)

    async def assemble(self, request: GenerationRequest) -> AssembledContext:
        config = await self.load_config()

        lesson = None
        if request.mode == Mode.LESSON:
            lesson = await self.repository.fetch_lesson_content(request.content_id, request.day_number)
            if lesson is None:
                raise ContentNotFound(details=f"content_id={request.content_id} day_number={request.day_number}")
            content_title = lesson.title
        elif request.mode == Mode.INITIAL_ASSESSMENT:
            content_title = INITIAL_ASSESSMENT_TITLE
        else:
            content_title = PRACTICE_TITLE

        limit = config.knowledge_limit if request.mode == Mode.PRACTICE else config.focused_knowledge_limit
        try:
            topics = await self.repository.fetch_reference_topics(
                request.test_type.value, request.track.value, limit
            )
        except psycopg2.Error as e:
            logger.warning(f"⚠️ Knowledge base unavailable, continuing without reference topics: {e}")
            topics = []
        topics = narrow_by_section(topics, request.section_filter)

        try:
            excluded = await self.repository.fetch_served_fingerprints(
                request.caller_id, config.served_fingerprint_limit
            )
        except psycopg2.Error as e:
            logger.warning(f"⚠️ Served-question log unavailable, exclude-set is empty: {e}")
            excluded = set()

        logger.info(
            f"📚 Context loaded: {len(topics)} topics, {len(excluded)} served fingerprints",
            mode=request.mode.value,
        )
        return AssembledContext(
            config=config,
            reference_topics=topics,
            excluded_fingerprints=excluded,
            lesson=lesson,
            content_title=content_title,
            topic_names=[t.title for t in topics],
            related_tags=[tag for t in topics for tag in t.related_topic_tags],
        )
