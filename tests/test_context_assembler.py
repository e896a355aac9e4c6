import pytest

from quiz_agent.errors import ContentNotFound
from quiz_agent.models.schemas import GenerationRequest, LessonContent, ReferenceTopic, Section
from quiz_agent.services.context_assembler import (
    INITIAL_ASSESSMENT_TITLE,
    PRACTICE_TITLE,
    ContextAssembler,
    narrow_by_section,
)
from quiz_agent.services.quiz_config import QuizConfig

from .fakes import FakeRepository

QUANT_TOPIC = ReferenceTopic(id="1", title="الكسور", related_topic_tags=["القسم الكمي"])
VERBAL_TOPIC = ReferenceTopic(id="2", title="التناظر اللفظي", related_topic_tags=["القسم اللفظي"])


class TestNarrowBySection:
    def test_keeps_matching_topics(self):
        assert narrow_by_section([QUANT_TOPIC, VERBAL_TOPIC], Section.VERBAL) == [VERBAL_TOPIC]

    def test_english_tags_match(self):
        topic = ReferenceTopic(id="3", title="Ratios", related_topic_tags=["Quantitative"])
        assert narrow_by_section([topic, VERBAL_TOPIC], Section.QUANTITATIVE) == [topic]

    def test_no_match_keeps_everything(self):
        untagged = [ReferenceTopic(id="4", title="عام")]
        assert narrow_by_section(untagged, Section.QUANTITATIVE) == untagged

    def test_no_section_keeps_everything(self):
        assert narrow_by_section([QUANT_TOPIC, VERBAL_TOPIC], None) == [QUANT_TOPIC, VERBAL_TOPIC]


async def test_practice_context():
    repo = FakeRepository(topics=[QUANT_TOPIC, VERBAL_TOPIC], served={"f1", "f2"})
    ctx = await ContextAssembler(repo).assemble(
        GenerationRequest(caller_id="u", section_filter="quantitative")
    )
    assert ctx.content_title == PRACTICE_TITLE
    assert ctx.topic_names == ["الكسور"]
    assert ctx.related_tags == ["القسم الكمي"]
    assert ctx.excluded_fingerprints == {"f1", "f2"}
    assert ctx.lesson is None


async def test_initial_assessment_title():
    ctx = await ContextAssembler(FakeRepository()).assemble(
        GenerationRequest(caller_id="u", mode="initial_assessment")
    )
    assert ctx.content_title == INITIAL_ASSESSMENT_TITLE


async def test_lesson_context_uses_lesson_title():
    lesson = LessonContent(id="c1", day_number=2, title="اليوم الثاني", content_text="نص")
    ctx = await ContextAssembler(FakeRepository(lesson=lesson)).assemble(
        GenerationRequest(caller_id="u", mode="lesson", day_number=2)
    )
    assert ctx.lesson == lesson
    assert ctx.content_title == "اليوم الثاني"


async def test_missing_lesson_raises():
    with pytest.raises(ContentNotFound):
        await ContextAssembler(FakeRepository()).assemble(
            GenerationRequest(caller_id="u", mode="lesson", content_id="missing")
        )


async def test_database_failures_degrade():
    repo = FakeRepository(failing={"fetch_ai_settings", "fetch_reference_topics", "fetch_served_fingerprints"})
    defaults = QuizConfig(default_questions=7)
    ctx = await ContextAssembler(repo, defaults).assemble(GenerationRequest(caller_id="u"))
    assert ctx.config is defaults
    assert ctx.reference_topics == []
    assert ctx.excluded_fingerprints == set()


async def test_admin_settings_are_merged():
    repo = FakeRepository(settings_rows=[{"setting_key": "default_questions", "setting_value": 12}])
    config = await ContextAssembler(repo).load_config()
    assert config.default_questions == 12


@pytest.mark.parametrize("mode,expected", [
    ("practice", 20),
    ("initial_assessment", 5),
])
async def test_knowledge_limit_depends_on_mode(mode, expected):
    topics = [ReferenceTopic(id=str(i), title=f"موضوع {i}") for i in range(25)]
    ctx = await ContextAssembler(FakeRepository(topics=topics)).assemble(
        GenerationRequest(caller_id="u", mode=mode)
    )
    assert len(ctx.reference_topics) == expected


async def test_lesson_mode_uses_the_focused_limit():
    topics = [ReferenceTopic(id=str(i), title=f"موضوع {i}") for i in range(25)]
    lesson = LessonContent(id="c1", day_number=1, title="اليوم الأول", content_text="نص")
    ctx = await ContextAssembler(FakeRepository(topics=topics, lesson=lesson)).assemble(
        GenerationRequest(caller_id="u", mode="lesson", day_number=1)
    )
    assert len(ctx.reference_topics) == 5
