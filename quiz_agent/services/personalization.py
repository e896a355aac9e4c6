"""
Student-aware prompt enrichment.

Uses the caller's weakness profile and recent answers to pick a student
level, a generation temperature and a handful of curated few-shot examples.
Everything here is optional: with personalization disabled, or on any data
error, the base prompts and configured temperature are used unchanged.
"""

import json
from dataclasses import dataclass, field
from typing import List, Optional

import psycopg2
import structlog

from ..models.schemas import GenerationRequest, Mode, Section, TrainingExample, Weakness
from .prompt_builder import PromptBundle
from .quiz_config import QuizConfig
from .repository import QuizRepository

logger = structlog.get_logger(__name__)

BASE_TEMPERATURES = {"struggling": 0.4, "intermediate": 0.7, "advanced": 0.9}
CONTEXT_MODIFIERS = {
    "initial_assessment": 0.1,
    "weakness_targeting": -0.1,
    "strength_building": 0.15,
    "daily_practice": 0.0,
}
MIN_TEMPERATURE, MAX_TEMPERATURE = 0.3, 1.0

RECENT_OUTCOMES = 20
MAX_WEAKNESSES = 5
MIN_EXAMPLE_QUALITY = 3
HIGH_EXAMPLE_QUALITY = 4


@dataclass
class StudentProfile:
    level: str = "intermediate"
    overall_success_rate: float = 0.5
    total_attempts: int = 0
    weaknesses: List[Weakness] = field(default_factory=list)


@dataclass
class PersonalizedPrompts:
    system_prompt: str
    user_prompt: str
    temperature: float
    profile: Optional[StudentProfile] = None
    test_context: Optional[str] = None
    examples_used: int = 0


def compute_student_level(outcomes: List[bool]) -> StudentProfile:
    if not outcomes:
        return StudentProfile()
    rate = sum(1 for ok in outcomes if ok) / len(outcomes)
    if rate < 0.5:
        level = "struggling"
    elif rate < 0.75:
        level = "intermediate"
    else:
        level = "advanced"
    return StudentProfile(level=level, overall_success_rate=rate, total_attempts=len(outcomes))


def determine_test_context(request: GenerationRequest) -> str:
    if request.mode == Mode.INITIAL_ASSESSMENT:
        return "initial_assessment"
    if request.topic_filter:
        return "weakness_targeting"
    return "daily_practice"


def dynamic_temperature(level: str, test_context: str) -> float:
    temperature = BASE_TEMPERATURES[level] + CONTEXT_MODIFIERS.get(test_context, 0.0)
    return round(max(MIN_TEMPERATURE, min(MAX_TEMPERATURE, temperature)), 2)


def build_dynamic_additions(profile: StudentProfile) -> str:
    """Weakness-targeting and level instructions appended to the system prompt"""
    additions = ""
    if profile.weaknesses:
        weak_topics = "\n".join(
            f"- **{w.topic_name}** (معدل النجاح: {w.success_rate * 100:.0f}%، "
            f"أولوية: {w.priority_score * 100:.0f}%، اتجاه: {w.trend})"
            for w in profile.weaknesses
        )
        additions += (
            "\n\n## 🎯 المفاهيم المستهدفة (نقاط ضعف الطالب):\n\n"
            f"{weak_topics}\n\n"
            "**تعليمات مهمة للأسئلة:**\n"
            "- ركز على هذه المواضيع بأولوية عالية (60-70% من الأسئلة)\n"
            "- استخدم صيغاً متنوعة جداً لنفس المفهوم\n"
            "- اجعل الأسئلة واضحة مع شرح تفصيلي خطوة بخطوة\n"
        )

    stats = f"**معدل نجاح الطالب:** {profile.overall_success_rate * 100:.0f}% من {profile.total_attempts} محاولة"
    if profile.level == "struggling":
        additions += (
            "\n\n## 📘 تعليمات خاصة لمستوى الطالب (يواجه صعوبات):\n\n"
            f"{stats}\n\n"
            "**يجب عليك:**\n"
            "- استخدام لغة واضحة وبسيطة جداً\n"
            "- تقديم أسئلة تدريجية الصعوبة (ابدأ بالسهل)\n"
            "- جعل الخيارات متميزة وواضحة\n"
            "- شرح الإجابة بالتفصيل مع خطوات الحل الكاملة\n"
        )
    elif profile.level == "advanced":
        additions += (
            "\n\n## 🎓 تعليمات خاصة لمستوى الطالب (متقدم):\n\n"
            f"{stats}\n\n"
            "**يجب عليك:**\n"
            "- تقديم أسئلة معقدة متعددة الخطوات\n"
            "- التركيز على التفكير النقدي والتحليل العميق\n"
            "- دمج عدة مفاهيم في سؤال واحد\n"
        )
    else:
        additions += (
            "\n\n## 📖 تعليمات خاصة لمستوى الطالب (متوسط):\n\n"
            f"{stats}\n\n"
            "**يجب عليك:**\n"
            "- التوازن بين الوضوح والتحدي\n"
            "- استخدام أسئلة متدرجة (سهلة، متوسطة، صعبة)\n"
            "- تقديم شرح واضح مع خطوات الحل\n"
        )
    return additions


def select_balanced_examples(pool: List[TrainingExample], topic: Optional[str], count: int) -> List[TrainingExample]:
    """Topic-relevant first, then high quality, then the rest, without repeats"""
    topic_relevant = [ex for ex in pool if topic and ex.subject == topic]
    high_quality = [ex for ex in pool if ex.quality_score >= HIGH_EXAMPLE_QUALITY]
    selected: List[TrainingExample] = []
    seen = set()
    for ex in topic_relevant + high_quality + pool:
        if id(ex) in seen:
            continue
        seen.add(id(ex))
        selected.append(ex)
        if len(selected) == count:
            break
    return selected


def inject_few_shot_examples(prompt: str, examples: List[TrainingExample]) -> str:
    if not examples:
        return prompt
    blocks = "\n---\n".join(
        f"\n### مثال {i}:\n"
        f"**السؤال:** {ex.question_text}\n"
        f"**الخيارات:** {json.dumps(ex.options, ensure_ascii=False)}\n"
        f"**الإجابة الصحيحة:** {ex.correct_answer}\n"
        f"**الشرح:** {ex.explanation}\n"
        for i, ex in enumerate(examples, 1)
    )
    return (
        f"{prompt}\n\n## 📚 أمثلة لأسئلة عالية الجودة (اتبع نفس المستوى):\n{blocks}\n"
        "**مهم جداً:** اتبع نفس مستوى الجودة والوضوح في الأمثلة أعلاه مع تنويع المفاهيم"
    )


class Personalizer:
    def __init__(self, repository: QuizRepository):
        self.repository = repository

    async def personalize(self, request: GenerationRequest, bundle: PromptBundle,
                          config: QuizConfig) -> PersonalizedPrompts:
        if not config.personalization_enabled:
            return PersonalizedPrompts(bundle.system_prompt, bundle.user_prompt, config.temperature)
        try:
            return await self._personalize(request, bundle, config)
        except (psycopg2.Error, ValueError) as e:
            logger.warning(f"⚠️ Personalization unavailable, using base prompts: {e}")
            return PersonalizedPrompts(bundle.system_prompt, bundle.user_prompt, config.temperature)

    async def _personalize(self, request: GenerationRequest, bundle: PromptBundle,
                           config: QuizConfig) -> PersonalizedPrompts:
        section = (request.section_filter or Section.QUANTITATIVE).value
        weaknesses = await self.repository.fetch_weaknesses(
            request.caller_id, section, request.test_type.value, MAX_WEAKNESSES
        )
        outcomes = await self.repository.fetch_recent_outcomes(request.caller_id, RECENT_OUTCOMES)
        profile = compute_student_level(outcomes)
        profile.weaknesses = weaknesses

        test_context = determine_test_context(request)
        if profile.total_attempts:
            temperature = dynamic_temperature(profile.level, test_context)
        else:
            temperature = config.temperature
        logger.info(
            f"🌡️ Student level {profile.level} ({profile.overall_success_rate:.0%} of "
            f"{profile.total_attempts}), context {test_context}, temperature {temperature}",
            weaknesses=len(weaknesses),
        )

        example_count = 5 if profile.level == "struggling" else 3
        pool = await self.repository.fetch_training_examples(
            section, request.test_type.value, MIN_EXAMPLE_QUALITY, min(example_count * 4, 30)
        )
        focus_topic = weaknesses[0].topic_name if weaknesses else request.topic_filter
        examples = select_balanced_examples(pool, focus_topic, example_count)
        logger.info(f"🎓 Selected {len(examples)} few-shot examples")

        return PersonalizedPrompts(
            system_prompt=bundle.system_prompt + build_dynamic_additions(profile),
            user_prompt=inject_few_shot_examples(bundle.user_prompt, examples),
            temperature=temperature,
            profile=profile,
            test_context=test_context,
            examples_used=len(examples),
        )
