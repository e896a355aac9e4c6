"""
Prompt construction for quiz generation.

All functions here are pure: they take the effective config, the reference
topics and the request, and return prompt text. Prompts are Arabic because
the generated questions are.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..models.schemas import GenerationRequest, LessonContent, Mode, ReferenceTopic, Section, TestType, Track
from .quiz_config import DEFAULT_PROMPT_OVERRIDE, QuizConfig

REFERENCE_BODY_LIMIT = 400
MAX_TEMPLATES = 5
MAX_VARIATIONS = 5

SECTION_LABELS = {Section.QUANTITATIVE: "كمي", Section.VERBAL: "لفظي"}
DIFFICULTY_LABELS = {"easy": "سهل", "medium": "متوسط", "hard": "صعب"}

SYSTEM_TEMPLATES: Dict[str, str] = {
    "quantitative": (
        "أنت خبير في إعداد أسئلة اختبار القدرات العامة (قياس) في السعودية.\n\n"
        "🔢 **القسم الكمي - رياضيات:**\n"
        "**الأنواع:** الحساب، الجبر، الهندسة، الإحصاء، المقارنات الكمية، مسائل منطقية\n"
        "⚠️ رياضيات فقط - كل سؤال يجب أن يحتوي على أرقام أو معادلة\n"
        "- اكتب الأسئلة بالعربية الفصحى واستخدم الأرقام الإنجليزية (0-9)\n"
        "- section = \"كمي\" لكل سؤال"
    ),
    "verbal": (
        "أنت خبير في إعداد أسئلة اختبار القدرات العامة (قياس) في السعودية.\n\n"
        "📝 **القسم اللفظي - لغة عربية:**\n"
        "**الأنواع:** استيعاب المقروء، إكمال الجمل، التناظر اللفظي، الخطأ السياقي، الارتباط والاختلاف\n"
        "⚠️ لغة عربية فقط - لا أرقام نهائياً في نص السؤال أو الخيارات\n"
        "- اكتب الأسئلة بالعربية الفصحى السليمة\n"
        "- section = \"لفظي\" لكل سؤال"
    ),
    "aptitude_mixed": (
        "أنت خبير في إعداد أسئلة اختبار القدرات العامة (قياس) في السعودية.\n\n"
        "📋 **اختبار قدرات متنوع:** نصف الأسئلة لفظي ونصفها كمي\n"
        "- الكمي: الحساب، الجبر، الهندسة، الإحصاء - كل سؤال كمي يحتوي على أرقام أو معادلة\n"
        "- اللفظي: استيعاب المقروء، إكمال الجمل، التناظر، الخطأ السياقي - بدون أرقام نهائياً\n"
        "- حدد section لكل سؤال بدقة (\"كمي\" أو \"لفظي\")"
    ),
    "achievement_science": (
        "أنت خبير في إعداد أسئلة الاختبار التحصيلي (المسار العلمي) في السعودية.\n\n"
        "📚 **اختبار تحصيلي علمي:**\n"
        "**المواد:** الرياضيات، الفيزياء، الكيمياء، الأحياء (منهج المرحلة الثانوية)\n"
        "- اكتب الأسئلة بالعربية الفصحى واستخدم الأرقام الإنجليزية (0-9) والرموز العلمية القياسية\n"
        "- حدد subject لكل سؤال باسم المادة"
    ),
    "achievement_humanities": (
        "أنت خبير في إعداد أسئلة الاختبار التحصيلي (المسار النظري) في السعودية.\n\n"
        "📚 **اختبار تحصيلي نظري:**\n"
        "**المواد:** الدراسات الإسلامية، اللغة العربية، التاريخ، الجغرافيا\n"
        "- اكتب الأسئلة بالعربية الفصحى السليمة\n"
        "- حدد subject لكل سؤال باسم المادة"
    ),
}


@dataclass
class PromptBundle:
    system_prompt: str
    user_prompt: str
    target_count: int
    buffered_count: int
    template_key: str


def select_template_key(test_type: TestType, section: Optional[Section], track: Track) -> str:
    if test_type == TestType.APTITUDE:
        if section == Section.QUANTITATIVE:
            return "quantitative"
        if section == Section.VERBAL:
            return "verbal"
        return "aptitude_mixed"
    if track == Track.HUMANITIES:
        return "achievement_humanities"
    return "achievement_science"


def build_topic_prefix(topics: List[ReferenceTopic], section: Optional[Section]) -> str:
    """Closed numbered list of permitted topics"""
    if not topics:
        return ""
    numbered = "\n".join(f"{i}. {topic.title}" for i, topic in enumerate(topics, 1))
    only_section = f" ({SECTION_LABELS[section]} حصرياً)" if section else ""
    return (
        f"📚 **المواضيع المسموح بها (قائمة مغلقة):**\n{numbered}\n\n"
        f"⚠️ يجب أن يكون كل سؤال من المواضيع أعلاه فقط{only_section}، ولا يُسمح بأي موضوع خارج القائمة\n\n"
    )


def build_system_prompt(config: QuizConfig, topics: List[ReferenceTopic], request: GenerationRequest) -> str:
    key = select_template_key(request.test_type, request.section_filter, request.track)
    overrides = config.prompt_overrides
    template = overrides.get(key) or overrides.get(DEFAULT_PROMPT_OVERRIDE) or SYSTEM_TEMPLATES[key]
    return build_topic_prefix(topics, request.section_filter) + template


def generate_distribution(total: int, sub_skills: List[str]) -> str:
    """Spread ``total`` questions across sub-skills, remainder to the first ones"""
    if not sub_skills:
        return f"- {total} سؤال متنوع"
    per_skill, remainder = divmod(total, len(sub_skills))
    return "\n".join(
        f"- {per_skill + (1 if i < remainder else 0)} سؤال عن: {skill}"
        for i, skill in enumerate(sub_skills)
    )


def _metadata_list(topics: List[ReferenceTopic], key: str) -> List[Any]:
    items: List[Any] = []
    for topic in topics:
        value = topic.metadata.get(key) if isinstance(topic.metadata, dict) else None
        if isinstance(value, list):
            items.extend(value)
    return items


def _knowledge_block(topics: List[ReferenceTopic], lesson: Optional[LessonContent]) -> str:
    parts = []
    if lesson is not None:
        parts.append(f"{lesson.title}\n{lesson.content_text}".strip())
    for topic in topics:
        body = topic.body_text[:REFERENCE_BODY_LIMIT]
        parts.append(f"**{topic.title}:**\n{body}...")
    return "\n\n".join(parts)


def build_user_prompt(request: GenerationRequest, count: int, topics: List[ReferenceTopic],
                      lesson: Optional[LessonContent] = None) -> str:
    section_label = SECTION_LABELS.get(request.section_filter, "") if request.section_filter else ""
    basis = "المحتوى" if request.mode == Mode.LESSON else "المنهج"

    prompt = f"قم بتوليد {count} سؤال {section_label} بناءً على {basis}:".replace("  ", " ")

    knowledge = _knowledge_block(topics, lesson)
    if knowledge:
        prompt += f"\n\n📚 **المحتوى المعرفي:**\n{knowledge}"

    if request.test_type == TestType.APTITUDE and request.section_filter is None:
        verbal = count // 2
        prompt += f"\n\n📋 **التوزيع:** {verbal} لفظي + {count - verbal} كمي"

    templates = _metadata_list(topics, "templates")
    if templates:
        lines = "\n".join(
            f"{i}. {t.get('pattern', t) if isinstance(t, dict) else t}"
            for i, t in enumerate(templates[:MAX_TEMPLATES], 1)
        )
        prompt += f"\n\n🎯 **قوالب الأسئلة المتاحة** (استخدم كل قالب بتنويع مختلف):\n{lines}"

    variations = _metadata_list(topics, "variation_strategies")
    if variations:
        lines = "\n".join(f"{i}. {v}" for i, v in enumerate(variations[:MAX_VARIATIONS], 1))
        prompt += f"\n\n🔄 **استراتيجيات التنوع** (طبّق على كل سؤال):\n{lines}"

    sub_skills = [str(s) for s in _metadata_list(topics, "sub_skills")]
    if sub_skills:
        prompt += f"\n\n📊 **توزيع الأسئلة المطلوب**:\n{generate_distribution(count, sub_skills)}"

    if request.topic_filter:
        prompt += f"\n\n🎯 **التركيز:** جميع الأسئلة حول موضوع \"{request.topic_filter}\""

    section_rule = f"- جميع الأسئلة {section_label} فقط" if section_label else "- أسئلة متنوعة"
    prompt += (
        "\n\n⚠️ **متطلبات إلزامية**:\n"
        f"- {count} سؤال مختلف تماماً\n"
        "- كل سؤال يستخدم أرقاماً وسياقاً مختلفاً\n"
        f"- مستوى الصعوبة الأساسي: {DIFFICULTY_LABELS[request.difficulty.value]}\n"
        f"- نوّع مستوى الصعوبة ({int(count * 0.3)} سهل، {int(count * 0.5)} متوسط، {int(count * 0.2)} صعب)\n"
        f"{section_rule}\n"
        "- 4 خيارات مختلفة لكل سؤال (الخيارات يجب أن تكون معقولة وليست واضحة الخطأ)\n"
        "- الإجابة الصحيحة مطابقة حرفياً لأحد الخيارات\n"
        "- تفسير تعليمي مفصل يشرح الحل خطوة بخطوة ويربط بالمهارة الأساسية\n\n"
        "🚫 **ممنوع**:\n"
        "- تكرار نفس الأرقام أو السياق\n"
        "- أسئلة متشابهة في البنية\n"
        "- خيارات واضحة الخطأ أو سهلة الاستبعاد"
    )
    return prompt


def build_prompts(config: QuizConfig, topics: List[ReferenceTopic], request: GenerationRequest,
                  lesson: Optional[LessonContent] = None) -> PromptBundle:
    section = request.section_filter.value if request.section_filter else None
    target = config.target_count(request.requested_count, section)
    buffered = config.buffered_count(target)
    return PromptBundle(
        system_prompt=build_system_prompt(config, topics, request),
        user_prompt=build_user_prompt(request, buffered, topics, lesson),
        target_count=target,
        buffered_count=buffered,
        template_key=select_template_key(request.test_type, request.section_filter, request.track),
    )


def build_topup_prompt(missing: int, section: Optional[Section], topic_names: List[str],
                       used_concepts: Optional[List[str]] = None) -> str:
    """Smaller prompt asking for exactly ``missing`` questions"""
    section_label = SECTION_LABELS[section] if section else ""
    lines = [f"قم بتوليد {missing} سؤال {section_label} فقط:".replace("  ", " "), "", "⚠️ **مهم:**",
             f"- {missing} سؤال بالضبط"]
    if section_label:
        lines.append(f"- {section_label} حصرياً")
    if topic_names:
        lines.append(f"- المواضيع: {'، '.join(topic_names[:5])}")
    lines.append("- 4 خيارات مختلفة والإجابة الصحيحة أحدها، مع تفسير واضح")
    if used_concepts:
        lines += [
            "",
            "⚠️ **متطلبات التنوع الإلزامية:**",
            f"- استخدم أرقاماً مختلفة تماماً (تجنب التشابه مع: {'، '.join(used_concepts[:5])})",
            "- استخدم سياقات جديدة متنوعة (تسوق، سفر، رياضة، دراسة، طبخ، بناء)",
            "- نوّع صيغة السؤال (مباشر، مسألة قصة، مقارنة، استنتاجي)",
            "🚫 ممنوع تكرار نفس البنية أو الأرقام أو السياق",
        ]
    return "\n".join(lines)
