from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class Mode(str, Enum):
    PRACTICE = "practice"
    INITIAL_ASSESSMENT = "initial_assessment"
    LESSON = "lesson"


class TestType(str, Enum):
    APTITUDE = "aptitude"
    ACHIEVEMENT = "achievement"

    __test__ = False  # not a pytest class


class Track(str, Enum):
    GENERAL = "general"
    SCIENCE = "science"
    HUMANITIES = "humanities"


class Section(str, Enum):
    QUANTITATIVE = "quantitative"
    VERBAL = "verbal"


class Difficulty(str, Enum):
    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Request / response
# ---------------------------------------------------------------------------

class GenerationRequest(CamelModel):
    """Body of POST /generate-quiz. The caller id comes from the token."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    caller_id: str = ""
    mode: Mode = Mode.PRACTICE
    test_type: TestType = TestType.APTITUDE
    track: Track = Track.GENERAL
    section_filter: Optional[Section] = None
    difficulty: Difficulty = Difficulty.MEDIUM
    requested_count: Optional[int] = Field(
        default=None,
        ge=1,
        validation_alias=AliasChoices("requestedCount", "questionCount", "requested_count"),
    )
    content_id: Optional[str] = None
    day_number: Optional[int] = None
    topic_filter: Optional[str] = None

    @model_validator(mode="after")
    def _lesson_needs_content(self):
        if self.mode == Mode.LESSON and not (self.content_id or self.day_number):
            raise ValueError("lesson mode requires contentId or dayNumber")
        return self


class CandidateQuestion(CamelModel):
    text: str = ""
    options: List[str] = Field(default_factory=list)
    correct_answer: str = ""
    explanation: str = ""
    section: Optional[str] = None
    subject_tag: str = ""
    difficulty: Difficulty = Difficulty.MEDIUM
    topic_tag: str = ""
    question_type: str = "multiple_choice"
    content_fingerprint: str = ""
    source: str = Field(default="ai_generated", exclude=True)

    @classmethod
    def from_raw(cls, raw: Dict[str, Any], source: str = "ai_generated") -> "CandidateQuestion":
        """Build from a generator tool-call item or a bank row (snake_case, LLM key names)"""
        options = raw.get("options") or []
        if not isinstance(options, list):
            raise ValueError("options must be a list")
        difficulty = str(raw.get("difficulty") or "").strip().lower()
        if difficulty not in {d.value for d in Difficulty}:
            difficulty = Difficulty.MEDIUM.value
        section = raw.get("section")
        return cls(
            text=str(raw.get("question_text") or raw.get("text") or ""),
            options=[str(opt) for opt in options],
            correct_answer=str(raw.get("correct_answer") or ""),
            explanation=str(raw.get("explanation") or ""),
            section=str(section).strip() if section else None,
            subject_tag=str(raw.get("subject") or ""),
            difficulty=difficulty,
            topic_tag=str(raw.get("topic") or ""),
            question_type=str(raw.get("question_type") or "multiple_choice"),
            content_fingerprint=str(raw.get("question_hash") or ""),
            source=source,
        )

    def snapshot(self) -> Dict[str, Any]:
        """Payload stored with the served-fingerprint record"""
        return {**self.model_dump(by_alias=True), "source": self.source}


class QuizResponse(CamelModel):
    questions: List[CandidateQuestion]
    test_type: TestType
    track: Track
    content_title: Optional[str] = None
    day_number: Optional[int] = None
    generation_time: int = 0
    from_cache: bool = False
    cache_hit_rate: int = 0


class ErrorResponse(BaseModel):
    error: str
    details: Optional[str] = None


class HealthResponse(BaseModel):
    status: str
    version: str
    services: Dict[str, str]


# ---------------------------------------------------------------------------
# Data-store records
# ---------------------------------------------------------------------------

class ReferenceTopic(CamelModel):
    id: str
    title: str
    body_text: str = ""
    related_topic_tags: List[str] = Field(default_factory=list)
    test_type: Optional[str] = None
    track: Optional[str] = None
    is_active: bool = True
    metadata: Dict[str, Any] = Field(default_factory=dict)


class LessonContent(CamelModel):
    id: Optional[str] = None
    day_number: Optional[int] = None
    title: str
    content_text: str = ""


class ServedFingerprintRecord(CamelModel):
    caller_id: str
    content_fingerprint: str
    payload_snapshot: Dict[str, Any]
    day_number: int = 0
    topic_name: str = ""
    section: str = ""
    test_type: str = ""
    difficulty: str = Difficulty.MEDIUM.value
    generation_source: str = "ai_generated"
    generation_temperature: Optional[float] = None
    model_used: Optional[str] = None
    created_at: Optional[datetime] = None


class Weakness(BaseModel):
    topic_name: str
    success_rate: float = 0.0
    priority_score: float = 0.0
    trend: str = "stable"
    attempt_count: int = 0


class TrainingExample(BaseModel):
    question_text: str
    options: Any = None
    correct_answer: str = ""
    explanation: str = ""
    quality_score: float = 0.0
    subject: Optional[str] = None
    difficulty: Optional[str] = None
    section: Optional[str] = None


# ---------------------------------------------------------------------------
# Tutor
# ---------------------------------------------------------------------------

class ChatMessage(BaseModel):
    role: str = Field(pattern="^(user|assistant)$")
    content: str


class TutorRequest(CamelModel):
    messages: List[ChatMessage] = Field(min_length=1)
    conversation_id: Optional[str] = None
