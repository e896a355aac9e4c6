"""
Runtime quiz configuration.

``QuizConfig`` is the fully specified defaults record; rows from the
``ai_settings`` table are merged over it as a partial override. Keys that are
unknown, malformed or fail validation are ignored with a warning so a bad
admin edit never fails a request.
"""

import math
from typing import Any, Dict, Iterable, Mapping, Optional

import structlog
from pydantic import BaseModel, Field, ValidationError

logger = structlog.get_logger(__name__)

# Older admin screens stored some values under nested keys
_LEGACY_KEYS = {
    "quiz_limits": ("min_questions", "max_questions", "default_questions", "buffer_multiplier"),
    "quiz_generation_temperature": ("temperature",),
    "quiz_model": ("model",),
}

# Catch-all system prompt override, used when no template-specific one exists
DEFAULT_PROMPT_OVERRIDE = "default"


class QuizConfig(BaseModel):
    model_config = {"frozen": True}

    min_questions: int = Field(default=5, ge=1)
    max_questions: int = Field(default=50, ge=1)
    default_questions: int = Field(default=10, ge=1)
    section_default_questions: Dict[str, int] = Field(default_factory=dict)

    model: str = "google/gemini-2.5-flash"
    topup_model: str = "google/gemini-2.5-flash-lite"
    temperature: float = Field(default=0.9, ge=0.0, le=2.0)
    topup_temperature: float = Field(default=0.8, ge=0.0, le=2.0)

    buffer_multiplier: float = Field(default=2.0, ge=1.0)
    max_recovery_attempts: int = Field(default=3, ge=1)

    prompt_overrides: Dict[str, str] = Field(default_factory=dict)

    min_question_length: int = Field(default=20, ge=0)
    max_question_length: int = Field(default=600, ge=1)
    min_explanation_length: int = Field(default=30, ge=0)
    max_verbal_numbers: int = Field(default=2, ge=0)
    # 0 disables the concept diversity step
    max_questions_per_concept: int = Field(default=0, ge=0)

    cache_enabled: bool = True

    knowledge_limit: int = Field(default=20, ge=0)
    # lesson and initial-assessment modes
    focused_knowledge_limit: int = Field(default=5, ge=0)
    served_fingerprint_limit: int = Field(default=500, ge=0)

    personalization_enabled: bool = True

    def merged_with(self, rows: Optional[Iterable[Mapping[str, Any]]]) -> "QuizConfig":
        """Return a new config with ``ai_settings`` rows applied over this one"""
        overrides: Dict[str, Any] = {}
        default_prompt: Optional[str] = None
        for row in rows or []:
            key = row.get("setting_key")
            value = row.get("setting_value")
            if key in _LEGACY_KEYS and isinstance(value, Mapping):
                for sub_key in _LEGACY_KEYS[key]:
                    if sub_key in value:
                        overrides[sub_key] = value[sub_key]
                continue
            if key == "system_prompt":
                # stored as {"ar": "..."} by the admin screen
                text = value.get("ar") if isinstance(value, Mapping) else value
                if isinstance(text, str) and text.strip():
                    default_prompt = text
                else:
                    logger.warning("⚠️ Ignoring empty or malformed ai_settings 'system_prompt'")
                continue
            if key == "system_prompt_overrides":
                key = "prompt_overrides"
            if key not in type(self).model_fields:
                logger.warning(f"⚠️ Ignoring unknown ai_settings key '{key}'")
                continue
            overrides[key] = value

        if default_prompt is not None:
            base = overrides.get("prompt_overrides")
            if not isinstance(base, Mapping):
                base = self.prompt_overrides
            overrides["prompt_overrides"] = {**base, DEFAULT_PROMPT_OVERRIDE: default_prompt}

        merged = self
        for key, value in overrides.items():
            try:
                candidate = type(self).model_validate({**merged.model_dump(), key: value})
            except ValidationError as e:
                logger.warning(
                    f"⚠️ Invalid ai_settings value for '{key}', keeping {getattr(merged, key)!r}",
                    error=str(e.errors()[0].get("msg", e)),
                )
                continue
            merged = candidate

        if merged.min_questions > merged.max_questions:
            logger.warning("⚠️ min_questions > max_questions in ai_settings, using defaults for both")
            merged = merged.model_copy(update={
                "min_questions": self.min_questions,
                "max_questions": self.max_questions,
            })
        return merged

    def target_count(self, requested: Optional[int], section: Optional[str] = None) -> int:
        """clamp(requested ?? sectionDefault ?? default, min, max)"""
        count = requested
        if count is None and section:
            count = self.section_default_questions.get(section)
        if count is None:
            count = self.default_questions
        return max(self.min_questions, min(self.max_questions, count))

    def buffered_count(self, target: int) -> int:
        return math.ceil(target * self.buffer_multiplier)
