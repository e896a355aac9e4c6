from quiz_agent.models.schemas import GenerationRequest
from quiz_agent.services.prompt_builder import build_prompts
from quiz_agent.services.quiz_config import DEFAULT_PROMPT_OVERRIDE, QuizConfig


class TestQuizConfigMerge:
    def test_defaults_when_no_rows(self):
        config = QuizConfig().merged_with([])
        assert config == QuizConfig()
        assert config.buffer_multiplier == 2.0
        assert config.max_recovery_attempts == 3

    def test_partial_override(self):
        config = QuizConfig().merged_with([
            {"setting_key": "max_recovery_attempts", "setting_value": 5},
            {"setting_key": "topup_model", "setting_value": "google/gemini-2.5-pro"},
        ])
        assert config.max_recovery_attempts == 5
        assert config.topup_model == "google/gemini-2.5-pro"
        assert config.model == QuizConfig().model

    def test_legacy_nested_keys(self):
        config = QuizConfig().merged_with([
            {"setting_key": "quiz_limits",
             "setting_value": {"min_questions": 3, "max_questions": 30, "default_questions": 12}},
            {"setting_key": "quiz_generation_temperature", "setting_value": {"temperature": 0.6}},
            {"setting_key": "quiz_model", "setting_value": {"model": "google/gemini-2.5-pro"}},
        ])
        assert (config.min_questions, config.max_questions, config.default_questions) == (3, 30, 12)
        assert config.temperature == 0.6
        assert config.model == "google/gemini-2.5-pro"

    def test_invalid_and_unknown_values_fall_back(self):
        config = QuizConfig().merged_with([
            {"setting_key": "buffer_multiplier", "setting_value": "lots"},
            {"setting_key": "max_recovery_attempts", "setting_value": 0},
            {"setting_key": "no_such_setting", "setting_value": 1},
        ])
        assert config.buffer_multiplier == 2.0
        assert config.max_recovery_attempts == 3

    def test_inverted_limits_are_rejected(self):
        config = QuizConfig().merged_with([
            {"setting_key": "min_questions", "setting_value": 40},
            {"setting_key": "max_questions", "setting_value": 10},
        ])
        assert (config.min_questions, config.max_questions) == (5, 50)

    def test_merge_does_not_mutate_defaults(self):
        defaults = QuizConfig()
        defaults.merged_with([{"setting_key": "knowledge_limit", "setting_value": 7}])
        assert defaults.knowledge_limit == 20

    def test_quality_and_cache_settings(self):
        config = QuizConfig().merged_with([
            {"setting_key": "min_question_length", "setting_value": 10},
            {"setting_key": "max_questions_per_concept", "setting_value": 2},
            {"setting_key": "cache_enabled", "setting_value": False},
        ])
        assert config.min_question_length == 10
        assert config.max_questions_per_concept == 2
        assert config.cache_enabled is False


class TestSystemPromptSetting:
    def test_admin_prompt_overrides_every_template(self):
        config = QuizConfig().merged_with([
            {"setting_key": "system_prompt", "setting_value": {"ar": "OVERRIDE_TEXT"}},
        ])
        assert config.prompt_overrides == {DEFAULT_PROMPT_OVERRIDE: "OVERRIDE_TEXT"}
        for request in (GenerationRequest(section_filter="quantitative"), GenerationRequest(),
                        GenerationRequest(test_type="achievement", track="humanities")):
            assert "OVERRIDE_TEXT" in build_prompts(config, [], request).system_prompt

    def test_template_override_wins_over_admin_prompt(self):
        config = QuizConfig().merged_with([
            {"setting_key": "system_prompt", "setting_value": {"ar": "OVERRIDE_TEXT"}},
            {"setting_key": "system_prompt_overrides", "setting_value": {"verbal": "VERBAL_ONLY"}},
        ])
        verbal = build_prompts(config, [], GenerationRequest(section_filter="verbal")).system_prompt
        quant = build_prompts(config, [], GenerationRequest(section_filter="quantitative")).system_prompt
        assert verbal == "VERBAL_ONLY"
        assert quant == "OVERRIDE_TEXT"

    def test_plain_string_prompt(self):
        config = QuizConfig().merged_with([{"setting_key": "system_prompt", "setting_value": "نص مخصص"}])
        assert config.prompt_overrides[DEFAULT_PROMPT_OVERRIDE] == "نص مخصص"

    def test_empty_prompt_is_ignored(self):
        config = QuizConfig().merged_with([{"setting_key": "system_prompt", "setting_value": {"ar": "  "}}])
        assert config.prompt_overrides == {}


class TestCounts:
    def test_target_count_clamps(self):
        config = QuizConfig()
        assert config.target_count(None) == 10
        assert config.target_count(2) == 5
        assert config.target_count(80) == 50
        assert config.target_count(12) == 12

    def test_section_default(self):
        config = QuizConfig(section_default_questions={"verbal": 15})
        assert config.target_count(None, "verbal") == 15
        assert config.target_count(None, "quantitative") == 10
        assert config.target_count(8, "verbal") == 8

    def test_buffered_count_rounds_up(self):
        assert QuizConfig().buffered_count(10) == 20
        assert QuizConfig(buffer_multiplier=1.5).buffered_count(5) == 8
