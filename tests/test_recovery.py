import pytest

from quiz_agent.errors import UpstreamQuotaExhausted, UpstreamRateLimited, ValidationShortfall
from quiz_agent.models.schemas import GenerationRequest, Mode, Section
from quiz_agent.services.post_filter import FilterContext, PostFilter, to_candidates
from quiz_agent.services.quiz_config import QuizConfig
from quiz_agent.services.recovery import (
    AITopUpStrategy,
    RecoveryContext,
    RecoveryState,
    ShortfallRecovery,
    default_strategies,
)

from .fakes import FakeRepository, bank_row, quant_question, status_error, tool_response, verbal_question


def make_ctx(request=None, config=None, excluded=()):
    request = request or GenerationRequest(caller_id="u", section_filter=Section.QUANTITATIVE)
    return RecoveryContext(
        request=request,
        config=config or QuizConfig(),
        filter_ctx=FilterContext(
            excluded_fingerprints=set(excluded),
            section_filter=request.section_filter,
            mode=request.mode,
        ),
        system_prompt="system",
    )


def collected(classifier, n, offset=1000):
    ctx = make_ctx().filter_ctx
    raw = [quant_question(offset + i) for i in range(n)]
    return PostFilter(classifier).run(to_candidates(raw, "ai_generated"), ctx).kept


def make_recovery(classifier, repository, generation_client):
    return ShortfallRecovery(default_strategies(repository, generation_client), PostFilter(classifier))


async def test_bank_exact_fills_without_topup(classifier, generation_client, chat_model):
    repo = FakeRepository(bank=[bank_row(quant_question(i)) for i in range(5)])
    outcome = await make_recovery(classifier, repo, generation_client).run(
        collected(classifier, 7), 10, make_ctx()
    )
    assert len(outcome.questions) == 10
    assert outcome.added_by == {"bank_exact": 3}
    assert repo.bank_calls[0] == {"test_type": "aptitude", "section": "quantitative",
                                  "difficulty": "medium", "limit": 6}
    assert chat_model.calls == []
    assert outcome.states[0] == RecoveryState.FILLING
    assert outcome.states[-1] == RecoveryState.DONE


async def test_strategies_run_in_order(classifier, generation_client, chat_model):
    repo = FakeRepository(bank=[
        bank_row(quant_question(1), difficulty="medium"),
        bank_row(quant_question(2), difficulty="hard"),
        bank_row(quant_question(3), section="verbal"),
    ])
    chat_model.script = [tool_response([quant_question(50)])]

    outcome = await make_recovery(classifier, repo, generation_client).run(
        collected(classifier, 6), 10, make_ctx()
    )

    # bank_section returns the medium row again; dedup against collected keeps only the hard one
    assert outcome.added_by["bank_exact"] == 1
    assert outcome.added_by["bank_section"] == 1
    assert outcome.added_by["bank_aptitude_umbrella"] == 1
    assert outcome.added_by["ai_topup"] == 1
    assert len(outcome.questions) == 10
    assert RecoveryState.BANK_FALLBACK in outcome.states
    assert RecoveryState.AI_TOPUP in outcome.states


async def test_umbrella_drops_off_section_rows(classifier, generation_client, chat_model):
    repo = FakeRepository(bank=[bank_row(verbal_question(i), section="verbal") for i in range(5)])
    chat_model.script = [tool_response([quant_question(60)])]
    outcome = await make_recovery(classifier, repo, generation_client).run(
        collected(classifier, 9), 10, make_ctx()
    )
    assert outcome.added_by["bank_aptitude_umbrella"] == 0
    assert outcome.added_by["ai_topup"] == 1


async def test_umbrella_is_aptitude_only(classifier, generation_client):
    repo = FakeRepository()
    request = GenerationRequest(caller_id="u", test_type="achievement", track="science")
    with pytest.raises(ValidationShortfall):
        await make_recovery(classifier, repo, generation_client).run([], 5, make_ctx(request=request))
    assert all(call["test_type"] == "achievement" for call in repo.bank_calls)
    assert len(repo.bank_calls) == 2 * 3


async def test_topup_uses_topup_model(classifier, generation_client, llm_factory, chat_model):
    chat_model.script = [tool_response([quant_question(70), quant_question(71), quant_question(72)])]
    outcome = await make_recovery(classifier, FakeRepository(), generation_client).run(
        collected(classifier, 8), 10, make_ctx()
    )
    assert llm_factory.requested == [("google/gemini-2.5-flash-lite", 0.8)]
    assert outcome.added_by["ai_topup"] == 2
    assert [q.source for q in outcome.questions[-2:]] == ["ai_topup", "ai_topup"]
    assert "2 سؤال بالضبط" in chat_model.calls[0][1].content


async def test_seven_of_ten_after_three_attempts_fails(classifier, generation_client, chat_model):
    chat_model.script = [tool_response([]) for _ in range(3)]
    with pytest.raises(ValidationShortfall) as exc_info:
        await make_recovery(classifier, FakeRepository(), generation_client).run(
            collected(classifier, 7), 10, make_ctx()
        )
    assert "(7/10)" in exc_info.value.message
    assert exc_info.value.details == "insufficient valid questions (7/10)"
    assert len(chat_model.calls) == 3


async def test_attempt_bound_is_configurable(classifier, generation_client, chat_model):
    config = QuizConfig(max_recovery_attempts=1)
    with pytest.raises(ValidationShortfall):
        await make_recovery(classifier, FakeRepository(), generation_client).run(
            collected(classifier, 7), 10, make_ctx(config=config)
        )
    assert len(chat_model.calls) == 1


@pytest.mark.parametrize("status,error_type", [(429, UpstreamRateLimited), (402, UpstreamQuotaExhausted)])
async def test_topup_rate_limit_propagates(classifier, generation_client, chat_model, status, error_type):
    chat_model.script = [status_error(status)]
    with pytest.raises(error_type):
        await make_recovery(classifier, FakeRepository(), generation_client).run(
            collected(classifier, 7), 10, make_ctx()
        )


async def test_other_topup_failures_contribute_nothing(classifier, generation_client, chat_model):
    chat_model.script = [status_error(500), tool_response([quant_question(80 + i) for i in range(3)])]
    outcome = await make_recovery(classifier, FakeRepository(), generation_client).run(
        collected(classifier, 7), 10, make_ctx()
    )
    assert outcome.attempts == 2
    assert len(outcome.questions) == 10


async def test_bank_failure_is_skipped(classifier, generation_client, chat_model):
    repo = FakeRepository(failing={"fetch_bank_questions"})
    chat_model.script = [tool_response([quant_question(90)])]
    outcome = await make_recovery(classifier, repo, generation_client).run(
        collected(classifier, 9), 10, make_ctx()
    )
    assert outcome.added_by == {"bank_exact": 0, "bank_section": 0, "bank_aptitude_umbrella": 0, "ai_topup": 1}


async def test_topup_strategy_alone(classifier, generation_client, chat_model):
    chat_model.script = [tool_response([verbal_question(1), quant_question(91)])]
    recovery = ShortfallRecovery([AITopUpStrategy(generation_client)], PostFilter(classifier))
    outcome = await recovery.run([], 1, make_ctx(request=GenerationRequest(
        caller_id="u", mode=Mode.PRACTICE, section_filter=Section.QUANTITATIVE)))
    assert [q.text for q in outcome.questions] == [quant_question(91)["question_text"]]


async def test_topup_prompt_lists_used_concepts_when_capped(classifier, generation_client, chat_model):
    chat_model.script = [tool_response([quant_question(1, question_text="ما نسبة 20% من العدد 150؟")])]
    ctx = make_ctx()
    ctx.filter_ctx.max_per_concept = 1
    outcome = await make_recovery(classifier, FakeRepository(), generation_client).run(
        collected(classifier, 1), 2, ctx
    )
    prompt = chat_model.calls[0][1].content
    assert "متطلبات التنوع الإلزامية" in prompt
    assert "nums:2_pct:False_frac:False_sqrt:False_geo:False" in prompt
    assert len(outcome.questions) == 2


async def test_topup_prompt_has_no_diversity_block_by_default(classifier, generation_client, chat_model):
    chat_model.script = [tool_response([quant_question(95)])]
    await make_recovery(classifier, FakeRepository(), generation_client).run(
        collected(classifier, 9), 10, make_ctx()
    )
    assert "متطلبات التنوع" not in chat_model.calls[0][1].content
