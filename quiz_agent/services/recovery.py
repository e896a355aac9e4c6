"""
Shortfall recovery: an ordered list of named strategies and one driver.

One attempt is a pass over every strategy in order; the driver stops as soon
as the shortfall reaches zero. If it is still open after
``max_recovery_attempts`` passes the request fails; a partial batch is never
returned.
"""

from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence

import psycopg2
import structlog

from ..errors import (
    MalformedResponse,
    UpstreamError,
    ValidationShortfall,
)
from ..models.schemas import CandidateQuestion, GenerationRequest, TestType
from ..utils.tracing import QuizTrace
from .generation_client import GenerationClient
from .post_filter import FilterContext, PostFilter, concept_signature, to_candidates
from .prompt_builder import build_topup_prompt
from .quiz_config import QuizConfig
from .repository import QuizRepository

logger = structlog.get_logger(__name__)


class RecoveryState(str, Enum):
    FILLING = "filling"
    BANK_FALLBACK = "bank_fallback"
    AI_TOPUP = "ai_topup"
    DONE = "done"
    FAILED = "failed"


@dataclass
class RecoveryContext:
    request: GenerationRequest
    config: QuizConfig
    filter_ctx: FilterContext
    system_prompt: str
    topic_names: List[str] = field(default_factory=list)


@dataclass
class RecoveryOutcome:
    questions: List[CandidateQuestion]
    attempts: int = 0
    added_by: Counter = field(default_factory=Counter)
    states: List[RecoveryState] = field(default_factory=list)


class BankStrategy:
    """Pull least-used rows from the question bank"""

    state = RecoveryState.BANK_FALLBACK
    apply_topic_filter = True
    source = "question_bank"

    def __init__(self, name: str, repository: QuizRepository, limit_multiplier: int,
                 match_section: bool = True, match_difficulty: bool = False,
                 aptitude_umbrella: bool = False):
        self.name = name
        self.repository = repository
        self.limit_multiplier = limit_multiplier
        self.match_section = match_section
        self.match_difficulty = match_difficulty
        self.aptitude_umbrella = aptitude_umbrella

    def applies(self, ctx: RecoveryContext) -> bool:
        return not self.aptitude_umbrella or ctx.request.test_type == TestType.APTITUDE

    async def fetch(self, shortfall: int, ctx: RecoveryContext,
                    collected: Sequence[CandidateQuestion] = ()) -> List[CandidateQuestion]:
        request = ctx.request
        section = request.section_filter.value if self.match_section and request.section_filter else None
        try:
            rows = await self.repository.fetch_bank_questions(
                test_type=TestType.APTITUDE.value if self.aptitude_umbrella else request.test_type.value,
                section=section,
                difficulty=request.difficulty.value if self.match_difficulty else None,
                limit=shortfall * self.limit_multiplier,
            )
        except psycopg2.Error as e:
            logger.warning(f"⚠️ Question bank unavailable for {self.name}: {e}")
            return []
        return to_candidates(rows, source=self.source)


class AITopUpStrategy:
    """Smaller second generation asking for exactly the shortfall"""

    name = "ai_topup"
    state = RecoveryState.AI_TOPUP
    apply_topic_filter = False
    source = "ai_topup"

    def __init__(self, client: GenerationClient):
        self.client = client

    def applies(self, ctx: RecoveryContext) -> bool:
        return True

    async def fetch(self, shortfall: int, ctx: RecoveryContext,
                    collected: Sequence[CandidateQuestion] = ()) -> List[CandidateQuestion]:
        used_concepts = None
        if ctx.filter_ctx.max_per_concept:
            used_concepts = sorted({concept_signature(q.text) for q in collected})
        prompt = build_topup_prompt(shortfall, ctx.request.section_filter, ctx.topic_names, used_concepts)
        try:
            raw = await self.client.generate(
                ctx.system_prompt, prompt, ctx.config.topup_model, ctx.config.topup_temperature
            )
        except (UpstreamError, MalformedResponse) as e:
            # 429/402 are not caught here and reach the caller
            logger.warning(f"⚠️ AI top-up contributed nothing: {e.message}")
            return []
        return to_candidates(raw, source=self.source)


def default_strategies(repository: QuizRepository, client: GenerationClient) -> list:
    return [
        BankStrategy("bank_exact", repository, limit_multiplier=2, match_difficulty=True),
        BankStrategy("bank_section", repository, limit_multiplier=3),
        BankStrategy("bank_aptitude_umbrella", repository, limit_multiplier=3,
                     match_section=False, aptitude_umbrella=True),
        AITopUpStrategy(client),
    ]


class ShortfallRecovery:
    def __init__(self, strategies: list, post_filter: PostFilter):
        self.strategies = strategies
        self.post_filter = post_filter

    async def run(self, collected: List[CandidateQuestion], target: int, ctx: RecoveryContext,
                  trace: Optional[QuizTrace] = None) -> RecoveryOutcome:
        outcome = RecoveryOutcome(questions=list(collected), states=[RecoveryState.FILLING])
        questions = outcome.questions

        for attempt in range(1, ctx.config.max_recovery_attempts + 1):
            if len(questions) >= target:
                break
            outcome.attempts = attempt
            for strategy in self.strategies:
                shortfall = target - len(questions)
                if shortfall <= 0:
                    break
                if not strategy.applies(ctx):
                    continue
                outcome.states.append(strategy.state)

                candidates = await strategy.fetch(shortfall, ctx, questions)
                report = self.post_filter.run(
                    candidates,
                    ctx.filter_ctx,
                    collected=questions,
                    apply_topic_filter=strategy.apply_topic_filter,
                )
                added = report.kept[:shortfall]
                questions.extend(added)
                outcome.added_by[strategy.name] += len(added)

                logger.info(
                    f"🔁 Attempt {attempt} {strategy.name}: +{len(added)} "
                    f"(have {len(questions)}/{target})",
                    fetched=len(candidates),
                )
                if trace:
                    trace.add_span(f"recovery.{strategy.name}", attempt=attempt,
                                   fetched=len(candidates), added=len(added), total=len(questions))

        if len(questions) < target:
            outcome.states.append(RecoveryState.FAILED)
            logger.error(f"❌ Shortfall remains after {outcome.attempts} attempts ({len(questions)}/{target})")
            raise ValidationShortfall(len(questions), target)

        outcome.states.append(RecoveryState.DONE)
        outcome.questions = questions[:target]
        return outcome
