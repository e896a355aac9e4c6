"""
Quiz generation pipeline.

normalize → assemble context → cache lookup → build prompts → personalize →
generate → post-filter → shortfall recovery (if needed) → log served
fingerprints. A cache bucket that covers the request skips generation.
All awaits are sequential within one request.
"""

from collections import Counter
from typing import List, Optional

import structlog

from ..errors import MalformedResponse, ValidationShortfall
from ..models.schemas import CandidateQuestion, GenerationRequest, QuizResponse
from ..utils.metrics import GENERATED_QUESTIONS, RECOVERY_COUNT
from ..utils.tracing import QuizTrace
from .context_assembler import AssembledContext, ContextAssembler
from .fingerprint_logger import FingerprintLogger, analytics_row
from .generation_client import GenerationClient
from .personalization import Personalizer
from .post_filter import FilterContext, PostFilter, QualityBounds, to_candidates
from .prompt_builder import build_prompts
from .question_cache import CACHE_SOURCE, CacheLookup, QuestionCache
from .quiz_config import QuizConfig
from .recovery import RecoveryContext, ShortfallRecovery, default_strategies
from .repository import QuizRepository
from .request_normalizer import normalize_request
from .section_classifier import KeywordSectionClassifier, SectionClassifier

logger = structlog.get_logger(__name__)


class QuizPipeline:
    """Orchestrates one generation request end to end"""

    def __init__(self, repository: QuizRepository, client: GenerationClient,
                 classifier: Optional[SectionClassifier] = None,
                 strategies: Optional[list] = None,
                 defaults: Optional[QuizConfig] = None):
        self.repository = repository
        self.client = client
        self.assembler = ContextAssembler(repository, defaults)
        self.personalizer = Personalizer(repository)
        self.post_filter = PostFilter(classifier or KeywordSectionClassifier())
        self.recovery = ShortfallRecovery(
            strategies if strategies is not None else default_strategies(repository, client),
            self.post_filter,
        )
        self.fingerprint_logger = FingerprintLogger(repository)
        self.cache = QuestionCache(repository)

    async def generate(self, request: GenerationRequest, caller_id: str) -> QuizResponse:
        request = normalize_request(request, caller_id)

        with QuizTrace(
            "generate_quiz",
            caller_id=caller_id,
            mode=request.mode.value,
            test_type=request.test_type.value,
            section=request.section_filter.value if request.section_filter else None,
        ) as trace:
            context = await self.assembler.assemble(request)
            config = context.config
            trace.add_span("context", topics=len(context.reference_topics),
                           excluded=len(context.excluded_fingerprints))

            filter_ctx = FilterContext(
                excluded_fingerprints=context.excluded_fingerprints,
                section_filter=request.section_filter,
                mode=request.mode,
                reference_topics=context.reference_topics,
                quality=QualityBounds.from_config(config),
                max_per_concept=config.max_questions_per_concept,
            )

            section = request.section_filter.value if request.section_filter else None
            target = config.target_count(request.requested_count, section)
            lookup = await self.cache.lookup(request, target, config)
            cached = self.post_filter.run(lookup.candidates, filter_ctx).kept if lookup.candidates else []
            trace.add_span("cache", available=lookup.available, reserved=len(lookup.candidates),
                           kept=len(cached))

            if len(cached) >= target:
                logger.info(f"⚡ Cache hit: {target} questions, skipping generation")
                return await self._deliver(
                    cached[:target], target, request, context, trace, lookup,
                    raw_count=0, temperature=config.temperature,
                )

            bundle = build_prompts(config, context.reference_topics, request, context.lesson)
            logger.info(f"🎯 Target: {bundle.target_count}, buffer: {bundle.buffered_count}",
                        template=bundle.template_key, cached=len(cached))
            trace.add_span("prompt", target=bundle.target_count, buffered=bundle.buffered_count,
                           template=bundle.template_key)

            prompts = await self.personalizer.personalize(request, bundle, config)
            trace.add_span("personalization", temperature=prompts.temperature,
                           level=prompts.profile.level if prompts.profile else None,
                           examples=prompts.examples_used)

            try:
                raw = await self.client.generate(
                    prompts.system_prompt, prompts.user_prompt, config.model, prompts.temperature
                )
            except MalformedResponse as e:
                logger.warning(f"⚠️ Primary generation unusable, relying on recovery: {e.details}")
                raw = []
            trace.add_span("generation", raw=len(raw))

            report = self.post_filter.run(to_candidates(raw, source="ai_generated"), filter_ctx,
                                          collected=cached)
            questions = cached + report.kept
            trace.add_span("post_filter", kept=len(report.kept), dropped=dict(report.dropped))

            if len(questions) < bundle.target_count:
                logger.info(f"⚠️ Missing {bundle.target_count - len(questions)} questions, entering recovery")
                recovery_ctx = RecoveryContext(
                    request=request,
                    config=config,
                    filter_ctx=filter_ctx,
                    system_prompt=prompts.system_prompt,
                    topic_names=context.topic_names,
                )
                try:
                    outcome = await self.recovery.run(questions, bundle.target_count, recovery_ctx, trace)
                except ValidationShortfall:
                    RECOVERY_COUNT.labels(outcome="failed").inc()
                    raise
                RECOVERY_COUNT.labels(outcome="done").inc()
                questions = outcome.questions
            else:
                questions = questions[:bundle.target_count]

            return await self._deliver(
                questions, bundle.target_count, request, context, trace, lookup,
                raw_count=len(raw), temperature=prompts.temperature,
            )

    async def _deliver(self, questions: List[CandidateQuestion], target: int, request: GenerationRequest,
                       context: AssembledContext, trace: QuizTrace, lookup: CacheLookup,
                       raw_count: int, temperature: float) -> QuizResponse:
        """Record what is served and build the response"""
        config = context.config
        generation_time = trace.elapsed_ms()
        sources = Counter(q.source for q in questions)
        for source, count in sources.items():
            GENERATED_QUESTIONS.labels(source=source).inc(count)

        from_cache = sources[CACHE_SOURCE]
        await self.cache.mark_used(questions, lookup)
        await self.fingerprint_logger.log_served(questions, request, temperature, config.model)
        await self.fingerprint_logger.log_analytics(analytics_row(
            request.caller_id, raw_count, questions, generation_time, config.model, temperature
        ))
        self.fingerprint_logger.refresh_stats()

        logger.info(f"✅ Success: {len(questions)}/{target} questions in {generation_time}ms",
                    sources=dict(sources))
        trace.finish("completed", delivered=len(questions), sources=dict(sources))

        return QuizResponse(
            questions=questions,
            test_type=request.test_type,
            track=request.track,
            content_title=context.content_title,
            day_number=request.day_number,
            generation_time=generation_time,
            from_cache=from_cache > 0,
            cache_hit_rate=round(from_cache / target * 100) if target else 0,
        )
