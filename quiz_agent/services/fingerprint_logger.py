"""
Best-effort persistence after a successful generation: served fingerprints,
one analytics row, and a stats refresh. Nothing here may fail the request.
"""

import asyncio
from collections import Counter
from typing import List, Optional, Set

import psycopg2
import structlog

from ..models.schemas import CandidateQuestion, GenerationRequest, ServedFingerprintRecord
from .repository import QuizRepository

logger = structlog.get_logger(__name__)

# sources produced by this request's own model calls
GENERATED_SOURCES = ("ai_generated", "ai_topup")


def build_records(questions: List[CandidateQuestion], request: GenerationRequest,
                  temperature: Optional[float], model: Optional[str]) -> List[ServedFingerprintRecord]:
    return [
        ServedFingerprintRecord(
            caller_id=request.caller_id,
            content_fingerprint=q.content_fingerprint,
            payload_snapshot=q.snapshot(),
            day_number=request.day_number or 0,
            topic_name=q.topic_tag or "عام",
            section=q.section or "",
            test_type=request.test_type.value,
            difficulty=q.difficulty.value,
            generation_source=q.source,
            generation_temperature=temperature if q.source in GENERATED_SOURCES else None,
            model_used=model if q.source == "ai_generated" else None,
        )
        for q in questions
    ]


def analytics_row(caller_id: str, raw_count: int, questions: List[CandidateQuestion],
                  generation_time_ms: int, model: str, temperature: float) -> dict:
    unique = len({q.content_fingerprint for q in questions})
    delivered = len(questions)
    return {
        "user_id": caller_id,
        "questions_generated": raw_count,
        "questions_unique": unique,
        "diversity_score": round(unique / delivered * 100) if delivered else 0,
        "quality_score": round(min(delivered, raw_count) / raw_count * 100) if raw_count else 0,
        "generation_time_ms": generation_time_ms,
        "model_used": model,
        "temperature": temperature,
    }


class FingerprintLogger:
    def __init__(self, repository: QuizRepository):
        self.repository = repository
        self._background: Set[asyncio.Task] = set()

    async def log_served(self, questions: List[CandidateQuestion], request: GenerationRequest,
                         temperature: Optional[float], model: Optional[str]) -> bool:
        try:
            await self.repository.log_served_questions(build_records(questions, request, temperature, model))
        except psycopg2.Error as e:
            logger.warning(f"⚠️ Failed to log served questions: {e}")
            return False
        sources = Counter(q.source for q in questions)
        logger.info(f"✅ Logged {len(questions)} served fingerprints", sources=dict(sources))
        return True

    async def log_analytics(self, row: dict) -> bool:
        try:
            await self.repository.log_generation_analytics(row)
        except psycopg2.Error as e:
            logger.warning(f"⚠️ Failed to log generation analytics: {e}")
            return False
        logger.info(
            f"📊 Analytics: diversity={row['diversity_score']}%, quality={row['quality_score']}%"
        )
        return True

    def refresh_stats(self) -> None:
        """Fire-and-forget ``refresh_questions_stats()``"""
        task = asyncio.create_task(self._refresh_stats())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _refresh_stats(self) -> None:
        try:
            await self.repository.refresh_questions_stats()
        except psycopg2.Error as e:
            logger.warning(f"⚠️ refresh_questions_stats failed: {e}")
