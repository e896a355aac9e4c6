"""
Pre-generated question cache.

A background job fills ``questions_cache`` per (test type, section,
difficulty, track) bucket. Section-filtered requests look there first;
rows handed out are reserved for the caller and marked used once
delivered. Cache failures never fail a request.
"""

from dataclasses import dataclass, field
from typing import Dict, List

import psycopg2
import structlog

from ..models.schemas import CandidateQuestion, GenerationRequest
from .fingerprint import compute_fingerprint
from .post_filter import to_candidates
from .quiz_config import QuizConfig
from .repository import QuizRepository

logger = structlog.get_logger(__name__)

CACHE_SOURCE = "cache"


@dataclass
class CacheLookup:
    candidates: List[CandidateQuestion] = field(default_factory=list)
    # computed fingerprint -> question_hash stored on the cache row
    stored_hashes: Dict[str, str] = field(default_factory=dict)
    available: int = 0


class QuestionCache:
    def __init__(self, repository: QuizRepository):
        self.repository = repository

    async def lookup(self, request: GenerationRequest, target: int, config: QuizConfig) -> CacheLookup:
        """Reserve up to ``target`` cached questions, only when the bucket can cover the whole request"""
        if not config.cache_enabled or request.section_filter is None:
            return CacheLookup()
        bucket = (request.test_type.value, request.section_filter.value,
                  request.difficulty.value, request.track.value)
        try:
            status = await self.repository.count_cache_questions(*bucket)
            logger.info(f"📦 Cache status: {status['available']}/{status['total']} available",
                        bucket="/".join(bucket))
            if status["available"] < target:
                return CacheLookup(available=status["available"])
            rows = await self.repository.fetch_cache_questions(*bucket, target)
            await self.repository.reserve_cache_questions([row["id"] for row in rows], request.caller_id)
        except psycopg2.Error as e:
            logger.warning(f"⚠️ Question cache unavailable, generating instead: {e}")
            return CacheLookup()

        lookup = CacheLookup(available=status["available"])
        for row in rows:
            data = row.get("question_data")
            if not isinstance(data, dict):
                continue
            for candidate in to_candidates([data], source=CACHE_SOURCE):
                lookup.candidates.append(candidate)
                if row.get("question_hash"):
                    lookup.stored_hashes[compute_fingerprint(candidate.text)] = row["question_hash"]
        logger.info(f"✅ Cache hit: {len(lookup.candidates)} questions reserved")
        return lookup

    async def mark_used(self, delivered: List[CandidateQuestion], lookup: CacheLookup) -> None:
        hashes = [
            lookup.stored_hashes[q.content_fingerprint]
            for q in delivered
            if q.source == CACHE_SOURCE and q.content_fingerprint in lookup.stored_hashes
        ]
        if not hashes:
            return
        try:
            await self.repository.mark_cache_used(hashes)
            logger.info(f"✅ Marked {len(hashes)} cache questions as used")
        except psycopg2.Error as e:
            logger.warning(f"⚠️ Could not mark cache questions used: {e}")
