"""
Postgres access for the quiz pipeline.

Every call opens a short-lived psycopg2 connection in a worker thread
(``asyncio.to_thread``) so the event loop is never blocked. The pipeline
only reads configuration, content and the question bank, and appends to
the served-question and analytics logs; pre-generated cache rows are
reserved and marked used.
"""

import asyncio
from typing import Any, Dict, List, Optional, Sequence, Set

import psycopg2
import structlog
from psycopg2.extras import Json, RealDictCursor, execute_values

from ..models.schemas import (
    LessonContent,
    ReferenceTopic,
    ServedFingerprintRecord,
    TrainingExample,
    Weakness,
)

logger = structlog.get_logger(__name__)


class QuizRepository:
    """Thin parameterized-SQL layer over the platform tables"""

    def __init__(self, postgres_url: str, connect_timeout: int = 10):
        self.postgres_url = postgres_url
        self.connect_timeout = connect_timeout

    # ------------------------------------------------------------------
    # Low level helpers
    # ------------------------------------------------------------------

    def _connect(self):
        return psycopg2.connect(self.postgres_url, connect_timeout=self.connect_timeout)

    def _fetch_all(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        conn = self._connect()
        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cursor:
                cursor.execute(sql, params)
                rows = [dict(row) for row in cursor.fetchall()]
            conn.commit()
            return rows
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _execute(self, sql: str, params: Sequence[Any] = ()) -> None:
        conn = self._connect()
        try:
            with conn.cursor() as cursor:
                cursor.execute(sql, params)
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _execute_many(self, sql: str, rows: List[tuple]) -> None:
        conn = self._connect()
        try:
            with conn.cursor() as cursor:
                execute_values(cursor, sql, rows)
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def fetch_ai_settings(self) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(
            self._fetch_all, "SELECT setting_key, setting_value FROM ai_settings"
        )

    async def fetch_reference_topics(self, test_type: str, track: str, limit: int) -> List[ReferenceTopic]:
        """Active knowledge-base rows for a test type and track"""
        rows = await asyncio.to_thread(
            self._fetch_all,
            """
            SELECT id, title, content, related_topics, test_type, track, is_active, metadata
            FROM knowledge_base
            WHERE test_type = %s AND track = %s AND is_active = TRUE
            ORDER BY updated_at DESC NULLS LAST
            LIMIT %s
            """,
            (test_type, track, limit),
        )
        return [
            ReferenceTopic(
                id=str(row["id"]),
                title=row["title"],
                body_text=row.get("content") or "",
                related_topic_tags=row.get("related_topics") or [],
                test_type=row.get("test_type"),
                track=row.get("track"),
                is_active=bool(row.get("is_active", True)),
                metadata=row.get("metadata") or {},
            )
            for row in rows
        ]

    async def fetch_served_fingerprints(self, caller_id: str, limit: int) -> Set[str]:
        rows = await asyncio.to_thread(
            self._fetch_all,
            """
            SELECT question_hash FROM generated_questions_log
            WHERE user_id = %s
            ORDER BY created_at DESC
            LIMIT %s
            """,
            (caller_id, limit),
        )
        return {row["question_hash"] for row in rows if row.get("question_hash")}

    async def fetch_lesson_content(self, content_id: Optional[str] = None,
                                   day_number: Optional[int] = None) -> Optional[LessonContent]:
        if content_id:
            sql, params = "SELECT id, day_number, title, content_text FROM daily_content WHERE id = %s", (content_id,)
        else:
            sql, params = (
                "SELECT id, day_number, title, content_text FROM daily_content WHERE day_number = %s LIMIT 1",
                (day_number,),
            )
        rows = await asyncio.to_thread(self._fetch_all, sql, params)
        if not rows:
            return None
        row = rows[0]
        return LessonContent(
            id=str(row["id"]),
            day_number=row.get("day_number"),
            title=row["title"],
            content_text=row.get("content_text") or "",
        )

    async def fetch_bank_questions(self, test_type: Optional[str], section: Optional[str],
                                   difficulty: Optional[str], limit: int) -> List[Dict[str, Any]]:
        """Bank rows, least used first. ``None`` filters are not applied."""
        clauses, params = [], []
        if test_type:
            clauses.append("test_type = %s")
            params.append(test_type)
        if section:
            clauses.append("subject = %s")
            params.append(section)
        if difficulty:
            clauses.append("difficulty = %s")
            params.append(difficulty)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        return await asyncio.to_thread(
            self._fetch_all,
            f"""
            SELECT id, question_text, options, correct_answer, explanation,
                   subject AS section, subject, topic, question_type, difficulty,
                   usage_count, test_type
            FROM questions_bank
            {where}
            ORDER BY COALESCE(usage_count, 0), random()
            LIMIT %s
            """,
            tuple(params),
        )

    async def count_cache_questions(self, test_type: str, section: str, difficulty: str,
                                    track: str) -> Dict[str, int]:
        """Unused and total pre-generated rows for one cache bucket"""
        rows = await asyncio.to_thread(
            self._fetch_all,
            """
            SELECT COUNT(*) FILTER (WHERE is_used = FALSE) AS available, COUNT(*) AS total
            FROM questions_cache
            WHERE test_type = %s AND section = %s AND difficulty = %s AND track = %s
            """,
            (test_type, section, difficulty, track),
        )
        row = rows[0] if rows else {}
        return {"available": int(row.get("available") or 0), "total": int(row.get("total") or 0)}

    async def fetch_cache_questions(self, test_type: str, section: str, difficulty: str,
                                    track: str, limit: int) -> List[Dict[str, Any]]:
        """Random unused, unreserved cache rows; expired reservations are released first"""
        await asyncio.to_thread(self._execute, "SELECT clean_expired_cache_reservations()")
        return await asyncio.to_thread(
            self._fetch_all,
            """
            SELECT id, question_hash, question_data
            FROM questions_cache
            WHERE test_type = %s AND section = %s AND difficulty = %s AND track = %s
              AND is_used = FALSE AND reserved_by IS NULL
            ORDER BY random()
            LIMIT %s
            """,
            (test_type, section, difficulty, track, limit),
        )

    async def fetch_weaknesses(self, caller_id: str, section: str, test_type: str,
                               limit: int = 5) -> List[Weakness]:
        rows = await asyncio.to_thread(
            self._fetch_all,
            """
            SELECT topic_name, success_rate, priority_score, trend, attempt_count
            FROM user_weakness_profile
            WHERE user_id = %s AND section = %s AND test_type = %s
            ORDER BY priority_score DESC
            LIMIT %s
            """,
            (caller_id, section, test_type, limit),
        )
        return [Weakness(**{k: v for k, v in row.items() if v is not None}) for row in rows]

    async def fetch_recent_outcomes(self, caller_id: str, limit: int = 20) -> List[bool]:
        rows = await asyncio.to_thread(
            self._fetch_all,
            """
            SELECT is_correct FROM user_performance_history
            WHERE user_id = %s
            ORDER BY answered_at DESC
            LIMIT %s
            """,
            (caller_id, limit),
        )
        return [bool(row["is_correct"]) for row in rows]

    async def fetch_training_examples(self, section: str, test_type: str, min_quality: float,
                                      limit: int) -> List[TrainingExample]:
        rows = await asyncio.to_thread(
            self._fetch_all,
            """
            SELECT question_text, options, correct_answer, explanation, quality_score,
                   subject, difficulty, section
            FROM ai_training_examples
            WHERE section = %s AND test_type = %s AND quality_score >= %s
            ORDER BY quality_score DESC NULLS LAST
            LIMIT %s
            """,
            (section, test_type, min_quality, limit),
        )
        return [
            TrainingExample(**{**row, "quality_score": row.get("quality_score") or 0.0,
                               "explanation": row.get("explanation") or ""})
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Appends
    # ------------------------------------------------------------------

    async def log_served_questions(self, records: List[ServedFingerprintRecord]) -> None:
        if not records:
            return
        rows = [
            (
                r.caller_id, r.content_fingerprint, Json(r.payload_snapshot), r.day_number,
                r.topic_name, r.section, r.test_type, r.difficulty, r.generation_source,
                r.generation_temperature, r.model_used,
            )
            for r in records
        ]
        await asyncio.to_thread(
            self._execute_many,
            """
            INSERT INTO generated_questions_log
                (user_id, question_hash, question_data, day_number, topic_name, section,
                 test_type, difficulty, generation_source, generation_temperature, model_used)
            VALUES %s
            """,
            rows,
        )

    async def log_generation_analytics(self, row: Dict[str, Any]) -> None:
        columns = ("user_id", "questions_generated", "questions_unique", "diversity_score",
                   "quality_score", "generation_time_ms", "model_used", "temperature")
        await asyncio.to_thread(
            self._execute,
            f"INSERT INTO ai_generation_analytics ({', '.join(columns)}) "
            f"VALUES ({', '.join(['%s'] * len(columns))})",
            tuple(row.get(col) for col in columns),
        )

    async def reserve_cache_questions(self, ids: List[Any], caller_id: str) -> None:
        if not ids:
            return
        await asyncio.to_thread(
            self._execute,
            "UPDATE questions_cache SET reserved_by = %s, reserved_at = now() WHERE id = ANY(%s)",
            (caller_id, list(ids)),
        )

    async def mark_cache_used(self, question_hashes: List[str]) -> None:
        if not question_hashes:
            return
        await asyncio.to_thread(
            self._execute,
            "UPDATE questions_cache SET is_used = TRUE, used_at = now() WHERE question_hash = ANY(%s)",
            (list(question_hashes),),
        )

    async def refresh_questions_stats(self) -> None:
        await asyncio.to_thread(self._execute, "SELECT refresh_questions_stats()")

    async def ping(self) -> bool:
        """Cheap connectivity check for /health"""
        try:
            await asyncio.to_thread(self._fetch_all, "SELECT 1 AS ok")
            return True
        except psycopg2.Error as e:
            logger.warning(f"⚠️ Database ping failed: {e}")
            return False
