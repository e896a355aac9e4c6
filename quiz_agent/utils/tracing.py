import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog

logger = structlog.get_logger(__name__)


class QuizTrace:
    """Per-request trace of the generation pipeline stages"""

    def __init__(self, operation: str, **metadata):
        self.trace_id = str(uuid.uuid4())
        self.operation = operation
        self.metadata = metadata
        self.started_at = datetime.now(timezone.utc)
        self._start = time.perf_counter()
        self.spans: List[Dict[str, Any]] = []
        self.status = "started"
        self.duration_ms: Optional[int] = None

    def __enter__(self) -> "QuizTrace":
        structlog.contextvars.bind_contextvars(trace_id=self.trace_id)
        logger.info(f"🚀 Started trace for {self.operation}", **self.metadata)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc is not None:
            self.finish("error", error=str(exc), error_type=exc_type.__name__)
        elif self.status == "started":
            self.finish("completed")
        structlog.contextvars.unbind_contextvars("trace_id")

    def add_span(self, name: str, **data) -> None:
        """Record one pipeline stage"""
        self.spans.append({
            "name": name,
            "elapsed_ms": self.elapsed_ms(),
            "data": data,
        })
        logger.debug(f"Added span '{name}'", **data)

    def elapsed_ms(self) -> int:
        return int((time.perf_counter() - self._start) * 1000)

    def finish(self, status: str = "completed", **result_data) -> None:
        self.status = status
        self.duration_ms = self.elapsed_ms()
        logger.info(
            "TRACE_SUMMARY",
            operation=self.operation,
            status=status,
            duration_ms=self.duration_ms,
            spans=[span["name"] for span in self.spans],
            **result_data,
        )
