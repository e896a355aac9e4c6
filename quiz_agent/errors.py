"""
Error taxonomy for the quiz agent.

Every error carries the HTTP status it maps to and a user-facing (Arabic)
message; the API layer renders them as ``{"error": ..., "details": ...}``.
"""

from typing import Optional


class QuizAgentError(Exception):
    status_code = 500
    default_message = "حدث خطأ غير متوقع"

    def __init__(self, message: Optional[str] = None, details: Optional[str] = None):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)


class InvalidRequest(QuizAgentError):
    status_code = 400
    default_message = "طلب غير صالح"


class AuthError(QuizAgentError):
    status_code = 401
    default_message = "غير مصرح"


class ContentNotFound(QuizAgentError):
    status_code = 404
    default_message = "المحتوى غير موجود"


class UpstreamRateLimited(QuizAgentError):
    """Provider answered 429"""

    status_code = 429
    default_message = "تم تجاوز الحد المسموح (rate limit). يرجى المحاولة لاحقاً."


class UpstreamQuotaExhausted(QuizAgentError):
    """Provider answered 402"""

    status_code = 402
    default_message = "يرجى إضافة رصيد للمتابعة."


class UpstreamError(QuizAgentError):
    """Any other provider failure (non-2xx, connection, timeout)"""

    status_code = 500

    def __init__(self, message: Optional[str] = None, details: Optional[str] = None,
                 upstream_status: Optional[int] = None):
        self.upstream_status = upstream_status
        if message is None:
            suffix = f": {upstream_status}" if upstream_status else ""
            message = f"فشل توليد الأسئلة{suffix}"
        super().__init__(message, details)


class MalformedResponse(QuizAgentError):
    """Provider output did not satisfy the tool schema and nothing was recoverable"""

    status_code = 500
    default_message = "استجابة غير صالحة من خدمة التوليد"


class ValidationShortfall(QuizAgentError):
    """Could not assemble the requested number of valid questions"""

    status_code = 500

    def __init__(self, collected: int, target: int):
        self.collected = collected
        self.target = target
        super().__init__(
            f"عدد الأسئلة الصالحة غير كافٍ ({collected}/{target})",
            details=f"insufficient valid questions ({collected}/{target})",
        )


class RateLimitExceeded(QuizAgentError):
    """Local per-caller limiter rejected the call"""

    status_code = 429
    default_message = "تم تجاوز الحد المسموح من الطلبات. يرجى المحاولة لاحقاً."
