from prometheus_client import Counter, Histogram

REQUEST_COUNT = Counter("quiz_agent_requests_total", "Total requests", ["method", "endpoint", "status"])
REQUEST_DURATION = Histogram("quiz_agent_request_duration_seconds", "Request duration", ["endpoint"])
GENERATED_QUESTIONS = Counter("quiz_agent_questions_delivered_total", "Delivered questions", ["source"])
ERROR_COUNT = Counter("quiz_agent_errors_total", "Total errors", ["type"])
RECOVERY_COUNT = Counter("quiz_agent_recovery_total", "Requests that entered shortfall recovery", ["outcome"])
