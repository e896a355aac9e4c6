"""
Generation client: one tool-call round trip to the OpenAI-compatible gateway.

The chat model is produced by an injectable factory so tests can substitute
a fake; in production it is ``langchain_openai.ChatOpenAI`` pointed at the
gateway with the client's own retries disabled.
"""

import json
from typing import Any, Callable, Dict, List, Optional

import openai
import structlog
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from ..errors import MalformedResponse, UpstreamError, UpstreamQuotaExhausted, UpstreamRateLimited
from ..utils.config import Settings

logger = structlog.get_logger(__name__)

LLMFactory = Callable[[str, float], BaseChatModel]

TOOL_NAME = "generate_quiz"

QUIZ_TOOL: Dict[str, Any] = {
    "type": "function",
    "function": {
        "name": TOOL_NAME,
        "description": "Generate multiple-choice quiz questions",
        "parameters": {
            "type": "object",
            "properties": {
                "questions": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "question_text": {"type": "string"},
                            "options": {
                                "type": "array",
                                "items": {"type": "string"},
                                "minItems": 4,
                                "maxItems": 4,
                            },
                            "correct_answer": {"type": "string"},
                            "explanation": {"type": "string"},
                            "section": {"type": "string", "enum": ["كمي", "لفظي"]},
                            "subject": {"type": "string"},
                            "topic": {"type": "string"},
                            "question_type": {"type": "string"},
                            "difficulty": {"type": "string", "enum": ["easy", "medium", "hard"]},
                        },
                        "required": [
                            "question_text", "options", "correct_answer", "explanation",
                            "section", "subject", "topic", "question_type",
                        ],
                    },
                }
            },
            "required": ["questions"],
        },
    },
}

_DECODER = json.JSONDecoder()


def make_gateway_llm_factory(settings: Settings) -> LLMFactory:
    """Factory building ChatOpenAI clients against the configured gateway"""

    def factory(model: str, temperature: float) -> BaseChatModel:
        return ChatOpenAI(
            model=model,
            temperature=temperature,
            api_key=settings.ai_gateway_api_key,
            base_url=settings.ai_gateway_url,
            timeout=settings.request_timeout_seconds,
            max_retries=0,
        )

    return factory


def map_provider_error(error: Exception) -> Exception:
    """Translate an openai client exception into our error taxonomy"""
    if isinstance(error, openai.APIStatusError):
        if error.status_code == 429:
            return UpstreamRateLimited(details=str(error))
        if error.status_code == 402:
            return UpstreamQuotaExhausted(details=str(error))
        return UpstreamError(upstream_status=error.status_code, details=str(error))
    if isinstance(error, openai.APIConnectionError):
        return UpstreamError(details=f"{type(error).__name__}: {error}")
    return error


def recover_question_objects(raw: Optional[str]) -> List[Dict[str, Any]]:
    """Pull every well-formed question object out of possibly truncated JSON"""
    if not raw:
        return []
    recovered = []
    start = raw.find("{")
    while start != -1:
        try:
            item, end = _DECODER.raw_decode(raw, start)
        except json.JSONDecodeError:
            start = raw.find("{", start + 1)
            continue
        if isinstance(item, dict) and "question_text" in item:
            recovered.append(item)
            start = raw.find("{", end)
        else:
            # an enclosing object; look inside it
            start = raw.find("{", start + 1)
    return recovered


def _questions_list(value: Any) -> Optional[List[Dict[str, Any]]]:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return None
    if isinstance(value, list):
        return [q for q in value if isinstance(q, dict)]
    return None


def extract_questions(response: AIMessage) -> List[Dict[str, Any]]:
    """Question dicts from a forced tool call, with recovery on schema or parse failure"""
    for call in response.tool_calls or []:
        if call.get("name") != TOOL_NAME:
            continue
        questions = _questions_list((call.get("args") or {}).get("questions"))
        if questions is not None:
            return questions

    raw_candidates = []
    for call in response.tool_calls or []:
        questions = (call.get("args") or {}).get("questions")
        raw_candidates.append(questions if isinstance(questions, str) else json.dumps(call.get("args"), ensure_ascii=False))
    raw_candidates += [call.get("args") for call in getattr(response, "invalid_tool_calls", None) or []]
    if isinstance(response.content, str):
        raw_candidates.append(response.content)

    for raw in raw_candidates:
        recovered = recover_question_objects(raw)
        if recovered:
            logger.warning(f"🩹 Recovered {len(recovered)} questions from a malformed tool call")
            return recovered

    raise MalformedResponse(details="generate_quiz tool call missing or unparseable")


class GenerationClient:
    def __init__(self, llm_factory: LLMFactory):
        self.llm_factory = llm_factory

    async def generate(self, system_prompt: str, user_prompt: str, model: str,
                       temperature: float) -> List[Dict[str, Any]]:
        """One forced ``generate_quiz`` call; returns the raw question dicts"""
        llm = self.llm_factory(model, temperature).bind_tools([QUIZ_TOOL], tool_choice=TOOL_NAME)
        messages = [SystemMessage(content=system_prompt), HumanMessage(content=user_prompt)]

        logger.info(f"🤖 Calling {model} (temperature={temperature})")
        try:
            response = await llm.ainvoke(messages)
        except (openai.APIStatusError, openai.APIConnectionError) as e:
            mapped = map_provider_error(e)
            logger.error(f"❌ AI gateway call failed: {mapped.message}", error=str(e))
            raise mapped from e

        questions = extract_questions(response)
        logger.info(f"✅ Generator returned {len(questions)} questions")
        return questions
