"""
AI tutor: streams a chat reply from the gateway as server-sent events.

The first chunk is awaited before the response starts so that provider
429/402 errors can still be returned with the matching HTTP status.
"""

import json
from typing import AsyncIterator, List, Optional

import openai
import structlog
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from ..models.schemas import ChatMessage
from .generation_client import LLMFactory, map_provider_error

logger = structlog.get_logger(__name__)

TUTOR_SYSTEM_PROMPT = """أنت مدرس خصوصي ذكي متخصص في مساعدة الطلاب على الاستعداد لاختبارات القدرات والتحصيلي في السعودية.

مهامك:
1. شرح المفاهيم الرياضية والعلمية واللغوية بطريقة واضحة ومبسطة
2. الإجابة على أسئلة الطلاب بدقة وصبر
3. تقديم أمثلة توضيحية عند الحاجة
4. تقديم استراتيجيات حل المسائل
5. مساعدة الطلاب في فهم نقاط ضعفهم وتحسينها

أسلوبك:
- استخدم اللغة العربية الفصحى البسيطة
- قدم خطوات حل واضحة ومنظمة
- اسأل أسئلة توجيهية لمساعدة الطالب على الفهم

تذكر: أنت هنا لمساعدة الطالب على التعلم، وليس فقط لإعطاء الإجابات."""


def sse_event(payload) -> str:
    data = payload if isinstance(payload, str) else json.dumps(payload, ensure_ascii=False)
    return f"data: {data}\n\n"


def to_langchain_messages(messages: List[ChatMessage]) -> List[BaseMessage]:
    converted: List[BaseMessage] = [SystemMessage(content=TUTOR_SYSTEM_PROMPT)]
    for message in messages:
        if message.role == "user":
            converted.append(HumanMessage(content=message.content))
        else:
            converted.append(AIMessage(content=message.content))
    return converted


class TutorService:
    def __init__(self, llm_factory: LLMFactory, model: str, temperature: float = 0.7):
        self.llm_factory = llm_factory
        self.model = model
        self.temperature = temperature

    async def stream_reply(self, messages: List[ChatMessage],
                           conversation_id: Optional[str] = None) -> AsyncIterator[str]:
        """Start the upstream stream and return an SSE iterator over it"""
        logger.info("💬 AI tutor request", conversation_id=conversation_id, message_count=len(messages))
        llm = self.llm_factory(self.model, self.temperature)
        upstream = llm.astream(to_langchain_messages(messages))
        try:
            first = await upstream.__anext__()
        except StopAsyncIteration:
            first = None
        except (openai.APIStatusError, openai.APIConnectionError) as e:
            mapped = map_provider_error(e)
            logger.error(f"❌ Tutor gateway call failed: {mapped.message}", error=str(e))
            raise mapped from e
        return self._events(first, upstream)

    async def _events(self, first, upstream) -> AsyncIterator[str]:
        if first is not None and first.content:
            yield sse_event({"content": first.content})
        if first is not None:
            try:
                async for chunk in upstream:
                    if chunk.content:
                        yield sse_event({"content": chunk.content})
            except (openai.APIStatusError, openai.APIConnectionError) as e:
                logger.error(f"❌ Tutor stream interrupted: {e}")
                yield sse_event({"error": map_provider_error(e).message})
        yield sse_event("[DONE]")
