import os

os.environ.setdefault("SUPABASE_JWT_SECRET", "test-jwt-secret-with-enough-length-1234")
os.environ.setdefault("AI_GATEWAY_API_KEY", "test-gateway-key")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

from quiz_agent.services.generation_client import GenerationClient  # noqa: E402
from quiz_agent.services.section_classifier import KeywordSectionClassifier  # noqa: E402
from quiz_agent.utils.config import get_settings  # noqa: E402

from .fakes import FakeChatModel, FakeLLMFactory, FakeRepository  # noqa: E402


@pytest.fixture(autouse=True)
def _fresh_settings():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def classifier():
    return KeywordSectionClassifier()


@pytest.fixture
def repository():
    return FakeRepository()


@pytest.fixture
def chat_model():
    return FakeChatModel()


@pytest.fixture
def llm_factory(chat_model):
    return FakeLLMFactory(chat_model)


@pytest.fixture
def generation_client(llm_factory):
    return GenerationClient(llm_factory)
