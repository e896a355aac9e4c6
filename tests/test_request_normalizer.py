from quiz_agent.models.schemas import GenerationRequest
from quiz_agent.services.request_normalizer import normalize_request, sanitize_topic_filter


def test_strips_markup_characters():
    assert sanitize_topic_filter("<b>النسبة</b> 'والتناسب';") == "bالنسبة/b والتناسب"


def test_short_or_empty_filters_are_dropped():
    assert sanitize_topic_filter(None) is None
    assert sanitize_topic_filter("  ") is None
    assert sanitize_topic_filter("<a>") is None


def test_long_filters_are_truncated():
    assert len(sanitize_topic_filter("ك" * 300)) == 100


def test_caller_id_is_bound_from_token():
    request = GenerationRequest(caller_id="forged", topic_filter="(الهندسة)")
    normalized = normalize_request(request, "verified")
    assert normalized.caller_id == "verified"
    assert normalized.topic_filter == "الهندسة"
    assert request.caller_id == "forged"
