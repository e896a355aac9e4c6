from quiz_agent.services.fingerprint import compute_fingerprint, normalize_text


def test_fingerprint_is_deterministic():
    text = "ما ناتج جمع العددين 3 و 4؟"
    assert compute_fingerprint(text) == compute_fingerprint(text)
    assert len(compute_fingerprint(text)) == 16


def test_fingerprint_ignores_whitespace_case_and_diacritics():
    assert compute_fingerprint("  What is  2+2? ") == compute_fingerprint("what is 2+2?")
    assert compute_fingerprint("العِلْمُ نور") == compute_fingerprint("العلم نور")


def test_distinct_texts_do_not_collide_within_a_batch():
    texts = [f"ما ناتج جمع العددين {i} و {i + 1}؟" for i in range(500)]
    assert len({compute_fingerprint(t) for t in texts}) == len(texts)


def test_normalize_text_handles_none():
    assert normalize_text(None) == ""
