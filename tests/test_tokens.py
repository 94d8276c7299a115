"""Tests for the character-based token estimator."""

from context_relay.tokens import CHARS_PER_TOKEN, estimate_tokens, format_token_count


def test_estimate_tokens_rounds_up():
    assert estimate_tokens("") == 0
    assert estimate_tokens("a") == 1
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2
    assert estimate_tokens("x" * 400) == 100


def test_estimate_tokens_handles_none():
    assert estimate_tokens(None) == 0


def test_estimate_tokens_is_monotone():
    previous = 0
    for n in range(0, 50):
        current = estimate_tokens("y" * n)
        assert current >= previous
        previous = current


def test_estimate_counts_characters_not_bytes():
    # 4 multibyte characters -> 1 token, regardless of UTF-8 length
    assert estimate_tokens("éééé") == 1
    assert CHARS_PER_TOKEN == 4


def test_format_token_count():
    assert format_token_count(950) == "950 tokens"
    assert format_token_count(1000) == "1.0k tokens"
    assert format_token_count(4520) == "4.5k tokens"
