"""Tests for estimate_token_count."""

from story_ai.tokens import estimate_token_count


def test_empty_text_is_zero():
    assert estimate_token_count("") == 0


def test_western_words_count_once():
    assert estimate_token_count("hello world") == 2


def test_cjk_characters_count_each():
    assert estimate_token_count("你好") == 2


def test_mixed_text():
    assert estimate_token_count("hi 你好") == 3


def test_punctuation_counts_as_tokens():
    # "R12" is one word, "[" and "]" are one token each
    assert estimate_token_count("[R12] go!") == 5


def test_accented_latin_is_one_word():
    assert estimate_token_count("café") == 1
