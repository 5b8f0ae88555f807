"""Tests for the character-heuristic token estimate."""

from __future__ import annotations

import pytest

from modelhub.llm.token_counter import TokenCounter
from modelhub.llm.types import LanguageModelRequest, Message


class TestHeuristic:

    @pytest.mark.parametrize("k", [0, 1, 7, 250])
    def test_exact_multiple_of_four(self, k):
        counter = TokenCounter()
        request = LanguageModelRequest(messages=[Message.user("x" * (4 * k))])
        assert counter.count_request(request) == k

    def test_sums_characters_before_dividing(self):
        counter = TokenCounter()
        request = LanguageModelRequest(
            messages=[Message.system("abc"), Message.user("de"), Message.assistant("fgh")]
        )
        # 8 characters in total; per-message rounding would give 0.
        assert counter.count_request(request) == 2

    def test_counts_characters_not_bytes(self):
        counter = TokenCounter()
        request = LanguageModelRequest(messages=[Message.user("żółw")])
        assert counter.count_request(request) == 1

    def test_count_text(self):
        counter = TokenCounter()
        assert counter.count_text("") == 0
        assert counter.count_text("abcdefgh") == 2

    def test_no_model_means_heuristic(self):
        assert TokenCounter(None).uses_heuristic
