"""
Token estimation.

Backends that expose no tokenizer endpoint use a character heuristic: the
total number of characters across all messages, integer-divided by 4.  For
model names ``tiktoken`` recognises, its BPE encoder is used instead.
"""

from __future__ import annotations

from typing import Any

import tiktoken

from modelhub.llm.types import LanguageModelRequest

CHARS_PER_TOKEN = 4


class TokenCounter:
    """
    Estimate token counts for requests.

    Parameters
    ----------
    model:
        Model name passed to ``tiktoken.encoding_for_model``.  ``None``
        selects the character heuristic outright, as does a name tiktoken
        does not know.
    """

    def __init__(self, model: str | None = None) -> None:
        self.model = model
        self._encoding: Any = None
        self._resolved = model is None

    @property
    def uses_heuristic(self) -> bool:
        return self._get_encoding() is None

    def count_text(self, text: str) -> int:
        """Return the estimated token count for a plain string."""
        encoding = self._get_encoding()
        if encoding is not None:
            return len(encoding.encode(text))
        return len(text) // CHARS_PER_TOKEN

    def count_request(self, request: LanguageModelRequest) -> int:
        """
        Estimate the tokens the request's messages will occupy.

        The heuristic applies to the concatenated content, so rounding happens
        once for the whole request rather than per message.
        """
        encoding = self._get_encoding()
        if encoding is None:
            return request.total_characters() // CHARS_PER_TOKEN
        # Role markers and separators cost a few tokens per message.
        return sum(
            4 + len(encoding.encode(msg.content)) for msg in request.messages
        )

    def _get_encoding(self) -> Any:
        if not self._resolved:
            self._resolved = True
            try:
                self._encoding = tiktoken.encoding_for_model(self.model)
            except KeyError:
                # Not a model tiktoken knows about.
                self._encoding = None
        return self._encoding
