"""Token estimation for message content with caching and graceful fallback."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from stratum.models.conversation import Message

# Per-message overhead for role and framing.
_MESSAGE_OVERHEAD_TOKENS = 4


class TokenEstimator:
    """
    Token counting used to maintain ``metadata.total_tokens``.

    Priority order:
    1. tiktoken when an encoding name is supplied (``cl100k_base``, ``o200k_base``)
    2. Character-based heuristic (``len // 4``) otherwise, or when tiktoken
       is unavailable

    Encoder objects are cached by encoding name (one load per process).
    """

    def __init__(self, encoding: str | None = None) -> None:
        self._encoding = encoding
        self._encoder_cache: dict[str, Any] = {}
        self._force_heuristic: bool = False
        """Set to True in tests to skip tiktoken import."""

    def estimate(self, text: str) -> int:
        """
        Estimate the token count for a string.

        Returns:
            Estimated token count, always >= 1 for non-empty text.
        """
        if not text:
            return 0
        if self._force_heuristic or self._encoding is None:
            return self._heuristic(text)
        try:
            return self._tiktoken_estimate(text, self._encoding)
        except Exception:
            return self._heuristic(text)

    def estimate_message(self, msg: Message) -> int:
        """
        Token cost of a message.

        An explicit ``msg.tokens`` value (e.g. provider-reported usage) wins
        over the estimate.
        """
        if msg.tokens is not None:
            return msg.tokens
        return _MESSAGE_OVERHEAD_TOKENS + self.estimate(msg.content)

    def _heuristic(self, text: str) -> int:
        """Conservative heuristic: 4 characters per token, minimum 1."""
        return max(1, len(text) // 4)

    def _tiktoken_estimate(self, text: str, encoding_name: str) -> int:
        """Encode with tiktoken, caching the encoder object."""
        if encoding_name not in self._encoder_cache:
            import tiktoken

            self._encoder_cache[encoding_name] = tiktoken.get_encoding(encoding_name)
        encoder = self._encoder_cache[encoding_name]
        return len(encoder.encode(text))
