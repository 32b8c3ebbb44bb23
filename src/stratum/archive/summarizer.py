"""Conversation summarisation for the archival pipeline.

This module provides:

* **Summarizer**: the protocol the orchestrator depends on. ``summarize()``
  must never raise; a failed summary degrades to fallback text.

* **LLMSummarizer**: single-turn LLM call via ``litellm`` with a Jinja2
  prompt, bounded by ``asyncio.wait_for``. Set ``STRATUM_MOCK_LLM=1`` to get
  a deterministic offline response (used by tests and local development).

* **FallbackSummarizer**: deterministic, no I/O. Always returns the fallback
  text; useful when no LLM provider is configured.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Awaitable, Callable, Sequence
from typing import Protocol

import structlog
from jinja2 import Template

from stratum.models.config import SummarizerConfig
from stratum.models.conversation import Message

logger = structlog.get_logger("stratum.archive.summarizer")

LLMCall = Callable[..., Awaitable[str]]
"""``async (*, model, messages, max_tokens, temperature) -> str``"""

SUMMARY_SYSTEM_PROMPT = (
    "You are an expert at summarizing data analysis conversations. "
    "Provide clear, concise summaries."
)

SUMMARY_PROMPT_TEMPLATE = """\
Summarize the following conversation about the file "{{ label }}".

Focus on:
- Key questions asked by the user
- Main insights or data points discussed
- Important findings or patterns identified
- Overall theme of the conversation

Keep the summary concise (2-3 sentences) and informative.

<conversation>
{% for message in messages -%}
{{ message.role }}: {{ message.content }}
{% endfor -%}
</conversation>

Summary:"""


def empty_summary(context_label: str) -> str:
    """Summary text for a conversation with nothing to summarise."""
    return f"Empty conversation about {context_label}"


def fallback_summary(messages: Sequence[Message], context_label: str) -> str:
    """Deterministic summary used whenever the LLM path fails."""
    return (
        f"Conversation about {context_label} with {len(messages)} messages "
        "covering data analysis and insights."
    )


class Summarizer(Protocol):
    """Produces a short natural-language summary of a transcript. Never raises."""

    async def summarize(self, messages: Sequence[Message], context_label: str) -> str: ...


class FallbackSummarizer:
    """Summarizer that never calls out; always returns the fallback text."""

    async def summarize(self, messages: Sequence[Message], context_label: str) -> str:
        if not messages:
            return empty_summary(context_label)
        return fallback_summary(messages, context_label)


def _make_llm_call() -> LLMCall:
    """Return an async function that calls an LLM for summarisation."""

    async def _call(
        *, model: str, messages: list[dict[str, str]], max_tokens: int, temperature: float
    ) -> str:
        if os.environ.get("STRATUM_MOCK_LLM") == "1":
            content = messages[-1]["content"] if messages else ""
            conv_text = ""
            if "<conversation>" in content:
                conv_text = content.split("<conversation>")[1].split("</conversation>")[0]
            lines = [ln.strip() for ln in conv_text.splitlines() if ln.strip()]
            first = lines[0][:120] if lines else "(no content)"
            return f"The user discussed {len(lines)} turns, starting with: {first}"

        import litellm

        response = await litellm.acompletion(
            model=model,
            messages=messages,
            max_tokens=max_tokens,
            temperature=temperature,
        )
        return response.choices[0].message.content or ""

    return _call


class LLMSummarizer:
    """
    Summarizer backed by a single LLM completion.

    System messages are excluded from the prompt and each message body is
    capped at ``max_message_chars``. Any failure (timeout, provider error,
    empty response) is logged and replaced by :func:`fallback_summary`.

    Example::

        summarizer = LLMSummarizer(SummarizerConfig(model="anthropic/claude-haiku-3-5"))
        text = await summarizer.summarize(conversation.messages, conversation.subject_ref)
    """

    def __init__(
        self,
        config: SummarizerConfig | None = None,
        *,
        llm_call: LLMCall | None = None,
    ) -> None:
        self._config = config or SummarizerConfig()
        self._llm_call = llm_call or _make_llm_call()
        self._template = Template(SUMMARY_PROMPT_TEMPLATE)

    def build_prompt(self, messages: Sequence[Message], context_label: str) -> str:
        """Render the user prompt for ``messages``."""
        cap = self._config.max_message_chars
        rendered = [
            {"role": m.role, "content": _truncate(m.content, cap)}
            for m in messages
            if m.role != "system"
        ]
        return self._template.render(label=context_label, messages=rendered)

    async def summarize(self, messages: Sequence[Message], context_label: str) -> str:
        if not any(m.role != "system" for m in messages):
            return empty_summary(context_label)

        prompt = self.build_prompt(messages, context_label)
        try:
            text = await asyncio.wait_for(
                self._llm_call(
                    model=self._config.model,
                    messages=[
                        {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
                        {"role": "user", "content": prompt},
                    ],
                    max_tokens=self._config.max_tokens,
                    temperature=self._config.temperature,
                ),
                timeout=self._config.timeout_seconds,
            )
        except TimeoutError:
            logger.warning(
                "summary_timeout",
                context_label=context_label,
                timeout=self._config.timeout_seconds,
            )
            return fallback_summary(messages, context_label)
        except Exception as exc:
            logger.warning("summary_llm_error", context_label=context_label, error=str(exc))
            return fallback_summary(messages, context_label)

        text = text.strip()
        if not text:
            logger.warning("summary_empty_response", context_label=context_label)
            return fallback_summary(messages, context_label)

        logger.info(
            "summary_generated",
            context_label=context_label,
            message_count=len(messages),
            chars=len(text),
        )
        return text


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + " [truncated]"
