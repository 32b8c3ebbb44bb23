"""Archive and summarisation decisions. Pure functions of a record and config."""

from __future__ import annotations

from stratum.models.config import ArchiveConfig
from stratum.models.conversation import ArchiveDecision, Conversation


class ArchivePolicyEngine:
    """
    Decides when a conversation should move to the cold tier.

    A conversation qualifies when its ``message_count`` reaches
    ``archive_threshold_messages`` or its running token total reaches
    ``max_tokens_per_conversation``. Archived and deleted conversations
    never qualify; the decision records why.
    """

    def __init__(self, config: ArchiveConfig | None = None) -> None:
        self._config = config or ArchiveConfig()

    @property
    def config(self) -> ArchiveConfig:
        return self._config

    def evaluate(self, conversation: Conversation) -> ArchiveDecision:
        cfg = self._config
        tokens = conversation.metadata.total_tokens
        reasons: list[str] = []
        over_threshold = False

        if conversation.message_count >= cfg.archive_threshold_messages:
            reasons.append(
                f"Message count ({conversation.message_count}) exceeds threshold "
                f"({cfg.archive_threshold_messages})"
            )
            over_threshold = True
        if tokens >= cfg.max_tokens_per_conversation:
            reasons.append(
                f"Token count ({tokens}) exceeds threshold ({cfg.max_tokens_per_conversation})"
            )
            over_threshold = True

        if conversation.is_archived:
            reasons.append("Conversation is already archived")
        elif conversation.is_deleted:
            reasons.append("Conversation is deleted")

        return ArchiveDecision(
            should_archive=over_threshold and conversation.is_active,
            reasons=reasons,
            message_count=conversation.message_count,
            token_count=tokens,
            thresholds={
                "max_messages": cfg.max_active_messages,
                "archive_messages": cfg.archive_threshold_messages,
                "max_tokens": cfg.max_tokens_per_conversation,
            },
        )

    def should_summarize(self, conversation: Conversation) -> bool:
        """True when an active conversation has reached the early-summary trigger."""
        return (
            conversation.is_active
            and conversation.summary is None
            and conversation.message_count >= self._config.summarization_trigger
        )
