"""Conversation state: ordered message log with a token budget and reset policy."""

from __future__ import annotations

import json
import logging

from pydantic import ValidationError

from privateagent.config import DEFAULT_SYSTEM_PROMPT
from privateagent.schemas import HistoryExport, Message, Role, utc_now

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4
RECENT_MESSAGES_KEPT = 10
RESET_NOTICE = "[Previous conversation context was reset due to length limit]"


class HistoryImportError(Exception):
    """Raised when an exported history document cannot be parsed."""

    pass


def estimate_tokens(text: str) -> float:
    """Estimate token count (1 token ~ 4 characters)."""
    return len(text) / CHARS_PER_TOKEN


def _is_reset_notice(message: Message) -> bool:
    return message.role == Role.SYSTEM and message.content == RESET_NOTICE


class ConversationState:
    """Chronological message log owned by one agent.

    The system prompt is held separately from the log and is not part of the
    token estimate. When the estimate exceeds ``max_context_tokens`` the log
    is replaced by its system-role messages, one reset notice and the most
    recent messages.
    """

    def __init__(
        self,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        max_context_tokens: int = 4096,
    ):
        if max_context_tokens <= 0:
            raise ValueError("max_context_tokens must be positive")
        self.system_prompt = system_prompt
        self.max_context_tokens = max_context_tokens
        self._messages: list[Message] = []

    def __len__(self) -> int:
        return len(self._messages)

    @property
    def estimated_tokens(self) -> float:
        return estimate_tokens("".join(m.content for m in self._messages))

    def add_message(self, role: Role | str, content: str) -> bool:
        """Append a message, then apply the reset policy.

        Returns:
            True if the history was truncated
        """
        self._messages.append(Message(role=role, content=content))
        return self._check_and_reset()

    def _check_and_reset(self) -> bool:
        if self.estimated_tokens <= self.max_context_tokens:
            return False

        # Earlier reset notices are replaced by the new one, wherever they sit
        messages = [m for m in self._messages if not _is_reset_notice(m)]
        older = messages[:-RECENT_MESSAGES_KEPT]
        recent = messages[-RECENT_MESSAGES_KEPT:]
        system_messages = [m for m in older if m.role == Role.SYSTEM]
        self._messages = [
            *system_messages,
            Message(role=Role.SYSTEM, content=RESET_NOTICE),
            *recent,
        ]
        logger.info(
            f"Context reset: kept {len(system_messages)} system and {len(recent)} recent messages"
        )
        return True

    def history(self) -> tuple[Message, ...]:
        """Read-only view of the message log."""
        return tuple(self._messages)

    def clear(self) -> None:
        """Empty the log. The system prompt is kept."""
        self._messages = []

    def export(self, model: str) -> str:
        """Serialize to a JSON document {model, systemPrompt, history, timestamp}."""
        document = HistoryExport(
            model=model,
            system_prompt=self.system_prompt,
            history=list(self._messages),
            timestamp=utc_now(),
        )
        return document.model_dump_json(by_alias=True, indent=2)

    def load(self, blob: str | bytes) -> HistoryExport:
        """Replace state from an exported document.

        The whole document is validated before anything is assigned, so a
        malformed blob leaves the state untouched. Missing ``systemPrompt``
        keeps the current prompt; missing ``history`` means an empty log.

        Raises:
            HistoryImportError: The blob is not a valid export document
        """
        try:
            data = json.loads(blob)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise HistoryImportError(f"Failed to import history: {e}") from e
        if not isinstance(data, dict):
            raise HistoryImportError("Failed to import history: expected a JSON object")

        try:
            document = HistoryExport.model_validate(data)
        except ValidationError as e:
            raise HistoryImportError(f"Failed to import history: {e}") from e

        if document.system_prompt:
            self.system_prompt = document.system_prompt
        self._messages = list(document.history)
        logger.info(f"Imported {len(self._messages)} messages")
        return document
