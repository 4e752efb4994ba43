"""Tests for conversation state, token budget and export/import."""

import json

import pytest

from privateagent.conversation import (
    RECENT_MESSAGES_KEPT,
    RESET_NOTICE,
    ConversationState,
    HistoryImportError,
    estimate_tokens,
)
from privateagent.schemas import Role


class TestTokenEstimate:
    """Test the character-based token estimate."""

    def test_four_chars_per_token(self):
        """Estimate is length divided by four."""
        assert estimate_tokens("abcd" * 10) == 10

    def test_empty_text(self):
        """Empty text costs nothing."""
        assert estimate_tokens("") == 0

    def test_system_prompt_not_counted(self):
        """The system prompt is held outside the log and is not estimated."""
        state = ConversationState(system_prompt="x" * 10_000, max_context_tokens=10)
        state.add_message(Role.USER, "hi")
        assert state.estimated_tokens == 0.5


class TestResetPolicy:
    """Test history truncation when the budget is exceeded."""

    def test_under_budget_keeps_everything(self):
        """No reset while the estimate fits."""
        state = ConversationState(max_context_tokens=1000)
        for i in range(5):
            assert state.add_message(Role.USER, f"message {i}") is False
        assert len(state) == 5

    def test_reset_keeps_notice_and_recent_messages(self):
        """Over budget: reset notice followed by the last ten messages."""
        state = ConversationState(max_context_tokens=50)
        reset = False
        for i in range(30):
            reset = state.add_message(Role.USER if i % 2 == 0 else Role.ASSISTANT, f"message number {i:02d}") or reset
        assert reset is True

        history = state.history()
        assert history[0].role == "system"
        assert history[0].content == RESET_NOTICE
        assert [m.content for m in history[1:]] == [f"message number {i:02d}" for i in range(20, 30)]
        assert len(history) == RECENT_MESSAGES_KEPT + 1

    def test_reset_keeps_older_system_messages(self):
        """System-role messages outside the recent window survive a reset."""
        state = ConversationState(max_context_tokens=1000)
        state.add_message(Role.SYSTEM, "pinned instruction")
        for i in range(12):
            state.add_message(Role.USER, f"short {i}")

        state.max_context_tokens = 5
        assert state.add_message(Role.USER, "one more message that pushes over") is True

        history = state.history()
        assert history[0].content == "pinned instruction"
        assert history[1].content == RESET_NOTICE
        assert len(history) == 2 + RECENT_MESSAGES_KEPT

    def test_single_reset_notice_after_repeated_resets(self):
        """Earlier reset notices are replaced, not accumulated."""
        state = ConversationState(max_context_tokens=20)
        for i in range(60):
            state.add_message(Role.USER, f"some longer message {i}")

        notices = [m for m in state.history() if m.content == RESET_NOTICE]
        assert len(notices) == 1

    def test_single_reset_notice_in_short_history(self):
        """A notice inside the recent window is replaced too."""
        state = ConversationState(max_context_tokens=20)
        assert state.add_message(Role.USER, "x" * 100) is True
        assert state.add_message(Role.ASSISTANT, "y") is True
        assert state.add_message(Role.USER, "z") is True

        assert [m.content for m in state.history()] == [RESET_NOTICE, "x" * 100, "y", "z"]

    def test_reset_preserves_order(self):
        """Recent messages stay in chronological order."""
        state = ConversationState(max_context_tokens=30)
        for i in range(20):
            state.add_message(Role.USER, f"msg-{i:02d} padding padding")

        contents = [m.content for m in state.history() if m.content != RESET_NOTICE]
        assert contents == sorted(contents)

    def test_non_positive_budget_rejected(self):
        """A budget of zero is a configuration error."""
        with pytest.raises(ValueError):
            ConversationState(max_context_tokens=0)


class TestClear:
    """Test clearing the log."""

    def test_clear_keeps_system_prompt(self):
        """Clearing empties the log but keeps the prompt."""
        state = ConversationState(system_prompt="Be brief.")
        state.add_message(Role.USER, "hello")
        state.clear()
        assert len(state) == 0
        assert state.system_prompt == "Be brief."


class TestExportImport:
    """Test the exported document format and import validation."""

    def test_export_uses_camel_case_keys(self):
        """Exported documents carry model, systemPrompt, history and timestamp."""
        state = ConversationState(system_prompt="Be brief.")
        state.add_message(Role.USER, "hello")
        state.add_message(Role.ASSISTANT, "hi")

        document = json.loads(state.export("mistral"))

        assert document["model"] == "mistral"
        assert document["systemPrompt"] == "Be brief."
        assert document["history"] == [
            {"role": "user", "content": "hello"},
            {"role": "assistant", "content": "hi"},
        ]
        assert document["timestamp"]

    def test_import_restores_history_and_prompt(self):
        """Import of an export yields the same history and prompt."""
        source = ConversationState(system_prompt="Answer in French.")
        source.add_message(Role.USER, "bonjour")
        blob = source.export("llama2")

        target = ConversationState()
        document = target.load(blob)

        assert document.model == "llama2"
        assert target.system_prompt == "Answer in French."
        assert target.history() == source.history()

    def test_import_without_system_prompt_keeps_current(self):
        """A document without systemPrompt leaves the prompt alone."""
        state = ConversationState(system_prompt="Current prompt")
        state.load(json.dumps({"history": [{"role": "user", "content": "x"}]}))
        assert state.system_prompt == "Current prompt"
        assert len(state) == 1

    def test_import_without_history_empties_log(self):
        """A document without history means an empty log."""
        state = ConversationState()
        state.add_message(Role.USER, "old")
        state.load(json.dumps({"model": "llama2"}))
        assert len(state) == 0

    @pytest.mark.parametrize(
        "blob",
        [
            "not json at all",
            "[1, 2, 3]",
            json.dumps({"history": [{"role": "wizard", "content": "x"}]}),
            json.dumps({"history": "nope"}),
        ],
    )
    def test_malformed_import_leaves_state_untouched(self, blob):
        """Invalid documents raise and change nothing."""
        state = ConversationState(system_prompt="Keep me")
        state.add_message(Role.USER, "existing")

        with pytest.raises(HistoryImportError):
            state.load(blob)

        assert state.system_prompt == "Keep me"
        assert [m.content for m in state.history()] == ["existing"]
