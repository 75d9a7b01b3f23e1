"""Tests for budget levels and the compaction pass."""

from unittest import mock

import pytest

from agent import context_budget
from agent.context_budget import BudgetLevel, Compactor, ContextBudgetManager, check_level
from agent.event_bus import COMPACTION, SUMMARIZATION_ERROR, EventBus
from agent.messages import Message, Role
from agent.session import SessionManager
from agent.token_counter import estimate_history, estimate_total_context

WORDS_75 = " ".join(["alpha"] * 100)  # 100 words -> 75 tokens


def long_history(pairs: int = 6) -> list[Message]:
    history = [Message.system("You are helpful")]  # 3 tokens
    for _ in range(pairs):
        history.append(Message.user(WORDS_75))
        history.append(Message.assistant(WORDS_75))
    return history


class TestCheckLevel:

    def test_thresholds(self):
        assert check_level(749, 1000) is BudgetLevel.NONE
        assert check_level(750, 1000) is BudgetLevel.WARNING
        assert check_level(899, 1000) is BudgetLevel.WARNING
        assert check_level(900, 1000) is BudgetLevel.CRITICAL
        assert check_level(5000, 1000) is BudgetLevel.CRITICAL

    def test_monotonic_in_current_tokens(self):
        order = [BudgetLevel.NONE, BudgetLevel.WARNING, BudgetLevel.CRITICAL]
        levels = [order.index(check_level(t, 1000)) for t in range(0, 1200, 7)]
        assert levels == sorted(levels)

    def test_rejects_non_positive_budget(self):
        with pytest.raises(ValueError):
            check_level(10, 0)

    def test_targets(self):
        assert ContextBudgetManager.target_for(BudgetLevel.CRITICAL, 1000) == 600
        assert ContextBudgetManager.target_for(BudgetLevel.WARNING, 1000) == 800
        assert ContextBudgetManager.target_for(BudgetLevel.NONE, 1000) == 1000

    def test_should_compact(self):
        manager = ContextBudgetManager()
        assert not manager.should_compact(100, 1000)
        assert manager.should_compact(800, 1000)


class TestCompactor:

    def test_within_budget_is_skipped(self):
        store = mock.MagicMock()
        result = Compactor(session_store=store).maybe_compact("s1", long_history(1), None, 1000)
        assert not result.performed
        assert result.level is BudgetLevel.NONE
        assert result.new_history is None
        store.compact_session.assert_not_called()

    def test_critical_prunes_to_sixty_percent(self):
        history = long_history(6)
        current = estimate_total_context(history, None)
        assert check_level(current, 1000) is BudgetLevel.CRITICAL

        store = mock.MagicMock()
        bus = EventBus("s1")
        with mock.patch.object(context_budget, "prune", wraps=context_budget.prune) as spy:
            result = Compactor(session_store=store, event_bus=bus).maybe_compact("s1", history, None, 1000)

        assert spy.call_args[0][1] == 600
        assert result.performed
        assert result.level is BudgetLevel.CRITICAL
        assert estimate_history(result.new_history) <= 600
        assert result.new_history[0].role is Role.SYSTEM
        assert result.messages_removed > 0
        store.compact_session.assert_called_once_with("s1", result.new_history, result.summary)
        phases = [e.data["phase"] for e in bus.get_events(types={COMPACTION})]
        assert phases == ["start", "done"]

    def test_warning_prunes_to_eighty_percent(self):
        history = long_history(5)  # 753 history tokens + 50 overhead
        with mock.patch.object(context_budget, "prune", wraps=context_budget.prune) as spy:
            result = Compactor().maybe_compact("s1", history, None, 1000)
        assert result.level is BudgetLevel.WARNING
        assert spy.call_args[0][1] == 800
        # Already under 800 history tokens, so the pruner keeps everything
        assert result.new_history == history

    def test_summarizer_failure_is_reported_not_raised(self):
        summarizer = mock.Mock()
        summarizer.summarize.side_effect = RuntimeError("model down")
        bus = EventBus("s1")
        result = Compactor(summarizer=summarizer, event_bus=bus).maybe_compact(
            "s1", long_history(6), None, 1000,
        )
        assert result.performed
        assert result.summary == ""
        errors = bus.get_events(types={SUMMARIZATION_ERROR})
        assert len(errors) == 1
        assert "model down" in errors[0].details

    def test_unsaved_session_is_not_persisted(self, tmp_path):
        store = SessionManager(tmp_path / "sessions")
        result = Compactor(session_store=store).maybe_compact("", long_history(6), None, 1000)
        assert result.performed
        assert list(store.base_dir.iterdir()) == []
