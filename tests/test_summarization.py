"""Tests for services/summarization.py: threshold and compaction."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from langchain_core.messages import AIMessage
from sqlalchemy.exc import OperationalError

from memobot.models.conversation import MessageRole
from memobot.models.schemas import ErrorKind, Failure, Ok
from memobot.services.llm import CompletionClient
from memobot.services.summarization import SummarizationPolicy

U, A = MessageRole.USER, MessageRole.ASSISTANT


@pytest.fixture
def summary_llm():
    model = MagicMock()
    model.invoke.return_value = AIMessage(content="They discussed the weather.")
    return model


@pytest.fixture
def policy(repo, budgeter, summary_llm, sleep):
    client = CompletionClient(budgeter, llm=summary_llm, max_retries=3, retry_delay=1.0, sleep=sleep)
    return SummarizationPolicy(repo, client, threshold=20, keep_after_summary=10)


def _seed(repo, conversation_id, count):
    for i in range(count):
        repo.append_message(conversation_id, U if i % 2 == 0 else A, f"m{i}", 1)


class TestShouldCompact:
    @pytest.mark.parametrize(
        "count, snapshot, expected",
        [(19, None, False), (20, None, True), (25, 10, False), (30, 10, True), (0, None, False)],
    )
    def test_threshold(self, policy, count, snapshot, expected):
        conversation = SimpleNamespace(message_count=count)
        last = SimpleNamespace(message_count_at_summary=snapshot) if snapshot is not None else None
        assert policy.should_compact(conversation, last) is expected

    def test_is_due_reads_storage(self, policy, repo, conversation):
        _seed(repo, conversation.id, 19)
        assert not policy.is_due(conversation.id)
        repo.append_message(conversation.id, A, "twentieth", 1)
        assert policy.is_due(conversation.id)

    def test_unknown_conversation_is_never_due(self, policy):
        assert policy.is_due(4242) is False


class TestCompact:
    def test_summarizes_and_prunes(self, policy, repo, conversation, summary_llm):
        _seed(repo, conversation.id, 25)

        outcome = policy.compact(conversation.id)

        assert isinstance(outcome, Ok)
        summary = outcome.value
        assert summary.summary == "They discussed the weather."
        assert summary.message_count_at_summary == 25
        assert len(repo.summaries(conversation.id)) == 1
        remaining = repo.all_messages(conversation.id)
        assert [m.content for m in remaining] == [f"m{i}" for i in range(15, 25)]
        assert summary_llm.invoke.call_count == 1

    def test_transcript_includes_roles(self, policy, repo, conversation, summary_llm):
        _seed(repo, conversation.id, 2)
        policy.compact(conversation.id)
        prompt = summary_llm.invoke.call_args[0][0]
        assert "summaries of conversations" in prompt[0].content
        assert "user: m0" in prompt[1].content
        assert "assistant: m1" in prompt[1].content

    def test_short_history_is_kept_whole(self, policy, repo, conversation):
        _seed(repo, conversation.id, 4)
        policy.compact(conversation.id)
        assert len(repo.all_messages(conversation.id)) == 4

    def test_nothing_to_summarize(self, policy, conversation, summary_llm):
        outcome = policy.compact(conversation.id)
        assert isinstance(outcome, Ok)
        assert outcome.value is None
        summary_llm.invoke.assert_not_called()

    def test_model_failure_leaves_history(self, policy, repo, conversation, summary_llm):
        _seed(repo, conversation.id, 21)
        summary_llm.invoke.side_effect = RuntimeError("provider down")

        outcome = policy.compact(conversation.id)

        assert isinstance(outcome, Failure)
        assert outcome.kind == ErrorKind.SUMMARIZATION_FAILED
        assert repo.summaries(conversation.id) == []
        assert len(repo.all_messages(conversation.id)) == 21

    def test_storage_failure_becomes_outcome(self, policy, repo, conversation):
        _seed(repo, conversation.id, 3)
        repo.add_summary = MagicMock(side_effect=OperationalError("INSERT", {}, Exception("locked")))

        outcome = policy.compact(conversation.id)

        assert outcome.kind == ErrorKind.SUMMARIZATION_FAILED
        assert "locked" in outcome.detail
