"""Tests for tasks/chat.py: RQ entry points."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from rq.timeouts import JobTimeoutException

from memobot.models.schemas import ChatReply, ErrorKind, Failure, Ok
from memobot.services.llm import GENERIC_FAILURE_TEXT
from memobot.tasks import chat

IDENTITY = {"telegram_id": 111222333, "username": "testuser"}


@pytest.fixture
def telegram():
    return MagicMock()


@pytest.fixture
def session_service():
    return MagicMock()


@pytest.fixture(autouse=True)
def _patched(telegram, session_service):
    with (
        patch.object(chat, "TelegramService", return_value=telegram),
        patch.object(chat, "_session_service", return_value=session_service),
        patch.object(chat, "setup_logging"),
    ):
        yield


class TestProcessChatMessage:
    def test_sends_reply(self, telegram, session_service):
        session_service.process_message.return_value = Ok(
            ChatReply(content="Hi there!", conversation_id=3, total_tokens=18)
        )

        result = chat.process_chat_message(555, 77, IDENTITY, "Hello")

        assert result["status"] == "success"
        assert result["conversation_id"] == 3
        telegram.send_long_message.assert_called_once_with(555, "Hi there!", 77)
        telegram.close.assert_called_once()
        inbound = session_service.process_message.call_args[0][0]
        assert inbound.identity.telegram_id == 111222333
        assert inbound.text == "Hello"

    def test_typing_indicator_callback(self, telegram, session_service):
        def run(inbound, on_processing):
            on_processing()
            return Ok(ChatReply(content="ok", conversation_id=1, total_tokens=1))

        session_service.process_message.side_effect = run
        chat.process_chat_message(555, 77, IDENTITY, "Hello")
        telegram.send_chat_action.assert_called_once_with(555, "typing")

    def test_schedules_compaction_on_low_queue(self, session_service):
        session_service.process_message.return_value = Ok(
            ChatReply(content="ok", conversation_id=3, total_tokens=5, compaction_due=True)
        )
        queue = MagicMock()
        queue.enqueue.return_value = SimpleNamespace(id="job-9")

        with patch.object(chat, "get_queue", return_value=queue) as get_queue:
            chat.process_chat_message(555, 77, IDENTITY, "Hello")

        get_queue.assert_called_once_with("low")
        assert queue.enqueue.call_args[0][0] is chat.compact_conversation_task
        assert queue.enqueue.call_args.kwargs["conversation_id"] == 3

    def test_no_compaction_when_not_due(self, session_service):
        session_service.process_message.return_value = Ok(
            ChatReply(content="ok", conversation_id=3, total_tokens=5)
        )
        with patch.object(chat, "get_queue") as get_queue:
            chat.process_chat_message(555, 77, IDENTITY, "Hello")
        get_queue.assert_not_called()

    def test_failure_message_is_sent_to_user(self, telegram, session_service):
        session_service.process_message.return_value = Failure(
            ErrorKind.QUOTA_EXCEEDED, "You have reached the limit of 100 messages per day."
        )

        result = chat.process_chat_message(555, 77, IDENTITY, "Hello")

        assert result == {
            "status": "error",
            "kind": "quota_exceeded",
            "error": "You have reached the limit of 100 messages per day.",
        }
        telegram.send_message.assert_called_once_with(
            555, "You have reached the limit of 100 messages per day.", 77
        )

    def test_unexpected_error_sends_generic_text(self, telegram, session_service):
        session_service.process_message.side_effect = RuntimeError("boom")

        result = chat.process_chat_message(555, 77, IDENTITY, "Hello")

        assert result["status"] == "error"
        telegram.send_message.assert_called_once_with(555, GENERIC_FAILURE_TEXT, 77)
        telegram.close.assert_called_once()

    def test_job_timeout_replies_then_propagates(self, telegram, session_service):
        session_service.process_message.side_effect = JobTimeoutException("timeout")

        with pytest.raises(JobTimeoutException):
            chat.process_chat_message(555, 77, IDENTITY, "Hello")

        telegram.send_message.assert_called_once_with(555, GENERIC_FAILURE_TEXT, 77)
        telegram.close.assert_called_once()

    def test_delivery_failure_does_not_fail_task(self, telegram, session_service):
        session_service.process_message.return_value = Ok(
            ChatReply(content="ok", conversation_id=3, total_tokens=5)
        )
        telegram.send_long_message.side_effect = RuntimeError("network")
        assert chat.process_chat_message(555, 77, IDENTITY, "Hello")["status"] == "success"


class TestCompactConversationTask:
    def test_skipped(self, session_service):
        session_service.maybe_compact.return_value = Ok(None)
        assert chat.compact_conversation_task(3) == {"status": "skipped"}

    def test_success(self, session_service):
        session_service.maybe_compact.return_value = Ok(
            SimpleNamespace(id=5, message_count_at_summary=21)
        )
        assert chat.compact_conversation_task(3) == {
            "status": "success",
            "summary_id": 5,
            "message_count_at_summary": 21,
        }

    def test_error(self, session_service):
        session_service.maybe_compact.return_value = Failure(
            ErrorKind.SUMMARIZATION_FAILED, "Summarization failed.", "provider down"
        )
        assert chat.compact_conversation_task(3) == {"status": "error", "error": "provider down"}
