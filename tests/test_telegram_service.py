"""Tests for services/telegram.py."""

from __future__ import annotations

import json

import httpx

from memobot.services.telegram import TelegramService


def _service(sent):
    def handler(request: httpx.Request) -> httpx.Response:
        sent.append((request.url.path, json.loads(request.content)))
        return httpx.Response(200, json={"ok": True})

    return TelegramService(token="TOKEN", client=httpx.Client(transport=httpx.MockTransport(handler)))


def test_send_message_replies_to_original():
    sent = []
    _service(sent).send_message(555, "hi", 77)
    assert sent == [("/botTOKEN/sendMessage", {"chat_id": 555, "text": "hi", "reply_to_message_id": 77})]


def test_long_message_is_split_and_only_first_chunk_replies():
    sent = []
    _service(sent).send_long_message(555, "x" * 10, 77, max_length=4)
    assert [body["text"] for _, body in sent] == ["xxxx", "xxxx", "xx"]
    assert [body.get("reply_to_message_id") for _, body in sent] == [77, None, None]


def test_chat_action():
    sent = []
    _service(sent).send_chat_action(555)
    assert sent == [("/botTOKEN/sendChatAction", {"chat_id": 555, "action": "typing"})]
