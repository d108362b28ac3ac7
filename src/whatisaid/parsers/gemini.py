"""Parse Gemini exports in either the standard or the Google Takeout layout.

Standard::

    {"conversations": [{"conversation_id", "conversation_title", "create_time",
                        "update_time", "messages": [{"author": {"name"}, "create_time", "text"}]}]}

Takeout (one object or an array of them)::

    {"id", "name", "created_date", "updated_date",
     "messages": [{"creator": {"name"}, "created_date", "content"}]}
"""

from __future__ import annotations

import threading
from functools import partial
from typing import Any

from ..validation import ValidationReport
from .base import (
    ChatParser,
    MalformedConversation,
    ParseContext,
    RawMessage,
    as_list,
    first_item,
    sniff_json,
    to_epoch,
)

_ASSISTANT_NAMES = {"model", "assistant", "ai"}
_USER_NAMES = {"user", "human"}


def map_author(name: Any) -> str:
    if not isinstance(name, str):
        return "Unknown"
    normalized = name.lower().strip()
    if "gemini" in normalized or "bard" in normalized or normalized in _ASSISTANT_NAMES:
        return "Gemini"
    if normalized in _USER_NAMES or normalized == "you":
        return "User"
    return name


def _is_standard(data: Any) -> bool:
    return (
        isinstance(data, dict)
        and isinstance(data.get("conversations"), list)
        and bool(data["conversations"])
    )


def _is_takeout(data: Any) -> bool:
    item = first_item(data)
    if not isinstance(item, dict) or not isinstance(item.get("messages"), list):
        return False
    messages = item["messages"]
    return bool(messages) and isinstance(messages[0], dict) and "creator" in messages[0]


class GeminiParser(ChatParser):
    name = "gemini"
    source_app = "Google Gemini"

    def detect(self, raw: bytes) -> int:
        data = sniff_json(raw)
        score = 0

        if _is_standard(data):
            score += 40
            first = data["conversations"][0]
            if isinstance(first, dict):
                if first.get("conversation_id"):
                    score += 20
                if isinstance(first.get("messages"), list):
                    score += 20

        if _is_takeout(data):
            item = first_item(data)
            score += 50
            if item.get("created_date"):
                score += 10
            if isinstance(data, list):
                score += 10

        return min(score, 100)

    def _parse_document(
        self, report: ValidationReport, ctx: ParseContext, cancel: threading.Event | None
    ) -> None:
        data = report.data
        if _is_standard(data):
            conversations = data["conversations"]
            parse_one = partial(self._parse_standard, ctx=ctx)
        else:
            conversations = as_list(data)
            parse_one = partial(self._parse_takeout, ctx=ctx)

        self.check_conversation_count(len(conversations))
        self.each_conversation(conversations, ctx, cancel, parse_one)

    def _parse_standard(self, conv: dict[str, Any], ctx: ParseContext) -> None:
        conv_id = conv.get("conversation_id")
        messages = conv.get("messages")
        if not isinstance(conv_id, str) or not isinstance(messages, list):
            raise MalformedConversation("missing conversation_id or messages")
        self.check_message_count(conv_id, len(messages))

        extracted: list[RawMessage] = []
        for msg in messages:
            if not isinstance(msg, dict) or not isinstance(msg.get("author"), dict):
                continue
            timestamp = to_epoch(msg.get("create_time"))
            if timestamp is None or not isinstance(msg.get("text"), str):
                continue
            extracted.append(
                RawMessage(
                    timestamp=timestamp,
                    author=map_author(msg["author"].get("name")),
                    content=msg["text"],
                )
            )

        ctx.add_conversation(
            conv_id,
            conv.get("conversation_title") or "Untitled Gemini Chat",
            extracted,
            created=to_epoch(conv.get("create_time")),
            updated=to_epoch(conv.get("update_time")),
        )

    def _parse_takeout(self, conv: dict[str, Any], ctx: ParseContext) -> None:
        conv_id = conv.get("id")
        messages = conv.get("messages")
        if not isinstance(conv_id, str) or not isinstance(messages, list):
            raise MalformedConversation("missing id or messages")
        self.check_message_count(conv_id, len(messages))

        extracted: list[RawMessage] = []
        for msg in messages:
            if not isinstance(msg, dict) or not isinstance(msg.get("creator"), dict):
                continue
            timestamp = to_epoch(msg.get("created_date"))
            if timestamp is None or not isinstance(msg.get("content"), str):
                continue
            extracted.append(
                RawMessage(
                    timestamp=timestamp,
                    author=map_author(msg["creator"].get("name")),
                    content=msg["content"],
                )
            )

        ctx.add_conversation(
            conv_id,
            conv.get("name") or "Untitled Gemini Chat",
            extracted,
            created=to_epoch(conv.get("created_date")),
            updated=to_epoch(conv.get("updated_date")),
        )
