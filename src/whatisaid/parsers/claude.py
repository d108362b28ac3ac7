"""Parse Claude exports: a flat ``chat_messages`` list per conversation."""

from __future__ import annotations

import threading
from typing import Any

from ..config import MAX_ATTACHMENT_CHARS
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

SENDER_NAMES = {"human": "User", "assistant": "Claude"}


def _with_attachments(text: str, attachments: list[Any]) -> str:
    """Append attachment names and small extracted contents to a message."""
    for attachment in attachments:
        if not isinstance(attachment, dict):
            continue
        file_name = attachment.get("file_name") or "unknown"
        file_type = attachment.get("file_type") or "unknown"
        text += f"\n\n[Attachment: {file_name} ({file_type})]"

        extracted = attachment.get("extracted_content")
        if isinstance(extracted, str) and 0 < len(extracted.strip()) < MAX_ATTACHMENT_CHARS:
            text += f"\nExtracted content:\n{extracted.strip()}"
    return text


class ClaudeParser(ChatParser):
    name = "claude"
    source_app = "Claude"

    def detect(self, raw: bytes) -> int:
        conv = first_item(sniff_json(raw))
        if not isinstance(conv, dict):
            return 0

        score = 0
        if conv.get("uuid"):
            score += 25
        if "chat_messages" in conv:
            score += 30
        if conv.get("created_at") and conv.get("updated_at"):
            score += 15
        messages = conv.get("chat_messages")
        if isinstance(messages, list) and messages and isinstance(messages[0], dict):
            first = messages[0]
            if first.get("sender") in SENDER_NAMES:
                score += 20
            if isinstance(first.get("index"), int):
                score += 10
        return min(score, 100)

    def _parse_document(
        self, report: ValidationReport, ctx: ParseContext, cancel: threading.Event | None
    ) -> None:
        conversations = as_list(report.data)
        self.check_conversation_count(len(conversations))
        self.each_conversation(
            conversations, ctx, cancel, lambda conv: self.parse_conversation(conv, ctx)
        )

    def parse_conversation(self, conv: dict[str, Any], ctx: ParseContext) -> None:
        conv_id = conv.get("uuid")
        chat_messages = conv.get("chat_messages")
        if not isinstance(conv_id, str) or not conv_id:
            raise MalformedConversation("missing or invalid uuid")
        if not isinstance(chat_messages, list):
            raise MalformedConversation(f"missing chat_messages in {conv_id}")
        self.check_message_count(conv_id, len(chat_messages))

        created = to_epoch(conv.get("created_at"))
        updated = to_epoch(conv.get("updated_at"))

        indexed: list[tuple[int, RawMessage]] = []
        for position, msg in enumerate(chat_messages):
            if not isinstance(msg, dict):
                continue
            sender = msg.get("sender")
            text = msg.get("text")
            if sender not in SENDER_NAMES or not isinstance(text, str):
                continue
            timestamp = to_epoch(msg.get("created_at"))
            if timestamp is None:
                continue

            attachments = msg.get("attachments")
            if isinstance(attachments, list) and attachments:
                text = _with_attachments(text, attachments)

            index = msg.get("index")
            order = index if isinstance(index, int) and index >= 0 else position
            indexed.append(
                (order, RawMessage(timestamp=timestamp, author=SENDER_NAMES[sender], content=text))
            )

        indexed.sort(key=lambda pair: pair[0])
        ctx.add_conversation(
            conv_id,
            conv.get("name") or conv.get("summary") or "Untitled Claude Chat",
            [message for _, message in indexed],
            created=created,
            updated=updated,
        )
