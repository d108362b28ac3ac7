"""Parse ChatGPT export conversations.json tree structure into flat message lists."""

from __future__ import annotations

import logging
import threading
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

logger = logging.getLogger(__name__)

AUTHOR_NAMES = {"user": "User", "assistant": "ChatGPT"}


def _extract_text(parts: list[Any]) -> str:
    """Extract text from message content parts, filtering non-strings."""
    return "\n".join(part for part in parts if isinstance(part, str)).strip()


def _traverse_tree(mapping: dict[str, Any], current_node: str) -> list[str]:
    """Walk from current_node back to root via parent pointers, return node IDs root-first."""
    path: list[str] = []
    visited: set[str] = set()
    node_id = current_node

    while node_id and node_id in mapping:
        if node_id in visited:
            logger.warning("Circular reference detected at node %s", node_id)
            break
        visited.add(node_id)
        path.append(node_id)
        node_id = mapping[node_id].get("parent")

    path.reverse()
    return path


def _latest_leaf(mapping: dict[str, Any]) -> str | None:
    """Fallback when an export has no current_node: the newest childless node."""
    best_id: str | None = None
    best_time = float("-inf")
    for node_id, node in mapping.items():
        if node.get("children"):
            continue
        created = to_epoch((node.get("message") or {}).get("create_time"))
        created = float("-inf") if created is None else created
        # ">=" so that later nodes win ties, matching export order
        if best_id is None or created >= best_time:
            best_id, best_time = node_id, created
    return best_id


class ChatGPTParser(ChatParser):
    name = "chatgpt"
    source_app = "ChatGPT"

    def detect(self, raw: bytes) -> int:
        conv = first_item(sniff_json(raw))
        if not isinstance(conv, dict):
            return 0

        score = 0
        mapping = conv.get("mapping")
        if conv.get("conversation_id") or conv.get("id"):
            score += 20
        if isinstance(mapping, dict):
            score += 40
            node = next(iter(mapping.values()), None)
            if isinstance(node, dict) and ("parent" in node or "children" in node):
                score += 10
            messages = [n.get("message") for n in mapping.values() if isinstance(n, dict)]
            if any(isinstance(m, dict) and (m.get("author") or {}).get("role") for m in messages):
                score += 10
        if "current_node" in conv:
            score += 15
        if conv.get("title"):
            score += 5
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
        """Parse a single ChatGPT conversation dict along its active branch."""
        conv_id = conv.get("conversation_id") or conv.get("id")
        mapping = conv.get("mapping")
        current_node = conv.get("current_node")

        if not conv_id or not isinstance(mapping, dict) or not mapping:
            raise MalformedConversation("missing id or mapping")

        if not current_node:
            current_node = _latest_leaf(mapping)
        if current_node not in mapping:
            raise MalformedConversation(f"current_node not found in mapping of {conv_id}")

        node_ids = _traverse_tree(mapping, current_node)
        self.check_message_count(conv_id, len(node_ids))

        created = to_epoch(conv.get("create_time"))
        messages: list[RawMessage] = []

        for node_id in node_ids:
            msg_data = mapping[node_id].get("message")
            if msg_data is None:
                continue

            author = msg_data.get("author") or {}
            role = author.get("role", "")

            # Skip system messages (unless user-created) and tool messages
            if role == "system":
                metadata = msg_data.get("metadata") or {}
                if not metadata.get("is_user_system_message"):
                    continue
                role = "user"
            if role not in AUTHOR_NAMES:
                continue

            content_data = msg_data.get("content") or {}
            text = _extract_text(content_data.get("parts") or [])
            if not text:
                continue

            timestamp = to_epoch(msg_data.get("create_time"))
            if timestamp is None:
                # Nodes without a time inherit the previous one so branch order holds
                timestamp = messages[-1].timestamp if messages else created
            if timestamp is None:
                continue

            messages.append(
                RawMessage(
                    timestamp=timestamp,
                    author=AUTHOR_NAMES[role],
                    content=text,
                    content_type=content_data.get("content_type"),
                )
            )

        ctx.add_conversation(
            conv_id,
            conv.get("title") or "Untitled",
            messages,
            created=created,
            updated=to_epoch(conv.get("update_time")),
        )
