"""Parse Qwen exports: JSON sessions or timestamped plain-text chat logs."""

from __future__ import annotations

import json
import re
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
    stable_id,
    to_epoch,
)

_USER_ROLES = {"user", "human", "person", "用户", "人类"}
_ASSISTANT_ROLES = {"assistant", "qwen", "ai", "model", "bot", "system", "助手", "通义千问", "千问"}

_MESSAGE_KEYS = ("messages", "chat_history", "dialogue")
_CJK = re.compile(r"[\u4e00-\u9fff]")

_ROLE = r"(?P<role>user|assistant|human|qwen|ai)"
_STAMP = r"(?P<ts>\d{4}-\d{2}-\d{2}[ T]\d{2}:\d{2}:\d{2})"
_TEXT = r"\s*:\s*(?P<text>.*)$"
_LOG_LINES = [
    re.compile(rf"^{_STAMP}\s+{_ROLE}{_TEXT}", re.I),  # 2024-01-15 10:30:00 user: hi
    re.compile(rf"^\[{_STAMP}\]\s*{_ROLE}{_TEXT}", re.I),  # [2024-01-15 10:30:00] user: hi
    re.compile(rf"^{_ROLE}\s*\((?P<ts>[^)]+)\){_TEXT}", re.I),  # user (2024-01-15 10:30): hi
    re.compile(rf"^{_ROLE}\s*:\s*{_STAMP}\s+(?P<text>.*)$", re.I),  # user: 2024-01-15 10:30:00 hi
]


def map_role(role: Any) -> str:
    if not isinstance(role, str):
        return "Unknown"
    normalized = role.lower().strip()
    if normalized in _USER_ROLES:
        return "User"
    if normalized in _ASSISTANT_ROLES:
        return "Qwen"
    return role


def _message_list(conv: dict[str, Any]) -> list[Any] | None:
    for key in _MESSAGE_KEYS:
        value = conv.get(key)
        if isinstance(value, list):
            return value
    return None


def _first_of(msg: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = msg.get(key)
        if value:
            return value
    return None


def match_log_line(line: str) -> tuple[str, str, str] | None:
    """Return (timestamp, role, text) if ``line`` starts a new log entry."""
    for pattern in _LOG_LINES:
        match = pattern.match(line)
        if match:
            return match.group("ts"), match.group("role").lower(), match.group("text")
    return None


def _looks_like_json(raw: bytes) -> bool:
    head = raw[:64].lstrip(b"\xef\xbb\xbf \t\r\n")
    return head[:1] in (b"{", b"[")


class QwenParser(ChatParser):
    name = "qwen"
    source_app = "Qwen"

    def wants_json(self, raw: bytes) -> bool:
        return _looks_like_json(raw)

    def detect(self, raw: bytes) -> int:
        if _looks_like_json(raw):
            return self._detect_json(sniff_json(raw))
        return self._detect_text(raw)

    def _detect_json(self, data: Any) -> int:
        conv = first_item(data)
        if not isinstance(conv, dict):
            return 0

        score = 0
        if conv.get("conversation_id") or conv.get("session_id"):
            score += 25
        messages = _message_list(conv)
        if messages is not None:
            score += 30
            first = messages[0] if messages else None
            if isinstance(first, dict):
                if first.get("role") or first.get("sender"):
                    score += 20
                if first.get("content") or first.get("text") or first.get("message"):
                    score += 15
        if score and _CJK.search(json.dumps(conv, ensure_ascii=False)[:10_000]):
            score += 10
        return min(score, 100)

    def _detect_text(self, raw: bytes) -> int:
        text = raw[:64 * 1024].decode("utf-8-sig", errors="ignore")
        lines = [line.strip() for line in text.splitlines() if line.strip()][:10]
        if len(lines) < 2:
            return 0

        matching = sum(1 for line in lines if match_log_line(line))
        if not matching:
            return 0
        score = int(matching / len(lines) * 80)
        if _CJK.search(text):
            score += 15
        return min(score, 100)

    def _parse_document(
        self, report: ValidationReport, ctx: ParseContext, cancel: threading.Event | None
    ) -> None:
        if report.data is not None:
            conversations = as_list(report.data)
            self.check_conversation_count(len(conversations))
            self.each_conversation(
                conversations, ctx, cancel, lambda conv: self._parse_json_conversation(conv, ctx)
            )
        else:
            self.each_conversation(
                [report.text or ""], ctx, cancel, lambda text: self._parse_text_log(text, ctx)
            )

    def _parse_json_conversation(self, conv: dict[str, Any], ctx: ParseContext) -> None:
        messages = _message_list(conv)
        if messages is None:
            raise MalformedConversation("missing messages, chat_history or dialogue")
        self.check_message_count(conv.get("conversation_id") or "(unnamed)", len(messages))

        conv_id = conv.get("conversation_id") or conv.get("session_id")
        if not isinstance(conv_id, str) or not conv_id:
            conv_id = stable_id("qwen", json.dumps(conv, sort_keys=True, ensure_ascii=False))

        created = to_epoch(_first_of(conv, "created_time", "create_time", "created_at"))
        extracted: list[RawMessage] = []
        for msg in messages:
            if not isinstance(msg, dict):
                continue
            role = _first_of(msg, "role", "sender", "author")
            content = _first_of(msg, "content", "text", "message")
            if not isinstance(role, str) or not isinstance(content, str):
                continue

            timestamp = to_epoch(_first_of(msg, "timestamp", "time", "created_at"))
            if timestamp is None:
                timestamp = extracted[-1].timestamp if extracted else created
            if timestamp is None:
                continue

            hint = _first_of(msg, "type", "message_type")
            extracted.append(
                RawMessage(
                    timestamp=timestamp,
                    author=map_role(role),
                    content=content,
                    content_type=hint if isinstance(hint, str) else None,
                )
            )

        ctx.add_conversation(
            conv_id,
            conv.get("title") or conv.get("name") or "Untitled Qwen Chat",
            extracted,
            created=created,
            updated=to_epoch(_first_of(conv, "updated_time", "update_time", "updated_at")),
        )

    def _parse_text_log(self, text: str, ctx: ParseContext) -> None:
        entries: list[list[str]] = []
        for line in text.splitlines():
            stripped = line.strip()
            if not stripped:
                continue
            matched = match_log_line(stripped)
            if matched:
                entries.append(list(matched))
            elif entries:
                # Continuation of the previous entry
                entries[-1][2] += "\n" + stripped

        if not entries:
            raise MalformedConversation("no timestamped log entries found")
        self.check_message_count("text log", len(entries))

        extracted = []
        for stamp, role, content in entries:
            timestamp = to_epoch(stamp)
            if timestamp is None:
                ctx.warn(f"Skipped log entry with unreadable timestamp {stamp!r}")
                continue
            extracted.append(RawMessage(timestamp=timestamp, author=map_role(role), content=content))

        ctx.add_conversation(
            stable_id("qwen-textlog", text),
            "Qwen Text Log Import",
            extracted,
            tags=["text-log"],
        )
