"""Shared parser interface and normalization helpers."""

from __future__ import annotations

import hashlib
import json
import logging
import re
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Callable, Iterable

from ..config import (
    CONTROL_CHAR_THRESHOLD,
    MAX_AUTHOR_CHARS,
    MAX_CONTENT_CHARS,
    MAX_CONVERSATIONS,
    MAX_DISPLAY_NAME_CHARS,
    MAX_MESSAGES_PER_CONVERSATION,
)
from ..crypto import generate_message_id
from ..errors import ImportCancelledError, ParserLimitError
from ..models import ChatMessage, Conversation, ParseResult
from ..sanitizer import sanitize
from ..validation import ImportValidator, ValidationReport, raise_for_reject

logger = logging.getLogger(__name__)

_CODE_PATTERNS = [
    re.compile(r"```[\s\S]*?```"),  # Fenced blocks
    re.compile(r"`[^`\n]+`"),  # Inline code
    re.compile(r"^\s*(?:function|class|def|import|from|const|let|var|return)\s", re.M),
    re.compile(r"^\s*[{}\[\]();]", re.M),
    re.compile(r"^\s*(?://|/\*|<!--)", re.M),
    re.compile(r"(?:npm|pip|cargo|go get)\s+install", re.I),
    re.compile(r"^\s*(?:SELECT|INSERT|UPDATE|DELETE|CREATE|ALTER|DROP)\s", re.I | re.M),
    re.compile(r"^\s*(?:print|console\.log|echo|printf)\s*\(", re.M),
]

# 0001-01-01T00:00:00Z through 9999-12-31T23:59:59Z
_MIN_EPOCH = -62135596800
_MAX_EPOCH = 253402300799


class MalformedConversation(ValueError):
    """A single conversation is unusable; it is skipped, the file continues."""


@dataclass
class RawMessage:
    """A message as extracted from a source format, before normalization."""

    timestamp: int
    author: str
    content: str
    content_type: str | None = None


def classify_content(content: str, hint: str | None = None) -> str:
    """Return ``"code"`` or ``"text"``."""
    if hint == "code":
        return "code"
    for pattern in _CODE_PATTERNS:
        if pattern.search(content):
            return "code"
    return "text"


def to_epoch(value: Any) -> int | None:
    """Coerce a source timestamp to epoch seconds.

    Accepts epoch seconds or milliseconds (numbers or numeric strings) and ISO
    8601 / ``YYYY-MM-DD HH:MM:SS`` strings. Naive datetimes are taken as UTC.
    Returns None if the value cannot be interpreted or falls outside years
    1 to 9999.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, (int, float)):
        try:
            number = float(value)
        except OverflowError:
            return None
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return _parse_iso(text)
    else:
        return None

    if number != number or number in (float("inf"), float("-inf")):
        return None
    if abs(number) > 1e10:
        number /= 1000
    return _in_range(int(number))


def _parse_iso(text: str) -> int | None:
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return _in_range(int(dt.timestamp()))


def _in_range(seconds: int) -> int | None:
    return seconds if _MIN_EPOCH <= seconds <= _MAX_EPOCH else None


def stable_id(prefix: str, *parts: str) -> str:
    """Deterministic id for sources that don't supply one."""
    digest = hashlib.sha256("\x00".join(parts).encode("utf-8")).hexdigest()
    return f"{prefix}-{digest[:24]}"


@lru_cache(maxsize=1)
def sniff_json(raw: bytes) -> Any:
    """Best-effort JSON decode for format detection. Returns None on failure."""
    try:
        return json.loads(raw.decode("utf-8-sig"), strict=False)
    except (UnicodeDecodeError, ValueError):
        return None


def first_item(data: Any) -> Any:
    if isinstance(data, list):
        return data[0] if data else None
    return data


class ParseContext:
    """Accumulates the normalized output of one ``parse`` call."""

    def __init__(self, parser: "ChatParser", report: ValidationReport):
        self.parser = parser
        self.result = ParseResult(source_format=parser.name, warnings=list(report.warnings))
        self.dropped_chars = 0
        self._seen_conversations: set[str] = set()

    def clean(self, text: Any, max_length: int) -> str:
        if not isinstance(text, str):
            return ""
        cleaned, dropped = sanitize(text.strip(), max_length)
        self.dropped_chars += dropped
        return cleaned.strip()

    def warn(self, message: str) -> None:
        self.result.warnings.append(message)

    def add_conversation(
        self,
        conversation_id: Any,
        display_name: Any,
        raw_messages: list[RawMessage],
        created: int | None = None,
        updated: int | None = None,
        tags: list[str] | None = None,
        chat_type: str = "llm",
    ) -> Conversation:
        """Normalize one conversation and its messages into the result."""
        parser = self.parser
        conv_id = self.clean(conversation_id, 255)
        if not conv_id:
            raise MalformedConversation("missing conversation id")
        parser.check_message_count(conv_id, len(raw_messages))

        messages: list[ChatMessage] = []
        seen: set[str] = set()
        # sorted() is stable: equal timestamps keep source order
        for raw in sorted(raw_messages, key=lambda m: m.timestamp):
            content = self.clean(raw.content, MAX_CONTENT_CHARS)
            if not content:
                continue
            author = self.clean(raw.author, MAX_AUTHOR_CHARS) or "Unknown"
            message_id = generate_message_id(conv_id, author, raw.timestamp, content)
            if message_id in seen:
                continue
            seen.add(message_id)
            messages.append(
                ChatMessage(
                    message_id=message_id,
                    conversation_id=conv_id,
                    timestamp_utc=raw.timestamp,
                    author=author,
                    content=content,
                    content_type=classify_content(content, raw.content_type),
                )
            )

        if not messages:
            raise MalformedConversation(f"conversation {conv_id} has no usable messages")

        start = messages[0].timestamp_utc
        end = messages[-1].timestamp_utc
        if created is not None:
            start = min(start, created)
        if updated is not None:
            end = max(end, updated)

        name = self.clean(display_name, MAX_DISPLAY_NAME_CHARS) or f"Untitled {parser.source_app} Chat"
        conversation = Conversation(
            id=conv_id,
            source_app=parser.source_app,
            chat_type=chat_type,
            display_name=name,
            start_time=start,
            end_time=end,
            tags=[self.clean(t, MAX_DISPLAY_NAME_CHARS) for t in (tags or []) if t],
        )

        for ts in sorted({start, end}):
            finding = parser.validator.check_timestamp(ts)
            if finding:
                self.warn(f"{finding} in conversation {conv_id}")

        if conv_id in self._seen_conversations:
            self.warn(f"Duplicate conversation id {conv_id}; later copy replaces earlier")
            self.result.conversations = [c for c in self.result.conversations if c.id != conv_id]
            self.result.messages = [m for m in self.result.messages if m.conversation_id != conv_id]
        self._seen_conversations.add(conv_id)

        self.result.conversations.append(conversation)
        self.result.messages.extend(messages)
        return conversation


class ChatParser(ABC):
    """One source product's export format."""

    name: str
    source_app: str
    expects_json = True

    def __init__(
        self,
        validator: ImportValidator | None = None,
        max_conversations: int = MAX_CONVERSATIONS,
        max_messages: int = MAX_MESSAGES_PER_CONVERSATION,
    ):
        self.validator = validator or ImportValidator()
        self.max_conversations = max_conversations
        self.max_messages = max_messages

    @abstractmethod
    def detect(self, raw: bytes) -> int:
        """Confidence from 0 to 100 that ``raw`` is in this format."""

    @abstractmethod
    def _parse_document(
        self, report: ValidationReport, ctx: ParseContext, cancel: threading.Event | None
    ) -> None:
        """Populate ``ctx`` from the validated document."""

    def parse(self, raw: bytes, cancel: threading.Event | None = None) -> ParseResult:
        """Validate then normalize ``raw`` into conversations and messages."""
        report = self.validator.validate(raw, expect_json=self.wants_json(raw))
        raise_for_reject(report, self.name)

        ctx = ParseContext(self, report)
        self._parse_document(report, ctx, cancel)

        if ctx.dropped_chars > CONTROL_CHAR_THRESHOLD:
            ctx.warn(f"[medium] Stripped {ctx.dropped_chars} control characters from text fields")

        logger.info(
            "%s: parsed %d conversations, %d messages",
            self.name,
            len(ctx.result.conversations),
            len(ctx.result.messages),
        )
        return ctx.result

    def wants_json(self, raw: bytes) -> bool:
        """Whether ``raw`` should be validated as a JSON document."""
        return self.expects_json

    def check_conversation_count(self, count: int) -> None:
        if count > self.max_conversations:
            raise ParserLimitError(
                f"Too many conversations: {count} (max: {self.max_conversations})",
                limit=self.max_conversations,
                actual=count,
            )

    def check_message_count(self, conversation_id: str, count: int) -> None:
        if count > self.max_messages:
            raise ParserLimitError(
                f"Conversation {conversation_id} has {count} messages (max: {self.max_messages})",
                limit=self.max_messages,
                actual=count,
            )

    def each_conversation(
        self,
        items: Iterable[Any],
        ctx: ParseContext,
        cancel: threading.Event | None,
        parse_one: Callable[[Any], None],
    ) -> None:
        """Run ``parse_one`` per item, skipping malformed conversations."""
        for index, item in enumerate(items):
            if cancel is not None and cancel.is_set():
                raise ImportCancelledError(f"{self.name}: import cancelled at conversation {index}")
            try:
                parse_one(item)
            except (MalformedConversation, KeyError, TypeError, ValueError, AttributeError) as exc:
                logger.warning("%s: skipping conversation %d: %s", self.name, index, exc)
                ctx.warn(f"Skipped conversation {index}: {exc}")


def as_list(data: Any) -> list[Any]:
    """A document holding one conversation object or an array of them."""
    return data if isinstance(data, list) else [data]
