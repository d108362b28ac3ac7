"""Parse WhatsApp "Export chat" text files.

Two line layouts are recognized::

    12/31/23, 9:15 PM - Alice: Hello          (Android)
    [31/12/2023, 21:15:03] Alice: Hello       (iOS)

Lines that don't start with a timestamp continue the previous message.
Timestamped lines without a ``Name:`` prefix are system notices and are
skipped. Exports carry no timezone, so times are read as UTC.
"""

from __future__ import annotations

import re
import threading
from dataclasses import dataclass
from datetime import datetime, timezone

from ..validation import ValidationReport
from .base import ChatParser, MalformedConversation, ParseContext, RawMessage, stable_id

_LINE = re.compile(
    r"^[\u200e\u200f]?(?P<bracket>\[)?"
    r"(?P<a>\d{1,2})[/.](?P<b>\d{1,2})[/.](?P<year>\d{2,4}),?\s+"
    r"(?P<hour>\d{1,2}):(?P<minute>\d{2})(?::(?P<second>\d{2}))?"
    r"(?:[\s\u202f]*(?P<ampm>[AaPp]\.?\s?[Mm]\.?))?"
    r"\]?\s*(?:-\s+)?(?P<rest>.*)$"
)
_SENDER = re.compile(r"^[\u200e\u200f]?(?P<name>[^:]{1,100}):\s?(?P<text>.*)$", re.S)


@dataclass
class _Line:
    a: int
    b: int
    year: int
    hour: int
    minute: int
    second: int
    bracket: bool
    sender: str | None
    text: str


def _read_line(line: str) -> _Line | None:
    match = _LINE.match(line)
    if not match:
        return None

    hour = int(match.group("hour"))
    ampm = (match.group("ampm") or "").lower().replace(".", "").replace(" ", "")
    if ampm == "pm" and hour < 12:
        hour += 12
    elif ampm == "am" and hour == 12:
        hour = 0

    year = int(match.group("year"))
    if year < 100:
        year += 2000

    rest = match.group("rest")
    sender_match = _SENDER.match(rest)
    return _Line(
        a=int(match.group("a")),
        b=int(match.group("b")),
        year=year,
        hour=hour,
        minute=int(match.group("minute")),
        second=int(match.group("second") or 0),
        bracket=bool(match.group("bracket")),
        sender=sender_match.group("name").strip() if sender_match else None,
        text=sender_match.group("text") if sender_match else rest,
    )


def _day_first(lines: list[_Line]) -> bool:
    """Resolve D/M vs M/D from the whole file; fall back on the layout's usual order."""
    if any(line.a > 12 for line in lines):
        return True
    if any(line.b > 12 for line in lines):
        return False
    return bool(lines) and lines[0].bracket


def _epoch(line: _Line, day_first: bool) -> int | None:
    day, month = (line.a, line.b) if day_first else (line.b, line.a)
    try:
        dt = datetime(line.year, month, day, line.hour, line.minute, line.second, tzinfo=timezone.utc)
    except ValueError:
        return None
    return int(dt.timestamp())


class WhatsAppParser(ChatParser):
    name = "whatsapp"
    source_app = "WhatsApp"
    expects_json = False

    def detect(self, raw: bytes) -> int:
        text = raw[:64 * 1024].decode("utf-8-sig", errors="ignore")
        lines = [line.strip() for line in text.splitlines() if line.strip()][:10]
        if len(lines) < 2:
            return 0

        parsed = [_read_line(line) for line in lines]
        stamped = [p for p in parsed if p is not None]
        if not any(p.sender for p in stamped):
            return 0
        return min(int(len(stamped) / len(lines) * 90), 90)

    def _parse_document(
        self, report: ValidationReport, ctx: ParseContext, cancel: threading.Event | None
    ) -> None:
        self.each_conversation(
            [report.text or ""], ctx, cancel, lambda text: self._parse_chat(text, ctx)
        )

    def _parse_chat(self, text: str, ctx: ParseContext) -> None:
        entries: list[_Line] = []
        stamped: list[_Line] = []
        current: _Line | None = None

        for raw_line in text.splitlines():
            line = _read_line(raw_line.strip())
            if line is not None:
                stamped.append(line)
                # System notices end the previous message but are not kept
                current = line if line.sender else None
                if current is not None:
                    entries.append(current)
            elif current is not None and raw_line.strip():
                current.text += "\n" + raw_line.rstrip()

        if not entries:
            raise MalformedConversation("no sender lines found in chat export")
        self.check_message_count("whatsapp chat", len(entries))

        day_first = _day_first(stamped)
        messages: list[RawMessage] = []
        for entry in entries:
            timestamp = _epoch(entry, day_first)
            if timestamp is None:
                ctx.warn(f"Skipped message with impossible date {entry.a}/{entry.b}/{entry.year}")
                continue
            messages.append(RawMessage(timestamp=timestamp, author=entry.sender, content=entry.text))

        if not messages:
            raise MalformedConversation("no message in chat export has a usable date")

        # Keyed on the opening message: members may join later, and two groups
        # can share the same members
        first = messages[0]
        participants = sorted({entry.sender for entry in entries})
        ctx.add_conversation(
            stable_id("whatsapp", str(first.timestamp), first.author, first.content),
            "WhatsApp: " + ", ".join(participants),
            messages,
            tags=["whatsapp"],
            chat_type="messaging",
        )
