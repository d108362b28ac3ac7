"""Data models for normalized conversations and import results."""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, model_validator


class Conversation(BaseModel):
    id: str
    source_app: str
    chat_type: str = "llm"
    display_name: str
    start_time: int
    end_time: int
    tags: list[str] = []

    @model_validator(mode="after")
    def _check_time_range(self) -> "Conversation":
        if self.start_time > self.end_time:
            raise ValueError(
                f"start_time {self.start_time} is after end_time {self.end_time}"
            )
        return self


class ChatMessage(BaseModel):
    message_id: str
    conversation_id: str
    timestamp_utc: int
    author: str
    content: str
    content_type: Literal["text", "code"] = "text"


class Severity(str, Enum):
    INFO = "info"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Outcome(str, Enum):
    OK = "ok"
    WARN = "warn"
    REJECT = "reject"


class Finding(BaseModel):
    severity: Severity
    message: str

    def __str__(self) -> str:
        return f"[{self.severity.value}] {self.message}"


class ParseResult(BaseModel):
    source_format: str
    conversations: list[Conversation] = []
    messages: list[ChatMessage] = []
    warnings: list[str] = []


class FileImportResult(BaseModel):
    path: str
    source_format: str | None = None
    conversations: int = 0
    messages: int = 0
    warnings: list[str] = []
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ImportSummary(BaseModel):
    total_files_processed: int = 0
    successful_imports: int = 0
    failed_imports: int = 0
    total_conversations: int = 0
    total_messages: int = 0
    processing_time_ms: int = 0
    detected_formats: dict[str, int] = {}
    files: list[FileImportResult] = []

    def add(self, result: FileImportResult) -> None:
        self.files.append(result)
        self.total_files_processed += 1
        if result.ok:
            self.successful_imports += 1
            self.total_conversations += result.conversations
            self.total_messages += result.messages
        else:
            self.failed_imports += 1
        if result.source_format:
            self.detected_formats[result.source_format] = (
                self.detected_formats.get(result.source_format, 0) + 1
            )

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(exclude={"files"})
