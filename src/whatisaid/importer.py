"""Import pipeline: detect → validate/parse → encrypt → store."""

from __future__ import annotations

import logging
import threading
import time
from collections import defaultdict
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Iterator

from .errors import (
    DecryptionError,
    EncryptionNotReadyError,
    ImportCancelledError,
    ImportInProgressError,
    NotInitializedError,
    ParserLimitError,
    PersistenceError,
    UnrecognizedFormatError,
    ValidationError,
)
from .models import ChatMessage, FileImportResult, ImportSummary, ParseResult
from .registry import ParserRegistry
from .storage import ConversationStore

logger = logging.getLogger(__name__)

# Failures that only affect the file being imported
FILE_ERRORS = (
    ValidationError,
    UnrecognizedFormatError,
    ParserLimitError,
    PersistenceError,
    OSError,
)

# Failures that stop the whole run
RUN_ERRORS = (
    NotInitializedError,
    EncryptionNotReadyError,
    DecryptionError,
    ImportCancelledError,
)


class FileImporter:
    """Runs chat exports through the registry and into an unlocked store.

    One importer runs one import at a time. Any failure inside one file,
    expected or not, is reported in that file's result and the remaining
    files continue. Store lifecycle, key and cancellation errors stop the
    whole run.
    """

    def __init__(self, store: ConversationStore, registry: ParserRegistry | None = None):
        self.store = store
        self.registry = registry or ParserRegistry()
        self._running = threading.Lock()

    def import_files(
        self, paths: Iterable[str | Path], cancel: threading.Event | None = None
    ) -> ImportSummary:
        with self._single_flight():
            summary = ImportSummary()
            started = time.monotonic()
            for path in paths:
                _check_cancel(cancel, str(path))
                summary.add(self._import_path(Path(path), cancel))
            summary.processing_time_ms = int((time.monotonic() - started) * 1000)

        logger.info(
            "Imported %d/%d files: %d conversations, %d messages in %d ms",
            summary.successful_imports,
            summary.total_files_processed,
            summary.total_conversations,
            summary.total_messages,
            summary.processing_time_ms,
        )
        return summary

    def import_file(self, path: str | Path, cancel: threading.Event | None = None) -> FileImportResult:
        with self._single_flight():
            return self._import_path(Path(path), cancel)

    def import_bytes(
        self, raw: bytes, name: str = "<bytes>", cancel: threading.Event | None = None
    ) -> FileImportResult:
        with self._single_flight():
            return self._import_raw(raw, name, cancel)

    @contextmanager
    def _single_flight(self) -> Iterator[None]:
        if not self._running.acquire(blocking=False):
            raise ImportInProgressError("An import is already running")
        try:
            yield
        finally:
            self._running.release()

    def _import_path(self, path: Path, cancel: threading.Event | None) -> FileImportResult:
        validator = self.registry.validator
        try:
            size = path.stat().st_size
            if size > validator.max_file_size:
                # Refuse before reading the whole file into memory
                raise ValidationError(
                    f"{path.name}: File too large: {size} bytes (max: {validator.max_file_size})"
                )
            raw = path.read_bytes()
        except FILE_ERRORS as exc:
            logger.warning("%s: import failed: %s", path.name, exc)
            return FileImportResult(path=str(path), error=str(exc))

        result = self._import_raw(raw, path.name, cancel)
        result.path = str(path)
        return result

    def _import_raw(
        self, raw: bytes, name: str, cancel: threading.Event | None
    ) -> FileImportResult:
        result = FileImportResult(path=name)
        try:
            parser = self.registry.select(raw, name)
            result.source_format = parser.name
            parsed = parser.parse(raw, cancel)
            self._save(parsed, cancel)
        except FILE_ERRORS as exc:
            logger.warning("%s: import failed: %s", name, exc)
            result.error = str(exc)
            return result
        except RUN_ERRORS:
            raise
        except Exception as exc:
            logger.exception("%s: unexpected error during import", name)
            result.error = f"Unexpected error: {type(exc).__name__}: {exc}"
            return result

        result.conversations = len(parsed.conversations)
        result.messages = len(parsed.messages)
        result.warnings = parsed.warnings
        logger.info(
            "%s: imported %d conversations, %d messages as %s",
            name,
            result.conversations,
            result.messages,
            parser.name,
        )
        return result

    def _save(self, parsed: ParseResult, cancel: threading.Event | None) -> None:
        by_conversation: dict[str, list[ChatMessage]] = defaultdict(list)
        for msg in parsed.messages:
            by_conversation[msg.conversation_id].append(msg)

        for conv in parsed.conversations:
            _check_cancel(cancel, conv.id)
            self.store.save_conversation_with_messages(conv, by_conversation.get(conv.id, []))

        self.store.record_import(
            parsed.source_format, len(parsed.conversations), len(parsed.messages)
        )


def _check_cancel(cancel: threading.Event | None, where: str) -> None:
    if cancel is not None and cancel.is_set():
        raise ImportCancelledError(f"Import cancelled before {where}")
