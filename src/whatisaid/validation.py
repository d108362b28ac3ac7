"""Pre-parse gatekeeper for raw import files."""

from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any

from .config import (
    CONTROL_CHAR_THRESHOLD,
    FUTURE_TOLERANCE_SECONDS,
    MAX_FILE_SIZE,
    YEAR_2000_EPOCH,
)
from .errors import ValidationError
from .models import Finding, Outcome, Severity

logger = logging.getLogger(__name__)

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


@dataclass
class ValidationReport:
    """Outcome of validating one file.

    ``text`` is the decoded file and ``data`` the parsed JSON document (when
    JSON was expected), so parsers can reuse them instead of decoding again.
    """

    findings: list[Finding] = field(default_factory=list)
    text: str | None = None
    data: Any = None

    @property
    def outcome(self) -> Outcome:
        if any(f.severity is Severity.HIGH for f in self.findings):
            return Outcome.REJECT
        if any(f.severity in (Severity.LOW, Severity.MEDIUM) for f in self.findings):
            return Outcome.WARN
        return Outcome.OK

    @property
    def warnings(self) -> list[str]:
        """Non-fatal findings, formatted for an import result."""
        return [str(f) for f in self.findings if f.severity is not Severity.HIGH]

    def add(self, severity: Severity, message: str) -> None:
        self.findings.append(Finding(severity=severity, message=message))


class ImportValidator:
    """Stateless size / encoding / structure checks run before parsing."""

    def __init__(
        self,
        max_file_size: int = MAX_FILE_SIZE,
        control_char_threshold: int = CONTROL_CHAR_THRESHOLD,
    ):
        self.max_file_size = max_file_size
        self.control_char_threshold = control_char_threshold

    def check_size(self, raw: bytes) -> Finding | None:
        if len(raw) == 0:
            return Finding(severity=Severity.HIGH, message="Empty file provided")
        if len(raw) > self.max_file_size:
            return Finding(
                severity=Severity.HIGH,
                message=f"File too large: {len(raw)} bytes (max: {self.max_file_size})",
            )
        return None

    def validate(self, raw: bytes, expect_json: bool = True) -> ValidationReport:
        """Run every check in order, stopping at the first HIGH finding."""
        report = ValidationReport()

        size_finding = self.check_size(raw)
        if size_finding:
            report.findings.append(size_finding)
            return report

        try:
            # utf-8-sig strips a leading BOM if present
            text = raw.decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            report.add(
                Severity.HIGH,
                f"File is not valid UTF-8: invalid byte sequence at offset {exc.start}",
            )
            return report
        report.text = text

        if expect_json:
            try:
                # Raw control characters inside strings are counted below, not rejected
                report.data = json.loads(text, strict=False)
            except json.JSONDecodeError as exc:
                report.add(
                    Severity.HIGH,
                    f"Invalid JSON structure: {exc.msg} (line {exc.lineno}, column {exc.colno})",
                )
                return report
            if not isinstance(report.data, (dict, list)):
                report.add(Severity.HIGH, "JSON document must be an object or an array")
                return report

        if "\ufffd" in text:
            report.add(Severity.MEDIUM, "File contains Unicode replacement characters")

        control_count = len(_CONTROL_CHARS.findall(text))
        if control_count > self.control_char_threshold:
            report.add(
                Severity.MEDIUM,
                f"File contains {control_count} control characters "
                f"(threshold: {self.control_char_threshold})",
            )
        elif control_count:
            report.add(Severity.INFO, f"File contains {control_count} control characters")

        logger.debug(
            "Validated %d bytes: %s (%d findings)", len(raw), report.outcome.value, len(report.findings)
        )
        return report

    def check_timestamp(self, timestamp: int, now: float | None = None) -> Finding | None:
        """Plausibility check for an epoch-second timestamp. Never blocking."""
        now = time.time() if now is None else now
        if timestamp < 0:
            return Finding(
                severity=Severity.MEDIUM,
                message=f"Invalid timestamp: {timestamp} (negative value)",
            )
        if timestamp > now + FUTURE_TOLERANCE_SECONDS:
            return Finding(
                severity=Severity.MEDIUM,
                message=f"Invalid timestamp: {timestamp} (too far in future)",
            )
        if timestamp < YEAR_2000_EPOCH:
            return Finding(
                severity=Severity.LOW,
                message=f"Suspicious timestamp: {timestamp} (before year 2000)",
            )
        return None


def raise_for_reject(report: ValidationReport, name: str | None = None) -> None:
    """Raise ``ValidationError`` if the report contains a HIGH finding."""
    if report.outcome is not Outcome.REJECT:
        return
    high = [f for f in report.findings if f.severity is Severity.HIGH]
    prefix = f"{name}: " if name else ""
    raise ValidationError(prefix + "; ".join(f.message for f in high), findings=report.findings)
