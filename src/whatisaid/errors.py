"""Exception hierarchy for the import and persistence pipeline."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import Finding


class WhatISaidError(Exception):
    """Base class for all pipeline errors."""


class ValidationError(WhatISaidError):
    """A file failed size, encoding or structure validation."""

    def __init__(self, message: str, findings: list[Finding] | None = None):
        super().__init__(message)
        self.findings = findings or []


class UnrecognizedFormatError(WhatISaidError):
    """No parser matched the input, or two parsers matched equally well."""


class ParserLimitError(WhatISaidError):
    """A conversation or message ceiling was exceeded."""

    def __init__(self, message: str, limit: int, actual: int):
        super().__init__(message)
        self.limit = limit
        self.actual = actual


class NotInitializedError(WhatISaidError):
    """A service was used before it was initialized (or after it was cleared)."""


class ClosedError(NotInitializedError):
    """The store was used after close()."""


class EncryptionNotReadyError(WhatISaidError):
    """A confidential field was touched while the crypto service had no key."""


class KeyDerivationError(WhatISaidError):
    """The encryption key could not be derived (e.g. empty password)."""


class DecryptionError(WhatISaidError):
    """Wrong key, truncated envelope or tampered ciphertext."""


class PersistenceError(WhatISaidError):
    """The underlying storage engine failed."""


class ImportInProgressError(WhatISaidError):
    """Another import is already running against the same store."""


class ImportCancelledError(WhatISaidError):
    """An import was cancelled between conversations."""
