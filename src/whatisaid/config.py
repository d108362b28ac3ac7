"""Central configuration for paths and constants."""

import os
from pathlib import Path

# Data directory, override with WHATISAID_DATA_DIR env var
DATA_DIR = Path(
    os.environ.get("WHATISAID_DATA_DIR", str(Path.home() / ".whatisaid"))
)

# Database path
SQLITE_PATH = DATA_DIR / "conversations.db"

# Import limits
MAX_FILE_SIZE = 100 * 1024 * 1024  # Hard cap on raw bytes per file
MAX_CONVERSATIONS = 10_000  # Per file
MAX_MESSAGES_PER_CONVERSATION = 50_000
CONTROL_CHAR_THRESHOLD = 10  # Above this a file gets a MEDIUM finding

# Sanitizer caps (characters)
MAX_CONTENT_CHARS = 50_000
MAX_DISPLAY_NAME_CHARS = 500
MAX_AUTHOR_CHARS = 100
MAX_ATTACHMENT_CHARS = 10_000
TRUNCATION_MARKER = "... [truncated]"

# Format detection
MIN_DETECTION_CONFIDENCE = 30  # Winning score must be strictly above this

# Key derivation
PBKDF2_ITERATIONS = int(os.environ.get("WHATISAID_KDF_ITERATIONS", "600000"))
MIN_PBKDF2_ITERATIONS = 100_000
SALT_BYTES = 32
KEY_BYTES = 32

# Timestamp plausibility
YEAR_2000_EPOCH = 946684800
FUTURE_TOLERANCE_SECONDS = 24 * 60 * 60
