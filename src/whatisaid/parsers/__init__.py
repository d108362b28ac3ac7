"""Per-product export parsers."""

from .base import ChatParser, classify_content, to_epoch
from .chatgpt import ChatGPTParser
from .claude import ClaudeParser
from .gemini import GeminiParser
from .qwen import QwenParser
from .whatsapp import WhatsAppParser

__all__ = [
    "ChatParser",
    "ChatGPTParser",
    "ClaudeParser",
    "GeminiParser",
    "QwenParser",
    "WhatsAppParser",
    "classify_content",
    "to_epoch",
]
