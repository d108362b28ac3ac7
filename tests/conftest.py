"""Shared fixtures: fast crypto, throwaway stores and sample exports."""

import pytest

from whatisaid.config import MIN_PBKDF2_ITERATIONS
from whatisaid.crypto import CryptoService
from whatisaid.models import ChatMessage, Conversation
from whatisaid.storage import ConversationStore

PASSWORD = "correct horse battery staple"


@pytest.fixture
def password():
    return PASSWORD


@pytest.fixture
def crypto():
    """A READY crypto service at the lowest accepted iteration count."""
    service = CryptoService(iterations=MIN_PBKDF2_ITERATIONS)
    service.initialize_encryption(PASSWORD)
    return service


@pytest.fixture
def store(tmp_path, crypto):
    s = ConversationStore(tmp_path / "test.db", crypto)
    s.initialize_database()
    yield s
    s.close()


@pytest.fixture
def make_conversation():
    def _make(conv_id="conv-1", **overrides):
        fields = {
            "id": conv_id,
            "source_app": "ChatGPT",
            "chat_type": "llm",
            "display_name": "Test Conversation",
            "start_time": 1_700_000_000,
            "end_time": 1_700_000_100,
            "tags": ["work", "python"],
        }
        fields.update(overrides)
        return Conversation(**fields)

    return _make


@pytest.fixture
def make_message():
    def _make(message_id, conversation_id="conv-1", **overrides):
        fields = {
            "message_id": message_id,
            "conversation_id": conversation_id,
            "timestamp_utc": 1_700_000_000,
            "author": "User",
            "content": f"Message {message_id}",
            "content_type": "text",
        }
        fields.update(overrides)
        return ChatMessage(**fields)

    return _make


def _node(node_id, parent, children, role=None, text=None, create_time=None):
    message = None
    if role is not None:
        message = {
            "id": node_id,
            "author": {"role": role},
            "create_time": create_time,
            "content": {"content_type": "text", "parts": [text]},
        }
    return {"id": node_id, "message": message, "parent": parent, "children": children}


@pytest.fixture
def chatgpt_export():
    """One conversation whose assistant reply was regenerated: two sibling branches."""
    return [
        {
            "id": "conv-abc",
            "title": "List tricks",
            "create_time": 1_699_999_990.0,
            "update_time": 1_700_000_020.0,
            "current_node": "b1",
            "mapping": {
                "root": _node("root", None, ["a"]),
                "a": _node("a", "root", ["b1", "b2"], "user", "How do I reverse a list?", 1_700_000_000.0),
                "b1": _node("b1", "a", [], "assistant", "Use reversed() or slicing.", 1_700_000_010.0),
                "b2": _node("b2", "a", [], "assistant", "Regenerated answer", 1_700_000_020.0),
            },
        }
    ]


@pytest.fixture
def claude_export():
    return [
        {
            "uuid": "claude-1",
            "name": "Weekend plans",
            "created_at": "2024-03-01T10:00:00Z",
            "updated_at": "2024-03-01T10:05:00Z",
            "chat_messages": [
                {
                    "uuid": "m2",
                    "sender": "assistant",
                    "text": "Sounds fun!",
                    "created_at": "2024-03-01T10:01:00Z",
                    "index": 1,
                },
                {
                    "uuid": "m1",
                    "sender": "human",
                    "text": "Hiking on Saturday",
                    "created_at": "2024-03-01T10:00:30Z",
                    "index": 0,
                    "attachments": [
                        {"file_name": "map.txt", "file_type": "txt", "extracted_content": "Trail 5"}
                    ],
                },
            ],
        }
    ]


@pytest.fixture
def whatsapp_export():
    return (
        "12/31/23, 9:15 PM - Alice: Happy new year!\n"
        "12/31/23, 9:16 PM - Bob: You too\n"
        "see you tomorrow\n"
        "12/31/23, 9:17 PM - Messages and calls are end-to-end encrypted.\n"
    ).encode("utf-8")
