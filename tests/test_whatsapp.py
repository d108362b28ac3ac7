from datetime import datetime, timezone

import pytest

from whatisaid.parsers import WhatsAppParser
from whatisaid.parsers.base import stable_id


@pytest.fixture
def parser():
    return WhatsAppParser()


def epoch(*args):
    return int(datetime(*args, tzinfo=timezone.utc).timestamp())


def test_detect(parser, whatsapp_export):
    assert parser.detect(whatsapp_export) == 90
    assert parser.detect(b'{"conversations": []}') == 0


def test_parse_android(parser, whatsapp_export):
    result = parser.parse(whatsapp_export)
    conv = result.conversations[0]

    assert conv.id == stable_id(
        "whatsapp", str(epoch(2023, 12, 31, 21, 15)), "Alice", "Happy new year!"
    )
    assert conv.display_name == "WhatsApp: Alice, Bob"
    assert conv.chat_type == "messaging"
    assert conv.tags == ["whatsapp"]
    assert [(m.author, m.content) for m in result.messages] == [
        ("Alice", "Happy new year!"),
        ("Bob", "You too\nsee you tomorrow"),
    ]
    assert result.messages[0].timestamp_utc == epoch(2023, 12, 31, 21, 15)


def test_parse_ios_day_first(parser):
    raw = (
        "[31/12/2023, 21:15:03] Alice: Hi\n"
        "[31/12/2023, 21:16:00] Bob: Hey\n"
    ).encode()
    result = parser.parse(raw)
    assert result.messages[0].timestamp_utc == epoch(2023, 12, 31, 21, 15, 3)


def test_ambiguous_bracket_dates_are_day_first(parser):
    raw = "[02/03/2024, 10:00:00] Alice: Hi\n[02/03/2024, 10:01:00] Bob: Hey\n".encode()
    result = parser.parse(raw)
    assert result.messages[0].timestamp_utc == epoch(2024, 3, 2, 10, 0)


def test_twelve_hour_clock(parser):
    raw = "1/5/24, 12:30 AM - Alice: late\n1/5/24, 12:30 PM - Bob: lunch\n".encode()
    result = parser.parse(raw)
    assert [m.timestamp_utc for m in result.messages] == [
        epoch(2024, 1, 5, 0, 30),
        epoch(2024, 1, 5, 12, 30),
    ]


def test_groups_with_the_same_members_keep_separate_ids(parser):
    family = parser.parse(
        b"1/2/24, 8:00 AM - Alice: Dinner on Sunday?\n1/2/24, 8:05 AM - Bob: Sure\n"
    )
    work = parser.parse(
        b"3/4/24, 9:00 AM - Bob: Standup moved to 10\n3/4/24, 9:01 AM - Alice: ok\n"
    )
    assert family.conversations[0].display_name == work.conversations[0].display_name
    assert family.conversations[0].id != work.conversations[0].id


def test_reexport_after_someone_joins_keeps_the_id(parser, whatsapp_export):
    later = whatsapp_export + b"1/1/24, 10:00 AM - Carol: Thanks for adding me\n"
    before = parser.parse(whatsapp_export).conversations[0]
    after = parser.parse(later).conversations[0]
    assert after.display_name == "WhatsApp: Alice, Bob, Carol"
    assert after.id == before.id
