"""
Tests for the StructuredMessage record and its document mapping
"""

from datetime import datetime, timezone

import pytest

from mailstore.modules.message_data import (
    Address,
    AttachedFile,
    Priority,
    RawCache,
    StructuredMessage,
)

ATTACHMENT = AttachedFile(
    storage_path="d41d8cd98f00b204e9800998ecf8427e-100.1700000000.0",
    original_name="notes.txt",
    extension="txt",
    content_id=None,
    length=0,
    content_type="text/plain",
)


def test_add_header_coalesces_repeats_in_order():
    message = StructuredMessage()
    message.add_header("Received", "hop 1")
    assert message.headers == {"received": "hop 1"}

    message.add_header("RECEIVED", "hop 2")
    message.add_header("received", "hop 3")
    assert message.headers["received"] == ["hop 1", "hop 2", "hop 3"]
    assert message.header_values("Received") == ["hop 1", "hop 2", "hop 3"]
    assert message.first_header("received") == "hop 1"


def test_header_values_absent():
    message = StructuredMessage()
    assert message.header_values("x-missing") == []
    assert message.first_header("x-missing") is None


def test_attached_file_checksum():
    assert ATTACHMENT.checksum == "d41d8cd98f00b204e9800998ecf8427e"


def test_to_document_shape():
    message = StructuredMessage(
        headers={"subject": "Hi"},
        from_=[Address("alice@example.com", "Alice")],
        to=[],
        subject="Hi",
        in_reply_to=["parent@example.com"],
        priority=Priority.HIGH,
        text="body",
        attached_files=[ATTACHMENT],
        raw=RawCache(b"raw bytes"),
        user="user-alice",
        folder="INBOX",
        uid=12,
        modseq=3,
    )
    doc = message.to_document()

    assert doc["from"] == [{"address": "alice@example.com", "name": "Alice"}]
    assert doc["to"] == []
    assert "cc" not in doc
    assert "references" not in doc
    assert doc["inReplyTo"] == ["parent@example.com"]
    assert doc["priority"] == "high"
    assert doc["MODSEQ"] == 3
    assert doc["raw"] == b"raw bytes"
    assert "_id" not in doc
    assert "html" not in doc
    assert doc["attached_files"] == [{
        "path": ATTACHMENT.storage_path,
        "name": "notes.txt",
        "ext": "txt",
        "cid": None,
        "length": 0,
        "contentType": "text/plain",
    }]


def test_document_round_trip():
    message = StructuredMessage(
        headers={"received": ["a", "b"]},
        from_=[Address("alice@example.com", "Alice")],
        cc=[],
        subject="Hi",
        references=["r1@example.com"],
        priority=Priority.LOW,
        html="<p>x</p>",
        date=datetime(2024, 1, 1, tzinfo=timezone.utc),
        attached_files=[ATTACHMENT],
        flags=["\\Seen"],
        id="abc",
    )
    restored = StructuredMessage.from_document(message.to_document())
    assert restored == message


def test_from_document_tolerates_legacy_shapes():
    restored = StructuredMessage.from_document({
        "_id": 1,
        "from": "alice@example.com",
        "to": ["bob@example.com", {"address": "carol@example.com", "name": "Carol"}],
        "priority": "urgent-ish",
        "thread": "t-1",
    })
    assert restored.from_ == [Address("alice@example.com")]
    assert restored.to == [Address("bob@example.com"), Address("carol@example.com", "Carol")]
    assert restored.cc is None
    assert restored.priority is Priority.NORMAL
    assert restored.headers == {}
    assert restored.attached_files == []
    assert restored.extra == {"thread": "t-1"}
    assert not restored.raw.is_set


def test_raw_cache():
    cache = RawCache()
    assert not cache.is_set
    assert cache.get() is None

    cache.set(bytearray(b"abc"))
    assert cache.is_set
    assert cache.get() == b"abc"
    assert cache == RawCache(b"abc")

    cache.clear()
    assert cache.get() is None


@pytest.mark.parametrize("value,expected", [
    ("high", Priority.HIGH),
    ("low", Priority.LOW),
    (None, Priority.NORMAL),
    ("bogus", Priority.NORMAL),
])
def test_priority_coerce(value, expected):
    assert Priority.coerce(value) is expected
