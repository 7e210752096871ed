"""
Message Data Model
Contains the StructuredMessage dataclass and the value types it is built from

The same record travels parse -> pipeline -> repository -> builder. Only one
stage works on an instance at a time; ownership moves with the call.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

HeaderValue = Union[str, List[str]]

# Document keys owned by StructuredMessage; anything else lands in ``extra``
_ADDRESS_KEYS = ("from", "to", "cc", "bcc")
_KNOWN_KEYS = {
    "_id", "uid", "user", "folder", "flags", "internaldate", "MODSEQ",
    "headers", "subject", "references", "inReplyTo", "priority",
    "text", "html", "date", "attached_files", "raw",
} | set(_ADDRESS_KEYS)


class Priority(str, Enum):
    """Message priority as derived from X-Priority / Importance headers"""
    NORMAL = "normal"
    HIGH = "high"
    LOW = "low"

    @classmethod
    def coerce(cls, value: Optional[str]) -> "Priority":
        try:
            return cls(value)
        except ValueError:
            return cls.NORMAL


@dataclass
class Address:
    """A single decoded mailbox"""
    address: str
    name: str = ""

    def to_document(self) -> Dict[str, str]:
        return {"address": self.address, "name": self.name}

    @classmethod
    def from_document(cls, doc: Any) -> "Address":
        # Older records keep plain strings instead of {address, name}
        if isinstance(doc, str):
            return cls(address=doc)
        return cls(address=doc.get("address", ""), name=doc.get("name", ""))


@dataclass
class AttachedFile:
    """
    Attachment whose bytes live in permanent storage

    storage_path is relative to the attachments directory and has the form
    ``<md5>-<disambiguator>``.
    """
    storage_path: str
    original_name: str
    extension: str
    content_id: Optional[str]
    length: int
    content_type: str

    @property
    def checksum(self) -> str:
        return self.storage_path.split("-", 1)[0]

    def to_document(self) -> Dict[str, Any]:
        return {
            "path": self.storage_path,
            "name": self.original_name,
            "ext": self.extension,
            "cid": self.content_id,
            "length": self.length,
            "contentType": self.content_type,
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "AttachedFile":
        return cls(
            storage_path=doc["path"],
            original_name=doc.get("name", ""),
            extension=doc.get("ext", ""),
            content_id=doc.get("cid"),
            length=int(doc.get("length", 0)),
            content_type=doc.get("contentType", "application/octet-stream"),
        )


class RawCache:
    """
    Holds the raw RFC822 bytes built for a record

    Contract: once set, the value is returned as-is by the builder and is
    never invalidated automatically. Whoever mutates the record owns calling
    ``clear()``.
    """

    __slots__ = ("_value",)

    def __init__(self, value: Optional[bytes] = None):
        self._value = bytes(value) if value is not None else None

    @property
    def is_set(self) -> bool:
        return self._value is not None

    def get(self) -> Optional[bytes]:
        return self._value

    def set(self, value: bytes) -> None:
        self._value = bytes(value)

    def clear(self) -> None:
        self._value = None

    def __eq__(self, other):
        if not isinstance(other, RawCache):
            return NotImplemented
        return self._value == other._value

    def __repr__(self):
        size = "empty" if self._value is None else f"{len(self._value)} bytes"
        return f"RawCache({size})"


@dataclass
class StructuredMessage:
    """
    Container for a decoded message and its storage scoping

    Address lists are None when the source header was absent and [] when the
    header was present but held no parseable address. The same holds for
    references / in_reply_to.
    """
    headers: Dict[str, HeaderValue] = field(default_factory=dict)
    from_: Optional[List[Address]] = None
    to: Optional[List[Address]] = None
    cc: Optional[List[Address]] = None
    bcc: Optional[List[Address]] = None
    subject: Optional[str] = None
    references: Optional[List[str]] = None
    in_reply_to: Optional[List[str]] = None
    priority: Priority = Priority.NORMAL
    text: Optional[str] = None
    html: Optional[str] = None
    date: Optional[datetime] = None
    attached_files: List[AttachedFile] = field(default_factory=list)
    raw: RawCache = field(default_factory=RawCache)

    # Storage scoping, owned by MessageRepository
    id: Any = None
    uid: Optional[int] = None
    user: Any = None
    folder: Optional[str] = None
    flags: List[str] = field(default_factory=list)
    internaldate: Optional[datetime] = None
    modseq: Optional[int] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def header_values(self, name: str) -> List[str]:
        """Return every value of a header, oldest first ([] if absent)."""
        value = self.headers.get(name.lower())
        if value is None:
            return []
        if isinstance(value, list):
            return list(value)
        return [value]

    def first_header(self, name: str) -> Optional[str]:
        values = self.header_values(name)
        return values[0] if values else None

    def add_header(self, name: str, value: str) -> None:
        """Append a header value, coalescing repeats into an ordered list."""
        key = name.lower()
        existing = self.headers.get(key)
        if existing is None:
            self.headers[key] = value
        elif isinstance(existing, list):
            existing.append(value)
        else:
            self.headers[key] = [existing, value]

    def to_document(self) -> Dict[str, Any]:
        """Serialize to the MongoDB document shape."""
        doc: Dict[str, Any] = dict(self.extra)
        doc["headers"] = {
            k: list(v) if isinstance(v, list) else v for k, v in self.headers.items()
        }
        for key, addresses in zip(_ADDRESS_KEYS, (self.from_, self.to, self.cc, self.bcc)):
            if addresses is not None:
                doc[key] = [a.to_document() for a in addresses]
        if self.references is not None:
            doc["references"] = list(self.references)
        if self.in_reply_to is not None:
            doc["inReplyTo"] = list(self.in_reply_to)

        optional = {
            "_id": self.id,
            "uid": self.uid,
            "user": self.user,
            "folder": self.folder,
            "internaldate": self.internaldate,
            "MODSEQ": self.modseq,
            "subject": self.subject,
            "text": self.text,
            "html": self.html,
            "date": self.date,
            "raw": self.raw.get(),
        }
        doc.update({k: v for k, v in optional.items() if v is not None})
        doc["priority"] = self.priority.value
        doc["flags"] = list(self.flags)
        doc["attached_files"] = [f.to_document() for f in self.attached_files]
        return doc

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "StructuredMessage":
        """Rebuild a message from a stored document."""

        def addresses(key: str) -> Optional[List[Address]]:
            if key not in doc or doc[key] is None:
                return None
            value = doc[key]
            if not isinstance(value, list):
                value = [value]
            return [Address.from_document(item) for item in value]

        raw = doc.get("raw")
        return cls(
            headers=dict(doc.get("headers") or {}),
            from_=addresses("from"),
            to=addresses("to"),
            cc=addresses("cc"),
            bcc=addresses("bcc"),
            subject=doc.get("subject"),
            references=doc.get("references"),
            in_reply_to=doc.get("inReplyTo"),
            priority=Priority.coerce(doc.get("priority")),
            text=doc.get("text"),
            html=doc.get("html"),
            date=doc.get("date"),
            attached_files=[
                AttachedFile.from_document(f) for f in doc.get("attached_files") or []
            ],
            raw=RawCache(bytes(raw) if raw is not None else None),
            id=doc.get("_id"),
            uid=doc.get("uid"),
            user=doc.get("user"),
            folder=doc.get("folder"),
            flags=list(doc.get("flags") or []),
            internaldate=doc.get("internaldate"),
            modseq=doc.get("MODSEQ"),
            extra={k: v for k, v in doc.items() if k not in _KNOWN_KEYS},
        )
