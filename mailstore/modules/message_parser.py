"""
Raw Message Parser Module
Turns an incrementally fed RFC822 byte stream into a StructuredMessage

SECURITY STORY: This is the boundary where untrusted bytes enter storage.
Header decoding is best effort (a broken header never aborts the parse),
the number of MIME parts walked is capped, and attachment names are
sanitized before they are stored or echoed in logs.

BytesFeedParser keeps the whole message in memory until ``close()``, so
memory use grows with message size. The MIME tree is walked at ``close()``:
each attachment part is decoded and handed to the AttachmentSpooler as the
walk reaches it, and the walk carries on decoding the rest of the message
while the writes run. The join barrier then waits on all of them before
relocating them in encounter order.
"""

import logging
import mimetypes
import os
import re
import time
from concurrent.futures import wait
from dataclasses import dataclass
from datetime import datetime
from email.errors import MessageError
from email.feedparser import BytesFeedParser
from email.header import decode_header, make_header
from email.message import Message
from email.policy import compat32
from email.utils import getaddresses, parsedate_to_datetime
from enum import Enum
from typing import Dict, Iterable, Iterator, List, Optional, Set, Union, BinaryIO

from .attachment_spooler import AttachmentSpooler, SpoolHandle
from .errors import ParseError
from .message_data import Address, AttachedFile, Priority, StructuredMessage
from ..utils.sanitization import sanitize_for_logging
from ..utils.security_validators import MAX_MIME_PARTS, sanitize_filename

logger = logging.getLogger(__name__)

DEFAULT_CHARSET = "utf-8"
DEFAULT_CHUNK_SIZE = 64 * 1024

ADDRESS_HEADERS = ("from", "to", "cc", "bcc")
# Kept undecoded in ``headers`` so a decoded display name cannot re-split
UNDECODED_HEADERS = frozenset(ADDRESS_HEADERS + ("reply-to", "sender"))
BODY_TYPES = ("text/plain", "text/html")

HEADER_END_PATTERN = re.compile(rb"\r?\n\r?\n")
FOLDING_PATTERN = re.compile(r"\r?\n(?=[ \t])")
SURROGATE_PATTERN = re.compile("[\udc80-\udcff]")
MSG_ID_PATTERN = re.compile(r"<([^<>\s]+)>")
X_PRIORITY_PATTERN = re.compile(r"^\s*([1-5])")

_WORD_PRIORITIES = {"high": Priority.HIGH, "urgent": Priority.HIGH, "low": Priority.LOW,
                    "non-urgent": Priority.LOW, "normal": Priority.NORMAL}

Source = Union[bytes, bytearray, memoryview, BinaryIO, Iterable[bytes]]


class ParserState(Enum):
    AWAITING_HEADERS = "awaiting_headers"
    DECODING_BODY = "decoding_body"
    SPOOLING_ATTACHMENTS = "spooling_attachments"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass
class _PendingAttachment:
    handle: SpoolHandle
    name: str
    extension: str
    content_id: Optional[str]
    content_type: str


# ----------------------------------------------------------------------
# Header decoding helpers
# ----------------------------------------------------------------------

def _clean_raw_value(value: str) -> str:
    """Unfold a raw header value and recover 8-bit bytes as UTF-8."""
    if SURROGATE_PATTERN.search(value):
        value = value.encode("utf-8", "surrogateescape").decode(DEFAULT_CHARSET, "replace")
    value = FOLDING_PATTERN.sub("", value)
    return value.replace("\r", "").replace("\n", "").strip()


def decode_header_value(value: Optional[str]) -> str:
    """
    Decode an RFC 2047 encoded header value

    Falls back to the undecoded text when an encoded word is malformed or
    names an unknown charset.
    """
    if not value:
        return ""
    try:
        return str(make_header(decode_header(value)))
    except (MessageError, UnicodeDecodeError, LookupError) as e:
        logger.debug("Keeping undecodable header value %s: %s", sanitize_for_logging(value, 80), e)
        return value


def parse_addresses(values: List[str]) -> List[Address]:
    """Decode address header values into Address entries, dropping unparseable ones."""
    addresses = []
    for name, address in getaddresses(values):
        if not address:
            continue
        addresses.append(Address(address=address, name=decode_header_value(name)))
    return addresses


def parse_message_ids(values: List[str]) -> List[str]:
    ids: List[str] = []
    for value in values:
        found = MSG_ID_PATTERN.findall(value)
        ids.extend(found if found else value.split())
    return ids


def parse_priority(headers: Dict[str, List[str]]) -> Priority:
    for value in headers.get("x-priority", []):
        match = X_PRIORITY_PATTERN.match(value)
        if match:
            level = int(match.group(1))
            if level < 3:
                return Priority.HIGH
            if level > 3:
                return Priority.LOW
            return Priority.NORMAL
    for name in ("importance", "x-msmail-priority"):
        for value in headers.get(name, []):
            priority = _WORD_PRIORITIES.get(value.strip().lower())
            if priority is not None:
                return priority
    return Priority.NORMAL


def parse_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError, OverflowError):
        return None


def decode_part_text(part: Message) -> str:
    """
    Decode a text part's payload with charset fallback

    Unknown charsets fall back to UTF-8; undecodable bytes are replaced
    rather than aborting the parse. Line endings are normalized to LF.
    """
    payload = part.get_payload(decode=True)
    if not payload:
        return ""
    charset = part.get_content_charset() or DEFAULT_CHARSET
    try:
        text = payload.decode(charset, errors="replace")
    except LookupError:
        text = payload.decode(DEFAULT_CHARSET, errors="replace")
    return text.replace("\r\n", "\n")


def _iter_parts(part: Message) -> Iterator[Message]:
    """Depth-first walk that treats message/rfc822 as a single leaf."""
    yield part
    if part.get_content_type() == "message/rfc822":
        return
    if part.is_multipart():
        for sub in part.get_payload():
            yield from _iter_parts(sub)


def _iter_chunks(data: bytes, size: int) -> Iterator[bytes]:
    view = memoryview(data)
    for offset in range(0, len(view), size):
        yield bytes(view[offset:offset + size])


def _iter_source(source: Source, chunk_size: int) -> Iterator[bytes]:
    if isinstance(source, (bytes, bytearray, memoryview)):
        yield bytes(source)
        return
    read = getattr(source, "read", None)
    if read is not None:
        while True:
            chunk = read(chunk_size)
            if not chunk:
                return
            yield chunk
    else:
        yield from source


class RawMessageParser:
    """
    One-shot incremental parser for a single raw message

    Usage:
        parser = RawMessageParser(spooler)
        for chunk in stream:
            parser.feed(chunk)
        message = parser.close()   # explicit end of stream

    Args:
        spooler: Where attachment bytes are written
        timeout: Seconds ``close()`` may wait for attachment writes, measured
            from the end-of-stream signal (None/0 disables). Stream pacing
            is the caller's concern.
        chunk_size: Size of the chunks streamed to the spooler
        max_mime_parts: MIME parts walked before the rest is ignored
    """

    def __init__(
        self,
        spooler: AttachmentSpooler,
        timeout: Optional[float] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        max_mime_parts: int = MAX_MIME_PARTS,
    ):
        self.spooler = spooler
        self.timeout = timeout or None
        self.chunk_size = chunk_size
        self.max_mime_parts = max_mime_parts
        self._feed_parser = BytesFeedParser(policy=compat32)
        self._state = ParserState.AWAITING_HEADERS
        self._tail = b""
        self._bytes_fed = 0

    @property
    def state(self) -> ParserState:
        return self._state

    # ------------------------------------------------------------------
    # Stream input
    # ------------------------------------------------------------------

    def feed(self, data: bytes) -> None:
        """Push the next chunk of the raw message."""
        if self._state not in (ParserState.AWAITING_HEADERS, ParserState.DECODING_BODY):
            raise ParseError("Cannot feed data after the end of the message stream")
        if not isinstance(data, (bytes, bytearray, memoryview)):
            raise TypeError(f"feed() expects bytes, got {type(data).__name__}")
        if not data:
            return
        data = bytes(data)
        self._bytes_fed += len(data)
        self._feed_parser.feed(data)

        if self._state is ParserState.AWAITING_HEADERS:
            window = self._tail + data
            if HEADER_END_PATTERN.search(window):
                self._state = ParserState.DECODING_BODY
            else:
                self._tail = window[-3:]

    def parse(self, source: Source) -> StructuredMessage:
        """Feed a whole source (bytes, binary file or chunk iterable) and close."""
        try:
            for chunk in _iter_source(source, self.chunk_size):
                self.feed(chunk)
        except OSError as e:
            self._state = ParserState.FAILED
            raise ParseError(f"Message stream is unreadable: {e}") from e
        return self.close()

    # ------------------------------------------------------------------
    # End of stream
    # ------------------------------------------------------------------

    def close(self) -> StructuredMessage:
        """
        Signal the end of the stream and build the message

        Raises:
            ParseError: Empty stream, undecodable structure or timeout
            SpoolError: An attachment could not be written or relocated
        """
        if self._state in (ParserState.COMPLETE, ParserState.FAILED):
            raise ParseError("Parser was already closed")
        if not self._bytes_fed:
            self._state = ParserState.FAILED
            raise ParseError("Empty message stream")

        deadline = None if self.timeout is None else time.monotonic() + self.timeout
        pending: List[_PendingAttachment] = []
        try:
            try:
                root = self._feed_parser.close()
            except MessageError as e:
                raise ParseError(f"Undecodable message structure: {e}") from e

            self._state = ParserState.DECODING_BODY
            message = StructuredMessage()
            self._walk(root, message, pending)
            self._decode_headers(root, message)

            self._state = ParserState.SPOOLING_ATTACHMENTS
            self._join(pending, deadline)
            message.attached_files = self._finalize(pending)
        except Exception:
            self._state = ParserState.FAILED
            self._cleanup(pending)
            raise

        self._state = ParserState.COMPLETE
        if root.defects:
            logger.debug("Message parsed with %d structural defect(s)", len(root.defects))
        logger.info(
            "Parsed message '%s' (%d bytes, %d attachment(s))",
            sanitize_for_logging(message.subject or "", 80),
            self._bytes_fed,
            len(message.attached_files),
            extra={"extra_fields": {
                "bytes": self._bytes_fed,
                "attachments": len(message.attached_files),
                "priority": message.priority.value,
            }},
        )
        return message

    # ------------------------------------------------------------------
    # Body and attachments
    # ------------------------------------------------------------------

    def _walk(self, root: Message, message: StructuredMessage,
              pending: List[_PendingAttachment]) -> None:
        text_parts: List[str] = []
        html_parts: List[str] = []
        used_names: Set[str] = set()

        for count, part in enumerate(_iter_parts(root), start=1):
            if count > self.max_mime_parts:
                logger.warning(
                    "Message exceeds max MIME parts (%d). Ignoring remaining parts.",
                    self.max_mime_parts,
                )
                break
            content_type = part.get_content_type()
            if content_type != "message/rfc822" and part.is_multipart():
                continue

            if self._is_attachment(part):
                pending.append(self._start_spool(part, used_names))
            elif content_type == "text/html":
                html_parts.append(decode_part_text(part))
            else:
                text_parts.append(decode_part_text(part))

        if text_parts:
            message.text = "\n".join(text_parts)
        if html_parts:
            message.html = "\n".join(html_parts)

    @staticmethod
    def _is_attachment(part: Message) -> bool:
        disposition = (part.get_content_disposition() or "").lower()
        if disposition == "attachment" or part.get_filename():
            return True
        return part.get_content_type() not in BODY_TYPES

    def _start_spool(self, part: Message, used_names: Set[str]) -> _PendingAttachment:
        content_type = part.get_content_type()
        if content_type == "message/rfc822":
            inner = part.get_payload()
            payload = inner[0].as_bytes() if inner else b""
        else:
            payload = part.get_payload(decode=True) or b""

        name = self._attachment_name(part, content_type, used_names)
        content_id = part.get("Content-ID")
        if content_id:
            content_id = _clean_raw_value(str(content_id)).strip("<>") or None

        handle = self.spooler.spool(_iter_chunks(payload, self.chunk_size))
        return _PendingAttachment(
            handle=handle,
            name=name,
            extension=os.path.splitext(name)[1].lstrip(".").lower(),
            content_id=content_id,
            content_type=content_type,
        )

    @staticmethod
    def _attachment_name(part: Message, content_type: str, used_names: Set[str]) -> str:
        raw_name = part.get_filename()
        name = decode_header_value(_clean_raw_value(str(raw_name))) if raw_name else ""
        if not name:
            name = "attachment" + (mimetypes.guess_extension(content_type) or ".bin")
        name = sanitize_filename(name)

        base, ext = os.path.splitext(name)
        candidate, n = name, 1
        while candidate.lower() in used_names:
            candidate = f"{base}-{n}{ext}"
            n += 1
        used_names.add(candidate.lower())
        return candidate

    def _join(self, pending: List[_PendingAttachment], deadline: Optional[float]) -> None:
        """Wait for every spool, whatever order they complete in."""
        if not pending:
            return
        remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
        _, not_done = wait([p.handle.future for p in pending], timeout=remaining)
        if not_done:
            raise ParseError(
                f"Timed out waiting for {len(not_done)} of {len(pending)} attachment write(s)"
            )
        for p in pending:
            p.handle.result()

    def _finalize(self, pending: List[_PendingAttachment]) -> List[AttachedFile]:
        files = []
        for p in pending:
            storage_path = self.spooler.finalize(p.handle, p.handle.checksum)
            files.append(AttachedFile(
                storage_path=storage_path,
                original_name=p.name,
                extension=p.extension,
                content_id=p.content_id,
                length=p.handle.length,
                content_type=p.content_type,
            ))
        return files

    def _cleanup(self, pending: List[_PendingAttachment]) -> None:
        """Drop every temporary and relocated file created for this message."""
        for p in pending:
            handle = p.handle
            if handle.storage_path:
                self.spooler.remove(handle.storage_path)
            elif handle.future is not None:
                # Writes still in flight are discarded once they land
                handle.future.add_done_callback(
                    lambda _f, h=handle: self.spooler.discard(h)
                )
        if pending:
            logger.warning("Discarded %d spooled attachment(s) of a failed parse", len(pending))

    # ------------------------------------------------------------------
    # Headers
    # ------------------------------------------------------------------

    def _decode_headers(self, root: Message, message: StructuredMessage) -> None:
        raw: Dict[str, List[str]] = {}
        for name, value in root.raw_items():
            key = name.strip().lower()
            cleaned = _clean_raw_value(str(value))
            raw.setdefault(key, []).append(cleaned)
            if key in UNDECODED_HEADERS:
                message.add_header(key, cleaned)
            else:
                message.add_header(key, decode_header_value(cleaned))

        for key in ADDRESS_HEADERS:
            if key in raw:
                attr = "from_" if key == "from" else key
                setattr(message, attr, parse_addresses(raw[key]))

        if "subject" in raw:
            message.subject = decode_header_value(raw["subject"][0])
        if "references" in raw:
            message.references = parse_message_ids(raw["references"])
        if "in-reply-to" in raw:
            message.in_reply_to = parse_message_ids(raw["in-reply-to"])

        message.priority = parse_priority(raw)
        message.date = parse_date(raw["date"][0]) if "date" in raw else None
        if "date" in raw and message.date is None:
            logger.warning("Unparseable Date header '%s'", sanitize_for_logging(raw["date"][0], 80))
