"""
Raw Message Builder Module
Serializes a stored StructuredMessage back into RFC822 bytes for delivery
or download

The result is cached on the record (``message.raw``). A cache hit returns
the stored bytes without composing anything; a failed build leaves the
cache untouched so the caller can retry.
"""

import logging
import re
from email import encoders, message_from_bytes
from email.charset import Charset, QP
from email.errors import MessageError
from email.header import Header
from email.mime.base import MIMEBase
from email.mime.message import MIMEMessage
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.policy import compat32
from email.utils import format_datetime, formataddr, getaddresses
from typing import List, Optional

from .attachment_spooler import AttachmentSpooler
from .errors import BuildError, SpoolError
from .message_data import Address, AttachedFile, StructuredMessage
from ..utils.sanitization import sanitize_for_logging

logger = logging.getLogger(__name__)

# Regenerated from structured fields, never copied verbatim
EXCLUDED_HEADERS = frozenset({"content-type", "content-transfer-encoding", "subject", "from", "to"})

ADDRESS_HEADERS = frozenset({"from", "to", "cc", "bcc", "reply-to", "sender"})

_DISPLAY_NAMES = {
    "message-id": "Message-ID",
    "mime-version": "MIME-Version",
    "content-id": "Content-ID",
    "in-reply-to": "In-Reply-To",
    "dkim-signature": "DKIM-Signature",
}

# RFC 5322 field name: printable US-ASCII except colon
HEADER_NAME_PATTERN = re.compile(r"^[!-9;-~]+$")

SMTP_POLICY = compat32.clone(linesep="\r\n")


def display_header_name(name: str) -> str:
    """Turn a stored lower-case name back into its usual spelling."""
    if name in _DISPLAY_NAMES:
        return _DISPLAY_NAMES[name]
    return "-".join(piece[:1].upper() + piece[1:] for piece in name.split("-"))


def format_addresses(addresses: List[Address]) -> str:
    return ", ".join(formataddr((a.name, a.address), charset="utf-8") for a in addresses)


def _utf8_qp() -> Charset:
    charset = Charset("utf-8")
    charset.body_encoding = QP
    return charset


class RawMessageBuilder:
    """
    Composes raw messages from records

    Args:
        spooler: Gives access to permanently stored attachment bytes
    """

    def __init__(self, spooler: AttachmentSpooler):
        self.spooler = spooler

    def build(self, message: StructuredMessage) -> bytes:
        """
        Return the raw RFC822 bytes of a message, composing them if not cached

        Raises:
            BuildError: Composition failed; ``message.raw`` is left unchanged
        """
        cached = message.raw.get()
        if cached is not None:
            return cached

        try:
            mime = self._compose(message)
            raw = mime.as_bytes(policy=SMTP_POLICY)
        except (SpoolError, MessageError, ValueError, TypeError, UnicodeError) as e:
            logger.error(
                "Failed to build raw message '%s': %s",
                sanitize_for_logging(message.subject or "", 80), e,
            )
            raise BuildError(f"Cannot build raw message: {e}") from e

        message.raw.set(raw)
        return raw

    # ------------------------------------------------------------------
    # Composition
    # ------------------------------------------------------------------

    def _compose(self, message: StructuredMessage):
        mime = self._compose_body(message)
        if message.attached_files:
            mixed = MIMEMultipart("mixed")
            mixed.attach(mime)
            for attached in message.attached_files:
                mixed.attach(self._attachment_part(attached))
            mime = mixed

        if message.subject is not None:
            mime["Subject"] = self._encode_value("subject", message.subject)
        for name, addresses in (("from", message.from_), ("to", message.to)):
            value = self._resolve_address_header(message, name, addresses)
            if value:
                mime[display_header_name(name)] = value

        for name in message.headers:
            if name in EXCLUDED_HEADERS:
                continue
            if not HEADER_NAME_PATTERN.match(name):
                logger.warning("Skipping header with invalid name %r", sanitize_for_logging(name, 40))
                continue
            display = display_header_name(name)
            # Replace lines composition already produced (e.g. MIME-Version)
            del mime[display]
            for value in message.header_values(name):
                mime[display] = self._encode_value(name, value)

        if "date" not in message.headers and message.date is not None:
            mime["Date"] = format_datetime(message.date)
        return mime

    @staticmethod
    def _compose_body(message: StructuredMessage):
        text, html = message.text, message.html
        if text and html:
            body = MIMEMultipart("alternative")
            body.attach(MIMEText(text, "plain", _utf8_qp()))
            body.attach(MIMEText(html, "html", _utf8_qp()))
            return body
        if html:
            return MIMEText(html, "html", _utf8_qp())
        return MIMEText(text or "", "plain", _utf8_qp())

    def _attachment_part(self, attached: AttachedFile):
        data = self.spooler.read_bytes(attached.storage_path)
        maintype, _, subtype = (attached.content_type or "").partition("/")
        if maintype == "message" and subtype == "rfc822":
            part = MIMEMessage(message_from_bytes(data))
        else:
            if not maintype or not subtype or maintype == "multipart":
                maintype, subtype = "application", "octet-stream"
            part = MIMEBase(maintype, subtype)
            part.set_payload(data)
            encoders.encode_base64(part)

        disposition = "inline" if attached.content_id else "attachment"
        part.add_header("Content-Disposition", disposition, filename=attached.original_name)
        if attached.content_id:
            part["Content-ID"] = f"<{attached.content_id}>"
        return part

    # ------------------------------------------------------------------
    # Header values
    # ------------------------------------------------------------------

    def _resolve_address_header(self, message: StructuredMessage, name: str,
                                addresses: Optional[List[Address]]) -> Optional[str]:
        """The stored header value wins over addresses rebuilt from the list."""
        values = message.header_values(name)
        if values:
            return self._encode_value(name, ", ".join(values))
        if addresses:
            return format_addresses(addresses)
        return None

    @staticmethod
    def _encode_value(name: str, value: str):
        value = value.replace("\r", " ").replace("\n", " ")
        if value.isascii():
            return value
        if name in ADDRESS_HEADERS:
            parsed = [Address(address=addr, name=display) for display, addr in getaddresses([value]) if addr]
            if parsed:
                return format_addresses(parsed)
        return Header(value, "utf-8", header_name=display_header_name(name))
