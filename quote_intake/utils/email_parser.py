# --------------------------- quote_intake/utils/email_parser.py ----------------------------
"""
Quote Intake · Email Parser Utility

OVERVIEW:
Turns raw RFC 822 messages into InboundEmail objects and provides the small
address helpers the coordinator relies on.

WORKFLOW:
1. Detect the raw encoding and parse the MIME structure
2. Decode headers (RFC 2047) and derive a stable thread id
3. Prefer text/plain, fall back to HTML converted to text
4. Collect attachment filenames (drawings, STEP files, PDFs)
5. Strip mobile signatures and whitespace noise

BUSINESS LOGIC:
- Customers write from Outlook, Gmail and phones; bodies arrive in many charsets
- Technical drawings travel as attachments and drive the guardrail decision
- Replies must map back to the original request through their thread id

DEPENDENCIES:
- email (standard library)
- html2text for HTML conversion
- chardet for encoding detection
"""

import email
import re
import uuid
from email.header import decode_header
from email.message import Message
from typing import List, Optional, Tuple

import chardet
import html2text

from quote_intake.config import settings
from quote_intake.models import Attachment, InboundEmail

SIGNATURE_PATTERNS = [
    r'Sent from my iPhone.*$',
    r'Sent from my Android.*$',
    r'Enviado desde mi iPhone.*$',
    r'Get Outlook for iOS.*$',
    r'CONFIDENTIALITY NOTICE:.*$',
]


def extract_email_address(from_header: str) -> str:
    """Extract a clean address from ``Name <email@domain.com>``."""
    if not from_header:
        return ""
    match = re.search(r'<([^>]+)>', from_header)
    if match:
        return match.group(1).strip().lower()
    match = re.search(r'[\w\.\+-]+@[\w\.-]+\.\w+', from_header)
    if match:
        return match.group(0).lower()
    return from_header.strip().lower()


def extract_display_name(from_header: str) -> Optional[str]:
    match = re.match(r'\s*"?([^"<]+?)"?\s*<', from_header or "")
    return match.group(1).strip() if match else None


def is_bulk_sender(from_header: str) -> bool:
    """Newsletters, fintech notifications and no-reply senders never carry RFQs."""
    address = extract_email_address(from_header)
    if any(address.startswith(prefix) for prefix in settings.BULK_SENDER_PREFIXES):
        return True
    domain = address.rsplit("@", 1)[-1]
    return any(domain == d or domain.endswith("." + d) for d in settings.BULK_SENDER_DOMAINS)


def derive_thread_id(message_id: str, in_reply_to: str = "", references: str = "") -> str:
    """The first Message-ID in References is the thread root."""
    if references:
        ids = re.findall(r'<[^>]+>', references)
        if ids:
            return ids[0]
    if in_reply_to:
        ids = re.findall(r'<[^>]+>', in_reply_to)
        if ids:
            return ids[0]
    return message_id


class EmailParser:
    """
    RFC 822 parser producing InboundEmail objects.

    KEY FEATURES:
    - Charset detection with chardet fallback
    - HTML to text conversion
    - Attachment detection
    - Thread id derivation
    """

    def __init__(self):
        self.html_converter = html2text.HTML2Text()
        self.html_converter.ignore_links = False
        self.html_converter.ignore_images = True
        self.html_converter.body_width = 0

    def parse_bytes(self, raw_message: bytes, uid: Optional[str] = None) -> InboundEmail:
        """
        Parse one RFC 822 message. The Message-ID header is the email id;
        the mailbox UID is kept only for flagging the message afterwards.
        """
        msg = email.message_from_bytes(raw_message)
        headers = self._extract_headers(msg)
        body_text, body_html = self._extract_body(msg)
        if not body_text.strip() and body_html:
            body_text = self.html_converter.handle(body_html)

        message_id = headers.get("message-id") or f"<imap-{uid or uuid.uuid4().hex}@local>"
        return InboundEmail(
            id=message_id,
            thread_id=derive_thread_id(message_id, headers.get("in-reply-to", ""), headers.get("references", "")),
            sender=headers.get("from", ""),
            subject=headers.get("subject", ""),
            body=self._clean_email_text(body_text),
            attachments=self._extract_attachments(msg),
            message_id=message_id,
            uid=uid,
        )

    def _extract_headers(self, msg: Message) -> dict:
        headers = {}
        for header in ("From", "To", "Subject", "Date", "Message-ID", "In-Reply-To", "References"):
            value = msg.get(header, "")
            if value:
                headers[header.lower()] = decode_header_value(str(value))
        return headers

    def _extract_body(self, msg: Message) -> Tuple[str, Optional[str]]:
        plain_text = ""
        html_content = None
        parts = msg.walk() if msg.is_multipart() else [msg]
        for part in parts:
            if part.get_content_disposition() == "attachment":
                continue
            content_type = part.get_content_type()
            if content_type not in ("text/plain", "text/html"):
                continue
            payload = part.get_payload(decode=True)
            if payload is None:
                continue
            text = decode_bytes(payload, part.get_content_charset())
            if content_type == "text/plain":
                plain_text += text + "\n"
            elif html_content is None:
                html_content = text
        return plain_text, html_content

    def _extract_attachments(self, msg: Message) -> List[Attachment]:
        attachments = []
        for part in msg.walk():
            if part.get_content_disposition() not in ("attachment", "inline"):
                continue
            filename = part.get_filename()
            if not filename:
                continue
            payload = part.get_payload(decode=True) or b""
            attachments.append(Attachment(
                filename=decode_header_value(filename),
                content_type=part.get_content_type(),
                size=len(payload),
                content=payload,
            ))
        return attachments

    def _clean_email_text(self, text: str) -> str:
        text = text.replace('\u200b', '').replace('\xa0', ' ')
        text = re.sub(r'\n\s*\n\s*\n+', '\n\n', text)
        text = re.sub(r'[ \t]+', ' ', text)
        for pattern in SIGNATURE_PATTERNS:
            text = re.sub(pattern, '', text, flags=re.IGNORECASE | re.MULTILINE | re.DOTALL)
        return text.strip()


def decode_header_value(value: str) -> str:
    parts = []
    for part, encoding in decode_header(value):
        if isinstance(part, bytes):
            parts.append(decode_bytes(part, encoding))
        else:
            parts.append(part)
    return "".join(parts).strip()


def decode_bytes(payload: bytes, charset: Optional[str] = None) -> str:
    """Decode with the declared charset, then chardet's guess, then utf-8."""
    if charset:
        try:
            return payload.decode(charset)
        except (LookupError, UnicodeDecodeError):
            pass
    detected = chardet.detect(payload).get("encoding")
    return payload.decode(detected or "utf-8", errors="replace")
