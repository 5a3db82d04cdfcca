# --------------------------- quote_intake/services/email/inbox.py ----------------------------
"""
Quote Intake · Inbound Mailbox (IMAP)

OVERVIEW:
Inbound-email collaborator for the coordinator. Reads unread messages from
the quotes mailbox, hands them over as InboundEmail objects and labels them
once processed (Handled / Escalated / Spam / Updated / Failed).

WORKFLOW:
1. connect(): secure IMAP login
2. fetch_unread(): search UNSEEN messages without our processed keyword
3. Parse each RFC 822 message through EmailParser
4. mark_processed(): add the outcome keyword plus \\Seen

TECHNICAL ARCHITECTURE:
- aioimaplib async client, SSL by default
- UID commands only; sequence numbers shift after an expunge. The UID rides
  on InboundEmail.uid for labelling, the Message-ID is the email id
- Per-message fetch failures are logged and skipped

DEPENDENCIES:
- Environment variables: IMAP_HOST, IMAP_PORT, IMAP_USERNAME, IMAP_PASSWORD
"""

import logging
import ssl
from dataclasses import dataclass
from typing import List, Optional

import aioimaplib

from quote_intake.config import settings
from quote_intake.errors import ExternalDependencyError
from quote_intake.models import InboundEmail
from quote_intake.utils.email_parser import EmailParser

PROCESSED_KEYWORD = "QUOTE_INTAKE_PROCESSED"


@dataclass
class IMAPConfig:
    """IMAP connection configuration for the quotes mailbox"""
    host: str
    port: int
    username: str
    password: str
    folder: str = "INBOX"
    use_tls: bool = True

    @classmethod
    def from_settings(cls) -> "IMAPConfig":
        return cls(
            host=settings.IMAP_HOST,
            port=settings.IMAP_PORT,
            username=settings.IMAP_USERNAME or "",
            password=settings.IMAP_PASSWORD or "",
            folder=settings.IMAP_FOLDER,
        )


class Inbox:
    """Inbound-email collaborator interface used by the coordinator."""

    async def fetch_unread(self) -> List[InboundEmail]:
        raise NotImplementedError

    async def mark_processed(self, message: InboundEmail, label: str) -> bool:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class IMAPInbox(Inbox):
    """
    Async IMAP client for the quotes mailbox.

    KEY METHODS:
    - connect(): Establish secure IMAP connection
    - fetch_unread(): Get unprocessed emails
    - mark_processed(): Label a message and flag it as seen
    - close(): Clean up connections and resources
    """

    def __init__(self, config: Optional[IMAPConfig] = None, parser: Optional[EmailParser] = None):
        self.config = config or IMAPConfig.from_settings()
        self.parser = parser or EmailParser()
        self.client: Optional[aioimaplib.IMAP4] = None
        self.logger = logging.getLogger(f"imap.{self.config.host}")

    async def connect(self) -> None:
        """
        RAISES:
            ExternalDependencyError: connection or login failed
        """
        try:
            if self.config.use_tls:
                self.client = aioimaplib.IMAP4_SSL(
                    host=self.config.host, port=self.config.port,
                    ssl_context=ssl.create_default_context(),
                )
            else:
                self.client = aioimaplib.IMAP4(host=self.config.host, port=self.config.port)
            await self.client.wait_hello_from_server()
            response = await self.client.login(self.config.username, self.config.password)
            if response.result != "OK":
                raise ExternalDependencyError("imap", f"login rejected: {response.result}")
            self.logger.info(f"Connected to IMAP server: {self.config.host}")
        except ExternalDependencyError:
            raise
        except Exception as e:
            self.logger.error(f"Failed to connect to IMAP server {self.config.host}: {e}")
            raise ExternalDependencyError("imap", f"connection to {self.config.host} failed", cause=e)

    async def fetch_unread(self) -> List[InboundEmail]:
        if not self.client:
            await self.connect()

        await self.client.select(self.config.folder)
        search_response = await self.client.uid_search("UNSEEN", "UNKEYWORD", PROCESSED_KEYWORD)
        if search_response.result != "OK":
            self.logger.warning(f"Search failed in folder {self.config.folder}: {search_response.result}")
            return []

        uid_list = search_response.lines[0].split() if search_response.lines else []
        self.logger.info(f"Found {len(uid_list)} unread messages in {self.config.folder}")

        messages = []
        for uid in uid_list:
            uid = uid.decode() if isinstance(uid, bytes) else str(uid)
            try:
                fetch_response = await self.client.uid("fetch", uid, "(BODY.PEEK[])")
                if fetch_response.result != "OK" or len(fetch_response.lines) < 2:
                    self.logger.warning(f"Failed to fetch message {uid}: {fetch_response.result}")
                    continue
                messages.append(self.parser.parse_bytes(bytes(fetch_response.lines[1]), uid=uid))
            except Exception as e:
                self.logger.error(f"Failed to fetch message {uid}: {e}")
        return messages

    async def mark_processed(self, message: InboundEmail, label: str) -> bool:
        if not self.client or not message.uid:
            return False
        try:
            response = await self.client.uid(
                "store", message.uid, "+FLAGS.SILENT", f"(\\Seen {PROCESSED_KEYWORD} {label.upper()})"
            )
            return response.result == "OK"
        except Exception as e:
            self.logger.error(f"Failed to mark message UID {message.uid} as processed: {e}")
            return False

    async def close(self) -> None:
        if self.client:
            try:
                await self.client.logout()
            except Exception as e:
                self.logger.warning(f"Error during IMAP logout: {e}")
            finally:
                self.client = None
