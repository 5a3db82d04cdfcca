# --------------------------- tests/unit/test_inbox.py ----------------------------
"""
Quote Intake · IMAP Inbox Tests

The aioimaplib client is replaced by a mock; only UID commands may be used.
"""

from email.mime.text import MIMEText
from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock

import pytest

from quote_intake.models import InboundEmail
from quote_intake.services.email import IMAPInbox
from quote_intake.services.email.inbox import PROCESSED_KEYWORD, IMAPConfig


def rfc822(message_id: str, body: str = "Necesitamos 20 piezas") -> bytes:
    msg = MIMEText(body, "plain", "utf-8")
    msg["From"] = "Laura Gomez <laura@metalicas-norte.es>"
    msg["Subject"] = "Presupuesto"
    msg["Message-ID"] = message_id
    return msg.as_bytes()


def imap_client(messages):
    """Client double serving {uid: raw message} through UID commands."""
    async def uid(command, *args):
        if command == "fetch":
            return SimpleNamespace(result="OK", lines=[b"1 FETCH (UID " + args[0].encode() + b")",
                                                       bytearray(messages[args[0]]), b")"])
        return SimpleNamespace(result="OK", lines=[])

    client = Mock()
    client.select = AsyncMock()
    client.uid_search = AsyncMock(return_value=SimpleNamespace(
        result="OK", lines=[" ".join(messages).encode()]
    ))
    client.uid = AsyncMock(side_effect=uid)
    return client


@pytest.fixture
def inbox():
    return IMAPInbox(IMAPConfig(host="imap.test", port=993, username="u", password="p"))


class TestIMAPInbox:
    """Fetching and labelling by UID."""

    @pytest.mark.asyncio
    async def test_fetch_uses_uids_and_message_ids(self, inbox):
        inbox.client = imap_client({"7": rfc822("<a@mail>"), "9": rfc822("<b@mail>")})

        emails = await inbox.fetch_unread()

        assert [(e.id, e.uid) for e in emails] == [("<a@mail>", "7"), ("<b@mail>", "9")]
        inbox.client.uid_search.assert_awaited_once_with("UNSEEN", "UNKEYWORD", PROCESSED_KEYWORD)
        assert [c.args[:2] for c in inbox.client.uid.await_args_list] == [("fetch", "7"), ("fetch", "9")]
        inbox.client.search.assert_not_called()
        inbox.client.fetch.assert_not_called()

    @pytest.mark.asyncio
    async def test_mark_processed_stores_flags_by_uid(self, inbox):
        inbox.client = imap_client({"9": rfc822("<b@mail>")})
        (message,) = await inbox.fetch_unread()

        assert await inbox.mark_processed(message, "Handled") is True

        command, uid, mode, flags = inbox.client.uid.await_args.args
        assert (command, uid, mode) == ("store", "9", "+FLAGS.SILENT")
        assert PROCESSED_KEYWORD in flags and "HANDLED" in flags
        inbox.client.store.assert_not_called()

    @pytest.mark.asyncio
    async def test_message_without_uid_is_not_flagged(self, inbox):
        inbox.client = imap_client({})

        message = InboundEmail(id="<x@mail>", thread_id="<x@mail>", sender="a@b.es")

        assert await inbox.mark_processed(message, "Handled") is False
        inbox.client.uid.assert_not_awaited()
