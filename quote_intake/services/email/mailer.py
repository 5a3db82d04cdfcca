# --------------------------- quote_intake/services/email/mailer.py ----------------------------
"""
Quote Intake · Outbound Email (Resend)

Sends customer confirmations, information requests, provider RFQs and human
hand-off notifications. Replies stay in the customer's thread through
In-Reply-To / References headers; request and RFQ ids travel as Resend tags.
All sends go through the ``email`` rate limiter.
"""

import asyncio
import logging
import os
from typing import Any, Dict, Optional

from dotenv import load_dotenv
import resend

from quote_intake.config import settings
from quote_intake.errors import ExternalDependencyError
from quote_intake.models import OutboundEmail
from quote_intake.services.rate_limiter import RateLimiter

load_dotenv()

logger = logging.getLogger(__name__)


class ResendMailer:
    """
    Rate-limited Resend client.

    KEY METHODS:
    - send(): deliver one OutboundEmail, returning the Resend response
    """

    def __init__(self, limiter: RateLimiter, from_address: Optional[str] = None,
                 api_key: Optional[str] = None):
        self.limiter = limiter
        self.from_address = from_address or settings.QUOTES_FROM_EMAIL
        resend.api_key = api_key or os.getenv("RESEND_API_KEY") or settings.RESEND_API_KEY

    def build_params(self, message: OutboundEmail) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "from": self.from_address,
            "to": list(message.to),
            "subject": message.subject,
            "text": message.body,
        }
        reply_to = message.in_reply_to or message.thread_id
        if reply_to:
            params["headers"] = {"In-Reply-To": reply_to, "References": reply_to}
        if message.tags:
            params["tags"] = [{"name": k, "value": str(v)} for k, v in message.tags.items()]
        return params

    async def send(self, message: OutboundEmail, priority: int = 5) -> Dict[str, Any]:
        """
        Send an email.

        RAISES:
            ValidationError: the message has no recipient, subject or body
            ExternalDependencyError: Resend rejected or failed the request
        """
        message.validate()
        params = self.build_params(message)
        try:
            result = await self.limiter.schedule(
                lambda: asyncio.to_thread(resend.Emails.send, params),
                priority=priority,
            )
        except Exception as e:
            logger.error(f"Failed to send email to {message.to}: {e}")
            raise ExternalDependencyError("email", f"send to {', '.join(message.to)} failed", cause=e)
        logger.info(f"📧 Email sent to {', '.join(message.to)}: {message.subject}")
        return result if isinstance(result, dict) else {"id": getattr(result, "id", None)}
