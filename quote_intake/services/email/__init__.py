"""Email Services Module"""
from .mailer import ResendMailer
from .inbox import Inbox, IMAPInbox, IMAPConfig

__all__ = ["ResendMailer", "Inbox", "IMAPInbox", "IMAPConfig"]
