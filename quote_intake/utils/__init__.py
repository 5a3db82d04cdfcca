# quote_intake/utils/__init__.py
"""
Quote Intake - Utilities Package

Email parsing and address helpers used across the intake core.
"""

from .email_parser import EmailParser, extract_email_address, extract_display_name, is_bulk_sender, derive_thread_id

__all__ = ['EmailParser', 'extract_email_address', 'extract_display_name', 'is_bulk_sender', 'derive_thread_id']
