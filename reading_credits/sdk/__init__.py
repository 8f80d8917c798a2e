"""
SDK for reading credits.

Provides the charge-then-generate reading client.
"""

from .openai_client import GuardedReadingClient, ReadingResult

__all__ = ["GuardedReadingClient", "ReadingResult"]
