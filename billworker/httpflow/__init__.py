"""
Browserless portal access: raw HTTP session and markup parsing.
"""

from .markup import MarkupPage
from .session import HttpSession

__all__ = ["MarkupPage", "HttpSession"]
