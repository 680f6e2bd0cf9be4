"""
Common utilities shared across plugins.

This module provides reusable components for:
- Output formatting (AsciiDoc tables, terminal tables, byte sizes)
"""

from .output_formatters import AsciiDocFormatter, format_bytes, format_text_table

__all__ = [
    'AsciiDocFormatter',
    'format_bytes',
    'format_text_table',
]
