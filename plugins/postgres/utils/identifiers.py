"""
Identifier helpers for generated DDL.

Plans are built without a live connection, so quoting is done here rather
than through psycopg2.sql, which needs a connection to render.
"""

import logging

logger = logging.getLogger(__name__)

# NAMEDATALEN - 1 on a stock build
MAX_IDENTIFIER_BYTES = 63


def quote_ident(name):
    """Double-quotes an identifier, doubling any embedded quotes."""
    return '"' + str(name).replace('"', '""') + '"'


def qualified(schema, name):
    return f"{quote_ident(schema)}.{quote_ident(name)}"


def truncate_identifier(name, max_bytes=MAX_IDENTIFIER_BYTES):
    """
    Shortens an identifier to what the server would keep.

    PostgreSQL silently truncates long names to max_bytes of UTF-8 without
    splitting a character; doing the same here keeps the name used in later
    statements identical to the one the server actually created.
    """
    encoded = name.encode('utf-8')
    if len(encoded) <= max_bytes:
        return name

    truncated = encoded[:max_bytes].decode('utf-8', errors='ignore')
    logger.warning(f"Identifier '{name}' exceeds {max_bytes} bytes, truncated to '{truncated}'")
    return truncated
