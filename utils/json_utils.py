#!/usr/bin/env python3
"""
Centralized JSON serialization utilities.

Bloat records and reindex plans are dataclasses with enum fields; this
encoder turns them, plus the Decimal values psycopg2 returns for numeric
columns, into plain JSON.
"""

import dataclasses
import json
from decimal import Decimal
from datetime import datetime, timedelta
from enum import Enum


class UniversalJSONEncoder(json.JSONEncoder):
    """
    JSON encoder for query results and domain records.

    Usage:
        json.dumps(data, cls=UniversalJSONEncoder)
    """

    def default(self, obj):
        if isinstance(obj, Decimal):
            return float(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, timedelta):
            return obj.total_seconds()
        if isinstance(obj, Enum):
            return obj.value

        # Records expose their own shape; other dataclasses go field by field
        if hasattr(obj, 'to_dict') and callable(obj.to_dict):
            return obj.to_dict()
        if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
            return {f.name: getattr(obj, f.name) for f in dataclasses.fields(obj)}

        if isinstance(obj, (set, frozenset, tuple)):
            return list(obj)

        if isinstance(obj, bytes):
            return obj.decode('utf-8', errors='replace')

        return super().default(obj)


def safe_json_dumps(obj, **kwargs):
    """
    Serialize any object to a JSON string with UniversalJSONEncoder.

    Example:
        json_str = safe_json_dumps(records, indent=2)
    """
    if 'cls' not in kwargs:
        kwargs['cls'] = UniversalJSONEncoder

    return json.dumps(obj, **kwargs)
