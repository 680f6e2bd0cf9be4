"""
Statistical table and index bloat estimation.

Both estimates derive the expected page count of each relation from
per-column average width and null fraction in pg_stats, then compare it
with the pages actually allocated. Nothing is scanned, so the numbers are
only as fresh as the last ANALYZE and are approximate by nature.
"""

import logging

from plugins.postgres.models import IndexBloatRecord, TableBloatRecord
from plugins.postgres.utils.qrylib.index_bloat_analysis import index_bloat_query
from plugins.postgres.utils.qrylib.table_bloat_analysis import table_bloat_query

logger = logging.getLogger(__name__)


def _rank_key(record):
    return (-record.bloat_size_bytes, record.schema, record.table_name,
            getattr(record, 'index_name', ''))


class BloatEstimator:
    """Runs the bloat queries on a connector and maps rows into records."""

    def __init__(self, connector):
        self.connector = connector

    def estimate_table_bloat(self):
        """Returns TableBloatRecords ranked by estimated bloat, largest first."""
        rows = self.connector.fetch_rows(table_bloat_query(self.connector))
        records = sorted((TableBloatRecord.from_row(row) for row in rows), key=_rank_key)
        logger.info(f"Estimated bloat for {len(records)} tables")
        return records

    def estimate_index_bloat(self):
        """Returns IndexBloatRecords ranked by estimated bloat, largest first."""
        rows = self.connector.fetch_rows(index_bloat_query(self.connector))
        records = sorted((IndexBloatRecord.from_row(row) for row in rows), key=_rank_key)
        logger.info(f"Estimated bloat for {len(records)} btree indexes")
        return records

    # Caller-facing names
    list_table_bloat = estimate_table_bloat
    list_index_bloat = estimate_index_bloat


def select_reindex_candidates(records, min_ratio=30.0, min_bytes=0):
    """
    Filters index bloat records down to the ones worth rebuilding.

    Both thresholds must be met: a small index at 90% bloat is not worth a
    concurrent rebuild, and neither is a huge one at 2%.
    """
    candidates = [
        r for r in records
        if r.bloat_ratio >= min_ratio and r.bloat_size_bytes >= min_bytes
    ]
    logger.debug(
        f"{len(candidates)} of {len(records)} indexes meet thresholds "
        f"(ratio >= {min_ratio}%, bloat >= {min_bytes} bytes)"
    )
    return candidates
