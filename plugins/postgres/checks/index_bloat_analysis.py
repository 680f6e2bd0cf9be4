from plugins.common.output_formatters import AsciiDocFormatter, format_bytes
from plugins.postgres.bloat_estimator import BloatEstimator, select_reindex_candidates


def run_index_bloat_analysis(connector, settings):
    """
    Estimates the amount of bloat in B-Tree indexes, which can negatively
    affect scan performance and consume excess disk space, and lists the
    indexes that meet the configured rebuild thresholds.
    """
    formatter = AsciiDocFormatter()
    adoc_content = ["=== B-Tree Index Bloat Analysis", "Estimates wasted space in B-Tree indexes using a statistical model. Bloated indexes are larger and less efficient, which can slow down query performance.\n"]
    structured_data = {}

    reindex_settings = settings.get('reindex', {})
    min_ratio = reindex_settings.get('min_bloat_ratio', 30.0)
    min_bytes = reindex_settings.get('min_bloat_bytes', 10 * 1024 * 1024)

    try:
        records = BloatEstimator(connector).estimate_index_bloat()
        candidates = select_reindex_candidates(records, min_ratio, min_bytes)

        if not candidates:
            adoc_content.append(formatter.format_note(
                f"No index exceeds the rebuild thresholds ({min_ratio}% and {format_bytes(min_bytes)} of bloat). This is a sign of healthy index maintenance."))
        else:
            adoc_content.append(formatter.format_critical(
                f"{len(candidates)} index(es) exceed the rebuild thresholds. Bloat increases the size of an index and can slow down scans, as more pages need to be read from disk. Rebuilding bloated indexes can reclaim space and improve performance."))
            adoc_content.append(formatter.format_table([
                {
                    'Index': r.qualified_name,
                    'Table': r.table_name,
                    'Real Size': format_bytes(r.real_size_bytes),
                    'Bloat': format_bytes(r.bloat_size_bytes),
                    'Bloat %': f"{r.bloat_ratio:.1f}",
                }
                for r in candidates
            ]))

        structured_data["index_bloat"] = {
            "status": "success",
            "data": [r.to_dict() for r in records],
            "reindex_candidates": [r.qualified_name for r in candidates],
        }

    except Exception as e:
        error_msg = f"Failed during index bloat analysis: {e}"
        adoc_content.append(formatter.format_error(error_msg))
        structured_data["index_bloat"] = {"status": "error", "details": str(e)}

    adoc_content.append("\n" + formatter.format_tip("Rebuild a bloated index online with `main.py reindex --schema <schema> --index <index>`. The replacement is built with `CREATE INDEX CONCURRENTLY` and swapped in with a short transaction, so reads and writes on the table are not blocked. Primary key, unique and dependent foreign key constraints are recreated automatically."))

    return "\n".join(adoc_content), structured_data
