from plugins.common.output_formatters import AsciiDocFormatter, format_bytes
from plugins.postgres.bloat_estimator import BloatEstimator


def run_table_bloat_analysis(connector, settings):
    """
    Estimates wasted heap and TOAST space per table from column statistics.
    """
    formatter = AsciiDocFormatter()
    adoc_content = ["=== Table Bloat Analysis", "Estimates wasted space in tables by comparing allocated pages with the size implied by row counts and average column widths. Figures are only as fresh as the last ANALYZE.\n"]
    structured_data = {}

    min_ratio = settings.get('reindex', {}).get('min_bloat_ratio', 30.0)

    try:
        records = BloatEstimator(connector).estimate_table_bloat()
        bloated = [r for r in records if r.bloat_ratio >= min_ratio]

        if not bloated:
            adoc_content.append(formatter.format_note(f"No table has more than {min_ratio}% estimated bloat."))
        else:
            adoc_content.append(formatter.format_critical(f"{len(bloated)} table(s) have more than {min_ratio}% estimated bloat. Table bloat usually comes from update and delete churn that autovacuum is not keeping up with."))
            adoc_content.append(formatter.format_table([
                {
                    'Table': r.qualified_name,
                    'Real Size': format_bytes(r.real_size_bytes),
                    'Bloat': format_bytes(r.bloat_size_bytes),
                    'Bloat %': f"{r.bloat_ratio:.1f}",
                }
                for r in bloated
            ]))

        structured_data["table_bloat"] = {"status": "success", "data": [r.to_dict() for r in records]}

    except Exception as e:
        error_msg = f"Failed during table bloat analysis: {e}"
        adoc_content.append(formatter.format_error(error_msg))
        structured_data["table_bloat"] = {"status": "error", "details": str(e)}

    adoc_content.append("\n" + formatter.format_tip("Review autovacuum settings for heavily bloated tables. Reclaiming space already lost requires `VACUUM FULL` or an online tool such as pg_repack."))

    return "\n".join(adoc_content), structured_data
